import os
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .logging import get_logger

logger = get_logger("lablink.config")

DEFAULT_FLEET = "default"


class FleetConfig(BaseModel):
    """Per-fleet provisioning parameters, passed explicitly to the orchestrator."""

    name: str = DEFAULT_FLEET
    region: str = "us-west-2"
    machine_type: str = "g4dn.xlarge"
    image_name: str = "ghcr.io/talmolab/lablink-client-base-image:latest"

    # Provisioning tool
    tool: Literal["terraform", "semaphore"] = "terraform"
    terraform_dir: str = Field(default="terraform", description="Terraform working directory")
    terraform_binary: str = "terraform"
    tool_timeout_seconds: float = Field(
        default=1800, description="Hard timeout for a single tool invocation (seconds)"
    )

    # Semaphore automation configuration
    semaphore_project_id: int = 1
    semaphore_provision_template_id: int = Field(
        default=1, description="Semaphore template ID running terraform apply"
    )
    semaphore_destroy_template_id: int = Field(
        default=2, description="Semaphore template ID running terraform destroy"
    )
    semaphore_poll_interval: float = Field(
        default=2.0, description="Interval between Semaphore status polls (seconds)"
    )

    # Orphaned resource cleanup after teardown
    cleanup_enabled: bool = True
    cleanup_dry_run: bool = False

    @field_validator("tool_timeout_seconds", "semaphore_poll_interval")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("timeouts and intervals must be > 0")
        return v

    @property
    def resource_suffix(self) -> str:
        """Suffix used in cloud resource names (lablink-vm-<suffix>-<n>)."""
        return self.name


class ListenerConfig(BaseModel):
    """Readiness listener settings."""

    channel: Literal["registry", "memory"] = "registry"
    poll_interval: float = Field(default=1.0, gt=0)
    batch_size: int = Field(default=50, ge=1)
    reconnect_initial_delay: float = Field(default=0.5, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)


class LablinkConfig(BaseModel):
    database_url: Optional[str] = None
    log_level: str = "INFO"
    default_fleet: str = DEFAULT_FLEET
    fleets: Dict[str, FleetConfig] = Field(default_factory=dict)
    listener: ListenerConfig = Field(default_factory=ListenerConfig)

    # Global Semaphore configuration
    semaphore_base_url: Optional[str] = Field(default=None, description="Semaphore server base URL")
    semaphore_timeout: int = Field(
        default=30, description="HTTP timeout for Semaphore API calls (seconds)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return v

    def __init__(self, **data):
        super().__init__(**data)
        # Ensure the default fleet always exists and fleet names match their keys
        if self.default_fleet not in self.fleets:
            self.fleets[self.default_fleet] = FleetConfig(name=self.default_fleet)
        for fleet_name, fleet in self.fleets.items():
            if fleet.name != fleet_name:
                self.fleets[fleet_name] = fleet.model_copy(update={"name": fleet_name})

    def fleet(self, name: Optional[str] = None) -> FleetConfig:
        """Get a fleet configuration, defaulting to the default fleet."""
        name = name or self.default_fleet
        if name not in self.fleets:
            raise KeyError(f"Fleet '{name}' is not configured")
        return self.fleets[name]


def load_config(config_path: str = "lablink_config.yml") -> LablinkConfig:
    """Load configuration from YAML file with environment variable overrides."""
    config_data: Dict[str, Any] = {}

    try:
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        pass
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config from {config_path}: {e}", path=config_path)

    if "fleets" not in config_data or config_data["fleets"] is None:
        config_data["fleets"] = {}

    default_fleet = config_data.get("default_fleet", DEFAULT_FLEET)
    if default_fleet not in config_data["fleets"]:
        config_data["fleets"][default_fleet] = {}

    for env_key, field_name in (
        ("LABLINK_DATABASE_URL", "database_url"),
        ("LABLINK_LOG_LEVEL", "log_level"),
        ("SEMAPHORE_BASE_URL", "semaphore_base_url"),
    ):
        value = os.getenv(env_key)
        if value:
            config_data[field_name] = value

    semaphore_timeout = os.getenv("SEMAPHORE_TIMEOUT")
    if semaphore_timeout:
        try:
            config_data["semaphore_timeout"] = int(semaphore_timeout)
        except ValueError:
            logger.warning(f"Invalid integer value for SEMAPHORE_TIMEOUT: {semaphore_timeout}")

    # Format: <FLEET>_<CONFIG_KEY> = value
    _load_fleets_from_environment(config_data["fleets"])

    return LablinkConfig(**config_data)


def _load_fleets_from_environment(fleets_config: Dict[str, Any]):
    """Load fleet configurations from environment variables."""

    field_mappings = {
        "REGION": ("region", str),
        "MACHINE_TYPE": ("machine_type", str),
        "IMAGE_NAME": ("image_name", str),
        "TOOL": ("tool", str),
        "TERRAFORM_DIR": ("terraform_dir", str),
        "TERRAFORM_BINARY": ("terraform_binary", str),
        "TOOL_TIMEOUT_SECONDS": ("tool_timeout_seconds", float),
        "SEMAPHORE_PROJECT_ID": ("semaphore_project_id", int),
        "SEMAPHORE_PROVISION_TEMPLATE_ID": ("semaphore_provision_template_id", int),
        "SEMAPHORE_DESTROY_TEMPLATE_ID": ("semaphore_destroy_template_id", int),
        "SEMAPHORE_POLL_INTERVAL": ("semaphore_poll_interval", float),
        "CLEANUP_ENABLED": ("cleanup_enabled", bool),
        "CLEANUP_DRY_RUN": ("cleanup_dry_run", bool),
    }

    fleet_env_vars: Dict[str, Dict[str, str]] = {}
    for env_key, env_value in os.environ.items():
        # Longest suffix first so SEMAPHORE_* fields are not mistaken for shorter ones
        for field_name in sorted(field_mappings, key=len, reverse=True):
            if env_key.endswith(f"_{field_name}"):
                fleet_name = env_key[: -len(f"_{field_name}")].lower().replace("_", "-")
                if fleet_name in ("lablink", ""):
                    break
                fleet_env_vars.setdefault(fleet_name, {})[field_name] = env_value
                break

    for fleet_name, env_vars in fleet_env_vars.items():
        # Only configure fleets that are already declared; stray env vars are ignored
        if fleet_name not in fleets_config:
            continue

        fleet_config = fleets_config[fleet_name]
        if fleet_config is None:
            fleet_config = fleets_config[fleet_name] = {}

        for env_field, env_value in env_vars.items():
            config_field, field_type = field_mappings[env_field]

            try:
                if field_type is bool:
                    fleet_config[config_field] = env_value.lower() in ("true", "1", "yes", "on")
                elif field_type is int:
                    fleet_config[config_field] = int(env_value)
                elif field_type is float:
                    fleet_config[config_field] = float(env_value)
                else:
                    fleet_config[config_field] = env_value
            except (ValueError, TypeError) as e:
                logger.warning(
                    f"Invalid {field_type.__name__} value for {fleet_name}.{config_field}: {env_value} ({e})"
                )
