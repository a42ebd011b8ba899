"""Provisioning tool backends."""

from typing import Optional

from ..config import FleetConfig, LablinkConfig
from .base import DestroySpec, ProvisionedInstance, ProvisioningTool, ProvisionSpec, ToolResult
from .janitor import CleanupReport, ResourceJanitor
from .semaphore import SemaphoreClient, SemaphoreTool
from .terraform import TerraformTool


def build_tool(fleet: FleetConfig, config: Optional[LablinkConfig] = None) -> ProvisioningTool:
    """Create the provisioning tool a fleet is configured to use."""
    if fleet.tool == "semaphore":
        if config is None or not config.semaphore_base_url:
            raise ValueError(f"Fleet '{fleet.name}' uses semaphore but no semaphore_base_url is set")
        client = SemaphoreClient(
            config.semaphore_base_url,
            project_id=fleet.semaphore_project_id,
            timeout=config.semaphore_timeout,
        )
        return SemaphoreTool(
            client,
            provision_template_id=fleet.semaphore_provision_template_id,
            destroy_template_id=fleet.semaphore_destroy_template_id,
            poll_interval=fleet.semaphore_poll_interval,
        )
    return TerraformTool(fleet.terraform_dir, binary=fleet.terraform_binary)


__all__ = [
    "CleanupReport",
    "DestroySpec",
    "ProvisionSpec",
    "ProvisionedInstance",
    "ProvisioningTool",
    "ResourceJanitor",
    "SemaphoreClient",
    "SemaphoreTool",
    "TerraformTool",
    "ToolResult",
    "build_tool",
]
