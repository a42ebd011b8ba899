"""
Capability interface for the external provisioning tool.

The orchestrator only ever talks to a ``ProvisioningTool``; concrete tools
(Terraform run locally, Terraform run through Semaphore) and test doubles
implement the same two coroutines.
"""

import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

# Terraform outputs describing the client VM fleet
OUTPUT_INSTANCE_IDS = "vm_instance_ids"
OUTPUT_PUBLIC_IPS = "vm_public_ips"
OUTPUT_INSTANCE_NAMES = "vm_instance_names"


class ProvisionedInstance(BaseModel):
    """One instance confirmed by the provisioning tool."""

    instance_id: str
    address: Optional[str] = None
    name: Optional[str] = None


class ProvisionSpec(BaseModel):
    """Create request: ``count`` new instances on top of the existing fleet."""

    fleet: str
    count: int = Field(..., ge=1)
    machine_type: str
    image_name: str
    region: str
    timeout_seconds: float
    existing_instance_ids: List[str] = Field(default_factory=list)

    @property
    def desired_total(self) -> int:
        return len(self.existing_instance_ids) + self.count


class DestroySpec(BaseModel):
    """Destroy request for the listed instances of a fleet."""

    fleet: str
    instance_ids: List[str] = Field(default_factory=list)
    region: str
    timeout_seconds: float


class ToolResult(BaseModel):
    """Structured outcome of a tool invocation."""

    success: bool
    created: List[ProvisionedInstance] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    diagnostics: str = ""
    exit_code: Optional[int] = None


class ProvisioningTool(Protocol):
    """Black-box infrastructure tool with a bounded execution time."""

    name: str

    async def provision(self, spec: ProvisionSpec) -> ToolResult:
        """Create instances. Raises ToolTimeout when the hard timeout expires."""
        ...

    async def destroy(self, spec: DestroySpec) -> ToolResult:
        """Destroy instances. Raises ToolTimeout when the hard timeout expires."""
        ...


def parse_fleet_outputs(outputs: Dict[str, Any]) -> List[ProvisionedInstance]:
    """Build instances from ``terraform output -json`` data.

    Each output is either ``{"value": [...]}`` (the JSON form) or a bare list.
    Ids are required; addresses and names are matched by position.
    """

    def _values(key: str) -> List[Any]:
        raw = outputs.get(key)
        if isinstance(raw, dict):
            raw = raw.get("value")
        return list(raw or [])

    ids = _values(OUTPUT_INSTANCE_IDS)
    ips = _values(OUTPUT_PUBLIC_IPS)
    names = _values(OUTPUT_INSTANCE_NAMES)

    instances = []
    for index, instance_id in enumerate(ids):
        if not instance_id:
            continue
        instances.append(
            ProvisionedInstance(
                instance_id=str(instance_id),
                address=str(ips[index]) if index < len(ips) and ips[index] else None,
                name=str(names[index]) if index < len(names) and names[index] else None,
            )
        )
    return instances


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Find the last top-level JSON object embedded in free-form tool output."""
    decoder = json.JSONDecoder()
    found = None
    index = text.find("{")
    while index != -1:
        try:
            obj, end = decoder.raw_decode(text, index)
        except ValueError:
            index = text.find("{", index + 1)
            continue
        if isinstance(obj, dict):
            found = obj
        index = text.find("{", end)
    return found


def new_instances(
    instances: Sequence[ProvisionedInstance], existing_ids: Sequence[str]
) -> List[ProvisionedInstance]:
    """Instances the tool reports that were not part of the fleet before."""
    known = set(existing_ids)
    return [i for i in instances if i.instance_id not in known]
