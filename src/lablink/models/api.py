"""
Request and response models for the allocator's collaborator interface.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..state_machine import VmState


class VmFilter(BaseModel):
    """Read-side filter for registry queries."""

    fleet: Optional[str] = Field(default=None, description="Restrict to one fleet")
    states: Optional[List[VmState]] = Field(default=None, description="Allowed lifecycle states")
    assigned_to: Optional[str] = None
    hostname: Optional[str] = None


class VmView(BaseModel):
    """Read-only snapshot of a VM record for admin display."""

    id: str
    fleet: str
    instance_name: Optional[str] = None
    address: Optional[str] = None
    hostname: Optional[str] = None
    state: VmState
    assigned_to: Optional[str] = None
    command_payload: Optional[str] = None
    in_use: bool = False
    health_status: Optional[str] = None
    ready_at: Optional[datetime] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class VmHandle(BaseModel):
    """Connection metadata handed to a requester after a successful claim."""

    vm_id: str = Field(..., alias="vmId")
    fleet: str
    instance_name: Optional[str] = Field(default=None, alias="instanceName")
    address: Optional[str] = None
    hostname: Optional[str] = None
    state: VmState
    assigned_to: str = Field(..., alias="assignedTo")
    command_payload: Optional[str] = Field(default=None, alias="commandPayload")
    assigned_at: Optional[datetime] = Field(default=None, alias="assignedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_view(cls, view: VmView) -> "VmHandle":
        return cls(
            vm_id=view.id,
            fleet=view.fleet,
            instance_name=view.instance_name,
            address=view.address,
            hostname=view.hostname,
            state=view.state,
            assigned_to=view.assigned_to or "",
            command_payload=view.command_payload,
            assigned_at=view.assigned_at,
        )


class NewVm(BaseModel):
    """A confirmed instance to be inserted into the registry as available."""

    id: str
    fleet: str
    instance_name: Optional[str] = None
    address: Optional[str] = None


class ProvisionResult(BaseModel):
    """Outcome of a fully successful provisioning request."""

    fleet: str
    expected: int
    actual: int
    instance_ids: List[str] = Field(default_factory=list)
    duration_ms: Optional[float] = None


class TeardownResult(BaseModel):
    """Outcome of a teardown request, including the orphan cleanup step."""

    fleet: str
    terminated_ids: List[str] = Field(default_factory=list)
    cleaned_resources: List[str] = Field(default_factory=list)
    cleanup_failures: Dict[str, str] = Field(default_factory=dict)
    duration_ms: Optional[float] = None


class FleetSummary(BaseModel):
    """Per-state record counts for one fleet."""

    fleet: str
    counts: Dict[str, int] = Field(default_factory=dict)
    total: int = 0


class AssignmentRequest(BaseModel):
    """Request body for POST /v1/vms/assign."""

    requester: str = Field(..., alias="email", description="Requester identity")
    payload: str = Field(default="", alias="crdCommand", description="Opaque command payload")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("requester")
    @classmethod
    def validate_requester(cls, v):
        if not v or not v.strip():
            raise ValueError("requester must not be empty")
        return v.strip()


class ProvisionRequest(BaseModel):
    """Request body for POST /v1/fleet/provision."""

    count: int = Field(..., ge=1, description="Number of new instances to create")


class ReadinessReport(BaseModel):
    """Request body for POST /v1/vms/ready."""

    hostname: str = Field(..., min_length=1)


class InUseReport(BaseModel):
    """Request body for POST /v1/vms/in-use."""

    hostname: str = Field(..., min_length=1)
    in_use: bool = Field(..., alias="inUse")

    model_config = ConfigDict(populate_by_name=True)


class HealthReport(BaseModel):
    """Request body for POST /v1/vms/health."""

    hostname: str = Field(..., min_length=1)
    status: str = Field(..., alias="gpuStatus", min_length=1)

    model_config = ConfigDict(populate_by_name=True)
