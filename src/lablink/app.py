from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from lablink.config import load_config
from lablink.errors import LablinkError, PartialProvisioning
from lablink.logging import EventType, configure_logging, get_logger
from lablink.metrics import get_metrics
from lablink.middleware import add_logging_middleware
from lablink.models.api import (
    AssignmentRequest,
    HealthReport,
    InUseReport,
    ProvisionRequest,
    ReadinessReport,
    VmFilter,
)
from lablink.service import AllocatorService, build_service
from lablink.state_machine import VmState

logger = get_logger("lablink.app")
metrics = get_metrics()

# HTTP status per error code; anything unlisted is a 500
ERROR_STATUS = {
    "no_capacity": 503,
    "storage_error": 500,
    "busy": 409,
    "invalid_transition": 409,
    "record_not_found": 404,
    "not_found": 404,
    "tool_failure": 502,
    "tool_timeout": 504,
    "partial_provisioning": 207,
    "channel_error": 503,
    "unknown_fleet": 404,
    "registration_conflict": 409,
}

_service: Optional[AllocatorService] = None


def get_service() -> AllocatorService:
    """Get the process-wide service, building it from configuration on first use."""
    global _service
    if _service is None:
        config = load_config()
        configure_logging(config.log_level)
        _service = build_service(config)
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    service = app.dependency_overrides.get(get_service, get_service)()
    await service.start()
    logger.log_event(EventType.ALLOCATOR_START, "LabLink allocator started")
    try:
        yield
    finally:
        await service.stop()
        logger.log_event(EventType.ALLOCATOR_STOP, "LabLink allocator stopped")


app = FastAPI(title="LabLink Allocator API", lifespan=lifespan)

add_logging_middleware(app, exclude_paths=["/health", "/v1/metrics", "/favicon.ico"])


@app.exception_handler(LablinkError)
async def lablink_error_handler(request: Request, exc: LablinkError) -> JSONResponse:
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error(
            f"{request.method} {request.url.path} failed: {exc}",
            event_type=EventType.ALLOCATOR_ERROR,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            metadata=exc.to_dict(),
        )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post("/v1/vms/assign")
def assign_vm(
    body: AssignmentRequest, fleet: Optional[str] = None, service: AllocatorService = Depends(get_service)
):
    """Claim one available VM for the requester."""
    handle = service.request_assignment(body.requester, body.payload, fleet=fleet)
    return handle.model_dump(mode="json", by_alias=True)


@app.post("/v1/fleet/provision", status_code=201)
async def provision_fleet(
    body: ProvisionRequest, fleet: Optional[str] = None, service: AllocatorService = Depends(get_service)
):
    """Grow the fleet by ``count`` instances."""
    try:
        result = await service.request_provision(body.count, fleet=fleet)
    except PartialProvisioning as e:
        # Some instances exist and were registered
        return JSONResponse(status_code=207, content=e.to_dict())
    return result.model_dump(mode="json")


@app.post("/v1/fleet/teardown")
async def teardown_fleet(fleet: Optional[str] = None, service: AllocatorService = Depends(get_service)):
    """Destroy the fleet and terminate its records."""
    result = await service.request_teardown(fleet=fleet)
    return result.model_dump(mode="json")


@app.get("/v1/vms")
def list_vms(
    state: Optional[List[VmState]] = Query(default=None),
    fleet: Optional[str] = None,
    assigned_to: Optional[str] = Query(default=None, alias="assignedTo"),
    service: AllocatorService = Depends(get_service),
):
    """Read-only VM listing for the admin view."""
    views = service.list_vms(VmFilter(fleet=fleet, states=state, assigned_to=assigned_to))
    return [v.model_dump(mode="json") for v in views]


@app.get("/v1/fleet/summary")
def fleet_summary(fleet: Optional[str] = None, service: AllocatorService = Depends(get_service)):
    return service.fleet_summary(fleet).model_dump(mode="json")


@app.post("/v1/vms/ready", status_code=202)
async def report_ready(body: ReadinessReport, service: AllocatorService = Depends(get_service)):
    """Accept a readiness signal. Always 202: unmatched or failed signals are logged, not returned."""
    try:
        service.report_readiness(body.hostname)
    except LablinkError as e:
        logger.error(
            f"Dropped readiness signal from {body.hostname}: {e}",
            event_type=EventType.READINESS_UNMATCHED,
            hostname=body.hostname,
            metadata=e.to_dict(),
        )
        return {"accepted": False, "hostname": body.hostname}

    if not service.listener.running:
        # No background consumer; apply synchronously
        try:
            await service.listener.run_once()
        except LablinkError as e:
            logger.warning(
                f"Readiness signal from {body.hostname} left pending: {e}",
                hostname=body.hostname,
                metadata=e.to_dict(),
            )
    return {"accepted": True, "hostname": body.hostname}


@app.post("/v1/vms/in-use")
def report_in_use(body: InUseReport, service: AllocatorService = Depends(get_service)):
    return service.report_in_use(body.hostname, body.in_use).model_dump(mode="json")


@app.post("/v1/vms/health")
def report_health(body: HealthReport, service: AllocatorService = Depends(get_service)):
    return service.report_health(body.hostname, body.status).model_dump(mode="json")


@app.get("/v1/metrics")
def get_metrics_endpoint():
    """Get all collected metrics."""
    return metrics.get_all_metrics()


def run() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8080)
