from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from allotment.config import load_config
from allotment.engine import AssignmentEngine, build_engine
from allotment.errors import InvalidConfiguration, JobNotFound, StorageFailure
from allotment.logging import EventType, LogLevel, configure_logging, get_logger
from allotment.metrics import get_metrics
from allotment.middleware import add_logging_middleware
from allotment.models.api import (
    AssignmentResponse,
    AutomationLogEntry,
    CapacityResponse,
    DesignerCapacityRequest,
    HeadroomResponse,
    PriorityAllowanceRequest,
    PriorityAllowanceResponse,
    RuleCreateRequest,
    RuleResponse,
    RuleUpdateRequest,
    VendorCapacityRequest,
)
from allotment.types import EntityKind, RoutingStrategy

app = FastAPI(title="Allotment API")

logger = get_logger("allotment.app")
metrics = get_metrics()

add_logging_middleware(app, exclude_paths=["/health", "/metrics", "/favicon.ico"])

_engine: Optional[AssignmentEngine] = None

# Path segment -> ledger entity kind for capacity endpoints
_CAPACITY_KINDS = {"vendors": EntityKind.VENDOR, "designers": EntityKind.DESIGNER}


def get_engine() -> AssignmentEngine:
    """Engine used by the endpoints; built from allotment_config.yml on first use."""
    global _engine
    if _engine is None:
        config = load_config()
        configure_logging(LogLevel(config.log_level))
        _engine = build_engine(config)
    return _engine


def set_engine(engine: Optional[AssignmentEngine]) -> None:
    """Install an engine wired to a deployment's own job store, directory and notifier."""
    global _engine
    _engine = engine


@app.exception_handler(JobNotFound)
def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc), "jobId": exc.job_id})


@app.exception_handler(StorageFailure)
def _storage_failure(request: Request, exc: StorageFailure) -> JSONResponse:
    return JSONResponse(
        status_code=503, content={"detail": str(exc), "operation": exc.operation}
    )


@app.exception_handler(InvalidConfiguration)
def _invalid_configuration(request: Request, exc: InvalidConfiguration) -> JSONResponse:
    return JSONResponse(
        status_code=422, content={"detail": exc.reason, "subject": exc.subject}
    )


@app.post("/v1/jobs/{jobId}/assignment")
def run_assignment(jobId: str, engine: AssignmentEngine = Depends(get_engine)) -> AssignmentResponse:
    result = engine.run_assignment(jobId)
    return AssignmentResponse.from_result(result)


@app.get("/v1/jobs/{jobId}/automation-logs")
def get_automation_logs(
    jobId: str, engine: AssignmentEngine = Depends(get_engine)
) -> List[AutomationLogEntry]:
    return [AutomationLogEntry(**row) for row in engine.automation_logs(jobId)]


@app.post("/v1/priority-allowance")
def check_priority_allowance(
    body: PriorityAllowanceRequest, engine: AssignmentEngine = Depends(get_engine)
) -> PriorityAllowanceResponse:
    allowance = engine.check_priority_allowance(
        body.client_id, body.requested_priority.value, job_id=body.job_id
    )
    return PriorityAllowanceResponse(**allowance.to_dict())


@app.get("/v1/automation-rules")
def list_rules(engine: AssignmentEngine = Depends(get_engine)) -> List[RuleResponse]:
    return [RuleResponse.from_rule(rule) for rule in engine.list_rules()]


@app.post("/v1/automation-rules", status_code=201)
def create_rule(
    body: RuleCreateRequest, engine: AssignmentEngine = Depends(get_engine)
) -> RuleResponse:
    rule = body.to_rule(RoutingStrategy(engine.config.default_strategy))
    return RuleResponse.from_rule(engine.create_rule(rule))


@app.get("/v1/automation-rules/{ruleId}")
def get_rule(ruleId: int, engine: AssignmentEngine = Depends(get_engine)) -> RuleResponse:
    rule = engine.get_rule(ruleId)
    if rule is None:
        raise HTTPException(status_code=404, detail=f"Rule {ruleId} not found")
    return RuleResponse.from_rule(rule)


@app.patch("/v1/automation-rules/{ruleId}")
def update_rule(
    ruleId: int, body: RuleUpdateRequest, engine: AssignmentEngine = Depends(get_engine)
) -> RuleResponse:
    current = engine.get_rule(ruleId)
    if current is None:
        raise HTTPException(status_code=404, detail=f"Rule {ruleId} not found")
    updated = engine.update_rule(ruleId, body.to_changes(current))
    return RuleResponse.from_rule(updated)


@app.put("/v1/capacities/vendors/{vendorId}/services/{serviceId}")
def set_vendor_capacity(
    vendorId: str,
    serviceId: str,
    body: VendorCapacityRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> CapacityResponse:
    row = engine.set_vendor_capacity(
        vendorId,
        serviceId,
        body.daily_capacity,
        auto_assign_enabled=body.auto_assign_enabled,
        priority_weight=body.priority_weight,
        routing_strategy=body.routing_strategy.value if body.routing_strategy else None,
    )
    return CapacityResponse(**row)


@app.put("/v1/capacities/designers/{designerId}/services/{serviceId}")
def set_designer_capacity(
    designerId: str,
    serviceId: str,
    body: DesignerCapacityRequest,
    engine: AssignmentEngine = Depends(get_engine),
) -> CapacityResponse:
    row = engine.set_designer_capacity(
        designerId,
        serviceId,
        body.daily_capacity,
        is_primary=body.is_primary,
        auto_assign_enabled=body.auto_assign_enabled,
        priority_weight=body.priority_weight,
    )
    return CapacityResponse(**row)


@app.get("/v1/capacities/{kind}/{entityId}/services/{serviceId}/headroom")
def get_headroom(
    kind: str, entityId: str, serviceId: str, engine: AssignmentEngine = Depends(get_engine)
) -> HeadroomResponse:
    if kind not in _CAPACITY_KINDS:
        raise HTTPException(status_code=404, detail=f"Unknown capacity kind '{kind}'")
    return HeadroomResponse(**engine.headroom(_CAPACITY_KINDS[kind], entityId, serviceId))


@app.get("/v1/strategies")
def get_strategies_endpoint(engine: AssignmentEngine = Depends(get_engine)):
    """List the routing strategies rules may use."""
    return {"strategies": [strategy.value for strategy in engine.list_strategies()]}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics_endpoint():
    return metrics.get_all_metrics()


def run() -> None:
    import uvicorn

    logger.log_event(EventType.ENGINE_START, "Allotment API starting up")
    uvicorn.run(app, host="0.0.0.0", port=8080)
