"""
Request and response models for the assignment HTTP API.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from allotment.errors import InvalidConfiguration
from allotment.rules import AutomationRule, GlobalScope, VendorScope
from allotment.types import (
    AssignmentResult,
    FallbackAction,
    JobPriority,
    RoutingStrategy,
    RoutingTarget,
)


class AssignmentResponse(BaseModel):
    """Response model for POST /v1/jobs/{jobId}/assignment."""

    job_id: str = Field(..., alias="jobId")
    status: str = Field(..., description="Terminal status of the run")
    note: str = Field(..., description="Human readable outcome")
    vendor_assignee_id: Optional[str] = Field(default=None, alias="vendorAssigneeId")
    assignee_id: Optional[str] = Field(default=None, alias="assigneeId")
    rule_id: Optional[int] = Field(default=None, alias="ruleId")
    run_id: Optional[str] = Field(default=None, alias="runId")
    commits: List[Dict[str, Any]] = Field(default_factory=list, description="Ledger units taken")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: AssignmentResult) -> "AssignmentResponse":
        return cls(**result.to_dict())


class AutomationLogEntry(BaseModel):
    """One audit row, as returned by GET /v1/jobs/{jobId}/automation-logs."""

    id: int
    run_id: str = Field(..., alias="runId")
    request_id: str = Field(..., alias="requestId")
    request_type: str = Field(..., alias="requestType")
    rule_id: Optional[int] = Field(default=None, alias="ruleId")
    step: str
    candidates_considered: List[Any] = Field(default_factory=list, alias="candidatesConsidered")
    chosen_id: Optional[str] = Field(default=None, alias="chosenId")
    result: str
    reason: str
    capacity_snapshot: Any = Field(..., alias="capacitySnapshot")
    ledger_commits: List[Dict[str, Any]] = Field(default_factory=list, alias="ledgerCommits")
    created_at: Optional[str] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class PriorityAllowanceRequest(BaseModel):
    """Request model for POST /v1/priority-allowance."""

    client_id: str = Field(..., alias="clientId", min_length=1)
    requested_priority: JobPriority = Field(..., alias="requestedPriority")
    job_id: Optional[str] = Field(
        default=None, alias="jobId", description="Existing job being re-prioritised"
    )

    model_config = ConfigDict(populate_by_name=True)


class PriorityAllowanceResponse(BaseModel):
    client_id: str = Field(..., alias="clientId")
    requested_priority: str = Field(..., alias="requestedPriority")
    decision: str
    granted_priority: Optional[str] = Field(default=None, alias="grantedPriority")
    active_count: int = Field(..., alias="activeCount")
    urgent_cap: int = Field(..., alias="urgentCap")
    high_cap: int = Field(..., alias="highCap")
    urgent_count: int = Field(..., alias="urgentCount")
    high_count: int = Field(..., alias="highCount")
    reason: str

    model_config = ConfigDict(populate_by_name=True)


class RuleCreateRequest(BaseModel):
    """Request model for POST /v1/automation-rules."""

    name: str = Field(..., min_length=1)
    scope: Literal["global", "vendor"] = "global"
    owner_vendor_id: Optional[str] = Field(default=None, alias="ownerVendorId")
    is_active: bool = Field(default=True, alias="isActive")
    priority: int = 0
    service_ids: List[str] = Field(default_factory=list, alias="serviceIds")
    routing_target: RoutingTarget = Field(default=RoutingTarget.VENDOR_ONLY, alias="routingTarget")
    routing_strategy: Optional[RoutingStrategy] = Field(default=None, alias="routingStrategy")
    fallback_action: FallbackAction = Field(
        default=FallbackAction.LEAVE_PENDING, alias="fallbackAction"
    )
    allowed_vendor_ids: List[str] = Field(default_factory=list, alias="allowedVendorIds")
    excluded_vendor_ids: List[str] = Field(default_factory=list, alias="excludedVendorIds")
    match_criteria: Dict[str, Any] = Field(default_factory=dict, alias="matchCriteria")

    model_config = ConfigDict(populate_by_name=True)

    def to_rule(self, default_strategy: RoutingStrategy) -> AutomationRule:
        if self.scope == "vendor":
            if self.allowed_vendor_ids or self.excluded_vendor_ids:
                raise InvalidConfiguration(
                    self.name, "vendor-scoped rules cannot carry vendor allow/deny lists"
                )
            if not self.owner_vendor_id:
                raise InvalidConfiguration(self.name, "vendor-scoped rules need ownerVendorId")
            scope = VendorScope(vendor_id=self.owner_vendor_id)
        else:
            scope = GlobalScope(
                allowed_vendor_ids=self.allowed_vendor_ids,
                excluded_vendor_ids=self.excluded_vendor_ids,
            )
        return AutomationRule(
            name=self.name,
            scope=scope,
            is_active=self.is_active,
            priority=self.priority,
            service_ids=self.service_ids,
            routing_target=self.routing_target,
            routing_strategy=self.routing_strategy or default_strategy,
            fallback_action=self.fallback_action,
            match_criteria=self.match_criteria,
        )


class RuleUpdateRequest(BaseModel):
    """Request model for PATCH /v1/automation-rules/{ruleId}. Omitted fields stay as they are."""

    name: Optional[str] = Field(default=None, min_length=1)
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    priority: Optional[int] = None
    service_ids: Optional[List[str]] = Field(default=None, alias="serviceIds")
    routing_target: Optional[RoutingTarget] = Field(default=None, alias="routingTarget")
    routing_strategy: Optional[RoutingStrategy] = Field(default=None, alias="routingStrategy")
    fallback_action: Optional[FallbackAction] = Field(default=None, alias="fallbackAction")
    allowed_vendor_ids: Optional[List[str]] = Field(default=None, alias="allowedVendorIds")
    excluded_vendor_ids: Optional[List[str]] = Field(default=None, alias="excludedVendorIds")
    match_criteria: Optional[Dict[str, Any]] = Field(default=None, alias="matchCriteria")

    model_config = ConfigDict(populate_by_name=True)

    def to_changes(self, current: AutomationRule) -> Dict[str, Any]:
        changes = self.model_dump(
            exclude_unset=True, exclude={"allowed_vendor_ids", "excluded_vendor_ids"}
        )
        scope_changes = self.model_dump(
            exclude_unset=True, include={"allowed_vendor_ids", "excluded_vendor_ids"}
        )
        if scope_changes:
            if isinstance(current.scope, VendorScope):
                raise InvalidConfiguration(
                    f"rule {current.id}", "vendor-scoped rules cannot carry vendor allow/deny lists"
                )
            changes["scope"] = {**current.scope.model_dump(), **scope_changes}
        return changes


class RuleResponse(BaseModel):
    id: int
    name: str
    scope: str
    owner_vendor_id: Optional[str] = Field(default=None, alias="ownerVendorId")
    is_active: bool = Field(..., alias="isActive")
    priority: int
    service_ids: List[str] = Field(..., alias="serviceIds")
    routing_target: str = Field(..., alias="routingTarget")
    routing_strategy: str = Field(..., alias="routingStrategy")
    fallback_action: str = Field(..., alias="fallbackAction")
    allowed_vendor_ids: List[str] = Field(default_factory=list, alias="allowedVendorIds")
    excluded_vendor_ids: List[str] = Field(default_factory=list, alias="excludedVendorIds")
    match_criteria: Dict[str, Any] = Field(default_factory=dict, alias="matchCriteria")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_rule(cls, rule: AutomationRule) -> "RuleResponse":
        scope = rule.scope
        return cls(
            id=rule.id,
            name=rule.name,
            scope=scope.kind,
            owner_vendor_id=scope.vendor_id if isinstance(scope, VendorScope) else None,
            is_active=rule.is_active,
            priority=rule.priority,
            service_ids=rule.service_ids,
            routing_target=rule.routing_target.value,
            routing_strategy=rule.routing_strategy.value,
            fallback_action=rule.fallback_action.value,
            allowed_vendor_ids=getattr(scope, "allowed_vendor_ids", []),
            excluded_vendor_ids=getattr(scope, "excluded_vendor_ids", []),
            match_criteria=rule.match_criteria,
            created_at=rule.created_at,
        )


class VendorCapacityRequest(BaseModel):
    """Request model for PUT /v1/capacities/vendors/{vendorId}/services/{serviceId}."""

    daily_capacity: int = Field(..., alias="dailyCapacity", ge=0)
    auto_assign_enabled: bool = Field(default=True, alias="autoAssignEnabled")
    priority_weight: int = Field(default=0, alias="priorityWeight")
    routing_strategy: Optional[RoutingStrategy] = Field(default=None, alias="routingStrategy")

    model_config = ConfigDict(populate_by_name=True)


class DesignerCapacityRequest(BaseModel):
    """Request model for PUT /v1/capacities/designers/{designerId}/services/{serviceId}."""

    daily_capacity: int = Field(..., alias="dailyCapacity", ge=0)
    is_primary: bool = Field(default=False, alias="isPrimary")
    auto_assign_enabled: bool = Field(default=True, alias="autoAssignEnabled")
    priority_weight: int = Field(default=0, alias="priorityWeight")

    model_config = ConfigDict(populate_by_name=True)


class CapacityResponse(BaseModel):
    vendor_id: Optional[str] = Field(default=None, alias="vendorId")
    designer_id: Optional[str] = Field(default=None, alias="designerId")
    service_id: str = Field(..., alias="serviceId")
    daily_capacity: int = Field(..., alias="dailyCapacity")
    auto_assign_enabled: bool = Field(..., alias="autoAssignEnabled")
    priority_weight: int = Field(default=0, alias="priorityWeight")
    is_primary: Optional[bool] = Field(default=None, alias="isPrimary")
    routing_strategy: Optional[str] = Field(default=None, alias="routingStrategy")

    model_config = ConfigDict(populate_by_name=True)


class HeadroomResponse(BaseModel):
    """Response model for the headroom query endpoint."""

    entity_kind: str = Field(..., alias="entityKind")
    entity_id: str = Field(..., alias="entityId")
    service_id: str = Field(..., alias="serviceId")
    day: str
    daily_capacity: int = Field(..., alias="dailyCapacity")
    committed_units: int = Field(..., alias="committedUnits")
    headroom: int
    auto_assign_enabled: bool = Field(..., alias="autoAssignEnabled")
    configured: bool

    model_config = ConfigDict(populate_by_name=True)
