"""
Automation rules: typed rule model, storage and matching.

A rule is either global (platform-wide, may carry vendor allow/deny lists)
or vendor-scoped (owned by one vendor, refines a vendor choice that was
already made). The two scopes are separate pydantic models behind a
discriminated union so a vendor rule cannot carry a global deny-list.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from allotment.collaborators import Job
from allotment.errors import InvalidConfiguration
from allotment.logging import EventType, get_logger
from allotment.models import AutomationRuleRecord
from allotment.persistence import DatabaseManager
from allotment.types import FallbackAction, RoutingStrategy, RoutingTarget, RuleScopeKind

logger = get_logger("allotment.rules")


class GlobalScope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["global"] = "global"
    allowed_vendor_ids: List[str] = Field(default_factory=list)
    excluded_vendor_ids: List[str] = Field(default_factory=list)

    def permits(self, vendor_id: str) -> bool:
        if self.allowed_vendor_ids and vendor_id not in self.allowed_vendor_ids:
            return False
        return vendor_id not in self.excluded_vendor_ids


class VendorScope(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["vendor"] = "vendor"
    vendor_id: str = Field(min_length=1)

    def permits(self, vendor_id: str) -> bool:
        return vendor_id == self.vendor_id


RuleScope = Annotated[Union[GlobalScope, VendorScope], Field(discriminator="kind")]

# Criteria keys read from the job itself; anything else is looked up in job.attributes
JOB_FIELD_CRITERIA = {
    "client_id": "client_id",
    "clientId": "client_id",
    "request_type": "request_type",
    "requestType": "request_type",
    "priority": "priority",
    "service_id": "service_id",
    "serviceId": "service_id",
}


class AutomationRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: Optional[int] = None
    name: str = Field(min_length=1)
    scope: RuleScope = Field(default_factory=GlobalScope)
    is_active: bool = True
    priority: int = 0
    service_ids: List[str] = Field(default_factory=list)
    routing_target: RoutingTarget = RoutingTarget.VENDOR_ONLY
    routing_strategy: RoutingStrategy = RoutingStrategy.LEAST_LOADED
    fallback_action: FallbackAction = FallbackAction.LEAVE_PENDING
    match_criteria: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def requires_designer(self) -> bool:
        return self.routing_target == RoutingTarget.VENDOR_THEN_DESIGNER

    def applies_to_service(self, service_id: str) -> bool:
        return not self.service_ids or service_id in self.service_ids

    def matches_criteria(self, job: Job) -> bool:
        """Every non-empty criterion must hold; list values mean "any of"."""
        for key, expected in self.match_criteria.items():
            if expected is None or expected == "":
                continue
            if key in JOB_FIELD_CRITERIA:
                actual = getattr(job, JOB_FIELD_CRITERIA[key])
            else:
                actual = job.attributes.get(key)

            if isinstance(expected, list):
                if actual not in expected:
                    return False
            elif actual != expected:
                return False
        return True


@dataclass
class RuleMatch:
    """Outcome of matching one job against the stored rules."""

    rule: Optional[AutomationRule]
    considered: List[int] = field(default_factory=list)
    skipped: List[Tuple[Optional[int], str]] = field(default_factory=list)

    @property
    def reason(self) -> str:
        if self.rule is not None:
            return f'Rule "{self.rule.name}" matched request criteria'
        return "no rule matched"


def pinned_vendor_of(job: Job) -> Optional[str]:
    """Vendor a job is already tied to, either by manual assignment or client preference."""
    return job.vendor_assignee_id or job.preferred_vendor_id


class RuleStore:
    """Persists rules and converts storage rows to typed rules."""

    def __init__(self, db: DatabaseManager, default_strategy: str = "least_loaded"):
        self.db = db
        self.default_strategy = RoutingStrategy(default_strategy)

    def to_rule(self, record: AutomationRuleRecord) -> AutomationRule:
        """Build a typed rule from a row. Raises InvalidConfiguration when the row is unusable."""
        if record.scope == RuleScopeKind.VENDOR.value:
            if record.allowed_vendor_ids or record.excluded_vendor_ids:
                raise InvalidConfiguration(
                    f"rule {record.id}", "vendor-scoped rule carries vendor allow/deny lists"
                )
            scope: Dict[str, Any] = {"kind": "vendor", "vendor_id": record.owner_vendor_id or ""}
        elif record.scope == RuleScopeKind.GLOBAL.value:
            scope = {
                "kind": "global",
                "allowed_vendor_ids": list(record.allowed_vendor_ids or []),
                "excluded_vendor_ids": list(record.excluded_vendor_ids or []),
            }
        else:
            raise InvalidConfiguration(f"rule {record.id}", f"unknown scope '{record.scope}'")

        try:
            return AutomationRule(
                id=record.id,
                name=record.name,
                scope=scope,
                is_active=record.is_active,
                priority=record.priority or 0,
                service_ids=list(record.service_ids or []),
                routing_target=record.routing_target,
                routing_strategy=record.routing_strategy or self.default_strategy,
                fallback_action=record.fallback_action,
                match_criteria=dict(record.match_criteria or {}),
                created_at=record.created_at,
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise InvalidConfiguration(f"rule {record.id}", problems) from e

    def _apply(self, record: AutomationRuleRecord, rule: AutomationRule) -> None:
        record.name = rule.name
        record.is_active = rule.is_active
        record.priority = rule.priority
        record.service_ids = list(rule.service_ids)
        record.routing_target = rule.routing_target.value
        record.routing_strategy = rule.routing_strategy.value
        record.fallback_action = rule.fallback_action.value
        record.match_criteria = dict(rule.match_criteria)
        if isinstance(rule.scope, VendorScope):
            record.scope = RuleScopeKind.VENDOR.value
            record.owner_vendor_id = rule.scope.vendor_id
            record.allowed_vendor_ids = []
            record.excluded_vendor_ids = []
        else:
            record.scope = RuleScopeKind.GLOBAL.value
            record.owner_vendor_id = None
            record.allowed_vendor_ids = list(rule.scope.allowed_vendor_ids)
            record.excluded_vendor_ids = list(rule.scope.excluded_vendor_ids)

    def create(self, rule: AutomationRule, session: Optional[Session] = None) -> AutomationRule:
        with self.db.use_session(session) as s:
            record = AutomationRuleRecord()
            self._apply(record, rule)
            s.add(record)
            s.flush()
            return self.to_rule(record)

    def get(self, rule_id: int, session: Optional[Session] = None) -> Optional[AutomationRule]:
        with self.db.use_session(session) as s:
            record = s.get(AutomationRuleRecord, rule_id)
            return self.to_rule(record) if record else None

    def list(self, session: Optional[Session] = None) -> List[AutomationRule]:
        """All rules that can be read back as valid rules, in evaluation order."""
        rules, _ = self.load(session=session)
        return rules

    def update(
        self, rule_id: int, changes: Dict[str, Any], session: Optional[Session] = None
    ) -> Optional[AutomationRule]:
        """
        Edit a rule in place. Audit rows keep the rule id only, so edits never
        rewrite history; they apply to future decisions.
        """
        with self.db.use_session(session) as s:
            record = s.get(AutomationRuleRecord, rule_id)
            if record is None:
                return None
            current = self.to_rule(record).model_dump()
            current.update(changes)
            try:
                updated = AutomationRule(**current)
            except ValidationError as e:
                raise InvalidConfiguration(f"rule {rule_id}", str(e)) from e
            self._apply(record, updated)
            s.flush()
            return self.to_rule(record)

    def load(
        self, active_only: bool = False, session: Optional[Session] = None
    ) -> Tuple[List[AutomationRule], List[Tuple[Optional[int], str]]]:
        """Return (valid rules ordered by priority desc then creation, skipped rows with reasons)."""
        with self.db.use_session(session) as s:
            stmt = select(AutomationRuleRecord)
            if active_only:
                stmt = stmt.where(AutomationRuleRecord.is_active.is_(True))
            records = s.execute(stmt).scalars().all()

            rules: List[AutomationRule] = []
            skipped: List[Tuple[Optional[int], str]] = []
            for record in records:
                try:
                    rules.append(self.to_rule(record))
                except InvalidConfiguration as e:
                    skipped.append((record.id, e.reason))
                    logger.warning(
                        f"Skipping rule {record.id}: {e.reason}",
                        event_type=EventType.RULE_SKIPPED,
                        rule_id=record.id,
                    )

        rules.sort(key=lambda r: (-r.priority, r.id or 0))
        return rules, skipped


class RuleMatcher:
    """Picks the single highest-priority applicable rule for a job."""

    def __init__(self, store: RuleStore):
        self.store = store

    def evaluate(self, job: Job, session: Optional[Session] = None) -> RuleMatch:
        rules, skipped = self.store.load(active_only=True, session=session)
        pinned = pinned_vendor_of(job)

        considered: List[int] = []
        for rule in rules:
            if not rule.applies_to_service(job.service_id):
                continue
            # Vendor rules refine an existing vendor choice, they never originate one
            if isinstance(rule.scope, VendorScope) and rule.scope.vendor_id != pinned:
                continue
            considered.append(rule.id)
            if rule.matches_criteria(job):
                logger.log_event(
                    EventType.RULE_MATCHED,
                    f"Rule {rule.id} matched job {job.id}",
                    job_id=job.id,
                    rule_id=rule.id,
                )
                return RuleMatch(rule=rule, considered=considered, skipped=skipped)

        logger.log_event(
            EventType.RULE_NOT_MATCHED,
            f"No rule matched job {job.id}",
            job_id=job.id,
            service_id=job.service_id,
        )
        return RuleMatch(rule=None, considered=considered, skipped=skipped)

    def match(self, job: Job, session: Optional[Session] = None) -> Optional[AutomationRule]:
        return self.evaluate(job, session=session).rule
