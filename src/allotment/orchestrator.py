"""
Assignment orchestrator.

Runs one decision per job: rule matching, vendor candidate filtering and
selection, optional designer selection, ledger commits and the audit trail.
The ledger units, cursor movement and audit rows of a run share one
database transaction; a failed run keeps only its audit rows.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from allotment.audit import AuditEntry, AuditLogger, AuditStep
from allotment.clock import Clock
from allotment.collaborators import AssignmentUpdate, Directory, Job, JobStore, Notifier
from allotment.errors import CapacityExceeded, JobNotFound, NoEligibleCandidate, StorageFailure
from allotment.ledger import CapacityLedger
from allotment.logging import EventType, clear_run_id, get_logger, get_run_id, set_run_id
from allotment.metrics import MetricNames, Timer, get_metrics
from allotment.persistence import DatabaseManager
from allotment.rules import AutomationRule, RuleMatcher
from allotment.strategies import (
    SelectionContext,
    StrategyRegistry,
    designer_cursor_key,
    vendor_cursor_key,
)
from allotment.types import (
    AssignmentResult,
    AssignmentStatus,
    Candidate,
    EntityKind,
    FallbackAction,
    LedgerCommit,
)

logger = get_logger("allotment.orchestrator")

LOCKED_NOTE = "skipped — locked"
ALREADY_ASSIGNED_NOTE = "Request already has assignment - skipping automation"
NO_RULE_NOTE = "no rule matched"


@dataclass
class Outcome:
    status: AssignmentStatus
    note: str
    rule: Optional[AutomationRule] = None
    vendor_id: Optional[str] = None
    vendor_committed: bool = False
    designer_id: Optional[str] = None
    commits: List[LedgerCommit] = field(default_factory=list)
    # Entities whose post-run headroom goes into the final audit row
    involved: List[Tuple[EntityKind, str]] = field(default_factory=list)


class AssignmentOrchestrator:
    def __init__(
        self,
        db: DatabaseManager,
        clock: Clock,
        job_store: JobStore,
        directory: Directory,
        notifier: Notifier,
        ledger: CapacityLedger,
        matcher: RuleMatcher,
        strategies: StrategyRegistry,
        audit: AuditLogger,
    ):
        self.db = db
        self.clock = clock
        self.job_store = job_store
        self.directory = directory
        self.notifier = notifier
        self.ledger = ledger
        self.matcher = matcher
        self.strategies = strategies
        self.audit = audit
        self.metrics = get_metrics()
        # SQLite allows one writer; decision transactions in this process run one at a time
        self._decision_lock = threading.Lock()

    def run_assignment(self, job_id: str) -> AssignmentResult:
        """Decide who receives a job and persist the decision."""
        job = self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)

        run_id = f"run_{uuid.uuid4().hex[:12]}"
        outer_id = get_run_id()
        set_run_id(run_id)
        logger.log_assignment_start(job.id, service_id=job.service_id)
        try:
            with Timer(self.metrics, MetricNames.ASSIGNMENT_DURATION) as timer:
                if job.locked_assignment:
                    result = self._skip(job, run_id, AuditStep.SKIPPED_LOCKED, LOCKED_NOTE)
                elif job.assignee_id:
                    # Designer set by hand, with or without a vendor
                    result = self._skip(job, run_id, AuditStep.SKIPPED_ASSIGNED, ALREADY_ASSIGNED_NOTE)
                else:
                    result = self._route(job, run_id)

            self.metrics.increment_counter(
                MetricNames.ASSIGNMENT_RUNS, labels={"status": result.status.value}
            )
            logger.log_assignment_end(
                job.id,
                result.status.value,
                result.note,
                duration_ms=timer.duration_ms,
                rule_id=result.rule_id,
                vendor_id=result.vendor_assignee_id,
                designer_id=result.assignee_id,
            )
            return result
        finally:
            if outer_id:
                set_run_id(outer_id)
            else:
                clear_run_id()

    def _skip(self, job: Job, run_id: str, step: str, note: str) -> AssignmentResult:
        """Record a no-op run. The job and the ledger are left untouched."""
        entry = AuditEntry(
            step=step,
            result=AssignmentStatus.SKIPPED.value,
            reason=note,
            capacity_snapshot=[],
        )
        try:
            self.audit.append(job.id, job.request_type, run_id, entry)
        except SQLAlchemyError as e:
            raise self._storage_failure("audit append", e) from e
        return AssignmentResult(
            job_id=job.id, status=AssignmentStatus.SKIPPED, note=note, run_id=run_id
        )

    def _route(self, job: Job, run_id: str) -> AssignmentResult:
        now = self.clock.now()
        day = now.date()
        entries: List[AuditEntry] = []

        with self._decision_lock:
            outcome = self._decide_durably(job, run_id, day, entries)

        try:
            self._write_back(job, outcome, now)
        except Exception as e:
            # The decision is committed; the job record now lags the ledger and audit log
            raise self._storage_failure(
                "job write-back",
                e,
                job_id=job.id,
                metadata={
                    "status": outcome.status.value,
                    "commits": [c.to_dict() for c in outcome.commits],
                },
            ) from e
        self._notify(job, outcome, run_id)

        return AssignmentResult(
            job_id=job.id,
            status=outcome.status,
            note=outcome.note,
            vendor_assignee_id=outcome.vendor_id if outcome.status.is_success else None,
            assignee_id=outcome.designer_id if outcome.status.is_success else None,
            rule_id=outcome.rule.id if outcome.rule else None,
            run_id=run_id,
            commits=outcome.commits,
        )

    def _decide_durably(
        self, job: Job, run_id: str, day: date, entries: List[AuditEntry]
    ) -> Outcome:
        session = self.db.create_session()
        try:
            outcome = self._decide(job, day, session, entries)
            if not outcome.status.is_success:
                # Drop any cursor movement or units taken before the failing step
                session.rollback()

            final_snapshot = [
                self.ledger.snapshot(kind, entity_id, job.service_id, day, session=session).to_dict()
                for kind, entity_id in outcome.involved
            ]
            entries.append(
                AuditEntry(
                    step=AuditStep.FINAL_RESULT,
                    result=outcome.status.value,
                    reason=outcome.note,
                    capacity_snapshot=final_snapshot,
                    rule_id=outcome.rule.id if outcome.rule else None,
                    candidates_considered=[
                        entity_id
                        for entity_id in (outcome.vendor_id, outcome.designer_id)
                        if entity_id is not None
                    ],
                    chosen_id=outcome.vendor_id if outcome.status.is_success else None,
                    ledger_commits=[commit.to_dict() for commit in outcome.commits],
                )
            )
            self.audit.append_many(job.id, job.request_type, run_id, entries, session=session)
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise self._storage_failure("assignment decision", e) from e
        finally:
            session.close()
        return outcome

    def _decide(
        self, job: Job, day: date, session: Session, entries: List[AuditEntry]
    ) -> Outcome:
        match = self.matcher.evaluate(job, session=session)
        skipped_note = "".join(
            f"; skipped rule {rule_id}: {reason}" for rule_id, reason in match.skipped
        )

        if match.rule is None:
            entries.append(
                AuditEntry(
                    step=AuditStep.RULE_MATCH,
                    result="no_rule",
                    reason=NO_RULE_NOTE + skipped_note,
                    capacity_snapshot=[],
                    candidates_considered=match.considered,
                )
            )
            return Outcome(status=AssignmentStatus.FAILED_NO_VENDOR, note=NO_RULE_NOTE)

        rule = match.rule
        entries.append(
            AuditEntry(
                step=AuditStep.RULE_MATCH,
                result="matched",
                reason=match.reason + skipped_note,
                capacity_snapshot=[],
                rule_id=rule.id,
                candidates_considered=match.considered,
                chosen_id=str(rule.id),
            )
        )

        outcome = Outcome(status=AssignmentStatus.ASSIGNED, note="", rule=rule)
        try:
            self._route_vendor(job, rule, day, session, entries, outcome)
            if rule.requires_designer:
                self._route_designer(job, rule, day, session, entries, outcome)
        except NoEligibleCandidate as e:
            outcome.status = AssignmentStatus(e.status)
            outcome.note = e.reason
            outcome.commits = []
            return outcome

        outcome.note = self._success_note(outcome)
        return outcome

    def _route_vendor(
        self,
        job: Job,
        rule: AutomationRule,
        day: date,
        session: Session,
        entries: List[AuditEntry],
        outcome: Outcome,
    ) -> None:
        if job.vendor_assignee_id:
            if not rule.scope.permits(job.vendor_assignee_id):
                reason = f"Assigned vendor {job.vendor_assignee_id} is excluded by this rule"
                entries.append(
                    AuditEntry(
                        step=AuditStep.VENDOR_SELECTION,
                        result="excluded",
                        reason=reason,
                        capacity_snapshot=[],
                        rule_id=rule.id,
                        candidates_considered=[job.vendor_assignee_id],
                    )
                )
                raise NoEligibleCandidate("vendor", reason, AssignmentStatus.FAILED_NO_VENDOR.value)

            snapshot = self.ledger.snapshot(
                EntityKind.VENDOR, job.vendor_assignee_id, job.service_id, day, session=session
            )
            entries.append(
                AuditEntry(
                    step=AuditStep.VENDOR_SELECTION,
                    result="pinned",
                    reason="Vendor already assigned; routing designer level only",
                    capacity_snapshot=[snapshot.to_dict()],
                    rule_id=rule.id,
                    candidates_considered=[job.vendor_assignee_id],
                    chosen_id=job.vendor_assignee_id,
                )
            )
            outcome.vendor_id = job.vendor_assignee_id
            outcome.involved.append((EntityKind.VENDOR, job.vendor_assignee_id))
            return

        listings = self.directory.get_vendors_for_service(job.service_id)
        notes: List[str] = []
        if job.preferred_vendor_id:
            listings = [v for v in listings if v.vendor_id == job.preferred_vendor_id]
            if not listings:
                notes.append(f"preferred vendor {job.preferred_vendor_id} does not offer this service")

        offered = {v.vendor_id for v in listings}
        for vendor_id in getattr(rule.scope, "allowed_vendor_ids", []):
            if vendor_id not in offered and not job.preferred_vendor_id:
                notes.append(f"allow-listed vendor {vendor_id} does not offer this service")

        permitted = [v for v in listings if rule.scope.permits(v.vendor_id)]
        for v in listings:
            if not rule.scope.permits(v.vendor_id):
                notes.append(f"vendor {v.vendor_id} excluded by rule")

        if not permitted:
            reason = "No vendors available for this service"
            entries.append(
                AuditEntry(
                    step=AuditStep.VENDOR_SELECTION,
                    result="no_candidates",
                    reason=_join(reason, notes),
                    capacity_snapshot=[],
                    rule_id=rule.id,
                    candidates_considered=[v.vendor_id for v in listings],
                )
            )
            raise NoEligibleCandidate("vendor", reason, AssignmentStatus.FAILED_NO_VENDOR.value)

        candidates = []
        for listing in permitted:
            snapshot = self.ledger.snapshot(
                EntityKind.VENDOR, listing.vendor_id, job.service_id, day, session=session
            )
            candidates.append(
                Candidate(
                    entity_id=listing.vendor_id,
                    headroom=snapshot.headroom,
                    priority_weight=(
                        snapshot.priority_weight if snapshot.configured else listing.priority_weight
                    ),
                    snapshot=snapshot,
                )
            )
            if not snapshot.configured:
                notes.append(f"vendor {listing.vendor_id} has no capacity configured")

        chosen = self._select_and_commit(
            job,
            rule,
            EntityKind.VENDOR,
            candidates,
            vendor_cursor_key(rule.id),
            day,
            session,
            entries,
            notes,
            outcome,
        )
        if chosen is None:
            outcome.involved = [(EntityKind.VENDOR, c.entity_id) for c in candidates]
            raise NoEligibleCandidate(
                "vendor",
                "All eligible vendors are at capacity",
                AssignmentStatus.FAILED_CAPACITY.value,
            )

        outcome.vendor_id = chosen.entity_id
        outcome.vendor_committed = True
        outcome.involved.append((EntityKind.VENDOR, chosen.entity_id))

    def _route_designer(
        self,
        job: Job,
        rule: AutomationRule,
        day: date,
        session: Session,
        entries: List[AuditEntry],
        outcome: Outcome,
    ) -> None:
        vendor_id = outcome.vendor_id
        listings = self.directory.get_designers_for_vendor_and_service(vendor_id, job.service_id)
        if not listings:
            reason = "No active designers found for this vendor"
            entries.append(
                AuditEntry(
                    step=AuditStep.DESIGNER_SELECTION,
                    result="no_candidates",
                    reason=reason,
                    capacity_snapshot=[],
                    rule_id=rule.id,
                )
            )
            raise NoEligibleCandidate("designer", reason, AssignmentStatus.FAILED_NO_DESIGNER.value)

        notes: List[str] = []
        candidates = []
        for listing in listings:
            snapshot = self.ledger.snapshot(
                EntityKind.DESIGNER, listing.designer_id, job.service_id, day, session=session
            )
            candidates.append(
                Candidate(
                    entity_id=listing.designer_id,
                    headroom=snapshot.headroom,
                    priority_weight=(
                        snapshot.priority_weight if snapshot.configured else listing.priority_weight
                    ),
                    is_primary=snapshot.is_primary if snapshot.configured else listing.is_primary,
                    snapshot=snapshot,
                )
            )
            if not snapshot.configured:
                notes.append(f"designer {listing.designer_id} has no capacity configured")

        chosen = self._select_and_commit(
            job,
            rule,
            EntityKind.DESIGNER,
            candidates,
            designer_cursor_key(vendor_id),
            day,
            session,
            entries,
            notes,
            outcome,
        )
        if chosen is None:
            # Designers exist but are full today: the vendor keeps the job and
            # places it by hand later.
            outcome.status = AssignmentStatus.PARTIAL_ASSIGNED
            outcome.involved.extend((EntityKind.DESIGNER, c.entity_id) for c in candidates)
            return

        outcome.designer_id = chosen.entity_id
        outcome.involved.append((EntityKind.DESIGNER, chosen.entity_id))

    def _select_and_commit(
        self,
        job: Job,
        rule: AutomationRule,
        kind: EntityKind,
        candidates: List[Candidate],
        cursor_key: str,
        day: date,
        session: Session,
        entries: List[AuditEntry],
        notes: List[str],
        outcome: Outcome,
    ) -> Optional[Candidate]:
        """
        Let the rule's strategy pick a candidate and take one unit from it.
        A lost race on the ledger drops that candidate and picks again; the
        loop ends when a commit succeeds or nobody has headroom left.
        """
        step = AuditStep.VENDOR_SELECTION if kind == EntityKind.VENDOR else AuditStep.DESIGNER_SELECTION
        strategy = rule.routing_strategy
        context = SelectionContext(cursor_key=cursor_key, session=session)
        pool = list(candidates)

        while True:
            chosen = self.strategies.select(strategy, pool, context)
            logger.log_candidate_choice(
                job.id,
                kind.value,
                chosen.entity_id if chosen else None,
                strategy.value,
                [c.entity_id for c in pool],
                rule_id=rule.id,
            )
            snapshot = [c.snapshot.to_dict() for c in pool if c.snapshot is not None]
            considered = [c.entity_id for c in pool]

            if chosen is None:
                entries.append(
                    AuditEntry(
                        step=step,
                        result="no_capacity",
                        reason=_join(f"All eligible {kind.value}s are at capacity", notes),
                        capacity_snapshot=snapshot,
                        rule_id=rule.id,
                        candidates_considered=considered,
                    )
                )
                return None

            try:
                self.ledger.commit(kind, chosen.entity_id, job.service_id, 1, day, session=session)
            except CapacityExceeded as e:
                entries.append(
                    AuditEntry(
                        step=step,
                        result="capacity_exceeded",
                        reason=str(e),
                        capacity_snapshot=snapshot,
                        rule_id=rule.id,
                        candidates_considered=considered,
                        chosen_id=chosen.entity_id,
                    )
                )
                pool = [c for c in pool if c.entity_id != chosen.entity_id]
                continue

            entries.append(
                AuditEntry(
                    step=step,
                    result="selected",
                    reason=_join(f"Selected {kind.value} using {strategy.value} strategy", notes),
                    capacity_snapshot=snapshot,
                    rule_id=rule.id,
                    candidates_considered=considered,
                    chosen_id=chosen.entity_id,
                )
            )
            outcome.commits.append(
                LedgerCommit(
                    entity_kind=kind,
                    entity_id=chosen.entity_id,
                    service_id=job.service_id,
                    day=day,
                    units=1,
                )
            )
            return chosen

    def _success_note(self, outcome: Outcome) -> str:
        if outcome.status == AssignmentStatus.PARTIAL_ASSIGNED:
            return f"Auto-assigned to vendor {outcome.vendor_id} (no designer available)"
        if outcome.designer_id:
            return f"Auto-assigned to vendor {outcome.vendor_id} and designer {outcome.designer_id}"
        if not outcome.vendor_committed:
            return f"Vendor {outcome.vendor_id} already assigned; nothing to route"
        return f"Auto-assigned to vendor {outcome.vendor_id}"

    def _write_back(self, job: Job, outcome: Outcome, now: datetime) -> None:
        update = AssignmentUpdate(
            auto_assignment_status=outcome.status.value,
            last_automation_run_at=now,
            last_automation_note=outcome.note,
        )
        if outcome.status.is_success:
            if outcome.vendor_committed:
                update.vendor_assignee_id = outcome.vendor_id
                update.vendor_assigned_at = now
            if outcome.designer_id:
                update.assignee_id = outcome.designer_id
                update.assigned_at = now
                update.status = "in-progress"
        self.job_store.set_assignment(job.id, update)

    def _notify(self, job: Job, outcome: Outcome, run_id: str) -> None:
        rule_id = outcome.rule.id if outcome.rule else None
        if outcome.status.is_success:
            if not (outcome.vendor_committed or outcome.designer_id):
                return
            event = "job.auto_assigned"
            payload = {
                "job_id": job.id,
                "status": outcome.status.value,
                "vendor_id": outcome.vendor_id,
                "designer_id": outcome.designer_id,
                "rule_id": rule_id,
                "run_id": run_id,
            }
        elif outcome.rule is not None and outcome.rule.fallback_action == FallbackAction.NOTIFY_ONLY:
            event = "job.assignment_failed"
            payload = {
                "job_id": job.id,
                "status": outcome.status.value,
                "note": outcome.note,
                "rule_id": rule_id,
                "run_id": run_id,
            }
        else:
            return

        try:
            self.notifier.notify(event, payload)
        except Exception as e:
            # Notifications are fire-and-forget; the decision is already durable
            self.metrics.increment_counter(MetricNames.NOTIFIER_FAILURES, labels={"event": event})
            logger.log_notifier_error(event, e, job_id=job.id)

    def _storage_failure(self, operation: str, error: Exception, **kwargs) -> StorageFailure:
        self.metrics.increment_counter(MetricNames.STORAGE_FAILURES)
        logger.error(
            f"Storage failure during {operation}: {error}",
            event_type=EventType.STORAGE_FAILURE,
            **kwargs,
        )
        return StorageFailure(operation, error)


def _join(reason: str, notes: List[str]) -> str:
    if not notes:
        return reason
    return reason + " (" + "; ".join(notes) + ")"
