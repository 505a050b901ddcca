"""
Append-only audit trail of assignment decisions.

Every row carries the capacity snapshot the decision was based on, so a
later reader can tell why a candidate was or was not picked without
looking at live state. The final row of a successful run also lists the
ledger commits it made, which is enough to rebuild the ledger by replay.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from allotment.clock import Clock
from allotment.errors import AllotmentError
from allotment.models import AutomationAssignmentLog
from allotment.persistence import DatabaseManager


class AuditStep:
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_ASSIGNED = "skipped_already_assigned"
    RULE_MATCH = "rule_match"
    VENDOR_SELECTION = "vendor_selection"
    DESIGNER_SELECTION = "designer_selection"
    FINAL_RESULT = "final_result"


@dataclass
class AuditEntry:
    step: str
    result: str
    reason: str
    capacity_snapshot: Any
    rule_id: Optional[int] = None
    candidates_considered: List[Any] = field(default_factory=list)
    chosen_id: Optional[str] = None
    ledger_commits: List[Dict[str, Any]] = field(default_factory=list)


@event.listens_for(AutomationAssignmentLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise AllotmentError("Audit log rows are append-only")


@event.listens_for(AutomationAssignmentLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise AllotmentError("Audit log rows are append-only")


class AuditLogger:
    def __init__(self, db: DatabaseManager, clock: Clock):
        self.db = db
        self.clock = clock

    def append(
        self,
        request_id: str,
        request_type: str,
        run_id: str,
        entry: AuditEntry,
        session: Optional[Session] = None,
    ) -> AutomationAssignmentLog:
        if entry.capacity_snapshot is None:
            raise ValueError("Audit entries must include a capacity snapshot")

        with self.db.use_session(session) as s:
            row = AutomationAssignmentLog(
                run_id=run_id,
                request_id=request_id,
                request_type=request_type,
                rule_id=entry.rule_id,
                step=entry.step,
                candidates_considered=list(entry.candidates_considered),
                chosen_id=entry.chosen_id,
                result=entry.result,
                reason=entry.reason,
                capacity_snapshot=entry.capacity_snapshot,
                ledger_commits=list(entry.ledger_commits),
                created_at=self.clock.now(),
            )
            s.add(row)
            s.flush()
            return row

    def append_many(
        self,
        request_id: str,
        request_type: str,
        run_id: str,
        entries: List[AuditEntry],
        session: Optional[Session] = None,
    ) -> None:
        with self.db.use_session(session) as s:
            for entry in entries:
                self.append(request_id, request_type, run_id, entry, session=s)

    def entries_for_request(
        self, request_id: str, session: Optional[Session] = None
    ) -> List[Dict[str, Any]]:
        """All rows for a job, oldest first."""
        with self.db.use_session(session) as s:
            rows = (
                s.execute(
                    select(AutomationAssignmentLog)
                    .where(AutomationAssignmentLog.request_id == request_id)
                    .order_by(AutomationAssignmentLog.id)
                )
                .scalars()
                .all()
            )
            return [to_dict(row) for row in rows]

    def replay_ledger(self, day: date, session: Optional[Session] = None) -> Dict[tuple, int]:
        """Rebuild committed units for a day from the commits recorded in the log."""
        loads: Dict[tuple, int] = defaultdict(int)
        with self.db.use_session(session) as s:
            rows = (
                s.execute(
                    select(AutomationAssignmentLog).where(
                        AutomationAssignmentLog.step == AuditStep.FINAL_RESULT
                    )
                )
                .scalars()
                .all()
            )
            for row in rows:
                for commit in row.ledger_commits or []:
                    if commit["day"] != day.isoformat():
                        continue
                    key = (commit["entity_kind"], commit["entity_id"], commit["service_id"], day)
                    loads[key] += commit["units"]
        return dict(loads)


def to_dict(row: AutomationAssignmentLog) -> Dict[str, Any]:
    return {
        "id": row.id,
        "run_id": row.run_id,
        "request_id": row.request_id,
        "request_type": row.request_type,
        "rule_id": row.rule_id,
        "step": row.step,
        "candidates_considered": row.candidates_considered,
        "chosen_id": row.chosen_id,
        "result": row.result,
        "reason": row.reason,
        "capacity_snapshot": row.capacity_snapshot,
        "ledger_commits": row.ledger_commits,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
