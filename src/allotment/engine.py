"""
Engine wiring.

``build_engine`` assembles the ledger, rule store, strategies, quota
enforcer, audit logger and orchestrator around one database and one clock.
``AssignmentEngine`` is the surface the HTTP adapter and embedding
applications call.
"""

from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from allotment.audit import AuditLogger
from allotment.clock import Clock, SystemClock
from allotment.collaborators import (
    Directory,
    InMemoryDirectory,
    InMemoryJobStore,
    JobStore,
    LoggingNotifier,
    Notifier,
    WebhookNotifier,
)
from allotment.config import AllotmentConfig
from allotment.errors import JobNotFound
from allotment.ledger import CapacityLedger
from allotment.logging import EventType, get_logger
from allotment.metrics import MetricNames, get_metrics
from allotment.orchestrator import AssignmentOrchestrator
from allotment.persistence import DatabaseManager
from allotment.quota import PriorityAllowance, PriorityQuotaEnforcer
from allotment.rules import AutomationRule, RuleMatcher, RuleStore
from allotment.strategies import CursorStore, StrategyRegistry
from allotment.types import AssignmentResult, EntityKind, RoutingStrategy

logger = get_logger("allotment.engine")


class AssignmentEngine:
    def __init__(
        self,
        config: AllotmentConfig,
        db: DatabaseManager,
        clock: Clock,
        job_store: JobStore,
        directory: Directory,
        notifier: Notifier,
    ):
        self.config = config
        self.db = db
        self.clock = clock
        self.job_store = job_store
        self.directory = directory
        self.notifier = notifier

        self.ledger = CapacityLedger(db, clock)
        self.rules = RuleStore(db, default_strategy=config.default_strategy)
        self.cursors = CursorStore(db)
        self.strategies = StrategyRegistry(self.cursors)
        self.audit = AuditLogger(db, clock)
        self.quota = PriorityQuotaEnforcer(job_store, config.priority_quota)
        self.orchestrator = AssignmentOrchestrator(
            db=db,
            clock=clock,
            job_store=job_store,
            directory=directory,
            notifier=notifier,
            ledger=self.ledger,
            matcher=RuleMatcher(self.rules),
            strategies=self.strategies,
            audit=self.audit,
        )

    # Assignment

    def run_assignment(self, job_id: str) -> AssignmentResult:
        return self.orchestrator.run_assignment(job_id)

    def automation_logs(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit rows for a job, oldest first."""
        if self.job_store.get_job(job_id) is None:
            raise JobNotFound(job_id)
        return self.audit.entries_for_request(job_id)

    def replay_ledger(self, day: Optional[date] = None) -> Dict[tuple, int]:
        return self.audit.replay_ledger(day or self.clock.today())

    def ledger_drift(self, day: Optional[date] = None) -> Dict[tuple, Tuple[int, int]]:
        """
        Compare the ledger with a replay of the audit log for one day.

        Returns the keys that disagree, mapped to ``(ledger units, replayed units)``.
        An empty dict means the ledger is exactly what the log says it should be.
        """
        day = day or self.clock.today()
        loads = self.ledger.loads_for_day(day)
        replayed = self.replay_ledger(day)
        drift = {
            key: (loads.get(key, 0), replayed.get(key, 0))
            for key in sorted(set(loads) | set(replayed))
            if loads.get(key, 0) != replayed.get(key, 0)
        }

        get_metrics().set_gauge(MetricNames.LEDGER_DRIFT, len(drift), labels={"day": day.isoformat()})
        if drift:
            logger.warning(
                f"Ledger disagrees with audit log for {len(drift)} key(s) on {day.isoformat()}",
                event_type=EventType.LEDGER_DRIFT,
                metadata={
                    "/".join(str(part) for part in key): {"ledger": units, "replayed": replayed_units}
                    for key, (units, replayed_units) in drift.items()
                },
            )
        return drift

    # Priority quota

    def check_priority_allowance(
        self, client_id: str, requested_priority: str, job_id: Optional[str] = None
    ) -> PriorityAllowance:
        return self.quota.allowed_priority(client_id, requested_priority, job_id=job_id)

    # Rules

    def create_rule(self, rule: AutomationRule) -> AutomationRule:
        created = self.rules.create(rule)
        logger.info(
            f"Created automation rule {created.id}",
            event_type=EventType.RULE_CREATED,
            rule_id=created.id,
        )
        return created

    def get_rule(self, rule_id: int) -> Optional[AutomationRule]:
        return self.rules.get(rule_id)

    def list_rules(self) -> List[AutomationRule]:
        return self.rules.list()

    def update_rule(self, rule_id: int, changes: Dict[str, Any]) -> Optional[AutomationRule]:
        updated = self.rules.update(rule_id, changes)
        if updated is not None:
            logger.info(
                f"Updated automation rule {rule_id}",
                event_type=EventType.RULE_UPDATED,
                rule_id=rule_id,
                metadata={"fields": sorted(changes)},
            )
        return updated

    # Capacity

    def set_vendor_capacity(
        self,
        vendor_id: str,
        service_id: str,
        daily_capacity: int,
        auto_assign_enabled: bool = True,
        priority_weight: int = 0,
        routing_strategy: Optional[str] = None,
    ) -> dict:
        row = self.ledger.set_vendor_capacity(
            vendor_id,
            service_id,
            daily_capacity,
            auto_assign_enabled=auto_assign_enabled,
            priority_weight=priority_weight,
            routing_strategy=routing_strategy or self.config.default_strategy,
        )
        self._log_capacity(EntityKind.VENDOR, vendor_id, row)
        return row

    def set_designer_capacity(
        self,
        designer_id: str,
        service_id: str,
        daily_capacity: int,
        is_primary: bool = False,
        auto_assign_enabled: bool = True,
        priority_weight: int = 0,
    ) -> dict:
        row = self.ledger.set_designer_capacity(
            designer_id,
            service_id,
            daily_capacity,
            is_primary=is_primary,
            auto_assign_enabled=auto_assign_enabled,
            priority_weight=priority_weight,
        )
        self._log_capacity(EntityKind.DESIGNER, designer_id, row)
        return row

    def _log_capacity(self, kind: EntityKind, entity_id: str, row: dict) -> None:
        logger.info(
            f"Configured {kind.value} {entity_id} capacity for {row['service_id']}",
            event_type=EventType.CAPACITY_CONFIGURED,
            service_id=row["service_id"],
            metadata=row,
        )

    def headroom(self, kind: EntityKind, entity_id: str, service_id: str) -> dict:
        return self.ledger.snapshot(kind, entity_id, service_id).to_dict()

    def list_strategies(self) -> List[RoutingStrategy]:
        return self.strategies.list_strategies()

    def close(self) -> None:
        if isinstance(self.notifier, WebhookNotifier):
            self.notifier.close()
        self.db.close()


def build_engine(
    config: Optional[AllotmentConfig] = None,
    job_store: Optional[JobStore] = None,
    directory: Optional[Directory] = None,
    notifier: Optional[Notifier] = None,
    clock: Optional[Clock] = None,
    db: Optional[DatabaseManager] = None,
) -> AssignmentEngine:
    """
    Build an engine from configuration, filling in defaults for anything not
    supplied: a database from ``config.database_url``, a system clock in the
    configured timezone, in-memory collaborators, and a webhook notifier when
    ``config.notifier.url`` is set.
    """
    config = config or AllotmentConfig()

    if db is None:
        db = DatabaseManager(config.database_url)
    db.initialize_database()

    if notifier is None:
        if config.notifier.url:
            notifier = WebhookNotifier(config.notifier.url, config.notifier.timeout_seconds)
        else:
            notifier = LoggingNotifier()

    engine = AssignmentEngine(
        config=config,
        db=db,
        clock=clock or SystemClock(config.timezone),
        job_store=job_store if job_store is not None else InMemoryJobStore(),
        directory=directory if directory is not None else InMemoryDirectory(),
        notifier=notifier,
    )
    logger.log_event(
        EventType.ENGINE_START,
        "Assignment engine ready",
        metadata={
            "database_url": db.database_url,
            "timezone": config.timezone,
            "default_strategy": config.default_strategy,
        },
    )
    return engine
