"""
Capacity ledger.

Tracks configured daily capacity and same-day committed units for every
(vendor, service) and (designer, service) pair. Load only resets when the
clock crosses into a new day; there is no release path.
"""

import threading
from datetime import date
from typing import Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from allotment.clock import Clock
from allotment.errors import CapacityExceeded
from allotment.logging import EventType, get_logger
from allotment.metrics import MetricNames, get_metrics
from allotment.models import CapacityLoad, VendorDesignerCapacity, VendorServiceCapacity
from allotment.persistence import DatabaseManager
from allotment.types import CapacitySnapshot, EntityKind

logger = get_logger("allotment.ledger")

LedgerKey = Tuple[str, str, str, date]


class CapacityLedger:
    """Headroom queries and atomic commits against per-day capacity."""

    def __init__(self, db: DatabaseManager, clock: Clock):
        self.db = db
        self.clock = clock
        self.metrics = get_metrics()
        self._locks: Dict[LedgerKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: LedgerKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def _capacity_row(self, session: Session, kind: EntityKind, entity_id: str, service_id: str):
        if kind == EntityKind.VENDOR:
            stmt = select(VendorServiceCapacity).where(
                VendorServiceCapacity.vendor_id == entity_id,
                VendorServiceCapacity.service_id == service_id,
            )
        else:
            stmt = select(VendorDesignerCapacity).where(
                VendorDesignerCapacity.designer_id == entity_id,
                VendorDesignerCapacity.service_id == service_id,
            )
        return session.execute(stmt).scalar_one_or_none()

    def _load_row(
        self, session: Session, kind: EntityKind, entity_id: str, service_id: str, day: date
    ) -> Optional[CapacityLoad]:
        return session.execute(
            select(CapacityLoad).where(
                CapacityLoad.entity_kind == kind.value,
                CapacityLoad.entity_id == entity_id,
                CapacityLoad.service_id == service_id,
                CapacityLoad.day == day,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def snapshot(
        self,
        kind: EntityKind,
        entity_id: str,
        service_id: str,
        day: Optional[date] = None,
        session: Optional[Session] = None,
    ) -> CapacitySnapshot:
        """Read capacity configuration and today's load for one entity/service."""
        day = day or self.clock.today()
        with self.db.use_session(session) as s:
            capacity = self._capacity_row(s, kind, entity_id, service_id)
            load = self._load_row(s, kind, entity_id, service_id, day)
            committed = load.committed_units if load else 0

            if capacity is None:
                return CapacitySnapshot(
                    entity_kind=kind,
                    entity_id=entity_id,
                    service_id=service_id,
                    day=day,
                    daily_capacity=0,
                    committed_units=committed,
                    headroom=0,
                    auto_assign_enabled=False,
                    configured=False,
                )

            enabled = bool(capacity.auto_assign_enabled)
            daily_capacity = capacity.daily_capacity or 0
            # Disabled or zero-capacity rows stay configured but leave every pool
            headroom = max(0, daily_capacity - committed) if enabled and daily_capacity > 0 else 0
            return CapacitySnapshot(
                entity_kind=kind,
                entity_id=entity_id,
                service_id=service_id,
                day=day,
                daily_capacity=daily_capacity,
                committed_units=committed,
                headroom=headroom,
                auto_assign_enabled=enabled,
                priority_weight=capacity.priority_weight or 0,
                is_primary=bool(getattr(capacity, "is_primary", False)),
            )

    def headroom(
        self,
        kind: EntityKind,
        entity_id: str,
        service_id: str,
        day: Optional[date] = None,
        session: Optional[Session] = None,
    ) -> int:
        return self.snapshot(kind, entity_id, service_id, day, session).headroom

    def commit(
        self,
        kind: EntityKind,
        entity_id: str,
        service_id: str,
        units: int = 1,
        day: Optional[date] = None,
        session: Optional[Session] = None,
    ) -> CapacitySnapshot:
        """
        Atomically consume ``units`` of headroom.

        The headroom check and the increment happen as one conditional UPDATE
        under a per-key lock, so two concurrent callers can never both take the
        last unit. Raises CapacityExceeded when the units do not fit; the caller
        decides whether to try another candidate.

        When ``session`` is given the commit joins the caller's transaction and
        only becomes durable when the caller commits.
        """
        if units <= 0:
            raise ValueError("units must be positive")

        day = day or self.clock.today()
        key = (kind.value, entity_id, service_id, day)

        with self._key_lock(key), self.db.use_session(session) as s:
            before = self.snapshot(kind, entity_id, service_id, day, session=s)
            if units > before.headroom:
                self._record_exceeded(before, units)
                raise CapacityExceeded(kind.value, entity_id, service_id, day, units, before.headroom)

            self._ensure_load_row(s, kind, entity_id, service_id, day)

            result = s.execute(
                update(CapacityLoad)
                .where(
                    CapacityLoad.entity_kind == kind.value,
                    CapacityLoad.entity_id == entity_id,
                    CapacityLoad.service_id == service_id,
                    CapacityLoad.day == day,
                    CapacityLoad.committed_units + units <= before.daily_capacity,
                )
                .values(committed_units=CapacityLoad.committed_units + units)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                current = self.snapshot(kind, entity_id, service_id, day, session=s)
                self._record_exceeded(current, units)
                raise CapacityExceeded(
                    kind.value, entity_id, service_id, day, units, current.headroom
                )

            after = self.snapshot(kind, entity_id, service_id, day, session=s)

        self.metrics.increment_counter(MetricNames.LEDGER_COMMITS, labels={"kind": kind.value})
        logger.log_capacity_commit(kind.value, entity_id, service_id, units, after.headroom)
        return after

    def _ensure_load_row(
        self, session: Session, kind: EntityKind, entity_id: str, service_id: str, day: date
    ) -> None:
        if self._load_row(session, kind, entity_id, service_id, day) is not None:
            return
        # The per-key lock covers this process; a concurrent insert from another
        # process fails on the unique constraint and surfaces to the caller.
        session.add(
            CapacityLoad(
                entity_kind=kind.value,
                entity_id=entity_id,
                service_id=service_id,
                day=day,
                committed_units=0,
            )
        )
        session.flush()

    def _record_exceeded(self, snapshot: CapacitySnapshot, units: int) -> None:
        self.metrics.increment_counter(
            MetricNames.CAPACITY_EXCEEDED, labels={"kind": snapshot.entity_kind.value}
        )
        logger.info(
            f"Capacity exceeded for {snapshot.entity_kind.value} {snapshot.entity_id}",
            event_type=EventType.CAPACITY_EXCEEDED,
            service_id=snapshot.service_id,
            metadata={"requested": units, "headroom": snapshot.headroom},
        )

    def loads_for_day(self, day: Optional[date] = None, session: Optional[Session] = None) -> Dict[LedgerKey, int]:
        """All committed units for a day, keyed by (kind, entity, service, day)."""
        day = day or self.clock.today()
        with self.db.use_session(session) as s:
            rows = s.execute(select(CapacityLoad).where(CapacityLoad.day == day)).scalars().all()
            return {
                (row.entity_kind, row.entity_id, row.service_id, row.day): row.committed_units
                for row in rows
                if row.committed_units
            }

    def set_vendor_capacity(
        self,
        vendor_id: str,
        service_id: str,
        daily_capacity: int,
        auto_assign_enabled: bool = True,
        priority_weight: int = 0,
        routing_strategy: str = "least_loaded",
        session: Optional[Session] = None,
    ) -> dict:
        """Create or update the capacity row for a vendor and service."""
        if daily_capacity < 0:
            raise ValueError("daily_capacity must be >= 0")
        with self.db.use_session(session) as s:
            row = self._capacity_row(s, EntityKind.VENDOR, vendor_id, service_id)
            if row is None:
                row = VendorServiceCapacity(vendor_id=vendor_id, service_id=service_id)
                s.add(row)
            row.daily_capacity = daily_capacity
            row.auto_assign_enabled = auto_assign_enabled
            row.priority_weight = priority_weight
            row.routing_strategy = routing_strategy
            s.flush()
            return {
                "vendor_id": row.vendor_id,
                "service_id": row.service_id,
                "daily_capacity": row.daily_capacity,
                "auto_assign_enabled": row.auto_assign_enabled,
                "priority_weight": row.priority_weight,
                "routing_strategy": row.routing_strategy,
            }

    def set_designer_capacity(
        self,
        designer_id: str,
        service_id: str,
        daily_capacity: int,
        is_primary: bool = False,
        auto_assign_enabled: bool = True,
        priority_weight: int = 0,
        session: Optional[Session] = None,
    ) -> dict:
        """Create or update the capacity row for a designer and service."""
        if daily_capacity < 0:
            raise ValueError("daily_capacity must be >= 0")
        with self.db.use_session(session) as s:
            row = self._capacity_row(s, EntityKind.DESIGNER, designer_id, service_id)
            if row is None:
                row = VendorDesignerCapacity(designer_id=designer_id, service_id=service_id)
                s.add(row)
            row.daily_capacity = daily_capacity
            row.is_primary = is_primary
            row.auto_assign_enabled = auto_assign_enabled
            row.priority_weight = priority_weight
            s.flush()
            return {
                "designer_id": row.designer_id,
                "service_id": row.service_id,
                "daily_capacity": row.daily_capacity,
                "is_primary": row.is_primary,
                "auto_assign_enabled": row.auto_assign_enabled,
                "priority_weight": row.priority_weight,
            }
