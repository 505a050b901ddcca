"""
Routing strategies.

Each ``RoutingStrategy`` tag has exactly one implementation, registered in a
``StrategyRegistry``. A strategy receives candidates already annotated with
ledger headroom and returns one of them, or ``None`` when nobody has room.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from sqlalchemy.orm import Session

from allotment.models import RoundRobinCursor
from allotment.persistence import DatabaseManager
from allotment.types import Candidate, RoutingStrategy


@dataclass
class SelectionContext:
    """Where a selection happens: the cursor key for rotation and the open transaction."""

    cursor_key: str
    session: Optional[Session] = None


class Strategy(Protocol):
    tag: RoutingStrategy

    def select(self, candidates: List[Candidate], context: SelectionContext) -> Optional[Candidate]: ...


def _with_headroom(candidates: List[Candidate]) -> List[Candidate]:
    return [c for c in candidates if c.headroom > 0]


class LeastLoadedStrategy:
    """Most headroom wins; ties go to primary, then lowest weight, then lowest id."""

    tag = RoutingStrategy.LEAST_LOADED

    def select(self, candidates: List[Candidate], context: SelectionContext) -> Optional[Candidate]:
        eligible = _with_headroom(candidates)
        if not eligible:
            return None
        return min(
            eligible,
            key=lambda c: (-c.headroom, not c.is_primary, c.priority_weight, c.entity_id),
        )


class PriorityFirstStrategy:
    """Highest priority weight wins; ties break as in least-loaded."""

    tag = RoutingStrategy.PRIORITY_FIRST

    def select(self, candidates: List[Candidate], context: SelectionContext) -> Optional[Candidate]:
        eligible = _with_headroom(candidates)
        if not eligible:
            return None
        return min(eligible, key=lambda c: (-c.priority_weight, not c.is_primary, c.entity_id))


class CursorStore:
    """Durable round-robin cursors: the last id chosen for each rotation key."""

    def __init__(self, db: DatabaseManager):
        self.db = db
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def last_chosen(self, key: str, session: Optional[Session] = None) -> Optional[str]:
        with self.db.use_session(session) as s:
            cursor = s.get(RoundRobinCursor, key, populate_existing=True)
            return cursor.last_chosen_id if cursor else None

    def advance(self, key: str, ordered_ids: List[str], session: Optional[Session] = None) -> str:
        """
        Pick the first id after the last chosen one (wrapping around) and
        record it, as one step under the key's lock.
        """
        if not ordered_ids:
            raise ValueError("advance() needs at least one id")

        with self._key_lock(key), self.db.use_session(session) as s:
            cursor = s.get(RoundRobinCursor, key, populate_existing=True)
            last = cursor.last_chosen_id if cursor else None

            chosen = ordered_ids[0]
            if last is not None:
                for entity_id in ordered_ids:
                    if entity_id > last:
                        chosen = entity_id
                        break

            if cursor is None:
                s.add(RoundRobinCursor(key=key, last_chosen_id=chosen))
            else:
                cursor.last_chosen_id = chosen
            s.flush()
            return chosen


class RoundRobinStrategy:
    """Rotates over candidates ordered by id, skipping those without headroom."""

    tag = RoutingStrategy.ROUND_ROBIN

    def __init__(self, cursors: CursorStore):
        self.cursors = cursors

    def select(self, candidates: List[Candidate], context: SelectionContext) -> Optional[Candidate]:
        eligible = sorted(_with_headroom(candidates), key=lambda c: c.entity_id)
        if not eligible:
            return None
        chosen_id = self.cursors.advance(
            context.cursor_key, [c.entity_id for c in eligible], session=context.session
        )
        return next(c for c in eligible if c.entity_id == chosen_id)


class StrategyRegistry:
    """Thread-safe registry mapping each routing strategy tag to its implementation."""

    def __init__(self, cursors: CursorStore):
        self._strategies: Dict[RoutingStrategy, Strategy] = {}
        self._registry_lock = threading.RLock()
        self.register(LeastLoadedStrategy())
        self.register(RoundRobinStrategy(cursors))
        self.register(PriorityFirstStrategy())

    def register(self, strategy: Strategy) -> None:
        with self._registry_lock:
            if strategy.tag in self._strategies:
                raise ValueError(f"Strategy '{strategy.tag.value}' already registered")
            self._strategies[strategy.tag] = strategy

    def get_strategy(self, tag: RoutingStrategy) -> Strategy:
        with self._registry_lock:
            if tag not in self._strategies:
                raise KeyError(f"Strategy '{tag.value}' not found")
            return self._strategies[tag]

    def list_strategies(self) -> List[RoutingStrategy]:
        with self._registry_lock:
            return list(self._strategies.keys())

    def select(
        self, tag: RoutingStrategy, candidates: List[Candidate], context: SelectionContext
    ) -> Optional[Candidate]:
        return self.get_strategy(tag).select(candidates, context)


def vendor_cursor_key(rule_id: Optional[int]) -> str:
    return f"rule:{rule_id}:vendors"


def designer_cursor_key(vendor_id: str) -> str:
    return f"vendor:{vendor_id}:designers"
