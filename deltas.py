"""
Mining Ops — Snapshot Delta Engine
Turns absolute cumulative ledger readings into per-user mined deltas.

Snapshots are absolute: the external ledger reports "total mined today", so
what a pilot mined during an operation is the latest reading minus the
baseline taken when they joined.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, Optional, Callable

import config
from database import OperationsDatabase
from models import Snapshot, MarketPrice, from_iso, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ResourceDelta:
    """Mined quantity of one resource type and its value at best buy."""
    resource_type_id: int
    quantity: int
    value: float
    name: Optional[str] = None
    last_update: Optional[str] = None

    def to_dict(self):
        return {
            "resource_type_id": self.resource_type_id,
            "name": self.name or f"Type #{self.resource_type_id}",
            "quantity": self.quantity,
            "value": self.value,
            "last_update": self.last_update,
        }


def compute_deltas(baselines: Iterable[Snapshot], latest: Iterable[Snapshot],
                   prices: Dict[int, float],
                   names: Optional[Dict[int, str]] = None) -> Dict[str, Dict[int, ResourceDelta]]:
    """
    Pure delta computation.

    baselines: the 'start' rows. latest: the most recent 'update'/'end' row per
    (user, type). prices: best buy per type id. Non-positive deltas are dropped,
    so an external reset never shows up as negative mining.
    """
    names = names or {}
    base = {(s.user_id, s.resource_type_id): s.quantity for s in baselines}

    result: Dict[str, Dict[int, ResourceDelta]] = {}
    for snap in latest:
        key = (snap.user_id, snap.resource_type_id)
        delta = snap.quantity - base.get(key, 0)
        if delta <= 0:
            continue
        price = prices.get(snap.resource_type_id) or 0.0
        result.setdefault(snap.user_id, {})[snap.resource_type_id] = ResourceDelta(
            resource_type_id=snap.resource_type_id,
            quantity=delta,
            value=delta * price,
            name=names.get(snap.resource_type_id),
            last_update=snap.captured_at,
        )
    return result


def is_warming_up(created_at: datetime, now: datetime, update_captures: int,
                  warmup_seconds: int = config.WARMUP_SECONDS,
                  min_updates: int = config.MIN_WARMUP_UPDATES) -> bool:
    """
    Freshness guard. A young operation may read a stale ledger value equal to
    yesterday's total, so deltas stay hidden until enough updates arrived.
    """
    young = now - created_at < timedelta(seconds=warmup_seconds)
    return young and update_captures < min_updates


def user_total(deltas: Dict[int, ResourceDelta]) -> float:
    return sum(d.value for d in deltas.values())


def operation_total(deltas: Dict[str, Dict[int, ResourceDelta]]) -> float:
    return sum(user_total(per_user) for per_user in deltas.values())


class SnapshotDeltaEngine:
    """Loads snapshot rows and prices for an operation and runs compute_deltas."""

    def __init__(self, db: OperationsDatabase, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def load_prices(self) -> Dict[int, MarketPrice]:
        return self.db.get_prices()

    def compute(self, operation_id: str) -> Dict[str, Dict[int, ResourceDelta]]:
        op = self.db.get_operation(operation_id)
        if op is None:
            return {}

        captures = self.db.count_update_captures_since(operation_id, op.created_at)
        if is_warming_up(from_iso(op.created_at), self.clock(), captures):
            logger.debug(f"Operation {operation_id} warming up ({captures} update captures)")
            return {}

        prices = self.load_prices()
        return compute_deltas(
            self.db.get_baselines(operation_id),
            self.db.get_latest_readings(operation_id),
            {type_id: p.best_buy for type_id, p in prices.items()},
            self.db.get_resource_type_names(),
        )
