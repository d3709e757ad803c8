"""
Mining Ops — Snapshot Capture
Reads a pilot's ledger through the gateway and stores it as one capture.
The gateway call always happens before the write transaction opens.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict

from database import OperationsDatabase
from errors import ValidationError, StateConflictError, TransientDependencyError
from gateway import LedgerGateway
from models import (
    MarketPrice, SnapshotKind, ParticipantStatus, OperationStatus, from_iso, to_iso, utc_now,
)

logger = logging.getLogger(__name__)

# Type names are re-fetched once they are older than this
TYPE_INFO_MAX_AGE = timedelta(days=1)


class SnapshotRecorder:
    def __init__(self, db: OperationsDatabase, gateway: LedgerGateway,
                 clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.gateway = gateway
        self.clock = clock

    def capture(self, operation_id: str, user_id: str, kind: str = SnapshotKind.UPDATE.value) -> Dict[int, int]:
        """
        Store one ledger reading and return it as {type_id: quantity}.

        'start' and 'update' need an active participant in a live operation;
        'end' is taken after release and only needs the user. An 'update' that
        raises any quantity above its previous reading counts as activity.
        """
        if kind not in {k.value for k in SnapshotKind}:
            raise ValidationError(f"Unknown snapshot kind: {kind}")
        user = self.db.get_user(user_id)
        if user is None:
            raise ValidationError("Unknown user")
        if kind != SnapshotKind.END.value:
            op = self.db.get_operation(operation_id)
            participant = self.db.get_participant(operation_id, user_id)
            if op is None or op.status == OperationStatus.ENDED.value:
                raise StateConflictError("Operation is not running")
            if participant is None or participant.status != ParticipantStatus.ACTIVE.value:
                raise StateConflictError("User is not an active participant")
        if not user.access_token or user.character_id is None:
            raise TransientDependencyError("No ledger credentials for user")

        ledger = self.gateway.get_mining_ledger(user.character_id, user.access_token)
        readings = {int(row["type_id"]): int(row["quantity"]) for row in ledger}
        now = self.clock()

        with self.db.transaction() as cur:
            previous = self.db.get_latest_quantities(cur, operation_id, user_id)
            self.db.insert_snapshots(cur, operation_id, user_id, kind, readings, now)
            if kind == SnapshotKind.UPDATE.value and any(
                qty > previous.get(type_id, 0) for type_id, qty in readings.items()
            ):
                self.db.touch_activity(cur, operation_id, now)

        for type_id in readings:
            self.ensure_type_info(type_id)
        logger.debug(f"Captured {kind} snapshot for {user_id} in {operation_id}: {len(readings)} type(s)")
        return readings

    def ensure_type_info(self, type_id: int):
        """Best-effort name and price lookup for a newly seen resource type."""
        updated = self.db.get_resource_type_updated(type_id)
        if updated is not None and self.clock() - from_iso(updated) < TYPE_INFO_MAX_AGE:
            return
        try:
            name = self.gateway.get_type_name(type_id)
            self.db.upsert_resource_type(type_id, name, updated_at=self.clock())
            best_buy = self.gateway.get_best_buy_price(type_id)
        except TransientDependencyError as e:
            logger.warning(f"Type info for {type_id} unavailable: {e}")
            return
        self.db.upsert_price(MarketPrice(type_id=type_id, best_buy=best_buy, updated_at=to_iso(self.clock())))
