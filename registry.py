"""
Mining Ops — Operation Registry
Owns operation records and their lifecycle: active -> ending -> ended, plus
the administrative override straight to ended.

Only the grace deadline is stored; countdowns are computed at read time.
"""

import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Optional, List, Callable

import config
from database import OperationsDatabase
from errors import ValidationError, StateConflictError, PersistenceError
from models import (
    Operation, Participant, OperationStatus, TerminationType, from_iso, to_iso, utc_now,
)
from participants import ParticipantLedger

logger = logging.getLogger(__name__)

JOIN_CODE_ATTEMPTS = 10


class OperationRegistry:
    def __init__(self, db: OperationsDatabase, ledger: ParticipantLedger,
                 clock: Callable[[], datetime] = utc_now,
                 grace_period: int = config.GRACE_PERIOD_SECONDS):
        self.db = db
        self.ledger = ledger
        self.clock = clock
        self.grace_period = grace_period

    def create(self, director_id: str, title: str, description: str = "") -> Operation:
        """Open a new operation with the caller as director and first admin."""
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        if len(title) > 100:
            raise ValidationError("Title must be at most 100 characters")

        for _ in range(JOIN_CODE_ATTEMPTS):
            now = self.clock()
            op = Operation(
                director_id=director_id, title=title, description=(description or "").strip(),
                created_at=to_iso(now), last_activity_at=to_iso(now)
            )
            if self.db.join_code_exists(op.join_code):
                continue
            try:
                with self.db.transaction() as cur:
                    user = self.db.get_user(director_id, cur)
                    if user is None:
                        raise ValidationError("Unknown user")
                    if user.active_operation_id:
                        raise StateConflictError("You are already in an active operation",
                                                 reason="already_active")
                    self.db.insert_operation(cur, op)
                    self.db.insert_participant(cur, Participant(
                        operation_id=op.id, user_id=director_id, is_admin=True, join_time=op.created_at
                    ))
                    if not self.db.claim_active_operation(cur, director_id, op.id):
                        raise StateConflictError("You are already in an active operation",
                                                 reason="already_active")
            except PersistenceError as e:
                # Join code taken between the check and the insert
                if isinstance(e.__cause__, sqlite3.IntegrityError) and "join_code" in str(e.__cause__):
                    continue
                raise
            logger.info(f"Operation {op.id} created by {director_id} (code {op.join_code})")
            return op
        raise PersistenceError("Could not allocate a unique join code")

    def begin_ending(self, operation_id: str, grace_period: Optional[int] = None,
                     termination_type: str = TerminationType.MANUAL.value,
                     inactive_before: Optional[datetime] = None) -> bool:
        """
        active -> ending with a deadline of now + grace period. False when the
        operation was no longer active (or, for inactivity, saw fresh activity).
        """
        grace = self.grace_period if grace_period is None else grace_period
        deadline = self.clock() + timedelta(seconds=grace)
        with self.db.transaction() as cur:
            changed = self.db.mark_ending(cur, operation_id, deadline, termination_type, inactive_before)
        if changed:
            logger.info(f"Operation {operation_id} ending ({termination_type}), deadline {to_iso(deadline)}")
        return changed

    def end_immediately(self, operation_id: str,
                        termination_type: str = TerminationType.MANUAL.value) -> List[str]:
        """Administrative override to ended. Returns the users released."""
        now = self.clock()
        with self.db.transaction() as cur:
            if not self.db.mark_ended(cur, operation_id, now, termination_type):
                raise StateConflictError("Operation has already ended")
            released = self.ledger.release_all(cur, operation_id, now).released
        logger.info(f"Operation {operation_id} ended immediately, {len(released)} participant(s) released")
        return released

    def finalize(self, operation_id: str) -> Optional[List[str]]:
        """
        The shared finalize primitive. Returns the released users when this call
        moved the operation to ended, None when there was nothing to do.
        """
        now = self.clock()
        with self.db.transaction() as cur:
            if not self.db.mark_finalized_if_due(cur, operation_id, now):
                return None
            released = self.ledger.release_all(cur, operation_id, now).released
        logger.info(f"Operation {operation_id} finalized, {len(released)} participant(s) released")
        return released

    def finalize_if_due(self, operation_id: str) -> bool:
        return self.finalize(operation_id) is not None

    def get(self, operation_id: str) -> Optional[Operation]:
        return self.db.get_operation(operation_id)

    def list_due(self) -> List[str]:
        return self.db.list_due_operations(self.clock())

    def list_inactive(self, cutoff: datetime) -> List[str]:
        return self.db.list_inactive_operations(cutoff)

    def countdown(self, op: Operation) -> int:
        """Whole seconds left in the grace period, 0 unless ending."""
        if op.status != OperationStatus.ENDING.value or not op.ended_at:
            return 0
        remaining = (from_iso(op.ended_at) - self.clock()).total_seconds()
        return max(0, math.ceil(remaining))
