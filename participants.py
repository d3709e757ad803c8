"""
Mining Ops — Participant Ledger
Membership of users in operations: joining, admin actions, voluntary leave,
director succession, and the escalation ladder that keeps exclusive statuses
unique per user across operations.

Design: decide, then write.
- resolve_exit_status() is a pure function of the statuses a user already
  holds elsewhere.
- Every write is conditioned on status = 'active'; a lost race writes nothing.
- The active-operation pointer is cleared only if it still names this operation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, List, Iterable, Callable

from database import OperationsDatabase
from errors import ValidationError, AuthorizationError, StateConflictError
from models import (
    Participant, BanRecord, ParticipantStatus, OperationStatus, TerminationType,
    EXCLUSIVE_STATUSES, to_iso, utc_now,
)

logger = logging.getLogger(__name__)

LEFT = ParticipantStatus.LEFT.value
KICKED = ParticipantStatus.KICKED.value
BANNED = ParticipantStatus.BANNED.value

# Ladder outcome meaning "remove the participant row"
DELETE = None


def resolve_exit_status(existing: Iterable[str], desired: str = LEFT) -> Optional[str]:
    """
    Escalation ladder.

    existing: statuses the user holds in *other* operations.
    desired: 'left' for departures and operation end, 'kicked' for kicks,
    'banned' for bans. Returns the status to write, or DELETE.

        held elsewhere    desired=left   desired=kicked
        none              left           kicked
        {left}            kicked         kicked
        {kicked}          banned         banned
        {left, kicked}    DELETE         banned
    """
    if desired == BANNED:
        return BANNED
    if desired not in EXCLUSIVE_STATUSES:
        raise ValueError(f"Not an exit status: {desired}")

    held = frozenset(existing) & EXCLUSIVE_STATUSES
    if desired == KICKED:
        return BANNED if KICKED in held else KICKED

    if not held:
        return LEFT
    if held == {LEFT}:
        return KICKED
    if held == {KICKED}:
        return BANNED
    return DELETE


@dataclass
class ExitResult:
    """Users per written status; 'deleted' holds rows removed by the ladder."""
    buckets: Dict[str, List[str]] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)

    @property
    def released(self) -> List[str]:
        users = [u for members in self.buckets.values() for u in members]
        return users + self.deleted

    def status_of(self, user_id: str) -> Optional[str]:
        for status, members in self.buckets.items():
            if user_id in members:
                return status
        return "deleted" if user_id in self.deleted else None

    def to_dict(self):
        data = {status: list(members) for status, members in self.buckets.items()}
        data["deleted"] = list(self.deleted)
        return data


@dataclass
class LeaveResult:
    user_id: str
    status: Optional[str]
    new_director_id: Optional[str] = None
    operation_ended: bool = False

    def to_dict(self):
        return {
            "user_id": self.user_id,
            "status": self.status,
            "new_director_id": self.new_director_id,
            "operation_ended": self.operation_ended,
        }


class ParticipantLedger:
    def __init__(self, db: OperationsDatabase, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    # ── Escalation ───────────────────────────────────────────────────────

    def apply_exits(self, cur, operation_id: str, user_ids: Iterable[str], desired: str,
                    now: datetime) -> ExitResult:
        """
        Move active participants out of an operation inside the caller's
        transaction. Conflicts are fetched once for the whole batch and each
        ladder bucket gets a single bulk write.
        """
        user_ids = list(dict.fromkeys(user_ids))
        result = ExitResult()
        if not user_ids:
            return result

        conflicts = self.db.get_exclusive_statuses_elsewhere(cur, operation_id, user_ids)
        buckets: Dict[Optional[str], List[str]] = {}
        for user_id in user_ids:
            buckets.setdefault(resolve_exit_status(conflicts[user_id], desired), []).append(user_id)

        # Escalated buckets first, plain 'left' last
        for status in (KICKED, BANNED):
            members = buckets.get(status)
            if members:
                written = self.db.set_status_if_active(cur, operation_id, members, status, now)
                result.buckets[status] = members
                logger.info(f"Operation {operation_id}: {written} participant(s) -> {status}")
        if buckets.get(DELETE):
            removed = self.db.delete_if_active(cur, operation_id, buckets[DELETE])
            result.deleted = buckets[DELETE]
            logger.info(f"Operation {operation_id}: {removed} participant row(s) deleted by ladder")
        if buckets.get(LEFT):
            written = self.db.set_status_if_active(cur, operation_id, buckets[LEFT], LEFT, now)
            result.buckets[LEFT] = buckets[LEFT]
            logger.info(f"Operation {operation_id}: {written} participant(s) -> left")

        self.db.clear_active_operation(cur, user_ids, operation_id)
        return result

    def release_all(self, cur, operation_id: str, now: datetime) -> ExitResult:
        """Resolve every remaining active participant of an ending operation."""
        active = self.db.get_active_user_ids(cur, operation_id)
        return self.apply_exits(cur, operation_id, active, LEFT, now)

    def _exit_one(self, cur, operation_id: str, user_id: str, desired: str, now: datetime) -> Optional[str]:
        conflicts = self.db.get_exclusive_statuses_elsewhere(cur, operation_id, [user_id])
        status = resolve_exit_status(conflicts[user_id], desired)
        if status is DELETE:
            changed = self.db.delete_if_active(cur, operation_id, [user_id])
        else:
            changed = self.db.set_status_if_active(cur, operation_id, [user_id], status, now)
        if changed != 1:
            raise StateConflictError("Participant is no longer active")
        self.db.clear_active_operation(cur, [user_id], operation_id)
        return status

    # ── Joining ──────────────────────────────────────────────────────────

    def join(self, user_id: str, join_code: str) -> Participant:
        code = (join_code or "").strip().upper()
        if not code:
            raise ValidationError("Join code is required", reason="invalid_code")

        now = self.clock()
        with self.db.transaction() as cur:
            op = self.db.get_operation_by_join_code(code, cur)
            if op is None or op.status != OperationStatus.ACTIVE.value:
                raise ValidationError("Invalid join code", reason="invalid_code")

            user = self.db.get_user(user_id, cur)
            if user is None:
                raise ValidationError("Unknown user")
            # Only a BanRecord blocks rejoining; a 'banned' row can be a ladder outcome
            if self.db.is_banned(op.id, user_id, cur):
                raise AuthorizationError("You are banned from this operation", reason="banned")
            if user.active_operation_id:
                raise StateConflictError("You are already in an active operation", reason="already_active")

            existing = self.db.get_participant(op.id, user_id, cur)
            if existing is None:
                participant = Participant(operation_id=op.id, user_id=user_id, join_time=to_iso(now))
                self.db.insert_participant(cur, participant)
            elif existing.status == ParticipantStatus.ACTIVE.value:
                raise StateConflictError("You are already in this operation", reason="already_active")
            elif not self.db.reactivate_participant(cur, op.id, user_id, now):
                raise StateConflictError("Participant changed concurrently")
            else:
                participant = Participant(operation_id=op.id, user_id=user_id,
                                          is_admin=existing.is_admin, join_time=to_iso(now))

            if not self.db.claim_active_operation(cur, user_id, op.id):
                raise StateConflictError("You are already in an active operation", reason="already_active")

        participant.user_name = user.name
        logger.info(f"User {user_id} joined operation {op.id}")
        return participant

    # ── Admin actions ────────────────────────────────────────────────────

    def _check_admin_action(self, cur, operation_id: str, acting_user_id: str,
                            target_user_id: Optional[str], director_only: bool):
        op = self.db.get_operation(operation_id, cur)
        if op is None:
            raise ValidationError("Operation not found", reason="not_found")
        actor = self.db.get_participant(operation_id, acting_user_id, cur)
        if actor is None or actor.status != ParticipantStatus.ACTIVE.value:
            raise AuthorizationError("You are not an active participant of this operation")
        if op.status != OperationStatus.ACTIVE.value:
            raise StateConflictError(f"Operation is {op.status}")
        if not target_user_id:
            raise ValidationError("Target user is required")
        if target_user_id == acting_user_id:
            raise AuthorizationError("You cannot target yourself")

        is_director = op.director_id == acting_user_id
        if director_only and not is_director:
            raise AuthorizationError("Only the director can do this")
        if not actor.is_admin and not is_director:
            raise AuthorizationError("Admin access required")

        target = self.db.get_participant(operation_id, target_user_id, cur)
        if target is None or target.status != ParticipantStatus.ACTIVE.value:
            raise ValidationError("Target is not an active participant")
        if target.is_admin and not is_director:
            raise AuthorizationError("Only the director can act on another admin")
        return op, actor, target

    def kick(self, operation_id: str, acting_user_id: str, target_user_id: Optional[str]) -> str:
        """Remove a participant. Returns the status actually written."""
        now = self.clock()
        with self.db.transaction() as cur:
            self._check_admin_action(cur, operation_id, acting_user_id, target_user_id, director_only=False)
            status = self._exit_one(cur, operation_id, target_user_id, KICKED, now)
        logger.info(f"User {target_user_id} kicked from operation {operation_id} by {acting_user_id} ({status})")
        return status

    def ban(self, operation_id: str, acting_user_id: str, target_user_id: Optional[str]) -> BanRecord:
        now = self.clock()
        with self.db.transaction() as cur:
            self._check_admin_action(cur, operation_id, acting_user_id, target_user_id, director_only=False)
            self._exit_one(cur, operation_id, target_user_id, BANNED, now)
            ban = BanRecord(operation_id=operation_id, user_id=target_user_id,
                            banned_by=acting_user_id, banned_at=to_iso(now))
            self.db.upsert_ban(cur, ban)
        logger.info(f"User {target_user_id} banned from operation {operation_id} by {acting_user_id}")
        return ban

    def promote(self, operation_id: str, acting_user_id: str, target_user_id: Optional[str]) -> str:
        """Hand the director role to another active participant."""
        with self.db.transaction() as cur:
            self._check_admin_action(cur, operation_id, acting_user_id, target_user_id, director_only=True)
            if not self.db.transfer_director(cur, operation_id, acting_user_id, target_user_id):
                raise StateConflictError("Director changed concurrently")
            if not self.db.grant_admin(cur, operation_id, target_user_id):
                raise StateConflictError("Target is no longer active")
        logger.info(f"Operation {operation_id}: director {acting_user_id} -> {target_user_id}")
        return target_user_id

    # ── Voluntary leave ──────────────────────────────────────────────────

    def leave(self, operation_id: str, user_id: str) -> LeaveResult:
        """
        Leave an operation that has not ended. A departing director hands over
        to the earliest-joined admin, else the earliest-joined member; with
        nobody left the operation ends on the spot.
        """
        now = self.clock()
        with self.db.transaction() as cur:
            op = self.db.get_operation(operation_id, cur)
            if op is None:
                raise ValidationError("Operation not found", reason="not_found")
            if op.status == OperationStatus.ENDED.value:
                raise StateConflictError("Operation has already ended")
            me = self.db.get_participant(operation_id, user_id, cur)
            if me is None or me.status != ParticipantStatus.ACTIVE.value:
                raise AuthorizationError("You are not an active participant of this operation")

            status = self._exit_one(cur, operation_id, user_id, LEFT, now)
            result = LeaveResult(user_id=user_id, status=status)

            if op.director_id == user_id:
                successor = self.db.find_successor(cur, operation_id, user_id, admins_only=True)
                if successor is None:
                    successor = self.db.find_successor(cur, operation_id, user_id, admins_only=False)
                    if successor is not None:
                        self.db.grant_admin(cur, operation_id, successor)

                if successor is not None:
                    if not self.db.transfer_director(cur, operation_id, user_id, successor):
                        raise StateConflictError("Director changed concurrently")
                    result.new_director_id = successor
                else:
                    self.db.mark_ended(cur, operation_id, now, TerminationType.MANUAL.value)
                    result.operation_ended = True

        if result.new_director_id:
            logger.info(f"Operation {operation_id}: director {user_id} left, {result.new_director_id} succeeds")
        elif result.operation_ended:
            logger.info(f"Operation {operation_id} ended: last participant {user_id} left")
        return result
