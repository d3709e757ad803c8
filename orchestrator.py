"""
Mining Ops — Orchestrator
The public core API. Wires the registry, participant ledger, delta engine and
reconciler together and turns every outcome into a structured result:

    {"success": True, ...}
    {"success": False, "error": "...", "code": "...", ["reason": "..."]}

Design: modules raise, the orchestrator reports.
- Ledger reads happen outside transactions and degrade per user.
- Events go to registered listeners (the webhook manager) after commit.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Callable

import config
from database import OperationsDatabase
from deltas import SnapshotDeltaEngine, user_total, operation_total
from errors import (
    OperationsError, ValidationError, AuthorizationError, StateConflictError, TransientDependencyError,
)
from gateway import LedgerGateway
from models import (
    User, ParticipantAction, ParticipantStatus, OperationStatus, DisplayPhase, SnapshotKind,
    TerminationType, from_iso, to_iso, utc_now,
)
from participants import ParticipantLedger
from reconciler import LifecycleReconciler
from registry import OperationRegistry
from snapshots import SnapshotRecorder

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Deterministic coordinator for mining operations:
    1. Operation lifecycle (create/end/finalize)
    2. Membership (join/kick/ban/promote/leave)
    3. Ledger snapshots and mined-value reporting
    4. Sweeps invoked by the periodic trigger
    5. Event broadcast
    """

    def __init__(self, db: OperationsDatabase, gateway: LedgerGateway,
                 clock: Callable[[], datetime] = utc_now,
                 grace_period: int = config.GRACE_PERIOD_SECONDS,
                 inactivity_threshold: int = config.INACTIVITY_THRESHOLD_SECONDS,
                 sync_window: int = config.SYNC_WINDOW_SECONDS):
        self.db = db
        self.gateway = gateway
        self.clock = clock
        self.sync_window = sync_window
        self._event_listeners: list = []

        self.ledger = ParticipantLedger(db, clock)
        self.registry = OperationRegistry(db, self.ledger, clock, grace_period)
        self.engine = SnapshotDeltaEngine(db, clock)
        self.recorder = SnapshotRecorder(db, gateway, clock)
        self.reconciler = LifecycleReconciler(
            db, self.registry, self.recorder, gateway, clock,
            on_event=self._broadcast, inactivity_threshold=inactivity_threshold
        )

    def register_listener(self, callback):
        """Register a callback for operation events."""
        self._event_listeners.append(callback)

    def _broadcast(self, event_type: str, data: dict):
        """Notify all listeners of an event. A failing listener never fails the caller."""
        event = {"type": event_type, "data": data, "timestamp": to_iso(self.clock())}
        for listener in self._event_listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {event_type}")

    def _capture_quietly(self, operation_id: str, user_id: str, kind: str):
        """Snapshot a user's ledger; dependency trouble is logged, not returned."""
        try:
            self.recorder.capture(operation_id, user_id, kind)
            return True
        except TransientDependencyError as e:
            logger.warning(f"{kind} snapshot for {user_id} in {operation_id} skipped: {e}")
        except OperationsError as e:
            logger.error(f"{kind} snapshot for {user_id} in {operation_id} failed: {e}")
        return False

    # ── Users ────────────────────────────────────────────────────────────

    def register_user(self, name: str, character_id: int, access_token: Optional[str] = None) -> dict:
        """Create a user from an already-issued ledger token, or refresh the token."""
        name = (name or "").strip()
        if not name:
            return ValidationError("Name is required").to_result()
        try:
            existing = self.db.get_user_by_character_id(character_id)
            if existing:
                self.db.update_user_token(existing.id, access_token, name=name)
                user = self.db.get_user(existing.id)
                return {"success": True, "user": user.to_dict(), "created": False}

            user = User(name=name, character_id=character_id, access_token=access_token,
                        created_at=to_iso(self.clock()))
            self.db.create_user(user)
            logger.info(f"User {user.id} registered for character {character_id}")
            return {"success": True, "user": user.to_dict(), "created": True}
        except OperationsError as e:
            return e.to_result()

    # ── Operation lifecycle ──────────────────────────────────────────────

    def create_operation(self, director_id: str, title: str, description: str = "") -> dict:
        try:
            op = self.registry.create(director_id, title, description)
        except OperationsError as e:
            return e.to_result()

        self._capture_quietly(op.id, director_id, SnapshotKind.START.value)
        self._broadcast("operation_created", op.to_dict())
        return {"success": True, "operation": op.to_dict(), "join_code": op.join_code}

    def join_operation(self, user_id: str, join_code: str) -> dict:
        try:
            participant = self.ledger.join(user_id, join_code)
        except OperationsError as e:
            return e.to_result()

        self._capture_quietly(participant.operation_id, user_id, SnapshotKind.START.value)
        self._broadcast("participant_joined", participant.to_dict())
        return {"success": True, "participant": participant.to_dict()}

    def participant_action(self, acting_user_id: str, operation_id: str, action: str,
                           target_user_id: Optional[str] = None, immediate: bool = False) -> dict:
        """Dispatch kick/ban/promote/leave/end for one acting participant."""
        try:
            action = ParticipantAction(action)
        except ValueError:
            return ValidationError(f"Unknown action: {action}").to_result()

        try:
            if action == ParticipantAction.KICK:
                status = self.ledger.kick(operation_id, acting_user_id, target_user_id)
                self._capture_quietly(operation_id, target_user_id, SnapshotKind.END.value)
                self._broadcast("participant_kicked", {
                    "operation_id": operation_id, "user_id": target_user_id,
                    "by": acting_user_id, "status": status
                })
                return {"success": True, "action": action.value, "target_user_id": target_user_id,
                        "status": status}

            if action == ParticipantAction.BAN:
                ban = self.ledger.ban(operation_id, acting_user_id, target_user_id)
                self._capture_quietly(operation_id, target_user_id, SnapshotKind.END.value)
                self._broadcast("participant_banned", ban.to_dict())
                return {"success": True, "action": action.value, "target_user_id": target_user_id,
                        "ban": ban.to_dict()}

            if action == ParticipantAction.PROMOTE:
                new_director = self.ledger.promote(operation_id, acting_user_id, target_user_id)
                self._broadcast("director_changed", {
                    "operation_id": operation_id, "director_id": new_director, "previous": acting_user_id
                })
                return {"success": True, "action": action.value, "director_id": new_director}

            if action == ParticipantAction.LEAVE:
                result = self.ledger.leave(operation_id, acting_user_id)
                if result.operation_ended:
                    self.reconciler.after_end(operation_id, [acting_user_id])
                else:
                    self._capture_quietly(operation_id, acting_user_id, SnapshotKind.END.value)
                self._broadcast("participant_left", {"operation_id": operation_id, **result.to_dict()})
                if result.new_director_id:
                    self._broadcast("director_changed", {
                        "operation_id": operation_id, "director_id": result.new_director_id,
                        "previous": acting_user_id
                    })
                return {"success": True, "action": action.value, **result.to_dict()}

            return self._end(acting_user_id, operation_id, immediate)
        except OperationsError as e:
            logger.info(f"{action.value} on {operation_id} by {acting_user_id} rejected: {e.message}")
            return e.to_result()

    def _end(self, acting_user_id: str, operation_id: str, immediate: bool) -> dict:
        op = self.db.get_operation(operation_id)
        if op is None:
            raise ValidationError("Operation not found", reason="not_found")
        actor = self.db.get_participant(operation_id, acting_user_id)
        if actor is None or actor.status != ParticipantStatus.ACTIVE.value:
            raise AuthorizationError("You are not an active participant of this operation")
        if op.status != OperationStatus.ACTIVE.value:
            raise StateConflictError(f"Operation is {op.status}")
        if op.director_id != acting_user_id:
            raise AuthorizationError("Only the director can end the operation")

        if immediate:
            released = self.registry.end_immediately(operation_id, TerminationType.MANUAL.value)
            self.reconciler.after_end(operation_id, released)
            return {"success": True, "action": "end", "status": OperationStatus.ENDED.value,
                    "released": released}

        if not self.registry.begin_ending(operation_id, termination_type=TerminationType.MANUAL.value):
            raise StateConflictError("Operation is no longer active")
        op = self.db.get_operation(operation_id)
        self._broadcast("operation_ending", {"operation": op.to_dict()})
        return {"success": True, "action": "end", "status": op.status, "ended_at": op.ended_at,
                "countdown": self.registry.countdown(op)}

    # ── Reads ────────────────────────────────────────────────────────────

    def display_phase(self, op) -> str:
        """'syncing' is a read-time view of the first minutes after the end."""
        if op.status == OperationStatus.ENDED.value and op.ended_at:
            if self.clock() < from_iso(op.ended_at) + timedelta(seconds=self.sync_window):
                return DisplayPhase.SYNCING.value
        return op.status

    def get_operation_status(self, operation_id: str) -> dict:
        try:
            self.reconciler.reconcile(operation_id)
        except OperationsError as e:
            logger.error(f"Pull-path finalize of {operation_id} failed, serving current state: {e}")

        op = self.db.get_operation(operation_id)
        if op is None:
            return ValidationError("Operation not found", reason="not_found").to_result()

        participants = self.db.get_participants(operation_id)
        deltas = self.engine.compute(operation_id)
        return {
            "success": True,
            "operation": op.to_dict(),
            "participants": [p.to_dict() for p in participants],
            "active_count": sum(1 for p in participants if p.status == ParticipantStatus.ACTIVE.value),
            "total_value": operation_total(deltas),
            "countdown": self.registry.countdown(op),
            "phase": self.display_phase(op),
        }

    def get_mining_data(self, operation_id: str, caller_user_id: str) -> dict:
        op = self.db.get_operation(operation_id)
        if op is None:
            return ValidationError("Operation not found", reason="not_found").to_result()
        # A ladder deletion removes the participant row but keeps the snapshots
        if (self.db.get_participant(operation_id, caller_user_id) is None
                and not self.db.has_snapshots(operation_id, caller_user_id)):
            return AuthorizationError("You are not a participant of this operation").to_result()

        deltas = self.engine.compute(operation_id)
        names = {p.user_id: p.user_name for p in self.db.get_participants(operation_id)}
        users = []
        for user_id, per_type in deltas.items():
            if user_id not in names:
                user = self.db.get_user(user_id)
                names[user_id] = user.name if user else None
            users.append({
                "user_id": user_id,
                "user_name": names.get(user_id),
                "resources": [d.to_dict() for d in sorted(per_type.values(), key=lambda d: d.resource_type_id)],
                "total_value": user_total(per_type),
                "last_update": max((d.last_update for d in per_type.values() if d.last_update), default=None),
            })
        users.sort(key=lambda u: u["total_value"], reverse=True)

        prices = self.engine.load_prices()
        return {
            "success": True,
            "operation_id": operation_id,
            "users": users,
            "prices": {type_id: p.to_dict() for type_id, p in prices.items()},
            "total_value": operation_total(deltas),
        }

    def capture_snapshot(self, operation_id: str, user_id: str, kind: str = SnapshotKind.UPDATE.value) -> dict:
        try:
            readings = self.recorder.capture(operation_id, user_id, kind)
        except OperationsError as e:
            return e.to_result()
        return {"success": True, "operation_id": operation_id, "user_id": user_id, "kind": kind,
                "readings": {str(t): q for t, q in readings.items()}}

    def capture_all(self, operation_id: str) -> dict:
        """Update snapshots for every active participant; failures are per user."""
        op = self.db.get_operation(operation_id)
        if op is None:
            return ValidationError("Operation not found", reason="not_found").to_result()
        captured, skipped = [], []
        for p in self.db.get_participants(operation_id):
            if p.status != ParticipantStatus.ACTIVE.value:
                continue
            if self._capture_quietly(operation_id, p.user_id, SnapshotKind.UPDATE.value):
                captured.append(p.user_id)
            else:
                skipped.append(p.user_id)
        return {"success": True, "captured": captured, "skipped": skipped}

    # ── Sweeps ───────────────────────────────────────────────────────────

    def sweep_finalize_due(self) -> dict:
        return {"success": True, **self.reconciler.sweep_finalize_due()}

    def sweep_inactive(self) -> dict:
        return {"success": True, **self.reconciler.sweep_inactive()}

    def sweep_refresh_prices(self) -> dict:
        return {"success": True, **self.reconciler.sweep_refresh_prices()}
