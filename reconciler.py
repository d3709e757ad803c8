"""
Mining Ops — Lifecycle Reconciler
Drives due operations to 'ended' from two triggers that share one primitive:

- pull path: every status read reconciles the operation it reads
- sweep path: a periodic tick finalizes everything that is due

Both call OperationRegistry.finalize(); whichever commits first performs the
transition, the other sees zero affected rows and does nothing.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, List

import config
from database import OperationsDatabase
from errors import OperationsError, TransientDependencyError
from gateway import LedgerGateway
from models import MarketPrice, SnapshotKind, TerminationType, to_iso, utc_now
from registry import OperationRegistry
from snapshots import SnapshotRecorder

logger = logging.getLogger(__name__)


class LifecycleReconciler:
    def __init__(self, db: OperationsDatabase, registry: OperationRegistry,
                 recorder: SnapshotRecorder, gateway: LedgerGateway,
                 clock: Callable[[], datetime] = utc_now,
                 on_event: Optional[Callable[[str, dict], None]] = None,
                 inactivity_threshold: int = config.INACTIVITY_THRESHOLD_SECONDS):
        self.db = db
        self.registry = registry
        self.recorder = recorder
        self.gateway = gateway
        self.clock = clock
        self.on_event = on_event
        self.inactivity_threshold = inactivity_threshold

    def _emit(self, event_type: str, data: dict):
        if self.on_event is not None:
            self.on_event(event_type, data)

    def reconcile(self, operation_id: str) -> bool:
        """Pull path. True only for the call that performed the transition."""
        released = self.registry.finalize(operation_id)
        if released is None:
            return False
        self.after_end(operation_id, released)
        return True

    def after_end(self, operation_id: str, released: List[str]):
        """
        End snapshots for released users, then a single operation_ended event.
        The transition is already committed, so no snapshot failure may stop the event.
        """
        for user_id in released:
            try:
                self.recorder.capture(operation_id, user_id, SnapshotKind.END.value)
            except TransientDependencyError as e:
                logger.warning(f"End snapshot for {user_id} in {operation_id} skipped: {e}")
            except OperationsError as e:
                logger.error(f"End snapshot for {user_id} in {operation_id} failed: {e}")
            except Exception:
                logger.exception(f"End snapshot for {user_id} in {operation_id} crashed")

        op = self.db.get_operation(operation_id)
        self._emit("operation_ended", {
            "operation": op.to_dict() if op else {"id": operation_id},
            "released": released,
        })

    def sweep_finalize_due(self) -> dict:
        """Sweep path. One failing operation never stops the others."""
        finalized, failed = [], []
        for operation_id in self.registry.list_due():
            try:
                if self.reconcile(operation_id):
                    finalized.append(operation_id)
            except OperationsError as e:
                logger.error(f"Finalizing operation {operation_id} failed, retrying next cycle: {e}")
                failed.append(operation_id)
        if finalized or failed:
            logger.info(f"Finalize sweep: {len(finalized)} finalized, {len(failed)} failed")
        return {"finalized": finalized, "failed": failed}

    def sweep_inactive(self) -> dict:
        """Move operations idle past the threshold into their grace period."""
        cutoff = self.clock() - timedelta(seconds=self.inactivity_threshold)
        ending, failed = [], []
        for operation_id in self.registry.list_inactive(cutoff):
            try:
                if self.registry.begin_ending(
                    operation_id, termination_type=TerminationType.INACTIVITY.value, inactive_before=cutoff
                ):
                    ending.append(operation_id)
                    op = self.db.get_operation(operation_id)
                    self._emit("operation_ending", {"operation": op.to_dict() if op else {"id": operation_id}})
            except OperationsError as e:
                logger.error(f"Inactivity check for {operation_id} failed: {e}")
                failed.append(operation_id)
        if ending:
            logger.info(f"Inactivity sweep: {len(ending)} operation(s) ending")
        return {"ending": ending, "failed": failed}

    def sweep_refresh_prices(self) -> dict:
        """Refresh best buy prices for every known resource type."""
        updated, failed = [], []
        try:
            sell_prices = self.gateway.get_adjusted_prices()
        except TransientDependencyError as e:
            logger.warning(f"Adjusted prices unavailable, keeping sell prices at 0: {e}")
            sell_prices = {}

        for type_id in self.db.get_resource_type_ids():
            try:
                best_buy = self.gateway.get_best_buy_price(type_id)
                self.db.upsert_price(MarketPrice(
                    type_id=type_id, best_buy=best_buy, best_sell=sell_prices.get(type_id, 0.0),
                    updated_at=to_iso(self.clock())
                ))
                updated.append(type_id)
            except OperationsError as e:
                logger.warning(f"Price refresh for type {type_id} failed: {e}")
                failed.append(type_id)
        logger.info(f"Price sweep: {len(updated)} updated, {len(failed)} failed")
        return {"updated": updated, "failed": failed}
