"""
Mining Ops — Webhook Manager
Outbound operation events, HMAC-signed, retried with backoff.

Downstream statistics subscribe to 'operation_ended'. The orchestrator emits it
only from the call that actually finalized the operation, so each operation
produces at most one statistics delivery per webhook.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import secrets
from datetime import datetime
from typing import Optional, Dict, Any, Tuple

import aiohttp

from database import OperationsDatabase
from models import Webhook, WebhookDelivery, from_iso, to_iso, utc_now

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# CONFIGURATION
# ══════════════════════════════════════════════════════════════════════════════

# Webhook is disabled after this many deliveries exhaust their retries
MAX_FAILURES = 10

# Wait before each retry; a delivery gets len(RETRY_DELAYS) attempts
RETRY_DELAYS = [5, 30, 120, 600]

DELIVERY_TIMEOUT = 10  # seconds
POLL_INTERVAL = 1      # seconds between queue scans

EVENT_TYPES = [
    "operation_created",
    "operation_ending",
    "operation_ended",
    "participant_joined",
    "participant_left",
    "participant_kicked",
    "participant_banned",
    "director_changed",
]


def retry_due(delivery: WebhookDelivery, now: datetime) -> bool:
    """First attempts go out at once; retry n waits for the sum of the first n delays."""
    if delivery.attempt_count == 0:
        return True
    waited = (now - from_iso(delivery.created_at)).total_seconds()
    return waited >= sum(RETRY_DELAYS[:delivery.attempt_count])


# ══════════════════════════════════════════════════════════════════════════════
# WEBHOOK MANAGER
# ══════════════════════════════════════════════════════════════════════════════

class WebhookManager:
    """Queues events as delivery rows and drains the queue from an asyncio task."""

    def __init__(self, db: OperationsDatabase):
        self.db = db
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if not self.running:
            self._task = asyncio.create_task(self._drain_forever())
            logger.info("Webhook delivery started")

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None
            logger.info("Webhook delivery stopped")

    async def _drain_forever(self):
        while True:
            try:
                await self.drain_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Webhook queue scan failed")
            await asyncio.sleep(POLL_INTERVAL)

    async def drain_once(self, limit: int = 50) -> int:
        """Attempt every pending delivery whose retry time has come. Returns attempts made."""
        attempts = 0
        for delivery in self.db.get_pending_deliveries(limit=limit):
            if await self._attempt(delivery):
                attempts += 1
        return attempts

    async def _attempt(self, delivery: WebhookDelivery) -> bool:
        webhook = self.db.get_webhook(delivery.webhook_id)
        if webhook is None or not webhook.is_active:
            self.db.update_webhook_delivery(delivery.id, "failed")
            return False
        if delivery.attempt_count >= len(RETRY_DELAYS):
            self.db.update_webhook_delivery(delivery.id, "failed")
            self.db.update_webhook_failure(webhook.id, increment=True, max_failures=MAX_FAILURES)
            logger.warning(f"Delivery {delivery.id} to webhook {webhook.id} gave up after retries")
            return False
        if not retry_due(delivery, utc_now()):
            return False

        ok, code, body = await self.post(webhook, delivery.event_type, delivery.payload)
        self.db.update_webhook_delivery(delivery.id, "success" if ok else "pending", code, body)
        if ok:
            self.db.update_webhook_failure(webhook.id, increment=False)
        return True

    async def post(self, webhook: Webhook, event_type: str,
                   payload: str) -> Tuple[bool, Optional[int], Optional[str]]:
        """POST one signed payload. Returns (ok, http_status, truncated_body)."""
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "MiningOps-Webhook/1.0",
            "X-Ops-Event": event_type,
            "X-Ops-Delivery-ID": json.loads(payload).get("delivery_id", "unknown"),
            "X-Ops-Signature": f"sha256={sign_payload(payload, webhook.secret_hash)}",
        }
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=DELIVERY_TIMEOUT)) as session:
                async with session.post(webhook.url, data=payload, headers=headers) as response:
                    text = (await response.text())[:500]
                    if response.status // 100 == 2:
                        return True, response.status, text
                    logger.warning(f"Webhook {webhook.id} answered {response.status} for {event_type}")
                    return False, response.status, text
        except asyncio.TimeoutError:
            logger.warning(f"Webhook {webhook.id} timed out on {event_type}")
            return False, None, "timeout"
        except aiohttp.ClientError as e:
            logger.warning(f"Webhook {webhook.id} unreachable: {e}")
            return False, None, str(e)[:500]

    def trigger(self, event_type: str, data: Dict[str, Any]) -> int:
        """Queue the event for every active subscriber. Returns deliveries queued."""
        if event_type not in EVENT_TYPES:
            return 0
        queued = 0
        for webhook in self.db.get_webhooks(active_only=True):
            wanted = json.loads(webhook.event_types)
            if "*" in wanted or event_type in wanted:
                self.db.create_webhook_delivery(webhook.id, event_type, {
                    "event": event_type,
                    "timestamp": to_iso(utc_now()),
                    "data": data,
                })
                queued += 1
        if queued:
            logger.debug(f"Queued {event_type} for {queued} webhook(s)")
        return queued

    def handle_event(self, event: dict):
        """Orchestrator listener."""
        self.trigger(event["type"], event["data"])


# ══════════════════════════════════════════════════════════════════════════════
# SIGNING
# ══════════════════════════════════════════════════════════════════════════════

def generate_webhook_secret() -> str:
    return secrets.token_urlsafe(32)


def sign_payload(payload: str, secret_hash: str) -> str:
    """HMAC-SHA256 of the payload, keyed by the stored SHA-256 of the secret."""
    return hmac.new(secret_hash.encode(), payload.encode(), hashlib.sha256).hexdigest()


def verify_webhook_signature(payload: str, signature: str, secret: str) -> bool:
    """Receiver side: derive the same key from the raw secret and compare."""
    prefix = "sha256="
    if not signature.startswith(prefix):
        return False
    expected = sign_payload(payload, hashlib.sha256(secret.encode()).hexdigest())
    return hmac.compare_digest(expected, signature[len(prefix):])
