"""
Mining Ops — Data Models
Defines all core entities: users, operations, participants, ledger
snapshots, bans, plus resource types, market prices, sessions and webhooks.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import uuid
import secrets
import hashlib


class OperationStatus(Enum):
    ACTIVE = "active"
    ENDING = "ending"   # Grace period running, ended_at is the deadline
    ENDED = "ended"


class TerminationType(Enum):
    MANUAL = "manual"
    INACTIVITY = "inactivity"


class ParticipantStatus(Enum):
    ACTIVE = "active"
    LEFT = "left"
    KICKED = "kicked"
    BANNED = "banned"


# Statuses the store allows at most once per user across all operations
EXCLUSIVE_STATUSES = frozenset({ParticipantStatus.LEFT.value, ParticipantStatus.KICKED.value})


class SnapshotKind(Enum):
    START = "start"     # Baseline, one per (operation, user, type)
    UPDATE = "update"
    END = "end"


class ParticipantAction(Enum):
    KICK = "kick"
    BAN = "ban"
    PROMOTE = "promote"
    LEAVE = "leave"
    END = "end"


class DisplayPhase(Enum):
    """What a status reader should show. 'syncing' is never persisted."""
    ACTIVE = "active"
    ENDING = "ending"
    SYNCING = "syncing"
    ENDED = "ended"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width ISO timestamp so stored values compare correctly as text."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    return datetime.fromisoformat(value)


JOIN_CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
JOIN_CODE_LENGTH = 6


def generate_join_code() -> str:
    """Generate a join code like 'K7Q2ZD'."""
    return "".join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def generate_session_token() -> str:
    """Generate a session token: ops_sess_{32_random_hex}."""
    return f"ops_sess_{secrets.token_hex(16)}"


def hash_token(token: str) -> str:
    """Hash a token using SHA-256."""
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class User:
    """A pilot account. The ledger access token is issued by the identity provider."""
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    name: str = ""
    character_id: Optional[int] = None
    access_token: Optional[str] = None
    active_operation_id: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "character_id": self.character_id,
            "active_operation_id": self.active_operation_id,
            "created_at": self.created_at,
        }


@dataclass
class Operation:
    """A time-bounded group session with one director."""
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    director_id: str = ""
    join_code: str = field(default_factory=generate_join_code)
    title: str = ""
    description: str = ""
    status: str = "active"
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    ended_at: Optional[str] = None          # Deadline while ending, actual end once ended
    termination_type: Optional[str] = None
    last_activity_at: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "director_id": self.director_id,
            "join_code": self.join_code,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_at": self.created_at,
            "ended_at": self.ended_at,
            "termination_type": self.termination_type,
            "last_activity_at": self.last_activity_at,
        }


@dataclass
class Participant:
    """Membership of one user in one operation."""
    operation_id: str = ""
    user_id: str = ""
    status: str = "active"
    is_admin: bool = False
    join_time: str = field(default_factory=lambda: to_iso(utc_now()))
    leave_time: Optional[str] = None
    user_name: Optional[str] = None

    def to_dict(self):
        return {
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "status": self.status,
            "is_admin": self.is_admin,
            "join_time": self.join_time,
            "leave_time": self.leave_time,
        }


@dataclass
class Snapshot:
    """An absolute cumulative ledger reading. snapshot_id is the capture sequence."""
    operation_id: str = ""
    user_id: str = ""
    resource_type_id: int = 0
    quantity: int = 0
    captured_at: str = field(default_factory=lambda: to_iso(utc_now()))
    kind: str = "update"
    snapshot_id: Optional[int] = None

    def to_dict(self):
        return {
            "snapshot_id": self.snapshot_id,
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "resource_type_id": self.resource_type_id,
            "quantity": self.quantity,
            "captured_at": self.captured_at,
            "kind": self.kind,
        }


@dataclass
class BanRecord:
    operation_id: str = ""
    user_id: str = ""
    banned_by: str = ""
    banned_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self):
        return {
            "operation_id": self.operation_id,
            "user_id": self.user_id,
            "banned_by": self.banned_by,
            "banned_at": self.banned_at,
        }


@dataclass
class MarketPrice:
    """Current best buy valuation of one resource type."""
    type_id: int = 0
    best_buy: float = 0.0
    best_sell: float = 0.0
    name: Optional[str] = None
    updated_at: str = field(default_factory=lambda: to_iso(utc_now()))

    def to_dict(self):
        return {
            "type_id": self.type_id,
            "name": self.name or f"Type #{self.type_id}",
            "best_buy": self.best_buy,
            "best_sell": self.best_sell,
            "updated_at": self.updated_at,
        }


@dataclass
class Session:
    """Short-lived bearer session (default 24h TTL)."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str = ""
    token_hash: str = ""
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    expires_at: str = ""
    is_active: bool = True

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "is_active": self.is_active,
        }


@dataclass
class Webhook:
    """Webhook configuration for external integrations (statistics, notifications)."""
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    url: str = ""
    secret_hash: str = ""     # SHA-256 hash of webhook secret
    event_types: str = "[]"   # JSON array of event types
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    is_active: bool = True
    failure_count: int = 0
    last_failure: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "url": self.url,
            "event_types": self.event_types,
            "created_at": self.created_at,
            "is_active": self.is_active,
            "failure_count": self.failure_count,
        }


@dataclass
class WebhookDelivery:
    """Record of a webhook delivery attempt."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    webhook_id: str = ""
    event_type: str = ""
    payload: str = ""         # JSON payload
    attempt_count: int = 0
    status: str = "pending"   # pending, success, failed
    response_code: Optional[int] = None
    response_body: Optional[str] = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    delivered_at: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "webhook_id": self.webhook_id,
            "event_type": self.event_type,
            "attempt_count": self.attempt_count,
            "status": self.status,
            "response_code": self.response_code,
            "created_at": self.created_at,
            "delivered_at": self.delivered_at,
        }
