"""Shared fixtures: a file-backed database, a controllable clock and a fake ledger gateway."""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import OperationsDatabase
from errors import TransientDependencyError
from models import User, Participant
from orchestrator import Orchestrator


class Clock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0, hours: float = 0):
        self.now += timedelta(seconds=seconds, minutes=minutes, hours=hours)


class FakeGateway:
    """In-memory stand-in for LedgerGateway with switchable failures."""

    def __init__(self):
        self.ledgers = {}          # character_id -> {type_id: quantity}
        self.prices = {}           # type_id -> best buy
        self.names = {}
        self.failing_characters = set()
        self.failing_prices = set()
        self.ledger_calls = []

    def set_ledger(self, character_id: int, readings: dict):
        self.ledgers[character_id] = dict(readings)

    def get_mining_ledger(self, character_id, access_token):
        self.ledger_calls.append(character_id)
        if character_id in self.failing_characters:
            raise TransientDependencyError(f"ledger down for {character_id}")
        readings = self.ledgers.get(character_id, {})
        return [{"type_id": t, "quantity": q} for t, q in sorted(readings.items())]

    def get_best_buy_price(self, type_id):
        if type_id in self.failing_prices:
            raise TransientDependencyError(f"no price for {type_id}")
        return self.prices.get(type_id, 0.0)

    def get_adjusted_prices(self):
        return {}

    def get_type_name(self, type_id):
        return self.names.get(type_id, f"Ore {type_id}")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def db(tmp_path):
    database = OperationsDatabase(str(tmp_path / "ops.db"))
    yield database
    database.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orch(db, gateway, clock):
    return Orchestrator(db, gateway, clock=clock, grace_period=5,
                        inactivity_threshold=2 * 60 * 60, sync_window=600)


def make_user(db, name: str, character_id: int) -> User:
    user = User(name=name, character_id=character_id, access_token=f"token-{character_id}")
    return db.create_user(user)


def seed_history(db, user_id: str, statuses):
    """Give a user participant rows with the given statuses in unrelated past operations."""
    with db.transaction() as cur:
        for status in statuses:
            db.insert_participant(cur, Participant(
                operation_id=f"past-{status}-{user_id}", user_id=user_id, status=status,
                join_time="2026-01-01T00:00:00.000000+00:00",
                leave_time="2026-01-01T01:00:00.000000+00:00",
            ))


def grant_admin(db, operation_id: str, user_id: str):
    with db.transaction() as cur:
        db.grant_admin(cur, operation_id, user_id)
