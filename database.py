"""
Mining Ops — Database Layer
SQLite persistence for operations, participants, ledger snapshots and bans.

Every mutation that other triggers can race is a conditioned write
(``... WHERE status = 'active'``) executed inside ``transaction()``, and the
caller inspects ``rowcount`` to learn whether it won. Each thread gets its own
connection; there is no in-process locking.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Iterable, Tuple, Set

from errors import PersistenceError
from models import (
    User, Operation, Participant, Snapshot, BanRecord, MarketPrice, Session,
    Webhook, WebhookDelivery, EXCLUSIVE_STATUSES,
    hash_token, generate_session_token, to_iso, utc_now,
)

logger = logging.getLogger(__name__)


def _placeholders(values) -> str:
    return ",".join("?" * len(values))


class OperationsDatabase:
    def __init__(self, db_path: str = "operations.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self._local = threading.local()
        self._create_tables()

    @property
    def conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None:
            # Autocommit mode: transactions are opened explicitly by transaction()
            conn = sqlite3.connect(
                self.db_path, timeout=self.timeout,
                isolation_level=None, check_same_thread=False
            )
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
        return conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    @contextmanager
    def transaction(self):
        """
        Run a block as one write transaction and yield its cursor.
        BEGIN IMMEDIATE takes the write lock up front, so concurrent triggers
        serialize on the database instead of failing mid-way.
        """
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not start transaction: {e}") from e
        cursor = conn.cursor()
        try:
            yield cursor
        except sqlite3.Error as e:
            conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back: {e}")
            raise PersistenceError(f"Transaction failed: {e}") from e
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                conn.execute("ROLLBACK")
                raise PersistenceError(f"Commit failed: {e}") from e

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                character_id INTEGER UNIQUE,
                access_token TEXT,
                active_operation_id TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                director_id TEXT NOT NULL,
                join_code TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                description TEXT DEFAULT '',
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                ended_at TEXT,
                termination_type TEXT,
                last_activity_at TEXT,
                FOREIGN KEY (director_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS participants (
                operation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                is_admin INTEGER NOT NULL DEFAULT 0,
                join_time TEXT NOT NULL,
                leave_time TEXT,
                PRIMARY KEY (operation_id, user_id),
                FOREIGN KEY (operation_id) REFERENCES operations(id),
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            -- A user may hold each exclusive status at most once across all operations
            CREATE UNIQUE INDEX IF NOT EXISTS uq_participants_exclusive_status
                ON participants(user_id, status) WHERE status IN ('left', 'kicked');

            CREATE TABLE IF NOT EXISTS snapshots (
                snapshot_id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                resource_type_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL,
                captured_at TEXT NOT NULL,
                kind TEXT NOT NULL,
                FOREIGN KEY (operation_id) REFERENCES operations(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS uq_snapshots_single_start
                ON snapshots(operation_id, user_id, resource_type_id) WHERE kind = 'start';

            CREATE TABLE IF NOT EXISTS ban_records (
                operation_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                banned_by TEXT NOT NULL,
                banned_at TEXT NOT NULL,
                PRIMARY KEY (operation_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS resource_types (
                type_id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                last_updated TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS market_prices (
                type_id INTEGER PRIMARY KEY,
                best_buy REAL NOT NULL DEFAULT 0,
                best_sell REAL NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                token_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                is_active INTEGER DEFAULT 1,
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            CREATE TABLE IF NOT EXISTS webhooks (
                id TEXT PRIMARY KEY,
                url TEXT NOT NULL,
                secret_hash TEXT NOT NULL,
                event_types TEXT NOT NULL,
                created_at TEXT NOT NULL,
                is_active INTEGER DEFAULT 1,
                failure_count INTEGER DEFAULT 0,
                last_failure TEXT
            );

            CREATE TABLE IF NOT EXISTS webhook_deliveries (
                id TEXT PRIMARY KEY,
                webhook_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                payload TEXT NOT NULL,
                attempt_count INTEGER DEFAULT 0,
                status TEXT DEFAULT 'pending',
                response_code INTEGER,
                response_body TEXT,
                created_at TEXT NOT NULL,
                delivered_at TEXT,
                FOREIGN KEY (webhook_id) REFERENCES webhooks(id)
            );

            CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status, ended_at);
            CREATE INDEX IF NOT EXISTS idx_operations_activity ON operations(status, last_activity_at);
            CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id, status);
            CREATE INDEX IF NOT EXISTS idx_snapshots_op ON snapshots(operation_id, kind);
            CREATE INDEX IF NOT EXISTS idx_snapshots_user_type ON snapshots(operation_id, user_id, resource_type_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_hash ON sessions(token_hash);
            CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_status ON webhook_deliveries(status);
        """)

    # ══════════════════════════════════════════════════════════════════════
    # USER OPERATIONS
    # ══════════════════════════════════════════════════════════════════════

    def _row_to_user(self, row) -> User:
        return User(
            id=row["id"], name=row["name"], character_id=row["character_id"],
            access_token=row["access_token"], active_operation_id=row["active_operation_id"],
            created_at=row["created_at"]
        )

    def create_user(self, user: User) -> User:
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO users (id, name, character_id, access_token, active_operation_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (user.id, user.name, user.character_id, user.access_token,
                 user.active_operation_id, user.created_at)
            )
        return user

    def get_user(self, user_id: str, cur: Optional[sqlite3.Cursor] = None) -> Optional[User]:
        cur = cur or self.conn.cursor()
        row = cur.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_character_id(self, character_id: int) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM users WHERE character_id = ?", (character_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_token(self, user_id: str, access_token: Optional[str], name: Optional[str] = None) -> bool:
        """Refresh name and ledger token. A missing token keeps the stored one."""
        with self.transaction() as cur:
            cur.execute(
                "UPDATE users SET access_token = COALESCE(?, access_token), name = COALESCE(?, name) "
                "WHERE id = ?",
                (access_token or None, name or None, user_id)
            )
            return cur.rowcount > 0

    def claim_active_operation(self, cur: sqlite3.Cursor, user_id: str, operation_id: str) -> bool:
        """Point the user at an operation, only if they are not already in one."""
        cur.execute(
            "UPDATE users SET active_operation_id = ? WHERE id = ? AND active_operation_id IS NULL",
            (operation_id, user_id)
        )
        return cur.rowcount > 0

    def clear_active_operation(self, cur: sqlite3.Cursor, user_ids: Iterable[str], operation_id: str) -> int:
        """Compare-and-clear: never touches a pointer that moved to another operation."""
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        cur.execute(
            f"UPDATE users SET active_operation_id = NULL "
            f"WHERE active_operation_id = ? AND id IN ({_placeholders(user_ids)})",
            [operation_id] + user_ids
        )
        return cur.rowcount

    # ══════════════════════════════════════════════════════════════════════
    # SESSION OPERATIONS
    # ══════════════════════════════════════════════════════════════════════

    def create_session(self, user_id: str, ttl_hours: int = 24) -> Tuple[Session, str]:
        """Create a session for a user, returns session and raw token."""
        raw_token = generate_session_token()
        now = utc_now()
        session = Session(
            user_id=user_id,
            token_hash=hash_token(raw_token),
            created_at=to_iso(now),
            expires_at=to_iso(now + timedelta(hours=ttl_hours))
        )
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO sessions (id, user_id, token_hash, created_at, expires_at, is_active) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (session.id, user_id, session.token_hash, session.created_at, session.expires_at, 1)
            )
        return session, raw_token

    def validate_session(self, raw_token: str) -> Optional[Session]:
        """Validate a session token and return it if valid."""
        row = self.conn.execute(
            "SELECT * FROM sessions WHERE token_hash = ? AND is_active = 1",
            (hash_token(raw_token),)
        ).fetchone()
        if not row:
            return None
        if row["expires_at"] < to_iso(utc_now()):
            return None
        return Session(
            id=row["id"], user_id=row["user_id"], token_hash=row["token_hash"],
            created_at=row["created_at"], expires_at=row["expires_at"],
            is_active=bool(row["is_active"])
        )

    def terminate_session(self, session_id: str) -> bool:
        with self.transaction() as cur:
            cur.execute("UPDATE sessions SET is_active = 0 WHERE id = ?", (session_id,))
            return cur.rowcount > 0

    # ══════════════════════════════════════════════════════════════════════
    # OPERATION RECORDS
    # ══════════════════════════════════════════════════════════════════════

    def _row_to_operation(self, row) -> Operation:
        return Operation(
            id=row["id"], director_id=row["director_id"], join_code=row["join_code"],
            title=row["title"], description=row["description"] or "", status=row["status"],
            created_at=row["created_at"], ended_at=row["ended_at"],
            termination_type=row["termination_type"], last_activity_at=row["last_activity_at"]
        )

    def insert_operation(self, cur: sqlite3.Cursor, op: Operation):
        cur.execute(
            "INSERT INTO operations (id, director_id, join_code, title, description, status, "
            "created_at, ended_at, termination_type, last_activity_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (op.id, op.director_id, op.join_code, op.title, op.description, op.status,
             op.created_at, op.ended_at, op.termination_type, op.last_activity_at)
        )

    def get_operation(self, operation_id: str, cur: Optional[sqlite3.Cursor] = None) -> Optional[Operation]:
        cur = cur or self.conn.cursor()
        row = cur.execute("SELECT * FROM operations WHERE id = ?", (operation_id,)).fetchone()
        return self._row_to_operation(row) if row else None

    def get_operation_by_join_code(self, join_code: str,
                                   cur: Optional[sqlite3.Cursor] = None) -> Optional[Operation]:
        cur = cur or self.conn.cursor()
        row = cur.execute("SELECT * FROM operations WHERE join_code = ?", (join_code,)).fetchone()
        return self._row_to_operation(row) if row else None

    def join_code_exists(self, join_code: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM operations WHERE join_code = ?", (join_code,)).fetchone()
        return row is not None

    def mark_ending(self, cur: sqlite3.Cursor, operation_id: str, deadline: datetime,
                    termination_type: str, inactive_before: Optional[datetime] = None) -> bool:
        """active -> ending. With inactive_before, also re-checks that no activity happened since."""
        query = ("UPDATE operations SET status = 'ending', ended_at = ?, termination_type = ? "
                 "WHERE id = ? AND status = 'active'")
        params = [to_iso(deadline), termination_type, operation_id]
        if inactive_before is not None:
            query += " AND last_activity_at < ?"
            params.append(to_iso(inactive_before))
        cur.execute(query, params)
        return cur.rowcount > 0

    def mark_ended(self, cur: sqlite3.Cursor, operation_id: str, ended_at: datetime,
                   termination_type: str) -> bool:
        """Administrative override: active/ending -> ended right now."""
        cur.execute(
            "UPDATE operations SET status = 'ended', ended_at = ?, termination_type = ? "
            "WHERE id = ? AND status IN ('active', 'ending')",
            (to_iso(ended_at), termination_type, operation_id)
        )
        return cur.rowcount > 0

    def mark_finalized_if_due(self, cur: sqlite3.Cursor, operation_id: str, now: datetime) -> bool:
        """ending -> ended once the deadline passed. A repeat call matches zero rows."""
        cur.execute(
            "UPDATE operations SET status = 'ended' "
            "WHERE id = ? AND status = 'ending' AND ended_at <= ?",
            (operation_id, to_iso(now))
        )
        return cur.rowcount > 0

    def transfer_director(self, cur: sqlite3.Cursor, operation_id: str,
                          from_user_id: str, to_user_id: str) -> bool:
        cur.execute(
            "UPDATE operations SET director_id = ? "
            "WHERE id = ? AND director_id = ? AND status != 'ended'",
            (to_user_id, operation_id, from_user_id)
        )
        return cur.rowcount > 0

    def touch_activity(self, cur: sqlite3.Cursor, operation_id: str, at: datetime):
        cur.execute(
            "UPDATE operations SET last_activity_at = ? WHERE id = ? AND status = 'active'",
            (to_iso(at), operation_id)
        )

    def list_due_operations(self, now: datetime) -> List[str]:
        rows = self.conn.execute(
            "SELECT id FROM operations WHERE status = 'ending' AND ended_at <= ? ORDER BY ended_at ASC",
            (to_iso(now),)
        ).fetchall()
        return [r["id"] for r in rows]

    def list_inactive_operations(self, cutoff: datetime) -> List[str]:
        rows = self.conn.execute(
            "SELECT id FROM operations WHERE status = 'active' "
            "AND last_activity_at IS NOT NULL AND last_activity_at < ? ORDER BY last_activity_at ASC",
            (to_iso(cutoff),)
        ).fetchall()
        return [r["id"] for r in rows]

    # ══════════════════════════════════════════════════════════════════════
    # PARTICIPANT RECORDS
    # ══════════════════════════════════════════════════════════════════════

    def _row_to_participant(self, row) -> Participant:
        return Participant(
            operation_id=row["operation_id"], user_id=row["user_id"], status=row["status"],
            is_admin=bool(row["is_admin"]), join_time=row["join_time"], leave_time=row["leave_time"],
            user_name=row["user_name"] if "user_name" in row.keys() else None
        )

    def get_participant(self, operation_id: str, user_id: str,
                        cur: Optional[sqlite3.Cursor] = None) -> Optional[Participant]:
        cur = cur or self.conn.cursor()
        row = cur.execute(
            "SELECT * FROM participants WHERE operation_id = ? AND user_id = ?",
            (operation_id, user_id)
        ).fetchone()
        return self._row_to_participant(row) if row else None

    def get_participants(self, operation_id: str) -> List[Participant]:
        rows = self.conn.execute(
            """SELECT p.*, u.name AS user_name FROM participants p
               LEFT JOIN users u ON u.id = p.user_id
               WHERE p.operation_id = ?
               ORDER BY p.is_admin DESC, p.status ASC, p.join_time ASC""",
            (operation_id,)
        ).fetchall()
        return [self._row_to_participant(r) for r in rows]

    def get_active_user_ids(self, cur: sqlite3.Cursor, operation_id: str) -> List[str]:
        rows = cur.execute(
            "SELECT user_id FROM participants WHERE operation_id = ? AND status = 'active' "
            "ORDER BY join_time ASC",
            (operation_id,)
        ).fetchall()
        return [r["user_id"] for r in rows]

    def insert_participant(self, cur: sqlite3.Cursor, participant: Participant):
        cur.execute(
            "INSERT INTO participants (operation_id, user_id, status, is_admin, join_time, leave_time) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (participant.operation_id, participant.user_id, participant.status,
             1 if participant.is_admin else 0, participant.join_time, participant.leave_time)
        )

    def reactivate_participant(self, cur: sqlite3.Cursor, operation_id: str, user_id: str,
                               join_time: datetime) -> bool:
        cur.execute(
            "UPDATE participants SET status = 'active', join_time = ?, leave_time = NULL "
            "WHERE operation_id = ? AND user_id = ? AND status IN ('left', 'kicked', 'banned')",
            (to_iso(join_time), operation_id, user_id)
        )
        return cur.rowcount > 0

    def get_exclusive_statuses_elsewhere(self, cur: sqlite3.Cursor, operation_id: str,
                                         user_ids: Iterable[str]) -> Dict[str, Set[str]]:
        """One query for the whole batch: exclusive statuses each user holds in other operations."""
        user_ids = list(user_ids)
        conflicts: Dict[str, Set[str]] = {u: set() for u in user_ids}
        if not user_ids:
            return conflicts
        exclusive = sorted(EXCLUSIVE_STATUSES)
        rows = cur.execute(
            f"SELECT user_id, status FROM participants "
            f"WHERE operation_id != ? AND user_id IN ({_placeholders(user_ids)}) "
            f"AND status IN ({_placeholders(exclusive)})",
            [operation_id] + user_ids + exclusive
        ).fetchall()
        for r in rows:
            conflicts[r["user_id"]].add(r["status"])
        return conflicts

    def set_status_if_active(self, cur: sqlite3.Cursor, operation_id: str, user_ids: Iterable[str],
                             status: str, leave_time: datetime) -> int:
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        cur.execute(
            f"UPDATE participants SET status = ?, leave_time = ? "
            f"WHERE operation_id = ? AND status = 'active' AND user_id IN ({_placeholders(user_ids)})",
            [status, to_iso(leave_time), operation_id] + user_ids
        )
        return cur.rowcount

    def delete_if_active(self, cur: sqlite3.Cursor, operation_id: str, user_ids: Iterable[str]) -> int:
        user_ids = list(user_ids)
        if not user_ids:
            return 0
        cur.execute(
            f"DELETE FROM participants "
            f"WHERE operation_id = ? AND status = 'active' AND user_id IN ({_placeholders(user_ids)})",
            [operation_id] + user_ids
        )
        return cur.rowcount

    def set_remaining_left(self, cur: sqlite3.Cursor, operation_id: str, leave_time: datetime) -> int:
        cur.execute(
            "UPDATE participants SET status = 'left', leave_time = ? "
            "WHERE operation_id = ? AND status = 'active'",
            (to_iso(leave_time), operation_id)
        )
        return cur.rowcount

    def grant_admin(self, cur: sqlite3.Cursor, operation_id: str, user_id: str) -> bool:
        cur.execute(
            "UPDATE participants SET is_admin = 1 "
            "WHERE operation_id = ? AND user_id = ? AND status = 'active'",
            (operation_id, user_id)
        )
        return cur.rowcount > 0

    def find_successor(self, cur: sqlite3.Cursor, operation_id: str, exclude_user_id: str,
                       admins_only: bool) -> Optional[str]:
        query = ("SELECT user_id FROM participants "
                 "WHERE operation_id = ? AND user_id != ? AND status = 'active'")
        if admins_only:
            query += " AND is_admin = 1"
        query += " ORDER BY join_time ASC LIMIT 1"
        row = cur.execute(query, (operation_id, exclude_user_id)).fetchone()
        return row["user_id"] if row else None

    # ══════════════════════════════════════════════════════════════════════
    # BAN RECORDS
    # ══════════════════════════════════════════════════════════════════════

    def upsert_ban(self, cur: sqlite3.Cursor, ban: BanRecord):
        cur.execute(
            "INSERT INTO ban_records (operation_id, user_id, banned_by, banned_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(operation_id, user_id) DO UPDATE SET "
            "banned_by = excluded.banned_by, banned_at = excluded.banned_at",
            (ban.operation_id, ban.user_id, ban.banned_by, ban.banned_at)
        )

    def is_banned(self, operation_id: str, user_id: str, cur: Optional[sqlite3.Cursor] = None) -> bool:
        cur = cur or self.conn.cursor()
        row = cur.execute(
            "SELECT 1 FROM ban_records WHERE operation_id = ? AND user_id = ?",
            (operation_id, user_id)
        ).fetchone()
        return row is not None

    def get_ban(self, operation_id: str, user_id: str) -> Optional[BanRecord]:
        row = self.conn.execute(
            "SELECT * FROM ban_records WHERE operation_id = ? AND user_id = ?",
            (operation_id, user_id)
        ).fetchone()
        if row:
            return BanRecord(operation_id=row["operation_id"], user_id=row["user_id"],
                             banned_by=row["banned_by"], banned_at=row["banned_at"])
        return None

    # ══════════════════════════════════════════════════════════════════════
    # LEDGER SNAPSHOTS
    # ══════════════════════════════════════════════════════════════════════

    def insert_snapshots(self, cur: sqlite3.Cursor, operation_id: str, user_id: str, kind: str,
                         readings: Dict[int, int], captured_at: datetime) -> int:
        """Store one capture. A repeated 'start' keeps the first baseline."""
        verb = "INSERT OR IGNORE" if kind == "start" else "INSERT"
        captured = to_iso(captured_at)
        inserted = 0
        for type_id, quantity in sorted(readings.items()):
            cur.execute(
                f"{verb} INTO snapshots (operation_id, user_id, resource_type_id, quantity, captured_at, kind) "
                f"VALUES (?, ?, ?, ?, ?, ?)",
                (operation_id, user_id, int(type_id), int(quantity), captured, kind)
            )
            inserted += cur.rowcount
        return inserted

    def get_latest_quantities(self, cur: sqlite3.Cursor, operation_id: str, user_id: str) -> Dict[int, int]:
        """Most recent reading of any kind per resource type, by capture sequence."""
        rows = cur.execute(
            """SELECT s.resource_type_id, s.quantity FROM snapshots s
               JOIN (
                   SELECT resource_type_id, MAX(snapshot_id) AS latest_id
                   FROM snapshots WHERE operation_id = ? AND user_id = ?
                   GROUP BY resource_type_id
               ) latest ON s.snapshot_id = latest.latest_id""",
            (operation_id, user_id)
        ).fetchall()
        return {r["resource_type_id"]: r["quantity"] for r in rows}

    def has_snapshots(self, operation_id: str, user_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM snapshots WHERE operation_id = ? AND user_id = ? LIMIT 1",
            (operation_id, user_id)
        ).fetchone()
        return row is not None

    def get_baselines(self, operation_id: str) -> List[Snapshot]:
        rows = self.conn.execute(
            "SELECT * FROM snapshots WHERE operation_id = ? AND kind = 'start'",
            (operation_id,)
        ).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def get_latest_readings(self, operation_id: str) -> List[Snapshot]:
        """Latest 'update'/'end' row per (user, type) by capture sequence."""
        rows = self.conn.execute(
            """SELECT s.* FROM snapshots s
               JOIN (
                   SELECT user_id, resource_type_id, MAX(snapshot_id) AS latest_id
                   FROM snapshots
                   WHERE operation_id = ? AND kind IN ('update', 'end')
                   GROUP BY user_id, resource_type_id
               ) latest ON s.snapshot_id = latest.latest_id""",
            (operation_id,)
        ).fetchall()
        return [self._row_to_snapshot(r) for r in rows]

    def count_update_captures_since(self, operation_id: str, since: str) -> int:
        """Distinct 'update' captures (one per user per capture time), not per-type rows."""
        row = self.conn.execute(
            "SELECT COUNT(*) AS n FROM ("
            "  SELECT DISTINCT user_id, captured_at FROM snapshots "
            "  WHERE operation_id = ? AND kind = 'update' AND captured_at > ?"
            ")",
            (operation_id, since)
        ).fetchone()
        return row["n"]

    def _row_to_snapshot(self, row) -> Snapshot:
        return Snapshot(
            snapshot_id=row["snapshot_id"], operation_id=row["operation_id"], user_id=row["user_id"],
            resource_type_id=row["resource_type_id"], quantity=row["quantity"],
            captured_at=row["captured_at"], kind=row["kind"]
        )

    # ══════════════════════════════════════════════════════════════════════
    # RESOURCE TYPES & PRICES
    # ══════════════════════════════════════════════════════════════════════

    def upsert_resource_type(self, type_id: int, name: str, updated_at: Optional[datetime] = None):
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO resource_types (type_id, name, last_updated) VALUES (?, ?, ?) "
                "ON CONFLICT(type_id) DO UPDATE SET name = excluded.name, last_updated = excluded.last_updated",
                (type_id, name, to_iso(updated_at or utc_now()))
            )

    def get_resource_type_ids(self) -> List[int]:
        rows = self.conn.execute(
            "SELECT type_id FROM resource_types UNION SELECT type_id FROM market_prices ORDER BY type_id"
        ).fetchall()
        return [r["type_id"] for r in rows]

    def get_resource_type_updated(self, type_id: int) -> Optional[str]:
        row = self.conn.execute(
            "SELECT last_updated FROM resource_types WHERE type_id = ?", (type_id,)
        ).fetchone()
        return row["last_updated"] if row else None

    def upsert_price(self, price: MarketPrice):
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO market_prices (type_id, best_buy, best_sell, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(type_id) DO UPDATE SET best_buy = excluded.best_buy, "
                "best_sell = excluded.best_sell, updated_at = excluded.updated_at",
                (price.type_id, price.best_buy, price.best_sell, price.updated_at)
            )

    def get_prices(self) -> Dict[int, MarketPrice]:
        rows = self.conn.execute(
            """SELECT mp.*, rt.name AS name FROM market_prices mp
               LEFT JOIN resource_types rt ON rt.type_id = mp.type_id"""
        ).fetchall()
        return {
            r["type_id"]: MarketPrice(
                type_id=r["type_id"], best_buy=r["best_buy"], best_sell=r["best_sell"],
                name=r["name"], updated_at=r["updated_at"]
            )
            for r in rows
        }

    def get_resource_type_names(self) -> Dict[int, str]:
        rows = self.conn.execute("SELECT type_id, name FROM resource_types").fetchall()
        return {r["type_id"]: r["name"] for r in rows}

    # ══════════════════════════════════════════════════════════════════════
    # WEBHOOK OPERATIONS
    # ══════════════════════════════════════════════════════════════════════

    def _row_to_webhook(self, r) -> Webhook:
        return Webhook(
            id=r["id"], url=r["url"], secret_hash=r["secret_hash"], event_types=r["event_types"],
            created_at=r["created_at"], is_active=bool(r["is_active"]),
            failure_count=r["failure_count"], last_failure=r["last_failure"]
        )

    def create_webhook(self, url: str, secret: str, event_types: List[str]) -> Webhook:
        webhook = Webhook(url=url, secret_hash=hash_token(secret), event_types=json.dumps(event_types))
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO webhooks (id, url, secret_hash, event_types, created_at, is_active, failure_count) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (webhook.id, url, webhook.secret_hash, webhook.event_types, webhook.created_at, 1, 0)
            )
        return webhook

    def get_webhooks(self, active_only: bool = True) -> List[Webhook]:
        query = "SELECT * FROM webhooks"
        if active_only:
            query += " WHERE is_active = 1"
        return [self._row_to_webhook(r) for r in self.conn.execute(query).fetchall()]

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        row = self.conn.execute("SELECT * FROM webhooks WHERE id = ?", (webhook_id,)).fetchone()
        return self._row_to_webhook(row) if row else None

    def delete_webhook(self, webhook_id: str) -> bool:
        with self.transaction() as cur:
            cur.execute("DELETE FROM webhooks WHERE id = ?", (webhook_id,))
            return cur.rowcount > 0

    def update_webhook_failure(self, webhook_id: str, increment: bool = True, max_failures: int = 10):
        with self.transaction() as cur:
            if increment:
                cur.execute(
                    "UPDATE webhooks SET failure_count = failure_count + 1, last_failure = ? WHERE id = ?",
                    (to_iso(utc_now()), webhook_id)
                )
                # Auto-disable after repeated failures
                cur.execute(
                    "UPDATE webhooks SET is_active = 0 WHERE id = ? AND failure_count >= ?",
                    (webhook_id, max_failures)
                )
            else:
                cur.execute("UPDATE webhooks SET failure_count = 0 WHERE id = ?", (webhook_id,))

    def create_webhook_delivery(self, webhook_id: str, event_type: str, payload: dict) -> WebhookDelivery:
        delivery = WebhookDelivery(webhook_id=webhook_id, event_type=event_type)
        payload["delivery_id"] = delivery.id
        delivery.payload = json.dumps(payload)
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO webhook_deliveries (id, webhook_id, event_type, payload, attempt_count, status, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (delivery.id, webhook_id, event_type, delivery.payload, 0, "pending", delivery.created_at)
            )
        return delivery

    def update_webhook_delivery(self, delivery_id: str, status: str, response_code: Optional[int] = None,
                                response_body: Optional[str] = None) -> bool:
        with self.transaction() as cur:
            cur.execute(
                "UPDATE webhook_deliveries SET status = ?, response_code = ?, response_body = ?, "
                "attempt_count = attempt_count + 1, delivered_at = ? WHERE id = ?",
                (status, response_code, response_body,
                 to_iso(utc_now()) if status == "success" else None, delivery_id)
            )
            return cur.rowcount > 0

    def get_pending_deliveries(self, limit: int = 100) -> List[WebhookDelivery]:
        rows = self.conn.execute(
            "SELECT * FROM webhook_deliveries WHERE status = 'pending' ORDER BY created_at ASC LIMIT ?",
            (limit,)
        ).fetchall()
        return [
            WebhookDelivery(
                id=r["id"], webhook_id=r["webhook_id"], event_type=r["event_type"],
                payload=r["payload"], attempt_count=r["attempt_count"],
                status=r["status"], response_code=r["response_code"],
                response_body=r["response_body"], created_at=r["created_at"],
                delivered_at=r["delivered_at"]
            )
            for r in rows
        ]

    def get_deliveries_for_event(self, event_type: str) -> List[WebhookDelivery]:
        rows = self.conn.execute(
            "SELECT * FROM webhook_deliveries WHERE event_type = ? ORDER BY created_at ASC",
            (event_type,)
        ).fetchall()
        return [
            WebhookDelivery(
                id=r["id"], webhook_id=r["webhook_id"], event_type=r["event_type"],
                payload=r["payload"], attempt_count=r["attempt_count"], status=r["status"],
                created_at=r["created_at"]
            )
            for r in rows
        ]
