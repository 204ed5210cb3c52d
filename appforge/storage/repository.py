"""
Repository pattern for data access.

Handles the credit ledger, subscription state, teams and usage events. The
ledger table is append-only: no UPDATE or DELETE statement touches it.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    EntryType,
    LedgerEntry,
    Owner,
    OwnerType,
    PlanTier,
    SubscriptionState,
    SubscriptionStatus,
    TeamMembership,
    UsageEvent,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS credit_ledger_entry (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_type TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    entry_type TEXT NOT NULL,
    amount_credits REAL NOT NULL,
    period_key TEXT,
    ref TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_ledger_owner
    ON credit_ledger_entry (owner_type, owner_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_ledger_monthly_grant
    ON credit_ledger_entry (owner_type, owner_id, period_key)
    WHERE entry_type = 'MONTHLY_GRANT';

CREATE TABLE IF NOT EXISTS subscription_state (
    owner_type TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    plan_tier TEXT NOT NULL,
    status TEXT NOT NULL,
    current_period_start TEXT,
    current_period_end TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (owner_type, owner_id)
);

CREATE TABLE IF NOT EXISTS team (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    seat_count INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS team_member (
    team_id TEXT NOT NULL REFERENCES team (id),
    user_id TEXT NOT NULL,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (team_id, user_id)
);

CREATE TABLE IF NOT EXISTS managed_backend (
    id TEXT PRIMARY KEY,
    owner_type TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    status TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ai_usage_event (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL,
    project_id TEXT,
    owner_type TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    team_id TEXT,
    model_used TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    vendor_cost_usd REAL NOT NULL,
    credits_charged REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_file (
    project_id TEXT NOT NULL REFERENCES project (id),
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (project_id, path)
);

CREATE TABLE IF NOT EXISTS snapshot (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES project (id),
    label TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshot_file (
    snapshot_id TEXT NOT NULL REFERENCES snapshot (id),
    path TEXT NOT NULL,
    content TEXT NOT NULL,
    PRIMARY KEY (snapshot_id, path)
);

CREATE TABLE IF NOT EXISTS chat_session (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES project (id),
    title TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chat_message (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chat_session_id TEXT NOT NULL REFERENCES chat_session (id),
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ai_run (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    chat_session_id TEXT NOT NULL,
    prompt TEXT NOT NULL,
    model TEXT NOT NULL,
    status TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens INTEGER NOT NULL DEFAULT 0,
    tool_calls_count INTEGER NOT NULL DEFAULT 0,
    patch_failures INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    iterations INTEGER NOT NULL DEFAULT 0,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    stop_reason TEXT,
    error TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_invocation (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES ai_run (id),
    tool_name TEXT NOT NULL,
    args TEXT NOT NULL,
    ok INTEGER NOT NULL,
    result TEXT NOT NULL,
    duration_ms INTEGER NOT NULL,
    created_at TEXT NOT NULL
);
"""


def to_iso(moment: datetime) -> str:
    """Serialize a datetime as a UTC ISO-8601 string (naive means UTC)."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _row_to_entry(row: Tuple) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        owner=Owner(OwnerType(row[1]), row[2]),
        entry_type=EntryType(row[3]),
        amount=row[4],
        period_key=row[5],
        ref=row[6],
        created_at=from_iso(row[7]),
    )


_ENTRY_COLUMNS = (
    "id, owner_type, owner_id, entry_type, amount_credits, period_key, ref, created_at"
)


class LedgerRepository:
    """Append-only store of signed credit entries per owner."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def _insert(self, entry: LedgerEntry, verb: str) -> Optional[LedgerEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                {verb} INTO credit_ledger_entry
                (owner_type, owner_id, entry_type, amount_credits, period_key, ref, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.owner.owner_type.value,
                entry.owner.owner_id,
                entry.entry_type.value,
                entry.amount,
                entry.period_key,
                entry.ref,
                to_iso(entry.created_at),
            ))
            conn.commit()
            if cursor.rowcount == 0:
                return None
            return LedgerEntry(
                id=cursor.lastrowid,
                owner=entry.owner,
                entry_type=entry.entry_type,
                amount=entry.amount,
                period_key=entry.period_key,
                ref=entry.ref,
                created_at=entry.created_at,
            )
        finally:
            conn.close()

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append a single entry and return it with its assigned id.

        Raises:
            sqlite3.IntegrityError: If a second MONTHLY_GRANT for the same
                owner and period is appended
        """
        return self._insert(entry, "INSERT")

    def append_monthly_grant(self, entry: LedgerEntry) -> Optional[LedgerEntry]:
        """Append a MONTHLY_GRANT unless one already exists for its period.

        Returns:
            The stored entry, or None if a grant for that owner and period
            was already present
        """
        if entry.entry_type != EntryType.MONTHLY_GRANT or not entry.period_key:
            raise ValueError("append_monthly_grant requires a MONTHLY_GRANT with a period key")
        return self._insert(entry, "INSERT OR IGNORE")

    def find_entries(self, owner: Owner) -> List[LedgerEntry]:
        """All entries for an owner in insertion order."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM credit_ledger_entry
                WHERE owner_type = ? AND owner_id = ?
                ORDER BY id
            """, (owner.owner_type.value, owner.owner_id))
            return [_row_to_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def find_monthly_grant(self, owner: Owner, period_key: str) -> Optional[LedgerEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_ENTRY_COLUMNS} FROM credit_ledger_entry
                WHERE owner_type = ? AND owner_id = ?
                  AND entry_type = ? AND period_key = ?
                LIMIT 1
            """, (owner.owner_type.value, owner.owner_id,
                  EntryType.MONTHLY_GRANT.value, period_key))
            row = cursor.fetchone()
            return _row_to_entry(row) if row else None
        finally:
            conn.close()

    def sum_amounts_since(self, entry_type: EntryType, since: datetime) -> float:
        """Sum of signed amounts of one entry type created at or after ``since``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT SUM(amount_credits) FROM credit_ledger_entry
                WHERE entry_type = ? AND created_at >= ?
            """, (entry_type.value, to_iso(since)))
            row = cursor.fetchone()
            return float(row[0] or 0.0)
        finally:
            conn.close()

    def sum_refunds_since(self, since: datetime) -> float:
        """Sum of refund adjustments (``refund:<request id>``) since ``since``."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT SUM(amount_credits) FROM credit_ledger_entry
                WHERE entry_type = ? AND ref LIKE 'refund:%' AND created_at >= ?
            """, (EntryType.ADJUSTMENT.value, to_iso(since)))
            row = cursor.fetchone()
            return float(row[0] or 0.0)
        finally:
            conn.close()


class SubscriptionRepository:
    """Subscription state, teams and managed backend counts."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def find_subscription(self, owner: Owner) -> Optional[SubscriptionState]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT plan_tier, status, current_period_start, current_period_end
                FROM subscription_state
                WHERE owner_type = ? AND owner_id = ?
            """, (owner.owner_type.value, owner.owner_id))
            row = cursor.fetchone()
            if row is None:
                return None
            return SubscriptionState(
                owner=owner,
                tier=PlanTier(row[0]),
                status=SubscriptionStatus(row[1]),
                period_start=from_iso(row[2]),
                period_end=from_iso(row[3]),
            )
        finally:
            conn.close()

    def find_active_subscription(self, owner: Owner) -> Optional[SubscriptionState]:
        """Subscription for the owner if its status is ACTIVE, else None."""
        subscription = self.find_subscription(owner)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
            return None
        return subscription

    def upsert_subscription(self, state: SubscriptionState) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO subscription_state
                (owner_type, owner_id, plan_tier, status,
                 current_period_start, current_period_end, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (owner_type, owner_id) DO UPDATE SET
                    plan_tier = excluded.plan_tier,
                    status = excluded.status,
                    current_period_start = excluded.current_period_start,
                    current_period_end = excluded.current_period_end,
                    updated_at = excluded.updated_at
            """, (
                state.owner.owner_type.value,
                state.owner.owner_id,
                state.tier.value,
                state.status.value,
                to_iso(state.period_start) if state.period_start else None,
                to_iso(state.period_end) if state.period_end else None,
                to_iso(datetime.now(timezone.utc)),
            ))
            conn.commit()
        finally:
            conn.close()

    def list_active_owners(self, tier: PlanTier) -> List[Owner]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT owner_type, owner_id FROM subscription_state
                WHERE plan_tier = ? AND status = ?
            """, (tier.value, SubscriptionStatus.ACTIVE.value))
            return [Owner(OwnerType(row[0]), row[1]) for row in cursor.fetchall()]
        finally:
            conn.close()

    def create_team(self, team_id: str, name: str, seat_count: int = 1) -> None:
        if seat_count < 1:
            raise ValueError("seat_count must be >= 1")
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO team (id, name, seat_count) VALUES (?, ?, ?)",
                (team_id, name, seat_count),
            )
            conn.commit()
        finally:
            conn.close()

    def add_team_member(self, team_id: str, user_id: str, joined_at: datetime) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO team_member (team_id, user_id, joined_at) VALUES (?, ?, ?)",
                (team_id, user_id, to_iso(joined_at)),
            )
            conn.commit()
        finally:
            conn.close()

    def find_team_membership(self, user_id: str) -> Optional[TeamMembership]:
        """The user's primary (earliest joined) team membership."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT team_id, user_id, joined_at FROM team_member
                WHERE user_id = ?
                ORDER BY joined_at ASC
                LIMIT 1
            """, (user_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return TeamMembership(team_id=row[0], user_id=row[1], joined_at=from_iso(row[2]))
        finally:
            conn.close()

    def find_team_seat_count(self, team_id: str) -> int:
        """Seat count for a team, 0 when the team does not exist."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT seat_count FROM team WHERE id = ?", (team_id,))
            row = cursor.fetchone()
            return int(row[0]) if row else 0
        finally:
            conn.close()

    def add_backend(self, backend_id: str, owner: Owner, status: str = "READY") -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO managed_backend (id, owner_type, owner_id, status) VALUES (?, ?, ?, ?)",
                (backend_id, owner.owner_type.value, owner.owner_id, status),
            )
            conn.commit()
        finally:
            conn.close()

    def count_active_backends(self, owner: Owner) -> int:
        """Backends that are provisioning or ready for this owner."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT COUNT(*) FROM managed_backend
                WHERE owner_type = ? AND owner_id = ?
                  AND status IN ('PROVISIONING', 'READY')
            """, (owner.owner_type.value, owner.owner_id))
            return int(cursor.fetchone()[0])
        finally:
            conn.close()

    def count_backends_by_status(self) -> Dict[str, int]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT status, COUNT(*) FROM managed_backend GROUP BY status"
            )
            return {row[0]: int(row[1]) for row in cursor.fetchall()}
        finally:
            conn.close()


_USAGE_COLUMNS = """
    request_id, user_id, project_id, owner_type, owner_id, team_id, model_used,
    input_tokens, output_tokens, vendor_cost_usd, credits_charged, created_at
"""


def _row_to_usage_event(row: Tuple) -> UsageEvent:
    return UsageEvent(
        request_id=row[0],
        user_id=row[1],
        project_id=row[2],
        owner=Owner(OwnerType(row[3]), row[4]),
        team_id=row[5],
        model=row[6],
        input_tokens=row[7],
        output_tokens=row[8],
        vendor_cost_usd=row[9],
        credits_charged=row[10],
        created_at=from_iso(row[11]),
    )


def insert_usage_event_row(conn: sqlite3.Connection, event: UsageEvent) -> None:
    """Insert a usage event on an open connection without committing."""
    conn.execute(f"""
        INSERT INTO ai_usage_event ({_USAGE_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, (
        event.request_id,
        event.user_id,
        event.project_id,
        event.owner.owner_type.value,
        event.owner.owner_id,
        event.team_id,
        event.model,
        event.input_tokens,
        event.output_tokens,
        event.vendor_cost_usd,
        event.credits_charged,
        to_iso(event.created_at),
    ))


class UsageRepository:
    """Repository for billable usage events.

    Feeds the monthly spend summary and the usage listing.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_usage_event(self, event: UsageEvent) -> None:
        """Insert a usage event.

        Raises:
            sqlite3.IntegrityError: If an event with the same request id exists
        """
        conn = get_connection(self.db_path)
        try:
            insert_usage_event_row(conn, event)
            conn.commit()
        finally:
            conn.close()

    def get_events(
        self,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[UsageEvent], int]:
        """Usage events, newest first, with optional filtering.

        Args:
            model: Case-insensitive substring match on the model name
            user_id: Exact user filter
            since: Inclusive lower bound on creation time
            until: Inclusive upper bound on creation time
            limit: Page size
            offset: Number of matching events to skip

        Returns:
            Tuple of (page of events, total number of matching events)
        """
        conditions = []
        params: list = []
        if model:
            conditions.append("LOWER(model_used) LIKE ?")
            params.append(f"%{model.lower()}%")
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(to_iso(since))
        if until is not None:
            conditions.append("created_at <= ?")
            params.append(to_iso(until))
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(
                f"SELECT COUNT(*) FROM ai_usage_event{where}", params
            ).fetchone()[0]
            cursor = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM ai_usage_event{where} "
                "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            )
            return [_row_to_usage_event(row) for row in cursor.fetchall()], int(total)
        finally:
            conn.close()

    def get_events_since(self, since: datetime) -> List[UsageEvent]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM ai_usage_event WHERE created_at >= ? "
                "ORDER BY created_at",
                (to_iso(since),),
            )
            return [_row_to_usage_event(row) for row in cursor.fetchall()]
        finally:
            conn.close()


def is_missing_table_error(error: sqlite3.OperationalError) -> bool:
    return "no such table" in str(error).lower()
