"""
Unit tests for storage layer.

Tests schema creation, ledger appends and usage event retrieval.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from appforge.storage.db import get_connection
from appforge.storage.models import (
    EntryType,
    LedgerEntry,
    Owner,
    PlanTier,
    SubscriptionState,
    SubscriptionStatus,
    UsageEvent,
)
from appforge.storage.repository import (
    LedgerRepository,
    SubscriptionRepository,
    UsageRepository,
    initialize_schema,
    is_missing_table_error,
)

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
                tables = {row[0] for row in cursor.fetchall()}
            finally:
                conn.close()

            for expected in (
                "credit_ledger_entry",
                "subscription_state",
                "team",
                "team_member",
                "ai_usage_event",
                "snapshot",
                "chat_message",
                "ai_run",
                "tool_invocation",
            ):
                assert expected in tables

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

    def test_missing_table_error_detected(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            ledger = LedgerRepository(os.path.join(temp_dir, "empty.db"))
            with pytest.raises(sqlite3.OperationalError) as excinfo:
                ledger.find_entries(Owner.individual("u"))
            assert is_missing_table_error(excinfo.value)


class TestLedgerRepository:
    """Test append-only ledger operations."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.ledger = LedgerRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _entry(self, owner, entry_type, amount, offset_minutes=0, period_key=None):
        return LedgerEntry(
            owner=owner,
            entry_type=entry_type,
            amount=amount,
            period_key=period_key,
            created_at=BASE_TIME + timedelta(minutes=offset_minutes),
        )

    def test_append_assigns_id_and_round_trips(self):
        owner = Owner.team("t-1")
        stored = self.ledger.append(self._entry(owner, EntryType.TOPUP, 4.25))

        assert stored.id is not None
        entries = self.ledger.find_entries(owner)
        assert len(entries) == 1
        assert entries[0].amount == 4.25
        assert entries[0].owner == owner
        assert entries[0].created_at == BASE_TIME

    def test_entries_returned_in_append_order(self):
        owner = Owner.individual("u-1")
        for i, amount in enumerate([1.0, -0.5, 2.0]):
            entry_type = EntryType.SPEND if amount < 0 else EntryType.TOPUP
            self.ledger.append(self._entry(owner, entry_type, amount, offset_minutes=i))
        assert [e.amount for e in self.ledger.find_entries(owner)] == [1.0, -0.5, 2.0]

    def test_grant_uniqueness_is_per_owner_and_period(self):
        alice = Owner.individual("alice")
        bob = Owner.individual("bob")
        assert self.ledger.append_monthly_grant(
            self._entry(alice, EntryType.MONTHLY_GRANT, 1.0, period_key="2025-06")) is not None
        assert self.ledger.append_monthly_grant(
            self._entry(bob, EntryType.MONTHLY_GRANT, 1.0, period_key="2025-06")) is not None
        assert self.ledger.append_monthly_grant(
            self._entry(alice, EntryType.MONTHLY_GRANT, 1.0, period_key="2025-07")) is not None
        assert self.ledger.append_monthly_grant(
            self._entry(alice, EntryType.MONTHLY_GRANT, 1.0, period_key="2025-06")) is None

        found = self.ledger.find_monthly_grant(alice, "2025-07")
        assert found is not None and found.period_key == "2025-07"
        assert self.ledger.find_monthly_grant(alice, "2025-08") is None

    def test_sum_amounts_since(self):
        owner = Owner.individual("u-1")
        self.ledger.append(self._entry(owner, EntryType.SPEND, -1.0, offset_minutes=-60 * 24 * 40))
        self.ledger.append(self._entry(owner, EntryType.SPEND, -0.25))
        self.ledger.append(self._entry(owner, EntryType.SPEND, -0.5, offset_minutes=5))
        self.ledger.append(self._entry(owner, EntryType.TOPUP, 3.0, offset_minutes=5))

        assert self.ledger.sum_amounts_since(EntryType.SPEND, BASE_TIME) == pytest.approx(-0.75)


class TestSubscriptionRepository:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.subscriptions = SubscriptionRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_list_active_owners(self):
        self.subscriptions.upsert_subscription(SubscriptionState(
            Owner.individual("a"), PlanTier.PRO, SubscriptionStatus.ACTIVE))
        self.subscriptions.upsert_subscription(SubscriptionState(
            Owner.individual("b"), PlanTier.PRO, SubscriptionStatus.PAST_DUE))
        self.subscriptions.upsert_subscription(SubscriptionState(
            Owner.team("t"), PlanTier.TEAM, SubscriptionStatus.ACTIVE))

        assert self.subscriptions.list_active_owners(PlanTier.PRO) == [Owner.individual("a")]

    def test_team_seat_count(self):
        self.subscriptions.create_team("t-1", "Team", seat_count=4)
        assert self.subscriptions.find_team_seat_count("t-1") == 4
        assert self.subscriptions.find_team_seat_count("missing") == 0

    def test_team_requires_a_seat(self):
        with pytest.raises(ValueError):
            self.subscriptions.create_team("t-1", "Team", seat_count=0)

    def test_backend_counts(self):
        owner = Owner.individual("a")
        self.subscriptions.add_backend("b-1", owner, status="READY")
        self.subscriptions.add_backend("b-2", owner, status="PROVISIONING")
        self.subscriptions.add_backend("b-3", owner, status="ERROR")

        assert self.subscriptions.count_active_backends(owner) == 2
        assert self.subscriptions.count_backends_by_status() == {
            "READY": 1, "PROVISIONING": 1, "ERROR": 1,
        }


class TestUsageRepository:
    """Test usage event insertion and filtered retrieval."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.usage = UsageRepository(self.db_path)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _event(self, request_id, user_id="u-1", model="claude-sonnet-4-5", offset_minutes=0):
        return UsageEvent(
            request_id=request_id,
            user_id=user_id,
            owner=Owner.individual(user_id),
            model=model,
            input_tokens=1000,
            output_tokens=200,
            vendor_cost_usd=0.006,
            credits_charged=0.0072,
            created_at=BASE_TIME + timedelta(minutes=offset_minutes),
            project_id="p-1",
        )

    def test_duplicate_request_id_rejected(self):
        self.usage.insert_usage_event(self._event("req-1"))
        with pytest.raises(sqlite3.IntegrityError):
            self.usage.insert_usage_event(self._event("req-1"))

    def test_events_newest_first_with_total(self):
        for i in range(5):
            self.usage.insert_usage_event(self._event(f"req-{i}", offset_minutes=i))

        events, total = self.usage.get_events(limit=2, offset=1)

        assert total == 5
        assert [e.request_id for e in events] == ["req-3", "req-2"]

    def test_filters(self):
        self.usage.insert_usage_event(self._event("a", user_id="alice", model="claude-3-5-haiku-20241022"))
        self.usage.insert_usage_event(self._event("b", user_id="bob", model="claude-sonnet-4-5", offset_minutes=10))
        self.usage.insert_usage_event(self._event("c", user_id="alice", model="claude-sonnet-4-5", offset_minutes=20))

        events, total = self.usage.get_events(model="SONNET")
        assert total == 2

        events, total = self.usage.get_events(user_id="alice")
        assert {e.request_id for e in events} == {"a", "c"}

        events, total = self.usage.get_events(
            since=BASE_TIME + timedelta(minutes=5),
            until=BASE_TIME + timedelta(minutes=15),
        )
        assert [e.request_id for e in events] == ["b"]

    def test_events_since(self):
        self.usage.insert_usage_event(self._event("old", offset_minutes=-10))
        self.usage.insert_usage_event(self._event("new", offset_minutes=10))
        assert [e.request_id for e in self.usage.get_events_since(BASE_TIME)] == ["new"]
