"""
Unit tests for project workspace persistence.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from appforge.storage.models import MessageRole, Owner, RunStatus, ToolInvocation, UsageEvent
from appforge.storage.repository import UsageRepository, initialize_schema
from appforge.storage.workspace import WorkspaceStore


class TestWorkspaceStore:
    """Test files, snapshots, chat and run bookkeeping."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.store = WorkspaceStore(self.db_path)
        self.project_id = self.store.create_project("alice", "Demo")
        self.chat_id = self.store.create_chat_session(self.project_id, "Main")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_project_owner(self):
        assert self.store.get_project_owner(self.project_id) == "alice"
        assert self.store.get_project_owner("missing") is None

    def test_file_lifecycle(self):
        self.store.write_file(self.project_id, "a.txt", "one")
        self.store.write_file(self.project_id, "a.txt", "two")
        assert self.store.get_file(self.project_id, "a.txt").content == "two"

        assert self.store.rename_file(self.project_id, "a.txt", "b.txt")
        assert self.store.get_file(self.project_id, "a.txt") is None
        assert [f.path for f in self.store.list_files(self.project_id)] == ["b.txt"]

        assert self.store.delete_file(self.project_id, "b.txt")
        assert not self.store.delete_file(self.project_id, "b.txt")
        assert not self.store.rename_file(self.project_id, "b.txt", "c.txt")

    def test_snapshot_is_a_point_in_time_copy(self):
        self.store.write_file(self.project_id, "app/page.tsx", "v1")
        snapshot_id = self.store.create_snapshot_with_files(self.project_id, "initial")
        self.store.write_file(self.project_id, "app/page.tsx", "v2")

        files = self.store.get_snapshot_files(snapshot_id)

        assert [(f.path, f.content) for f in files] == [("app/page.tsx", "v1")]
        assert self.store.snapshot_exists(self.project_id, snapshot_id)
        assert not self.store.snapshot_exists("other-project", snapshot_id)

    def test_chat_messages_in_order(self):
        self.store.append_chat_message(self.chat_id, MessageRole.USER, "hello")
        self.store.append_chat_message(self.chat_id, MessageRole.ASSISTANT, "hi")

        messages = self.store.list_chat_messages(self.chat_id)

        assert [(m.role, m.content) for m in messages] == [
            (MessageRole.USER, "hello"),
            (MessageRole.ASSISTANT, "hi"),
        ]
        assert self.store.get_chat_session_project(self.chat_id) == self.project_id

    def test_commit_assistant_turn_writes_both(self):
        self.store.write_file(self.project_id, "x.ts", "export {}")

        snapshot_id = self.store.commit_assistant_turn(self.project_id, self.chat_id, "Done", label="AI")

        assert [f.path for f in self.store.get_snapshot_files(snapshot_id)] == ["x.ts"]
        messages = self.store.list_chat_messages(self.chat_id)
        assert messages[-1].role == MessageRole.ASSISTANT
        assert messages[-1].content == "Done"

    def test_commit_assistant_turn_is_atomic(self):
        """A failing message insert rolls back the snapshot too."""
        before = self._count("snapshot")

        with patch("appforge.storage.workspace._insert_message", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError, match="disk full"):
                self.store.commit_assistant_turn(self.project_id, self.chat_id, "Done")

        assert self._count("snapshot") == before
        assert self.store.list_chat_messages(self.chat_id) == []

    def test_chat_messages_limit_keeps_latest(self):
        for i in range(5):
            self.store.append_chat_message(self.chat_id, MessageRole.USER, f"m{i}")

        messages = self.store.list_chat_messages(self.chat_id, limit=2)

        assert [m.content for m in messages] == ["m3", "m4"]

    def test_commit_assistant_turn_writes_usage_event(self):
        usage = UsageRepository(self.db_path)

        self.store.commit_assistant_turn(
            self.project_id, self.chat_id, "Done", usage_event=self._usage_event("req-1")
        )

        events, total = usage.get_events()
        assert total == 1
        assert events[0].request_id == "req-1"

    def test_rejected_usage_event_rolls_back_turn(self):
        """A duplicate request id leaves no snapshot or reply behind."""
        usage = UsageRepository(self.db_path)
        usage.insert_usage_event(self._usage_event("req-1"))
        before = self._count("snapshot")

        with pytest.raises(sqlite3.IntegrityError):
            self.store.commit_assistant_turn(
                self.project_id, self.chat_id, "Done", usage_event=self._usage_event("req-1")
            )

        assert self._count("snapshot") == before
        assert self.store.list_chat_messages(self.chat_id) == []
        assert usage.get_events()[1] == 1

    def _usage_event(self, request_id):
        return UsageEvent(
            request_id=request_id,
            user_id="alice",
            project_id=self.project_id,
            owner=Owner.individual("alice"),
            model="claude-3-5-haiku-20241022",
            input_tokens=100,
            output_tokens=10,
            vendor_cost_usd=0.00015,
            credits_charged=0.00018,
            created_at=datetime(2025, 6, 15, tzinfo=timezone.utc),
        )

    def test_run_lifecycle(self):
        run = self.store.create_run("alice", self.project_id, self.chat_id, "add a button", "m")
        assert run.status == RunStatus.RUNNING

        self.store.record_tool_invocation(ToolInvocation(
            run_id=run.id,
            tool_name="create_file",
            args={"path": "a.tsx", "content": "x"},
            ok=True,
            result={"ok": True},
            duration_ms=3,
        ))
        run.status = RunStatus.APPLIED
        run.iterations = 2
        run.tool_calls_count = 1
        self.store.finish_run(run)

        stored = self.store.get_run(run.id)
        assert stored.status == RunStatus.APPLIED
        assert stored.iterations == 2
        invocations = self.store.list_tool_invocations(run.id)
        assert invocations[0].args == {"path": "a.tsx", "content": "x"}
        assert invocations[0].ok
        assert [r.id for r in self.store.list_recent_runs()] == [run.id]

    def test_finish_run_only_once(self):
        run = self.store.create_run("alice", self.project_id, self.chat_id, "p", "m")
        run.status = RunStatus.FAILED
        run.error = "boom"
        self.store.finish_run(run)

        run.status = RunStatus.APPLIED
        self.store.finish_run(run)

        assert self.store.get_run(run.id).status == RunStatus.FAILED

    def test_finish_run_rejects_running(self):
        run = self.store.create_run("alice", self.project_id, self.chat_id, "p", "m")
        with pytest.raises(ValueError):
            self.store.finish_run(run)

    def test_count_runs_since(self):
        self.store.create_run("alice", self.project_id, self.chat_id, "p", "m")
        self.store.create_run("alice", self.project_id, self.chat_id, "p", "m")
        since = datetime.now(timezone.utc) - timedelta(days=1)
        assert self.store.count_runs_since("alice", since) == 2
        assert self.store.count_runs_since("bob", since) == 0

    def _count(self, table):
        from appforge.storage.db import get_connection
        conn = get_connection(self.db_path)
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
        finally:
            conn.close()
