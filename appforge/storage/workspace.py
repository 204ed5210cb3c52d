"""
Project workspace persistence.

Project files, snapshots, chat sessions, AI runs and tool invocations.
"""

import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    AiRun,
    ChatMessage,
    MessageRole,
    ProjectFile,
    RunStatus,
    ToolInvocation,
    UsageEvent,
)
from .repository import from_iso, insert_usage_event_row, to_iso


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


_RUN_COLUMNS = """
    id, user_id, project_id, chat_session_id, prompt, model, status,
    input_tokens, output_tokens, cache_read_tokens, cache_write_tokens,
    tool_calls_count, patch_failures, retry_count, iterations, duration_ms,
    stop_reason, error, created_at
"""


def _row_to_run(row) -> AiRun:
    return AiRun(
        id=row[0],
        user_id=row[1],
        project_id=row[2],
        chat_session_id=row[3],
        prompt=row[4],
        model=row[5],
        status=RunStatus(row[6]),
        input_tokens=row[7],
        output_tokens=row[8],
        cache_read_tokens=row[9],
        cache_write_tokens=row[10],
        tool_calls_count=row[11],
        patch_failures=row[12],
        retry_count=row[13],
        iterations=row[14],
        duration_ms=row[15],
        stop_reason=row[16],
        error=row[17],
        created_at=from_iso(row[18]),
    )


def _insert_snapshot(
    conn: sqlite3.Connection, project_id: str, label: Optional[str]
) -> str:
    snapshot_id = _new_id()
    conn.execute(
        "INSERT INTO snapshot (id, project_id, label, created_at) VALUES (?, ?, ?, ?)",
        (snapshot_id, project_id, label, to_iso(_now())),
    )
    conn.execute("""
        INSERT INTO snapshot_file (snapshot_id, path, content)
        SELECT ?, path, content FROM project_file WHERE project_id = ?
    """, (snapshot_id, project_id))
    return snapshot_id


def _insert_message(
    conn: sqlite3.Connection, chat_session_id: str, role: MessageRole, content: str
) -> ChatMessage:
    created_at = _now()
    cursor = conn.execute("""
        INSERT INTO chat_message (chat_session_id, role, content, created_at)
        VALUES (?, ?, ?, ?)
    """, (chat_session_id, role.value, content, to_iso(created_at)))
    return ChatMessage(
        id=cursor.lastrowid,
        chat_session_id=chat_session_id,
        role=role,
        content=content,
        created_at=created_at,
    )


class WorkspaceStore:
    """SQLite-backed file store, snapshot history and run bookkeeping."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    # Projects and files

    def create_project(
        self, user_id: str, name: str, project_id: Optional[str] = None
    ) -> str:
        project_id = project_id or _new_id()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO project (id, user_id, name, created_at) VALUES (?, ?, ?, ?)",
                (project_id, user_id, name, to_iso(_now())),
            )
            conn.commit()
            return project_id
        finally:
            conn.close()

    def get_project_owner(self, project_id: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT user_id FROM project WHERE id = ?", (project_id,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def list_files(self, project_id: str) -> List[ProjectFile]:
        """Current working set of a project, ordered by path."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT path, content FROM project_file WHERE project_id = ? ORDER BY path",
                (project_id,),
            )
            return [ProjectFile(path=row[0], content=row[1]) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_file(self, project_id: str, path: str) -> Optional[ProjectFile]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT path, content FROM project_file WHERE project_id = ? AND path = ?",
                (project_id, path),
            ).fetchone()
            return ProjectFile(path=row[0], content=row[1]) if row else None
        finally:
            conn.close()

    def write_file(self, project_id: str, path: str, content: str) -> None:
        """Create or overwrite a file in the working set."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO project_file (project_id, path, content, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (project_id, path) DO UPDATE SET
                    content = excluded.content,
                    updated_at = excluded.updated_at
            """, (project_id, path, content, to_iso(_now())))
            conn.commit()
        finally:
            conn.close()

    def delete_file(self, project_id: str, path: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM project_file WHERE project_id = ? AND path = ?",
                (project_id, path),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def rename_file(self, project_id: str, old_path: str, new_path: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE project_file SET path = ?, updated_at = ?
                WHERE project_id = ? AND path = ?
            """, (new_path, to_iso(_now()), project_id, old_path))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    # Snapshots

    def create_snapshot_with_files(self, project_id: str, label: Optional[str] = None) -> str:
        """Capture the project's current files as a new snapshot.

        Returns:
            The new snapshot id
        """
        conn = get_connection(self.db_path)
        try:
            snapshot_id = _insert_snapshot(conn, project_id, label)
            conn.commit()
            return snapshot_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def snapshot_exists(self, project_id: str, snapshot_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT 1 FROM snapshot WHERE id = ? AND project_id = ?",
                (snapshot_id, project_id),
            ).fetchone()
            return row is not None
        finally:
            conn.close()

    def get_snapshot_files(self, snapshot_id: str) -> List[ProjectFile]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT path, content FROM snapshot_file WHERE snapshot_id = ? ORDER BY path",
                (snapshot_id,),
            )
            return [ProjectFile(path=row[0], content=row[1]) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Chat

    def create_chat_session(
        self, project_id: str, title: Optional[str] = None, chat_session_id: Optional[str] = None
    ) -> str:
        chat_session_id = chat_session_id or _new_id()
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "INSERT INTO chat_session (id, project_id, title, created_at) VALUES (?, ?, ?, ?)",
                (chat_session_id, project_id, title, to_iso(_now())),
            )
            conn.commit()
            return chat_session_id
        finally:
            conn.close()

    def get_chat_session_project(self, chat_session_id: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT project_id FROM chat_session WHERE id = ?", (chat_session_id,)
            ).fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def append_chat_message(
        self, chat_session_id: str, role: MessageRole, content: str
    ) -> ChatMessage:
        conn = get_connection(self.db_path)
        try:
            message = _insert_message(conn, chat_session_id, role, content)
            conn.commit()
            return message
        finally:
            conn.close()

    def list_chat_messages(
        self, chat_session_id: str, limit: Optional[int] = None
    ) -> List[ChatMessage]:
        """Messages of a session, oldest first.

        With ``limit``, only the most recent ``limit`` messages are returned.
        """
        conn = get_connection(self.db_path)
        try:
            if limit is None:
                cursor = conn.execute("""
                    SELECT id, chat_session_id, role, content, created_at FROM chat_message
                    WHERE chat_session_id = ? ORDER BY id
                """, (chat_session_id,))
                rows = cursor.fetchall()
            else:
                cursor = conn.execute("""
                    SELECT id, chat_session_id, role, content, created_at FROM chat_message
                    WHERE chat_session_id = ? ORDER BY id DESC LIMIT ?
                """, (chat_session_id, limit))
                rows = list(reversed(cursor.fetchall()))
            return [
                ChatMessage(
                    id=row[0],
                    chat_session_id=row[1],
                    role=MessageRole(row[2]),
                    content=row[3],
                    created_at=from_iso(row[4]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def commit_assistant_turn(
        self,
        project_id: str,
        chat_session_id: str,
        content: str,
        label: Optional[str] = None,
        usage_event: Optional[UsageEvent] = None,
    ) -> str:
        """Create a snapshot and persist the assistant reply in one transaction.

        Either everything is written or nothing is, so a chat never shows an
        assistant reply without a matching snapshot. The run's usage event,
        when given, is written in the same transaction.

        Returns:
            The new snapshot id
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            snapshot_id = _insert_snapshot(conn, project_id, label)
            _insert_message(conn, chat_session_id, MessageRole.ASSISTANT, content)
            if usage_event is not None:
                insert_usage_event_row(conn, usage_event)
            conn.commit()
            return snapshot_id
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # AI runs

    def create_run(
        self,
        user_id: str,
        project_id: str,
        chat_session_id: str,
        prompt: str,
        model: str,
    ) -> AiRun:
        run = AiRun(
            id=_new_id(),
            user_id=user_id,
            project_id=project_id,
            chat_session_id=chat_session_id,
            prompt=prompt,
            model=model,
            status=RunStatus.RUNNING,
            created_at=_now(),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_run
                (id, user_id, project_id, chat_session_id, prompt, model, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (run.id, user_id, project_id, chat_session_id, prompt, model,
                  run.status.value, to_iso(run.created_at)))
            conn.commit()
            return run
        finally:
            conn.close()

    def finish_run(self, run: AiRun) -> None:
        """Write the final state of a run. Called once per run by its coordinator."""
        if run.status == RunStatus.RUNNING:
            raise ValueError("finish_run requires an applied or failed status")
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE ai_run SET
                    status = ?, input_tokens = ?, output_tokens = ?,
                    cache_read_tokens = ?, cache_write_tokens = ?,
                    tool_calls_count = ?, patch_failures = ?, retry_count = ?,
                    iterations = ?, duration_ms = ?, stop_reason = ?, error = ?
                WHERE id = ? AND status = ?
            """, (
                run.status.value, run.input_tokens, run.output_tokens,
                run.cache_read_tokens, run.cache_write_tokens,
                run.tool_calls_count, run.patch_failures, run.retry_count,
                run.iterations, run.duration_ms, run.stop_reason, run.error,
                run.id, RunStatus.RUNNING.value,
            ))
            conn.commit()
        finally:
            conn.close()

    def get_run(self, run_id: str) -> Optional[AiRun]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM ai_run WHERE id = ?", (run_id,)
            ).fetchone()
            return _row_to_run(row) if row else None
        finally:
            conn.close()

    def list_recent_runs(self, limit: int = 100) -> List[AiRun]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM ai_run ORDER BY created_at DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_run(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def record_tool_invocation(self, invocation: ToolInvocation) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO tool_invocation
                (run_id, tool_name, args, ok, result, duration_ms, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                invocation.run_id,
                invocation.tool_name,
                json.dumps(invocation.args),
                1 if invocation.ok else 0,
                json.dumps(invocation.result),
                invocation.duration_ms,
                to_iso(invocation.created_at or _now()),
            ))
            conn.commit()
        finally:
            conn.close()

    def list_tool_invocations(self, run_id: str) -> List[ToolInvocation]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT run_id, tool_name, args, ok, result, duration_ms, created_at
                FROM tool_invocation WHERE run_id = ? ORDER BY id
            """, (run_id,))
            return [
                ToolInvocation(
                    run_id=row[0],
                    tool_name=row[1],
                    args=json.loads(row[2]),
                    ok=bool(row[3]),
                    result=json.loads(row[4]),
                    duration_ms=row[5],
                    created_at=from_iso(row[6]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def count_runs_since(self, user_id: str, since: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM ai_run WHERE user_id = ? AND created_at >= ?",
                (user_id, to_iso(since)),
            ).fetchone()
            return int(row[0])
        finally:
            conn.close()
