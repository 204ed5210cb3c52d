"""
Tests for the CLI interface.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timezone
from unittest.mock import patch

from typer.testing import CliRunner

from appforge.cli.main import EXIT_CODE_FAIL, EXIT_CODE_PASS, app, console
from appforge.core.pricing import ModelRouting
from appforge.storage.models import Owner, UsageEvent
from appforge.storage.repository import UsageRepository
from appforge.storage.workspace import WorkspaceStore

runner = CliRunner()


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "appforge.db")
        self.env = {"APPFORGE_DB_PATH": self.db_path}
        # Wide enough that tables never wrap cell contents
        self.width_patch = patch.object(console, "_width", 200)
        self.width_patch.start()

    def teardown_method(self):
        self.width_patch.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *args):
        return runner.invoke(app, list(args), env=self.env)

    def init(self):
        result = self.invoke("init")
        assert result.exit_code == EXIT_CODE_PASS
        return result

    def test_init_command(self):
        result = self.init()
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_uninitialized_database(self):
        result = self.invoke("balance", "alice")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Database not initialized" in result.output

    def test_topup_and_balance(self):
        self.init()

        result = self.invoke("topup", "alice", "2.5", "--ref", "stripe-1")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Added 2.5000 credits" in result.output

        result = self.invoke("balance", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "INDIVIDUAL:alice" in result.output
        assert "2.5000 credits" in result.output

    def test_topup_rejects_non_positive(self):
        self.init()
        result = self.invoke("topup", "alice", "0")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Topup amount must be positive" in result.output

    def test_adjust(self):
        self.init()
        self.invoke("topup", "alice", "3")

        result = self.invoke("adjust", "alice", "--reason", "goodwill", "--", "-1")

        assert result.exit_code == EXIT_CODE_PASS
        assert "-1.0000" in result.output
        assert "balance 2.0000" in result.output

    def test_set_plan_issues_grant_once(self):
        self.init()

        result = self.invoke("set-plan", "alice", "PRO")
        assert result.exit_code == EXIT_CODE_PASS
        assert "is now on PRO" in result.output
        assert "Granted 10.0000 credits" in result.output

        result = self.invoke("set-plan", "alice", "PRO")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Granted" not in result.output

        assert "10.0000 credits" in self.invoke("balance", "alice").output

    def test_set_plan_for_team(self):
        self.init()
        result = self.invoke("set-plan", "team-1", "TEAM", "--team")
        assert result.exit_code == EXIT_CODE_PASS
        assert "TEAM:team-1" in result.output

    def test_set_plan_invalid_tier(self):
        self.init()
        result = self.invoke("set-plan", "alice", "ENTERPRISE")
        assert result.exit_code != EXIT_CODE_PASS

    def test_plan_command(self):
        self.init()

        result = self.invoke("plan", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Tier: FREE" in result.output
        assert "AI runs per day: 20" in result.output

        self.invoke("set-plan", "alice", "PRO")
        result = self.invoke("plan", "alice")
        assert "Tier: PRO" in result.output
        assert "AI runs per day" not in result.output

    def test_usage_empty(self):
        self.init()
        result = self.invoke("usage")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No AI usage events found" in result.output

    def test_usage_lists_events(self):
        self.init()
        UsageRepository(self.db_path).insert_usage_event(UsageEvent(
            request_id="req-1",
            user_id="alice",
            owner=Owner.individual("alice"),
            model="claude-3-5-haiku-20241022",
            input_tokens=2200,
            output_tokens=80,
            vendor_cost_usd=0.00208,
            credits_charged=0.0025,
            created_at=datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc),
        ))

        result = self.invoke("usage", "--user", "alice")

        assert result.exit_code == EXIT_CODE_PASS
        assert "alice" in result.output
        assert "2,200/80" in result.output

        result = self.invoke("usage", "--user", "bob")
        assert "No AI usage events found" in result.output

    def test_usage_invalid_page(self):
        self.init()
        result = self.invoke("usage", "--page", "0")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "page must be >= 1" in result.output

    def test_stats_clean(self):
        self.init()
        result = self.invoke("stats")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Requests: 0" in result.output
        assert "FREE tier strong-model requests: 0" in result.output

    def test_stats_flags_free_strong_usage(self):
        self.init()
        UsageRepository(self.db_path).insert_usage_event(UsageEvent(
            request_id="req-1",
            user_id="alice",
            owner=Owner.individual("alice"),
            model=ModelRouting().strong,
            input_tokens=1000,
            output_tokens=100,
            vendor_cost_usd=0.0045,
            credits_charged=0.0054,
            created_at=datetime.now(timezone.utc),
        ))

        result = self.invoke("stats")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "FREE tier strong-model requests: 1" in result.output

    def test_runs(self):
        self.init()
        result = self.invoke("runs")
        assert result.exit_code == EXIT_CODE_PASS
        assert "No AI runs found" in result.output

        store = WorkspaceStore(self.db_path)
        project_id = store.create_project("alice", "Demo")
        session_id = store.create_chat_session(project_id)
        store.create_run("alice", project_id, session_id, "add a footer", "claude-3-5-haiku-20241022")

        result = self.invoke("runs", "--limit", "5")
        assert result.exit_code == EXIT_CODE_PASS
        assert "running" in result.output

    def test_missing_config_file(self):
        result = self.invoke("--config", os.path.join(self.temp_dir, "missing.yaml"), "init")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_config_file_is_used(self):
        config_path = os.path.join(self.temp_dir, "appforge.yaml")
        db_path = os.path.join(self.temp_dir, "from-config.db")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(f"database:\n  path: {db_path}\n")

        result = runner.invoke(app, ["--config", config_path, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(db_path)

    def test_invalid_log_level(self):
        result = self.invoke("--log-level", "LOUD", "init")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown log level" in result.output

    @patch("appforge.cli.main.initialize_schema")
    def test_init_database_error(self, mock_initialize):
        mock_initialize.side_effect = sqlite3.OperationalError("disk I/O error")

        result = self.invoke("init")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "disk I/O error" in result.output
