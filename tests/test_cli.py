"""Tests for the sentinel command line."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from typer.testing import CliRunner

from nebulus_sentinel import cli
from nebulus_sentinel.errors import ToolError

runner = CliRunner()


@pytest.fixture(autouse=True)
def fake_tools(monkeypatch, panes, beads):
    for var in ("SENTINEL_INTERVAL", "SENTINEL_DISK_LOW_GB", "SENTINEL_PROJECTS_DIR"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(cli, "TmuxClient", lambda: panes)
    monkeypatch.setattr(cli, "BeadsClient", lambda default_path="": beads)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "sentinel.yml"
    # Zero threshold keeps the host's real free space out of the results
    path.write_text("alerts:\n  disk_low_threshold_gb: 0\n")
    return path


def invoke(config_file, *args):
    return runner.invoke(cli.app, ["--config", str(config_file), *args])


class TestAlertsCommand:
    def test_json_envelope(self, config_file, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: boom")

        result = invoke(config_file, "alerts", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [a["type"] for a in data["active"]] == ["agent_error"]
        assert data["summary"]["total_active"] == 1
        assert data["config"]["alerts"]["disk_low_threshold_gb"] == 0

    def test_table(self, config_file, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "panic: boom")
        result = invoke(config_file, "alerts")
        assert result.exit_code == 0
        assert "Active Alerts" in result.stdout

    def test_no_alerts(self, config_file) -> None:
        result = invoke(config_file, "alerts")
        assert result.exit_code == 0
        assert "No active alerts." in result.stdout

    def test_bad_config(self, tmp_path) -> None:
        path = tmp_path / "sentinel.yml"
        path.write_text("- not\n- a mapping\n")
        result = invoke(path, "alerts")
        assert result.exit_code == 1
        assert "Config error" in result.stdout


class TestStatusCommand:
    def test_table(self, config_file, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "done\nclaude> ")
        result = invoke(config_file, "status")
        assert result.exit_code == 0
        assert "Agent Status" in result.stdout
        assert "1 idle" in result.stdout

    def test_no_panes(self, config_file) -> None:
        result = invoke(config_file, "status")
        assert "No panes found." in result.stdout

    def test_tmux_failure(self, config_file, panes) -> None:
        def fail():
            raise ToolError("tmux", ["list-sessions"], message="server exited")

        panes.list_sessions = fail
        result = invoke(config_file, "status")
        assert result.exit_code == 1
        assert "server exited" in result.stdout


class TestConflictsCommand:
    def _write(self, tmp_path, records):
        path = tmp_path / "changes.json"
        path.write_text(json.dumps(records))
        return path

    def _record(self, path, agents, ts, session="proj"):
        return {
            "timestamp": ts.isoformat(),
            "session": session,
            "agents": agents,
            "change": {"path": path, "type": "modified"},
        }

    def test_json(self, config_file, tmp_path) -> None:
        now = datetime.now(timezone.utc)
        changes = self._write(
            tmp_path,
            {
                "changes": [
                    self._record("a.py", ["cc_1"], now - timedelta(minutes=2)),
                    self._record("a.py", ["cod_1"], now - timedelta(minutes=1)),
                    self._record("b.py", ["cc_1"], now),
                ]
            },
        )

        result = invoke(config_file, "conflicts", str(changes), "--json")

        assert result.exit_code == 0
        (conflict,) = json.loads(result.stdout)
        assert conflict["path"] == "a.py"
        assert conflict["agents"] == ["cc_1", "cod_1"]
        assert conflict["severity"] == "critical"

    def test_recent_and_session(self, config_file, tmp_path) -> None:
        now = datetime.now(timezone.utc)
        old = now - timedelta(hours=5)
        changes = self._write(
            tmp_path,
            [
                self._record("old.py", ["cc_1"], old),
                self._record("old.py", ["cod_1"], old),
                self._record("new.py", ["cc_1"], now, session="side"),
                self._record("new.py", ["cod_1"], now, session="side"),
            ],
        )

        everything = invoke(config_file, "conflicts", str(changes), "--json")
        assert [c["path"] for c in json.loads(everything.stdout)] == ["new.py", "old.py"]

        recent = invoke(config_file, "conflicts", str(changes), "--recent", "--json")
        assert [c["path"] for c in json.loads(recent.stdout)] == ["new.py"]

        scoped = invoke(config_file, "conflicts", str(changes), "--session", "proj", "--json")
        assert [c["path"] for c in json.loads(scoped.stdout)] == ["old.py"]

    def test_table_and_empty(self, config_file, tmp_path) -> None:
        now = datetime.now(timezone.utc)
        changes = self._write(
            tmp_path,
            [self._record("a.py", ["cc_1"], now), self._record("a.py", ["gmi_1"], now)],
        )
        result = invoke(config_file, "conflicts", str(changes))
        assert "File Conflicts" in result.stdout

        empty = self._write(tmp_path, [])
        assert "No conflicts." in invoke(config_file, "conflicts", str(empty)).stdout

    def test_unreadable_file(self, config_file, tmp_path) -> None:
        bad = tmp_path / "changes.json"
        bad.write_text("[{\"change\": {\"path\": \"a.py\", \"type\": \"renamed\"}}]")
        result = invoke(config_file, "conflicts", str(bad))
        assert result.exit_code == 1
        assert "Cannot read" in result.stdout


class TestWatchCommand:
    def test_bounded_run(self, config_file, panes) -> None:
        panes.add_pane("proj", "%1", 1, "cc", "Conversation compacted")
        result = invoke(config_file, "watch", "--cycles", "2", "--interval", "0")
        assert result.exit_code == 0
        assert "2 cycle(s)" in result.stdout
        assert len(panes.sent) == 1


class TestConfigCheckCommand:
    def test_valid(self, config_file) -> None:
        result = invoke(config_file, "config-check")
        assert result.exit_code == 0
        assert "Config is valid." in result.stdout

    def test_invalid(self, tmp_path) -> None:
        path = tmp_path / "sentinel.yml"
        path.write_text("alerts:\n  agent_stuck_minutes: 0\nconflicts:\n  store_limit: 0\n")
        result = invoke(path, "config-check")
        assert result.exit_code == 1
        assert "Validation Errors" in result.stdout
        assert "agent_stuck_minutes" in result.stdout
