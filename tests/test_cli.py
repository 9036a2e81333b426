"""Tests for CLI commands."""

import io
import json
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from nudge_engine.cli import main

NOW_ARG = "2026-03-10T12:00:00Z"

MEETING_DAY_REQUEST = {
    "user_id": "user-1",
    "protocol": {
        "id": "box_breathing",
        "name": "Box Breathing",
        "category": "Recovery",
        "evidence_level": "High",
    },
    "primary_goal": "faster_recovery",
    "module_id": "recovery",
    "day_state": {"nudges_delivered_today": 2, "meeting_hours_today": 3},
}


@pytest.fixture
def temp_db():
    """Create a temporary database path for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        with patch.dict("os.environ", {"NUDGE_ENGINE_DB_PATH": str(db_path)}):
            yield db_path


def run_cli(*args: str) -> int:
    with patch("sys.argv", ["nudge-engine", *args]):
        return main()


def write_request(tmpdir: Path, payload) -> str:
    path = tmpdir / "request.json"
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload)
    return str(path)


class TestRememberCommand:
    """Tests for the remember CLI command."""

    def test_remember_and_stats(self, temp_db, capsys):
        """Should store a memory and report it in stats."""
        result = run_cli(
            "--json", "remember", "-u", "user-1", "-t", "stated_preference",
            "-c", "Loves evening walks", "--confidence", "0.8",
        )
        assert result == 0
        memory = json.loads(capsys.readouterr().out)
        assert memory["content"] == "Loves evening walks"
        assert memory["confidence"] == 0.8
        assert memory["evidence_count"] == 1

        assert run_cli("--json", "stats", "-u", "user-1") == 0
        stats = json.loads(capsys.readouterr().out)
        assert stats["total"] == 1
        assert stats["by_type"] == {"stated_preference": 1}

    def test_remember_twice_reinforces(self, temp_db, capsys):
        args = ["remember", "-u", "user-1", "-t", "pattern_detected", "-c", "Skips Mondays"]
        assert run_cli(*args) == 0
        assert run_cli(*args) == 0
        out = capsys.readouterr().out
        assert "evidence=2" in out

    def test_remember_from_stdin(self, temp_db, capsys):
        with patch("sys.stdin", io.StringIO("No gym access\n")):
            result = run_cli("remember", "-u", "user-1", "-t", "preference_constraint")
        assert result == 0
        assert "preference_constraint" in capsys.readouterr().out

    def test_remember_empty_content_fails(self, temp_db, capsys):
        result = run_cli("--json", "remember", "-u", "user-1", "-t", "pattern_detected", "-c", " ")
        assert result == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_invalid_type_rejected(self, temp_db):
        result = run_cli("remember", "-u", "user-1", "-t", "gossip", "-c", "x")
        assert result != 0


class TestUserCommands:
    """Tests for feedback, forget-user and stats."""

    def test_feedback(self, temp_db, capsys):
        result = run_cli(
            "--json", "feedback", "-u", "user-1", "--nudge", "n-1",
            "--protocol", "box_breathing", "dismissed",
        )
        assert result == 0
        memory = json.loads(capsys.readouterr().out)
        assert memory["memory_type"] == "nudge_feedback"
        assert memory["confidence"] == 0.5

    def test_forget_user(self, temp_db, capsys):
        run_cli("remember", "-u", "user-1", "-t", "pattern_detected", "-c", "Pattern one")
        run_cli("remember", "-u", "user-1", "-t", "pattern_detected", "-c", "Pattern two")
        capsys.readouterr()

        assert run_cli("--json", "forget-user", "-u", "user-1") == 0
        assert json.loads(capsys.readouterr().out)["deleted"] == 2

    def test_stats_text_for_empty_user(self, temp_db, capsys):
        assert run_cli("stats", "-u", "nobody") == 0
        assert "0 memories" in capsys.readouterr().out


class TestMaintenanceCommands:
    """Tests for decay, prune and sweep."""

    def test_decay_and_prune(self, temp_db, capsys):
        run_cli(
            "remember", "-u", "user-1", "-t", "pattern_detected",
            "-c", "Faded pattern", "--confidence", "0.05",
        )
        run_cli("remember", "-u", "user-1", "-t", "pattern_detected", "-c", "Fresh pattern")
        capsys.readouterr()

        assert run_cli("--json", "decay", "--now", "2099-01-01T00:00:00Z") == 0
        assert json.loads(capsys.readouterr().out)["decayed"] == 2

        assert run_cli("--json", "prune", "-u", "user-1") == 0
        assert json.loads(capsys.readouterr().out)["pruned"] >= 1

    def test_sweep(self, temp_db, capsys):
        run_cli("remember", "-u", "user-1", "-t", "stated_preference", "-c", "Likes tea")
        run_cli("remember", "-u", "user-2", "-t", "stated_preference", "-c", "Likes coffee")
        capsys.readouterr()

        assert run_cli("--json", "sweep") == 0
        result = json.loads(capsys.readouterr().out)
        assert result["users"] == 2
        assert result["pruned"] == 0

    def test_invalid_now_rejected(self, temp_db, capsys):
        assert run_cli("decay", "--now", "yesterday") == 1


class TestEvaluateCommand:
    """Tests for the evaluate CLI command."""

    def test_evaluate_from_file(self, temp_db, tmp_path, capsys):
        path = write_request(tmp_path, MEETING_DAY_REQUEST)
        result = run_cli("--json", "evaluate", "-f", path, "--now", NOW_ARG)

        assert result == 0
        decision = json.loads(capsys.readouterr().out)
        assert decision["should_deliver"] is False
        assert decision["suppressed_by"] == "meeting_awareness"
        assert [f["name"] for f in decision["factors"]][0] == "protocol_fit"
        assert decision["id"] is not None

    def test_evaluate_from_stdin_critical(self, temp_db, capsys):
        payload = dict(MEETING_DAY_REQUEST, nudge_priority="critical",
                       day_state={"nudges_delivered_today": 6})
        with patch("sys.stdin", io.StringIO(json.dumps(payload))):
            result = run_cli("evaluate", "--now", NOW_ARG)

        assert result == 0
        out = capsys.readouterr().out
        assert out.startswith("DELIVER box_breathing")
        assert "Overrode daily_cap" in out

    def test_evaluate_invalid_json(self, temp_db, tmp_path, capsys):
        path = write_request(tmp_path, "{not json")
        assert run_cli("--json", "evaluate", "-f", path) == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_evaluate_missing_protocol(self, temp_db, tmp_path):
        path = write_request(tmp_path, {"user_id": "user-1"})
        assert run_cli("evaluate", "-f", path) == 1

    def test_decisions_lists_recorded(self, temp_db, tmp_path, capsys):
        path = write_request(tmp_path, MEETING_DAY_REQUEST)
        run_cli("evaluate", "-f", path, "--now", NOW_ARG)
        capsys.readouterr()

        assert run_cli("--json", "decisions", "-u", "user-1") == 0
        records = json.loads(capsys.readouterr().out)
        assert len(records) == 1
        assert records[0]["protocol_id"] == "box_breathing"


class TestRulesCommand:
    def test_rules_text(self, temp_db, capsys):
        assert run_cli("rules") == 0
        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 9
        assert lines[0] == "1. daily_cap - Daily Cap (override: CRITICAL)"

    def test_rules_json(self, temp_db, capsys):
        assert run_cli("--json", "rules") == 0
        rules = json.loads(capsys.readouterr().out)
        meeting = next(r for r in rules if r["id"] == "meeting_awareness")
        assert meeting["override_by"] == ["ADAPTIVE", "CRITICAL"]
