"""Tests for the racesync command line."""

import json
import logging
import sys

import pytest

from racesync import __main__ as cli


@pytest.fixture
def run_cli(monkeypatch):
    """Run ``racesync`` with the given arguments against a memory backend."""
    monkeypatch.setenv("RACESYNC_BACKEND", "memory")
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)

    def run(*argv: str) -> int:
        monkeypatch.setattr(sys, "argv", ["racesync", *argv])
        return cli.main()

    return run


class TestJSONFormatter:
    def test_fields(self):
        record = logging.LogRecord(
            "racesync.sync.entries", logging.INFO, __file__, 1, "Removed %s", ("e1",), None
        )

        data = json.loads(cli.JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["component"] == "racesync.sync.entries"
        assert data["message"] == "Removed e1"
        assert "exception" not in data

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "racesync", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )

        data = json.loads(cli.JSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]


class TestCommands:
    """Tests for the CLI subcommands."""

    def test_no_command(self, run_cli, capsys):
        assert run_cli() == 1
        assert "usage" in capsys.readouterr().out

    def test_races_without_subcommand(self, run_cli):
        assert run_cli("races") == 1

    def test_status_json(self, run_cli, capsys):
        assert run_cli("status", "--json") == 0

        status = json.loads(capsys.readouterr().out)
        assert status["backend"] == {"kind": "memory", "reachable": True}
        assert status["sync"]["max_atomic_retries"] == 5

    def test_races_list_empty(self, run_cli, capsys):
        assert run_cli("races", "list", "--json") == 0
        assert json.loads(capsys.readouterr().out) == []

    def test_races_list_table(self, run_cli, capsys):
        assert run_cli("races", "list") == 0
        assert "No races found" in capsys.readouterr().out

    def test_races_delete_missing(self, run_cli, capsys):
        assert run_cli("races", "delete", "race-1") == 1
        assert "Race not found: race-1" in capsys.readouterr().err

    def test_races_delete_invalid_id(self, run_cli, capsys):
        assert run_cli("races", "delete", "bad id!") == 1
        assert "Invalid raceId format" in capsys.readouterr().err
