"""Summary: Tests for the command-line interface.

Importance: Ensures local commands drive the same services as the API.
Alternatives: Exercise the CLI by hand only.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

import pytest

from missiv.cli import build_parser, run_cli


REPO_DEFAULTS = Path(__file__).resolve().parents[1] / "config" / "defaults.json"


@pytest.fixture
def sqlite_workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Summary: Working directory configured for a SQLite store.

    Importance: CLI invocations only share state through a durable backend.
    Alternatives: Run every command inside one process-wide memory store.
    """

    (tmp_path / "config").mkdir()
    shutil.copy(REPO_DEFAULTS, tmp_path / "config" / "defaults.json")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("MISSIV_STORAGE_BACKEND", "sqlite")
    monkeypatch.setenv("MISSIV_DB_PATH", str(tmp_path / "cli.db"))
    return tmp_path


def test_parser_normalizes_basket_names() -> None:
    """Summary: Verify basket names are accepted in any case."""

    args = build_parser().parse_args(["basket", "2015550001", "pending"])
    assert args.basket == "PENDING"
    with pytest.raises(SystemExit):
        build_parser().parse_args(["basket", "2015550001", "nowhere"])


def test_cli_register_and_list_desks(
    sqlite_workdir: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    """Summary: Verify register then list-desks share the SQLite store."""

    assert run_cli(["register", "alice", "pw", "--display-name", "Alice"]) == 0
    output = capsys.readouterr().out
    assert "Registered alice" in output
    account_id = output.split("(")[1].split(")")[0]

    assert run_cli(["list-desks", account_id]) == 0
    assert "Primary Desk" in capsys.readouterr().out


def test_cli_reports_engine_errors(sqlite_workdir: Path) -> None:
    """Summary: Verify engine errors turn into a non-zero exit code."""

    assert run_cli(["archive", "conv-missing"]) == 1
    assert run_cli(["reply", "conv-missing", "2015550001", "hello"]) == 1


def test_cli_defaults_to_sqlite_between_commands(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    """Summary: Verify commands share state when no backend is configured.

    Importance: Each command is its own process, so a memory store would lose every write.
    Alternatives: Make users export MISSIV_STORAGE_BACKEND first.
    """

    (tmp_path / "config").mkdir()
    shutil.copy(REPO_DEFAULTS, tmp_path / "config" / "defaults.json")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("MISSIV_STORAGE_BACKEND", raising=False)
    monkeypatch.setenv("MISSIV_DB_PATH", str(tmp_path / "default.db"))

    assert run_cli(["register", "bob", "pw"]) == 0
    account_id = capsys.readouterr().out.split("(")[1].split(")")[0]
    assert (tmp_path / "default.db").exists()
    assert run_cli(["list-desks", account_id]) == 0
    assert "Primary Desk" in capsys.readouterr().out


def test_cli_warns_on_explicit_memory_backend(
    sqlite_workdir: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    """Summary: Verify an explicit memory backend is kept but flagged."""

    monkeypatch.setenv("MISSIV_STORAGE_BACKEND", "memory")
    with caplog.at_level(logging.WARNING, logger="missiv.cli"):
        assert run_cli(["register", "carl", "pw"]) == 0
    assert "state is discarded" in caplog.text
    assert not (sqlite_workdir / "cli.db").exists()
