"""Summary: Shared fixtures for Missiv tests.

Importance: Runs the store contract against every backend with a deterministic clock.
Alternatives: Duplicate fixtures in each test module.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from missiv.app import AppServices, build_services
from missiv.config import AppConfig
from missiv.models import Desk
from missiv.storage.base import EntityStore
from missiv.storage.memory_store import MemoryStore
from missiv.storage.sqlite_store import SqliteStore


DESK_A = "2015550001"
DESK_B = "3025550002"
DESK_C = "4035550003"


class TickingClock:
    """Summary: Clock advancing one second per call.

    Importance: Makes ordering by timestamps deterministic in tests.
    Alternatives: Sleep between writes.
    """

    def __init__(self) -> None:
        self._now = datetime(2026, 1, 15, 10, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            self._now += timedelta(seconds=1)
            return self._now


def build_config(db_path: str = "missiv.db", **overrides: object) -> AppConfig:
    """Summary: Build an AppConfig for tests.

    Importance: Ensures tests use isolated storage.
    Alternatives: Load AppConfig from environment variables.
    """

    values = {
        "storage_backend": "memory",
        "db_path": db_path,
        "api_host": "127.0.0.1",
        "api_port": 8080,
        "api_key": "",
        "log_level": "INFO",
        "legacy_read_receipts": False,
        "default_font_family": "Georgia, serif",
        "default_font_size": "14px",
        "default_salutation": "Dear [User],",
        "default_closure": "Sincerely,",
    }
    values.update(overrides)
    return AppConfig(**values)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> EntityStore:
    """Summary: Provide each store backend with a ticking clock."""

    if request.param == "sqlite":
        sqlite_store = SqliteStore(str(tmp_path / "missiv.db"), clock=TickingClock())
        sqlite_store.initialize()
        return sqlite_store
    return MemoryStore(clock=TickingClock())


@pytest.fixture
def desk_store(store: EntityStore) -> EntityStore:
    """Summary: Store pre-populated with three desks."""

    for desk_id in (DESK_A, DESK_B, DESK_C):
        store.create_desk(Desk(id=desk_id, account_id="acc-test", name=desk_id), b"secret")
    return store


@pytest.fixture
def services(desk_store: EntityStore) -> AppServices:
    """Summary: Services over a store holding desks A, B, and C."""

    return build_services(build_config(), store=desk_store)


@pytest.fixture
def legacy_services(desk_store: EntityStore) -> AppServices:
    """Summary: Services with legacy read receipts switched on."""

    return build_services(build_config(legacy_read_receipts=True), store=desk_store)
