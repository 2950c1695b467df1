"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for the CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from missiv.config import STORAGE_BACKENDS, AppConfig
from missiv.notifications import NotificationDispatcher
from missiv.services import (
    AccountService,
    ContactService,
    ConversationService,
    DeskService,
    NotificationService,
)
from missiv.storage.base import EntityStore
from missiv.storage.memory_store import MemoryStore
from missiv.storage.sqlite_store import SqliteStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppServices:
    """Summary: Bundle of services for application entrypoints.

    Importance: Simplifies passing dependencies around the CLI and API.
    Alternatives: Use a dependency injection container.
    """

    store: EntityStore
    dispatcher: NotificationDispatcher
    accounts: AccountService
    desks: DeskService
    conversations: ConversationService
    notifications: NotificationService
    contacts: ContactService


def build_store(config: AppConfig) -> EntityStore:
    """Summary: Create the entity store selected by configuration.

    Importance: Swaps memory and SQLite backends without touching services.
    Alternatives: Hardcode a single backend.
    """

    if config.storage_backend not in STORAGE_BACKENDS:
        raise ValueError(f"Unsupported storage backend: {config.storage_backend}")
    if config.storage_backend == "sqlite":
        store = SqliteStore(config.db_path)
        store.initialize()
        logger.info("Using SQLite store at %s.", config.db_path)
        return store
    logger.info("Using in-memory store.")
    return MemoryStore()


def build_services(config: AppConfig, store: EntityStore | None = None) -> AppServices:
    """Summary: Construct core services from configuration.

    Importance: Ensures storage and notification dispatch are shared by every service.
    Alternatives: Build services lazily in each command handler.
    """

    store = store or build_store(config)
    dispatcher = NotificationDispatcher(store=store)
    desks = DeskService(store=store, default_preferences=config.desk_preferences())
    return AppServices(
        store=store,
        dispatcher=dispatcher,
        accounts=AccountService(store=store, desks=desks),
        desks=desks,
        conversations=ConversationService(
            store=store,
            dispatcher=dispatcher,
            legacy_read_receipts=config.legacy_read_receipts,
        ),
        notifications=NotificationService(
            store=store, legacy_read_receipts=config.legacy_read_receipts
        ),
        contacts=ContactService(store=store),
    )
