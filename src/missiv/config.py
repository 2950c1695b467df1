"""Summary: Application configuration for Missiv.

Importance: Centralizes environment, .env, and config defaults for consistent behavior.
Alternatives: Use a dedicated settings library like Pydantic Settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path

from missiv.models import DeskPreferences


STORAGE_BACKENDS = ("memory", "sqlite")


@dataclass(frozen=True)
class AppConfig:
    """Summary: Holds configuration values for storage, transport, and desk defaults.

    Importance: Ensures all services derive settings from a single source of truth.
    Alternatives: Store settings in a shared config file and parse at startup.
    """

    storage_backend: str
    db_path: str
    api_host: str
    api_port: int
    api_key: str
    log_level: str
    legacy_read_receipts: bool
    default_font_family: str
    default_font_size: str
    default_salutation: str
    default_closure: str

    @staticmethod
    def from_env() -> "AppConfig":
        """Summary: Build configuration from defaults, .env, and environment.

        Importance: Keeps all variables defined in config defaults while allowing overrides.
        Alternatives: Parse only environment variables without a defaults file.
        """

        defaults = load_defaults(Path("config") / "defaults.json")
        load_dotenv(Path(".env"))
        return AppConfig(
            storage_backend=os.getenv("MISSIV_STORAGE_BACKEND", defaults["storage_backend"]),
            db_path=os.getenv("MISSIV_DB_PATH", defaults["db_path"]),
            api_host=os.getenv("MISSIV_API_HOST", defaults["api_host"]),
            api_port=int(os.getenv("MISSIV_API_PORT", defaults["api_port"])),
            api_key=os.getenv("MISSIV_API_KEY", defaults["api_key"]),
            log_level=os.getenv("MISSIV_LOG_LEVEL", defaults["log_level"]).upper(),
            legacy_read_receipts=parse_bool(
                os.getenv("MISSIV_LEGACY_READ_RECEIPTS", defaults["legacy_read_receipts"])
            ),
            default_font_family=os.getenv(
                "MISSIV_DEFAULT_FONT_FAMILY", defaults["default_font_family"]
            ),
            default_font_size=os.getenv("MISSIV_DEFAULT_FONT_SIZE", defaults["default_font_size"]),
            default_salutation=os.getenv(
                "MISSIV_DEFAULT_SALUTATION", defaults["default_salutation"]
            ),
            default_closure=os.getenv("MISSIV_DEFAULT_CLOSURE", defaults["default_closure"]),
        )

    def desk_preferences(self) -> DeskPreferences:
        """Summary: Preferences given to newly created desks."""

        return DeskPreferences(
            font_family=self.default_font_family,
            font_size=self.default_font_size,
            default_salutation=self.default_salutation,
            default_closure=self.default_closure,
        )


def load_defaults(path: Path) -> dict[str, str]:
    """Summary: Load configuration defaults from JSON.

    Importance: Ensures all variables exist in a single config file.
    Alternatives: Inline defaults in the AppConfig initializer.
    """

    if not path.exists():
        raise FileNotFoundError(f"Defaults file not found: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def load_dotenv(path: Path) -> None:
    """Summary: Load key-value pairs from a .env file into the environment.

    Importance: Keeps secrets out of code while supporting local workflows.
    Alternatives: Use python-dotenv or OS-specific secret stores.
    """

    if not path.exists():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def parse_bool(value: str | bool) -> bool:
    if isinstance(value, bool):
        return value
    return value.strip().lower() in {"1", "true", "yes", "on"}
