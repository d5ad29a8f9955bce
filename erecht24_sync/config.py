"""Configuration for the eRecht24 sync service.

Two layers feed every module setting:

1. Environment overrides (``ERECHT24_API_KEY``, ``ERECHT24_WEBHOOK_SECRET``, ...)
   loaded through :class:`Settings`.  An override always wins and is shown as
   read-only in the admin status.
2. The persisted :class:`~erecht24_sync.services.settings_store.SettingsStore`.

:class:`ConfigProvider` resolves a key against both layers, falling back to the
built-in default.
"""

import logging
from typing import Any, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from erecht24_sync.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)

DEFAULT_API_HOST = "https://api.e-recht24.de"
DEFAULT_HTTP_TIMEOUT = 10.0  # seconds
DEFAULT_HTTP_RETRIES = 2
DEFAULT_PARENT_ID = 1
WEBHOOK_PATH = "/erecht24-webhook"

# Legacy placeholder some installations stored instead of a real client id.
UNREGISTERED_CLIENT_ID = "Not registered yet"

# Module settings that may be overridden from the environment.
OVERRIDABLE_KEYS = (
    "api_key",
    "webhook_secret",
    "client_id",
    "parent_page",
    "api_host",
    "http_timeout",
    "http_retries",
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="ERECHT24_", env_file=".env", extra="ignore")

    # Module setting overrides (None = use the persisted store)
    api_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    client_id: Optional[str] = None
    parent_page: Optional[int] = None
    api_host: Optional[str] = None
    http_timeout: Optional[float] = None
    http_retries: Optional[int] = None

    # Service wiring
    settings_backend: str = "file"  # "memory", "file" or "sql"
    settings_file: str = "erecht24_settings.json"
    database_url: str = "sqlite:///./erecht24.db"
    page_backend: str = "sql"  # "memory" or "sql"
    default_parent_id: int = DEFAULT_PARENT_ID

    # Database holding a legacy ``erecht24_config`` table to import on startup
    legacy_database_url: Optional[str] = None

    # Public base URL of this installation, e.g. "https://example.com"
    public_url: str = "http://localhost:8000"

    # Admin API is disabled while this is empty
    admin_token: str = ""

    log_level: str = "INFO"


class ConfigProvider:
    """Resolve module settings: environment override → persisted store → default."""

    def __init__(self, settings: Settings, store: SettingsStore):
        self.settings = settings
        self.store = store

    def is_overridden(self, key: str) -> bool:
        return key in OVERRIDABLE_KEYS and getattr(self.settings, key) is not None

    def overridden_keys(self) -> List[str]:
        return [key for key in OVERRIDABLE_KEYS if self.is_overridden(key)]

    def get(self, key: str, default: Any = None) -> Any:
        if self.is_overridden(key):
            return getattr(self.settings, key)
        return self.store.get(key, default)

    @property
    def api_key(self) -> Optional[str]:
        return self.get("api_key") or None

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.get("webhook_secret") or None

    @property
    def client_id(self) -> Optional[str]:
        return self.get("client_id") or None

    @property
    def api_host(self) -> str:
        return (self.get("api_host") or DEFAULT_API_HOST).rstrip("/")

    def _number(self, key: str, default):
        """Stored numbers may be strings; blank or unparsable ones fall back to *default*."""
        value = self.get(key)
        if value in (None, ""):
            return default
        try:
            return type(default)(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid %s setting %r", key, value)
            return default

    @property
    def http_timeout(self) -> float:
        return self._number("http_timeout", DEFAULT_HTTP_TIMEOUT)

    @property
    def http_retries(self) -> int:
        return max(0, self._number("http_retries", DEFAULT_HTTP_RETRIES))

    @property
    def parent_page(self) -> int:
        default = self.settings.default_parent_id
        return self._number("parent_page", default) or default

    @property
    def webhook_url(self) -> str:
        return self.settings.public_url.rstrip("/") + WEBHOOK_PATH + "/"

    def is_client_registered(self) -> bool:
        client_id = self.client_id
        return bool(client_id) and client_id != UNREGISTERED_CLIENT_ID
