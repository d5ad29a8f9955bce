"""Service wiring.

Everything is built once per application by :func:`build_container` and kept
on ``app.state.container``.  The fetcher and sync engine are request-scoped so
configuration changes (API host, timeout, retries) apply to the next call.
"""

import hmac
from dataclasses import dataclass, field
from typing import Callable, Optional

from fastapi import Header, HTTPException, Request

from erecht24_sync.config import ConfigProvider, Settings
from erecht24_sync.services.authenticator import WebhookAuthenticator
from erecht24_sync.services.fetcher import LegalTextFetcher
from erecht24_sync.services.nonce_cache import NonceCache
from erecht24_sync.services.page_repository import PageRepository, build_page_repository
from erecht24_sync.services.settings_store import SettingsStore, build_backend, read_legacy_rows
from erecht24_sync.services.sync_engine import SyncEngine


def default_fetcher_factory(config: ConfigProvider) -> LegalTextFetcher:
    return LegalTextFetcher(
        api_host=config.api_host,
        timeout=config.http_timeout,
        retries=config.http_retries,
    )


@dataclass
class Container:
    settings: Settings
    store: SettingsStore
    config: ConfigProvider
    repository: PageRepository
    nonce_cache: NonceCache
    authenticator: WebhookAuthenticator
    fetcher_factory: Callable[[ConfigProvider], LegalTextFetcher] = field(
        default=default_fetcher_factory
    )

    def fetcher(self) -> LegalTextFetcher:
        return self.fetcher_factory(self.config)

    def sync_engine(self) -> SyncEngine:
        return SyncEngine(self.config, self.fetcher(), self.repository, self.store)


def build_container(
    settings: Optional[Settings] = None,
    *,
    store: Optional[SettingsStore] = None,
    repository: Optional[PageRepository] = None,
    fetcher_factory: Optional[Callable[[ConfigProvider], LegalTextFetcher]] = None,
) -> Container:
    settings = settings or Settings()
    if store is None:
        store = SettingsStore(
            build_backend(
                settings.settings_backend,
                settings_file=settings.settings_file,
                database_url=settings.database_url,
            )
        )
    if repository is None:
        repository = build_page_repository(
            settings.page_backend,
            database_url=settings.database_url,
            default_parent_id=settings.default_parent_id,
        )

    if settings.legacy_database_url:
        store.migrate_legacy(read_legacy_rows(settings.legacy_database_url))

    config = ConfigProvider(settings, store)
    if not config.webhook_secret:
        store.ensure_webhook_secret()

    nonce_cache = NonceCache()
    return Container(
        settings=settings,
        store=store,
        config=config,
        repository=repository,
        nonce_cache=nonce_cache,
        authenticator=WebhookAuthenticator(config, nonce_cache),
        fetcher_factory=fetcher_factory or default_fetcher_factory,
    )


def get_container(request: Request) -> Container:
    return request.app.state.container


def require_admin(request: Request, x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Reject admin calls without the configured ``X-Admin-Token``."""
    expected = get_container(request).settings.admin_token
    if not expected or not hmac.compare_digest(
        expected.encode("utf-8"), (x_admin_token or "").encode("utf-8")
    ):
        raise HTTPException(status_code=403, detail="Forbidden")
