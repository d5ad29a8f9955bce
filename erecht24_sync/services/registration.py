"""Client registration with eRecht24 and webhook self-checks."""

import logging
from importlib.metadata import PackageNotFoundError, version
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import httpx
from fastapi.concurrency import run_in_threadpool

from erecht24_sync.config import ConfigProvider
from erecht24_sync.errors import NotConfigured
from erecht24_sync.services.fetcher import LegalTextFetcher
from erecht24_sync.services.settings_store import generate_webhook_secret

logger = logging.getLogger(__name__)

PLUGIN_NAME = "erecht24-sync"
PING_TIMEOUT = 5  # seconds


def _package_version() -> str:
    try:
        return version("erecht24-sync")
    except PackageNotFoundError:
        return "0.0.0"


def client_payload(config: ConfigProvider) -> Dict[str, str]:
    host = urlparse(config.settings.public_url).hostname or "localhost"
    return {
        "cms": "FastAPI",
        "cms_version": _package_version(),
        "plugin_name": PLUGIN_NAME,
        "push_uri": config.webhook_url,
        "push_method": "POST",
        "author_mail": f"admin@{host}",
    }


def _prepare_registration(config: ConfigProvider) -> str:
    api_key = config.api_key
    if not api_key:
        raise NotConfigured(
            "API-Schlüssel ist nicht konfiguriert. "
            "Bitte konfigurieren Sie zuerst den API-Schlüssel."
        )
    if not config.webhook_secret:
        config.store.ensure_webhook_secret()
    return api_key


async def register_client(config: ConfigProvider, fetcher: LegalTextFetcher) -> str:
    """Register this installation and persist the returned ``client_id``.

    The webhook secret is generated first if none exists, so eRecht24 and this
    service agree on it from the first push.
    """
    api_key = await run_in_threadpool(_prepare_registration, config)
    client_id = await fetcher.register_client(api_key, client_payload(config))
    await run_in_threadpool(config.store.set, "client_id", client_id)
    logger.info("Registered API client", extra={"client_id": client_id})
    return client_id


def reset_registration(config: ConfigProvider) -> bool:
    return config.store.delete("client_id")


def rotate_webhook_secret(config: ConfigProvider) -> Optional[str]:
    """Store a new webhook secret; returns None when the secret is overridden."""
    if config.is_overridden("webhook_secret"):
        return None
    secret = generate_webhook_secret()
    if not config.store.set("webhook_secret", secret):
        return None
    logger.info("Webhook secret rotated")
    return secret


async def ping_webhook(
    config: ConfigProvider, client: Optional[httpx.AsyncClient] = None
) -> Tuple[int, str]:
    """Call our own webhook with ``erecht24_type=ping``.

    Returns ``(status_code, body)``; status 0 means no response arrived.
    """
    secret = await run_in_threadpool(getattr, config, "webhook_secret")
    if not secret:
        raise NotConfigured("Webhook Secret ist nicht konfiguriert.")

    params = {"erecht24_type": "ping", "erecht24_secret": secret}
    try:
        if client is not None:
            resp = await client.get(config.webhook_url, params=params, timeout=PING_TIMEOUT)
        else:
            async with httpx.AsyncClient(timeout=PING_TIMEOUT) as own_client:
                resp = await own_client.get(config.webhook_url, params=params)
    except httpx.HTTPError as exc:
        logger.warning("Webhook test ping failed: %s", exc)
        return 0, str(exc) or "No response"
    return resp.status_code, resp.text
