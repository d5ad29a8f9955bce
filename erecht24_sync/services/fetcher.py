import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from erecht24_sync.config import DEFAULT_HTTP_RETRIES, DEFAULT_HTTP_TIMEOUT
from erecht24_sync.errors import (
    InvalidResponseFormat,
    RegistrationFailed,
    UpstreamError,
    UpstreamUnavailable,
)
from erecht24_sync.models.legal_text import LegalTextDocument, LegalTextType

logger = logging.getLogger(__name__)

BACKOFF_BASE = 0.3  # seconds
BACKOFF_CAP = 4.0  # seconds
CLIENTS_ENDPOINT = "/v1/clients"


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def backoff_delay(attempt: int) -> float:
    """Delay before retry number *attempt* (0-based): 0.3 s doubling, capped at 4 s."""
    return min(BACKOFF_BASE * (2 ** attempt), BACKOFF_CAP)


def _safe_url(url: str) -> str:
    """Strip query params for safe logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class LegalTextFetcher:
    """Authenticated client for the eRecht24 legal text API.

    Transient failures (HTTP 429, any 5xx, or no response at all) are retried
    up to *retries* additional times with exponential backoff.  Client errors
    and malformed payloads fail immediately since retrying cannot fix them.
    """

    def __init__(
        self,
        api_host: str,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        retries: int = DEFAULT_HTTP_RETRIES,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api_host = api_host.rstrip("/")
        self.timeout = timeout
        self.retries = max(0, retries)
        self._client = client
        self._sleep = sleep

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "eRecht24": api_key,
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
        }

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, timeout=self.timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue a request, retrying transient failures.

        Returns the first non-retryable response (including non-200 ones).

        Raises:
            UpstreamUnavailable: when every attempt ended in 429 / 5xx or a
                transport error.
        """
        attempts = self.retries + 1
        last_status: Optional[int] = None
        last_exc: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                resp = await self._send(method, url, **kwargs)
            except httpx.TransportError as exc:
                last_exc = exc
                last_status = None
                logger.warning(
                    "Network error on %s %s (attempt %d/%d): %s",
                    method, _safe_url(url), attempt + 1, attempts, exc,
                )
            else:
                if not _is_retryable(resp.status_code):
                    return resp
                last_status = resp.status_code
                logger.warning(
                    "Transient HTTP %d on %s %s (attempt %d/%d)",
                    resp.status_code, method, _safe_url(url), attempt + 1, attempts,
                )

            if attempt < attempts - 1:
                await self._sleep(backoff_delay(attempt))

        if last_status is not None:
            message = f"eRecht24 API unavailable after {attempts} attempts (last status {last_status})."
        else:
            message = f"eRecht24 API unreachable after {attempts} attempts: {last_exc}"
        logger.error("All %d attempts failed for %s %s", attempts, method, _safe_url(url))
        raise UpstreamUnavailable(message, status_code=last_status)

    async def fetch(self, legal_type: LegalTextType, api_key: str) -> LegalTextDocument:
        """Fetch one legal text.

        Raises:
            UpstreamUnavailable: retries exhausted.
            UpstreamError: any other non-200 status.
            InvalidResponseFormat: 200 without a usable ``html_de``.
        """
        legal_type = LegalTextType(legal_type)
        url = self.api_host + legal_type.endpoint
        resp = await self._request_with_retry("GET", url, headers=self._headers(api_key))

        if resp.status_code != 200:
            logger.error("eRecht24 API error for %s: HTTP %d", legal_type.value, resp.status_code)
            raise UpstreamError(
                f"eRecht24 API returned HTTP {resp.status_code}.", status_code=resp.status_code
            )

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or not data.get("html_de"):
            logger.error("eRecht24 API error for %s: invalid response format", legal_type.value)
            raise InvalidResponseFormat("eRecht24 API response does not contain html_de.")

        try:
            return LegalTextDocument(
                type=legal_type,
                html_de=data["html_de"],
                html_en=data.get("html_en") or None,
            )
        except ValidationError as exc:
            raise InvalidResponseFormat(f"eRecht24 API response is malformed: {exc}") from exc

    async def register_client(self, api_key: str, payload: Dict[str, Any]) -> str:
        """Register this installation as an API client and return its ``client_id``.

        Sent exactly once: a retried POST could register the installation twice.
        """
        url = self.api_host + CLIENTS_ENDPOINT
        logger.info("Registering API client", extra={"push_uri": payload.get("push_uri")})
        try:
            resp = await self._send("POST", url, headers=self._headers(api_key), json=payload)
        except httpx.TransportError as exc:
            logger.error("Client registration failed: %s", exc)
            raise RegistrationFailed(f"eRecht24 API nicht erreichbar: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code in (200, 201):
            client_id = data.get("client_id")
            if not client_id:
                raise RegistrationFailed("Unerwartete Antwort von eRecht24 API.", resp.status_code)
            return str(client_id)

        message = data.get("message") or "Unbekannter Fehler"
        logger.error("Client registration failed: HTTP %d", resp.status_code)
        raise RegistrationFailed(f"{message} (HTTP {resp.status_code})", resp.status_code)
