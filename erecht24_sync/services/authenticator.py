"""Inbound webhook validation: push type, shared secret, timestamp window, nonce."""

import hmac
import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from erecht24_sync.config import ConfigProvider
from erecht24_sync.errors import InvalidType, ReplayDetected, StaleRequest, Unauthorized
from erecht24_sync.models.legal_text import PING, WEBHOOK_TYPES
from erecht24_sync.services.nonce_cache import NonceCache

logger = logging.getLogger(__name__)

TIMESTAMP_TOLERANCE = 300  # seconds

SECRET_HEADER = "X-ERecht24-Secret"
TIMESTAMP_HEADER = "X-ER24-Timestamp"
NONCE_HEADER = "X-ER24-Nonce"


@dataclass(frozen=True)
class WebhookCredentials:
    type: Optional[str]
    secret: Optional[str] = None
    timestamp: Optional[str] = None
    nonce: Optional[str] = None

    @classmethod
    def from_sources(
        cls,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> "WebhookCredentials":
        """Collect credentials from request parameters, falling back to headers."""

        def pick(param: str, header: Optional[str] = None) -> Optional[str]:
            value = params.get(param)
            if not value and header:
                value = headers.get(header)
            return value.strip() if value else None

        return cls(
            type=pick("erecht24_type"),
            secret=pick("erecht24_secret", SECRET_HEADER),
            timestamp=pick("erecht24_timestamp", TIMESTAMP_HEADER),
            nonce=pick("erecht24_nonce", NONCE_HEADER),
        )


class WebhookAuthenticator:
    """Validate webhook calls from eRecht24.

    Checks run in order and stop at the first failure:

    1. the push type is known (:class:`InvalidType`)
    2. the configured secret is set and equals the supplied one (:class:`Unauthorized`)
    3. non-ping calls carry a timestamp within ±300 s and a nonce (:class:`StaleRequest`)
    4. the nonce has not been seen in the last 600 s (:class:`ReplayDetected`)

    Ping calls stop after step 2; they trigger no side effects.
    """

    def __init__(
        self,
        config: ConfigProvider,
        nonce_cache: NonceCache,
        tolerance: int = TIMESTAMP_TOLERANCE,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self.nonce_cache = nonce_cache
        self.tolerance = tolerance
        self._clock = clock

    def validate(self, credentials: WebhookCredentials) -> None:
        if not credentials.type or credentials.type not in WEBHOOK_TYPES:
            raise InvalidType(f"Unknown webhook type {credentials.type!r}")

        expected = self.config.webhook_secret
        if not expected:
            raise Unauthorized("No webhook secret configured")
        supplied = credentials.secret or ""
        if not hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8")):
            raise Unauthorized("Webhook secret mismatch")

        if credentials.type == PING:
            return

        if not credentials.timestamp or not credentials.nonce:
            raise StaleRequest("Timestamp and nonce are required")
        try:
            request_time = int(credentials.timestamp)
        except ValueError:
            raise StaleRequest(f"Malformed timestamp {credentials.timestamp!r}")
        skew = abs(self._clock() - request_time)
        if skew > self.tolerance:
            raise StaleRequest(f"Timestamp outside tolerance ({skew:.0f}s skew)")

        if not self.nonce_cache.add_if_absent(credentials.nonce):
            raise ReplayDetected("Nonce already used")
