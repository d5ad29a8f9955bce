import hashlib
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class LegalTextType(str, Enum):
    IMPRINT = "imprint"
    PRIVACY_POLICY = "privacyPolicy"
    PRIVACY_POLICY_SOCIAL_MEDIA = "privacyPolicySocialMedia"

    @property
    def endpoint(self) -> str:
        """API path serving this legal text, e.g. ``/v1/imprint``."""
        return f"/v1/{self.value}"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    LegalTextType.IMPRINT: "Impressum",
    LegalTextType.PRIVACY_POLICY: "Datenschutzerklärung",
    LegalTextType.PRIVACY_POLICY_SOCIAL_MEDIA: "Datenschutzerklärung Social Media",
}

# Webhook push types accepted from eRecht24, in the order "all" syncs them.
PING = "ping"
ALL = "all"
WEBHOOK_TYPES = frozenset({PING, ALL, *(t.value for t in LegalTextType)})


class LegalTextDocument(BaseModel):
    """A legal text as delivered by the eRecht24 API.

    Lives only for the duration of one sync; the API payload is
    ``{"html_de": ..., "html_en": ...}`` where ``html_en`` is optional.
    """

    type: LegalTextType
    html_de: str
    html_en: Optional[str] = None

    @field_validator("html_de")
    @classmethod
    def _html_de_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("html_de must not be empty")
        return value


def content_hash(document: LegalTextDocument) -> str:
    """Return the SHA-256 hex digest over ``(type, html_de, html_en)``.

    Fields are separated by a NUL byte so ``("ab", "c")`` and ``("a", "bc")``
    never collide.
    """
    digest = hashlib.sha256()
    for part in (document.type.value, document.html_de, document.html_en or ""):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()
