from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from erecht24_sync.models.legal_text import LegalTextType


class PageStatus(str, Enum):
    PUBLISHED = "published"
    UNPUBLISHED = "unpublished"


# Optional content fields a page schema may or may not carry.
CONTENT_FIELDS = frozenset(
    {"legal_type", "legal_content_de", "legal_content_en", "legal_date", "content_hash"}
)


class SyncedPage(BaseModel):
    """One stored instance of a synchronised legal text.

    ``name`` is unique per ``parent_id``.  Records are created unpublished and
    are never deleted by the sync.
    """

    id: Optional[int] = None
    parent_id: int
    name: str
    title: str
    legal_type: Optional[LegalTextType] = None
    legal_content_de: Optional[str] = None
    legal_content_en: Optional[str] = None
    legal_date: Optional[datetime] = None
    content_hash: Optional[str] = None
    status: PageStatus = PageStatus.UNPUBLISHED
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
