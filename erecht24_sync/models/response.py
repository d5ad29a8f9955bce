from typing import Dict, List, Literal, Optional

from pydantic import BaseModel

from erecht24_sync.models.page import SyncedPage


class SyncOutcome(BaseModel):
    """Result of syncing one legal text type."""

    type: str
    ok: bool
    action: Optional[Literal["created", "updated", "unchanged"]] = None
    page_id: Optional[int] = None
    page_name: Optional[str] = None
    error: Optional[str] = None


class SyncResponse(BaseModel):
    message: str
    results: List[SyncOutcome]


class PreviewResponse(BaseModel):
    type: str
    title: str
    html: str
    content_markdown: str
    word_count: int


class RegistrationResponse(BaseModel):
    message: str
    client_id: Optional[str] = None


class StatusResponse(BaseModel):
    registered: bool
    client_id: Optional[str] = None
    webhook_url: str
    api_key_configured: bool
    webhook_secret_configured: bool
    overridden: List[str]
    last_webhook_status: Optional[str] = None
    last_webhook_time: Optional[str] = None
    last_sync: Dict[str, Optional[str]]


class PingCheckResponse(BaseModel):
    ok: bool
    status_code: int
    body: str


class PageList(BaseModel):
    pages: List[SyncedPage]
