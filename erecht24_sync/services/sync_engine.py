"""Fetch legal texts from eRecht24 and store them as pages, idempotently.

A sync for one type runs:

1. fetch the document (``html_de`` / ``html_en``)
2. hash ``(type, html_de, html_en)``
3. inside one repository transaction, look through the 20 newest pages of
   that type under the configured parent; if one already carries identical
   content, nothing is written
4. otherwise create a new unpublished page with a timestamped unique name
   (a same-named page is updated in place)
5. record ``last_sync_<type>`` in the settings store in every case
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional

from fastapi.concurrency import run_in_threadpool

from erecht24_sync.config import ConfigProvider
from erecht24_sync.errors import Erecht24Error, NotConfigured, PersistenceFailure, TemplateMissing
from erecht24_sync.models.legal_text import LegalTextDocument, LegalTextType, content_hash
from erecht24_sync.models.page import PageStatus, SyncedPage
from erecht24_sync.models.response import PreviewResponse, SyncOutcome
from erecht24_sync.services.fetcher import LegalTextFetcher
from erecht24_sync.services.normalizer import timestamped_page_name
from erecht24_sync.services.page_repository import PageRepository
from erecht24_sync.services.preview import render_preview
from erecht24_sync.services.settings_store import SettingsStore

logger = logging.getLogger(__name__)

LOOKBACK = 20


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def last_sync_key(legal_type: LegalTextType) -> str:
    return f"last_sync_{LegalTextType(legal_type).value}"


@dataclass
class SyncResult:
    type: LegalTextType
    page: SyncedPage
    action: Literal["created", "updated", "unchanged"]


class SyncEngine:
    def __init__(
        self,
        config: ConfigProvider,
        fetcher: LegalTextFetcher,
        repository: PageRepository,
        store: SettingsStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        if not repository.fields:
            raise TemplateMissing("The page schema has no legal-text content fields.")
        self.config = config
        self.fetcher = fetcher
        self.repository = repository
        self.store = store
        self._clock = clock

    def _require_api_key(self) -> str:
        api_key = self.config.api_key
        if not api_key:
            raise NotConfigured("eRecht24 API key not configured")
        return api_key

    def _parent_id(self) -> int:
        parent_id = self.config.parent_page
        if self.repository.parent_exists(parent_id):
            return parent_id
        fallback = self.config.settings.default_parent_id
        logger.warning("Parent page %s not found, using %s", parent_id, fallback)
        return fallback

    def _matches(self, page: SyncedPage, document: LegalTextDocument, digest: str) -> bool:
        """True when *page* already stores exactly the content of *document*."""
        fields = self.repository.fields
        if "content_hash" in fields and page.content_hash:
            return page.content_hash == digest

        compared = False
        if "legal_content_de" in fields:
            if page.legal_content_de != document.html_de:
                return False
            compared = True
        if "legal_content_en" in fields:
            if (page.legal_content_en or None) != (document.html_en or None):
                return False
            compared = True
        return compared

    def _populate(
        self, page: SyncedPage, document: LegalTextDocument, digest: str, moment: datetime
    ) -> None:
        fields = self.repository.fields
        page.title = f"{document.type.label} - {moment.strftime('%Y-%m-%d %H:%M:%S')}"
        if "legal_content_de" in fields:
            page.legal_content_de = document.html_de
        if "legal_content_en" in fields:
            page.legal_content_en = document.html_en
        if "legal_type" in fields:
            page.legal_type = document.type
        if "legal_date" in fields:
            page.legal_date = moment
        if "content_hash" in fields:
            page.content_hash = digest

    def _record_sync(self, legal_type: LegalTextType, moment: datetime) -> None:
        self.store.set(last_sync_key(legal_type), moment.isoformat())

    def _find_match(
        self, document: LegalTextDocument, digest: str, parent_id: int
    ) -> Optional[SyncedPage]:
        for existing in self.repository.find(parent_id, document.type, limit=LOOKBACK):
            if self._matches(existing, document, digest):
                return existing
        return None

    def _store(self, document: LegalTextDocument, digest: str, parent_id: int, moment: datetime):
        """Look back and write in one transaction; returns ``(page, action)``."""
        name = timestamped_page_name(document.type.label, moment)
        try:
            with self.repository.transaction():
                existing = self._find_match(document, digest, parent_id)
                if existing is not None:
                    return existing, "unchanged"
                page = self.repository.get_by_name(parent_id, name)
                if page is not None:
                    action = "updated"
                else:
                    action = "created"
                    page = SyncedPage(
                        parent_id=parent_id,
                        name=name,
                        title=document.type.label,
                        status=PageStatus.UNPUBLISHED,
                    )
                self._populate(page, document, digest, moment)
                saved = self.repository.save(page)
        except Erecht24Error:
            raise
        except Exception as exc:
            logger.error("Failed to store %s page %s: %s", document.type.value, name, exc)
            raise PersistenceFailure(f"Could not store page '{name}': {exc}") from exc
        return saved, action

    async def sync_type(self, legal_type: LegalTextType) -> SyncResult:
        """Fetch and store one legal text type.

        Raises:
            NotConfigured: no API key.
            FetchError: the API call failed.
            PersistenceFailure: the page could not be written (nothing was kept).
        """
        legal_type = LegalTextType(legal_type)
        api_key = await run_in_threadpool(self._require_api_key)
        document = await self.fetcher.fetch(legal_type, api_key)
        return await run_in_threadpool(self._apply, document)

    def _apply(self, document: LegalTextDocument) -> SyncResult:
        """Blocking half of a sync: store *document* and record the sync time."""
        legal_type = document.type
        digest = content_hash(document)
        parent_id = self._parent_id()
        moment = self._clock()

        try:
            page, action = self._store(document, digest, parent_id, moment)
        except PersistenceFailure:
            # A concurrent sync may have stored the same content first.
            page = self._find_match(document, digest, parent_id)
            if page is None:
                raise
            action = "unchanged"

        self._record_sync(legal_type, moment)
        if action == "unchanged":
            logger.info("Legal text %s unchanged, keeping page %s", legal_type.value, page.name)
        else:
            logger.info(
                "Legal text page %s",
                action,
                extra={"type": legal_type.value, "page_id": page.id, "page_name": page.name},
            )
        return SyncResult(type=legal_type, page=page, action=action)

    async def sync_all(self) -> List[SyncOutcome]:
        """Sync every legal text type in order; one failing type does not stop the rest.

        A missing API key is not a per-type failure and propagates.
        """
        await run_in_threadpool(self._require_api_key)
        outcomes: List[SyncOutcome] = []
        for legal_type in LegalTextType:
            try:
                result = await self.sync_type(legal_type)
            except NotConfigured:
                raise
            except Exception as exc:
                logger.error("Sync of %s failed: %s", legal_type.value, exc)
                outcomes.append(SyncOutcome(type=legal_type.value, ok=False, error=str(exc)))
                continue
            outcomes.append(outcome_from_result(result))
        return outcomes

    async def preview(self, legal_type: LegalTextType) -> PreviewResponse:
        """Fetch a legal text without storing anything."""
        legal_type = LegalTextType(legal_type)
        api_key = await run_in_threadpool(self._require_api_key)
        document = await self.fetcher.fetch(legal_type, api_key)
        title, html, content_markdown, word_count = render_preview(
            document.html_de, fallback_title=legal_type.label
        )
        return PreviewResponse(
            type=legal_type.value,
            title=title,
            html=html,
            content_markdown=content_markdown,
            word_count=word_count,
        )


def outcome_from_result(result: SyncResult) -> SyncOutcome:
    return SyncOutcome(
        type=result.type.value,
        ok=True,
        action=result.action,
        page_id=result.page.id,
        page_name=result.page.name,
    )
