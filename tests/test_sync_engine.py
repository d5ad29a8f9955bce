"""Tests for SyncEngine: idempotent upsert, per-type isolation, rollback."""

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from erecht24_sync.config import ConfigProvider, Settings
from erecht24_sync.errors import (
    NotConfigured,
    PersistenceFailure,
    TemplateMissing,
    UpstreamError,
)
from erecht24_sync.models.legal_text import LegalTextDocument, LegalTextType, content_hash
from erecht24_sync.models.page import PageStatus
from erecht24_sync.services.page_repository import InMemoryPageRepository, SqlPageRepository
from erecht24_sync.services.settings_store import MemorySettingsBackend, SettingsStore
from erecht24_sync.services.sync_engine import SyncEngine

IMPRINT = LegalTextType.IMPRINT


class FixedClock:
    """Always returns the same instant, so every sync produces the same page name."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class SteppingClock:
    """Returns a new instant, one second later, on every call."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _doc(legal_type=IMPRINT, html_de="<h1>Impressum</h1><p>Musterfirma GmbH</p>", html_en=None):
    return LegalTextDocument(type=legal_type, html_de=html_de, html_en=html_en)


def _engine(
    repository=None, settings=None, api_key="api-key", docs=None, clock=None, **store_values
):
    initial = dict(store_values)
    if api_key:
        initial["api_key"] = api_key
    store = SettingsStore(MemorySettingsBackend(initial))
    config = ConfigProvider(settings or Settings(_env_file=None), store)
    repository = repository if repository is not None else InMemoryPageRepository()

    docs = docs if docs is not None else {}

    async def fetch(legal_type, key):
        item = docs.get(legal_type, _doc(legal_type))
        if isinstance(item, Exception):
            raise item
        return item

    fetcher = AsyncMock()
    fetcher.fetch.side_effect = fetch
    engine = SyncEngine(config, fetcher, repository, store, clock=clock or SteppingClock())
    return engine, fetcher, repository, store


def _sync(engine, legal_type=IMPRINT):
    return asyncio.run(engine.sync_type(legal_type))


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestConfiguration:
    def test_missing_api_key_raises_not_configured(self):
        engine, fetcher, _, _ = _engine(api_key=None)

        with pytest.raises(NotConfigured):
            _sync(engine)
        fetcher.fetch.assert_not_called()

    def test_api_key_from_environment_override(self):
        engine, fetcher, _, _ = _engine(api_key=None, settings=Settings(_env_file=None, api_key="env-key"))

        _sync(engine)

        assert fetcher.fetch.call_args.args == (IMPRINT, "env-key")

    def test_schema_without_content_fields_is_rejected(self):
        with pytest.raises(TemplateMissing):
            _engine(repository=InMemoryPageRepository(fields=()))


# ---------------------------------------------------------------------------
# Create / idempotence
# ---------------------------------------------------------------------------

class TestIdempotentUpsert:
    def test_first_sync_creates_unpublished_page(self):
        engine, _, repo, _ = _engine()

        result = _sync(engine)

        assert result.action == "created"
        page = result.page
        assert page.id is not None
        assert page.status == PageStatus.UNPUBLISHED
        assert page.parent_id == 1
        assert page.legal_type == IMPRINT
        assert page.legal_content_de == "<h1>Impressum</h1><p>Musterfirma GmbH</p>"
        assert page.content_hash == content_hash(_doc())
        assert page.name.endswith("-impressum")
        assert page.title.startswith("Impressum - ")
        assert len(repo.recent(50)) == 1

    def test_unchanged_content_creates_single_record(self):
        engine, _, repo, store = _engine()

        first = _sync(engine)
        first_sync_time = store.get("last_sync_imprint")
        second = _sync(engine)

        assert second.action == "unchanged"
        assert second.page.id == first.page.id
        assert len(repo.recent(50)) == 1
        assert store.get("last_sync_imprint") > first_sync_time

    def test_many_repeated_syncs_stay_at_one_record(self):
        engine, _, repo, _ = _engine()
        for _ in range(5):
            _sync(engine)
        assert len(repo.recent(50)) == 1

    def test_changed_content_creates_new_record(self):
        docs = {IMPRINT: _doc(html_de="<p>Version 1</p>")}
        engine, _, repo, _ = _engine(docs=docs)

        first = _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>Version 2</p>")
        second = _sync(engine)

        assert second.action == "created"
        assert second.page.id != first.page.id
        assert second.page.name != first.page.name
        assert second.page.content_hash != first.page.content_hash
        assert len(repo.recent(50)) == 2

    def test_changed_english_text_counts_as_change(self):
        docs = {IMPRINT: _doc(html_en="<p>v1</p>")}
        engine, _, repo, _ = _engine(docs=docs)

        _sync(engine)
        docs[IMPRINT] = _doc(html_en="<p>v2</p>")
        assert _sync(engine).action == "created"

    def test_reverting_to_earlier_content_reuses_old_record(self):
        docs = {IMPRINT: _doc(html_de="<p>A</p>")}
        engine, _, repo, _ = _engine(docs=docs)

        first = _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>B</p>")
        _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>A</p>")
        third = _sync(engine)

        assert third.action == "unchanged"
        assert third.page.id == first.page.id
        assert len(repo.recent(50)) == 2

    def test_types_do_not_share_records(self):
        html = "<p>Same markup</p>"
        docs = {t: _doc(t, html_de=html) for t in LegalTextType}
        engine, _, repo, _ = _engine(docs=docs)

        _sync(engine, LegalTextType.IMPRINT)
        result = _sync(engine, LegalTextType.PRIVACY_POLICY)

        assert result.action == "created"
        assert len(repo.recent(50)) == 2

    def test_same_name_updates_in_place_and_replaces_english(self):
        docs = {IMPRINT: _doc(html_de="<p>v1</p>", html_en="<p>en v1</p>")}
        engine, _, repo, _ = _engine(docs=docs, clock=FixedClock())

        first = _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>v2</p>", html_en=None)
        second = _sync(engine)

        assert second.action == "updated"
        assert second.page.id == first.page.id
        assert second.page.name == first.page.name
        assert second.page.legal_content_de == "<p>v2</p>"
        assert second.page.legal_content_en is None
        assert second.page.content_hash == content_hash(docs[IMPRINT])
        assert len(repo.recent(50)) == 1

    def test_updated_page_matches_only_its_new_content(self):
        docs = {IMPRINT: _doc(html_de="<p>v1</p>", html_en="<p>en v1</p>")}
        engine, _, _, _ = _engine(docs=docs, clock=FixedClock())

        _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>v1</p>", html_en=None)
        assert _sync(engine).action == "updated"
        assert _sync(engine).action == "unchanged"

    def test_match_without_hash_field_compares_content(self):
        fields = {"legal_type", "legal_content_de", "legal_content_en"}
        engine, _, repo, _ = _engine(repository=InMemoryPageRepository(fields=fields))

        _sync(engine)
        second = _sync(engine)

        assert second.action == "unchanged"
        assert second.page.content_hash is None
        assert len(repo.recent(50)) == 1


# ---------------------------------------------------------------------------
# Parent page and field guards
# ---------------------------------------------------------------------------

class TestPlacement:
    def test_configured_parent_is_used(self):
        repo = InMemoryPageRepository(parents=(1, 42))
        engine, _, _, _ = _engine(repository=repo, parent_page=42)

        assert _sync(engine).page.parent_id == 42

    def test_unknown_parent_falls_back_to_default(self):
        engine, _, _, _ = _engine(parent_page=999)

        assert _sync(engine).page.parent_id == 1

    def test_absent_fields_are_not_written(self):
        repo = InMemoryPageRepository(fields={"legal_type", "legal_content_de"})
        engine, _, _, _ = _engine(repository=repo, docs={IMPRINT: _doc(html_en="<p>EN</p>")})

        page = _sync(engine).page

        assert page.legal_content_de
        assert page.legal_content_en is None
        assert page.legal_date is None
        assert page.content_hash is None


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class FlakyRepository(InMemoryPageRepository):
    """Writes the page, then fails before the transaction completes."""

    def save(self, page):
        super().save(page)
        raise RuntimeError("disk full")


class StaleLookbackRepository(InMemoryPageRepository):
    """Misses the next *misses* lookbacks, as if another worker committed meanwhile."""

    def __init__(self):
        super().__init__()
        self.misses = 0

    def find(self, parent_id, legal_type, limit=20):
        if self.misses:
            self.misses -= 1
            return []
        return super().find(parent_id, legal_type, limit=limit)


class ThreadRecordingRepository(InMemoryPageRepository):
    def __init__(self):
        super().__init__()
        self.save_threads = []

    def save(self, page):
        self.save_threads.append(threading.current_thread())
        return super().save(page)


class TestFailures:
    def test_fetch_failure_records_nothing(self):
        engine, _, repo, store = _engine(docs={IMPRINT: UpstreamError("HTTP 404", 404)})

        with pytest.raises(UpstreamError):
            _sync(engine)

        assert repo.recent(50) == []
        assert store.get("last_sync_imprint") is None

    def test_persistence_failure_rolls_back(self):
        engine, _, repo, store = _engine(repository=FlakyRepository())

        with pytest.raises(PersistenceFailure):
            _sync(engine)

        assert repo.recent(50) == []
        assert store.get("last_sync_imprint") is None

    def test_concurrent_duplicate_resolves_to_existing_page(self):
        repo = StaleLookbackRepository()
        engine, _, _, _ = _engine(repository=repo)

        first = _sync(engine)
        repo.misses = 1
        second = _sync(engine)

        assert second.action == "unchanged"
        assert second.page.id == first.page.id
        assert len(repo.recent(50)) == 1

    def test_same_content_is_never_stored_twice(self):
        repo = InMemoryPageRepository()
        engine, _, _, _ = _engine(repository=repo)
        page = _sync(engine).page

        duplicate = page.model_copy(update={"id": None, "name": "another-name"})
        with pytest.raises(PersistenceFailure):
            repo.save(duplicate)

    def test_storage_runs_off_the_event_loop_thread(self):
        repo = ThreadRecordingRepository()
        engine, _, _, _ = _engine(repository=repo)

        _sync(engine)

        assert repo.save_threads
        assert threading.main_thread() not in repo.save_threads


# ---------------------------------------------------------------------------
# sync_all
# ---------------------------------------------------------------------------

class TestSyncAll:
    def test_syncs_every_type_in_order(self):
        engine, fetcher, repo, store = _engine()

        outcomes = asyncio.run(engine.sync_all())

        assert [o.type for o in outcomes] == ["imprint", "privacyPolicy", "privacyPolicySocialMedia"]
        assert all(o.ok and o.action == "created" for o in outcomes)
        assert [c.args[0] for c in fetcher.fetch.call_args_list] == list(LegalTextType)
        assert len(repo.recent(50)) == 3
        for legal_type in LegalTextType:
            assert store.get(f"last_sync_{legal_type.value}")

    def test_one_failing_type_does_not_stop_the_others(self):
        docs = {LegalTextType.PRIVACY_POLICY: UpstreamError("HTTP 500", 500)}
        engine, fetcher, repo, store = _engine(docs=docs)

        outcomes = asyncio.run(engine.sync_all())

        assert [o.ok for o in outcomes] == [True, False, True]
        assert "HTTP 500" in outcomes[1].error
        assert fetcher.fetch.call_count == 3
        assert {p.legal_type for p in repo.recent(50)} == {
            LegalTextType.IMPRINT,
            LegalTextType.PRIVACY_POLICY_SOCIAL_MEDIA,
        }
        assert store.get("last_sync_privacyPolicy") is None

    def test_missing_api_key_propagates(self):
        engine, fetcher, _, _ = _engine(api_key=None)

        with pytest.raises(NotConfigured):
            asyncio.run(engine.sync_all())
        fetcher.fetch.assert_not_called()


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

class TestPreview:
    def test_preview_renders_without_storing(self):
        html = "<h1>Datenschutz</h1><script>track()</script><p>Wir verarbeiten Daten.</p>"
        engine, _, repo, store = _engine(docs={LegalTextType.PRIVACY_POLICY: _doc(LegalTextType.PRIVACY_POLICY, html_de=html)})

        preview = asyncio.run(engine.preview(LegalTextType.PRIVACY_POLICY))

        assert preview.title == "Datenschutz"
        assert "# Datenschutz" in preview.content_markdown
        assert "track()" not in preview.html
        assert preview.word_count == 4
        assert repo.recent(50) == []
        assert store.get("last_sync_privacyPolicy") is None


# ---------------------------------------------------------------------------
# SQL repository
# ---------------------------------------------------------------------------

class TestWithSqlRepository:
    def test_idempotent_sync_on_sqlite(self, tmp_path):
        repo = SqlPageRepository(f"sqlite:///{tmp_path / 'pages.db'}")
        engine, _, _, _ = _engine(repository=repo)

        first = _sync(engine)
        second = _sync(engine)

        assert first.action == "created"
        assert second.action == "unchanged"
        assert second.page.id == first.page.id
        assert len(repo.recent(50)) == 1

    def test_duplicate_content_rejected_on_sqlite(self, tmp_path):
        repo = SqlPageRepository(f"sqlite:///{tmp_path / 'pages.db'}")
        engine, _, _, _ = _engine(repository=repo)
        page = _sync(engine).page

        with pytest.raises(PersistenceFailure):
            repo.save(page.model_copy(update={"id": None, "name": "another-name"}))
        assert len(repo.recent(50)) == 1

    def test_changed_content_on_sqlite(self, tmp_path):
        repo = SqlPageRepository(f"sqlite:///{tmp_path / 'pages.db'}")
        docs = {IMPRINT: _doc(html_de="<p>1</p>")}
        engine, _, _, _ = _engine(repository=repo, docs=docs)

        _sync(engine)
        docs[IMPRINT] = _doc(html_de="<p>2</p>")
        _sync(engine)

        assert [p.legal_content_de for p in repo.recent(50)] == ["<p>2</p>", "<p>1</p>"]
