"""Storage for synchronised legal-text pages.

The content-management host is reduced to a small repository interface.  Each
repository declares up front which optional content fields its schema
supports (``fields``); the sync engine checks that set once instead of probing
the record on every write.

``transaction()`` scopes a unit of work: anything saved inside it becomes
visible only when the block exits cleanly and is discarded on any exception.
A content hash is stored at most once per parent and legal type.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional

from sqlalchemy import (
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    desc,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from erecht24_sync.errors import PersistenceFailure
from erecht24_sync.models.page import CONTENT_FIELDS, PageStatus, SyncedPage

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PageRepository:
    fields: FrozenSet[str] = CONTENT_FIELDS

    def find(self, parent_id: int, legal_type: str, limit: int = 20) -> List[SyncedPage]:
        """Return pages of *legal_type* under *parent_id*, newest first."""
        raise NotImplementedError

    def get_by_name(self, parent_id: int, name: str) -> Optional[SyncedPage]:
        raise NotImplementedError

    def recent(self, limit: int = 10) -> List[SyncedPage]:
        raise NotImplementedError

    def parent_exists(self, parent_id: int) -> bool:
        raise NotImplementedError

    def save(self, page: SyncedPage) -> SyncedPage:
        """Insert (no ``id``) or update *page*; return the stored copy."""
        raise NotImplementedError

    def transaction(self):
        """Context manager scoping an all-or-nothing unit of work."""
        raise NotImplementedError


class InMemoryPageRepository(PageRepository):
    """Dictionary-backed repository used in tests and ``page_backend=memory``."""

    def __init__(
        self,
        fields: Iterable[str] = CONTENT_FIELDS,
        parents: Iterable[int] = (1,),
    ):
        self.fields = frozenset(fields) & CONTENT_FIELDS
        self.parents = set(parents)
        self._pages: Dict[int, SyncedPage] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    def _all(self) -> List[SyncedPage]:
        return sorted(
            self._pages.values(),
            key=lambda p: (p.created_at or datetime.min.replace(tzinfo=timezone.utc), p.id or 0),
            reverse=True,
        )

    def find(self, parent_id: int, legal_type: str, limit: int = 20) -> List[SyncedPage]:
        with self._lock:
            matches = [
                p for p in self._all()
                if p.parent_id == parent_id and p.legal_type == legal_type
            ]
            return [p.model_copy(deep=True) for p in matches[:limit]]

    def get_by_name(self, parent_id: int, name: str) -> Optional[SyncedPage]:
        with self._lock:
            for page in self._pages.values():
                if page.parent_id == parent_id and page.name == name:
                    return page.model_copy(deep=True)
            return None

    def recent(self, limit: int = 10) -> List[SyncedPage]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._all()[:limit]]

    def parent_exists(self, parent_id: int) -> bool:
        return parent_id in self.parents

    def save(self, page: SyncedPage) -> SyncedPage:
        with self._lock:
            for other in self._pages.values():
                if (
                    other.id != page.id
                    and other.parent_id == page.parent_id
                    and other.name == page.name
                ):
                    raise PersistenceFailure(
                        f"Page name '{page.name}' already exists under parent {page.parent_id}."
                    )
                if (
                    page.content_hash is not None
                    and other.id != page.id
                    and other.parent_id == page.parent_id
                    and other.legal_type == page.legal_type
                    and other.content_hash == page.content_hash
                ):
                    raise PersistenceFailure(
                        f"Content {page.content_hash[:12]} already stored under parent {page.parent_id}."
                    )
            stored = page.model_copy(deep=True)
            now = _utcnow()
            if stored.id is None:
                stored.id = self._next_id
                self._next_id += 1
                stored.created_at = stored.created_at or now
            stored.modified_at = now
            self._pages[stored.id] = stored
            return stored.model_copy(deep=True)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryPageRepository"]:
        with self._lock:
            snapshot = copy.deepcopy((self._pages, self._next_id))
            try:
                yield self
            except BaseException:
                self._pages, self._next_id = snapshot
                raise


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------

class _PageBase(DeclarativeBase):
    pass


class LegalPageRow(_PageBase):
    __tablename__ = "legal_pages"
    __table_args__ = (
        UniqueConstraint("parent_id", "name", name="uq_legal_pages_parent_name"),
        # NULL hashes (schemas without the field) never collide
        UniqueConstraint(
            "parent_id", "legal_type", "content_hash", name="uq_legal_pages_parent_type_hash"
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    parent_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    title: Mapped[str] = mapped_column(String(255))
    legal_type: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    legal_content_de: Mapped[str | None] = mapped_column(Text, nullable=True)
    legal_content_en: Mapped[str | None] = mapped_column(Text, nullable=True)
    legal_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=PageStatus.UNPUBLISHED.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    modified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


_COLUMNS = (
    "parent_id",
    "name",
    "title",
    "legal_type",
    "legal_content_de",
    "legal_content_en",
    "legal_date",
    "content_hash",
    "status",
)


def _row_to_page(row: LegalPageRow) -> SyncedPage:
    return SyncedPage(
        id=row.id,
        parent_id=row.parent_id,
        name=row.name,
        title=row.title,
        legal_type=row.legal_type,
        legal_content_de=row.legal_content_de,
        legal_content_en=row.legal_content_en,
        legal_date=row.legal_date,
        content_hash=row.content_hash,
        status=row.status,
        created_at=row.created_at,
        modified_at=row.modified_at,
    )


class SqlPageRepository(PageRepository):
    """Pages stored in the ``legal_pages`` table.

    Reads open a short-lived session; writes inside ``transaction()`` share one
    session that commits on success and rolls back on any exception.
    """

    def __init__(self, database_url: str, parents: Optional[Iterable[int]] = None):
        self.engine = create_engine(database_url)
        _PageBase.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        self._local = threading.local()
        # None means every parent id is accepted
        self.parents = set(parents) if parents is not None else None

    def _active_session(self) -> Optional[Session]:
        return getattr(self._local, "session", None)

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        """Session for a read: the open transaction's, else a short-lived one."""
        db = self._active_session()
        if db is not None:
            yield db
            return
        with self._session_factory() as db:
            yield db

    def find(self, parent_id: int, legal_type: str, limit: int = 20) -> List[SyncedPage]:
        stmt = (
            select(LegalPageRow)
            .where(LegalPageRow.parent_id == parent_id)
            .where(LegalPageRow.legal_type == str(getattr(legal_type, "value", legal_type)))
            .order_by(desc(LegalPageRow.created_at), desc(LegalPageRow.id))
            .limit(limit)
        )
        with self._reading() as db:
            return [_row_to_page(row) for row in db.scalars(stmt)]

    def get_by_name(self, parent_id: int, name: str) -> Optional[SyncedPage]:
        stmt = (
            select(LegalPageRow)
            .where(LegalPageRow.parent_id == parent_id)
            .where(LegalPageRow.name == name)
        )
        with self._reading() as db:
            row = db.scalars(stmt).first()
            return _row_to_page(row) if row else None

    def recent(self, limit: int = 10) -> List[SyncedPage]:
        stmt = (
            select(LegalPageRow)
            .order_by(desc(LegalPageRow.created_at), desc(LegalPageRow.id))
            .limit(limit)
        )
        with self._reading() as db:
            return [_row_to_page(row) for row in db.scalars(stmt)]

    def parent_exists(self, parent_id: int) -> bool:
        return self.parents is None or parent_id in self.parents

    def _write(self, db: Session, page: SyncedPage) -> SyncedPage:
        row = db.get(LegalPageRow, page.id) if page.id is not None else None
        if row is None:
            row = LegalPageRow()
            db.add(row)
        for column in _COLUMNS:
            value = getattr(page, column)
            setattr(row, column, getattr(value, "value", value))
        row.modified_at = _utcnow()
        db.flush()
        return _row_to_page(row)

    def save(self, page: SyncedPage) -> SyncedPage:
        db = self._active_session()
        if db is not None:
            return self._write(db, page)
        with self.transaction():
            return self._write(self._active_session(), page)

    @contextmanager
    def transaction(self) -> Iterator["SqlPageRepository"]:
        if self._active_session() is not None:
            yield self
            return
        db = self._session_factory()
        self._local.session = db
        try:
            yield self
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Page transaction rolled back: %s", exc)
            raise PersistenceFailure(str(exc)) from exc
        except BaseException:
            db.rollback()
            raise
        finally:
            self._local.session = None
            db.close()


def build_page_repository(kind: str, *, database_url: str, default_parent_id: int) -> PageRepository:
    if kind == "memory":
        return InMemoryPageRepository(parents=(default_parent_id,))
    if kind == "sql":
        return SqlPageRepository(database_url)
    raise ValueError(f"Unknown page backend '{kind}'. Use memory or sql.")
