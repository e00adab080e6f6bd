"""
Metadata Store
--------------
Relational bookkeeping for documents and tenant storage usage, on any
SQLAlchemy URL (SQLite for development and tests, PostgreSQL in
production).

Tables:
  documents       one row per logical file; originals have original_id NULL,
                  references point at their original (never at another
                  reference).  A partial unique index on content_hash WHERE
                  original_id IS NULL guarantees one original per hash.
  organizations   storage_used_bytes / storage_quota_bytes per tenant

All counter changes are single conditional UPDATE statements so concurrent
workers cannot lose or overshoot an increment.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import orjson
from loguru import logger
from pydantic import BaseModel, ConfigDict
from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    case,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ragindex.config import DatabaseConfig
from ragindex.errors import (
    ConflictError,
    DocumentNotFoundError,
    ExternalServiceError,
    QuotaExceededError,
)
from ragindex.schemas import DeduplicationStats, VectorStatus
from ragindex.utils.helpers import utc_now

Base = declarative_base()


# ============= Models =============

class DocumentRow(Base):
    __tablename__ = "documents"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    content_hash = Column(String(64), nullable=False, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    filename = Column(String(512), nullable=False)
    mime_type = Column(String(128), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    storage_path = Column(String(1024), nullable=True)
    original_id = Column(String(64), ForeignKey("documents.id"), nullable=True, index=True)
    reference_count = Column(Integer, nullable=False, default=1)
    vector_status = Column(String(16), nullable=False, default=VectorStatus.PENDING.value)
    error_message = Column(Text, nullable=True)
    chunk_count = Column(Integer, nullable=False, default=0)
    # BM25 token lists this content added to the corpus statistics (originals only)
    corpus_tokens = Column(Text, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index(
            "uq_documents_original_hash",
            "content_hash",
            unique=True,
            sqlite_where=original_id.is_(None),
            postgresql_where=original_id.is_(None),
        ),
    )


class OrganizationRow(Base):
    __tablename__ = "organizations"

    id = Column(String(64), primary_key=True)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    storage_quota_bytes = Column(BigInteger, nullable=False)


class DocumentRecord(BaseModel):
    """Detached, read-only view of a documents row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    content_hash: str
    organization_id: str
    course_id: str
    filename: str
    mime_type: str
    file_size: int
    storage_path: Optional[str] = None
    original_id: Optional[str] = None
    reference_count: int
    vector_status: VectorStatus
    error_message: Optional[str] = None
    chunk_count: int = 0
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def is_original(self) -> bool:
        return self.original_id is None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


# ============= Store =============

class MetadataStore:
    def __init__(self, engine: Engine, default_quota_bytes: int = 1024 ** 3) -> None:
        self.engine = engine
        self.default_quota_bytes = default_quota_bytes
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, echo: bool = False, default_quota_bytes: int = 1024 ** 3) -> "MetadataStore":
        kwargs: dict = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        return cls(create_engine(url, **kwargs), default_quota_bytes)

    @classmethod
    def from_config(cls, cfg: DatabaseConfig, default_quota_bytes: int) -> "MetadataStore":
        return cls.from_url(cfg.url, cfg.echo, default_quota_bytes)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transaction scope: commit on success, rollback and re-raise on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise ExternalServiceError(str(exc), service="metadata-db") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self) -> None:
        self.engine.dispose()

    # --- Lookups --------------------------------------------------------------

    def get(self, document_id: str) -> DocumentRecord:
        with self.session() as s:
            row = s.get(DocumentRow, document_id)
            if row is None:
                raise DocumentNotFoundError(document_id)
            return DocumentRecord.model_validate(row)

    def find_original(self, content_hash: str) -> Optional[DocumentRecord]:
        with self.session() as s:
            row = s.scalars(
                select(DocumentRow).where(
                    DocumentRow.content_hash == content_hash,
                    DocumentRow.original_id.is_(None),
                )
            ).first()
            return DocumentRecord.model_validate(row) if row else None

    def references_of(self, original_id: str, status: Optional[VectorStatus] = None) -> list[DocumentRecord]:
        with self.session() as s:
            stmt = select(DocumentRow).where(DocumentRow.original_id == original_id)
            if status is not None:
                stmt = stmt.where(DocumentRow.vector_status == status.value)
            rows = s.scalars(stmt.order_by(DocumentRow.created_at, DocumentRow.id)).all()
            return [DocumentRecord.model_validate(r) for r in rows]

    def documents_for_course(self, course_id: str, organization_id: Optional[str] = None) -> list[DocumentRecord]:
        with self.session() as s:
            stmt = select(DocumentRow).where(DocumentRow.course_id == course_id, DocumentRow.deleted_at.is_(None))
            if organization_id is not None:
                stmt = stmt.where(DocumentRow.organization_id == organization_id)
            rows = s.scalars(stmt.order_by(DocumentRow.created_at, DocumentRow.id)).all()
            return [DocumentRecord.model_validate(r) for r in rows]

    # --- Originals and references ---------------------------------------------

    def find_or_create_original(
        self,
        content_hash: str,
        organization_id: str,
        course_id: str,
        filename: str,
        mime_type: str,
        file_size: int,
    ) -> tuple[DocumentRecord, bool]:
        """
        Return (original, created).  When two workers race on the same hash
        the unique index lets exactly one insert win; the loser re-reads and
        gets the winner back with created=False.
        """
        existing = self.find_original(content_hash)
        if existing is not None:
            return existing, False
        try:
            with self.session() as s:
                row = DocumentRow(
                    content_hash=content_hash,
                    organization_id=organization_id,
                    course_id=course_id,
                    filename=filename,
                    mime_type=mime_type,
                    file_size=file_size,
                    reference_count=1,
                    vector_status=VectorStatus.PENDING.value,
                )
                s.add(row)
                s.flush()
                record = DocumentRecord.model_validate(row)
            logger.debug(f"[MetadataStore] Created original {record.id} for hash {content_hash[:12]}")
            return record, True
        except IntegrityError:
            winner = self.find_original(content_hash)
            if winner is None:
                raise ConflictError(f"Original for hash {content_hash[:12]} vanished during creation")
            logger.info(f"[MetadataStore] Lost creation race for hash {content_hash[:12]}; using {winner.id}")
            return winner, False

    def create_reference(
        self,
        original_id: str,
        organization_id: str,
        course_id: str,
        filename: str,
        mime_type: str,
        file_size: int,
        vector_status: VectorStatus = VectorStatus.PENDING,
    ) -> DocumentRecord:
        """
        Insert a reference row and bump the original's count in one
        transaction.  ConflictError if the original is gone.
        """
        with self.session() as s:
            original = s.get(DocumentRow, original_id)
            if original is None or original.original_id is not None:
                raise ConflictError(f"Original {original_id} no longer exists")
            bumped = s.execute(
                update(DocumentRow)
                .where(
                    DocumentRow.id == original_id,
                    DocumentRow.original_id.is_(None),
                    DocumentRow.reference_count > 0,
                )
                .values(reference_count=DocumentRow.reference_count + 1)
            )
            if bumped.rowcount != 1:
                raise ConflictError(f"Original {original_id} was released concurrently")
            row = DocumentRow(
                content_hash=original.content_hash,
                organization_id=organization_id,
                course_id=course_id,
                filename=filename,
                mime_type=mime_type,
                file_size=file_size,
                storage_path=original.storage_path,
                original_id=original_id,
                reference_count=1,
                vector_status=vector_status.value,
            )
            s.add(row)
            s.flush()
            return DocumentRecord.model_validate(row)

    def remove_reference(self, reference_id: str) -> int:
        """Delete a reference row and decrement its original. Returns the original's remaining count."""
        with self.session() as s:
            row = s.get(DocumentRow, reference_id)
            if row is None:
                raise DocumentNotFoundError(reference_id)
            if row.original_id is None:
                raise ConflictError(f"{reference_id} is an original, not a reference")
            original_id = row.original_id
            s.delete(row)
            return self._decrement(s, original_id)

    def release_original(self, original_id: str) -> int:
        """Tombstone an original's own logical file and decrement its count."""
        with self.session() as s:
            row = s.get(DocumentRow, original_id)
            if row is None:
                raise DocumentNotFoundError(original_id)
            if row.deleted_at is not None:
                raise ConflictError(f"Original {original_id} was already deleted")
            row.deleted_at = utc_now()
            return self._decrement(s, original_id)

    def _decrement(self, s: Session, original_id: str) -> int:
        s.execute(
            update(DocumentRow)
            .where(DocumentRow.id == original_id, DocumentRow.reference_count > 0)
            .values(reference_count=DocumentRow.reference_count - 1)
        )
        remaining = s.scalar(select(DocumentRow.reference_count).where(DocumentRow.id == original_id))
        if remaining is None:
            raise ConflictError(f"Original {original_id} disappeared while decrementing")
        return int(remaining)

    def purge_original(self, original_id: str) -> None:
        """Delete an original row whose count reached zero."""
        with self.session() as s:
            row = s.get(DocumentRow, original_id)
            if row is None:
                return
            if row.reference_count > 0:
                raise ConflictError(f"Original {original_id} still has {row.reference_count} references")
            s.delete(row)

    # --- Status ---------------------------------------------------------------

    def set_status(
        self,
        document_id: str,
        status: VectorStatus,
        error_message: Optional[str] = None,
        chunk_count: Optional[int] = None,
    ) -> None:
        values: dict = {"vector_status": status.value, "error_message": error_message, "updated_at": utc_now()}
        if chunk_count is not None:
            values["chunk_count"] = chunk_count
        with self.session() as s:
            result = s.execute(update(DocumentRow).where(DocumentRow.id == document_id).values(**values))
            if result.rowcount == 0:
                raise DocumentNotFoundError(document_id)

    def set_storage_path(self, document_id: str, storage_path: str) -> None:
        with self.session() as s:
            s.execute(update(DocumentRow).where(DocumentRow.id == document_id).values(storage_path=storage_path))

    # --- Corpus contribution --------------------------------------------------

    def set_corpus_tokens(self, original_id: str, token_lists: Optional[list[list[str]]]) -> None:
        """Record (or clear, with None) the child token lists counted in the corpus statistics."""
        value = orjson.dumps(token_lists).decode("utf-8") if token_lists is not None else None
        with self.session() as s:
            result = s.execute(update(DocumentRow).where(DocumentRow.id == original_id).values(corpus_tokens=value))
            if result.rowcount == 0:
                raise DocumentNotFoundError(original_id)

    def corpus_tokens(self, original_id: str) -> list[list[str]]:
        with self.session() as s:
            raw = s.scalar(select(DocumentRow.corpus_tokens).where(DocumentRow.id == original_id))
        return orjson.loads(raw) if raw else []

    # --- Quota ----------------------------------------------------------------

    def _ensure_org(self, organization_id: str) -> None:
        with self.session() as s:
            if s.get(OrganizationRow, organization_id) is not None:
                return
        try:
            with self.session() as s:
                s.add(OrganizationRow(id=organization_id, storage_used_bytes=0, storage_quota_bytes=self.default_quota_bytes))
        except IntegrityError:
            pass  # created concurrently

    def set_quota(self, organization_id: str, quota_bytes: int) -> None:
        self._ensure_org(organization_id)
        with self.session() as s:
            s.execute(update(OrganizationRow).where(OrganizationRow.id == organization_id).values(storage_quota_bytes=quota_bytes))

    def usage(self, organization_id: str) -> tuple[int, int]:
        """(used, quota) in bytes."""
        self._ensure_org(organization_id)
        with self.session() as s:
            org = s.get(OrganizationRow, organization_id)
            return int(org.storage_used_bytes), int(org.storage_quota_bytes)

    def reserve_quota(self, organization_id: str, size_bytes: int) -> None:
        """Atomically add size_bytes to usage unless that would pass the quota."""
        self._ensure_org(organization_id)
        with self.session() as s:
            result = s.execute(
                update(OrganizationRow)
                .where(
                    OrganizationRow.id == organization_id,
                    OrganizationRow.storage_used_bytes + size_bytes <= OrganizationRow.storage_quota_bytes,
                )
                .values(storage_used_bytes=OrganizationRow.storage_used_bytes + size_bytes)
            )
            reserved = result.rowcount == 1
        if not reserved:
            used, quota = self.usage(organization_id)
            raise QuotaExceededError(organization_id, size_bytes, used, quota)
        logger.debug(f"[MetadataStore] Reserved {size_bytes} bytes for org {organization_id}")

    def release_quota(self, organization_id: str, size_bytes: int) -> None:
        with self.session() as s:
            s.execute(
                update(OrganizationRow)
                .where(OrganizationRow.id == organization_id)
                .values(
                    storage_used_bytes=case(
                        (OrganizationRow.storage_used_bytes >= size_bytes, OrganizationRow.storage_used_bytes - size_bytes),
                        else_=0,
                    )
                )
            )

    # --- Stats ----------------------------------------------------------------

    def deduplication_stats(self, organization_id: Optional[str] = None) -> DeduplicationStats:
        with self.session() as s:
            base = select(
                func.count(DocumentRow.id),
                func.coalesce(func.sum(DocumentRow.file_size), 0),
            ).where(DocumentRow.deleted_at.is_(None))
            if organization_id is not None:
                base = base.where(DocumentRow.organization_id == organization_id)
            originals, original_bytes = s.execute(base.where(DocumentRow.original_id.is_(None))).one()
            references, reference_bytes = s.execute(base.where(DocumentRow.original_id.is_not(None))).one()
        return DeduplicationStats(
            original_files=int(originals),
            reference_files=int(references),
            storage_saved_bytes=int(reference_bytes),
            total_storage_used_bytes=int(original_bytes) + int(reference_bytes),
        )
