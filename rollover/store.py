"""
Document store abstraction for SQL databases and an in-memory test implementation.

Every document carries an integer version. Writes may pass the version they
read as ``expected_version``; a mismatch raises ``VersionConflictError``
instead of silently overwriting a concurrent update. ``expected_version=0``
means "the document must not exist yet".
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from rollover.errors import TransientStoreError, VersionConflictError


class DocumentStore(Protocol):
    """Interface for keyed JSON documents grouped in logical collections."""

    def get(self, collection: str, key: str) -> Optional["StoredDocument"]:
        ...

    def put(
        self,
        collection: str,
        key: str,
        body: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> "StoredDocument":
        ...

    def query(
        self, collection: str, filters: Optional[dict] = None
    ) -> list["StoredDocument"]:
        ...


@dataclass
class StoredDocument:
    collection: str
    key: str
    body: dict
    version: int
    updated_at: float = field(default_factory=lambda: time.time())


def _matches(body: dict, filters: Optional[dict]) -> bool:
    if not filters:
        return True
    return all(body.get(name) == value for name, value in filters.items())


class InMemoryDocumentStore:
    """Simple in-memory document store for development and tests."""

    def __init__(self):
        self.documents: Dict[tuple[str, str], StoredDocument] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        with self._lock:
            doc = self.documents.get((collection, key))
            return copy.deepcopy(doc) if doc else None

    def put(
        self,
        collection: str,
        key: str,
        body: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> StoredDocument:
        with self._lock:
            existing = self.documents.get((collection, key))
            current_version = existing.version if existing else 0
            if expected_version is not None and expected_version != current_version:
                raise VersionConflictError(
                    collection, key, expected_version, existing.version if existing else None
                )
            doc = StoredDocument(
                collection=collection,
                key=key,
                body=copy.deepcopy(body),
                version=current_version + 1,
            )
            self.documents[(collection, key)] = doc
            return copy.deepcopy(doc)

    def query(self, collection: str, filters: Optional[dict] = None) -> list[StoredDocument]:
        with self._lock:
            return [
                copy.deepcopy(doc)
                for (doc_collection, _), doc in sorted(self.documents.items())
                if doc_collection == collection and _matches(doc.body, filters)
            ]

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.documents.clear()


class SqlDocumentStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDocumentStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_document(self, row: "DocumentRow") -> StoredDocument:
        return StoredDocument(
            collection=row.collection,
            key=row.key,
            body=row.body,
            version=row.version,
            updated_at=row.updated_at,
        )

    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        try:
            with self.Session() as session:
                row = session.get(DocumentRow, (collection, key))
                return self._to_document(row) if row else None
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"read {collection}/{key} failed: {exc}") from exc

    def put(
        self,
        collection: str,
        key: str,
        body: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> StoredDocument:
        now = time.time()
        try:
            with self.Session() as session:
                if expected_version == 0:
                    row = DocumentRow(
                        collection=collection, key=key, body=body, version=1, updated_at=now
                    )
                    session.add(row)
                    session.commit()
                    return self._to_document(row)

                if expected_version is not None:
                    result = session.execute(
                        update(DocumentRow)
                        .where(
                            DocumentRow.collection == collection,
                            DocumentRow.key == key,
                            DocumentRow.version == expected_version,
                        )
                        .values(body=body, version=expected_version + 1, updated_at=now)
                    )
                    if result.rowcount != 1:
                        session.rollback()
                        current = session.get(DocumentRow, (collection, key))
                        raise VersionConflictError(
                            collection, key, expected_version, current.version if current else None
                        )
                    session.commit()
                    return StoredDocument(collection, key, body, expected_version + 1, now)

                row = session.get(DocumentRow, (collection, key))
                if row:
                    row.body = body
                    row.version += 1
                    row.updated_at = now
                else:
                    row = DocumentRow(
                        collection=collection, key=key, body=body, version=1, updated_at=now
                    )
                    session.add(row)
                session.commit()
                return self._to_document(row)
        except IntegrityError as exc:
            raise VersionConflictError(collection, key, expected_version or 0, None) from exc
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"write {collection}/{key} failed: {exc}") from exc

    def query(self, collection: str, filters: Optional[dict] = None) -> list[StoredDocument]:
        try:
            with self.Session() as session:
                stmt = (
                    select(DocumentRow)
                    .where(DocumentRow.collection == collection)
                    .order_by(DocumentRow.key.asc())
                )
                rows = session.execute(stmt).scalars().all()
                return [self._to_document(row) for row in rows if _matches(row.body, filters)]
        except SQLAlchemyError as exc:
            raise TransientStoreError(f"query {collection} failed: {exc}") from exc


Base = declarative_base()


class DocumentRow(Base):
    __tablename__ = "documents"

    collection = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    body = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(Float, nullable=False)
