"""Persistent vector index over SQLAlchemy with exact top-k search.

Entries live in ``index_entries`` grouped by collection; each collection
records the vector dimension fixed by its first upsert and the metric it was
created with. Search is an exact brute-force scan (O(n * d) per query) over a
numpy matrix cached per collection and keyed by the collection's revision
token, so any write, from this process or another one, invalidates it.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
import logging
import math
import threading
from typing import Any
from uuid import uuid4

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from docqa.errors import CollectionNotFoundError, DimensionMismatchError
from docqa.models import CollectionRecord, IndexEntryRecord
from docqa.services.rag.types import IndexEntry, SearchResult

logger = logging.getLogger(__name__)

METRICS = ("cosine", "dot", "euclidean")

# Keeps IN (...) lists under SQLite's bound-parameter limit.
_ID_BATCH = 500


def _encode_vector(values: Sequence[float]) -> bytes:
    return np.asarray(values, dtype=np.float32).tobytes()


def _decode_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32)


def _batched(values: Sequence[str], size: int = _ID_BATCH) -> Iterator[Sequence[str]]:
    for offset in range(0, len(values), size):
        yield values[offset : offset + size]


@dataclass(frozen=True)
class CollectionInfo:
    name: str
    dimension: int
    metric: str
    size: int


@dataclass(frozen=True)
class _Snapshot:
    revision: str
    dimension: int
    metric: str
    entry_ids: tuple[str, ...]
    document_ids: tuple[str | None, ...]
    metadata: tuple[dict[str, Any], ...]
    seqs: np.ndarray
    matrix: np.ndarray
    norms: np.ndarray

    def entry(self, position: int) -> IndexEntry:
        return IndexEntry(
            entry_id=self.entry_ids[position],
            vector=[float(value) for value in self.matrix[position]],
            metadata=dict(self.metadata[position]),
            document_id=self.document_ids[position],
        )


class VectorIndex:
    def __init__(self, engine: Engine, *, metric: str = "cosine") -> None:
        if metric not in METRICS:
            raise ValueError(f"Unknown distance metric: {metric}")
        self._engine = engine
        self._metric = metric
        self._write_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._cache: dict[str, _Snapshot] = {}
        self._cache_guard = threading.Lock()

    # -- writes -----------------------------------------------------------

    def upsert(self, collection: str, entries: Iterable[IndexEntry]) -> int:
        """Insert or replace ``entries`` by id; returns how many rows changed."""
        batch = self._dedupe(entries)
        if not batch:
            return 0
        dimension = self._batch_dimension(batch)

        with self._write_lock(collection):
            with Session(self._engine) as session, session.begin():
                changed = self._upsert_in_session(session, collection, batch, dimension)

        if changed:
            logger.debug("upserted collection=%s changed=%d", collection, changed)
        return changed

    def replace_document(
        self,
        collection: str,
        document_id: str,
        entries: Iterable[IndexEntry],
    ) -> int:
        """Make ``entries`` the complete set stored for ``document_id``.

        Upserting the new entries and removing the document's stale ones
        happen in one transaction, so a failure leaves the previous state.
        """
        batch = [
            IndexEntry(
                entry_id=entry.entry_id,
                vector=entry.vector,
                metadata=entry.metadata,
                document_id=document_id,
            )
            for entry in self._dedupe(entries)
        ]
        dimension = self._batch_dimension(batch) if batch else None
        keep_ids = {entry.entry_id for entry in batch}

        with self._write_lock(collection):
            with Session(self._engine) as session, session.begin():
                changed = 0
                if batch:
                    changed += self._upsert_in_session(session, collection, batch, dimension)

                stale_ids = [
                    entry_id
                    for entry_id in session.scalars(
                        select(IndexEntryRecord.entry_id)
                        .where(IndexEntryRecord.collection == collection)
                        .where(IndexEntryRecord.document_id == document_id)
                    ).all()
                    if entry_id not in keep_ids
                ]
                if stale_ids:
                    changed += self._delete_in_session(session, collection, stale_ids)

        return changed

    def delete(self, collection: str, ids: Iterable[str]) -> int:
        entry_ids = list(dict.fromkeys(ids))
        if not entry_ids:
            return 0

        with self._write_lock(collection):
            with Session(self._engine) as session, session.begin():
                if session.get(CollectionRecord, collection) is None:
                    return 0
                removed = self._delete_in_session(session, collection, entry_ids)

        return removed

    def drop_collection(self, collection: str) -> bool:
        with self._write_lock(collection):
            with Session(self._engine) as session, session.begin():
                record = session.get(CollectionRecord, collection)
                if record is None:
                    return False
                session.execute(
                    delete(IndexEntryRecord).where(IndexEntryRecord.collection == collection)
                )
                session.delete(record)

        with self._cache_guard:
            self._cache.pop(collection, None)
        logger.info("dropped collection=%s", collection)
        return True

    # -- reads ------------------------------------------------------------

    def query(self, collection: str, vector: Sequence[float], k: int) -> list[SearchResult]:
        """Return the ``k`` best matches, highest score first.

        Equal scores keep insertion order. Scores are cosine similarity,
        raw dot product, or ``1 / (1 + euclidean distance)`` depending on the
        collection's metric.
        """
        if k < 1:
            raise ValueError("k must be >= 1")

        snapshot = self._snapshot(collection)
        query_vector = np.asarray(vector, dtype=np.float64)
        if query_vector.ndim != 1 or query_vector.shape[0] != snapshot.dimension:
            raise DimensionMismatchError(
                f"Query vector has dimension {len(vector)}, "
                f"collection '{collection}' expects {snapshot.dimension}"
            )

        scores = self._score(snapshot, query_vector)
        order = np.lexsort((snapshot.seqs, -scores))[:k]
        return [
            SearchResult(entry=snapshot.entry(int(position)), score=float(scores[position]))
            for position in order
        ]

    def count(self, collection: str) -> int:
        with Session(self._engine) as session:
            return int(
                session.scalar(
                    select(func.count())
                    .select_from(IndexEntryRecord)
                    .where(IndexEntryRecord.collection == collection)
                )
                or 0
            )

    def list_collections(self) -> list[CollectionInfo]:
        with Session(self._engine) as session:
            rows = session.execute(
                select(
                    CollectionRecord.name,
                    CollectionRecord.dimension,
                    CollectionRecord.metric,
                    func.count(IndexEntryRecord.entry_id),
                )
                .outerjoin(IndexEntryRecord, IndexEntryRecord.collection == CollectionRecord.name)
                .group_by(CollectionRecord.name)
                .order_by(CollectionRecord.name)
            ).all()
        return [
            CollectionInfo(name=name, dimension=dimension, metric=metric, size=int(size))
            for name, dimension, metric, size in rows
        ]

    # -- internals --------------------------------------------------------

    def _write_lock(self, collection: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._write_locks.get(collection)
            if lock is None:
                lock = threading.Lock()
                self._write_locks[collection] = lock
            return lock

    @staticmethod
    def _dedupe(entries: Iterable[IndexEntry]) -> list[IndexEntry]:
        # Last occurrence of an id wins, positioned where the id first appeared.
        by_id: dict[str, IndexEntry] = {}
        for entry in entries:
            by_id[entry.entry_id] = entry
        return list(by_id.values())

    @staticmethod
    def _batch_dimension(entries: list[IndexEntry]) -> int:
        dimensions = {len(entry.vector) for entry in entries}
        if len(dimensions) != 1:
            raise DimensionMismatchError(
                f"Entries in one upsert must share a dimension, got {sorted(dimensions)}"
            )
        dimension = dimensions.pop()
        if dimension == 0:
            raise DimensionMismatchError("Vectors must have at least one component")
        for entry in entries:
            if not all(math.isfinite(value) for value in entry.vector):
                raise ValueError(f"Vector for entry {entry.entry_id} has non-finite values")
        return dimension

    def _upsert_in_session(
        self,
        session: Session,
        collection: str,
        entries: list[IndexEntry],
        dimension: int,
    ) -> int:
        record = session.get(CollectionRecord, collection)
        if record is None:
            record = CollectionRecord(
                name=collection,
                dimension=dimension,
                metric=self._metric,
                next_seq=0,
                revision=uuid4().hex,
            )
            session.add(record)
            logger.info(
                "created collection=%s dimension=%d metric=%s",
                collection,
                dimension,
                self._metric,
            )
        elif record.dimension != dimension:
            raise DimensionMismatchError(
                f"Vectors have dimension {dimension}, "
                f"collection '{collection}' expects {record.dimension}"
            )

        existing: dict[str, IndexEntryRecord] = {}
        ids = [entry.entry_id for entry in entries]
        for id_batch in _batched(ids):
            for row in session.scalars(
                select(IndexEntryRecord)
                .where(IndexEntryRecord.collection == collection)
                .where(IndexEntryRecord.entry_id.in_(id_batch))
            ):
                existing[row.entry_id] = row

        changed = 0
        for entry in entries:
            blob = _encode_vector(entry.vector)
            metadata = dict(entry.metadata)
            row = existing.get(entry.entry_id)
            if row is None:
                session.add(
                    IndexEntryRecord(
                        collection=collection,
                        entry_id=entry.entry_id,
                        seq=record.next_seq,
                        document_id=entry.document_id,
                        dimension=dimension,
                        vector=blob,
                        metadata_json=metadata,
                    )
                )
                record.next_seq += 1
                changed += 1
                continue

            if (
                row.vector == blob
                and row.metadata_json == metadata
                and row.document_id == entry.document_id
            ):
                continue
            row.vector = blob
            row.dimension = dimension
            row.metadata_json = metadata
            row.document_id = entry.document_id
            changed += 1

        if changed:
            record.revision = uuid4().hex
        return changed

    def _delete_in_session(self, session: Session, collection: str, entry_ids: list[str]) -> int:
        removed = 0
        for id_batch in _batched(entry_ids):
            result = session.execute(
                delete(IndexEntryRecord)
                .where(IndexEntryRecord.collection == collection)
                .where(IndexEntryRecord.entry_id.in_(id_batch))
            )
            removed += result.rowcount or 0

        if not removed:
            return 0

        record = session.get(CollectionRecord, collection)
        remaining = session.scalar(
            select(func.count())
            .select_from(IndexEntryRecord)
            .where(IndexEntryRecord.collection == collection)
        )
        if record is not None:
            if not remaining:
                session.delete(record)
                logger.info("collection=%s is empty; dropped", collection)
            else:
                record.revision = uuid4().hex
        return removed

    def _snapshot(self, collection: str) -> _Snapshot:
        with Session(self._engine) as session:
            record = session.get(CollectionRecord, collection)
            if record is None:
                raise CollectionNotFoundError(f"Collection '{collection}' has no entries")

            with self._cache_guard:
                cached = self._cache.get(collection)
            if cached is not None and cached.revision == record.revision:
                return cached

            revision, dimension, metric = record.revision, record.dimension, record.metric
            rows = session.execute(
                select(
                    IndexEntryRecord.entry_id,
                    IndexEntryRecord.seq,
                    IndexEntryRecord.document_id,
                    IndexEntryRecord.vector,
                    IndexEntryRecord.metadata_json,
                )
                .where(IndexEntryRecord.collection == collection)
                .order_by(IndexEntryRecord.seq)
            ).all()

        entry_ids: list[str] = []
        document_ids: list[str | None] = []
        metadata: list[dict[str, Any]] = []
        seqs: list[int] = []
        vectors: list[np.ndarray] = []
        for entry_id, seq, document_id, blob, metadata_json in rows:
            vector = _decode_vector(blob)
            if vector.shape[0] != dimension:
                logger.warning(
                    "skipping entry with bad dimension collection=%s entry_id=%s", collection, entry_id
                )
                continue
            entry_ids.append(entry_id)
            document_ids.append(document_id)
            metadata.append(dict(metadata_json or {}))
            seqs.append(seq)
            vectors.append(vector)

        if not vectors:
            raise CollectionNotFoundError(f"Collection '{collection}' has no entries")

        matrix = np.vstack(vectors).astype(np.float64)
        snapshot = _Snapshot(
            revision=revision,
            dimension=dimension,
            metric=metric,
            entry_ids=tuple(entry_ids),
            document_ids=tuple(document_ids),
            metadata=tuple(metadata),
            seqs=np.asarray(seqs, dtype=np.int64),
            matrix=matrix,
            norms=np.linalg.norm(matrix, axis=1),
        )
        with self._cache_guard:
            self._cache[collection] = snapshot
        return snapshot

    @staticmethod
    def _score(snapshot: _Snapshot, query_vector: np.ndarray) -> np.ndarray:
        if snapshot.metric == "dot":
            return snapshot.matrix @ query_vector
        if snapshot.metric == "euclidean":
            distances = np.linalg.norm(snapshot.matrix - query_vector, axis=1)
            return 1.0 / (1.0 + distances)

        query_norm = float(np.linalg.norm(query_vector))
        denominators = snapshot.norms * query_norm
        dots = snapshot.matrix @ query_vector
        return np.divide(
            dots,
            denominators,
            out=np.zeros_like(dots),
            where=denominators > 0,
        )
