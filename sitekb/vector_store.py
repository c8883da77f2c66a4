"""Vector similarity storage with per-site namespaces.

Defines:
- IndexDescription: what the backing service reports about its index.
- VectorClient: the boundary contract of a vector similarity service
  (describe/create index, namespace-scoped upsert/query/delete).
- PgVectorClient: PostgreSQL + pgvector implementation (cosine distance).
- InMemoryVectorClient: process-local implementation for development and tests.
- VectorIndex: the site-facing index. Checks index existence lazily, waits for
  readiness with bounded polling, prefixes record ids with the site id, and
  wipes whole sites.

Similarity scores are cosine similarities in [-1, 1]; no threshold is applied here.
"""
import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, inspect, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from sitekb.db import VectorBase, session_scope
from sitekb.errors import IndexTimeoutError, VectorStoreError
from sitekb.models import VectorEntry
from sitekb.retry import wait_until
from sitekb.schemas import QueryResult, VectorRecord
from sitekb.utils import cosine_similarity

logger = logging.getLogger(__name__)

MetadataFilter = Dict[str, str]


@dataclass(frozen=True)
class IndexDescription:
    name: str
    dimension: int
    metric: str
    ready: bool


class VectorClient(ABC):
    """Boundary contract of a vector similarity service."""

    name: str = "vectors"

    @abstractmethod
    def describe_index(self) -> Optional[IndexDescription]:
        """Return the index description, or None when the index does not exist."""

    @abstractmethod
    def create_index(self, dimension: int, metric: str = "cosine") -> None:
        """Request index creation; the index may not be ready immediately."""

    @abstractmethod
    def upsert(self, namespace: str, records: List[VectorRecord]) -> int:
        """Insert or overwrite records by id within a namespace."""

    @abstractmethod
    def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[MetadataFilter] = None,
    ) -> List[QueryResult]:
        """Return up to top_k matches ordered by descending cosine similarity."""

    @abstractmethod
    def delete(self, namespace: str, ids: List[str]) -> int:
        """Delete ids within a namespace; returns the number removed."""

    @abstractmethod
    def count(self, namespace: str) -> int:
        """Number of records stored in a namespace."""

    def delete_namespace(self, namespace: str) -> int:
        """Drop every record of a namespace.

        Backends without a namespace-drop primitive leave this unimplemented and
        VectorIndex falls back to enumerate-and-delete.
        """
        raise NotImplementedError


class PgVectorClient(VectorClient):
    """pgvector-backed client storing every namespace in one table.

    Args:
        engine: SQLAlchemy engine bound to PostgreSQL with the pgvector extension available.
        lists: IVFFLAT list count for the cosine index.
    """

    name = VectorEntry.__tablename__
    _ann_index = "idx_kb_vectors_embedding_ivfflat"

    def __init__(self, engine: Engine, lists: int = 100):
        self._engine = engine
        self.session_factory = sessionmaker(bind=engine, autoflush=False, future=True)
        self.lists = lists

    def describe_index(self) -> Optional[IndexDescription]:
        try:
            insp = inspect(self._engine)
            if not insp.has_table(self.name):
                return None
            indexes = {ix["name"] for ix in insp.get_indexes(self.name)}
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Failed to describe index {self.name}: {exc}") from exc
        return IndexDescription(
            name=self.name,
            dimension=VectorEntry.__table__.c.embedding.type.dim,
            metric="cosine",
            ready=self._ann_index in indexes,
        )

    def create_index(self, dimension: int, metric: str = "cosine") -> None:
        if metric != "cosine":
            raise VectorStoreError(f"Unsupported metric: {metric}")
        if dimension != VectorEntry.__table__.c.embedding.type.dim:
            raise VectorStoreError(
                f"Table {self.name} is declared with dimension "
                f"{VectorEntry.__table__.c.embedding.type.dim}, requested {dimension}"
            )
        try:
            with self._engine.connect() as conn:
                # Enable pgvector extension
                conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                conn.commit()
            VectorBase.metadata.create_all(bind=self._engine)
            # Note: Requires pgvector >= 0.4.0; table/index names must match models.
            with self._engine.connect() as conn:
                conn.execute(
                    text(
                        f"""
                        CREATE INDEX IF NOT EXISTS {self._ann_index}
                        ON {self.name} USING ivfflat (embedding vector_cosine_ops)
                        WITH (lists = {int(self.lists)})
                        """
                    )
                )
                conn.commit()
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Failed to create index {self.name}: {exc}") from exc

    def upsert(self, namespace: str, records: List[VectorRecord]) -> int:
        if not records:
            return 0
        table = VectorEntry.__table__
        stmt = pg_insert(table).values(
            [
                {"namespace": namespace, "id": r.id, "embedding": r.embedding, "meta": r.metadata}
                for r in records
            ]
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.namespace, table.c.id],
            set_={table.c.embedding: stmt.excluded.embedding, table.c.meta: stmt.excluded.meta},
        )
        try:
            with session_scope(self.session_factory) as db:
                db.execute(stmt)
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Upsert into namespace {namespace} failed: {exc}") from exc
        return len(records)

    def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[MetadataFilter] = None,
    ) -> List[QueryResult]:
        # Cosine distance in [0, 2]; similarity = 1 - distance
        distance = VectorEntry.embedding.cosine_distance(list(vector)).label("distance")
        stmt = select(VectorEntry.id, VectorEntry.meta, distance).where(VectorEntry.namespace == namespace)
        for key, value in (filter or {}).items():
            stmt = stmt.where(VectorEntry.meta[key].astext == str(value))
        stmt = stmt.order_by(distance).limit(top_k)
        try:
            with session_scope(self.session_factory) as db:
                rows = db.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Query on namespace {namespace} failed: {exc}") from exc
        return [
            QueryResult(id=r.id, score=1.0 - float(r.distance), metadata=dict(r.meta or {}))
            for r in rows
        ]

    def delete(self, namespace: str, ids: List[str]) -> int:
        if not ids:
            return 0
        stmt = delete(VectorEntry).where(VectorEntry.namespace == namespace, VectorEntry.id.in_(ids))
        try:
            with session_scope(self.session_factory) as db:
                return db.execute(stmt).rowcount or 0
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Delete from namespace {namespace} failed: {exc}") from exc

    def delete_namespace(self, namespace: str) -> int:
        stmt = delete(VectorEntry).where(VectorEntry.namespace == namespace)
        try:
            with session_scope(self.session_factory) as db:
                return db.execute(stmt).rowcount or 0
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Dropping namespace {namespace} failed: {exc}") from exc

    def count(self, namespace: str) -> int:
        stmt = select(func.count()).select_from(VectorEntry).where(VectorEntry.namespace == namespace)
        try:
            with session_scope(self.session_factory) as db:
                return int(db.execute(stmt).scalar_one())
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"Count on namespace {namespace} failed: {exc}") from exc


class InMemoryVectorClient(VectorClient):
    """Process-local vector client.

    Args:
        ready_after: Number of describe_index calls after creation that still
            report "not ready", to mimic services that provision asynchronously.
        supports_namespace_drop: When False, delete_namespace is unavailable and
            VectorIndex uses its enumerate-and-delete fallback.
    """

    name = "memory"

    def __init__(self, ready_after: int = 0, supports_namespace_drop: bool = True):
        self.ready_after = ready_after
        self.supports_namespace_drop = supports_namespace_drop
        self._dimension: Optional[int] = None
        self._pending_polls = 0
        self._data: Dict[str, Dict[str, Tuple[List[float], Dict]]] = {}
        self._lock = threading.Lock()

    def describe_index(self) -> Optional[IndexDescription]:
        if self._dimension is None:
            return None
        ready = self._pending_polls <= 0
        if not ready:
            self._pending_polls -= 1
        return IndexDescription(self.name, self._dimension, "cosine", ready)

    def create_index(self, dimension: int, metric: str = "cosine") -> None:
        if metric != "cosine":
            raise VectorStoreError(f"Unsupported metric: {metric}")
        self._dimension = dimension
        self._pending_polls = self.ready_after

    def upsert(self, namespace: str, records: List[VectorRecord]) -> int:
        with self._lock:
            ns = self._data.setdefault(namespace, {})
            for r in records:
                ns[r.id] = (list(r.embedding), dict(r.metadata))
        return len(records)

    def query(
        self,
        namespace: str,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[MetadataFilter] = None,
    ) -> List[QueryResult]:
        with self._lock:
            items = list(self._data.get(namespace, {}).items())
        scored: List[QueryResult] = []
        for vid, (emb, meta) in items:
            if filter and any(str(meta.get(k)) != str(v) for k, v in filter.items()):
                continue
            scored.append(QueryResult(id=vid, score=cosine_similarity(vector, emb), metadata=meta))
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:top_k]

    def delete(self, namespace: str, ids: List[str]) -> int:
        removed = 0
        with self._lock:
            ns = self._data.get(namespace, {})
            for vid in ids:
                if ns.pop(vid, None) is not None:
                    removed += 1
        return removed

    def delete_namespace(self, namespace: str) -> int:
        if not self.supports_namespace_drop:
            raise NotImplementedError
        with self._lock:
            return len(self._data.pop(namespace, {}))

    def count(self, namespace: str) -> int:
        with self._lock:
            return len(self._data.get(namespace, {}))


class VectorIndex:
    """Site-facing vector index.

    Args:
        client: Backing vector similarity service.
        dimension: Embedding dimension shared by every record of the deployment.
        poll_interval: Seconds between readiness polls.
        ready_timeout: Overall readiness timeout, in seconds.
        max_polls: Upper bound on readiness polls.
        wipe_page_size: topK used per round when enumerating ids for a site wipe.
        sleep: Sleep function used while polling (injectable for tests).
    """

    def __init__(
        self,
        client: VectorClient,
        dimension: int,
        poll_interval: float = 2.0,
        ready_timeout: float = 60.0,
        max_polls: int = 30,
        wipe_page_size: int = 1000,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.dimension = dimension
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout
        self.max_polls = max_polls
        self.wipe_page_size = wipe_page_size
        self._sleep = sleep
        self._ready = False
        self._ready_lock = threading.Lock()

    @staticmethod
    def vector_id(site_id: str, record_id: str) -> str:
        """Id under which a record is stored for a site."""
        return f"{site_id}-{record_id}"

    def ensure_ready(self) -> None:
        """Create the index if missing and block until it reports ready.

        Raises:
            IndexTimeoutError: If the index never becomes ready within the polling window.
            VectorStoreError: If the existing index has a different dimension.
        """
        if self._ready:
            return
        with self._ready_lock:
            if self._ready:
                return
            desc = self.client.describe_index()
            if desc is None:
                logger.info("Index %s not found, creating (dimension=%d)", self.client.name, self.dimension)
                self.client.create_index(self.dimension, "cosine")
            elif desc.dimension != self.dimension:
                raise VectorStoreError(
                    f"Index {desc.name} has dimension {desc.dimension}, expected {self.dimension}"
                )

            if desc is None or not desc.ready:
                logger.info("Waiting for index %s to be ready...", self.client.name)
                outcome = wait_until(
                    self._probe_ready,
                    interval=self.poll_interval,
                    timeout=self.ready_timeout,
                    max_attempts=self.max_polls,
                    sleep=self._sleep,
                )
                if not outcome.ready:
                    raise IndexTimeoutError(self.client.name, outcome.attempts, outcome.elapsed)
                logger.info("Index %s is ready after %d polls", self.client.name, outcome.attempts)
            self._ready = True

    def _probe_ready(self) -> bool:
        desc = self.client.describe_index()
        return desc is not None and desc.ready

    def upsert(self, site_id: str, records: List[VectorRecord]) -> int:
        """Store records in the site's namespace under site-prefixed ids.

        Raises:
            VectorStoreError: If any record has the wrong dimension (nothing is
                stored) or the backing store fails.
        """
        if not records:
            return 0
        bad = [r.id for r in records if len(r.embedding) != self.dimension]
        if bad:
            raise VectorStoreError(
                f"Rejected {len(bad)} vectors with dimension != {self.dimension}: {bad[:5]}"
            )
        self.ensure_ready()
        prefixed = [
            VectorRecord(id=self.vector_id(site_id, r.id), embedding=r.embedding, metadata=r.metadata)
            for r in records
        ]
        n = self.client.upsert(site_id, prefixed)
        logger.info("Upserted %d vectors for site %s", n, site_id)
        return n

    def query(
        self,
        site_id: str,
        vector: Sequence[float],
        top_k: int = 5,
        filter: Optional[MetadataFilter] = None,
    ) -> List[QueryResult]:
        """Top-k cosine matches within the site's namespace, optionally metadata-filtered."""
        if len(vector) != self.dimension:
            raise VectorStoreError(f"Query vector has dimension {len(vector)}, expected {self.dimension}")
        self.ensure_ready()
        return self.client.query(site_id, vector, top_k, filter)

    def delete(self, site_id: str, ids: List[str]) -> int:
        """Delete records of a site by their original (unprefixed) ids."""
        if not ids:
            return 0
        self.ensure_ready()
        return self.client.delete(site_id, [self.vector_id(site_id, i) for i in ids])

    def count(self, site_id: str) -> int:
        self.ensure_ready()
        return self.client.count(site_id)

    def delete_site(self, site_id: str) -> int:
        """Remove every vector of a site.

        Uses the backend's namespace drop when available. Otherwise ids are
        enumerated with a neutral query vector ``wipe_page_size`` at a time and
        deleted, repeating until a round finds nothing, so sites larger than one
        page are still wiped completely.

        Returns:
            int: Number of vectors removed.
        """
        self.ensure_ready()
        try:
            removed = self.client.delete_namespace(site_id)
            logger.info("Dropped namespace %s (%d vectors)", site_id, removed)
            return removed
        except NotImplementedError:
            logger.info("Namespace drop unsupported by %s; enumerating ids", self.client.name)

        neutral = [1.0 / math.sqrt(self.dimension)] * self.dimension
        removed = 0
        while True:
            matches = self.client.query(site_id, neutral, self.wipe_page_size)
            if not matches:
                break
            deleted = self.client.delete(site_id, [m.id for m in matches])
            if deleted == 0:
                raise VectorStoreError(
                    f"Site wipe for {site_id} made no progress; {len(matches)} ids could not be deleted"
                )
            removed += deleted
        logger.info("Deleted %d vectors for site %s", removed, site_id)
        return removed
