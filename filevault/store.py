"""Relational metadata store for file records.

Owns the dedup transaction: a candidate is either inserted as the canonical
record for its (checksum, size) pair or resolved to the record that already
holds that pair. The store keeps no state besides the engine; every call
reads the database.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional, Tuple
import time

from loguru import logger
from sqlalchemy import event, func, or_, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import SQLModel, Session, col, create_engine, select

from .exceptions import LockTimeoutError, MetadataInsertError
from .models import FileCandidate, FileRecord

# SQLSTATE raised by PostgreSQL when lock_timeout expires
PG_LOCK_NOT_AVAILABLE = "55P03"
# execution option that makes a SQLite transaction start with BEGIN IMMEDIATE
SQLITE_IMMEDIATE = "filevault_sqlite_immediate"


def build_engine(database_url: str, lock_timeout: float = 5.0, pool_size: int = 10) -> Engine:
    """Create the engine used by every component.

    On SQLite, transactions opened with the ``SQLITE_IMMEDIATE`` execution
    option start with ``BEGIN IMMEDIATE`` so that a writer takes the database
    lock before its dedup lookup (SQLite has no ``FOR UPDATE``); the driver
    busy timeout then plays the part of PostgreSQL's ``lock_timeout``. Every
    other transaction is a plain deferred ``BEGIN`` and reads without the
    write lock.
    """
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"timeout": lock_timeout, "check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin(conn):
            if conn.get_execution_options().get(SQLITE_IMMEDIATE):
                conn.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=pool_size * 2,
        pool_pre_ping=True,
    )


def _is_lock_timeout(exc: OperationalError) -> bool:
    if getattr(exc.orig, "pgcode", None) == PG_LOCK_NOT_AVAILABLE:
        return True
    return "database is locked" in str(exc.orig)


class MetadataStore:
    def __init__(self, engine: Engine, lock_timeout: float = 5.0):
        self.engine = engine
        self.lock_timeout = lock_timeout
        self._write_engine = engine.execution_options(**{SQLITE_IMMEDIATE: True})

    def create_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Session]:
        """Scoped transaction: commit on normal exit, roll back on any other.

        ``write`` marks a transaction that must hold the write lock from its
        first statement (the dedup and delete transactions). It only changes
        behaviour on SQLite; PostgreSQL locks rows with ``FOR UPDATE``.

        Rollback also covers ``BaseException`` (task cancellation, interrupts)
        because ``Session.begin()`` rolls back on every exception before
        re-raising, and closing the session discards anything left open.
        Lock waits that exceed the timeout surface as ``LockTimeoutError``.
        """
        try:
            bind = self._write_engine if write else self.engine
            with Session(bind, expire_on_commit=False) as session:
                with session.begin():
                    if write:
                        # take the SQLite write lock now, not at the first statement
                        session.connection()
                    if self.engine.dialect.name == "postgresql":
                        timeout_ms = int(self.lock_timeout * 1000)
                        session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
                    yield session
        except OperationalError as exc:
            if _is_lock_timeout(exc):
                raise LockTimeoutError(
                    "timed out waiting for a metadata lock",
                    {"timeout_seconds": self.lock_timeout},
                ) from exc
            raise

    # -- dedup -------------------------------------------------------------

    def insert_or_get_existing(self, candidate: FileCandidate) -> Tuple[FileRecord, bool]:
        """Insert ``candidate`` unless its content is already stored.

        Returns ``(record, is_new)``. For concurrent calls carrying identical
        content exactly one returns ``is_new=True``; the others wait on the
        row lock and get the winner's record.
        """
        try:
            with self.transaction(write=True) as session:
                existing = self._lock_existing(session, candidate.checksum, candidate.size_bytes)
                if existing is not None:
                    return existing, False

                record = FileRecord.model_validate(candidate.model_dump())
                session.add(record)
                session.flush()
        except IntegrityError as exc:
            # a concurrent transaction inserted the same content between our
            # lookup and our insert; its row is the canonical one
            winner = self.find_by_content(candidate.checksum, candidate.size_bytes)
            if winner is None:
                raise MetadataInsertError(
                    "metadata insert rejected",
                    {"storage_key": candidate.storage_key, "display_name": candidate.display_name},
                ) from exc
            logger.debug("lost insert race for checksum {} to record {}", candidate.checksum, winner.id)
            return winner, False
        return record, True

    def _lock_existing(self, session: Session, checksum: str, size_bytes: int) -> Optional[FileRecord]:
        # FOR UPDATE makes a concurrent identical upload wait until we commit
        return session.exec(
            select(FileRecord)
            .where(FileRecord.checksum == checksum)
            .where(FileRecord.size_bytes == size_bytes)
            .with_for_update()
        ).first()

    def find_by_content(self, checksum: str, size_bytes: int) -> Optional[FileRecord]:
        with self.transaction() as session:
            return session.exec(
                select(FileRecord)
                .where(FileRecord.checksum == checksum)
                .where(FileRecord.size_bytes == size_bytes)
            ).first()

    # -- lookups -----------------------------------------------------------

    def get(self, record_id: str) -> Optional[FileRecord]:
        with self.transaction() as session:
            return session.get(FileRecord, record_id)

    def latest_by_name(self, display_name: str) -> Optional[FileRecord]:
        with self.transaction() as session:
            return session.exec(
                select(FileRecord)
                .where(FileRecord.display_name == display_name)
                .order_by(col(FileRecord.uploaded_at).desc())
                .limit(1)
            ).first()

    def list_page(self, limit: int = 100, offset: int = 0) -> List[FileRecord]:
        with self.transaction() as session:
            statement = (
                select(FileRecord)
                .order_by(col(FileRecord.uploaded_at).desc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def recent(self, limit: int = 10) -> List[FileRecord]:
        return self.list_page(limit=limit, offset=0)

    def search(self, query: str, limit: int = 50) -> List[FileRecord]:
        """Case-insensitive substring match over display name and content type."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        with self.transaction() as session:
            statement = (
                select(FileRecord)
                .where(
                    or_(
                        col(FileRecord.display_name).ilike(pattern, escape="\\"),
                        col(FileRecord.content_type).ilike(pattern, escape="\\"),
                    )
                )
                .order_by(col(FileRecord.uploaded_at).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def by_instance(self, origin_instance: str, limit: int = 1000) -> List[FileRecord]:
        with self.transaction() as session:
            statement = (
                select(FileRecord)
                .where(FileRecord.origin_instance == origin_instance)
                .order_by(col(FileRecord.uploaded_at).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    # -- deletion ----------------------------------------------------------

    def delete_record(self, record_id: str) -> bool:
        with self.transaction(write=True) as session:
            record = session.get(FileRecord, record_id, with_for_update=True)
            if record is None:
                return False
            session.delete(record)
        return True

    def delete_latest_by_name(self, display_name: str) -> Optional[FileRecord]:
        """Remove the most recent record named ``display_name``.

        Returns the removed record, or ``None`` when nothing matched.
        """
        with self.transaction(write=True) as session:
            record = session.exec(
                select(FileRecord)
                .where(FileRecord.display_name == display_name)
                .order_by(col(FileRecord.uploaded_at).desc())
                .limit(1)
                .with_for_update()
            ).first()
            if record is None:
                return None
            session.delete(record)
        return record

    # -- aggregates --------------------------------------------------------

    def aggregate(self) -> Tuple[tuple, List[tuple]]:
        """Return the totals row and per-instance ``(origin, count, size)`` rows."""
        size = col(FileRecord.size_bytes)
        uploaded_at = col(FileRecord.uploaded_at)
        with self.transaction() as session:
            totals = session.exec(
                select(
                    func.count(col(FileRecord.id)),
                    func.coalesce(func.sum(size), 0),
                    func.avg(size),
                    func.min(uploaded_at),
                    func.max(uploaded_at),
                )
            ).one()
            file_count = func.count(col(FileRecord.id))
            per_instance = session.exec(
                select(FileRecord.origin_instance, file_count, func.coalesce(func.sum(size), 0))
                .group_by(FileRecord.origin_instance)
                .order_by(file_count.desc(), FileRecord.origin_instance)
            ).all()
        return tuple(totals), [tuple(row) for row in per_instance]

    def ping(self) -> float:
        """Round-trip a trivial query; returns latency in milliseconds."""
        started = time.perf_counter()
        with self.transaction() as session:
            session.execute(text("SELECT 1"))
        return (time.perf_counter() - started) * 1000
