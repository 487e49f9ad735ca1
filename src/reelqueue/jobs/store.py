"""Status store: durable record of each job's lifecycle state.

The store is the single source of truth for job state. Every state write
is a single-row conditional UPDATE keyed by job id, so the legal
transitions are enforced by the database itself: a job that reached
`completed` or `failed` can never be written again, no matter how many
workers race on a redelivered message.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError

from ..errors import InvalidStateTransition, JobNotFoundError, StoreUnavailable
from .db_models import Base, JobRow, utcnow
from .models import Job, JobState


class StatusStore(ABC):
    """Abstract status store used by the submission path and the executor."""

    @abstractmethod
    def create(self, source_reference: str) -> Job:
        """Insert a new job in state `queued` and return it with its id."""
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional[Job]:
        """Return the job or None if no row exists."""
        pass

    @abstractmethod
    def list_jobs(self) -> List[Job]:
        """Return all jobs, newest first."""
        pass

    @abstractmethod
    def delete(self, job_id: int) -> bool:
        """Remove the row. Returns False if it did not exist."""
        pass

    @abstractmethod
    def mark_processing(self, job_id: int) -> Job:
        """queued|processing → processing.

        Raises:
            JobNotFoundError: No row for job_id
            InvalidStateTransition: Job is already terminal
        """
        pass

    @abstractmethod
    def mark_completed(self, job_id: int, result_reference: str) -> Job:
        """processing → completed, recording the artifact reference."""
        pass

    @abstractmethod
    def mark_failed(self, job_id: int) -> Job:
        """processing → failed."""
        pass


class SQLStatusStore(StatusStore):
    """SQLAlchemy implementation sharing one pooled engine.

    Works with any SQLAlchemy URL; SQLite is the local default. The engine
    pings connections before use, so a dropped database connection is
    replaced transparently on the next call; while the database stays
    unreachable every call raises StoreUnavailable.
    """

    def __init__(self, database_url: str, engine: Optional[Engine] = None, create_schema: bool = True):
        """Initialize the store.

        Args:
            database_url: SQLAlchemy database URL
            engine: Pre-built engine to share (overrides database_url)
            create_schema: Create the jobs table if missing
        """
        self.database_url = database_url
        if engine is None:
            connect_args = {}
            if database_url.startswith("sqlite"):
                # Engine is shared between the API threadpool and the worker
                connect_args["check_same_thread"] = False
            engine = create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)
        self.engine = engine

        if create_schema:
            self.init_schema()

    def init_schema(self) -> None:
        """Create tables if they don't exist."""
        try:
            Base.metadata.create_all(self.engine)
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(f"Cannot initialize status store: {e}") from e

    def dispose(self) -> None:
        """Close all pooled connections."""
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Connection]:
        """Run a block in one transaction, mapping connectivity errors."""
        try:
            with self.engine.begin() as conn:
                yield conn
        except (OperationalError, InterfaceError) as e:
            raise StoreUnavailable(str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailable(str(e)) from e
            raise

    @staticmethod
    def _row_to_job(row) -> Job:
        return Job(
            id=row.id,
            source_reference=row.source_reference,
            state=JobState(row.state),
            result_reference=row.result_reference,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _fetch(self, conn: Connection, job_id: int):
        return conn.execute(select(JobRow.__table__).where(JobRow.id == job_id)).first()

    def create(self, source_reference: str) -> Job:
        now = utcnow()
        with self._transaction() as conn:
            result = conn.execute(
                insert(JobRow.__table__).values(
                    source_reference=source_reference,
                    state=JobState.QUEUED.value,
                    result_reference=None,
                    created_at=now,
                    updated_at=now,
                )
            )
            job_id = result.inserted_primary_key[0]
            return self._row_to_job(self._fetch(conn, job_id))

    def get(self, job_id: int) -> Optional[Job]:
        with self._transaction() as conn:
            row = self._fetch(conn, job_id)
            return self._row_to_job(row) if row else None

    def list_jobs(self) -> List[Job]:
        query = select(JobRow.__table__).order_by(JobRow.id.desc())
        with self._transaction() as conn:
            return [self._row_to_job(row) for row in conn.execute(query)]

    def delete(self, job_id: int) -> bool:
        with self._transaction() as conn:
            result = conn.execute(delete(JobRow.__table__).where(JobRow.id == job_id))
            return result.rowcount > 0

    def mark_processing(self, job_id: int) -> Job:
        return self._transition(
            job_id,
            target=JobState.PROCESSING,
            allowed_from=(JobState.QUEUED, JobState.PROCESSING),
        )

    def mark_completed(self, job_id: int, result_reference: str) -> Job:
        if not result_reference:
            raise ValueError("result_reference must be non-empty for a completed job")
        return self._transition(
            job_id,
            target=JobState.COMPLETED,
            allowed_from=(JobState.PROCESSING,),
            result_reference=result_reference,
        )

    def mark_failed(self, job_id: int) -> Job:
        return self._transition(
            job_id,
            target=JobState.FAILED,
            allowed_from=(JobState.PROCESSING,),
        )

    def _transition(
        self,
        job_id: int,
        target: JobState,
        allowed_from: tuple,
        result_reference: Optional[str] = None,
    ) -> Job:
        """Conditional single-row state write.

        The WHERE clause carries the legal source states, so a concurrent
        terminal write makes this UPDATE match zero rows instead of
        overwriting it.
        """
        with self._transaction() as conn:
            result = conn.execute(
                update(JobRow.__table__)
                .where(JobRow.id == job_id)
                .where(JobRow.state.in_([s.value for s in allowed_from]))
                .values(
                    state=target.value,
                    result_reference=result_reference,
                    updated_at=utcnow(),
                )
            )

            row = self._fetch(conn, job_id)
            if row is None:
                raise JobNotFoundError(job_id)
            if result.rowcount == 0:
                raise InvalidStateTransition(job_id, row.state, target.value)
            return self._row_to_job(row)
