from datetime import datetime
from typing import Any, Dict, Generic, Iterable, List, Optional, Type, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .connection import Base, Database
from .models import ACTIVE_STATUSES, Job, JobStatus, allowed_sources

T = TypeVar('T', bound=Base)


class BaseRepository(Generic[T]):
    """Base repository class for common database operations"""

    def __init__(self, model_class: Type[T], db: Database):
        self.model_class = model_class
        self.db = db

    def get(self, id: str) -> Optional[T]:
        """Get a record by ID"""
        with self.db.session() as session:
            return session.get(self.model_class, id)


class JobRepository(BaseRepository[Job]):
    """
    Query builders for the job table.

    Methods taking a ``session`` run inside the caller's transaction so that a
    select and the update that follows it share one unit of work.
    """

    def __init__(self, db: Database):
        super().__init__(Job, db)

    def pending_query(self, limit: int, lock: bool = True):
        """Oldest pending jobs first, skipping rows another transaction has locked"""
        query = (
            select(Job)
            .where(Job.status == JobStatus.PENDING.value)
            .order_by(Job.created_at.asc())
            .limit(limit)
        )
        if lock:
            query = query.with_for_update(skip_locked=True)
        return query

    def transition(
        self,
        session: Session,
        job_id: str,
        target: JobStatus,
        values: Optional[Dict[str, Any]] = None,
        sources: Optional[Iterable[str]] = None
    ) -> bool:
        """
        Conditionally move a job to ``target``.

        Issues ``UPDATE job SET status = target ... WHERE id = :id AND status IN
        (:sources)``. Only one of several racing writers can match the row.

        Args:
            session: Open session (caller owns the transaction)
            job_id: Job to update
            target: Status to move to
            values: Extra column values to write with the status
            sources: Statuses to match, defaults to the allowed sources of ``target``

        Returns:
            True if exactly one row was updated
        """
        source_values = list(sources) if sources is not None else allowed_sources(target)
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(source_values))
            .values(status=target.value, **(values or {}))
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        return result.rowcount == 1

    def update_where_status(
        self,
        session: Session,
        job_id: str,
        statuses: Iterable[str],
        values: Dict[str, Any]
    ) -> bool:
        """Update columns without changing status, only while the job is in ``statuses``"""
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.in_(list(statuses)))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return session.execute(stmt).rowcount == 1

    def get_status(self, session: Session, job_id: str) -> Optional[str]:
        return session.execute(select(Job.status).where(Job.id == job_id)).scalar_one_or_none()

    def lock(self, session: Session, job_id: str) -> Optional[Job]:
        """Read a job holding a row lock until the transaction ends"""
        query = select(Job).where(Job.id == job_id).with_for_update()
        return session.execute(query).scalar_one_or_none()

    def count_active(self, session: Session, user_id: str) -> int:
        """Jobs of a user that are pending or processing"""
        query = select(func.count(Job.id)).where(
            Job.user_id == user_id,
            Job.status.in_([status.value for status in ACTIVE_STATUSES])
        )
        return session.execute(query).scalar_one()

    def count_created_since(self, session: Session, user_id: str, since: datetime) -> int:
        """Jobs a user created at or after ``since``, regardless of status"""
        query = select(func.count(Job.id)).where(
            Job.user_id == user_id,
            Job.created_at >= since
        )
        return session.execute(query).scalar_one()

    def user_jobs_query(
        self,
        user_id: str,
        statuses: Optional[List[str]] = None,
        project_id: Optional[str] = None,
        limit: int = 50
    ):
        """A user's jobs, newest first"""
        query = select(Job).where(Job.user_id == user_id)
        if statuses:
            query = query.where(Job.status.in_(statuses))
        if project_id:
            query = query.where(Job.project_id == project_id)
        return query.order_by(Job.created_at.desc()).limit(limit)

    def children_query(self, parent_job_id: str):
        return (
            select(Job)
            .where(Job.parent_job_id == parent_job_id)
            .order_by(Job.created_at.asc())
        )

    def status_counts(self, session: Session) -> Dict[str, int]:
        """Number of jobs per status across the whole table"""
        rows = session.execute(select(Job.status, func.count(Job.id)).group_by(Job.status)).all()
        counts = {status.value: 0 for status in JobStatus}
        for status, count in rows:
            counts[status] = count
        return counts

    def processing_jobs(self, session: Session) -> List[Job]:
        query = select(Job).where(Job.status == JobStatus.PROCESSING.value)
        return list(session.execute(query).scalars())
