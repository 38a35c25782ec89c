"""
Job Queue

Producer side of the job store: admission-checked job creation plus the
read-only queue views used by operators.
"""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import func, select

from jobcore.db.connection import Database, store_errors
from jobcore.db.models import Job, JobStatus
from jobcore.db.repository import JobRepository
from jobcore.jobs.rate_limiter import JobRateLimiter
from jobcore.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class JobQueue:
    """
    Queue for asynchronous jobs.

    Provides methods for:
    - Creating jobs behind the per-user rate limiter
    - Enqueueing rows directly (pipeline children, already admitted)
    - Queue statistics

    Usage:
        queue = JobQueue(db, JobRateLimiter(db))

        job_id = queue.create_job(
            user_id='user_123',
            job_type='novel_split',
            input_data={'novelId': 'nov_1'},
            total_steps=3
        )
    """

    def __init__(self, db: Database, rate_limiter: Optional[JobRateLimiter] = None):
        self.db = db
        self.rate_limiter = rate_limiter or JobRateLimiter(db)
        self.repository = JobRepository(db)

    def create_job(
        self,
        user_id: str,
        job_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
        total_steps: Optional[int] = None
    ) -> str:
        """
        Create a pending job after the rate limiter admits it.

        Args:
            user_id: Owner of the job
            job_type: Type tag the worker dispatches on
            input_data: Opaque payload handed to the processor
            project_id: Optional project the job belongs to
            total_steps: Optional number of steps the processor will report

        Returns:
            Job ID

        Raises:
            RateLimited: The user is over a cap
            StorageFailure: The insert failed
        """
        self.rate_limiter.check(user_id)
        return self.enqueue(
            user_id=user_id,
            job_type=job_type,
            input_data=input_data,
            project_id=project_id,
            total_steps=total_steps
        )

    def enqueue(
        self,
        user_id: str,
        job_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
        total_steps: Optional[int] = None,
        parent_job_id: Optional[str] = None
    ) -> str:
        """
        Insert a pending job without admission control.

        Only callers that already passed the limiter (or act on behalf of an
        admitted parent job) should use this directly.

        Returns:
            Job ID
        """
        job_id = str(uuid4())
        now = utcnow()
        with store_errors("Creating job"), self.db.transaction() as session:
            session.add(Job(
                id=job_id,
                user_id=user_id,
                project_id=project_id,
                type=job_type,
                status=JobStatus.PENDING.value,
                parent_job_id=parent_job_id,
                progress=0,
                current_step=0,
                total_steps=total_steps,
                input_data=input_data or {},
                created_at=now,
                updated_at=now
            ))

        logger.info(f"Enqueued job {job_id} ({job_type}) for user {user_id}")
        return job_id

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get status of a job, or None if it does not exist"""
        with self.db.session() as session:
            job = session.get(Job, job_id)
            if not job:
                return None
            return {
                'id': job.id,
                'type': job.type,
                'status': job.status,
                'progress': job.progress,
                'progress_message': job.progress_message,
                'error_message': job.error_message,
            }

    def get_pending_count(self, job_type: Optional[str] = None) -> int:
        """Number of pending jobs, optionally of one type"""
        with self.db.session() as session:
            query = select(func.count(Job.id)).where(Job.status == JobStatus.PENDING.value)
            if job_type:
                query = query.where(Job.type == job_type)
            return session.execute(query).scalar_one()

    def get_queue_stats(self) -> Dict[str, Any]:
        """Get queue statistics"""
        with self.db.session() as session:
            by_status = self.repository.status_counts(session)
            rows = session.execute(select(Job.type, Job.status)).all()

        by_type: Dict[str, Dict[str, int]] = {}
        for job_type, status in rows:
            type_counts = by_type.setdefault(job_type, {})
            type_counts[status] = type_counts.get(status, 0) + 1

        return {
            'total': sum(by_status.values()),
            'by_status': by_status,
            'by_type': by_type
        }
