"""
User Job Operations

End-user view of the job store. Every call is scoped to the signed-in user:
jobs owned by someone else are reported as not found, so callers cannot learn
about the existence of other users' jobs.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from jobcore.context import UserContext
from jobcore.db.connection import Database, store_errors
from jobcore.db.models import ACTIVE_STATUSES, RETRYABLE_STATUSES, Job, JobStatus
from jobcore.db.repository import JobRepository
from jobcore.errors import InvalidTransition, JobNotFound, Unauthorized
from jobcore.jobs.queue import JobQueue
from jobcore.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


class UserJobs:
    """
    Job operations on behalf of one user.

    Usage:
        jobs = UserJobs(db, UserContext(user_id='user_123'))

        job_id = jobs.create_job('character_extraction', {'episodeId': 'ep_1'})
        jobs.get_job_status(job_id)
        jobs.cancel_job(job_id)
        new_id = jobs.retry_job(job_id)
    """

    def __init__(self, db: Database, user_context: Optional[UserContext], queue: Optional[JobQueue] = None):
        self.db = db
        self.user_context = user_context
        self.queue = queue or JobQueue(db)
        self.repository = JobRepository(db)

    @property
    def user_id(self) -> str:
        """Signed-in user id; raises Unauthorized without a session"""
        if self.user_context is None or not self.user_context.is_authenticated:
            raise Unauthorized("Not logged in")
        return self.user_context.user_id

    def _owned(self, session, job_id: str) -> Job:
        user_id = self.user_id
        job = session.get(Job, job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFound(job_id, f"Job not found or no permission: {job_id}")
        return job

    def create_job(
        self,
        job_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        project_id: Optional[str] = None,
        total_steps: Optional[int] = None
    ) -> str:
        """
        Create a job owned by the signed-in user.

        Raises:
            Unauthorized: No user session
            RateLimited: The user is over a cap
        """
        return self.queue.create_job(
            user_id=self.user_id,
            job_type=job_type,
            input_data=input_data,
            project_id=project_id,
            total_steps=total_steps
        )

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """Status, progress and outcome of one job"""
        with store_errors("Reading job"), self.db.session() as session:
            job = self._owned(session, job_id)
            return {
                'id': job.id,
                'type': job.type,
                'status': job.status,
                'progress': job.progress,
                'current_step': job.current_step,
                'total_steps': job.total_steps,
                'progress_message': job.progress_message,
                'result_data': job.result_data,
                'error_message': job.error_message,
            }

    def get_job_detail(self, job_id: str) -> Dict[str, Any]:
        """Full row of one job, including its input payload"""
        with store_errors("Reading job"), self.db.session() as session:
            return self._owned(session, job_id).to_dict()

    def get_user_jobs(
        self,
        status: Optional[Union[str, List[str]]] = None,
        project_id: Optional[str] = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> List[Dict[str, Any]]:
        """
        The user's jobs, newest first.

        Args:
            status: One status or a list of statuses to include
            project_id: Restrict to one project
            limit: Maximum number of jobs returned
        """
        statuses = [status] if isinstance(status, str) else status
        query = self.repository.user_jobs_query(self.user_id, statuses, project_id, limit)
        with store_errors("Listing jobs"), self.db.session() as session:
            return [job.to_dict() for job in session.execute(query).scalars()]

    def get_active_jobs(self) -> List[Dict[str, Any]]:
        """The user's pending and processing jobs"""
        return self.get_user_jobs(status=[s.value for s in ACTIVE_STATUSES])

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a pending or processing job.

        A running processor is not interrupted; its later reports for the job
        become no-ops.

        Raises:
            JobNotFound: Missing or not owned
            InvalidTransition: The job already finished or was already cancelled
        """
        with store_errors("Cancelling job"), self.db.transaction() as session:
            job = self._owned(session, job_id)
            now = utcnow()
            cancelled = self.repository.transition(
                session, job.id, JobStatus.CANCELLED,
                {'completed_at': now, 'updated_at': now}
            )
            current = None if cancelled else self.repository.get_status(session, job.id)

        if not cancelled:
            if current == JobStatus.CANCELLED.value:
                raise InvalidTransition(job_id, current, JobStatus.CANCELLED.value,
                                        f"Job {job_id} is already cancelled")
            raise InvalidTransition(job_id, current, JobStatus.CANCELLED.value,
                                    f"Job {job_id} already finished, cannot cancel")

        logger.info(f"Job {job_id} cancelled by user {self.user_id}")
        return True

    def retry_job(self, job_id: str) -> str:
        """
        Create a new pending job from a failed or cancelled one.

        The original row is left untouched. The copy carries the same type,
        input, step count and project, and goes through the rate limiter.

        Returns:
            ID of the new job
        """
        with store_errors("Reading job"), self.db.session() as session:
            job = self._owned(session, job_id)

        if JobStatus(job.status) not in RETRYABLE_STATUSES:
            raise InvalidTransition(job_id, job.status, JobStatus.PENDING.value,
                                    f"Only failed or cancelled jobs can be retried (job is {job.status})")

        new_job_id = self.queue.create_job(
            user_id=job.user_id,
            job_type=job.type,
            input_data=job.input_data,
            project_id=job.project_id,
            total_steps=job.total_steps
        )
        logger.info(f"Job {job_id} retried as {new_job_id}")
        return new_job_id

    def mark_job_imported(self, job_id: str) -> bool:
        """Flag a job's results as imported into the user's project"""
        with store_errors("Marking job imported"), self.db.transaction() as session:
            job = self._owned(session, job_id)
            job.is_imported = True
            job.updated_at = utcnow()
        return True
