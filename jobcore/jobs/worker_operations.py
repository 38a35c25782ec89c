"""
Worker Operations

The privileged half of the job lifecycle: claiming pending jobs and reporting
progress, completion and failure. Every call presents the worker credential,
which is checked before the store is touched.

Status writes are conditional updates (``WHERE id = ? AND status IN (...)``),
so two workers racing on the same row cannot both win. A job the user
cancelled while it was running is left alone: progress, completion and
failure reports for it are no-ops that return False.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.db.connection import Database, store_errors
from jobcore.db.models import ACTIVE_STATUSES, Job, JobStatus
from jobcore.db.repository import JobRepository
from jobcore.errors import InvalidTransition, JobNotFound
from jobcore.jobs.auth import WorkerAuth
from jobcore.utils.time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_CLAIM_BATCH = 100
DEFAULT_TIMEOUT_MINUTES = 10


def normalize_limit(limit: Any) -> int:
    """
    Coerce a claim batch size to an int in ``[1, MAX_CLAIM_BATCH]``.

    Raises:
        ValueError: ``limit`` is not numeric
    """
    try:
        value = int(float(limit))
    except (TypeError, ValueError, OverflowError):
        raise ValueError(f"Invalid limit: {limit!r}")
    return min(max(1, value), MAX_CLAIM_BATCH)


class WorkerOperations:
    """
    Lifecycle operations available to worker processes.

    Usage:
        ops = WorkerOperations(db, WorkerAuth.from_config())
        token = ops.auth.get_worker_token()

        for job in ops.claim_pending_jobs(5, token):
            ops.update_job_progress(job.id, 50, progress_message='halfway', worker_token=token)
            ops.complete_job(job.id, {'ok': True}, worker_token=token)
    """

    def __init__(
        self,
        db: Database,
        auth: WorkerAuth,
        job_timeouts: Optional[Dict[str, int]] = None
    ):
        self.db = db
        self.auth = auth
        self.repository = JobRepository(db)
        if job_timeouts is None:
            job_timeouts = JobCoreConfig.instance().get('worker.job_timeouts', {}) or {}
        self.job_timeouts = dict(job_timeouts)

    def get_pending_jobs(self, limit: Any, worker_token: Optional[str] = None) -> List[Job]:
        """
        Select the oldest pending jobs without claiming them.

        The rows are read with ``FOR UPDATE SKIP LOCKED`` but the lock ends
        with this call; the caller then invokes ``start_job`` per job. Between
        the two calls another worker may select the same job. ``start_job``
        only moves a job out of ``pending``, so the slower worker gets
        InvalidTransition and must skip it. Prefer ``claim_pending_jobs``.

        Args:
            limit: Batch size, coerced to an int and clamped to 1..100
            worker_token: Worker credential

        Returns:
            Pending jobs, oldest first
        """
        self.auth.require(worker_token, 'get_pending_jobs')
        limit = normalize_limit(limit)

        with store_errors("Fetching pending jobs"), self.db.transaction() as session:
            jobs = list(session.execute(self.repository.pending_query(limit)).scalars())

        logger.debug(f"Fetched {len(jobs)} pending jobs")
        return jobs

    def claim_pending_jobs(self, limit: Any, worker_token: Optional[str] = None) -> List[Job]:
        """
        Select and start up to ``limit`` pending jobs in one transaction.

        Each selected row is flipped to ``processing`` with a conditional
        update; only rows this call actually flipped are returned, so
        concurrent callers always receive disjoint sets.

        Args:
            limit: Batch size, coerced to an int and clamped to 1..100
            worker_token: Worker credential

        Returns:
            Jobs now owned by the caller, in ``processing`` state
        """
        self.auth.require(worker_token, 'claim_pending_jobs')
        limit = normalize_limit(limit)

        claimed: List[Job] = []
        with store_errors("Claiming pending jobs"), self.db.transaction() as session:
            candidates = list(session.execute(self.repository.pending_query(limit)).scalars())
            for job in candidates:
                # Detach so the in-memory copy can be updated without a second flush
                session.expunge(job)
                now = utcnow()
                if self.repository.transition(
                    session, job.id, JobStatus.PROCESSING,
                    {'started_at': now, 'updated_at': now}
                ):
                    job.status = JobStatus.PROCESSING.value
                    job.started_at = now
                    job.updated_at = now
                    claimed.append(job)

        if claimed:
            logger.info(f"Claimed {len(claimed)} jobs: {[job.id for job in claimed]}")
        return claimed

    def start_job(self, job_id: str, worker_token: Optional[str] = None) -> bool:
        """
        Move a job from ``pending`` to ``processing``.

        Returns:
            True if started, False if the job was cancelled before it started

        Raises:
            Unauthorized: Bad worker credential
            JobNotFound: No such job
            InvalidTransition: The job is not pending (e.g. another worker started it)
        """
        self.auth.require(worker_token, 'start_job')

        with store_errors("Starting job"), self.db.transaction() as session:
            now = utcnow()
            started = self.repository.transition(
                session, job_id, JobStatus.PROCESSING,
                {'started_at': now, 'updated_at': now}
            )
            current = None if started else self.repository.get_status(session, job_id)

        if started:
            logger.info(f"Job {job_id} started")
            return True
        return self._unmatched(job_id, current, JobStatus.PROCESSING)

    def update_job_progress(
        self,
        job_id: str,
        progress: int,
        current_step: Optional[int] = None,
        progress_message: Optional[str] = None,
        worker_token: Optional[str] = None
    ) -> bool:
        """
        Overwrite the progress fields of a job that is still active.

        Values are stored as given; there is no monotonicity or range check,
        and repeating a call is harmless. ``current_step`` is only written when
        given, ``progress_message`` only when non-empty.

        Returns:
            True if written, False if the job is already terminal
        """
        self.auth.require(worker_token, 'update_job_progress')

        values: Dict[str, Any] = {'progress': progress, 'updated_at': utcnow()}
        if current_step is not None:
            values['current_step'] = current_step
        if progress_message:
            values['progress_message'] = progress_message

        with store_errors("Updating job progress"), self.db.transaction() as session:
            updated = self.repository.update_where_status(
                session, job_id, [status.value for status in ACTIVE_STATUSES], values
            )
            current = None if updated else self.repository.get_status(session, job_id)

        if updated:
            logger.debug(f"Job {job_id} progress {progress}%")
            return True
        if current is None:
            raise JobNotFound(job_id)
        logger.info(f"Ignoring progress update for job {job_id} in status {current}")
        return False

    def complete_job(
        self,
        job_id: str,
        result_data: Optional[Dict[str, Any]] = None,
        worker_token: Optional[str] = None
    ) -> bool:
        """
        Move a job from ``processing`` to ``completed`` with its result.

        Progress is forced to 100. A missing result is stored as ``{}``.
        Child references attached to the job before it completed are kept
        unless the result sets the same key.

        Returns:
            True if completed, False if the job was cancelled meanwhile
        """
        self.auth.require(worker_token, 'complete_job')

        result = result_data if result_data is not None else {}
        with store_errors("Completing job"), self.db.transaction() as session:
            job = self.repository.lock(session, job_id)
            if job is not None and isinstance(job.result_data, dict) and isinstance(result, dict):
                result = {**job.result_data, **result}

            now = utcnow()
            completed = self.repository.transition(
                session, job_id, JobStatus.COMPLETED,
                {
                    'progress': 100,
                    'result_data': result,
                    'completed_at': now,
                    'updated_at': now
                }
            )
            current = None if completed else self.repository.get_status(session, job_id)

        if completed:
            logger.info(f"Job {job_id} completed")
            return True
        return self._unmatched(job_id, current, JobStatus.COMPLETED)

    def fail_job(
        self,
        job_id: str,
        error_message: str,
        worker_token: Optional[str] = None
    ) -> bool:
        """
        Move a job from ``processing`` to ``failed``.

        Returns:
            True if failed, False if the job was cancelled meanwhile
        """
        self.auth.require(worker_token, 'fail_job')

        with store_errors("Failing job"), self.db.transaction() as session:
            now = utcnow()
            failed = self.repository.transition(
                session, job_id, JobStatus.FAILED,
                {
                    'error_message': error_message or 'Unknown error',
                    'completed_at': now,
                    'updated_at': now
                }
            )
            current = None if failed else self.repository.get_status(session, job_id)

        if failed:
            logger.warning(f"Job {job_id} failed: {error_message}")
            return True
        return self._unmatched(job_id, current, JobStatus.FAILED)

    def get_job(self, job_id: str, worker_token: Optional[str] = None) -> Job:
        """
        Read any job, e.g. an earlier pipeline stage whose result a processor consumes.

        Raises:
            JobNotFound: No such job
        """
        self.auth.require(worker_token, 'get_job')

        with store_errors("Reading job"):
            job = self.repository.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def recover_timeout_jobs(self, worker_token: Optional[str] = None, now=None) -> List[str]:
        """
        Fail ``processing`` jobs that ran longer than their type's timeout.

        Jobs in ``processing`` without a start time are failed as well.
        Timeouts are minutes per job type, ``default`` for unlisted types.

        Returns:
            IDs of the jobs that were failed
        """
        self.auth.require(worker_token, 'recover_timeout_jobs')
        now = as_utc(now) or utcnow()
        recovered: List[str] = []

        with store_errors("Recovering timed out jobs"), self.db.transaction() as session:
            for job in self.repository.processing_jobs(session):
                started_at = as_utc(job.started_at)
                minutes = self.timeout_minutes(job.type)

                if started_at is None:
                    message = "Job was processing without a start time"
                elif now - started_at > timedelta(minutes=minutes):
                    message = f"Job timed out after {minutes} minutes"
                else:
                    continue

                if self.repository.transition(
                    session, job.id, JobStatus.FAILED,
                    {'error_message': message, 'completed_at': now, 'updated_at': now}
                ):
                    recovered.append(job.id)
                    logger.warning(f"Job {job.id} ({job.type}) recovered: {message}")

        if recovered:
            logger.info(f"Recovered {len(recovered)} timed out jobs")
        return recovered

    def timeout_minutes(self, job_type: str) -> int:
        return int(self.job_timeouts.get(job_type, self.job_timeouts.get('default', DEFAULT_TIMEOUT_MINUTES)))

    def _unmatched(self, job_id: str, current: Optional[str], target: JobStatus) -> bool:
        # A conditional update matched no row: missing job, cancelled job or illegal edge
        if current is None:
            raise JobNotFound(job_id)
        if current == JobStatus.CANCELLED.value:
            logger.info(f"Job {job_id} was cancelled; not moving it to {target.value}")
            return False
        raise InvalidTransition(job_id, current, target.value)
