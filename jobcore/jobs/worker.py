"""
Async Job Worker

Polls the job table for pending jobs and runs them with registered processors.
Supports:
- Atomic claiming (or the two-step select-then-start path)
- Concurrency control (only free slots are claimed per poll)
- Idle back-off after consecutive empty polls
- Optional periodic recovery of timed out jobs
- Graceful shutdown on SIGTERM/SIGINT

Any number of worker processes can run against the same database; they
coordinate only through the job table.
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.db.models import Job
from jobcore.errors import InvalidTransition, JobCoreError
from jobcore.jobs.pipeline import PipelineOrchestrator
from jobcore.jobs.worker_operations import WorkerOperations
from jobcore.processors.base import BaseJobProcessor, FunctionProcessor, ProcessorContext
from jobcore.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Polling
    poll_interval: float = 2.0  # seconds
    idle_poll_interval: float = 5.0  # seconds
    idle_after_empty_polls: int = 3

    # Concurrency
    max_concurrent: int = 10

    # Delay after an unexpected error in the poll loop
    error_retry_delay: float = 5.0  # seconds

    # Claim with one select-and-update transaction instead of select, then start_job
    atomic_claim: bool = True

    # Periodic timeout recovery, 0 disables it
    timeout_check_interval: float = 0  # seconds

    # Graceful shutdown
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: Optional[JobCoreConfig] = None) -> 'WorkerConfig':
        config = config or JobCoreConfig.instance()
        section = config.get('worker', {}) or {}
        values = {
            name: section[name]
            for name in cls.__dataclass_fields__
            if name in section
        }
        return cls(**values)


class Worker:
    """
    Async job worker.

    Usage:
        worker = Worker(WorkerOperations(db, WorkerAuth.from_config()), config)

        # Register processors
        worker.register_processor(StoryboardGenerationProcessor())
        worker.register_handler('novel_split', split_novel)

        # Run worker
        await worker.run()
    """

    def __init__(
        self,
        operations: WorkerOperations,
        config: Optional[WorkerConfig] = None,
        worker_token: Optional[str] = None,
        pipeline: Optional[PipelineOrchestrator] = None
    ):
        self.operations = operations
        self.config = config or WorkerConfig()
        self.pipeline = pipeline or PipelineOrchestrator(operations.db, operations.auth)
        self._worker_token = worker_token

        # Processors by job type
        self._processors: Dict[str, BaseJobProcessor] = {}

        # State
        self._running = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self._active_jobs: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._empty_polls = 0
        self._last_timeout_check = 0.0

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._start_time: Optional[datetime] = None

    @property
    def worker_token(self) -> str:
        if self._worker_token is None:
            self._worker_token = self.operations.auth.get_worker_token()
        return self._worker_token

    def register_processor(self, processor: BaseJobProcessor) -> None:
        """
        Register a processor for its ``job_type``.

        Args:
            processor: Processor instance
        """
        if not processor.job_type:
            raise ValueError(f"{processor.__class__.__name__} does not declare a job_type")
        self._processors[processor.job_type] = processor
        logger.info(f"Registered processor for job type: {processor.job_type}")

    def register_handler(
        self,
        job_type: str,
        handler: Callable[[Job, ProcessorContext], Awaitable[Optional[Dict[str, Any]]]]
    ) -> None:
        """
        Register an async function as the processor for a job type.

        Args:
            job_type: Type of job to handle
            handler: Async function ``handler(job, context)`` returning result data
        """
        self.register_processor(FunctionProcessor(job_type, handler))

    async def run(self) -> None:
        """
        Run the worker.

        Polls for pending jobs and runs them until shutdown.
        """
        # Fail fast when the worker secret is missing
        token = self.worker_token
        logger.info(
            f"Starting worker (max_concurrent={self.config.max_concurrent}, "
            f"atomic_claim={self.config.atomic_claim})"
        )

        self._running = True
        self._start_time = utcnow()
        shutdown_event = self._get_shutdown_event()
        self._setup_signal_handlers()

        try:
            while self._running and not shutdown_event.is_set():
                try:
                    claimed = await self.poll_once()
                    self._maybe_recover_timeouts(token)
                    delay = self._next_delay(claimed)
                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    delay = self.config.error_retry_delay

                # Wait before next poll
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

        finally:
            # Wait for active jobs to complete
            if self._tasks:
                logger.info(f"Waiting for {len(self._tasks)} active jobs to complete...")
                try:
                    await asyncio.wait_for(self.wait_for_active_jobs(), timeout=self.config.shutdown_timeout)
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may not have completed")

            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def stop(self) -> None:
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self._running = False
        self._get_shutdown_event().set()

    def _get_shutdown_event(self) -> asyncio.Event:
        # Created lazily so the event belongs to the loop the worker runs on
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
        return self._shutdown_event

    async def poll_once(self) -> List[Job]:
        """
        Claim as many jobs as there are free slots and start running them.

        Returns:
            Jobs claimed by this poll
        """
        slots = self.config.max_concurrent - len(self._active_jobs)
        if slots <= 0:
            return []

        jobs = self._claim(slots)
        for job in jobs:
            self._active_jobs.add(job.id)
            task = asyncio.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return jobs

    def _claim(self, slots: int) -> List[Job]:
        if self.config.atomic_claim:
            return self.operations.claim_pending_jobs(slots, self.worker_token)

        started = []
        for job in self.operations.get_pending_jobs(slots, self.worker_token):
            try:
                if self.operations.start_job(job.id, self.worker_token):
                    started.append(job)
            except InvalidTransition as e:
                # Another worker started it between our select and start
                logger.debug(f"Skipping job {job.id}: {e}")
        return started

    async def _run_job(self, job: Job) -> None:
        """Run one claimed job with its processor"""
        try:
            processor = self._processors.get(job.type)
            if processor is None:
                logger.error(f"No processor for job type: {job.type}")
                self.operations.fail_job(
                    job.id, f"No processor registered for job type: {job.type}", self.worker_token
                )
                self._failed_count += 1
                return

            context = ProcessorContext(job, self.operations, self.worker_token, self.pipeline)
            if await processor.execute(job, context):
                self._processed_count += 1
            else:
                self._failed_count += 1

        except JobCoreError as e:
            logger.error(f"Failed to record outcome of job {job.id}: {e}")
            self._failed_count += 1
        except Exception as e:
            logger.exception(f"Unexpected error running job {job.id}: {e}")
            self._failed_count += 1
        finally:
            self._active_jobs.discard(job.id)

    def _next_delay(self, claimed: List[Job]) -> float:
        if claimed:
            self._empty_polls = 0
            return self.config.poll_interval

        self._empty_polls += 1
        if self._empty_polls >= self.config.idle_after_empty_polls:
            return self.config.idle_poll_interval
        return self.config.poll_interval

    def _maybe_recover_timeouts(self, token: str) -> List[str]:
        interval = self.config.timeout_check_interval
        if not interval or interval <= 0:
            return []
        now = time.monotonic()
        if self._last_timeout_check and now - self._last_timeout_check < interval:
            return []
        self._last_timeout_check = now
        return self.operations.recover_timeout_jobs(token)

    async def wait_for_active_jobs(self) -> None:
        """Wait for all running jobs to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (utcnow() - self._start_time).total_seconds()

        return {
            'running': self._running,
            'active_jobs': len(self._active_jobs),
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'uptime_seconds': uptime,
            'processors_registered': list(self._processors.keys())
        }


async def run_worker(
    operations: WorkerOperations,
    processors: Iterable[BaseJobProcessor],
    config: Optional[WorkerConfig] = None
) -> None:
    """
    Convenience function to run a worker.

    Args:
        operations: Worker operations bound to a database and credential
        processors: Processors to register
        config: Optional worker configuration
    """
    worker = Worker(operations, config)

    for processor in processors:
        worker.register_processor(processor)

    await worker.run()
