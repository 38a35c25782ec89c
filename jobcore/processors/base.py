import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional

from jobcore.db.models import Job
from jobcore.jobs.pipeline import PipelineOrchestrator
from jobcore.jobs.worker_operations import WorkerOperations

logger = logging.getLogger(__name__)


class ProcessorContext:
    """
    Lifecycle calls available to a processor while it runs one job.

    Wraps the worker operations with the worker credential already applied,
    and remembers whether the processor reported the outcome itself.
    """

    def __init__(
        self,
        job: Job,
        operations: WorkerOperations,
        worker_token: str,
        pipeline: Optional[PipelineOrchestrator] = None
    ):
        self.job = job
        self.operations = operations
        self.worker_token = worker_token
        self.pipeline = pipeline or PipelineOrchestrator(operations.db, operations.auth)
        self.finished = False
        self.completed = False

    def update_progress(self, progress: int, current_step: Optional[int] = None, message: Optional[str] = None) -> bool:
        return self.operations.update_job_progress(
            self.job.id, progress, current_step, message, worker_token=self.worker_token
        )

    def complete(self, result_data: Optional[Dict[str, Any]] = None) -> bool:
        """Complete the job now; returns False if it was cancelled"""
        self.finished = True
        self.completed = self.operations.complete_job(self.job.id, result_data, worker_token=self.worker_token)
        return self.completed

    def fail(self, error_message: str) -> bool:
        self.finished = True
        return self.operations.fail_job(self.job.id, error_message, worker_token=self.worker_token)

    def get_job(self, job_id: str) -> Job:
        return self.operations.get_job(job_id, worker_token=self.worker_token)

    def create_child_job(
        self,
        job_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        parent: Optional[Any] = None
    ) -> str:
        """Enqueue a child of ``parent`` (default: the running job)"""
        return self.pipeline.create_child_job(
            parent or self.job, job_type, input_data, worker_token=self.worker_token
        )

    def attach_to_parent(self, parent_job_id: str, key: str, child_job_id: Optional[str] = None) -> Dict[str, Any]:
        return self.pipeline.attach_to_parent(
            parent_job_id, key, child_job_id or self.job.id, worker_token=self.worker_token
        )


class BaseJobProcessor(ABC):
    """Base class for JobCore job processors"""

    job_type: str = ''

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or {}

    @abstractmethod
    async def process(self, job: Job, context: ProcessorContext) -> Optional[Dict[str, Any]]:
        """Do the work of a job

        Args:
            job: The claimed job, in ``processing`` state
            context: Lifecycle calls for reporting progress and enqueueing children

        Returns:
            Result data for the completed job
        """
        pass

    async def after_complete(self, job: Job, result: Optional[Dict[str, Any]], context: ProcessorContext) -> None:
        """Hook run once the job is completed, e.g. to enqueue the next stage"""
        pass

    async def execute(self, job: Job, context: ProcessorContext) -> bool:
        """
        Run ``process`` and record the outcome on the job.

        Exceptions from ``process`` fail the job. A job cancelled while running
        is left cancelled and the follow-up hook is skipped. Errors in the
        hook are logged; the job stays completed.

        Returns:
            True if the job ended up completed
        """
        try:
            result = await self.process(job, context)
        except Exception as e:
            logger.error(f"Job {job.id} ({job.type}) failed: {str(e)}")
            if not context.finished:
                context.fail(str(e) or e.__class__.__name__)
            return False

        if context.finished:
            return context.completed

        if not context.complete(result):
            return False

        try:
            await self.after_complete(job, result, context)
        except Exception as e:
            logger.error(f"Follow-up for job {job.id} ({job.type}) failed: {str(e)}")
        return True


class FunctionProcessor(BaseJobProcessor):
    """Adapts an async ``handler(job, context)`` function to a processor"""

    def __init__(
        self,
        job_type: str,
        handler: Callable[[Job, ProcessorContext], Awaitable[Optional[Dict[str, Any]]]]
    ):
        super().__init__()
        self.job_type = job_type
        self.handler = handler

    async def process(self, job: Job, context: ProcessorContext) -> Optional[Dict[str, Any]]:
        return await self.handler(job, context)
