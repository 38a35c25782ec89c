"""
Pipeline Orchestrator

Composes jobs into multi-stage pipelines. A parent job enqueues its first
stage as a child and completes; each stage reads the previous stage's result
and, when done, links itself back onto the parent's result.

Children are linked with an explicit ``parent_job_id`` column and also carry
``parentJobId`` in their input so processors can find the parent without a
query. A failed stage is just that job's ``failed`` status: siblings and the
parent are never rolled back or cancelled automatically.

Usage:
    pipeline = PipelineOrchestrator(db, auth)

    child_id = pipeline.create_child_job(parent, 'storyboard_basic_extraction',
                                         {'episodeId': 'ep_1'}, worker_token=token)
    pipeline.attach_to_parent(parent.id, 'matchingJobId', later_id, worker_token=token)
    pipeline.summarize_children(parent.id)
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from jobcore.db.connection import Database, store_errors
from jobcore.db.models import Job, JobStatus
from jobcore.db.repository import JobRepository
from jobcore.errors import JobNotFound
from jobcore.jobs.auth import WorkerAuth
from jobcore.jobs.queue import JobQueue
from jobcore.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

PARENT_JOB_KEY = 'parentJobId'
CHILD_IDS_KEY = 'childJobIds'

# Result keys that accumulate child ids instead of holding a single one
LIST_KEYS = frozenset({CHILD_IDS_KEY})


class PipelineOrchestrator:
    """Creates pipeline children and maintains parent/child linkage"""

    def __init__(self, db: Database, auth: WorkerAuth, queue: Optional[JobQueue] = None):
        self.db = db
        self.auth = auth
        self.queue = queue or JobQueue(db)
        self.repository = JobRepository(db)

    def create_child_job(
        self,
        parent: Union[Job, str],
        job_type: str,
        input_data: Optional[Dict[str, Any]] = None,
        worker_token: Optional[str] = None,
        total_steps: Optional[int] = None
    ) -> str:
        """
        Enqueue a child job owned by the parent's user.

        The parent was admitted by the rate limiter when it was created, so
        the child is inserted directly.

        Args:
            parent: Parent job or its ID
            job_type: Type of the child
            input_data: Child payload; ``parentJobId`` is added to it
            worker_token: Worker credential
            total_steps: Optional step count for the child

        Returns:
            Child job ID
        """
        self.auth.require(worker_token, 'create_child_job')

        if not isinstance(parent, Job):
            with store_errors("Reading parent job"):
                parent_job = self.repository.get(parent)
            if parent_job is None:
                raise JobNotFound(parent)
            parent = parent_job

        child_input = dict(input_data or {})
        child_input[PARENT_JOB_KEY] = parent.id

        child_id = self.queue.enqueue(
            user_id=parent.user_id,
            job_type=job_type,
            input_data=child_input,
            project_id=parent.project_id,
            total_steps=total_steps,
            parent_job_id=parent.id
        )
        logger.info(f"Job {parent.id} enqueued child {child_id} ({job_type})")
        return child_id

    def attach_to_parent(
        self,
        parent_job_id: str,
        key: str,
        child_job_id: str,
        worker_token: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Record a child reference in the parent's result.

        The parent row is locked for the read-modify-write, so concurrent
        children cannot overwrite each other's linkage. List keys collect ids
        without duplicates; any other key is set to the child id. This is the
        only write allowed on a completed parent.

        Returns:
            The parent's updated result data
        """
        self.auth.require(worker_token, 'attach_to_parent')

        with store_errors("Linking child to parent"), self.db.transaction() as session:
            parent = self.repository.lock(session, parent_job_id)
            if parent is None:
                raise JobNotFound(parent_job_id)

            result = dict(parent.result_data or {})
            existing = result.get(key)
            if key in LIST_KEYS or isinstance(existing, list):
                ids = list(existing or [])
                if child_job_id not in ids:
                    ids.append(child_job_id)
                result[key] = ids
            else:
                result[key] = child_job_id

            parent.result_data = result
            parent.updated_at = utcnow()

        logger.info(f"Linked job {child_job_id} to parent {parent_job_id} as {key}")
        return result

    def get_child_jobs(self, parent_job_id: str) -> List[Job]:
        """Children of a job, oldest first"""
        with store_errors("Listing child jobs"), self.db.session() as session:
            return list(session.execute(self.repository.children_query(parent_job_id)).scalars())

    def summarize_children(self, parent_job_id: str) -> Dict[str, Any]:
        """
        Aggregate the state of a job's children without touching the parent.

        The overall state is ``failed`` if any child failed, ``completed`` or
        ``cancelled`` if all children are, ``processing`` while any child is
        still pending or running and ``pending`` otherwise. None when there
        are no children.
        """
        children = self.get_child_jobs(parent_job_id)
        counts = {status.value: 0 for status in JobStatus}
        for child in children:
            counts[child.status] = counts.get(child.status, 0) + 1

        total = len(children)
        progress = round(sum(child.progress or 0 for child in children) / total) if total else 0

        if not total:
            state = None
        elif counts[JobStatus.FAILED.value]:
            state = JobStatus.FAILED.value
        elif counts[JobStatus.COMPLETED.value] == total:
            state = JobStatus.COMPLETED.value
        elif counts[JobStatus.CANCELLED.value] == total:
            state = JobStatus.CANCELLED.value
        elif counts[JobStatus.PENDING.value] or counts[JobStatus.PROCESSING.value]:
            state = JobStatus.PROCESSING.value
        else:
            state = JobStatus.PENDING.value

        return {
            'parent_job_id': parent_job_id,
            'total': total,
            'by_status': counts,
            'progress': progress,
            'state': state,
            'child_job_ids': [child.id for child in children],
        }


def build_job_tree(jobs: Iterable[Union[Job, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    Arrange a flat job list into parent/child nodes.

    Each node is ``{'job': <dict>, 'children': [<node>, ...]}``. Jobs whose
    parent is not in the list become roots; input order is preserved.
    """
    records = [job.to_dict() if isinstance(job, Job) else dict(job) for job in jobs]
    nodes = {record['id']: {'job': record, 'children': []} for record in records}

    roots = []
    for record in records:
        node = nodes[record['id']]
        parent_id = record.get('parent_job_id')
        if parent_id and parent_id in nodes and parent_id != record['id']:
            nodes[parent_id]['children'].append(node)
        else:
            roots.append(node)
    return roots
