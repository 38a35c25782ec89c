from enum import Enum
from typing import Any, Dict, FrozenSet
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text

from jobcore.db.connection import Base
from jobcore.utils.time_utils import isoformat, utcnow


class JobStatus(str, Enum):
    """Job lifecycle status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Target status -> statuses a job may be in to move there.
# Terminal statuses have no outgoing edges; retry creates a new job instead.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset({JobStatus.PROCESSING}),
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING, JobStatus.PROCESSING}),
}

ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})


def can_transition(current: str, target: str) -> bool:
    """Whether ``current -> target`` is an edge of the lifecycle"""
    sources = ALLOWED_TRANSITIONS.get(JobStatus(target), frozenset())
    return JobStatus(current) in sources


def allowed_sources(target: JobStatus) -> list:
    """Status values a conditional update to ``target`` may match"""
    return [status.value for status in ALLOWED_TRANSITIONS[target]]


class Job(Base):
    """A unit of asynchronous work owned by a user."""
    __tablename__ = 'job'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    project_id = Column(String(255), nullable=True)
    type = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value, index=True)
    parent_job_id = Column(String(36), ForeignKey('job.id', ondelete='SET NULL'), nullable=True, index=True)

    progress = Column(Integer, nullable=False, default=0)
    current_step = Column(Integer, nullable=True, default=0)
    total_steps = Column(Integer, nullable=True)
    progress_message = Column(Text, nullable=True)

    input_data = Column(JSON, nullable=True)
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    is_imported = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_job_status_created_at', 'status', 'created_at'),
        Index('ix_job_user_status', 'user_id', 'status'),
    )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status) in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        """Plain representation used by the user-facing API and the CLI"""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'project_id': self.project_id,
            'type': self.type,
            'status': self.status,
            'parent_job_id': self.parent_job_id,
            'progress': self.progress,
            'current_step': self.current_step,
            'total_steps': self.total_steps,
            'progress_message': self.progress_message,
            'input_data': self.input_data,
            'result_data': self.result_data,
            'error_message': self.error_message,
            'is_imported': self.is_imported,
            'created_at': isoformat(self.created_at),
            'started_at': isoformat(self.started_at),
            'completed_at': isoformat(self.completed_at),
            'updated_at': isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<Job(id={self.id}, type='{self.type}', status='{self.status}')>"
