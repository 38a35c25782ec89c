"""
JobCore Jobs Module

Provides durable asynchronous job execution on top of the job table.

Components:
- JobQueue: Admission-checked job creation
- JobRateLimiter: Per-user active and daily caps
- UserJobs: Status, listing, cancel and retry on behalf of a user
- WorkerOperations: Claiming and lifecycle writes for worker processes
- WorkerAuth: Worker credential checks
- PipelineOrchestrator: Parent/child job composition
- CreditCompensator: Spend before paid work, refund on failure
- Worker: Polls for jobs and runs processors
"""

from jobcore.errors import (
    JobCoreError,
    Unauthorized,
    RateLimited,
    JobNotFound,
    Forbidden,
    InvalidTransition,
    StorageFailure,
    ProcessorFailure,
    ConfigurationError,
    InsufficientCredits
)
from .auth import WorkerAuth
from .rate_limiter import JobRateLimiter, RateLimitConfig
from .queue import JobQueue
from .user_operations import UserJobs
from .worker_operations import WorkerOperations
from .pipeline import PipelineOrchestrator, build_job_tree
from .credits import (
    CreditLedger,
    CreditTransaction,
    CreditCompensator,
    ItemOutcome,
    build_partial_result
)
from .payloads import JobType, parse_input
from .worker import Worker, WorkerConfig, run_worker

__all__ = [
    # Errors
    'JobCoreError',
    'Unauthorized',
    'RateLimited',
    'JobNotFound',
    'Forbidden',
    'InvalidTransition',
    'StorageFailure',
    'ProcessorFailure',
    'ConfigurationError',
    'InsufficientCredits',

    # Producer and user side
    'JobQueue',
    'JobRateLimiter',
    'RateLimitConfig',
    'UserJobs',

    # Worker side
    'WorkerAuth',
    'WorkerOperations',
    'Worker',
    'WorkerConfig',
    'run_worker',

    # Pipelines and credits
    'PipelineOrchestrator',
    'build_job_tree',
    'CreditLedger',
    'CreditTransaction',
    'CreditCompensator',
    'ItemOutcome',
    'build_partial_result',

    # Payloads
    'JobType',
    'parse_input'
]
