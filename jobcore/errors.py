"""
JobCore exceptions

Every error raised by the job core derives from ``JobCoreError`` so callers
can catch the whole family in one place. Admission, ownership and credential
errors are raised synchronously to the caller; processor failures are recorded
on the job row instead.
"""

from typing import Optional


class JobCoreError(Exception):
    """Base class for all JobCore errors"""


class Unauthorized(JobCoreError):
    """Missing or invalid worker credential, or no user session"""


class RateLimited(JobCoreError):
    """Job creation rejected by the per-user admission limits"""

    def __init__(self, message: str, limit: int, current: int, reason: str):
        super().__init__(message)
        self.limit = limit
        self.current = current
        self.reason = reason


class JobNotFound(JobCoreError):
    """Job does not exist, or is not visible to the caller"""

    def __init__(self, job_id: str, message: Optional[str] = None):
        super().__init__(message or f"Job not found: {job_id}")
        self.job_id = job_id


class Forbidden(JobCoreError):
    """Caller is known but may not act on the job"""


class InvalidTransition(JobCoreError):
    """Requested status change is not an allowed edge of the lifecycle"""

    def __init__(self, job_id: str, current: str, target: str, message: Optional[str] = None):
        super().__init__(message or f"Job {job_id} cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class StorageFailure(JobCoreError):
    """The job store could not complete a read or write"""


class ProcessorFailure(JobCoreError):
    """A processor could not finish its work; recorded as a failed job"""


class ConfigurationError(JobCoreError):
    """Configuration is missing or invalid"""


class InsufficientCredits(JobCoreError):
    """The credit ledger rejected a spend"""

    def __init__(self, message: str, required: Optional[int] = None, available: Optional[int] = None):
        super().__init__(message)
        self.required = required
        self.available = available
