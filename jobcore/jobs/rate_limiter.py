"""
Rate Limiter

Per-user admission control for job creation.
Supports:
- Concurrency cap (pending + processing jobs per user)
- Daily volume cap (jobs created since local midnight)
- Fail-open when the counting queries themselves fail

Both counts are read from the job store, so every producer process enforces
the same limits. The check and the insert that follows it are not atomic: two
concurrent creations can both pass at ``limit - 1``. The caps are soft.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.db.connection import Database
from jobcore.db.repository import JobRepository
from jobcore.errors import RateLimited, StorageFailure
from jobcore.utils.time_utils import local_midnight_utc

logger = logging.getLogger(__name__)

REASON_ACTIVE_JOBS = 'active_jobs'
REASON_DAILY_JOBS = 'daily_jobs'


@dataclass
class RateLimitConfig:
    """Rate limit configuration"""
    max_active_jobs_per_user: int = 10
    max_jobs_per_day: int = 1000

    # Allow creation when the counting queries fail
    fail_open_on_limiter_error: bool = True

    @classmethod
    def from_config(cls, config: Optional[JobCoreConfig] = None) -> 'RateLimitConfig':
        config = config or JobCoreConfig.instance()
        section = config.get('rate_limits', {}) or {}
        return cls(
            max_active_jobs_per_user=section.get('max_active_jobs_per_user', cls.max_active_jobs_per_user),
            max_jobs_per_day=section.get('max_jobs_per_day', cls.max_jobs_per_day),
            fail_open_on_limiter_error=section.get('fail_open_on_limiter_error', cls.fail_open_on_limiter_error),
        )


class JobRateLimiter:
    """
    Admission check run before a job row is inserted.

    Usage:
        limiter = JobRateLimiter(db, RateLimitConfig(max_active_jobs_per_user=5))

        limiter.check(user_id)      # raises RateLimited when over a cap
        limiter.get_usage(user_id)  # current counts and limits
    """

    def __init__(self, db: Database, config: Optional[RateLimitConfig] = None):
        self.db = db
        self.config = config or RateLimitConfig()
        self.repository = JobRepository(db)

    def _counts(self, user_id: str) -> Dict[str, int]:
        # Separate session: a failure here must not poison the caller's transaction
        with self.db.session() as session:
            return {
                'active': self.repository.count_active(session, user_id),
                'today': self.repository.count_created_since(session, user_id, local_midnight_utc()),
            }

    def check(self, user_id: str) -> None:
        """
        Reject job creation for ``user_id`` when a cap is reached.

        Raises:
            RateLimited: The user is at or over a cap
            StorageFailure: Counting failed and fail-open is disabled
        """
        try:
            counts = self._counts(user_id)
        except SQLAlchemyError as e:
            if self.config.fail_open_on_limiter_error:
                logger.error(f"Rate limit check failed for user {user_id}, allowing job creation: {e}")
                return
            raise StorageFailure(f"Rate limit check failed: {e}") from e

        active_limit = self.config.max_active_jobs_per_user
        if counts['active'] >= active_limit:
            logger.info(f"User {user_id} rejected: {counts['active']}/{active_limit} active jobs")
            raise RateLimited(
                f"Too many active jobs ({counts['active']}/{active_limit}); "
                f"wait for current jobs to finish",
                limit=active_limit,
                current=counts['active'],
                reason=REASON_ACTIVE_JOBS,
            )

        daily_limit = self.config.max_jobs_per_day
        if counts['today'] >= daily_limit:
            logger.info(f"User {user_id} rejected: {counts['today']}/{daily_limit} jobs today")
            raise RateLimited(
                f"Daily job limit reached ({counts['today']}/{daily_limit}); try again tomorrow",
                limit=daily_limit,
                current=counts['today'],
                reason=REASON_DAILY_JOBS,
            )

    def get_usage(self, user_id: str) -> Dict[str, Any]:
        """Get current usage against the configured limits"""
        counts = self._counts(user_id)
        return {
            'user_id': user_id,
            'active_jobs': counts['active'],
            'jobs_today': counts['today'],
            'limits': {
                'max_active_jobs_per_user': self.config.max_active_jobs_per_user,
                'max_jobs_per_day': self.config.max_jobs_per_day,
            },
        }
