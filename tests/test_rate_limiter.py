"""
Tests for the per-user rate limiter
"""

import logging
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from jobcore.db.models import Job
from jobcore.errors import RateLimited, StorageFailure
from jobcore.jobs.queue import JobQueue
from jobcore.jobs.rate_limiter import (
    REASON_ACTIVE_JOBS,
    REASON_DAILY_JOBS,
    JobRateLimiter,
    RateLimitConfig
)
from jobcore.utils.time_utils import utcnow

from conftest import OTHER_USER_ID, USER_ID


def _count(db, user_id=USER_ID):
    with db.session() as session:
        return len(session.execute(select(Job.id).where(Job.user_id == user_id)).all())


class TestActiveJobCap:
    """Tests for the concurrency cap"""

    def test_eleventh_active_job_is_rejected(self, db, queue):
        for _ in range(10):
            queue.create_job(USER_ID, 'novel_split', {})

        with pytest.raises(RateLimited) as exc_info:
            queue.create_job(USER_ID, 'novel_split', {})

        assert exc_info.value.reason == REASON_ACTIVE_JOBS
        assert exc_info.value.limit == 10
        assert exc_info.value.current == 10
        assert _count(db) == 10

    def test_finishing_a_job_frees_a_slot(self, db, queue, ops, token):
        job_ids = [queue.create_job(USER_ID, 'novel_split', {}) for _ in range(10)]
        ops.start_job(job_ids[0], token)
        ops.complete_job(job_ids[0], {}, worker_token=token)

        queue.create_job(USER_ID, 'novel_split', {})

        assert _count(db) == 11

    def test_cancelled_jobs_do_not_count(self, queue, user_jobs):
        job_ids = [user_jobs.create_job('novel_split', {}) for _ in range(10)]
        user_jobs.cancel_job(job_ids[3])

        user_jobs.create_job('novel_split', {})

    def test_caps_are_per_user(self, db, queue):
        for _ in range(10):
            queue.create_job(USER_ID, 'novel_split', {})

        queue.create_job(OTHER_USER_ID, 'novel_split', {})

        assert _count(db, OTHER_USER_ID) == 1

    def test_retry_is_rate_limited(self, user_jobs, ops, token):
        failed = user_jobs.create_job('novel_split', {})
        ops.start_job(failed, token)
        ops.fail_job(failed, 'boom', worker_token=token)
        for _ in range(10):
            user_jobs.create_job('novel_split', {})

        with pytest.raises(RateLimited):
            user_jobs.retry_job(failed)


class TestDailyCap:
    """Tests for the daily volume cap"""

    def test_daily_cap_counts_finished_jobs(self, db, ops, token):
        limiter = JobRateLimiter(db, RateLimitConfig(max_active_jobs_per_user=10, max_jobs_per_day=3))
        queue = JobQueue(db, limiter)
        for _ in range(3):
            job_id = queue.create_job(USER_ID, 'novel_split', {})
            ops.start_job(job_id, token)
            ops.complete_job(job_id, {}, worker_token=token)

        with pytest.raises(RateLimited) as exc_info:
            queue.create_job(USER_ID, 'novel_split', {})

        assert exc_info.value.reason == REASON_DAILY_JOBS
        assert exc_info.value.limit == 3

    def test_jobs_before_midnight_are_not_counted(self, db):
        limiter = JobRateLimiter(db, RateLimitConfig(max_jobs_per_day=2))
        queue = JobQueue(db, limiter)
        old_ids = [queue.create_job(USER_ID, 'novel_split', {}) for _ in range(2)]
        with db.transaction() as session:
            session.execute(
                update(Job)
                .where(Job.id.in_(old_ids))
                .values(created_at=utcnow() - timedelta(days=2), status='completed')
            )

        queue.create_job(USER_ID, 'novel_split', {})

        assert limiter.get_usage(USER_ID)['jobs_today'] == 1


class TestLimiterFailure:
    """Tests for behavior when the counting queries fail"""

    def _broken(self, limiter):
        error = OperationalError("SELECT count(*) FROM job", {}, Exception("database is locked"))
        return patch.object(limiter, '_counts', side_effect=error)

    def test_fails_open_by_default(self, db, limiter, queue):
        with self._broken(limiter):
            job_id = queue.create_job(USER_ID, 'novel_split', {})

        assert job_id
        assert _count(db) == 1

    def test_fail_open_logs_error(self, limiter, caplog):
        caplog.set_level(logging.ERROR, logger='jobcore')
        with self._broken(limiter):
            limiter.check(USER_ID)

        assert any(record.levelname == 'ERROR' for record in caplog.records)

    def test_fails_closed_when_configured(self, db):
        limiter = JobRateLimiter(db, RateLimitConfig(fail_open_on_limiter_error=False))
        queue = JobQueue(db, limiter)

        with self._broken(limiter), pytest.raises(StorageFailure):
            queue.create_job(USER_ID, 'novel_split', {})

        assert _count(db) == 0

    def test_rate_limited_is_not_swallowed(self, limiter):
        with patch.object(limiter, '_counts', return_value={'active': 10, 'today': 0}):
            with pytest.raises(RateLimited):
                limiter.check(USER_ID)


class TestUsageAndConfig:
    """Tests for usage reporting and configuration"""

    def test_get_usage(self, queue, limiter, ops, token):
        running = queue.create_job(USER_ID, 'novel_split', {})
        queue.create_job(USER_ID, 'novel_split', {})
        done = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(running, token)
        ops.start_job(done, token)
        ops.complete_job(done, {}, worker_token=token)

        usage = limiter.get_usage(USER_ID)

        assert usage == {
            'user_id': USER_ID,
            'active_jobs': 2,
            'jobs_today': 3,
            'limits': {'max_active_jobs_per_user': 10, 'max_jobs_per_day': 1000},
        }

    def test_config_from_settings(self, config):
        config.set('rate_limits.max_active_jobs_per_user', 2)
        config.set('rate_limits.fail_open_on_limiter_error', False)

        limits = RateLimitConfig.from_config(config)

        assert limits.max_active_jobs_per_user == 2
        assert limits.max_jobs_per_day == 1000
        assert limits.fail_open_on_limiter_error is False
