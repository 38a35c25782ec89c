"""
Tests for the worker-only operations: credential checks, claiming and timeout recovery
"""

import logging
from datetime import timedelta

import pytest
from sqlalchemy import update

from jobcore.db.models import Job
from jobcore.errors import ConfigurationError, InvalidTransition, Unauthorized
from jobcore.jobs.auth import WorkerAuth
from jobcore.jobs.worker_operations import WorkerOperations, normalize_limit
from jobcore.utils.time_utils import utcnow

from conftest import USER_ID, WORKER_SECRET


def _row(db, job_id):
    with db.session() as session:
        return session.get(Job, job_id)


def _set_started_at(db, job_id, started_at):
    with db.transaction() as session:
        session.execute(update(Job).where(Job.id == job_id).values(started_at=started_at))


class TestWorkerCredential:
    """Tests that privileged calls check the worker credential first"""

    @pytest.mark.parametrize('bad_token', [None, '', 'wrong-secret'])
    def test_lifecycle_calls_rejected(self, db, queue, ops, bad_token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        with pytest.raises(Unauthorized):
            ops.get_pending_jobs(5, bad_token)
        with pytest.raises(Unauthorized):
            ops.claim_pending_jobs(5, bad_token)
        with pytest.raises(Unauthorized):
            ops.start_job(job_id, bad_token)
        with pytest.raises(Unauthorized):
            ops.update_job_progress(job_id, 50, worker_token=bad_token)
        with pytest.raises(Unauthorized):
            ops.complete_job(job_id, {}, worker_token=bad_token)
        with pytest.raises(Unauthorized):
            ops.fail_job(job_id, 'x', worker_token=bad_token)
        with pytest.raises(Unauthorized):
            ops.recover_timeout_jobs(bad_token)

        job = _row(db, job_id)
        assert job.status == 'pending'
        assert job.progress == 0

    def test_unauthorized_call_is_logged(self, queue, ops, caplog):
        caplog.set_level(logging.WARNING, logger='jobcore')
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        with pytest.raises(Unauthorized):
            ops.start_job(job_id, 'wrong-secret')

        assert '[Security] unauthorized start_job call' in caplog.text

    def test_no_secret_configured_rejects_everything(self, db, queue):
        ops = WorkerOperations(db, WorkerAuth(None), job_timeouts={})
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        with pytest.raises(Unauthorized):
            ops.start_job(job_id, WORKER_SECRET)
        with pytest.raises(ConfigurationError):
            ops.auth.get_worker_token()

        assert _row(db, job_id).status == 'pending'

    def test_secret_from_environment(self, config, monkeypatch):
        config.set('worker.api_secret', '')
        monkeypatch.setenv('WORKER_API_SECRET', 'from-env')

        auth = WorkerAuth.from_config(config)

        assert auth.verify('from-env')
        assert not auth.verify(WORKER_SECRET)


class TestPendingJobs:
    """Tests for listing pending jobs"""

    def test_oldest_first(self, queue, ops, token):
        job_ids = [queue.create_job(USER_ID, 'novel_split', {'n': i}) for i in range(3)]

        jobs = ops.get_pending_jobs(10, token)

        assert [job.id for job in jobs] == job_ids

    def test_listing_does_not_claim(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        ops.get_pending_jobs(10, token)

        assert _row(db, job_id).status == 'pending'

    def test_only_pending_jobs(self, queue, ops, token):
        started = queue.create_job(USER_ID, 'novel_split', {})
        waiting = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(started, token)

        assert [job.id for job in ops.get_pending_jobs(10, token)] == [waiting]

    def test_limit_is_applied(self, queue, ops, token):
        for _ in range(5):
            queue.create_job(USER_ID, 'novel_split', {})

        assert len(ops.get_pending_jobs(2, token)) == 2
        assert len(ops.get_pending_jobs('3', token)) == 3

    def test_non_numeric_limit(self, ops, token):
        with pytest.raises(ValueError):
            ops.get_pending_jobs('abc', token)

    @pytest.mark.parametrize('limit,expected', [
        (0, 1),
        (-5, 1),
        (1, 1),
        (50, 50),
        (100, 100),
        (500, 100),
        ('7', 7),
        (2.9, 2),
    ])
    def test_normalize_limit(self, limit, expected):
        assert normalize_limit(limit) == expected

    def test_two_step_claim_race(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})
        first = ops.get_pending_jobs(1, token)
        second = ops.get_pending_jobs(1, token)
        assert first[0].id == second[0].id == job_id

        assert ops.start_job(first[0].id, token) is True
        with pytest.raises(InvalidTransition):
            ops.start_job(second[0].id, token)

        assert _row(db, job_id).status == 'processing'


class TestClaimPendingJobs:
    """Tests for atomic claiming"""

    def test_claim_moves_jobs_to_processing(self, db, queue, ops, token):
        job_ids = [queue.create_job(USER_ID, 'novel_split', {}) for _ in range(3)]

        claimed = ops.claim_pending_jobs(2, token)

        assert [job.id for job in claimed] == job_ids[:2]
        for job in claimed:
            assert job.status == 'processing'
            assert job.started_at is not None
            assert _row(db, job.id).status == 'processing'
        assert _row(db, job_ids[2]).status == 'pending'

    def test_claimed_jobs_are_not_claimed_again(self, queue, ops, token):
        for _ in range(3):
            queue.create_job(USER_ID, 'novel_split', {})

        first = {job.id for job in ops.claim_pending_jobs(2, token)}
        second = {job.id for job in ops.claim_pending_jobs(5, token)}

        assert len(first) == 2
        assert len(second) == 1
        assert not first & second
        assert ops.claim_pending_jobs(5, token) == []

    def test_claim_skips_cancelled_jobs(self, queue, user_jobs, ops, token):
        cancelled = user_jobs.create_job('novel_split', {})
        waiting = user_jobs.create_job('novel_split', {})
        user_jobs.cancel_job(cancelled)

        assert [job.id for job in ops.claim_pending_jobs(5, token)] == [waiting]

    def test_claimed_job_carries_input(self, queue, ops, token):
        queue.create_job(USER_ID, 'novel_split', {'content': 'chapter one'}, project_id='p1')

        job = ops.claim_pending_jobs(1, token)[0]

        assert job.input_data == {'content': 'chapter one'}
        assert job.project_id == 'p1'
        assert job.user_id == USER_ID


class TestCompleteJob:
    """Tests for result handling on completion"""

    def test_keeps_references_attached_while_running(self, db, queue, ops, pipeline, token):
        parent_id = queue.create_job(USER_ID, 'storyboard_generation', {'episodeId': 'ep_1'})
        ops.start_job(parent_id, token)
        child_id = pipeline.create_child_job(parent_id, 'storyboard_basic_extraction', {}, worker_token=token)
        pipeline.attach_to_parent(parent_id, 'childJobIds', child_id, worker_token=token)

        ops.complete_job(parent_id, {'message': 'queued'}, worker_token=token)

        assert _row(db, parent_id).result_data == {'childJobIds': [child_id], 'message': 'queued'}

    def test_result_overrides_same_key(self, db, queue, ops, pipeline, token):
        parent_id = queue.create_job(USER_ID, 'storyboard_generation', {})
        ops.start_job(parent_id, token)
        pipeline.attach_to_parent(parent_id, 'basicExtractionJobId', 'old', worker_token=token)

        ops.complete_job(parent_id, {'basicExtractionJobId': 'new'}, worker_token=token)

        assert _row(db, parent_id).result_data == {'basicExtractionJobId': 'new'}

    def test_get_job(self, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {'content': 'x'})

        job = ops.get_job(job_id, token)

        assert job.id == job_id
        assert job.input_data == {'content': 'x'}


class TestRecoverTimeoutJobs:
    """Tests for failing jobs that ran past their timeout"""

    def test_recovers_job_past_default_timeout(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(job_id, token)
        _set_started_at(db, job_id, utcnow() - timedelta(hours=2))

        recovered = ops.recover_timeout_jobs(token)

        assert recovered == [job_id]
        job = _row(db, job_id)
        assert job.status == 'failed'
        assert job.error_message == 'Job timed out after 10 minutes'
        assert job.completed_at is not None

    def test_leaves_recent_jobs_alone(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(job_id, token)

        assert ops.recover_timeout_jobs(token) == []
        assert _row(db, job_id).status == 'processing'

    def test_uses_per_type_timeout(self, db, queue, ops, token):
        video = queue.create_job(USER_ID, 'video_generation', {})
        split = queue.create_job(USER_ID, 'novel_split', {})
        for job_id in (video, split):
            ops.start_job(job_id, token)
            _set_started_at(db, job_id, utcnow() - timedelta(minutes=20))

        recovered = ops.recover_timeout_jobs(token)

        assert recovered == [split]
        assert _row(db, video).status == 'processing'
        assert ops.timeout_minutes('video_generation') == 30
        assert ops.timeout_minutes('unknown_type') == 10

    def test_recovers_job_without_start_time(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(job_id, token)
        _set_started_at(db, job_id, None)

        assert ops.recover_timeout_jobs(token) == [job_id]
        assert _row(db, job_id).error_message == 'Job was processing without a start time'

    def test_ignores_pending_and_finished_jobs(self, db, queue, ops, token):
        queue.create_job(USER_ID, 'novel_split', {})
        done = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(done, token)
        ops.complete_job(done, {}, worker_token=token)
        _set_started_at(db, done, utcnow() - timedelta(days=1))

        assert ops.recover_timeout_jobs(token) == []

    def test_explicit_reference_time(self, db, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})
        ops.start_job(job_id, token)

        assert ops.recover_timeout_jobs(token, now=utcnow() + timedelta(minutes=11)) == [job_id]
