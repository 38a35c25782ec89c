"""
Tests for the database layer and queue views
"""

import pytest
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.db.connection import Database, store_errors
from jobcore.db.models import Job, JobStatus
from jobcore.errors import StorageFailure

from conftest import USER_ID


class TestDatabase:
    """Tests for the connection manager"""

    def test_sqlite_tables(self, db):
        assert db.dialect == 'sqlite'
        assert 'job' in inspect(db.get_engine()).get_table_names()

        db.drop_tables()

        assert 'job' not in inspect(db.get_engine()).get_table_names()

    def test_unsupported_type(self, tmp_path):
        config = JobCoreConfig(overrides={'database': {'type': 'oracle'}}, config_file=tmp_path / 'missing.yaml')

        with pytest.raises(ValueError):
            Database(config)

    def test_transaction_rolls_back(self, db, queue):
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        with pytest.raises(RuntimeError):
            with db.transaction() as session:
                session.get(Job, job_id).progress_message = 'uncommitted'
                session.flush()
                raise RuntimeError('abort')

        with db.session() as session:
            assert session.get(Job, job_id).progress_message is None

    def test_reconnects_after_dispose(self, db):
        db.dispose()

        with db.session() as session:
            assert session.execute(text('SELECT 1')).scalar() == 1

    def test_store_errors(self):
        with pytest.raises(StorageFailure, match='Reading job failed'):
            with store_errors('Reading job'):
                raise OperationalError('SELECT 1', {}, Exception('disk I/O error'))


class TestJobModel:
    """Tests for the job row helpers"""

    def test_is_terminal(self):
        assert Job(status=JobStatus.FAILED.value).is_terminal
        assert Job(status=JobStatus.CANCELLED.value).is_terminal
        assert not Job(status=JobStatus.PROCESSING.value).is_terminal

    def test_to_dict_timestamps_are_utc(self, queue, ops, token):
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        record = ops.get_job(job_id, token).to_dict()

        assert record['created_at'].endswith('+00:00')
        assert record['started_at'] is None


class TestQueueViews:
    """Tests for operator-facing queue statistics"""

    def test_stats(self, queue, ops, token):
        queue.create_job(USER_ID, 'novel_split', {})
        queue.create_job(USER_ID, 'novel_split', {})
        running = queue.create_job(USER_ID, 'scene_extraction', {})
        ops.start_job(running, token)

        stats = queue.get_queue_stats()

        assert stats['total'] == 3
        assert stats['by_status'] == {
            'pending': 2, 'processing': 1, 'completed': 0, 'failed': 0, 'cancelled': 0
        }
        assert stats['by_type'] == {
            'novel_split': {'pending': 2},
            'scene_extraction': {'processing': 1},
        }
        assert queue.get_pending_count() == 2
        assert queue.get_pending_count('novel_split') == 2
        assert queue.get_pending_count('scene_extraction') == 0

    def test_job_status(self, queue):
        job_id = queue.create_job(USER_ID, 'novel_split', {})

        assert queue.get_job_status(job_id)['status'] == 'pending'
        assert queue.get_job_status('missing') is None
