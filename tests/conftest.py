import logging

import pytest

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.context import UserContext
from jobcore.db.connection import Database
from jobcore.jobs.auth import WorkerAuth
from jobcore.jobs.pipeline import PipelineOrchestrator
from jobcore.jobs.queue import JobQueue
from jobcore.jobs.rate_limiter import JobRateLimiter, RateLimitConfig
from jobcore.jobs.user_operations import UserJobs
from jobcore.jobs.worker_operations import WorkerOperations

WORKER_SECRET = 'test-worker-secret'
USER_ID = 'user_1'
OTHER_USER_ID = 'user_2'


@pytest.fixture
def config(tmp_path, monkeypatch):
    """Configuration pointing at a fresh SQLite file; no user config file is read"""
    monkeypatch.delenv('JOBCORE_WORKER_SECRET', raising=False)
    monkeypatch.delenv('WORKER_API_SECRET', raising=False)
    job_config = JobCoreConfig(
        overrides={
            'database': {'type': 'sqlite', 'sqlite': {'path': str(tmp_path / 'jobs.db')}},
            'worker': {'api_secret': WORKER_SECRET},
        },
        config_file=tmp_path / 'missing.yaml'
    )
    JobCoreConfig.set_instance(job_config)
    yield job_config
    JobCoreConfig.set_instance(None)


@pytest.fixture
def db(config):
    """Fixture to provide a database with the job table created"""
    database = Database(config)
    database.create_tables()
    yield database
    database.dispose()


@pytest.fixture
def auth():
    return WorkerAuth(WORKER_SECRET)


@pytest.fixture
def token():
    return WORKER_SECRET


@pytest.fixture
def limiter(db):
    return JobRateLimiter(db, RateLimitConfig())


@pytest.fixture
def queue(db, limiter):
    return JobQueue(db, limiter)


@pytest.fixture
def ops(db, auth):
    return WorkerOperations(db, auth, job_timeouts={'default': 10, 'video_generation': 30})


@pytest.fixture
def pipeline(db, auth, queue):
    return PipelineOrchestrator(db, auth, queue)


@pytest.fixture
def user_jobs(db, queue):
    return UserJobs(db, UserContext(user_id=USER_ID), queue)


@pytest.fixture
def other_user_jobs(db, queue):
    return UserJobs(db, UserContext(user_id=OTHER_USER_ID), queue)


@pytest.fixture
def restore_logging():
    """Undo handler and level changes made to the jobcore logger"""
    logger = logging.getLogger('jobcore')
    level = logger.level
    handlers = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
