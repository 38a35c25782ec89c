"""
JobCore - Asynchronous Job Orchestration

Durable, polling-based job queue for handing long-running work (AI
generation calls, multi-step analysis) from user-facing requests to
out-of-process workers.

Basic usage:
    from jobcore import JobCore, UserContext

    # Setup JobCore with configuration
    JobCore.setup(
        database={
            'type': 'sqlite',
            'sqlite': {'path': 'jobcore.db'}
        },
        worker={'api_secret': 'change-me'}
    )

    # Create a job for a user
    core = JobCore()
    jobs = core.user_jobs(UserContext(user_id='user_123'))
    job_id = jobs.create_job('novel_split', {'content': 'Chapter 1 ...'})

    # Poll its status
    print(jobs.get_job_status(job_id))

    # Run a worker
    worker = core.create_worker(processors)
    asyncio.run(worker.run())
"""

from jobcore.jobCore import JobCore
from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.context import UserContext

__all__ = ['JobCore', 'JobCoreConfig', 'UserContext']

__version__ = '0.1.0'
