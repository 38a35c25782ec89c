import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml
from sqlalchemy import inspect

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.config.logging_setup import configure_logging
from jobcore.context import UserContext
from jobcore.db.connection import Database
from jobcore.errors import ConfigurationError
from jobcore.jobs.auth import WorkerAuth
from jobcore.jobs.pipeline import PipelineOrchestrator
from jobcore.jobs.queue import JobQueue
from jobcore.jobs.rate_limiter import JobRateLimiter, RateLimitConfig
from jobcore.jobs.user_operations import UserJobs
from jobcore.jobs.worker import Worker, WorkerConfig
from jobcore.jobs.worker_operations import WorkerOperations
from jobcore.processors.base import BaseJobProcessor

# Configure logging
logger = logging.getLogger(__name__)

REQUIRED_TABLES = ['job']


class JobCore:
    """
    Main entry point for JobCore

    Wires the job store, rate limiter, worker operations and pipeline
    orchestrator from one configuration.

    Usage:
        JobCore.setup(database={'type': 'sqlite', 'sqlite': {'path': 'jobs.db'}})

        core = JobCore()
        jobs = core.user_jobs(UserContext(user_id='user_123'))
        job_id = jobs.create_job('novel_split', {'content': '...'})
    """

    _config: Optional[JobCoreConfig] = None
    _default_config: Optional[Dict[str, Any]] = None

    @classmethod
    def _load_default_config(cls) -> Dict[str, Any]:
        """Load default configuration from package"""
        if cls._default_config is None:
            config_path = Path(__file__).parent / 'config' / 'default_config.yaml'
            with open(config_path) as f:
                cls._default_config = yaml.safe_load(f)
        return cls._default_config

    @classmethod
    def get_defaults(cls) -> Dict[str, Any]:
        """Get default configuration values"""
        return cls._load_default_config()

    @classmethod
    def is_initialized(cls) -> bool:
        """Check if JobCore has been set up in this process"""
        return cls._config is not None

    @classmethod
    def setup(cls, config_file: Optional[str] = None, **config) -> JobCoreConfig:
        """
        Set up JobCore configuration and create the job table

        This should be called before creating a JobCore instance.

        Args:
            config_file: Optional YAML file layered over the defaults
            **config: Configuration options
                - database: Database configuration
                    - type: 'postgres' or 'sqlite'
                    - postgres: host, port, database, user, password, sslmode
                    - sqlite: path
                - logging: level, format, file
                - rate_limits: max_active_jobs_per_user, max_jobs_per_day,
                  fail_open_on_limiter_error
                - worker: api_secret, polling, concurrency and timeout settings

        Returns:
            The active configuration

        Raises:
            ConfigurationError: If the configuration is invalid
            RuntimeError: If database initialization fails
        """
        defaults = cls._load_default_config()

        # Validate User Configuration
        for key, value in config.items():
            if key not in defaults:
                logger.warning(f"Unexpected configuration key: {key}")
            elif isinstance(value, dict) and isinstance(defaults[key], dict):
                for subkey in value:
                    if subkey not in defaults[key]:
                        logger.warning(f"Unexpected subkey in {key}: {subkey}")

        if config_file:
            job_config = JobCoreConfig.from_file(config_file)
            job_config.update(config)
        else:
            job_config = JobCoreConfig(overrides=config)

        try:
            job_config._validate_config()
        except ConfigurationError as e:
            logger.error(f"JobCore configuration is invalid: {str(e)}")
            raise

        configure_logging(job_config.get_logging_config())

        try:
            db = Database(job_config)
            db.create_tables()

            tables = inspect(db.get_engine()).get_table_names()
            missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
            if missing_tables:
                raise RuntimeError(f"Failed to create required tables: {', '.join(missing_tables)}")
            db.dispose()
        except Exception as e:
            logger.error(f"Failed to initialize database: {str(e)}")
            raise RuntimeError(f"Failed to initialize database: {str(e)}")

        cls._config = job_config
        JobCoreConfig.set_instance(job_config)
        logger.info("JobCore initialized")
        return job_config

    @classmethod
    def get_config(cls) -> Dict[str, Any]:
        """Get current configuration"""
        if cls._config is None:
            raise ConfigurationError("JobCore not initialized. Call setup() first.")
        return cls._config.get_all()

    @classmethod
    def reset(cls) -> None:
        """Forget the process-wide configuration"""
        cls._config = None
        JobCoreConfig.set_instance(None)

    def __init__(self, config: Optional[JobCoreConfig] = None, db: Optional[Database] = None):
        """
        Build the job services

        Args:
            config: Configuration to use instead of the one from setup()
            db: Existing database connection to share
        """
        config = config or self._config
        if config is None:
            raise ConfigurationError("JobCore not initialized. Call JobCore.setup() or 'jobcore init' first.")

        self.config = config
        self.db = db or Database(config)
        self.auth = WorkerAuth.from_config(config)
        self.rate_limiter = JobRateLimiter(self.db, RateLimitConfig.from_config(config))
        self.queue = JobQueue(self.db, self.rate_limiter)
        self.pipeline = PipelineOrchestrator(self.db, self.auth, self.queue)
        self.worker_operations = WorkerOperations(
            self.db, self.auth, job_timeouts=config.get('worker.job_timeouts', {}) or {}
        )

    def user_jobs(self, user_context: Optional[UserContext]) -> UserJobs:
        """Job operations scoped to one signed-in user"""
        return UserJobs(self.db, user_context, self.queue)

    def create_worker(
        self,
        processors: Iterable[BaseJobProcessor] = (),
        worker_config: Optional[WorkerConfig] = None
    ) -> Worker:
        """
        Build a worker with the configured credential and processors

        Raises:
            ConfigurationError: If no worker secret is configured
        """
        worker = Worker(
            self.worker_operations,
            worker_config or WorkerConfig.from_config(self.config),
            worker_token=self.auth.get_worker_token(),
            pipeline=self.pipeline
        )
        for processor in processors:
            worker.register_processor(processor)
        return worker

    def get_queue_stats(self) -> Dict[str, Any]:
        return self.queue.get_queue_stats()

    def close(self) -> None:
        """Close database connections"""
        self.db.dispose()
