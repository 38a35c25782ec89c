import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, Optional, Type
from urllib.parse import quote_plus

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.errors import StorageFailure

# Configure logging
logger = logging.getLogger(__name__)

Base = declarative_base()


@contextmanager
def store_errors(action: str) -> Generator[None, None, None]:
    """Re-raise SQLAlchemy errors from the block as StorageFailure"""
    try:
        yield
    except SQLAlchemyError as e:
        raise StorageFailure(f"{action} failed: {str(e)}") from e


def get_base() -> Type:
    """
    Get the base class for declarative models

    Returns:
        Base class for declarative models
    """
    return Base


class Database:
    """
    Database connection manager for JobCore

    Handles both SQLite and PostgreSQL connections with proper configuration
    and connection pooling. The ``job`` table is the only coordination point
    between producers and workers, so every component shares one of these.
    """

    def __init__(self, config: Optional[JobCoreConfig] = None):
        """
        Initialize database connection

        Args:
            config: JobCoreConfig instance. If None, the process-wide configuration is used.
        """
        self.config = config or JobCoreConfig.instance()
        self.engine: Optional[Engine] = None
        self.Session = None
        self._initialize()

    @property
    def dialect(self) -> str:
        """Name of the active SQL dialect ('sqlite' or 'postgresql')"""
        return self.engine.dialect.name

    def _build_engine(self, db_config: Dict[str, Any]) -> Engine:
        db_type = db_config.get('type', 'sqlite')

        if db_type == 'sqlite':
            sqlite_config = db_config.get('sqlite', {})
            db_path = Path(sqlite_config.get('path', db_config.get('path', 'jobcore.db')))

            # Ensure directory exists
            db_path.parent.mkdir(parents=True, exist_ok=True)

            engine = create_engine(
                f'sqlite:///{db_path}',
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800,
                connect_args={
                    'timeout': 30,  # busy timeout, serializes concurrent writers
                    'check_same_thread': False
                }
            )

            # Enable foreign key support
            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        if db_type in ['postgresql', 'postgres']:
            postgres_config = db_config.get('postgres', db_config.get('postgresql', {}))
            host = postgres_config.get('host', 'localhost')
            port = postgres_config.get('port', 5432)
            database = postgres_config.get('database', 'jobcore')
            user = postgres_config.get('user', 'postgres')
            password = postgres_config.get('password', '') or ''
            sslmode = postgres_config.get('sslmode', 'prefer')

            # URL-encode user and password to handle special characters
            connection_url = (
                f'postgresql://{quote_plus(user)}:{quote_plus(password)}'
                f'@{host}:{port}/{database}?sslmode={sslmode}'
            )
            return create_engine(
                connection_url,
                poolclass=QueuePool,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800
            )

        raise ValueError(f"Unsupported database type: {db_type}")

    def _initialize(self) -> None:
        """Initialize database connection and session"""
        max_retries = 3
        retry_delay = 1  # seconds
        db_config = self.config.get('database', {})

        for attempt in range(max_retries):
            try:
                self.engine = self._build_engine(db_config)

                # Test connection
                with self.engine.connect() as conn:
                    conn.execute(text("SELECT 1"))

                self.Session = sessionmaker(
                    bind=self.engine,
                    expire_on_commit=False,
                    autoflush=False
                )
                logger.debug(f"Connected to {self.engine.dialect.name} database")
                return

            except SQLAlchemyError as e:
                logger.error(f"Database connection attempt {attempt + 1} failed: {str(e)}")
                if self.engine is not None:
                    self.engine.dispose()
                    self.engine = None
                if attempt == max_retries - 1:
                    raise
                time.sleep(retry_delay)
                retry_delay *= 2  # Exponential backoff

    def get_engine(self) -> Engine:
        """Get the SQLAlchemy engine"""
        return self.engine

    def session(self) -> Session:
        """
        Get a database session

        Returns:
            SQLAlchemy session (usable as a context manager)
        """
        if self.Session is None:
            self._initialize()
        return self.Session()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Get a database session with transaction management

        Commits when the block exits normally, rolls back and re-raises otherwise.
        On SQLite the write lock is taken before the block runs, so a
        read-modify-write inside it cannot interleave with another writer.

        Yields:
            SQLAlchemy session
        """
        session = self.session()
        try:
            if session.get_bind().dialect.name == 'sqlite':
                # with_for_update() is ignored by SQLite
                session.execute(text("BEGIN IMMEDIATE"))
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database transaction error: {str(e)}")
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all tables defined in the metadata"""
        # Import models so they register on the metadata
        from jobcore.db import models  # noqa: F401

        try:
            get_base().metadata.create_all(self.engine)
            logger.info("Database tables created successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {str(e)}")
            raise

    def drop_tables(self) -> None:
        """Drop all tables defined in the metadata"""
        from jobcore.db import models  # noqa: F401

        get_base().metadata.drop_all(self.engine)

    def dispose(self) -> None:
        """Close all database connections"""
        if self.engine:
            self.engine.dispose()
            self.engine = None
            self.Session = None
