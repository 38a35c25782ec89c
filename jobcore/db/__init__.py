from jobcore.db.connection import Database, Base
from jobcore.db.models import Job, JobStatus, ALLOWED_TRANSITIONS
from jobcore.db.repository import JobRepository

__all__ = ['Database', 'Base', 'Job', 'JobStatus', 'ALLOWED_TRANSITIONS', 'JobRepository']
