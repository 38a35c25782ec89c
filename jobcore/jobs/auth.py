"""
Worker authentication

Worker-only operations (claiming, lifecycle writes, child enqueueing) are
guarded by a shared secret. The check runs before any storage access, so a
rejected call never mutates a job.
"""

import hmac
import logging
from typing import Optional

from jobcore.config.jobcore_config import JobCoreConfig
from jobcore.errors import ConfigurationError, Unauthorized

logger = logging.getLogger(__name__)


class WorkerAuth:
    """
    Verifies the worker credential presented on privileged calls.

    Usage:
        auth = WorkerAuth.from_config(config)
        auth.require(token, 'start_job')
    """

    def __init__(self, secret: Optional[str]):
        self._secret = secret or None

    @classmethod
    def from_config(cls, config: Optional[JobCoreConfig] = None) -> 'WorkerAuth':
        config = config or JobCoreConfig.instance()
        return cls(config.get_worker_secret())

    @property
    def configured(self) -> bool:
        return self._secret is not None

    def verify(self, token: Optional[str]) -> bool:
        """
        Check a presented token against the configured secret.

        Always False when no secret is configured.
        """
        if not self._secret or not token:
            return False
        return hmac.compare_digest(str(token).encode('utf-8'), self._secret.encode('utf-8'))

    def require(self, token: Optional[str], operation: str) -> None:
        """
        Raise Unauthorized unless ``token`` is valid.

        Args:
            token: Credential presented by the caller
            operation: Name of the privileged call, used in the security log
        """
        if self.verify(token):
            return
        if not self._secret:
            logger.warning(f"[Security] {operation} rejected: worker secret is not configured")
        else:
            logger.warning(f"[Security] unauthorized {operation} call")
        raise Unauthorized(f"Unauthorized: {operation} requires a valid worker credential")

    def get_worker_token(self) -> str:
        """Token a worker process presents on its own calls"""
        if not self._secret:
            raise ConfigurationError(
                "Worker secret not configured; set worker.api_secret or JOBCORE_WORKER_SECRET"
            )
        return self._secret
