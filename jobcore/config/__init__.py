"""
JobCore configuration
"""

from .jobcore_config import JobCoreConfig
from .logging_setup import configure_logging

__all__ = ['JobCoreConfig', 'configure_logging']
