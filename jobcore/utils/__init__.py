from .time_utils import (
    utcnow,
    as_utc,
    local_midnight_utc,
    isoformat
)

__all__ = [
    'utcnow',
    'as_utc',
    'local_midnight_utc',
    'isoformat',
]
