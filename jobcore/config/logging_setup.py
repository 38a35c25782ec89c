"""
Logging setup for JobCore processes (CLI, workers)
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(logging_config: Optional[Dict[str, Any]] = None, level: Optional[str] = None) -> None:
    """
    Apply the ``logging`` section of the configuration to the ``jobcore`` logger tree.

    Args:
        logging_config: Mapping with optional ``level``, ``format`` and ``file`` keys
        level: Explicit level overriding the configured one
    """
    logging_config = logging_config or {}
    level_name = (level or logging_config.get('level') or 'INFO').upper()
    fmt = logging_config.get('format') or DEFAULT_FORMAT

    root = logging.getLogger('jobcore')
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # Reconfiguring replaces handlers we installed earlier
    for handler in list(root.handlers):
        if getattr(handler, '_jobcore_handler', False):
            root.removeHandler(handler)
            handler.close()

    handlers = [logging.StreamHandler()]
    log_file = logging_config.get('file')
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    formatter = logging.Formatter(fmt)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler._jobcore_handler = True
        root.addHandler(handler)
