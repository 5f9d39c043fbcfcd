"""
Logging configuration for trove.

Suppress verbose library output by default for better UX.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("chromadb", "watchdog", "openai", "urllib3", "httpx")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    This silences:
    - ChromaDB telemetry and index messages
    - watchdog observer chatter
    - OpenAI client retries and HTTP connection logs

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("trove").setLevel(logging.DEBUG)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Configure a persistent operations log for a trove store.

    Writes to {store_path}/trove-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(store_path / "trove-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    trove_logger = logging.getLogger("trove")
    trove_logger.addHandler(handler)
    # Ensure trove logger allows INFO through even in quiet mode
    if trove_logger.level == logging.NOTSET or trove_logger.level > logging.INFO:
        trove_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: RotatingFileHandler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    logging.getLogger("trove").removeHandler(handler)
    handler.close()
