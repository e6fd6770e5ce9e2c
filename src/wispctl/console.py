"""Operator-facing output and logging setup."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

# Color codes for output
BLUE = '\033[94m'
GREEN = '\033[92m'
YELLOW = '\033[93m'
RED = '\033[91m'
RESET = '\033[0m'

RULE = "=" * 70

# Debug output is opt-in and tied to deploy.log_level.
DEBUG_ENABLED = False


def set_debug_enabled(log_level: str | None) -> None:
    """Enable debug output when log_level is DEBUG (case-insensitive)."""
    global DEBUG_ENABLED
    DEBUG_ENABLED = str(log_level or '').strip().upper() == 'DEBUG'


def configure_logging(log_level: str = "INFO") -> None:
    """
    Configure logging module with specified level.
    """
    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR
    }

    level = level_map.get(str(log_level).upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format='[%(levelname)s] %(message)s',
        force=True  # Reconfigure if already configured
    )
    logging.getLogger("wispctl").setLevel(level)
    set_debug_enabled(log_level)

    logger.debug(f"Logging configured: {str(log_level).upper()}")


def _emit(tag: str, msg: str, context: dict) -> None:
    print(f"{tag} {msg}", flush=True)
    for key, value in context.items():
        print(f"  {key}: {value}", flush=True)


def info(msg, **context):
    """Log info message with optional structured context."""
    _emit(f"{BLUE}[INFO]{RESET}", msg, context)


def success(msg, **context):
    """Log success message with optional structured context."""
    _emit(f"{GREEN}[SUCCESS]{RESET}", msg, context)


def warn(msg, **context):
    """Log warning message with optional structured context."""
    _emit(f"{YELLOW}[WARN]{RESET}", msg, context)


def error(msg, **context):
    """Log error message with optional structured context."""
    _emit(f"{RED}[ERROR]{RESET}", msg, context)


def debug(msg, **context):
    """Log debug message (only shown when DEBUG logging is enabled)."""
    if not DEBUG_ENABLED:
        return
    _emit(f"{BLUE}[DEBUG]{RESET}", msg, context)


def banner(title: str) -> None:
    info(RULE)
    info(title)
    info(RULE)
