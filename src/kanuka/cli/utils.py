"""
Shared utilities for Kanuka CLI commands.
"""

import os
import sys
from pathlib import Path
from typing import Optional, TextIO

from ..logging import configure_logging, LOG_FILE_ENV, LOG_FORMAT_ENV
from ..storage import ConfigError, KanukaStorage, UserSettings

SUCCESS = "✓"
FAILURE = "✗"
WARNING = "⚠"
DRY_RUN = "[dry-run]"


def get_storage() -> KanukaStorage:
    """Get KanukaStorage for the project containing the cwd."""
    return KanukaStorage()


def load_user_settings_or_exit() -> UserSettings:
    """Load the user's settings or exit with an error message."""
    try:
        return UserSettings.from_env()
    except ConfigError as e:
        print(f"{FAILURE} {e}")
        sys.exit(1)


def setup_logging(args) -> None:
    """Apply --verbose / --debug on top of the environment defaults."""
    if getattr(args, "debug", False):
        level = "DEBUG"
    elif getattr(args, "verbose", False):
        level = "INFO"
    else:
        return

    log_file = os.environ.get(LOG_FILE_ENV)
    configure_logging(
        level=level,
        format=os.environ.get(LOG_FORMAT_ENV, "console"),
        log_file=Path(log_file) if log_file else None,
    )


def stdin_is_interactive(stream: Optional[TextIO] = None) -> bool:
    stream = stream or sys.stdin
    try:
        return stream.isatty()
    except (AttributeError, OSError, ValueError):
        return False


def prompt_confirm(display_name: str) -> bool:
    """
    Ask whether to replace an existing grant. Only 'y' or 'yes' proceeds.
    """
    print(f"{WARNING} {display_name} already has access to this project.")
    print("  Continuing will replace their existing key.")
    print("  If they generated a new keypair, this is expected.")
    print("  If not, they may lose access.")
    try:
        answer = input("Do you want to continue? [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")
