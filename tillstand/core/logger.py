"""Console and run-log output for tillstand.

Module loggers print through a shared Rich console. One file handler on the
``tillstand`` package logger records each run: the midclt calls, device
operations and power transitions that an apply performed. The run log lands
beside the state file unless ``--log-file`` or ``TILLSTAND_LOG_FILE`` says
otherwise.
"""
import logging
import os
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from tillstand.core.config import get_config

console = Console()

PACKAGE_LOGGER = "tillstand"
LOG_NAME = "tillstand.log"
SYSTEM_LOG_DIR = Path("/var/log/tillstand")
FALLBACK_LOG_FILE = Path("/tmp") / LOG_NAME

_run_log: Optional[logging.FileHandler] = None


def resolve_log_file(log_file: Optional[str] = None, log_dir: Optional[Path] = None) -> Path:
    """Where the run log goes: explicit path, TILLSTAND_LOG_FILE, ``log_dir``, then /var/log."""
    if log_file:
        return Path(log_file)
    configured = get_config().log_file
    if configured:
        return Path(configured)
    if log_dir is not None:
        return Path(log_dir) / LOG_NAME
    return SYSTEM_LOG_DIR / LOG_NAME


def setup_file_logging(
    log_file: Optional[str] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
) -> Path:
    """Attach the run log to the package logger.

    Calling again with another target moves the run log there; calling with
    the same target only adjusts the level.

    Args:
        log_file: Explicit log path (``--log-file``)
        verbose: Record debug messages, including every midclt call
        log_dir: Directory to use when no path is configured, usually the state directory

    Returns:
        Path actually written to. Falls back to /tmp when the target is not writable.
    """
    global _run_log

    level = logging.DEBUG if verbose else logging.INFO
    package = logging.getLogger(PACKAGE_LOGGER)
    package.setLevel(level)

    target = resolve_log_file(log_file, log_dir)
    if _run_log is not None:
        if _run_log.baseFilename == os.path.abspath(target):
            _run_log.setLevel(level)
            return target
        package.removeHandler(_run_log)
        _run_log.close()
        _run_log = None

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(target)
    except OSError:
        target = FALLBACK_LOG_FILE
        handler = logging.FileHandler(target)

    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    package.addHandler(handler)
    _run_log = handler

    package.info(f"Run log: {target}")
    return target


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name`` that prints INFO and above to the shared console.

    Module loggers leave their own level unset so that ``--verbose`` on the
    package logger reaches them.
    """
    package = logging.getLogger(PACKAGE_LOGGER)
    if package.level == logging.NOTSET:
        package.setLevel(logging.INFO)

    logger = logging.getLogger(name)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False, level=logging.INFO)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        logger.setLevel(logging.INFO)
    return logger
