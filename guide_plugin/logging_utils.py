from __future__ import annotations

import logging
import os
import tempfile
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from guide_plugin.version import __version__, is_dev_build

ROOT_LOGGER_NAME = "ScreenGuide"
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class ReleaseLogLevelFilter(logging.Filter):
    """Promote debug logs to INFO in release builds so diagnostics stay visible."""

    def __init__(self, release_mode: bool) -> None:
        super().__init__()
        self._release_mode = release_mode

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - logging shim
        if self._release_mode and record.levelno == logging.DEBUG:
            record.levelno = logging.INFO
            record.levelname = "INFO"
        return True


def resolve_logs_dir(log_dir_name: str = "ScreenGuide") -> Path:
    """
    Resolve the directory to store logs.

    Strategy:
    - Use SCREEN_GUIDE_LOG_DIR if set.
    - Fall back to XDG state/cache locations, then `cwd/logs/<log_dir_name>`.
    - Final fallback: tempdir/<log_dir_name>.
    """
    candidates = []
    env_override = os.environ.get("SCREEN_GUIDE_LOG_DIR")
    if env_override:
        candidates.append(Path(env_override).expanduser())

    state_home = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local" / "state"))
    cache_home = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    candidates.append(state_home / "screen-guide" / "logs")
    candidates.append(cache_home / "screen-guide" / "logs")
    candidates.append(Path.cwd() / "logs")

    for base in candidates:
        try:
            target = base / log_dir_name
            target.mkdir(parents=True, exist_ok=True)
            return target
        except OSError:
            continue

    temp_fallback = Path(tempfile.gettempdir()) / "screen-guide" / log_dir_name
    temp_fallback.mkdir(parents=True, exist_ok=True)
    return temp_fallback


def build_rotating_file_handler(
    log_dir: Path,
    filename: str,
    *,
    retention: int = 5,
    max_bytes: int = 512 * 1024,
    formatter: Optional[logging.Formatter] = None,
) -> logging.Handler:
    """Construct a rotating file handler with sane defaults."""
    retention = max(1, retention)
    backup_count = max(0, retention - 1)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def configure_logging(
    filename: str,
    *,
    logger_name: str = ROOT_LOGGER_NAME,
    log_dir: Optional[Path] = None,
    retention: int = 5,
) -> logging.Logger:
    """Attach a rotating file handler to ``logger_name`` once per process."""
    dev_mode = is_dev_build(__version__)
    logger = logging.getLogger(logger_name)
    # Release builds keep debug records and write them as INFO.
    logger.setLevel(logging.DEBUG)
    if any(getattr(handler, "_screen_guide_file", False) for handler in logger.handlers):
        return logger
    target_dir = log_dir or resolve_logs_dir()
    handler = build_rotating_file_handler(
        target_dir,
        filename,
        retention=retention,
        formatter=logging.Formatter(_LOG_FORMAT),
    )
    handler._screen_guide_file = True  # type: ignore[attr-defined]
    handler.addFilter(ReleaseLogLevelFilter(release_mode=not dev_mode))
    logger.addHandler(handler)
    logger.debug("Logging to %s (version=%s dev=%s)", target_dir / filename, __version__, dev_mode)
    return logger


def build_journal_logger(
    log_dir: Path,
    filename: str,
    *,
    name: str = f"{ROOT_LOGGER_NAME}.Journal",
    retention: int = 5,
    max_bytes: int = 256 * 1024,
) -> logging.Logger:
    """Logger that writes bare JSON lines to a rotating file (no propagation)."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    handler = build_rotating_file_handler(
        log_dir,
        filename,
        retention=retention,
        max_bytes=max_bytes,
        formatter=logging.Formatter("%(message)s"),
    )
    handler.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    return logger
