# logging_utils.py
import inspect
import logging
import os
import sys
import threading
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

from loguru import logger

# NOTE: loguru internal helper; file birth time is not portable in the stdlib
from loguru._ctime_functions import get_ctime

LOG_ROTATION_SIZE_BYTES = 10 * 1024 * 1024
LOG_ROTATION_MAX_AGE = timedelta(days=7)
LOG_RETENTION_MAX_FILES = 20
DEFAULT_LOG_FILENAME = "xrwall-relay.log"
CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> | {message}"
)
RotationRule = str | int | float | timedelta | Callable[[Any, Any], bool]
RetentionRule = str | int | float | timedelta | Callable[[list[Any]], Any]


def _log_path(file: Any) -> Path:
    """loguru hands rotation a file object; tests and callers may pass a path."""
    if isinstance(file, (str, os.PathLike)):
        return Path(file)
    return Path(file.name)


class SizeOrAgeRotation:
    """loguru rotation rule: start a new file at ``max_bytes`` or ``max_age``.

    The age of the current file is measured from its creation time, read once
    and then tracked in memory across rotations.
    """

    def __init__(
        self,
        max_bytes: int = LOG_ROTATION_SIZE_BYTES,
        max_age: timedelta = LOG_ROTATION_MAX_AGE,
    ) -> None:
        self.max_bytes = max_bytes
        self.max_age = max_age
        self.opened_at: float | None = None
        self._lock = threading.Lock()

    def __call__(self, message: Any, file: Any) -> bool:
        stamp = message.record["time"].timestamp()
        path = _log_path(file)
        try:
            size = path.stat().st_size
        except OSError as exc:
            logger.debug(f"Rotation check skipped; stat failed: {exc}")
            return False

        with self._lock:
            if self.opened_at is None:
                self.opened_at = self._creation_time(path, stamp)
            too_old = stamp - self.opened_at >= self.max_age.total_seconds()
            if size >= self.max_bytes or too_old:
                self.opened_at = stamp
                return True
        return False

    @staticmethod
    def _creation_time(path: Path, fallback: float) -> float:
        try:
            return get_ctime(str(path)) or fallback
        except (OSError, ValueError) as exc:
            logger.debug(f"get_ctime failed for {path}: {exc}")
            return fallback


class KeepNewest:
    """loguru retention rule: keep the ``count`` most recently modified files."""

    def __init__(self, count: int = LOG_RETENTION_MAX_FILES) -> None:
        self.count = count

    def __call__(self, logs: list[Any]) -> None:
        dated: list[tuple[float, Path]] = []
        for entry in logs:
            path = Path(entry)
            try:
                dated.append((path.stat().st_mtime, path))
            except OSError:
                continue

        dated.sort(key=lambda item: item[0], reverse=True)
        for _, path in dated[self.count :]:
            try:
                path.unlink()
            except OSError as exc:
                logger.debug(f"Retention skip for {path}: {exc}")


class InterceptHandler(logging.Handler):
    """Redirect stdlib logging to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except (ValueError, TypeError):
            level = record.levelno

        # Walk past the logging module so loguru reports the real caller
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def configure_logging(
    log_dir: Path | str | None,
    console_level: str = "INFO",
    console_json: bool = False,
    rotation: RotationRule | None = None,
    retention: RetentionRule | None = None,
) -> Path | None:
    """
    Initialize console logging and an optional rotated JSON file sink.

    Without explicit rules the file rotates at 10 MB or 7 days and the newest
    20 files are kept. Stdlib ``logging`` records (the library modules log
    through it) are routed into loguru.

    Args:
        log_dir: Target directory for `xrwall-relay.log`; enables file sink when set.
        console_level: Console level string (e.g., INFO/DEBUG).
        console_json: Emit console as JSON when True; otherwise colored text.
        rotation: loguru rotation rule (e.g., '10 MB', '1 day') or callable.
        retention: loguru retention rule (e.g., '1 week', 10) or callable.

    Returns:
        Path of the log file, or None when file logging is disabled.
    """
    logger.remove()

    console_kwargs: dict[str, Any] = {
        "level": console_level.upper(),
        "serialize": console_json,
        "enqueue": True,
        "backtrace": False,
        "diagnose": False,
    }
    if not console_json:
        console_kwargs["format"] = CONSOLE_FORMAT
    logger.add(sys.stderr, **console_kwargs)

    log_file: Path | None = None
    if log_dir is not None:
        log_dir_path = Path(log_dir)
        try:
            log_dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error(f"Failed to create log directory {log_dir_path}: {exc}")
        else:
            log_file = log_dir_path / DEFAULT_LOG_FILENAME
            logger.add(
                log_file,
                level="DEBUG",
                serialize=True,
                rotation=rotation if rotation is not None else SizeOrAgeRotation(),
                retention=retention if retention is not None else KeepNewest(),
                enqueue=True,
                backtrace=False,
                diagnose=False,
            )
            logger.info(f"File logging enabled at {log_file}")

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.NOTSET, force=True)
    logging.captureWarnings(True)
    return log_file
