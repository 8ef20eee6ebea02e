"""Logging for artrelay.

Library modules only call ``logging.getLogger``; the CLI (or an embedding
application) installs handlers once through ``configure_logging`` or
``configure_from_config``.  Fetch outcomes go to a separate, non-propagating
``artrelay.performance`` logger so they can be written as JSON lines next to
the main log without cluttering the console.
"""

import json
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

PERFORMANCE_LOGGER = "artrelay.performance"
TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra_fields`` are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        extra = getattr(record, "extra_fields", None)
        if extra:
            entry.update(extra)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _rotating_handler(path: Path, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)


class PerformanceLogger:
    """Writes one structured record per fetch or maintenance pass."""

    def __init__(self, log_file: Optional[Path] = None, max_bytes: int = 10 * 1024 * 1024):
        self.logger = logging.getLogger(PERFORMANCE_LOGGER)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False
        if log_file is not None:
            handler = _rotating_handler(Path(log_file), max_bytes, backup_count=5)
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)

    def record(self, operation: str, duration_ms: float, success: bool, **fields: Any) -> None:
        """Log ``operation`` with its duration, outcome and any extra fields
        (``resource``, ``proxy``, ``attempts``...)."""
        payload = {
            "operation": operation,
            "duration_ms": round(duration_ms, 2),
            "success": success,
        }
        payload.update(fields)
        self.logger.info(
            "%s %s in %.1fms",
            operation,
            "ok" if success else "failed",
            duration_ms,
            extra={"extra_fields": payload},
        )

    def close(self) -> None:
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)


@contextmanager
def log_performance(operation: str, logger: Optional[logging.Logger] = None) -> Iterator[None]:
    """Time the enclosed block and log how long it took.

    A block that raises is logged at WARNING and the exception propagates.
    """
    logger = logger or logging.getLogger(__name__)
    started = time.perf_counter()
    try:
        yield
    except BaseException:
        elapsed = (time.perf_counter() - started) * 1000
        logger.warning("%s failed after %.2fms", operation, elapsed)
        raise
    elapsed = (time.perf_counter() - started) * 1000
    logger.info("%s completed in %.2fms", operation, elapsed)


def configure_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
    use_json: bool = False,
    console_output: bool = True,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """Install console and optional rotating-file handlers on the root logger.

    Does nothing if the root logger already has handlers.

    Args:
        log_file: Rotating log file; its directory is created if needed
        level: Root and handler level
        use_json: Emit ``JSONFormatter`` records instead of text lines
        console_output: Also log to stderr
        max_bytes: Size at which the log file rotates
        backup_count: Rotated files to keep
    """
    root = logging.getLogger()
    if root.handlers:
        return
    root.setLevel(level)

    formatter = JSONFormatter() if use_json else logging.Formatter(TEXT_FORMAT, DATE_FORMAT)
    handlers = []
    if console_output:
        handlers.append(logging.StreamHandler())
    if log_file is not None:
        handlers.append(_rotating_handler(Path(log_file), max_bytes, backup_count))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)


def configure_from_config(
    config,
    level_name: Optional[str] = None,
    use_json: Optional[bool] = None,
) -> Optional[PerformanceLogger]:
    """Configure logging from the ``logging.*`` settings.

    ``level_name`` and ``use_json`` override the configured values.  When a
    log file is configured, a ``PerformanceLogger`` writing
    ``performance.log`` beside it is returned.
    """
    name = (level_name or config.get("logging.level", "INFO")).upper()
    log_file = config.get("logging.file")
    configure_logging(
        log_file=Path(log_file) if log_file else None,
        level=getattr(logging, name, logging.INFO),
        use_json=bool(config.get("logging.json", False)) if use_json is None else use_json,
    )
    if not log_file:
        return None
    return PerformanceLogger(Path(log_file).parent / "performance.log")
