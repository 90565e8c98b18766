"""
Logging handlers for the orchestration engine.

Two sinks are provided: a bounded in-memory buffer that the API exposes for
quick inspection, and a size-rotated file. Both are attached to the
``bareprox`` logger only so uvicorn and SQLAlchemy keep their own handlers.
"""
import logging
from collections import deque
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import List, Dict, Any, Optional

APP_LOGGER = "bareprox"


class InMemoryLogHandler(logging.Handler):
    """
    Keeps the most recent log records in a thread-safe ring buffer.
    """

    def __init__(self, max_records: int = 2000):
        """
        Args:
            max_records: Maximum number of records retained
        """
        super().__init__()
        self.max_records = max_records
        self.records = deque(maxlen=max_records)
        self.lock = Lock()

    def emit(self, record: logging.LogRecord):
        try:
            entry = {
                "timestamp": datetime.fromtimestamp(record.created).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "message": self.format(record),
                "module": record.module,
                "funcName": record.funcName,
                "lineno": record.lineno,
            }
            job_id = getattr(record, "job_id", None)
            if job_id is not None:
                entry["job_id"] = job_id
            if record.exc_info and self.formatter:
                entry["exception"] = self.formatter.formatException(record.exc_info)

            with self.lock:
                self.records.append(entry)
        except Exception:
            self.handleError(record)

    def get_logs(
        self,
        level: Optional[str] = None,
        logger: Optional[str] = None,
        search: Optional[str] = None,
        job_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Return buffered entries, newest first.

        Args:
            level: Exact level name filter
            logger: Substring match on the logger name
            search: Case-insensitive substring match on the message
            job_id: Only entries logged with ``extra={"job_id": ...}``
            limit: Maximum entries returned
            offset: Entries skipped from the newest end

        Returns:
            List of log entry dictionaries
        """
        with self.lock:
            logs = list(self.records)

        if level:
            logs = [log for log in logs if log["level"] == level.upper()]
        if logger:
            logs = [log for log in logs if logger.lower() in log["logger"].lower()]
        if search:
            needle = search.lower()
            logs = [log for log in logs if needle in log["message"].lower()]
        if job_id is not None:
            logs = [log for log in logs if log.get("job_id") == job_id]

        logs.reverse()
        return logs[offset:offset + limit]

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            logs = list(self.records)

        by_level = {name: 0 for name in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        for log in logs:
            if log["level"] in by_level:
                by_level[log["level"]] += 1

        return {"total": len(logs), "max_records": self.max_records, "by_level": by_level}

    def clear(self):
        """Drop all buffered records."""
        with self.lock:
            self.records.clear()


_log_handler: Optional[InMemoryLogHandler] = None
_file_log_handler: Optional[RotatingFileHandler] = None


def get_log_handler() -> InMemoryLogHandler:
    """Get the global in-memory log handler instance."""
    global _log_handler
    if _log_handler is None:
        _log_handler = InMemoryLogHandler(max_records=2000)
        _log_handler.setFormatter(logging.Formatter('%(levelname)s - %(name)s - %(message)s'))
    return _log_handler


def _attach(handler: logging.Handler, level: str) -> bool:
    app_logger = logging.getLogger(APP_LOGGER)
    if handler in app_logger.handlers:
        return False
    app_logger.addHandler(handler)
    if app_logger.level == logging.NOTSET:
        app_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return True


def setup_logging(level: str = "INFO") -> bool:
    """Attach the in-memory handler to the application logger."""
    attached = _attach(get_log_handler(), level)
    print(f"✅ In-memory logging handler {'attached to ' + APP_LOGGER if attached else 'already configured'}", flush=True)
    return attached


def get_file_log_handler(
    log_dir: str = "/var/log/bareprox",
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10
) -> RotatingFileHandler:
    """Get the global rotating file handler, creating the log directory if needed."""
    global _file_log_handler
    if _file_log_handler is None:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)

        _file_log_handler = RotatingFileHandler(
            filename=str(log_path / "bareprox.log"),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        _file_log_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    return _file_log_handler


def setup_file_logging(
    log_dir: str = "/var/log/bareprox",
    max_bytes: int = 100 * 1024 * 1024,
    backup_count: int = 10,
    level: str = "INFO"
) -> bool:
    """Attach the rotating file handler. Returns False if the directory is unusable."""
    try:
        handler = get_file_log_handler(log_dir, max_bytes, backup_count)
        _attach(handler, level)
        print(f"✅ File logging handler attached to: {APP_LOGGER}", flush=True)
        print(f"   Log directory: {log_dir}", flush=True)
        print(f"   Max file size: {max_bytes / (1024*1024):.1f} MB", flush=True)
        print(f"   Backup count: {backup_count}", flush=True)
        return True
    except Exception as e:
        print(f"⚠️  Failed to setup file logging: {e}", flush=True)
        return False
