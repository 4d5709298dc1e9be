"""
Logging configuration with optional JSON lines and file rotation
"""
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Optional
from config import settings


class JsonFormatter(logging.Formatter):
    """One JSON object per line: time, level, name, message"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "name": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _log_level() -> int:
    level = settings.log_level.upper()
    if level == "WARN":
        level = "WARNING"
    return getattr(logging, level, logging.INFO)


def _formatter(detailed: bool = False) -> logging.Formatter:
    if settings.log_format == "json":
        return JsonFormatter()
    if detailed:
        return logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
    return logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """Get configured logger instance"""
    logger = logging.getLogger(name)

    log_level = _log_level()
    logger.setLevel(log_level)

    # Prevent duplicate logs
    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(_formatter())
    logger.addHandler(console_handler)

    # File handlers only when a log directory is configured
    if settings.log_dir:
        log_dir = Path(settings.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_dir / (log_file or "opcua_exporter.log"),
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_formatter(detailed=True))

        error_handler = RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=settings.log_file_max_bytes,
            backupCount=settings.log_file_backup_count
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(_formatter(detailed=True))

        logger.addHandler(file_handler)
        logger.addHandler(error_handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger

# Configure root logger for third-party libraries
def configure_root_logger():
    """Configure the root logger and the opcua library logger"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)  # Less verbose for third-party

    # Add a handler if none exists
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(_formatter())
        root_logger.addHandler(handler)

    # Protocol tracing only at debug verbosity
    opcua_level = logging.DEBUG if _log_level() == logging.DEBUG else logging.WARNING
    logging.getLogger("opcua").setLevel(opcua_level)

# Call this when the application starts
configure_root_logger()
