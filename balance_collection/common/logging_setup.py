import json
import logging
import os
import hashlib
from datetime import datetime, timezone
from logging.handlers import TimedRotatingFileHandler
from typing import Dict, Any, Optional
from . import config


class StructuredJsonFormatter(logging.Formatter):
    """JSON formatter with required fields for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, 'component', record.name)
        operation = getattr(record, 'operation', record.funcName or 'unknown')
        params_hash = getattr(record, 'params_hash', '')
        status = getattr(record, 'status', 'info')
        duration_ms = getattr(record, 'duration_ms', 0)
        error = getattr(record, 'error', '')

        data = {
            "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "component": component,
            "operation": operation,
            "params_hash": params_hash,
            "status": status,
            "duration_ms": duration_ms,
            "error": error,
            "level": record.levelname,
            "message": record.getMessage(),
        }

        if record.exc_info:
            data["error"] = self.formatException(record.exc_info)
            data["status"] = "error"

        # Drop empty fields
        data = {k: v for k, v in data.items() if v != '' and v is not None}

        return json.dumps(data)


def mask_key(api_key: str) -> str:
    """Shorten an API key to a loggable form, e.g. ``1a2b...9z0y``"""
    if not api_key:
        return ""
    if len(api_key) <= 8:
        return "*" * len(api_key)
    return f"{api_key[:4]}...{api_key[-4:]}"


def get_logger(name: str) -> "StructuredLogger":
    """Get a logger instance with structured logging support"""
    logger = logging.getLogger(name)
    return StructuredLogger(logger)


class StructuredLogger:
    """Wrapper around logger that adds structured logging methods"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def log_operation(self,
                      operation: str,
                      params: Optional[Dict[str, Any]] = None,
                      status: str = "started",
                      duration_ms: int = 0,
                      error: str = "",
                      message: str = "") -> None:
        """Log an operation with structured fields"""
        params_hash = ""
        if params:
            # Hash params so keys and addresses are traceable without being exposed
            params_str = json.dumps(params, sort_keys=True, default=str)
            params_hash = hashlib.md5(params_str.encode()).hexdigest()[:8]

        extra = {
            'component': self._logger.name,
            'operation': operation,
            'params_hash': params_hash,
            'status': status,
            'duration_ms': duration_ms,
            'error': error
        }

        level = logging.ERROR if error else logging.INFO
        self._logger.log(level, message or f"{operation} {'failed' if error else status}", extra=extra)


def setup_logging() -> None:
    """Configure logging with JSON format and daily rotation"""
    settings = config.settings
    os.makedirs(settings.log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    root.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(root.level)
    console_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(console_handler)

    log_filename = os.path.join(
        settings.log_dir,
        f"balance_query_{datetime.now().strftime('%Y%m%d')}.log"
    )
    file_handler = TimedRotatingFileHandler(
        filename=log_filename,
        when='midnight',
        interval=1,
        backupCount=30,  # Keep 30 days of logs
        encoding='utf-8'
    )
    file_handler.suffix = "%Y%m%d.log"
    file_handler.setLevel(root.level)
    file_handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(file_handler)

    # Audit trail for API key pool decisions (removals, exhaustion)
    audit_logger = logging.getLogger('audit')
    audit_logger.handlers = []
    audit_file = os.path.join(settings.log_dir, 'audit.log')
    audit_handler = logging.FileHandler(audit_file, encoding='utf-8')
    audit_handler.setFormatter(StructuredJsonFormatter())
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def log_summary(component: str, batch: str, total: int, succeeded: int,
                failed: int, duration_seconds: float) -> None:
    """Log the outcome of a finished balance batch"""
    logger = get_logger(component)
    logger.log_operation(
        operation="batch_summary",
        params={"batch": batch},
        status="completed",
        duration_ms=int(duration_seconds * 1000),
        message=f"Queried {total} addresses in batch {batch}: {succeeded} succeeded, {failed} failed"
    )
