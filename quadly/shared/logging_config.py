"""
Logging setup for Quadly.

Records can carry two optional payloads set through ``extra``:

* ``error_info``: a :class:`QuadlyError`, rendered with its code and context
* ``audit_info``: a dict produced by :class:`AuditLogger`

Both the JSON and the detailed formatter know how to render them. Audit
records go to their own ``quadly.audit`` logger so they can be shipped to a
separate file without mixing into the application log.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from .exceptions import QuadlyError


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    @property
    def numeric(self) -> int:
        return logging.getLevelName(self.value)


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """What an audit record is about."""
    QUADLET_CHANGE = "quadlet_change"
    UNIT_ACTION = "unit_action"
    SYSTEM_EVENT = "system_event"
    ERROR_EVENT = "error_event"


AUDIT_LOGGER_NAME = "quadly.audit"

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_BUILTINS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "error_info", "audit_info",
}


def _describe_error(error: QuadlyError) -> Dict[str, Any]:
    return {
        "kind": type(error).__name__,
        "code": error.error_code.value,
        "severity": error.severity.value,
        "context": error.context,
        "recovery_actions": [step.value for step in error.recovery_actions],
    }


def _attached_error(record: logging.LogRecord) -> Optional[QuadlyError]:
    error = getattr(record, "error_info", None)
    return error if isinstance(error, QuadlyError) else None


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "pid": os.getpid(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "traceback": self.formatException(record.exc_info),
            }

        error = _attached_error(record)
        if error is not None:
            entry["error"] = _describe_error(error)

        audit = getattr(record, "audit_info", None)
        if audit is not None:
            entry["audit"] = audit

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _RECORD_BUILTINS}
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """Column-aligned text, followed by indented error and audit details."""

    LINE = "%(asctime)s | %(levelname)-8s | %(name)-24s | %(funcName)s:%(lineno)d | %(message)s"

    def __init__(self):
        super().__init__(fmt=self.LINE, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = _attached_error(record)
        if error is not None:
            lines.append(f"  Error Code: {error.error_code.value} ({error.severity.value})")
            if error.context:
                lines.append(f"  Context: {json.dumps(error.context, default=str)}")

        audit = getattr(record, "audit_info", None)
        if audit is not None:
            lines.append(f"  Audit: {json.dumps(audit, default=str)}")

        return "\n".join(lines)


class AuditLogger:
    """
    Writes audit records for quadlet mutations and unit lifecycle commands.

    Each record's ``audit_info`` holds ``event_type``, ``timestamp``, an
    optional ``resource`` ({type, id}), an optional ``result`` and a
    ``context`` dict.
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log_event(self, event_type: AuditEventType, message: str,
                  resource_type: Optional[str] = None, resource_id: Optional[str] = None,
                  result: Optional[str] = None,
                  additional_context: Optional[Dict[str, Any]] = None):
        info: Dict[str, Any] = {
            "event_type": event_type.value,
            "timestamp": datetime.now().isoformat(),
            "context": dict(additional_context or {}),
        }
        if resource_type or resource_id:
            info["resource"] = {"type": resource_type, "id": resource_id}
        if result is not None:
            info["result"] = result

        self.logger.info(message, extra={"audit_info": info})

    @staticmethod
    def _outcome(context: Dict[str, Any], success: bool, error_message: Optional[str]) -> str:
        if error_message:
            context["error_message"] = error_message
        return "success" if success else "failure"

    def log_quadlet_change(self, action: str, unit_type: str, name: str,
                           success: bool = True, error_message: Optional[str] = None):
        """Record a create, update or delete of ``name.unit_type``."""
        context = {"action": action}
        result = self._outcome(context, success, error_message)
        self.log_event(AuditEventType.QUADLET_CHANGE, f"quadlet {action} {name}.{unit_type}: {result}",
                       resource_type=unit_type, resource_id=name, result=result,
                       additional_context=context)

    def log_unit_action(self, action: str, ref: str, success: bool = True,
                        error_message: Optional[str] = None):
        """Record a start/stop/restart job submitted for ``ref``."""
        context = {"action": action, "job_mode": "replace"}
        result = self._outcome(context, success, error_message)
        self.log_event(AuditEventType.UNIT_ACTION, f"unit {action} {ref}: {result}",
                       resource_type="unit", resource_id=ref, result=result,
                       additional_context=context)

    def log_error(self, error: QuadlyError):
        self.log_event(AuditEventType.ERROR_EVENT, error.message, result="error",
                       additional_context=_describe_error(error))


def _build_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format is LogFormat.JSON:
        return StructuredFormatter()
    if log_format is LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                             datefmt="%Y-%m-%d %H:%M:%S")


def _file_handler(path: str, max_bytes: int, backups: int) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes,
                                                backupCount=backups, encoding="utf-8")


def _replace_handlers(logger: logging.Logger, handlers: Iterable[logging.Handler],
                      formatter: logging.Formatter):
    for old in logger.handlers[:]:
        logger.removeHandler(old)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Configure the root logger and, optionally, the audit logger.

    The root logger gets a stdout handler (``enable_console``) and a rotating
    file handler (``log_file``), both using ``log_format``. The audit logger
    does not propagate; it always emits JSON, to ``audit_file`` when given and
    to stdout otherwise.

    Returns the configured loggers keyed ``root``, ``api``, ``core`` and, with
    auditing enabled, ``audit``.
    """
    root = logging.getLogger()
    root.setLevel(log_level.numeric)

    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(_file_handler(log_file, max_file_size, backup_count))
    _replace_handlers(root, handlers, _build_formatter(log_format))

    loggers = {
        "root": root,
        "api": logging.getLogger("quadly.api"),
        "core": logging.getLogger("quadly.core"),
    }

    if enable_audit:
        audit = logging.getLogger(AUDIT_LOGGER_NAME)
        audit.setLevel(logging.INFO)
        audit.propagate = False
        sink = (_file_handler(audit_file, max_file_size, backup_count)
                if audit_file else logging.StreamHandler(sys.stdout))
        _replace_handlers(audit, [sink], StructuredFormatter())
        loggers["audit"] = audit

    return loggers


def log_structured_error(logger: logging.Logger, error: QuadlyError, level: int = logging.ERROR):
    """Emit ``error`` on ``logger`` with the error attached as ``error_info``."""
    logger.log(level, error.message, extra={"error_info": error})
