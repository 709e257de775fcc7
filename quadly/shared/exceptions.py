"""
Exception hierarchy for Quadly.

Every failure that reaches a caller is a :class:`QuadlyError` subclass with
an error code, a severity, suggested recovery steps and a free-form context
dict. The core never picks HTTP status codes; ``quadly.api.main`` maps the
exception kinds to responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class ErrorCode(Enum):
    """Stable codes, grouped by subsystem."""

    # unit-file grammar
    PARSE_ORPHAN_DIRECTIVE = "PARSE_1001"
    PARSE_MALFORMED_SECTION = "PARSE_1002"
    PARSE_MALFORMED_DIRECTIVE = "PARSE_1003"
    PARSE_INVALID_ENCODING = "PARSE_1004"

    # per-type content rules
    VALIDATION_FAILED = "VALIDATION_2001"
    VALIDATION_INVALID_NAME = "VALIDATION_2002"
    VALIDATION_INVALID_TYPE = "VALIDATION_2003"

    # quadlet directory
    STORAGE_WRITE_FAILED = "STORAGE_3001"
    STORAGE_READ_FAILED = "STORAGE_3002"
    STORAGE_DELETE_FAILED = "STORAGE_3003"
    STORAGE_NOT_FOUND = "STORAGE_3004"
    STORAGE_CONFLICT = "STORAGE_3005"

    # systemd user manager over D-Bus
    MANAGER_CONNECTION_FAILED = "MANAGER_4001"
    MANAGER_UNIT_NOT_FOUND = "MANAGER_4002"
    MANAGER_OPERATION_FAILED = "MANAGER_4003"
    MANAGER_QUERY_FAILED = "MANAGER_4004"
    MANAGER_QUERY_TIMEOUT = "MANAGER_4005"

    BROADCASTER_INVALID_STATE = "BROADCASTER_5001"

    CONFIG_INVALID_VALUE = "CONFIG_8001"

    INTERNAL_UNEXPECTED_ERROR = "INTERNAL_9001"


class ErrorSeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """What a client or operator can do about an error."""
    RETRY = "retry"
    RECONNECT = "reconnect"
    FIX_INPUT = "fix_input"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"
    IGNORE = "ignore"


def _merge(context: Optional[Dict[str, Any]], **fields) -> Dict[str, Any]:
    merged = dict(context or {})
    merged.update({k: v for k, v in fields.items() if v is not None})
    return merged


class QuadlyError(Exception):
    """
    Base class for all Quadly errors.

    Subclasses set ``default_code``, ``default_severity`` and
    ``default_recovery``; any of them can still be overridden per instance.
    When ``cause`` is given its type and message are copied into the context
    so they survive serialization.
    """

    default_code = ErrorCode.INTERNAL_UNEXPECTED_ERROR
    default_severity = ErrorSeverity.MEDIUM
    default_recovery: Sequence[RecoveryAction] = ()

    def __init__(self, message: str, error_code: Optional[ErrorCode] = None, *,
                 severity: Optional[ErrorSeverity] = None,
                 context: Optional[Dict[str, Any]] = None,
                 recovery_actions: Optional[List[RecoveryAction]] = None,
                 cause: Optional[BaseException] = None,
                 user_message: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.severity = severity or self.default_severity
        self.recovery_actions = list(recovery_actions or self.default_recovery)
        self.user_message = user_message or message
        self.cause = cause
        self.timestamp = datetime.now()
        self.context = dict(context or {})
        if cause is not None:
            self.context.update(cause_type=type(cause).__name__, cause_message=str(cause))

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form used for API error bodies."""
        cause = None
        if self.cause is not None:
            cause = {'type': self.context['cause_type'], 'message': self.context['cause_message']}
        return {'error': {
            'kind': type(self).__name__,
            'code': self.error_code.value,
            'message': self.message,
            'user_message': self.user_message,
            'severity': self.severity.value,
            'timestamp': self.timestamp.isoformat(),
            'context': self.context,
            'recovery_actions': [step.value for step in self.recovery_actions],
            'cause': cause,
        }}


class QuadletParseError(QuadlyError):
    """Malformed unit-file grammar, with line and section context."""

    ORPHAN_DIRECTIVE = "OrphanDirective"
    MALFORMED_SECTION = "MalformedSection"
    MALFORMED_DIRECTIVE = "MalformedDirective"
    INVALID_ENCODING = "InvalidEncoding"

    _codes = {
        ORPHAN_DIRECTIVE: ErrorCode.PARSE_ORPHAN_DIRECTIVE,
        MALFORMED_SECTION: ErrorCode.PARSE_MALFORMED_SECTION,
        MALFORMED_DIRECTIVE: ErrorCode.PARSE_MALFORMED_DIRECTIVE,
        INVALID_ENCODING: ErrorCode.PARSE_INVALID_ENCODING,
    }

    default_code = ErrorCode.PARSE_MALFORMED_DIRECTIVE
    default_severity = ErrorSeverity.LOW
    default_recovery = (RecoveryAction.FIX_INPUT,)

    def __init__(self, message: str, kind: str, line_number: Optional[int] = None,
                 line: Optional[str] = None, section: Optional[str] = None, **kwargs):
        kwargs['context'] = {
            **kwargs.get('context', {}),
            'kind': kind, 'line_number': line_number, 'line': line, 'section': section,
        }
        super().__init__(message, self._codes.get(kind), **kwargs)
        self.kind = kind
        self.line_number = line_number
        self.line = line
        self.section = section


class QuadletValidationError(QuadlyError):
    """
    Structurally valid document missing type-mandated content.

    Carries every violation discovered in one pass, not just the first.
    """

    default_code = ErrorCode.VALIDATION_FAILED
    default_severity = ErrorSeverity.LOW
    default_recovery = (RecoveryAction.FIX_INPUT,)

    def __init__(self, message: str, violations: Optional[list] = None, **kwargs):
        self.violations = list(violations or [])
        if self.violations:
            kwargs['context'] = _merge(kwargs.get('context'),
                                       violations=[v.to_dict() for v in self.violations])
        super().__init__(message, **kwargs)


class StorageError(QuadlyError):
    """Filesystem failure while persisting or removing an artifact."""

    default_code = ErrorCode.STORAGE_WRITE_FAILED
    default_severity = ErrorSeverity.HIGH
    default_recovery = (RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN)

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        kwargs['context'] = _merge(kwargs.get('context'), path=path)
        super().__init__(message, **kwargs)
        self.path = path


class _QuadletRefError(QuadlyError):
    default_severity = ErrorSeverity.LOW
    template = "Quadlet '{name}.{unit_type}'"

    def __init__(self, name: str, unit_type: str, **kwargs):
        kwargs['context'] = _merge(kwargs.get('context'), name=name, unit_type=unit_type)
        super().__init__(self.template.format(name=name, unit_type=unit_type), **kwargs)
        self.name = name
        self.unit_type = unit_type


class QuadletNotFoundError(_QuadletRefError):
    """No artifact exists for the requested (type, name)."""
    default_code = ErrorCode.STORAGE_NOT_FOUND
    template = "Quadlet '{name}.{unit_type}' not found"


class QuadletConflictError(_QuadletRefError):
    """An artifact already exists for the (type, name) being created."""
    default_code = ErrorCode.STORAGE_CONFLICT
    default_recovery = (RecoveryAction.FIX_INPUT,)
    template = "Quadlet '{name}.{unit_type}' already exists"


class ServiceManagerConnectionError(QuadlyError):
    """The session-bus service manager endpoint is unreachable."""
    default_code = ErrorCode.MANAGER_CONNECTION_FAILED
    default_severity = ErrorSeverity.HIGH
    default_recovery = (RecoveryAction.RECONNECT, RecoveryAction.RETRY)


class UnitOperationError(QuadlyError):
    """The service manager rejected a call for a unit."""

    default_code = ErrorCode.MANAGER_OPERATION_FAILED
    default_recovery = (RecoveryAction.USER_INTERVENTION,)

    def __init__(self, message: str, unit: Optional[str] = None,
                 operation: Optional[str] = None, **kwargs):
        kwargs['context'] = _merge(kwargs.get('context'), unit=unit, operation=operation)
        super().__init__(message, **kwargs)
        self.unit = unit
        self.operation = operation


class UnitNotFoundError(UnitOperationError):
    """The service manager reports that the unit does not exist."""

    default_code = ErrorCode.MANAGER_UNIT_NOT_FOUND

    def __init__(self, unit: str, operation: Optional[str] = None, **kwargs):
        super().__init__(f"Unit '{unit}' does not exist", unit=unit, operation=operation, **kwargs)


class QueryError(QuadlyError):
    """Status query failed for one specific unit."""

    default_code = ErrorCode.MANAGER_QUERY_FAILED
    default_severity = ErrorSeverity.LOW
    default_recovery = (RecoveryAction.RETRY,)

    def __init__(self, message: str, unit: str, **kwargs):
        kwargs['context'] = _merge(kwargs.get('context'), unit=unit)
        super().__init__(message, **kwargs)
        self.unit = unit


class BroadcasterStateError(QuadlyError):
    """Invalid state transition requested on the status broadcaster."""
    default_code = ErrorCode.BROADCASTER_INVALID_STATE


class ConfigurationError(QuadlyError):
    """An environment variable holds an unusable value."""

    default_code = ErrorCode.CONFIG_INVALID_VALUE
    default_severity = ErrorSeverity.HIGH
    default_recovery = (RecoveryAction.USER_INTERVENTION,)

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        kwargs['context'] = _merge(kwargs.get('context'), config_key=config_key)
        super().__init__(message, **kwargs)


def handle_exception(exception: BaseException,
                     context: Optional[Dict[str, Any]] = None) -> QuadlyError:
    """
    Wrap an arbitrary exception as a QuadlyError.

    QuadlyErrors pass through unchanged and ``OSError`` becomes a
    :class:`StorageError`. Anything else is reported as an unexpected
    internal error, with ``context`` attached.
    """
    if isinstance(exception, QuadlyError):
        return exception
    if isinstance(exception, OSError):
        return StorageError(str(exception), context=context, cause=exception)
    return QuadlyError(str(exception) or type(exception).__name__,
                       context=context, cause=exception)
