"""
Stageflow Error Hierarchy

Provides a structured error framework for consistent error handling across the
conversation pipeline. All custom exceptions include error categories,
recoverability flags, and error codes so a failed turn can be turned into a
well-formed error snapshot.
"""

from enum import Enum
from typing import Optional, Dict, Any, List


class ErrorCategory(str, Enum):
    """Categories of errors for grouping and monitoring"""
    PARSE = "parse"
    PREREQUISITE = "prerequisite"
    UPSTREAM = "upstream"
    TIMEOUT = "timeout"
    SESSION = "session"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    PERSISTENCE = "persistence"
    TRANSPORT = "transport"


class StageflowError(Exception):
    """
    Base exception for all Stageflow errors.

    Attributes:
        category: Error category for grouping
        recoverable: Whether the error can be recovered from
        error_code: Unique error code for tracking
        context: Additional context about the error
    """
    category: ErrorCategory = ErrorCategory.VALIDATION
    error_code: str = "UNKNOWN"

    def __init__(
        self,
        message: str,
        recoverable: bool = False,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.recoverable = recoverable
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/API responses"""
        return {
            "error_code": self.error_code,
            "category": self.category.value,
            "message": str(self),
            "recoverable": self.recoverable,
            "context": self.context
        }


# ============================================================================
# Parse Errors
# ============================================================================

class ParseAnomaly(StageflowError):
    """
    Malformed or ambiguous fragment in a streamed document.

    Never raised out of the parser; carried inside ``error`` events.
    """
    category = ErrorCategory.PARSE
    error_code = "PARSE_ANOMALY"

    def __init__(self, message: str, offset: Optional[int] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if offset is not None:
            self.context["offset"] = offset


# ============================================================================
# Prerequisite Errors
# ============================================================================

class MissingPrerequisiteError(StageflowError):
    """A stage strategy was invoked without the upstream output it needs"""
    category = ErrorCategory.PREREQUISITE
    error_code = "MISSING_PREREQUISITE"

    def __init__(self, stage: str, missing: List[str], **kwargs):
        super().__init__(
            f"Stage '{stage}' is missing prerequisite output: {', '.join(missing)}",
            recoverable=False,
            **kwargs
        )
        self.stage = stage
        self.missing = list(missing)
        self.context["stage"] = stage
        self.context["missing"] = list(missing)


# ============================================================================
# Upstream (model API) Errors
# ============================================================================

class ModelCallError(StageflowError):
    """The model call failed before or during streaming"""
    category = ErrorCategory.UPSTREAM
    error_code = "MODEL_CALL"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs
    ):
        super().__init__(message, recoverable=True, **kwargs)
        if provider:
            self.context["provider"] = provider
        if status_code:
            self.context["status_code"] = status_code


class ModelTimeoutError(ModelCallError):
    """A strategy invocation exceeded its wall-clock budget"""
    category = ErrorCategory.TIMEOUT
    error_code = "MODEL_TIMEOUT"

    def __init__(self, timeout: float, **kwargs):
        super().__init__(f"Model call timed out after {timeout:g}s", **kwargs)
        self.context["timeout"] = timeout


# ============================================================================
# Session Errors
# ============================================================================

class SessionError(StageflowError):
    """Base class for session-related errors"""
    category = ErrorCategory.SESSION
    error_code = "SESSION_ERROR"


class SessionNotFoundError(SessionError):
    """Session not found in the repository"""
    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"Session not found: {session_id}", **kwargs)
        self.context["session_id"] = session_id


class SessionAlreadyRunningError(SessionError):
    """Another turn is already executing for the session"""
    error_code = "SESSION_RUNNING"

    def __init__(self, session_id: str, **kwargs):
        super().__init__(f"A turn is already running for session {session_id}", **kwargs)
        self.context["session_id"] = session_id


class NothingToRetryError(SessionError):
    """Retry requested but the last turn did not fail"""
    error_code = "NOTHING_TO_RETRY"

    def __init__(self, session_id: str, reason: str, **kwargs):
        super().__init__(f"Nothing to retry for session {session_id}: {reason}", **kwargs)
        self.context["session_id"] = session_id
        self.context["reason"] = reason


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(StageflowError):
    """Base class for validation errors"""
    category = ErrorCategory.VALIDATION
    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)
        if field:
            self.context["field"] = field


class InvalidStageError(ValidationError):
    """Stage name is not part of the conversation state machine"""
    error_code = "INVALID_STAGE"

    def __init__(self, stage: str, **kwargs):
        super().__init__(f"Invalid stage name: {stage}", field="stage", **kwargs)
        self.context["stage"] = stage


class InvalidDirectiveError(ValidationError):
    """A control directive in the user input could not be honoured"""
    error_code = "INVALID_DIRECTIVE"

    def __init__(self, directive: str, reason: str, **kwargs):
        super().__init__(f"Invalid directive '{directive}': {reason}", **kwargs)
        self.context["directive"] = directive
        self.context["reason"] = reason


# ============================================================================
# Configuration Errors
# ============================================================================

class ConfigurationError(StageflowError):
    """Base class for configuration errors"""
    category = ErrorCategory.CONFIGURATION
    error_code = "CONFIG_ERROR"

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=False, **kwargs)


class MissingConfigError(ConfigurationError):
    """Required configuration missing"""
    error_code = "CONFIG_MISSING"

    def __init__(self, config_key: str, **kwargs):
        super().__init__(f"Missing required config: {config_key}", **kwargs)
        self.context["config_key"] = config_key


class InvalidConfigError(ConfigurationError):
    """Configuration value is invalid"""
    error_code = "CONFIG_INVALID"

    def __init__(self, config_key: str, value: Any, reason: str, **kwargs):
        super().__init__(
            f"Invalid config '{config_key}' = {value}: {reason}",
            **kwargs
        )
        self.context["config_key"] = config_key
        self.context["value"] = str(value)
        self.context["reason"] = reason


# ============================================================================
# Persistence / Transport Errors
# ============================================================================

class PersistenceError(StageflowError):
    """Session repository operation failed"""
    category = ErrorCategory.PERSISTENCE
    error_code = "PERSISTENCE_ERROR"

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
        if operation:
            self.context["operation"] = operation


class TransportCancelled(StageflowError):
    """The consumer closed its side of the event stream"""
    category = ErrorCategory.TRANSPORT
    error_code = "TRANSPORT_CANCELLED"

    def __init__(self, message: str = "Consumer disconnected", **kwargs):
        super().__init__(message, recoverable=True, **kwargs)
