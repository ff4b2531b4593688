"""
Error taxonomy and error logging helpers.

Exceptions the pipeline raises at its boundaries, and how the callers treat them:

    TriageError
    ├── AuthExpired             credentials need refreshing; refresh, then retry
    ├── ProviderError           provider failure carrying an HTTP status
    │   └── TransientProviderError   rate limit / 5xx / network; retry later
    ├── MalformedModelResponse  model output empty or not matching its schema
    └── NotFound                message or account vanished; skip, not a failure

log_error_with_context() writes failures in one uniform line format with an
error code, so log searches can key on the code.
"""
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TriageError(Exception):
    """Base class for errors raised by the triage agent."""
    pass


class AuthExpired(TriageError):
    """Mail-provider credentials are expired or revoked."""
    pass


class ProviderError(TriageError):
    """
    A mail or language-model provider call failed.

    Attributes:
        status: HTTP status code when known, None for transport failures
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientProviderError(ProviderError):
    """Rate limiting, server errors and network failures; safe to retry."""
    pass


class MalformedModelResponse(TriageError):
    """The language model returned empty content or content that fails validation."""
    pass


class NotFound(TriageError):
    """The referenced message or account no longer exists."""
    pass


TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_transient_status(status: Optional[int]) -> bool:
    if status is None:
        return True
    return status in TRANSIENT_STATUSES or status >= 500


def classify_http_status(status: Optional[int], message: str) -> TriageError:
    """
    Map an HTTP status from a provider call onto the taxonomy.

    Args:
        status: HTTP status code (None for connection-level failures)
        message: Description used as the exception message

    Returns:
        An exception instance; the caller raises it
    """
    if status == 401:
        return AuthExpired(message)
    if status in (404, 410):
        return NotFound(message)
    if is_transient_status(status):
        return TransientProviderError(message, status=status)
    return ProviderError(message, status=status)


class ErrorCode:
    """Standard error codes used in error log lines."""
    # Configuration errors (1xxx)
    CONFIG_INVALID = "E1001"

    # Mail provider errors (2xxx)
    PROVIDER_AUTH_FAILED = "E2001"
    PROVIDER_REQUEST_FAILED = "E2002"
    HISTORY_FETCH_FAILED = "E2003"
    WRITEBACK_FAILED = "E2004"

    # Language model errors (3xxx)
    LLM_REQUEST_FAILED = "E3001"
    LLM_INVALID_RESPONSE = "E3002"

    # Storage / queue errors (4xxx)
    STORAGE_FAILED = "E4001"
    QUEUE_FAILED = "E4002"

    # Processing errors (5xxx)
    MESSAGE_PROCESSING_FAILED = "E5001"
    MEMORY_BUILD_FAILED = "E5002"
    WRAPUP_FAILED = "E5003"
    SWEEP_ACCOUNT_FAILED = "E5004"

    UNKNOWN_ERROR = "E9001"


def log_error_with_context(
    error: Exception,
    error_code: str,
    operation: str,
    context: Optional[Dict[str, Any]] = None,
    level: int = logging.ERROR,
    include_traceback: bool = True,
    log: Optional[logging.Logger] = None
) -> None:
    """
    Log an error with standardized context information.

    Example:
        >>> try:
        ...     processor.process(account, 'm1')
        ... except Exception as e:
        ...     log_error_with_context(
        ...         e, ErrorCode.MESSAGE_PROCESSING_FAILED,
        ...         "Processing message",
        ...         context={'account_id': 7, 'message_id': 'm1'}
        ...     )
    """
    context_str = ""
    if context:
        context_items = [f"{k}={v}" for k, v in context.items() if v is not None]
        if context_items:
            context_str = f" | Context: {', '.join(context_items)}"

    log_message = f"[{error_code}] {operation} failed: {type(error).__name__}: {error}{context_str}"
    (log or logger).log(level, log_message, exc_info=include_traceback)
