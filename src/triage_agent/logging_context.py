"""
Logging context for the triage agent.

Stores the contextual fields (correlation_id, account_id, job_id, message_id)
that ContextFilter stamps onto every log record. Values are kept in contextvars
and mirrored into thread-local storage, so worker threads that set their own
context never see another thread's account or message.

Usage:
    >>> from triage_agent.logging_context import with_account_context
    >>> with with_account_context(account_id='7', job_id='poll'):
    ...     logger.info("Polling account")   # tagged with account 7 / poll
"""
import contextvars
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ('correlation_id', 'account_id', 'job_id', 'message_id')

_vars: Dict[str, contextvars.ContextVar] = {
    name: contextvars.ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

_thread_local = threading.local()


def _get_thread_local_context() -> Dict[str, Any]:
    if not hasattr(_thread_local, 'context'):
        _thread_local.context = {}
    return _thread_local.context


def get_logging_context() -> Dict[str, Any]:
    """
    Return the current context fields that are set.

    Thread-local values win over contextvars for sync code running in worker
    threads, matching how the fields are written by the setters below.
    """
    context = {}
    for name, var in _vars.items():
        value = var.get()
        if value is not None:
            context[name] = value
    for name, value in _get_thread_local_context().items():
        if value is not None:
            context[name] = value
    return context


def _set(name: str, value: Optional[Any]) -> None:
    if value is not None:
        value = str(value)
    _vars[name].set(value)
    _get_thread_local_context()[name] = value


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set the correlation ID (one per sweep or worker batch)."""
    _set('correlation_id', correlation_id)


def set_account_id(account_id: Optional[Any]) -> None:
    _set('account_id', account_id)


def set_job_id(job_id: Optional[str]) -> None:
    _set('job_id', job_id)


def set_message_id(message_id: Optional[str]) -> None:
    _set('message_id', message_id)


def set_logging_context(
    account_id: Optional[Any] = None,
    correlation_id: Optional[str] = None,
    job_id: Optional[str] = None,
    message_id: Optional[str] = None
) -> None:
    """Set several context fields at once; None leaves a field untouched."""
    if account_id is not None:
        set_account_id(account_id)
    if correlation_id is not None:
        set_correlation_id(correlation_id)
    if job_id is not None:
        set_job_id(job_id)
    if message_id is not None:
        set_message_id(message_id)


def clear_context() -> None:
    """Clear all context fields for the current thread."""
    for var in _vars.values():
        var.set(None)
    if hasattr(_thread_local, 'context'):
        _thread_local.context.clear()


@contextmanager
def with_account_context(
    account_id: Optional[Any] = None,
    correlation_id: Optional[str] = None,
    job_id: Optional[str] = None,
    message_id: Optional[str] = None
):
    """
    Scope context fields to a block, restoring the previous context on exit.

    Example:
        >>> with with_account_context(account_id=7, message_id='m1'):
        ...     logger.info("Processing message")
    """
    old_context = get_logging_context()
    set_logging_context(
        account_id=account_id,
        correlation_id=correlation_id,
        job_id=job_id,
        message_id=message_id
    )
    try:
        yield
    finally:
        clear_context()
        if old_context:
            set_logging_context(**old_context)
