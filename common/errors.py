"""
Shared error vocabulary for adapters and the outbox worker.

Adapters never raise for upstream trouble; they return a result carrying
an ErrorKind and the worker decides what to do with it.
"""

from enum import Enum

UNKNOWN_ERROR_LABEL = "不明なエラー"


class ErrorKind(str, Enum):
    """Why an adapter call did not succeed."""

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    UPSTREAM = "upstream"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


# Kinds worth another attempt; everything else is terminal
RETRYABLE_ERROR_KINDS = {ErrorKind.TRANSPORT, ErrorKind.UPSTREAM, ErrorKind.UNKNOWN}


def error_message(exc: object) -> str:
    """Turn anything raised or returned as an error into a display message."""
    if isinstance(exc, BaseException):
        return str(exc) or exc.__class__.__name__
    if isinstance(exc, str) and exc:
        return exc
    return UNKNOWN_ERROR_LABEL
