"""Error taxonomy for conversion batches.

Conversion failures are either transient (retry with the fixed backoff) or
fatal (fail the job at once). Persistence failures are kept apart: they are
reported on the batch summary and never decide a job's fate.
"""

TRANSIENT = "transient"
FATAL = "fatal"

# HTTP statuses worth another attempt: timeouts, rate limiting, server trouble
TRANSIENT_HTTP_STATUSES = frozenset((408, 425, 429, 500, 502, 503, 504))


class ConversionError(Exception):
    kind = FATAL


class TransientError(ConversionError):
    """Network fault, rate limit or timeout; the same input may succeed later."""
    kind = TRANSIENT


class FatalError(ConversionError):
    """Malformed input or permanent rejection by the service."""
    kind = FATAL


class CallTimeout(TransientError):
    call = None  # the abandoned call thread, if any


class PersistenceError(Exception):
    pass


class DuplicateRecord(PersistenceError):
    """Insert lost to an existing record with the same identity."""


class InvalidTransition(RuntimeError):
    pass


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, ConversionError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TRANSIENT
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    if status is not None:
        return TRANSIENT if int(status) in TRANSIENT_HTTP_STATUSES else FATAL
    return FATAL
