import logging
import threading
import time
from typing import Callable, Optional

from .errors import CallTimeout, TRANSIENT, FATAL, classify_error
from .models import Job, JobError, JobResult, Outcome

logger = logging.getLogger(__name__)


def call_with_timeout(fn: Callable, arg, timeout: Optional[float]):
    """Run fn(arg), giving up on its result after `timeout` seconds.

    The call runs on a daemon thread. On timeout CallTimeout is raised with
    that thread attached as `call`; its result is discarded, but the caller
    must join it before calling the service again.
    """
    if timeout is None:
        return fn(arg)

    box = {}

    def _target():
        try:
            box["value"] = fn(arg)
        except BaseException as e:
            box["error"] = e

    t = threading.Thread(target=_target, name="convert-call", daemon=True)
    t.start()
    t.join(timeout)
    if t.is_alive():
        err = CallTimeout(f"conversion call timed out after {timeout}s")
        err.call = t
        raise err
    if "error" in box:
        raise box["error"]
    return box.get("value")


def _as_result(value) -> JobResult:
    if isinstance(value, JobResult):
        return value
    if isinstance(value, str):
        return JobResult(content=value)
    raise TypeError(f"conversion service returned {type(value).__name__}, expected JobResult or str")


def _settle(job: Job, error: Exception):
    # one call per job at a time: a timed-out call must end before the next
    # attempt starts or the worker moves on
    call = getattr(error, "call", None)
    if call is not None and call.is_alive():
        logger.warning("Job %s: waiting for timed-out call to finish", job.id)
        call.join()


class RetryPolicy:
    """Attempt a job up to `max_attempts` times with a fixed `backoff_delay`.

    Only transient errors are retried. `sleep` is injectable so callers can
    observe or skip the backoff pauses.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        backoff_delay: float = 2.5,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if backoff_delay < 0:
            raise ValueError("backoff_delay must be >= 0")
        self.max_attempts = int(max_attempts)
        self.backoff_delay = float(backoff_delay)
        self.timeout = timeout
        self.sleep = sleep

    def execute(self, job: Job, service, on_attempt: Optional[Callable[[Job], None]] = None) -> Outcome:
        while True:
            job.attempt += 1
            if on_attempt is not None:
                on_attempt(job)

            started = time.monotonic()
            try:
                value = call_with_timeout(service.convert, job.input, self.timeout)
                result = _as_result(value)
            except Exception as e:
                _settle(job, e)
                kind = classify_error(e)
                message = str(e) or type(e).__name__
                if kind == TRANSIENT and job.attempt < self.max_attempts:
                    logger.warning(
                        "Job %s attempt %d/%d failed (%s), retrying in %.3fs",
                        job.id, job.attempt, self.max_attempts, message, self.backoff_delay,
                    )
                    self.sleep(self.backoff_delay)
                    continue
                if kind == FATAL:
                    logger.error("Job %s failed fatally on attempt %d: %s", job.id, job.attempt, message)
                else:
                    logger.error("Job %s gave up after %d attempts: %s", job.id, job.attempt, message)
                return Outcome.failure(JobError(kind=kind, message=message, attempt=job.attempt))

            result.metadata.setdefault("conversion_ms", int((time.monotonic() - started) * 1000))
            return Outcome.success(result)
