import time

import pytest

from batchctl.errors import FatalError, TransientError
from batchctl.retry import RetryPolicy

from conftest import FakeService, make_jobs


def test_succeeds_on_third_attempt(recording_sleep):
    service = FakeService({"a": [TransientError("rate limited"), TransientError("503"), None]})
    job = make_jobs(["a"])[0]

    outcome = RetryPolicy(max_attempts=3, backoff_delay=2.5, sleep=recording_sleep).execute(job, service)

    assert outcome.succeeded
    assert outcome.result.content == "converted:-- a"
    assert job.attempt == 3
    assert recording_sleep.calls == [2.5, 2.5]


def test_exhaustion_keeps_last_error(recording_sleep):
    service = FakeService({"a": [TransientError("first"), TransientError("second"), TransientError("third")]})
    job = make_jobs(["a"])[0]

    outcome = RetryPolicy(max_attempts=3, backoff_delay=2.5, sleep=recording_sleep).execute(job, service)

    assert not outcome.succeeded
    assert job.attempt == 3
    assert outcome.error.kind == "transient"
    assert outcome.error.message == "third"
    assert outcome.error.attempt == 3
    # no pause after the final attempt
    assert recording_sleep.calls == [2.5, 2.5]


def test_fatal_short_circuits(recording_sleep):
    service = FakeService({"a": [FatalError("malformed input"), None]})
    job = make_jobs(["a"])[0]

    outcome = RetryPolicy(max_attempts=5, backoff_delay=1, sleep=recording_sleep).execute(job, service)

    assert not outcome.succeeded
    assert outcome.error.kind == "fatal"
    assert job.attempt == 1
    assert service.attempts("a") == 1
    assert recording_sleep.calls == []


def test_unclassified_error_is_fatal(recording_sleep):
    service = FakeService({"a": [KeyError("boom")]})
    job = make_jobs(["a"])[0]

    outcome = RetryPolicy(max_attempts=3, backoff_delay=1, sleep=recording_sleep).execute(job, service)

    assert outcome.error.kind == "fatal"
    assert job.attempt == 1


def test_single_attempt_never_sleeps(recording_sleep):
    service = FakeService({"a": [TransientError("nope")]})
    job = make_jobs(["a"])[0]

    outcome = RetryPolicy(max_attempts=1, backoff_delay=9, sleep=recording_sleep).execute(job, service)

    assert outcome.error.kind == "transient"
    assert job.attempt == 1
    assert recording_sleep.calls == []


def test_timeout_is_transient(recording_sleep):
    service = FakeService(delay=0.2)
    job = make_jobs(["slow"])[0]

    outcome = RetryPolicy(max_attempts=2, backoff_delay=0, timeout=0.05, sleep=recording_sleep).execute(job, service)

    assert outcome.error.kind == "transient"
    assert "timed out" in outcome.error.message
    assert job.attempt == 2


def test_timed_out_call_never_overlaps_the_next_attempt(recording_sleep):
    service = FakeService(delay=0.15)
    job = make_jobs(["slow"])[0]

    started = time.monotonic()
    outcome = RetryPolicy(max_attempts=3, backoff_delay=0, timeout=0.02, sleep=recording_sleep).execute(job, service)

    assert not outcome.succeeded
    assert service.attempts("slow") == 3
    assert service.max_running == 1
    assert service.running == 0
    # every abandoned call has run to completion before execute returns
    assert time.monotonic() - started >= 0.4


def test_on_attempt_sees_every_attempt(recording_sleep):
    service = FakeService({"a": [TransientError("x"), None]})
    job = make_jobs(["a"])[0]
    seen = []

    RetryPolicy(max_attempts=3, backoff_delay=0, sleep=recording_sleep).execute(
        job, service, on_attempt=lambda j: seen.append(j.attempt)
    )

    assert seen == [1, 2]


def test_plain_string_result_is_wrapped(recording_sleep):
    class StrService:
        def convert(self, job_input):
            return "CREATE OR REPLACE PROCEDURE p AS BEGIN NULL; END;"

    job = make_jobs(["a"])[0]
    outcome = RetryPolicy(max_attempts=1, backoff_delay=0, sleep=recording_sleep).execute(job, StrService())

    assert outcome.succeeded
    assert outcome.result.content.startswith("CREATE OR REPLACE")
    assert "conversion_ms" in outcome.result.metadata


@pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"backoff_delay": -0.1}])
def test_rejects_bad_parameters(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
