import pytest
import requests

from batchctl.adapters import (
    CachingConversionService, HttpConversionService, MemoryCache, SqliteCache, strip_code_fence,
)
from batchctl.errors import FatalError, TransientError
from batchctl.models import JobInput, JobResult


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=""):
        self.status_code = status_code
        self._body = body
        self.text = text
        self.reason = ""

    def json(self):
        if self._body is None:
            raise ValueError("no json")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.error is not None:
            raise self.error
        return self.response


SOURCE = JobInput(name="proc.sql", content="CREATE PROCEDURE p AS SELECT 1", options={"ai_model": "gemini-2.5-pro"})


def _service(session):
    return HttpConversionService("http://svc/convert", ai_model="gemini-2.5-flash", timeout=7, session=session)


def test_posts_code_prompt_and_model():
    session = FakeSession(FakeResponse(body={"convertedCode": "```sql\nCREATE OR REPLACE PROCEDURE p\n```"}))
    result = _service(session).convert(SOURCE)

    url, payload, timeout = session.posts[0]
    assert url == "http://svc/convert"
    assert timeout == 7
    assert payload["code"] == SOURCE.content
    assert payload["aiModel"] == "gemini-2.5-pro"
    assert SOURCE.content in payload["prompt"]
    assert result.content == "CREATE OR REPLACE PROCEDURE p"
    assert result.metadata["ai_model"] == "gemini-2.5-pro"


@pytest.mark.parametrize("status", [429, 500, 503])
def test_retryable_statuses_are_transient(status):
    session = FakeSession(FakeResponse(status, body={"error": "quota exceeded"}))
    with pytest.raises(TransientError, match="quota exceeded"):
        _service(session).convert(SOURCE)


@pytest.mark.parametrize("status", [400, 401, 404])
def test_client_errors_are_fatal(status):
    with pytest.raises(FatalError):
        _service(FakeSession(FakeResponse(status, text="bad request"))).convert(SOURCE)


@pytest.mark.parametrize("error", [requests.exceptions.ConnectionError("refused"), requests.exceptions.ReadTimeout("slow")])
def test_network_trouble_is_transient(error):
    with pytest.raises(TransientError):
        _service(FakeSession(error=error)).convert(SOURCE)


def test_unusable_body_is_fatal():
    with pytest.raises(FatalError, match="not JSON"):
        _service(FakeSession(FakeResponse(200, text="<html>"))).convert(SOURCE)
    with pytest.raises(FatalError, match="convertedCode"):
        _service(FakeSession(FakeResponse(200, body={"other": 1}))).convert(SOURCE)


def test_endpoint_required():
    with pytest.raises(ValueError):
        HttpConversionService("")


def test_strip_code_fence():
    assert strip_code_fence("```plsql\nBEGIN NULL; END;\n```") == "BEGIN NULL; END;"
    assert strip_code_fence("BEGIN NULL; END;") == "BEGIN NULL; END;"


class CountingService:
    def __init__(self):
        self.calls = 0

    def convert(self, job_input):
        self.calls += 1
        return JobResult(content=job_input.content.upper(), metadata={"ai_model": "m"})


def test_cache_serves_repeats():
    inner = CountingService()
    svc = CachingConversionService(inner, MemoryCache())

    first = svc.convert(SOURCE)
    second = svc.convert(JobInput(name="copy.sql", content=SOURCE.content, options=SOURCE.options))

    assert inner.calls == 1
    assert second.content == first.content
    assert second.metadata["cached"] is True
    assert "cached" not in first.metadata


def test_cache_key_includes_model():
    inner = CountingService()
    svc = CachingConversionService(inner)
    svc.convert(SOURCE)
    svc.convert(JobInput(name="proc.sql", content=SOURCE.content, options={"ai_model": "other"}))
    assert inner.calls == 2


def test_sqlite_cache_survives_new_service(db_path):
    inner = CountingService()
    CachingConversionService(inner, SqliteCache(db_path)).convert(SOURCE)
    again = CachingConversionService(inner, SqliteCache(db_path)).convert(SOURCE)

    assert inner.calls == 1
    assert again.metadata == {"ai_model": "m", "cached": True}


def test_failures_are_not_cached():
    class Flaky:
        calls = 0

        def convert(self, job_input):
            self.calls += 1
            if self.calls == 1:
                raise TransientError("429")
            return "ok"

    inner = Flaky()
    svc = CachingConversionService(inner)
    with pytest.raises(TransientError):
        svc.convert(SOURCE)
    assert svc.convert(SOURCE).content == "ok"
    assert inner.calls == 2
