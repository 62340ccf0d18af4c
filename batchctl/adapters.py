import logging
import re
import sqlite3
import threading
from typing import Any, Dict, Optional

import requests

from .db import connect_db
from .errors import FatalError, TransientError, TRANSIENT_HTTP_STATUSES
from .interfaces import ConversionService
from .models import JobInput, JobResult
from .repository import cache_get, cache_put
from .utils import content_hash

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```\s*$")

DEFAULT_PROMPT = "Convert this Sybase SQL to Oracle PL/SQL efficiently. Output only the converted code:\n\n{code}"


def strip_code_fence(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


class HttpConversionService:
    """ConversionService over an HTTP conversion function.

    POSTs {"code", "prompt", "aiModel"} and expects {"convertedCode"} back.
    Connection problems, timeouts, 408/425/429 and 5xx are transient; other
    4xx responses and unusable bodies are fatal.
    """

    def __init__(self, endpoint: str, ai_model: Optional[str] = None, timeout: Optional[float] = 60,
                 prompt_template: str = DEFAULT_PROMPT, session: Optional[requests.Session] = None):
        if not endpoint:
            raise ValueError("endpoint cannot be empty.")
        self.endpoint = endpoint
        self.ai_model = ai_model
        self.timeout = timeout
        self.prompt_template = prompt_template
        self.session = session or requests.Session()

    def build_payload(self, job_input: JobInput) -> Dict[str, Any]:
        template = job_input.options.get("prompt") or self.prompt_template
        return {
            "code": job_input.content,
            "prompt": template.replace("{code}", job_input.content),
            "aiModel": job_input.options.get("ai_model") or self.ai_model,
        }

    def convert(self, job_input: JobInput) -> JobResult:
        payload = self.build_payload(job_input)
        try:
            resp = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise TransientError(f"{job_input.name}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise FatalError(f"{job_input.name}: {e}") from e

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            msg = f"{job_input.name}: HTTP {resp.status_code}: {detail}"
            if resp.status_code in TRANSIENT_HTTP_STATUSES:
                raise TransientError(msg)
            raise FatalError(msg)

        try:
            body = resp.json()
        except ValueError as e:
            raise FatalError(f"{job_input.name}: response is not JSON") from e
        converted = body.get("convertedCode") if isinstance(body, dict) else None
        if not converted:
            raise FatalError(f"{job_input.name}: response has no convertedCode")
        return JobResult(
            content=strip_code_fence(converted),
            metadata={"ai_model": payload["aiModel"]},
        )


def _error_detail(resp) -> str:
    try:
        body = resp.json()
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])[:500]
    except ValueError:
        pass
    return (resp.text or resp.reason or "")[:500]


class MemoryCache:
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, converted: str, metadata: Dict[str, Any]):
        with self._lock:
            self._data[key] = {"converted_content": converted, "metadata": dict(metadata)}


class SqliteCache:
    """Cache store over the conversion_cache table; one connection per call."""

    def __init__(self, path: Optional[str] = None):
        self.path = path

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        conn = connect_db(self.path)
        try:
            return cache_get(conn, key)
        finally:
            conn.close()

    def put(self, key: str, converted: str, metadata: Dict[str, Any]):
        conn = connect_db(self.path)
        try:
            cache_put(conn, key, converted, metadata)
        finally:
            conn.close()


class CachingConversionService:
    """Serve repeated inputs from a cache keyed by content hash.

    The key covers the content, the model and the prompt. Cache read or write
    failures are logged and the call goes to the wrapped service.
    """

    def __init__(self, service: ConversionService, store=None):
        self.service = service
        self.store = store if store is not None else MemoryCache()

    def _key(self, job_input: JobInput) -> str:
        return content_hash(
            job_input.content,
            str(job_input.options.get("ai_model") or ""),
            str(job_input.options.get("prompt") or ""),
        )

    def convert(self, job_input: JobInput) -> JobResult:
        key = self._key(job_input)
        try:
            hit = self.store.get(key)
        except sqlite3.Error as e:
            logger.warning("Conversion cache lookup failed for %s: %s", job_input.name, e)
            hit = None
        if hit is not None:
            logger.info("Using cached conversion for %s", job_input.name)
            metadata = dict(hit.get("metadata") or {})
            metadata["cached"] = True
            return JobResult(content=hit["converted_content"], metadata=metadata)

        value = self.service.convert(job_input)
        result = value if isinstance(value, JobResult) else JobResult(content=value)
        try:
            self.store.put(key, result.content, result.metadata)
        except sqlite3.Error as e:
            logger.warning("Conversion cache write failed for %s: %s", job_input.name, e)
        return result
