import hashlib
import re
from datetime import datetime, timezone

# e.g. "2500", "2500ms", "2.5s", "1m"
DURATION_RE = re.compile(r"(?i)^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$")


def parse_duration_ms(s: str) -> int:
    """
    Parse durations like '2500', '2500ms', '2.5s', '1m'.
    A bare number is milliseconds. Returns total milliseconds (int).
    Raises ValueError on bad input or a negative value.
    """
    if s is None or not str(s).strip():
        raise ValueError("duration string is empty")
    m = DURATION_RE.match(str(s))
    if not m:
        raise ValueError(f"Invalid duration format: {s!r}")
    value, unit = m.groups()
    scale = {"ms": 1, "s": 1000, "m": 60000}[(unit or "ms").lower()]
    return int(round(float(value) * scale))


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def content_hash(content: str, *parts: str) -> str:
    """sha256 over the content and any options that change the conversion."""
    h = hashlib.sha256()
    for p in (content,) + parts:
        h.update((p or "").encode("utf-8"))
        h.update(b"\0")
    return h.hexdigest()
