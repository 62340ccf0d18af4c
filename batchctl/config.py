import os
from dataclasses import dataclass
from typing import Dict, Optional

DEFAULT_CONFIG = {
    "concurrency_limit": "5",
    "max_attempts": "3",
    "backoff_ms": "2500",         # fixed pause between attempts of one file
    "timeout_seconds": "60",
    "endpoint": os.environ.get("BATCHCTL_ENDPOINT", "http://localhost:8888/.netlify/functions/convert"),
    "ai_model": "gemini-2.5-flash",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

_INT_KEYS = ("concurrency_limit", "max_attempts", "backoff_ms", "timeout_seconds")


@dataclass
class Settings:
    concurrency_limit: int
    max_attempts: int
    backoff_ms: int
    timeout_seconds: Optional[int]
    endpoint: str
    ai_model: str

    @property
    def backoff_delay(self) -> float:
        return self.backoff_ms / 1000.0


def validate_config_value(key: str, value: str) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in _INT_KEYS:
        try:
            n = int(value)
        except ValueError:
            raise ValueError(f"{key} must be an integer.")
        minimum = 0 if key in ("backoff_ms", "timeout_seconds") else 1
        if n < minimum:
            raise ValueError(f"{key} must be >= {minimum}")
    elif not str(value).strip():
        raise ValueError(f"{key} cannot be empty.")
    return str(value)


def parse_settings(raw: Dict[str, str]) -> Settings:
    """Typed view over stored config strings; missing keys fall back to defaults."""
    merged = dict(DEFAULT_CONFIG)
    merged.update({k: v for k, v in raw.items() if k in ALLOWED_CONFIG_KEYS})
    timeout = int(merged["timeout_seconds"])
    return Settings(
        concurrency_limit=int(merged["concurrency_limit"]),
        max_attempts=int(merged["max_attempts"]),
        backoff_ms=int(merged["backoff_ms"]),
        timeout_seconds=timeout or None,  # 0 disables the per-call timeout
        endpoint=merged["endpoint"],
        ai_model=merged["ai_model"],
    )
