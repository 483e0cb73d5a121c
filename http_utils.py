from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping
import random

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
SENSITIVE_HEADERS = {"x-api-key", "cookie", "x-csrf-token", "authorization"}
MAX_RETRY_AFTER = 60.0


@dataclass
class RetryPolicy:
    retries: int = 0
    backoff: float = 0.0
    retry_statuses: set[int] = field(default_factory=lambda: set(DEFAULT_RETRY_STATUSES))

    def __post_init__(self) -> None:
        self.retries = max(0, int(self.retries))
        self.backoff = max(0.0, float(self.backoff))
        if not self.retry_statuses:
            self.retry_statuses = set(DEFAULT_RETRY_STATUSES)

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def should_retry(self, status_code: int, attempt: int) -> bool:
        return status_code in self.retry_statuses and attempt < self.attempts

    def delay_for_attempt(self, attempt: int) -> float:
        if self.backoff <= 0:
            return 0.0
        delay = self.backoff * (2 ** (attempt - 1))
        delay += random.uniform(0.0, self.backoff)
        return delay


def retry_after_seconds(headers: Mapping[str, Any] | None) -> float | None:
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    return min(seconds, MAX_RETRY_AFTER)


def redact_headers(headers: Mapping[str, Any] | None) -> dict[str, str]:
    redacted: dict[str, str] = {}
    for key, value in (headers or {}).items():
        if str(key).lower() in SENSITIVE_HEADERS:
            redacted[str(key)] = "***"
        else:
            redacted[str(key)] = str(value)
    return redacted
