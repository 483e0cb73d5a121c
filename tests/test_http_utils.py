from __future__ import annotations

from http_utils import MAX_RETRY_AFTER, RetryPolicy, redact_headers, retry_after_seconds


def test_retry_policy_attempts_and_statuses() -> None:
    policy = RetryPolicy(retries=2)
    assert policy.attempts == 3
    assert policy.should_retry(429, 1)
    assert policy.should_retry(503, 2)
    assert not policy.should_retry(503, 3)
    assert not policy.should_retry(400, 1)


def test_backoff_grows_exponentially_with_bounded_jitter() -> None:
    policy = RetryPolicy(retries=3, backoff=1.0)
    assert 1.0 <= policy.delay_for_attempt(1) <= 2.0
    assert 4.0 <= policy.delay_for_attempt(3) <= 5.0
    assert RetryPolicy(retries=3).delay_for_attempt(2) == 0.0


def test_retry_after_parsing() -> None:
    assert retry_after_seconds({"Retry-After": "5"}) == 5.0
    assert retry_after_seconds({"retry-after": "9999"}) == MAX_RETRY_AFTER
    assert retry_after_seconds({"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}) is None
    assert retry_after_seconds(None) is None


def test_redact_headers_hides_credentials() -> None:
    redacted = redact_headers(
        {"x-api-key": "secret", "Cookie": ".ROBLOSECURITY=abc", "User-Agent": "rbxsync/0.1"}
    )
    assert redacted == {"x-api-key": "***", "Cookie": "***", "User-Agent": "rbxsync/0.1"}
