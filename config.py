from dataclasses import dataclass
import os

from errors import ConfigError

DEFAULT_API_BASE = "https://apis.roblox.com"
DEFAULT_TIMEOUT = 60
DEFAULT_HTTP_RETRIES = 3
DEFAULT_HTTP_RETRY_BACKOFF = 1.0
DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_ATTEMPTS = 30
DEFAULT_ON_MISSING = "error"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_PROJECT_FILE = "rbxsync.yml"
DEFAULT_LOCK_FILE = "rbxsync-lock.yml"

ON_MISSING_POLICIES = {"error", "recreate"}


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class Config:
    api_key: str
    cookie: str | None
    universe_id: int | None
    api_base: str
    timeout: int
    http_retries: int
    http_retry_backoff: float
    poll_interval: float
    poll_attempts: int
    verify_remote: bool
    on_missing: str
    log_level: str

    def require_api_key(self) -> str:
        if not self.api_key:
            raise ConfigError("ROBLOX_API_KEY environment variable not set")
        return self.api_key

    def resolve_universe_id(self, declared: int | None) -> int:
        universe_id = declared if declared is not None else self.universe_id
        if not universe_id:
            raise ConfigError(
                "Universe id is required: set universe.id in the project file "
                "or ROBLOX_UNIVERSE_ID"
            )
        return int(universe_id)


def load_config() -> Config:
    api_key = os.environ.get("ROBLOX_API_KEY", "").strip()
    cookie = os.environ.get("ROBLOX_COOKIE", "").strip() or None

    universe_id: int | None = parse_int(os.environ.get("ROBLOX_UNIVERSE_ID"), 0)
    if universe_id is not None and universe_id <= 0:
        universe_id = None

    api_base = os.environ.get("RBXSYNC_API_BASE", DEFAULT_API_BASE)
    timeout = parse_int(os.environ.get("RBXSYNC_HTTP_TIMEOUT"), DEFAULT_TIMEOUT)
    http_retries = parse_int(os.environ.get("RBXSYNC_HTTP_RETRIES"), DEFAULT_HTTP_RETRIES)
    http_retry_backoff = parse_float(
        os.environ.get("RBXSYNC_HTTP_RETRY_BACKOFF"), DEFAULT_HTTP_RETRY_BACKOFF
    )
    poll_interval = parse_float(
        os.environ.get("RBXSYNC_POLL_INTERVAL"), DEFAULT_POLL_INTERVAL
    )
    poll_attempts = parse_int(os.environ.get("RBXSYNC_POLL_ATTEMPTS"), DEFAULT_POLL_ATTEMPTS)
    verify_remote = parse_bool(os.environ.get("RBXSYNC_VERIFY_REMOTE"), True)

    on_missing = os.environ.get("RBXSYNC_ON_MISSING", DEFAULT_ON_MISSING).strip().lower()
    if on_missing not in ON_MISSING_POLICIES:
        raise ConfigError(
            f"RBXSYNC_ON_MISSING must be one of {sorted(ON_MISSING_POLICIES)}, got {on_missing!r}"
        )
    log_level = os.environ.get("RBXSYNC_LOG_LEVEL", DEFAULT_LOG_LEVEL)

    return Config(
        api_key=api_key,
        cookie=cookie,
        universe_id=universe_id,
        api_base=api_base,
        timeout=max(1, timeout),
        http_retries=max(0, http_retries),
        http_retry_backoff=max(0.0, http_retry_backoff),
        poll_interval=max(0.0, poll_interval),
        poll_attempts=max(1, poll_attempts),
        verify_remote=verify_remote,
        on_missing=on_missing,
        log_level=log_level,
    )
