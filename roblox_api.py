from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlparse

import requests

from errors import GatewayError, ResourceNotFound
from http_utils import RetryPolicy, redact_headers, retry_after_seconds
from resources import AssetMetadata, AssetOutcome, OperationHandle

USER_AGENT = "rbxsync/0.1"
BADGES_BASE = "https://badges.roblox.com"
DEVELOP_BASE = "https://develop.roblox.com"
GAMES_BASE = "https://games.roblox.com"

_ID_KEYS = ("id", "gamePassId", "productId", "developerProductId", "badgeId", "assetId")
_PAGE_ITEM_KEYS = ("gamePasses", "developerProducts", "badges", "data")
_PAGE_CURSOR_KEYS = ("nextPageCursor", "nextPageToken")


def game_passes_url(api_base: str, universe_id: int) -> str:
    return f"{api_base}/game-passes/v1/universes/{universe_id}/game-passes"


def developer_products_url(api_base: str, universe_id: int) -> str:
    return f"{api_base}/developer-products/v2/universes/{universe_id}/developer-products"


def badges_list_url(universe_id: int) -> str:
    return f"{BADGES_BASE}/v1/universes/{universe_id}/badges"


def universe_info_url(universe_id: int) -> str:
    return f"{GAMES_BASE}/v1/games?universeIds={universe_id}"


def parse_page(payload: Any) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """Split a list response into its items and the next-page cursor."""
    if not isinstance(payload, dict):
        return [], None
    items: List[Dict[str, Any]] = []
    for key in _PAGE_ITEM_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            items = [item for item in value if isinstance(item, dict)]
            break
    cursor = None
    for key in _PAGE_CURSOR_KEYS:
        value = payload.get(key)
        if value:
            cursor = str(value)
            break
    return items, cursor


def parse_operation(payload: Any) -> AssetOutcome:
    if not isinstance(payload, dict):
        return AssetOutcome.failed("Unexpected operation response")
    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else str(error)
        return AssetOutcome.failed(message or "Unknown error")
    if not payload.get("done"):
        return AssetOutcome.pending()
    response = payload.get("response")
    asset_id = response.get("assetId") if isinstance(response, dict) else None
    try:
        return AssetOutcome.succeeded(int(asset_id))
    except (TypeError, ValueError):
        return AssetOutcome.failed("Operation completed but no asset ID found")


def form_fields(payload: Mapping[str, Any]) -> Dict[str, Tuple[None, str]]:
    """Encode a flat payload as multipart text parts."""
    fields: Dict[str, Tuple[None, str]] = {}
    for key, value in payload.items():
        if value is None:
            text = ""
        elif isinstance(value, bool):
            text = "true" if value else "false"
        elif isinstance(value, (list, dict)):
            text = json.dumps(value)
        else:
            text = str(value)
        fields[key] = (None, text)
    return fields


def raise_for_response(response: requests.Response, action: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    body = response.text or ""
    if status == 404:
        raise ResourceNotFound(f"Failed to {action}", status, body)
    raise GatewayError(f"Failed to {action}", status, body)


def _json(response: requests.Response) -> Any:
    if not (response.text or "").strip():
        return {}
    try:
        return response.json()
    except ValueError as exc:
        raise GatewayError(
            "Invalid JSON response",
            response.status_code,
            response.text,
        ) from exc


class RobloxClient:
    def __init__(
        self,
        api_key: str,
        timeout: int,
        *,
        api_base: str = "https://apis.roblox.com",
        retries: int = 3,
        retry_backoff: float = 1.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.retry = RetryPolicy(retries=retries, backoff=retry_backoff)
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT, "x-api-key": api_key})
        self._sleep = sleep

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base}{path}"

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        if urlparse(url).netloc != urlparse(self.api_base).netloc:
            # the key only goes to the Open Cloud host
            kwargs["headers"] = {**(kwargs.get("headers") or {}), "x-api-key": None}
        files = kwargs.get("files")

        def reset_files() -> None:
            if not files:
                return
            for value in files.values():
                file_obj = value[1] if isinstance(value, tuple) and len(value) >= 2 else value
                seek = getattr(file_obj, "seek", None)
                if callable(seek):
                    seek(0)

        logging.debug(
            "%s %s headers=%s", method.upper(), url, redact_headers(self.session.headers)
        )
        attempts = self.retry.attempts
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                reset_files()
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.RequestException as exc:
                if attempt >= attempts:
                    raise
                self._sleep_backoff(attempt, method, url, exc, None)
                continue

            if self.retry.should_retry(response.status_code, attempt):
                self._sleep_backoff(
                    attempt,
                    method,
                    url,
                    RuntimeError(f"HTTP {response.status_code}"),
                    retry_after_seconds(response.headers),
                )
                continue
            return response
        return response

    def _sleep_backoff(
        self,
        attempt: int,
        method: str,
        url: str,
        exc: Exception,
        retry_after: float | None,
    ) -> None:
        delay = retry_after if retry_after is not None else self.retry.delay_for_attempt(attempt)
        logging.warning(
            "HTTP retry %s/%s after error for %s %s: %s (sleep %.1fs)",
            attempt,
            self.retry.retries,
            method.upper(),
            url,
            exc,
            delay,
        )
        if delay > 0:
            self._sleep(delay)

    @staticmethod
    def extract_id(payload: Any) -> Optional[int]:
        if isinstance(payload, dict):
            for key in _ID_KEYS:
                if payload.get(key) is not None:
                    try:
                        return int(payload[key])
                    except (TypeError, ValueError):
                        continue
        if isinstance(payload, int) and not isinstance(payload, bool):
            return payload
        if isinstance(payload, str) and payload.strip().isdigit():
            return int(payload.strip())
        return None

    def _created_id(self, response: requests.Response, what: str) -> int:
        remote_id = self.extract_id(_json(response))
        if remote_id is None:
            raise GatewayError(
                f"Create {what} response has no id", response.status_code, response.text
            )
        return remote_id

    # --- game passes ---

    def get_game_pass(self, universe_id: int, game_pass_id: int) -> Dict[str, Any]:
        response = self.request(
            "get", f"{game_passes_url(self.api_base, universe_id)}/{game_pass_id}"
        )
        raise_for_response(response, f"get game pass {game_pass_id}")
        return _json(response)

    def create_game_pass(self, universe_id: int, payload: Mapping[str, Any]) -> int:
        response = self.request(
            "post", game_passes_url(self.api_base, universe_id), files=form_fields(payload)
        )
        raise_for_response(response, "create game pass")
        return self._created_id(response, "game pass")

    def update_game_pass(
        self, universe_id: int, game_pass_id: int, payload: Mapping[str, Any]
    ) -> None:
        response = self.request(
            "patch",
            f"{game_passes_url(self.api_base, universe_id)}/{game_pass_id}",
            files=form_fields(payload),
        )
        raise_for_response(response, f"update game pass {game_pass_id}")

    # --- developer products ---

    def get_developer_product(self, universe_id: int, product_id: int) -> Dict[str, Any]:
        response = self.request(
            "get", f"{developer_products_url(self.api_base, universe_id)}/{product_id}"
        )
        raise_for_response(response, f"get developer product {product_id}")
        return _json(response)

    def create_developer_product(self, universe_id: int, payload: Mapping[str, Any]) -> int:
        response = self.request(
            "post",
            developer_products_url(self.api_base, universe_id),
            files=form_fields(payload),
        )
        raise_for_response(response, "create developer product")
        return self._created_id(response, "developer product")

    def update_developer_product(
        self, universe_id: int, product_id: int, payload: Mapping[str, Any]
    ) -> None:
        response = self.request(
            "patch",
            f"{developer_products_url(self.api_base, universe_id)}/{product_id}",
            files=form_fields(payload),
        )
        raise_for_response(response, f"update developer product {product_id}")

    # --- badges ---

    def get_badge(self, badge_id: int) -> Dict[str, Any]:
        response = self.request("get", f"{BADGES_BASE}/v1/badges/{badge_id}")
        raise_for_response(response, f"get badge {badge_id}")
        return _json(response)

    def create_badge(self, universe_id: int, payload: Mapping[str, Any]) -> int:
        response = self.request(
            "post",
            f"/legacy-badges/v1/universes/{universe_id}/badges",
            files=form_fields(payload),
        )
        raise_for_response(response, "create badge")
        return self._created_id(response, "badge")

    def update_badge(self, badge_id: int, payload: Mapping[str, Any]) -> None:
        response = self.request(
            "patch", f"/legacy-badges/v1/badges/{badge_id}", json=dict(payload)
        )
        raise_for_response(response, f"update badge {badge_id}")

    def update_badge_icon(
        self, badge_id: int, data: bytes, file_name: str, content_type: str
    ) -> None:
        response = self.request(
            "post",
            f"/legacy-publish/v1/badges/{badge_id}/icon",
            files={"request.files": (file_name, data, content_type)},
        )
        raise_for_response(response, f"update badge icon {badge_id}")

    # --- assets ---

    def upload_asset(self, data: bytes, metadata: AssetMetadata) -> OperationHandle:
        files = {
            "request": (None, json.dumps(metadata.to_request()), "application/json"),
            "fileContent": (metadata.file_name, data, metadata.content_type),
        }
        response = self.request("post", "/assets/v1/assets", files=files)
        raise_for_response(response, f"upload asset {metadata.file_name}")
        payload = _json(response)
        logging.debug("Asset upload operation: %s", payload)
        path = payload.get("path") if isinstance(payload, dict) else None
        return OperationHandle(path=path, outcome=parse_operation(payload))

    def get_operation(self, operation_path: str) -> AssetOutcome:
        response = self.request("get", f"/assets/v1/{operation_path.lstrip('/')}")
        raise_for_response(response, f"poll operation {operation_path}")
        return parse_operation(_json(response))

    # --- places ---

    def publish_place(self, universe_id: int, place_id: int, data: bytes) -> Optional[int]:
        response = self.request(
            "post",
            f"/universes/v1/{universe_id}/places/{place_id}/versions",
            params={"versionType": "Published"},
            data=data,
            headers={"Content-Type": "application/octet-stream"},
        )
        raise_for_response(response, f"publish place {place_id}")
        payload = _json(response)
        version = payload.get("versionNumber") if isinstance(payload, dict) else None
        return int(version) if version is not None else None


class RobloxCookieClient:
    """develop.roblox.com client authenticated with a .ROBLOSECURITY cookie.

    Mutating calls need an x-csrf-token; the server hands one out on a 403 and
    the request is repeated once with it.
    """

    def __init__(
        self,
        cookie: str,
        timeout: int,
        *,
        develop_base: str = DEVELOP_BASE,
        session: requests.Session | None = None,
    ) -> None:
        self.develop_base = develop_base.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {"User-Agent": USER_AGENT, "Cookie": f".ROBLOSECURITY={cookie}"}
        )

    def _request_with_csrf(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        token = response.headers.get("x-csrf-token") if response.status_code == 403 else None
        if token:
            logging.debug("Refreshing CSRF token for %s %s", method.upper(), url)
            self.session.headers["x-csrf-token"] = token
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        return response

    def get_universe_configuration(self, universe_id: int) -> Dict[str, Any]:
        url = f"{self.develop_base}/v1/universes/{universe_id}/configuration"
        response = self._request_with_csrf("get", url)
        raise_for_response(response, f"get universe {universe_id} configuration")
        return _json(response)

    def update_universe_configuration(
        self, universe_id: int, settings: Mapping[str, Any]
    ) -> Dict[str, Any]:
        url = f"{self.develop_base}/v2/universes/{universe_id}/configuration"
        response = self._request_with_csrf("patch", url, json=dict(settings))
        raise_for_response(response, f"update universe {universe_id} configuration")
        return _json(response)
