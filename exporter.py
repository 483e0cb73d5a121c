"""Export the live state of an experience.

Lists game passes, developer products and badges (following page cursors) and
reads the public universe details, all concurrently with aiohttp, then renders
them as an rbxsync.yml-shaped YAML document or as a Luau table. The lock file
is never read or written here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import aiohttp
import yaml

from errors import GatewayError, ResourceNotFound
from http_utils import RetryPolicy, retry_after_seconds
from roblox_api import (
    USER_AGENT,
    badges_list_url,
    developer_products_url,
    game_passes_url,
    parse_page,
    universe_info_url,
)
from telemetry import start_span
from utils import atomic_write_text

EXPORT_FORMATS = ("yaml", "luau")
DEFAULT_OUTPUTS = {"yaml": "rbxsync-export.yml", "luau": "rbxsync-export.luau"}
MAX_PAGES = 100


@dataclass
class ExportSnapshot:
    universe_id: int
    universe: Dict[str, Any] = field(default_factory=dict)
    game_passes: List[Dict[str, Any]] = field(default_factory=list)
    developer_products: List[Dict[str, Any]] = field(default_factory=list)
    badges: List[Dict[str, Any]] = field(default_factory=list)


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if item.get(key) is not None:
            return item[key]
    return None


def _price(item: Dict[str, Any]) -> Optional[int]:
    value = _first(item, "price", "priceInRobux")
    if value is None:
        info = item.get("priceInformation")
        if isinstance(info, dict):
            value = info.get("defaultPriceInRobux")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


def game_pass_record(item: Dict[str, Any]) -> Dict[str, Any]:
    return _compact(
        {
            "name": item.get("name"),
            "id": _first(item, "gamePassId", "id"),
            "description": item.get("description"),
            "price": _price(item),
            "is_for_sale": item.get("isForSale"),
        }
    )


def developer_product_record(item: Dict[str, Any]) -> Dict[str, Any]:
    return _compact(
        {
            "name": item.get("name"),
            "id": _first(item, "productId", "developerProductId", "id"),
            "description": item.get("description"),
            "price": _price(item),
            "is_active": item.get("isForSale"),
        }
    )


def badge_record(item: Dict[str, Any]) -> Dict[str, Any]:
    return _compact(
        {
            "name": item.get("name"),
            "id": item.get("id"),
            "description": item.get("description"),
            "is_enabled": item.get("enabled"),
        }
    )


def universe_record(item: Dict[str, Any]) -> Dict[str, Any]:
    return _compact(
        {
            "name": item.get("name"),
            "description": item.get("description"),
            "genre": item.get("genre"),
            "max_players": item.get("maxPlayers"),
        }
    )


class Exporter:
    def __init__(
        self,
        api_key: str,
        universe_id: int,
        *,
        api_base: str = "https://apis.roblox.com",
        timeout: int = 60,
        retries: int = 3,
        retry_backoff: float = 1.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.api_key = api_key
        self.universe_id = universe_id
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.retry = RetryPolicy(retries=retries, backoff=retry_backoff)
        self._session = session

    def _headers(self, url: str) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        # the key only goes to the Open Cloud host
        if urlparse(url).netloc == urlparse(self.api_base).netloc:
            headers["x-api-key"] = self.api_key
        return headers

    async def _fetch_json(
        self,
        session: aiohttp.ClientSession,
        url: str,
        params: Dict[str, str],
    ) -> Any:
        attempts = self.retry.attempts
        for attempt in range(1, attempts + 1):
            try:
                async with session.get(url, params=params, headers=self._headers(url)) as response:
                    if self.retry.should_retry(response.status, attempt):
                        delay = retry_after_seconds(response.headers)
                        if delay is None:
                            delay = self.retry.delay_for_attempt(attempt)
                        logging.warning(
                            "HTTP retry %s/%s for GET %s: HTTP %s (sleep %.1fs)",
                            attempt,
                            self.retry.retries,
                            url,
                            response.status,
                            delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    text = await response.text()
                    if response.status == 404:
                        raise ResourceNotFound(f"Failed to GET {url}", response.status, text)
                    if response.status >= 300:
                        raise GatewayError(f"Failed to GET {url}", response.status, text)
                    return await response.json(content_type=None) if text.strip() else {}
            except aiohttp.ClientError as exc:
                if attempt >= attempts:
                    raise GatewayError(f"Failed to GET {url}: {exc}") from exc
                delay = self.retry.delay_for_attempt(attempt)
                logging.warning("HTTP retry %s/%s for GET %s: %s", attempt, self.retry.retries, url, exc)
                await asyncio.sleep(delay)
        raise GatewayError(f"Failed to GET {url}: retries exhausted")

    async def _list_all(
        self,
        session: aiohttp.ClientSession,
        url: str,
        page_params: Dict[str, str],
        cursor_param: str,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        for _ in range(MAX_PAGES):
            params = dict(page_params)
            if cursor:
                params[cursor_param] = cursor
            page, cursor = parse_page(await self._fetch_json(session, url, params))
            items.extend(page)
            if not cursor:
                return items
        logging.warning("Stopped listing %s after %s pages", url, MAX_PAGES)
        return items

    async def _universe(self, session: aiohttp.ClientSession) -> Dict[str, Any]:
        payload = await self._fetch_json(session, universe_info_url(self.universe_id), {})
        games, _ = parse_page(payload)
        return games[0] if games else {}

    async def collect(self) -> ExportSnapshot:
        session = self._session
        close_session = False
        if session is None:
            session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            close_session = True
        try:
            tasks = [
                asyncio.create_task(self._universe(session)),
                asyncio.create_task(
                    self._list_all(
                        session,
                        game_passes_url(self.api_base, self.universe_id),
                        {"limit": "100"},
                        "cursor",
                    )
                ),
                asyncio.create_task(
                    self._list_all(
                        session,
                        developer_products_url(self.api_base, self.universe_id) + "/creator",
                        {"pageSize": "50"},
                        "pageToken",
                    )
                ),
                asyncio.create_task(
                    self._list_all(
                        session,
                        badges_list_url(self.universe_id),
                        {"limit": "100"},
                        "cursor",
                    )
                ),
            ]
            try:
                universe, passes, products, badges = await asyncio.gather(*tasks)
            except BaseException:
                # the session closes below, so no fetch may outlive a failed sibling
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        finally:
            if close_session:
                await session.close()
        return ExportSnapshot(
            universe_id=self.universe_id,
            universe=universe_record(universe),
            game_passes=[game_pass_record(item) for item in passes],
            developer_products=[developer_product_record(item) for item in products],
            badges=[badge_record(item) for item in badges],
        )

    def export(self, output: Path, fmt: str = "yaml") -> ExportSnapshot:
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format {fmt!r}")
        with start_span(
            "export.run", {"roblox.universe_id": self.universe_id, "export.format": fmt}
        ):
            snapshot = asyncio.run(self.collect())
            text = render_yaml(snapshot) if fmt == "yaml" else render_luau(snapshot)
            atomic_write_text(output, text)
        logging.info(
            "Exported %s game passes, %s developer products and %s badges to %s",
            len(snapshot.game_passes),
            len(snapshot.developer_products),
            len(snapshot.badges),
            output,
        )
        return snapshot


def _project_entries(records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # entries are matched by name; remote ids live in the lock file
    return [{key: value for key, value in record.items() if key != "id"} for record in records]


def render_yaml(snapshot: ExportSnapshot) -> str:
    document: Dict[str, Any] = {
        "universe": {"id": snapshot.universe_id, **snapshot.universe},
        "game_passes": _project_entries(snapshot.game_passes),
        "developer_products": _project_entries(snapshot.developer_products),
        "badges": _project_entries(snapshot.badges),
    }
    return yaml.safe_dump(
        document,
        sort_keys=False,
        default_flow_style=False,
        allow_unicode=True,
    )


def luau_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    text = (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f'"{text}"'


def _luau_table(lines: List[str], record: Dict[str, Any], indent: str) -> None:
    for key, value in record.items():
        lines.append(f"{indent}{key} = {luau_value(value)},")


def render_luau(snapshot: ExportSnapshot) -> str:
    lines = ["-- Generated by rbxsync export", "return {", "\tuniverse = {"]
    _luau_table(lines, {"id": snapshot.universe_id, **snapshot.universe}, "\t\t")
    lines.append("\t},")
    for section, records in (
        ("game_passes", snapshot.game_passes),
        ("developer_products", snapshot.developer_products),
        ("badges", snapshot.badges),
    ):
        lines.append(f"\t{section} = {{")
        for record in records:
            lines.append("\t\t{")
            _luau_table(lines, record, "\t\t\t")
            lines.append("\t\t},")
        lines.append("\t},")
    lines.append("}")
    return "\n".join(lines) + "\n"
