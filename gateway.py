"""Remote-resource gateway.

One capability set over the two Roblox clients, addressed by ResourceKind:
get / create / update / set_icon / set_badge_icon / upload_asset / poll_operation /
publish_place.
The reconciler, the asset pipeline and the publisher only ever talk to this.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from errors import ConfigError
from resources import (
    ICON_FIELDS,
    AssetMetadata,
    AssetOutcome,
    OperationHandle,
    ResourceKind,
)
from roblox_api import RobloxClient, RobloxCookieClient


class Gateway:
    def __init__(
        self,
        client: RobloxClient,
        universe_id: int,
        cookie_client: RobloxCookieClient | None = None,
    ) -> None:
        self.client = client
        self.universe_id = universe_id
        self.cookie_client = cookie_client

    @property
    def supports_universe_updates(self) -> bool:
        return self.cookie_client is not None

    def _require_cookie_client(self) -> RobloxCookieClient:
        if self.cookie_client is None:
            raise ConfigError("ROBLOX_COOKIE is required for universe settings")
        return self.cookie_client

    def get(self, kind: ResourceKind, remote_id: int) -> Dict[str, Any]:
        if kind is ResourceKind.UNIVERSE:
            return self._require_cookie_client().get_universe_configuration(remote_id)
        if kind is ResourceKind.GAME_PASS:
            return self.client.get_game_pass(self.universe_id, remote_id)
        if kind is ResourceKind.DEVELOPER_PRODUCT:
            return self.client.get_developer_product(self.universe_id, remote_id)
        if kind is ResourceKind.BADGE:
            return self.client.get_badge(remote_id)
        raise ValueError(f"Cannot read {kind.value}")

    def create(self, kind: ResourceKind, payload: Mapping[str, Any]) -> int:
        if kind is ResourceKind.GAME_PASS:
            return self.client.create_game_pass(self.universe_id, payload)
        if kind is ResourceKind.DEVELOPER_PRODUCT:
            return self.client.create_developer_product(self.universe_id, payload)
        if kind is ResourceKind.BADGE:
            return self.client.create_badge(self.universe_id, payload)
        raise ValueError(f"Cannot create {kind.value}")

    def update(self, kind: ResourceKind, remote_id: int, payload: Mapping[str, Any]) -> None:
        if kind is ResourceKind.UNIVERSE:
            self._require_cookie_client().update_universe_configuration(remote_id, payload)
        elif kind is ResourceKind.GAME_PASS:
            self.client.update_game_pass(self.universe_id, remote_id, payload)
        elif kind is ResourceKind.DEVELOPER_PRODUCT:
            self.client.update_developer_product(self.universe_id, remote_id, payload)
        elif kind is ResourceKind.BADGE:
            self.client.update_badge(remote_id, payload)
        else:
            raise ValueError(f"Cannot update {kind.value}")

    def set_icon(self, kind: ResourceKind, remote_id: int, asset_id: int) -> None:
        if kind not in ICON_FIELDS:
            raise ValueError(f"{kind.label} icons are not set by asset id")
        self.update(kind, remote_id, {ICON_FIELDS[kind]: asset_id})

    def set_badge_icon(self, badge_id: int, data: bytes, metadata: AssetMetadata) -> None:
        self.client.update_badge_icon(badge_id, data, metadata.file_name, metadata.content_type)

    def upload_asset(self, data: bytes, metadata: AssetMetadata) -> OperationHandle:
        return self.client.upload_asset(data, metadata)

    def poll_operation(self, handle: OperationHandle) -> AssetOutcome:
        if handle.outcome.done:
            return handle.outcome
        if not handle.path:
            return AssetOutcome.failed("Operation response missing 'path' field")
        return self.client.get_operation(handle.path)

    def publish_place(self, place_id: int, data: bytes) -> Optional[int]:
        return self.client.publish_place(self.universe_id, place_id, data)
