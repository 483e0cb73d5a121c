from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from manifest import (
    BadgeConfig,
    CreatorConfig,
    DeveloperProductConfig,
    GamePassConfig,
    ProjectConfig,
    UniverseConfig,
)


class ResourceKind(str, Enum):
    UNIVERSE = "universe"
    GAME_PASS = "game_passes"
    DEVELOPER_PRODUCT = "developer_products"
    BADGE = "badges"
    PLACE = "places"

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    ResourceKind.UNIVERSE: "Universe",
    ResourceKind.GAME_PASS: "Game Pass",
    ResourceKind.DEVELOPER_PRODUCT: "Developer Product",
    ResourceKind.BADGE: "Badge",
    ResourceKind.PLACE: "Place",
}

# Processing order for name-matched kinds; the universe always runs first.
NAMED_KINDS = (
    ResourceKind.GAME_PASS,
    ResourceKind.DEVELOPER_PRODUCT,
    ResourceKind.BADGE,
)

# Badges have no asset id field; their image is posted to the badge itself.
ICON_FIELDS = {
    ResourceKind.GAME_PASS: "iconAssetId",
    ResourceKind.DEVELOPER_PRODUCT: "iconAssetId",
}

BADGE_PAYMENT_SOURCES = {"user": 1, "group": 2}


class OperationState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AssetOutcome:
    state: OperationState
    asset_id: Optional[int] = None
    reason: Optional[str] = None

    @classmethod
    def pending(cls) -> "AssetOutcome":
        return cls(OperationState.PENDING)

    @classmethod
    def succeeded(cls, asset_id: int) -> "AssetOutcome":
        return cls(OperationState.SUCCEEDED, asset_id=int(asset_id))

    @classmethod
    def failed(cls, reason: str) -> "AssetOutcome":
        return cls(OperationState.FAILED, reason=reason)

    @property
    def done(self) -> bool:
        return self.state is not OperationState.PENDING


@dataclass(frozen=True)
class OperationHandle:
    path: Optional[str]
    outcome: AssetOutcome


@dataclass(frozen=True)
class AssetMetadata:
    display_name: str
    description: str
    file_name: str
    content_type: str
    creator: CreatorConfig

    def to_request(self) -> Dict[str, Any]:
        if self.creator.type == "group":
            creator = {"groupId": self.creator.id}
        else:
            creator = {"userId": self.creator.id}
        return {
            "assetType": "Image",
            "displayName": self.display_name,
            "description": self.description,
            "creationContext": {"creator": creator},
        }


def entries_for(project: ProjectConfig, kind: ResourceKind) -> list:
    if kind is ResourceKind.GAME_PASS:
        return list(project.game_passes)
    if kind is ResourceKind.DEVELOPER_PRODUCT:
        return list(project.developer_products)
    if kind is ResourceKind.BADGE:
        return list(project.badges)
    raise ValueError(f"{kind.value} entries are not name-matched")


def _expect_entry(entry: Any, expected: type) -> None:
    if not isinstance(entry, expected):
        raise TypeError(f"Expected {expected.__name__}, got {type(entry).__name__}")


def _drop_none(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


def create_payload(kind: ResourceKind, entry: Any, project: ProjectConfig) -> Dict[str, Any]:
    """Payload for the first creation of a resource. Icons are never inlined."""
    if kind is ResourceKind.GAME_PASS:
        _expect_entry(entry, GamePassConfig)
        return _drop_none(
            {
                "name": entry.name,
                "description": entry.description or "",
                "price": entry.price,
            }
        )
    if kind is ResourceKind.DEVELOPER_PRODUCT:
        _expect_entry(entry, DeveloperProductConfig)
        return {
            "name": entry.name,
            "description": entry.description or "",
            "price": entry.price,
        }
    if kind is ResourceKind.BADGE:
        _expect_entry(entry, BadgeConfig)
        payload: Dict[str, Any] = {
            "name": entry.name,
            "description": entry.description or "",
        }
        if project.badge_payment_source:
            payload["paymentSourceType"] = BADGE_PAYMENT_SOURCES[project.badge_payment_source]
        return payload
    raise ValueError(f"Cannot create {kind.value}")


def update_payload(kind: ResourceKind, entry: Any) -> Dict[str, Any]:
    """Payload of the fields that can be changed through the API."""
    if kind is ResourceKind.GAME_PASS:
        return _drop_none(
            {
                "name": entry.name,
                "description": entry.description,
                "price": entry.price,
                "isForSale": entry.is_for_sale,
            }
        )
    if kind is ResourceKind.DEVELOPER_PRODUCT:
        return _drop_none(
            {
                "name": entry.name,
                "description": entry.description,
                "price": entry.price,
                "isForSale": entry.is_active,
            }
        )
    if kind is ResourceKind.BADGE:
        return _drop_none(
            {
                "name": entry.name,
                "description": entry.description,
                "enabled": entry.is_enabled,
            }
        )
    raise ValueError(f"Cannot update {kind.value} by name")


def universe_payload(universe: UniverseConfig) -> Dict[str, Any]:
    # genre is accepted locally but has no remote update path
    payload = _drop_none(
        {
            "name": universe.name,
            "description": universe.description,
            "playableDevices": list(universe.playable_devices)
            if universe.playable_devices is not None
            else None,
            "maxPlayers": universe.max_players,
        }
    )
    cost = universe.private_server_cost
    if cost is not None:
        if cost.disabled:
            payload["allowPrivateServers"] = False
        else:
            payload["allowPrivateServers"] = True
            payload["privateServerPrice"] = cost.price
    return payload


def snapshot_of(kind: ResourceKind, entry: Any) -> Dict[str, Any]:
    """Locally cached copy of the mutable fields last applied for an entry."""
    if kind is ResourceKind.UNIVERSE:
        _expect_entry(entry, UniverseConfig)
        return _drop_none(
            {
                "name": entry.name,
                "description": entry.description,
                "genre": entry.genre,
                "playable_devices": list(entry.playable_devices)
                if entry.playable_devices is not None
                else None,
                "max_players": entry.max_players,
                "private_server_cost": entry.private_server_cost.to_yaml()
                if entry.private_server_cost is not None
                else None,
            }
        )
    if kind is ResourceKind.GAME_PASS:
        return _drop_none(
            {
                "description": entry.description,
                "price": entry.price,
                "is_for_sale": entry.is_for_sale,
            }
        )
    if kind is ResourceKind.DEVELOPER_PRODUCT:
        return _drop_none(
            {
                "description": entry.description,
                "price": entry.price,
                "is_active": entry.is_active,
            }
        )
    if kind is ResourceKind.BADGE:
        return _drop_none(
            {
                "description": entry.description,
                "is_enabled": entry.is_enabled,
            }
        )
    raise ValueError(f"No snapshot for {kind.value}")


def changed_fields(previous: Dict[str, Any], current: Dict[str, Any]) -> list[str]:
    keys = set(previous) | set(current)
    return sorted(key for key in keys if previous.get(key) != current.get(key))
