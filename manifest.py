"""Project file (`rbxsync.yml`) parsing.

The project file declares the desired state of an experience: universe settings,
game passes, developer products, badges and places. Parsing produces plain
dataclasses; any schema problem raises ConfigError naming the file and field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

import yaml

from errors import ConfigError

DEFAULT_ASSETS_DIR = "assets"
CREATOR_TYPES = {"user", "group"}
PAYMENT_SOURCES = {"user", "group"}


@dataclass(frozen=True)
class PrivateServerCost:
    disabled: bool = False
    price: int = 0

    @classmethod
    def parse(cls, value: Any, *, ctx: str) -> "PrivateServerCost":
        if isinstance(value, bool):
            raise ConfigError(f"{ctx} must be 'disabled', 'free' or a non-negative number")
        if isinstance(value, int):
            if value < 0:
                raise ConfigError(f"{ctx} cannot be negative")
            return cls(disabled=False, price=value)
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered == "disabled":
                return cls(disabled=True)
            if lowered == "free":
                return cls(disabled=False, price=0)
        raise ConfigError(
            f"{ctx}: invalid value {value!r}. Use 'disabled', 0 (free), or a positive number"
        )

    def to_yaml(self) -> Any:
        if self.disabled:
            return "disabled"
        return self.price


@dataclass(frozen=True)
class CreatorConfig:
    id: str
    type: str = "user"


@dataclass(frozen=True)
class UniverseConfig:
    id: Optional[int] = None
    name: Optional[str] = None
    description: Optional[str] = None
    genre: Optional[str] = None
    playable_devices: Optional[List[str]] = None
    max_players: Optional[int] = None
    private_server_cost: Optional[PrivateServerCost] = None

    def has_settings(self) -> bool:
        return any(
            value is not None
            for value in (
                self.name,
                self.description,
                self.genre,
                self.playable_devices,
                self.max_players,
                self.private_server_cost,
            )
        )


@dataclass(frozen=True)
class GamePassConfig:
    name: str
    description: Optional[str] = None
    price: Optional[int] = None
    icon: Optional[str] = None
    is_for_sale: Optional[bool] = None


@dataclass(frozen=True)
class DeveloperProductConfig:
    name: str
    price: int
    description: Optional[str] = None
    icon: Optional[str] = None
    is_active: Optional[bool] = None


@dataclass(frozen=True)
class BadgeConfig:
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    is_enabled: Optional[bool] = None


@dataclass(frozen=True)
class PlaceConfig:
    place_id: int
    file_path: str
    publish: bool = False


@dataclass(frozen=True)
class ProjectConfig:
    universe: UniverseConfig
    assets_dir: str = DEFAULT_ASSETS_DIR
    creator: Optional[CreatorConfig] = None
    game_passes: List[GamePassConfig] = field(default_factory=list)
    developer_products: List[DeveloperProductConfig] = field(default_factory=list)
    badges: List[BadgeConfig] = field(default_factory=list)
    places: List[PlaceConfig] = field(default_factory=list)
    badge_payment_source: Optional[str] = None
    root: Path = field(default_factory=Path)

    def assets_path(self) -> Path:
        return (self.root / self.assets_dir).resolve()

    def declares_icons(self) -> bool:
        for entries in (self.game_passes, self.developer_products, self.badges):
            if any(entry.icon for entry in entries):
                return True
        return False


def _expect_mapping(value: Any, *, ctx: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{ctx} must be a mapping")
    return value


def _expect_list(value: Any, *, ctx: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{ctx} must be a list")
    return value


def _opt_str(data: Mapping[str, Any], key: str, *, ctx: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{ctx}.{key} must be a string")
    return value


def _req_str(data: Mapping[str, Any], key: str, *, ctx: str) -> str:
    value = _opt_str(data, key, ctx=ctx)
    if value is None or not value.strip():
        raise ConfigError(f"{ctx}.{key} is required")
    return value


def _opt_int(data: Mapping[str, Any], key: str, *, ctx: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{ctx}.{key} must be an integer")
    if value < 0:
        raise ConfigError(f"{ctx}.{key} cannot be negative")
    return value


def _opt_bool(data: Mapping[str, Any], key: str, *, ctx: str) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f"{ctx}.{key} must be true or false")
    return value


def _reject_unknown(data: Mapping[str, Any], allowed: set[str], *, ctx: str) -> None:
    unknown = sorted(str(key) for key in data if key not in allowed)
    if unknown:
        raise ConfigError(f"{ctx}: unknown keys {unknown}")


def _parse_universe(raw: Any) -> UniverseConfig:
    data = _expect_mapping(raw if raw is not None else {}, ctx="universe")
    _reject_unknown(
        data,
        {
            "id",
            "name",
            "description",
            "genre",
            "playable_devices",
            "max_players",
            "private_server_cost",
        },
        ctx="universe",
    )
    devices_raw = data.get("playable_devices")
    devices: Optional[List[str]] = None
    if devices_raw is not None:
        devices = []
        for item in _expect_list(devices_raw, ctx="universe.playable_devices"):
            if not isinstance(item, str):
                raise ConfigError("universe.playable_devices must be a list of strings")
            devices.append(item)
    cost_raw = data.get("private_server_cost")
    cost = (
        PrivateServerCost.parse(cost_raw, ctx="universe.private_server_cost")
        if cost_raw is not None
        else None
    )
    return UniverseConfig(
        id=_opt_int(data, "id", ctx="universe"),
        name=_opt_str(data, "name", ctx="universe"),
        description=_opt_str(data, "description", ctx="universe"),
        genre=_opt_str(data, "genre", ctx="universe"),
        playable_devices=devices,
        max_players=_opt_int(data, "max_players", ctx="universe"),
        private_server_cost=cost,
    )


def _parse_game_pass(raw: Any, idx: int) -> GamePassConfig:
    ctx = f"game_passes[{idx}]"
    data = _expect_mapping(raw, ctx=ctx)
    _reject_unknown(data, {"name", "description", "price", "icon", "is_for_sale"}, ctx=ctx)
    return GamePassConfig(
        name=_req_str(data, "name", ctx=ctx),
        description=_opt_str(data, "description", ctx=ctx),
        price=_opt_int(data, "price", ctx=ctx),
        icon=_opt_str(data, "icon", ctx=ctx),
        is_for_sale=_opt_bool(data, "is_for_sale", ctx=ctx),
    )


def _parse_developer_product(raw: Any, idx: int) -> DeveloperProductConfig:
    ctx = f"developer_products[{idx}]"
    data = _expect_mapping(raw, ctx=ctx)
    _reject_unknown(data, {"name", "description", "price", "icon", "is_active"}, ctx=ctx)
    price = _opt_int(data, "price", ctx=ctx)
    if price is None:
        raise ConfigError(f"{ctx}.price is required")
    return DeveloperProductConfig(
        name=_req_str(data, "name", ctx=ctx),
        price=price,
        description=_opt_str(data, "description", ctx=ctx),
        icon=_opt_str(data, "icon", ctx=ctx),
        is_active=_opt_bool(data, "is_active", ctx=ctx),
    )


def _parse_badge(raw: Any, idx: int) -> BadgeConfig:
    ctx = f"badges[{idx}]"
    data = _expect_mapping(raw, ctx=ctx)
    _reject_unknown(data, {"name", "description", "icon", "is_enabled"}, ctx=ctx)
    return BadgeConfig(
        name=_req_str(data, "name", ctx=ctx),
        description=_opt_str(data, "description", ctx=ctx),
        icon=_opt_str(data, "icon", ctx=ctx),
        is_enabled=_opt_bool(data, "is_enabled", ctx=ctx),
    )


def _parse_place(raw: Any, idx: int) -> PlaceConfig:
    ctx = f"places[{idx}]"
    data = _expect_mapping(raw, ctx=ctx)
    _reject_unknown(data, {"place_id", "file_path", "publish"}, ctx=ctx)
    place_id = _opt_int(data, "place_id", ctx=ctx)
    if place_id is None:
        raise ConfigError(f"{ctx}.place_id is required")
    return PlaceConfig(
        place_id=place_id,
        file_path=_req_str(data, "file_path", ctx=ctx),
        publish=bool(_opt_bool(data, "publish", ctx=ctx)),
    )


def _parse_creator(raw: Any) -> Optional[CreatorConfig]:
    if raw is None:
        return None
    data = _expect_mapping(raw, ctx="creator")
    _reject_unknown(data, {"id", "type"}, ctx="creator")
    creator_id = data.get("id")
    if isinstance(creator_id, int) and not isinstance(creator_id, bool):
        creator_id = str(creator_id)
    if not isinstance(creator_id, str) or not creator_id.strip():
        raise ConfigError("creator.id is required")
    creator_type = _opt_str(data, "type", ctx="creator") or "user"
    if creator_type not in CREATOR_TYPES:
        raise ConfigError(f"creator.type must be one of {sorted(CREATOR_TYPES)}")
    return CreatorConfig(id=creator_id, type=creator_type)


def find_duplicate_names(names: List[str]) -> List[str]:
    seen: set[str] = set()
    duplicates: List[str] = []
    for name in names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    return duplicates


def parse_project(data: Any, root: Path | None = None) -> ProjectConfig:
    if data is None:
        data = {}
    m = _expect_mapping(data, ctx="project file")
    _reject_unknown(
        m,
        {
            "assets_dir",
            "creator",
            "universe",
            "game_passes",
            "developer_products",
            "badges",
            "places",
            "badge_payment_source",
        },
        ctx="project file",
    )
    payment_source = _opt_str(m, "badge_payment_source", ctx="project")
    if payment_source is not None:
        payment_source = payment_source.lower()
        if payment_source not in PAYMENT_SOURCES:
            raise ConfigError(
                f"badge_payment_source must be one of {sorted(PAYMENT_SOURCES)}"
            )

    project = ProjectConfig(
        universe=_parse_universe(m.get("universe")),
        assets_dir=_opt_str(m, "assets_dir", ctx="project") or DEFAULT_ASSETS_DIR,
        creator=_parse_creator(m.get("creator")),
        game_passes=[
            _parse_game_pass(item, idx)
            for idx, item in enumerate(_expect_list(m.get("game_passes"), ctx="game_passes"))
        ],
        developer_products=[
            _parse_developer_product(item, idx)
            for idx, item in enumerate(
                _expect_list(m.get("developer_products"), ctx="developer_products")
            )
        ],
        badges=[
            _parse_badge(item, idx)
            for idx, item in enumerate(_expect_list(m.get("badges"), ctx="badges"))
        ],
        places=[
            _parse_place(item, idx)
            for idx, item in enumerate(_expect_list(m.get("places"), ctx="places"))
        ],
        badge_payment_source=payment_source,
        root=root or Path("."),
    )

    for label, entries in (
        ("game pass", project.game_passes),
        ("developer product", project.developer_products),
        ("badge", project.badges),
    ):
        duplicates = find_duplicate_names([entry.name for entry in entries])
        if duplicates:
            raise ConfigError(f"Duplicate {label} names found: {duplicates}")
    return project


def load_project(path: str | Path) -> ProjectConfig:
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read project file {p}: {exc}") from exc
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {p}: {exc}") from exc
    try:
        return parse_project(data, root=p.resolve().parent)
    except ConfigError as exc:
        raise ConfigError(f"Invalid project file {p}: {exc}") from exc
