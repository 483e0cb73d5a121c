"""rbxsync lock file I/O.

The lock file (`rbxsync-lock.yml`) is the ledger of what earlier runs already did:
for every resource it maps the local identity (kind + name, or place id) to the
remote id the service assigned, the fingerprint of the last uploaded icon and a
snapshot of the last applied fields.

Requirements:
- Stable YAML formatting (sorted keys, block style, every section present) so
  that load-then-persist is byte-identical for a normalized file
- Atomic writes (temp file + rename)
- Entries are never dropped implicitly; only `prune` removes them
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from errors import CorruptLockFile
from resources import ResourceKind
from utils import atomic_write_text

LOCKFILE_VERSION = 1

SECTION_KINDS = (
    ResourceKind.GAME_PASS,
    ResourceKind.DEVELOPER_PRODUCT,
    ResourceKind.BADGE,
    ResourceKind.PLACE,
)


def _expect_mapping(value: Any, *, ctx: str) -> Mapping[Any, Any]:
    if not isinstance(value, Mapping):
        raise CorruptLockFile(f"Invalid lock file: {ctx} must be a mapping")
    return value


def _expect_id(value: Any, *, ctx: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise CorruptLockFile(f"Invalid lock file: {ctx} must be a positive integer")
    return value


def _expect_snapshot(value: Any, *, ctx: str) -> Dict[str, Any]:
    if value is None:
        return {}
    m = _expect_mapping(value, ctx=ctx)
    out: Dict[str, Any] = {}
    for key, item in m.items():
        if not isinstance(key, str):
            raise CorruptLockFile(f"Invalid lock file: {ctx} keys must be strings")
        out[key] = item
    return out


@dataclass(frozen=True)
class LockEntry:
    remote_id: int
    icon_hash: Optional[str] = None
    icon_asset_id: Optional[int] = None
    snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"remote_id": self.remote_id}
        if self.icon_hash is not None:
            data["icon_hash"] = self.icon_hash
        if self.icon_asset_id is not None:
            data["icon_asset_id"] = self.icon_asset_id
        if self.snapshot:
            data["snapshot"] = dict(self.snapshot)
        return data

    @classmethod
    def from_dict(cls, data: Any, *, ctx: str) -> "LockEntry":
        m = _expect_mapping(data, ctx=ctx)
        unknown = sorted(str(k) for k in m if k not in {"remote_id", "icon_hash", "icon_asset_id", "snapshot"})
        if unknown:
            raise CorruptLockFile(f"Invalid lock file: unknown {ctx} keys: {unknown}")
        if "remote_id" not in m:
            raise CorruptLockFile(f"Invalid lock file: {ctx}.remote_id is required")
        icon_hash = m.get("icon_hash")
        if icon_hash is not None and not isinstance(icon_hash, str):
            raise CorruptLockFile(f"Invalid lock file: {ctx}.icon_hash must be a string")
        icon_asset_id = m.get("icon_asset_id")
        if icon_asset_id is not None:
            icon_asset_id = _expect_id(icon_asset_id, ctx=f"{ctx}.icon_asset_id")
        return cls(
            remote_id=_expect_id(m.get("remote_id"), ctx=f"{ctx}.remote_id"),
            icon_hash=icon_hash,
            icon_asset_id=icon_asset_id,
            snapshot=_expect_snapshot(m.get("snapshot"), ctx=f"{ctx}.snapshot"),
        )


@dataclass(frozen=True)
class UniverseLock:
    universe_id: int
    snapshot: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.universe_id}
        if self.snapshot:
            data["snapshot"] = dict(self.snapshot)
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "UniverseLock":
        m = _expect_mapping(data, ctx="universe")
        unknown = sorted(str(k) for k in m if k not in {"id", "snapshot"})
        if unknown:
            raise CorruptLockFile(f"Invalid lock file: unknown universe keys: {unknown}")
        return cls(
            universe_id=_expect_id(m.get("id"), ctx="universe.id"),
            snapshot=_expect_snapshot(m.get("snapshot"), ctx="universe.snapshot"),
        )


class LockStore:
    def __init__(self) -> None:
        self._sections: Dict[ResourceKind, Dict[str, LockEntry]] = {
            kind: {} for kind in SECTION_KINDS
        }
        self.universe: Optional[UniverseLock] = None

    @staticmethod
    def _section_kind(kind: ResourceKind) -> ResourceKind:
        if kind not in SECTION_KINDS:
            raise ValueError(f"{kind.value} has no keyed lock section")
        return kind

    def lookup(self, kind: ResourceKind, key: str) -> Optional[LockEntry]:
        return self._sections[self._section_kind(kind)].get(str(key))

    def upsert(self, kind: ResourceKind, key: str, entry: LockEntry) -> None:
        section = self._sections[self._section_kind(kind)]
        previous = section.get(str(key))
        if previous is not None and previous.remote_id != entry.remote_id:
            logging.warning(
                "Lock entry %s '%s' remote id replaced: %s -> %s",
                kind.label,
                key,
                previous.remote_id,
                entry.remote_id,
            )
        section[str(key)] = entry

    def remove(self, kind: ResourceKind, key: str) -> bool:
        return self._sections[self._section_kind(kind)].pop(str(key), None) is not None

    def keys(self, kind: ResourceKind) -> List[str]:
        return sorted(self._sections[self._section_kind(kind)])

    def prune(self, kind: ResourceKind, keep: Iterable[str]) -> List[str]:
        keep_set = {str(key) for key in keep}
        stale = [key for key in self.keys(kind) if key not in keep_set]
        for key in stale:
            self.remove(kind, key)
        return stale

    def set_universe(self, universe: UniverseLock) -> None:
        self.universe = universe

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"version": LOCKFILE_VERSION}
        for kind in SECTION_KINDS:
            data[kind.value] = {
                key: entry.to_dict() for key, entry in sorted(self._sections[kind].items())
            }
        if self.universe is not None:
            data["universe"] = self.universe.to_dict()
        return data

    def dumps(self) -> str:
        return yaml.safe_dump(
            self.to_dict(),
            sort_keys=True,
            default_flow_style=False,
            allow_unicode=True,
            width=4096,
        )

    def persist(self, path: str | Path) -> None:
        atomic_write_text(Path(path), self.dumps())

    @classmethod
    def from_dict(cls, data: Any) -> "LockStore":
        if data is None:
            return cls()
        m = _expect_mapping(data, ctx="top-level")
        allowed = {"version", "universe"} | {kind.value for kind in SECTION_KINDS}
        unknown = sorted(str(k) for k in m if k not in allowed)
        if unknown:
            raise CorruptLockFile(f"Invalid lock file: unknown top-level keys: {unknown}")
        version = m.get("version", LOCKFILE_VERSION)
        if version != LOCKFILE_VERSION:
            raise CorruptLockFile(
                f"Unsupported lock file version: {version!r} (expected {LOCKFILE_VERSION})"
            )

        store = cls()
        for kind in SECTION_KINDS:
            raw_section = m.get(kind.value)
            if raw_section is None:
                continue
            section = _expect_mapping(raw_section, ctx=kind.value)
            for key, raw_entry in section.items():
                if isinstance(key, bool) or not isinstance(key, (str, int)):
                    raise CorruptLockFile(
                        f"Invalid lock file: {kind.value} keys must be names or ids"
                    )
                store._sections[kind][str(key)] = LockEntry.from_dict(
                    raw_entry, ctx=f"{kind.value}[{key}]"
                )
        if m.get("universe") is not None:
            store.universe = UniverseLock.from_dict(m.get("universe"))
        return store

    @classmethod
    def load(cls, path: str | Path) -> "LockStore":
        """Load a lock file; a missing file yields an empty store.

        Raises CorruptLockFile when the file exists but cannot be trusted.
        """
        p = Path(path)
        if not p.exists():
            return cls()
        try:
            raw = p.read_text(encoding="utf-8")
        except OSError as exc:
            raise CorruptLockFile(f"Invalid lock file: unable to read {p}") from exc
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise CorruptLockFile(f"Invalid lock file: {p} is not valid YAML") from exc
        return cls.from_dict(data)
