"""Resource reconciler.

Walks the project file kind by kind (universe, game passes, developer products,
badges), matches entries to lock entries by name and decides create or update:

- no lock entry: create, then record the assigned remote id
- lock entry: update the stored remote id unconditionally (the remote PATCH is
  idempotent; only icons are diffed locally, by content fingerprint)
- icon declared and fingerprint differs from the lock: upload, poll, associate
  (badge images are posted to the badge directly, with nothing to poll)

Each successful step is checkpointed to the lock file so an interrupted run
keeps what it already applied. A failing entry is recorded and the run moves on.
In dry-run mode nothing is sent and the lock file is never written.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from assets import AssetPipeline
from errors import (
    ConfigError,
    RbxSyncError,
    ResourceNotFound,
    StateInconsistency,
)
from fingerprint import fingerprint, read_binary, sniff_content_type
from lockstore import LockEntry, LockStore, UniverseLock
from manifest import ProjectConfig
from resources import (
    NAMED_KINDS,
    AssetMetadata,
    ResourceKind,
    changed_fields,
    create_payload,
    entries_for,
    snapshot_of,
    universe_payload,
    update_payload,
)
from telemetry import start_span


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    ICON = "icon"
    SKIP = "skip"
    PUBLISH = "publish"
    PRUNE = "prune"
    FAILED = "failed"


@dataclass(frozen=True)
class Action:
    kind: ResourceKind
    name: str
    action: ActionType
    detail: str = ""


@dataclass
class RunReport:
    dry_run: bool = False
    actions: List[Action] = field(default_factory=list)

    def record(self, kind: ResourceKind, name: str, action: ActionType, detail: str = "") -> Action:
        item = Action(kind=kind, name=name, action=action, detail=detail)
        self.actions.append(item)
        return item

    @property
    def failures(self) -> List[Action]:
        return [item for item in self.actions if item.action is ActionType.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failures

    def count(self, kind: ResourceKind, action: ActionType) -> int:
        return sum(1 for item in self.actions if item.kind is kind and item.action is action)

    def totals(self) -> Dict[str, int]:
        totals = {action.value: 0 for action in ActionType}
        for item in self.actions:
            totals[item.action.value] += 1
        return totals


def _tag(action: ActionType) -> str:
    return f"[{action.value.upper()}]"


class Reconciler:
    def __init__(
        self,
        gateway,
        lock: LockStore,
        project: ProjectConfig,
        *,
        assets: AssetPipeline,
        lock_path: Path | None = None,
        dry_run: bool = False,
        verify_remote: bool = True,
        on_missing: str = "error",
    ) -> None:
        self.gateway = gateway
        self.lock = lock
        self.project = project
        self.assets = assets
        self.lock_path = lock_path
        self.dry_run = dry_run
        self.verify_remote = verify_remote
        self.on_missing = on_missing
        self.report = RunReport(dry_run=dry_run)

    @property
    def universe_id(self) -> int:
        return self.gateway.universe_id

    def preflight(self) -> None:
        """Configuration checks that must pass before any network call."""
        if self.project.declares_icons() and self.project.creator is None:
            raise ConfigError(
                "creator is required when any game pass, developer product or badge declares an icon"
            )

    def run(self, *, prune: bool = False) -> RunReport:
        self.preflight()
        with start_span(
            "sync.run",
            {
                "roblox.universe_id": self.universe_id,
                "sync.dry_run": self.dry_run,
                "sync.prune": prune,
            },
        ):
            self._sync_universe()
            for kind in NAMED_KINDS:
                self._sync_kind(kind)
            if prune:
                self._prune()
            self._checkpoint()
        return self.report

    # --- bookkeeping ---

    def _checkpoint(self) -> None:
        if self.dry_run or self.lock_path is None:
            return
        self.lock.persist(self.lock_path)

    def _commit(self, kind: ResourceKind, name: str, entry: LockEntry) -> None:
        self.lock.upsert(kind, name, entry)
        self._checkpoint()

    def _record(
        self,
        kind: ResourceKind,
        name: str,
        action: ActionType,
        detail: str = "",
    ) -> None:
        suffix = " (dry run)" if self.dry_run else ""
        if detail:
            logging.info("%s %s '%s': %s%s", _tag(action), kind.label, name, detail, suffix)
        else:
            logging.info("%s %s '%s'%s", _tag(action), kind.label, name, suffix)
        self.report.record(kind, name, action, detail)

    def _fail(self, kind: ResourceKind, name: str, step: str, exc: Exception) -> None:
        logging.error("%s %s '%s' %s: %s", _tag(ActionType.FAILED), kind.label, name, step, exc)
        self.report.record(kind, name, ActionType.FAILED, f"{step}: {exc}")

    def _log_summary(self, kind: ResourceKind) -> None:
        logging.info(
            "%s summary: %s created, %s updated, %s icons, %s failed",
            kind.label,
            self.report.count(kind, ActionType.CREATE),
            self.report.count(kind, ActionType.UPDATE),
            self.report.count(kind, ActionType.ICON),
            self.report.count(kind, ActionType.FAILED),
        )

    # --- universe ---

    def _sync_universe(self) -> None:
        universe = self.project.universe
        if not universe.has_settings():
            return
        kind = ResourceKind.UNIVERSE
        name = str(self.universe_id)
        payload = universe_payload(universe)
        snapshot = snapshot_of(kind, universe)
        previous = self.lock.universe
        prev_snapshot = (
            previous.snapshot
            if previous is not None and previous.universe_id == self.universe_id
            else {}
        )
        detail = self._changes_detail(changed_fields(prev_snapshot, snapshot))

        if payload and not self.gateway.supports_universe_updates:
            logging.warning(
                "ROBLOX_COOKIE is not set; universe settings are not updated"
            )
            self._record(kind, name, ActionType.SKIP, "missing ROBLOX_COOKIE")
            return
        if not payload:
            self._record(kind, name, ActionType.SKIP, "no remotely updatable settings")
        if self.dry_run:
            if payload:
                self._record(kind, name, ActionType.UPDATE, detail)
            return

        with start_span("sync.universe", {"roblox.universe_id": self.universe_id}):
            if payload:
                try:
                    self.gateway.update(kind, self.universe_id, payload)
                except (RbxSyncError, requests.RequestException) as exc:
                    self._fail(kind, name, "update", exc)
                    return
                self._record(kind, name, ActionType.UPDATE, detail)
            self.lock.set_universe(UniverseLock(universe_id=self.universe_id, snapshot=snapshot))
            self._checkpoint()

    # --- named kinds ---

    def _sync_kind(self, kind: ResourceKind) -> None:
        entries = entries_for(self.project, kind)
        if not entries:
            return
        logging.info("Syncing %s %s entries", len(entries), kind.label)
        for entry in entries:
            with start_span(
                "sync.entry",
                {
                    "resource.kind": kind.value,
                    "resource.name": entry.name,
                    "sync.dry_run": self.dry_run,
                },
            ):
                if self.dry_run:
                    self._plan_entry(kind, entry)
                else:
                    self._sync_entry(kind, entry)
        self._log_summary(kind)

    @staticmethod
    def _changes_detail(changed: List[str]) -> str:
        if not changed:
            return "no local changes"
        return "changed " + ", ".join(changed)

    def _plan_entry(self, kind: ResourceKind, entry: Any) -> None:
        existing = self.lock.lookup(kind, entry.name)
        if existing is None:
            payload = create_payload(kind, entry, self.project)
            self._record(kind, entry.name, ActionType.CREATE, "fields " + ", ".join(sorted(payload)))
            icon_hash = None
        else:
            changed = changed_fields(existing.snapshot, snapshot_of(kind, entry))
            self._record(
                kind,
                entry.name,
                ActionType.UPDATE,
                f"id {existing.remote_id}, {self._changes_detail(changed)}",
            )
            icon_hash = existing.icon_hash
        if not entry.icon:
            return
        icon_path = self.project.assets_path() / entry.icon
        try:
            digest = fingerprint(icon_path)
        except RbxSyncError as exc:
            self._fail(kind, entry.name, "icon", exc)
            return
        if digest == icon_hash:
            self._record(kind, entry.name, ActionType.SKIP, "icon unchanged")
        else:
            self._record(kind, entry.name, ActionType.ICON, f"upload {entry.icon}")

    def _sync_entry(self, kind: ResourceKind, entry: Any) -> None:
        existing = self.lock.lookup(kind, entry.name)
        try:
            if existing is None:
                current = self._create(kind, entry)
            else:
                current = self._update(kind, entry, existing)
        except (RbxSyncError, requests.RequestException) as exc:
            self._fail(kind, entry.name, "create" if existing is None else "update", exc)
            return
        self._commit(kind, entry.name, current)
        if entry.icon:
            self._sync_icon(kind, entry, current)

    def _create(self, kind: ResourceKind, entry: Any) -> LockEntry:
        payload = create_payload(kind, entry, self.project)
        remote_id = self.gateway.create(kind, payload)
        created = LockEntry(remote_id=remote_id, snapshot=snapshot_of(kind, entry))
        # the remote id must survive even if the follow-up update fails
        self._commit(kind, entry.name, created)
        self._record(kind, entry.name, ActionType.CREATE, f"id {remote_id}")

        extra = {
            key: value
            for key, value in update_payload(kind, entry).items()
            if key not in payload
        }
        if extra:
            self.gateway.update(kind, remote_id, extra)
        return created

    def _update(self, kind: ResourceKind, entry: Any, existing: LockEntry) -> LockEntry:
        remote_id = existing.remote_id
        if self.verify_remote:
            try:
                remote = self.gateway.get(kind, remote_id)
            except ResourceNotFound:
                return self._handle_missing(kind, entry, existing)
            remote_name = remote.get("name") if isinstance(remote, dict) else None
            if remote_name is not None and remote_name != entry.name:
                raise StateInconsistency(
                    f"lock maps it to id {remote_id}, but that {kind.label.lower()} "
                    f"is named '{remote_name}' remotely"
                )

        try:
            self.gateway.update(kind, remote_id, update_payload(kind, entry))
        except ResourceNotFound:
            return self._handle_missing(kind, entry, existing)

        snapshot = snapshot_of(kind, entry)
        changed = changed_fields(existing.snapshot, snapshot)
        self._record(
            kind,
            entry.name,
            ActionType.UPDATE,
            f"id {remote_id}, {self._changes_detail(changed)}",
        )
        return replace(existing, snapshot=snapshot)

    def _handle_missing(self, kind: ResourceKind, entry: Any, existing: LockEntry) -> LockEntry:
        if self.on_missing != "recreate":
            raise StateInconsistency(
                f"lock maps it to id {existing.remote_id}, which no longer exists remotely; "
                "fix the lock file or set RBXSYNC_ON_MISSING=recreate"
            )
        logging.warning(
            "%s '%s' id %s no longer exists remotely, re-creating it",
            kind.label,
            entry.name,
            existing.remote_id,
        )
        return self._create(kind, entry)

    # --- icons ---

    def _asset_metadata(self, icon_path: Path, data: bytes) -> AssetMetadata:
        return AssetMetadata(
            display_name=icon_path.stem,
            description=f"Uploaded by rbxsync from {icon_path.name}",
            file_name=icon_path.name,
            content_type=sniff_content_type(data, icon_path.name),
            creator=self.project.creator,
        )

    def _sync_icon(self, kind: ResourceKind, entry: Any, current: LockEntry) -> None:
        icon_path = self.project.assets_path() / entry.icon
        try:
            data = read_binary(icon_path)
        except RbxSyncError as exc:
            self._fail(kind, entry.name, "icon", exc)
            return
        digest = fingerprint(data)
        if digest == current.icon_hash:
            self._record(kind, entry.name, ActionType.SKIP, "icon unchanged")
            return

        asset_id: Optional[int] = None
        try:
            metadata = self._asset_metadata(icon_path, data)
            if kind is ResourceKind.BADGE:
                # badge images go straight to the badge, there is no asset to poll
                self.gateway.set_badge_icon(current.remote_id, data, metadata)
            else:
                asset_id = self.assets.upload(data, metadata)
                self.gateway.set_icon(kind, current.remote_id, asset_id)
        except (RbxSyncError, requests.RequestException) as exc:
            self._fail(kind, entry.name, "icon", exc)
            return
        self._commit(kind, entry.name, replace(current, icon_hash=digest, icon_asset_id=asset_id))
        detail = f"asset {asset_id}" if asset_id is not None else f"uploaded {icon_path.name}"
        self._record(kind, entry.name, ActionType.ICON, detail)

    # --- prune ---

    def _prune(self) -> None:
        for kind in NAMED_KINDS:
            keep = [entry.name for entry in entries_for(self.project, kind)]
            if self.dry_run:
                stale = [key for key in self.lock.keys(kind) if key not in set(keep)]
            else:
                stale = self.lock.prune(kind, keep)
            for name in stale:
                self._record(kind, name, ActionType.PRUNE, "removed from lock file")
