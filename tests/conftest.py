"""Test configuration for rbxsync."""

from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from typing import Any, Callable, Dict, List, Tuple

import pytest
import yaml
from PIL import Image

from assets import AssetPipeline
from errors import ResourceNotFound
from lockstore import LockStore
from manifest import ProjectConfig, load_project
from reconciler import Reconciler, RunReport
from resources import AssetOutcome, OperationHandle, ResourceKind

MUTATIONS = {"create", "update", "set_icon", "set_badge_icon", "upload_asset", "publish_place"}


class FakeGateway:
    """In-memory stand-in for the Roblox gateway that records every call."""

    def __init__(self, universe_id: int = 1000, *, cookie: bool = True) -> None:
        self.universe_id = universe_id
        self.cookie = cookie
        self.calls: List[Tuple[Any, ...]] = []
        self.remote: Dict[ResourceKind, Dict[int, Dict[str, Any]]] = {
            kind: {} for kind in ResourceKind
        }
        self.failures: Dict[str, Exception] = {}
        self.poll_script: List[AssetOutcome] = []
        self._next_id = 100
        self._next_asset = 5000

    @property
    def supports_universe_updates(self) -> bool:
        return self.cookie

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    def mutations(self) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in MUTATIONS]

    def _maybe_fail(self, name: Any) -> None:
        if name in self.failures:
            raise self.failures[name]

    def get(self, kind: ResourceKind, remote_id: int) -> Dict[str, Any]:
        self.calls.append(("get", kind, remote_id))
        if remote_id not in self.remote[kind]:
            raise ResourceNotFound(f"Failed to get {kind.value} {remote_id}", 404)
        return dict(self.remote[kind][remote_id])

    def create(self, kind: ResourceKind, payload: Dict[str, Any]) -> int:
        self.calls.append(("create", kind, dict(payload)))
        self._maybe_fail(payload.get("name"))
        self._next_id += 1
        self.remote[kind][self._next_id] = dict(payload)
        return self._next_id

    def update(self, kind: ResourceKind, remote_id: int, payload: Dict[str, Any]) -> None:
        self.calls.append(("update", kind, remote_id, dict(payload)))
        current = self.remote[kind].get(remote_id, {})
        self._maybe_fail(payload.get("name", current.get("name")))
        if kind is not ResourceKind.UNIVERSE and remote_id not in self.remote[kind]:
            raise ResourceNotFound(f"Failed to update {kind.value} {remote_id}", 404)
        self.remote[kind].setdefault(remote_id, {}).update(payload)

    def set_icon(self, kind: ResourceKind, remote_id: int, asset_id: int) -> None:
        self.calls.append(("set_icon", kind, remote_id, asset_id))

    def set_badge_icon(self, badge_id: int, data: bytes, metadata: Any) -> None:
        self.calls.append(("set_badge_icon", badge_id, metadata.file_name, len(data)))
        self._maybe_fail(metadata.file_name)

    def upload_asset(self, data: bytes, metadata: Any) -> OperationHandle:
        self.calls.append(("upload_asset", metadata.file_name, len(data), metadata))
        self._maybe_fail(metadata.file_name)
        return OperationHandle(path=f"operations/{len(self.calls)}", outcome=AssetOutcome.pending())

    def poll_operation(self, handle: OperationHandle) -> AssetOutcome:
        self.calls.append(("poll_operation", handle.path))
        if self.poll_script:
            return self.poll_script.pop(0)
        self._next_asset += 1
        return AssetOutcome.succeeded(self._next_asset)

    def publish_place(self, place_id: int, data: bytes) -> int:
        self.calls.append(("publish_place", place_id, len(data)))
        self._maybe_fail(place_id)
        return 7


def make_png(path: Path, color: Tuple[int, int, int] = (255, 0, 0), size: int = 8) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (size, size), color).save(path, format="PNG")
    return path


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def write_project(tmp_path: Path) -> Callable[[Dict[str, Any]], ProjectConfig]:
    def _write(data: Dict[str, Any]) -> ProjectConfig:
        path = tmp_path / "rbxsync.yml"
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return load_project(path)

    return _write


@pytest.fixture
def lock_path(tmp_path: Path) -> Path:
    return tmp_path / "rbxsync-lock.yml"


@pytest.fixture
def run_sync(lock_path: Path) -> Callable[..., RunReport]:
    def _run(
        project: ProjectConfig,
        gateway: FakeGateway,
        *,
        dry_run: bool = False,
        prune: bool = False,
        verify_remote: bool = True,
        on_missing: str = "error",
        max_attempts: int = 5,
    ) -> RunReport:
        reconciler = Reconciler(
            gateway,
            LockStore.load(lock_path),
            project,
            assets=AssetPipeline(gateway, 0.0, max_attempts, sleep=lambda _delay: None),
            lock_path=lock_path,
            dry_run=dry_run,
            verify_remote=verify_remote,
            on_missing=on_missing,
        )
        return reconciler.run(prune=prune)

    return _run
