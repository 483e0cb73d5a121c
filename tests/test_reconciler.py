from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeGateway, make_png
from errors import ConfigError, GatewayError
from lockstore import LockEntry, LockStore
from reconciler import ActionType
from resources import AssetOutcome, ResourceKind

GP = ResourceKind.GAME_PASS


def _vip_project(price: int = 100) -> dict:
    return {
        "creator": {"id": "42", "type": "user"},
        "game_passes": [{"name": "VIP", "price": price, "icon": "vip.png"}],
    }


def test_vip_pass_four_runs(tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    icon = make_png(tmp_path / "assets" / "vip.png", (255, 0, 0))

    # first run: create + one upload/poll cycle
    report = run_sync(write_project(_vip_project()), gateway)
    assert report.ok
    assert gateway.count("create") == 1
    assert gateway.count("update") == 0
    assert gateway.count("upload_asset") == 1
    assert gateway.count("poll_operation") == 1
    assert gateway.count("set_icon") == 1
    first = LockStore.load(lock_path).lookup(GP, "VIP")
    assert first is not None
    assert first.icon_hash is not None and first.icon_hash.startswith("sha256:")
    first_text = lock_path.read_text(encoding="utf-8")

    # second run, nothing changed: one update, no create, no upload
    gateway.calls.clear()
    report = run_sync(write_project(_vip_project()), gateway)
    assert report.ok
    assert gateway.count("create") == 0
    assert gateway.count("update") == 1
    assert gateway.count("upload_asset") == 0
    assert lock_path.read_text(encoding="utf-8") == first_text

    # third run, price changed: update against the stored id, icon untouched
    gateway.calls.clear()
    report = run_sync(write_project(_vip_project(price=150)), gateway)
    assert gateway.count("create") == 0
    assert gateway.count("upload_asset") == 0
    updates = [call for call in gateway.calls if call[0] == "update"]
    assert len(updates) == 1
    assert updates[0][2] == first.remote_id
    assert updates[0][3]["price"] == 150
    assert any("changed price" in action.detail for action in report.actions)

    # fourth run, icon bytes changed: one update and one upload cycle
    make_png(icon, (0, 0, 255))
    gateway.calls.clear()
    report = run_sync(write_project(_vip_project(price=150)), gateway)
    assert report.ok
    assert gateway.count("create") == 0
    assert gateway.count("update") == 1
    assert gateway.count("upload_asset") == 1
    assert gateway.count("poll_operation") == 1
    fourth = LockStore.load(lock_path).lookup(GP, "VIP")
    assert fourth.remote_id == first.remote_id
    assert fourth.icon_hash != first.icon_hash


def test_second_run_is_idempotent_across_kinds(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    project = write_project(
        {
            "game_passes": [{"name": "VIP", "price": 100}, {"name": "Boost", "is_for_sale": True}],
            "developer_products": [{"name": "Coins", "price": 25}],
            "badges": [{"name": "Welcome", "description": "Joined"}],
        }
    )
    run_sync(project, gateway)
    first_text = lock_path.read_text(encoding="utf-8")
    gateway.calls.clear()

    run_sync(project, gateway)

    assert gateway.count("create") == 0
    assert gateway.count("update") == 4
    assert lock_path.read_text(encoding="utf-8") == first_text


def test_kinds_processed_in_fixed_order(gateway: FakeGateway, write_project, run_sync) -> None:
    project = write_project(
        {
            "universe": {"name": "My Game"},
            "badges": [{"name": "B"}],
            "developer_products": [{"name": "D", "price": 5}],
            "game_passes": [{"name": "G2"}, {"name": "G1"}],
        }
    )
    run_sync(project, gateway)

    kinds = [call[1] for call in gateway.calls if call[0] in {"create", "update"}]
    assert kinds == [
        ResourceKind.UNIVERSE,
        GP,
        GP,
        ResourceKind.DEVELOPER_PRODUCT,
        ResourceKind.BADGE,
    ]
    names = [call[2]["name"] for call in gateway.calls if call[0] == "create" and call[1] is GP]
    assert names == ["G2", "G1"]


def test_existing_lock_entry_is_always_updated_never_created(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    gateway.remote[GP][777] = {"name": "VIP"}
    store = LockStore()
    store.upsert(GP, "VIP", LockEntry(remote_id=777))
    store.persist(lock_path)

    run_sync(write_project({"game_passes": [{"name": "VIP", "price": 1, "description": "new"}]}), gateway)

    assert gateway.count("create") == 0
    assert [call[2] for call in gateway.calls if call[0] == "update"] == [777]


def test_partial_failure_isolated(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    gateway.failures["B"] = GatewayError("Failed to create game pass", 500, "boom")
    project = write_project({"game_passes": [{"name": "A"}, {"name": "B"}, {"name": "C"}]})

    report = run_sync(project, gateway)

    assert not report.ok
    assert [failure.name for failure in report.failures] == ["B"]
    assert gateway.count("create") == 3
    lock = LockStore.load(lock_path)
    assert lock.lookup(GP, "A") is not None
    assert lock.lookup(GP, "B") is None
    assert lock.lookup(GP, "C") is not None


def test_dry_run_is_pure(tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    make_png(tmp_path / "assets" / "vip.png")
    run_sync(write_project(_vip_project()), gateway)
    before = lock_path.read_bytes()
    gateway.calls.clear()

    changed = _vip_project(price=300)
    changed["game_passes"].append({"name": "New"})
    changed["universe"] = {"name": "Renamed"}
    report = run_sync(write_project(changed), gateway, dry_run=True, prune=True)

    assert lock_path.read_bytes() == before
    assert gateway.mutations() == []
    planned = {(action.name, action.action) for action in report.actions}
    assert ("VIP", ActionType.UPDATE) in planned
    assert ("VIP", ActionType.SKIP) in planned
    assert ("New", ActionType.CREATE) in planned
    assert ("1000", ActionType.UPDATE) in planned
    assert report.dry_run


def test_dry_run_without_lock_file_writes_nothing(tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    make_png(tmp_path / "assets" / "vip.png")

    report = run_sync(write_project(_vip_project()), gateway, dry_run=True)

    assert not lock_path.exists()
    assert gateway.calls == []
    assert [action.action for action in report.actions] == [ActionType.CREATE, ActionType.ICON]


def test_icon_without_creator_fails_before_any_call(tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    make_png(tmp_path / "assets" / "vip.png")
    project = write_project({"game_passes": [{"name": "VIP", "icon": "vip.png"}]})

    with pytest.raises(ConfigError, match="creator"):
        run_sync(project, gateway)

    assert gateway.calls == []
    assert not lock_path.exists()


def test_universe_skipped_without_cookie(write_project, run_sync) -> None:
    gateway = FakeGateway(cookie=False)
    project = write_project(
        {"universe": {"name": "My Game", "max_players": 20}, "game_passes": [{"name": "VIP"}]}
    )

    report = run_sync(project, gateway)

    assert report.ok
    assert [call for call in gateway.calls if call[1] is ResourceKind.UNIVERSE] == []
    assert report.count(ResourceKind.UNIVERSE, ActionType.SKIP) == 1
    assert gateway.count("create") == 1


def test_universe_update_records_snapshot(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    project = write_project(
        {
            "universe": {
                "name": "My Game",
                "genre": "Adventure",
                "private_server_cost": "disabled",
            }
        }
    )

    run_sync(project, gateway)

    update = [call for call in gateway.calls if call[0] == "update"][0]
    assert update[1] is ResourceKind.UNIVERSE
    assert update[2] == 1000
    assert update[3] == {"name": "My Game", "allowPrivateServers": False}
    lock = LockStore.load(lock_path)
    assert lock.universe.universe_id == 1000
    assert lock.universe.snapshot["genre"] == "Adventure"
    assert lock.universe.snapshot["private_server_cost"] == "disabled"


def test_missing_remote_is_reported_not_recreated(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    store = LockStore()
    store.upsert(GP, "VIP", LockEntry(remote_id=999))
    store.persist(lock_path)

    report = run_sync(write_project({"game_passes": [{"name": "VIP"}]}), gateway)

    assert not report.ok
    assert "no longer exists" in report.failures[0].detail
    assert gateway.count("create") == 0
    assert LockStore.load(lock_path).lookup(GP, "VIP").remote_id == 999


def test_missing_remote_recreated_when_configured(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    store = LockStore()
    store.upsert(GP, "VIP", LockEntry(remote_id=999, icon_hash="sha256:old"))
    store.persist(lock_path)

    report = run_sync(write_project({"game_passes": [{"name": "VIP"}]}), gateway, on_missing="recreate")

    assert report.ok
    assert gateway.count("create") == 1
    entry = LockStore.load(lock_path).lookup(GP, "VIP")
    assert entry.remote_id != 999
    assert entry.icon_hash is None


def test_update_not_found_without_verification(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    store = LockStore()
    store.upsert(GP, "VIP", LockEntry(remote_id=999))
    store.persist(lock_path)

    report = run_sync(write_project({"game_passes": [{"name": "VIP"}]}), gateway, verify_remote=False)

    assert gateway.count("get") == 0
    assert gateway.count("update") == 1
    assert not report.ok
    assert gateway.count("create") == 0


def test_remote_name_mismatch_is_not_healed(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    gateway.remote[GP][321] = {"name": "Somebody Else"}
    store = LockStore()
    store.upsert(GP, "VIP", LockEntry(remote_id=321))
    store.persist(lock_path)

    report = run_sync(write_project({"game_passes": [{"name": "VIP", "price": 5}]}), gateway)

    assert not report.ok
    assert "Somebody Else" in report.failures[0].detail
    assert gateway.count("update") == 0
    assert gateway.remote[GP][321] == {"name": "Somebody Else"}


def test_failed_asset_processing_keeps_created_entry(tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    make_png(tmp_path / "assets" / "vip.png")
    gateway.poll_script = [AssetOutcome.pending(), AssetOutcome.failed("moderated")]

    report = run_sync(write_project(_vip_project()), gateway)

    assert not report.ok
    assert "moderated" in report.failures[0].detail
    entry = LockStore.load(lock_path).lookup(GP, "VIP")
    assert entry is not None
    assert entry.icon_hash is None
    assert gateway.count("set_icon") == 0

    # the next run retries the upload because no hash was recorded
    gateway.calls.clear()
    report = run_sync(write_project(_vip_project()), gateway)
    assert report.ok
    assert gateway.count("upload_asset") == 1


def test_asset_timeout_isolated_to_entry(tmp_path: Path, gateway: FakeGateway, write_project, run_sync) -> None:
    make_png(tmp_path / "assets" / "vip.png")
    gateway.poll_script = [AssetOutcome.pending()] * 3
    project = write_project(
        {
            "creator": {"id": "42"},
            "game_passes": [{"name": "VIP", "icon": "vip.png"}, {"name": "Other"}],
        }
    )

    report = run_sync(project, gateway, max_attempts=3)

    assert [failure.name for failure in report.failures] == ["VIP"]
    assert "timed out" in report.failures[0].detail
    assert gateway.count("create") == 2


def test_missing_icon_file_fails_only_icon_step(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    project = write_project(
        {"creator": {"id": "42"}, "badges": [{"name": "Welcome", "icon": "nope.png"}]}
    )

    report = run_sync(project, gateway)

    assert "icon" in report.failures[0].detail
    assert LockStore.load(lock_path).lookup(ResourceKind.BADGE, "Welcome") is not None
    assert gateway.count("upload_asset") == 0


def test_asset_metadata_uses_creator_and_sniffed_type(tmp_path: Path, gateway: FakeGateway, write_project, run_sync) -> None:
    make_png(tmp_path / "assets" / "icons" / "vip.png")
    project = write_project(
        {
            "creator": {"id": "77", "type": "group"},
            "game_passes": [{"name": "VIP", "icon": "icons/vip.png"}],
        }
    )

    run_sync(project, gateway)

    metadata = [call for call in gateway.calls if call[0] == "upload_asset"][0][3]
    assert metadata.content_type == "image/png"
    assert metadata.display_name == "vip"
    assert metadata.to_request()["creationContext"]["creator"] == {"groupId": "77"}


def test_create_follows_up_with_flags_not_in_create_payload(gateway: FakeGateway, write_project, run_sync) -> None:
    project = write_project(
        {"developer_products": [{"name": "Coins", "price": 25, "is_active": False}]}
    )

    run_sync(project, gateway)

    create = [call for call in gateway.calls if call[0] == "create"][0]
    assert create[2] == {"name": "Coins", "description": "", "price": 25}
    updates = [call for call in gateway.calls if call[0] == "update"]
    assert [call[3] for call in updates] == [{"isForSale": False}]


def test_badge_create_carries_payment_source(gateway: FakeGateway, write_project, run_sync) -> None:
    project = write_project({"badge_payment_source": "group", "badges": [{"name": "Welcome"}]})

    run_sync(project, gateway)

    create = [call for call in gateway.calls if call[0] == "create"][0]
    assert create[2]["paymentSourceType"] == 2


def test_stale_entries_kept_unless_pruned(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    run_sync(write_project({"game_passes": [{"name": "VIP"}, {"name": "Old"}]}), gateway)
    project = write_project({"game_passes": [{"name": "VIP"}]})

    run_sync(project, gateway)
    assert LockStore.load(lock_path).lookup(GP, "Old") is not None

    report = run_sync(project, gateway, prune=True)
    assert LockStore.load(lock_path).lookup(GP, "Old") is None
    assert report.count(GP, ActionType.PRUNE) == 1


def test_checkpoint_persists_progress_before_later_entries(gateway: FakeGateway, write_project, run_sync, lock_path: Path) -> None:
    seen = []
    original_create = gateway.create

    def create(kind, payload):
        if payload["name"] == "B":
            seen.append(LockStore.load(lock_path).lookup(GP, "A"))
        return original_create(kind, payload)

    gateway.create = create
    run_sync(write_project({"game_passes": [{"name": "A"}, {"name": "B"}]}), gateway)

    assert seen and seen[0] is not None


def test_badge_icon_posted_directly_and_retried_after_failure(
    tmp_path: Path, gateway: FakeGateway, write_project, run_sync, lock_path: Path
) -> None:
    make_png(tmp_path / "assets" / "welcome.png")
    project = write_project(
        {"creator": {"id": "42"}, "badges": [{"name": "Welcome", "icon": "welcome.png"}]}
    )
    gateway.failures["welcome.png"] = GatewayError("Failed to update badge icon 101", 500, "boom")

    report = run_sync(project, gateway)

    assert "icon" in report.failures[0].detail
    assert gateway.count("upload_asset") == 0
    assert gateway.count("set_icon") == 0
    assert LockStore.load(lock_path).lookup(ResourceKind.BADGE, "Welcome").icon_hash is None

    del gateway.failures["welcome.png"]
    gateway.calls.clear()
    report = run_sync(project, gateway)

    assert report.ok
    assert [call[:3] for call in gateway.calls if call[0] == "set_badge_icon"] == [
        ("set_badge_icon", 101, "welcome.png")
    ]
    assert gateway.count("poll_operation") == 0
    entry = LockStore.load(lock_path).lookup(ResourceKind.BADGE, "Welcome")
    assert entry.icon_hash is not None and entry.icon_asset_id is None

    gateway.calls.clear()
    run_sync(project, gateway)
    assert gateway.count("set_badge_icon") == 0
