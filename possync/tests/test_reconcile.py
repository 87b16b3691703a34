from datetime import timedelta

from possync.app.sync.fingerprint import fingerprint
from possync.app.sync.local_state import SyncMetadata
from possync.app.sync.merge import merge_snapshot
from possync.app.sync.reconcile import ReconciliationEngine, SyncAction
from possync.app.sync.records import MemoryRecordStore, read_collections
from possync.app.sync.snapshot import build_snapshot

OWNER = "owner@x.io"


def _snap(clock, products=(), settings=None, owner=OWNER):
    return build_snapshot(owner, {"products": list(products)}, settings or {}, now=clock.now())


def test_unchanged_state_triggers_no_push(clock, remote):
    engine = ReconciliationEngine(remote, clock)
    first = engine.steady_sync(_snap(clock, [{"id": "p1", "price": 5}]), SyncMetadata(owner_key=OWNER))
    assert first.action == SyncAction.PUSHED
    assert len(remote.pushes) == 1

    clock.advance(60)
    again = engine.steady_sync(_snap(clock, [{"id": "p1", "price": 5}]), first.metadata)
    assert again.action == SyncAction.IN_SYNC
    assert len(remote.pushes) == 1
    assert remote.fetches == 0


def test_content_change_pushes_once_and_records_fingerprint(clock, remote):
    engine = ReconciliationEngine(remote, clock)
    md = engine.steady_sync(_snap(clock, [{"id": "p1", "price": 5}]), SyncMetadata(owner_key=OWNER)).metadata

    clock.advance(30)
    changed = _snap(clock, [{"id": "p1", "price": 6}])
    out = engine.steady_sync(changed, md)
    assert out.action == SyncAction.PUSHED
    assert len(remote.pushes) == 2
    assert out.metadata.last_data_fingerprint == fingerprint(changed)
    assert out.metadata.last_push_time == clock.now()


def test_failed_push_leaves_metadata_untouched(clock, remote):
    engine = ReconciliationEngine(remote, clock)
    remote.fail_push = True
    md = SyncMetadata(owner_key=OWNER, last_data_fingerprint="sha256:old")
    out = engine.steady_sync(_snap(clock, [{"id": "p1"}]), md)
    assert out.action == SyncAction.PUSH_FAILED
    assert out.metadata.last_data_fingerprint == "sha256:old"
    assert out.metadata.last_push_time is None

    # Still "changed" on the next attempt, so it retries.
    remote.fail_push = False
    assert engine.steady_sync(_snap(clock, [{"id": "p1"}]), out.metadata).action == SyncAction.PUSHED


def test_initial_sync_adopts_newer_remote_without_pushing(clock, remote):
    engine = ReconciliationEngine(remote, clock)
    local = _snap(clock, [{"id": "local"}])
    clock.advance(1)
    remote.snapshots["owner-x-io"] = _snap(clock, [{"id": "remote"}])

    out = engine.initial_sync(local, SyncMetadata())
    assert out.action == SyncAction.ADOPT_REMOTE
    assert out.remote.products == ({"id": "remote"},)
    assert remote.pushes == []
    assert out.metadata.owner_key == OWNER
    assert out.metadata.last_pull_time == clock.now()


def test_adopting_remote_then_idle_does_not_push_back(clock, remote):
    remote.snapshots["owner-x-io"] = _snap(clock, [{"id": "p1", "price": 5}], {"branchName": "Main"})
    clock.advance(1)
    engine = ReconciliationEngine(remote, clock)
    store = MemoryRecordStore("t1")
    empty_local = build_snapshot(OWNER, read_collections(store), store.get_settings(), now=clock.now() - timedelta(hours=1))

    out = engine.initial_sync(empty_local, SyncMetadata())
    assert out.action == SyncAction.ADOPT_REMOTE
    merge_snapshot(store, out.remote)

    clock.advance(120)
    rebuilt = build_snapshot(OWNER, read_collections(store), store.get_settings(), now=clock.now())
    assert engine.steady_sync(rebuilt, out.metadata).action == SyncAction.IN_SYNC
    assert remote.pushes == []


def test_initial_sync_pushes_newer_local_without_mutating(clock, remote):
    remote.snapshots["owner-x-io"] = _snap(clock, [{"id": "remote"}])
    clock.advance(1)
    engine = ReconciliationEngine(remote, clock)
    out = engine.initial_sync(_snap(clock, [{"id": "local"}]), SyncMetadata())
    assert out.action == SyncAction.PUSHED
    assert out.remote is None
    assert len(remote.pushes) == 1
    assert out.metadata.last_pull_time is not None


def test_initial_sync_with_equal_timestamps_is_in_sync(clock, remote):
    snap = _snap(clock, [{"id": "p1"}])
    remote.snapshots["owner-x-io"] = snap
    out = ReconciliationEngine(remote, clock).initial_sync(_snap(clock, [{"id": "p1"}]), SyncMetadata())
    assert out.action == SyncAction.IN_SYNC
    assert out.metadata.last_data_fingerprint == fingerprint(snap)
    assert remote.pushes == []


def test_first_device_pushes_when_remote_missing(clock, remote):
    out = ReconciliationEngine(remote, clock).initial_sync(_snap(clock, [{"id": "p1"}]), SyncMetadata())
    assert out.action == SyncAction.PUSHED
    assert "owner-x-io" in remote.snapshots


def test_unreachable_remote_is_not_mistaken_for_first_device(clock, remote):
    remote.fetch_error = "timed out"
    out = ReconciliationEngine(remote, clock).initial_sync(_snap(clock, [{"id": "p1"}]), SyncMetadata())
    assert out.action == SyncAction.PULL_FAILED
    assert out.ok is False
    assert remote.pushes == []


def test_unparseable_remote_is_overwritten_by_local(clock, remote):
    remote.fetch_invalid = "invalid snapshot: item is missing an id"
    local = _snap(clock, [{"id": "p1"}])
    out = ReconciliationEngine(remote, clock).initial_sync(local, SyncMetadata())
    assert out.action == SyncAction.PUSHED
    assert out.remote is None
    assert remote.snapshots["owner-x-io"] is local
    assert out.metadata.last_data_fingerprint == fingerprint(local)


def test_unparseable_remote_fails_background_and_manual_pulls(clock, remote):
    remote.fetch_invalid = "unparseable response body"
    engine = ReconciliationEngine(remote, clock)
    md = SyncMetadata(owner_key=OWNER)
    assert engine.pull_if_newer(OWNER, md).action == SyncAction.PULL_FAILED
    assert engine.force_pull(OWNER, md).action == SyncAction.PULL_FAILED
    assert remote.pushes == []


def test_metadata_of_another_owner_is_discarded(clock, remote):
    stale = SyncMetadata(owner_key="previous@x.io", last_data_fingerprint="sha256:x", last_push_time=clock.now())
    engine = ReconciliationEngine(remote, clock)
    assert engine.has_pending_changes(_snap(clock), stale) is True
    out = engine.steady_sync(_snap(clock), stale)
    assert out.action == SyncAction.PUSHED
    assert out.metadata.owner_key == OWNER


def test_pull_if_newer_ignores_own_push_and_adopts_foreign_write(clock, remote):
    engine = ReconciliationEngine(remote, clock)
    pushed = engine.steady_sync(_snap(clock, [{"id": "p1"}]), SyncMetadata(owner_key=OWNER))

    clock.advance(300)
    own = engine.pull_if_newer(OWNER, pushed.metadata)
    assert own.action == SyncAction.IN_SYNC

    clock.advance(10)
    remote.snapshots["owner-x-io"] = _snap(clock, [{"id": "p1"}, {"id": "p2"}])
    clock.advance(290)
    foreign = engine.pull_if_newer(OWNER, own.metadata)
    assert foreign.action == SyncAction.ADOPT_REMOTE
    assert len(foreign.remote.products) == 2


def test_force_pull_reports_missing_remote(clock, remote):
    out = ReconciliationEngine(remote, clock).force_pull(OWNER, SyncMetadata())
    assert out.action == SyncAction.NO_REMOTE
    assert out.ok is True


def test_two_devices_converge(clock, remote):
    # Device A pushes first (nothing remote yet).
    store_a = MemoryRecordStore("t-a")
    store_a.insert("products", {"id": "p1", "name": "Gel", "price": 5})
    engine_a = ReconciliationEngine(remote, clock)
    snap_a = build_snapshot(OWNER, read_collections(store_a), store_a.get_settings(), now=clock.now())
    out_a = engine_a.initial_sync(snap_a, SyncMetadata())
    assert out_a.action == SyncAction.PUSHED

    # Device B starts later with an older, empty local state.
    store_b = MemoryRecordStore("t-b")
    engine_b = ReconciliationEngine(remote, clock)
    snap_b = build_snapshot(OWNER, read_collections(store_b), store_b.get_settings(), now=clock.now() - timedelta(minutes=10))
    clock.advance(5)
    out_b = engine_b.initial_sync(snap_b, SyncMetadata())
    assert out_b.action == SyncAction.ADOPT_REMOTE
    merge_snapshot(store_b, out_b.remote)
    assert store_b.list("products") == [{"id": "p1", "name": "Gel", "price": 5}]
    assert len(remote.pushes) == 1

    # B edits; its next steady-state pass pushes exactly once.
    clock.advance(60)
    store_b.update("products", {"id": "p1", "name": "Gel", "price": 6})
    snap_b2 = build_snapshot(OWNER, read_collections(store_b), store_b.get_settings(), now=clock.now())
    out_b2 = engine_b.steady_sync(snap_b2, out_b.metadata)
    assert out_b2.action == SyncAction.PUSHED
    assert len(remote.pushes) == 2

    # A's periodic pull adopts the edit.
    clock.advance(300)
    out_a2 = engine_a.pull_if_newer(OWNER, out_a.metadata)
    assert out_a2.action == SyncAction.ADOPT_REMOTE
    merge_snapshot(store_a, out_a2.remote)
    assert store_a.get("products", "p1")["price"] == 6
