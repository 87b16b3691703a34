from datetime import datetime, timezone

from possync.app.sync.merge import merge_snapshot, restore_snapshot
from possync.app.sync.records import MemoryRecordStore
from possync.app.sync.snapshot import build_snapshot

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _remote(collections, settings=None):
    return build_snapshot("owner@x.io", collections, settings or {}, now=NOW)


def _store(**collections):
    store = MemoryRecordStore("tenant-a")
    for name, items in collections.items():
        for item in items:
            store.insert(name, item)
    store.writes.clear()
    return store


def test_merge_keeps_local_only_items():
    store = _store(products=[{"id": "local-only", "name": "Comb"}])
    report = merge_snapshot(store, _remote({"products": [{"id": "p1", "name": "Gel"}]}))
    ids = sorted(p["id"] for p in store.list("products"))
    assert ids == ["local-only", "p1"]
    assert report.inserted == {"products": 1}
    assert report.deleted == {}


def test_merge_remote_version_wins_for_shared_ids():
    store = _store(staff=[{"id": "s1", "name": "Ana", "commission": 10}])
    merge_snapshot(store, _remote({"staff": [{"id": "s1", "name": "Ana", "commission": 15}]}))
    assert store.get("staff", "s1")["commission"] == 15
    assert len([s for s in store.list("staff") if s["id"] == "s1"]) == 1
    assert len(store.list("staff")) == 1


def test_merge_is_idempotent():
    remote = _remote({"products": [{"id": "p1", "name": "Gel"}], "sales": [{"id": "v1", "total": 10}]}, {"phone": "1"})
    store = _store()
    merge_snapshot(store, remote)
    store.writes.clear()

    report = merge_snapshot(store, remote)
    assert store.writes == []
    assert report.changes == 0
    assert report.skipped == {"products": 1, "sales": 1}


def test_merge_inserts_parents_before_children():
    store = _store()
    merge_snapshot(
        store,
        _remote(
            {
                "products": [{"id": "p1", "categoryId": "c1"}],
                "categories": [{"id": "c1", "name": "Hair"}],
                "sales": [{"id": "v1", "barberId": "s1"}],
                "staff": [{"id": "s1", "name": "Ana"}],
            }
        ),
    )
    order = [entity for op, entity, _ in store.writes if op == "insert"]
    assert order.index("categories") < order.index("products")
    assert order.index("staff") < order.index("sales")


def test_empty_remote_settings_do_not_clear_local_settings():
    store = _store()
    store.update_settings({"branchName": "Main"})
    report = merge_snapshot(store, _remote({}, {}))
    assert store.get_settings() == {"branchName": "Main"}
    assert report.settings_updated is False

    merge_snapshot(store, _remote({}, {"branchName": "North"}))
    assert store.get_settings() == {"branchName": "North"}


def test_restore_replaces_catalog_and_keeps_local_transactions():
    store = _store(
        products=[{"id": "old-product"}],
        categories=[{"id": "old-cat"}],
        sales=[{"id": "v-local", "total": 3}, {"id": "v1", "total": 99}],
    )
    report = restore_snapshot(
        store,
        _remote(
            {
                "categories": [{"id": "c1"}],
                "products": [{"id": "p1", "categoryId": "c1"}],
                "sales": [{"id": "v1", "total": 10}, {"id": "v2", "total": 20}],
            },
            {"branchName": "Restored"},
        ),
    )
    assert [p["id"] for p in store.list("products")] == ["p1"]
    assert [c["id"] for c in store.list("categories")] == ["c1"]
    sales = {s["id"]: s for s in store.list("sales")}
    assert set(sales) == {"v-local", "v1", "v2"}
    # Insert-if-missing: an existing transaction is never overwritten by a restore.
    assert sales["v1"]["total"] == 99
    assert store.get_settings() == {"branchName": "Restored"}
    assert report.deleted == {"products": 1, "categories": 1}
    assert report.skipped == {"sales": 1}
