from datetime import datetime, timezone

import pytest

from possync.app.sync.snapshot import (
    COLLECTION_NAMES,
    Snapshot,
    SnapshotError,
    backup_filename,
    build_snapshot,
    sanitize_owner_key,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def test_sanitize_owner_key_is_path_safe_and_lowercase():
    assert sanitize_owner_key("Shop.Owner+1@Example.COM") == "shop-owner-1-example-com"
    assert backup_filename("a@b.c") == "backup_a-b-c.json"


def test_sanitize_owner_key_collides_for_keys_differing_only_in_special_chars():
    # Both map to the same path; the remote client rejects the mismatch on read.
    assert sanitize_owner_key("a.b@x.io") == sanitize_owner_key("a_b@x.io")


def test_build_snapshot_includes_every_collection_even_when_empty():
    snap = build_snapshot("owner@x.io", {"products": [{"id": "p1", "name": "Gel", "price": 5}]}, None, now=NOW)
    assert snap.created_at == NOW
    assert snap.settings == {}
    assert snap.sizes()["products"] == 1
    for name in COLLECTION_NAMES:
        assert isinstance(snap.items(name), tuple)
    wire = snap.to_wire()
    for key in (
        "businessEmail",
        "timestamp",
        "version",
        "appSettings",
        "barbers",
        "cashAdvances",
        "barberCommissions",
        "operationalExpenses",
    ):
        assert key in wire
    assert wire["barbers"] == []


def test_build_snapshot_is_isolated_from_later_local_edits():
    products = [{"id": "p1", "name": "Gel", "tags": ["a"]}]
    snap = build_snapshot("owner@x.io", {"products": products}, {"branchName": "Main"}, now=NOW)
    products[0]["tags"].append("b")
    products[0]["name"] = "Wax"
    assert snap.products[0] == {"id": "p1", "name": "Gel", "tags": ["a"]}


def test_duplicate_ids_keep_last_occurrence():
    snap = build_snapshot(
        "owner@x.io",
        {"staff": [{"id": "s1", "name": "Old"}, {"id": "s2", "name": "Ana"}, {"id": "s1", "name": "New"}]},
        None,
        now=NOW,
    )
    assert [s["id"] for s in snap.staff] == ["s2", "s1"]
    assert snap.staff[1]["name"] == "New"


def test_numeric_ids_compare_as_strings():
    snap = build_snapshot("owner@x.io", {"sales": [{"id": 1700000000000, "total": 10}]}, None, now=NOW)
    assert snap.sales[0]["id"] == 1700000000000


def test_items_without_id_are_rejected():
    with pytest.raises(SnapshotError):
        build_snapshot("owner@x.io", {"products": [{"name": "nameless"}]}, None, now=NOW)


def test_from_wire_parses_aliases_and_naive_timestamps_as_utc():
    snap = Snapshot.from_wire(
        {
            "businessEmail": "owner@x.io",
            "timestamp": "2026-03-01T12:00:00",
            "appSettings": {"branchName": "Main"},
            "barbers": [{"id": "s1", "name": "Ana"}],
        }
    )
    assert snap.owner_key == "owner@x.io"
    assert snap.created_at == NOW
    assert snap.staff[0]["name"] == "Ana"
    assert snap.products == ()


def test_from_wire_rejects_non_object_and_missing_owner():
    with pytest.raises(SnapshotError):
        Snapshot.from_wire([1, 2, 3])
    with pytest.raises(ValueError):
        Snapshot.from_wire({"timestamp": "2026-03-01T12:00:00Z"})


def test_wire_roundtrip_preserves_content():
    snap = build_snapshot("owner@x.io", {"tips": [{"id": "t1", "amount": 2.5}]}, {"phone": "1"}, now=NOW)
    again = Snapshot.from_wire(snap.to_wire())
    assert again == snap
