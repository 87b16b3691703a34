"""
Apply a remote snapshot to the local record store.

`merge_snapshot` is the automatic path: upsert by id, skip identical items,
never delete. `restore_snapshot` is the explicit, user-triggered path that
also replaces the catalog wholesale.
"""

from dataclasses import dataclass, field
from typing import Any

from .records import RecordStore
from .snapshot import COLLECTION_NAMES, Snapshot, item_id

# Catalog collections a restore replaces; everything else is insert-if-missing.
RESTORE_REPLACED: tuple[str, ...] = ("categories", "staff", "services", "products")


@dataclass
class MergeReport:
    inserted: dict[str, int] = field(default_factory=dict)
    updated: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    deleted: dict[str, int] = field(default_factory=dict)
    settings_updated: bool = False

    def _bump(self, bucket: dict[str, int], name: str) -> None:
        bucket[name] = bucket.get(name, 0) + 1

    @property
    def changes(self) -> int:
        return (
            sum(self.inserted.values())
            + sum(self.updated.values())
            + sum(self.deleted.values())
            + (1 if self.settings_updated else 0)
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "inserted": dict(self.inserted),
            "updated": dict(self.updated),
            "skipped": dict(self.skipped),
            "deleted": dict(self.deleted),
            "settings_updated": self.settings_updated,
        }


def _apply_settings(store: RecordStore, remote: Snapshot, report: MergeReport) -> None:
    # An empty remote settings object is treated as absent, not as "clear everything".
    if remote.settings and remote.settings != store.get_settings():
        store.update_settings(dict(remote.settings))
        report.settings_updated = True


def merge_collection(store: RecordStore, name: str, remote_items, report: MergeReport) -> None:
    local_by_id = {item_id(i): i for i in store.list(name)}
    for item in remote_items:
        iid = item_id(item)
        existing = local_by_id.get(iid)
        if existing is None:
            store.insert(name, dict(item))
            report._bump(report.inserted, name)
        elif existing == item:
            report._bump(report.skipped, name)
        else:
            store.update(name, dict(item))
            report._bump(report.updated, name)
        local_by_id[iid] = item


def merge_snapshot(store: RecordStore, remote: Snapshot) -> MergeReport:
    """
    Upsert every remote item into the local store by id.

    Items that exist only locally are left alone. Collections are visited
    parents-first so a child never lands before the record it references.
    """
    report = MergeReport()
    _apply_settings(store, remote, report)
    for name in COLLECTION_NAMES:
        merge_collection(store, name, remote.items(name), report)
    return report


def restore_snapshot(store: RecordStore, remote: Snapshot) -> MergeReport:
    report = MergeReport()
    # Children first when wiping, parents first when loading.
    for name in reversed(RESTORE_REPLACED):
        for item in store.list(name):
            store.delete(name, item_id(item))
            report._bump(report.deleted, name)
    _apply_settings(store, remote, report)
    for name in COLLECTION_NAMES:
        if name in RESTORE_REPLACED:
            for item in remote.items(name):
                store.insert(name, dict(item))
                report._bump(report.inserted, name)
            continue
        local_ids = {item_id(i) for i in store.list(name)}
        for item in remote.items(name):
            if item_id(item) in local_ids:
                report._bump(report.skipped, name)
                continue
            store.insert(name, dict(item))
            report._bump(report.inserted, name)
    return report
