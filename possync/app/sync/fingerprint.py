"""
Change-detection digest for snapshots.

SHA-256 over a canonical JSON rendering of the owner key, settings and every
collection (items sorted by id). Build timestamps are left out: rebuilding an
unchanged state yields the same fingerprint, and any edit to any item changes
it, even when collection sizes stay the same.
"""

import hashlib
import json

from .snapshot import COLLECTION_NAMES, Snapshot, item_id


def _canonical(snapshot: Snapshot) -> str:
    body = {
        "owner": snapshot.owner_key,
        "settings": snapshot.settings,
        "collections": {
            name: sorted(snapshot.items(name), key=item_id) for name in COLLECTION_NAMES
        },
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def fingerprint(snapshot: Snapshot) -> str:
    return "sha256:" + hashlib.sha256(_canonical(snapshot).encode("utf-8")).hexdigest()
