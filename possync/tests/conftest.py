import os
import sys
from datetime import datetime, timezone

import pytest


# Allow running pytest from either the repo root or from within `possync/`.
# Tests import `possync.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from possync.app.sync.clock import ManualClock
from possync.app.sync.local_state import KeyValueFile, MetadataStore
from possync.app.sync.remote import PullResult
from possync.app.sync.snapshot import sanitize_owner_key

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeRemote:
    """In-memory remote shared by any number of simulated devices."""

    def __init__(self):
        self.snapshots = {}
        self.pushes = []
        self.fetches = 0
        self.fail_push = False
        self.fetch_error = None
        self.fetch_invalid = None
        self.on_push = None
        self.on_fetch = None

    def push(self, snapshot):
        self.pushes.append(snapshot)
        if self.on_push:
            self.on_push(snapshot)
        if self.fail_push:
            return False
        self.snapshots[sanitize_owner_key(snapshot.owner_key)] = snapshot
        return True

    def fetch(self, owner_key):
        self.fetches += 1
        if self.on_fetch:
            self.on_fetch(owner_key)
        if self.fetch_error:
            return PullResult("error", error=self.fetch_error)
        if self.fetch_invalid:
            return PullResult("invalid", error=self.fetch_invalid)
        snap = self.snapshots.get(sanitize_owner_key(owner_key))
        if snap is None:
            return PullResult("missing")
        return PullResult("found", snapshot=snap)

    def pull(self, owner_key):
        return self.fetch(owner_key).snapshot


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def kv(tmp_path):
    return KeyValueFile(str(tmp_path / "state.json"))


@pytest.fixture
def metadata_store(kv):
    return MetadataStore(kv)


@pytest.fixture
def remote():
    return FakeRemote()
