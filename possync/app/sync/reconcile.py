"""
Reconciliation engine: decides between push, adopt-remote and no-op.

The engine never touches the local store and never persists anything. It
takes a freshly built local snapshot plus the metadata read at the start of a
cycle and returns an outcome carrying the metadata to write at the end of the
cycle (and the remote snapshot when the caller must merge it).

Initial sync (once per authenticated session):
- remote missing            -> push local (first device ever)
- remote unreachable        -> pull_failed; nothing is pushed, retried later
- remote unparseable        -> push local over it (logged as an error)
- remote newer              -> adopt_remote (caller merges)
- local newer               -> push local
- equal timestamps          -> in_sync

Steady state never pulls: unchanged fingerprint -> in_sync with no I/O,
otherwise push.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..logs import json_log
from .fingerprint import fingerprint
from .local_state import SyncMetadata
from .remote import PullResult, RemoteStore
from .snapshot import Snapshot

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SyncAction(str, enum.Enum):
    PUSHED = "pushed"
    PUSH_FAILED = "push_failed"
    ADOPT_REMOTE = "adopt_remote"
    IN_SYNC = "in_sync"
    NO_REMOTE = "no_remote"
    PULL_FAILED = "pull_failed"
    IN_PROGRESS = "in_progress"
    SKIPPED = "skipped"


@dataclass
class SyncOutcome:
    action: SyncAction
    metadata: SyncMetadata
    remote: Optional[Snapshot] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.action not in {SyncAction.PUSH_FAILED, SyncAction.PULL_FAILED}


class ReconciliationEngine:
    def __init__(self, remote: RemoteStore, clock):
        self.remote = remote
        self.clock = clock

    def _own(self, metadata: SyncMetadata, owner_key: str) -> SyncMetadata:
        # Metadata from another owner is replaced, never merged.
        if metadata.owner_key != owner_key:
            return SyncMetadata(owner_key=owner_key)
        return metadata.model_copy()

    def _push(self, local: Snapshot, md: SyncMetadata, fp: Optional[str] = None) -> SyncOutcome:
        if not self.remote.push(local):
            return SyncOutcome(SyncAction.PUSH_FAILED, md, error="push failed")
        md.last_push_time = self.clock.now()
        md.last_data_fingerprint = fp or fingerprint(local)
        return SyncOutcome(SyncAction.PUSHED, md)

    def _adopt(self, remote: Snapshot, md: SyncMetadata) -> SyncOutcome:
        md.last_pull_time = self.clock.now()
        # After the merge local holds at least the remote content; only local
        # extras will make the next fingerprint differ and trigger a push.
        md.last_data_fingerprint = fingerprint(remote)
        return SyncOutcome(SyncAction.ADOPT_REMOTE, md, remote=remote)

    def initial_sync(self, local: Snapshot, metadata: SyncMetadata) -> SyncOutcome:
        md = self._own(metadata, local.owner_key)
        res: PullResult = self.remote.fetch(local.owner_key)
        if res.status == "error":
            return SyncOutcome(SyncAction.PULL_FAILED, md, error=res.error)
        if res.status == "invalid":
            json_log("error", "sync.initial.replace_invalid_remote", owner=local.owner_key, error=res.error)
        if not res.found:
            return self._push(local, md)

        remote = res.snapshot
        if remote.created_at > local.created_at:
            return self._adopt(remote, md)
        md.last_pull_time = self.clock.now()
        if local.created_at > remote.created_at:
            return self._push(local, md)
        md.last_data_fingerprint = fingerprint(remote)
        return SyncOutcome(SyncAction.IN_SYNC, md)

    def steady_sync(self, local: Snapshot, metadata: SyncMetadata, *, force: bool = False) -> SyncOutcome:
        md = self._own(metadata, local.owner_key)
        fp = fingerprint(local)
        if not force and fp == md.last_data_fingerprint:
            return SyncOutcome(SyncAction.IN_SYNC, md)
        return self._push(local, md, fp)

    def has_pending_changes(self, local: Snapshot, metadata: SyncMetadata) -> bool:
        if metadata.owner_key != local.owner_key:
            return True
        return fingerprint(local) != metadata.last_data_fingerprint

    def pull_if_newer(self, owner_key: str, metadata: SyncMetadata) -> SyncOutcome:
        """
        Background safety-net pull. Remote counts as newer when it was written
        after this device's last push and its content is not what this device
        last pushed or adopted.
        """
        md = self._own(metadata, owner_key)
        res = self.remote.fetch(owner_key)
        if res.status in {"error", "invalid"}:
            return SyncOutcome(SyncAction.PULL_FAILED, md, error=res.error)
        if not res.found:
            return SyncOutcome(SyncAction.NO_REMOTE, md)
        remote = res.snapshot
        if remote.created_at > (md.last_push_time or _EPOCH) and fingerprint(remote) != md.last_data_fingerprint:
            return self._adopt(remote, md)
        md.last_pull_time = self.clock.now()
        return SyncOutcome(SyncAction.IN_SYNC, md)

    def force_pull(self, owner_key: str, metadata: SyncMetadata) -> SyncOutcome:
        md = self._own(metadata, owner_key)
        res = self.remote.fetch(owner_key)
        if res.status in {"error", "invalid"}:
            return SyncOutcome(SyncAction.PULL_FAILED, md, error=res.error)
        if not res.found:
            return SyncOutcome(SyncAction.NO_REMOTE, md)
        return self._adopt(res.snapshot, md)
