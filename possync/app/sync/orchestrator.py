"""
Sync orchestrator: decides *when* the reconciliation engine runs.

One instance owns all sync state for one device (timers, initialized flag,
re-entrancy guard). It is driven by `tick()`, which the worker loop calls
every second or so; all timers are deadlines compared against an injected
clock, so tests step time by hand.

Strategies:
- bidirectional: initial pull-or-push, debounced steady-state pushes,
  periodic background pull, manual force_pull/force_push.
- push-only: no pull logic at all; every local change is pushed after the
  debounce window.
- table: push-only against the managed table store, plus an explicit
  `restore()` that replaces the local catalog from the remote backup.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from ..logs import json_log
from ..validation import SyncState, SyncStrategy
from .local_state import MetadataStore, SyncMetadata, TenantCache
from .merge import MergeReport, merge_snapshot, restore_snapshot
from .reconcile import ReconciliationEngine, SyncAction, SyncOutcome
from .records import RecordStore, read_collections
from .snapshot import Snapshot, build_snapshot

STRATEGIES = ("bidirectional", "push-only", "table")


class SyncPolicy(BaseModel):
    strategy: SyncStrategy = "bidirectional"
    debounce_seconds: float = Field(default=2.0, ge=0)
    min_push_interval: float = Field(default=10.0, ge=0)
    pull_interval: float = Field(default=300.0, gt=0)
    check_interval: float = Field(default=30.0, gt=0)

    @property
    def pulls(self) -> bool:
        return self.strategy == "bidirectional"

    @property
    def unconditional_push(self) -> bool:
        return self.strategy != "bidirectional"

    @classmethod
    def from_settings(cls, settings, *, strategy: Optional[str] = None) -> "SyncPolicy":
        return cls(
            strategy=strategy or settings.sync_strategy,
            debounce_seconds=settings.debounce_seconds,
            min_push_interval=settings.min_push_interval,
            pull_interval=settings.pull_interval,
            check_interval=settings.check_interval,
        )


class SyncOrchestrator:
    def __init__(
        self,
        *,
        engine: ReconciliationEngine,
        store_for: Callable[[str], RecordStore],
        metadata_store: MetadataStore,
        identity: Callable[[], Optional[str]],
        clock,
        policy: Optional[SyncPolicy] = None,
    ):
        self.engine = engine
        self.store_for = store_for
        self.metadata_store = metadata_store
        self.identity = identity
        self.clock = clock
        self.policy = policy or SyncPolicy()

        self._lock = threading.RLock()
        self._sync_guard = threading.Lock()
        self._running = False
        self._owner: Optional[str] = None
        self._store: Optional[RecordStore] = None
        self._subscribed: set[int] = set()
        self._initialized = False
        self._epoch = 0
        self._applying_remote = False

        self._debounce_due: Optional[datetime] = None
        self._next_pull: Optional[datetime] = None
        self._next_check: Optional[datetime] = None
        self._retry_initial_at: Optional[datetime] = None
        self._last_push_at: Optional[datetime] = None

        self.state: SyncState = "idle"
        self.last_sync_time: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_merge: Optional[MergeReport] = None

    # lifecycle -----------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            self._running = True
        json_log("info", "sync.started", strategy=self.policy.strategy)

    def stop(self) -> None:
        with self._lock:
            self._running = False
            self._cancel_timers()
            self._initialized = False
            self._epoch += 1
        json_log("info", "sync.stopped", strategy=self.policy.strategy)

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def owner_key(self) -> Optional[str]:
        return self._owner

    def _cancel_timers(self) -> None:
        self._debounce_due = None
        self._next_pull = None
        self._next_check = None
        self._retry_initial_at = None

    def _secs(self, seconds: float) -> timedelta:
        return timedelta(seconds=seconds)

    # identity / gating ---------------------------------------------------

    def _current_owner(self) -> Optional[str]:
        owner = self.identity()
        return (owner or "").strip().lower() or None

    def _owner_changed(self, owner: Optional[str]) -> None:
        with self._lock:
            previous = self._owner
            self._cancel_timers()
            self._initialized = False
            self._epoch += 1
            self._owner = owner
            self._last_push_at = None
            self._store = None
            self.state = "idle"
            self.last_sync_time = None
            self.last_error = None
        stored = self.metadata_store.load()
        if stored.owner_key and stored.owner_key != owner:
            self.metadata_store.reset()
        if owner:
            store = self.store_for(owner)
            if id(store) not in self._subscribed:
                store.subscribe(lambda entity, source=store: self._on_local_change(source, entity))
                self._subscribed.add(id(store))
            with self._lock:
                self._store = store
        json_log("info", "sync.owner_changed", previous=previous, owner=owner)

    def _ready(self) -> bool:
        """Owner known and local collections finished loading."""
        return bool(self._owner) and self._store is not None and self._store.is_loaded()

    # change notifications ------------------------------------------------

    def _on_local_change(self, source: RecordStore, entity: str) -> None:
        # Writes to a previous owner's store or made by our own merge are not local edits.
        if self._applying_remote or source is not self._store:
            return
        self.notify_change()

    def notify_change(self) -> None:
        """Arm (or re-arm) the debounce timer. Ignored until initial sync is done."""
        with self._lock:
            if not self._running or not self._initialized:
                return
            self._debounce_due = self.clock.now() + self._secs(self.policy.debounce_seconds)

    # driving -------------------------------------------------------------

    def tick(self) -> None:
        if not self._running:
            return
        owner = self._current_owner()
        if owner != self._owner:
            self._owner_changed(owner)
        if not self._ready():
            return
        if not self._initialized:
            self._initial_sync()
            return

        now = self.clock.now()
        if self._debounce_due is not None and now >= self._debounce_due:
            self._run_debounced()
        if self._next_pull is not None and now >= self._next_pull:
            self._periodic_pull()
        if self._next_check is not None and now >= self._next_check:
            self._periodic_check()

    def _mark_initialized(self) -> None:
        now = self.clock.now()
        with self._lock:
            self._initialized = True
            self._retry_initial_at = None
            self._next_check = now + self._secs(self.policy.check_interval)
            if self.policy.pulls:
                self._next_pull = now + self._secs(self.policy.pull_interval)
        json_log("info", "sync.ready", owner=self._owner, strategy=self.policy.strategy)

    def _initial_sync(self) -> None:
        now = self.clock.now()
        if self._retry_initial_at is not None and now < self._retry_initial_at:
            return
        if not self.policy.pulls:
            self._mark_initialized()
            return
        outcome = self._cycle("initial", "pulling", lambda owner, md: self.engine.initial_sync(self.build_snapshot(owner), md))
        if outcome.action in {SyncAction.PULL_FAILED, SyncAction.IN_PROGRESS, SyncAction.SKIPPED}:
            # Remote unreachable: never treat that as "first device", try again later.
            self._retry_initial_at = now + self._secs(self.policy.check_interval)
            return
        self._mark_initialized()

    def _too_soon_after_push(self, now: datetime) -> Optional[datetime]:
        if self._last_push_at is None:
            return None
        allowed = self._last_push_at + self._secs(self.policy.min_push_interval)
        return allowed if now < allowed else None

    def _run_debounced(self) -> None:
        now = self.clock.now()
        allowed = self._too_soon_after_push(now)
        if allowed is not None:
            with self._lock:
                self._debounce_due = allowed
            return
        with self._lock:
            self._debounce_due = None
        force = self.policy.unconditional_push
        outcome = self._cycle(
            "debounced", "pushing", lambda owner, md: self.engine.steady_sync(self.build_snapshot(owner), md, force=force)
        )
        if outcome.action == SyncAction.IN_PROGRESS:
            with self._lock:
                if self._debounce_due is None:
                    self._debounce_due = now + self._secs(self.policy.debounce_seconds)

    def _periodic_check(self) -> None:
        now = self.clock.now()
        with self._lock:
            self._next_check = now + self._secs(self.policy.check_interval)
            pending = self._debounce_due is not None
        if pending or self._too_soon_after_push(now) is not None:
            return
        self._cycle("check", "pushing", lambda owner, md: self.engine.steady_sync(self.build_snapshot(owner), md))

    def _periodic_pull(self) -> None:
        now = self.clock.now()
        with self._lock:
            self._next_pull = now + self._secs(self.policy.pull_interval)
        self._cycle("periodic_pull", "pulling", lambda owner, md: self.engine.pull_if_newer(owner, md))

    # manual entry points -------------------------------------------------

    def force_push(self) -> SyncOutcome:
        if not self._ready() or not self._initialized:
            return self._skipped("not ready")
        return self._cycle(
            "force_push", "pushing", lambda owner, md: self.engine.steady_sync(self.build_snapshot(owner), md, force=True)
        )

    def force_pull(self) -> SyncOutcome:
        if not self.policy.pulls:
            return self._skipped(f"{self.policy.strategy} strategy does not pull")
        if not self._ready():
            return self._skipped("not ready")
        return self._cycle("force_pull", "pulling", lambda owner, md: self.engine.force_pull(owner, md))

    def restore(self) -> SyncOutcome:
        if self.policy.strategy != "table":
            return self._skipped("restore is only available with the table strategy")
        if not self._ready():
            return self._skipped("not ready")
        return self._cycle(
            "restore", "pulling", lambda owner, md: self.engine.force_pull(owner, md), apply=restore_snapshot
        )

    def has_pending_changes(self) -> bool:
        if not self._ready():
            return False
        snap = self.build_snapshot(self._owner)
        return self.engine.has_pending_changes(snap, self.metadata_store.load_for(self._owner))

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "strategy": self.policy.strategy,
            "owner_key": self._owner,
            "ready": self._initialized,
            "last_sync_time": self.last_sync_time,
            "last_error": self.last_error,
            "debounce_pending": self._debounce_due is not None,
        }

    # internals -----------------------------------------------------------

    def build_snapshot(self, owner: str) -> Snapshot:
        store = self._store
        return build_snapshot(owner, read_collections(store), store.get_settings(), now=self.clock.now())

    def _skipped(self, reason: str) -> SyncOutcome:
        md = self.metadata_store.load_for(self._owner) if self._owner else SyncMetadata()
        return SyncOutcome(SyncAction.SKIPPED, md, error=reason)

    def _apply_remote(self, remote: Snapshot, apply: Callable[[RecordStore, Snapshot], MergeReport]) -> MergeReport:
        store = self._store
        self._applying_remote = True
        try:
            report = apply(store, remote)
        finally:
            self._applying_remote = False
        self.last_merge = report
        TenantCache(self.metadata_store.kv, store.tenant_id).put("products", store.list("products"))
        return report

    def _cycle(
        self,
        kind: str,
        busy_state: str,
        fn: Callable[[str, SyncMetadata], SyncOutcome],
        *,
        apply: Callable[[RecordStore, Snapshot], MergeReport] = merge_snapshot,
    ) -> SyncOutcome:
        # One push/pull cycle at a time; a request arriving mid-flight is dropped.
        if not self._sync_guard.acquire(blocking=False):
            json_log("info", "sync.cycle.dropped", kind=kind, reason="in progress")
            md = self.metadata_store.load_for(self._owner) if self._owner else SyncMetadata()
            return SyncOutcome(SyncAction.IN_PROGRESS, md)
        try:
            owner = self._owner
            epoch = self._epoch
            metadata = self.metadata_store.load_for(owner)
            self.state = busy_state
            try:
                outcome = fn(owner, metadata)
            except Exception as ex:
                json_log("error", "sync.job.error", kind=kind, owner=owner, error=str(ex))
                self.state = "error"
                self.last_error = str(ex)
                return SyncOutcome(SyncAction.SKIPPED, metadata, error=str(ex))

            # The owner may have changed while the request was in flight.
            if epoch != self._epoch or self._current_owner() != owner:
                json_log("warning", "sync.cycle.discarded", kind=kind, owner=owner)
                self.state = "idle"
                return SyncOutcome(SyncAction.SKIPPED, metadata, error="owner changed")

            if outcome.action == SyncAction.ADOPT_REMOTE and outcome.remote is not None:
                try:
                    report = self._apply_remote(outcome.remote, apply)
                except Exception as ex:
                    # Metadata stays as read: the next pull will try the merge again.
                    json_log("error", "sync.merge.error", kind=kind, owner=owner, error=str(ex))
                    self.state = "error"
                    self.last_error = str(ex)
                    return SyncOutcome(SyncAction.SKIPPED, metadata, error=str(ex))
                json_log("info", "sync.remote.applied", kind=kind, owner=owner, **report.as_dict())

            self.metadata_store.save(outcome.metadata)
            if outcome.action == SyncAction.PUSHED:
                self._last_push_at = self.clock.now()
            if outcome.ok:
                self.state = "synced"
                self.last_sync_time = self.clock.now()
                self.last_error = None
            else:
                self.state = "error"
                self.last_error = outcome.error
            json_log("info", "sync.cycle", kind=kind, owner=owner, action=outcome.action.value)
            return outcome
        finally:
            self._sync_guard.release()
