#!/usr/bin/env python3
"""
Long-running device sync worker.

Drives the sync orchestrator (initial sync, debounced pushes, periodic pull)
and runs the integrity auditor whenever its cooldown has elapsed.

Manual operations run a single step and exit:
  --force-push   push the current local snapshot unconditionally
  --force-pull   adopt the remote snapshot (bidirectional only)
  --restore      replace the local catalog from the remote (table strategy)
  --audit        run the integrity auditor now, ignoring the cooldown
"""

import argparse
import json
import sys
import time
import traceback
from typing import Optional

from possync.app.config import settings
from possync.app.logs import json_log
from possync.app.sync.clock import SystemClock
from possync.app.sync.local_state import KeyValueFile, MetadataStore
from possync.app.sync.orchestrator import STRATEGIES, SyncOrchestrator, SyncPolicy
from possync.app.sync.reconcile import ReconciliationEngine, SyncOutcome
from possync.app.sync.records import PgRecordStore, RecordStore
from possync.app.sync.remote import HostingRemoteStore, RemoteStore
from possync.app.sync.table_remote import TableRemoteStore

from possync.workers.integrity_auditor import IntegrityAuditor


def build_remote(strategy: str) -> RemoteStore:
    if strategy == "table":
        if not settings.table_db_url:
            raise RuntimeError("SYNC_TABLE_DATABASE_URL is required for the table strategy")
        return TableRemoteStore(settings.table_db_url, timeout=settings.http_timeout)
    if not settings.push_url or not settings.pull_base_url:
        raise RuntimeError("SYNC_PUSH_URL and SYNC_PULL_BASE_URL are required")
    return HostingRemoteStore(
        settings.push_url,
        settings.pull_base_url,
        timeout=settings.http_timeout,
        api_key=settings.backup_api_key,
    )


def build_orchestrator(
    *,
    owner_key: str,
    tenant_id: str,
    state_path: str,
    strategy: str,
    remote: Optional[RemoteStore] = None,
    clock=None,
) -> SyncOrchestrator:
    clock = clock or SystemClock()
    policy = SyncPolicy.from_settings(settings, strategy=strategy)
    stores: dict[str, RecordStore] = {}

    def store_for(owner: str) -> RecordStore:
        tenant = tenant_id or owner
        if tenant not in stores:
            stores[tenant] = PgRecordStore(tenant)
        return stores[tenant]

    return SyncOrchestrator(
        engine=ReconciliationEngine(remote or build_remote(strategy), clock),
        store_for=store_for,
        metadata_store=MetadataStore(KeyValueFile(state_path)),
        identity=lambda: owner_key,
        clock=clock,
        policy=policy,
    )


def _print_outcome(outcome: SyncOutcome) -> None:
    print(
        json.dumps(
            {
                "action": outcome.action.value,
                "ok": outcome.ok,
                "error": outcome.error,
                "metadata": outcome.metadata.model_dump(mode="json"),
            },
            indent=2,
        )
    )


def run_manual(orch: SyncOrchestrator, args) -> int:
    orch.start()
    # Gating and (for bidirectional) the initial sync happen on the first tick.
    orch.tick()
    if args.force_push:
        outcome = orch.force_push()
    elif args.force_pull:
        outcome = orch.force_pull()
    else:
        outcome = orch.restore()
    orch.stop()
    _print_outcome(outcome)
    return 0 if outcome.ok and not outcome.error else 1


def run_audit(tenant_id: str, state_path: str, *, force: bool) -> Optional[dict]:
    auditor = IntegrityAuditor(
        PgRecordStore(tenant_id),
        KeyValueFile(state_path),
        cooldown_seconds=settings.audit_cooldown,
        total_tolerance=settings.audit_total_tolerance,
        stock_floor=settings.audit_stock_floor,
    )
    report = auditor.run(force=force)
    return report.as_dict() if report else None


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--owner", default=settings.owner_key)
    parser.add_argument("--tenant-id", default=settings.tenant_id)
    parser.add_argument("--state", default=settings.state_path)
    parser.add_argument("--strategy", default=settings.sync_strategy, choices=STRATEGIES)
    parser.add_argument("--sleep", type=float, default=1.0)
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--force-push", action="store_true")
    parser.add_argument("--force-pull", action="store_true")
    parser.add_argument("--restore", action="store_true")
    parser.add_argument("--audit", action="store_true", help="Run the integrity auditor now and exit")
    args = parser.parse_args()

    tenant_id = args.tenant_id or args.owner
    if not args.owner:
        parser.error("--owner (or SYNC_OWNER_KEY) is required")

    if args.audit:
        print(json.dumps(run_audit(tenant_id, args.state, force=True), default=str, indent=2))
        return

    orch = build_orchestrator(owner_key=args.owner, tenant_id=tenant_id, state_path=args.state, strategy=args.strategy)
    if args.force_push or args.force_pull or args.restore:
        sys.exit(run_manual(orch, args))

    orch.start()
    try:
        while True:
            try:
                orch.tick()
            except Exception as ex:
                # Never crash the worker loop; sync degrades to local-only until the next tick.
                json_log("error", "worker.sync.error", owner=args.owner, error=str(ex))
                traceback.print_exc(file=sys.stderr)

            try:
                if orch.initialized:
                    run_audit(tenant_id, args.state, force=False)
            except Exception as ex:
                json_log("error", "worker.audit.error", tenant_id=tenant_id, error=str(ex))
                traceback.print_exc(file=sys.stderr)

            if args.once:
                break
            time.sleep(args.sleep)
    finally:
        orch.stop()


if __name__ == "__main__":
    main()
