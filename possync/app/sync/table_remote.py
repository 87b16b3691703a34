"""
Managed-table remote store: one row per owner in a Postgres table on the
managed backend, instead of a file on the hosting endpoint.

  CREATE TABLE sync_backups (
    owner_key   text PRIMARY KEY,
    created_at  timestamptz NOT NULL,
    payload     jsonb NOT NULL,
    updated_at  timestamptz NOT NULL DEFAULT now()
  );
"""

from typing import Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..logs import json_log
from .remote import PullResult, snapshot_from_payload
from .snapshot import Snapshot, sanitize_owner_key


class TableRemoteStore:
    def __init__(self, db_url: str, *, timeout: float = 20.0, table: str = "sync_backups"):
        self.db_url = (db_url or "").strip()
        self.timeout = timeout
        self.table = table

    def _connect(self):
        # Both the handshake and every statement are bounded by `timeout`.
        return psycopg.connect(
            self.db_url,
            row_factory=dict_row,
            connect_timeout=max(1, int(self.timeout)),
            options=f"-c statement_timeout={int(self.timeout * 1000)}",
        )

    def push(self, snapshot: Snapshot) -> bool:
        if not self.db_url:
            json_log("warning", "sync.push.skipped", reason="table database url not configured")
            return False
        key = sanitize_owner_key(snapshot.owner_key)
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {self.table} (owner_key, created_at, payload, updated_at)
                        VALUES (%s, %s, %s, now())
                        ON CONFLICT (owner_key)
                        DO UPDATE SET created_at = EXCLUDED.created_at,
                                      payload = EXCLUDED.payload,
                                      updated_at = now()
                        """,
                        (key, snapshot.created_at, Jsonb(snapshot.to_wire())),
                    )
        except (psycopg.Error, OSError) as ex:
            json_log("error", "sync.push.error", owner=snapshot.owner_key, backend="table", error=str(ex))
            return False
        json_log("info", "sync.push.ok", owner=snapshot.owner_key, backend="table", created_at=snapshot.created_at)
        return True

    def fetch(self, owner_key: str) -> PullResult:
        if not self.db_url:
            return PullResult("error", error="table database url not configured")
        try:
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT payload FROM {self.table} WHERE owner_key = %s",
                        (sanitize_owner_key(owner_key),),
                    )
                    row = cur.fetchone()
        except (psycopg.Error, OSError) as ex:
            json_log("error", "sync.pull.error", owner=owner_key, backend="table", error=str(ex))
            return PullResult("error", error=str(ex))

        if not row:
            json_log("info", "sync.pull.missing", owner=owner_key, backend="table")
            return PullResult("missing")
        result = snapshot_from_payload(owner_key, row.get("payload"))
        if not result.found:
            json_log("error", f"sync.pull.{result.status}", owner=owner_key, backend="table", error=result.error)
        return result

    def pull(self, owner_key: str) -> Optional[Snapshot]:
        return self.fetch(owner_key).snapshot
