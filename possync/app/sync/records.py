"""
Local record store: per-entity CRUD scoped to one tenant.

This is the device's own persisted state that snapshots are built from and
merges are applied to. `MemoryRecordStore` backs tests and embedded use;
`PgRecordStore` keeps records in one generic Postgres table:

  CREATE TABLE pos_records (
    tenant_id   text NOT NULL,
    entity      text NOT NULL,
    id          text NOT NULL,
    data        jsonb NOT NULL,
    updated_at  timestamptz NOT NULL DEFAULT now(),
    PRIMARY KEY (tenant_id, entity, id)
  );
"""

import copy
import json
from typing import Any, Callable, Optional, Protocol

from psycopg.types.json import Jsonb

from .. import db
from .snapshot import COLLECTION_NAMES, item_id

SETTINGS_ENTITY = "settings"
SETTINGS_ID = "app"

ChangeListener = Callable[[str], None]


class RecordStore(Protocol):
    tenant_id: str

    def is_loaded(self) -> bool: ...

    def list(self, entity: str) -> list[dict[str, Any]]: ...

    def get(self, entity: str, record_id: str) -> Optional[dict[str, Any]]: ...

    def insert(self, entity: str, record: dict[str, Any]) -> None: ...

    def update(self, entity: str, record: dict[str, Any]) -> None: ...

    def delete(self, entity: str, record_id: str) -> None: ...

    def get_settings(self) -> dict[str, Any]: ...

    def update_settings(self, values: dict[str, Any]) -> None: ...

    def set_field(self, entity: str, record_id: str, field: str, value: Any) -> bool: ...

    def count_unscoped(self, entity: str) -> int: ...

    def subscribe(self, listener: ChangeListener) -> None: ...


def read_collections(store: RecordStore) -> dict[str, list[dict[str, Any]]]:
    return {name: store.list(name) for name in COLLECTION_NAMES}


class _Listeners:
    def __init__(self):
        self._listeners: list[ChangeListener] = []

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _emit(self, entity: str) -> None:
        for fn in list(self._listeners):
            fn(entity)


class MemoryRecordStore(_Listeners):
    """
    In-process store. Several instances may share one `rows` mapping (one per
    tenant) the way tenants share a database table.
    """

    def __init__(self, tenant_id: str, *, rows: Optional[dict] = None, loaded: bool = True):
        super().__init__()
        self.tenant_id = tenant_id
        self.rows: dict[tuple[str, str, str], dict[str, Any]] = rows if rows is not None else {}
        self.loaded = loaded
        self.writes: list[tuple[str, str, str]] = []

    def is_loaded(self) -> bool:
        return self.loaded

    def _key(self, entity: str, record_id: str) -> tuple[str, str, str]:
        return (self.tenant_id, entity, str(record_id))

    def list(self, entity: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(v)
            for (tenant, ent, _), v in self.rows.items()
            if tenant == self.tenant_id and ent == entity
        ]

    def get(self, entity: str, record_id: str) -> Optional[dict[str, Any]]:
        row = self.rows.get(self._key(entity, record_id))
        return copy.deepcopy(row) if row is not None else None

    def insert(self, entity: str, record: dict[str, Any]) -> None:
        rid = item_id(record)
        if not rid:
            raise ValueError("record id is required")
        key = self._key(entity, rid)
        if key in self.rows:
            raise ValueError(f"duplicate id {rid} in {entity}")
        self.rows[key] = copy.deepcopy(record)
        self.writes.append(("insert", entity, rid))
        self._emit(entity)

    def update(self, entity: str, record: dict[str, Any]) -> None:
        rid = item_id(record)
        key = self._key(entity, rid)
        if key not in self.rows:
            raise KeyError(f"{entity}/{rid}")
        self.rows[key] = copy.deepcopy(record)
        self.writes.append(("update", entity, rid))
        self._emit(entity)

    def delete(self, entity: str, record_id: str) -> None:
        if self.rows.pop(self._key(entity, record_id), None) is not None:
            self.writes.append(("delete", entity, str(record_id)))
            self._emit(entity)

    def get_settings(self) -> dict[str, Any]:
        row = self.rows.get(self._key(SETTINGS_ENTITY, SETTINGS_ID)) or {}
        return copy.deepcopy(row.get("values") or {})

    def update_settings(self, values: dict[str, Any]) -> None:
        self.rows[self._key(SETTINGS_ENTITY, SETTINGS_ID)] = {"id": SETTINGS_ID, "values": copy.deepcopy(values)}
        self.writes.append(("update", SETTINGS_ENTITY, SETTINGS_ID))
        self._emit(SETTINGS_ENTITY)

    def set_field(self, entity: str, record_id: str, field: str, value: Any) -> bool:
        row = self.rows.get(self._key(entity, record_id))
        if row is None:
            return False
        row[field] = value
        self.writes.append(("set_field", entity, str(record_id)))
        self._emit(entity)
        return True

    def count_unscoped(self, entity: str) -> int:
        return sum(1 for (tenant, ent, _) in self.rows if ent == entity and not (tenant or "").strip())


class PgRecordStore(_Listeners):
    def __init__(self, tenant_id: str, *, table: str = "pos_records"):
        super().__init__()
        if not (tenant_id or "").strip():
            raise ValueError("tenant_id is required")
        self.tenant_id = tenant_id
        self.table = table

    def is_loaded(self) -> bool:
        # Rows are read straight from the database on every call.
        return True

    def list(self, entity: str) -> list[dict[str, Any]]:
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT data FROM {self.table} WHERE tenant_id = %s AND entity = %s ORDER BY id",
                    (self.tenant_id, entity),
                )
                return [dict(r["data"]) for r in cur.fetchall()]

    def get(self, entity: str, record_id: str) -> Optional[dict[str, Any]]:
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT data FROM {self.table} WHERE tenant_id = %s AND entity = %s AND id = %s",
                    (self.tenant_id, entity, str(record_id)),
                )
                row = cur.fetchone()
                return dict(row["data"]) if row else None

    def insert(self, entity: str, record: dict[str, Any]) -> None:
        rid = item_id(record)
        if not rid:
            raise ValueError("record id is required")
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self.table} (tenant_id, entity, id, data, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    """,
                    (self.tenant_id, entity, rid, Jsonb(record)),
                )
        self._emit(entity)

    def update(self, entity: str, record: dict[str, Any]) -> None:
        rid = item_id(record)
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self.table}
                    SET data = %s, updated_at = now()
                    WHERE tenant_id = %s AND entity = %s AND id = %s
                    """,
                    (Jsonb(record), self.tenant_id, entity, rid),
                )
        self._emit(entity)

    def delete(self, entity: str, record_id: str) -> None:
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM {self.table} WHERE tenant_id = %s AND entity = %s AND id = %s",
                    (self.tenant_id, entity, str(record_id)),
                )
        self._emit(entity)

    def get_settings(self) -> dict[str, Any]:
        row = self.get(SETTINGS_ENTITY, SETTINGS_ID) or {}
        return dict(row.get("values") or {})

    def update_settings(self, values: dict[str, Any]) -> None:
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self.table} (tenant_id, entity, id, data, updated_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (tenant_id, entity, id)
                    DO UPDATE SET data = EXCLUDED.data, updated_at = now()
                    """,
                    (self.tenant_id, SETTINGS_ENTITY, SETTINGS_ID, Jsonb({"id": SETTINGS_ID, "values": values})),
                )
        self._emit(SETTINGS_ENTITY)

    def set_field(self, entity: str, record_id: str, field: str, value: Any) -> bool:
        # jsonb_set touches exactly one key of one row of this tenant.
        with db.get_conn() as conn:
            db.set_tenant_context(conn, self.tenant_id)
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self.table}
                    SET data = jsonb_set(data, %s::text[], %s::jsonb, true), updated_at = now()
                    WHERE tenant_id = %s AND entity = %s AND id = %s
                    """,
                    ([field], json.dumps(value, default=str), self.tenant_id, entity, str(record_id)),
                )
                changed = bool(cur.rowcount)
        if changed:
            self._emit(entity)
        return changed

    def count_unscoped(self, entity: str) -> int:
        with db.get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    SELECT COUNT(*) AS n
                    FROM {self.table}
                    WHERE entity = %s AND (tenant_id IS NULL OR btrim(tenant_id) = '')
                    """,
                    (entity,),
                )
                row = cur.fetchone()
                return int((row or {}).get("n") or 0)
