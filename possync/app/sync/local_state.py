"""
Durable local bookkeeping for one device.

Everything lives in a single JSON file of namespaced keys: the sync metadata
record, the auditor's last-run stamp and per-tenant offline caches.
"""

import json
import os
import tempfile
import threading
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from ..logs import json_log
from .snapshot import sanitize_owner_key

SYNC_METADATA_KEY = "possync-sync-metadata"


class KeyValueFile:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load_all(self) -> dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as ex:
            json_log("warning", "local_state.unreadable", path=self.path, error=str(ex))
            return {}
        return data if isinstance(data, dict) else {}

    def _save_all(self, data: dict[str, Any]) -> None:
        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)
        # Write-then-rename so a crash never leaves a half-written file behind.
        fd, tmp = tempfile.mkstemp(prefix=".kv-", suffix=".json", dir=folder)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, self.path)
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._load_all().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            data = self._load_all()
            data[key] = value
            self._save_all(data)

    def delete(self, key: str) -> None:
        with self._lock:
            data = self._load_all()
            if key in data:
                del data[key]
                self._save_all(data)


class SyncMetadata(BaseModel):
    last_push_time: Optional[datetime] = None
    last_pull_time: Optional[datetime] = None
    last_data_fingerprint: str = ""
    owner_key: str = ""


class MetadataStore:
    def __init__(self, kv: KeyValueFile, key: str = SYNC_METADATA_KEY):
        self.kv = kv
        self.key = key

    def load(self) -> SyncMetadata:
        raw = self.kv.get(self.key)
        if not raw:
            return SyncMetadata()
        try:
            return SyncMetadata.model_validate(raw)
        except ValidationError:
            json_log("warning", "sync.metadata.corrupt", key=self.key)
            return SyncMetadata()

    def load_for(self, owner_key: str) -> SyncMetadata:
        """
        Metadata for `owner_key`. A record persisted for a different owner is
        never reused: the caller gets a fresh record for the new owner.
        """
        md = self.load()
        if md.owner_key != owner_key:
            if md.owner_key:
                json_log("info", "sync.metadata.reset", previous_owner=md.owner_key, owner=owner_key)
            return SyncMetadata(owner_key=owner_key)
        return md

    def save(self, metadata: SyncMetadata) -> None:
        self.kv.set(self.key, metadata.model_dump(mode="json"))

    def reset(self) -> None:
        self.kv.delete(self.key)


class TenantCache:
    """Offline entity cache namespaced per tenant; never a single global key."""

    def __init__(self, kv: KeyValueFile, tenant_id: str):
        if not (tenant_id or "").strip():
            raise ValueError("tenant_id is required")
        self.kv = kv
        self.tenant_id = tenant_id

    def key(self, entity: str) -> str:
        return f"offline-cache:{sanitize_owner_key(self.tenant_id)}:{entity}"

    def put(self, entity: str, items: list[dict[str, Any]]) -> None:
        # The raw tenant id is stored alongside so a sanitisation collision is detectable on read.
        self.kv.set(self.key(entity), {"tenant_id": self.tenant_id, "items": list(items)})

    def get(self, entity: str) -> list[dict[str, Any]]:
        raw = self.kv.get(self.key(entity)) or {}
        if not isinstance(raw, dict) or raw.get("tenant_id") != self.tenant_id:
            return []
        return list(raw.get("items") or [])
