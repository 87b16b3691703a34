"""
Business snapshot: one tenant's full state at an instant.

The wire format keeps the field names the hosting endpoint already stores
(`businessEmail`, `timestamp`, `barbers`, `barberCommissions`, ...), so files
written by older clients still parse. Python code uses the snake_case names.
"""

from __future__ import annotations

import copy
import re
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..validation import OwnerKey

SCHEMA_VERSION = "1.0"

# (field name, wire key), in merge order: parents before the children that
# reference them (categories -> products, staff -> sales/commissions).
COLLECTIONS: list[tuple[str, str]] = [
    ("categories", "categories"),
    ("staff", "barbers"),
    ("services", "services"),
    ("products", "products"),
    ("promotions", "promotions"),
    ("sales", "sales"),
    ("cash_advances", "cashAdvances"),
    ("commissions", "barberCommissions"),
    ("expenses", "operationalExpenses"),
    ("tips", "tips"),
]

COLLECTION_NAMES: list[str] = [name for name, _ in COLLECTIONS]

_UNSAFE_OWNER_CHARS = re.compile(r"[^A-Za-z0-9]")


class SnapshotError(ValueError):
    pass


def sanitize_owner_key(owner_key: str) -> str:
    """Path-safe token for an owner key: every char outside [A-Za-z0-9] becomes '-', then lowercase."""
    return _UNSAFE_OWNER_CHARS.sub("-", owner_key or "").lower()


def backup_filename(owner_key: str) -> str:
    return f"backup_{sanitize_owner_key(owner_key)}.json"


def item_id(item: Mapping[str, Any]) -> str:
    # Older clients used numeric ids (epoch millis); compare as strings.
    raw = item.get("id") if isinstance(item, Mapping) else None
    if raw is None:
        return ""
    return str(raw).strip()


def _normalize_items(v: Any) -> tuple[dict[str, Any], ...]:
    if v is None:
        return ()
    if not isinstance(v, (list, tuple)):
        raise SnapshotError("collection must be a list")
    by_id: dict[str, dict[str, Any]] = {}
    for raw in v:
        if not isinstance(raw, Mapping):
            raise SnapshotError("collection items must be objects")
        iid = item_id(raw)
        if not iid:
            raise SnapshotError("collection item is missing an id")
        # Last occurrence wins so a collection never carries duplicate ids.
        by_id.pop(iid, None)
        by_id[iid] = dict(raw)
    return tuple(by_id.values())


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    owner_key: OwnerKey = Field(alias="businessEmail")
    created_at: datetime = Field(alias="timestamp")
    schema_version: str = Field(default=SCHEMA_VERSION, alias="version")
    settings: dict[str, Any] = Field(default_factory=dict, alias="appSettings")

    categories: tuple[dict[str, Any], ...] = Field(default=(), alias="categories")
    staff: tuple[dict[str, Any], ...] = Field(default=(), alias="barbers")
    services: tuple[dict[str, Any], ...] = Field(default=(), alias="services")
    products: tuple[dict[str, Any], ...] = Field(default=(), alias="products")
    promotions: tuple[dict[str, Any], ...] = Field(default=(), alias="promotions")
    sales: tuple[dict[str, Any], ...] = Field(default=(), alias="sales")
    cash_advances: tuple[dict[str, Any], ...] = Field(default=(), alias="cashAdvances")
    commissions: tuple[dict[str, Any], ...] = Field(default=(), alias="barberCommissions")
    expenses: tuple[dict[str, Any], ...] = Field(default=(), alias="operationalExpenses")
    tips: tuple[dict[str, Any], ...] = Field(default=(), alias="tips")

    export_date: Optional[datetime] = Field(default=None, alias="exportDate")
    backup_type: str = Field(default="automatic", alias="backupType")

    @field_validator("created_at", "export_date")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is None:
            return v
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_validator(*COLLECTION_NAMES, mode="before")
    @classmethod
    def _items(cls, v: Any) -> tuple[dict[str, Any], ...]:
        return _normalize_items(v)

    @field_validator("settings", mode="before")
    @classmethod
    def _settings(cls, v: Any) -> dict[str, Any]:
        if v is None:
            return {}
        if not isinstance(v, Mapping):
            raise SnapshotError("appSettings must be an object")
        return dict(v)

    def items(self, collection: str) -> tuple[dict[str, Any], ...]:
        if collection not in COLLECTION_NAMES:
            raise KeyError(collection)
        return getattr(self, collection)

    def sizes(self) -> dict[str, int]:
        return {name: len(self.items(name)) for name in COLLECTION_NAMES}

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_wire(cls, data: Any) -> "Snapshot":
        if not isinstance(data, Mapping):
            raise SnapshotError("snapshot must be a JSON object")
        return cls.model_validate(data)


def build_snapshot(
    owner_key: str,
    collections: Mapping[str, Iterable[Mapping[str, Any]]],
    settings: Optional[Mapping[str, Any]],
    *,
    now: datetime,
    backup_type: str = "automatic",
) -> Snapshot:
    """
    Assemble a snapshot from the current local collections.

    Every collection is present (empty tuple when the caller has none) so
    "no items" is data, not missing data. `created_at` is the build time.
    Items are deep-copied: later local edits never reach a built snapshot.
    """
    data: dict[str, Any] = {
        "owner_key": owner_key,
        "created_at": now,
        "export_date": now,
        "schema_version": SCHEMA_VERSION,
        "backup_type": backup_type,
        "settings": copy.deepcopy(dict(settings or {})),
    }
    for name in COLLECTION_NAMES:
        data[name] = [copy.deepcopy(dict(i)) for i in (collections.get(name) or [])]
    return Snapshot.model_validate(data)
