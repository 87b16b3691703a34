#!/usr/bin/env python3
"""
Background integrity auditor.

Deterministic checks over the persisted records of ONE tenant. Every read and
every repair goes through a tenant-scoped record store; a repair touches a
single field of a single record and nothing else.

Runs at most once per cooldown; the last-run stamp lives in the local
key-value file under its own key (not in the sync metadata).

Checks:
- tenant_separation: records without a tenant key, or carrying another
  tenant's key (FAIL, never repaired)
- sale_totals: sale total vs. sum of its line items (small drift repaired)
- mixed_payments: split payment amounts vs. sale total (FAIL)
- negative_stock: small negative stock reset to 0, larger FAIL
- weight_products: weight-priced products without unit/price (WARNING)
- orphan_refs: sales -> staff, products -> categories (WARNING)
- empty_sales: sales without line items (WARNING)
"""

import argparse
import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from possync.app.config import settings
from possync.app.logs import json_log
from possync.app.sync.clock import SystemClock
from possync.app.sync.local_state import KeyValueFile
from possync.app.sync.records import PgRecordStore, RecordStore
from possync.app.sync.snapshot import COLLECTION_NAMES, item_id, sanitize_owner_key

PASS = "PASS"
WARNING = "WARNING"
FAIL = "FAIL"

_RANK = {PASS: 0, WARNING: 1, FAIL: 2}
_CENT = 0.01


@dataclass
class Finding:
    check: str
    status: str
    message: str
    entity: Optional[str] = None
    record_id: Optional[str] = None
    repaired: bool = False


@dataclass
class AuditReport:
    tenant_id: str
    ran_at: datetime
    findings: list[Finding] = field(default_factory=list)

    @property
    def status(self) -> str:
        worst = PASS
        for f in self.findings:
            if _RANK[f.status] > _RANK[worst]:
                worst = f.status
        return worst

    @property
    def repaired(self) -> int:
        return sum(1 for f in self.findings if f.repaired)

    def as_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "ran_at": self.ran_at.isoformat(),
            "status": self.status,
            "repaired": self.repaired,
            "findings": [asdict(f) for f in self.findings],
        }


def _num(v) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def _line_total(line: dict) -> float:
    if line.get("subtotal") not in (None, ""):
        return _num(line.get("subtotal"))
    return _num(line.get("quantity")) * _num(line.get("price"))


def expected_sale_total(sale: dict) -> float:
    gross = sum(_line_total(i) for i in (sale.get("items") or []) if isinstance(i, dict))
    discount = sale.get("discount") or {}
    if isinstance(discount, dict) and discount.get("value") not in (None, ""):
        value = _num(discount.get("value"))
        if str(discount.get("type") or "").lower() == "percentage":
            gross -= gross * value / 100.0
        else:
            gross -= value
    return round(gross, 2)


def _tenant_of(record: dict) -> Optional[str]:
    for k in ("tenant_id", "tenantId"):
        if k in record:
            return str(record.get(k) or "").strip()
    return None


class IntegrityAuditor:
    def __init__(
        self,
        store: RecordStore,
        kv: KeyValueFile,
        *,
        clock=None,
        cooldown_seconds: int = 14400,
        total_tolerance: float = 10.0,
        stock_floor: float = -5.0,
        auto_repair: bool = True,
    ):
        if not (store.tenant_id or "").strip():
            raise ValueError("tenant_id is required")
        self.store = store
        self.kv = kv
        self.clock = clock or SystemClock()
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.total_tolerance = float(total_tolerance)
        self.stock_floor = float(stock_floor)
        self.auto_repair = auto_repair

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    @property
    def last_run_key(self) -> str:
        return f"integrity-audit:last-run:{sanitize_owner_key(self.tenant_id)}"

    def _foreign(self, record: dict) -> bool:
        tenant = _tenant_of(record)
        return tenant is not None and tenant != self.tenant_id

    def last_run(self) -> Optional[datetime]:
        raw = self.kv.get(self.last_run_key)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(str(raw))
        except ValueError:
            return None

    def is_due(self) -> bool:
        last = self.last_run()
        return last is None or self.clock.now() - last >= self.cooldown

    def run(self, *, force: bool = False) -> Optional[AuditReport]:
        """Returns None when still inside the cooldown window."""
        if not force and not self.is_due():
            return None
        now = self.clock.now()
        report = AuditReport(tenant_id=self.tenant_id, ran_at=now)
        for check in (
            self.check_tenant_separation,
            self.check_sale_totals,
            self.check_mixed_payments,
            self.check_negative_stock,
            self.check_weight_products,
            self.check_orphan_refs,
            self.check_empty_sales,
        ):
            name = check.__name__.removeprefix("check_")
            try:
                found = check()
            except Exception as ex:
                found = [Finding(name, WARNING, f"check failed: {ex}")]
            if not found:
                found = [Finding(name, PASS, "ok")]
            report.findings.extend(found)
        for f in report.findings:
            if f.status != PASS:
                json_log(
                    "warning" if f.status == WARNING else "error",
                    "audit.finding",
                    tenant_id=self.tenant_id,
                    **asdict(f),
                )
        self.kv.set(self.last_run_key, now.isoformat())
        json_log("info", "audit.done", tenant_id=self.tenant_id, status=report.status, repaired=report.repaired)
        return report

    # checks --------------------------------------------------------------

    def check_tenant_separation(self) -> list[Finding]:
        out: list[Finding] = []
        for name in COLLECTION_NAMES:
            unscoped = self.store.count_unscoped(name)
            if unscoped:
                out.append(Finding("tenant_separation", FAIL, f"{unscoped} {name} records have no tenant key", entity=name))
            for rec in self.store.list(name):
                tenant = _tenant_of(rec)
                if tenant is not None and tenant != self.tenant_id:
                    out.append(
                        Finding(
                            "tenant_separation",
                            FAIL,
                            "record carries another tenant key" if tenant else "record has an empty tenant key",
                            entity=name,
                            record_id=item_id(rec),
                        )
                    )
        return out

    def check_sale_totals(self) -> list[Finding]:
        out: list[Finding] = []
        for sale in self.store.list("sales"):
            if not sale.get("items") or self._foreign(sale):
                continue
            expected = expected_sale_total(sale)
            diff = abs(_num(sale.get("total")) - expected)
            if diff <= _CENT:
                continue
            sid = item_id(sale)
            if diff < self.total_tolerance and self.auto_repair:
                repaired = self.store.set_field("sales", sid, "total", expected)
                out.append(
                    Finding(
                        "sale_totals",
                        WARNING if repaired else FAIL,
                        f"total drift {diff:.2f} {'repaired' if repaired else 'not repaired'}",
                        entity="sales",
                        record_id=sid,
                        repaired=repaired,
                    )
                )
                continue
            out.append(Finding("sale_totals", FAIL, f"total drift {diff:.2f}", entity="sales", record_id=sid))
        return out

    def check_mixed_payments(self) -> list[Finding]:
        out: list[Finding] = []
        for sale in self.store.list("sales"):
            if str(sale.get("paymentMethod") or "").lower() != "mixed":
                continue
            parts = sale.get("splitPayments") or []
            paid = sum(_num(p.get("amount")) for p in parts if isinstance(p, dict))
            diff = abs(_num(sale.get("total")) - paid)
            if diff > _CENT:
                out.append(
                    Finding(
                        "mixed_payments",
                        FAIL,
                        f"split payments differ from total by {diff:.2f}",
                        entity="sales",
                        record_id=item_id(sale),
                    )
                )
        return out

    def check_negative_stock(self) -> list[Finding]:
        out: list[Finding] = []
        for p in self.store.list("products"):
            if "stock" not in p or self._foreign(p):
                continue
            stock = _num(p.get("stock"))
            if stock >= 0:
                continue
            pid = item_id(p)
            if stock >= self.stock_floor and self.auto_repair:
                repaired = self.store.set_field("products", pid, "stock", 0)
                out.append(
                    Finding(
                        "negative_stock",
                        WARNING if repaired else FAIL,
                        f"stock {stock:g} {'reset to 0' if repaired else 'not repaired'}",
                        entity="products",
                        record_id=pid,
                        repaired=repaired,
                    )
                )
                continue
            out.append(Finding("negative_stock", FAIL, f"stock {stock:g} below {self.stock_floor:g}", entity="products", record_id=pid))
        return out

    def check_weight_products(self) -> list[Finding]:
        out: list[Finding] = []
        for p in self.store.list("products"):
            if not (p.get("isByWeight") or p.get("is_by_weight")):
                continue
            if not (p.get("unit") or "").strip() or _num(p.get("price")) <= 0:
                out.append(
                    Finding("weight_products", WARNING, "weight product missing unit or price", entity="products", record_id=item_id(p))
                )
        return out

    def check_orphan_refs(self) -> list[Finding]:
        out: list[Finding] = []
        staff_ids = {item_id(s) for s in self.store.list("staff")}
        category_ids = {item_id(c) for c in self.store.list("categories")}
        for sale in self.store.list("sales"):
            ref = sale.get("barberId")
            if ref and str(ref) not in staff_ids:
                out.append(Finding("orphan_refs", WARNING, f"sale references unknown staff {ref}", entity="sales", record_id=item_id(sale)))
        for p in self.store.list("products"):
            ref = p.get("categoryId")
            if ref and str(ref) not in category_ids:
                out.append(
                    Finding("orphan_refs", WARNING, f"product references unknown category {ref}", entity="products", record_id=item_id(p))
                )
        return out

    def check_empty_sales(self) -> list[Finding]:
        return [
            Finding("empty_sales", WARNING, "sale has no line items", entity="sales", record_id=item_id(s))
            for s in self.store.list("sales")
            if not s.get("items")
        ]


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--tenant-id", default=settings.tenant_id)
    parser.add_argument("--state", default=settings.state_path)
    parser.add_argument("--force", action="store_true", help="Ignore the cooldown")
    parser.add_argument("--no-repair", action="store_true")
    args = parser.parse_args()

    auditor = IntegrityAuditor(
        PgRecordStore(args.tenant_id),
        KeyValueFile(args.state),
        cooldown_seconds=settings.audit_cooldown,
        total_tolerance=settings.audit_total_tolerance,
        stock_floor=settings.audit_stock_floor,
        auto_repair=not args.no_repair,
    )
    report = auditor.run(force=args.force)
    if report is None:
        print(json.dumps({"skipped": True, "last_run": str(auditor.last_run())}))
        return
    print(json.dumps(report.as_dict(), default=str, indent=2))


if __name__ == "__main__":
    main()
