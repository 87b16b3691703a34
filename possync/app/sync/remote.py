"""
Hosting remote store: push snapshots to a fixed ingestion endpoint, read them
back from an owner-derived static path.

Never raises to callers. Every failure is logged and turned into `False`
(push) or a `PullResult` with status `missing`, `invalid` or `error` (fetch).
A body that arrives but does not parse as a snapshot is `invalid`: retrying
will not change it, so callers treat it as overwritable rather than transient.
"""

import json
import secrets
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from pydantic import ValidationError

from ..logs import json_log
from .snapshot import Snapshot, backup_filename, sanitize_owner_key


@dataclass(frozen=True)
class PullResult:
    status: str  # "found" | "missing" | "invalid" | "error"
    snapshot: Optional[Snapshot] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.status == "found" and self.snapshot is not None


class RemoteStore(Protocol):
    def push(self, snapshot: Snapshot) -> bool: ...

    def fetch(self, owner_key: str) -> PullResult: ...

    def pull(self, owner_key: str) -> Optional[Snapshot]: ...


def _read_body(resp) -> str:
    raw = resp.read() if resp else b""
    return raw.decode("utf-8") if raw else ""


def _http_error_message(ex: urllib.error.HTTPError) -> str:
    try:
        body = ex.read().decode("utf-8")  # type: ignore[attr-defined]
    except Exception:
        body = ""
    msg = f"http {getattr(ex, 'code', None)} {getattr(ex, 'reason', '')}".strip()
    if body:
        msg = f"{msg}: {body[:300]}"
    return msg


def snapshot_from_payload(owner_key: str, payload: Any) -> PullResult:
    try:
        snap = Snapshot.from_wire(payload)
    except (ValidationError, ValueError) as ex:
        return PullResult("invalid", error=f"invalid snapshot: {str(ex)[:300]}")
    # A sanitised-path collision must never hand one tenant another tenant's data.
    if sanitize_owner_key(snap.owner_key) != sanitize_owner_key(owner_key):
        return PullResult("error", error="snapshot owner mismatch")
    return PullResult("found", snapshot=snap)


class HostingRemoteStore:
    def __init__(self, push_url: str, pull_base_url: str, *, timeout: float = 20.0, api_key: str = ""):
        self.push_url = (push_url or "").strip()
        self.pull_base_url = (pull_base_url or "").strip().rstrip("/")
        self.timeout = timeout
        self.api_key = (api_key or "").strip()

    def pull_url(self, owner_key: str) -> str:
        return f"{self.pull_base_url}/backups/{backup_filename(owner_key)}"

    def _cache_busted(self, url: str) -> str:
        # Unique per call so intermediary caches never serve a stale copy.
        query = urllib.parse.urlencode({"t": int(time.time() * 1000), "r": secrets.token_hex(6)})
        return f"{url}?{query}"

    def push(self, snapshot: Snapshot) -> bool:
        if not self.push_url:
            json_log("warning", "sync.push.skipped", reason="push url not configured")
            return False
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        data = json.dumps(snapshot.to_wire(), default=str).encode("utf-8")
        req = urllib.request.Request(self.push_url, data=data, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                status = int(getattr(resp, "status", 200) or 200)
                body = _read_body(resp)
        except urllib.error.HTTPError as ex:
            json_log("error", "sync.push.error", owner=snapshot.owner_key, error=_http_error_message(ex))
            return False
        except (urllib.error.URLError, TimeoutError, OSError) as ex:
            json_log("error", "sync.push.error", owner=snapshot.owner_key, error=str(ex))
            return False

        if not (200 <= status < 300):
            json_log("error", "sync.push.error", owner=snapshot.owner_key, error=f"http {status}")
            return False
        try:
            json.loads(body)
        except ValueError:
            json_log("error", "sync.push.error", owner=snapshot.owner_key, error="unparseable response body")
            return False
        json_log("info", "sync.push.ok", owner=snapshot.owner_key, created_at=snapshot.created_at)
        return True

    def fetch(self, owner_key: str) -> PullResult:
        if not self.pull_base_url:
            return PullResult("error", error="pull base url not configured")
        url = self._cache_busted(self.pull_url(owner_key))
        req = urllib.request.Request(
            url,
            headers={"Accept": "application/json", "Cache-Control": "no-cache"},
            method="GET",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                status = int(getattr(resp, "status", 200) or 200)
                body = _read_body(resp)
        except urllib.error.HTTPError as ex:
            if getattr(ex, "code", None) == 404:
                json_log("info", "sync.pull.missing", owner=owner_key)
                return PullResult("missing")
            msg = _http_error_message(ex)
            json_log("error", "sync.pull.error", owner=owner_key, error=msg)
            return PullResult("error", error=msg)
        except (urllib.error.URLError, TimeoutError, OSError) as ex:
            json_log("error", "sync.pull.error", owner=owner_key, error=str(ex))
            return PullResult("error", error=str(ex))

        if not (200 <= status < 300):
            json_log("error", "sync.pull.error", owner=owner_key, error=f"http {status}")
            return PullResult("error", error=f"http {status}")
        try:
            payload = json.loads(body)
        except ValueError:
            json_log("error", "sync.pull.invalid", owner=owner_key, error="unparseable response body")
            return PullResult("invalid", error="unparseable response body")

        result = snapshot_from_payload(owner_key, payload)
        if result.found:
            json_log("info", "sync.pull.ok", owner=owner_key, created_at=result.snapshot.created_at)
        else:
            json_log("error", f"sync.pull.{result.status}", owner=owner_key, error=result.error)
        return result

    def pull(self, owner_key: str) -> Optional[Snapshot]:
        return self.fetch(owner_key).snapshot
