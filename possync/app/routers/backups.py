import hmac
import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Request
from fastapi.responses import FileResponse

from ..config import settings
from ..logs import json_log
from ..sync.snapshot import backup_filename

router = APIRouter(prefix="/bkp", tags=["backups"])

_BACKUP_NAME_RE = re.compile(r"^backup_[a-z0-9-]{1,320}\.json$")
_LOG_NAME = "backup_log.txt"


def _backups_dir() -> Path:
    return Path(settings.backups_dir)


def _require_api_key(x_api_key: Optional[str]) -> None:
    expected = settings.backup_api_key
    if not expected:
        # Open ingestion (no key configured in this environment).
        return
    if not x_api_key or not hmac.compare_digest(x_api_key.strip(), expected):
        raise HTTPException(status_code=403, detail="forbidden")


def _write_atomic(target: Path, data: dict[str, Any]) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".upload-", suffix=".json", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, target)
    except Exception:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def _append_log(base: Path, filename: str, owner: str) -> None:
    line = f"{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')} - backup updated: {filename} - owner: {owner}\n"
    with open(base / _LOG_NAME, "a", encoding="utf-8") as f:
        f.write(line)


def _public_url(request: Request, filename: str) -> str:
    base = settings.public_base_url or str(request.base_url).rstrip("/")
    return f"{base}/bkp/backups/{filename}"


@router.post("/webhook_backup")
def receive_backup(
    request: Request,
    payload: Any = Body(...),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
):
    """
    Ingestion endpoint for device snapshots. One file per owner, replaced on
    every push.
    """
    _require_api_key(x_api_key)
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="invalid payload")
    owner = str(payload.get("businessEmail") or "").strip()
    if not owner or not payload.get("timestamp"):
        raise HTTPException(status_code=400, detail="businessEmail and timestamp are required")
    filename = backup_filename(owner)
    if not _BACKUP_NAME_RE.match(filename):
        raise HTTPException(status_code=400, detail="invalid businessEmail")

    base = _backups_dir()
    try:
        _write_atomic(base / filename, payload)
        _append_log(base, filename, owner)
    except OSError as ex:
        json_log("error", "backups.write.error", filename=filename, error=str(ex))
        raise HTTPException(status_code=500, detail="failed to store backup")

    json_log("info", "backups.stored", filename=filename, timestamp=payload.get("timestamp"))
    return {
        "success": True,
        "filename": filename,
        "timestamp": payload.get("timestamp"),
        "url": _public_url(request, filename),
    }


@router.get("/backups/{filename}")
def get_backup(filename: str):
    if not _BACKUP_NAME_RE.match(filename or ""):
        raise HTTPException(status_code=404, detail="not found")
    target = _backups_dir() / filename
    if not target.is_file():
        raise HTTPException(status_code=404, detail="not found")
    return FileResponse(
        path=str(target),
        media_type="application/json",
        headers={"Cache-Control": "no-store"},
    )
