from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


SyncStrategy = Annotated[Literal["bidirectional", "push-only", "table"], BeforeValidator(_to_lower_str)]
SyncState = Literal["idle", "pulling", "pushing", "synced", "error"]

# Owner keys are business emails or tenant ids, compared case-insensitively;
# they are sanitised separately before being used in a path.
OwnerKey = Annotated[str, BeforeValidator(_to_lower_str), StringConstraints(min_length=1, max_length=320)]
