from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Optional


def json_packb(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":")).encode("utf-8")


def json_unpackb(data: bytes) -> Any:
    return json.loads(data.decode("utf-8"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dump_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def load_time(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp. Naive values are taken to be UTC; a trailing
    "Z" (as written by most external producers) is accepted.
    """
    if value is None or value == "":
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
