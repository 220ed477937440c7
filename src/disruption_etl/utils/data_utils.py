import json
from datetime import datetime, timezone
from typing import Any


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in DuckDB TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_json(value: Any) -> str:
    """
    Serialise upstream payloads for a VARCHAR column.
    Values json cannot encode natively (datetimes, decimals) are stored as strings.
    """
    return json.dumps(value, default=str, ensure_ascii=False)
