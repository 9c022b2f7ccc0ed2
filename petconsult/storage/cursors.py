from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Tuple


def encode_time_id_cursor(created_at: datetime, identifier: str) -> str:
    """Encode a cursor combining a timestamp and identifier for keyset paging."""

    ts = created_at if created_at.tzinfo else created_at.replace(tzinfo=timezone.utc)
    return f"{ts.isoformat()}|{identifier}"


def decode_time_id_cursor(cursor: str) -> Tuple[datetime, str]:
    """Decode a time/id cursor into timestamp and identifier."""

    parts = cursor.split("|", 1)
    if len(parts) != 2 or not parts[1]:
        raise ValueError("invalid cursor")
    ts = datetime.fromisoformat(parts[0])
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts, str(uuid.UUID(parts[1]))
