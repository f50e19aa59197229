"""Tagged JSON encoding for key values.

Chunk bounds are persisted in checkpoints and must come back with their
original Python type, otherwise restored bounds would stop comparing against
the keys read from the database. Each value is stored as `{"t": tag, "v": ...}`.
"""

from __future__ import annotations

import base64
from datetime import date, datetime
from decimal import Decimal
from typing import Any

EncodedValue = dict[str, Any] | None


def encode_value(value: Any) -> EncodedValue:
    if value is None:
        return None
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"t": "bool", "v": value}
    if isinstance(value, int):
        return {"t": "int", "v": value}
    if isinstance(value, float):
        return {"t": "float", "v": value}
    if isinstance(value, str):
        return {"t": "str", "v": value}
    if isinstance(value, Decimal):
        return {"t": "decimal", "v": str(value)}
    # datetime before date: datetime is a date subclass
    if isinstance(value, datetime):
        return {"t": "datetime", "v": value.isoformat()}
    if isinstance(value, date):
        return {"t": "date", "v": value.isoformat()}
    if isinstance(value, bytes):
        return {"t": "bytes", "v": base64.b64encode(value).decode("ascii")}
    raise TypeError(f"cannot encode key value of type {type(value).__name__}")


def decode_value(encoded: EncodedValue) -> Any:
    if encoded is None:
        return None
    tag, raw = encoded["t"], encoded["v"]
    match tag:
        case "bool" | "int" | "float" | "str":
            return raw
        case "decimal":
            return Decimal(raw)
        case "datetime":
            return datetime.fromisoformat(raw)
        case "date":
            return date.fromisoformat(raw)
        case "bytes":
            return base64.b64decode(raw)
    raise ValueError(f"unknown value tag {tag!r}")
