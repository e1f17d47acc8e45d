"""Encoding of model fields into flat Redis hash values."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel

from .timeutils import to_epoch, to_iso


def encode_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    """Flatten values for a Redis hash.

    ``None`` becomes an empty string, booleans ``"1"``/``"0"``. An ``expires_at``
    datetime also writes ``expires_at_ts`` (epoch seconds) for range queries.
    """
    encoded: Dict[str, str] = {}
    for key, value in fields.items():
        if value is None:
            encoded[key] = ""
        elif isinstance(value, bool):
            encoded[key] = "1" if value else "0"
        elif isinstance(value, datetime):
            encoded[key] = to_iso(value)
            if key == "expires_at":
                encoded["expires_at_ts"] = str(to_epoch(value))
        elif isinstance(value, BaseModel):
            encoded[key] = value.model_dump_json()
        elif isinstance(value, (dict, list)):
            encoded[key] = json.dumps(value, default=str)
        elif isinstance(value, Enum):
            encoded[key] = str(value.value)
        else:
            encoded[key] = str(value)
    return encoded


def decode_bool(value: Any) -> bool:
    return value == "1"
