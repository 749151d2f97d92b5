"""
JSON serialization utilities for eventrelay types.

Relay envelopes and SQLite rows carry UUIDs and timezone-aware datetimes,
neither of which the standard JSON encoder handles.

Example:
    >>> from eventrelay.serialization import json_dumps, json_loads
    >>> from uuid import uuid4
    >>>
    >>> json_str = json_dumps({"id": uuid4()})
    >>> parsed = json_loads(json_str)
"""

import json
from datetime import datetime
from typing import Any
from uuid import UUID


class RelayJSONEncoder(json.JSONEncoder):
    """
    JSON encoder that handles UUID and datetime objects.

    - UUID objects are written as their hyphenated string form
    - datetime objects are written in ISO 8601 format with microseconds
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, UUID):
            return str(obj)
        if isinstance(obj, datetime):
            return obj.isoformat(timespec="microseconds")
        return super().default(obj)


def json_dumps(obj: Any) -> str:
    """
    Serialize object to JSON string with UUID and datetime support.

    Args:
        obj: Object to serialize

    Returns:
        Compact JSON string representation
    """
    return json.dumps(obj, cls=RelayJSONEncoder, separators=(",", ":"))


def json_loads(s: str | bytes) -> Any:
    """Deserialize a JSON string produced by json_dumps()."""
    return json.loads(s)


__all__ = [
    "RelayJSONEncoder",
    "json_dumps",
    "json_loads",
]
