"""
Cache value serialization.

Values are stored as JSON: objects, arrays, strings, numbers, booleans and
null, nested arbitrarily. Values that would not come back unchanged (sets,
bytes, NaN, tuples, dicts with non-string keys, custom objects) raise
SerializationError.
"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional

from shared.errors import SerializationError


def _check_shape(value: Any) -> None:
    if isinstance(value, tuple):
        raise TypeError("tuples are decoded as lists")
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"dict key {key!r} is not a string")
            _check_shape(item)
    elif isinstance(value, list):
        for item in value:
            _check_shape(item)


def serialize(value: Any) -> str:
    try:
        _check_shape(value)
        return json.dumps(value, allow_nan=False, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(
            f"Value is not serializable: {e}",
            {"type": type(value).__name__},
        ) from e


def deserialize(data: Any) -> Any:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    try:
        return json.loads(data)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Stored value is not valid JSON: {e}") from e


@dataclass
class CacheEntry:
    """A cached value plus the metadata needed for logical expiry."""
    key: str
    value: Any
    expires_at: float
    tags: List[str] = field(default_factory=list)
    created_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


def encode_entry(entry: CacheEntry) -> str:
    """Wrap the entry in the envelope written to the backend."""
    return serialize({
        "v": entry.value,
        "exp": entry.expires_at,
        "tags": entry.tags,
        "ts": entry.created_at,
    })


def decode_entry(key: str, data: Any) -> CacheEntry:
    envelope = deserialize(data)
    if not isinstance(envelope, dict) or "v" not in envelope or "exp" not in envelope:
        raise SerializationError("Stored value is not a cache envelope", {"key": key})
    return CacheEntry(
        key=key,
        value=envelope["v"],
        expires_at=float(envelope["exp"]),
        tags=list(envelope.get("tags") or []),
        created_at=envelope.get("ts"),
    )
