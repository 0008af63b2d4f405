"""
Unit tests for cache value serialization.
"""

import pytest

from service_core.app.caching.serialization import (
    CacheEntry,
    decode_entry,
    deserialize,
    encode_entry,
    serialize,
)
from shared.errors import SerializationError


class TestSerialization:
    """Test cases for serialize/deserialize."""

    def test_supported_shapes_round_trip(self):
        value = {
            "user": {"id": 42, "name": "Zoë", "active": True},
            "scores": [1, 2.5, -3],
            "tags": [],
            "note": None,
            "nested": [[{"deep": ["x"]}]],
        }

        assert deserialize(serialize(value)) == value

    def test_deserialize_accepts_bytes(self):
        assert deserialize(b'{"a":1}') == {"a": 1}

    @pytest.mark.parametrize("value", [{1, 2}, b"raw", float("inf"), float("nan"), object()])
    def test_unsupported_values_raise(self, value):
        with pytest.raises(SerializationError):
            serialize(value)

    @pytest.mark.parametrize("value", [{1: "a"}, (1, 2), {"k": (1, 2)}, [{"ok": {None: 1}}]])
    def test_values_that_would_change_shape_raise(self, value):
        with pytest.raises(SerializationError):
            serialize(value)

    def test_invalid_json_raises(self):
        with pytest.raises(SerializationError):
            deserialize("{not json")


class TestCacheEnvelope:
    """Test cases for the stored cache envelope."""

    def test_encode_decode(self):
        entry = CacheEntry(key="k", value={"a": [1, 2]}, expires_at=1060.0, tags=["x", "y"], created_at=1000.0)

        decoded = decode_entry("k", encode_entry(entry))

        assert decoded == entry

    def test_is_expired_at_boundary(self):
        entry = CacheEntry(key="k", value=1, expires_at=100.0)

        assert entry.is_expired(99.9) is False
        assert entry.is_expired(100.0) is True

    def test_decode_rejects_non_envelope(self):
        with pytest.raises(SerializationError):
            decode_entry("k", '{"value": 1}')
        with pytest.raises(SerializationError):
            decode_entry("k", "[1, 2]")
