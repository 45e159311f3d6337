"""
Canonical Hashing

Deterministic serialization and SHA-256 hashing for ledger entries.
Same input -> same hash. Always.

If this breaks, every stored chain becomes unverifiable.
Changes here must be backward-compatible or versioned.

CANONICAL SERIALIZATION RULES:
1. Version: "__canon_v" injected into every canonical output (first key when sorted)
2. Dictionary keys: sorted recursively (Unicode codepoint order), must be strings
3. Nulls: omitted entirely
4. Empty strings, lists and dicts: preserved
5. Datetimes: ISO 8601 with microseconds, forced to UTC, Z suffix
6. Dates: ISO 8601 (YYYY-MM-DD)
7. UUIDs: lowercase string
8. Enums: value, not name
9. Decimals: string representation
10. Floats: BANNED - use Decimal
11. Sets and bytes: BANNED (no stable ordering / not JSON)
12. JSON output: no whitespace, sorted keys, ASCII only
"""

import hashlib
import hmac
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID


class CanonicalSerializationError(Exception):
    """Raised when data cannot be canonically serialized."""


# Types that have no single canonical JSON form
_BANNED = (
    (float, "float", "Use Decimal for measurements and quantities."),
    (bytes, "bytes", "Encode it as a base64 string first."),
    ((set, frozenset), "set", "Sets have no stable ordering; pass a sorted list."),
)


def _utc_timestamp(dt: datetime, path: str) -> str:
    """YYYY-MM-DDTHH:MM:SS.ffffffZ. The absolute moment must be known."""
    if dt.tzinfo is None:
        raise CanonicalSerializationError(
            f"Datetime at {path} is timezone-naive; attach a timezone before hashing."
        )
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Hasher:
    """
    Canonical serialization and hashing.

    Stored payloads are kept in the normalized form produced by
    ``normalize``, so a round trip through any JSON store re-hashes
    identically.
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        if isinstance(value, Enum):
            return value.value
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise CanonicalSerializationError(f"Cannot serialize non-finite Decimal at {path}")
            return str(value)
        if isinstance(value, datetime):
            return _utc_timestamp(value, path)
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)
        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(item, f"{path}[{i}]") for i, item in enumerate(value)]
        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)

        for banned, label, hint in _BANNED:
            if isinstance(value, banned):
                raise CanonicalSerializationError(f"Cannot serialize {label} at {path}. {hint}")
        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}; not a JSON-compatible type."
        )

    @classmethod
    def _to_canonical_dict(cls, data: dict[str, Any], path: str = "") -> dict[str, Any]:
        """Keys sorted, None values dropped, values serialized recursively."""
        bad_keys = [k for k in data if not isinstance(k, str)]
        if bad_keys:
            raise CanonicalSerializationError(
                f"Keys at {path or '<root>'} must be strings, got {type(bad_keys[0]).__name__}"
            )

        canonical = {}
        for key in sorted(data):
            value = cls._serialize_value(data[key], f"{path}.{key}" if path else key)
            if value is not None:
                canonical[key] = value
        return canonical

    @classmethod
    def normalize(cls, data: Any) -> dict[str, Any]:
        """
        The canonical JSON-compatible form of a payload.

        Contains only str, int, bool, list and dict values, and hashes
        identically to the input.
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Canonicalization requires a dict at the top level, got {type(data).__name__}"
            )
        return cls._to_canonical_dict(data)

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """Canonical JSON string, with "__canon_v" sorted in as the first key."""
        versioned = {"__canon_v": cls.SERIALIZATION_VERSION, **cls.normalize(data)}
        return json.dumps(versioned, sort_keys=True, separators=(",", ":"), ensure_ascii=True, allow_nan=False)

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """Hex SHA-256 of the canonical form."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def hash_entry(
        cls,
        event_type: str,
        event_id: str,
        lot_id: str,
        previous_transaction_id: Optional[str],
        payload: dict[str, Any],
        timestamp: datetime,
    ) -> str:
        """
        Content hash of a ledger entry.

        The sequence number, participants and external flow reference are
        not hashed.
        """
        return cls.hash_data({
            "event_type": event_type,
            "event_id": event_id,
            "lot_id": lot_id,
            "previous_transaction_id": previous_transaction_id,
            "payload": payload,
            "timestamp": timestamp,
        })

    @staticmethod
    def constant_time_compare(a: str, b: str) -> bool:
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
