"""
Canonical Hashing for Transition Facts

Deterministic serialization plus SHA-256, used to chain every fact to the
one before it. Same fact body -> same hash, on any machine, forever.

Any change here breaks verification of existing fact logs.
Changes must be backward-compatible or bump SERIALIZATION_VERSION.

CANONICAL SERIALIZATION RULES:
1. "__canon_v" (serialization version) is injected at the top level
2. Dictionary keys are sorted recursively; keys must be strings
3. None values are omitted; empty strings/lists/dicts are kept
4. Datetimes must be timezone-aware; rendered in UTC as
   YYYY-MM-DDTHH:MM:SS.ffffffZ
5. Dates render as YYYY-MM-DD
6. UUIDs render lowercase; Enums render by value
7. Floats are rejected (use Decimal, int or str); Decimal renders as str
8. Bytes and sets are rejected
9. Output is compact ASCII JSON
10. Top level must be a dict
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
    pass


_HEX_DIGITS = frozenset("0123456789abcdef")


class Hasher:
    """
    Canonical serialization and chained hashing.

    IMMUTABLE CONTRACT:
    - Same logical input -> same hash
    - Across platforms and Python versions
    """

    SERIALIZATION_VERSION = 1

    @classmethod
    def _serialize_value(cls, value: Any, path: str = "") -> Any:
        """Convert a value to its canonical JSON-compatible form."""
        if isinstance(value, Enum):
            return value.value
        if value is None or isinstance(value, (bool, str)):
            return value
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            raise CanonicalSerializationError(
                f"Cannot serialize float at {path}. Floats are banned in "
                "canonical payloads; use Decimal, int or str."
            )
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, UUID):
            return str(value).lower()
        if isinstance(value, datetime):
            return cls._serialize_datetime(value, path)
        if isinstance(value, date):
            return value.strftime("%Y-%m-%d")
        if isinstance(value, dict):
            return cls._to_canonical_dict(value, path)
        if isinstance(value, (list, tuple)):
            return [cls._serialize_value(v, f"{path}[{i}]") for i, v in enumerate(value)]
        if hasattr(value, "model_dump"):
            return cls._to_canonical_dict(value.model_dump(mode="python"), path)
        if isinstance(value, (set, frozenset)):
            raise CanonicalSerializationError(
                f"Cannot serialize set at {path}. Sets have no stable ordering; "
                "convert to a sorted list first."
            )
        if isinstance(value, bytes):
            raise CanonicalSerializationError(
                f"Cannot serialize bytes at {path}. Encode to a string first."
            )
        raise CanonicalSerializationError(
            f"Cannot serialize {type(value).__name__} at {path}."
        )

    @staticmethod
    def _serialize_datetime(dt: datetime, path: str) -> str:
        if dt.tzinfo is None:
            raise CanonicalSerializationError(
                f"Datetime at {path} is timezone-naive. "
                "All datetimes must be timezone-aware."
            )
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc_dt.microsecond:06d}Z"

    @classmethod
    def _to_canonical_dict(cls, data: dict, path: str = "") -> dict[str, Any]:
        result = {}
        for key in sorted(data.keys(), key=str):
            if not isinstance(key, str):
                raise CanonicalSerializationError(
                    f"Dictionary key at {path or '<root>'} must be str, "
                    f"got {type(key).__name__}"
                )
            serialized = cls._serialize_value(data[key], f"{path}.{key}" if path else key)
            if serialized is not None:
                result[key] = serialized
        return result

    @classmethod
    def canonicalize(cls, data: Any) -> str:
        """
        Convert a dict (or pydantic model) to its canonical JSON string.

        Raises:
            CanonicalSerializationError: if the data is not deterministic
        """
        if hasattr(data, "model_dump"):
            data = data.model_dump(mode="python")
        if not isinstance(data, dict):
            raise CanonicalSerializationError(
                f"Top-level canonicalization requires a dict, got {type(data).__name__}."
            )
        canonical = {"__canon_v": cls.SERIALIZATION_VERSION, **cls._to_canonical_dict(data)}
        return json.dumps(
            canonical,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=True,
            allow_nan=False,
        )

    @classmethod
    def hash_data(cls, data: Any) -> str:
        """SHA-256 of the canonical form, lowercase hex."""
        return hashlib.sha256(cls.canonicalize(data).encode("utf-8")).hexdigest()

    @classmethod
    def hash_fact(cls, body: dict[str, Any], previous_hash: Optional[str] = None) -> str:
        """
        Hash a fact body with chain linkage.

        Genesis: SHA256(canonical_body)
        Chained: SHA256(previous_hash + ":" + canonical_body)
        """
        canonical_body = cls.canonicalize(body)
        if previous_hash is None:
            return hashlib.sha256(canonical_body.encode("utf-8")).hexdigest()

        normalized = previous_hash.lower()
        if len(normalized) != 64 or not set(normalized) <= _HEX_DIGITS:
            raise CanonicalSerializationError(
                f"Invalid previous_hash format: {previous_hash}. "
                "Must be 64 hex characters."
            )
        return hashlib.sha256(f"{normalized}:{canonical_body}".encode("utf-8")).hexdigest()

    @classmethod
    def verify_fact(
        cls,
        body: dict[str, Any],
        expected_hash: str,
        previous_hash: Optional[str] = None,
    ) -> bool:
        """Check a fact body against its recorded hash (constant time)."""
        try:
            computed = cls.hash_fact(body, previous_hash)
        except CanonicalSerializationError:
            return False
        return hmac.compare_digest(computed, expected_hash.lower())
