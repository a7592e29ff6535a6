"""
Tests for canonical hashing of transition facts.
"""

import json
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from provenance.core import CanonicalSerializationError, Hasher
from provenance.schemas import (
    EntityType,
    FactType,
    ProductStatus,
    Role,
    RoleGrantedPayload,
    TransitionFact,
)


def _genesis_body():
    payload = RoleGrantedPayload(
        role=Role.ADMIN,
        identity="0xadmin",
        granted_by="0xadmin",
    ).model_dump(mode="json")
    return TransitionFact.body_for_hash(
        fact_type=FactType.ROLE_GRANTED,
        entity_type=EntityType.PARTICIPANT,
        product_id=None,
        actor="0xadmin",
        recorded_at=datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc),
        payload=payload,
    )


class TestCanonicalization:
    """Canonical form - any change here breaks every existing log."""

    def test_deterministic_hash(self):
        data = {"product_id": 1, "name": "Coffee"}
        assert Hasher.hash_data(data) == Hasher.hash_data(data)

    def test_key_order_irrelevant(self):
        assert Hasher.hash_data({"b": 2, "a": 1}) == Hasher.hash_data({"a": 1, "b": 2})

    def test_nested_keys_sorted(self):
        data1 = {"outer": {"z": 1, "a": 2}, "inner": {"b": 3, "a": 4}}
        data2 = {"inner": {"a": 4, "b": 3}, "outer": {"a": 2, "z": 1}}
        assert Hasher.canonicalize(data1) == Hasher.canonicalize(data2)

    def test_nulls_omitted_empty_strings_kept(self):
        assert Hasher.canonicalize({"a": 1, "b": None}) == Hasher.canonicalize({"a": 1})
        assert Hasher.canonicalize({"a": ""}) != Hasher.canonicalize({"a": None})

    def test_naive_datetime_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="timezone-naive"):
            Hasher.canonicalize({"at": datetime(2026, 1, 1, 12, 0)})

    def test_same_instant_same_hash(self):
        utc_time = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        bogota = datetime(2026, 1, 1, 7, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert Hasher.hash_data({"at": utc_time}) == Hasher.hash_data({"at": bogota})

    def test_microseconds_matter(self):
        dt1 = datetime(2026, 1, 1, 12, 0, 0, 0, tzinfo=timezone.utc)
        dt2 = datetime(2026, 1, 1, 12, 0, 0, 1, tzinfo=timezone.utc)
        assert Hasher.hash_data({"at": dt1}) != Hasher.hash_data({"at": dt2})

    def test_str_enum_uses_value(self):
        canonical = Hasher.canonicalize({"status": ProductStatus.IN_TRANSIT})
        assert '"status":"in_transit"' in canonical
        assert "IN_TRANSIT" not in canonical

    def test_uuid_lowercase(self):
        canonical = Hasher.canonicalize({"id": UUID("550E8400-E29B-41D4-A716-446655440000")})
        assert "550e8400" in canonical

    def test_floats_banned(self):
        for value in (3.5, float("nan"), float("inf")):
            with pytest.raises(CanonicalSerializationError, match="Floats are banned"):
                Hasher.canonicalize({"value": value})

    def test_sets_and_bytes_banned(self):
        with pytest.raises(CanonicalSerializationError, match="set"):
            Hasher.canonicalize({"roles": {"producer"}})
        with pytest.raises(CanonicalSerializationError, match="bytes"):
            Hasher.canonicalize({"metadata": b"raw"})

    def test_non_string_keys_rejected(self):
        with pytest.raises(CanonicalSerializationError, match="must be str"):
            Hasher.canonicalize({1: "one"})

    def test_top_level_must_be_dict(self):
        for value in ([1, 2], "hello", 42):
            with pytest.raises(CanonicalSerializationError, match="requires a dict"):
                Hasher.canonicalize(value)

    def test_version_marker_first(self):
        canonical = Hasher.canonicalize({"foo": "bar"})
        assert canonical.startswith('{"__canon_v":1,')
        assert json.loads(canonical)["__canon_v"] == 1

    def test_golden_canonical_format(self):
        """
        GOLDEN TEST: pins the exact canonical format and hash.

        If this fails, existing fact logs no longer verify.
        """
        test_data = {
            "string": "hello",
            "integer": 42,
            "decimal": Decimal("3.14159"),
            "boolean": True,
            "null_omitted": None,
            "uuid": UUID("550e8400-e29b-41d4-a716-446655440000"),
            "date": date(2024, 1, 15),
            "datetime": datetime(2024, 1, 15, 12, 30, 45, 123456, tzinfo=timezone.utc),
            "nested": {"z_key": "last", "a_key": "first"},
            "list": [1, 2, 3],
            "empty_string": "",
            "empty_list": [],
        }

        assert Hasher.canonicalize(test_data) == (
            '{"__canon_v":1,"boolean":true,"date":"2024-01-15",'
            '"datetime":"2024-01-15T12:30:45.123456Z","decimal":"3.14159",'
            '"empty_list":[],"empty_string":"","integer":42,"list":[1,2,3],'
            '"nested":{"a_key":"first","z_key":"last"},"string":"hello",'
            '"uuid":"550e8400-e29b-41d4-a716-446655440000"}'
        )
        assert Hasher.hash_data(test_data) == (
            "8cdaf50a263888f11b2c3404ce14c8012641db34e98994e55fbb3989e8ee09cc"
        )


class TestFactHashing:
    """Chained fact hashes."""

    def test_golden_genesis_fact(self):
        body = _genesis_body()
        assert Hasher.canonicalize(body) == (
            '{"__canon_v":1,"actor":"0xadmin","entity_type":"participant",'
            '"fact_type":"ROLE_GRANTED","payload":{"granted_by":"0xadmin",'
            '"identity":"0xadmin","role":"admin","schema_version":1},'
            '"recorded_at":"2026-01-15T09:00:00.000000Z"}'
        )
        assert Hasher.hash_fact(body) == (
            "db4fc8e1b8b09bd826d1cf78232ff797c7f5fa796745a1351be2be7cae488d2b"
        )

    def test_golden_chained_fact(self):
        assert Hasher.hash_fact(_genesis_body(), "a" * 64) == (
            "2ab30e3cab2929b99ca1f101b2395f1ee5abbda2a4c47640513e67c8e77d9e38"
        )

    def test_previous_hash_changes_result(self):
        body = _genesis_body()
        assert Hasher.hash_fact(body, "a" * 64) != Hasher.hash_fact(body, "b" * 64)
        assert Hasher.hash_fact(body, "a" * 64) != Hasher.hash_fact(body)

    def test_previous_hash_format_validated(self):
        body = _genesis_body()
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_fact(body, "abc123")
        with pytest.raises(CanonicalSerializationError, match="Invalid previous_hash"):
            Hasher.hash_fact(body, "g" * 64)

    def test_verify_fact(self):
        body = _genesis_body()
        fact_hash = Hasher.hash_fact(body, "a" * 64)

        assert Hasher.verify_fact(body, fact_hash, "a" * 64)
        assert Hasher.verify_fact(body, fact_hash.upper(), "a" * 64)
        assert not Hasher.verify_fact(body, fact_hash, None)

        tampered = dict(body, actor="0xmallory")
        assert not Hasher.verify_fact(tampered, fact_hash, "a" * 64)

    def test_verify_fact_bad_previous_hash_is_false(self):
        body = _genesis_body()
        assert not Hasher.verify_fact(body, Hasher.hash_fact(body), "not-a-hash")
