"""Tests for bounded serialization of captured local variables."""

import io
from collections import namedtuple
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

import pytest

from tripwire.core.serializer import (
    CIRCULAR,
    FILTERED,
    MAX_DEPTH_MARKER,
    VariableSerializer,
)


@pytest.fixture
def serializer() -> VariableSerializer:
    return VariableSerializer()


class TestFiltering:
    def test_sensitive_names_are_masked(self, serializer):
        result = serializer.serialize(
            {"password": "hunter2", "user_api_key": "abc", "username": "alice"}
        )
        assert result == {
            "password": FILTERED,
            "user_api_key": FILTERED,
            "username": "alice",
        }

    def test_masking_is_case_insensitive_and_nested(self, serializer):
        result = serializer.serialize({"payload": {"Auth_Header": "Bearer x", "n": 1}})
        assert result["payload"] == {"Auth_Header": FILTERED, "n": 1}

    def test_custom_patterns_replace_defaults(self, serializer):
        result = serializer.serialize({"password": "x", "pin": "1234"}, ["pin"])
        assert result == {"password": "x", "pin": FILTERED}


class TestBounds:
    def test_long_string_truncated(self, serializer):
        result = serializer.serialize({"body": "a" * 600})
        assert result["body"] == "a" * 500 + "... [truncated, 600 chars total]"

    def test_long_list_truncated(self, serializer):
        result = serializer.serialize({"items": list(range(25))})
        assert result["items"] == list(range(20)) + ["[... 5 more items]"]

    def test_large_mapping_truncated(self, serializer):
        result = serializer.serialize({"data": {f"k{i}": i for i in range(35)}})
        data = result["data"]
        assert len(data) == 31
        assert data["_truncated"] == "5 more keys"

    def test_depth_limit(self, serializer):
        nested = {"a": {"b": {"c": {"d": {"e": 1}}}}}
        result = serializer.serialize({"x": nested})
        assert result["x"]["a"]["b"]["c"]["d"]["e"] == MAX_DEPTH_MARKER

    def test_binary_data(self, serializer):
        result = serializer.serialize({"blob": b"\x00\x01\x02"})
        assert result["blob"] == "[Binary data: 3 bytes]"


class TestCycles:
    def test_self_referencing_list(self, serializer):
        items: list = [1]
        items.append(items)
        result = serializer.serialize({"items": items})
        assert result["items"] == [1, CIRCULAR]

    def test_shared_acyclic_reference_serializes_twice(self, serializer):
        shared = {"v": 1}
        result = serializer.serialize({"a": [shared, shared]})
        assert result["a"] == [{"v": 1}, {"v": 1}]


class TestTypes:
    def test_scalars_pass_through(self, serializer):
        result = serializer.serialize({"n": 3, "f": 1.5, "b": True, "none": None})
        assert result == {"n": 3, "f": 1.5, "b": True, "none": None}

    def test_non_finite_float_rendered_as_string(self, serializer):
        assert serializer.serialize({"f": float("inf")}) == {"f": "inf"}

    def test_datetime_decimal_and_uuid(self, serializer):
        moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        uid = UUID("12345678-1234-5678-1234-567812345678")
        result = serializer.serialize({"at": moment, "amount": Decimal("9.99"), "id": uid})
        assert result == {
            "at": "2024-01-02T03:04:05+00:00",
            "amount": "9.99",
            "id": "12345678-1234-5678-1234-567812345678",
        }

    def test_functions_and_classes(self, serializer):
        def handler():
            pass

        result = serializer.serialize({"fn": handler, "cls": ValueError})
        assert result["fn"].startswith("<function ")
        assert "handler" in result["fn"]
        assert result["cls"] == "ValueError"

    def test_file_objects(self, serializer):
        stream = io.StringIO("x")
        stream.close()
        assert serializer.serialize({"f": stream}) == {"f": "<StringIO:closed>"}

    def test_dataclass_uses_fields(self, serializer):
        @dataclass
        class Point:
            x: int
            secret: str

        result = serializer.serialize({"p": Point(1, "s3")})
        assert result["p"]["_data"] == {"x": 1, "secret": FILTERED}
        assert result["p"]["_class"].endswith("Point")

    def test_namedtuple_uses_asdict(self, serializer):
        Pair = namedtuple("Pair", "left right")
        result = serializer.serialize({"pair": Pair(1, 2)})
        assert result["pair"]["_data"] == {"left": 1, "right": 2}

    def test_plain_object_attributes(self, serializer):
        class Cart:
            def __init__(self):
                self.items = ["apple"]
                self.total = 3

        result = serializer.serialize({"cart": Cart()})
        assert result["cart"]["_attrs"] == {"items": ["apple"], "total": 3}


class TestFailures:
    def test_value_failure_is_contained(self, serializer):
        class Exploding:
            __slots__ = ()

            def __repr__(self):
                raise RuntimeError("boom")

        result = serializer.serialize({"bad": Exploding(), "ok": 1})
        assert result["bad"] == "[Error: boom]"
        assert result["ok"] == 1

    def test_whole_call_failure_is_reported(self, serializer):
        class BadMapping(dict):
            def items(self):
                raise RuntimeError("cannot iterate")

        result = serializer.serialize(BadMapping(a=1))
        assert result == {"_serialization_error": "cannot iterate"}

    def test_empty_input(self, serializer):
        assert serializer.serialize(None) == {}
        assert serializer.serialize({}) == {}
