"""
Tests for the typed value codec.

Value tagging from asyncpg-decoded Python values and type-aware cell
equality against documented text.
"""

import math
import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from refcheck.core.values import cell_matches, cell_parses_as, to_value
from refcheck.models import Value, ValueTag


class TestToValue:
    """Tests for to_value tagging."""

    @pytest.mark.parametrize(
        "raw,type_name,tag",
        [
            (None, "int4", ValueTag.NULL),
            (5, "int8", ValueTag.INTEGER),
            (0.5, "float8", ValueTag.FLOAT),
            (Decimal("1.10"), "numeric", ValueTag.DECIMAL),
            ("abc", "text", ValueTag.TEXT),
            (True, "bool", ValueTag.BOOLEAN),
            (datetime(2024, 1, 2, 3, 4, 5), "timestamp", ValueTag.TIMESTAMP),
            (date(2024, 1, 2), "date", ValueTag.TIMESTAMP),
            ('{"a": 1}', "jsonb", ValueTag.JSON),
            ([1, 2], "_int4", ValueTag.ARRAY),
        ],
    )
    def test_tags(self, raw, type_name, tag):
        assert to_value(raw, type_name).tag == tag

    def test_uuid_is_text(self):
        value = to_value(uuid.UUID(int=1), "uuid")
        assert value.tag == ValueTag.TEXT
        assert value.raw == "00000000-0000-0000-0000-000000000001"

    def test_bytes_render_as_hex(self):
        value = to_value(b"\x01\xff", "bytea")
        assert value.tag == ValueTag.TEXT
        assert value.raw == "\\x01ff"


class TestCellMatches:
    """Tests for cell_matches."""

    def test_integer(self):
        assert cell_matches(to_value(5, "int8"), "        5")
        assert not cell_matches(to_value(5, "int8"), "6")

    def test_float_within_tolerance(self):
        value = to_value(0.1 + 0.2, "float8")
        assert cell_matches(value, "0.3")
        assert not cell_matches(value, "0.31")

    def test_float_special_values(self):
        assert cell_matches(to_value(math.inf, "float8"), "Infinity")
        assert cell_matches(to_value(math.nan, "float8"), "NaN")
        assert not cell_matches(to_value(math.nan, "float8"), "1")

    def test_decimal_is_exact(self):
        value = to_value(Decimal("1.10"), "numeric")
        assert cell_matches(value, "1.10")
        assert cell_matches(value, "1.1")
        assert not cell_matches(value, "1.1000000001")

    def test_text_is_byte_exact(self):
        value = to_value("Alice", "text")
        assert cell_matches(value, "Alice")
        assert not cell_matches(value, "alice")
        assert not cell_matches(value, "Alice ")

    def test_null_spellings(self):
        value = to_value(None, "text")
        for cell in ("", "   ", "NULL", "[null]", "<null>"):
            assert cell_matches(value, cell)
        assert not cell_matches(value, "0")

    def test_boolean(self):
        assert cell_matches(to_value(True, "bool"), "t")
        assert cell_matches(to_value(False, "bool"), "false")
        assert not cell_matches(to_value(True, "bool"), "f")

    def test_json_ignores_formatting(self):
        value = to_value('{"a": 1, "b": [1, 2]}', "jsonb")
        assert cell_matches(value, '{"b":[1,2],"a":1}')
        assert not cell_matches(value, '{"a": 2}')

    def test_timestamp(self):
        value = to_value(datetime(2024, 1, 2, 3, 4, 5), "timestamp")
        assert cell_matches(value, "2024-01-02 03:04:05")
        assert not cell_matches(value, "2024-01-02 03:04:06")

    def test_timestamptz_with_short_offset(self):
        value = to_value(
            datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc), "timestamptz"
        )
        assert cell_matches(value, "2024-01-02 03:04:05+00")

    def test_interval(self):
        value = to_value(timedelta(days=1, hours=2), "interval")
        assert cell_matches(value, value.render())

    @pytest.mark.parametrize(
        "server_text",
        ["1 year 2 mons", "36:00:00", "1 year 2 mons 3 days 04:05:06", "-00:00:01.5"],
    )
    def test_interval_as_server_text(self, server_text):
        value = to_value(server_text, "interval")
        assert value.tag == ValueTag.TIMESTAMP
        assert cell_matches(value, f"  {server_text} ")
        assert cell_parses_as(value, server_text)

    def test_interval_text_is_not_normalized(self):
        assert not cell_matches(to_value("36:00:00", "interval"), "1 day 12:00:00")
        assert not cell_matches(to_value("1 year 2 mons", "interval"), "425 days")

    def test_array_ignores_spacing(self):
        value = to_value([1, 2, 3], "_int4")
        assert cell_matches(value, "{1, 2, 3}")
        assert not cell_matches(value, "{1,2}")

    def test_garbage_never_raises(self):
        assert not cell_matches(to_value(5, "int4"), "five")
        assert not cell_matches(to_value(0.5, "float8"), "half")


class TestCellParsesAs:
    """Tests for the masked-value shape check."""

    def test_shapes(self):
        assert cell_parses_as(to_value(17, "int4"), "42")
        assert not cell_parses_as(to_value(17, "int4"), "forty-two")
        assert cell_parses_as(to_value(datetime.now(), "timestamp"), "2020-01-01 00:00:00")
        assert cell_parses_as(to_value("x", "text"), "anything")

    def test_null_must_match_null(self):
        assert cell_parses_as(to_value(None, "int4"), "")
        assert not cell_parses_as(to_value(3, "int4"), "")

    def test_value_render(self):
        assert Value(tag=ValueTag.BOOLEAN, raw=True).render() == "t"
        assert Value(tag=ValueTag.DECIMAL, raw=Decimal("1E+2")).render() == "100"
