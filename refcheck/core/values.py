"""
Typed value codec.

Converts values decoded by asyncpg into tagged `Value`s and decides whether
a documented (text) cell matches one. Equality is dispatched on the tag:
- FLOAT: within a tolerance
- INTEGER / DECIMAL: exact numeric equality
- TEXT: byte-exact
- BOOLEAN / NULL: psql spellings
- JSON: parsed equality
- TIMESTAMP / ARRAY: psql text rendering
"""

from __future__ import annotations

import json
import math
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from refcheck.models import Value, ValueTag
from refcheck.models.results import render_raw

INTEGER_TYPES = frozenset({"int2", "int4", "int8", "oid", "smallint", "integer", "bigint"})
FLOAT_TYPES = frozenset({"float4", "float8", "real", "double precision"})
DECIMAL_TYPES = frozenset({"numeric", "decimal"})
JSON_TYPES = frozenset({"json", "jsonb"})
TEMPORAL_TYPES = frozenset(
    {"date", "time", "timetz", "timestamp", "timestamptz", "interval"}
)

NULL_CELLS = frozenset({"", "null", "[null]", "<null>"})
TRUE_CELLS = frozenset({"t", "true", "yes", "on", "1"})
FALSE_CELLS = frozenset({"f", "false", "no", "off", "0"})

_FLOAT_WORDS = {"infinity": math.inf, "-infinity": -math.inf, "nan": math.nan}


def to_value(raw: Any, type_name: Optional[str] = None) -> Value:
    """
    Tag a value decoded by asyncpg.

    Args:
        raw: Decoded Python value
        type_name: Postgres type name from the statement's attributes

    Returns:
        Tagged Value
    """
    if raw is None:
        return Value(tag=ValueTag.NULL, raw=None, type_name=type_name)
    if type_name in JSON_TYPES or isinstance(raw, dict):
        return Value(tag=ValueTag.JSON, raw=raw, type_name=type_name)
    if isinstance(raw, bool):
        return Value(tag=ValueTag.BOOLEAN, raw=raw, type_name=type_name)
    if isinstance(raw, int):
        return Value(tag=ValueTag.INTEGER, raw=raw, type_name=type_name)
    if isinstance(raw, float):
        return Value(tag=ValueTag.FLOAT, raw=raw, type_name=type_name)
    if isinstance(raw, Decimal):
        return Value(tag=ValueTag.DECIMAL, raw=raw, type_name=type_name)
    if isinstance(raw, (datetime, date, time, timedelta)):
        return Value(tag=ValueTag.TIMESTAMP, raw=raw, type_name=type_name)
    if isinstance(raw, str) and type_name in TEMPORAL_TYPES:
        # interval is decoded as the server's own text
        return Value(tag=ValueTag.TIMESTAMP, raw=raw, type_name=type_name)
    if isinstance(raw, (list, tuple)) and not hasattr(raw, "keys"):
        return Value(tag=ValueTag.ARRAY, raw=list(raw), type_name=type_name)
    if isinstance(raw, str):
        return Value(tag=ValueTag.TEXT, raw=raw, type_name=type_name)
    if isinstance(raw, uuid.UUID):
        return Value(tag=ValueTag.TEXT, raw=str(raw), type_name=type_name)
    # bytea, network types, composite records, ranges...
    return Value(tag=ValueTag.TEXT, raw=render_raw(raw), type_name=type_name)


def _parse_float(text: str) -> float:
    word = _FLOAT_WORDS.get(text.lower())
    if word is not None:
        return word
    return float(text)


def _parse_bool(text: str) -> bool:
    lowered = text.lower()
    if lowered in TRUE_CELLS:
        return True
    if lowered in FALSE_CELLS:
        return False
    raise ValueError(f"not a boolean: {text!r}")


def _temporal_equal(raw: Any, text: str) -> bool:
    if text == render_raw(raw):
        return True
    if isinstance(raw, str):
        return " ".join(text.split()) == " ".join(raw.split())
    if isinstance(raw, datetime):
        candidate = text.replace(" ", "T", 1)
        if len(candidate) > 3 and candidate[-3] in "+-" and candidate[-3:].lstrip("+-").isdigit():
            candidate += ":00"
        parsed = datetime.fromisoformat(candidate)
        if (parsed.tzinfo is None) != (raw.tzinfo is None):
            return False
        return parsed == raw
    if isinstance(raw, date):
        return date.fromisoformat(text) == raw
    if isinstance(raw, time):
        return time.fromisoformat(text) == raw
    return False


def _json_equal(raw: Any, text: str) -> bool:
    actual = json.loads(raw) if isinstance(raw, str) else raw
    return json.loads(text) == actual


def _compact(text: str) -> str:
    return "".join(text.split())


def cell_matches(value: Value, cell: str, float_tolerance: float = 1e-9) -> bool:
    """
    Type-aware equality between an actual value and a documented cell.

    Text cells are compared byte-exactly; every other tag ignores the
    surrounding padding that psql adds for alignment.
    """
    stripped = cell.strip()
    tag = value.tag

    if tag == ValueTag.NULL:
        return stripped.lower() in NULL_CELLS
    if tag == ValueTag.TEXT:
        return cell == value.raw

    try:
        if tag == ValueTag.FLOAT:
            expected = _parse_float(stripped)
            actual = float(value.raw)
            if math.isnan(expected) or math.isnan(actual):
                return math.isnan(expected) and math.isnan(actual)
            if math.isinf(expected) or math.isinf(actual):
                return expected == actual
            return math.isclose(
                expected, actual, rel_tol=float_tolerance, abs_tol=float_tolerance
            )
        if tag in (ValueTag.INTEGER, ValueTag.DECIMAL):
            return Decimal(stripped) == Decimal(value.raw)
        if tag == ValueTag.BOOLEAN:
            return _parse_bool(stripped) == value.raw
        if tag == ValueTag.JSON:
            return _json_equal(value.raw, stripped)
        if tag == ValueTag.TIMESTAMP:
            return _temporal_equal(value.raw, stripped)
        if tag == ValueTag.ARRAY:
            return _compact(stripped) == _compact(value.render())
    except (ValueError, ArithmeticError, InvalidOperation, TypeError):
        return False
    return stripped == value.render()


def cell_parses_as(value: Value, cell: str) -> bool:
    """
    Shape check used for masked (time-dependent) snippets: the documented
    cell only has to be a plausible rendering of the actual value's type.
    """
    stripped = cell.strip()
    tag = value.tag

    if stripped.lower() in NULL_CELLS and tag != ValueTag.TEXT:
        return tag == ValueTag.NULL
    try:
        if tag == ValueTag.INTEGER:
            int(stripped)
        elif tag == ValueTag.FLOAT:
            _parse_float(stripped)
        elif tag == ValueTag.DECIMAL:
            Decimal(stripped)
        elif tag == ValueTag.BOOLEAN:
            _parse_bool(stripped)
        elif tag == ValueTag.JSON:
            json.loads(stripped)
        elif tag == ValueTag.ARRAY:
            return stripped.startswith("{") and stripped.endswith("}")
        elif tag == ValueTag.TIMESTAMP:
            return bool(stripped)
    except (ValueError, ArithmeticError, InvalidOperation):
        return False
    return True
