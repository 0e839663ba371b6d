"""
Value coercion onto destination column types
"""

import base64
import binascii
import json
from datetime import date, datetime, timezone
from decimal import Decimal, Context, InvalidOperation
from typing import Any

from ..exceptions import TransformError


# Significant digits a float64 holds without loss
JSON_DECIMAL_PRECISION = 15

INTEGER_TYPES = {"tinyint", "smallint", "mediumint", "int", "integer", "bigint", "year", "int64"}
DECIMAL_TYPES = {"decimal", "numeric", "dec", "fixed"}
FLOAT_TYPES = {"float", "double", "real", "double precision", "float32", "float64"}
BOOLEAN_TYPES = {"bool", "boolean"}
JSON_TYPES = {"json", "jsonb"}
BINARY_TYPES = {"binary", "varbinary", "blob", "tinyblob", "mediumblob", "longblob", "bytes"}
DATE_TYPES = {"date"}
DATETIME_TYPES = {"datetime", "timestamp"}
STRING_TYPES = {"char", "varchar", "text", "tinytext", "mediumtext", "longtext", "string", "enum", "set"}

_TRUE_STRINGS = {"true", "t", "1", "yes", "y"}
_FALSE_STRINGS = {"false", "f", "0", "no", "n"}


def normalize_type(data_type: str) -> str:
    """'VARCHAR(10)' -> 'varchar', 'NUMERIC' -> 'numeric'"""
    return (data_type or "").split("(", 1)[0].strip().lower()


def coerce_value(value: Any, data_type: str, round_json_decimals: bool = False) -> Any:
    """Convert ``value`` into the Python type the destination column expects.

    Raises TransformError when the value cannot be represented.
    """
    if value is None:
        return None

    kind = normalize_type(data_type)
    try:
        if kind in INTEGER_TYPES:
            return _to_int(value)
        if kind in DECIMAL_TYPES:
            return _to_decimal(value)
        if kind in FLOAT_TYPES:
            return _to_float(value)
        if kind in BOOLEAN_TYPES:
            return _to_bool(value)
        if kind in JSON_TYPES:
            return to_json_text(value, round_json_decimals)
        if kind in BINARY_TYPES:
            return _to_bytes(value)
        if kind in DATE_TYPES:
            return _to_date(value)
        if kind in DATETIME_TYPES:
            return _to_datetime(value)
        if kind in STRING_TYPES:
            return _to_string(value)
    except (ValueError, TypeError, InvalidOperation, OverflowError, binascii.Error) as e:
        raise TransformError(f"Cannot convert {value!r} to {data_type}: {e}")
    return value


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("fractional value for integer column")
        return int(value)
    if isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError("fractional value for integer column")
        return int(value)
    if isinstance(value, str):
        return int(value.strip())
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise TypeError("boolean value for decimal column")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float, str)):
        result = Decimal(str(value).strip())
        if not result.is_finite():
            raise ValueError("non-finite decimal")
        return result
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_float(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("boolean value for float column")
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, str):
        return float(value.strip())
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    raise ValueError("not a boolean")


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return base64.b64decode(value, validate=True)
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value.strip()[:10])
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    raise TypeError(f"unsupported type {type(value).__name__}")


def _to_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def to_json_text(value: Any, round_decimals: bool = False) -> str:
    """Serialize a JSON column value.

    Strings are validated and passed through untouched unless rounding is
    requested. With rounding, fractional numbers are limited to
    JSON_DECIMAL_PRECISION significant digits so that the float64 stored by the
    destination equals the written value.
    """
    if isinstance(value, str):
        document = json.loads(value, parse_float=Decimal)
        if not round_decimals:
            return value
    else:
        document = value

    if round_decimals:
        document = round_json_decimals(document)
    return json.dumps(document, default=_json_default)


def round_json_decimals(document: Any) -> Any:
    """Recursively round fractional numbers of a parsed JSON document"""
    if isinstance(document, dict):
        return {key: round_json_decimals(item) for key, item in document.items()}
    if isinstance(document, list):
        return [round_json_decimals(item) for item in document]
    if isinstance(document, bool):
        return document
    if isinstance(document, (float, Decimal)):
        rounded = Context(prec=JSON_DECIMAL_PRECISION).create_decimal(str(document))
        if rounded == rounded.to_integral_value() and not isinstance(document, float):
            return int(rounded)
        return float(rounded)
    return document


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")
