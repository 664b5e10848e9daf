"""Value coercion and reference-range evaluation for captured results."""
import json
import logging
import math
import re
from typing import Any

from labcore.errors import TypeMismatchError
from labcore.models.exam import DataType

logger = logging.getLogger(__name__)

# a comma is a decimal mark only with one or two digits after it; "1,000" is not a number
_NUMBER = r"[-+]?\d+(?:\.\d+|,\d{1,2})?"
_NUMBER_END = r"(?![\d.,])"
_NUMBER_RE = re.compile(rf"^{_NUMBER}$")
# anchored at the start only, so a trailing unit such as "70-110 mg/dL" still parses
_INTERVAL_RE = re.compile(rf"^\s*({_NUMBER})\s*-\s*({_NUMBER}){_NUMBER_END}")
# two-character operators come first so ">=5" is not read as ">" and "=5"
_COMPARISON_RE = re.compile(rf"^\s*(>=|<=|>|<)\s*({_NUMBER}){_NUMBER_END}")

_TRUE_WORDS = {"true", "yes", "si", "sí", "1", "positive", "positivo"}
_FALSE_WORDS = {"false", "no", "0", "negative", "negativo"}


def _to_float(text: str) -> float:
    if not _NUMBER_RE.match(text):
        raise ValueError(f"not a number: {text!r}")
    return float(text.replace(",", "."))


def load_options(raw_options: str | None) -> list[str]:
    if not raw_options:
        return []
    try:
        parsed = json.loads(raw_options)
    except json.JSONDecodeError:
        return []
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return []


def coerce_value(data_type: str, raw_value: Any, options: list[str] | None = None, field_id: int | None = None) -> Any:
    """Return ``raw_value`` converted to the field's type, or raise ``TypeMismatchError``.

    Values are validated, never silently coerced into something else: a
    number field rejects ``"abc"``, a select field rejects values outside its
    options and blank input is rejected for every type.
    """
    data_type = DataType(data_type).value

    if raw_value is None or (isinstance(raw_value, str) and not raw_value.strip()):
        raise TypeMismatchError("A value is required", data_type=data_type, value=raw_value, field_id=field_id)

    if data_type == DataType.NUMBER.value:
        if isinstance(raw_value, bool):
            raise TypeMismatchError("Expected a number, got a boolean", data_type, raw_value, field_id)
        if isinstance(raw_value, (int, float)):
            number = float(raw_value)
        elif isinstance(raw_value, str):
            try:
                number = _to_float(raw_value.strip())
            except ValueError:
                raise TypeMismatchError(f"'{raw_value}' is not a number", data_type, raw_value, field_id) from None
        else:
            raise TypeMismatchError("Expected a number", data_type, raw_value, field_id)
        if not math.isfinite(number):
            raise TypeMismatchError("Number must be finite", data_type, raw_value, field_id)
        return number

    if data_type == DataType.BOOLEAN.value:
        if isinstance(raw_value, bool):
            return raw_value
        if isinstance(raw_value, str):
            word = raw_value.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
        raise TypeMismatchError(f"'{raw_value}' is not a yes/no value", data_type, raw_value, field_id)

    if not isinstance(raw_value, str):
        raise TypeMismatchError("Expected text", data_type, raw_value, field_id)
    text = raw_value.strip()

    if data_type == DataType.SELECT.value and options:
        match = next((option for option in options if option.casefold() == text.casefold()), None)
        if match is None:
            raise TypeMismatchError(
                f"'{text}' is not one of: {', '.join(options)}", data_type, raw_value, field_id
            )
        return match

    return text


def serialize_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    return str(value)


def deserialize_value(data_type: str, stored: str) -> Any:
    if data_type == DataType.NUMBER.value:
        try:
            return float(stored)
        except ValueError:
            return stored
    if data_type == DataType.BOOLEAN.value:
        return stored == "true"
    return stored


def _categorical_out_of_range(value: Any, expected: str) -> bool:
    return serialize_value(value).strip().casefold() != expected.strip().casefold()


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return _to_float(value.strip())
        except ValueError:
            return None
    return None


def evaluate_range(value: Any, reference_expression: str | None, data_type: str | None = None) -> bool:
    """Return ``True`` when ``value`` falls outside ``reference_expression``.

    Expression shapes, read from the left, first match wins:

    * ``"low-high"``: inclusive numeric interval
    * ``">x"``, ``">=x"``, ``"<x"``, ``"<=x"``: numeric comparison
    * anything else: expected categorical value, compared case-insensitively

    Text after the number, such as a unit, is ignored.

    Only numeric fields use the first two shapes; text, select and boolean
    fields always compare categorically. An expression that cannot be read as
    a number degrades to the categorical comparison instead of raising, so a
    catalog typo never blocks data entry.
    """
    if reference_expression is None or not reference_expression.strip():
        return False

    expression = reference_expression.strip()
    if data_type is not None and DataType(data_type) != DataType.NUMBER:
        return _categorical_out_of_range(value, expression)

    number = _as_number(value)
    if number is None:
        return _categorical_out_of_range(value, expression)

    interval = _INTERVAL_RE.match(expression)
    if interval:
        low, high = _to_float(interval.group(1)), _to_float(interval.group(2))
        if low > high:
            logger.debug("Reversed reference interval %r kept as written", expression)
        return number < low or number > high

    comparison = _COMPARISON_RE.match(expression)
    if comparison:
        operator, limit = comparison.group(1), _to_float(comparison.group(2))
        if operator == ">":
            return not number > limit
        if operator == ">=":
            return not number >= limit
        if operator == "<":
            return not number < limit
        return not number <= limit

    logger.debug("Reference expression %r is not numeric; comparing categorically", expression)
    return _categorical_out_of_range(value, expression)
