"""Attribute filtering and type coercion for inbound identify payloads.

Only attributes with a configured definition are written. Values that cannot
be coerced to the declared type are dropped rather than stored raw.
"""

from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog

from src.hub.integrations.schemas import AttributeType, UserAttributeDefinition

logger = structlog.get_logger(__name__)

_TRUE_STRINGS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "n", "off"})


def _to_number(value: Any) -> float | int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        if number.is_integer() and text.lstrip("+-").isdigit():
            return int(number)
        return number
    return None


def _to_boolean(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    return None


def _to_date(value: Any) -> str | None:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Unix timestamps; milliseconds when implausibly large for seconds
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(seconds).astimezone().isoformat()
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).isoformat()
        except ValueError:
            return None
    return None


def _to_currency(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().lstrip("$€£¥").replace(",", "")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite():
        return None
    return float(round(amount, 2))


def coerce_attribute_value(value: Any, attr_type: AttributeType) -> Any:
    """Coerce a raw inbound value to the declared attribute type.

    Returns:
        The coerced value, or None when the value cannot be represented.
    """
    if value is None:
        return None
    if attr_type is AttributeType.STRING:
        if isinstance(value, (dict, list)):
            return None
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)
    if attr_type is AttributeType.NUMBER:
        return _to_number(value)
    if attr_type is AttributeType.BOOLEAN:
        return _to_boolean(value)
    if attr_type is AttributeType.DATE:
        return _to_date(value)
    if attr_type is AttributeType.CURRENCY:
        return _to_currency(value)
    return None


def map_attributes(
    attributes: dict[str, Any],
    definitions: list[UserAttributeDefinition],
) -> dict[str, Any]:
    """Filter and coerce inbound attributes through the configured definitions.

    Args:
        attributes: Raw attributes keyed by external key.
        definitions: Configured attribute definitions.

    Returns:
        Coerced values keyed by internal key. Attributes without a
        definition whose external key matches, and values that fail
        coercion, are omitted.
    """
    mapped: dict[str, Any] = {}
    for definition in definitions:
        if not definition.external_key or definition.external_key not in attributes:
            continue
        raw = attributes[definition.external_key]
        coerced = coerce_attribute_value(raw, definition.type)
        if coerced is None:
            logger.debug(
                "user_sync.attribute_dropped",
                key=definition.key,
                type=definition.type.value,
            )
            continue
        mapped[definition.key] = coerced
    return mapped
