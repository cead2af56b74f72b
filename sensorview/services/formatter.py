"""
Sensor Value Formatting

Turns raw sensor payloads into the fixed-precision strings shown on the
dashboard, and renders the capture timestamp label.

Truncation rule:
    value is cut (never rounded) to `digit` decimal places toward negative
    infinity, then rendered with exactly `digit` places.

        12.378, digit=1  -> "12.3"
        61.9,   digit=0  -> "61"
        -3.25,  digit=1  -> "-3.3"

    Arithmetic is done in Decimal on the value's shortest decimal form, so
    binary float artifacts never leak into the result (0.29 stays "0.29").
"""
import re
from datetime import datetime, timezone, tzinfo
from decimal import Decimal, InvalidOperation, ROUND_FLOOR, localcontext
from typing import Any, Iterable, Mapping

from sensorview.schemas import SensorFieldSpec


WEEKDAY_NAMES = ("日", "月", "火", "水", "木", "金", "土")  # Sunday first

# RFC 3339 fractions can carry nanoseconds; datetime keeps microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class SensorFormatError(ValueError):
    """A payload value or timestamp cannot be turned into display text."""


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise SensorFormatError(f"Not a numeric reading: {value!r}")
    try:
        if isinstance(value, int):
            number = Decimal(value)
        elif isinstance(value, float):
            number = Decimal(repr(value))
        elif isinstance(value, str):
            number = Decimal(value.strip())
        else:
            raise SensorFormatError(f"Not a numeric reading: {value!r}")
    except InvalidOperation:
        raise SensorFormatError(f"Not a numeric reading: {value!r}")

    if not number.is_finite():
        raise SensorFormatError(f"Reading is not finite: {value!r}")
    return number


def format_value(value: Any, digit: int) -> str:
    """Truncate `value` toward negative infinity to `digit` places and render it."""
    if digit < 0:
        raise SensorFormatError(f"digit must be non-negative, got {digit}")

    number = _to_decimal(value)
    with localcontext() as ctx:
        # Enough precision for every integer digit plus the kept places
        ctx.prec = max(ctx.prec, number.adjusted() + digit + 2)
        truncated = number.quantize(Decimal(1).scaleb(-digit), rounding=ROUND_FLOOR)

    if truncated == 0:
        truncated = truncated.copy_abs()  # no "-0.0"
    return format(truncated, "f")


def format_payload(
    payload: Mapping[str, Any],
    panels: Iterable[Iterable[SensorFieldSpec]],
) -> dict[str, str]:
    """
    Format every non-placeholder field found in the payload.

    Returns a mapping of field key -> display string. Keys missing from the
    payload are left out, so those fields keep whatever they showed before.

    Raises:
        SensorFormatError: a present value is not a finite number
    """
    values: dict[str, str] = {}
    for panel in panels:
        for spec in panel:
            if spec.is_placeholder or spec.key not in payload:
                continue
            values[spec.key] = format_value(payload[spec.key], spec.digit)
    return values


def parse_timestamp(text: Any) -> datetime:
    """Parse the payload's RFC 3339 timestamp. Naive values are taken as UTC."""
    if not isinstance(text, str) or not text.strip():
        raise SensorFormatError(f"Missing or invalid timestamp: {text!r}")

    cleaned = text.strip()
    if cleaned.endswith(("Z", "z")):
        cleaned = cleaned[:-1] + "+00:00"
    cleaned = _FRACTION_RE.sub(r"\1", cleaned)

    try:
        parsed = datetime.fromisoformat(cleaned)
    except ValueError:
        raise SensorFormatError(f"Unparseable timestamp: {text!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_label(captured_at: datetime, tz: tzinfo) -> str:
    """Render e.g. "2024年5月1日 (水) 12時4分" in the display time zone."""
    local = captured_at.astimezone(tz)
    week = WEEKDAY_NAMES[local.isoweekday() % 7]
    return f"{local.year}年{local.month}月{local.day}日 ({week}) {local.hour}時{local.minute}分"
