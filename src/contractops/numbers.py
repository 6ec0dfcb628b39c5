from __future__ import annotations
import math
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable

from dateutil import parser as date_parser

_LEADING_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

def parse_float(value: Any) -> float:
    """Leading-numeric-prefix parse; anything unparseable or non-finite is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, Decimal)):
        out = float(value)
    else:
        m = _LEADING_NUMBER_RE.match(str(value).strip())
        if not m:
            return 0.0
        out = float(m.group(0))
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out

def sum_or_zero(values: Iterable[Any]) -> float:
    return sum((parse_float(v) for v in values), 0.0)

def _quantize(amount: float) -> Decimal:
    return Decimal(repr(float(amount))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

def format_amount(amount: Any) -> str:
    q = _quantize(parse_float(amount))
    return f"{q:,.2f}"

def format_usd(amount: Any) -> str:
    q = _quantize(parse_float(amount))
    if q < 0:
        return f"-${-q:,.2f}"
    return f"${q:,.2f}"

def format_date(value: Any) -> str:
    if not value:
        return ""
    if isinstance(value, datetime):
        d = value.date()
    elif isinstance(value, date):
        d = value
    else:
        try:
            d = date_parser.isoparse(str(value)).date()
        except (ValueError, OverflowError):
            return str(value)
    return f"{d.month}/{d.day}/{d.year}"
