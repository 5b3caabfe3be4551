from __future__ import annotations

import math
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_FIGURE = r"\d{1,3}(?:[.,]\d{3})+(?:[.,]\d+)?|\d+(?:[.,]\d+)?"
_MULTIPLIER = r"(?:\s?(?P<suffix>k|m|mln|million|thousand)(?![a-z]))?"
_CURRENCY = r"(?:€|\$|£|\b(?:eur|euros?|usd|gbp)\b)"
_LEAD_IN = r"(?:\b(?:budget|total|amount)(?:\s+of)?\b\s*:?)"

MARKED_BEFORE_PATTERN = re.compile(
    rf"(?:{_CURRENCY}|{_LEAD_IN})\s*(?:{_CURRENCY}\s*)?(?P<figure>{_FIGURE}){_MULTIPLIER}",
    re.IGNORECASE,
)
MARKED_AFTER_PATTERN = re.compile(
    rf"(?<![\w.,])(?P<figure>{_FIGURE}){_MULTIPLIER}\s*{_CURRENCY}",
    re.IGNORECASE,
)
BARE_FIGURE_PATTERN = re.compile(rf"(?<![\w.,])(?P<figure>{_FIGURE}){_MULTIPLIER}", re.IGNORECASE)
SPACED_THOUSANDS_PATTERN = re.compile(r"(?<=\d)[ \u00a0\u202f](?=\d{3}(?!\d))")

MULTIPLIERS = {
    "k": 1_000,
    "thousand": 1_000,
    "m": 1_000_000,
    "mln": 1_000_000,
    "million": 1_000_000,
}


def _figure_value(figure: str) -> Decimal:
    """Interpret thousands and decimal separators in a money figure.

    A single separator followed by exactly three digits is a thousands group;
    otherwise it marks the decimal part. When both separators appear, the last
    one is the decimal separator (``250.000,00`` and ``250,000.00``).
    """
    dots, commas = figure.count("."), figure.count(",")
    if dots and commas:
        decimal_separator = "." if figure.rfind(".") > figure.rfind(",") else ","
        thousands_separator = "," if decimal_separator == "." else "."
        integer, _, fraction = figure.rpartition(decimal_separator)
        integer = integer.replace(thousands_separator, "")
    elif dots or commas:
        parts = figure.split("." if dots else ",")
        if len(parts) > 2 or len(parts[-1]) == 3:
            integer, fraction = "".join(parts), ""
        else:
            integer, fraction = parts
    else:
        integer, fraction = figure, ""
    return Decimal(f"{integer}.{fraction or '0'}")


def _match_value(match: re.Match[str]) -> int | None:
    try:
        value = _figure_value(match.group("figure"))
    except InvalidOperation:
        return None
    suffix = (match.group("suffix") or "").lower()
    if suffix:
        value *= MULTIPLIERS[suffix]
        return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return int(value)


def parse_amount(text: str | None) -> int | None:
    """Return the money figure in ``text``, preferring one tied to a currency marker."""
    if not text:
        return None
    cleaned = SPACED_THOUSANDS_PATTERN.sub("", str(text).replace("&nbsp;", " "))

    marked = [
        match
        for match in (MARKED_BEFORE_PATTERN.search(cleaned), MARKED_AFTER_PATTERN.search(cleaned))
        if match is not None
    ]
    if marked:
        return _match_value(min(marked, key=lambda match: match.start("figure")))

    bare = BARE_FIGURE_PATTERN.search(cleaned)
    if bare is None:
        return None
    return _match_value(bare)


def extract_numeric_budget(text: str | None) -> int | None:
    value = parse_amount(text)
    if value is None or value <= 0:
        return None
    return value


def coerce_amount(value: object) -> int | None:
    """Coerce a generator-written amount (number or currency string) to integer units."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if isinstance(value, str):
        negative = value.strip().startswith("-")
        parsed = parse_amount(value)
        if parsed is None:
            return None
        return -parsed if negative else parsed
    return None
