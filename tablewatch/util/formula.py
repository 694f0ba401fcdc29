"""
Helpers for the modified-since filter formula and the timestamps it carries.

The formula has the shape ``({Last Modified} > '2024-01-01T00:00:00.000Z')``,
which is what the remote store accepts as a filter and what the bundled
table stores parse back into a field name and a cutoff.
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Optional, Tuple

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_formula_re = re.compile(r"^\(\{(?P<field>[^}]+)\}\s*>\s*'(?P<cutoff>[^']+)'\)$")


def to_iso(value: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with millisecond precision and a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Interpret a last-modified style value as an aware UTC datetime.

    Accepts datetimes (naive ones are taken as UTC), dates, ISO-8601 strings
    and epoch seconds. Empty values return None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as e:
            raise ValueError(f"Invalid timestamp '{value}': {e}")
    else:
        raise ValueError(f"Invalid timestamp type: {type(value)}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def build_modified_since_formula(field: str, cutoff: datetime) -> str:
    return f"({{{field}}} > '{to_iso(cutoff)}')"


def parse_modified_since_formula(formula: str) -> Tuple[str, datetime]:
    """Split a modified-since formula into its field name and cutoff."""
    match = _formula_re.match(formula.strip())
    if not match:
        raise ValueError(f"Unsupported filter formula: {formula}")
    return match.group("field"), parse_timestamp(match.group("cutoff"))
