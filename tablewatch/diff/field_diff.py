"""
FieldDiffEngine - decides whether a row's fields changed since its snapshot.

Bookkeeping fields (meta, last modified, last processed) and sensitive fields
are removed from both sides before comparing, so they can never trigger a
change on their own.
"""
from datetime import date, datetime
from typing import Any, Dict, FrozenSet, List, Mapping

from tablewatch.config import ChangeDetectorConfig
from tablewatch.util.formula import to_iso


def _normalize(value: Any) -> Any:
    """Bring a value into the shape it has once stored as JSON."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, tuple):
        return [_normalize(v) for v in value]
    return value


def deep_equal(a: Any, b: Any) -> bool:
    """
    Structural equality between two field values.

    Mappings compare regardless of key order (keys holding None count as
    absent), lists compare element by element in order, and booleans never
    equal numbers.
    """
    a = _normalize(a)
    b = _normalize(b)

    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b

    if isinstance(a, Mapping) and isinstance(b, Mapping):
        a_keys = {k for k, v in a.items() if v is not None}
        b_keys = {k for k, v in b.items() if v is not None}
        if a_keys != b_keys:
            return False
        return all(deep_equal(a[k], b[k]) for k in a_keys)

    if isinstance(a, list) and isinstance(b, list):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))

    if type(a) is not type(b):
        return False

    return a == b


class FieldDiffEngine:
    """Compares current row fields with the last values stored in its meta"""

    def __init__(self, config: ChangeDetectorConfig):
        self.config = config
        ignored = {
            config.last_modified_field_name,
            config.meta_field_name,
            *config.sensitive_fields,
        }
        if config.last_processed_field_name:
            ignored.add(config.last_processed_field_name)
        self.ignored_fields: FrozenSet[str] = frozenset(ignored)

    def strip(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Copy of ``fields`` without the ignored fields"""
        return {k: v for k, v in fields.items() if k not in self.ignored_fields}

    def has_field_changes(self, fields: Mapping[str, Any], last_values: Mapping[str, Any]) -> bool:
        return not deep_equal(self.strip(fields), self.strip(last_values))

    def changed_fields(self, fields: Mapping[str, Any], last_values: Mapping[str, Any]) -> List[str]:
        current = self.strip(fields)
        previous = self.strip(last_values)
        names = set(current) | set(previous)
        return sorted(n for n in names if not deep_equal(current.get(n), previous.get(n)))
