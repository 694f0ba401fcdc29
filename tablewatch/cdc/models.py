"""
Data models for the change detector: rows, their meta snapshot and updates.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, Union

# Closed set of values a field may hold; absent fields are missing keys.
FieldValue = Union[str, int, float, bool, date, List[str], None]

LAST_VALUES_KEY = "lastValues"


@dataclass
class Row:
    """A row as returned by the table store"""
    id: Any
    fields: Dict[str, FieldValue] = field(default_factory=dict)

    def get(self, field_name: str, default: Optional[FieldValue] = None) -> Optional[FieldValue]:
        return self.fields.get(field_name, default)


@dataclass
class Meta:
    """
    The persisted snapshot of a row: the field values last observed.

    Unknown top-level keys found in the stored JSON are kept in ``extra``
    and written back untouched.
    """
    last_values: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Meta':
        extra = {k: v for k, v in data.items() if k != LAST_VALUES_KEY}
        last_values = data.get(LAST_VALUES_KEY)
        if not isinstance(last_values, dict):
            last_values = {}
        return cls(last_values=last_values, extra=extra)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data[LAST_VALUES_KEY] = self.last_values
        return data


@dataclass
class RecordUpdate:
    """One entry of a batched update: a record id and the fields to set"""
    id: Any
    fields: Dict[str, Any]
