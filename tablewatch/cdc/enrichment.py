"""
EnrichedRecord - a row plus read-only access to what was last observed.
"""
import copy
from typing import Any, Iterable, List, Optional

from tablewatch.cdc.models import FieldValue, Meta, Row
from tablewatch.diff.field_diff import deep_equal


class EnrichedRecord:
    """
    A row handed to callers, with its prior values attached.

    The fields are a deep copy of the row so callers may change them freely;
    ``meta`` is the snapshot parsed for this cycle.

        record.get("Status")           # current value
        record.prior_value("Status")   # value at the last observation, or None
        record.did_change("Status")    # True if the field changed or is new
    """

    def __init__(self, row: Row, meta: Meta, table_name: Optional[str] = None):
        self.id = row.id
        self.fields = copy.deepcopy(row.fields)
        self.meta = meta
        self.table_name = table_name

    def get(self, field_name: str, default: Optional[FieldValue] = None) -> Optional[FieldValue]:
        return self.fields.get(field_name, default)

    def prior_value(self, field_name: str) -> Any:
        return self.meta.last_values.get(field_name)

    def did_change(self, field_name: str) -> bool:
        # Nothing recorded yet: everything counts as changed
        if not self.meta.last_values:
            return True
        return not deep_equal(self.prior_value(field_name), self.get(field_name))

    def changed_fields(self, ignore: Iterable[str] = ()) -> List[str]:
        """Names of the fields that changed, present now or previously"""
        ignored = set(ignore)
        names = (set(self.fields) | set(self.meta.last_values)) - ignored
        return sorted(n for n in names if self.did_change(n))

    def __repr__(self):
        return f"EnrichedRecord(id={self.id!r}, table={self.table_name!r}, fields={self.fields!r})"
