"""
In-memory table store.

Behaves like the remote store for the parts the change detector relies on:
modified-since filtering, a per-call update limit, and a last-modified field
stamped whenever a user edits a row (but not by bookkeeping writes).
"""
import copy
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from tablewatch.backends.base import TableStore
from tablewatch.cdc.models import RecordUpdate, Row
from tablewatch.util.formula import parse_modified_since_formula, parse_timestamp, to_iso


class MemoryTableStore(TableStore):
    """
    A table held in a dict of record id -> fields.

    ``update_batches`` keeps every batch passed to ``update`` so callers can
    inspect the write traffic.
    """

    def __init__(
        self,
        name: str = "Table",
        records: Optional[Iterable[Row]] = None,
        last_modified_field: str = "Last Modified",
        max_batch_size: int = 10
    ):
        self.name = name
        self.last_modified_field = last_modified_field
        self.max_batch_size = max_batch_size
        self._records: Dict[Any, Dict[str, Any]] = {}
        self.update_batches: List[List[RecordUpdate]] = []
        self.select_formulas: List[str] = []

        for row in records or []:
            self._records[row.id] = copy.deepcopy(row.fields)

    async def select(self, formula: str) -> List[Row]:
        self.select_formulas.append(formula)
        field, cutoff = parse_modified_since_formula(formula)
        rows = []
        for record_id, fields in self._records.items():
            modified = parse_timestamp(fields.get(field))
            if modified is not None and modified > cutoff:
                rows.append(Row(id=record_id, fields=copy.deepcopy(fields)))
        return rows

    async def update(self, batch: List[RecordUpdate]) -> None:
        if len(batch) > self.max_batch_size:
            raise ValueError(
                f"Update batch of {len(batch)} records exceeds the limit of {self.max_batch_size}"
            )
        for entry in batch:
            if entry.id not in self._records:
                raise KeyError(f"Unknown record: {entry.id}")
        for entry in batch:
            self._records[entry.id].update(copy.deepcopy(entry.fields))
        self.update_batches.append(copy.deepcopy(batch))

    def add(self, record_id: Any, fields: Dict[str, Any], modified_at: Optional[datetime] = None) -> Row:
        """Insert a row, stamping its last-modified field"""
        self._records[record_id] = {}
        return self.touch(record_id, fields, modified_at)

    def touch(self, record_id: Any, fields: Dict[str, Any], modified_at: Optional[datetime] = None) -> Row:
        """
        Edit a row the way a user would: set ``fields`` (None removes a field)
        and stamp the last-modified field.
        """
        current = self._records[record_id]
        for key, value in fields.items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = copy.deepcopy(value)
        current[self.last_modified_field] = to_iso(modified_at or datetime.now(timezone.utc))
        return self.get(record_id)

    def get(self, record_id: Any) -> Row:
        return Row(id=record_id, fields=copy.deepcopy(self._records[record_id]))

    def all(self) -> List[Row]:
        return [self.get(record_id) for record_id in self._records]
