"""
Reads and writes the per-row snapshot kept in the meta field.

The meta field holds compact JSON of the form ``{"lastValues": {...}}``.
"""
import json
from datetime import date, datetime
from typing import Any, Optional, Union

from tablewatch.cdc.enrichment import EnrichedRecord
from tablewatch.cdc.models import Meta, RecordUpdate, Row
from tablewatch.config import ChangeDetectorConfig
from tablewatch.errors import RecordError
from tablewatch.util.formula import to_iso


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class SnapshotStore:
    """Snapshot adapter for one watched table"""

    def __init__(self, config: ChangeDetectorConfig):
        self.config = config

    def normalize(self, row: Union[Row, EnrichedRecord]) -> Meta:
        """
        Parse the row's meta field.

        An empty meta field means the row was never observed. Meta that does
        not parse raises a RecordError for that row only.
        """
        raw = row.fields.get(self.config.meta_field_name)
        if not raw:
            return Meta()
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise RecordError(row.id, e)
        if not isinstance(data, dict):
            raise RecordError(row.id, ValueError(f"Meta must be a JSON object, got {type(data).__name__}"))
        return Meta.from_dict(data)

    def build_snapshot(self, record: Union[Row, EnrichedRecord]) -> Meta:
        """Meta holding the record's current values, minus the meta field and sensitive fields"""
        meta = record.meta if isinstance(record, EnrichedRecord) else self.normalize(record)
        last_values = {
            k: v for k, v in record.fields.items()
            if k != self.config.meta_field_name and k not in self.config.sensitive_fields
        }
        return Meta(last_values=last_values, extra=dict(meta.extra))

    def serialize(self, meta: Meta) -> str:
        return json.dumps(meta.to_dict(), separators=(",", ":"), default=_json_default)

    def build_update(self, record: Union[Row, EnrichedRecord], processed_at: Optional[datetime] = None) -> RecordUpdate:
        fields = {self.config.meta_field_name: self.serialize(self.build_snapshot(record))}
        if self.config.last_processed_field_name and processed_at is not None:
            fields[self.config.last_processed_field_name] = to_iso(processed_at)
        return RecordUpdate(id=record.id, fields=fields)
