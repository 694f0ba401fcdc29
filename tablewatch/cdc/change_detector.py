"""
Change detection for a single watched table.

Relies on two fields and optionally maintains a third:

1. ``meta_field``: holds the last observed values of the row as JSON. This is
   what tells us whether anything changed and what the changes were.
2. ``last_modified_field``: maintained by the store on every edit, which
   makes it cheap to poll for new and edited rows.
3. ``last_processed_field``: the time the row last went through the detector.

Each poll:

1. Finds every row whose last-modified value is past the watermark minus an
   overlap.
2. Keeps the rows whose non-bookkeeping fields actually changed.
3. Writes the current values back into the meta field (and the
   last-processed time).
4. Hands the changed rows to the caller.

    detector = ChangeDetector(table)
    for record in await detector.poll_once():
        if record.did_change("Status"):
            ...
"""
import asyncio
import copy
import inspect
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from tablewatch.backends.base import TableStore
from tablewatch.cdc.enrichment import EnrichedRecord
from tablewatch.cdc.models import Meta, RecordUpdate, Row
from tablewatch.cdc.snapshot_store import SnapshotStore
from tablewatch.config import ChangeDetectorConfig
from tablewatch.diff.field_diff import FieldDiffEngine
from tablewatch.errors import RecordError
from tablewatch.scheduler import ErrorHandler, ScheduleHandle, schedule, wait
from tablewatch.util.formula import EPOCH, build_modified_since_formula, parse_timestamp

logger = logging.getLogger(__name__)

ChangesHandler = Callable[[List[EnrichedRecord]], Union[None, Awaitable[None]]]


class ChangeDetector:
    """Polls one table for rows whose fields changed since they were last seen"""

    def __init__(self, table: TableStore, config: Optional[ChangeDetectorConfig] = None, **overrides):
        """
        Args:
            table: The watched table
            config: Detector configuration, defaults to ChangeDetectorConfig()
            **overrides: ChangeDetectorConfig fields overriding ``config``
        """
        config = config or ChangeDetectorConfig()
        if overrides:
            config = replace(config, **overrides)
        config.validate()

        self.table = table
        self.table_name = table.name
        self.config = config
        self.snapshots = SnapshotStore(config)
        self.diff_engine = FieldDiffEngine(config)

        # Watermark: not persisted, so a fresh instance re-examines every row
        # once (without reporting rows whose meta is current)
        self.last_modified: datetime = EPOCH
        self.record_errors: List[RecordError] = []
        # One cycle at a time per detector, whoever drives it
        self._cycle_lock = asyncio.Lock()

        self.stats: Dict[str, Any] = {
            "poll_count": 0,
            "last_poll_at": None,
            "last_fetched": 0,
            "last_changed": 0,
            "records_written": 0,
        }

    async def _io(self, awaitable: Awaitable[Any]) -> Any:
        if self.config.io_timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.config.io_timeout)

    async def poll_once(self) -> List[EnrichedRecord]:
        """
        Return every record that changed or appeared since the last poll.

        Raises when the store rejects the query (for instance an unknown
        last-modified field). Rows with unreadable meta are skipped and
        collected in ``record_errors``, unless ``isolate_record_errors`` is
        off, in which case the first one is raised.

        The watermark moves over every fetched row even when none of them
        changed. Only the store writes are skipped on such a cycle.

        Waits for any cycle already running on this detector.
        """
        async with self._cycle_lock:
            results, _ = await self._poll()
            return results

    async def _poll(self) -> Tuple[List[EnrichedRecord], List[RecordError]]:
        to_examine = await self.get_modified_records()

        changed: List[EnrichedRecord] = []
        errors: List[RecordError] = []
        for row in to_examine:
            try:
                record = self.enrich_record(row)
                if self.has_field_changes(record):
                    changed.append(record)
            except RecordError as e:
                if not self.config.isolate_record_errors:
                    raise
                logger.warning("Skipping record %s of %s: %s", e.record_id, self.table_name, e.cause)
                errors.append(e)

        results = [copy.deepcopy(r) for r in changed]
        if results and self.config.auto_update_enabled:
            await self.update_records(changed)

        self.update_last_modified(to_examine)

        self.record_errors = errors
        self.stats["poll_count"] += 1
        self.stats["last_poll_at"] = datetime.now(timezone.utc)
        self.stats["last_fetched"] = len(to_examine)
        self.stats["last_changed"] = len(results)
        logger.debug(
            "Polled %s: %d examined, %d changed, %d record errors",
            self.table_name, len(to_examine), len(results), len(errors)
        )
        return results, errors

    def poll_with_interval(
        self,
        task_name: str,
        interval: float,
        on_changes: ChangesHandler,
        on_error: Optional[ErrorHandler] = None
    ) -> ScheduleHandle:
        """
        Call ``poll_once`` on a schedule and pass the changes to ``on_changes``.

        ``on_error(error, record_id)`` receives failures of a cycle with
        ``record_id=None`` and each skipped record with its id. A concurrent
        ``poll_once`` waits until both handlers have returned.
        """
        async def cycle():
            async with self._cycle_lock:
                records, errors = await self._poll()
                result = on_changes(records)
                if inspect.isawaitable(result):
                    await result
                if on_error is None:
                    return
                for err in errors:
                    reported = on_error(err.cause, err.record_id)
                    if inspect.isawaitable(reported):
                        await reported

        return schedule(task_name, interval, cycle, on_error)

    def modified_since_formula(self) -> str:
        overlap = timedelta(seconds=self.config.overlap)
        cutoff = max(self.last_modified - overlap, EPOCH)
        return build_modified_since_formula(self.config.last_modified_field_name, cutoff)

    async def get_modified_records(self) -> List[Row]:
        """
        Gets all the rows modified since the watermark (minus the overlap).

        The overlap means some rows are seen more than once; they have no
        field changes the second time and get filtered out.
        """
        return await self._io(self.table.select(self.modified_since_formula()))

    async def update_records(self, records: List[Union[Row, EnrichedRecord]]):
        """Write the bookkeeping fields (meta and last processed) for ``records``"""
        if not records:
            return
        processed_at = datetime.now(timezone.utc)
        updates: List[RecordUpdate] = [self.snapshots.build_update(r, processed_at) for r in records]

        batch_size = self.config.update_batch_size
        for i in range(0, len(updates), batch_size):
            await self._io(self.table.update(updates[i:i + batch_size]))
            await wait(self.config.write_delay)
        self.stats["records_written"] += len(updates)

    def has_field_changes(self, record: Union[Row, EnrichedRecord]) -> bool:
        """True if any non-bookkeeping field differs from the stored last values"""
        meta = record.meta if isinstance(record, EnrichedRecord) else self.get_normalized_meta(record)
        return self.diff_engine.has_field_changes(record.fields, meta.last_values)

    def enrich_record(self, row: Row) -> EnrichedRecord:
        return EnrichedRecord(row, self.get_normalized_meta(row), self.table_name)

    def get_normalized_meta(self, row: Union[Row, EnrichedRecord]) -> Meta:
        return self.snapshots.normalize(row)

    def update_last_modified(self, rows: List[Union[Row, EnrichedRecord]]):
        """Push the watermark forward to the latest last-modified value among ``rows``"""
        if not rows:
            return
        latest = self.last_modified
        for row in rows:
            try:
                modified = parse_timestamp(row.fields.get(self.config.last_modified_field_name))
            except ValueError:
                logger.warning("Unreadable %s on record %s", self.config.last_modified_field_name, row.id)
                continue
            if modified is not None and modified > latest:
                latest = modified
        self.last_modified = latest

    def get_status(self) -> Dict[str, Any]:
        return {
            "table": self.table_name,
            "watermark": self.last_modified.isoformat(),
            "auto_update_enabled": self.config.auto_update_enabled,
            "record_errors": [
                {"record_id": e.record_id, "error": str(e.cause)} for e in self.record_errors
            ],
            **self.stats,
        }
