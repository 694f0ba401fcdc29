"""
Worker that watches a table and reacts to status transitions.
"""
import inspect
import logging
from typing import Any, Callable, List, Optional

from tablewatch.cdc.change_detector import ChangeDetector, ChangesHandler
from tablewatch.cdc.enrichment import EnrichedRecord
from tablewatch.scheduler import ErrorHandler, ScheduleHandle

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 5.0

# on_transition(record, prior_status, status)
TransitionHandler = Callable[[EnrichedRecord, Any, Any], Any]


def task_name_for(table_name: str) -> str:
    return f"tablewatch.{table_name.lower().replace(' ', '_')}"


async def handle_status_changes(
    table_name: str,
    records: List[EnrichedRecord],
    status_field: str = "Status",
    label_field: str = "Request ID",
    on_transition: Optional[TransitionHandler] = None
):
    """Log each status transition in ``records`` and pass it to ``on_transition``"""
    logger.info("Found %d changes in %s", len(records), table_name)
    for record in records:
        if not record.did_change(status_field):
            continue
        prior = record.prior_value(status_field)
        status = record.get(status_field)
        logger.info("%s moved from %s -> %s", record.get(label_field, record.id), prior, status)
        if on_transition is not None:
            result = on_transition(record, prior, status)
            if inspect.isawaitable(result):
                await result


def start_worker(
    detector: ChangeDetector,
    interval: float = DEFAULT_INTERVAL,
    status_field: str = "Status",
    label_field: str = "Request ID",
    on_transition: Optional[TransitionHandler] = None,
    on_error: Optional[ErrorHandler] = None,
    on_records: Optional[ChangesHandler] = None
) -> ScheduleHandle:
    """
    Start polling ``detector`` on the running loop; returns the schedule handle.

    ``on_records`` sees every batch of changed records after the transitions
    have been handled.
    """
    if interval < DEFAULT_INTERVAL:
        logger.warning("Interval %s is too low. Clamping to %s", interval, DEFAULT_INTERVAL)
        interval = DEFAULT_INTERVAL

    async def on_changes(records: List[EnrichedRecord]):
        await handle_status_changes(detector.table_name, records, status_field, label_field, on_transition)
        if on_records is not None:
            result = on_records(records)
            if inspect.isawaitable(result):
                await result

    return detector.poll_with_interval(task_name_for(detector.table_name), interval, on_changes, on_error)
