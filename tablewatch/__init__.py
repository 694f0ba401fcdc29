"""
tablewatch package - field-level change detection for rows in a remote table

Expose the detector, its configuration and the scheduler.
"""
from .cdc.change_detector import ChangeDetector
from .cdc.enrichment import EnrichedRecord
from .config import ChangeDetectorConfig
from .errors import ConfigurationError, RecordError
from .scheduler import ScheduleHandle, schedule

__all__ = [
    "ChangeDetector",
    "ChangeDetectorConfig",
    "ConfigurationError",
    "EnrichedRecord",
    "RecordError",
    "ScheduleHandle",
    "schedule",
]
