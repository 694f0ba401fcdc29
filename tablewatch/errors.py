"""
Error types raised by the change detector.
"""
from typing import Any


class RecordError(Exception):
    """
    Raised when an error rises from an individual record
    (such as a Meta field that is not valid JSON).

    Carries the id of the offending record and the underlying cause so the
    rest of a poll cycle can keep going without it.
    """

    def __init__(self, record_id: Any, cause: BaseException):
        super().__init__(f"Record {record_id}: {cause}")
        self.record_id = record_id
        self.cause = cause
        self.__cause__ = cause


class ConfigurationError(ValueError):
    """A configured field does not exist in the watched table."""
