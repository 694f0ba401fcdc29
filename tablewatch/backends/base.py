"""
Contract for the remote table the change detector watches.
"""
from abc import ABC, abstractmethod
from typing import List

from tablewatch.cdc.models import RecordUpdate, Row


class TableStore(ABC):
    """Abstract base class for watched tables"""

    name: str = ""
    # The remote store accepts at most this many records per update call
    max_batch_size: int = 10

    @abstractmethod
    async def select(self, formula: str) -> List[Row]:
        """Return every row matching ``formula``, across all pages"""
        pass

    @abstractmethod
    async def update(self, batch: List[RecordUpdate]) -> None:
        """Set the given fields on each record of the batch"""
        pass
