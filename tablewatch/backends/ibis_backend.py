"""
IbisTableStore - watch a table in a DuckDB database through Ibis.

Features:
- Modified-since formula translated into an Ibis filter (no string SQL for reads)
- Arrow output converted into rows, with nulls dropped and timestamps as ISO text
- Parameterized batched updates of the bookkeeping fields
- Blocking database calls run in the default thread pool
"""
import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import ibis

from tablewatch.backends.base import TableStore
from tablewatch.cdc.models import RecordUpdate, Row
from tablewatch.errors import ConfigurationError
from tablewatch.util.formula import parse_modified_since_formula, parse_timestamp, to_iso
from tablewatch.util.sql_builder import quote_ident


def _field_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, tuple):
        return list(value)
    return value


def connect(connection_uri: str, **connection_kwargs):
    """
    Open a DuckDB connection from ``duckdb://<path>``, a bare path or ``:memory:``.

    Write-back uses DuckDB's ``?`` parameters, so other Ibis backends are
    rejected.
    """
    if connection_uri.startswith("duckdb://"):
        connection_uri = connection_uri[len("duckdb://"):] or ":memory:"
    elif "://" in connection_uri:
        scheme = urlparse(connection_uri).scheme
        raise ConfigurationError(f"Unsupported backend '{scheme}', only DuckDB is supported")
    return ibis.duckdb.connect(connection_uri, **connection_kwargs)


class IbisTableStore(TableStore):
    """
    Table store backed by an Ibis connection.

    Updates are issued as parameterized ``UPDATE`` statements through
    ``raw_sql``, which the DuckDB backend forwards to the driver.
    """

    def __init__(
        self,
        connection: Optional[Any] = None,
        table_name: str = "",
        id_field: str = "id",
        connection_uri: Optional[str] = None,
        max_batch_size: int = 10,
        **connection_kwargs
    ):
        """
        Initialize the store.

        Args:
            connection: An existing Ibis connection
            table_name: Name of the watched table
            id_field: Column holding the stable record identifier
            connection_uri: URI string for connecting when no connection is given
            max_batch_size: Largest batch accepted by ``update``
        """
        if connection is None and connection_uri is None:
            raise ValueError("Either connection or connection_uri is required")
        self.con = connection if connection is not None else connect(connection_uri, **connection_kwargs)
        if getattr(self.con, "name", "duckdb") != "duckdb":
            raise ConfigurationError(f"Unsupported backend '{self.con.name}', only DuckDB is supported")
        self.name = table_name
        self.id_field = id_field
        self.max_batch_size = max_batch_size

        self._query_count = 0
        self._update_count = 0

    def _table(self):
        return self.con.table(self.name)

    def _select_sync(self, formula: str) -> List[Row]:
        field, cutoff = parse_modified_since_formula(formula)
        table = self._table()
        if field not in table.columns:
            raise ConfigurationError(f"Unknown field '{field}' in table '{self.name}'")
        if self.id_field not in table.columns:
            raise ConfigurationError(f"Unknown id field '{self.id_field}' in table '{self.name}'")

        dtype = table.schema()[field]
        if dtype.is_timestamp():
            if dtype.timezone is None:
                cutoff = cutoff.astimezone(timezone.utc).replace(tzinfo=None)
            predicate = table[field] > cutoff
        elif dtype.is_string():
            predicate = table[field] > to_iso(cutoff)
        else:
            raise ConfigurationError(f"Field '{field}' has type {dtype}, expected a timestamp")

        result = table.filter(predicate).to_pyarrow()
        self._query_count += 1

        rows = []
        for data in result.to_pylist():
            record_id = data.pop(self.id_field)
            fields = {k: _field_value(v) for k, v in data.items() if v is not None}
            rows.append(Row(id=record_id, fields=fields))
        return rows

    def _update_sync(self, batch: List[RecordUpdate]) -> None:
        schema = self._table().schema()
        for entry in batch:
            unknown = [name for name in entry.fields if name not in schema.names]
            if unknown:
                raise ConfigurationError(f"Unknown field(s) {unknown} in table '{self.name}'")

            assignments = []
            params = []
            for name, value in entry.fields.items():
                if schema[name].is_timestamp() and isinstance(value, str):
                    value = parse_timestamp(value)
                    if schema[name].timezone is None:
                        value = value.replace(tzinfo=None)
                assignments.append(f"{quote_ident(name)} = ?")
                params.append(value)
            params.append(entry.id)

            sql = (
                f"UPDATE {quote_ident(self.name)} SET {', '.join(assignments)} "
                f"WHERE {quote_ident(self.id_field)} = ?"
            )
            self.con.raw_sql(sql, parameters=params)
            self._update_count += 1

    async def select(self, formula: str) -> List[Row]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._select_sync, formula)

    async def update(self, batch: List[RecordUpdate]) -> None:
        if len(batch) > self.max_batch_size:
            raise ValueError(
                f"Update batch of {len(batch)} records exceeds the limit of {self.max_batch_size}"
            )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._update_sync, batch)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "query_count": self._query_count,
            "update_count": self._update_count,
            "backend_type": getattr(self.con, 'name', 'unknown') if self.con else 'disconnected'
        }

    def close(self):
        """Close database connection"""
        if hasattr(self.con, 'disconnect'):
            self.con.disconnect()
        self.con = None
