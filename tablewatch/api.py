"""
api.py - REST API for watched tables: status, on-demand polls and manual write-back
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from tablewatch.cdc.change_detector import ChangeDetector
from tablewatch.cdc.enrichment import EnrichedRecord
from tablewatch.scheduler import ScheduleHandle
from tablewatch.security import get_api_key
from tablewatch.worker import DEFAULT_INTERVAL, start_worker


class ChangedRecordModel(BaseModel):
    """A changed record as returned by the API"""
    id: Any
    fields: Dict[str, Any]
    changed_fields: List[str] = []
    prior_values: Dict[str, Any] = {}


class AcknowledgeRequest(BaseModel):
    """Records whose changes the caller has handled"""
    record_ids: List[Any]


class APIResponse(BaseModel):
    """Base API response model"""
    status: str
    data: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def record_to_model(record: EnrichedRecord, ignored_fields=()) -> ChangedRecordModel:
    changed = record.changed_fields(ignore=ignored_fields)
    return ChangedRecordModel(
        id=record.id,
        fields=record.fields,
        changed_fields=changed,
        prior_values={name: record.prior_value(name) for name in changed},
    )


class WatchAPI:
    """REST API over a set of change detectors, keyed by table name"""

    def __init__(
        self,
        detectors: Dict[str, ChangeDetector],
        poll_interval: float = DEFAULT_INTERVAL,
        start_workers: bool = True,
        status_field: str = "Status",
        label_field: str = "Request ID"
    ):
        self.detectors = detectors
        self.poll_interval = poll_interval
        self.start_workers = start_workers
        self.status_field = status_field
        self.label_field = label_field
        self.handles: Dict[str, ScheduleHandle] = {}
        # Changes reported while auto update is off, awaiting acknowledgement
        self.pending: Dict[str, Dict[Any, EnrichedRecord]] = {name: {} for name in detectors}

        self.app = FastAPI(
            title="tablewatch API",
            dependencies=[Depends(get_api_key)],
            lifespan=self._lifespan
        )
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        if self.start_workers:
            for name, detector in self.detectors.items():
                self.handles[name] = start_worker(
                    detector,
                    self.poll_interval,
                    status_field=self.status_field,
                    label_field=self.label_field,
                    on_records=lambda records, name=name: self._track_pending(name, records),
                )
        try:
            yield
        finally:
            for handle in self.handles.values():
                handle.stop()
            for handle in self.handles.values():
                await handle.wait()
            self.handles.clear()

    def _track_pending(self, table_name: str, records: List[EnrichedRecord]):
        """Keep changes reported in manual mode until they are acknowledged"""
        if self.detectors[table_name].config.auto_update_enabled:
            return
        pending = self.pending.setdefault(table_name, {})
        for record in records:
            pending[record.id] = record

    def _get_detector(self, table_name: str) -> ChangeDetector:
        detector = self.detectors.get(table_name)
        if detector is None:
            raise HTTPException(status_code=404, detail=f"Unknown table: {table_name}")
        return detector

    def _setup_routes(self):
        """Setup all API routes"""

        @self.app.get("/health")
        async def health_check():
            return {"status": "healthy", "service": "tablewatch", "tables": sorted(self.detectors)}

        @self.app.get("/tables")
        async def list_tables():
            return APIResponse(
                status="success",
                data=[detector.get_status() for detector in self.detectors.values()]
            )

        @self.app.get("/tables/{table_name}")
        async def table_status(table_name: str):
            detector = self._get_detector(table_name)
            data = detector.get_status()
            data["pending"] = sorted(str(i) for i in self.pending.get(table_name, {}))
            data["worker_running"] = table_name in self.handles and self.handles[table_name].running
            return APIResponse(status="success", data=data)

        @self.app.post("/tables/{table_name}/poll")
        async def poll_table(table_name: str):
            detector = self._get_detector(table_name)
            try:
                records = await detector.poll_once()
            except Exception as e:
                raise HTTPException(status_code=500, detail=str(e))

            self._track_pending(table_name, records)

            ignored = detector.diff_engine.ignored_fields
            return APIResponse(
                status="success",
                data=[record_to_model(r, ignored) for r in records],
                metadata={
                    "changed": len(records),
                    "record_errors": [
                        {"record_id": e.record_id, "error": str(e.cause)} for e in detector.record_errors
                    ],
                }
            )

        @self.app.post("/tables/{table_name}/acknowledge")
        async def acknowledge(table_name: str, request: AcknowledgeRequest):
            detector = self._get_detector(table_name)
            pending = self.pending.setdefault(table_name, {})
            records = [pending[i] for i in request.record_ids if i in pending]
            unknown = [i for i in request.record_ids if i not in pending]
            try:
                await detector.update_records(records)
            except Exception as e:
                raise HTTPException(status_code=500, detail=str(e))
            for record in records:
                del pending[record.id]
            return APIResponse(
                status="success",
                data={"written": [r.id for r in records]},
                metadata={"unknown": unknown}
            )

    def get_app(self) -> FastAPI:
        return self.app


def create_watch_api(detectors: Dict[str, ChangeDetector], **kwargs) -> WatchAPI:
    return WatchAPI(detectors, **kwargs)
