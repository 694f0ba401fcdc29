"""
Test suite for the change detector poll cycle
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, patch

from tablewatch.backends.memory_backend import MemoryTableStore
from tablewatch.cdc.change_detector import ChangeDetector
from tablewatch.cdc.enrichment import EnrichedRecord
from tablewatch.config import ChangeDetectorConfig
from tablewatch.errors import RecordError
from tablewatch.util.formula import EPOCH, parse_timestamp, to_iso

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def meta_of(store, record_id):
    return json.loads(store.get(record_id).get("Meta"))


@pytest.fixture
def table():
    return MemoryTableStore("Requests")


@pytest.fixture
def detector(table):
    return ChangeDetector(table)


def test_detector_initialization(detector):
    """Test defaults of a fresh detector"""
    assert detector.table_name == "Requests"
    assert detector.last_modified == EPOCH
    assert detector.config.meta_field_name == "Meta"
    assert detector.config.last_modified_field_name == "Last Modified"
    assert detector.config.last_processed_field_name is None
    assert detector.config.auto_update_enabled is True
    assert detector.config.write_delay == 0
    assert detector.config.sensitive_fields == frozenset()


def test_detector_overrides_and_validation(table):
    detector = ChangeDetector(table, auto_update_enabled=False, sensitive_fields=["SSN"])
    assert detector.config.auto_update_enabled is False
    assert detector.config.sensitive_fields == {"SSN"}

    with pytest.raises(ValueError):
        ChangeDetector(table, write_delay=-1)


def test_first_formula_starts_at_epoch(detector):
    assert detector.modified_since_formula() == "({Last Modified} > '1970-01-01T00:00:00.000Z')"


def test_formula_subtracts_overlap(detector):
    detector.last_modified = T0
    assert detector.modified_since_formula() == "({Last Modified} > '2024-01-01T11:59:55.000Z')"


@pytest.mark.asyncio
async def test_change_lifecycle(table, detector):
    """First sight, no-op, then a real change"""
    table.add("r1", {"Name": "Old Name"}, modified_at=T0)

    changes = await detector.poll_once()
    assert [r.id for r in changes] == ["r1"]
    assert changes[0].did_change("Name")
    assert meta_of(table, "r1") == {
        "lastValues": {"Name": "Old Name", "Last Modified": to_iso(T0)}
    }

    assert await detector.poll_once() == []

    table.touch("r1", {"Name": "New Name"}, modified_at=T0 + timedelta(minutes=1))
    changes = await detector.poll_once()
    assert [r.id for r in changes] == ["r1"]
    assert changes[0].prior_value("Name") == "Old Name"
    assert changes[0].get("Name") == "New Name"
    assert changes[0].did_change("Name")
    assert not changes[0].did_change("Missing")


@pytest.mark.asyncio
async def test_no_op_cycles_are_idempotent(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b"}, modified_at=T0)
    assert len(await detector.poll_once()) == 2
    writes = len(table.update_batches)

    for _ in range(3):
        assert await detector.poll_once() == []
    assert len(table.update_batches) == writes


@pytest.mark.asyncio
async def test_first_sight_reports_every_field(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    [record] = await detector.poll_once()
    assert isinstance(record, EnrichedRecord)
    assert record.did_change("Name")
    assert record.did_change("Absent Field")
    assert record.prior_value("Name") is None


@pytest.mark.asyncio
async def test_restart_does_not_reannounce(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    await detector.poll_once()

    restarted = ChangeDetector(table)
    assert await restarted.poll_once() == []
    assert restarted.last_modified == T0


@pytest.mark.asyncio
async def test_bookkeeping_and_sensitive_fields_are_not_changes(table):
    detector = ChangeDetector(table, sensitive_fields=["SSN"], last_processed_field_name="Last Processed")
    table.add("r1", {"Name": "a", "SSN": "111"}, modified_at=T0)
    await detector.poll_once()

    # Sensitive fields never reach the snapshot
    assert "SSN" not in meta_of(table, "r1")["lastValues"]

    t = T0
    for fields in ({"SSN": "222"}, {"Last Processed": to_iso(T0)}, {}):
        t += timedelta(minutes=1)
        table.touch("r1", fields, modified_at=t)
        assert await detector.poll_once() == []

    # Extra meta content with the same last values is not a change either
    meta = meta_of(table, "r1")
    meta["note"] = "hand edited"
    table.touch("r1", {"Meta": json.dumps(meta)}, modified_at=t + timedelta(minutes=1))
    assert await detector.poll_once() == []


@pytest.mark.asyncio
async def test_list_fields(table, detector):
    table.add("r1", {"Tags": ["a", "b"]}, modified_at=T0)
    await detector.poll_once()

    table.touch("r1", {"Tags": list(["a", "b"])}, modified_at=T0 + timedelta(minutes=1))
    assert await detector.poll_once() == []

    table.touch("r1", {"Tags": ["a", "b", "c"]}, modified_at=T0 + timedelta(minutes=2))
    [record] = await detector.poll_once()
    assert record.prior_value("Tags") == ["a", "b"]
    assert record.did_change("Tags")


@pytest.mark.asyncio
async def test_watermark_is_monotonic(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b"}, modified_at=T0 + timedelta(minutes=2))
    await detector.poll_once()
    assert detector.last_modified == T0 + timedelta(minutes=2)

    # A row older than the watermark but inside the overlap does not pull it back
    table.touch("r1", {"Name": "c"}, modified_at=T0 + timedelta(minutes=2) - timedelta(seconds=2))
    await detector.poll_once()
    assert detector.last_modified == T0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_watermark_unchanged_without_rows(detector):
    assert await detector.poll_once() == []
    assert detector.last_modified == EPOCH


@pytest.mark.asyncio
async def test_watermark_advances_over_unchanged_rows(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    await detector.poll_once()

    # Only a bookkeeping-style edit: no change reported, but the window moves
    later = T0 + timedelta(hours=1)
    table.touch("r1", {}, modified_at=later)
    assert await detector.poll_once() == []
    assert detector.last_modified == later


@pytest.mark.asyncio
async def test_write_back_batches(table):
    detector = ChangeDetector(table, write_delay=0.25)
    for i in range(23):
        table.add(f"r{i}", {"Name": str(i)}, modified_at=T0)

    with patch("tablewatch.cdc.change_detector.wait", new=AsyncMock()) as wait_mock:
        changes = await detector.poll_once()

    assert len(changes) == 23
    assert [len(b) for b in table.update_batches] == [10, 10, 3]
    assert wait_mock.await_count == 3
    for call in wait_mock.await_args_list:
        assert call.args == (0.25,)


@pytest.mark.asyncio
async def test_write_back_waits_even_without_delay(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    with patch("tablewatch.cdc.change_detector.wait", new=AsyncMock()) as wait_mock:
        await detector.poll_once()
    wait_mock.assert_awaited_once_with(0)


@pytest.mark.asyncio
async def test_last_processed_field_is_written(table):
    detector = ChangeDetector(table, last_processed_field_name="Last Processed")
    table.add("r1", {"Name": "a"}, modified_at=T0)
    before = datetime.now(timezone.utc) - timedelta(seconds=1)
    await detector.poll_once()

    processed = parse_timestamp(table.get("r1").get("Last Processed"))
    assert processed >= before


@pytest.mark.asyncio
async def test_malformed_meta_is_isolated(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b", "Meta": "{not json"}, modified_at=T0)
    table.add("r3", {"Name": "c"}, modified_at=T0 + timedelta(seconds=1))

    changes = await detector.poll_once()

    assert sorted(r.id for r in changes) == ["r1", "r3"]
    assert len(detector.record_errors) == 1
    error = detector.record_errors[0]
    assert isinstance(error, RecordError)
    assert error.record_id == "r2"
    assert isinstance(error.cause, ValueError)
    assert table.get("r2").get("Meta") == "{not json"
    assert detector.last_modified == T0 + timedelta(seconds=1)


@pytest.mark.asyncio
async def test_malformed_meta_fails_fast_when_not_isolated(table):
    detector = ChangeDetector(table, isolate_record_errors=False)
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b", "Meta": "{not json"}, modified_at=T0)

    with pytest.raises(RecordError) as exc_info:
        await detector.poll_once()

    assert exc_info.value.record_id == "r2"
    assert detector.last_modified == EPOCH
    assert table.update_batches == []


@pytest.mark.asyncio
async def test_cycle_error_leaves_watermark(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.update = AsyncMock(side_effect=RuntimeError("rate limited"))

    with pytest.raises(RuntimeError):
        await detector.poll_once()
    assert detector.last_modified == EPOCH


@pytest.mark.asyncio
async def test_io_timeout(table):
    detector = ChangeDetector(table, io_timeout=0.05)

    async def hang(formula):
        await asyncio.sleep(5)

    table.select = hang
    with pytest.raises(asyncio.TimeoutError):
        await detector.poll_once()
    assert detector.last_modified == EPOCH


@pytest.mark.asyncio
async def test_results_are_isolated_from_engine_state(table, detector):
    table.add("r1", {"Name": "a", "Tags": ["x"]}, modified_at=T0)
    [record] = await detector.poll_once()

    record.fields["Name"] = "mutated"
    record.fields["Tags"].append("y")

    assert meta_of(table, "r1")["lastValues"]["Name"] == "a"
    assert table.get("r1").get("Tags") == ["x"]
    assert await detector.poll_once() == []


@pytest.mark.asyncio
async def test_manual_update_mode(table):
    detector = ChangeDetector(table, ChangeDetectorConfig(auto_update_enabled=False))
    table.add("r1", {"Name": "a"}, modified_at=T0)

    first = await detector.poll_once()
    assert [r.id for r in first] == ["r1"]
    assert table.update_batches == []

    # Still reported until the caller writes back
    second = await detector.poll_once()
    assert [r.id for r in second] == ["r1"]

    await detector.update_records(second)
    assert len(table.update_batches) == 1
    assert await detector.poll_once() == []


@pytest.mark.asyncio
async def test_update_records_empty_is_noop(table, detector):
    await detector.update_records([])
    assert table.update_batches == []


@pytest.mark.asyncio
async def test_has_field_changes_accepts_plain_rows(table, detector):
    row = table.add("r1", {"Name": "a"}, modified_at=T0)
    assert detector.has_field_changes(row)


@pytest.mark.asyncio
async def test_poll_with_interval_reports_changes_and_record_errors(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b", "Meta": "{not json"}, modified_at=T0)

    received = []
    errors = []
    done = asyncio.Event()

    async def on_changes(records):
        received.append([r.id for r in records])
        done.set()

    def on_error(err, record_id):
        errors.append((type(err), record_id))

    handle = detector.poll_with_interval("requests", 0.01, on_changes, on_error)
    await asyncio.wait_for(done.wait(), 2)
    handle.stop()
    await handle.wait()

    assert received[0] == ["r1"]
    assert errors[0][1] == "r2"
    assert issubclass(errors[0][0], ValueError)


@pytest.mark.asyncio
async def test_poll_once_waits_for_running_cycle(table, detector):
    """A poll started while a scheduled cycle is in flight must not steal its record errors"""
    table.add("r1", {"Name": "a"}, modified_at=T0)
    table.add("r2", {"Name": "b", "Meta": "{not json"}, modified_at=T0)

    entered = asyncio.Event()
    release = asyncio.Event()
    reported = []

    async def on_changes(records):
        entered.set()
        await release.wait()

    def on_error(err, record_id):
        reported.append(record_id)

    handle = detector.poll_with_interval("requests", 60, on_changes, on_error)
    await asyncio.wait_for(entered.wait(), 2)

    concurrent = asyncio.ensure_future(detector.poll_once())
    for _ in range(5):
        await asyncio.sleep(0)
    assert not concurrent.done()
    assert table.select_formulas == ["({Last Modified} > '1970-01-01T00:00:00.000Z')"]

    release.set()
    assert await asyncio.wait_for(concurrent, 2) == []
    handle.stop()
    await handle.wait()

    assert reported == ["r2"]
    assert [e.record_id for e in detector.record_errors] == ["r2"]
    assert len(table.select_formulas) == 2


@pytest.mark.asyncio
async def test_poll_with_interval_reports_cycle_errors(table, detector):
    errors = []
    got_error = asyncio.Event()
    table.select = AsyncMock(side_effect=RuntimeError("network"))

    def on_error(err, record_id):
        errors.append((err, record_id))
        got_error.set()

    handle = detector.poll_with_interval("requests", 0.01, lambda records: None, on_error)
    await asyncio.wait_for(got_error.wait(), 2)
    handle.stop()
    await handle.wait()

    assert isinstance(errors[0][0], RuntimeError)
    assert errors[0][1] is None


@pytest.mark.asyncio
async def test_get_status(table, detector):
    table.add("r1", {"Name": "a"}, modified_at=T0)
    await detector.poll_once()
    status = detector.get_status()

    assert status["table"] == "Requests"
    assert status["poll_count"] == 1
    assert status["last_fetched"] == 1
    assert status["last_changed"] == 1
    assert status["records_written"] == 1
    assert status["record_errors"] == []
    assert status["watermark"] == T0.isoformat()
