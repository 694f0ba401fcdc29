"""
Reusable scheduler for repeating in-process async tasks.

``interval`` is measured between one run's end and the next one's start, so
a slow run never piles up behind itself.
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from tablewatch.errors import RecordError

logger = logging.getLogger(__name__)

# on_error(error, record_id); record_id is None when the error is not tied to a record
ErrorHandler = Callable[[BaseException, Optional[Any]], Any]


async def wait(delay: float):
    """Pause for ``delay`` seconds (zero still yields to the event loop)."""
    await asyncio.sleep(delay)


class ScheduleHandle:
    """
    Handle for a running schedule, owned by whoever called ``schedule``.

    Calling the handle (or ``stop()``) clears the running flag. A task that is
    already running is not interrupted; the loop exits at its next check.
    """

    def __init__(self, task_name: str, interval: float):
        self.task_name = task_name
        self.interval = interval
        self.running = True
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

    def stop(self):
        if self.running:
            logger.info("Stopping %s", self.task_name)
        self.running = False
        self._stop_event.set()

    def __call__(self):
        self.stop()

    @property
    def done(self) -> bool:
        return self._loop_task is not None and self._loop_task.done()

    async def wait(self):
        """Wait for the loop to finish after ``stop()``."""
        if self._loop_task is not None:
            await self._loop_task

    async def _sleep(self):
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass


async def _report_error(handle: ScheduleHandle, error: Exception, on_error: Optional[ErrorHandler]):
    cause: BaseException = error
    record_id = None
    if isinstance(error, RecordError):
        cause = error.cause
        record_id = error.record_id

    logger.error(
        "Error in %s poll. Continuing in %ss.", handle.task_name, handle.interval,
        exc_info=(type(cause), cause, cause.__traceback__)
    )
    if on_error is None:
        return
    try:
        result = on_error(cause, record_id)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("Error handler for %s failed", handle.task_name)


async def _run(handle: ScheduleHandle, task: Callable[[], Awaitable[Any]], on_error: Optional[ErrorHandler]):
    logger.info("Starting %s and polling every %ss", handle.task_name, handle.interval)
    while handle.running:
        try:
            await task()
        except Exception as e:
            await _report_error(handle, e, on_error)
        if not handle.running:
            break
        await handle._sleep()
    logger.info("Stopped %s", handle.task_name)


def schedule(
    task_name: str,
    interval: float,
    task: Callable[[], Awaitable[Any]],
    on_error: Optional[ErrorHandler] = None
) -> ScheduleHandle:
    """
    Run ``task`` forever on the running event loop.

    Errors raised by ``task`` are logged and passed to ``on_error`` (which may
    be a coroutine function); the schedule always carries on after
    ``interval`` seconds. A ``RecordError`` is reported as its cause together
    with the record id.
    """
    handle = ScheduleHandle(task_name, interval)
    handle._loop_task = asyncio.get_running_loop().create_task(_run(handle, task, on_error))
    return handle
