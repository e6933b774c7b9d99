from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, List, Optional, Set

from ..infrastructure.store import new_id, now_iso
from ..observability.metrics import BACKGROUND_TASKS


logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TaskRecord:
    task_id: str
    name: str
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None
    created_at: str = ""
    finished_at: Optional[str] = None


class TaskRunner:
    """Runs derived work off the request path with observable outcomes.

    Each submission executes at most once. Failures are logged, counted and
    kept on the record; they never reach the caller that submitted the work.
    """

    def __init__(self, history: int = 500) -> None:
        self._history = history
        self._records: "OrderedDict[str, TaskRecord]" = OrderedDict()
        self._inflight: Set[asyncio.Task] = set()

    def submit(self, name: str, work: Awaitable[object]) -> TaskRecord:
        record = TaskRecord(task_id=new_id(), name=name, created_at=now_iso())
        self._records[record.task_id] = record
        while len(self._records) > self._history:
            self._records.popitem(last=False)
        task = asyncio.get_running_loop().create_task(self._run(record, work))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return record

    async def _run(self, record: TaskRecord, work: Awaitable[object]) -> None:
        record.status = TaskStatus.RUNNING
        try:
            await work
        except asyncio.CancelledError:
            record.status = TaskStatus.FAILED
            record.error = "cancelled"
            record.finished_at = now_iso()
            raise
        except Exception as exc:
            record.status = TaskStatus.FAILED
            record.error = str(exc) or exc.__class__.__name__
            logger.exception("background_task_failed", extra={"task": record.name, "task_id": record.task_id})
            BACKGROUND_TASKS.labels(name=record.name, outcome="failed").inc()
        else:
            record.status = TaskStatus.SUCCEEDED
            BACKGROUND_TASKS.labels(name=record.name, outcome="succeeded").inc()
        record.finished_at = now_iso()

    def get(self, task_id: str) -> Optional[TaskRecord]:
        return self._records.get(task_id)

    def records(self, name: Optional[str] = None) -> List[TaskRecord]:
        return [r for r in self._records.values() if name is None or r.name == name]

    @property
    def pending(self) -> int:
        return len(self._inflight)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until all submitted work (including work it submits) has finished."""
        while self._inflight:
            batch = list(self._inflight)
            done, _ = await asyncio.wait(batch, timeout=timeout)
            if timeout is not None and len(done) < len(batch):
                raise asyncio.TimeoutError("background tasks still running")

    async def shutdown(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)


_runner: Optional[TaskRunner] = None


def get_task_runner() -> TaskRunner:
    global _runner
    if _runner is None:
        _runner = TaskRunner()
    return _runner


def reset_task_runner(runner: Optional[TaskRunner] = None) -> None:
    global _runner
    _runner = runner
