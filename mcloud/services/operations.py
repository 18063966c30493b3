from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import uuid4

from mcloud.errors import MCloudError
from mcloud.logger import get_logger
from mcloud.utils import utcnow

_logger = get_logger("operations")

PipelineFactory = Callable[[Callable[[Enum], None]], Awaitable[Dict[str, Any]]]


@dataclass
class OperationRecord:
    id: str
    kind: str
    status: str = "running"
    phase: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    exception: Optional[BaseException] = field(default=None, repr=False)
    task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.status in {"succeeded", "failed"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status,
            "phase": self.phase,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "error": self.error,
        }


class OperationRunner:
    """Runs long pipelines as background tasks that outlive the request.

    Callers that wait do so through ``asyncio.shield`` so a dropped client
    connection never cancels a bootstrap, join or leave half way through.
    """

    def __init__(self, *, max_records: int = 200) -> None:
        self._records: "OrderedDict[str, OperationRecord]" = OrderedDict()
        self._max_records = max_records

    def submit(self, kind: str, factory: PipelineFactory) -> OperationRecord:
        record = OperationRecord(id=uuid4().hex, kind=kind)

        def _observe(phase: Enum) -> None:
            record.phase = str(phase.value)

        record.task = asyncio.create_task(self._run(record, factory(_observe)))
        self._records[record.id] = record
        self._trim()
        _logger.info("operation.submit", "Submitted pipeline", operation_id=record.id, kind=kind)
        return record

    async def _run(self, record: OperationRecord, pipeline: Awaitable[Dict[str, Any]]) -> None:
        try:
            record.result = await pipeline
            record.status = "succeeded"
        except MCloudError as exc:
            record.status = "failed"
            record.error = exc.to_dict()
            record.exception = exc
        except Exception as exc:
            _logger.exception(
                "operation.crash",
                "Pipeline failed unexpectedly",
                operation_id=record.id,
                kind=record.kind,
            )
            record.status = "failed"
            record.error = {"detail": "Internal error.", "error": "internal_error", "retry_safe": False}
            record.exception = exc
        finally:
            record.finished_at = utcnow()

    async def wait(self, record: OperationRecord) -> Dict[str, Any]:
        if record.task is not None:
            await asyncio.shield(record.task)
        if record.exception is not None:
            raise record.exception
        return record.result or {}

    async def run(self, kind: str, factory: PipelineFactory) -> Dict[str, Any]:
        return await self.wait(self.submit(kind, factory))

    def get(self, operation_id: str) -> Optional[OperationRecord]:
        return self._records.get(operation_id)

    def _trim(self) -> None:
        while len(self._records) > self._max_records:
            oldest_id = next((key for key, item in self._records.items() if item.done), None)
            if oldest_id is None:
                return
            self._records.pop(oldest_id)

    async def shutdown(self, *, grace_seconds: float = 5.0) -> None:
        pending = [item.task for item in self._records.values() if item.task is not None and not item.task.done()]
        if not pending:
            return
        _logger.warning("operations.shutdown", "Waiting for running pipelines", count=len(pending))
        _, still_running = await asyncio.wait(pending, timeout=grace_seconds)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
