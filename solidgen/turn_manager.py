"""
Async job manager for conversation turns.

Provides:
  - Bounded work queue with configurable concurrency
  - Per-job progress tracking for polling clients
  - One queued-or-running job per conversation
  - TTL-based cleanup of completed job records
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .config import SolidGenSettings
from .core.errors import ConfigurationError, ConversationBusyError, TransportError
from .core.turn_pipeline import TurnService
from .schemas import JobRecordView, TurnJobStatus, TurnRequest, TurnResultOut

logger = logging.getLogger(__name__)

_FINISHED = {TurnJobStatus.succeeded, TurnJobStatus.failed, TurnJobStatus.cancelled}

# Terminal turn status → HTTP status reported for a failed job.
_STATUS_CODES = {
    "configuration_error": 503,
    "transport_error": 502,
    "unidentifiable": 422,
    "exhausted": 422,
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    conversation_id: str
    request: TurnRequest
    status: TurnJobStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    progress: int = 0
    detail: str = ""
    result: TurnResultOut | None = None
    error: dict[str, Any] | None = None
    done_event: asyncio.Event = field(default_factory=asyncio.Event)

    def as_view(self) -> JobRecordView:
        return JobRecordView(
            id=self.id,
            status=self.status,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            progress=self.progress,
            detail=self.detail,
            request_summary={
                "conversation_id": self.conversation_id,
                "prompt": self.request.prompt[:100],
                "has_image": self.request.image_attachment is not None,
                "llm_name": self.request.llm_name,
            },
            result=self.result,
            error=self.error,
        )


class TurnJobManager:
    def __init__(self, settings: SolidGenSettings, service: TurnService):
        self.settings = settings
        self.service = service
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=settings.max_queue_size)
        self.jobs: dict[str, JobRecord] = {}
        self._workers: list[asyncio.Task] = []
        self._cleanup_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def startup(self) -> None:
        worker_count = self.settings.max_concurrent_jobs
        for idx in range(worker_count):
            self._workers.append(
                asyncio.create_task(self._worker_loop(idx), name=f"solidgen-turn-worker-{idx}")
            )
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="solidgen-turn-cleanup")
        logger.info("turn_job_manager_started workers=%s", worker_count)

    async def shutdown(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()
        if self._cleanup_task:
            self._cleanup_task.cancel()
            await asyncio.gather(self._cleanup_task, return_exceptions=True)
            self._cleanup_task = None

    def _conversation_busy(self, conversation_id: str) -> bool:
        if self.service.guard.busy(conversation_id):
            return True
        return any(
            job.conversation_id == conversation_id and job.status not in _FINISHED
            for job in self.jobs.values()
        )

    async def submit(self, request: TurnRequest, conversation_id: str, job_id: str | None = None) -> JobRecord:
        async with self._lock:
            if self.queue.full():
                raise RuntimeError("Job queue is full, retry later")
            if self._conversation_busy(conversation_id):
                raise ConversationBusyError(f"a turn is already in progress for conversation {conversation_id}")

            _id = job_id or request.request_id or str(uuid.uuid4())
            if _id in self.jobs:
                raise RuntimeError(f"Duplicate job_id: {_id}")

            record = JobRecord(
                id=_id,
                conversation_id=conversation_id,
                request=request,
                status=TurnJobStatus.queued,
                created_at=_utc_now(),
            )
            self.jobs[_id] = record
            self.queue.put_nowait(_id)
            return record

    async def wait_for_completion(self, job_id: str, timeout_seconds: int) -> JobRecord:
        record = await self.get(job_id)
        try:
            await asyncio.wait_for(record.done_event.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            raise RuntimeError(f"Job '{job_id}' did not finish within {timeout_seconds}s")
        return await self.get(job_id)

    async def get(self, job_id: str) -> JobRecord:
        record = self.jobs.get(job_id)
        if not record:
            raise KeyError(f"Job not found: {job_id}")
        return record

    async def cancel(self, job_id: str) -> JobRecord:
        record = await self.get(job_id)
        if record.status == TurnJobStatus.queued:
            record.status = TurnJobStatus.cancelled
            record.finished_at = _utc_now()
            record.done_event.set()
            return record
        if record.status in _FINISHED:
            return record
        raise RuntimeError("Running jobs cannot be force-cancelled safely")

    async def _run(self, record: JobRecord) -> None:
        max_attempts = record.request.max_attempts or self.settings.max_attempts
        stream = self.service.stream(record.conversation_id, record.request)
        async for line in stream:
            kind = line["type"]
            if kind == "state":
                attempt = line["attempt"]
                record.progress = 5 + int(85 * (attempt - 1) / max(max_attempts, 1))
                if line["state"] == "retrying":
                    record.detail = f"Attempt {attempt} failed, asking LLM to fix..."
                elif line["state"] == "validating":
                    record.detail = f"Validating script (attempt {attempt}/{max_attempts})"
                else:
                    record.detail = f"LLM generating code (attempt {attempt}/{max_attempts})..."
            elif kind == "result":
                record.result = TurnResultOut.model_validate(line["result"])

    async def _worker_loop(self, idx: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                record = self.jobs.get(job_id)
                if not record or record.status == TurnJobStatus.cancelled:
                    continue

                record.status = TurnJobStatus.running
                record.started_at = _utc_now()
                record.progress = 5
                record.detail = "Starting turn pipeline..."

                try:
                    await self._run(record)
                    result = record.result
                    if result is not None and result.success:
                        record.status = TurnJobStatus.succeeded
                        record.progress = 100
                        record.detail = f"Accepted after {len(result.retry_log)} attempt(s)"
                    else:
                        status = result.status if result else "failed"
                        record.status = TurnJobStatus.failed
                        record.error = {
                            "message": (result.message if result else "") or f"Turn failed: {status}",
                            "status": status,
                            "status_code": _STATUS_CODES.get(status, 500),
                        }
                        record.progress = 100
                        record.detail = f"Failed: {status}"

                except (ConfigurationError, TransportError, ConversationBusyError, ValueError, KeyError) as exc:
                    record.status = TurnJobStatus.failed
                    record.error = {"message": str(exc), "status_code": _error_status(exc)}
                    record.progress = 100
                    record.detail = f"Error: {str(exc)[:200]}"
                    logger.warning("Worker %d: job %s rejected: %s", idx, job_id, exc)

                except Exception as exc:
                    record.status = TurnJobStatus.failed
                    record.error = {"message": str(exc), "status_code": 500}
                    record.progress = 100
                    record.detail = f"Error: {str(exc)[:200]}"
                    logger.exception("Worker %d: job %s failed", idx, job_id)

                finally:
                    record.finished_at = _utc_now()
                    record.done_event.set()

            finally:
                self.queue.task_done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.cleanup_interval_seconds)
            self.cleanup()

    def cleanup(self) -> None:
        now = _utc_now()
        ttl = timedelta(seconds=self.settings.finished_job_ttl_seconds)

        expired = [
            jid
            for jid, job in self.jobs.items()
            if job.status in _FINISHED and job.finished_at and now - job.finished_at > ttl
        ]
        for jid in expired:
            self.jobs.pop(jid, None)

        completed_ids = [jid for jid, job in self.jobs.items() if job.status in _FINISHED]
        overflow = max(0, len(completed_ids) - self.settings.max_job_records)
        if overflow > 0:
            completed_sorted = sorted(
                completed_ids,
                key=lambda i: self.jobs[i].finished_at or self.jobs[i].created_at,
            )
            for jid in completed_sorted[:overflow]:
                self.jobs.pop(jid, None)


def _error_status(exc: Exception) -> int:
    if isinstance(exc, ConversationBusyError):
        return 409
    if isinstance(exc, KeyError):
        return 404
    if isinstance(exc, ValueError):
        return 400
    if isinstance(exc, ConfigurationError):
        return 503
    return 502
