"""
Media job queue on top of the APScheduler event loop.

Each submission becomes a one-shot date job in the in-memory "media" job
store. The worker coroutine runs with an explicit timeout and its outcome is
handed to the single result callback, correlated by transaction_id.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.base import BaseScheduler
from apscheduler.jobstores.base import JobLookupError

from chatrelay.domain.errors import MediaTooLarge, QueueUnavailable, ValidationError, classify_media_error
from chatrelay.domain.message import JobHandle, QueueJobRecord, QueueResult
from chatrelay.domain.ports import ResultCallback

logger = logging.getLogger(__name__)

MEDIA_JOBSTORE = "media"
ACTIVE_STATES = ("waiting", "active")
FINISHED_STATES = ("completed", "failed", "cancelled")

MediaWorker = Callable[[str, Dict[str, Any]], Awaitable[str]]


class SchedulerMediaQueue:
    """Asynchronous queue for one kind of media job (image or video)."""

    def __init__(
        self,
        name: str,
        scheduler: BaseScheduler,
        worker: MediaWorker,
        max_media_bytes: int,
        default_timeout: float,
        history_size: int = 500,
    ):
        self.name = name
        self.scheduler = scheduler
        self.worker = worker
        self.max_media_bytes = max_media_bytes
        self.default_timeout = default_timeout
        self.history_size = history_size
        self._callback: Optional[ResultCallback] = None
        self._jobs: "OrderedDict[str, QueueJobRecord]" = OrderedDict()
        self._options: Dict[str, Dict[str, Any]] = {}

    def on_result(self, callback: ResultCallback) -> None:
        """Register the result handler. Can only be done once."""
        if self._callback is not None:
            raise RuntimeError(f"Queue '{self.name}' already has a result callback")
        self._callback = callback

    async def submit(
        self,
        job_type: str,
        payload: Dict[str, Any],
        options: Optional[Dict[str, Any]] = None,
    ) -> JobHandle:
        """
        Submit a media job.

        Args:
            job_type: "process-image" or "process-video"
            payload: Job data; must carry transaction_id
            options: Optional {"timeout": seconds}

        Returns:
            Handle of the new job, or of the job already in flight for the transaction

        Raises:
            MediaTooLarge: if media_size_bytes is above the ceiling
            QueueUnavailable: if the scheduler rejects the job
        """
        transaction_id = payload.get("transaction_id")
        if not transaction_id:
            raise ValidationError("Media job payload has no transaction_id")

        size = payload.get("media_size_bytes") or 0
        if size > self.max_media_bytes:
            raise MediaTooLarge(size, self.max_media_bytes // (1024 * 1024))

        existing = self._find_active(transaction_id)
        if existing:
            logger.info(f"Queue '{self.name}': transaction {transaction_id} already has job {existing.id}")
            return JobHandle(id=existing.id, job_type=existing.job_type, transaction_id=transaction_id)

        job_id = f"{self.name}-{uuid.uuid4().hex}"
        record = QueueJobRecord(id=job_id, job_type=job_type, transaction_id=transaction_id, payload=payload)
        self._jobs[job_id] = record
        self._options[job_id] = dict(options or {})

        try:
            self.scheduler.add_job(
                self._run_job,
                trigger="date",
                id=job_id,
                name=f"{self.name}:{job_type}",
                jobstore=MEDIA_JOBSTORE,
                kwargs={"job_id": job_id},
                misfire_grace_time=None,
            )
        except Exception as e:
            self._jobs.pop(job_id, None)
            self._options.pop(job_id, None)
            logger.error(f"Queue '{self.name}' rejected job for transaction {transaction_id}: {e}")
            raise QueueUnavailable(f"Queue '{self.name}' unavailable: {e}") from e

        logger.info(f"Queue '{self.name}': job {job_id} ({job_type}) submitted for transaction {transaction_id}")
        return JobHandle(id=job_id, job_type=job_type, transaction_id=transaction_id)

    async def _run_job(self, job_id: str) -> None:
        record = self._jobs.get(job_id)
        if record is None or record.state != "waiting":
            logger.debug(f"Queue '{self.name}': job {job_id} no longer pending")
            return

        record.state = "active"
        timeout = self._options.pop(job_id, {}).get("timeout") or self.default_timeout
        payload = record.payload

        try:
            response = await asyncio.wait_for(self.worker(record.job_type, payload), timeout=timeout)
            record.state = "completed"
            result = self._build_result(record, response)
        except asyncio.TimeoutError:
            record.state = "failed"
            record.error = f"Job timed out after {timeout}s"
            logger.warning(f"Queue '{self.name}': job {job_id} timed out after {timeout}s")
            result = self._build_result(record, record.error, error_type="timeout")
        except Exception as e:
            record.state = "failed"
            record.error = str(e)
            error_type = classify_media_error(e)
            logger.error(f"Queue '{self.name}': job {job_id} failed ({error_type}): {e}")
            result = self._build_result(record, str(e), error_type=error_type)

        record.finished_at = datetime.utcnow()
        record.payload = {}
        self._trim_history()
        await self._deliver(result)

    def _build_result(self, record: QueueJobRecord, response: str, error_type: Optional[str] = None) -> QueueResult:
        payload = record.payload
        return QueueResult(
            response=response,
            sender_id=payload.get("sender_id", ""),
            chat_id=payload.get("chat_id", ""),
            message_id=payload.get("message_id"),
            transaction_id=record.transaction_id,
            is_error=error_type is not None,
            error_type=error_type,
            job_type=record.job_type,
        )

    async def _deliver(self, result: QueueResult) -> None:
        if self._callback is None:
            logger.error(f"Queue '{self.name}' has no result callback, dropping result of {result.transaction_id}")
            return
        try:
            await self._callback(result)
        except Exception as e:
            logger.exception(f"Queue '{self.name}' result callback failed for {result.transaction_id}: {e}")

    def _find_active(self, transaction_id: str) -> Optional[QueueJobRecord]:
        for record in self._jobs.values():
            if record.transaction_id == transaction_id and record.state in ACTIVE_STATES:
                return record
        return None

    def _trim_history(self) -> None:
        finished = [job_id for job_id, r in self._jobs.items() if r.state in FINISHED_STATES]
        for job_id in finished[:max(0, len(finished) - self.history_size)]:
            del self._jobs[job_id]

    def status(self) -> Dict[str, int]:
        """Job counts per state."""
        counts = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "cancelled": 0}
        for record in self._jobs.values():
            counts[record.state] = counts.get(record.state, 0) + 1
        counts["total"] = len(self._jobs)
        return counts

    async def purge(self, only_completed: bool = True) -> Dict[str, int]:
        """
        Drop finished job records, and with only_completed=False cancel waiting jobs too.

        Returns:
            {"removed": finished records dropped, "cancelled": waiting jobs cancelled}
        """
        removed = 0
        cancelled = []
        for job_id, record in list(self._jobs.items()):
            if record.state in FINISHED_STATES:
                del self._jobs[job_id]
                removed += 1
            elif not only_completed and record.state == "waiting":
                try:
                    self.scheduler.remove_job(job_id, jobstore=MEDIA_JOBSTORE)
                except JobLookupError:
                    logger.debug(f"Queue '{self.name}': job {job_id} already left the scheduler")
                del self._jobs[job_id]
                self._options.pop(job_id, None)
                record.state = "cancelled"
                cancelled.append(self._build_result(record, "Job cancelled by queue purge", error_type="cancelled"))

        logger.info(f"Queue '{self.name}' purged: {removed} finished, {len(cancelled)} cancelled")

        # Every cancelled job reports a failed result to its owner
        for result in cancelled:
            await self._deliver(result)

        return {"removed": removed, "cancelled": len(cancelled)}
