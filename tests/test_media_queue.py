"""
Tests for the scheduler-backed media queue.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.domain.errors import MediaTooLarge, QueueUnavailable, SafetyBlocked
from chatrelay.infrastructure.media_queue import MEDIA_JOBSTORE, SchedulerMediaQueue

MB = 1024 * 1024


def _payload(transaction_id="tx_1", size=1024):
    return {
        "transaction_id": transaction_id,
        "chat_id": "chat@c.us",
        "sender_id": "user@c.us",
        "message_id": "MSG-1",
        "media_size_bytes": size,
    }


async def _run_scheduled(scheduler, index=-1):
    """Run a job the way the scheduler would."""
    call = scheduler.add_job.call_args_list[index]
    await call.args[0](**call.kwargs["kwargs"])


class TestMediaQueueSubmit:
    """Tests for job submission."""

    @pytest.fixture
    def scheduler(self):
        return MagicMock()

    @pytest.fixture
    def queue(self, scheduler):
        worker = AsyncMock(return_value="Uma foto de um gato.")
        return SchedulerMediaQueue("image", scheduler, worker, max_media_bytes=20 * MB, default_timeout=5)

    @pytest.mark.asyncio
    async def test_submit_schedules_job(self, queue, scheduler):
        """A submission becomes a date job in the media job store."""
        handle = await queue.submit("process-image", _payload(), {"timeout": 10})

        assert handle.transaction_id == "tx_1"
        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["trigger"] == "date"
        assert kwargs["jobstore"] == MEDIA_JOBSTORE
        assert kwargs["id"] == handle.id
        assert queue.status()["waiting"] == 1

    @pytest.mark.asyncio
    async def test_size_gate(self, queue, scheduler):
        """Media above 20MB never reaches the scheduler."""
        with pytest.raises(MediaTooLarge) as exc_info:
            await queue.submit("process-image", _payload(size=21 * MB))

        assert "20MB" in str(exc_info.value)
        scheduler.add_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_one_job_per_transaction(self, queue, scheduler):
        """A second submission for the same transaction returns the existing handle."""
        first = await queue.submit("process-image", _payload())
        second = await queue.submit("process-image", _payload())

        assert first.id == second.id
        assert scheduler.add_job.call_count == 1

    @pytest.mark.asyncio
    async def test_scheduler_rejection(self, queue, scheduler):
        """Scheduler errors surface as QueueUnavailable and leave no record."""
        scheduler.add_job.side_effect = RuntimeError("scheduler down")

        with pytest.raises(QueueUnavailable):
            await queue.submit("process-image", _payload())

        assert queue.status()["total"] == 0

    def test_callback_registered_once(self, queue):
        """Registering a second callback is an error."""
        queue.on_result(AsyncMock())

        with pytest.raises(RuntimeError):
            queue.on_result(AsyncMock())


class TestMediaQueueExecution:
    """Tests for job execution and result correlation."""

    @pytest.fixture
    def scheduler(self):
        return MagicMock()

    @pytest.mark.asyncio
    async def test_success_result(self, scheduler):
        """The callback receives the response correlated by transaction id."""
        worker = AsyncMock(return_value="Uma foto de um gato.")
        queue = SchedulerMediaQueue("image", scheduler, worker, 20 * MB, default_timeout=5)
        callback = AsyncMock()
        queue.on_result(callback)

        await queue.submit("process-image", _payload("tx_42"))
        await _run_scheduled(scheduler)

        result = callback.await_args.args[0]
        assert result.transaction_id == "tx_42"
        assert result.response == "Uma foto de um gato."
        assert result.is_error is False
        assert result.chat_id == "chat@c.us"
        worker.assert_awaited_once()
        assert queue.status()["completed"] == 1

    @pytest.mark.asyncio
    async def test_timeout_result(self, scheduler):
        """A job exceeding its timeout reports error_type timeout."""
        async def slow_worker(job_type, payload):
            await asyncio.sleep(5)
            return "late"

        queue = SchedulerMediaQueue("video", scheduler, slow_worker, 20 * MB, default_timeout=300)
        callback = AsyncMock()
        queue.on_result(callback)

        await queue.submit("process-video", _payload(), {"timeout": 0.01})
        await _run_scheduled(scheduler)

        result = callback.await_args.args[0]
        assert result.is_error is True
        assert result.error_type == "timeout"
        assert queue.status()["failed"] == 1

    @pytest.mark.asyncio
    async def test_error_is_classified(self, scheduler):
        """Worker exceptions are classified for the callback."""
        worker = AsyncMock(side_effect=SafetyBlocked("blocked by safety filters"))
        queue = SchedulerMediaQueue("image", scheduler, worker, 20 * MB, default_timeout=5)
        callback = AsyncMock()
        queue.on_result(callback)

        await queue.submit("process-image", _payload())
        await _run_scheduled(scheduler)

        result = callback.await_args.args[0]
        assert result.is_error is True
        assert result.error_type == "safety"

    @pytest.mark.asyncio
    async def test_callback_failure_is_contained(self, scheduler):
        """An exception in the callback does not break the queue."""
        queue = SchedulerMediaQueue("image", scheduler, AsyncMock(return_value="ok"), 20 * MB, default_timeout=5)
        queue.on_result(AsyncMock(side_effect=RuntimeError("boom")))

        await queue.submit("process-image", _payload())
        await _run_scheduled(scheduler)

        assert queue.status()["completed"] == 1

    @pytest.mark.asyncio
    async def test_new_job_allowed_after_completion(self, scheduler):
        """A finished job no longer blocks submissions for its transaction."""
        queue = SchedulerMediaQueue("image", scheduler, AsyncMock(return_value="ok"), 20 * MB, default_timeout=5)
        queue.on_result(AsyncMock())

        first = await queue.submit("process-image", _payload())
        await _run_scheduled(scheduler)
        second = await queue.submit("process-image", _payload())

        assert first.id != second.id


class TestMediaQueuePurge:
    """Tests for queue administration."""

    @pytest.mark.asyncio
    async def test_purge_completed_only(self):
        """Default purge drops finished records and keeps waiting jobs."""
        scheduler = MagicMock()
        queue = SchedulerMediaQueue("image", scheduler, AsyncMock(return_value="ok"), 20 * MB, default_timeout=5)
        queue.on_result(AsyncMock())

        await queue.submit("process-image", _payload("tx_1"))
        await _run_scheduled(scheduler)
        await queue.submit("process-image", _payload("tx_2"))

        result = await queue.purge()

        assert result == {"removed": 1, "cancelled": 0}
        assert queue.status()["waiting"] == 1
        scheduler.remove_job.assert_not_called()

    @pytest.mark.asyncio
    async def test_purge_everything(self):
        """Purging everything cancels waiting jobs in the scheduler."""
        scheduler = MagicMock()
        queue = SchedulerMediaQueue("image", scheduler, AsyncMock(return_value="ok"), 20 * MB, default_timeout=5)

        callback = AsyncMock()
        queue.on_result(callback)

        handle = await queue.submit("process-image", _payload("tx_1"))
        result = await queue.purge(only_completed=False)

        assert result == {"removed": 0, "cancelled": 1}
        scheduler.remove_job.assert_called_once_with(handle.id, jobstore=MEDIA_JOBSTORE)
        assert queue.status()["total"] == 0

        cancelled = callback.await_args.args[0]
        assert cancelled.transaction_id == "tx_1"
        assert cancelled.chat_id == "chat@c.us"
        assert cancelled.is_error is True
        assert cancelled.error_type == "cancelled"
