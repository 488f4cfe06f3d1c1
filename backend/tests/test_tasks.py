"""Tests for background task enqueueing."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from delegated_billing.tasks import (
    enqueue_dunning_retries,
    enqueue_scheduled_changes,
    enqueue_task,
    get_redis_pool,
)


class TestTasks:
    @pytest.mark.asyncio
    async def test_get_redis_pool(self):
        """Test get_redis_pool creates a pool."""
        mock_pool = MagicMock()

        with patch("delegated_billing.tasks.create_pool", new_callable=AsyncMock) as mock_create:
            mock_create.return_value = mock_pool

            result = await get_redis_pool()

            assert result == mock_pool
            mock_create.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task(self):
        """Test enqueue_task enqueues a job and closes the pool."""
        mock_job = MagicMock()
        mock_pool = MagicMock()
        mock_pool.enqueue_job = AsyncMock(return_value=mock_job)
        mock_pool.close = AsyncMock()

        with patch("delegated_billing.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = mock_pool

            result = await enqueue_task("my_task", "arg1", kwarg1="value1")

            assert result == mock_job
            mock_pool.enqueue_job.assert_called_once_with("my_task", "arg1", kwarg1="value1")
            mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task_closes_pool_on_error(self):
        """Test enqueue_task closes pool even when job enqueue fails."""
        mock_pool = MagicMock()
        mock_pool.enqueue_job = AsyncMock(side_effect=ConnectionError("Redis error"))
        mock_pool.close = AsyncMock()

        with patch("delegated_billing.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = mock_pool

            with pytest.raises(ConnectionError, match="Redis error"):
                await enqueue_task("failing_task")

            mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_scheduled_changes(self):
        with patch("delegated_billing.tasks.enqueue_task", new_callable=AsyncMock) as mock_enqueue:
            await enqueue_scheduled_changes()

            mock_enqueue.assert_called_once_with(
                "process_scheduled_changes_task", _job_id="process_scheduled_changes_task"
            )

    @pytest.mark.asyncio
    async def test_enqueue_dunning_retries(self):
        with patch("delegated_billing.tasks.enqueue_task", new_callable=AsyncMock) as mock_enqueue:
            await enqueue_dunning_retries()

            mock_enqueue.assert_called_once_with(
                "process_dunning_retries_task", _job_id="process_dunning_retries_task"
            )

    @pytest.mark.asyncio
    async def test_enqueue_returns_none_when_already_queued(self):
        mock_pool = MagicMock()
        mock_pool.enqueue_job = AsyncMock(return_value=None)
        mock_pool.close = AsyncMock()

        with patch("delegated_billing.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get:
            mock_get.return_value = mock_pool

            assert await enqueue_scheduled_changes() is None
            mock_pool.enqueue_job.assert_called_once_with(
                "process_scheduled_changes_task", _job_id="process_scheduled_changes_task"
            )
