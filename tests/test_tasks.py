"""Tests for the Celery task wrappers and the beat schedule."""

from unittest.mock import AsyncMock, patch

import pytest

from app import tasks
from app.worker import celery_app


class TestTasks:
    def test_summary_counts_errors(self):
        results = {"processed": 3, "cancelled": 1, "reminders": 1, "errors": [{"booking_id": "b-1"}]}
        with patch.object(tasks, "_run_scan", AsyncMock(return_value=results)):
            summary = tasks.process_payment_deadlines()

        assert summary == {"status": "success", "processed": 3, "cancelled": 1, "reminders": 1, "errors": 1}

    def test_scan_failure_propagates_when_called_directly(self):
        with patch.object(tasks, "_run_scan", AsyncMock(side_effect=RuntimeError("database unavailable"))):
            with pytest.raises(RuntimeError):
                tasks.cleanup_stale_locks()

    def test_loop_reused(self):
        async def value():
            return 1

        tasks.run_async(value())
        loop = tasks._loop
        tasks.run_async(value())

        assert tasks._loop is loop


def test_beat_schedule_covers_every_scan():
    scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

    assert scheduled == {
        "app.tasks.process_payment_deadlines",
        "app.tasks.expire_participant_holds",
        "app.tasks.cleanup_stale_locks",
        "app.tasks.auto_complete_bookings",
    }
