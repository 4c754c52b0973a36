"""Tests for single-flight job coordination."""

import threading
import time

import pytest

from src.notiontasks.sync.coordinator import (
    CancellationToken,
    JobCancelledError,
    JobCoordinator,
    JobState,
    JobStatus,
)


@pytest.fixture
def coordinator():
    return JobCoordinator(grace_period=0.01)


def blocking_job(started: threading.Event):
    """Job that runs until its token is cancelled."""

    def work(token: CancellationToken) -> str:
        started.set()
        token.wait(5)
        token.raise_if_cancelled()
        return "finished without being cancelled"

    return work


class TestCancellationToken:
    """Tests for the cancellation signal."""

    def test_checkpoint(self):
        token = CancellationToken()
        token.raise_if_cancelled()

        token.cancel("stop now")

        assert token.cancelled
        with pytest.raises(JobCancelledError, match="stop now"):
            token.raise_if_cancelled()

    def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.reason == "first"

    def test_sleep_interrupted(self):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(JobCancelledError):
            token.sleep(5)

    def test_sleep_completes(self):
        CancellationToken().sleep(0.001)


class TestRequest:
    """Tests for running jobs."""

    def test_completed(self, coordinator):
        status = coordinator.request("sync:task", lambda token: "pulled 3")

        assert status.status == JobState.COMPLETED
        assert status.progress == 100
        assert status.message == "pulled 3"
        assert status.completed_at is not None
        assert not coordinator.is_running()

    def test_error(self, coordinator):
        """Test a failing job is reported with a formatted error."""
        coordinator = JobCoordinator(grace_period=0.01, error_formatter=lambda e: f"nice: {e}")

        def work(token):
            raise RuntimeError("boom")

        status = coordinator.request("sync:task", work)

        assert status.status == JobState.ERROR
        assert status.error == "nice: boom"
        assert coordinator.current_job is None

    def test_job_cancels_itself(self, coordinator):
        def work(token):
            raise JobCancelledError("gave up")

        status = coordinator.request("sync:task", work)

        assert status.status == JobState.CANCELLED
        assert status.message == "gave up"

    def test_events_in_order(self, coordinator):
        """Test observers see queued, running and completed."""
        events = []
        coordinator.subscribe(events.append)

        coordinator.request("sync:task", lambda token: None)

        assert [e.status for e in events] == [
            JobState.QUEUED,
            JobState.RUNNING,
            JobState.COMPLETED,
        ]
        assert events[1].progress == 0

    def test_report_progress(self, coordinator):
        events = []
        coordinator.subscribe(events.append)

        def work(token):
            coordinator.report_progress("sync:task", progress=50, message="halfway")

        coordinator.request("sync:task", work)

        progress = [e for e in events if e.message == "halfway"]
        assert progress[0].progress == 50
        assert progress[0].status == JobState.RUNNING

    def test_progress_for_other_job_ignored(self, coordinator):
        events = []
        coordinator.subscribe(events.append)

        coordinator.request(
            "sync:task", lambda token: coordinator.report_progress("import:task", progress=10)
        )

        assert all(e.job_type == "sync:task" for e in events)


class TestPreemption:
    """Tests for single-flight behaviour across threads."""

    def test_new_job_preempts_running_job(self, coordinator):
        """Test a second job cancels the first and runs to completion."""
        started = threading.Event()
        results = {}

        thread = threading.Thread(
            target=lambda: results.update(first=coordinator.request("sync:task", blocking_job(started)))
        )
        thread.start()
        assert started.wait(2)

        second = coordinator.request("import:task", lambda token: "imported")
        thread.join(5)

        assert second.status == JobState.COMPLETED
        assert results["first"].status == JobState.CANCELLED
        assert "import:task" in results["first"].message
        assert coordinator.get_status("sync:task").status == JobState.CANCELLED
        assert coordinator.current_job is None

    def test_duplicate_request_is_noop(self, coordinator):
        """Test requesting the running job type does not start another."""
        started = threading.Event()
        thread = threading.Thread(
            target=lambda: coordinator.request("sync:task", blocking_job(started))
        )
        thread.start()
        assert started.wait(2)

        calls = []
        status = coordinator.request("sync:task", lambda token: calls.append(1))

        assert status.status == JobState.RUNNING
        assert calls == []
        assert coordinator.is_running("sync:task")

        assert coordinator.cancel("sync:task")
        thread.join(5)
        assert coordinator.get_status("sync:task").status == JobState.CANCELLED

    def test_duplicate_request_while_queued_is_noop(self):
        """Test a repeat request during the grace period does not run twice."""
        coordinator = JobCoordinator(grace_period=0.3)
        started = threading.Event()
        runs = []
        threads = [
            threading.Thread(target=lambda: coordinator.request("import:task", blocking_job(started))),
            threading.Thread(target=lambda: coordinator.request("sync:task", runs.append)),
        ]
        threads[0].start()
        assert started.wait(2)
        threads[1].start()

        deadline = time.time() + 2
        while time.time() < deadline:
            status = coordinator.get_status("sync:task")
            if status is not None and status.status == JobState.QUEUED:
                break
            time.sleep(0.005)

        duplicate = coordinator.request("sync:task", runs.append)
        for thread in threads:
            thread.join(5)

        assert duplicate.status == JobState.QUEUED
        assert len(runs) == 1
        assert coordinator.get_status("sync:task").status == JobState.COMPLETED

    def test_stale_run_does_not_overwrite_newer_status(self, coordinator):
        """Test a slow preempted run keeps out of the next run's status."""
        started = threading.Event()
        release = threading.Event()
        results = {}

        def slow_cleanup(token):
            started.set()
            token.wait(5)
            release.wait(5)
            token.raise_if_cancelled()

        thread = threading.Thread(
            target=lambda: results.update(first=coordinator.request("sync:task", slow_cleanup))
        )
        thread.start()
        assert started.wait(2)

        coordinator.request("import:task", lambda token: "imported")
        second = coordinator.request("sync:task", lambda token: "second run")
        release.set()
        thread.join(5)

        assert second.status == JobState.COMPLETED
        assert results["first"].status == JobState.CANCELLED
        assert coordinator.get_status("sync:task").message == "second run"

    def test_cancel_nothing_running(self, coordinator):
        assert not coordinator.cancel("sync:task")

    def test_cancel_all(self, coordinator):
        started = threading.Event()
        results = {}
        thread = threading.Thread(
            target=lambda: results.update(job=coordinator.request("sync:all", blocking_job(started)))
        )
        thread.start()
        assert started.wait(2)

        coordinator.cancel_all()
        thread.join(5)

        assert results["job"].status == JobState.CANCELLED
        assert not coordinator.is_running()


class TestObservers:
    """Tests for status subscriptions."""

    def test_unsubscribe(self, coordinator):
        events = []
        subscription = coordinator.subscribe(events.append)
        coordinator.request("sync:task", lambda token: None)
        count = len(events)

        subscription.unsubscribe()
        coordinator.request("sync:task", lambda token: None)

        assert len(events) == count

    def test_failing_observer_does_not_break_job(self, coordinator):
        def broken(status):
            raise ValueError("observer bug")

        coordinator.subscribe(broken)

        status = coordinator.request("sync:task", lambda token: "ok")

        assert status.status == JobState.COMPLETED

    def test_observers_run_outside_lock(self, coordinator):
        """Test an observer can wait on another thread that queries the coordinator."""
        unblocked = []

        def observer(status):
            worker = threading.Thread(target=coordinator.get_all_statuses)
            worker.start()
            worker.join(1)
            unblocked.append(not worker.is_alive())

        coordinator.subscribe(observer)
        coordinator.request("sync:task", lambda token: None)

        assert unblocked == [True, True, True]

    def test_get_all_statuses(self, coordinator):
        coordinator.request("sync:task", lambda token: None)
        coordinator.request("import:project", lambda token: None)

        assert set(coordinator.get_all_statuses()) == {"sync:task", "import:project"}


class TestJobStatus:
    """Tests for the outbound event shape."""

    def test_to_event_minimal(self):
        status = JobStatus(job_type="sync:task", status=JobState.QUEUED)

        assert status.to_event() == {"jobType": "sync:task", "status": "queued"}

    def test_to_event_full(self):
        status = JobStatus(
            job_type="sync:task", status=JobState.ERROR, progress=40, message="m", error="e"
        )

        assert status.to_event() == {
            "jobType": "sync:task",
            "status": "error",
            "progress": 40,
            "message": "m",
            "error": "e",
        }
        assert status.is_finished
