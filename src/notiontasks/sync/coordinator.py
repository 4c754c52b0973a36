"""Single-flight coordination of sync and import jobs.

At most one job holds the slot at a time. A new request takes the slot at
once and preempts the previous holder: the old job's cancellation token is
triggered, it is reported as cancelled, and after a short grace period the
new job starts running. Cancellation is cooperative; jobs check their
token between pages, queue entries and backoff waits. Observers are
notified outside the coordinator lock.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class JobCancelledError(Exception):
    """Raised at a checkpoint when the running job has been cancelled."""

    def __init__(self, message: str = "Job was cancelled"):
        super().__init__(message)


class CancellationToken:
    """Cooperative cancellation signal passed to every job."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Checkpoint: raise JobCancelledError if cancellation was requested."""
        if self._event.is_set():
            raise JobCancelledError(self.reason or "Job was cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds; returns True if cancelled meanwhile."""
        if timeout <= 0:
            return self._event.is_set()
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> None:
        """Cancellable sleep; raises JobCancelledError if cancelled."""
        if self.wait(seconds):
            self.raise_if_cancelled()


class JobState(str, Enum):
    """Lifecycle state of a job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class JobStatus:
    """Status snapshot broadcast to observers."""

    job_type: str
    status: JobState
    progress: Optional[float] = None
    message: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (JobState.COMPLETED, JobState.CANCELLED, JobState.ERROR)

    def to_event(self) -> dict[str, Any]:
        """Outbound event shape: jobType, status and optional details."""
        event: dict[str, Any] = {"jobType": self.job_type, "status": self.status.value}
        if self.progress is not None:
            event["progress"] = self.progress
        if self.message is not None:
            event["message"] = self.message
        if self.error is not None:
            event["error"] = self.error
        return event


Observer = Callable[[JobStatus], None]


class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to stop events."""

    def __init__(self, coordinator: "JobCoordinator", callback: Observer):
        self._coordinator = coordinator
        self.callback = callback

    def unsubscribe(self) -> None:
        self._coordinator._remove_observer(self.callback)


class _ActiveJob:
    def __init__(self, job_type: str, token: CancellationToken):
        self.job_type = job_type
        self.token = token


class JobCoordinator:
    """Serializes sync/import jobs and tracks their status.

    Construct one per process and hand it to whatever starts jobs.
    """

    def __init__(
        self,
        grace_period: float = 0.1,
        error_formatter: Optional[Callable[[BaseException], str]] = None,
    ):
        """Initialize coordinator.

        Args:
            grace_period: Seconds to let a preempted job reach a checkpoint
            error_formatter: Turns a job exception into a user-facing message
        """
        self.grace_period = grace_period
        self._format_error = error_formatter or str
        self._lock = threading.RLock()
        self._active: Optional[_ActiveJob] = None
        self._statuses: dict[str, JobStatus] = {}
        # Job that last wrote each job type's status
        self._owners: dict[str, _ActiveJob] = {}
        self._observers: list[Observer] = []

    # ========================================================================
    # Observers
    # ========================================================================

    def subscribe(self, callback: Observer) -> Subscription:
        """Register a callback for status changes."""
        with self._lock:
            self._observers.append(callback)
        return Subscription(self, callback)

    def _remove_observer(self, callback: Observer) -> None:
        with self._lock:
            if callback in self._observers:
                self._observers.remove(callback)

    def _store(self, job: _ActiveJob, status: JobStatus) -> JobStatus:
        """Record a job's status. Caller holds the lock."""
        self._owners[status.job_type] = job
        self._statuses[status.job_type] = status
        return status

    def _owns(self, job: _ActiveJob) -> bool:
        return self._owners.get(job.job_type) is job

    def _notify(self, *statuses: JobStatus) -> None:
        """Deliver statuses to observers. Must be called without the lock."""
        with self._lock:
            observers = list(self._observers)
        for status in statuses:
            for callback in observers:
                try:
                    callback(status)
                except Exception:
                    logger.exception("Job status observer failed for %s", status.job_type)

    # ========================================================================
    # Job Control
    # ========================================================================

    def request(
        self,
        job_type: str,
        work: Callable[[CancellationToken], Any],
    ) -> JobStatus:
        """Run a job, preempting whatever is active.

        Runs in the calling thread and returns the final status. If a job of
        the same type already holds the slot (queued or running), nothing is
        started and its current status is returned.

        Args:
            job_type: Job identifier (e.g. ``sync:task``)
            work: Callable receiving the job's cancellation token

        Returns:
            Final JobStatus of this job
        """
        with self._lock:
            active = self._active
            if active and active.job_type == job_type:
                logger.debug("%s already requested; returning its status", job_type)
                return self._statuses[job_type]

            job = _ActiveJob(job_type, CancellationToken())
            self._active = job
            events = []
            if active:
                events.extend(self._cancel_locked(active, f"Preempted by {job_type}"))
            events.append(self._store(job, JobStatus(job_type=job_type, status=JobState.QUEUED)))
        self._notify(*events)

        if active:
            logger.info("Preempting %s for %s", active.job_type, job_type)
            job.token.wait(self.grace_period)

        started = time.time()
        with self._lock:
            if job.token.cancelled:
                # Preempted or cancelled while still queued
                if self._active is job:
                    self._active = None
                return self._cancelled_status(job)
            running = self._store(
                job,
                JobStatus(job_type=job_type, status=JobState.RUNNING, progress=0, started_at=started),
            )
        self._notify(running)
        logger.info("Started %s", job_type)

        try:
            result = work(job.token)
        except JobCancelledError as e:
            final = self._finish(job, JobState.CANCELLED, started, message=str(e))
        except Exception as e:
            logger.exception("%s failed", job_type)
            final = self._finish(job, JobState.ERROR, started, error=self._format_error(e))
        else:
            if job.token.cancelled:
                final = self._finish(job, JobState.CANCELLED, started, message=job.token.reason)
            else:
                message = result if isinstance(result, str) else None
                final = self._finish(job, JobState.COMPLETED, started, progress=100, message=message)
        finally:
            with self._lock:
                # Only clear the slot if it still belongs to this job
                if self._active is job:
                    self._active = None
        return final

    def _cancelled_status(self, job: _ActiveJob) -> JobStatus:
        if self._owns(job):
            return self._statuses[job.job_type]
        return JobStatus(job_type=job.job_type, status=JobState.CANCELLED, message=job.token.reason)

    def _finish(
        self,
        job: _ActiveJob,
        state: JobState,
        started: float,
        progress: Optional[float] = None,
        message: Optional[str] = None,
        error: Optional[str] = None,
    ) -> JobStatus:
        with self._lock:
            # A newer run of the same type may own the status by now
            owned = self._owns(job)
            current = self._statuses.get(job.job_type) if owned else None
            # A preempted job was already reported as cancelled
            if current and current.status == JobState.CANCELLED:
                return current
            if progress is None and current is not None:
                progress = current.progress
            status = JobStatus(
                job_type=job.job_type,
                status=state,
                progress=progress,
                message=message,
                error=error,
                started_at=started,
                completed_at=time.time(),
            )
            if owned:
                self._store(job, status)
        if owned:
            self._notify(status)
        logger.info("%s finished: %s", job.job_type, state.value)
        return status

    def _cancel_locked(self, job: _ActiveJob, reason: str) -> list[JobStatus]:
        """Cancel a job and mark its status cancelled. Caller holds the lock."""
        job.token.cancel(reason)
        current = self._statuses.get(job.job_type)
        if not self._owns(job) or current is None or current.is_finished:
            return []
        cancelled = replace(
            current, status=JobState.CANCELLED, message=reason, completed_at=time.time()
        )
        return [self._store(job, cancelled)]

    def cancel(self, job_type: str) -> bool:
        """Cancel the active job if it has the given type."""
        with self._lock:
            active = self._active
            if not active or active.job_type != job_type:
                return False
            events = self._cancel_locked(active, "Cancelled by request")
        self._notify(*events)
        return True

    def cancel_all(self) -> None:
        """Cancel whatever job is active."""
        with self._lock:
            events = []
            if self._active:
                events = self._cancel_locked(self._active, "Cancelled by request")
        self._notify(*events)

    def report_progress(
        self, job_type: str, progress: Optional[float] = None, message: Optional[str] = None
    ) -> None:
        """Update progress of the running job of the given type."""
        with self._lock:
            active = self._active
            if not active or active.job_type != job_type or active.token.cancelled:
                return
            current = self._statuses.get(job_type)
            if current is None or not self._owns(active) or current.status != JobState.RUNNING:
                return
            status = self._store(
                active,
                replace(
                    current,
                    progress=progress if progress is not None else current.progress,
                    message=message if message is not None else current.message,
                ),
            )
        self._notify(status)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_status(self, job_type: str) -> Optional[JobStatus]:
        with self._lock:
            return self._statuses.get(job_type)

    def get_all_statuses(self) -> dict[str, JobStatus]:
        with self._lock:
            return dict(self._statuses)

    @property
    def current_job(self) -> Optional[str]:
        with self._lock:
            return self._active.job_type if self._active else None

    def is_running(self, job_type: Optional[str] = None) -> bool:
        with self._lock:
            if self._active is None:
                return False
            return job_type is None or self._active.job_type == job_type
