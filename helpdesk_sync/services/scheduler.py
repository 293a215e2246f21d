from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from helpdesk_sync.core.config import Settings, get_settings
from helpdesk_sync.core.database import db
from helpdesk_sync.core.logging import log_error, log_info, log_warning
from helpdesk_sync.repositories import departments as departments_repo
from helpdesk_sync.services import ticket_sync


REGISTRY_REFRESH_JOB_ID = "helpdesk-registry-refresh"
_CONNECTION_FAILURE_STATUSES = {"connection_failed", "select_failed"}


class WorkerState(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


class DepartmentState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


class DepartmentNotFoundError(LookupError):
    """Raised when a manual sync names a department that is missing or not eligible."""


def _job_id(department_id: int) -> str:
    return f"helpdesk-sync-{department_id}"


@dataclass
class DepartmentTracker:
    department_id: int
    name: str
    interval_seconds: int
    state: DepartmentState = DepartmentState.IDLE
    last_result: dict[str, Any] | None = None
    consecutive_failures: int = 0
    circuit_open_until: datetime | None = None

    def circuit_open(self, now: datetime) -> bool:
        return self.circuit_open_until is not None and now < self.circuit_open_until

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.department_id,
            "name": self.name,
            "state": self.state.value,
            "interval_seconds": self.interval_seconds,
            "last_result": self.last_result,
            "consecutive_failures": self.consecutive_failures,
            "circuit_open_until": self.circuit_open_until,
        }


class SyncWorker:
    """Schedules one recurring mailbox pass per eligible helpdesk department.

    Each department has its own interval job. A tick for a department whose
    previous pass is still running is skipped rather than queued. The
    registry is re-read on a separate job so departments can be added,
    removed or retimed without a restart.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._on_fatal = on_fatal
        self._scheduler: AsyncIOScheduler | None = None
        self._state = WorkerState.STOPPED
        self._departments: dict[int, DepartmentTracker] = {}
        self._adhoc: dict[int, DepartmentTracker] = {}
        self._cursors: dict[ticket_sync.CursorKey, int] = {}
        self._inflight: set[asyncio.Task[Any]] = set()
        self._lifecycle_lock = asyncio.Lock()
        self._registry_failures = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is WorkerState.RUNNING

    def _build_scheduler(self) -> AsyncIOScheduler:
        return AsyncIOScheduler(timezone=self._settings.default_timezone)

    async def start(self) -> int:
        """Read the registry and schedule every eligible department.

        Returns the number of departments scheduled. A registry failure is
        propagated and leaves the worker STOPPED.
        """

        async with self._lifecycle_lock:
            if self._state is not WorkerState.STOPPED:
                return len(self._departments)
            self._state = WorkerState.STARTING
            try:
                departments = await departments_repo.list_eligible_departments()
            except Exception:
                self._state = WorkerState.STOPPED
                raise
            self._scheduler = self._build_scheduler()
            self._scheduler.start()
            self._registry_failures = 0
            self._apply_departments(departments)
            self._scheduler.add_job(
                self._refresh_departments,
                "interval",
                seconds=self._settings.registry_refresh_seconds,
                id=REGISTRY_REFRESH_JOB_ID,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            self._state = WorkerState.RUNNING
            log_info("Helpdesk sync worker started", departments=len(departments))
            return len(departments)

    async def stop(self) -> None:
        """Cancel the timers, let in-flight passes finish, then report STOPPED."""

        async with self._lifecycle_lock:
            if self._state is not WorkerState.RUNNING:
                return
            self._state = WorkerState.STOPPING
            log_info("Helpdesk sync worker stopping", inflight=len(self._inflight))
            scheduler = self._scheduler
            self._scheduler = None
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await self._drain_inflight()
            self._departments.clear()
            self._state = WorkerState.STOPPED
            log_info("Helpdesk sync worker stopped")

    async def restart(self) -> int:
        await self.stop()
        return await self.start()

    async def _drain_inflight(self) -> None:
        tasks = set(self._inflight)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=self._settings.stop_grace_seconds)
        if not pending:
            return
        log_warning(
            "Cancelling helpdesk passes still running after grace period",
            count=len(pending),
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _interval_for(self, department: dict[str, Any]) -> int:
        interval = department.get("sync_interval_seconds")
        if interval and int(interval) > 0:
            return int(interval)
        return self._settings.default_sync_interval_seconds

    def _apply_departments(self, departments: list[dict[str, Any]]) -> None:
        scheduler = self._scheduler
        if scheduler is None:
            return
        seen: set[int] = set()
        for department in departments:
            department_id = int(department["id"])
            seen.add(department_id)
            interval = self._interval_for(department)
            name = str(department.get("name") or department_id)
            tracker = self._departments.get(department_id)
            if tracker is None:
                tracker = self._adhoc.pop(department_id, None) or DepartmentTracker(
                    department_id=department_id, name=name, interval_seconds=interval
                )
                tracker.name = name
                tracker.interval_seconds = interval
                self._departments[department_id] = tracker
                scheduler.add_job(
                    self._dispatch_department,
                    "interval",
                    seconds=interval,
                    args=[department_id],
                    id=_job_id(department_id),
                    next_run_time=datetime.now(timezone.utc),
                    replace_existing=True,
                    coalesce=True,
                    max_instances=1,
                )
                log_info(
                    "Helpdesk department scheduled",
                    department_id=department_id,
                    interval=interval,
                )
                continue
            tracker.name = name
            if tracker.interval_seconds != interval:
                tracker.interval_seconds = interval
                scheduler.reschedule_job(_job_id(department_id), trigger="interval", seconds=interval)
                log_info(
                    "Helpdesk department interval changed",
                    department_id=department_id,
                    interval=interval,
                )

        for department_id in list(self._departments):
            if department_id in seen:
                continue
            if scheduler.get_job(_job_id(department_id)):
                scheduler.remove_job(_job_id(department_id))
            self._departments.pop(department_id, None)
            stale = [key for key in self._cursors if key[0] == department_id]
            for key in stale:
                del self._cursors[key]
            log_info("Helpdesk department unscheduled", department_id=department_id)

    async def _refresh_departments(self) -> None:
        try:
            departments = await departments_repo.list_eligible_departments()
        except departments_repo.RegistryError as exc:
            self._registry_failures += 1
            log_error(
                "Helpdesk registry refresh failed",
                attempts=self._registry_failures,
                error=str(exc),
            )
            if (
                self._registry_failures >= self._settings.circuit_breaker_threshold
                and self._on_fatal is not None
            ):
                self._on_fatal(exc)
            return
        self._registry_failures = 0
        if self._state is WorkerState.RUNNING:
            self._apply_departments(departments)

    def _claim(self, tracker: DepartmentTracker) -> bool:
        if tracker.state is DepartmentState.RUNNING:
            return False
        tracker.state = DepartmentState.RUNNING
        return True

    def _spawn(self, tracker: DepartmentTracker) -> asyncio.Task[ticket_sync.SyncResult | None]:
        task = asyncio.create_task(
            self._run_pass(tracker), name=_job_id(tracker.department_id)
        )
        self._inflight.add(task)

        def _release(finished: asyncio.Task[Any]) -> None:
            self._inflight.discard(finished)
            tracker.state = DepartmentState.IDLE

        task.add_done_callback(_release)
        return task

    async def _dispatch_department(self, department_id: int) -> None:
        if self._state is not WorkerState.RUNNING:
            return
        tracker = self._departments.get(department_id)
        if tracker is None:
            return
        now = datetime.now(timezone.utc)
        if tracker.circuit_open(now):
            log_info(
                "Helpdesk department circuit open, skipping tick",
                department_id=department_id,
                until=tracker.circuit_open_until,
            )
            return
        if not self._claim(tracker):
            log_info(
                "Helpdesk department still syncing, skipping tick",
                department_id=department_id,
            )
            return
        self._spawn(tracker)

    async def _run_pass(self, tracker: DepartmentTracker) -> ticket_sync.SyncResult | None:
        department_id = tracker.department_id
        try:
            async with db.acquire_lock(f"helpdesk_sync_{department_id}", timeout=1) as acquired:
                if not acquired:
                    log_info(
                        "Helpdesk department syncing on another worker, skipping",
                        department_id=department_id,
                    )
                    return None
                # Credentials and eligibility are re-read on every tick.
                department = await departments_repo.get_department(department_id)
                if not department or not departments_repo.is_eligible(department):
                    log_info(
                        "Helpdesk department no longer eligible, skipping",
                        department_id=department_id,
                    )
                    return None
                result = await ticket_sync.sync_department(
                    department, cursors=self._cursors, settings=self._settings
                )
        except Exception as exc:
            log_error(
                "Helpdesk sync tick failed",
                department_id=department_id,
                error=str(exc),
            )
            return None
        self._record_result(tracker, result)
        return result

    def _record_result(self, tracker: DepartmentTracker, result: ticket_sync.SyncResult) -> None:
        tracker.last_result = {
            "status": result.status,
            "created": result.created,
            "replies": result.replies,
            "skipped": result.skipped,
            "errors": len(result.errors),
            "finished_at": result.finished_at,
        }
        if result.status not in _CONNECTION_FAILURE_STATUSES:
            tracker.consecutive_failures = 0
            tracker.circuit_open_until = None
            return
        tracker.consecutive_failures += 1
        if tracker.consecutive_failures >= self._settings.circuit_breaker_threshold:
            tracker.circuit_open_until = datetime.now(timezone.utc) + timedelta(
                seconds=self._settings.circuit_breaker_cooldown
            )
            log_warning(
                "Helpdesk department circuit opened",
                department_id=tracker.department_id,
                failures=tracker.consecutive_failures,
                until=tracker.circuit_open_until,
            )

    async def sync_now(self, department_id: int) -> ticket_sync.SyncResult | None:
        """Run a pass for ``department_id`` immediately.

        Returns None when a pass for the department is already running.
        Raises :class:`DepartmentNotFoundError` for unknown or ineligible
        departments. The circuit breaker does not apply to manual runs.
        """

        tracker = self._departments.get(department_id) or self._adhoc.get(department_id)
        if tracker is None:
            department = await departments_repo.get_department(department_id)
            if not department or not departments_repo.is_eligible(department):
                raise DepartmentNotFoundError(f"Department {department_id} is not eligible")
            tracker = self._departments.get(department_id) or self._adhoc.setdefault(
                department_id,
                DepartmentTracker(
                    department_id=department_id,
                    name=str(department.get("name") or department_id),
                    interval_seconds=self._interval_for(department),
                ),
            )
        if not self._claim(tracker):
            return None
        return await self._spawn(tracker)

    def status(self) -> dict[str, Any]:
        return {
            "is_running": self.is_running,
            "state": self._state.value,
            "sync_interval_seconds": self._settings.default_sync_interval_seconds,
            "departments_tracked": len(self._departments),
            "departments": [
                tracker.as_dict()
                for _, tracker in sorted(self._departments.items())
            ],
        }
