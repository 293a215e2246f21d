from __future__ import annotations

import asyncio
import signal
import sys

import uvicorn

from helpdesk_sync.core.config import get_settings
from helpdesk_sync.core.database import db
from helpdesk_sync.core.logging import configure_logging, log_error, log_info, log_warning
from helpdesk_sync.main import create_app
from helpdesk_sync.repositories import tickets as tickets_repo
from helpdesk_sync.repositories.departments import RegistryError
from helpdesk_sync.services.scheduler import SyncWorker


EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_NO_DEPARTMENTS = 2


async def _disconnect_database() -> None:
    try:
        await db.disconnect()
    except Exception as exc:  # pragma: no cover - defensive logging
        log_warning("Database disconnect failed", error=str(exc))


async def run_worker(
    *,
    stop_event: asyncio.Event | None = None,
    install_signal_handlers: bool = True,
) -> int:
    """Run the sync worker until a termination signal arrives.

    Returns the process exit code: 1 when the ticket store or the department
    registry is unusable at boot (or the registry fails repeatedly later), 2
    when no department is eligible at boot and departments are required.
    """

    settings = get_settings()
    stop_event = stop_event or asyncio.Event()
    fatal_errors: list[BaseException] = []

    def _on_fatal(exc: BaseException) -> None:
        log_error("Helpdesk worker hit an unrecoverable error", error=str(exc))
        fatal_errors.append(exc)
        stop_event.set()

    try:
        await db.connect()
        await db.run_migrations()
        await tickets_repo.sync_ticket_number_sequence()
    except Exception as exc:
        log_error("Ticket store unreachable at startup", error=str(exc))
        await _disconnect_database()
        return EXIT_STARTUP_FAILURE

    worker = SyncWorker(settings=settings, on_fatal=_on_fatal)
    try:
        scheduled = await worker.start()
    except RegistryError as exc:
        log_error("Department registry unreadable at startup", error=str(exc))
        await _disconnect_database()
        return EXIT_STARTUP_FAILURE

    if scheduled == 0 and settings.require_departments_at_boot:
        log_error("No eligible helpdesk departments configured at startup")
        await worker.stop()
        await _disconnect_database()
        return EXIT_NO_DEPARTMENTS

    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, _request_stop, stop_event, signum.name)
            except NotImplementedError:  # pragma: no cover - platform specific
                signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    server: uvicorn.Server | None = None
    server_task: asyncio.Task[None] | None = None
    if settings.control_port:
        config = uvicorn.Config(
            create_app(worker),
            host=settings.control_host,
            port=settings.control_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve(), name="helpdesk-control-api")
        server_task.add_done_callback(lambda _: stop_event.set())
        log_info(
            "Helpdesk control API listening",
            host=settings.control_host,
            port=settings.control_port,
        )

    log_info("Helpdesk worker running", departments=scheduled)
    await stop_event.wait()

    log_info("Helpdesk worker shutting down")
    if server is not None and server_task is not None:
        server.should_exit = True
        await asyncio.gather(server_task, return_exceptions=True)
    await worker.stop()
    await _disconnect_database()
    return EXIT_STARTUP_FAILURE if fatal_errors else EXIT_OK


def _request_stop(stop_event: asyncio.Event, signame: str) -> None:
    log_info("Termination signal received", signal=signame)
    stop_event.set()


def main() -> None:
    configure_logging()
    sys.exit(asyncio.run(run_worker()))


if __name__ == "__main__":
    main()
