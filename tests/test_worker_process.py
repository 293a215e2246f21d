import asyncio
from types import SimpleNamespace

import pytest

from helpdesk_sync import worker as worker_module
from helpdesk_sync.core.config import get_settings
from helpdesk_sync.repositories.departments import RegistryError


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def fake_db(monkeypatch):
    calls: list[str] = []

    async def connect():
        calls.append("connect")

    async def run_migrations():
        calls.append("migrate")

    async def disconnect():
        calls.append("disconnect")

    async def sync_sequence():
        calls.append("sequence")
        return 0

    monkeypatch.setattr(
        worker_module,
        "db",
        SimpleNamespace(connect=connect, run_migrations=run_migrations, disconnect=disconnect),
    )
    monkeypatch.setattr(worker_module.tickets_repo, "sync_ticket_number_sequence", sync_sequence)
    return calls


@pytest.fixture
def fake_worker(monkeypatch):
    instances: list = []

    class FakeSyncWorker:
        scheduled = 1
        start_error: BaseException | None = None

        def __init__(self, *, settings=None, on_fatal=None):
            self.on_fatal = on_fatal
            self.calls: list[str] = []
            instances.append(self)

        async def start(self):
            self.calls.append("start")
            if FakeSyncWorker.start_error is not None:
                raise FakeSyncWorker.start_error
            return FakeSyncWorker.scheduled

        async def stop(self):
            self.calls.append("stop")

    monkeypatch.setattr(worker_module, "SyncWorker", FakeSyncWorker)
    return FakeSyncWorker, instances


@pytest.mark.anyio
async def test_clean_shutdown_exits_zero(fake_db, fake_worker):
    _, instances = fake_worker
    stop_event = asyncio.Event()
    stop_event.set()

    code = await worker_module.run_worker(stop_event=stop_event, install_signal_handlers=False)

    assert code == worker_module.EXIT_OK
    assert fake_db == ["connect", "migrate", "sequence", "disconnect"]
    assert instances[0].calls == ["start", "stop"]


@pytest.mark.anyio
async def test_unreachable_store_exits_one(fake_db, fake_worker, monkeypatch):
    _, instances = fake_worker

    async def refuse():
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(worker_module.db, "connect", refuse)

    code = await worker_module.run_worker(install_signal_handlers=False)

    assert code == worker_module.EXIT_STARTUP_FAILURE
    assert instances == []


@pytest.mark.anyio
async def test_unreadable_registry_exits_one(fake_db, fake_worker, monkeypatch):
    worker_cls, instances = fake_worker
    monkeypatch.setattr(worker_cls, "start_error", RegistryError("database unavailable"))

    code = await worker_module.run_worker(install_signal_handlers=False)

    assert code == worker_module.EXIT_STARTUP_FAILURE
    assert fake_db[-1] == "disconnect"


@pytest.mark.anyio
async def test_no_departments_exits_two(fake_db, fake_worker, monkeypatch):
    worker_cls, instances = fake_worker
    monkeypatch.setattr(worker_cls, "scheduled", 0)

    code = await worker_module.run_worker(install_signal_handlers=False)

    assert code == worker_module.EXIT_NO_DEPARTMENTS
    assert instances[0].calls == ["start", "stop"]


@pytest.mark.anyio
async def test_empty_registry_allowed_when_not_required(fake_db, fake_worker, monkeypatch):
    worker_cls, _ = fake_worker
    monkeypatch.setattr(worker_cls, "scheduled", 0)
    monkeypatch.setattr(get_settings(), "require_departments_at_boot", False)
    stop_event = asyncio.Event()
    stop_event.set()

    code = await worker_module.run_worker(stop_event=stop_event, install_signal_handlers=False)

    assert code == worker_module.EXIT_OK


@pytest.mark.anyio
async def test_fatal_registry_failure_exits_one(fake_db, fake_worker):
    _, instances = fake_worker

    async def trigger_fatal():
        while not instances:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.01)
        instances[0].on_fatal(RegistryError("database unavailable"))

    trigger = asyncio.create_task(trigger_fatal())
    code = await asyncio.wait_for(
        worker_module.run_worker(install_signal_handlers=False), timeout=5
    )
    await trigger

    assert code == worker_module.EXIT_STARTUP_FAILURE
    assert instances[0].calls == ["start", "stop"]
