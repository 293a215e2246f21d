from datetime import datetime, timezone

import pytest

from helpdesk_sync.repositories import departments as departments_repo


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def _create(name: str = "Support", **overrides):
    values = {
        "name": name,
        "imap_host": "imap.example.com",
        "imap_email": f"{name.lower()}@example.com",
        "imap_password_encrypted": "secret",
    }
    values.update(overrides)
    return await departments_repo.create_department(**values)


@pytest.mark.anyio
async def test_create_department_normalises_row(sqlite_db):
    department = await _create(imap_host="  imap.example.com  ", sync_interval_seconds=120)

    assert department["imap_host"] == "imap.example.com"
    assert department["imap_port"] == 993
    assert department["imap_secure"] is True
    assert department["active"] is True
    assert department["sync_enabled"] is True
    assert department["sync_interval_seconds"] == 120
    assert department["last_sync"] is None


@pytest.mark.anyio
async def test_only_eligible_departments_are_listed(sqlite_db):
    eligible = await _create("Support")
    await _create("Archive", active=False)
    await _create("Sales", sync_enabled=False)
    await _create("Billing", imap_password_encrypted="")
    await _create("Projects", imap_host="   ")

    departments = await departments_repo.list_eligible_departments()

    assert [department["id"] for department in departments] == [eligible["id"]]


@pytest.mark.anyio
async def test_empty_registry_is_not_an_error(sqlite_db):
    assert await departments_repo.list_eligible_departments() == []


@pytest.mark.anyio
async def test_unreadable_registry_raises_registry_error(monkeypatch):
    class BrokenDB:
        async def fetch_all(self, sql, params=None):
            raise ConnectionError("database unavailable")

    monkeypatch.setattr(departments_repo, "db", BrokenDB())

    with pytest.raises(departments_repo.RegistryError):
        await departments_repo.list_eligible_departments()


@pytest.mark.anyio
async def test_update_last_sync_clears_last_error(sqlite_db):
    department = await _create()
    failed_at = datetime(2024, 5, 14, 9, 0, tzinfo=timezone.utc)
    synced_at = datetime(2024, 5, 14, 9, 5, tzinfo=timezone.utc)

    await departments_repo.record_sync_error(department["id"], "MailboxTimeoutError: slow", failed_at)
    errored = await departments_repo.get_department(department["id"])
    assert errored["last_error"] == "MailboxTimeoutError: slow"
    assert errored["last_error_at"] == failed_at
    assert errored["last_sync"] is None

    await departments_repo.update_last_sync(department["id"], synced_at)
    synced = await departments_repo.get_department(department["id"])
    assert synced["last_sync"] == synced_at
    assert synced["last_error"] is None


@pytest.mark.anyio
async def test_get_department_missing_returns_none(sqlite_db):
    assert await departments_repo.get_department(404) is None


def test_is_eligible_requires_every_credential():
    department = {
        "active": True,
        "sync_enabled": True,
        "imap_host": "imap.example.com",
        "imap_email": "support@example.com",
        "imap_password_encrypted": "secret",
    }

    assert departments_repo.is_eligible(department) is True
    assert departments_repo.is_eligible({**department, "imap_email": ""}) is False
    assert departments_repo.is_eligible({**department, "active": False}) is False
