import pytest

from helpdesk_sync.repositories import clients as clients_repo


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_client_email_is_normalised(sqlite_db):
    client = await clients_repo.create_client(name=" Alice Example ", email=" Alice@Example.com ")

    assert client["name"] == "Alice Example"
    assert client["email"] == "alice@example.com"
    assert client["active"] is True


@pytest.mark.anyio
async def test_lookup_ignores_case(sqlite_db):
    client = await clients_repo.create_client(name="Alice Example", email="alice@example.com")

    found = await clients_repo.get_client_by_email("ALICE@example.com")

    assert found["id"] == client["id"]


@pytest.mark.anyio
async def test_inactive_and_unknown_clients_are_not_returned(sqlite_db):
    await clients_repo.create_client(name="Former", email="former@example.com", active=False)

    assert await clients_repo.get_client_by_email("former@example.com") is None
    assert await clients_repo.get_client_by_email("nobody@example.com") is None
    assert await clients_repo.get_client_by_email("") is None
    assert await clients_repo.get_client_by_email(None) is None
