import asyncio
from datetime import datetime, timezone

import pytest

from helpdesk_sync.repositories import departments as departments_repo
from helpdesk_sync.repositories import tickets as tickets_repo


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def department(sqlite_db):
    return await departments_repo.create_department(
        name="Support",
        imap_host="imap.example.com",
        imap_email="support@example.com",
        imap_password_encrypted="secret",
    )


async def _ticket(department, *, uid, number=None, **overrides):
    number = number if number is not None else await tickets_repo.allocate_ticket_number()
    values = {
        "ticket_number": number,
        "subject": "Printer is jammed",
        "description": "The printer on floor 2 is jammed again.",
        "requester_email": "alice@example.com",
        "department_id": department["id"],
        "mailbox_uid": uid,
    }
    values.update(overrides)
    return await tickets_repo.create_ticket(**values)


@pytest.mark.anyio
async def test_allocated_numbers_are_unique_and_increasing(department):
    numbers = [await tickets_repo.allocate_ticket_number() for _ in range(3)]
    concurrent = await asyncio.gather(
        *(tickets_repo.allocate_ticket_number() for _ in range(5))
    )

    assert numbers == sorted(numbers)
    assert len(set(numbers) | set(concurrent)) == 8
    assert min(concurrent) > max(numbers)


@pytest.mark.anyio
async def test_sequence_is_raised_past_existing_tickets(department):
    await _ticket(department, uid=1, number=500)

    assert await tickets_repo.next_ticket_number() == 501
    assert await tickets_repo.sync_ticket_number_sequence() == 500
    assert await tickets_repo.allocate_ticket_number() == 501
    # Already ahead: nothing changes.
    assert await tickets_repo.sync_ticket_number_sequence() == 501


@pytest.mark.anyio
async def test_create_ticket_round_trips_fields(department):
    received = datetime(2024, 5, 14, 9, 30, tzinfo=timezone.utc)

    ticket = await _ticket(
        department,
        uid=42,
        requester_name="Alice Example",
        email_message_id="<abc@example.com>",
        mailbox_identity="support@example.com@imap.example.com:993",
        priority="HIGH",
        needs_review=True,
        created_at=received,
    )

    assert ticket["status"] == tickets_repo.STATUS_OPEN
    assert ticket["priority"] == "HIGH"
    assert ticket["mailbox_uid"] == 42
    assert ticket["needs_review"] is True
    assert ticket["created_at"] == received
    assert await tickets_repo.find_ticket_by_department_and_uid(department["id"], 42) == ticket


@pytest.mark.anyio
async def test_second_ticket_for_same_uid_is_rejected(department):
    await _ticket(department, uid=7)

    with pytest.raises(tickets_repo.DuplicateTicketError) as excinfo:
        await _ticket(department, uid=7)

    assert excinfo.value.department_id == department["id"]
    assert excinfo.value.uid == 7
    assert len(await tickets_repo.list_tickets_for_department(department["id"])) == 1


@pytest.mark.anyio
async def test_same_uid_in_another_department_is_allowed(department):
    other = await departments_repo.create_department(
        name="Sales",
        imap_host="imap.example.com",
        imap_email="sales@example.com",
        imap_password_encrypted="secret",
    )

    await _ticket(department, uid=7)
    await _ticket(other, uid=7)

    assert len(await tickets_repo.list_tickets_for_department(department["id"])) == 1
    assert len(await tickets_repo.list_tickets_for_department(other["id"])) == 1


@pytest.mark.anyio
async def test_unknown_status_or_priority_is_rejected(department):
    with pytest.raises(ValueError):
        await _ticket(department, uid=1, status="PENDING")
    with pytest.raises(ValueError):
        await _ticket(department, uid=2, priority="CRITICAL")


@pytest.mark.anyio
async def test_duplicate_thread_message_is_rejected(department):
    ticket = await _ticket(department, uid=1)
    await tickets_repo.create_ticket_message(
        ticket_id=ticket["id"],
        department_id=department["id"],
        body="Any update?",
        sender_email="alice@example.com",
        mailbox_uid=2,
    )

    with pytest.raises(tickets_repo.DuplicateTicketError):
        await tickets_repo.create_ticket_message(
            ticket_id=ticket["id"],
            department_id=department["id"],
            body="Any update?",
            sender_email="alice@example.com",
            mailbox_uid=2,
        )

    message = await tickets_repo.find_message_by_department_and_uid(department["id"], 2)
    assert message["ticket_id"] == ticket["id"]
    assert message["is_initial"] is False


@pytest.mark.anyio
async def test_find_ticket_by_message_id_checks_thread_messages(department):
    ticket = await _ticket(department, uid=1, email_message_id="<root@example.com>")
    await tickets_repo.create_ticket_message(
        ticket_id=ticket["id"],
        department_id=department["id"],
        body="Following up",
        sender_email="alice@example.com",
        mailbox_uid=2,
        email_message_id="<reply@example.com>",
    )

    by_root = await tickets_repo.find_ticket_by_message_id(department["id"], ["<root@example.com>"])
    by_reply = await tickets_repo.find_ticket_by_message_id(
        department["id"], ["<unknown@example.com>", "<reply@example.com>"]
    )
    missing = await tickets_repo.find_ticket_by_message_id(department["id"], [])

    assert by_root["id"] == ticket["id"]
    assert by_reply["id"] == ticket["id"]
    assert missing is None


@pytest.mark.anyio
async def test_find_ticket_by_number_is_scoped_to_department(department):
    ticket = await _ticket(department, uid=1, number=900)

    assert (await tickets_repo.find_ticket_by_number(department["id"], 900))["id"] == ticket["id"]
    assert await tickets_repo.find_ticket_by_number(department["id"] + 1, 900) is None


@pytest.mark.anyio
async def test_touch_ticket_updates_status(department):
    ticket = await _ticket(department, uid=1, status=tickets_repo.STATUS_AWAITING_CLIENT)

    await tickets_repo.touch_ticket(ticket["id"], status=tickets_repo.STATUS_OPEN)

    refreshed = await tickets_repo.get_ticket(ticket["id"])
    assert refreshed["status"] == tickets_repo.STATUS_OPEN
    with pytest.raises(ValueError):
        await tickets_repo.touch_ticket(ticket["id"], status="ARCHIVED")


@pytest.mark.anyio
async def test_category_tags_and_client_are_stored(department):
    ticket = await _ticket(
        department, uid=7, client_id=3, category="Technical Support", tags=["windows", "email"]
    )
    untagged = await _ticket(department, uid=8)

    assert ticket["client_id"] == 3
    assert ticket["category"] == "Technical Support"
    assert ticket["tags"] == ["windows", "email"]
    assert untagged["category"] is None
    assert untagged["tags"] == []
