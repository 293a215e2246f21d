from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence

from helpdesk_sync.core.database import db
from helpdesk_sync.core.logging import log_info

TicketRecord = dict[str, Any]
TicketMessageRecord = dict[str, Any]

STATUS_OPEN = "OPEN"
STATUS_IN_PROGRESS = "IN_PROGRESS"
STATUS_AWAITING_CLIENT = "AWAITING_CLIENT"
STATUS_RESOLVED = "RESOLVED"
STATUS_CLOSED = "CLOSED"
STATUS_AWAITING_APPROVAL = "AWAITING_APPROVAL"
STATUS_APPROVED = "APPROVED"

TICKET_STATUSES = (
    STATUS_OPEN,
    STATUS_IN_PROGRESS,
    STATUS_AWAITING_CLIENT,
    STATUS_RESOLVED,
    STATUS_CLOSED,
    STATUS_AWAITING_APPROVAL,
    STATUS_APPROVED,
)
TICKET_PRIORITIES = ("LOW", "MEDIUM", "HIGH", "URGENT")


class DuplicateTicketError(RuntimeError):
    """Raised when the store rejects a ticket or message on a unique constraint."""

    def __init__(self, message: str, *, department_id: int | None = None, uid: int | None = None):
        super().__init__(message)
        self.department_id = department_id
        self.uid = uid


def _make_aware(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value)
        except ValueError:
            return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    return None


def _utcnow_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _normalise_ticket(row: dict[str, Any]) -> TicketRecord:
    record = dict(row)
    for key in ("id", "ticket_number", "department_id", "client_id", "mailbox_uid"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    if "needs_review" in record:
        record["needs_review"] = bool(int(record.get("needs_review") or 0))
    if "tags" in record:
        record["tags"] = [tag for tag in str(record.get("tags") or "").split(",") if tag]
    for key in ("created_at", "updated_at"):
        if key in record:
            record[key] = _make_aware(record.get(key))
    return record


def _normalise_message(row: dict[str, Any]) -> TicketMessageRecord:
    record = dict(row)
    for key in ("id", "ticket_id", "department_id", "mailbox_uid"):
        if key in record and record[key] is not None:
            record[key] = int(record[key])
    if "is_initial" in record:
        record["is_initial"] = bool(int(record.get("is_initial") or 0))
    record["created_at"] = _make_aware(record.get("created_at"))
    return record


async def get_ticket(ticket_id: int) -> TicketRecord | None:
    row = await db.fetch_one("SELECT * FROM helpdesk_tickets WHERE id = %s", (ticket_id,))
    return _normalise_ticket(row) if row else None


async def find_ticket_by_department_and_uid(department_id: int, uid: int) -> TicketRecord | None:
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_tickets WHERE department_id = %s AND mailbox_uid = %s",
        (department_id, uid),
    )
    return _normalise_ticket(row) if row else None


async def find_message_by_department_and_uid(
    department_id: int, uid: int
) -> TicketMessageRecord | None:
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_ticket_messages WHERE department_id = %s AND mailbox_uid = %s",
        (department_id, uid),
    )
    return _normalise_message(row) if row else None


async def find_ticket_by_message_id(
    department_id: int, message_ids: Sequence[str]
) -> TicketRecord | None:
    """Return the ticket whose thread contains any of ``message_ids``.

    Both the ticket's originating Message-ID and the Message-IDs of replies
    already threaded onto it are considered.
    """

    candidates = [value for value in dict.fromkeys(message_ids) if value]
    if not candidates:
        return None
    placeholders = ", ".join(["%s"] * len(candidates))
    row = await db.fetch_one(
        f"""
        SELECT *
        FROM helpdesk_tickets
        WHERE department_id = %s AND email_message_id IN ({placeholders})
        ORDER BY id ASC
        LIMIT 1
        """,
        (department_id, *candidates),
    )
    if row:
        return _normalise_ticket(row)
    message_row = await db.fetch_one(
        f"""
        SELECT ticket_id
        FROM helpdesk_ticket_messages
        WHERE department_id = %s AND email_message_id IN ({placeholders})
        ORDER BY id ASC
        LIMIT 1
        """,
        (department_id, *candidates),
    )
    if not message_row:
        return None
    return await get_ticket(int(message_row["ticket_id"]))


async def find_ticket_by_number(department_id: int, ticket_number: int) -> TicketRecord | None:
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_tickets WHERE department_id = %s AND ticket_number = %s",
        (department_id, ticket_number),
    )
    return _normalise_ticket(row) if row else None


async def next_ticket_number() -> int:
    """Return ``1 + max(ticket_number)``, or 1 when no tickets exist.

    Informational only: allocation goes through :func:`allocate_ticket_number`.
    """

    row = await db.fetch_one(
        "SELECT MAX(ticket_number) AS max_number FROM helpdesk_tickets"
    )
    current = row.get("max_number") if row else None
    return int(current or 0) + 1


async def allocate_ticket_number() -> int:
    """Atomically reserve the next ticket number from the sequence table."""

    number = await db.execute_returning_lastrowid(
        "INSERT INTO helpdesk_ticket_numbers (allocated_at) VALUES (%s)",
        (_utcnow_naive(),),
    )
    if not number:
        raise RuntimeError("Ticket number sequence did not return an identifier")
    return int(number)


async def sync_ticket_number_sequence() -> int:
    """Raise the number sequence to at least the highest existing ticket number.

    Returns the highest number now reserved.
    """

    ticket_row = await db.fetch_one(
        "SELECT MAX(ticket_number) AS max_number FROM helpdesk_tickets"
    )
    sequence_row = await db.fetch_one(
        "SELECT MAX(id) AS max_id FROM helpdesk_ticket_numbers"
    )
    highest_ticket = int((ticket_row or {}).get("max_number") or 0)
    highest_reserved = int((sequence_row or {}).get("max_id") or 0)
    if highest_ticket <= highest_reserved:
        return highest_reserved
    await db.execute(
        "INSERT INTO helpdesk_ticket_numbers (id, allocated_at) VALUES (%s, %s)",
        (highest_ticket, _utcnow_naive()),
    )
    log_info(
        "Ticket number sequence advanced",
        previous=highest_reserved,
        current=highest_ticket,
    )
    return highest_ticket


async def create_ticket(
    *,
    ticket_number: int,
    subject: str,
    description: str,
    requester_email: str,
    department_id: int,
    mailbox_uid: int | None,
    mailbox_identity: str | None = None,
    requester_name: str | None = None,
    email_message_id: str | None = None,
    status: str = STATUS_OPEN,
    priority: str = "MEDIUM",
    client_id: int | None = None,
    category: str | None = None,
    tags: Sequence[str] = (),
    needs_review: bool = False,
    created_at: datetime | None = None,
) -> TicketRecord:
    """Insert one ticket row.

    Raises :class:`DuplicateTicketError` when another writer already created a
    ticket for ``(department_id, mailbox_uid)`` or took ``ticket_number``.
    """

    if status not in TICKET_STATUSES:
        raise ValueError(f"Unknown ticket status {status!r}")
    if priority not in TICKET_PRIORITIES:
        raise ValueError(f"Unknown ticket priority {priority!r}")
    timestamp = _utcnow_naive()
    created = created_at.astimezone(timezone.utc).replace(tzinfo=None) if created_at else timestamp
    try:
        ticket_id = await db.execute_returning_lastrowid(
            """
            INSERT INTO helpdesk_tickets (
                ticket_number, subject, description, status, priority, requester_name,
                requester_email, department_id, client_id, category, tags, mailbox_uid,
                mailbox_identity, email_message_id, needs_review, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                ticket_number,
                subject,
                description,
                status,
                priority,
                requester_name,
                requester_email,
                department_id,
                client_id,
                category,
                ",".join(tags) or None,
                mailbox_uid,
                mailbox_identity,
                email_message_id,
                1 if needs_review else 0,
                created,
                timestamp,
            ),
        )
    except Exception as exc:
        if db.is_duplicate_key_error(exc):
            raise DuplicateTicketError(
                "Ticket already exists for mailbox message",
                department_id=department_id,
                uid=mailbox_uid,
            ) from exc
        raise
    row = await db.fetch_one("SELECT * FROM helpdesk_tickets WHERE id = %s", (ticket_id,))
    if not row:
        raise RuntimeError("Ticket insert did not return a row")
    return _normalise_ticket(row)


async def create_ticket_message(
    *,
    ticket_id: int,
    department_id: int,
    body: str,
    sender_email: str,
    sender_name: str | None = None,
    mailbox_uid: int | None = None,
    email_message_id: str | None = None,
    in_reply_to: str | None = None,
    is_initial: bool = False,
    created_at: datetime | None = None,
) -> TicketMessageRecord:
    created = (
        created_at.astimezone(timezone.utc).replace(tzinfo=None)
        if created_at
        else _utcnow_naive()
    )
    try:
        message_id = await db.execute_returning_lastrowid(
            """
            INSERT INTO helpdesk_ticket_messages (
                ticket_id, department_id, mailbox_uid, email_message_id, in_reply_to,
                sender_name, sender_email, body, is_initial, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                ticket_id,
                department_id,
                mailbox_uid,
                email_message_id,
                in_reply_to,
                sender_name,
                sender_email,
                body,
                1 if is_initial else 0,
                created,
            ),
        )
    except Exception as exc:
        if db.is_duplicate_key_error(exc):
            raise DuplicateTicketError(
                "Thread message already exists for mailbox message",
                department_id=department_id,
                uid=mailbox_uid,
            ) from exc
        raise
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_ticket_messages WHERE id = %s", (message_id,)
    )
    if not row:
        raise RuntimeError("Ticket message insert did not return a row")
    return _normalise_message(row)


async def touch_ticket(ticket_id: int, *, status: str | None = None) -> None:
    """Bump ``updated_at`` and optionally move the ticket to ``status``."""

    if status is not None and status not in TICKET_STATUSES:
        raise ValueError(f"Unknown ticket status {status!r}")
    if status is None:
        await db.execute(
            "UPDATE helpdesk_tickets SET updated_at = %s WHERE id = %s",
            (_utcnow_naive(), ticket_id),
        )
        return
    await db.execute(
        "UPDATE helpdesk_tickets SET status = %s, updated_at = %s WHERE id = %s",
        (status, _utcnow_naive(), ticket_id),
    )


async def list_tickets_for_department(department_id: int) -> list[TicketRecord]:
    rows = await db.fetch_all(
        "SELECT * FROM helpdesk_tickets WHERE department_id = %s ORDER BY ticket_number ASC",
        (department_id,),
    )
    return [_normalise_ticket(row) for row in rows]
