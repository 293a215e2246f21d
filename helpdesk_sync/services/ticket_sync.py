from __future__ import annotations

import asyncio
import random
from contextlib import aclosing
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, MutableMapping

from helpdesk_sync.core.config import Settings, get_settings
from helpdesk_sync.core.logging import log_error, log_info, log_warning
from helpdesk_sync.repositories import clients as clients_repo
from helpdesk_sync.repositories import departments as departments_repo
from helpdesk_sync.repositories import tickets as tickets_repo
from helpdesk_sync.security.encryption import SecretDecryptionError, decrypt_secret
from helpdesk_sync.services import email_parser
from helpdesk_sync.services import imap
from helpdesk_sync.services import notifications


INBOX = "INBOX"
_SUBJECT_MAX_LENGTH = 500

# UIDs are only comparable within one mailbox, so cursors are keyed by both.
CursorKey = tuple[int, str]


@dataclass
class SyncResult:
    """Summary of one pass over a department mailbox."""

    department_id: int
    status: str = "succeeded"
    created: int = 0
    replies: int = 0
    skipped: int = 0
    already_processed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)
    skipped_messages: list[dict[str, Any]] = field(default_factory=list)
    needs_review: list[int] = field(default_factory=list)
    ticket_numbers: list[int] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    def add_error(self, exc: BaseException, *, uid: int | None = None) -> None:
        entry: dict[str, Any] = {"error": str(exc), "type": type(exc).__name__}
        if uid is not None:
            entry["uid"] = uid
        self.errors.append(entry)

    def skip(self, uid: int, reason: str) -> None:
        self.skipped += 1
        self.skipped_messages.append({"uid": uid, "reason": reason})

    def finish(self) -> "SyncResult":
        if self.status not in {"connection_failed", "select_failed", "failed"}:
            self.status = "completed_with_errors" if self.errors else "succeeded"
        self.finished_at = datetime.now(timezone.utc)
        return self

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def credentials_for(department: Mapping[str, Any]) -> imap.MailboxCredentials:
    """Build mailbox credentials for ``department``, decrypting its stored secret."""

    password = decrypt_secret(str(department.get("imap_password_encrypted") or ""))
    return imap.MailboxCredentials(
        host=str(department.get("imap_host") or "").strip(),
        port=int(department.get("imap_port") or 993),
        secure=bool(department.get("imap_secure", True)),
        username=str(department.get("imap_email") or "").strip(),
        password=password,
    )


def _backoff_delay(attempt: int, settings: Settings) -> float:
    delay = min(settings.connect_backoff_base * (2 ** (attempt - 1)), settings.connect_backoff_max)
    return delay + random.uniform(0, delay * 0.1)


async def _connect_with_retry(
    credentials: imap.MailboxCredentials,
    department_id: int,
    settings: Settings,
) -> imap.MailboxSession:
    attempts = settings.connect_max_attempts
    for attempt in range(1, attempts + 1):
        try:
            return await imap.connect(
                credentials,
                connect_timeout=settings.imap_connect_timeout,
                greeting_timeout=settings.imap_greeting_timeout,
                socket_timeout=settings.imap_socket_timeout,
            )
        except imap.MailboxAuthenticationError:
            raise
        except imap.MailboxConnectionError as exc:
            if attempt >= attempts:
                raise
            delay = _backoff_delay(attempt, settings)
            log_warning(
                "Mailbox connection failed, retrying",
                department_id=department_id,
                attempt=attempt,
                delay=round(delay, 2),
                error=str(exc),
            )
            await asyncio.sleep(delay)
    raise imap.MailboxConnectionError("No connection attempts configured")


async def _record_department_failure(
    result: SyncResult, status: str, exc: BaseException
) -> None:
    result.status = status
    result.add_error(exc)
    log_error(
        "Helpdesk department sync failed",
        department_id=result.department_id,
        status=status,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    try:
        await departments_repo.record_sync_error(
            result.department_id, f"{type(exc).__name__}: {exc}", datetime.now(timezone.utc)
        )
    except Exception as record_exc:  # pragma: no cover - defensive logging
        log_error(
            "Unable to record helpdesk sync error",
            department_id=result.department_id,
            error=str(record_exc),
        )


async def _is_already_processed(department_id: int, uid: int) -> bool:
    if await tickets_repo.find_ticket_by_department_and_uid(department_id, uid):
        return True
    return bool(await tickets_repo.find_message_by_department_and_uid(department_id, uid))


async def _find_parent_ticket(
    department_id: int, inbound: email_parser.InboundMessage
) -> dict[str, Any] | None:
    if inbound.thread_ids:
        parent = await tickets_repo.find_ticket_by_message_id(department_id, inbound.thread_ids)
        if parent:
            return parent
    number = email_parser.extract_ticket_number(inbound.subject)
    if number is None:
        return None
    parent = await tickets_repo.find_ticket_by_number(department_id, number)
    if not parent:
        return None
    requester = str(parent.get("requester_email") or "").strip().lower()
    if requester != inbound.from_address:
        log_info(
            "Ticket token from a different sender, not threading",
            department_id=department_id,
            uid=inbound.uid,
            ticket_number=number,
        )
        return None
    return parent


async def _notify_created(ticket: Mapping[str, Any], department: Mapping[str, Any]) -> None:
    try:
        await notifications.notify_ticket_created(ticket, department)
    except Exception as exc:  # pragma: no cover - defensive logging
        log_warning(
            "Ticket notification failed",
            department_id=department.get("id"),
            ticket_id=ticket.get("id"),
            error=str(exc),
        )


async def _notify_reply(
    ticket: Mapping[str, Any], message: Mapping[str, Any], department: Mapping[str, Any]
) -> None:
    try:
        await notifications.notify_reply_added(ticket, message, department)
    except Exception as exc:  # pragma: no cover - defensive logging
        log_warning(
            "Reply notification failed",
            department_id=department.get("id"),
            ticket_id=ticket.get("id"),
            error=str(exc),
        )


async def _client_for(
    inbound: email_parser.InboundMessage, settings: Settings
) -> int | None:
    if not settings.link_clients:
        return None
    client = await clients_repo.get_client_by_email(inbound.from_address)
    return int(client["id"]) if client else None


async def _append_reply(
    parent: Mapping[str, Any],
    inbound: email_parser.InboundMessage,
    department: Mapping[str, Any],
    result: SyncResult,
) -> bool:
    department_id = result.department_id
    try:
        message = await tickets_repo.create_ticket_message(
            ticket_id=int(parent["id"]),
            department_id=department_id,
            body=inbound.body,
            sender_email=inbound.from_address,
            sender_name=inbound.from_name,
            mailbox_uid=inbound.uid,
            email_message_id=inbound.message_id,
            in_reply_to=inbound.in_reply_to,
            created_at=inbound.received_at,
        )
    except tickets_repo.DuplicateTicketError:
        log_info(
            "Reply already recorded by a concurrent sync",
            department_id=department_id,
            uid=inbound.uid,
        )
        result.skip(inbound.uid, "duplicate")
        return False
    status = (
        tickets_repo.STATUS_OPEN
        if parent.get("status") == tickets_repo.STATUS_AWAITING_CLIENT
        else None
    )
    await tickets_repo.touch_ticket(int(parent["id"]), status=status)
    result.replies += 1
    log_info(
        "Reply appended to helpdesk ticket",
        department_id=department_id,
        uid=inbound.uid,
        ticket_id=parent["id"],
        ticket_number=parent.get("ticket_number"),
    )
    await _notify_reply(parent, message, department)
    return True


async def _create_ticket(
    session: imap.MailboxSession,
    inbound: email_parser.InboundMessage,
    department: Mapping[str, Any],
    result: SyncResult,
    settings: Settings,
    *,
    needs_review: bool,
) -> bool:
    department_id = result.department_id
    subject = email_parser.clean_subject(inbound.subject) or email_parser.SUBJECT_PLACEHOLDER
    client_id = await _client_for(inbound, settings) if not needs_review else None
    ticket_number = await tickets_repo.allocate_ticket_number()
    try:
        ticket = await tickets_repo.create_ticket(
            ticket_number=ticket_number,
            subject=subject[:_SUBJECT_MAX_LENGTH],
            description=inbound.body,
            requester_email=inbound.from_address,
            requester_name=inbound.from_name or None,
            department_id=department_id,
            mailbox_uid=inbound.uid,
            mailbox_identity=session.credentials.identity,
            email_message_id=inbound.message_id,
            priority=inbound.priority,
            client_id=client_id,
            category=inbound.category,
            tags=inbound.tags,
            needs_review=needs_review,
            created_at=inbound.received_at,
        )
    except tickets_repo.DuplicateTicketError:
        log_info(
            "Ticket already created by a concurrent sync",
            department_id=department_id,
            uid=inbound.uid,
        )
        result.skip(inbound.uid, "duplicate")
        return False

    try:
        await tickets_repo.create_ticket_message(
            ticket_id=int(ticket["id"]),
            department_id=department_id,
            body=inbound.body,
            sender_email=inbound.from_address,
            sender_name=inbound.from_name or None,
            mailbox_uid=inbound.uid,
            email_message_id=inbound.message_id,
            is_initial=True,
            created_at=inbound.received_at,
        )
    except tickets_repo.DuplicateTicketError:
        log_warning(
            "Initial ticket message already present",
            department_id=department_id,
            uid=inbound.uid,
            ticket_id=ticket["id"],
        )

    result.created += 1
    result.ticket_numbers.append(int(ticket["ticket_number"]))
    if needs_review:
        result.needs_review.append(inbound.uid)
    log_info(
        "Helpdesk ticket created from email",
        department_id=department_id,
        uid=inbound.uid,
        ticket_id=ticket["id"],
        ticket_number=ticket["ticket_number"],
        client_id=client_id,
        needs_review=needs_review,
    )
    await _notify_created(ticket, department)
    return True


async def _finalise_message(
    session: imap.MailboxSession,
    uid: int,
    department_id: int,
    processed_folder: str | None,
) -> None:
    # Flag and move failures never undo a committed ticket.
    if not await session.mutate_flags(uid, "\\Seen", True):
        log_warning(
            "Unable to mark message as read, continuing",
            department_id=department_id,
            uid=uid,
        )
    if processed_folder and not await session.move_message(uid, processed_folder):
        log_warning(
            "Unable to move processed message, continuing",
            department_id=department_id,
            uid=uid,
            folder=processed_folder,
        )


async def _process_uid(
    session: imap.MailboxSession,
    department: Mapping[str, Any],
    uid: int,
    result: SyncResult,
    settings: Settings,
    processed_folder: str | None,
) -> bool:
    """Run the pipeline for one UID.

    Returns False when the UID was already ticketed, so it does not count
    against the steady-state window.
    """

    department_id = result.department_id
    if await _is_already_processed(department_id, uid):
        result.already_processed += 1
        return False

    raw = await session.fetch_body(uid)
    review_reason: str | None = None
    try:
        inbound = email_parser.parse_message(uid, raw)
    except email_parser.ParseError as exc:
        review_reason = str(exc)
        inbound = email_parser.placeholder_message(uid, review_reason)
        log_warning(
            "Unparseable message, creating placeholder ticket for review",
            department_id=department_id,
            uid=uid,
            error=review_reason,
        )

    if review_reason is None:
        if settings.skip_auto_replies and inbound.is_auto_reply:
            result.skip(uid, "auto_reply")
            log_info("Skipping automatic reply", department_id=department_id, uid=uid)
            await _finalise_message(session, uid, department_id, None)
            return True
        if settings.skip_spam and inbound.is_spam:
            result.skip(uid, "spam")
            log_info("Skipping suspected spam", department_id=department_id, uid=uid)
            await _finalise_message(session, uid, department_id, None)
            return True
        if inbound.message_id and await tickets_repo.find_ticket_by_message_id(
            department_id, [inbound.message_id]
        ):
            result.already_processed += 1
            log_info(
                "Message-ID already ticketed, skipping copy",
                department_id=department_id,
                uid=uid,
                message_id=inbound.message_id,
            )
            return True
        parent = await _find_parent_ticket(department_id, inbound)
        if parent:
            if await _append_reply(parent, inbound, department, result):
                await _finalise_message(session, uid, department_id, processed_folder)
            return True

    if await _create_ticket(
        session,
        inbound,
        department,
        result,
        settings,
        needs_review=review_reason is not None,
    ):
        await _finalise_message(session, uid, department_id, processed_folder)
    return True


async def _resolve_processed_folder(
    session: imap.MailboxSession, department_id: int, settings: Settings
) -> str | None:
    if not settings.processed_folder:
        return None
    try:
        folder = await session.find_folder([settings.processed_folder])
    except imap.MailboxConnectionError as exc:
        log_warning(
            "Unable to list folders, processed messages stay in the inbox",
            department_id=department_id,
            error=str(exc),
        )
        return None
    if folder is None:
        log_warning(
            "Processed folder not found, messages stay in the inbox",
            department_id=department_id,
            folder=settings.processed_folder,
        )
    return folder


async def _process_folder(
    session: imap.MailboxSession,
    department: Mapping[str, Any],
    result: SyncResult,
    cursors: MutableMapping[CursorKey, int] | None,
    settings: Settings,
    processed_folder: str | None,
) -> None:
    department_id = result.department_id
    key: CursorKey = (department_id, session.credentials.identity)
    cursor = cursors.get(key) if cursors is not None else None
    if cursor is None:
        listing = session.list_unprocessed_uids(limit=settings.backfill_limit)
        window = None
    else:
        listing = session.list_unprocessed_uids(since_uid=cursor)
        window = settings.steady_state_window

    handled = 0
    contiguous = True
    async with aclosing(listing) as uids:
        async for uid in uids:
            if window is not None and handled >= window:
                break
            try:
                counted = await _process_uid(
                    session, department, uid, result, settings, processed_folder
                )
            except imap.MailboxConnectionError:
                raise
            except Exception as exc:
                contiguous = False
                result.add_error(exc, uid=uid)
                log_error(
                    "Failed to process helpdesk message",
                    department_id=department_id,
                    uid=uid,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if counted:
                handled += 1
            if contiguous and cursors is not None:
                cursors[key] = uid


async def _run_pass(
    department: Mapping[str, Any],
    result: SyncResult,
    cursors: MutableMapping[CursorKey, int] | None,
    settings: Settings,
) -> None:
    department_id = result.department_id
    try:
        credentials = credentials_for(department)
        session = await _connect_with_retry(credentials, department_id, settings)
    except (imap.MailboxConnectionError, SecretDecryptionError) as exc:
        await _record_department_failure(result, "connection_failed", exc)
        return

    selected = False
    try:
        processed_folder = await _resolve_processed_folder(session, department_id, settings)
        async with session.select_folder(INBOX) as snapshot:
            selected = True
            log_info(
                "Mailbox selected",
                department_id=department_id,
                folder=snapshot.name,
                exists=snapshot.exists,
                unseen=snapshot.unseen,
            )
            await _process_folder(session, department, result, cursors, settings, processed_folder)
    except imap.MailboxConnectionError as exc:
        if not selected:
            await _record_department_failure(result, "select_failed", exc)
            return
        result.add_error(exc)
        log_warning(
            "Mailbox connection lost mid-pass, committed tickets are kept",
            department_id=department_id,
            error=str(exc),
        )
    finally:
        await session.disconnect()

    await departments_repo.update_last_sync(department_id, datetime.now(timezone.utc))


async def sync_department(
    department: Mapping[str, Any],
    *,
    cursors: MutableMapping[CursorKey, int] | None = None,
    settings: Settings | None = None,
) -> SyncResult:
    """Run one pass over ``department``'s inbox.

    Never raises (other than on cancellation): connection and selection
    failures are recorded on the result and leave ``last_sync`` untouched,
    while per-message failures are recorded and the pass continues.
    """

    settings = settings or get_settings()
    result = SyncResult(department_id=int(department["id"]))
    log_info("Helpdesk sync started", department_id=result.department_id)
    try:
        await _run_pass(department, result, cursors, settings)
    except Exception as exc:
        await _record_department_failure(result, "failed", exc)
    result.finish()
    log_info(
        "Helpdesk sync finished",
        department_id=result.department_id,
        status=result.status,
        created=result.created,
        replies=result.replies,
        skipped=result.skipped,
        already_processed=result.already_processed,
        errors=len(result.errors),
    )
    return result
