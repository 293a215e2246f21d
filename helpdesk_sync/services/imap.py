from __future__ import annotations

import asyncio
import imaplib
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable

from helpdesk_sync.core.config import get_settings
from helpdesk_sync.core.logging import log_debug, log_warning


_LIST_RESPONSE_PATTERN = re.compile(
    r'\((?P<flags>[^)]*)\)\s+(?P<delimiter>"[^"]*"|NIL)\s+(?P<name>.+)'
)
_SEEN_FLAG = "\\Seen"
_DELETED_FLAG = "\\Deleted"


class MailboxConnectionError(ConnectionError):
    """Raised on TCP, TLS or protocol failures talking to an IMAP server."""


class MailboxAuthenticationError(MailboxConnectionError):
    """Raised when the IMAP server rejects the mailbox credentials."""


class MailboxTimeoutError(MailboxConnectionError):
    """Raised when an IMAP operation exceeds its time budget."""


class FetchError(RuntimeError):
    """Raised when a message vanished or its body could not be read."""


@dataclass(frozen=True)
class MailboxCredentials:
    host: str
    port: int
    secure: bool
    username: str
    password: str = field(repr=False)

    @property
    def identity(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class FolderSnapshot:
    name: str
    exists: int
    unseen: int


def _quote_folder(name: str) -> str:
    if name.startswith('"') and name.endswith('"'):
        return name
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _decode(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _parse_uid_list(data: Iterable[Any]) -> list[int]:
    uids: set[int] = set()
    for chunk in data or []:
        if not chunk:
            continue
        for token in _decode(chunk).split():
            if token.isdigit():
                uids.add(int(token))
    return sorted(uids)


class MailboxSession:
    """One authenticated IMAP session.

    Blocking ``imaplib`` calls run in a worker thread and every call is bounded
    by ``asyncio.wait_for``. The underlying socket also carries a timeout so an
    abandoned thread eventually unblocks.
    """

    def __init__(
        self,
        client: Any,
        credentials: MailboxCredentials,
        *,
        command_timeout: float,
    ) -> None:
        self._client = client
        self.credentials = credentials
        self._command_timeout = command_timeout
        self.selected_folder: str | None = None
        self._readonly = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def capabilities(self) -> set[str]:
        raw = getattr(self._client, "capabilities", None) or ()
        return {_decode(item).upper() for item in raw}

    async def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
        error_cls: type[Exception] = MailboxConnectionError,
    ) -> Any:
        if self._closed:
            raise MailboxConnectionError("IMAP session already closed")
        budget = timeout or self._command_timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=budget)
        except asyncio.TimeoutError as exc:
            raise MailboxTimeoutError(
                f"IMAP {operation} timed out after {budget:g}s"
            ) from exc
        except imaplib.IMAP4.abort as exc:
            raise MailboxConnectionError(f"IMAP connection lost during {operation}: {exc}") from exc
        except imaplib.IMAP4.error as exc:
            raise error_cls(f"IMAP {operation} failed: {exc}") from exc
        except OSError as exc:
            raise MailboxConnectionError(f"IMAP {operation} failed: {exc}") from exc

    async def list_folders(self) -> list[str]:
        status, data = await self._call("list", self._client.list)
        if status != "OK":
            raise MailboxConnectionError("IMAP LIST was rejected")
        folders: list[str] = []
        for entry in data or []:
            if not entry:
                continue
            match = _LIST_RESPONSE_PATTERN.match(_decode(entry))
            if not match:
                continue
            name = match.group("name").strip()
            if name.startswith('"') and name.endswith('"'):
                name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
            folders.append(name)
        return folders

    async def find_folder(self, candidates: Iterable[str]) -> str | None:
        """Return the first existing folder matching ``candidates`` (case-insensitive)."""

        available = {name.lower(): name for name in await self.list_folders()}
        for candidate in candidates:
            found = available.get(candidate.lower())
            if found:
                return found
        return None

    @asynccontextmanager
    async def select_folder(
        self, name: str = "INBOX", *, readonly: bool = False
    ) -> AsyncIterator[FolderSnapshot]:
        """Select ``name`` for the duration of the block.

        The folder is always closed again on exit, whether the block returns,
        breaks out early or raises.
        """

        status, data = await self._call(
            "select", self._client.select, _quote_folder(name), readonly
        )
        if status != "OK":
            detail = _decode(data[0]) if data else ""
            raise MailboxConnectionError(f"Unable to select folder {name}: {detail}".strip())
        self.selected_folder = name
        self._readonly = readonly
        try:
            exists = int(_decode(data[0])) if data and data[0] else 0
        except ValueError:
            exists = 0
        try:
            unseen_status, unseen_data = await self._call(
                "search", self._client.uid, "SEARCH", None, "UNSEEN"
            )
            unseen = len(_parse_uid_list(unseen_data)) if unseen_status == "OK" else 0
            yield FolderSnapshot(name=name, exists=exists, unseen=unseen)
        finally:
            await self._release_folder()

    async def _release_folder(self) -> None:
        if self.selected_folder is None or self._closed:
            return
        folder = self.selected_folder
        self.selected_folder = None
        release = self._client.unselect if self._readonly else self._client.close
        try:
            await self._call("close", release)
        except MailboxConnectionError as exc:
            log_warning(
                "Unable to release IMAP folder",
                mailbox=self.credentials.identity,
                folder=folder,
                error=str(exc),
            )

    async def list_unprocessed_uids(
        self, since_uid: int | None = None, *, limit: int | None = None
    ) -> AsyncIterator[int]:
        """Yield UIDs of the selected folder in ascending order.

        With ``since_uid`` only UIDs above it are returned. With ``limit`` only
        the highest ``limit`` UIDs are kept. The listing runs once, on first
        iteration, and a new listing is needed after a reconnect.
        """

        if self.selected_folder is None:
            raise MailboxConnectionError("No folder selected")
        criterion = "ALL" if since_uid is None else f"UID {int(since_uid) + 1}:*"
        status, data = await self._call("search", self._client.uid, "SEARCH", None, criterion)
        if status != "OK":
            raise MailboxConnectionError(f"IMAP UID SEARCH {criterion} was rejected")
        uids = _parse_uid_list(data)
        if since_uid is not None:
            uids = [uid for uid in uids if uid > since_uid]
        if limit is not None and limit > 0:
            uids = uids[-limit:]
        log_debug(
            "IMAP listing complete",
            mailbox=self.credentials.identity,
            folder=self.selected_folder,
            count=len(uids),
        )
        for uid in uids:
            yield uid

    async def fetch_body(self, uid: int) -> bytes:
        # BODY.PEEK keeps the message unread until a ticket exists for it.
        status, data = await self._call(
            "fetch",
            self._client.uid,
            "FETCH",
            str(uid),
            "(BODY.PEEK[])",
            error_cls=FetchError,
        )
        if status != "OK" or not data:
            raise FetchError(f"Unable to fetch message {uid}")
        for item in data:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], (bytes, bytearray)):
                return bytes(item[1])
        raise FetchError(f"Message {uid} no longer exists")

    async def mutate_flags(self, uid: int, flag: str = _SEEN_FLAG, enable: bool = True) -> bool:
        """Set or clear ``flag`` on ``uid``; failures are logged and reported as False."""

        operation = "+FLAGS" if enable else "-FLAGS"
        try:
            status, _ = await self._call(
                "store", self._client.uid, "STORE", str(uid), operation, f"({flag})"
            )
        except MailboxConnectionError as exc:
            log_warning(
                "Unable to update IMAP flags",
                mailbox=self.credentials.identity,
                uid=uid,
                flag=flag,
                error=str(exc),
            )
            return False
        if status != "OK":
            log_warning(
                "IMAP server rejected flag update",
                mailbox=self.credentials.identity,
                uid=uid,
                flag=flag,
            )
            return False
        return True

    async def move_message(self, uid: int, folder: str) -> bool:
        """Move ``uid`` into ``folder``.

        Uses MOVE when advertised, otherwise COPY followed by ``\\Deleted``; the
        message is expunged when the folder is closed.
        """

        target = _quote_folder(folder)
        try:
            if "MOVE" in self.capabilities:
                status, _ = await self._call("move", self._client.uid, "MOVE", str(uid), target)
                if status == "OK":
                    return True
            status, _ = await self._call("copy", self._client.uid, "COPY", str(uid), target)
        except MailboxConnectionError as exc:
            log_warning(
                "Unable to move IMAP message",
                mailbox=self.credentials.identity,
                uid=uid,
                folder=folder,
                error=str(exc),
            )
            return False
        if status != "OK":
            log_warning(
                "IMAP server rejected message copy",
                mailbox=self.credentials.identity,
                uid=uid,
                folder=folder,
            )
            return False
        return await self.mutate_flags(uid, _DELETED_FLAG, True)

    async def disconnect(self) -> None:
        """Log out and drop the connection; safe to call more than once."""

        if self._closed:
            return
        try:
            await self._release_folder()
            await self._call("logout", self._client.logout)
        except MailboxConnectionError as exc:
            log_warning(
                "IMAP logout failed",
                mailbox=self.credentials.identity,
                error=str(exc),
            )
            _shutdown_quietly(self._client)
        finally:
            self._closed = True


def _shutdown_quietly(client: Any) -> None:
    shutdown = getattr(client, "shutdown", None)
    if shutdown is None:
        return
    try:
        shutdown()
    except OSError as exc:  # pragma: no cover - defensive logging
        log_debug("IMAP socket shutdown failed", error=str(exc))


def _discard_late_client(opening: "asyncio.Future[Any]") -> None:
    if opening.cancelled() or opening.exception() is not None:
        return
    log_debug("Closing IMAP connection that completed after its timeout")
    _shutdown_quietly(opening.result())


def _open_client(credentials: MailboxCredentials, socket_timeout: float) -> Any:
    if credentials.secure:
        return imaplib.IMAP4_SSL(credentials.host, credentials.port, timeout=socket_timeout)
    return imaplib.IMAP4(credentials.host, credentials.port, timeout=socket_timeout)


async def connect(
    credentials: MailboxCredentials,
    *,
    connect_timeout: float | None = None,
    greeting_timeout: float | None = None,
    socket_timeout: float | None = None,
) -> MailboxSession:
    """Open and authenticate an IMAP session.

    ``connect_timeout`` bounds the TCP/TLS handshake, ``greeting_timeout`` the
    server greeting, STARTTLS and LOGIN, and ``socket_timeout`` every later
    command.
    """

    settings = get_settings()
    connect_budget = connect_timeout or settings.imap_connect_timeout
    greeting_budget = greeting_timeout or settings.imap_greeting_timeout
    socket_budget = socket_timeout or settings.imap_socket_timeout

    # The imaplib constructor connects and reads the greeting in one call.
    # The thread cannot be interrupted, so a timed-out open keeps running and
    # its client is shut down once it arrives.
    opening = asyncio.ensure_future(asyncio.to_thread(_open_client, credentials, connect_budget))
    client = None
    try:
        client = await asyncio.wait_for(
            asyncio.shield(opening), timeout=connect_budget + greeting_budget
        )
    except asyncio.TimeoutError as exc:
        raise MailboxTimeoutError(
            f"Timed out connecting to {credentials.host}:{credentials.port}"
        ) from exc
    except (imaplib.IMAP4.error, OSError) as exc:
        raise MailboxConnectionError(
            f"Unable to connect to {credentials.host}:{credentials.port}: {exc}"
        ) from exc
    finally:
        if client is None:
            opening.add_done_callback(_discard_late_client)

    sock = getattr(client, "sock", None)
    if sock is not None:
        sock.settimeout(socket_budget)

    session = MailboxSession(client, credentials, command_timeout=socket_budget)
    try:
        if not credentials.secure and "STARTTLS" in session.capabilities:
            await session._call("starttls", client.starttls, timeout=greeting_budget)
        await session._call(
            "login",
            client.login,
            credentials.username,
            credentials.password,
            timeout=greeting_budget,
            error_cls=MailboxAuthenticationError,
        )
    except BaseException:
        _shutdown_quietly(client)
        session._closed = True
        raise
    return session
