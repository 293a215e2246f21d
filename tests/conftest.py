import imaplib
import os
import sys
import time
from email.message import EmailMessage
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("TOTP_ENCRYPTION_KEY", "A" * 64)
os.environ.setdefault("HELPDESK_CONNECT_BACKOFF", "0")

_IMAP_ERROR = imaplib.IMAP4.error
_IMAP_ABORT = imaplib.IMAP4.abort


class FakeIMAPClient:
    error = _IMAP_ERROR
    abort = _IMAP_ABORT

    def __init__(self, server, host, port, timeout):
        self.server = server
        self.host = host
        self.port = port
        self.timeout = timeout
        self.capabilities = tuple(server.capabilities)
        self.selected = None
        self.readonly = False
        self.logged_out = False
        self.shut_down = False
        self.logins: list[tuple[str, str]] = []
        self.released: list[tuple[str, str]] = []

    def login(self, username, password):
        self.server.commands.append(("LOGIN", username))
        if self.server.login_error is not None:
            raise self.server.login_error
        self.logins.append((username, password))
        return "OK", [b"Logged in"]

    def starttls(self):
        self.server.commands.append(("STARTTLS",))
        return "OK", [b"Begin TLS negotiation now"]

    def list(self):
        return "OK", [
            f'(\\HasNoChildren) "/" "{name}"'.encode("utf-8") for name in self.server.folders
        ]

    def select(self, mailbox, readonly=False):
        self.server.commands.append(("SELECT", mailbox))
        if self.server.select_error is not None:
            raise self.server.select_error
        self.selected = mailbox.strip('"')
        self.readonly = readonly
        return "OK", [str(len(self.server.messages)).encode()]

    def close(self):
        self.released.append(("CLOSE", self.selected))
        for uid in [uid for uid, flags in self.server.flags.items() if "\\Deleted" in flags]:
            self.server.messages.pop(uid, None)
            self.server.flags.pop(uid, None)
        self.selected = None
        return "OK", []

    def unselect(self):
        self.released.append(("UNSELECT", self.selected))
        self.selected = None
        return "OK", []

    def _visible_uids(self):
        order = self.server.search_order or sorted(self.server.messages)
        return [uid for uid in order if uid in self.server.messages]

    def uid(self, command, *args):
        command = command.upper()
        self.server.commands.append((command, args))
        if command == "SEARCH":
            criterion = args[-1]
            uids = self._visible_uids()
            if criterion == "UNSEEN":
                uids = [uid for uid in uids if "\\Seen" not in self.server.flags.get(uid, set())]
            elif criterion.startswith("UID "):
                start = int(criterion.split()[1].split(":")[0])
                matching = [uid for uid in uids if uid >= start]
                # "n:*" always matches the highest UID, even when it is below n.
                if not matching and uids:
                    matching = [max(uids)]
                uids = matching
            return "OK", [" ".join(str(uid) for uid in uids).encode()]
        if command == "FETCH":
            uid = int(args[0])
            if self.server.fetch_delay:
                time.sleep(self.server.fetch_delay)
            error = self.server.fetch_errors.get(uid)
            if error is not None:
                raise error
            raw = self.server.messages.get(uid)
            if raw is None:
                return "OK", [None]
            header = f"{uid} (UID {uid} BODY[] {{{len(raw)}}}".encode()
            return "OK", [(header, raw), b")"]
        if command == "STORE":
            if self.server.fail_store:
                return "NO", [b"STORE not permitted"]
            uid, operation, flag_list = args
            flag = flag_list.strip("()")
            flags = self.server.flags.setdefault(int(uid), set())
            if operation.startswith("+"):
                flags.add(flag)
            else:
                flags.discard(flag)
            return "OK", []
        if command in {"COPY", "MOVE"}:
            uid, folder = args
            self.server.copied.append((command, int(uid), folder.strip('"')))
            if command == "MOVE":
                self.server.messages.pop(int(uid), None)
            return "OK", []
        raise AssertionError(f"Unexpected command {command!r}")

    def logout(self):
        self.logged_out = True
        return "BYE", [b"Logging out"]

    def shutdown(self):
        self.logged_out = True
        self.shut_down = True


class FakeMailboxServer:
    """In-memory IMAP server shared by every connection opened in a test."""

    def __init__(self):
        self.messages: dict[int, bytes] = {}
        self.flags: dict[int, set[str]] = {}
        self.folders = ["INBOX", "Processed", "Trash"]
        self.capabilities = ["IMAP4REV1"]
        self.search_order: list[int] | None = None
        self.connect_error: BaseException | None = None
        self.connect_delay = 0.0
        self.fail_hosts: set[str] = set()
        self.login_error: BaseException | None = None
        self.select_error: BaseException | None = None
        self.fetch_errors: dict[int, BaseException] = {}
        self.fetch_delay = 0.0
        self.fail_store = False
        self.commands: list[tuple] = []
        self.copied: list[tuple[str, int, str]] = []
        self.connections: list[FakeIMAPClient] = []
        self.opened_with: list[str] = []

    def add_message(self, uid: int, raw: bytes) -> None:
        self.messages[uid] = raw

    def factory(self, kind: str):
        def _factory(host, port, timeout=None):
            self.opened_with.append(kind)
            if self.connect_delay:
                time.sleep(self.connect_delay)
            if host in self.fail_hosts:
                raise ConnectionRefusedError(f"Connection refused by {host}")
            if self.connect_error is not None:
                raise self.connect_error
            client = FakeIMAPClient(self, host, port, timeout)
            self.connections.append(client)
            return client

        _factory.error = _IMAP_ERROR
        _factory.abort = _IMAP_ABORT
        return _factory


@pytest.fixture
def mailbox_server(monkeypatch):
    from helpdesk_sync.services import imap

    server = FakeMailboxServer()
    monkeypatch.setattr(imap.imaplib, "IMAP4_SSL", server.factory("ssl"))
    monkeypatch.setattr(imap.imaplib, "IMAP4", server.factory("plain"))
    return server


@pytest.fixture
def make_message():
    def _make(
        subject: str | None = "Printer is jammed",
        *,
        sender: str = "Alice Example <alice@example.com>",
        body: str = "The printer on floor 2 is jammed again.",
        message_id: str | None = None,
        in_reply_to: str | None = None,
        references: str | None = None,
        html: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> bytes:
        message = EmailMessage()
        if subject is not None:
            message["Subject"] = subject
        message["From"] = sender
        message["To"] = "support@example.com"
        message["Date"] = "Tue, 14 May 2024 09:30:00 +0000"
        if message_id:
            message["Message-ID"] = message_id
        if in_reply_to:
            message["In-Reply-To"] = in_reply_to
        if references:
            message["References"] = references
        for key, value in (headers or {}).items():
            message[key] = value
        message.set_content(body)
        if html:
            message.add_alternative(html, subtype="html")
        return message.as_bytes()

    return _make


@pytest.fixture
async def sqlite_db(tmp_path, monkeypatch):
    from helpdesk_sync.core.database import Database
    from helpdesk_sync.repositories import clients as clients_repo
    from helpdesk_sync.repositories import departments as departments_repo
    from helpdesk_sync.repositories import tickets as tickets_repo
    from helpdesk_sync.services import scheduler as scheduler_module

    test_db = Database()
    test_db._use_sqlite = True
    test_db._get_sqlite_path = lambda: tmp_path / "helpdesk.db"
    await test_db.connect()
    await test_db.run_migrations()
    monkeypatch.setattr(clients_repo, "db", test_db)
    monkeypatch.setattr(departments_repo, "db", test_db)
    monkeypatch.setattr(tickets_repo, "db", test_db)
    monkeypatch.setattr(scheduler_module, "db", test_db)
    yield test_db
    await test_db.disconnect()


@pytest.fixture
def test_settings():
    from helpdesk_sync.core.config import get_settings

    def _build(**overrides):
        defaults = {
            "connect_backoff_base": 0.0,
            "connect_max_attempts": 2,
            "imap_connect_timeout": 2.0,
            "imap_greeting_timeout": 2.0,
            "imap_socket_timeout": 2.0,
            "stop_grace_seconds": 2.0,
            "notification_webhook_url": None,
        }
        defaults.update(overrides)
        return get_settings().model_copy(update=defaults)

    return _build
