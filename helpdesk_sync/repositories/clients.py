from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from helpdesk_sync.core.database import db


ClientRecord = dict[str, Any]


def _normalise_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _normalise_client(row: dict[str, Any]) -> ClientRecord:
    client = dict(row)
    client["id"] = int(client["id"])
    if "active" in client:
        client["active"] = bool(int(client["active"] or 0))
    return client


async def get_client_by_email(email: str | None) -> Optional[ClientRecord]:
    """Return the active client registered under ``email``, ignoring case."""

    address = _normalise_email(email)
    if not address:
        return None
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_clients WHERE email = %s AND active = 1 LIMIT 1",
        (address,),
    )
    if not row:
        return None
    return _normalise_client(row)


async def create_client(*, name: str, email: str, active: bool = True) -> ClientRecord:
    client_id = await db.execute_returning_lastrowid(
        "INSERT INTO helpdesk_clients (name, email, active, created_at) VALUES (%s, %s, %s, %s)",
        (
            name.strip(),
            _normalise_email(email),
            1 if active else 0,
            datetime.now(timezone.utc).replace(tzinfo=None),
        ),
    )
    row = await db.fetch_one("SELECT * FROM helpdesk_clients WHERE id = %s", (client_id,))
    if not row:
        raise RuntimeError("Client insert did not return a row")
    return _normalise_client(row)
