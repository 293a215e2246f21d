from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from helpdesk_sync.core.database import db


DepartmentRecord = dict[str, Any]


class RegistryError(RuntimeError):
    """Raised when the department configuration store cannot be read."""


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


def _to_db_timestamp(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _normalise_department(row: dict[str, Any]) -> DepartmentRecord:
    department = dict(row)
    for key in ("id", "imap_port", "sync_interval_seconds", "group_id"):
        if key in department and department[key] is not None:
            department[key] = int(department[key])
    for key in ("active", "sync_enabled", "imap_secure"):
        if key in department:
            department[key] = bool(int(department[key] or 0))
    for key in ("last_sync", "last_error_at", "created_at", "updated_at"):
        if key in department:
            department[key] = _make_aware(department.get(key))
    for key in ("imap_host", "imap_email"):
        value = department.get(key)
        if isinstance(value, str):
            department[key] = value.strip()
    return department


def has_complete_credentials(department: DepartmentRecord) -> bool:
    return all(
        str(department.get(key) or "").strip()
        for key in ("imap_host", "imap_email", "imap_password_encrypted")
    )


def is_eligible(department: DepartmentRecord) -> bool:
    return (
        bool(department.get("active"))
        and bool(department.get("sync_enabled"))
        and has_complete_credentials(department)
    )


async def list_eligible_departments() -> list[DepartmentRecord]:
    """Return departments that are active, sync-enabled and fully configured.

    Raises :class:`RegistryError` when the store cannot be queried. An empty
    result is not an error.
    """

    try:
        rows = await db.fetch_all(
            """
            SELECT *
            FROM helpdesk_departments
            WHERE active = 1
              AND sync_enabled = 1
              AND imap_host IS NOT NULL AND imap_host <> ''
              AND imap_email IS NOT NULL AND imap_email <> ''
              AND imap_password_encrypted IS NOT NULL AND imap_password_encrypted <> ''
            ORDER BY id ASC
            """
        )
    except Exception as exc:
        raise RegistryError(f"Unable to read helpdesk departments: {exc}") from exc
    departments = [_normalise_department(row) for row in rows]
    return [department for department in departments if is_eligible(department)]


async def get_department(department_id: int) -> DepartmentRecord | None:
    row = await db.fetch_one(
        "SELECT * FROM helpdesk_departments WHERE id = %s",
        (department_id,),
    )
    return _normalise_department(row) if row else None


async def update_last_sync(department_id: int, timestamp: datetime) -> None:
    await db.execute(
        "UPDATE helpdesk_departments SET last_sync = %s, last_error = NULL, updated_at = %s "
        "WHERE id = %s",
        (_to_db_timestamp(timestamp), _to_db_timestamp(timestamp), department_id),
    )


async def record_sync_error(department_id: int, error: str, timestamp: datetime) -> None:
    """Persist the last department-scoped failure without touching ``last_sync``."""

    await db.execute(
        "UPDATE helpdesk_departments SET last_error = %s, last_error_at = %s WHERE id = %s",
        (error[:2000], _to_db_timestamp(timestamp), department_id),
    )


async def create_department(
    *,
    name: str,
    imap_host: str | None,
    imap_email: str | None,
    imap_password_encrypted: str | None,
    imap_port: int = 993,
    imap_secure: bool = True,
    active: bool = True,
    sync_enabled: bool = True,
    sync_interval_seconds: int | None = None,
    group_id: int | None = None,
) -> DepartmentRecord:
    now = _to_db_timestamp(datetime.now(timezone.utc))
    department_id = await db.execute_returning_lastrowid(
        """
        INSERT INTO helpdesk_departments (
            name, active, sync_enabled, imap_host, imap_port, imap_secure, imap_email,
            imap_password_encrypted, sync_interval_seconds, group_id, created_at, updated_at
        ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """,
        (
            name,
            1 if active else 0,
            1 if sync_enabled else 0,
            imap_host,
            imap_port,
            1 if imap_secure else 0,
            imap_email,
            imap_password_encrypted,
            sync_interval_seconds,
            group_id,
            now,
            now,
        ),
    )
    department = await get_department(department_id)
    if not department:
        raise RuntimeError("Failed to create helpdesk department")
    return department
