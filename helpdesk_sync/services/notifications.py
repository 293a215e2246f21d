from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

import httpx

from helpdesk_sync.core.config import get_settings
from helpdesk_sync.core.logging import log_info, log_warning


REQUEST_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def _serialise(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _ticket_payload(ticket: Mapping[str, Any]) -> dict[str, Any]:
    keys = (
        "id",
        "ticket_number",
        "subject",
        "status",
        "priority",
        "requester_name",
        "requester_email",
        "department_id",
        "client_id",
        "category",
        "tags",
        "needs_review",
        "created_at",
    )
    return {key: _serialise(ticket.get(key)) for key in keys}


async def _post_event(event: str, payload: dict[str, Any]) -> bool:
    settings = get_settings()
    endpoint = settings.notification_webhook_url
    if not endpoint:
        return False

    headers = {"Content-Type": "application/json"}
    api_key = (settings.notification_webhook_api_key or "").strip()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    body = {"event": event, **payload}
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT) as client:
            response = await client.post(str(endpoint), json=body, headers=headers)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        log_warning(
            "Helpdesk notification failed",
            notification_event=event,
            endpoint=str(endpoint),
            error=str(exc),
        )
        return False
    log_info(
        "Helpdesk notification delivered",
        notification_event=event,
        status=response.status_code,
    )
    return True


async def notify_ticket_created(
    ticket: Mapping[str, Any], department: Mapping[str, Any]
) -> bool:
    """Tell the notification webhook a ticket was created from email."""

    return await _post_event(
        "helpdesk.ticket_created",
        {
            "ticket": _ticket_payload(ticket),
            "department": {"id": department.get("id"), "name": department.get("name")},
        },
    )


async def notify_reply_added(
    ticket: Mapping[str, Any],
    message: Mapping[str, Any],
    department: Mapping[str, Any],
) -> bool:
    return await _post_event(
        "helpdesk.reply_added",
        {
            "ticket": _ticket_payload(ticket),
            "message": {
                "id": message.get("id"),
                "sender_email": message.get("sender_email"),
                "created_at": _serialise(message.get("created_at")),
            },
            "department": {"id": department.get("id"), "name": department.get("name")},
        },
    )
