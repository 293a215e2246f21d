from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, Request, status

from helpdesk_sync.core.config import get_settings
from helpdesk_sync.services.scheduler import SyncWorker


def get_sync_worker(request: Request) -> SyncWorker:
    worker = getattr(request.app.state, "sync_worker", None)
    if worker is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync worker not configured",
        )
    return worker


async def require_worker_token(
    x_worker_token: str | None = Header(default=None, alias="X-Worker-Token"),
) -> None:
    expected = get_settings().worker_control_token
    if not expected:
        return None
    if not x_worker_token or not hmac.compare_digest(x_worker_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid worker control token",
        )
    return None
