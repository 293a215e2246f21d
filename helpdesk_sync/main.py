from __future__ import annotations

from fastapi import FastAPI

from helpdesk_sync.api.routes import worker as worker_routes
from helpdesk_sync.core.config import get_settings
from helpdesk_sync.services.scheduler import SyncWorker


def create_app(worker: SyncWorker) -> FastAPI:
    """Build the control app around an existing worker instance.

    The app only exposes the worker; its lifecycle stays with the process
    that created it.
    """

    settings = get_settings()
    app = FastAPI(
        title=f"{settings.app_name} control",
        description="Status and start/stop/restart control for the helpdesk email sync worker.",
        docs_url=None,
        openapi_url=None,
    )
    app.state.sync_worker = worker

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(worker_routes.router)
    return app
