from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from helpdesk_sync.api.dependencies.database import require_database
from helpdesk_sync.api.dependencies.worker import get_sync_worker, require_worker_token
from helpdesk_sync.core.logging import log_error, log_info
from helpdesk_sync.repositories.departments import RegistryError
from helpdesk_sync.schemas.worker import (
    SyncResultResponse,
    WorkerActionRequest,
    WorkerActionResponse,
    WorkerStatusResponse,
)
from helpdesk_sync.services.scheduler import DepartmentNotFoundError, SyncWorker

router = APIRouter(
    prefix="/api/helpdesk",
    tags=["Helpdesk worker"],
    dependencies=[Depends(require_worker_token)],
)


@router.get("/worker", response_model=WorkerStatusResponse)
async def get_worker_status(
    worker: SyncWorker = Depends(get_sync_worker),
) -> WorkerStatusResponse:
    return WorkerStatusResponse.model_validate(worker.status())


@router.post("/worker", response_model=WorkerActionResponse)
async def control_worker(
    payload: WorkerActionRequest,
    worker: SyncWorker = Depends(get_sync_worker),
) -> WorkerActionResponse:
    log_info("Helpdesk worker control requested", action=payload.action)
    try:
        if payload.action == "start":
            await worker.start()
            message = "Worker started"
        elif payload.action == "stop":
            await worker.stop()
            message = "Worker stopped"
        else:
            await worker.restart()
            message = "Worker restarted"
    except RegistryError as exc:
        log_error("Helpdesk worker control failed", action=payload.action, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Department registry unavailable",
        ) from exc
    return WorkerActionResponse(
        success=True,
        message=message,
        status=WorkerStatusResponse.model_validate(worker.status()),
    )


@router.post("/departments/{department_id}/sync", response_model=SyncResultResponse)
async def sync_department_now(
    department_id: int,
    _: None = Depends(require_database),
    worker: SyncWorker = Depends(get_sync_worker),
) -> SyncResultResponse:
    try:
        result = await worker.sync_now(department_id)
    except DepartmentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Department sync already in progress",
        )
    return SyncResultResponse.model_validate(result.as_dict())
