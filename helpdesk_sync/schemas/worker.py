from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class WorkerActionRequest(BaseModel):
    action: Literal["start", "stop", "restart"]


class DepartmentStatusResponse(_CamelModel):
    id: int
    name: str
    state: str
    interval_seconds: int
    last_result: dict[str, Any] | None = None
    consecutive_failures: int = 0
    circuit_open_until: datetime | None = None


class WorkerStatusResponse(_CamelModel):
    is_running: bool
    state: str
    sync_interval_seconds: int
    departments_tracked: int
    departments: list[DepartmentStatusResponse] = Field(default_factory=list)


class WorkerActionResponse(_CamelModel):
    success: bool
    message: str
    status: WorkerStatusResponse


class SyncResultResponse(_CamelModel):
    department_id: int
    status: str
    created: int
    replies: int
    skipped: int
    already_processed: int
    errors: list[dict[str, Any]]
    skipped_messages: list[dict[str, Any]]
    needs_review: list[int]
    ticket_numbers: list[int]
    started_at: datetime
    finished_at: datetime | None = None
