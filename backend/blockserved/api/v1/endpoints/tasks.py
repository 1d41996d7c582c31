"""Status of queued reconciliation and retry jobs."""

from __future__ import annotations

from typing import Any

from celery.result import AsyncResult
from fastapi import APIRouter
from pydantic import BaseModel

from blockserved.celery_app import celery_app

router = APIRouter(tags=["tasks"])


class TaskStatusResponse(BaseModel):
    task_id: str
    status: str
    ready: bool
    result: Any = None
    traceback: str | None = None


@router.get("/{task_id}", response_model=TaskStatusResponse)
def get_task_status(task_id: str) -> TaskStatusResponse:
    job = AsyncResult(task_id, app=celery_app)
    if job.failed():
        # The stored result is the raised exception, which JSON cannot carry.
        return TaskStatusResponse(
            task_id=task_id,
            status=job.status,
            ready=True,
            result={"error": repr(job.result)},
            traceback=job.traceback,
        )
    return TaskStatusResponse(
        task_id=task_id,
        status=job.status,
        ready=job.ready(),
        result=job.result if job.ready() else None,
    )
