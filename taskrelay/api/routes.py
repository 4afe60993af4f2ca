from __future__ import annotations

from typing import Any, TypeVar

from fastapi import APIRouter, Depends, Query, Request
from pydantic import ValidationError

from ..broker.service import TaskBroker
from ..core.exceptions import TaskValidationError
from ..core.logging import get_logger
from ..core.security import require_token
from ..dependencies import get_broker
from ..schemas.tasks import (
    BackendTaskRequest,
    CommandTaskRequest,
    FileReadRequest,
    FileWriteRequest,
    ResultReport,
    TaskAccepted,
    TaskKind,
    WireModel,
)

logger = get_logger(name=__name__)

router = APIRouter(dependencies=[Depends(require_token)])

RequestModel = TypeVar("RequestModel", bound=WireModel)


async def _extract_json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError as exc:
        raise TaskValidationError("Request body must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise TaskValidationError("Request body must be a JSON object")
    return payload


async def _parse(request: Request, model: type[RequestModel]) -> RequestModel:
    raw_payload = await _extract_json_body(request)
    try:
        return model.model_validate(raw_payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise TaskValidationError(f"{location}: {first.get('msg', 'invalid value')}") from exc


async def _submit(broker: TaskBroker, kind: TaskKind, payload: WireModel, message: str) -> dict[str, Any]:
    task = await broker.submit(kind, payload.model_dump())
    accepted = TaskAccepted(task_id=task.id, message=message)
    if kind is TaskKind.BACKEND_CLI:
        accepted.session_id = task.session_id
    return accepted.to_wire()


@router.post("/tasks", tags=["tasks"])
async def submit_command(request: Request, broker: TaskBroker = Depends(get_broker)) -> dict[str, Any]:
    payload = await _parse(request, CommandTaskRequest)
    return await _submit(broker, TaskKind.COMMAND, payload, "Task created, waiting for worker")


@router.get("/tasks/{task_id}", tags=["tasks"])
async def fetch_result(
    task_id: str,
    wait: int = Query(0, ge=0, description="Milliseconds to hold the request while the result is pending."),
    broker: TaskBroker = Depends(get_broker),
) -> dict[str, Any]:
    outcome = await broker.fetch(task_id, wait_ms=wait)
    return outcome.to_wire()


@router.post("/files/write", tags=["files"])
async def submit_file_write(request: Request, broker: TaskBroker = Depends(get_broker)) -> dict[str, Any]:
    payload = await _parse(request, FileWriteRequest)
    return await _submit(broker, TaskKind.FILE_WRITE, payload, "File write task created")


@router.post("/files/read", tags=["files"])
async def submit_file_read(request: Request, broker: TaskBroker = Depends(get_broker)) -> dict[str, Any]:
    payload = await _parse(request, FileReadRequest)
    return await _submit(broker, TaskKind.FILE_READ, payload, "File read task created")


@router.post("/claude", tags=["backend"])
async def submit_backend_turn(request: Request, broker: TaskBroker = Depends(get_broker)) -> dict[str, Any]:
    payload = await _parse(request, BackendTaskRequest)
    return await _submit(broker, TaskKind.BACKEND_CLI, payload, "Backend CLI task created")


@router.get("/worker/poll", tags=["worker"])
async def poll_task(
    wait: int | None = Query(None, ge=0, description="Milliseconds to hold the request while no task is pending."),
    broker: TaskBroker = Depends(get_broker),
) -> dict[str, Any] | None:
    task = await broker.claim(wait_ms=wait)
    if task is None:
        return None
    return task.to_wire()


@router.post("/worker/result", tags=["worker"])
async def report_result(request: Request, broker: TaskBroker = Depends(get_broker)) -> dict[str, bool]:
    report = await _parse(request, ResultReport)
    await broker.report(report)
    return {"success": True}


__all__ = ["router"]
