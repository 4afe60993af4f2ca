from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from taskrelay.broker.service import TaskBroker
from taskrelay.core.exceptions import TaskNotFoundError, TaskValidationError, UnknownTaskError
from taskrelay.schemas.tasks import ResultReport, TaskKind, TaskResult, TaskStatus, TaskStatusView


@pytest.mark.asyncio
async def test_submit_validates_required_fields_per_kind(broker: TaskBroker) -> None:
    with pytest.raises(TaskValidationError, match="command is required"):
        await broker.submit(TaskKind.COMMAND, {"command": ""})
    with pytest.raises(TaskValidationError, match="path and content are required"):
        await broker.submit(TaskKind.FILE_WRITE, {"path": "/tmp/out.txt"})
    with pytest.raises(TaskValidationError, match="path is required"):
        await broker.submit(TaskKind.FILE_READ, {})
    with pytest.raises(TaskValidationError, match="prompt is required"):
        await broker.submit(TaskKind.BACKEND_CLI, {"prompt": None})
    assert broker.stats() == {"tasks": 0, "results": 0}


@pytest.mark.asyncio
async def test_submit_applies_defaults(broker: TaskBroker) -> None:
    command = await broker.submit(TaskKind.COMMAND, {"command": "echo hi"})
    write = await broker.submit(TaskKind.FILE_WRITE, {"path": "/tmp/empty.txt", "content": ""})
    turn = await broker.submit(TaskKind.BACKEND_CLI, {"prompt": "hello", "callback_channel": "42"})

    assert command.timeout == 30_000
    assert command.status is TaskStatus.PENDING
    assert write.content == ""
    assert write.encoding == "utf8"
    assert turn.timeout == 120_000
    assert turn.session_id
    assert turn.callback_platform == "discord"
    assert len({command.id, write.id, turn.id}) == 3


@pytest.mark.asyncio
async def test_claim_is_fifo_and_flips_status(broker: TaskBroker) -> None:
    submitted = [await broker.submit(TaskKind.COMMAND, {"command": f"echo {i}"}) for i in range(3)]

    claimed = [await broker.claim(wait_ms=0) for _ in range(3)]

    assert [task.id for task in claimed] == [task.id for task in submitted]
    assert all(task.status is TaskStatus.RUNNING for task in claimed)
    assert await broker.claim(wait_ms=0) is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_hand_out_a_task_twice(broker: TaskBroker) -> None:
    for i in range(5):
        await broker.submit(TaskKind.COMMAND, {"command": f"echo {i}"})

    claimed = await asyncio.gather(*(broker.claim(wait_ms=50) for _ in range(8)))

    ids = [task.id for task in claimed if task is not None]
    assert len(ids) == 5
    assert len(set(ids)) == 5
    assert claimed.count(None) == 3


@pytest.mark.asyncio
async def test_long_poll_claim_picks_up_late_submission(broker: TaskBroker) -> None:
    waiter = asyncio.create_task(broker.claim(wait_ms=2_000))
    await asyncio.sleep(0.03)
    task = await broker.submit(TaskKind.COMMAND, {"command": "date"})

    claimed = await asyncio.wait_for(waiter, timeout=1.0)

    assert claimed is not None
    assert claimed.id == task.id


@pytest.mark.asyncio
async def test_fetch_takes_result_exactly_once(broker: TaskBroker) -> None:
    task = await broker.submit(TaskKind.COMMAND, {"command": "echo hi"})
    await broker.claim(wait_ms=0)
    await broker.report(ResultReport(task_id=task.id, stdout="hi\n", exit_code=0))

    result = await broker.fetch(task.id)

    assert isinstance(result, TaskResult)
    assert result.stdout == "hi\n"
    assert result.exit_code == 0
    with pytest.raises(TaskNotFoundError):
        await broker.fetch(task.id)
    assert broker.stats() == {"tasks": 0, "results": 0}


@pytest.mark.asyncio
async def test_fetch_reports_status_while_pending(broker: TaskBroker) -> None:
    task = await broker.submit(TaskKind.COMMAND, {"command": "sleep 1"})

    pending = await broker.fetch(task.id, wait_ms=20)
    await broker.claim(wait_ms=0)
    running = await broker.fetch(task.id)

    assert isinstance(pending, TaskStatusView)
    assert pending.status is TaskStatus.PENDING
    assert running.to_wire() == {"status": "running", "message": "Result not ready yet"}


@pytest.mark.asyncio
async def test_long_poll_fetch_returns_result_reported_during_wait(broker: TaskBroker) -> None:
    task = await broker.submit(TaskKind.COMMAND, {"command": "echo later"})
    await broker.claim(wait_ms=0)
    waiter = asyncio.create_task(broker.fetch(task.id, wait_ms=2_000))
    await asyncio.sleep(0.03)

    await broker.report(ResultReport(task_id=task.id, stdout="later\n", exit_code=0))
    result = await asyncio.wait_for(waiter, timeout=1.0)

    assert isinstance(result, TaskResult)
    assert result.stdout == "later\n"


@pytest.mark.asyncio
async def test_report_defaults_and_unknown_ids(broker: TaskBroker) -> None:
    with pytest.raises(TaskValidationError, match="taskId is required"):
        await broker.report(ResultReport())
    with pytest.raises(UnknownTaskError):
        await broker.report(ResultReport(task_id="never-submitted", exit_code=0))

    task = await broker.submit(TaskKind.COMMAND, {"command": "true"})
    result = await broker.report(ResultReport(task_id=task.id))

    assert result.exit_code == -1
    assert result.stdout == ""
    assert broker.stats() == {"tasks": 0, "results": 1}


@pytest.mark.asyncio
async def test_sweep_expires_stale_tasks_and_results(settings) -> None:
    clock = {"now": datetime(2026, 1, 1, tzinfo=timezone.utc)}
    broker = TaskBroker(settings.broker, now=lambda: clock["now"])

    finished = await broker.submit(TaskKind.COMMAND, {"command": "echo done"})
    await broker.claim(wait_ms=0)
    await broker.report(ResultReport(task_id=finished.id, stdout="done\n", exit_code=0))
    stale = await broker.submit(TaskKind.COMMAND, {"command": "echo never"})

    clock["now"] += timedelta(minutes=16)
    first = await broker.sweep()

    assert first.tasks_expired == 1
    assert first.results_expired == 0
    with pytest.raises(TaskNotFoundError):
        await broker.fetch(stale.id)

    clock["now"] += timedelta(minutes=15)
    second = await broker.sweep()

    assert second.results_expired == 1
    assert broker.stats() == {"tasks": 0, "results": 0}


@pytest.mark.asyncio
async def test_lifecycle_starts_and_stops_sweep_loop(broker: TaskBroker) -> None:
    async with broker.lifecycle() as running:
        assert running is broker
        assert broker._sweep_task is not None
    assert broker._sweep_task is None
