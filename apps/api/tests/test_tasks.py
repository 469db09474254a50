from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import update
from sqlalchemy.future import select

from conftest import INTERNAL_HEADER, USER_A, USER_B, auth_header
from models.credit_log import CreditLog
from models.image_task import ImageTask
from routers import tasks as tasks_router
from services.credits import adjust, get_balance
from services import tasks as task_service
from services.tasks import (
    TaskConflictError,
    TaskPermissionError,
    cancel_task,
    create_task,
    estimate_progress,
    estimate_stage,
    get_task,
    mark_completed,
    mark_failed,
    mark_processing,
    update_progress,
)


@pytest.fixture
def queued_jobs(monkeypatch):
    jobs = []

    def fake_enqueue(task_id):
        jobs.append(task_id)
        return SimpleNamespace(id=f"image:{task_id}")

    monkeypatch.setattr(tasks_router, "enqueue_image_task", fake_enqueue)
    return jobs


def test_estimates_follow_wait_time():
    assert estimate_stage(2) == "preparing"
    assert estimate_stage(7) == "configuring"
    assert estimate_stage(12) == "sending_request"
    assert estimate_stage(60) == "processing"
    assert estimate_stage(300) == "extracting_image"

    assert estimate_progress(1) == 5
    assert estimate_progress(20) == 50
    assert estimate_progress(100) == 80
    assert estimate_progress(10000) == 85


@pytest.mark.asyncio
async def test_create_task_charges_one_credit(db):
    task = await create_task(USER_A, "a red fox", {"style": "吉卜力", "aspect_ratio": "1:1"}, db)

    assert task.status == "pending"
    assert task.credits_deducted is True
    assert task.credits_refunded is False
    assert await get_balance(USER_A, db) == 4

    log = await db.execute(select(CreditLog).where(CreditLog.idempotency_key == f"consume:{task.task_id}"))
    assert log.scalar_one().change_value == -1


@pytest.mark.asyncio
async def test_transitions_are_one_way(db):
    task = await create_task(USER_A, "a lighthouse", {}, db)

    assert (await mark_processing(task.task_id, db)).changed is True
    completed = await mark_completed(task.task_id, "https://cdn.example.com/a.png", db)
    assert completed.changed is True
    assert completed.task.progress == 100
    assert completed.task.completed_at is not None

    late_failure = await mark_failed(task.task_id, "worker crashed", db)
    assert late_failure.changed is False
    assert late_failure.status == "completed"

    reloaded = await get_task(task.task_id, db)
    assert reloaded.image_url == "https://cdn.example.com/a.png"
    assert reloaded.error_message is None


@pytest.mark.asyncio
async def test_progress_never_moves_backwards(db):
    task = await create_task(USER_A, "a glacier", {}, db)
    await mark_processing(task.task_id, db)

    first = await update_progress(task.task_id, 50, "processing", db)
    assert first.changed is True
    version = first.task.lock_version

    stale = await update_progress(task.task_id, 30, None, db)
    assert stale.changed is False
    assert stale.task.progress == 50
    assert stale.task.lock_version == version


def _racing_reads(db, races: int):
    """Read the task, then let another writer bump its version before the swap."""
    reads = []

    async def read_then_race(task_id, session):
        task = await get_task(task_id, session)
        if len(reads) < races:
            reads.append(task.lock_version)
            await db.execute(
                update(ImageTask)
                .where(ImageTask.task_id == task_id)
                .values(lock_version=ImageTask.lock_version + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return task

    return reads, read_then_race


@pytest.mark.asyncio
async def test_progress_retries_after_losing_a_version_race(db, monkeypatch):
    monkeypatch.setattr(task_service, "PROGRESS_BACKOFF_SECONDS", 0)
    task = await create_task(USER_A, "a lighthouse", {}, db)
    await mark_processing(task.task_id, db)
    start_version = (await get_task(task.task_id, db)).lock_version

    reads, read_then_race = _racing_reads(db, races=1)
    with patch("services.tasks.get_task", side_effect=read_then_race):
        result = await update_progress(task.task_id, 40, "sending_request", db)

    assert reads == [start_version]
    assert result.changed is True
    reloaded = await get_task(task.task_id, db)
    assert reloaded.progress == 40
    assert reloaded.stage == "sending_request"
    assert reloaded.lock_version == start_version + 2


@pytest.mark.asyncio
async def test_progress_gives_up_after_max_retries(db, monkeypatch):
    monkeypatch.setattr(task_service, "PROGRESS_BACKOFF_SECONDS", 0)
    monkeypatch.setattr(task_service.settings, "TASK_PROGRESS_MAX_RETRIES", 2)
    task = await create_task(USER_A, "a lighthouse", {}, db)
    await mark_processing(task.task_id, db)

    reads, read_then_race = _racing_reads(db, races=10)
    with patch("services.tasks.get_task", side_effect=read_then_race):
        with pytest.raises(TaskConflictError):
            await update_progress(task.task_id, 40, "sending_request", db)

    assert len(reads) == 3
    reloaded = await get_task(task.task_id, db)
    assert (reloaded.progress or 0) == 0
    assert reloaded.status == "processing"


@pytest.mark.asyncio
async def test_cancel_refunds_once_and_checks_owner(db):
    task = await create_task(USER_A, "a castle", {}, db)

    with pytest.raises(TaskPermissionError):
        await cancel_task(task.task_id, USER_B, db)

    result = await cancel_task(task.task_id, USER_A, db)
    assert result == {"changed": True, "status": "cancelled", "refunded": True}
    assert await get_balance(USER_A, db) == 5

    again = await cancel_task(task.task_id, USER_A, db)
    assert again == {"changed": False, "status": "cancelled", "refunded": False}
    assert await get_balance(USER_A, db) == 5


@pytest.mark.asyncio
async def test_generate_image_endpoint_queues_task(client, session_maker, queued_jobs):
    response = await client.post(
        "/api/generate-image",
        json={"prompt": "a koi pond", "style": "新海诚", "aspectRatio": "16:9"},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "pending"
    assert queued_jobs == [payload["taskId"]]

    async with session_maker() as session:
        task = await get_task(payload["taskId"], session)
        assert task.queue_job_id == f"image:{payload['taskId']}"
        assert task.aspect_ratio == "16:9"
        assert await get_balance(USER_A, session) == 4


@pytest.mark.asyncio
async def test_generate_image_without_credits_returns_402(client, session_maker, queued_jobs):
    async with session_maker() as session:
        await adjust(USER_A, -5, "consume", session)

    response = await client.post(
        "/api/generate-image",
        json={"prompt": "a koi pond"},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 402
    assert response.json()["credits"] == 0
    assert queued_jobs == []

    async with session_maker() as session:
        count = await session.execute(select(ImageTask).where(ImageTask.user_id == USER_A))
        assert count.scalars().all() == []


@pytest.mark.asyncio
async def test_generate_image_refunds_when_queue_is_down(client, session_maker, monkeypatch):
    def broken_enqueue(task_id):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(tasks_router, "enqueue_image_task", broken_enqueue)

    response = await client.post(
        "/api/generate-image",
        json={"prompt": "a koi pond"},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 503

    async with session_maker() as session:
        task = (await session.execute(select(ImageTask).where(ImageTask.user_id == USER_A))).scalar_one()
        assert task.status == "failed"
        assert task.credits_refunded is True
        assert await get_balance(USER_A, session) == 5


@pytest.mark.asyncio
async def test_users_may_only_cancel_their_own_tasks(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a desert", {}, session)

    forbidden = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "cancelled"},
        headers=auth_header(USER_B),
    )
    assert forbidden.status_code == 403

    not_allowed = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "completed", "imageUrl": "https://x.example.com/a.png"},
        headers=auth_header(USER_A),
    )
    assert not_allowed.status_code == 403

    cancelled = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "cancelled"},
        headers=auth_header(USER_A),
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["refunded"] is True


@pytest.mark.asyncio
async def test_internal_status_reports_drive_the_task(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a forest", {}, session)

    processing = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "processing"},
        headers=INTERNAL_HEADER,
    )
    assert processing.json() == {"success": True, "changed": True, "status": "processing"}

    missing_url = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "completed"},
        headers=INTERNAL_HEADER,
    )
    assert missing_url.status_code == 400

    progress = await client.post(
        "/api/update-task-progress",
        json={"taskId": task.task_id, "progress": 40, "stage": "sending_request"},
        headers=INTERNAL_HEADER,
    )
    assert progress.json()["task"]["progress"] == 40

    failed = await client.post(
        "/api/task-notification",
        json={"taskId": task.task_id, "status": "failed", "error": "upstream 500"},
        headers=INTERNAL_HEADER,
    )
    assert failed.json()["status"] == "failed"

    async with session_maker() as session:
        reloaded = await get_task(task.task_id, session)
        assert reloaded.error_message == "upstream 500"
        assert reloaded.credits_refunded is True
        assert await get_balance(USER_A, session) == 5


@pytest.mark.asyncio
async def test_progress_endpoint_requires_internal_secret(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a meadow", {}, session)

    response = await client.post(
        "/api/update-task-progress",
        json={"taskId": task.task_id, "progress": 40},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_finished_task_notification_is_plain_json(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a harbor", {}, session)
        await mark_processing(task.task_id, session)
        await mark_completed(task.task_id, "https://cdn.example.com/harbor.png", session)

    response = await client.get(
        "/api/task-notification",
        params={"taskId": task.task_id},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 200
    assert response.json()["task"]["imageUrl"] == "https://cdn.example.com/harbor.png"

    other = await client.get(
        "/api/task-notification",
        params={"taskId": task.task_id},
        headers=auth_header(USER_B),
    )
    assert other.status_code == 403


@pytest.mark.asyncio
async def test_stream_for_finished_task_sends_snapshot_and_closes(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a volcano", {}, session)
        await mark_failed(task.task_id, "boom", session)

    response = await client.get(f"/api/tasks/stream/{task.task_id}", headers=auth_header(USER_A))
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    body = response.text
    assert '"type": "connected"' in body
    assert '"status": "failed"' in body
    assert "event: close" in body


@pytest.mark.asyncio
async def test_pending_tasks_lists_only_active_tasks(client, session_maker):
    async with session_maker() as session:
        active = await create_task(USER_A, "a canyon", {}, session)
        done = await create_task(USER_A, "a reef", {}, session)
        await mark_failed(done.task_id, "boom", session)

    response = await client.get("/api/generate-image/pending-tasks", headers=auth_header(USER_A))
    assert response.status_code == 200
    task_ids = [item["taskId"] for item in response.json()["tasks"]]
    assert task_ids == [active.task_id]


@pytest.mark.asyncio
async def test_final_check_cancel(client, session_maker):
    async with session_maker() as session:
        task = await create_task(USER_A, "a bridge", {}, session)

    response = await client.post(
        f"/api/task-final-check/{task.task_id}",
        json={"action": "cancel"},
        headers=auth_header(USER_A),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "cancelled"
    assert payload["task"]["status"] == "cancelled"
