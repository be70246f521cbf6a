"""ModelTaskService tests.

Tests drive the orchestrator with a fake provider, fake relocator and a
settable clock against a real (SQLite) database:
- Task creation and input validation
- The polling loop: timeout, unknown-status backoff, terminal reactions
- Relocation of finished assets and its failure modes
- Read paths (owner scoping, history listing) and orphan recovery
"""

from uuid import uuid4

import pytest
from sqlalchemy import update

from forge3d.models.model_task import ModelTask, TaskStatus
from forge3d.repositories.model_task import ModelTaskRepository
from forge3d.services.exceptions import (
    AuthorizationError,
    ProviderError,
    TaskNotFoundError,
    ValidationError,
)
from forge3d.services.model_tasks.service import (
    MISSING_MODEL_URL_MESSAGE,
    TIMEOUT_MESSAGE,
    PollAction,
)
from forge3d.services.tripo.client import ProviderTaskStatus
from forge3d.workers.poll_scheduler import PollPayload

SUCCESS_OUTPUT = {
    "model": "https://tripo.test/out/model.glb",
    "pbr_model": "https://tripo.test/out/pbr_model.glb",
    "rendered_image": "https://tripo.test/out/preview.webp",
}


def observed(status: TaskStatus, progress: int = 0, output: dict | None = None, raw=None):
    return ProviderTaskStatus(
        status=status, progress=progress, output=output or {}, raw_status=raw
    )


async def create_text_task(service, user, prompt: str = "a bronze fox") -> ModelTask:
    return await service.create_task(user.id, "text_to_model", prompt=prompt)


async def first_payload(uow_factory, task: ModelTask) -> PollPayload:
    async with await uow_factory() as uow:
        jobs = await uow.poll_jobs.get_by_task(task.id)
    assert len(jobs) == 1
    return PollPayload.from_job(jobs[0])


async def reload(uow_factory, task: ModelTask) -> ModelTask:
    async with await uow_factory() as uow:
        return await uow.model_tasks.get_by_id(task.id)


# ----------------------------------------------------------------------
# Creation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_text_task_persists_task_and_first_poll(
    service, provider, uow_factory, user, clock
):
    """Test a successful submission stores a queued task plus its first poll job.

    Scenario:
    1. Create text_to_model task
    2. Assert provider received the prompt and default model version
    3. Assert task is queued with the provider task id
    4. Assert one poll job is due after the initial delay, counting from now
    """
    task = await create_text_task(service, user)

    assert provider.submitted[0]["prompt"] == "a bronze fox"
    assert provider.submitted[0]["model_version"] == "v2.5-20250123"

    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.QUEUED
    assert stored.provider_task_id == "tripo-task-1"
    assert stored.progress == 0
    assert stored.output == {}

    async with await uow_factory() as uow:
        jobs = await uow.poll_jobs.get_by_task(task.id)
    assert len(jobs) == 1
    assert jobs[0].delay_ms == 1000
    assert jobs[0].poll_start_ms == clock.now_ms
    assert jobs[0].unknown_retry_count == 0


@pytest.mark.asyncio
async def test_create_image_task_stores_token_and_style(service, provider, uow_factory, user):
    task = await service.create_task(
        user.id, "image_to_model", image_token="image-token-1", style="clay"
    )

    stored = await reload(uow_factory, task)
    assert stored.image_token == "image-token-1"
    assert stored.prompt is None
    assert stored.style.value == "clay"
    assert provider.submitted[0]["image_token"] == "image-token-1"


@pytest.mark.asyncio
async def test_create_image_task_without_token_is_rejected(service, provider, user):
    """Test missing input is rejected before anything reaches the provider."""
    with pytest.raises(ValidationError):
        await service.create_task(user.id, "image_to_model")

    assert provider.submitted == []


@pytest.mark.asyncio
async def test_provider_submit_failure_stores_nothing(service, provider, user):
    """Test a rejected submission leaves no task row and no poll job behind."""
    provider.submit_error = ProviderError("Tripo3D business error: no credit", code=2010)

    with pytest.raises(ProviderError):
        await create_text_task(service, user)

    page = await service.list_tasks(user.id)
    assert page.total == 0


@pytest.mark.asyncio
async def test_disabled_or_unknown_user_cannot_create(service, provider, disabled_user):
    with pytest.raises(AuthorizationError):
        await create_text_task(service, disabled_user)

    with pytest.raises(AuthorizationError):
        await service.create_task(uuid4(), "text_to_model", prompt="a fox")

    assert provider.submitted == []


@pytest.mark.asyncio
async def test_upload_image_returns_provider_token(service, provider, user, disabled_user):
    token = await service.upload_image(user.id, b"\x89PNG", "image/png", "fox.png")

    assert token == "image-token-1"
    assert provider.uploads == [{"size": 4, "mime_type": "image/png", "filename": "fox.png"}]

    with pytest.raises(AuthorizationError):
        await service.upload_image(disabled_user.id, b"\x89PNG", "image/png")


# ----------------------------------------------------------------------
# Polling loop
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_text_task_runs_to_success_with_relocated_assets(
    service, provider, relocator, uow_factory, user
):
    """Test the full happy path of a text task.

    Scenario:
    1. Create task, provider reports running 40%
    2. First poll persists running and reschedules at the base interval
    3. Provider reports success with model, pbr model and preview
    4. Second poll persists success, relocates all three artifacts and stops
    5. Assert durable URLs are merged under qiniu_output next to provider URLs
    """
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [
        observed(TaskStatus.RUNNING, 40),
        observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT),
    ]

    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.RESCHEDULE
    assert decision.delay_ms == 3000
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.RUNNING
    assert stored.progress == 40

    decision = await service.handle_poll(decision.next_payload)

    assert decision.action == PollAction.STOP
    assert decision.status == TaskStatus.SUCCESS
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.SUCCESS
    assert stored.progress == 100
    assert stored.has_durable_assets is True
    assert stored.output["model"] == SUCCESS_OUTPUT["model"]
    prefix = f"https://cdn.example.com/model-tasks/{user.id}/{task.id}"
    assert stored.relocated_output == {
        "model": f"{prefix}/model.glb",
        "pbr_model": f"{prefix}/pbr_model.glb",
        "rendered_image": f"{prefix}/rendered_image.webp",
    }
    assert len(relocator.calls) == 3


@pytest.mark.asyncio
async def test_poll_times_out_without_calling_provider(service, provider, uow_factory, user, clock):
    """Test the loop fails the task once the poll budget is spent.

    Scenario:
    1. Create task
    2. Advance the clock to exactly the maximum poll duration
    3. Assert the poll stops with failed/"timeout" and no provider call was made
    """
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    clock.advance(600_000)

    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.STOP
    assert decision.status == TaskStatus.FAILED
    assert provider.status_calls == 0
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_msg == TIMEOUT_MESSAGE


@pytest.mark.asyncio
async def test_poll_just_under_budget_still_polls(service, provider, uow_factory, user, clock):
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    clock.advance(599_999)

    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.RESCHEDULE
    assert provider.status_calls == 1


@pytest.mark.asyncio
async def test_unknown_status_backs_off_then_fails(service, provider, uow_factory, user):
    """Test consecutive unknown statuses double the delay and fail on the third.

    Scenario:
    1. Provider keeps answering with an unrecognized status
    2. First poll: reschedule after 2x interval, nothing persisted
    3. Second poll: reschedule after 4x interval
    4. Third poll: fail with "status unknown after 3 retries"
    """
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.UNKNOWN, raw="postprocessing")]

    first = await service.handle_poll(payload)
    assert first.action == PollAction.RESCHEDULE
    assert first.delay_ms == 6000
    assert first.next_payload.unknown_retry_count == 1
    assert (await reload(uow_factory, task)).status == TaskStatus.QUEUED

    second = await service.handle_poll(first.next_payload)
    assert second.delay_ms == 12000
    assert second.next_payload.unknown_retry_count == 2

    third = await service.handle_poll(second.next_payload)
    assert third.action == PollAction.STOP
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_msg == "status unknown after 3 retries"


@pytest.mark.asyncio
async def test_known_status_resets_unknown_counter(service, provider, uow_factory, user):
    task = await create_text_task(service, user)
    payload = (await first_payload(uow_factory, task)).with_unknown_count(2)
    provider.statuses = [observed(TaskStatus.RUNNING, 10)]

    decision = await service.handle_poll(payload)

    assert decision.next_payload.unknown_retry_count == 0
    assert decision.delay_ms == 3000


@pytest.mark.asyncio
async def test_success_without_model_url_fails(service, provider, relocator, uow_factory, user):
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [
        observed(TaskStatus.SUCCESS, 100, {"rendered_image": "https://tripo.test/r.webp"})
    ]

    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.STOP
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_msg == MISSING_MODEL_URL_MESSAGE
    assert relocator.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "terminal",
    [TaskStatus.BANNED, TaskStatus.EXPIRED, TaskStatus.CANCELLED, TaskStatus.FAILED],
)
async def test_provider_terminal_status_is_stored_verbatim(
    service, provider, relocator, uow_factory, user, terminal
):
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(terminal)]

    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.STOP
    assert decision.status == terminal
    stored = await reload(uow_factory, task)
    assert stored.status == terminal
    if terminal == TaskStatus.FAILED:
        assert stored.error_msg == "provider reported failure"
    assert relocator.calls == []


@pytest.mark.asyncio
async def test_terminal_task_is_never_polled_again(service, provider, uow_factory, user):
    """Test a duplicate poll of a finished task stops without touching it."""
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.CANCELLED)]
    await service.handle_poll(payload)

    provider.statuses = [observed(TaskStatus.RUNNING, 50)]
    decision = await service.handle_poll(payload)

    assert decision.action == PollAction.STOP
    assert provider.status_calls == 1
    assert (await reload(uow_factory, task)).status == TaskStatus.CANCELLED


@pytest.mark.asyncio
async def test_running_task_does_not_regress(service, provider, uow_factory, user):
    """Test status stays running and progress never decreases on a stale observation."""
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.RUNNING, 60), observed(TaskStatus.QUEUED, 20)]

    await service.handle_poll(payload)
    await service.handle_poll(payload)

    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.RUNNING
    assert stored.progress == 60


@pytest.mark.asyncio
async def test_unchanged_observation_skips_write(
    service, provider, session_factory, uow_factory, user
):
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    async with session_factory() as session:
        await session.execute(
            update(ModelTask).where(ModelTask.id == task.id).values(update_time=1)
        )
        await session.commit()
    provider.statuses = [observed(TaskStatus.QUEUED, 0)]

    await service.handle_poll(payload)

    assert (await reload(uow_factory, task)).update_time == 1


# ----------------------------------------------------------------------
# Relocation
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_artifact_is_skipped(service, provider, relocator, uow_factory, user):
    """Test one failed copy does not fail the task or drop the other artifacts."""
    relocator.fail_roles = {"rendered_image"}
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]

    await service.handle_poll(payload)

    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.SUCCESS
    assert stored.has_durable_assets is True
    assert set(stored.relocated_output) == {"model", "pbr_model"}
    assert stored.output["rendered_image"] == SUCCESS_OUTPUT["rendered_image"]


@pytest.mark.asyncio
async def test_relocation_retried_on_next_poll_of_finished_task(
    service, provider, relocator, uow_factory, user
):
    """Test a success whose assets were never relocated is relocated on redelivery.

    Scenario:
    1. Every artifact copy fails: task stays success without durable assets
    2. The copy works again
    3. A redelivered poll of the finished task relocates without asking the provider
    """
    relocator.fail_roles = {"model", "pbr_model", "rendered_image"}
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]

    await service.handle_poll(payload)
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.SUCCESS
    assert stored.has_durable_assets is False

    relocator.fail_roles = set()
    await service.handle_poll(payload)

    stored = await reload(uow_factory, task)
    assert stored.has_durable_assets is True
    assert provider.status_calls == 1


@pytest.mark.asyncio
async def test_write_back_failure_fails_task(service, provider, uow_factory, user, monkeypatch):
    """Test a successful task is failed when its relocated URLs cannot be saved."""

    async def broken_save(self, task, output):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(ModelTaskRepository, "save_relocated_output", broken_save)
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]

    decision = await service.handle_poll(payload)

    assert decision.status == TaskStatus.FAILED
    stored = await reload(uow_factory, task)
    assert stored.status == TaskStatus.FAILED
    assert stored.error_msg.startswith("relocated output write-back failed")


# ----------------------------------------------------------------------
# Read paths
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_task_is_scoped_to_owner(service, uow_factory, user):
    task = await create_text_task(service, user)

    with pytest.raises(TaskNotFoundError):
        await service.get_task(uuid4(), task.id)

    with pytest.raises(TaskNotFoundError):
        await service.get_task(user.id, uuid4())


@pytest.mark.asyncio
async def test_get_task_refreshes_active_task_without_relocating(
    service, provider, relocator, uow_factory, user
):
    task = await create_text_task(service, user)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]

    fetched = await service.get_task(user.id, task.id)

    assert fetched.status == TaskStatus.SUCCESS
    assert fetched.output["model"] == SUCCESS_OUTPUT["model"]
    assert relocator.calls == []


@pytest.mark.asyncio
async def test_get_task_returns_stored_snapshot_on_provider_error(service, provider, user):
    task = await create_text_task(service, user)
    provider.statuses = [ProviderError("Network error contacting Tripo3D")]

    fetched = await service.get_task(user.id, task.id)

    assert fetched.id == task.id
    assert fetched.status == TaskStatus.QUEUED


@pytest.mark.asyncio
async def test_list_tasks_pages_newest_first(service, provider, user):
    for i in range(3):
        provider.next_task_id = f"tripo-{i}"
        await create_text_task(service, user, prompt=f"prompt {i}")

    page = await service.list_tasks(user.id, page=0, page_size=2)

    assert page.total == 3
    assert len(page.items) == 2

    with pytest.raises(ValidationError):
        await service.list_tasks(user.id, page_size=0)
    with pytest.raises(ValidationError):
        await service.list_tasks(user.id, page=-1)


@pytest.mark.asyncio
async def test_history_models_list_relocated_successes(service, provider, uow_factory, user):
    """Test history items expose the durable PBR model and preview.

    Scenario:
    1. Finish a text task with relocated assets
    2. Create a second task that stays queued
    3. Assert history only lists the finished task, with durable URLs
    """
    task = await create_text_task(service, user)
    payload = await first_payload(uow_factory, task)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]
    await service.handle_poll(payload)
    provider.next_task_id = "tripo-task-2"
    await create_text_task(service, user, prompt="a clay owl")

    page = await service.list_history_models(user.id)
    image_page = await service.list_history_models(user.id, generate_type="image_to_model")

    assert page.total == 1
    item = page.items[0]
    assert item.task_id == task.id
    assert item.prompt == "a bronze fox"
    assert item.model_url.endswith("/pbr_model.glb")
    assert item.thumbnail_url.endswith("/rendered_image.webp")
    assert image_page.total == 0

    with pytest.raises(ValidationError):
        await service.list_history_models(user.id, generate_type="sketch_to_model")


# ----------------------------------------------------------------------
# Failure and recovery
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fail_task_only_moves_active_tasks(service, provider, uow_factory, user):
    """Test forcing a failure never rewrites a task that already finished.

    Scenario:
    1. One task is banned by the provider, one finishes successfully
    2. fail_task on both reports False and keeps their statuses
    3. fail_task on a still-queued task moves it to failed
    """
    banned = await create_text_task(service, user)
    provider.statuses = [observed(TaskStatus.BANNED)]
    await service.handle_poll(await first_payload(uow_factory, banned))

    provider.next_task_id = "tripo-task-2"
    finished = await create_text_task(service, user)
    provider.statuses = [observed(TaskStatus.SUCCESS, 100, SUCCESS_OUTPUT)]
    await service.handle_poll(await first_payload(uow_factory, finished))

    provider.next_task_id = "tripo-task-3"
    queued = await create_text_task(service, user)

    assert await service.fail_task(banned.id, "provider error after 3 attempts") is False
    assert await service.fail_task(finished.id, "provider error after 3 attempts") is False
    assert await service.fail_task(queued.id, "provider error after 3 attempts") is True
    assert (await reload(uow_factory, banned)).status == TaskStatus.BANNED
    assert (await reload(uow_factory, finished)).status == TaskStatus.SUCCESS
    assert (await reload(uow_factory, queued)).status == TaskStatus.FAILED

    with pytest.raises(TaskNotFoundError):
        await service.fail_task(uuid4(), "gone")


@pytest.mark.asyncio
async def test_resume_orphaned_polls(service, uow_factory, user):
    """Test an active task that lost its poll job is re-enqueued.

    Scenario:
    1. Create task, then delete its poll job (simulated crash)
    2. Dry run reports the task without scheduling anything
    3. Real run schedules one job counting from the task's creation time
    4. A second run finds nothing to resume
    """
    task = await create_text_task(service, user)
    async with await uow_factory() as uow:
        jobs = await uow.poll_jobs.get_by_task(task.id)
        await uow.poll_jobs.delete(jobs[0].id)

    dry = await service.resume_orphaned_polls(dry_run=True)
    assert [t.id for t in dry] == [task.id]
    async with await uow_factory() as uow:
        assert await uow.poll_jobs.get_by_task(task.id) == []

    resumed = await service.resume_orphaned_polls()
    assert [t.id for t in resumed] == [task.id]
    async with await uow_factory() as uow:
        jobs = await uow.poll_jobs.get_by_task(task.id)
    assert len(jobs) == 1
    assert jobs[0].poll_start_ms == task.create_time * 1000
    assert jobs[0].unknown_retry_count == 0

    assert await service.resume_orphaned_polls() == []
