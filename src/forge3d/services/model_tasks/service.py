"""Model generation task orchestration.

Owns the task state machine: task creation against the provider, the bounded
polling loop (one handle_poll call per delivered poll job), reactions to
terminal and ambiguous provider states, and relocation of finished assets into
owned storage.

Persisted state only ever moves forward. Every status write is a conditional
single-row update that applies while the row is still queued or running, so a
stale or duplicated poll can never revert a terminal task.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol
from uuid import UUID

import structlog

from forge3d.models.model_task import (
    GenerateStyle,
    ModelGenerateType,
    ModelTask,
    TaskStatus,
    has_model_url,
)
from forge3d.services.exceptions import (
    AuthorizationError,
    RelocationError,
    ServiceError,
    TaskNotFoundError,
    ValidationError,
)
from forge3d.services.model_tasks.output import (
    RELOCATED_ARTIFACTS,
    merge_output,
    pick_model_url,
    relocated_fragment,
    resolve_active_status,
    resolve_progress,
)
from forge3d.services.storage.qiniu_client import QiniuStorage
from forge3d.services.storage.relocator import AssetRelocator, build_asset_key
from forge3d.services.tripo.client import (
    ProviderTaskStatus,
    TripoClient,
    validate_generation_input,
)
from forge3d.workers.poll_scheduler import PollPayload, PollPolicy, PollScheduler, now_ms

logger = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "timeout"
UNKNOWN_EXHAUSTED_MESSAGE = "status unknown after {count} retries"
MISSING_MODEL_URL_MESSAGE = "provider reported success without a model url"
MAX_PAGE_SIZE = 100


class GenerationProvider(Protocol):
    async def submit(
        self,
        generate_type: ModelGenerateType | str,
        prompt: str | None = None,
        image_token: str | None = None,
        style: GenerateStyle | str | None = None,
        model_version: str | None = None,
    ) -> str: ...

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus: ...

    async def upload_image(
        self, data: bytes, mime_type: str, filename: str | None = None
    ) -> str: ...


class Relocator(Protocol):
    async def relocate(self, source_url: str, destination_key: str) -> str: ...


class PollAction(str, Enum):
    RESCHEDULE = "reschedule"
    STOP = "stop"


@dataclass(frozen=True)
class PollDecision:
    """Outcome of one poll: schedule the next one, or end the chain."""

    action: PollAction
    status: TaskStatus
    reason: str
    next_payload: PollPayload | None = None
    delay_ms: int = 0

    @classmethod
    def reschedule(
        cls, status: TaskStatus, payload: PollPayload, delay_ms: int, reason: str
    ) -> "PollDecision":
        return cls(
            action=PollAction.RESCHEDULE,
            status=status,
            reason=reason,
            next_payload=payload,
            delay_ms=delay_ms,
        )

    @classmethod
    def stop(cls, status: TaskStatus, reason: str) -> "PollDecision":
        return cls(action=PollAction.STOP, status=status, reason=reason)


@dataclass(frozen=True)
class HistoryModel:
    """A finished model with durable assets, as shown in the user's history."""

    task_id: UUID
    generate_type: ModelGenerateType
    prompt: str
    model_url: str
    thumbnail_url: str
    create_time: int

    @classmethod
    def from_task(cls, task: ModelTask) -> "HistoryModel":
        relocated = task.relocated_output
        return cls(
            task_id=task.id,
            generate_type=task.type,
            prompt=(task.prompt or "") if task.type == ModelGenerateType.TEXT_TO_MODEL else "",
            model_url=pick_model_url(relocated),
            thumbnail_url=relocated.get("rendered_image", ""),
            create_time=task.create_time,
        )


@dataclass
class Page:
    total: int
    page: int
    page_size: int
    items: list = field(default_factory=list)


class ModelTaskService:
    """Creates generation tasks and drives them to a terminal state."""

    def __init__(
        self,
        uow_factory: Callable,
        provider: GenerationProvider,
        relocator: Relocator,
        scheduler: PollScheduler | None = None,
        policy: PollPolicy | None = None,
        clock: Callable[[], int] = now_ms,
        default_model_version: str | None = None,
    ):
        """Initialize service.

        Args:
            uow_factory: Factory creating UnitOfWork instances
            provider: Generation provider client (TripoClient)
            relocator: Asset relocator (AssetRelocator)
            scheduler: Poll job scheduler (default: one on uow_factory)
            policy: Polling constants (default: PollPolicy())
            clock: Wall clock in epoch milliseconds
            default_model_version: Provider model version used when a request names none
        """
        self.uow_factory = uow_factory
        self.provider = provider
        self.relocator = relocator
        self.scheduler = scheduler or PollScheduler(uow_factory)
        self.policy = policy or PollPolicy()
        self.clock = clock
        self.default_model_version = default_model_version

    @classmethod
    def from_settings(cls, settings, uow_factory: Callable) -> "ModelTaskService":
        """Wire the Tripo3D client, Qiniu storage and relocator from settings."""
        provider = TripoClient(
            api_key=settings.tripo3d_api_key,
            base_url=settings.tripo3d_api_url,
            timeout=settings.http_timeout_seconds,
        )
        storage = QiniuStorage(
            access_key=settings.qiniu_access_key,
            secret_key=settings.qiniu_secret_key,
            bucket=settings.qiniu_bucket,
            domain=settings.qiniu_domain,
            upload_host=settings.qiniu_upload_host,
        )
        return cls(
            uow_factory,
            provider,
            AssetRelocator(storage),
            default_model_version=settings.tripo3d_model_version,
        )

    # ------------------------------------------------------------------
    # User-facing operations
    # ------------------------------------------------------------------

    async def create_task(
        self,
        user_id: UUID,
        generate_type: ModelGenerateType | str,
        prompt: str | None = None,
        image_token: str | None = None,
        style: GenerateStyle | str | None = None,
        model_version: str | None = None,
    ) -> ModelTask:
        """Submit a generation request and start polling it.

        Nothing is stored when the provider rejects the submission. On success
        the task row and its first poll job are written in one transaction.

        Raises:
            AuthorizationError: User unknown or disabled
            ValidationError: Input missing for the generation type
            ProviderError: Provider submission failed
        """
        async with await self.uow_factory() as uow:
            await self._require_enabled_user(uow, user_id)

        parsed_type, parsed_style = validate_generation_input(
            generate_type, prompt=prompt, image_token=image_token, style=style
        )
        version = model_version or self.default_model_version

        provider_task_id = await self.provider.submit(
            parsed_type,
            prompt=prompt,
            image_token=image_token,
            style=parsed_style,
            model_version=version,
        )

        task = ModelTask(
            user_id=user_id,
            type=parsed_type,
            provider_task_id=provider_task_id,
            status=TaskStatus.QUEUED,
            progress=0,
            prompt=prompt if parsed_type == ModelGenerateType.TEXT_TO_MODEL else None,
            image_token=image_token if parsed_type == ModelGenerateType.IMAGE_TO_MODEL else None,
            style=parsed_style,
            model_version=version,
            output={},
        )
        payload = PollPayload(
            task_id=task.id,
            provider_task_id=provider_task_id,
            poll_start_ms=self.clock(),
        )
        async with await self.uow_factory() as uow:
            await uow.model_tasks.add(task)
            await self.scheduler.schedule(payload, self.policy.initial_delay_ms, uow=uow)

        logger.info(
            "model_task.created",
            task_id=str(task.id),
            provider_task_id=provider_task_id,
            generate_type=parsed_type.value,
            user_id=str(user_id),
        )
        return task

    async def upload_image(
        self, user_id: UUID, data: bytes, mime_type: str, filename: str | None = None
    ) -> str:
        """Upload an image for a later image_to_model request.

        Returns:
            Provider image token

        Raises:
            AuthorizationError: User unknown or disabled
            ValidationError: Unsupported type or size
            ProviderError: Upload failed
        """
        async with await self.uow_factory() as uow:
            await self._require_enabled_user(uow, user_id)

        image_token = await self.provider.upload_image(data, mime_type, filename)
        logger.info("model_task.image_uploaded", user_id=str(user_id), size=len(data))
        return image_token

    async def get_task(self, user_id: UUID, task_id: UUID) -> ModelTask:
        """Return the user's task, refreshed from the provider while it is active.

        Provider failures during the refresh are logged and the stored
        snapshot is returned instead.

        Raises:
            TaskNotFoundError: Task missing or owned by another user
        """
        async with await self.uow_factory() as uow:
            task = await uow.model_tasks.get_for_user(task_id, user_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")

        if not task.is_active or not task.provider_task_id:
            return task

        try:
            return await self.sync_task(task.id)
        except ServiceError as e:
            logger.warning(
                "model_task.sync_failed",
                task_id=str(task.id),
                provider_task_id=task.provider_task_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return task

    async def list_tasks(self, user_id: UUID, page: int = 0, page_size: int = 10) -> Page:
        """List the user's tasks, newest first (page numbering starts at 0)."""
        offset = self._page_offset(page, page_size)
        async with await self.uow_factory() as uow:
            tasks, total = await uow.model_tasks.list_by_user_paginated(
                user_id, offset=offset, limit=page_size
            )
        return Page(total=total, page=page, page_size=page_size, items=tasks)

    async def list_history_models(
        self,
        user_id: UUID,
        page: int = 0,
        page_size: int = 10,
        generate_type: ModelGenerateType | str | None = None,
    ) -> Page:
        """List the user's successful models that have durable assets, newest first."""
        offset = self._page_offset(page, page_size)
        parsed_type = None
        if generate_type:
            try:
                parsed_type = ModelGenerateType(generate_type)
            except ValueError as e:
                raise ValidationError(f"Unsupported generateType: {generate_type}") from e

        async with await self.uow_factory() as uow:
            tasks, total = await uow.model_tasks.list_history_models(
                user_id, offset=offset, limit=page_size, generate_type=parsed_type
            )
        items = [HistoryModel.from_task(task) for task in tasks]
        return Page(total=total, page=page, page_size=page_size, items=items)

    # ------------------------------------------------------------------
    # Polling loop
    # ------------------------------------------------------------------

    async def sync_task(self, task_id: UUID) -> ModelTask:
        """Fetch the provider status of a task and persist it.

        An unknown observation is never written. An observation that changes
        nothing skips the write, leaving update_time untouched.

        Raises:
            TaskNotFoundError: Task record missing
            ProviderError: Provider status call failed
        """
        task = await self._load(task_id)
        if not task.is_active or not task.provider_task_id:
            return task
        observation = await self.provider.get_status(task.provider_task_id)
        return await self._apply_observation(task, observation)

    async def handle_poll(self, payload: PollPayload) -> PollDecision:
        """Run one iteration of the polling loop for a task.

        Order of checks:
        1. Stored task already terminal: finish a pending relocation, stop
        2. Poll budget spent (elapsed >= max duration): fail with "timeout", stop
        3. Provider status:
           - unknown: reschedule with a doubled delay, fail once the
             consecutive unknown count reaches the limit
           - queued/running: persist, reschedule at the base interval
           - success with a model url: persist, relocate assets, stop
           - success without a model url: fail, stop
           - failed/banned/expired/cancelled: persist verbatim, stop

        Raises:
            TaskNotFoundError: Task record missing
            ProviderError: Provider status call failed (caller retries the job)
        """
        task = await self._load(payload.task_id)
        log = logger.bind(task_id=str(task.id), provider_task_id=payload.provider_task_id)

        if task.is_terminal:
            if self._needs_relocation(task):
                await self.relocate_outputs(task)
            log.info("poll.stopped", status=task.status.value, reason="already_terminal")
            return PollDecision.stop(task.status, "already terminal")

        elapsed_ms = self.clock() - payload.poll_start_ms
        if elapsed_ms >= self.policy.max_duration_ms:
            await self._fail(task, TIMEOUT_MESSAGE)
            log.warning("poll.timeout", elapsed_ms=elapsed_ms)
            return PollDecision.stop(TaskStatus.FAILED, TIMEOUT_MESSAGE)

        observation = await self.provider.get_status(payload.provider_task_id)

        if observation.status == TaskStatus.UNKNOWN:
            count = payload.unknown_retry_count + 1
            if count >= self.policy.max_unknown_retries:
                message = UNKNOWN_EXHAUSTED_MESSAGE.format(count=count)
                await self._fail(task, message)
                log.warning("poll.unknown_exhausted", raw_status=observation.raw_status)
                return PollDecision.stop(TaskStatus.FAILED, message)
            delay_ms = self.policy.unknown_delay_ms(count)
            log.info(
                "poll.unknown_status",
                raw_status=observation.raw_status,
                unknown_retry_count=count,
                delay_ms=delay_ms,
            )
            return PollDecision.reschedule(
                task.status, payload.with_unknown_count(count), delay_ms, "unknown status"
            )

        task = await self._apply_observation(task, observation)

        if task.is_active:
            log.debug("poll.rescheduled", status=task.status.value, progress=task.progress)
            return PollDecision.reschedule(
                task.status, payload.with_unknown_count(0), self.policy.interval_ms, "in progress"
            )

        if self._needs_relocation(task):
            task = await self.relocate_outputs(task)

        log.info("poll.stopped", status=task.status.value, reason="terminal")
        return PollDecision.stop(task.status, task.error_msg or "terminal")

    async def relocate_outputs(self, task: ModelTask) -> ModelTask:
        """Copy the task's provider artifacts into owned storage.

        Each artifact is relocated independently: a missing URL or a failed
        copy skips only that artifact. The relocated URLs are merged into
        output["qiniu_output"]; only a failure to write them back marks the
        task failed.
        """
        log = logger.bind(task_id=str(task.id))
        urls: dict[str, str] = {}
        for role in RELOCATED_ARTIFACTS:
            source_url = task.output.get(role)
            if not isinstance(source_url, str) or not source_url:
                log.info("relocation.skipped", role=role, reason="missing_url")
                continue
            key = build_asset_key(task.user_id, task.id, role, source_url)
            try:
                urls[role] = await self.relocator.relocate(source_url, key)
            except RelocationError as e:
                log.warning("relocation.artifact_failed", role=role, key=e.key, error=str(e))

        if not urls:
            log.warning("relocation.nothing_relocated")
            return task

        try:
            async with await self.uow_factory() as uow:
                current = await uow.model_tasks.get_by_id(task.id)
                if current is None:
                    raise TaskNotFoundError(f"Task {task.id} not found")
                merged = merge_output(current.output, relocated_fragment(urls))
                saved = await uow.model_tasks.save_relocated_output(current, merged)
        except Exception as e:
            log.error(
                "relocation.write_back_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._invalidate_success(task.id, f"relocated output write-back failed: {e}")
            return await self._load(task.id)

        if not saved:
            log.warning("relocation.task_no_longer_successful", status=current.status.value)
        else:
            log.info("relocation.saved", roles=sorted(urls))
        return current

    async def fail_task(self, task_id: UUID, message: str) -> bool:
        """Force an active task into failed (used once a poll job's retry budget is spent).

        A task that is already terminal, success included, keeps its status.

        Returns:
            True if the task was moved to failed, False if it was no longer active
        """
        async with await self.uow_factory() as uow:
            task = await uow.model_tasks.get_by_id(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            if not task.is_active:
                return False
            failed = await uow.model_tasks.mark_failed(task, message)
        if failed:
            logger.warning("model_task.failed", task_id=str(task_id), error_msg=message)
        return failed

    async def _invalidate_success(self, task_id: UUID, message: str) -> None:
        async with await self.uow_factory() as uow:
            task = await uow.model_tasks.get_by_id(task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            invalidated = await uow.model_tasks.invalidate_success(task, message)
        if invalidated:
            logger.warning("model_task.failed", task_id=str(task_id), error_msg=message)

    async def resume_orphaned_polls(
        self, limit: int | None = None, dry_run: bool = False
    ) -> list[ModelTask]:
        """Re-enqueue active tasks whose poll chain was lost.

        The poll budget keeps counting from the task's creation time, and the
        consecutive unknown count starts over at 0.

        Returns:
            Tasks that were (or, with dry_run, would be) re-enqueued
        """
        async with await self.uow_factory() as uow:
            tasks = await uow.model_tasks.get_active_without_poll_job(limit=limit)
            if dry_run:
                return tasks
            for task in tasks:
                payload = PollPayload(
                    task_id=task.id,
                    provider_task_id=task.provider_task_id or "",
                    poll_start_ms=task.create_time * 1000,
                )
                await self.scheduler.schedule(payload, self.policy.initial_delay_ms, uow=uow)

        if tasks:
            logger.info("poll.recovery", orphaned_tasks_resumed=len(tasks))
        return tasks

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _apply_observation(
        self, task: ModelTask, observation: ProviderTaskStatus
    ) -> ModelTask:
        if observation.status == TaskStatus.UNKNOWN:
            return task

        status = observation.status
        error_msg = None
        if status in (TaskStatus.QUEUED, TaskStatus.RUNNING):
            status = resolve_active_status(task.status, status)
        elif status == TaskStatus.SUCCESS and not has_model_url(observation.output):
            status = TaskStatus.FAILED
            error_msg = MISSING_MODEL_URL_MESSAGE
        elif status == TaskStatus.FAILED:
            error_msg = "provider reported failure"

        progress = resolve_progress(task.progress, observation.progress)
        output = merge_output(task.output, observation.output)

        if status == task.status and progress == task.progress and output == task.output:
            return task

        async with await self.uow_factory() as uow:
            current = await uow.model_tasks.get_by_id(task.id)
            if current is None:
                raise TaskNotFoundError(f"Task {task.id} not found")
            updated = await uow.model_tasks.record_observation(
                current,
                status,
                progress,
                merge_output(current.output, observation.output),
                error_msg=error_msg,
            )

        if updated:
            logger.info(
                "model_task.status_updated",
                task_id=str(task.id),
                old_status=task.status.value,
                new_status=current.status.value,
                progress=current.progress,
            )
        else:
            logger.info(
                "model_task.update_skipped",
                task_id=str(task.id),
                stored_status=current.status.value,
                observed_status=status.value,
            )
        return current

    async def _fail(self, task: ModelTask, message: str) -> None:
        async with await self.uow_factory() as uow:
            current = await uow.model_tasks.get_by_id(task.id)
            if current is None:
                raise TaskNotFoundError(f"Task {task.id} not found")
            if not current.is_active:
                return
            await uow.model_tasks.mark_failed(current, message)
        logger.warning("model_task.failed", task_id=str(task.id), error_msg=message)

    async def _load(self, task_id: UUID) -> ModelTask:
        async with await self.uow_factory() as uow:
            task = await uow.model_tasks.get_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    @staticmethod
    def _needs_relocation(task: ModelTask) -> bool:
        return (
            task.status == TaskStatus.SUCCESS
            and not task.has_durable_assets
            and task.has_model_output()
        )

    @staticmethod
    async def _require_enabled_user(uow, user_id: UUID) -> None:
        user = await uow.users.get_by_id(user_id)
        if user is None:
            raise AuthorizationError(f"User {user_id} not found")
        if not user.is_enabled:
            raise AuthorizationError(f"User {user_id} is disabled")

    @staticmethod
    def _page_offset(page: int, page_size: int) -> int:
        if page < 0:
            raise ValidationError("page must be >= 0")
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError(f"pageSize must be between 1 and {MAX_PAGE_SIZE}")
        return page * page_size
