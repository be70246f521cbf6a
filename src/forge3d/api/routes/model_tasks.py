"""Model generation task API endpoints.

This module implements REST endpoints for 3D model generation:
- POST /api/model-tasks/upload-image - Upload a reference image, returns an image token
- POST /api/model-tasks - Submit a text_to_model or image_to_model task
- GET /api/model-tasks - Paginated list of the caller's tasks
- GET /api/model-tasks/history-models - Finished models with durable assets
- GET /api/model-tasks/{task_id} - Task snapshot (refreshed from the provider while active)

The caller is identified by the X-User-Id header set by the auth gateway.
Service errors map to HTTP status codes: ValidationError 400,
AuthorizationError 403, TaskNotFoundError 404, ProviderError 502.
"""

from typing import NoReturn
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from forge3d.api.dependencies import get_current_user_id, get_model_task_service
from forge3d.models.model_task import ModelTask
from forge3d.services.exceptions import (
    AuthorizationError,
    ConfigurationError,
    ProviderError,
    ServiceError,
    TaskNotFoundError,
    ValidationError,
)
from forge3d.services.model_tasks.service import HistoryModel, ModelTaskService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/model-tasks", tags=["model-tasks"])


# Request/Response Models


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateTaskRequest(CamelModel):
    """Request model for submitting a generation task."""

    generate_type: str = Field(..., description="text_to_model or image_to_model")
    prompt: str | None = Field(default=None, description="Text prompt (text_to_model)")
    image_token: str | None = Field(
        default=None, description="Token returned by upload-image (image_to_model)"
    )
    style: str | None = Field(default=None, description="Optional style (image_to_model only)")
    model_version: str | None = Field(default=None, description="Provider model version")


class UploadImageResponse(CamelModel):
    image_token: str
    message: str


class TaskResponse(CamelModel):
    """Snapshot of a generation task."""

    task_id: UUID = Field(..., description="Local task id")
    provider_task_id: str | None = Field(default=None, description="Provider task id")
    generate_type: str
    status: str = Field(
        ..., description="queued, running, success, failed, banned, expired or cancelled"
    )
    progress: int = Field(..., ge=0, le=100)
    prompt: str | None = None
    style: str | None = None
    model_version: str | None = None
    output: dict = Field(default_factory=dict, description="Provider and relocated artifact URLs")
    error_msg: str | None = None
    create_time: int
    update_time: int

    @classmethod
    def from_task(cls, task: ModelTask) -> "TaskResponse":
        return cls(
            task_id=task.id,
            provider_task_id=task.provider_task_id,
            generate_type=task.type.value,
            status=task.status.value,
            progress=task.progress,
            prompt=task.prompt,
            style=task.style.value if task.style else None,
            model_version=task.model_version,
            output=task.output,
            error_msg=task.error_msg,
            create_time=task.create_time,
            update_time=task.update_time,
        )


class TaskListResponse(CamelModel):
    total: int
    page: int
    page_size: int
    items: list[TaskResponse] = Field(..., alias="list")


class HistoryModelResponse(CamelModel):
    task_id: UUID
    generate_type: str
    prompt: str
    model_url: str
    thumbnail_url: str
    create_time: int

    @classmethod
    def from_history(cls, item: HistoryModel) -> "HistoryModelResponse":
        return cls(
            task_id=item.task_id,
            generate_type=item.generate_type.value,
            prompt=item.prompt,
            model_url=item.model_url,
            thumbnail_url=item.thumbnail_url,
            create_time=item.create_time,
        )


class HistoryModelListResponse(CamelModel):
    total: int
    page: int
    page_size: int
    items: list[HistoryModelResponse] = Field(..., alias="list")


def _raise_http(e: ServiceError, event: str, **context) -> NoReturn:
    """Translate a service error into an HTTPException."""
    if isinstance(e, ValidationError):
        status_code = status.HTTP_400_BAD_REQUEST
    elif isinstance(e, AuthorizationError):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(e, TaskNotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ProviderError):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(e, ConfigurationError):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    log = logger.warning if status_code < 500 else logger.error
    log(event, error=str(e), error_type=type(e).__name__, status_code=status_code, **context)
    raise HTTPException(status_code=status_code, detail=str(e))


# API Endpoints


@router.post(
    "/upload-image", response_model=UploadImageResponse, status_code=status.HTTP_200_OK
)
async def upload_image(
    file: UploadFile = File(...),
    user_id: UUID = Depends(get_current_user_id),
    service: ModelTaskService = Depends(get_model_task_service),
) -> UploadImageResponse:
    """Upload a reference image for image_to_model generation.

    Accepts image/webp, image/jpeg and image/png up to 10MB.

    Example:
        POST /api/model-tasks/upload-image (multipart, field "file")

        Response 200:
        {"imageToken": "4a3f...", "message": "Image uploaded"}
    """
    data = await file.read()
    try:
        image_token = await service.upload_image(
            user_id, data, file.content_type or "", file.filename
        )
    except ServiceError as e:
        _raise_http(e, "upload_image_failed", user_id=str(user_id))
    return UploadImageResponse(image_token=image_token, message="Image uploaded")


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: CreateTaskRequest,
    user_id: UUID = Depends(get_current_user_id),
    service: ModelTaskService = Depends(get_model_task_service),
) -> TaskResponse:
    """Submit a generation task to the provider and start polling it.

    Example:
        POST /api/model-tasks
        {"generateType": "text_to_model", "prompt": "a bronze fox statue"}

        Response 201:
        {"taskId": "...", "providerTaskId": "...", "status": "queued", "progress": 0, ...}
    """
    try:
        task = await service.create_task(
            user_id,
            request.generate_type,
            prompt=request.prompt,
            image_token=request.image_token,
            style=request.style,
            model_version=request.model_version,
        )
    except ServiceError as e:
        _raise_http(e, "create_task_failed", user_id=str(user_id))
    return TaskResponse.from_task(task)


@router.get("", response_model=TaskListResponse, status_code=status.HTTP_200_OK)
async def list_tasks(
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    user_id: UUID = Depends(get_current_user_id),
    service: ModelTaskService = Depends(get_model_task_service),
) -> TaskListResponse:
    """List the caller's tasks, newest first (page numbering starts at 0)."""
    try:
        result = await service.list_tasks(user_id, page=page, page_size=page_size)
    except ServiceError as e:
        _raise_http(e, "list_tasks_failed", user_id=str(user_id))
    return TaskListResponse(
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        items=[TaskResponse.from_task(task) for task in result.items],
    )


@router.get(
    "/history-models", response_model=HistoryModelListResponse, status_code=status.HTTP_200_OK
)
async def list_history_models(
    page: int = Query(default=0, ge=0),
    page_size: int = Query(default=10, ge=1, le=100, alias="pageSize"),
    generate_type: str | None = Query(default=None, alias="generateType"),
    user_id: UUID = Depends(get_current_user_id),
    service: ModelTaskService = Depends(get_model_task_service),
) -> HistoryModelListResponse:
    """List the caller's finished models that have been copied to durable storage."""
    try:
        result = await service.list_history_models(
            user_id, page=page, page_size=page_size, generate_type=generate_type
        )
    except ServiceError as e:
        _raise_http(e, "list_history_models_failed", user_id=str(user_id))
    return HistoryModelListResponse(
        total=result.total,
        page=result.page,
        page_size=result.page_size,
        items=[HistoryModelResponse.from_history(item) for item in result.items],
    )


@router.get("/{task_id}", response_model=TaskResponse, status_code=status.HTTP_200_OK)
async def get_task(
    task_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    service: ModelTaskService = Depends(get_model_task_service),
) -> TaskResponse:
    """Get one of the caller's tasks, synced with the provider while still active."""
    try:
        task = await service.get_task(user_id, task_id)
    except ServiceError as e:
        _raise_http(e, "get_task_failed", user_id=str(user_id), task_id=str(task_id))
    return TaskResponse.from_task(task)
