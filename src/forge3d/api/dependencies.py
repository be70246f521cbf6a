"""FastAPI dependencies for request context.

This module provides reusable FastAPI dependencies for:
- The task orchestrator created during app lifespan
- The caller's user id, supplied by the upstream auth gateway
"""

from typing import Annotated
from uuid import UUID

from fastapi import Header, HTTPException, Request, status

from forge3d.services.model_tasks.service import ModelTaskService

USER_ID_HEADER = "X-User-Id"


def get_model_task_service(request: Request) -> ModelTaskService:
    """Get the task orchestrator from app state.

    Args:
        request: FastAPI Request object (contains app.state)

    Returns:
        ModelTaskService created in the app lifespan

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(service=Depends(get_model_task_service)):
        ...     page = await service.list_tasks(user_id)
    """
    return request.app.state.model_task_service


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header()] = None,
) -> UUID:
    """Read the authenticated user id set by the auth gateway.

    Raises:
        HTTPException: 401 Unauthorized if the header is missing or not a UUID
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Missing {USER_ID_HEADER} header"
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {USER_ID_HEADER} header"
        )
