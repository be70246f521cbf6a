"""Copies provider-hosted artifacts into owned object storage."""

from pathlib import PurePosixPath
from typing import AsyncIterator
from urllib.parse import urlparse
from uuid import UUID

import httpx
import structlog

from forge3d.services.exceptions import RelocationError
from forge3d.services.model_tasks.output import RELOCATED_ARTIFACTS
from forge3d.services.storage.qiniu_client import ObjectStorage

logger = structlog.get_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 256 * 1024


def build_asset_key(user_id: UUID | str, task_id: UUID | str, role: str, source_url: str) -> str:
    """Deterministic destination key for one artifact of a task.

    Format: model-tasks/{user_id}/{task_id}/{role}.{ext}

    The extension comes from the source URL path when it has one, otherwise
    from the role's default. Re-running relocation for the same artifact
    therefore targets the same key.
    """
    suffix = PurePosixPath(urlparse(source_url).path).suffix.lower().lstrip(".")
    if not suffix or not suffix.isalnum() or len(suffix) > 8:
        suffix = RELOCATED_ARTIFACTS.get(role, "bin")
    return f"model-tasks/{user_id}/{task_id}/{role}.{suffix}"


class AssetRelocator:
    """Streams a remote artifact into ObjectStorage with bounded memory."""

    def __init__(
        self,
        storage: ObjectStorage,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize relocator.

        Args:
            storage: Destination object storage
            timeout: Download timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.storage = storage
        self.timeout = timeout
        self.transport = transport

    async def relocate(self, source_url: str, destination_key: str) -> str:
        """Copy source_url into storage under destination_key.

        Args:
            source_url: Provider (temporary) artifact URL
            destination_key: Object key, see build_asset_key()

        Returns:
            Durable URL of the stored object

        Raises:
            RelocationError: Download or upload failed (wraps the cause)
        """
        logger.info("relocation.started", key=destination_key)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=True
            ) as client:
                async with client.stream("GET", source_url) as response:
                    response.raise_for_status()
                    url = await self.storage.put_stream(
                        destination_key, self._iter_body(response)
                    )
        except Exception as e:
            logger.warning(
                "relocation.failed",
                key=destination_key,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise RelocationError(destination_key, e) from e

        logger.info("relocation.completed", key=destination_key, url=url)
        return url

    @staticmethod
    async def _iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
            yield chunk
