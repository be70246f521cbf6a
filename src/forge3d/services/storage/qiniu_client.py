"""Qiniu Kodo object storage client.

Uploads use Qiniu's resumable block protocol so a stream of unknown length
can be stored while holding at most one block in memory:

1. POST {upload_host}/mkblk/{block_size} with each block body -> ctx
2. POST {upload_host}/mkfile/{file_size}/key/{urlsafe_b64(key)} with the
   comma-joined ctx list -> object created

Every request carries an upload token signed by the qiniu SDK's Auth.
"""

from typing import AsyncIterator, Protocol

import httpx
import qiniu
import structlog

from forge3d.services.exceptions import ConfigurationError, StorageError

logger = structlog.get_logger(__name__)

BLOCK_SIZE = 4 * 1024 * 1024


class ObjectStorage(Protocol):
    """Durable object storage accepting a byte stream under a key."""

    async def put_stream(self, key: str, chunks: AsyncIterator[bytes]) -> str:
        """Store the stream under key and return its public URL."""
        ...


def sign_upload_token(
    access_key: str, secret_key: str, bucket: str, key: str, expires: int = 3600
) -> str:
    """Build a Qiniu upload token scoped to bucket:key.

    Scoping the policy to the key lets an upload overwrite an existing object,
    so relocation retries replace earlier partial results.

    Args:
        access_key: Qiniu access key
        secret_key: Qiniu secret key
        bucket: Target bucket
        key: Target object key
        expires: Token lifetime in seconds

    Returns:
        Upload token string
    """
    return qiniu.Auth(access_key, secret_key).upload_token(bucket, key, expires)


class QiniuStorage:
    """Object storage backed by a Qiniu bucket."""

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket: str,
        domain: str,
        upload_host: str = "https://upload.qiniup.com",
        timeout: float = 60.0,
        block_size: int = BLOCK_SIZE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Qiniu storage.

        Args:
            access_key: Qiniu access key (QINIU_ACCESS_KEY)
            secret_key: Qiniu secret key (QINIU_SECRET_KEY)
            bucket: Bucket name (QINIU_BUCKET)
            domain: Public domain bound to the bucket (QINIU_DOMAIN)
            upload_host: Upload endpoint of the bucket's region
            timeout: Per-request timeout in seconds
            block_size: Resumable upload block size (Qiniu requires 4MB)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.access_key = access_key
        self.secret_key = secret_key
        self.bucket = bucket
        self.domain = domain.rstrip("/")
        if self.domain and "://" not in self.domain:
            self.domain = f"https://{self.domain}"
        self.upload_host = upload_host.rstrip("/")
        self.timeout = timeout
        self.block_size = block_size
        self.transport = transport

    def upload_token(self, key: str, expires: int = 3600) -> str:
        if not (self.access_key and self.secret_key and self.bucket):
            raise ConfigurationError("Qiniu credentials not configured")
        return sign_upload_token(self.access_key, self.secret_key, self.bucket, key, expires)

    def public_url(self, key: str) -> str:
        return f"{self.domain}/{key}"

    async def put_stream(self, key: str, chunks: AsyncIterator[bytes]) -> str:
        """Upload a byte stream of unknown length under key.

        Args:
            key: Destination object key
            chunks: Async iterator of byte chunks (any chunk size)

        Returns:
            Public URL of the stored object

        Raises:
            ConfigurationError: Credentials missing
            StorageError: Empty stream or Qiniu rejected a request
            httpx.HTTPError: Transport failure talking to Qiniu
        """
        token = self.upload_token(key)
        headers = {"Authorization": f"UpToken {token}"}

        contexts: list[str] = []
        total_size = 0
        buffer = bytearray()

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            host = self.upload_host
            async for chunk in chunks:
                buffer.extend(chunk)
                while len(buffer) >= self.block_size:
                    block = bytes(buffer[: self.block_size])
                    del buffer[: self.block_size]
                    ctx, host = await self._make_block(client, host, headers, block)
                    contexts.append(ctx)
                    total_size += len(block)

            if buffer:
                ctx, host = await self._make_block(client, host, headers, bytes(buffer))
                contexts.append(ctx)
                total_size += len(buffer)

            if not contexts:
                raise StorageError(f"Refusing to store empty object {key}")

            response = await client.post(
                f"{host}/mkfile/{total_size}/key/{qiniu.urlsafe_base64_encode(key)}",
                headers={**headers, "Content-Type": "text/plain"},
                content=",".join(contexts).encode("ascii"),
            )
            body = self._check(response, "mkfile")

        stored_key = body.get("key") or key
        logger.debug(
            "storage.object_stored",
            key=stored_key,
            size=total_size,
            blocks=len(contexts),
        )
        return self.public_url(stored_key)

    async def _make_block(
        self, client: httpx.AsyncClient, host: str, headers: dict, block: bytes
    ) -> tuple[str, str]:
        response = await client.post(
            f"{host}/mkblk/{len(block)}",
            headers={**headers, "Content-Type": "application/octet-stream"},
            content=block,
        )
        body = self._check(response, "mkblk")
        ctx = body.get("ctx")
        if not isinstance(ctx, str) or not ctx:
            raise StorageError("Qiniu mkblk response did not contain a ctx")
        # Subsequent blocks and mkfile go to the host that accepted this block
        next_host = body.get("host") or host
        return ctx, str(next_host).rstrip("/")

    @staticmethod
    def _check(response: httpx.Response, operation: str) -> dict:
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code != 200 or not isinstance(body, dict):
            detail = body.get("error") if isinstance(body, dict) else response.text[:200]
            raise StorageError(f"Qiniu {operation} failed ({response.status_code}): {detail}")
        return body
