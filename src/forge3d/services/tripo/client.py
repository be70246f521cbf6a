"""Tripo3D API client for 3D model generation with response normalization.

Every upstream failure (transport error, non-2xx status, malformed body,
non-zero business code) is raised as ProviderError. Status responses are
normalized into ProviderTaskStatus; a status string the client does not
recognize becomes TaskStatus.UNKNOWN instead of an error, so provider API
drift degrades into a retryable poll rather than a crash.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx

from forge3d.models.model_task import GenerateStyle, ModelGenerateType, TaskStatus
from forge3d.services.exceptions import ConfigurationError, ProviderError, ValidationError

ALLOWED_IMAGE_MIME_TYPES = ("image/webp", "image/jpeg", "image/png")
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_PROMPT_LENGTH = 1024

# Provider output keys worth keeping (everything else in the payload is dropped)
PROVIDER_OUTPUT_KEYS = ("model", "base_model", "pbr_model", "rendered_image")

TRACE_ID_HEADER = "X-Tripo-Trace-ID"

_STATUS_MAP = {status.value: status for status in TaskStatus if status != TaskStatus.UNKNOWN}

_STYLE_MAP = {
    GenerateStyle.CARTOON: "person:person2cartoon",
    GenerateStyle.CLAY: "object:clay",
    GenerateStyle.STEAMPUNK: "object:steampunk",
    GenerateStyle.VENOM: "animal:venom",
    GenerateStyle.BARBIE: "object:barbie",
    GenerateStyle.CHRISTMAS: "object:christmas",
    GenerateStyle.GOLD: "gold",
    GenerateStyle.ANCIENT_BRONZE: "ancient_bronze",
}

_MIME_FILE_TYPES = {"image/webp": "webp", "image/jpeg": "jpg", "image/png": "png"}


@dataclass(frozen=True)
class ProviderTaskStatus:
    """Normalized provider view of a generation task."""

    status: TaskStatus
    progress: int = 0
    output: dict[str, str] = field(default_factory=dict)
    raw_status: Any = None


def validate_generation_input(
    generate_type: ModelGenerateType | str,
    prompt: str | None = None,
    image_token: str | None = None,
    style: GenerateStyle | str | None = None,
) -> tuple[ModelGenerateType, GenerateStyle | None]:
    """Check that the input required by the generation type is present.

    Args:
        generate_type: text_to_model or image_to_model
        prompt: Text prompt (required for text_to_model)
        image_token: Uploaded image reference (required for image_to_model)
        style: Optional style, only kept for image_to_model

    Returns:
        Tuple of (parsed generation type, parsed style or None)

    Raises:
        ValidationError: If the type is unknown or its required field is missing
    """
    try:
        parsed_type = ModelGenerateType(generate_type)
    except ValueError as e:
        raise ValidationError(
            "generateType must be text_to_model or image_to_model"
        ) from e

    if parsed_type == ModelGenerateType.TEXT_TO_MODEL:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required for text_to_model")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise ValidationError(f"prompt must be at most {MAX_PROMPT_LENGTH} characters")
        if image_token:
            raise ValidationError("imageToken is not accepted for text_to_model")
        return parsed_type, None

    if not image_token or not image_token.strip():
        raise ValidationError("imageToken is required for image_to_model")
    if prompt:
        raise ValidationError("prompt is not accepted for image_to_model")
    if style is None or style == "":
        return parsed_type, None
    try:
        return parsed_type, GenerateStyle(style)
    except ValueError as e:
        raise ValidationError(f"Unsupported style: {style}") from e


def normalize_task_status(data: Any) -> ProviderTaskStatus:
    """Map a provider task payload onto ProviderTaskStatus.

    Never raises: malformed payloads come back as UNKNOWN with progress 0.
    """
    if not isinstance(data, dict):
        return ProviderTaskStatus(status=TaskStatus.UNKNOWN, raw_status=None)

    raw_status = data.get("status")
    status = TaskStatus.UNKNOWN
    if isinstance(raw_status, str):
        status = _STATUS_MAP.get(raw_status.strip().lower(), TaskStatus.UNKNOWN)

    raw_output = data.get("output")
    output: dict[str, str] = {}
    if isinstance(raw_output, dict):
        output = {
            key: value
            for key, value in raw_output.items()
            if key in PROVIDER_OUTPUT_KEYS and isinstance(value, str) and value
        }

    return ProviderTaskStatus(
        status=status,
        progress=_coerce_progress(data.get("progress")),
        output=output,
        raw_status=raw_status,
    )


def _coerce_progress(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        progress = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, progress))


class TripoClient:
    """HTTP client for the Tripo3D v2 OpenAPI."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.tripo3d.ai/v2/openapi",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Tripo3D client.

        Args:
            api_key: Tripo3D API key (from TRIPO3D_API_KEY env var)
            base_url: API base URL (from TRIPO3D_API_URL env var)
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def submit(
        self,
        generate_type: ModelGenerateType | str,
        prompt: str | None = None,
        image_token: str | None = None,
        style: GenerateStyle | str | None = None,
        model_version: str | None = None,
        image_type: str = "jpg",
    ) -> str:
        """Submit a generation task.

        Args:
            generate_type: text_to_model or image_to_model
            prompt: Text prompt (text_to_model)
            image_token: Token returned by upload_image (image_to_model)
            style: Optional style (image_to_model only)
            model_version: Provider model version, provider default when None
            image_type: File type hint for the uploaded image

        Returns:
            Provider task id

        Raises:
            ValidationError: Required input missing (no request is sent)
            ProviderError: Transport failure or provider-side rejection
        """
        parsed_type, parsed_style = validate_generation_input(
            generate_type, prompt=prompt, image_token=image_token, style=style
        )

        payload: dict[str, Any] = {"type": parsed_type.value}
        if parsed_type == ModelGenerateType.TEXT_TO_MODEL:
            payload["prompt"] = prompt
        else:
            payload["file"] = {"type": image_type, "file_token": image_token}
            if parsed_style is not None:
                payload["style"] = _STYLE_MAP[parsed_style]
        if model_version:
            payload["model_version"] = model_version

        data = await self._request("POST", "/task", json=payload)
        task_id = data.get("task_id")
        if not isinstance(task_id, str) or not task_id:
            raise ProviderError("Tripo3D response did not contain a task_id")
        return task_id

    async def get_status(self, provider_task_id: str) -> ProviderTaskStatus:
        """Query the current status of a provider task.

        Args:
            provider_task_id: Id returned by submit()

        Returns:
            Normalized status (UNKNOWN for unrecognized provider values)

        Raises:
            ProviderError: Transport failure or provider-side rejection
        """
        if not provider_task_id:
            raise ValidationError("provider_task_id is required")
        data = await self._request("GET", f"/task/{provider_task_id}")
        return normalize_task_status(data)

    async def upload_image(self, data: bytes, mime_type: str, filename: str | None = None) -> str:
        """Upload an image for image_to_model generation.

        The mime type and size are checked locally before anything is sent.

        Args:
            data: Raw image bytes
            mime_type: Declared content type
            filename: Optional original filename

        Returns:
            Image token to pass to submit()

        Raises:
            ValidationError: Unsupported mime type, empty or oversized image
            ProviderError: Transport failure or provider-side rejection
        """
        if mime_type not in ALLOWED_IMAGE_MIME_TYPES:
            raise ValidationError(
                f"Unsupported image type {mime_type!r}, expected one of "
                + "/".join(ALLOWED_IMAGE_MIME_TYPES)
            )
        if not data:
            raise ValidationError("Image file is empty")
        if len(data) > MAX_IMAGE_BYTES:
            raise ValidationError("Image file exceeds the 10MB limit")

        name = filename or f"upload.{_MIME_FILE_TYPES[mime_type]}"
        result = await self._request("POST", "/upload", files={"file": (name, data, mime_type)})
        token = result.get("image_token") or result.get("file_token")
        if not isinstance(token, str) or not token:
            raise ProviderError("Tripo3D upload response did not contain an image_token")
        return token

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        """Send a request and unwrap the provider envelope {code, data, message}.

        Raises:
            ConfigurationError: API key not configured
            ProviderError: Any transport, HTTP or business-code failure
        """
        if not self.api_key:
            raise ConfigurationError("TRIPO3D_API_KEY not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", headers=self.headers, **kwargs
                )
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timeout after {self.timeout}s: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Network error: {e}") from e

        trace_id = response.headers.get(TRACE_ID_HEADER)
        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            message = f"Tripo3D request failed: {response.status_code} {response.reason_phrase}"
            if response.status_code == 401:
                message += " - API key may be invalid or expired"
            if isinstance(body, dict) and body.get("message"):
                message += f", detail: {body['message']}"
            raise ProviderError(
                message,
                http_status=response.status_code,
                trace_id=trace_id,
                code=body.get("code") if isinstance(body, dict) else None,
            )

        if not isinstance(body, dict):
            raise ProviderError(
                "Tripo3D returned a non-JSON response",
                http_status=response.status_code,
                trace_id=trace_id,
            )

        code = body.get("code")
        if code != 0:
            raise ProviderError(
                f"Tripo3D business error: {body.get('message') or 'no message'}",
                http_status=response.status_code,
                trace_id=trace_id,
                code=code if isinstance(code, int) else None,
            )

        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError(
                "Tripo3D response did not contain a data object",
                http_status=response.status_code,
                trace_id=trace_id,
            )
        return data
