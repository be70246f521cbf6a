"""Tripo3D client tests.

Tests use httpx.MockTransport so request building, envelope unwrapping and
error normalization are exercised without network access.
"""

import json

import httpx
import pytest

from forge3d.models.model_task import GenerateStyle, ModelGenerateType, TaskStatus
from forge3d.services.exceptions import ConfigurationError, ProviderError, ValidationError
from forge3d.services.tripo.client import (
    MAX_IMAGE_BYTES,
    TripoClient,
    normalize_task_status,
    validate_generation_input,
)

BASE_URL = "https://tripo.test/v2/openapi"


def make_client(handler) -> tuple[TripoClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def recording_handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = TripoClient(
        api_key="tsk_test", base_url=BASE_URL, transport=httpx.MockTransport(recording_handler)
    )
    return client, requests


@pytest.mark.asyncio
async def test_submit_text_to_model_request():
    """Test submit posts the text task payload and returns the provider task id."""
    client, requests = make_client(
        lambda request: httpx.Response(200, json={"code": 0, "data": {"task_id": "t-123"}})
    )

    task_id = await client.submit(
        ModelGenerateType.TEXT_TO_MODEL, prompt="a bronze fox", model_version="v2.5-20250123"
    )

    assert task_id == "t-123"
    request = requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/task"
    assert request.headers["Authorization"] == "Bearer tsk_test"
    assert json.loads(request.content) == {
        "type": "text_to_model",
        "prompt": "a bronze fox",
        "model_version": "v2.5-20250123",
    }


@pytest.mark.asyncio
async def test_submit_image_to_model_maps_style():
    client, requests = make_client(
        lambda request: httpx.Response(200, json={"code": 0, "data": {"task_id": "t-456"}})
    )

    await client.submit("image_to_model", image_token="img-1", style=GenerateStyle.CLAY)

    body = json.loads(requests[0].content)
    assert body["type"] == "image_to_model"
    assert body["file"] == {"type": "jpg", "file_token": "img-1"}
    assert body["style"] == "object:clay"
    assert "prompt" not in body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"generate_type": "text_to_model"},
        {"generate_type": "text_to_model", "prompt": "   "},
        {"generate_type": "image_to_model"},
        {"generate_type": "image_to_model", "image_token": "img", "style": "watercolor"},
        {"generate_type": "sketch_to_model", "prompt": "x"},
    ],
)
async def test_submit_validation_happens_before_network(kwargs):
    """Test missing or invalid input raises ValidationError without sending anything."""
    client, requests = make_client(lambda request: httpx.Response(500))

    with pytest.raises(ValidationError):
        await client.submit(**kwargs)

    assert requests == []


@pytest.mark.asyncio
async def test_non_zero_business_code_is_provider_error_with_trace_id():
    """Test a 200 response with code != 0 is still a failure."""
    client, _ = make_client(
        lambda request: httpx.Response(
            200,
            json={"code": 2010, "message": "insufficient credit"},
            headers={"X-Tripo-Trace-ID": "trace-abc"},
        )
    )

    with pytest.raises(ProviderError) as exc_info:
        await client.submit("text_to_model", prompt="a fox")

    assert exc_info.value.code == 2010
    assert exc_info.value.trace_id == "trace-abc"
    assert exc_info.value.http_status == 200
    assert "insufficient credit" in str(exc_info.value)


@pytest.mark.asyncio
async def test_http_error_status_is_provider_error():
    client, _ = make_client(
        lambda request: httpx.Response(401, json={"code": 1002, "message": "bad key"})
    )

    with pytest.raises(ProviderError) as exc_info:
        await client.get_status("t-1")

    assert exc_info.value.http_status == 401
    assert "invalid or expired" in str(exc_info.value)


@pytest.mark.asyncio
async def test_non_json_body_is_provider_error():
    client, _ = make_client(lambda request: httpx.Response(200, text="<html>gateway</html>"))

    with pytest.raises(ProviderError, match="non-JSON"):
        await client.get_status("t-1")


@pytest.mark.asyncio
async def test_transport_failure_is_provider_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = make_client(handler)

    with pytest.raises(ProviderError, match="Network error"):
        await client.get_status("t-1")


@pytest.mark.asyncio
async def test_missing_task_id_is_provider_error():
    client, _ = make_client(lambda request: httpx.Response(200, json={"code": 0, "data": {}}))

    with pytest.raises(ProviderError, match="task_id"):
        await client.submit("text_to_model", prompt="a fox")


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error():
    client = TripoClient(api_key="", base_url=BASE_URL)

    with pytest.raises(ConfigurationError):
        await client.get_status("t-1")


@pytest.mark.asyncio
async def test_get_status_normalizes_payload():
    """Test status mapping, progress clamping and output filtering."""
    payload = {
        "code": 0,
        "data": {
            "task_id": "t-1",
            "status": "success",
            "progress": 100,
            "output": {
                "model": "https://tripo.test/m.glb",
                "pbr_model": "https://tripo.test/p.glb",
                "rendered_image": "https://tripo.test/r.webp",
                "generate_parts": True,
                "base_model": None,
            },
        },
    }
    client, requests = make_client(lambda request: httpx.Response(200, json=payload))

    status = await client.get_status("t-1")

    assert str(requests[0].url) == f"{BASE_URL}/task/t-1"
    assert status.status == TaskStatus.SUCCESS
    assert status.progress == 100
    assert status.output == {
        "model": "https://tripo.test/m.glb",
        "pbr_model": "https://tripo.test/p.glb",
        "rendered_image": "https://tripo.test/r.webp",
    }


@pytest.mark.parametrize(
    "data,expected_status,expected_progress",
    [
        ({"status": "running", "progress": 42}, TaskStatus.RUNNING, 42),
        ({"status": "RUNNING", "progress": "57"}, TaskStatus.RUNNING, 57),
        ({"status": "queued", "progress": -5}, TaskStatus.QUEUED, 0),
        ({"status": "running", "progress": 180}, TaskStatus.RUNNING, 100),
        ({"status": "running", "progress": "n/a"}, TaskStatus.RUNNING, 0),
        ({"status": "banned"}, TaskStatus.BANNED, 0),
        ({"status": "expired"}, TaskStatus.EXPIRED, 0),
        ({"status": "cancelled"}, TaskStatus.CANCELLED, 0),
        ({"status": "postprocessing", "progress": 99}, TaskStatus.UNKNOWN, 99),
        ({"status": None}, TaskStatus.UNKNOWN, 0),
        ({"status": 3}, TaskStatus.UNKNOWN, 0),
        ({}, TaskStatus.UNKNOWN, 0),
    ],
)
def test_normalize_task_status(data, expected_status, expected_progress):
    status = normalize_task_status(data)

    assert status.status == expected_status
    assert status.progress == expected_progress


def test_normalize_task_status_never_raises_on_garbage():
    assert normalize_task_status(None).status == TaskStatus.UNKNOWN
    assert normalize_task_status(["success"]).status == TaskStatus.UNKNOWN
    assert normalize_task_status({"status": "success", "output": "m.glb"}).output == {}


@pytest.mark.asyncio
async def test_upload_image_sends_multipart_and_returns_token():
    client, requests = make_client(
        lambda request: httpx.Response(200, json={"code": 0, "data": {"image_token": "img-9"}})
    )

    token = await client.upload_image(b"\x89PNG...", "image/png", "fox.png")

    assert token == "img-9"
    request = requests[0]
    assert str(request.url) == f"{BASE_URL}/upload"
    assert request.headers["Content-Type"].startswith("multipart/form-data")
    assert b'filename="fox.png"' in request.content


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data,mime_type",
    [
        (b"GIF89a", "image/gif"),
        (b"", "image/png"),
        (b"x" * (MAX_IMAGE_BYTES + 1), "image/jpeg"),
    ],
)
async def test_upload_image_rejects_before_network(data, mime_type):
    client, requests = make_client(lambda request: httpx.Response(500))

    with pytest.raises(ValidationError):
        await client.upload_image(data, mime_type)

    assert requests == []


def test_validate_generation_input_rejects_mixed_input():
    with pytest.raises(ValidationError, match="imageToken is not accepted"):
        validate_generation_input("text_to_model", prompt="fox", image_token="img")

    with pytest.raises(ValidationError, match="prompt is not accepted"):
        validate_generation_input("image_to_model", prompt="fox", image_token="img")


def test_validate_generation_input_ignores_empty_style():
    assert validate_generation_input("image_to_model", image_token="img", style="") == (
        ModelGenerateType.IMAGE_TO_MODEL,
        None,
    )
