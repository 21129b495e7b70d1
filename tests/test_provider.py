import json
from typing import Callable, List

import httpx
import pytest

from library_assistant.core.config import AssistantConfig
from library_assistant.core.errors import ConfigurationError, ProviderError
from library_assistant.core.models import CatalogSummary
from library_assistant.services.provider import TavusConversationProvider

BASE_URL = "https://tavusapi.com/v2"

SUMMARY = CatalogSummary(total=2, subject_counts={"STORY": 2}, lines=["- a", "- b"])


def make_provider(
    handler: Callable[[httpx.Request], httpx.Response],
    **overrides,
) -> TavusConversationProvider:
    config = AssistantConfig(
        **{"api_key": "key-1", "replica_id": "r-1", "persona_id": "", "base_url": BASE_URL, **overrides}
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=BASE_URL)
    return TavusConversationProvider(config, client=client)


@pytest.mark.asyncio
async def test_create_posts_conversation_request() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "conversation_id": "c1",
            "conversation_url": "https://tavus.daily.co/c1",
            "status": "active",
            "created_at": "2024-05-01T10:00:00Z",
        })

    provider = make_provider(handler)
    handle = await provider.create("be helpful", SUMMARY)

    assert handle.id == "c1"
    assert handle.join_url == "https://tavus.daily.co/c1"
    assert handle.created_at.year == 2024

    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/v2/conversations"
    assert request.headers["x-api-key"] == "key-1"
    body = json.loads(request.content)
    assert body["replica_id"] == "r-1"
    assert body["conversational_context"] == "be helpful"
    assert "2 books" in body["custom_greeting"]
    assert body["properties"]["max_call_duration"] == 120
    assert body["properties"]["enable_recording"] is False
    assert "persona_id" not in body


def test_persona_included_when_configured() -> None:
    provider = make_provider(lambda r: httpx.Response(200), persona_id="p-9")
    assert provider.build_create_request("ctx", SUMMARY)["persona_id"] == "p-9"


@pytest.mark.asyncio
async def test_error_status_raises_provider_error_with_api_message() -> None:
    provider = make_provider(lambda r: httpx.Response(400, json={"message": "Invalid replica_id"}))

    with pytest.raises(ProviderError) as exc_info:
        await provider.create("ctx", SUMMARY)

    assert exc_info.value.status_code == 400
    assert "Invalid replica_id" in str(exc_info.value)


@pytest.mark.asyncio
async def test_network_error_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = make_provider(handler)
    with pytest.raises(ProviderError):
        await provider.end("c1")


@pytest.mark.asyncio
async def test_malformed_create_response() -> None:
    provider = make_provider(lambda r: httpx.Response(200, json={"status": "active"}))
    with pytest.raises(ProviderError):
        await provider.create("ctx", SUMMARY)


@pytest.mark.asyncio
async def test_end_get_and_delete_paths() -> None:
    seen: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(f"{request.method} {request.url.path}")
        if request.method == "GET":
            return httpx.Response(200, json={"conversation_id": "c1", "conversation_url": "https://x/c1"})
        return httpx.Response(200)

    provider = make_provider(handler)
    await provider.end("c1")
    handle = await provider.get("c1")
    await provider.delete("c1")

    assert handle.id == "c1"
    assert seen == [
        "POST /v2/conversations/c1/end",
        "GET /v2/conversations/c1",
        "DELETE /v2/conversations/c1",
    ]


@pytest.mark.asyncio
async def test_missing_api_key_is_configuration_error() -> None:
    calls: List[httpx.Request] = []
    provider = make_provider(lambda r: calls.append(r) or httpx.Response(200), api_key="")

    with pytest.raises(ConfigurationError):
        await provider.end("c1")
    assert calls == []
