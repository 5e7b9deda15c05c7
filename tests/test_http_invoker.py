from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from ai_task_router.enums import ProviderId, TaskType
from ai_task_router.http_invoker import HttpProviderInvoker
from ai_task_router.orchestrator import ProviderInvocationError


def _invoker(handler) -> HttpProviderInvoker:
    return HttpProviderInvoker(
        {
            ProviderId.FAST_CLOUD: "https://fast.example.test/",
            ProviderId.LOCAL_DEVICE: "http://127.0.0.1:9000",
        },
        transport=httpx.MockTransport(handler),
    )


async def _invoke(invoker: HttpProviderInvoker, provider: ProviderId) -> object:
    try:
        return await invoker.invoke(provider, "google/gemini-2.5-flash", TaskType.CHAT, "hi")
    finally:
        await invoker.close()


def test_invoke_posts_model_task_and_input() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"output": "hello"})

    result = asyncio.run(_invoke(_invoker(handler), ProviderId.FAST_CLOUD))

    assert result == {"output": "hello"}
    assert str(seen[0].url) == "https://fast.example.test/invoke"
    assert json.loads(seen[0].content) == {
        "model": "google/gemini-2.5-flash",
        "task": "chat",
        "input": "hi",
    }


def test_error_status_raises_invocation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    with pytest.raises(ProviderInvocationError) as exc_info:
        asyncio.run(_invoke(_invoker(handler), ProviderId.LOCAL_DEVICE))

    assert exc_info.value.status_code == 503
    assert exc_info.value.provider == ProviderId.LOCAL_DEVICE
    assert "overloaded" in str(exc_info.value)


def test_transport_error_raises_invocation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderInvocationError) as exc_info:
        asyncio.run(_invoke(_invoker(handler), ProviderId.FAST_CLOUD))

    assert "ConnectError" in str(exc_info.value)
    assert exc_info.value.status_code is None


def test_missing_base_url_raises_invocation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(ProviderInvocationError):
        asyncio.run(_invoke(_invoker(handler), ProviderId.COST_EFFICIENT_CLOUD))
