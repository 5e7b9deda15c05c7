from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import httpx

from ai_task_router.enums import ProviderId, TaskType
from ai_task_router.orchestrator import ProviderInvocationError


def _error_message(exc: httpx.RequestError) -> str:
    message = str(exc).strip() or repr(exc)
    kind = "timeout" if isinstance(exc, httpx.TimeoutException) else "request error"
    return f"{exc.__class__.__name__} ({kind}): {message}"


class HttpProviderInvoker:
    """Calls providers over HTTP: ``POST <base_url>/invoke``.

    The request body is ``{"model", "task", "input"}``; a 2xx JSON body is
    returned as-is. Transport errors and non-2xx responses raise
    ``ProviderInvocationError``.
    """

    def __init__(
        self,
        base_urls: Mapping[ProviderId, str],
        *,
        timeout_seconds: float = 30.0,
        connect_timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_urls = {provider: url.rstrip("/") for provider, url in base_urls.items()}
        connect_timeout = max(0.1, float(connect_timeout_seconds))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                max(0.1, float(timeout_seconds)),
                connect=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
            transport=transport,
        )

    async def invoke(
        self,
        provider: ProviderId,
        model: str,
        task: TaskType,
        payload: Any,
    ) -> Any:
        base_url = self.base_urls.get(provider)
        if not base_url:
            raise ProviderInvocationError(
                provider, model, f"No base URL configured for provider '{provider.value}'."
            )
        body = {"model": model, "task": task.value, "input": payload}
        try:
            response = await self.client.post(f"{base_url}/invoke", json=body)
        except httpx.RequestError as exc:
            raise ProviderInvocationError(provider, model, _error_message(exc)) from exc

        if response.status_code >= 400:
            detail = response.text.strip()[:500]
            raise ProviderInvocationError(
                provider,
                model,
                f"Provider '{provider.value}' returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderInvocationError(
                provider,
                model,
                f"Provider '{provider.value}' returned a non-JSON body.",
                status_code=response.status_code,
            ) from exc

    async def close(self) -> None:
        await self.client.aclose()
