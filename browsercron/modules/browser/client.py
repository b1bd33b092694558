"""Browser Use Cloud provider client."""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from browsercron.errors import ProviderError
from browsercron.logging_config import get_logger
from browsercron.modules.browser.models import ProviderTaskStatus

logger = get_logger(__name__)


class BaseTaskProvider(ABC):
    """Abstract browser automation provider."""

    @abstractmethod
    async def submit(
        self,
        task: str,
        start_url: Optional[str] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> str:
        """Create a remote task and return its handle."""

    @abstractmethod
    async def get_status(self, task_id: str) -> ProviderTaskStatus:
        """Fetch the current status (and output, once finished)."""

    @abstractmethod
    def stream_steps(self, task_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield step payloads as the remote agent produces them.

        The feed may end before the task does, or never end at all. It is
        never a completion signal.
        """

    async def close(self) -> None:
        """Release network resources."""


_transport_retry = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    reraise=True,
)


class BrowserUseClient(BaseTaskProvider):
    """HTTP client for the Browser Use Cloud task API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.browser-use.com/api/v2",
        timeout: float = 30.0,
        step_poll_interval: float = 2.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._step_poll_interval = step_poll_interval
        self._client = http_client or httpx.AsyncClient(
            base_url=self._base_url,
            timeout=timeout,
            headers={
                "X-Browser-Use-API-Key": api_key,
                "Content-Type": "application/json",
            },
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError:
            raise
        except httpx.HTTPError as exc:
            raise ProviderError(f"Browser Use request failed: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text[:500]
            logger.error(
                "browser_use_http_error",
                method=method, path=path, status=response.status_code, detail=detail,
            )
            raise ProviderError(f"Browser Use API error {response.status_code}: {detail}")

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("Browser Use returned a non-JSON response") from exc

    @_transport_retry
    async def submit(
        self,
        task: str,
        start_url: Optional[str] = None,
        output_schema: Optional[dict[str, Any]] = None,
    ) -> str:
        payload: dict[str, Any] = {"task": task}
        if start_url:
            payload["startUrl"] = start_url
        if output_schema:
            payload["structuredOutput"] = json.dumps(output_schema)

        data = await self._request("POST", "/tasks", json=payload)
        task_id = data.get("id")
        if not task_id:
            raise ProviderError("Browser Use did not return a task id")
        logger.info("browser_use_task_created", task_id=task_id)
        return str(task_id)

    @_transport_retry
    async def get_status(self, task_id: str) -> ProviderTaskStatus:
        data = await self._request("GET", f"/tasks/{task_id}")
        return ProviderTaskStatus(
            status=str(data.get("status", "")).lower(),
            output=data.get("output"),
            steps=data.get("steps") or [],
        )

    async def stream_steps(self, task_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield newly appeared steps by re-reading the task view.

        Stops once the task reports a terminal status.
        """
        seen = 0
        while True:
            status = await self.get_status(task_id)
            for step in status.steps[seen:]:
                yield step
            seen = max(seen, len(status.steps))
            if status.is_terminal:
                return
            await asyncio.sleep(self._step_poll_interval)

    async def close(self) -> None:
        await self._client.aclose()
