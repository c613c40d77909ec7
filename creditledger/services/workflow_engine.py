"""HTTP client for the external workflow engine (n8n REST API)."""

import asyncio
from typing import Any

import httpx

from creditledger.core.config import get_settings
from creditledger.core.logging import get_logger

log = get_logger(__name__)


class WorkflowEngineError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class WorkflowEngineClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "X-N8N-API-KEY": self.api_key}

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            return await client.post(url, json=payload, headers=self._headers())

    async def run(self, workflow_id: str, inputs: dict[str, Any]) -> Any:
        """Run a workflow and return its JSON result; raise WorkflowEngineError on any failure."""
        url = f"{self.base_url}/api/v1/workflows/{workflow_id}/run"
        try:
            response = await asyncio.wait_for(self._post(url, {"input": inputs}), timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            log.warning("workflow_engine_timeout", workflow_id=workflow_id, timeout_seconds=self.timeout_seconds)
            raise WorkflowEngineError(f"Workflow timed out after {self.timeout_seconds:g}s") from e
        except httpx.HTTPError as e:
            log.warning("workflow_engine_unreachable", workflow_id=workflow_id, error=str(e))
            raise WorkflowEngineError(f"Workflow engine unreachable: {e.__class__.__name__}") from e

        if response.status_code >= 300:
            log.warning(
                "workflow_engine_error",
                workflow_id=workflow_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise WorkflowEngineError(
                f"Workflow engine error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise WorkflowEngineError("Workflow engine returned a non-JSON response", response.status_code) from e


def get_workflow_engine() -> WorkflowEngineClient | None:
    """None when the engine is not configured."""
    settings = get_settings()
    if not settings.workflow_engine_url or not settings.workflow_engine_api_key:
        return None
    return WorkflowEngineClient(
        settings.workflow_engine_url,
        settings.workflow_engine_api_key,
        timeout_seconds=settings.workflow_timeout_seconds,
    )
