import logging
from typing import Any

import httpx

from client.api.request_client import RequestClient
from client.api.websocket_schemas import PromptRequestBody, PromptResponse, StatusPayload
from core.types_registry import CompiledPrompt, PromptSubmissionError, QueueKind

logger = logging.getLogger(__name__)


class EngineApi:
    """Typed wrappers over the engine's HTTP endpoints."""

    def __init__(self, request_client: RequestClient):
        self.request_client = request_client

    # ============================================================================
    # Submission
    # ============================================================================

    async def queue_prompt(
        self,
        number: int,
        prompt: CompiledPrompt,
        client_id: str | None,
    ) -> PromptResponse:
        """Submit a job.

        ``number`` < 0 queues at the front, 0 appends, anything else asks for
        that explicit queue position.

        Raises:
            PromptSubmissionError: The engine answered with a non-200 status.
        """
        body = PromptRequestBody.build(
            number, dict(prompt.output), dict(prompt.workflow), client_id
        )
        response = await self.request_client.fetch_api(
            "/prompt",
            method="POST",
            json=body.model_dump(exclude_none=True),
            headers={"Content-Type": "application/json"},
        )
        if response.status_code != 200:
            raise PromptSubmissionError(response.status_code, _json_or_none(response))
        return PromptResponse.model_validate(response.json())

    async def get_prompt_status(self) -> StatusPayload:
        """Queue status, polled by the transport while the live channel is down."""
        response = await self.request_client.fetch_api("/prompt")
        response.raise_for_status()
        return StatusPayload.model_validate(response.json())

    async def interrupt(self) -> None:
        """Stop the engine's running job. The local submission queue is not touched."""
        await self._post_item("interrupt", None)

    # ============================================================================
    # Queue and history
    # ============================================================================

    async def get_items(self, kind: QueueKind) -> dict[str, list[Any]]:
        if kind == "queue":
            return await self.get_queue()
        return await self.get_history()

    async def get_queue(self) -> dict[str, list[Any]]:
        try:
            response = await self.request_client.fetch_api("/queue")
            data = response.json()
            return {
                "running": list(data.get("queue_running", [])),
                "pending": list(data.get("queue_pending", [])),
            }
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to load queue: {e}")
            return {"running": [], "pending": []}

    async def get_history(self, max_items: int = 200) -> dict[str, list[Any]]:
        try:
            response = await self.request_client.fetch_api(
                "/history", params={"max_items": max_items}
            )
            data = response.json()
            return {"history": list(data.values())}
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error(f"Failed to load history: {e}")
            return {"history": []}

    async def delete_item(self, kind: QueueKind, item_id: str) -> None:
        await self._post_item(kind, {"delete": [item_id]})

    async def clear_items(self, kind: QueueKind) -> None:
        await self._post_item(kind, {"clear": True})

    # ============================================================================
    # Engine metadata
    # ============================================================================

    async def get_system_stats(self) -> dict[str, Any]:
        response = await self.request_client.fetch_api("/system_stats")
        return response.json()

    async def get_node_defs(self) -> dict[str, Any]:
        """Node definitions keyed by type name (``/object_info``)."""
        response = await self.request_client.fetch_api("/object_info")
        response.raise_for_status()
        return response.json()

    async def get_extensions(self) -> list[str]:
        response = await self.request_client.fetch_api("/extensions")
        return response.json()

    async def get_embeddings(self) -> list[str]:
        response = await self.request_client.fetch_api("/embeddings")
        return response.json()

    async def get_model_folders(self) -> list[str]:
        response = await self.request_client.fetch_api("/models")
        if response.status_code == 404:
            return []
        return response.json()

    async def get_models(self, folder: str) -> list[str] | None:
        response = await self.request_client.fetch_api(f"/models/{folder}")
        if response.status_code == 404:
            return None
        return response.json()

    async def _post_item(self, route: str, body: dict[str, Any] | None) -> None:
        try:
            await self.request_client.fetch_api(
                f"/{route}",
                method="POST",
                json=body,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error(f"POST /{route} failed: {e}")


def _json_or_none(response: httpx.Response) -> dict[str, Any] | None:
    try:
        data = response.json()
    except ValueError:
        logger.warning(f"Non-JSON error body from engine (HTTP {response.status_code})")
        return None
    return data if isinstance(data, dict) else {"error": str(data)}
