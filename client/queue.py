import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel

from client.api.endpoints import EngineApi
from client.api.websocket_schemas import (
    ExecutedData,
    ExecutingData,
    ExecutionCachedData,
    ExecutionErrorData,
    ExecutionInterruptedData,
    ExecutionLifecycleData,
)
from client.session_manager import SessionIdentity
from core.event_bus import EventBus
from core.graph import Graph
from core.graph_compiler import GraphCompiler
from core.types_registry import (
    CompiledPrompt,
    EventName,
    NodeErrors,
    PromptSubmissionError,
    QueueRequest,
    SubmittedPrompt,
    format_node_errors,
)

logger = logging.getLogger(__name__)

_Payload = TypeVar("_Payload", bound=BaseModel)

ErrorSink = Callable[[str], Any]

FINISHED_STATUSES = frozenset({"success", "error", "interrupted"})


@dataclass
class _BufferedRequest:
    request: QueueRequest
    future: asyncio.Future[bool]


@dataclass
class PromptError:
    """Payload of the ``prompt_error`` event."""

    message: str
    node_errors: NodeErrors | None = None
    status_code: int | None = None


class QueueDriver:
    """Single-flight submission queue.

    Requests are buffered FIFO and processed by one drain task, so exactly
    one submission is in flight at a time. Every ``submit`` caller awaits
    the outcome of its own request.
    """

    def __init__(
        self,
        graph: Graph,
        compiler: GraphCompiler,
        api: EngineApi,
        identity: SessionIdentity,
        event_bus: EventBus,
        error_sink: ErrorSink | None = None,
    ):
        self.graph = graph
        self.compiler = compiler
        self.api = api
        self.identity = identity
        self.event_bus = event_bus
        self.error_sink = error_sink

        self._pending: deque[_BufferedRequest] = deque()
        self._drain_task: asyncio.Task[None] | None = None

        self.last_node_errors: NodeErrors | None = None
        self.last_execution_error: ExecutionErrorData | None = None
        self.prompts: dict[str, SubmittedPrompt] = {}
        self.running_prompt_id: str | None = None
        self.node_outputs: dict[str, dict[str, Any]] = {}

        self._subscribe()

    @property
    def processing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def submit(self, priority: int = 0, repeat_count: int = 1) -> bool:
        """Queue the current graph ``repeat_count`` times.

        Returns True when every repeat was accepted without node errors.

        Raises:
            GraphCompilationError: A node or widget hook failed while compiling.
        """
        request = QueueRequest(priority=priority, repeat_count=repeat_count)
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending.append(_BufferedRequest(request, future))
        if not self.processing:
            self._drain_task = asyncio.create_task(self._drain())
        return await future

    async def interrupt(self) -> None:
        """Interrupt the engine's running job. Buffered requests are unaffected."""
        await self.api.interrupt()

    # ============================================================================
    # Processing loop
    # ============================================================================

    async def _drain(self) -> None:
        self.last_node_errors = None
        last: QueueRequest | None = None
        while self._pending:
            item = self._pending.popleft()
            last = item.request
            try:
                accepted = await self._process(item.request)
            except Exception as e:
                logger.error(f"Queue: failed to process request {item.request}: {e}", exc_info=True)
                if not item.future.done():
                    item.future.set_exception(e)
                continue
            if not item.future.done():
                item.future.set_result(accepted)

        if last is not None:
            self.event_bus.emit(
                EventName.PROMPT_QUEUED,
                {"number": last.priority, "batch_count": last.repeat_count},
            )

    async def _process(self, request: QueueRequest) -> bool:
        for _ in range(request.repeat_count):
            try:
                prompt = self.compiler.compile(self.graph)
                if not await self._submit_one(request.priority, prompt):
                    return False
                self._run_after_queued(prompt)
            finally:
                self.event_bus.emit(EventName.REFRESH)
        return True

    async def _submit_one(self, number: int, prompt: CompiledPrompt) -> bool:
        try:
            response = await self.api.queue_prompt(number, prompt, self.identity.client_id)
        except PromptSubmissionError as e:
            self.last_node_errors = e.node_errors or None
            self._notify(PromptError(e.format(), e.node_errors, e.status_code))
            return False
        except httpx.HTTPError as e:
            self._notify(PromptError(f"Failed to submit prompt: {e}"))
            return False
        except ValueError as e:
            # a 200 whose body is not a prompt response, e.g. from a proxy
            self._notify(PromptError(f"Unexpected response to prompt submission: {e}"))
            return False

        if response.node_errors:
            self.last_node_errors = response.node_errors
            message = "Prompt has node errors" + format_node_errors(response.node_errors)
            self._notify(PromptError(message, response.node_errors))
            return False

        self.prompts[response.prompt_id] = SubmittedPrompt(
            prompt_id=response.prompt_id,
            number=response.number,
            node_ids=list(prompt.output.keys()),
        )
        logger.info(f"Queued prompt {response.prompt_id} (number={response.number})")
        return True

    def _run_after_queued(self, prompt: CompiledPrompt) -> None:
        # e.g. seed rotation between repeats
        for serialised in prompt.workflow.get("nodes", []):
            node = self.graph.get_node_by_id(serialised["id"])
            if node is None:
                continue
            for widget in node.widgets:
                if widget.after_queued is not None:
                    widget.after_queued()

    def _notify(self, error: PromptError) -> None:
        logger.warning(f"Queue: prompt rejected: {error.message}")
        self.event_bus.emit(EventName.PROMPT_ERROR, error)
        if self.error_sink is not None:
            self.error_sink(error.message)

    # ============================================================================
    # Lifecycle correlation
    # ============================================================================

    def _subscribe(self) -> None:
        self.event_bus.on(EventName.EXECUTION_START, self._on_execution_start)
        self.event_bus.on(EventName.EXECUTING, self._on_executing)
        self.event_bus.on(EventName.EXECUTED, self._on_executed)
        self.event_bus.on(EventName.EXECUTION_CACHED, self._on_execution_cached)
        self.event_bus.on(EventName.EXECUTION_SUCCESS, self._on_execution_success)
        self.event_bus.on(EventName.EXECUTION_ERROR, self._on_execution_error)
        self.event_bus.on(EventName.EXECUTION_INTERRUPTED, self._on_execution_interrupted)

    def _prompt(self, prompt_id: str | None) -> SubmittedPrompt | None:
        if prompt_id is None:
            prompt_id = self.running_prompt_id
        return self.prompts.get(prompt_id) if prompt_id is not None else None

    def _on_execution_start(self, payload: Any) -> None:
        data = _coerce(ExecutionLifecycleData, payload)
        self.last_execution_error = None
        self.running_prompt_id = data.prompt_id
        prompt = self._prompt(data.prompt_id)
        if prompt is not None:
            prompt.status = "running"

    def _on_executing(self, payload: Any) -> None:
        data = _coerce(ExecutingData, payload)
        node = data.display_node if data.display_node is not None else data.node
        prompt = self._prompt(data.prompt_id)
        if node is None:
            # The engine finished the prompt
            if prompt is not None:
                prompt.running_node = None
            self.running_prompt_id = None
            return
        if prompt is not None:
            prompt.running_node = str(node)

    def _on_executed(self, payload: Any) -> None:
        data = _coerce(ExecutedData, payload)
        node_id = str(data.display_node if data.display_node is not None else data.node)
        output = data.output or {}
        _merge_output(self.node_outputs, node_id, output, data.merge)
        prompt = self._prompt(data.prompt_id)
        if prompt is not None:
            _merge_output(prompt.outputs, node_id, output, data.merge)

    def _on_execution_cached(self, payload: Any) -> None:
        data = _coerce(ExecutionCachedData, payload)
        prompt = self._prompt(data.prompt_id)
        if prompt is not None:
            prompt.cached_nodes = [str(node) for node in data.nodes]

    def _on_execution_success(self, payload: Any) -> None:
        self._finish(_coerce(ExecutionLifecycleData, payload).prompt_id, "success")

    def _on_execution_error(self, payload: Any) -> None:
        data = _coerce(ExecutionErrorData, payload)
        self.last_execution_error = data
        logger.warning(
            f"Prompt {data.prompt_id} failed in node {data.node_id} "
            f"({data.node_type}): {data.exception_message}"
        )
        self._finish(data.prompt_id, "error")

    def _on_execution_interrupted(self, payload: Any) -> None:
        self._finish(_coerce(ExecutionInterruptedData, payload).prompt_id, "interrupted")

    def apply_history(self, entries: list[Any]) -> None:
        """Settle submitted prompts from ``/history`` entries.

        Used when lifecycle events were missed, e.g. while only polling.
        Entries for unknown prompts, or still without an outcome, are skipped.
        """
        for entry in entries:
            try:
                prompt_id = str(entry["prompt"][1])
                status = entry.get("status") or {}
            except (KeyError, IndexError, TypeError, AttributeError):
                continue
            prompt = self.prompts.get(prompt_id)
            if prompt is None or prompt.status in FINISHED_STATUSES:
                continue

            outcome = status.get("status_str")
            if outcome == "success":
                self._finish(prompt_id, "success")
            elif outcome == "error":
                events = {message[0] for message in status.get("messages") or [] if message}
                self._finish(prompt_id, "interrupted" if "execution_interrupted" in events else "error")
            else:
                continue
            for node_id, output in (entry.get("outputs") or {}).items():
                prompt.outputs.setdefault(str(node_id), output)
            if self.running_prompt_id == prompt_id:
                self.running_prompt_id = None

    def _finish(self, prompt_id: str | None, status: Any) -> None:
        prompt = self._prompt(prompt_id)
        if prompt is not None:
            prompt.status = status
            prompt.running_node = None


def _coerce(model: type[_Payload], payload: Any) -> _Payload:
    if isinstance(payload, model):
        return payload
    return model.model_validate(payload)


def _merge_output(
    outputs: dict[str, dict[str, Any]], node_id: str, output: dict[str, Any], merge: bool
) -> None:
    existing = outputs.get(node_id)
    if not merge or existing is None:
        outputs[node_id] = dict(output)
        return
    for key, value in output.items():
        if isinstance(existing.get(key), list) and isinstance(value, list):
            existing[key] = existing[key] + value
        else:
            existing[key] = value
