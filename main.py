"""
Submit a saved workflow to an execution engine and follow its progress.

Usage examples:
    python main.py workflow.json
    python main.py workflow.json --batch-count 4 --front
    python main.py workflow.json --api-root http://gpu-box:8188 --watch

Settings not given on the command line come from FIGLINK_* environment
variables (a .env file is honoured).
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import httpx

from client.api.endpoints import EngineApi
from client.api.request_client import RequestClient
from client.queue import FINISHED_STATUSES, QueueDriver
from client.session_manager import FileIdentityStore, MemoryIdentityStore, SessionIdentity
from client.transport import Transport
from config.settings import ClientSettings, load_settings
from core.event_bus import EventBus
from core.graph import Graph, widget_layouts_from_defs
from core.graph_compiler import GraphCompiler
from core.types_registry import ConnectionState, EventName, FigLinkError
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

# How long to wait for the engine to hand out a session id before submitting
HANDSHAKE_TIMEOUT = 5.0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Queue a workflow on a remote execution engine")
    parser.add_argument("workflow", type=Path, help="Workflow JSON saved from the editor")
    parser.add_argument("--api-root", default=None, help="Engine URL (default: FIGLINK_API_ROOT)")
    parser.add_argument("--user", default=None, help="Operator identity sent with every request")
    parser.add_argument("--batch-count", type=int, default=1, help="Number of times to queue the workflow")
    placement = parser.add_mutually_exclusive_group()
    placement.add_argument("--front", action="store_true", help="Queue at the front of the engine queue")
    placement.add_argument("--number", type=int, default=0, help="Explicit queue position")
    parser.add_argument("--watch", action="store_true", help="Stream progress until the submitted jobs finish")
    args = parser.parse_args(argv)
    if args.batch_count < 1:
        parser.error("--batch-count must be at least 1")
    return args


def _build_identity(settings: ClientSettings) -> SessionIdentity:
    if settings.session_file:
        return SessionIdentity(FileIdentityStore(settings.session_file), MemoryIdentityStore())
    return SessionIdentity()


async def _wait_for_handshake(event_bus: EventBus, transport: Transport, identity: SessionIdentity) -> None:
    ready = asyncio.Event()

    def _check(_payload: Any = None) -> None:
        if identity.client_id is not None or transport.state == ConnectionState.POLLING:
            ready.set()

    event_bus.on(EventName.STATUS, _check)
    event_bus.on(EventName.CONNECTION_STATE, _check)
    _check()
    try:
        await asyncio.wait_for(ready.wait(), timeout=HANDSHAKE_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning("No session id from the engine, events may not be routed to this client")
    finally:
        event_bus.off(EventName.STATUS, _check)
        event_bus.off(EventName.CONNECTION_STATE, _check)


def _log_progress(event_bus: EventBus) -> None:
    def _on_progress(data: Any) -> None:
        logger.info(f"Node {data.node}: {data.value:g}/{data.max:g}")

    def _on_executing(data: Any) -> None:
        node = data.display_node if data.display_node is not None else data.node
        if node is not None:
            logger.info(f"Executing node {node}")

    def _on_error(data: Any) -> None:
        logger.error(f"Node {data.node_id} ({data.node_type}) failed: {data.exception_message}")

    event_bus.on(EventName.PROGRESS, _on_progress)
    event_bus.on(EventName.EXECUTING, _on_executing)
    event_bus.on(EventName.EXECUTION_ERROR, _on_error)


async def _wait_for_prompts(event_bus: EventBus, queue: QueueDriver, api: EngineApi) -> bool:
    """Block until every submitted prompt finished. Returns True if all succeeded.

    Lifecycle events settle prompts as they arrive. Those are never seen while
    polling, or while the live channel is down, so a status reporting an empty
    engine queue also wakes the wait and the outcome is read from history.
    """
    wake = asyncio.Event()
    lifecycle = (EventName.EXECUTION_SUCCESS, EventName.EXECUTION_ERROR, EventName.EXECUTION_INTERRUPTED)

    def _settled() -> bool:
        return all(p.status in FINISHED_STATUSES for p in queue.prompts.values())

    def _on_lifecycle(_payload: Any = None) -> None:
        if _settled():
            wake.set()

    def _on_status(status: Any) -> None:
        if status is not None and status.exec_info.queue_remaining == 0:
            wake.set()

    for name in lifecycle:
        event_bus.on(name, _on_lifecycle)
    event_bus.on(EventName.STATUS, _on_status)
    try:
        while not _settled():
            await wake.wait()
            wake.clear()
            if not _settled():
                history = await api.get_history()
                queue.apply_history(history["history"])
    finally:
        for name in lifecycle:
            event_bus.off(name, _on_lifecycle)
        event_bus.off(EventName.STATUS, _on_status)
    return all(p.status == "success" for p in queue.prompts.values())


async def run(args: argparse.Namespace, settings: ClientSettings) -> int:
    try:
        workflow = json.loads(args.workflow.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Could not read workflow {args.workflow}: {e}")
        return 1

    request_client = RequestClient(
        args.api_root or settings.api_root,
        user=args.user if args.user is not None else settings.user,
        timeout=settings.request_timeout,
    )
    api = EngineApi(request_client)
    event_bus = EventBus()
    identity = _build_identity(settings)

    try:
        node_defs = await api.get_node_defs()
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Could not load node definitions from {request_client.http_root}: {e}")
        return 1

    graph = Graph.configure(workflow, widget_layouts_from_defs(node_defs))
    compiler = GraphCompiler(dev_mode=settings.dev_mode, sort_nodes=settings.sort_nodes)
    queue = QueueDriver(graph, compiler, api, identity, event_bus)
    transport = Transport(
        request_client,
        event_bus,
        identity,
        reconnect_delay=settings.reconnect_delay,
        poll_interval=settings.poll_interval,
    )
    if args.watch:
        _log_progress(event_bus)

    transport.start()
    try:
        await _wait_for_handshake(event_bus, transport, identity)
        number = -1 if args.front else args.number
        try:
            accepted = await queue.submit(number, args.batch_count)
        except FigLinkError as e:
            logger.error(f"Could not compile workflow: {e}")
            return 1
        if not accepted:
            return 1
        logger.info(f"Queued {len(queue.prompts)} prompt(s): {', '.join(queue.prompts)}")
        if args.watch and not await _wait_for_prompts(event_bus, queue, api):
            return 1
        return 0
    finally:
        await transport.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    setup_logging(settings.log_level)
    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
