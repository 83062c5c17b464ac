"""Client package talking to a remote execution engine.

Modules:
- transport: Live websocket channel with reconnect and polling fallback
- queue: Single-flight submission queue
- auto_queue: Re-submits the graph when the engine queue drains or the graph changes
- session_manager: Session identity persisted across reconnects
- api: HTTP request helpers, endpoint wrappers, and wire schemas
"""

__all__ = []
