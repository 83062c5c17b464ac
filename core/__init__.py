"""Core package for graph modelling, compilation, and event dispatch.

Modules:
- graph: In-memory node graph (nodes, slots, widgets, links)
- graph_compiler: Flattens a graph into the job description the engine runs
- event_bus: Named publish/subscribe hub shared by the client components
- types_registry: Domain types, enums, and exceptions
"""

# No explicit imports to avoid circular dependencies
# Import these modules directly (e.g., from core.graph_compiler import GraphCompiler)
# instead of from core import graph_compiler

__all__ = []
