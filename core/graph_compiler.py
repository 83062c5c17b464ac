import logging
from typing import Any

from core.graph import Graph, Link, Node
from core.types_registry import (
    SKIPPED_MODES,
    CompiledPrompt,
    GraphCompilationError,
    JobDescription,
    JobNode,
    LinkReference,
    NodeMode,
)

logger = logging.getLogger(__name__)


class GraphCompiler:
    """Flatten an in-memory graph into the job description the engine runs."""

    def __init__(self, dev_mode: bool = False, sort_nodes: bool = False):
        self.dev_mode = dev_mode
        self.sort_nodes = sort_nodes

    def compile(self, graph: Graph, clean: bool = True) -> CompiledPrompt:
        """Compile ``graph``.

        Runs synchronously so no editor mutation can interleave with it.
        Widget ``before_queued`` hooks and virtual ``apply_to_graph`` hooks
        run before the workflow snapshot is taken.
        """
        self._prepare(graph)
        workflow = graph.serialize(sort_nodes=self.sort_nodes)
        output: JobDescription = {}

        for outer_node in graph.compute_execution_order():
            skip_outer = outer_node.mode in SKIPPED_MODES
            nodes = [outer_node] if skip_outer else self._expand(outer_node)
            for node in nodes:
                if node.is_virtual_node or node.mode in SKIPPED_MODES:
                    continue
                output[str(node.id)] = self._compile_node(node)

        if clean:
            _prune_dangling_references(output)

        return CompiledPrompt(output=output, workflow=workflow)

    # ============================================================================
    # Passes
    # ============================================================================

    def _prepare(self, graph: Graph) -> None:
        seen_widgets: set[int] = set()
        for outer_node in graph.compute_execution_order():
            for node in self._expand(outer_node):
                for widget in node.widgets:
                    if id(widget) in seen_widgets or widget.before_queued is None:
                        continue
                    seen_widgets.add(id(widget))
                    _run_hook(node, f"widget '{widget.name}' before_queued", widget.before_queued)
                if node.is_virtual_node:
                    _run_hook(node, "apply_to_graph", node.apply_to_graph)

    def _expand(self, node: Node) -> list[Node]:
        inner_nodes = node.get_inner_nodes()
        if inner_nodes is None:
            return [node]
        return list(inner_nodes)

    def _compile_node(self, node: Node) -> JobNode:
        inputs: dict[str, Any] = {}

        for index, widget in enumerate(node.widgets):
            if not widget.serialize:
                continue
            if widget.serialize_value is not None:
                inputs[widget.name] = _run_hook(
                    node,
                    f"widget '{widget.name}' serialize_value",
                    lambda: widget.serialize_value(node, index),
                )
            else:
                inputs[widget.name] = widget.value

        # Link references win over widget values for converted widgets
        for slot_index, slot in enumerate(node.inputs):
            try:
                reference = self.resolve_input(node, slot_index)
            except (KeyError, IndexError, TypeError) as e:
                logger.warning(
                    f"Node {node.id}: could not resolve input '{slot.name}', omitting it: {e}"
                )
                continue
            if reference is not None:
                inputs[slot.name] = reference

        job_node: JobNode = {"inputs": inputs, "class_type": node.type}
        if self.dev_mode:
            # Ignored by the engine
            job_node["_meta"] = {"title": node.title}
        return job_node

    # ============================================================================
    # Link resolution
    # ============================================================================

    def resolve_input(self, node: Node, slot_index: int) -> LinkReference | None:
        """Find the effective source feeding ``node``'s input ``slot_index``.

        Bypassed and virtual origins are walked through. Returns ``None``
        when the walk runs out of links or revisits a hop.
        """
        link = node.get_input_link(slot_index)
        parent = node.get_input_node(slot_index)
        if link is None or parent is None:
            return None

        wanted_type = node.inputs[slot_index].type
        visited: set[tuple[Any, int]] = set()

        while parent.mode == NodeMode.BYPASS or parent.is_virtual_node:
            hop = (parent.id, link.origin_slot)
            if hop in visited:
                logger.warning(
                    f"Node {node.id}: link chain through node {parent.id} loops, omitting input"
                )
                return None
            visited.add(hop)

            if parent.is_virtual_node:
                upstream_slot = parent.virtual_input_slot(link.origin_slot)
            else:
                upstream_slot = _matching_bypass_input(parent, link.origin_slot, wanted_type)
                if upstream_slot is None:
                    return None

            upstream_link = parent.get_input_link(upstream_slot)
            upstream_parent = parent.get_input_node(upstream_slot)
            if upstream_link is None or upstream_parent is None:
                return None
            link, parent = upstream_link, upstream_parent

        updated: Link | None = parent.update_link(link)
        if updated is None:
            return None
        return [str(updated.origin_id), int(updated.origin_slot)]


def _matching_bypass_input(node: Node, origin_slot: int, wanted_type: Any) -> int | None:
    """Input of a bypassed node that stands in for its output ``origin_slot``.

    The input at the same index is tried first, then every input in order.
    """
    for candidate in [origin_slot, *range(len(node.inputs))]:
        if 0 <= candidate < len(node.inputs) and node.inputs[candidate].type == wanted_type:
            return candidate
    return None


def _is_link_reference(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) == 2
        and isinstance(value[0], str)
        and isinstance(value[1], int)
    )


def _prune_dangling_references(output: JobDescription) -> None:
    for job_node in output.values():
        inputs = job_node["inputs"]
        for name in list(inputs):
            value = inputs[name]
            if _is_link_reference(value) and value[0] not in output:
                del inputs[name]


def _run_hook(node: Node, label: str, hook: Any) -> Any:
    try:
        return hook()
    except Exception as e:
        raise GraphCompilationError(node.id, f"{label} failed: {e}", e) from e
