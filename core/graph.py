"""In-memory node graph as edited by the frontend.

Only the surface the submission pipeline needs lives here: nodes with
widgets and typed slots, links, modes, and the hooks nodes and widgets may
implement to take part in compilation. Serialisation follows the
LiteGraph ``LGraph.serialize()`` layout so workflows round-trip with the
engine's own files.
"""

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import rustworkx as rx

from core.types_registry import (
    NodeMode,
    SerialisableGraph,
    SerialisedLink,
    SerialisedNode,
)

logger = logging.getLogger(__name__)

NodeId = int | str

# Engine input types rendered as widgets rather than link slots
WIDGET_INPUT_TYPES = {"INT", "FLOAT", "STRING", "BOOLEAN", "COMBO"}
SEED_WIDGET_NAMES = {"seed", "noise_seed"}


@dataclass
class Widget:
    name: str
    value: Any = None
    type: str = "number"
    serialize: bool = True
    serialize_value: Callable[["Node", int], Any] | None = None
    before_queued: Callable[[], None] | None = None
    after_queued: Callable[[], None] | None = None


@dataclass
class InputSlot:
    name: str
    type: Any
    link: int | None = None
    # Set when the slot is a widget converted to an input
    widget: str | None = None


@dataclass
class OutputSlot:
    name: str
    type: Any
    links: list[int] = field(default_factory=list)


@dataclass
class Link:
    id: int
    origin_id: NodeId
    origin_slot: int
    target_id: NodeId
    target_slot: int
    type: Any = "*"

    def serialize(self) -> SerialisedLink:
        return [
            self.id,
            self.origin_id,
            self.origin_slot,
            self.target_id,
            self.target_slot,
            self.type,
        ]


class Node:
    is_virtual_node: bool = False

    def __init__(
        self,
        type: str,
        title: str | None = None,
        inputs: Iterable[InputSlot] = (),
        outputs: Iterable[OutputSlot] = (),
        widgets: Iterable[Widget] = (),
        mode: NodeMode = NodeMode.ALWAYS,
        properties: dict[str, Any] | None = None,
        id: NodeId | None = None,
    ):
        self.id: NodeId | None = id
        self.type = type
        self.title = title or type
        self.inputs: list[InputSlot] = list(inputs)
        self.outputs: list[OutputSlot] = list(outputs)
        self.widgets: list[Widget] = list(widgets)
        self.mode = NodeMode(mode)
        self.properties: dict[str, Any] = dict(properties or {})
        self.graph: "Graph | None" = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, type={self.type!r}, mode={self.mode.name})"

    def get_widget(self, name: str) -> Widget | None:
        for widget in self.widgets:
            if widget.name == name:
                return widget
        return None

    def get_input_link(self, slot: int) -> Link | None:
        if self.graph is None or not 0 <= slot < len(self.inputs):
            return None
        link_id = self.inputs[slot].link
        if link_id is None:
            return None
        return self.graph.links.get(link_id)

    def get_input_node(self, slot: int) -> "Node | None":
        link = self.get_input_link(slot)
        if link is None or self.graph is None:
            return None
        return self.graph.get_node_by_id(link.origin_id)

    # Hooks overridden by special node types
    def apply_to_graph(self) -> None:
        """Virtual nodes push their effective value into the graph before submission."""
        return None

    def get_inner_nodes(self) -> list["Node"] | None:
        """Composite nodes return the nodes they expand to."""
        return None

    def update_link(self, link: Link) -> Link | None:
        return link

    def virtual_input_slot(self, output_slot: int) -> int:
        """Input slot a virtual node forwards to the given output slot."""
        return output_slot

    def serialize(self) -> SerialisedNode:
        data: SerialisedNode = {
            "id": self.id,
            "type": self.type,
            "mode": int(self.mode),
            "properties": dict(self.properties),
        }
        if self.title != self.type:
            data["title"] = self.title
        if self.inputs:
            data["inputs"] = []
            for slot in self.inputs:
                entry: dict[str, Any] = {"name": slot.name, "type": slot.type, "link": slot.link}
                if slot.widget:
                    entry["widget"] = {"name": slot.widget}
                data["inputs"].append(entry)  # type: ignore[arg-type]
        if self.outputs:
            data["outputs"] = [
                {"name": slot.name, "type": slot.type, "links": list(slot.links) or None}
                for slot in self.outputs
            ]
        if self.widgets:
            data["widgets_values"] = [widget.value for widget in self.widgets]
        return data


class Reroute(Node):
    """Frontend-only pass-through node with a single input and output."""

    is_virtual_node = True

    def __init__(self, id: NodeId | None = None, type_name: Any = "*"):
        super().__init__(
            "Reroute",
            inputs=[InputSlot("", type_name)],
            outputs=[OutputSlot("", type_name)],
            id=id,
        )

    def virtual_input_slot(self, output_slot: int) -> int:
        return 0


class Graph:
    def __init__(self):
        self.nodes: dict[NodeId, Node] = {}
        self.links: dict[int, Link] = {}
        self.last_node_id = 0
        self.last_link_id = 0
        self.extra: dict[str, Any] = {}

    def __iter__(self):
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def add(self, node: Node) -> Node:
        if node.id is None:
            self.last_node_id += 1
            node.id = self.last_node_id
        elif node.id in self.nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        elif isinstance(node.id, int):
            self.last_node_id = max(self.last_node_id, node.id)
        node.graph = self
        self.nodes[node.id] = node
        return node

    def get_node_by_id(self, node_id: NodeId | None) -> Node | None:
        if node_id is None:
            return None
        node = self.nodes.get(node_id)
        if node is None and isinstance(node_id, str) and node_id.isdigit():
            node = self.nodes.get(int(node_id))
        return node

    def remove(self, node_id: NodeId) -> None:
        node = self.nodes.pop(node_id, None)
        if node is None:
            return
        for link in list(self.links.values()):
            if link.origin_id == node_id or link.target_id == node_id:
                self._drop_link(link)
        node.graph = None

    def connect(
        self, origin: Node, origin_slot: int, target: Node, target_slot: int
    ) -> Link:
        if origin.id not in self.nodes or target.id not in self.nodes:
            raise ValueError("Both nodes must belong to the graph")
        if not 0 <= origin_slot < len(origin.outputs):
            raise IndexError(f"Node {origin.id} has no output slot {origin_slot}")
        if not 0 <= target_slot < len(target.inputs):
            raise IndexError(f"Node {target.id} has no input slot {target_slot}")

        # A target slot accepts a single link
        self.disconnect_input(target, target_slot)

        self.last_link_id += 1
        link = Link(
            id=self.last_link_id,
            origin_id=origin.id,
            origin_slot=origin_slot,
            target_id=target.id,
            target_slot=target_slot,
            type=origin.outputs[origin_slot].type,
        )
        self.links[link.id] = link
        origin.outputs[origin_slot].links.append(link.id)
        target.inputs[target_slot].link = link.id
        return link

    def disconnect_input(self, node: Node, slot: int) -> None:
        link = node.get_input_link(slot)
        if link is not None:
            self._drop_link(link)

    def _drop_link(self, link: Link) -> None:
        self.links.pop(link.id, None)
        origin = self.nodes.get(link.origin_id)
        if origin is not None and link.origin_slot < len(origin.outputs):
            links = origin.outputs[link.origin_slot].links
            if link.id in links:
                links.remove(link.id)
        target = self.nodes.get(link.target_id)
        if target is not None and link.target_slot < len(target.inputs):
            if target.inputs[link.target_slot].link == link.id:
                target.inputs[link.target_slot].link = None

    def compute_execution_order(self) -> list[Node]:
        """Topological order, ties broken by insertion order.

        Nodes caught in a cycle cannot be ordered; they are appended at the
        end in insertion order.
        """
        dag = rx.PyDiGraph()
        rank: dict[NodeId, str] = {}
        id_to_idx: dict[NodeId, int] = {}
        for position, node_id in enumerate(self.nodes):
            rank[node_id] = f"{position:010d}"
            id_to_idx[node_id] = dag.add_node(node_id)

        for link in self.links.values():
            if link.origin_id not in id_to_idx or link.target_id not in id_to_idx:
                logger.warning(f"Link {link.id} references a missing node, skipping")
                continue
            dag.add_edge(id_to_idx[link.origin_id], id_to_idx[link.target_id], link.id)

        try:
            ordered_ids = list(rx.lexicographical_topological_sort(dag, key=lambda nid: rank[nid]))
        except rx.DAGHasCycle:
            ordered_ids = []

        if len(ordered_ids) != len(self.nodes):
            seen = set(ordered_ids)
            ordered_ids.extend(node_id for node_id in self.nodes if node_id not in seen)
        return [self.nodes[node_id] for node_id in ordered_ids]

    def serialize(self, sort_nodes: bool = False) -> SerialisableGraph:
        nodes = list(self.nodes.values())
        if sort_nodes:
            nodes.sort(key=lambda n: (isinstance(n.id, str), n.id))
        order = {node.id: i for i, node in enumerate(self.compute_execution_order())}
        serialised_nodes = []
        for node in nodes:
            data = node.serialize()
            data["order"] = order[node.id]
            serialised_nodes.append(data)
        return {
            "last_node_id": self.last_node_id,
            "last_link_id": self.last_link_id,
            "nodes": serialised_nodes,
            "links": [link.serialize() for link in self.links.values()],
            "groups": [],
            "config": {},
            "extra": dict(self.extra),
            "version": 0.4,
        }

    @classmethod
    def configure(
        cls,
        data: SerialisableGraph,
        widget_layouts: Mapping[str, list[Widget]] | None = None,
    ) -> "Graph":
        """Build a graph from a serialised workflow.

        Widget names are not part of the serialised form; ``widget_layouts``
        maps a node type to its widget templates in declaration order. Nodes
        of unknown types get positional widgets named ``widget_<i>``.
        """
        graph = cls()
        graph.extra = dict(data.get("extra") or {})
        layouts = widget_layouts or {}

        for node_data in data.get("nodes", []) or []:
            node_type = node_data["type"]
            if node_type == "Reroute":
                node: Node = Reroute(id=node_data["id"])
            else:
                node = Node(node_type, id=node_data["id"])
            node.title = node_data.get("title", node_type)
            node.mode = NodeMode(node_data.get("mode", NodeMode.ALWAYS))
            node.properties = dict(node_data.get("properties") or {})
            node.inputs = [
                InputSlot(
                    name=inp.get("name", ""),
                    type=inp.get("type", "*"),
                    widget=(inp.get("widget") or {}).get("name"),
                )
                for inp in node_data.get("inputs", []) or []
            ]
            node.outputs = [
                OutputSlot(name=out.get("name", ""), type=out.get("type", "*"))
                for out in node_data.get("outputs", []) or []
            ]
            values = list(node_data.get("widgets_values") or [])
            templates = layouts.get(node_type)
            if templates is None:
                templates = [Widget(f"widget_{i}") for i in range(len(values))]
            node.widgets = []
            for i, template in enumerate(templates):
                widget = Widget(
                    name=template.name,
                    value=values[i] if i < len(values) else template.value,
                    type=template.type,
                    serialize=template.serialize,
                )
                node.widgets.append(widget)
            graph.add(node)

        graph.last_node_id = max(graph.last_node_id, int(data.get("last_node_id") or 0))

        for raw in data.get("links", []) or []:
            link_id, origin_id, origin_slot, target_id, target_slot, link_type = raw[:6]
            origin = graph.get_node_by_id(origin_id)
            target = graph.get_node_by_id(target_id)
            if origin is None or target is None:
                logger.warning(f"Link {link_id} references a missing node, skipping")
                continue
            if origin_slot >= len(origin.outputs) or target_slot >= len(target.inputs):
                logger.warning(f"Link {link_id} references a missing slot, skipping")
                continue
            link = Link(link_id, origin.id, origin_slot, target.id, target_slot, link_type)
            graph.links[link_id] = link
            origin.outputs[origin_slot].links.append(link_id)
            target.inputs[target_slot].link = link_id
            graph.last_link_id = max(graph.last_link_id, link_id)

        graph.last_link_id = max(graph.last_link_id, int(data.get("last_link_id") or 0))
        return graph


def widget_layouts_from_defs(object_info: Mapping[str, Any]) -> dict[str, list[Widget]]:
    """Derive per-type widget templates from the engine's node definitions.

    Inputs whose type is a primitive or a list of choices are widgets, in
    required-then-optional declaration order. Seed inputs carry an extra
    ``control_after_generate`` widget that the frontend never submits.
    """
    layouts: dict[str, list[Widget]] = {}
    for node_type, node_def in object_info.items():
        widgets: list[Widget] = []
        declared = (node_def or {}).get("input") or {}
        for section in ("required", "optional"):
            for name, spec in (declared.get(section) or {}).items():
                if not spec:
                    continue
                input_type = spec[0]
                options = spec[1] if len(spec) > 1 and isinstance(spec[1], dict) else {}
                if isinstance(input_type, list):
                    widgets.append(Widget(name, options.get("default"), type="combo"))
                elif input_type in WIDGET_INPUT_TYPES:
                    widgets.append(Widget(name, options.get("default"), type=input_type.lower()))
                else:
                    continue
                if options.get("control_after_generate") or (
                    input_type == "INT" and name in SEED_WIDGET_NAMES
                ):
                    widgets.append(
                        Widget("control_after_generate", "fixed", type="combo", serialize=False)
                    )
        layouts[node_type] = widgets
    return layouts
