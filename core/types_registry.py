from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Literal, NotRequired, Required, TypeAlias, TypedDict


class NodeMode(IntEnum):
    """LiteGraph node modes. NEVER is shown as "mute" in the editor."""

    ALWAYS = 0
    ON_EVENT = 1
    NEVER = 2
    ON_TRIGGER = 3
    BYPASS = 4


# Nodes in these modes are never emitted into a job description
SKIPPED_MODES: frozenset[NodeMode] = frozenset({NodeMode.NEVER, NodeMode.BYPASS})


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    POLLING = "polling"


class EventName(str, Enum):
    """Event names published on the EventBus."""

    # Republished verbatim from the engine
    STATUS = "status"
    PROGRESS = "progress"
    EXECUTING = "executing"
    EXECUTED = "executed"
    EXECUTION_START = "execution_start"
    EXECUTION_SUCCESS = "execution_success"
    EXECUTION_ERROR = "execution_error"
    EXECUTION_CACHED = "execution_cached"
    EXECUTION_INTERRUPTED = "execution_interrupted"
    DOWNLOAD_PROGRESS = "download_progress"

    # Produced by the transport
    B_PREVIEW = "b_preview"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    PROTOCOL_ERROR = "protocol_error"
    CONNECTION_STATE = "connection_state"

    # Produced by the queue driver and editor
    PROMPT_QUEUED = "promptQueued"
    PROMPT_ERROR = "prompt_error"
    GRAPH_CHANGED = "graphChanged"
    REFRESH = "refresh"


# Types for the graph serialisation from LGraph.serialize().
# Links are serialised as [id, origin_id, origin_slot, target_id, target_slot, type]
SerialisedLink: TypeAlias = list[Any]


class SerialisedNodeInput(TypedDict, total=False):
    name: Required[str]
    type: Required[Any]
    link: int | None
    widget: NotRequired[dict[str, Any]]


class SerialisedNodeOutput(TypedDict, total=False):
    name: Required[str]
    type: Required[Any]
    links: list[int] | None
    slot_index: NotRequired[int]


class SerialisedNode(TypedDict, total=False):
    id: Required[int | str]
    type: Required[str]
    title: NotRequired[str]
    pos: NotRequired[list[float]]
    size: NotRequired[list[float]]
    flags: NotRequired[dict[str, Any]]
    order: NotRequired[int]
    mode: NotRequired[int]
    inputs: NotRequired[list[SerialisedNodeInput]]
    outputs: NotRequired[list[SerialisedNodeOutput]]
    properties: NotRequired[dict[str, Any]]
    widgets_values: NotRequired[list[Any]]


class SerialisableGraph(TypedDict, total=False):
    last_node_id: int
    last_link_id: int
    nodes: list[SerialisedNode]
    links: list[SerialisedLink]
    groups: NotRequired[list[dict[str, Any]]]
    config: NotRequired[dict[str, Any]]
    extra: NotRequired[dict[str, Any]]
    version: float


# A link reference inside a job description: [origin node id, origin slot]
LinkReference: TypeAlias = list[Any]


class JobNodeMeta(TypedDict):
    title: str


class JobNode(TypedDict):
    inputs: dict[str, Any]
    class_type: str
    _meta: NotRequired[JobNodeMeta]


JobDescription: TypeAlias = dict[str, JobNode]


@dataclass
class CompiledPrompt:
    """A flattened job description plus the workflow snapshot it came from."""

    output: JobDescription
    workflow: SerialisableGraph


@dataclass(frozen=True)
class QueueRequest:
    """priority < 0 queues at the front, 0 appends, anything else is an explicit position."""

    priority: int = 0
    repeat_count: int = 1

    def __post_init__(self) -> None:
        if self.repeat_count < 1:
            raise ValueError(f"repeat_count must be >= 1, got {self.repeat_count}")


class NodeErrorReason(TypedDict, total=False):
    type: str
    message: str
    details: str
    extra_info: dict[str, Any]


class NodeErrorDetail(TypedDict, total=False):
    errors: list[NodeErrorReason]
    dependent_outputs: list[str]
    class_type: str


NodeErrors: TypeAlias = dict[str, NodeErrorDetail]

QueueKind = Literal["queue", "history"]


@dataclass
class SubmittedPrompt:
    """Local bookkeeping for a job accepted by the engine."""

    prompt_id: str
    number: int | None
    node_ids: list[str]
    status: Literal["queued", "running", "success", "error", "interrupted"] = "queued"
    running_node: str | None = None
    cached_nodes: list[str] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)


# Exceptions
class FigLinkError(Exception):
    """Base exception for all client-side errors."""

    pass


class ProtocolError(FigLinkError):
    """Raised when the engine sends a frame this client cannot understand."""

    pass


class GraphCompilationError(FigLinkError):
    """Raised when a node or widget hook fails while compiling a graph."""

    def __init__(self, node_id: int | str, message: str, original_exc: Exception | None = None):
        super().__init__(f"Node {node_id}: {message}")
        self.node_id = node_id
        self.original_exc = original_exc


def format_node_errors(node_errors: NodeErrors | None) -> str:
    """Render per-node validation errors as indented text, one block per node."""
    message = ""
    for node_error in (node_errors or {}).values():
        message += "\n" + str(node_error.get("class_type", "")) + ":"
        for reason in node_error.get("errors", []):
            message += f"\n    - {reason.get('message', '')}: {reason.get('details', '')}"
    return message


class PromptSubmissionError(FigLinkError):
    """Raised when the engine rejects a submission with a non-200 response."""

    def __init__(self, status_code: int, response: dict[str, Any] | None):
        self.status_code = status_code
        self.response: dict[str, Any] = response or {}
        super().__init__(self.format())

    @property
    def node_errors(self) -> NodeErrors:
        return self.response.get("node_errors") or {}

    def format(self) -> str:
        error = self.response.get("error")
        if isinstance(error, dict):
            message = str(error.get("message", "(unknown error)"))
            if error.get("details"):
                message += ": " + str(error["details"])
        elif isinstance(error, str):
            message = error
        else:
            message = f"(unknown error) HTTP {self.status_code}"
        return message + format_node_errors(self.node_errors)


__all__ = [
    "NodeMode",
    "SKIPPED_MODES",
    "ConnectionState",
    "EventName",
    "SerialisedLink",
    "SerialisedNodeInput",
    "SerialisedNodeOutput",
    "SerialisedNode",
    "SerialisableGraph",
    "LinkReference",
    "JobNodeMeta",
    "JobNode",
    "JobDescription",
    "CompiledPrompt",
    "QueueRequest",
    "NodeErrorReason",
    "NodeErrorDetail",
    "NodeErrors",
    "QueueKind",
    "SubmittedPrompt",
    "FigLinkError",
    "ProtocolError",
    "GraphCompilationError",
    "format_node_errors",
    "PromptSubmissionError",
]
