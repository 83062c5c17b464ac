"""Pydantic schemas for the engine's websocket and submission messages."""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from core.types_registry import ProtocolError

# ============================================================================
# BINARY FRAMES
# ============================================================================


class BinaryEventType(IntEnum):
    PREVIEW_IMAGE = 1


class ImageFormat(IntEnum):
    JPEG = 1
    PNG = 2

    @property
    def mime_type(self) -> str:
        return "image/png" if self is ImageFormat.PNG else "image/jpeg"


@dataclass(frozen=True)
class PreviewImage:
    format: ImageFormat
    data: bytes

    @property
    def mime_type(self) -> str:
        return self.format.mime_type


_HEADER = struct.Struct(">I")


def decode_binary_frame(frame: bytes) -> PreviewImage:
    """Decode a binary frame: a 4-byte big-endian event type, then its payload.

    Preview images carry a 4-byte big-endian format code and the raw image
    bytes from offset 8. Unknown or missing format codes decode as JPEG.
    """
    if len(frame) < _HEADER.size:
        raise ProtocolError(f"Binary websocket message too short ({len(frame)} bytes)")

    (event_type,) = _HEADER.unpack_from(frame, 0)
    if event_type != BinaryEventType.PREVIEW_IMAGE:
        raise ProtocolError(f"Unknown binary websocket message of type {event_type}")

    image_format = ImageFormat.JPEG
    if len(frame) >= 2 * _HEADER.size:
        (format_code,) = _HEADER.unpack_from(frame, _HEADER.size)
        if format_code == ImageFormat.PNG:
            image_format = ImageFormat.PNG
    return PreviewImage(format=image_format, data=bytes(frame[2 * _HEADER.size :]))


# ============================================================================
# SERVER → CLIENT TEXT MESSAGES
# ============================================================================


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class ExecInfo(_Payload):
    queue_remaining: int = 0


class StatusPayload(_Payload):
    exec_info: ExecInfo = Field(default_factory=ExecInfo)


class StatusData(_Payload):
    status: StatusPayload | None = None
    sid: str | None = Field(None, description="Session id handed out by the engine")


class ProgressData(_Payload):
    value: float
    max: float
    prompt_id: str | None = None
    node: str | int | None = None


class ExecutingData(_Payload):
    node: str | int | None = None
    display_node: str | int | None = None
    prompt_id: str | None = None


class ExecutedData(_Payload):
    node: str | int
    display_node: str | int | None = None
    output: dict[str, Any] | None = None
    prompt_id: str | None = None
    merge: bool = False


class ExecutionLifecycleData(_Payload):
    prompt_id: str | None = None
    timestamp: int | None = None


class ExecutionCachedData(ExecutionLifecycleData):
    nodes: list[str | int] = Field(default_factory=list)


class ExecutionErrorData(ExecutionLifecycleData):
    node_id: str | int | None = None
    node_type: str | None = None
    exception_message: str | None = None
    exception_type: str | None = None
    traceback: list[str] | None = None


class ExecutionInterruptedData(ExecutionLifecycleData):
    node_id: str | int | None = None
    node_type: str | None = None


class DownloadProgressData(_Payload):
    url: str | None = None
    status: str | None = None
    progress_percentage: float | None = None


class StatusMessage(BaseModel):
    type: Literal["status"] = "status"
    data: StatusData


class ProgressMessage(BaseModel):
    type: Literal["progress"] = "progress"
    data: ProgressData


class ExecutingMessage(BaseModel):
    type: Literal["executing"] = "executing"
    data: ExecutingData


class ExecutedMessage(BaseModel):
    type: Literal["executed"] = "executed"
    data: ExecutedData


class ExecutionStartMessage(BaseModel):
    type: Literal["execution_start"] = "execution_start"
    data: ExecutionLifecycleData


class ExecutionSuccessMessage(BaseModel):
    type: Literal["execution_success"] = "execution_success"
    data: ExecutionLifecycleData


class ExecutionErrorMessage(BaseModel):
    type: Literal["execution_error"] = "execution_error"
    data: ExecutionErrorData


class ExecutionCachedMessage(BaseModel):
    type: Literal["execution_cached"] = "execution_cached"
    data: ExecutionCachedData


class ExecutionInterruptedMessage(BaseModel):
    type: Literal["execution_interrupted"] = "execution_interrupted"
    data: ExecutionInterruptedData


class DownloadProgressMessage(BaseModel):
    type: Literal["download_progress"] = "download_progress"
    data: DownloadProgressData


class UnknownServerMessage(BaseModel):
    """Any message type this client has no schema for."""

    type: str
    data: Any = None


KnownServerMessage = (
    StatusMessage
    | ProgressMessage
    | ExecutingMessage
    | ExecutedMessage
    | ExecutionStartMessage
    | ExecutionSuccessMessage
    | ExecutionErrorMessage
    | ExecutionCachedMessage
    | ExecutionInterruptedMessage
    | DownloadProgressMessage
)

ServerToClientMessage = KnownServerMessage | UnknownServerMessage

KNOWN_MESSAGE_TYPES: dict[str, type[BaseModel]] = {
    "status": StatusMessage,
    "progress": ProgressMessage,
    "executing": ExecutingMessage,
    "executed": ExecutedMessage,
    "execution_start": ExecutionStartMessage,
    "execution_success": ExecutionSuccessMessage,
    "execution_error": ExecutionErrorMessage,
    "execution_cached": ExecutionCachedMessage,
    "execution_interrupted": ExecutionInterruptedMessage,
    "download_progress": DownloadProgressMessage,
}

# Republished whether or not anyone listens. Other types, known or not, only
# reach the bus when a handler is registered for them.
CORE_MESSAGE_TYPES = frozenset(KNOWN_MESSAGE_TYPES) - {"execution_interrupted"}


def parse_server_message(raw: dict[str, Any]) -> ServerToClientMessage:
    """Parse a decoded JSON text frame into its message variant.

    Raises:
        ValidationError: If a known message type has a malformed payload.
    """
    message_type = raw.get("type") if isinstance(raw, dict) else None
    if not isinstance(message_type, str):
        raise ValueError(f"Websocket message without a type: {raw!r}")
    model = KNOWN_MESSAGE_TYPES.get(message_type)
    if model is None:
        return UnknownServerMessage.model_validate(raw)
    return model.model_validate(raw)  # type: ignore[return-value]


# ============================================================================
# SUBMISSION
# ============================================================================


class ExtraPngInfo(BaseModel):
    workflow: dict[str, Any]


class ExtraData(BaseModel):
    extra_pnginfo: ExtraPngInfo


class PromptRequestBody(BaseModel):
    """Body of POST /prompt."""

    client_id: str = Field("", description="Session id events are routed to")
    prompt: dict[str, Any]
    extra_data: ExtraData
    front: bool | None = Field(None, description="Queue at the head of the queue")
    number: int | None = Field(None, description="Explicit queue position")

    @classmethod
    def build(
        cls,
        number: int,
        output: dict[str, Any],
        workflow: dict[str, Any],
        client_id: str | None,
    ) -> "PromptRequestBody":
        body = cls(
            client_id=client_id or "",
            prompt=output,
            extra_data=ExtraData(extra_pnginfo=ExtraPngInfo(workflow=workflow)),
        )
        if number < 0:
            body.front = True
        elif number != 0:
            body.number = number
        return body


class PromptResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    prompt_id: str
    number: int | None = None
    node_errors: dict[str, Any] = Field(default_factory=dict)
