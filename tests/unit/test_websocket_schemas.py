import struct

import pytest
from pydantic import ValidationError

from client.api.websocket_schemas import (
    ExecutedMessage,
    ExecutingMessage,
    ImageFormat,
    PromptRequestBody,
    PromptResponse,
    StatusMessage,
    UnknownServerMessage,
    decode_binary_frame,
    parse_server_message,
)
from core.types_registry import ProtocolError


def _frame(event_type, *rest, payload=b""):
    return struct.pack(">I", event_type) + b"".join(struct.pack(">I", v) for v in rest) + payload


class TestBinaryFrames:
    """Tests for decode_binary_frame."""

    def test_png_preview(self):
        preview = decode_binary_frame(_frame(1, 2, payload=b"\x89PNG..."))

        assert preview.format is ImageFormat.PNG
        assert preview.mime_type == "image/png"
        assert preview.data == b"\x89PNG..."

    def test_jpeg_preview(self):
        preview = decode_binary_frame(_frame(1, 1, payload=b"\xff\xd8"))
        assert preview.format is ImageFormat.JPEG
        assert preview.mime_type == "image/jpeg"

    def test_unknown_format_defaults_to_jpeg(self):
        assert decode_binary_frame(_frame(1, 9, payload=b"x")).format is ImageFormat.JPEG

    def test_missing_format_defaults_to_jpeg(self):
        preview = decode_binary_frame(_frame(1))
        assert preview.format is ImageFormat.JPEG
        assert preview.data == b""

    def test_unknown_event_type_is_protocol_error(self):
        with pytest.raises(ProtocolError, match="type 7"):
            decode_binary_frame(_frame(7, 2))

    def test_short_frame_is_protocol_error(self):
        with pytest.raises(ProtocolError):
            decode_binary_frame(b"\x00\x01")


class TestTextMessages:
    """Tests for parse_server_message."""

    def test_status_with_sid(self):
        message = parse_server_message(
            {"type": "status", "data": {"status": {"exec_info": {"queue_remaining": 2}}, "sid": "abc"}}
        )

        assert isinstance(message, StatusMessage)
        assert message.data.sid == "abc"
        assert message.data.status.exec_info.queue_remaining == 2

    def test_executing_accepts_null_node(self):
        message = parse_server_message({"type": "executing", "data": {"node": None, "prompt_id": "p1"}})

        assert isinstance(message, ExecutingMessage)
        assert message.data.node is None

    def test_executed_keeps_extra_fields(self):
        message = parse_server_message(
            {
                "type": "executed",
                "data": {"node": "9", "output": {"images": [{"filename": "a.png"}]}, "prompt_id": "p1", "extra": 1},
            }
        )

        assert isinstance(message, ExecutedMessage)
        assert message.data.output == {"images": [{"filename": "a.png"}]}
        assert message.data.model_dump()["extra"] == 1

    def test_unknown_type_is_catch_all(self):
        message = parse_server_message({"type": "crystools.monitor", "data": {"cpu": 3}})

        assert isinstance(message, UnknownServerMessage)
        assert message.type == "crystools.monitor"
        assert message.data == {"cpu": 3}

    def test_missing_type_is_rejected(self):
        with pytest.raises(ValueError):
            parse_server_message({"data": {}})

    def test_malformed_known_payload_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_server_message({"type": "progress", "data": {"value": "lots"}})


class TestSubmissionModels:
    """Tests for the POST /prompt body and response."""

    @pytest.mark.parametrize(
        "number, expected",
        [
            (-1, {"front": True}),
            (0, {}),
            (4, {"number": 4}),
        ],
    )
    def test_placement_directive(self, number, expected):
        body = PromptRequestBody.build(number, {"1": {"inputs": {}, "class_type": "A"}}, {"nodes": []}, "sid")
        dumped = body.model_dump(exclude_none=True)

        assert {k: dumped[k] for k in ("front", "number") if k in dumped} == expected
        assert dumped["client_id"] == "sid"
        assert dumped["extra_data"] == {"extra_pnginfo": {"workflow": {"nodes": []}}}

    def test_missing_client_id_is_empty_string(self):
        body = PromptRequestBody.build(0, {}, {}, None)
        assert body.client_id == ""

    def test_response_defaults(self):
        response = PromptResponse.model_validate({"prompt_id": "p1", "number": 3})
        assert response.node_errors == {}
