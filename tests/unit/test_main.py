import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

import main as main_module
from client.api.websocket_schemas import ExecutionErrorData, PromptResponse, StatusPayload
from config.settings import ClientSettings
from core.types_registry import ConnectionState, EventName
from main import main, parse_args, run

OBJECT_INFO = {
    "EmptyLatent": {"input": {"required": {"width": ["INT", {"default": 512}]}}},
    "SaveLatent": {"input": {"required": {"samples": ["LATENT"]}}},
}

WORKFLOW = {
    "last_node_id": 2,
    "last_link_id": 1,
    "nodes": [
        {"id": 1, "type": "EmptyLatent", "outputs": [{"name": "LATENT", "type": "LATENT", "links": [1]}], "widgets_values": [768]},
        {"id": 2, "type": "SaveLatent", "inputs": [{"name": "samples", "type": "LATENT", "link": 1}]},
    ],
    "links": [[1, 1, 0, 2, 0, "LATENT"]],
}


class FakeTransport:
    """Transport that completes the handshake as soon as it starts."""

    instances: list["FakeTransport"] = []

    def __init__(self, request_client, event_bus, identity, **kwargs):
        self.event_bus = event_bus
        self.identity = identity
        self.state = ConnectionState.DISCONNECTED
        self.closed = False
        FakeTransport.instances.append(self)

    def start(self):
        self.identity.adopt("sid-cli")
        self.state = ConnectionState.OPEN

    async def close(self):
        self.closed = True


@pytest.fixture
def workflow_file(tmp_path):
    path = tmp_path / "workflow.json"
    path.write_text(json.dumps(WORKFLOW))
    return path


@pytest.fixture
def engine_api():
    api = MagicMock()
    api.get_node_defs = AsyncMock(return_value=OBJECT_INFO)
    api.queue_prompt = AsyncMock(return_value=PromptResponse(prompt_id="p1", number=0))
    with patch("main.EngineApi", return_value=api):
        yield api


@pytest.fixture(autouse=True)
def fake_transport():
    FakeTransport.instances.clear()
    with patch("main.Transport", FakeTransport):
        yield FakeTransport.instances


def test_parse_args_defaults(workflow_file):
    args = parse_args([str(workflow_file)])
    assert args.workflow == workflow_file
    assert args.batch_count == 1
    assert args.number == 0
    assert not args.front
    assert not args.watch


def test_parse_args_front_and_number_are_exclusive(workflow_file):
    with pytest.raises(SystemExit):
        parse_args([str(workflow_file), "--front", "--number", "3"])


def test_parse_args_rejects_zero_batch(workflow_file):
    with pytest.raises(SystemExit):
        parse_args([str(workflow_file), "--batch-count", "0"])


@pytest.mark.asyncio
async def test_run_submits_compiled_workflow(workflow_file, engine_api, fake_transport):
    args = parse_args([str(workflow_file), "--front", "--batch-count", "2"])

    assert await run(args, ClientSettings()) == 0

    assert engine_api.queue_prompt.await_count == 2
    number, prompt, client_id = engine_api.queue_prompt.call_args.args
    assert number == -1
    assert client_id == "sid-cli"
    assert prompt.output == {
        "1": {"inputs": {"width": 768}, "class_type": "EmptyLatent"},
        "2": {"inputs": {"samples": ["1", 0]}, "class_type": "SaveLatent"},
    }
    assert fake_transport[0].closed


@pytest.mark.asyncio
async def test_run_reports_node_errors(workflow_file, engine_api, fake_transport):
    engine_api.queue_prompt.return_value = PromptResponse(
        prompt_id="p1", node_errors={"2": {"class_type": "SaveLatent", "errors": []}}
    )

    assert await run(parse_args([str(workflow_file)]), ClientSettings()) == 1
    assert fake_transport[0].closed


@pytest.mark.asyncio
async def test_run_missing_workflow(tmp_path, engine_api):
    args = parse_args([str(tmp_path / "missing.json")])

    assert await run(args, ClientSettings()) == 1
    engine_api.get_node_defs.assert_not_called()


@pytest.mark.asyncio
async def test_run_engine_unreachable(workflow_file, engine_api):
    engine_api.get_node_defs.side_effect = ValueError("not json")

    assert await run(parse_args([str(workflow_file)]), ClientSettings()) == 1
    engine_api.queue_prompt.assert_not_called()


@pytest.mark.asyncio
async def test_run_watch_waits_for_completion(workflow_file, engine_api, fake_transport):
    async def accept(number, prompt, client_id):
        bus = fake_transport[0].event_bus
        asyncio.get_running_loop().call_later(0.01, bus.emit, EventName.EXECUTION_SUCCESS, {"prompt_id": "p1"})
        return PromptResponse(prompt_id="p1", number=0)

    engine_api.queue_prompt.side_effect = accept

    assert await run(parse_args([str(workflow_file), "--watch"]), ClientSettings()) == 0


@pytest.mark.asyncio
async def test_run_watch_fails_on_execution_error(workflow_file, engine_api, fake_transport):
    async def accept(number, prompt, client_id):
        bus = fake_transport[0].event_bus
        asyncio.get_running_loop().call_later(
            0.01,
            bus.emit,
            EventName.EXECUTION_ERROR,
            ExecutionErrorData(prompt_id="p1", node_id="2", node_type="SaveLatent", exception_message="disk full"),
        )
        return PromptResponse(prompt_id="p1", number=0)

    engine_api.queue_prompt.side_effect = accept

    assert await run(parse_args([str(workflow_file), "--watch"]), ClientSettings()) == 1


@pytest.mark.asyncio
async def test_run_watch_settles_from_history_when_only_polling(workflow_file, engine_api, fake_transport):
    history = {"history": []}
    engine_api.get_history = AsyncMock(side_effect=lambda: history)

    async def accept(number, prompt, client_id):
        bus = fake_transport[0].event_bus
        loop = asyncio.get_running_loop()
        drained = StatusPayload.model_validate({"exec_info": {"queue_remaining": 0}})

        def finish():
            history["history"] = [
                {"prompt": [0, "p1", {}, {}, ["2"]], "outputs": {}, "status": {"status_str": "success", "completed": True}}
            ]
            bus.emit(EventName.STATUS, drained)

        # first drained status arrives before the engine wrote history
        loop.call_later(0.01, bus.emit, EventName.STATUS, drained)
        loop.call_later(0.03, finish)
        return PromptResponse(prompt_id="p1", number=0)

    engine_api.queue_prompt.side_effect = accept

    code = await asyncio.wait_for(run(parse_args([str(workflow_file), "--watch"]), ClientSettings()), timeout=2)

    assert code == 0
    assert engine_api.get_history.await_count == 2


@pytest.mark.asyncio
async def test_run_watch_reports_failure_found_in_history(workflow_file, engine_api, fake_transport):
    engine_api.get_history = AsyncMock(
        return_value={
            "history": [
                {
                    "prompt": [0, "p1", {}, {}, ["2"]],
                    "status": {
                        "status_str": "error",
                        "completed": False,
                        "messages": [["execution_start", {}], ["execution_error", {"node_id": "2"}]],
                    },
                }
            ]
        }
    )

    async def accept(number, prompt, client_id):
        bus = fake_transport[0].event_bus
        asyncio.get_running_loop().call_later(
            0.01, bus.emit, EventName.STATUS, StatusPayload.model_validate({"exec_info": {"queue_remaining": 0}})
        )
        return PromptResponse(prompt_id="p1", number=0)

    engine_api.queue_prompt.side_effect = accept

    code = await asyncio.wait_for(run(parse_args([str(workflow_file), "--watch"]), ClientSettings()), timeout=2)

    assert code == 1


def test_main_wires_settings_and_logging(workflow_file):
    with patch("config.settings.load_dotenv"), \
         patch("main.setup_logging") as mock_logging, \
         patch("main.run", new=AsyncMock(return_value=0)) as mock_run:
        assert main([str(workflow_file)]) == 0

    mock_logging.assert_called_once_with("INFO")
    args, settings = mock_run.call_args.args
    assert args.workflow == workflow_file
    assert isinstance(settings, ClientSettings)
    assert main_module.HANDSHAKE_TIMEOUT > 0
