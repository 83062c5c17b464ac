import sys
from pathlib import Path

import pytest


def _ensure_project_root_on_path() -> None:
    this_file = Path(__file__).resolve()
    project_root = this_file.parent.parent
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


_ensure_project_root_on_path()

from core.event_bus import EventBus  # noqa: E402
from core.graph import Graph, InputSlot, Node, OutputSlot, Widget  # noqa: E402


FIGLINK_ENV_VARS = (
    "FIGLINK_API_ROOT",
    "FIGLINK_USER",
    "FIGLINK_RECONNECT_DELAY",
    "FIGLINK_POLL_INTERVAL",
    "FIGLINK_REQUEST_TIMEOUT",
    "FIGLINK_DEV_MODE",
    "FIGLINK_SORT_NODES",
    "FIGLINK_SESSION_FILE",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def test_env_isolation(tmp_path, monkeypatch):
    """Run every test from an empty directory with no FIGLINK_* variables set,
    so neither the developer's environment nor a stray .env leaks in."""
    env_dir = tmp_path / "isolated_env"
    env_dir.mkdir()
    (env_dir / ".env").touch()
    for name in FIGLINK_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(env_dir)
    yield


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def simple_graph() -> Graph:
    """Loader -> Sampler -> Save, the smallest useful pipeline."""
    graph = Graph()
    loader = graph.add(
        Node(
            "CheckpointLoader",
            outputs=[OutputSlot("MODEL", "MODEL")],
            widgets=[Widget("ckpt_name", "model.safetensors", type="combo")],
        )
    )
    sampler = graph.add(
        Node(
            "KSampler",
            inputs=[InputSlot("model", "MODEL")],
            outputs=[OutputSlot("LATENT", "LATENT")],
            widgets=[Widget("seed", 42), Widget("steps", 20)],
        )
    )
    save = graph.add(Node("SaveLatent", inputs=[InputSlot("samples", "LATENT")]))
    graph.connect(loader, 0, sampler, 0)
    graph.connect(sampler, 0, save, 0)
    return graph
