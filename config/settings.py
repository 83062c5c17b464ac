import os
from dotenv import load_dotenv
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ClientSettings:
    api_root: str = "http://127.0.0.1:8188"
    user: str = ""
    reconnect_delay: float = 0.3
    poll_interval: float = 1.0
    request_timeout: float = 30.0
    dev_mode: bool = False
    sort_nodes: bool = False
    session_file: str | None = None
    log_level: str = "INFO"


def load_settings() -> ClientSettings:
    """
    Loads client settings from environment variables (and a .env file, if present).
    """
    load_dotenv()

    return ClientSettings(
        api_root=os.getenv("FIGLINK_API_ROOT", "http://127.0.0.1:8188"),
        user=os.getenv("FIGLINK_USER", ""),
        reconnect_delay=float(os.getenv("FIGLINK_RECONNECT_DELAY", "0.3")),
        poll_interval=float(os.getenv("FIGLINK_POLL_INTERVAL", "1.0")),
        request_timeout=float(os.getenv("FIGLINK_REQUEST_TIMEOUT", "30")),
        dev_mode=_env_bool("FIGLINK_DEV_MODE"),
        sort_nodes=_env_bool("FIGLINK_SORT_NODES"),
        session_file=os.getenv("FIGLINK_SESSION_FILE") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
