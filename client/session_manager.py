"""Session identity for the live channel."""

import json
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

CLIENT_ID_KEY = "clientId"


class IdentityStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...


class MemoryIdentityStore:
    """Process-local store."""

    def __init__(self, values: dict[str, str] | None = None):
        self.values: dict[str, str] = dict(values or {})

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value


class FileIdentityStore:
    """Store backed by a small JSON file, so an id survives process restarts."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable session file {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data), encoding="utf-8")


class SessionIdentity:
    """Correlation id routing engine events back to this client.

    Two stores are involved. The context store belongs to this client only
    and is never copied; its id is what a reconnect asks the engine to
    resume. The shared store is copied into duplicated clients so they can
    see which id they came from without taking it over.
    """

    def __init__(
        self,
        context_store: IdentityStore | None = None,
        shared_store: IdentityStore | None = None,
    ):
        self.context_store: IdentityStore = context_store or MemoryIdentityStore()
        self.shared_store: IdentityStore = shared_store or MemoryIdentityStore()
        self.initial_client_id: str | None = self.shared_store.get(CLIENT_ID_KEY)
        self.client_id: str | None = None

    @property
    def reconnect_id(self) -> str | None:
        return self.context_store.get(CLIENT_ID_KEY)

    def adopt(self, client_id: str) -> None:
        """Use ``client_id`` from now on and persist it to both stores."""
        if client_id != self.client_id:
            logger.info(f"Adopting session id {client_id}")
        self.client_id = client_id
        self.context_store.set(CLIENT_ID_KEY, client_id)
        self.shared_store.set(CLIENT_ID_KEY, client_id)

    def duplicate(self) -> "SessionIdentity":
        """Identity for a duplicated client.

        The copy knows the original id as ``initial_client_id`` but starts
        with an empty context store, so it never resumes the active session.
        """
        shared = MemoryIdentityStore()
        current = self.shared_store.get(CLIENT_ID_KEY)
        if current is not None:
            shared.set(CLIENT_ID_KEY, current)
        return SessionIdentity(MemoryIdentityStore(), shared)
