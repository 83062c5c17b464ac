import json

from client.session_manager import (
    CLIENT_ID_KEY,
    FileIdentityStore,
    MemoryIdentityStore,
    SessionIdentity,
)


class TestIdentityStores:
    """Tests for the identity store implementations."""

    def test_memory_store(self):
        store = MemoryIdentityStore()
        assert store.get("clientId") is None
        store.set("clientId", "abc")
        assert store.get("clientId") == "abc"

    def test_file_store_persists(self, tmp_path):
        path = tmp_path / "state" / "session.json"
        FileIdentityStore(path).set("clientId", "abc")

        assert FileIdentityStore(path).get("clientId") == "abc"
        assert json.loads(path.read_text()) == {"clientId": "abc"}

    def test_file_store_ignores_corrupt_file(self, tmp_path, caplog):
        path = tmp_path / "session.json"
        path.write_text("{not json")

        store = FileIdentityStore(path)

        assert store.get("clientId") is None
        assert "unreadable" in caplog.text
        store.set("clientId", "fresh")
        assert store.get("clientId") == "fresh"


class TestSessionIdentity:
    """Tests for SessionIdentity adoption and duplication."""

    def test_fresh_identity_has_no_ids(self):
        identity = SessionIdentity()
        assert identity.client_id is None
        assert identity.reconnect_id is None
        assert identity.initial_client_id is None

    def test_adopt_persists_to_both_stores(self):
        context, shared = MemoryIdentityStore(), MemoryIdentityStore()
        identity = SessionIdentity(context, shared)

        identity.adopt("sid-1")

        assert identity.client_id == "sid-1"
        assert identity.reconnect_id == "sid-1"
        assert context.get(CLIENT_ID_KEY) == "sid-1"
        assert shared.get(CLIENT_ID_KEY) == "sid-1"

    def test_initial_client_id_comes_from_shared_store(self):
        shared = MemoryIdentityStore({CLIENT_ID_KEY: "previous"})

        identity = SessionIdentity(MemoryIdentityStore(), shared)

        assert identity.initial_client_id == "previous"
        assert identity.reconnect_id is None

    def test_reload_resumes_from_context_store(self, tmp_path):
        path = tmp_path / "session.json"
        SessionIdentity(FileIdentityStore(path)).adopt("sid-1")

        reloaded = SessionIdentity(FileIdentityStore(path))

        assert reloaded.reconnect_id == "sid-1"

    def test_duplicate_never_reuses_active_id(self):
        original = SessionIdentity()
        original.adopt("sid-1")

        copy = original.duplicate()

        assert copy.initial_client_id == "sid-1"
        assert copy.reconnect_id is None
        assert copy.client_id is None

        copy.adopt("sid-2")
        assert original.client_id == "sid-1"
        assert original.reconnect_id == "sid-1"
