"""Tests for chittydna.sync: HTTP remote services and the sync phase."""

import json
from unittest.mock import Mock, patch

import httpx
import pytest

from chittydna.protocols import RemoteServices, StorageError
from chittydna.reflection import REFLECTIONS_KEY
from chittydna.sync import (
    PENDING_KEY,
    SYNC_LOG_KEY,
    HttpRemoteServices,
    SyncClient,
    learned_items,
)
from chittydna.types import ChittyDNA

from conftest import make_workflow

SERVICES = {
    "registry": "https://registry.test",
    "chronicle": "https://chronicle.test",
    "connect": "https://connect.test",
    "auth": "https://auth.test",
}


class FakeBackend:
    """Routes httpx requests to canned responses and records them."""

    def __init__(self, down=()):
        self.down = set(down)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host.split(".")[0]
        if host in self.down:
            raise httpx.ConnectError("unreachable", request=request)
        path = request.url.path
        if path == "/health":
            return httpx.Response(200, json={"ok": True})
        if path == "/api/v1/token/validate":
            return httpx.Response(200, json={"valid": True, "expiresAt": "2025-03-01T13:00:00Z"})
        if path == "/api/v1/tools":
            return httpx.Response(201, json={"id": "t1"})
        if path == "/api/v1/patterns/community":
            return httpx.Response(200, json={"patterns": [{"id": "p1"}, {"id": "p2"}]})
        if path == "/log":
            return httpx.Response(200, content=b"")
        if path == "/api/v1/mcp/tools":
            return httpx.Response(200, json={"tools": [{"name": "search"}]})
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


def remote_for(backend, clock, token="tok"):
    return HttpRemoteServices(
        services=SERVICES, token=token, transport=httpx.MockTransport(backend), clock=clock
    )


@pytest.fixture
def state():
    return ChittyDNA(workflows=[make_workflow("wf1", value="git push origin main", usage_count=3)])


class TestHttpRemoteServices:
    def test_satisfies_protocol(self, clock):
        assert isinstance(remote_for(FakeBackend(), clock), RemoteServices)

    def test_authenticate_sends_bearer(self, clock):
        backend = FakeBackend()
        remote = remote_for(backend, clock)
        assert remote.authenticate() == "tok"
        assert backend.requests[0].headers["Authorization"] == "Bearer tok"

    def test_token_validation_cached_until_expiry(self, clock):
        backend = FakeBackend()
        remote = remote_for(backend, clock)
        remote.authenticate()
        remote.authenticate()
        assert backend.paths().count("/api/v1/token/validate") == 1
        clock.advance(hours=2)
        remote.authenticate()
        assert backend.paths().count("/api/v1/token/validate") == 2

    def test_no_token(self, clock):
        backend = FakeBackend()
        assert remote_for(backend, clock, token=None).authenticate() is None
        assert backend.requests == []

    def test_auth_service_down(self, clock):
        assert remote_for(FakeBackend(down={"auth"}), clock).authenticate() is None

    def test_fetch_and_discover(self, clock):
        remote = remote_for(FakeBackend(), clock)
        assert [p["id"] for p in remote.fetch_community_patterns()] == ["p1", "p2"]
        assert remote.discover_tools() == [{"name": "search"}]
        assert remote.log_event({"x": 1}) is True

    def test_failures_return_none(self, clock):
        remote = remote_for(FakeBackend(down={"registry", "connect"}), clock)
        assert remote.fetch_community_patterns() is None
        assert remote.discover_tools() is None
        assert remote.register_learned_items([{"id": "a"}]) is False

    def test_http_error_status(self, clock):
        remote = remote_for(lambda request: httpx.Response(500), clock)
        assert remote.log_event({"x": 1}) is False

    def test_service_health(self, clock):
        remote = remote_for(FakeBackend(down={"chronicle"}), clock)
        health = remote.service_health()
        assert health == {"registry": True, "chronicle": False, "connect": True, "auth": True}
        assert remote.health_check() is True


class TestLearnedItems:
    def test_hashes_only(self, state):
        items = learned_items(state)
        assert items[0]["pattern_hash"] == state.workflows[0].pattern.hash
        assert "git push" not in json.dumps(items)


class TestSyncClient:
    def test_full_sync(self, storage, clock, state):
        backend = FakeBackend()
        storage.append_line(REFLECTIONS_KEY, json.dumps({"timestamp": "t", "patterns": [1, 2]}))
        client = SyncClient(storage, remote=remote_for(backend, clock), clock=clock)

        result = client.sync(state)

        assert result.success
        assert result.synced == {"registry": True, "chronicle": True, "connect": True}
        assert result.registered == ["wf1"]
        assert result.fetched == ["p1", "p2"]
        assert result.errors == []
        assert client.pending() == []
        assert "git push" not in "".join(r.content.decode() for r in backend.requests)

    def test_offline_queues_everything(self, storage, clock, state):
        storage.append_line(REFLECTIONS_KEY, json.dumps({"timestamp": "t"}))
        client = SyncClient(storage, remote=None, clock=clock)

        result = client.sync(state)

        assert not result.success
        assert result.errors == ["Authentication failed - running in offline mode"]
        assert [p["service"] for p in client.pending()] == ["registry", "chronicle"]

    def test_partial_outage(self, storage, clock, state):
        client = SyncClient(storage, remote=remote_for(FakeBackend(down={"registry"}), clock), clock=clock)
        result = client.sync(state)
        assert result.success
        assert result.synced["registry"] is False
        assert result.synced["connect"] is True
        assert "Registry sync failed: service unavailable" in result.errors
        assert "Community pattern fetch failed" in result.errors
        assert client.pending()[0]["service"] == "registry"

    def test_never_raises(self, storage, clock, state):
        """Even a remote that throws is reported, not raised."""
        remote = Mock()
        remote.authenticate.return_value = "tok"
        remote.register_learned_items.side_effect = RuntimeError("kaboom")
        result = SyncClient(storage, remote=remote, clock=clock).sync(state)
        assert not result.success
        assert result.errors == ["Sync failed: kaboom"]

    def test_non_object_reflection_lines_skipped(self, storage, clock, state):
        """Reflection lines that are valid JSON but not objects are ignored."""
        storage.append_line(REFLECTIONS_KEY, json.dumps([1, 2]))
        storage.append_line(REFLECTIONS_KEY, json.dumps({"timestamp": "t"}))
        client = SyncClient(storage, remote=None, clock=clock)

        result = client.sync(state)

        assert result.errors == ["Authentication failed - running in offline mode"]
        assert [p["service"] for p in client.pending()] == ["registry", "chronicle"]

    def test_unreadable_storage_reported(self, storage, clock, state):
        with patch.object(storage, "read_lines", side_effect=StorageError("disk gone")):
            result = SyncClient(storage, remote=None, clock=clock).sync(state)
        assert not result.success
        assert result.errors == ["Sync failed: disk gone"]

    def test_result_logged_and_status(self, storage, clock, state):
        client = SyncClient(storage, remote=remote_for(FakeBackend(), clock), clock=clock)
        client.sync(state)
        entry = json.loads(storage.read_lines(SYNC_LOG_KEY)[-1])
        assert entry["type"] == "sync_result"
        status = client.get_status()
        assert status["connected"] is True
        assert status["last_sync"] == "2025-03-01T12:00:00Z"
        assert status["pending_uploads"] == 0

    def test_retry_pending(self, storage, clock, state):
        SyncClient(storage, remote=None, clock=clock).sync(state)
        client = SyncClient(storage, remote=remote_for(FakeBackend(), clock), clock=clock)
        assert client.retry_pending() == {"success": 1, "failed": 0}
        assert client.pending() == []

    def test_retry_keeps_failures(self, storage, clock, state):
        client = SyncClient(storage, remote=remote_for(FakeBackend(down={"registry"}), clock), clock=clock)
        client.queue_for_later("registry", {"items": learned_items(state)})
        client.queue_for_later("chronicle", {"action": "reflection"})
        assert client.retry_pending() == {"success": 1, "failed": 1}
        assert [p["service"] for p in client.pending()] == ["registry"]

    def test_retry_offline(self, storage, clock):
        client = SyncClient(storage, remote=None, clock=clock)
        client.queue_for_later("chronicle", {"a": 1})
        assert client.retry_pending() == {"success": 0, "failed": 1}

    def test_corrupt_pending_list(self, storage, clock):
        storage.write_bytes(PENDING_KEY, b"{{")
        assert SyncClient(storage, clock=clock).pending() == []

    def test_fetch_community_patterns_offline(self, storage, clock):
        assert SyncClient(storage, clock=clock).fetch_community_patterns() == []
