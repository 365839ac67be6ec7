import asyncio
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from admin.app import create_app
from cloner.errors import CapacityExceeded, OperationNotFound, Unauthorized
from cloner.events import CompletedEvent, ProgressEvent
from cloner.models import OperationStatus, Phase


@pytest.fixture
def registry() -> MagicMock:
    return MagicMock()


@pytest.fixture
def client(registry: MagicMock) -> TestClient:
    return TestClient(create_app(registry))


def _status(phase: Phase = Phase.ROLES, progress: int = 20) -> OperationStatus:
    return OperationStatus(
        operation_id="abc",
        phase=phase,
        progress=progress,
        cancel_requested=False,
        source_id=100,
        target_workspace_id=900,
    )


class TestStartClone:
    def test_accepted(self, client: TestClient, registry: MagicMock) -> None:
        registry.start.return_value = "abc"
        resp = client.post(
            "/api/clones",
            json={"source_id": "100", "requester_id": 42, "options": {"include_emojis": True}},
        )
        assert resp.status_code == 202
        assert resp.json() == {"ok": True, "operation_id": "abc"}
        registry.start.assert_called_once_with(100, 42, {"include_emojis": True})

    def test_capacity_exceeded(self, client: TestClient, registry: MagicMock) -> None:
        registry.start.side_effect = CapacityExceeded(2)
        resp = client.post("/api/clones", json={"source_id": 1, "requester_id": 2})
        assert resp.status_code == 429
        assert resp.json()["limit"] == 2

    @pytest.mark.parametrize(
        "body, error",
        [
            ({"requester_id": 2}, "invalid-source_id"),
            ({"source_id": "abc", "requester_id": 2}, "invalid-source_id"),
            ({"source_id": 1}, "invalid-requester_id"),
            ({"source_id": 1, "requester_id": 2, "options": [1]}, "invalid-options"),
        ],
    )
    def test_validation(self, client: TestClient, registry: MagicMock, body, error) -> None:
        resp = client.post("/api/clones", json=body)
        assert resp.status_code == 422
        assert resp.json()["error"] == error
        registry.start.assert_not_called()


class TestStatus:
    def test_found(self, client: TestClient, registry: MagicMock) -> None:
        registry.get_status.return_value = _status()
        resp = client.get("/api/clones/abc")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "active"
        assert body["phase"] == "roles"
        assert body["target_workspace_id"] == "900"

    def test_not_found(self, client: TestClient, registry: MagicMock) -> None:
        registry.get_status.side_effect = OperationNotFound("abc")
        resp = client.get("/api/clones/abc")
        assert resp.status_code == 404
        assert resp.json() == {"status": "not_found"}

    def test_list(self, client: TestClient, registry: MagicMock) -> None:
        registry.list_active.return_value = [_status()]
        resp = client.get("/api/clones")
        assert [i["operation_id"] for i in resp.json()["items"]] == ["abc"]


class TestCancel:
    def test_ok(self, client: TestClient, registry: MagicMock) -> None:
        resp = client.post("/api/clones/abc/cancel", json={"requester_id": 42})
        assert resp.status_code == 200
        registry.request_cancel.assert_called_once_with("abc", 42)

    def test_unauthorized(self, client: TestClient, registry: MagicMock) -> None:
        registry.request_cancel.side_effect = Unauthorized("abc", 7)
        resp = client.post("/api/clones/abc/cancel", json={"requester_id": 7})
        assert resp.status_code == 403

    def test_not_found(self, client: TestClient, registry: MagicMock) -> None:
        registry.request_cancel.side_effect = OperationNotFound("abc")
        resp = client.post("/api/clones/abc/cancel", json={"requester_id": 7})
        assert resp.status_code == 404
        assert resp.json() == {"status": "not_found"}


class TestEventStream:
    def test_streams_until_terminal(self, client: TestClient, registry: MagicMock) -> None:
        q: asyncio.Queue = asyncio.Queue()
        q.put_nowait(ProgressEvent(operation_id="abc", phase=Phase.ROLES, percent=20))
        q.put_nowait(CompletedEvent(operation_id="abc", source_id=1, target_id=2, name="n"))
        registry.subscribe.return_value = q

        with client.websocket_connect("/api/clones/abc/events") as ws:
            first = ws.receive_json()
            second = ws.receive_json()

        assert (first["type"], first["percent"]) == ("progress", 20)
        assert second["type"] == "completed"
        registry.unsubscribe.assert_called_once_with("abc", q)

    def test_unknown_operation(self, client: TestClient, registry: MagicMock) -> None:
        registry.subscribe.side_effect = OperationNotFound("abc")
        with client.websocket_connect("/api/clones/abc/events") as ws:
            assert ws.receive_json() == {"status": "not_found"}


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.text == "ok"
