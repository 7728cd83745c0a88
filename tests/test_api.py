"""Tests for the FastAPI surface, wired to the in-memory fixtures."""

import pytest
from fastapi.testclient import TestClient

from series_automation.app.dependencies import (
    get_authoring_service,
    get_event_log,
    get_runtime_service,
    get_trigger_subscriber,
    get_visitor_directory,
)
from series_automation.app.main import app
from series_automation.services.subscriptions import SeriesTriggerSubscriber

WORKSPACE = "ws-1"


@pytest.fixture
def client(authoring, runtime, visitors, event_log):
    app.dependency_overrides[get_authoring_service] = lambda: authoring
    app.dependency_overrides[get_runtime_service] = lambda: runtime
    app.dependency_overrides[get_trigger_subscriber] = lambda: SeriesTriggerSubscriber(runtime)
    app.dependency_overrides[get_visitor_directory] = lambda: visitors
    app.dependency_overrides[get_event_log] = lambda: event_log
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_series(client, **body) -> dict:
    payload = {"workspace_id": WORKSPACE, "name": "Welcome", "entry_triggers": [{"source": "event", "event_name": "signup"}]}
    payload.update(body)
    response = client.post("/series", json=payload)
    assert response.status_code == 201
    return response.json()


class TestAuthoringApi:
    """Tests for the authoring endpoints."""

    def test_create_and_fetch(self, client) -> None:
        series = create_series(client)
        block = client.post(f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "Hi"}}).json()

        response = client.get(f"/series/{series['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["series"]["status"] == "draft"
        assert [b["id"] for b in data["blocks"]] == [block["id"]]

    def test_activate_not_ready_returns_blockers(self, client) -> None:
        series = create_series(client)

        response = client.post(f"/series/{series['id']}/activate")

        assert response.status_code == 422
        assert [b["code"] for b in response.json()["blockers"]] == ["empty_graph"]

    def test_cycle_is_rejected(self, client) -> None:
        series = create_series(client)
        first = client.post(f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "1"}}).json()
        second = client.post(f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "2"}}).json()
        url = f"/series/{series['id']}/connections"

        assert client.post(url, json={"from_block_id": first["id"], "to_block_id": second["id"]}).status_code == 201
        response = client.post(url, json={"from_block_id": second["id"], "to_block_id": first["id"]})

        assert response.status_code == 422

    def test_unknown_series_is_404(self, client) -> None:
        assert client.get("/series/nope").status_code == 404
        assert client.delete("/blocks/nope").status_code == 404

    def test_update_and_readiness(self, client) -> None:
        series = create_series(client, entry_triggers=[])
        client.post(f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "Hi"}})

        patched = client.patch(f"/series/{series['id']}", json={"name": "Renamed"})
        readiness = client.get(f"/series/{series['id']}/readiness").json()

        assert patched.json()["name"] == "Renamed"
        assert readiness["ready"] is True
        assert [w["code"] for w in readiness["warnings"]] == ["no_entry_triggers"]

    def test_archive_and_delete(self, client) -> None:
        series = create_series(client)
        client.post(f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "Hi"}})

        archived = client.post(f"/series/{series['id']}/archive")
        listed = client.get("/series", params={"workspace_id": WORKSPACE, "series_status": "archived"}).json()
        deleted = client.delete(f"/series/{series['id']}")

        assert archived.status_code == 200
        assert archived.json()["status"] == "archived"
        assert [s["id"] for s in listed] == [series["id"]]
        assert deleted.status_code == 204
        assert client.get(f"/series/{series['id']}").status_code == 404
        assert client.delete(f"/series/{series['id']}").status_code == 404

    def test_telemetry(self, client, build_series, visitor) -> None:
        series, [chat] = build_series(("chat", {"body": "Hi"}))
        client.post(f"/workspaces/{WORKSPACE}/visitors/v-1/triggers", json={"source": "event", "event_name": "signup"})

        response = client.get(f"/series/{series.id}/telemetry")

        assert response.status_code == 200
        data = response.json()
        assert data["totals"]["entered"] == 1
        assert data["totals"]["delivery_attempts"] == 1
        [row] = data["blocks"]
        assert row["block_id"] == chat.id
        assert row["block"]["type"] == "chat"
        assert client.get("/series/nope/telemetry").status_code == 404


class TestRuntimeApi:
    """Tests for the runtime endpoints."""

    def test_event_flow(self, client, channel, event_log) -> None:
        series = create_series(client)
        wait = client.post(
            f"/series/{series['id']}/blocks",
            json={"type": "wait", "config": {"wait_type": "until_event", "wait_until_event": "Purchase"}},
        ).json()
        chat = client.post(
            f"/series/{series['id']}/blocks", json={"type": "chat", "config": {"body": "Thanks {{ visitor.name }}"}}
        ).json()
        client.post(f"/series/{series['id']}/connections", json={"from_block_id": wait["id"], "to_block_id": chat["id"]})
        assert client.post(f"/series/{series['id']}/activate").json()["status"] == "active"
        client.put("/visitors/v-7", json={"id": "v-7", "workspace_id": WORKSPACE, "name": "Lin"})

        signup = client.post(f"/workspaces/{WORKSPACE}/visitors/v-7/events", json={"event_name": "signup"}).json()
        waiting = client.get(f"/series/{series['id']}/progress/v-7").json()
        purchase = client.post(f"/workspaces/{WORKSPACE}/visitors/v-7/events", json={"event_name": "Purchase"}).json()
        done = client.get(f"/series/{series['id']}/progress/v-7").json()

        assert signup["enrollment"]["entered"] == 1
        assert waiting["status"] == "waiting"
        assert waiting["wait_event_name"] == "Purchase"
        assert purchase["resume"] == {"matched": 1, "resumed": 1, "reason": None}
        assert done["status"] == "completed"
        assert [d.body for d in channel.sent] == ["Thanks Lin"]
        assert event_log.count_events("v-7", "Purchase") == 1

    def test_visitor_id_mismatch(self, client) -> None:
        response = client.put("/visitors/v-1", json={"id": "v-2", "workspace_id": WORKSPACE})
        assert response.status_code == 400

    def test_missing_progress(self, client) -> None:
        assert client.get("/series/s-1/progress/v-1").status_code == 404
        assert client.post("/progress/nope/exit", json={}).status_code == 404

    def test_manual_exit(self, client, build_series, visitor) -> None:
        series, _ = build_series(("wait", {"wait_type": "until_event", "wait_until_event": "Purchase"}), ("chat", {"body": "Hi"}))
        client.post(f"/workspaces/{WORKSPACE}/visitors/v-1/triggers", json={"source": "event", "event_name": "signup"})
        progress = client.get(f"/series/{series.id}/progress/v-1").json()

        exited = client.post(f"/progress/{progress['id']}/exit", json={"reason": "Unsubscribed"})
        again = client.post(f"/progress/{progress['id']}/goal", json={})

        assert exited.status_code == 200
        assert exited.json()["status"] == "exited"
        assert again.status_code == 422

    def test_sweep(self, client) -> None:
        response = client.post("/sweeps/waiting", json={})

        assert response.status_code == 200
        assert response.json() == {"processed": 0, "scanned": 0, "reason": None}
