from __future__ import annotations

import base64
import io
import json
import time

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import BAD_NAME, CUBE, CUBE_WITH_PARAMS, TWO_PARTS, FakeClientFactory
from solidgen import main
from solidgen.core.conversation_store import InMemoryConversationStore
from solidgen.core.orchestrator import SingleFlight
from solidgen.turn_manager import TurnJobManager


@pytest.fixture
def factory(monkeypatch) -> FakeClientFactory:
    factory = FakeClientFactory(CUBE)
    monkeypatch.setattr(main.service, "client_factory", factory)
    monkeypatch.setattr(main.service, "store", InMemoryConversationStore())
    monkeypatch.setattr(main.service, "guard", SingleFlight())
    return factory


@pytest.fixture
def client(factory) -> TestClient:
    return TestClient(main.app)


@pytest.fixture
def live_client(factory, monkeypatch):
    # Fresh manager per test: its queue binds to the event loop of this client
    monkeypatch.setattr(main, "jobs", TurnJobManager(main.settings, main.service))
    with TestClient(main.app) as test_client:
        yield test_client


def _ndjson(response) -> list[dict]:
    return [json.loads(line) for line in response.text.splitlines() if line.strip()]


def _wait_for_job(client: TestClient, job_id: str) -> dict:
    for _ in range(200):
        view = client.get(f"/jobs/{job_id}").json()
        if view["status"] in {"succeeded", "failed", "cancelled"}:
            return view
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestService:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["service"] == main.settings.service_name

    def test_tool_schema(self, client):
        schema = client.get("/tool/schema").json()
        assert schema["name"] == "solid-generate"
        assert "prompt" in schema["input_schema"]["properties"]
        assert schema["endpoints"]["sync"] == "/run"
        assert schema["endpoints"]["status"] == "/jobs/{job_id}"


class TestExecuteAndExport:
    def test_execute_single_solid(self, client):
        body = client.post("/execute", json={"code": CUBE_WITH_PARAMS}).json()
        assert body["ok"] is True
        assert body["kind"] == "single"
        assert body["parameters"] == ["size", "overlap"]
        assert body["meshes"][0]["triangle_count"] == 12
        assert len(body["meshes"][0]["positions"]) == 12 * 9

    def test_execute_parts_without_meshes(self, client):
        body = client.post("/execute", json={"code": TWO_PARTS, "include_meshes": False}).json()
        assert body["kind"] == "parts"
        assert body["part_count"] == 2
        assert body["meshes"] == []

    def test_execute_rejected(self, client):
        body = client.post("/execute", json={"code": BAD_NAME}).json()
        assert body["ok"] is False
        assert body["error"].startswith("NameError")

    def test_export_stl(self, client):
        response = client.post("/export/stl", json={"code": CUBE})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("model/stl")
        assert len(response.content) == 84 + 50 * 12

    def test_export_3mf(self, client):
        response = client.post("/export/3mf", json={"code": TWO_PARTS})
        assert response.status_code == 200
        assert response.content[:2] == b"PK"

    def test_export_unknown_format(self, client):
        assert client.post("/export/obj", json={"code": CUBE}).status_code == 404

    def test_export_rejected_script(self, client):
        response = client.post("/export/stl", json={"code": BAD_NAME})
        assert response.status_code == 422
        assert "NameError" in response.json()["detail"]


class TestGenerate:
    body = {"conversation_history": [{"role": "user", "content": "a cube"}]}

    def test_single_call(self, client):
        response = client.post("/generate", json=self.body)
        assert response.status_code == 200
        assert response.json()["code"] == CUBE

    def test_streamed_call(self, client):
        response = client.post("/generate?stream=true", json=self.body)
        assert response.headers["content-type"].startswith("application/x-ndjson")
        lines = _ndjson(response)
        assert lines[-1] == {"type": "done", "code": CUBE}
        assert "".join(line["text"] for line in lines if line["type"] == "delta") == CUBE

    def test_history_must_end_with_user(self, client):
        body = {"conversation_history": [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]}
        assert client.post("/generate", json=body).status_code == 422

    def test_envelope_payload(self, client):
        response = client.post("/generate", json={"data": self.body, "meta": {"llm_name": "gemini"}})
        assert response.status_code == 200


class TestConversations:
    def test_crud(self, client):
        created = client.post("/conversations", json={"title": "Shelf bracket"})
        assert created.status_code == 201
        cid = created.json()["id"]

        assert client.get(f"/conversations/{cid}").json()["title"] == "Shelf bracket"
        assert [c["id"] for c in client.get("/conversations").json()["conversations"]] == [cid]

        patched = client.patch(f"/conversations/{cid}", json={"title": "Wall bracket"})
        assert patched.json()["title"] == "Wall bracket"

        assert client.delete(f"/conversations/{cid}").json() == {"success": True}
        assert client.get(f"/conversations/{cid}").status_code == 404

    def test_import(self, client):
        payload = {
            "conversations": [
                {"title": "a", "turns": [{"role": "user", "content": "a cube"}], "current_code": CUBE},
                {"title": "b"},
            ]
        }
        body = client.post("/conversations/import", json=payload).json()
        assert body["imported"] == 2
        assert client.get(f"/conversations/{body['ids'][0]}").json()["current_code"] == CUBE

    def test_import_needs_conversations(self, client):
        assert client.post("/conversations/import", json={"conversations": []}).status_code == 422


class TestTurns:
    def test_sync_turn(self, client):
        cid = client.post("/conversations", json={}).json()["id"]
        body = client.post(f"/conversations/{cid}/turns", json={"prompt": "a cube"}).json()
        assert body["success"] is True
        assert body["code"] == CUBE
        assert len(client.get(f"/conversations/{cid}").json()["turns"]) == 2

    def test_streamed_turn(self, client):
        cid = client.post("/conversations", json={}).json()["id"]
        response = client.post(f"/conversations/{cid}/turns/stream", json={"prompt": "a cube"})
        lines = _ndjson(response)
        assert lines[0] == {"type": "state", "state": "thinking", "attempt": 1, "max_attempts": main.settings.max_attempts}
        assert lines[-1]["type"] == "result"
        assert lines[-1]["result"]["status"] == "accepted"

    def test_unknown_conversation(self, client):
        assert client.post("/conversations/nope/turns", json={"prompt": "a cube"}).status_code == 404

    def test_busy_conversation(self, client):
        cid = client.post("/conversations", json={}).json()["id"]
        main.service.guard.claim(cid)
        assert client.post(f"/conversations/{cid}/turns", json={"prompt": "a cube"}).status_code == 409

    def test_invalid_image(self, client, factory):
        cid = client.post("/conversations", json={}).json()["id"]
        payload = {"prompt": "this", "image_attachment": {"data": "!!!", "mime_type": "image/png"}}
        assert client.post(f"/conversations/{cid}/turns", json=payload).status_code == 400
        assert factory.clients == []

    def test_image_turn(self, client):
        buf = io.BytesIO()
        Image.new("RGB", (16, 16), "gray").save(buf, format="PNG")
        cid = client.post("/conversations", json={}).json()["id"]
        payload = {
            "prompt": "this",
            "image_attachment": {"data": base64.b64encode(buf.getvalue()).decode(), "mime_type": "image/png"},
        }
        assert client.post(f"/conversations/{cid}/turns", json=payload).json()["success"] is True

    def test_empty_prompt(self, client):
        cid = client.post("/conversations", json={}).json()["id"]
        assert client.post(f"/conversations/{cid}/turns", json={"prompt": "  "}).status_code == 422


class TestJobs:
    def test_job_creates_conversation(self, live_client):
        accepted = live_client.post("/jobs", json={"prompt": "a cube"}).json()
        view = _wait_for_job(live_client, accepted["job_id"])
        assert view["status"] == "succeeded"
        assert view["progress"] == 100

        result = live_client.get(f"/jobs/{accepted['job_id']}/result").json()
        assert result["status"] == "succeeded"
        assert result["result"]["code"] == CUBE
        conversation = live_client.get(f"/conversations/{accepted['conversation_id']}").json()
        assert conversation["current_code"] == CUBE

    def test_failed_job_reports_status_code(self, live_client, monkeypatch):
        monkeypatch.setattr(main.service, "client_factory", FakeClientFactory(BAD_NAME, BAD_NAME, BAD_NAME))
        accepted = live_client.post("/jobs", json={"prompt": "a cube", "max_attempts": 3}).json()
        view = _wait_for_job(live_client, accepted["job_id"])
        assert view["status"] == "failed"
        assert view["error"]["status_code"] == 422
        assert view["result"]["status"] == "exhausted"

    def test_run_endpoint_mirrors_envelope(self, live_client):
        response = live_client.post("/run", json={"data": {"prompt": "a cube"}, "meta": {}})
        assert response.status_code == 200
        assert response.json()["result"]["success"] is True

    def test_unknown_job(self, live_client):
        assert live_client.get("/jobs/missing").status_code == 404
        assert live_client.delete("/jobs/missing").status_code == 404

    def test_job_for_unknown_conversation(self, live_client):
        response = live_client.post("/jobs", json={"prompt": "a cube", "conversation_id": "missing"})
        assert response.status_code == 404
