import asyncio
import json

import httpx
import pytest

from server.api.api_app import create_app, shutdown_app, status_for_error
from services.knowledge_sync.KnowledgeService import KnowledgeService
from shared.exceptions import (
    CircuitOpenError,
    ConflictError,
    ExtractionError,
    KnowledgeError,
    PersistenceError,
    RemoteRequestError,
    ValidationError,
)
from shared.helper.identity import deterministic_id

HEADERS = {"X-API-Key": "test-key"}


@pytest.fixture
def app(helper_config, logger, knowledge):
    app = create_app(use_lifespan=False)
    app.state.config = helper_config
    app.state.logging = logger
    app.state.knowledge = knowledge
    app.state.background_tasks = set()
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestAuth:
    async def test_missing_key(self, client):
        response = await client.get("/knowledge")
        assert response.status_code == 401

    async def test_wrong_key(self, client):
        response = await client.get("/knowledge", headers={"X-API-Key": "nope"})
        assert response.status_code == 401

    async def test_health_needs_no_key(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["sync"] == "idle"


class TestKnowledgeRoutes:
    async def test_add_then_skip(self, client):
        body = {"id": "doc-1", "text": "The cat sat on the mat", "metadata": {"kind": "story"}}
        first = await client.post("/knowledge", json=body, headers=HEADERS)
        second = await client.post("/knowledge", json=body, headers=HEADERS)
        assert first.json() == {"id": "doc-1", "outcome": "created"}
        assert second.json() == {"id": "doc-1", "outcome": "skipped"}

    async def test_add_generates_id(self, client):
        response = await client.post("/knowledge", json={"text": "No id given"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["id"]

    async def test_get_and_fragments(self, client):
        await client.post("/knowledge", json={"id": "doc-1", "text": "Some text"}, headers=HEADERS)

        plain = await client.get("/knowledge/doc-1", headers=HEADERS)
        assert plain.status_code == 200
        assert plain.json()["fragments"] is None

        full = await client.get("/knowledge/doc-1", params={"include_fragments": "true"}, headers=HEADERS)
        assert [f["text"] for f in full.json()["fragments"]] == ["Some text"]

    async def test_get_missing(self, client):
        response = await client.get("/knowledge/missing", headers=HEADERS)
        assert response.status_code == 404

    async def test_list_with_cursor_and_filters(self, client):
        for i in range(3):
            await client.post("/knowledge", json={"id": f"doc-{i}", "text": f"text {i}", "metadata": {"n": i}}, headers=HEADERS)

        first = await client.get("/knowledge", params={"limit": 2}, headers=HEADERS)
        assert len(first.json()["items"]) == 2
        cursor = first.json()["next_cursor"]
        assert cursor

        rest = await client.get("/knowledge", params={"limit": 2, "cursor": cursor}, headers=HEADERS)
        assert len(rest.json()["items"]) == 1
        assert rest.json()["next_cursor"] is None

        filtered = await client.get("/knowledge", params={"filters": json.dumps({"n": {"$gte": 1}})}, headers=HEADERS)
        assert {d["id"] for d in filtered.json()["items"]} == {"doc-1", "doc-2"}

    @pytest.mark.parametrize(
        "params",
        [{"filters": "{not json"}, {"filters": "[1, 2]"}, {"cursor": "garbage!"}, {"limit": 0}, {"sort": "up"}],
    )
    async def test_list_bad_input(self, client, params):
        response = await client.get("/knowledge", params=params, headers=HEADERS)
        assert response.status_code == 400

    async def test_search(self, client):
        await client.post("/knowledge", json={"id": "cats", "text": "The cat sat on the mat"}, headers=HEADERS)
        response = await client.post("/knowledge/search", json={"query": "cat mat"}, headers=HEADERS)
        data = response.json()
        assert response.status_code == 200
        assert data["query"] == "cat mat"
        assert data["total"] == len(data["results"]) == 1
        assert data["results"][0]["document_id"] == "cats"

    async def test_search_blank_query(self, client):
        response = await client.post("/knowledge/search", json={"query": " "}, headers=HEADERS)
        assert response.status_code == 400

    async def test_delete(self, client):
        await client.post("/knowledge", json={"id": "doc-1", "text": "bye"}, headers=HEADERS)
        assert (await client.delete("/knowledge/doc-1", headers=HEADERS)).status_code == 204
        assert (await client.delete("/knowledge/doc-1", headers=HEADERS)).status_code == 404


class TestSyncRoute:
    async def test_trigger_runs_in_background(self, client, app, remote):
        remote.add_file(1, "faq.md", b"Refunds take five days.")
        response = await client.post("/knowledge/sync", headers=HEADERS)
        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "agent_id": app.state.knowledge.agent_id}

        await asyncio.gather(*app.state.background_tasks)
        assert app.state.knowledge.sync.last_report.created == 1

    async def test_shutdown_lets_triggered_cycle_finish(self, client, app, remote, monkeypatch):
        knowledge = app.state.knowledge
        url = remote.add_file(1, "faq.md", b"Refunds take five days.")
        add = knowledge.ingestion.add

        async def slow_add(*args, **kwargs):
            await asyncio.sleep(0.2)
            return await add(*args, **kwargs)

        monkeypatch.setattr(knowledge.ingestion, "add", slow_add)
        response = await client.post("/knowledge/sync", headers=HEADERS)
        assert response.status_code == 202

        await shutdown_app(app)

        assert knowledge.sync.last_report.created == 1
        assert await knowledge.get(deterministic_id(url)) is not None

    async def test_add_with_foreign_id_conflicts(self, client, app, helper_config, settings, storage, embed_client):
        other = KnowledgeService(helper_config, settings.model_copy(update={"agent_id": "agent-other"}), storage, embed_client)
        await other.add("shared-id", "Owned by the other agent")

        response = await client.post("/knowledge", json={"id": "shared-id", "text": "mine"}, headers=HEADERS)

        assert response.status_code == 409
        assert await other.get("shared-id") is not None

    async def test_without_source(self, client, app, helper_config, settings, storage, embed_client):
        app.state.knowledge = KnowledgeService(helper_config, settings, storage, embed_client)
        response = await client.post("/knowledge/sync", headers=HEADERS)
        assert response.status_code == 409

    async def test_not_ready(self, client, app):
        app.state.knowledge = None
        response = await client.get("/knowledge", headers=HEADERS)
        assert response.status_code == 503


class TestErrorMapping:
    @pytest.mark.parametrize(
        "error, status",
        [
            (ValidationError("bad"), 400),
            (ExtractionError("bad file"), 400),
            (ConflictError("dup"), 409),
            (CircuitOpenError("open"), 503),
            (RemoteRequestError("upstream", status_code=401), 502),
            (PersistenceError("db"), 500),
            (KnowledgeError("other"), 500),
        ],
    )
    def test_status_for_error(self, error, status):
        assert status_for_error(error) == status
