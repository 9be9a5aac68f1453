"""
Shared fixtures for the knowledge engine tests.

Backends are faked at the HTTP level with httpx.MockTransport. The storage
fixture runs against a SQLite file per test and, when TEST_POSTGRES_DSN is
set, against Postgres with pgvector as well.
"""
import json
import logging
import math
import os
import re

import httpx
import pytest
import pytest_asyncio

from services.knowledge_sync.KnowledgeService import KnowledgeService
from shared.clients.embed.ollama.EmbedClientOllama import EmbedClientOllama
from shared.clients.source.rest.SourceClientRest import SourceClientRest
from shared.clients.storage.StorageClientManager import StorageClientManager
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import ColorLogger
from shared.models.config import KnowledgeSettings

DIMENSION = 384
AGENT_ID = "agent-test"
REMOTE_BASE_URL = "http://remote.test"
EMBED_BASE_URL = "http://embed.test"

_TOKEN = re.compile(r"\w+")


class Vocabulary:
    """Bag-of-words embedder: every new word gets its own dimension."""

    def __init__(self, dimension: int = DIMENSION):
        self.dimension = dimension
        self._index: dict[str, int] = {}

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token in _TOKEN.findall(text.lower()):
            if token not in self._index:
                self._index[token] = len(self._index) % self.dimension
            vector[self._index[token]] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector] if norm else vector


class FakeEmbedBackend:
    """Ollama compatible /api/embed endpoint."""

    def __init__(self, vocabulary: Vocabulary):
        self.vocabulary = vocabulary
        self.requests: list[dict] = []
        self.fail_with: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/embed":
            body = json.loads(request.content)
            self.requests.append(body)
            if self.fail_with is not None:
                return httpx.Response(self.fail_with, text="backend error")
            return httpx.Response(200, json={"embeddings": [self.vocabulary.embed(t) for t in body["input"]]})
        return httpx.Response(200, text="Ollama is running")


class FakeRemote:
    """Remote knowledge listing plus file downloads."""

    def __init__(self):
        self.items: list[dict] = []
        self.files: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail_listing_with: int | None = None

    def url_for(self, item_id: int, name: str) -> str:
        return f"{REMOTE_BASE_URL}/files/{item_id}/{name}"

    def add_file(self, item_id: int, name: str, content: bytes | None) -> str:
        url = self.url_for(item_id, name)
        self.items.append({"id": item_id, "name": name, "metadata": {"url": url}, "createdAt": "2024-05-01T10:00:00Z"})
        if content is not None:
            self.files[url] = content
        return url

    def remove_item(self, item_id: int) -> None:
        self.items = [item for item in self.items if item["id"] != item_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/api/agents/knowledge/get":
            if self.fail_listing_with is not None:
                return httpx.Response(self.fail_listing_with, text="listing failed")
            body = json.loads(request.content)
            ordered = sorted(self.items, key=lambda item: item["id"])
            page = [item for item in ordered if item["id"] > body["cursor"]][: body["limit"]]
            return httpx.Response(200, json=page)
        content = self.files.get(str(request.url))
        if content is None:
            return httpx.Response(404, text="not found")
        return httpx.Response(200, content=content)

    def download_count(self) -> int:
        return sum(1 for r in self.requests if r.method == "GET")


@pytest.fixture
def logger():
    return ColorLogger(logging.getLogger("knowledge-test"))


@pytest.fixture
def env(monkeypatch, tmp_path):
    values = {
        "ROOT_DIR": str(tmp_path),
        "APP_API_KEY": "test-key",
        "KNOWLEDGE_AGENT_ID": AGENT_ID,
        "KNOWLEDGE_ROOT": str(tmp_path / "knowledge"),
        "KNOWLEDGE_SOURCE_NAME": "remote",
        "KNOWLEDGE_CHUNK_SIZE": "200",
        "KNOWLEDGE_CHUNK_OVERLAP": "20",
        "KNOWLEDGE_SEARCH_THRESHOLD": "0.3",
        "KNOWLEDGE_SYNC_INTERVAL": "0.05",
        "EMBED_ENGINE": "ollama",
        "EMBED_MODEL": "test-embed",
        "EMBED_OLLAMA_BASE_URL": EMBED_BASE_URL,
        "SOURCE_ENGINE": "rest",
        "SOURCE_REST_BASE_URL": REMOTE_BASE_URL,
        "SOURCE_REST_OWNER": AGENT_ID,
        "STORAGE_ENGINE": "sqlite",
        "STORAGE_SQLITE_PATH": str(tmp_path / "db" / "knowledge.db"),
        "STORAGE_RETRY_MAX": "1",
        "STORAGE_RETRY_DELAY": "0.01",
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    return values


@pytest.fixture
def helper_config(env, logger):
    return HelperConfig(logger=logger)


@pytest.fixture
def settings(helper_config):
    return KnowledgeSettings.from_config(helper_config)


@pytest.fixture
def vocabulary():
    return Vocabulary()


@pytest.fixture
def embed_backend(vocabulary):
    return FakeEmbedBackend(vocabulary)


@pytest_asyncio.fixture
async def embed_client(helper_config, embed_backend):
    client = EmbedClientOllama(helper_config=helper_config)
    await client.boot(transport=httpx.MockTransport(embed_backend.handler))
    yield client
    await client.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest_asyncio.fixture
async def source_client(helper_config, remote):
    client = SourceClientRest(helper_config=helper_config)
    await client.boot(transport=httpx.MockTransport(remote.handler))
    yield client
    await client.close()


def _storage_params():
    params = ["sqlite"]
    if os.getenv("TEST_POSTGRES_DSN"):
        params.append("postgres")
    return params


@pytest_asyncio.fixture(params=_storage_params())
async def storage(request, helper_config, monkeypatch):
    """Booted and initialised storage client (dimension 384)."""
    if request.param == "postgres":
        monkeypatch.setenv("STORAGE_ENGINE", "postgres")
        monkeypatch.setenv("STORAGE_POSTGRES_DSN", os.environ["TEST_POSTGRES_DSN"])
    client = StorageClientManager(helper_config=helper_config).get_client()
    await client.boot()
    if request.param == "postgres":
        await client._execute_in_transaction([
            ("DROP TABLE IF EXISTS knowledge_embeddings", []),
            ("DROP TABLE IF EXISTS knowledge", []),
        ])
    await client.do_initialize(DIMENSION)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def knowledge(helper_config, settings, storage, embed_client, source_client):
    service = KnowledgeService(
        helper_config=helper_config,
        settings=settings,
        storage=storage,
        embed_client=embed_client,
        source_client=source_client,
    )
    yield service
    await service.stop()


def unit_vector(*indexes: int, dimension: int = DIMENSION) -> list[float]:
    """Normalised vector with equal weight on the given indexes."""
    vector = [0.0] * dimension
    for index in indexes:
        vector[index] = 1.0
    norm = math.sqrt(len(indexes)) if indexes else 1.0
    return [v / norm for v in vector]
