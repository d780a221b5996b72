"""Integration tests for POST /api/nodes/{id}/turns."""

import json

from httpx import AsyncClient

from canopy.generation.wire import MEDIA_TYPE
from canopy.models import ROOT_NODE_ID, StreamEvent
from canopy.persistence.repository import TreeRepository
from canopy.trees.store import TreeStore
from tests.fixtures import FakeProvider


def _records(body: str) -> list[dict]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


class TestTurnEndpoint:
    async def test_non_streaming_turn(self, client: AsyncClient, store: TreeStore, repo: TreeRepository):
        response = await client.post(f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": "hi"})
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["message"]["content"] == "Fake response"

        saved = await repo.load()
        assert len(saved.get_node(ROOT_NODE_ID).chat_history) == 2

    async def test_streaming_turn(self, client: AsyncClient, provider: FakeProvider, store: TreeStore):
        provider.events = [
            StreamEvent(type="thought", content="abc"),
            StreamEvent(type="message", content="xyz"),
        ]
        response = await client.post(
            f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": "hi", "stream": True}
        )
        assert response.status_code == 200
        assert response.headers["content-type"].startswith(MEDIA_TYPE)
        assert _records(response.text) == [
            {"type": "thought", "content": "abc"},
            {"type": "message", "content": "xyz"},
            {"type": "complete", "content": ""},
        ]
        assert store.get_node(ROOT_NODE_ID).chat_history[-1].content == (
            "Thoughts:abc\n---\nAnswer:xyz"
        )

    async def test_streaming_error_record(self, client: AsyncClient, provider: FakeProvider, store: TreeStore):
        provider.events = []
        provider.error = RuntimeError("down")
        response = await client.post(
            f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": "hi", "stream": True}
        )
        records = _records(response.text)
        assert [r["type"] for r in records] == ["error"]
        assert store.get_node(ROOT_NODE_ID).chat_history[-1].content.startswith("Error: ")

    async def test_empty_turn_rejected(self, client: AsyncClient):
        response = await client.post(f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": ""})
        assert response.status_code == 400

    async def test_missing_node(self, client: AsyncClient):
        response = await client.post("/api/nodes/ghost/turns", json={"content": "hi"})
        assert response.status_code == 404

    async def test_unknown_provider(self, client: AsyncClient):
        response = await client.post(
            f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": "hi", "provider": "nope"}
        )
        assert response.status_code == 400

    async def test_model_override(self, client: AsyncClient, provider: FakeProvider):
        await client.post(
            f"/api/nodes/{ROOT_NODE_ID}/turns", json={"content": "hi", "model": "gpt-4o"}
        )
        assert provider.requests[-1].model == "gpt-4o"
