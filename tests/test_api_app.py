"""Tests for the FastAPI application."""

from __future__ import annotations

from fastapi.testclient import TestClient

from ragchat.api.app import create_app
from ragchat.config import get_settings

USER = {"X-User-ID": "u1"}


def create_test_client(**overrides) -> TestClient:
    settings = get_settings(
        {
            "environment": "test",
            "openai_api_key": None,
            "anthropic_api_key": None,
            "simulation_chunk_delay": 0,
            "simulation_chunk_jitter": 0,
            "embedding_dim": 64,
            **overrides,
        },
    )
    return TestClient(create_app(settings=settings))


def _create_conversation(client: TestClient, **payload) -> str:
    response = client.post("/conversations", json=payload, headers=USER)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def test_health_metrics_and_provider_status():
    client = create_test_client()
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["environment"] == "test"
    assert health.headers["X-Correlation-ID"]
    assert client.get("/livez").json() == {"status": "alive"}
    assert client.get("/healthz/ready").json()["simulation"] is True
    assert client.get("/metrics").status_code == 200

    status = client.get("/providers/status").json()
    assert status["simulation"] is True
    assert status["primary"] == "simulation"
    assert status["embeddings"] == "hash"


def test_conversation_lifecycle():
    client = create_test_client()
    conversation_id = _create_conversation(client, generation={"temperature": 0.2})

    listed = client.get("/conversations", headers=USER).json()["conversations"]
    assert [item["id"] for item in listed] == [conversation_id]
    assert client.get("/conversations", headers={"X-User-ID": "u2"}).json()["conversations"] == []

    updated = client.put(f"/conversations/{conversation_id}", json={"title": "Renamed"}, headers=USER)
    assert updated.status_code == 200
    assert updated.json()["title"] == "Renamed"
    assert updated.json()["generation"]["temperature"] == 0.2

    blank = client.put(f"/conversations/{conversation_id}", json={"title": "   "}, headers=USER)
    assert blank.status_code == 400
    too_hot = client.put(f"/conversations/{conversation_id}", json={"generation": {"temperature": 5}}, headers=USER)
    assert too_hot.status_code == 422

    foreign = client.get(f"/conversations/{conversation_id}", headers={"X-User-ID": "u2"})
    assert foreign.status_code == 404
    assert "correlation_id" in foreign.json()

    assert client.delete(f"/conversations/{conversation_id}", headers=USER).status_code == 204
    assert client.get(f"/conversations/{conversation_id}", headers=USER).status_code == 404


def test_missing_identity_is_rejected():
    client = create_test_client()
    assert client.get("/conversations").status_code == 401


def test_send_message_runs_a_turn():
    client = create_test_client()
    conversation_id = _create_conversation(client)

    response = client.post(
        f"/conversations/{conversation_id}/messages",
        json={"content": "What can you do?"},
        headers=USER,
    )
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["message"]["role"] == "assistant"
    assert payload["message"]["metadata"]["provider"] == "simulation"
    assert payload["conversation"]["title"] == "What can you do?"
    assert payload["conversation"]["stats"]["total_messages"] == 2

    detail = client.get(f"/conversations/{conversation_id}", headers=USER).json()
    assert [message["role"] for message in detail["messages"]] == ["user", "assistant"]


def test_send_message_errors_map_to_status_codes():
    client = create_test_client()
    conversation_id = _create_conversation(client)

    empty = client.post(f"/conversations/{conversation_id}/messages", json={"content": "  "}, headers=USER)
    assert empty.status_code == 400

    missing = client.post("/conversations/nope/messages", json={"content": "hi"}, headers=USER)
    assert missing.status_code == 404

    client.app.state.dependencies.quota.set_limit("u1", 10)
    limited = client.post(f"/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=USER)
    assert limited.status_code == 429
    assert limited.json()["tokens_limit"] == 10
    assert client.get(f"/conversations/{conversation_id}", headers=USER).json()["messages"] == []


def test_index_search_and_remove_documents():
    client = create_test_client()
    created = client.post("/documents/d1/fragments", json={"text": "cats are mammals", "metadata": {"source": "notes"}})
    assert created.status_code == 201, created.text
    assert created.json() == {"document_id": "d1", "indexed": 1}

    duplicate = client.post("/documents/d1/fragments", json={"chunks": [{"content": "cats are mammals"}]})
    assert duplicate.status_code == 409

    stats = client.get("/index/stats").json()
    assert stats["total_fragments"] == 1
    assert stats["fragments_per_document"] == {"d1": 1}
    assert stats["dimension"] == 64

    search = client.post("/search", json={"query": "cats are mammals", "similarity_threshold": 0.99})
    results = search.json()["results"]
    assert [result["document_id"] for result in results] == ["d1"]
    assert results[0]["metadata"]["source"] == "notes"

    assert client.post("/documents/d2/fragments", json={}).status_code == 400
    removed = client.delete("/documents/d1")
    assert removed.json() == {"document_id": "d1", "removed": 1}
    assert client.get("/index/stats").json()["total_fragments"] == 0


def test_api_key_is_enforced_when_configured():
    client = create_test_client(api_key="secret")
    assert client.post("/conversations", json={}, headers=USER).status_code == 401
    allowed = client.post("/conversations", json={}, headers={**USER, "X-API-Key": "secret"})
    assert allowed.status_code == 201


def test_websocket_streams_room_events():
    client = create_test_client()
    conversation_id = _create_conversation(client)

    with client.websocket_connect(f"/ws/conversations/{conversation_id}?user_id=u1") as websocket:
        websocket.send_json({"type": "send_message", "content": "Stream please"})
        events = []
        while not events or events[-1]["type"] != "stream_complete":
            events.append(websocket.receive_json())
        assert websocket.receive_json() == {
            "type": "typing",
            "conversation_id": conversation_id,
            "user_id": "assistant",
            "is_typing": False,
        }

        websocket.send_json({"type": "typing", "is_typing": True})
        typing = websocket.receive_json()

    types = [event["type"] for event in events]
    assert types[0] == "message_received"
    assert types[1:3] == ["stream_start", "typing"]
    assert "stream_chunk" in types
    chunks = [event for event in events if event["type"] == "stream_chunk"]
    assert chunks[-1]["full_content"] == events[-1]["message"]["content"]
    assert typing["user_id"] == "u1"
    assert typing["is_typing"] is True


def test_websocket_rejects_malformed_frames_without_dropping():
    client = create_test_client()
    conversation_id = _create_conversation(client)

    with client.websocket_connect(f"/ws/conversations/{conversation_id}?user_id=u1") as websocket:
        websocket.send_text("[1, 2]")
        assert websocket.receive_json() == {"type": "error", "message": "Frames must be JSON objects"}
        websocket.send_text("not json")
        assert websocket.receive_json()["type"] == "error"
        websocket.send_json({"type": "shout"})
        assert websocket.receive_json() == {"type": "error", "message": "Unknown frame type: shout"}

        websocket.send_json({"type": "typing", "is_typing": True})
        typing = websocket.receive_json()

    assert typing["type"] == "typing"
    assert typing["user_id"] == "u1"


def test_index_export_and_import():
    client = create_test_client()
    client.post("/documents/d1/fragments", json={"text": "cats are mammals"})
    exported = client.get("/index/export").json()
    assert exported["dimension"] == 64
    assert [fragment["document_id"] for fragment in exported["fragments"]] == ["d1"]
    assert len(exported["fragments"][0]["embedding"]) == 64

    client.delete("/documents/d1")
    restored = client.post("/index/import", json=exported)
    assert restored.json() == {"restored": 1}
    assert client.get("/index/stats").json()["fragments_per_document"] == {"d1": 1}

    wrong = client.post("/index/import", json={**exported, "dimension": 8})
    assert wrong.status_code == 400


def test_summary_and_flashcard_endpoints():
    client = create_test_client()
    summary = client.post("/generate/summary", json={"text": "Cats sleep most of the day."}, headers=USER)
    assert summary.status_code == 200, summary.text
    body = summary.json()
    assert body["provider"] == "simulation"
    assert body["summary_length"] == len(body["summary"])

    flashcards = client.post("/generate/flashcards", json={"text": "Cats sleep.", "count": 3}, headers=USER)
    assert flashcards.status_code == 200, flashcards.text
    deck = flashcards.json()
    assert deck["count"] == len(deck["flashcards"]) == 1

    assert client.post("/generate/summary", json={"document_id": "nope"}, headers=USER).status_code == 404
    assert client.post("/generate/summary", json={}, headers=USER).status_code == 400
    assert client.post("/generate/flashcards", json={"text": "x", "count": 50}, headers=USER).status_code == 422

    client.app.state.dependencies.quota.set_limit("u1", 10)
    assert client.post("/generate/summary", json={"text": "x"}, headers=USER).status_code == 429
