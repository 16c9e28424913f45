import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import DONE_RECORD, FakeUpstream, delta_record, streaming_upstream
from playground_api.main import create_app
from playground_api.routers.chat import RelayResponse
from playground_api.services.relay import ChatRequest, CompletionRelay, TurnInput


HELLO_BODY = delta_record("Hel") + delta_record("lo") + DONE_RECORD


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        app.state.http_client = streaming_upstream(HELLO_BODY).client()
        yield client


def _chat(client: TestClient, content: str = "hi", **fields) -> httpx.Response:
    payload = {"model": "m1", "messages": [{"role": "user", "content": content}], "stream": True}
    payload.update(fields)
    return client.post("/api/chat", json=payload)


# ============================================================================
# POST /api/chat
# ============================================================================

def test_chat_streams_upstream_body_verbatim(client):
    response = _chat(client)

    assert response.status_code == 200
    assert response.content == HELLO_BODY
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    chat_id = int(response.headers["x-chat-id"])

    messages = client.get(f"/api/chat/{chat_id}").json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [("user", "hi"), ("assistant", "Hello")]


def test_chat_on_existing_conversation_has_no_chat_id_header(client):
    chat_id = client.post("/api/chat/new", json={"model": "m1"}).json()["id"]

    response = _chat(client, chat_id=chat_id)

    assert response.status_code == 200
    assert "x-chat-id" not in response.headers


def test_chat_unknown_conversation_returns_404(client):
    response = _chat(client, chat_id=999)

    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "conversation_not_found"
    assert error["type"] == "not_found_error"


def test_chat_passes_upstream_status_through(app):
    upstream = FakeUpstream(
        lambda request: httpx.Response(429, json={"error": {"message": "rate limited", "code": 429}})
    )
    with TestClient(app) as client:
        app.state.http_client = upstream.client()
        response = _chat(client)

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["type"] == "rate_limit_error"
    assert "rate limited" in error["message"]


def test_chat_unreachable_upstream_returns_502(app):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with TestClient(app) as client:
        app.state.http_client = FakeUpstream(refuse).client()
        response = _chat(client)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "upstream_unreachable"


def test_chat_missing_model_is_a_validation_error(client):
    response = client.post("/api/chat", json={"messages": [{"role": "user", "content": "hi"}]})

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "validation_error"
    assert error["param"] == "model"


def test_chat_empty_messages_is_rejected(client):
    response = client.post("/api/chat", json={"model": "m1", "messages": []})

    assert response.status_code == 400
    assert response.json()["error"]["param"] == "messages"


# ============================================================================
# Conversation history
# ============================================================================

def test_new_chat_and_get(client):
    chat_id = client.post("/api/chat/new", json={"model": "m2"}).json()["id"]

    body = client.get(f"/api/chat/{chat_id}").json()

    assert body["id"] == chat_id
    assert body["model_name"] == "m2"
    assert body["messages"] == []
    assert body["parent_id"] is None


def test_list_chats_paginates_by_fifteen(client):
    ids = [client.post("/api/chat/new", json={"model": "m1"}).json()["id"] for _ in range(16)]

    first = client.get("/api/chat").json()
    assert len(first["chats"]) == 15
    assert first["total"] == 16
    assert first["pageSize"] == 15
    assert first["chats"][0]["messageCount"] == 0
    assert first["hasMore"] is True
    assert first["chats"][0]["id"] == ids[-1]

    second = client.get("/api/chat", params={"page": 2}).json()
    assert [c["id"] for c in second["chats"]] == [ids[0]]
    assert second["hasMore"] is False


def test_star_toggles(client):
    response = _chat(client)
    chat_id = int(response.headers["x-chat-id"])
    message_id = client.get(f"/api/chat/{chat_id}").json()["messages"][0]["id"]

    assert client.post(f"/api/chat/{chat_id}/star").json() == {"starred": True}
    assert client.post(f"/api/chat/{chat_id}/star").json() == {"starred": False}
    assert client.post(f"/api/message/{message_id}/star").json() == {"starred": True}
    assert client.post("/api/message/999/star").status_code == 404


def test_fork_and_lookups(client):
    chat_id = int(_chat(client).headers["x-chat-id"])
    client.app.state.http_client = streaming_upstream(delta_record("Sure") + DONE_RECORD).client()
    messages = client.get(f"/api/chat/{chat_id}").json()["messages"]
    history = [{"id": m["id"], "role": m["role"], "content": m["content"]} for m in messages]
    _chat(client, chat_id=chat_id, messages=history + [{"role": "user", "content": "again"}])
    messages = client.get(f"/api/chat/{chat_id}").json()["messages"]
    fork_at = messages[2]

    response = client.post(
        "/api/chat/fork",
        json={"chatId": chat_id, "messageId": fork_at["id"], "newContent": "edited"},
    )

    assert response.status_code == 200
    fork_id = response.json()["id"]
    assert response.headers["x-fork-chat-id"] == str(fork_id)

    fork = client.get(f"/api/chat/{fork_id}").json()
    assert fork["parent_id"] == chat_id
    assert fork["fork_message_id"] == fork_at["id"]
    assert [m["content"] for m in fork["messages"]] == ["hi", "Hello"]

    forks = client.get(f"/api/chat/{chat_id}/forks").json()
    assert forks == [{"messageId": fork_at["id"], "forkId": fork_id}]

    origin = client.get(f"/api/chat/{chat_id}/fork-message/{fork_at['id']}").json()
    assert origin["messageContent"] == "again"
    assert origin["chatId"] == chat_id
    assert "createdAt" in origin

    # Forks do not appear in the root listing
    assert [c["id"] for c in client.get("/api/chat").json()["chats"]] == [chat_id]


def test_fork_requires_chat_id(client):
    response = client.post("/api/chat/fork", json={"messageId": 1})

    assert response.status_code == 400
    assert response.json()["error"]["param"] == "chatId"


def test_fork_unknown_message_returns_404(client):
    chat_id = client.post("/api/chat/new", json={"model": "m1"}).json()["id"]

    response = client.post("/api/chat/fork", json={"chat_id": chat_id, "message_id": 42})

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "message_not_found"


def test_delete_chat(client):
    chat_id = client.post("/api/chat/new", json={"model": "m1"}).json()["id"]

    response = client.delete(f"/api/chat/{chat_id}")

    assert response.status_code == 200
    assert response.json() == {"message": "Chat deleted successfully"}
    assert client.get(f"/api/chat/{chat_id}").status_code == 404
    assert client.delete(f"/api/chat/{chat_id}").status_code == 404


# ============================================================================
# Health
# ============================================================================

def test_health_endpoints(client):
    assert client.get("/health").json()["status"] == "ok"
    assert client.get("/health/live").json() == {"status": "alive"}
    assert client.get("/health/ready").json() == {"status": "ready", "checks": {"store": "ok"}}


def test_readiness_reports_unreachable_store(client, monkeypatch):
    async def down():
        return False

    monkeypatch.setattr(client.app.state.store, "ping", down)

    response = client.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["checks"]["store"] == "unreachable"


# ============================================================================
# Upstream release
# ============================================================================

@pytest.mark.asyncio
async def test_relay_response_releases_upstream_when_client_is_gone(store, settings):
    upstream = streaming_upstream(HELLO_BODY)
    relay = CompletionRelay(store=store, client=upstream.client(), settings=settings)
    stream = await relay.open(
        ChatRequest(model="m1", messages=[TurnInput(role="user", content="hi")], stream=True)
    )
    response = RelayResponse(stream)
    scope = {
        "type": "http",
        "asgi": {"version": "3.0", "spec_version": "2.4"},
        "method": "POST",
        "path": "/api/chat",
        "headers": [],
    }

    async def receive():
        await asyncio.Event().wait()

    async def send(message):
        raise OSError("client disconnected")

    with pytest.raises(Exception):
        await response(scope, receive, send)

    assert upstream.responses[0].is_closed
    assert (await store.get_turn(stream.assistant_turn_id)).content == ""
