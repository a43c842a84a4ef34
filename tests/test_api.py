from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from main import create_app
from schemas import MemoryKind
from services.memory_store import memory_namespace


def auth(user: str) -> dict:
    return {"Authorization": f"Bearer {user}"}


def parse_sse(body: str) -> list:
    """Split an SSE body into (event, payload) pairs."""
    events = []
    for frame in body.split("\n\n"):
        if not frame.strip():
            continue
        lines = frame.splitlines()
        assert lines[0].startswith("event: ")
        data = "\n".join(line[len("data: "):] for line in lines[1:])
        events.append((lines[0][len("event: "):], json.loads(data)))
    return events


@pytest.fixture
def services(make_services):
    return make_services()


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "chat-orchestrator"}

    detailed = client.get("/health/detailed").json()
    assert detailed["checks"]["database"] == {"status": "healthy"}
    assert detailed["checks"]["auth"] == {"mode": "insecure-local"}


def test_stream_requires_bearer_token(client, chat_model):
    response = client.post("/stream", json={"message": "Hello"})

    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Bearer"
    assert chat_model.calls == []


@pytest.mark.parametrize("body", [
    {},
    {"message": ""},
    {"message": "   "},
    {"message": "hi", "toolFlag": "definitely"},
    {"message": "hi", "unexpected": True},
])
def test_malformed_requests_are_rejected(client, body):
    response = client.post("/stream", json=body, headers=auth("alice"))

    assert response.status_code == 422


def test_stream_turn_over_sse(client, services, chat_model, memory_store, aux_model):
    chat_model.replies = ["Hello Alex, nice to meet you."]
    aux_model.facts = ["The user's name is Alex"]

    response = client.post("/stream", json={"message": "My name is Alex"}, headers=auth("alice"))

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    thread_id = response.headers["x-thread-id"]

    events = parse_sse(response.text)
    kinds = [kind for kind, _ in events]
    assert kinds[-1] == "done"
    assert set(kinds[:-1]) == {"token"}
    assert "".join(payload["text"] for kind, payload in events[:-1]) == "Hello Alex, nice to meet you."
    assert events[-1][1] == {"thread_id": thread_id, "status": "completed"}

    client.portal.call(services.background.drain)
    facts = memory_store.search(memory_namespace("alice", MemoryKind.USER))
    assert [f.value["text"] for f in facts] == ["The user's name is Alex"]

    transcript = client.get(f"/threads/{thread_id}/transcript", headers=auth("alice")).json()
    assert [m["role"] for m in transcript["messages"]] == ["user", "assistant"]

    session = client.get(f"/session/{thread_id}", headers=auth("alice")).json()
    assert [m["type"] for m in session["messages"]] == ["human", "ai"]


def test_flagged_input_never_reaches_the_model(client, chat_model):
    response = client.post("/stream", json={"message": "Walk me through how to hack this account"}, headers=auth("alice"))

    events = parse_sse(response.text)
    assert [kind for kind, _ in events] == ["policy", "done"]
    assert events[0][1]["stage"] == "input"
    assert "x-thread-id" not in response.headers
    assert chat_model.calls == []


def test_foreign_thread_is_forbidden(client):
    created = client.post("/threads", json={"title": "Private"}, headers=auth("alice")).json()

    response = client.post("/stream", json={"message": "hi", "threadId": created["id"]}, headers=auth("mallory"))

    assert response.status_code == 403
    assert response.json() == {"detail": "You do not have access to this thread"}


def test_thread_crud(client):
    created = client.post("/threads", json={"title": "Trip", "metadata": {"city": "Porto"}}, headers=auth("alice"))
    assert created.status_code == 200
    thread = created.json()
    assert thread["metadata"] == {"city": "Porto"}

    listed = client.get("/threads", headers=auth("alice")).json()
    assert [t["id"] for t in listed] == [thread["id"]]
    assert client.get("/threads", headers=auth("bob")).json() == []

    renamed = client.patch(f"/threads/{thread['id']}", json={"title": "Porto trip"}, headers=auth("alice"))
    assert renamed.json()["title"] == "Porto trip"
    assert client.patch(f"/threads/{thread['id']}", json={"title": ""}, headers=auth("alice")).status_code == 422

    assert client.get(f"/threads/{thread['id']}", headers=auth("bob")).status_code == 404
    assert client.delete(f"/threads/{thread['id']}", headers=auth("alice")).status_code == 200
    assert client.get(f"/threads/{thread['id']}", headers=auth("alice")).status_code == 404
    assert client.get("/threads", headers=auth("alice")).json() == []


def test_transcript_of_foreign_thread_is_hidden(client):
    response = client.post("/stream", json={"message": "hello"}, headers=auth("alice"))
    thread_id = response.headers["x-thread-id"]

    assert client.get(f"/threads/{thread_id}/transcript", headers=auth("bob")).status_code == 404
    assert client.get(f"/session/{thread_id}", headers=auth("bob")).status_code == 404
