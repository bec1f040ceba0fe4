import pytest
from fastapi.testclient import TestClient

from conftest import FakeCompletion, FakeEmbedder
from twinlearn.api.http_api import create_app
from twinlearn.core.service import TwinService


@pytest.fixture
def client(service):
    with TestClient(create_app(service)) as test_client:
        yield test_client


def test_chat_then_feedback(client):
    response = client.post("/v1/twin/chat", json={"user_id": "u1", "message": "Hello"})
    assert response.status_code == 200
    body = response.json()
    assert body["response"] == "reply at 0.3"
    assert body["degraded"] is False
    assert body["score"] == 0.5
    assert body["conversation_id"].startswith("u1-")

    rated = client.post(
        "/v1/twin/feedback", json={"response_id": body["response_id"], "feedback": 1}
    )
    assert rated.json() == {"accepted": True}

    again = client.post(
        "/v1/twin/feedback", json={"response_id": body["response_id"], "feedback": 1}
    )
    assert again.json() == {"accepted": False}


def test_chat_continues_an_existing_conversation(client, service):
    first = client.post("/v1/twin/chat", json={"user_id": "u1", "message": "Hello"}).json()
    client.post(
        "/v1/twin/chat",
        json={"user_id": "u1", "message": "More", "conversation_id": first["conversation_id"]},
    )

    listed = client.get("/v1/twin/conversations/u1").json()["conversations"]
    assert len(listed) == 1
    assert listed[0]["message_count"] == 4


def test_invalid_input_maps_to_400(client):
    response = client.post(
        "/v1/twin/chat", json={"user_id": "u1", "message": "   ", "conversation_id": "c1"}
    )
    assert response.status_code == 400
    assert "error" in response.json()


def test_schema_violations_map_to_422(client):
    assert client.post("/v1/twin/chat", json={"message": "Hello"}).status_code == 422
    assert client.post("/v1/twin/feedback", json={"response_id": "x"}).status_code == 422


def test_unknown_feedback_is_not_an_error(client):
    response = client.post("/v1/twin/feedback", json={"response_id": "nope", "feedback": 0})
    assert response.status_code == 200
    assert response.json() == {"accepted": False}


def test_batch_train(client):
    response = client.post(
        "/v1/twin/batch-train",
        json={
            "user_id": "u1",
            "interactions": [{"text": "good", "label": 1}, {"text": "bad", "label": 0}],
        },
    )
    assert response.status_code == 200
    assert response.json()["trained"] == 2

    empty = client.post("/v1/twin/batch-train", json={"user_id": "u1", "interactions": []})
    assert empty.status_code == 400


def test_status(client):
    body = client.get("/v1/twin/status").json()
    assert body["operational"] is True
    assert body["embedding"]["dim"] == 8


def test_conversation_management(client):
    created = client.post("/v1/twin/conversations/u1").json()["conversation_id"]
    assert created.startswith("u1-")
    assert [c["id"] for c in client.get("/v1/twin/conversations/u1").json()["conversations"]] == [
        created
    ]

    assert client.delete(f"/v1/twin/conversations/{created}").json() == {"deleted": True}
    assert client.delete(f"/v1/twin/conversations/{created}").status_code == 404

    cleared = client.post("/v1/twin/conversations/maintenance/clear-expired")
    assert cleared.json() == {"cleared": 0}


def test_user_endpoints(client, model_store):
    client.post(
        "/v1/twin/batch-train",
        json={"user_id": "u1", "interactions": [{"text": "good", "label": 1}]},
    )
    assert "u1" in model_store

    assert client.post("/v1/twin/users/u1/retrain").json() == {"trained": 0, "avg_loss": 0.0}
    assert client.delete("/v1/twin/users/u1").json() == {"deleted": True}
    assert "u1" not in model_store


def test_rating_an_unranked_reply_during_an_embedding_outage_is_503(
    settings, clock, model_store
):
    embedder = FakeEmbedder(fail_all=True)
    service = TwinService(
        settings=settings,
        completion=FakeCompletion(),
        embedder=embedder,
        model_store=model_store,
        clock=clock,
    )
    with TestClient(create_app(service)) as client:
        body = client.post("/v1/twin/chat", json={"user_id": "u1", "message": "Hello"}).json()
        assert body["degraded"] is True

        rated = client.post(
            "/v1/twin/feedback", json={"response_id": body["response_id"], "feedback": 1}
        )
        assert rated.status_code == 503

        embedder.fail_all = False
        rated = client.post(
            "/v1/twin/feedback", json={"response_id": body["response_id"], "feedback": 1}
        )
        assert rated.json() == {"accepted": True}
