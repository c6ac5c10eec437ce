"""HTTP surface: handshake signaling, pipelines, executions, node membership and acks."""
from unittest.mock import patch
import pytest
from fastapi.testclient import TestClient
from app.main import app
from app.db.session import get_db
from app.db.models import DeploymentAck, Node
from app.core.handshake import HandshakeService
from app.core.engine import PipelineEngine
from app.core.workflow import ExecutionStatus, HandshakeStatus, NodeStatus
from tests.helpers import make_definition


@pytest.fixture
def client(session_factory):
    def override():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def handshake(db):
    return HandshakeService(db).create(timeout_seconds=300)


def test_health(client):
    assert client.get("/v1/health").json() == {"status": "ok"}


def test_first_signal_wins(client, handshake):
    url = f"/v1/handshakes/{handshake.id}"

    first = client.put(url, json={"Status": "SUCCESS", "Reason": "Configuration Complete", "UniqueId": "ConfigComplete", "Data": "ok"})
    second = client.put(url, json={"Status": "FAILURE", "Reason": "late failure"})

    assert first.status_code == 200
    assert first.json() == {"accepted": True, "status": "SUCCESS", "rejection": None}
    assert second.status_code == 200
    assert second.json()["accepted"] is False
    assert second.json()["status"] == "SUCCESS"

    body = client.get(url).json()
    assert body["status"] == "SUCCESS"
    assert body["reason"] == "Configuration Complete"
    assert [s["accepted"] for s in body["signals"]] == [True, False]


def test_malformed_status_is_logged_not_applied(client, handshake):
    r = client.put(f"/v1/handshakes/{handshake.id}", json={"Status": "MAYBE"})

    assert r.status_code == 200
    assert r.json()["accepted"] is False
    assert r.json()["status"] == "PENDING"


def test_signal_unknown_handshake(client):
    r = client.put("/v1/handshakes/does-not-exist", json={"Status": "SUCCESS"})
    assert r.status_code == 404


def test_provision_pipeline(client, session_factory):
    r = client.post("/v1/pipelines", json=make_definition().model_dump(mode="json"))

    assert r.status_code == 200
    outputs = r.json()
    assert outputs["handshake_url"] == f"http://controller.test/v1/handshakes/{outputs['handshake_id']}"
    assert outputs["deployment_group_tags"] == {"Environment": "Development", "Name": "WebSocket-Client"}
    assert outputs["handshake_url"] in outputs["user_data"]

    with session_factory() as db:
        assert HandshakeService(db).get(outputs["handshake_id"]).status is HandshakeStatus.PENDING
        assert db.get(Node, outputs["node_id"]).labels == outputs["deployment_group_tags"]

    pipeline = client.get(f"/v1/pipelines/{outputs['pipeline_id']}").json()
    assert pipeline["handshake_id"] == outputs["handshake_id"]


def test_trigger_queues_execution(client, make_pipeline):
    pipeline = make_pipeline()

    with patch("app.api.routes_pipelines.run_execution.delay") as delay:
        r = client.post(f"/v1/pipelines/{pipeline.id}/executions", json={
            "owner": "example-org", "repo": "websocket-client", "branch": "main", "revisionId": "abc123",
        })

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "WAITING"
    assert body["revision_id"] == "abc123"
    assert [s["name"] for s in body["stages"]] == ["Source", "Build", "Deploy"]
    assert {s["status"] for s in body["stages"]} == {"NOT_STARTED"}
    delay.assert_called_once_with(body["id"])

    assert client.get(f"/v1/executions/{body['id']}").json()["id"] == body["id"]


def test_trigger_rejects_other_branch(client, make_pipeline):
    pipeline = make_pipeline()

    with patch("app.api.routes_pipelines.run_execution.delay") as delay:
        r = client.post(f"/v1/pipelines/{pipeline.id}/executions", json={
            "owner": "example-org", "repo": "websocket-client", "branch": "feature",
        })

    assert r.status_code == 400
    delay.assert_not_called()


def test_retry_only_failed_or_aborted(client, db, make_pipeline):
    execution = PipelineEngine(db=db).create_execution(make_pipeline())

    with patch("app.api.routes_pipelines.retry_execution.delay") as delay:
        assert client.post(f"/v1/executions/{execution.id}/retry").status_code == 409
        delay.assert_not_called()

        execution.status = ExecutionStatus.FAILED
        db.commit()
        assert client.post(f"/v1/executions/{execution.id}/retry").status_code == 200
        delay.assert_called_once_with(execution.id)


def test_cancel_waiting_execution(client, db, make_pipeline):
    execution = PipelineEngine(db=db).create_execution(make_pipeline())

    r = client.post(f"/v1/executions/{execution.id}/cancel")

    assert r.status_code == 200
    assert r.json()["status"] == "ABORTED"
    assert client.post("/v1/executions/missing/cancel").status_code == 404


def test_node_membership(client):
    a = client.post("/v1/nodes", json={
        "name": "web-a", "agent_url": "http://web-a:8081",
        "labels": {"Environment": "Development", "Name": "WebSocket-Client"},
    }).json()
    client.post("/v1/nodes", json={
        "name": "web-prod", "agent_url": "http://web-prod:8081",
        "labels": {"Environment": "Production", "Name": "WebSocket-Client"},
    })

    dev = client.get("/v1/nodes", params=[("label", "Environment=Development")]).json()
    assert [n["name"] for n in dev] == ["web-a"]
    assert client.get("/v1/nodes", params={"label": "Environment"}).status_code == 422

    assert client.post(f"/v1/nodes/{a['id']}/heartbeat").status_code == 200
    assert client.delete(f"/v1/nodes/{a['id']}").json()["status"] == NodeStatus.TERMINATED.value
    assert client.post(f"/v1/nodes/{a['id']}/heartbeat").status_code == 409


def test_deployment_ack(client, session_factory):
    node = client.post("/v1/nodes", json={"name": "web-a", "agent_url": "http://web-a:8081"}).json()

    r = client.put("/v1/deployments/d-1/acks", json={
        "targetId": node["id"], "outcome": "SUCCEEDED", "timestamp": "2026-01-01T14:00:00+02:00",
    })

    assert r.status_code == 200
    with session_factory() as db:
        ack = db.query(DeploymentAck).one()
        assert ack.deployment_id == "d-1"
        assert ack.timestamp.hour == 12

    missing = client.put("/v1/deployments/d-1/acks", json={
        "targetId": "nope", "outcome": "FAILED", "timestamp": "2026-01-01T12:00:00Z",
    })
    assert missing.status_code == 404
