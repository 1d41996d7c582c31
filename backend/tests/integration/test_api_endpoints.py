from __future__ import annotations

from fastapi.testclient import TestClient

from blockserved.api.v1.endpoints import notices as notices_endpoint
from blockserved.api.v1.endpoints import tasks as tasks_endpoint
from blockserved.core.context import get_context
from blockserved.db.session import get_db
from blockserved.main import app
from tests.fixtures.chain import WALLET_A, WALLET_B, WALLET_C, FakeTronNode, make_client, make_context
from tests.fixtures.db import make_session


def _client(node: FakeTronNode | None = None):
    session = make_session()
    node = node or FakeTronNode()
    context = make_context(node)

    def _override_db():
        yield session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_context] = lambda: context
    # Not used as a context manager: startup would try to reach PostgreSQL.
    return TestClient(app), node


def teardown_function() -> None:
    app.dependency_overrides.clear()


def test_process_server_lifecycle():
    client, _node = _client()

    res = client.post("/api/v1/process-servers/", json={"wallet_address": WALLET_C, "agency_name": "County Sheriff"})
    assert res.status_code == 201
    assert res.json()["status"] == "pending"

    dup = client.post("/api/v1/process-servers/", json={"wallet_address": WALLET_C, "agency_name": "Other"})
    assert dup.status_code == 400

    bad = client.post("/api/v1/process-servers/", json={"wallet_address": "T123", "agency_name": "Other"})
    assert bad.status_code == 422

    res = client.put(f"/api/v1/process-servers/{WALLET_C}/status", json={"status": "approved"})
    assert res.status_code == 200
    assert res.json()["status"] == "approved"

    listed = client.get("/api/v1/process-servers/", params={"status": "approved"})
    assert [s["wallet_address"] for s in listed.json()] == [WALLET_C]
    assert client.get(f"/api/v1/process-servers/{WALLET_A}").status_code == 404
    assert client.put(f"/api/v1/process-servers/{WALLET_A}/status", json={"status": "active"}).status_code == 404


def test_service_complete_and_lookups():
    client, _node = _client()
    body = {
        "server_address": WALLET_C,
        "recipients": [WALLET_A, WALLET_B],
        "alert_token_id": 41,
        "document_token_id": 42,
        "transaction_hash": "cd" * 32,
        "page_count": 3,
    }
    res = client.put("/api/v1/cases/24-CV-000555/service-complete", json=body)
    assert res.status_code == 200, res.text
    record = res.json()
    assert record["recipients"] == [WALLET_A, WALLET_B]
    assert record["source"] == "service_update"

    again = client.put("/api/v1/cases/24-CV-000555/service-complete", json={**body, "accepted": True})
    assert again.status_code == 200
    assert again.json()["id"] == record["id"]
    assert again.json()["accepted"] is True

    assert [r["case_number"] for r in client.get(f"/api/v1/cases/recipient/{WALLET_B}").json()] == ["24-CV-000555"]
    assert len(client.get(f"/api/v1/cases/server/{WALLET_C}").json()) == 1
    assert client.get("/api/v1/cases/token/42").json()["id"] == record["id"]
    assert client.get("/api/v1/cases/token/43").status_code == 404
    assert client.get("/api/v1/cases/24-CV-000555").status_code == 200
    assert client.get("/api/v1/cases/UNKNOWN").status_code == 404
    assert client.get("/api/v1/cases/recipient/not-an-address").status_code == 400


def test_service_complete_rejects_bad_payloads():
    client, _node = _client()
    res = client.put(
        "/api/v1/cases/24-CV-1/service-complete",
        json={"server_address": WALLET_C, "recipients": f"{WALLET_A},{WALLET_B}"},
    )
    assert res.status_code == 422

    res = client.put("/api/v1/cases/24-CV-1/service-complete", json={"server_address": WALLET_C, "recipients": []})
    assert res.status_code == 422

    first = {"server_address": WALLET_C, "recipients": [WALLET_A], "alert_token_id": 7}
    assert client.put("/api/v1/cases/24-CV-1/service-complete", json=first).status_code == 200
    clash = client.put("/api/v1/cases/24-CV-2/service-complete", json=first)
    assert clash.status_code == 409


def test_issue_notice_over_http():
    node = FakeTronNode()
    client, _ = _client(node)
    sender = make_client(node).address
    client.post("/api/v1/process-servers/", json={"wallet_address": sender, "agency_name": "County Sheriff"})
    client.put(f"/api/v1/process-servers/{sender}/status", json={"status": "active"})

    res = client.post(
        "/api/v1/notices/",
        data={"recipient": WALLET_A, "case_number": "24-CV-000888", "sponsor_fees": "true"},
        files={"document": ("summons.txt", b"You are hereby summoned.\n" * 30, "text/plain")},
    )

    assert res.status_code == 201, res.text
    body = res.json()
    assert body["ok"] is True
    assert body["notices"] == [
        {"alert_token_id": 1, "document_token_id": 2, "recipient": WALLET_A, "tx_id": body["tx_ids"][0]}
    ]
    assert body["fee"]["total"] == 27_000_000
    assert client.get("/api/v1/cases/token/1").json()["case_number"] == "24-CV-000888"


def test_issue_batch_over_http():
    node = FakeTronNode()
    client, _ = _client(node)
    sender = make_client(node).address
    client.post("/api/v1/process-servers/", json={"wallet_address": sender, "agency_name": "County Sheriff"})
    client.put(f"/api/v1/process-servers/{sender}/status", json={"status": "approved"})

    res = client.post(
        "/api/v1/notices/batch",
        data={"recipients": [WALLET_A, WALLET_B], "case_number": "24-CV-000889"},
        files={"document": ("notice.txt", b"Notice.\n" * 30, "text/plain")},
    )

    assert res.status_code == 201, res.text
    assert [n["recipient"] for n in res.json()["notices"]] == [WALLET_A, WALLET_B]


def test_issue_failure_maps_to_http_error():
    client, node = _client()
    res = client.post(
        "/api/v1/notices/",
        data={"recipient": WALLET_A, "case_number": "24-CV-000890"},
        files={"document": ("summons.txt", b"content", "text/plain")},
    )
    assert res.status_code == 400
    assert res.json()["detail"]["reason"] == "validation_error"
    assert node.broadcasts == []

    missing = client.post("/api/v1/notices/submissions/404/retry")
    assert missing.status_code == 404
    assert missing.json()["detail"]["reason"] == "not_found"


def test_reconcile_is_queued(monkeypatch):
    client, _node = _client()
    calls = []

    class _Task:
        id = "task-123"

    class _FakeReconcileTask:
        @staticmethod
        def delay(start, end, mode):
            calls.append((start, end, mode))
            return _Task()

    monkeypatch.setattr(notices_endpoint, "reconcile_notices_task", _FakeReconcileTask)

    res = client.post("/api/v1/notices/reconcile", json={"start": 1, "end": 100, "mode": "events"})
    assert res.status_code == 202
    assert res.json() == {"status": "queued", "task_id": "task-123"}
    assert calls == [(1, 100, "events")]

    assert client.post("/api/v1/notices/reconcile", json={"start": 10, "end": 5}).status_code == 400
    assert client.post("/api/v1/notices/reconcile", json={"mode": "blocks"}).status_code == 422


def _served_batch(client) -> None:
    body = {
        "server_address": WALLET_C,
        "recipients": [WALLET_A, WALLET_B],
        "alert_token_id": 41,
        "document_token_id": 42,
    }
    assert client.put("/api/v1/cases/24-CV-000600/service-complete", json=body).status_code == 200


def test_recipient_activity_is_logged_and_listed():
    client, _node = _client()
    _served_batch(client)

    res = client.post(
        "/api/v1/cases/activity",
        json={
            "case_number": "24-CV-000600",
            "recipient_address": WALLET_A,
            "activity_type": "view_document",
            "alert_token_id": 41,
            "details": {"page": 2},
        },
        headers={"User-Agent": "wallet-browser/1.0"},
    )
    assert res.status_code == 201, res.text
    event = res.json()
    assert event["event_type"] == "view_document"
    assert event["user_agent"] == "wallet-browser/1.0"
    assert event["ip_address"]
    assert event["details"] == {"page": 2}

    bad = client.post(
        "/api/v1/cases/activity",
        json={"case_number": "24-CV-000600", "recipient_address": WALLET_A, "activity_type": "served"},
    )
    assert bad.status_code == 422

    case_events = client.get("/api/v1/cases/24-CV-000600/activity").json()
    assert [e["event_type"] for e in case_events] == ["view_document"]
    mine = client.get(f"/api/v1/cases/recipient/{WALLET_A}/activity").json()
    assert [e["id"] for e in mine] == [event["id"]]
    assert client.get("/api/v1/cases/recipient/T123/activity").status_code == 400

    stats = client.get("/api/v1/cases/24-CV-000600/stats").json()
    assert stats["total_recipients"] == 2
    assert stats["viewed"] == 1
    assert stats["accepted"] == 0
    assert client.get("/api/v1/cases/UNKNOWN/stats").status_code == 404


def test_accept_notice_and_token_journey():
    client, _node = _client()
    _served_batch(client)

    wrong = client.post("/api/v1/cases/token/41/accept", json={"recipient_address": WALLET_C})
    assert wrong.status_code == 403
    assert client.post("/api/v1/cases/token/99/accept", json={"recipient_address": WALLET_A}).status_code == 404

    res = client.post("/api/v1/cases/token/42/accept", json={"recipient_address": WALLET_A, "transaction_hash": "ef" * 32})
    assert res.status_code == 200, res.text
    assert res.json()["accepted"] is False
    both = client.post("/api/v1/cases/token/41/accept", json={"recipient_address": WALLET_B})
    assert both.json()["accepted"] is True

    journey = client.get("/api/v1/cases/token/42/journey").json()
    assert journey["alert_token_id"] == 41
    assert journey["record"]["case_number"] == "24-CV-000600"
    assert [(e["event_type"], e["recipient_address"]) for e in journey["events"]] == [
        ("accept", WALLET_A),
        ("accept", WALLET_B),
    ]
    assert client.get("/api/v1/cases/token/77/journey").status_code == 404


def test_single_recipient_acceptance_marks_record_accepted():
    client, _node = _client()
    body = {"server_address": WALLET_C, "recipients": [WALLET_A], "alert_token_id": 51, "document_token_id": 52}
    client.put("/api/v1/cases/24-CV-000601/service-complete", json=body)

    res = client.post("/api/v1/cases/token/51/accept", json={"recipient_address": WALLET_A})
    assert res.status_code == 200
    assert res.json()["accepted"] is True
    assert res.json()["accepted_at"] is not None
    assert client.get("/api/v1/cases/24-CV-000601/stats").json()["accepted"] == 1


class _FakeAsyncResult:
    states = {}

    def __init__(self, task_id, app=None):
        self.status, self.result, self.traceback = self.states[task_id]

    def failed(self) -> bool:
        return self.status == "FAILURE"

    def ready(self) -> bool:
        return self.status in {"SUCCESS", "FAILURE", "REVOKED"}


def test_task_status_reports_results_and_failures(monkeypatch):
    client, _node = _client()
    _FakeAsyncResult.states = {
        "done": ("SUCCESS", {"status": "success", "report": {"inserted": [1]}}, None),
        "running": ("STARTED", {"pid": 12}, None),
        "broken": ("FAILURE", RuntimeError("node unavailable"), "Traceback (most recent call last): ..."),
    }
    monkeypatch.setattr(tasks_endpoint, "AsyncResult", _FakeAsyncResult)

    done = client.get("/api/v1/tasks/done").json()
    assert done["ready"] is True
    assert done["result"]["report"]["inserted"] == [1]

    running = client.get("/api/v1/tasks/running").json()
    assert running == {"task_id": "running", "status": "STARTED", "ready": False, "result": None, "traceback": None}

    broken = client.get("/api/v1/tasks/broken")
    assert broken.status_code == 200
    assert broken.json()["status"] == "FAILURE"
    assert broken.json()["result"] == {"error": "RuntimeError('node unavailable')"}
    assert broken.json()["traceback"].startswith("Traceback")
