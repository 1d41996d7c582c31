from __future__ import annotations

import pytest

from blockserved import tasks
from blockserved.celery_app import beat_schedule
from blockserved.db.session import session_scope
from blockserved.services.records import RecordStore
from tests.fixtures.chain import WALLET_A, FakeTronNode, make_context
from tests.fixtures.db import make_sessionmaker


def test_reconcile_task_reports_inserted_alerts(monkeypatch):
    node = FakeTronNode()
    node.owners = {1: WALLET_A, 2: WALLET_A}
    node.total_supply = 2
    context = make_context(node)
    monkeypatch.setattr(tasks, "SessionLocal", make_sessionmaker())
    monkeypatch.setattr(tasks, "get_context", lambda: context)

    out = tasks.reconcile_notices(1, None, "ownership")

    assert out["status"] == "success"
    assert out["report"]["inserted"] == [1]


def test_retry_task_reports_failure_reason(monkeypatch):
    node = FakeTronNode()
    context = make_context(node)
    monkeypatch.setattr(tasks, "SessionLocal", make_sessionmaker())
    monkeypatch.setattr(tasks, "get_context", lambda: context)

    out = tasks.retry_submission(12)

    assert out["status"] == "failed"
    assert out["reason"] == "not_found"


def test_periodic_reconcile_is_off_without_an_interval():
    assert beat_schedule(0) == {}
    entry = beat_schedule(900, "ownership")["reconcile-notices"]
    assert entry["task"] == "blockserved.tasks.reconcile_notices"
    assert entry["schedule"] == 900.0
    assert entry["args"] == (1, None, "ownership")


def test_session_scope_rolls_back_on_error():
    factory = make_sessionmaker()
    with pytest.raises(ValueError):
        with session_scope(factory) as db:
            RecordStore(db).register_server(WALLET_A, "County Sheriff")
            raise ValueError("abort")
    with session_scope(factory) as db:
        assert RecordStore(db).get_server(WALLET_A) is None
