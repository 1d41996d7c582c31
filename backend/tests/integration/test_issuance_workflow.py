from __future__ import annotations

from blockserved.db.models import PreparedSubmission
from blockserved.services.issuance import NoticeRequest, issue_notice, retry_submission
from blockserved.services.records import RecordStore
from tests.fixtures.chain import WALLET_A, WALLET_B, FakeTronNode, make_client, make_context
from tests.fixtures.db import make_session

DOCUMENT = b"Summons and complaint, case 24-CV-000123.\n" * 50


def _setup(**settings):
    node = FakeTronNode()
    context = make_context(node, **settings)
    store = RecordStore(make_session())
    store.register_server(make_client(node).address, "County Sheriff", status="approved")
    store.commit()
    return node, context, store


def _request(recipients, **overrides) -> NoticeRequest:
    values = {
        "case_number": "24-CV-000123",
        "recipients": list(recipients),
        "document": DOCUMENT,
        "filename": "summons.txt",
        "content_type": "text/plain",
        "notice_type": "Summons",
        "issuing_agency": "County Sheriff",
    }
    values.update(overrides)
    return NoticeRequest(**values)


def test_single_notice_mints_one_pair_and_writes_record():
    node, context, store = _setup()
    result = issue_notice(context, store, _request([WALLET_A], sponsor_fees=True))

    assert result.ok, result.detail
    assert result.reason is None
    assert [(n.alert_token_id, n.document_token_id, n.recipient) for n in result.notices] == [(1, 2, WALLET_A)]
    assert node.call_values() == [27_000_000]
    assert result.ipfs_hash.startswith("QmDev")

    records = store.find_by_case_number("24-CV-000123")
    assert len(records) == 1
    record = records[0]
    assert record.id in result.record_ids
    assert record.alert_token_id == 1
    assert record.document_token_id == 2
    assert record.recipients == [WALLET_A]
    assert record.transaction_hash == result.tx_ids[0]
    assert record.ipfs_hash == result.ipfs_hash
    assert record.encryption_key
    assert record.source == "issuance"

    submission = store.db.get(PreparedSubmission, result.submission_id)
    assert submission.status == "confirmed"
    assert submission.attempts == 1


def test_fee_without_sponsorship_skips_sponsorship_fee():
    node, context, store = _setup()
    result = issue_notice(context, store, _request([WALLET_A]))
    assert result.ok
    assert result.fee.total == 25_000_000
    assert node.call_values() == [25_000_000]


def test_exempt_sender_pays_creation_fee_only():
    node, context, store = _setup()
    node.exempt.add(make_client(node).address)
    result = issue_notice(context, store, _request([WALLET_A]))
    assert result.ok
    assert node.call_values() == [5_000_000]


def test_invalid_requests_are_rejected_before_any_side_effect():
    node, context, store = _setup()
    cases = [
        _request(["TNotAnAddress"]),
        _request([WALLET_A], case_number="   "),
        _request([WALLET_A], document=b""),
        _request([WALLET_A, WALLET_A]),
        _request([]),
    ]
    for request in cases:
        result = issue_notice(context, store, request)
        assert not result.ok
        assert result.reason == "validation_error"
    assert node.broadcasts == []
    assert store.db.query(PreparedSubmission).count() == 0


def test_unregistered_server_cannot_issue():
    node = FakeTronNode()
    context = make_context(node)
    store = RecordStore(make_session())
    result = issue_notice(context, store, _request([WALLET_A]))
    assert result.reason == "validation_error"
    assert "not registered" in result.detail

    store.register_server(make_client(node).address, "County Sheriff")
    store.commit()
    result = issue_notice(context, store, _request([WALLET_A]))
    assert result.reason == "validation_error"
    assert node.broadcasts == []


def test_insufficient_energy_stops_before_signing():
    node, context, store = _setup()
    node.energy = 0
    result = issue_notice(context, store, _request([WALLET_A]))
    assert not result.ok
    assert result.reason == "insufficient_energy"
    assert result.detail["available"] == 0
    assert result.detail["estimated_burn_trx"] > 0
    assert node.broadcasts == []
    assert store.find_by_case_number("24-CV-000123") == []


def test_allow_burn_proceeds_without_energy():
    node, context, store = _setup()
    node.energy = 0
    result = issue_notice(context, store, _request([WALLET_A]), allow_burn=True)
    assert result.ok
    assert not result.energy.sufficient


def test_batch_writes_one_record_with_every_pair():
    node, context, store = _setup()
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B], sponsor_fees=True))

    assert result.ok, result.detail
    assert len(node.executed) == 1
    assert node.call_values() == [54_000_000]
    assert [(n.alert_token_id, n.document_token_id, n.recipient) for n in result.notices] == [
        (1, 2, WALLET_A),
        (3, 4, WALLET_B),
    ]

    (record,) = store.find_by_case_number("24-CV-000123")
    assert record.recipients == [WALLET_A, WALLET_B]
    assert record.alert_token_id == 1
    assert record.document_token_id == 2
    assert [p["alert_token_id"] for p in record.token_pairs] == [1, 3]
    assert store.find_by_token_id(4).id == record.id
    assert [r.id for r in store.find_by_recipient(WALLET_B)] == [record.id]

    events = store.events_for_case("24-CV-000123")
    assert [(e.event_type, e.alert_token_id, e.recipient_address) for e in events] == [
        ("served", 1, WALLET_A),
        ("served", 3, WALLET_B),
    ]
    assert {e.transaction_hash for e in events} == set(result.tx_ids)


def test_rejected_batch_falls_back_to_one_call_per_recipient():
    node, context, store = _setup()
    node.reject_batch = True
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B]))

    assert result.ok, result.detail
    assert len(node.executed) == 2
    assert [n.recipient for n in result.notices] == [WALLET_A, WALLET_B]
    assert len(result.tx_ids) == 2

    submissions = store.db.query(PreparedSubmission).order_by(PreparedSubmission.id).all()
    assert len(submissions) == 3
    batch = submissions[0]
    assert batch.status == "failed"
    assert batch.payload["superseded"] is True
    assert [s.status for s in submissions[1:]] == ["confirmed", "confirmed"]

    (record,) = store.find_by_case_number("24-CV-000123")
    assert sorted(p["recipient"] for p in record.token_pairs) == sorted([WALLET_A, WALLET_B])
    assert sorted(e.alert_token_id for e in store.events_for_case("24-CV-000123")) == [1, 3]


def test_single_notice_ledger_rejection_reports_ledger_error():
    node, context, store = _setup()
    node.revert_next = True
    result = issue_notice(context, store, _request([WALLET_A]))
    assert not result.ok
    assert result.reason == "ledger_error"
    assert store.find_by_case_number("24-CV-000123") == []
    submission = store.db.get(PreparedSubmission, result.submission_id)
    assert submission.status == "failed"


def test_record_write_failure_still_reports_minted_tokens():
    node, context, store = _setup()
    store.upsert_service_record("OLD-CASE", WALLET_B, recipients=[WALLET_B], alert_token_id=1)
    store.commit()

    result = issue_notice(context, store, _request([WALLET_A]))

    assert result.ok
    assert result.record_write_failed is True
    assert result.record_ids == []
    assert result.notices[0].alert_token_id == 1
    assert store.find_by_case_number("24-CV-000123") == []


def test_batch_that_landed_despite_a_broadcast_error_is_not_served_again():
    node, context, store = _setup()
    node.fail_after_broadcast = True
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B]))

    assert result.ok, result.detail
    assert result.reason is None
    assert len(node.executed) == 1
    assert node.total_supply == 4
    assert [n.recipient for n in result.notices] == [WALLET_A, WALLET_B]

    (submission,) = store.db.query(PreparedSubmission).all()
    assert submission.status == "confirmed"
    assert not (submission.payload or {}).get("superseded")

    (record,) = store.find_by_case_number("24-CV-000123")
    assert record.recipients == [WALLET_A, WALLET_B]
    assert len(record.token_pairs) == 2


def test_batch_with_unknown_outcome_stays_retryable_instead_of_falling_back():
    node, context, store = _setup()
    node.drop_next_broadcast = True
    node.fail_after_broadcast = True
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B]))

    assert not result.ok
    assert result.reason == "ledger_error"
    assert node.executed == []
    (submission,) = store.db.query(PreparedSubmission).all()
    assert submission.status == "submitted"
    assert not (submission.payload or {}).get("superseded")
    assert result.tx_ids == [submission.tx_id]
    assert store.find_by_case_number("24-CV-000123") == []

    retried = retry_submission(context, store, submission.id)

    assert retried.ok, retried.detail
    assert node.executed == [submission.tx_id]
    assert node.total_supply == 4
    (record,) = store.find_by_case_number("24-CV-000123")
    assert record.recipients == [WALLET_A, WALLET_B]
    assert [e.event_type for e in store.events_for_case("24-CV-000123")] == ["retry", "retry"]


def test_reverted_batch_falls_back_to_one_call_per_recipient():
    node, context, store = _setup()
    node.revert_next = True
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B]))

    assert result.ok, result.detail
    assert len(node.executed) == 2
    batch = store.db.query(PreparedSubmission).order_by(PreparedSubmission.id).first()
    assert batch.status == "failed"
    assert batch.payload["superseded"] is True


def test_retrying_a_failed_recipient_adds_to_the_existing_record():
    node, context, store = _setup()
    node.reject_batch = True
    node.reject_recipients = {WALLET_B}
    result = issue_notice(context, store, _request([WALLET_A, WALLET_B]))

    assert result.ok
    assert result.reason == "partial_failure"
    (failed,) = result.detail["failed"]
    assert failed["recipient"] == WALLET_B
    (record,) = store.find_by_case_number("24-CV-000123")
    assert record.recipients == [WALLET_A]

    node.reject_recipients.clear()
    retried = retry_submission(context, store, failed["submission_id"])

    assert retried.ok, retried.detail
    assert [n.alert_token_id for n in retried.notices] == [3]
    store.db.refresh(record)
    assert record.recipients == [WALLET_A, WALLET_B]
    assert [(p["alert_token_id"], p["recipient"]) for p in record.token_pairs] == [(1, WALLET_A), (3, WALLET_B)]
    assert record.alert_token_id == 1
    assert record.document_token_id == 2
    assert store.find_by_token_id(4).id == record.id

    case = store.get_case("24-CV-000123", record.server_address)
    assert len(case.metadata_info["transactions"]) == 2
    events = store.events_for_case("24-CV-000123")
    assert [(e.event_type, e.alert_token_id) for e in events] == [("served", 1), ("retry", 3)]
