from __future__ import annotations

import pytest
from eth_abi import decode

from blockserved.core.chain_constants import NOTICE_STRUCT_TUPLE, NOTICE_STRUCT_TYPES
from blockserved.core.ledger import to_base58, to_hex_address
from blockserved.core.notice_contract import TRANSFER_TOPIC, BatchNotice, MintEvent, NoticeContract, pair_mints
from tests.fixtures.chain import CONTRACT_ADDRESS, WALLET_A, WALLET_B, FakeTronNode, make_client


def _notice(recipient: str = WALLET_A, **overrides) -> BatchNotice:
    fields = dict(
        recipient=recipient,
        encrypted_ipfs="QmEncrypted",
        encryption_key="k" * 64,
        issuing_agency="County Sheriff",
        notice_type="Summons",
        case_number="24-CV-000123",
        case_details="Civil action",
        legal_rights="You have 30 days to respond",
        sponsor_fees=True,
        metadata_uri="data:application/json;base64,e30=",
    )
    fields.update(overrides)
    return BatchNotice(**fields)


def _log(contract_hex: str, recipient: str, token_id: int, sender_topic: str = "0" * 64) -> dict:
    return {
        "address": contract_hex,
        "topics": [TRANSFER_TOPIC, sender_topic, "0" * 24 + to_hex_address(recipient)[2:], f"{token_id:064x}"],
    }


def test_serve_notice_encodes_struct_in_field_order():
    signature, parameter = NoticeContract.encode_serve_notice(_notice())
    assert signature == "serveNotice(address,string,string,string,string,string,string,string,bool,string)"
    values = decode(list(NOTICE_STRUCT_TYPES), bytes.fromhex(parameter))
    assert to_base58(values[0]) == WALLET_A
    assert values[1:] == tuple(_notice()[1:])


def test_batch_encoding_round_trips_every_notice():
    notices = [_notice(WALLET_A), _notice(WALLET_B, sponsor_fees=False)]
    signature, parameter = NoticeContract.encode_serve_notice_batch(notices)
    assert signature == f"serveNoticeBatch({NOTICE_STRUCT_TUPLE}[])"
    (rows,) = decode([f"{NOTICE_STRUCT_TUPLE}[]"], bytes.fromhex(parameter))
    assert [to_base58(r[0]) for r in rows] == [WALLET_A, WALLET_B]
    assert [r[8] for r in rows] == [True, False]


def test_batch_rejects_plain_tuples_and_dicts():
    with pytest.raises(TypeError):
        NoticeContract.encode_serve_notice_batch([tuple(_notice())])
    with pytest.raises(TypeError):
        NoticeContract.encode_serve_notice_batch([_notice()._asdict()])
    with pytest.raises(TypeError):
        NoticeContract.encode_serve_notice(tuple(_notice()))


def test_field_types_are_checked_before_encoding():
    with pytest.raises(TypeError):
        NoticeContract.encode_serve_notice(_notice(sponsor_fees="true"))
    with pytest.raises(TypeError):
        NoticeContract.encode_serve_notice(_notice(case_number=123))
    with pytest.raises(ValueError):
        NoticeContract.encode_serve_notice(_notice(recipient="not-an-address"))
    with pytest.raises(ValueError):
        NoticeContract.encode_serve_notice_batch([])


def test_minted_notices_pairs_mints_in_emission_order():
    node = FakeTronNode()
    contract = NoticeContract(make_client(node), CONTRACT_ADDRESS)
    contract_hex = to_hex_address(CONTRACT_ADDRESS)[2:]
    other_contract = "ab" * 20
    info = {
        "id": "tx1",
        "blockNumber": 10,
        "log": [
            _log(contract_hex, WALLET_A, 41),
            _log(contract_hex, WALLET_A, 42),
            _log(other_contract, WALLET_B, 7),
            _log(contract_hex, WALLET_B, 99, sender_topic="0" * 24 + "11" * 20),
            _log(contract_hex, WALLET_B, 43),
            _log(contract_hex, CONTRACT_ADDRESS, 44),
        ],
    }
    notices = contract.minted_notices(info)
    assert [(n.alert_token_id, n.document_token_id, n.recipient) for n in notices] == [
        (41, 42, WALLET_A),
        (43, 44, WALLET_B),
    ]
    assert all(n.tx_id == "tx1" for n in notices)


def test_pair_mints_keeps_unpaired_alert():
    mints = [MintEvent("tx", 5, WALLET_A, 1), MintEvent("tx", 6, WALLET_A, 1), MintEvent("tx", 7, WALLET_B, 1)]
    pairs = pair_mints(mints)
    assert pairs[-1].alert_token_id == 7
    assert pairs[-1].document_token_id is None


def test_reads_go_through_constant_calls():
    node = FakeTronNode()
    node.owners[3] = WALLET_B
    node.total_supply = 4
    contract = NoticeContract(make_client(node), CONTRACT_ADDRESS)
    assert contract.service_fee() == 20_000_000
    assert contract.creation_fee() == 5_000_000
    assert contract.sponsorship_fee() == 2_000_000
    assert contract.total_supply() == 4
    assert contract.owner_of(3) == WALLET_B
    assert contract.is_service_fee_exempt(WALLET_A) is False
    assert contract.is_contract_address(CONTRACT_ADDRESS)
