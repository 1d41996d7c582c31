from __future__ import annotations

import hashlib
import time
from urllib.parse import urlparse

import requests
from eth_abi import decode, encode

from blockserved.core.chain_constants import NOTICE_STRUCT_TUPLE, NOTICE_STRUCT_TYPES
from blockserved.core.context import NoticeContext, NoticeSettings
from blockserved.core.ledger import TronGridClient, to_base58, to_hex_address
from blockserved.core.notice_contract import TRANSFER_TOPIC, NoticeContract
from blockserved.services.storage import StorageService

SERVER_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
CONTRACT_ADDRESS = to_base58(bytes([0xC0]) * 20)
WALLET_A = to_base58(bytes([0x0A]) * 20)
WALLET_B = to_base58(bytes([0x0B]) * 20)
WALLET_C = to_base58(bytes([0x0C]) * 20)


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code
        self.text = str(payload)

    def json(self):
        return self._payload

    def raise_for_status(self) -> None:
        return None


def _hex(text: str) -> str:
    return text.encode().hex()


class FakeTronNode:
    """In-memory stand-in for a TronGrid full node plus the notice contract."""

    def __init__(self, contract: str = CONTRACT_ADDRESS):
        self.headers: dict[str, str] = {}
        self.contract = contract
        self.contract_hex = to_hex_address(contract)[2:]
        self.service_fee = 20_000_000
        self.creation_fee = 5_000_000
        self.sponsorship_fee = 2_000_000
        self.exempt: set[str] = set()
        self.fee_errors = 0
        self.energy = 10_000_000
        self.owners: dict[int, str] = {}
        self.total_supply = 0
        self.pending: dict[str, dict] = {}
        self.infos: dict[str, dict] = {}
        self.events: list[dict] = []
        self.executed: list[str] = []
        self.broadcasts: list[str] = []
        self.reject_batch = False
        self.revert_next = False
        self.drop_next_broadcast = False
        self.hold_confirmations = False
        self.fail_after_broadcast = False
        self.reject_recipients: set[str] = set()
        self._counter = 0
        self._block = 1000

    # ------------------------------------------------------------------
    def request(self, method, url, json=None, params=None, timeout=None):
        path = urlparse(url).path
        if path == "/wallet/triggerconstantcontract":
            return FakeResponse(self._constant(json))
        if path == "/wallet/triggersmartcontract":
            return FakeResponse(self._trigger(json))
        if path == "/wallet/broadcasttransaction":
            response = FakeResponse(self._broadcast(json))
            if self.fail_after_broadcast:
                self.fail_after_broadcast = False
                raise requests.ConnectionError("connection reset after broadcast")
            return response
        if path == "/wallet/gettransactioninfobyid":
            if self.hold_confirmations:
                return FakeResponse({})
            return FakeResponse(self.infos.get(json["value"], {}))
        if path == "/wallet/getaccountresource":
            return FakeResponse({"EnergyLimit": self.energy, "EnergyUsed": 0})
        if path.startswith("/v1/contracts/") and path.endswith("/events"):
            return FakeResponse(self._events(params or {}))
        return FakeResponse({"Error": f"unknown path {path}"})

    def _constant(self, payload):
        selector = payload["function_selector"]
        parameter = bytes.fromhex(payload.get("parameter") or "")
        fee_values = {
            "serviceFee()": self.service_fee,
            "creationFee()": self.creation_fee,
            "sponsorshipFee()": self.sponsorship_fee,
        }
        if selector in fee_values or selector == "serviceFeeExemptions(address)":
            if self.fee_errors > 0:
                self.fee_errors -= 1
                return {"Error": "node unavailable"}
        if selector in fee_values:
            return self._ok(encode(["uint256"], [fee_values[selector]]))
        if selector == "serviceFeeExemptions(address)":
            (address,) = decode(["address"], parameter)
            return self._ok(encode(["bool"], [to_base58(address) in self.exempt]))
        if selector == "totalSupply()":
            return self._ok(encode(["uint256"], [self.total_supply]))
        if selector == "ownerOf(uint256)":
            (token_id,) = decode(["uint256"], parameter)
            owner = self.owners.get(token_id)
            if owner is None:
                return {"result": {"result": False, "message": _hex("ERC721: invalid token ID")}}
            return self._ok(encode(["address"], [bytes.fromhex(to_hex_address(owner)[2:])]))
        return {"result": {"result": False, "message": _hex(f"unknown selector {selector}")}}

    @staticmethod
    def _ok(raw: bytes):
        return {"result": {"result": True}, "constant_result": [raw.hex()]}

    def _trigger(self, payload):
        selector = payload["function_selector"]
        if self.reject_batch and selector.startswith("serveNoticeBatch"):
            return {"result": {"result": False, "message": _hex("REVERT opcode executed")}}
        if self.reject_recipients and selector.startswith("serveNotice("):
            row = decode(list(NOTICE_STRUCT_TYPES), bytes.fromhex(payload["parameter"]))
            if to_base58(row[0]) in self.reject_recipients:
                return {"result": {"result": False, "message": _hex("REVERT opcode executed")}}
        self._counter += 1
        raw = (
            f"{payload['owner_address']}|{selector}|{payload['parameter']}|"
            f"{payload['call_value']}|{payload['fee_limit']}|{self._counter}"
        ).encode()
        tx_id = hashlib.sha256(raw).hexdigest()
        transaction = {
            "txID": tx_id,
            "raw_data": {"expiration": int(time.time() * 1000) + 60_000, "ref_block_num": self._counter},
            "raw_data_hex": raw.hex(),
            "visible": True,
        }
        self.pending[tx_id] = dict(payload)
        return {"result": {"result": True}, "transaction": transaction}

    def _broadcast(self, signed):
        tx_id = signed["txID"]
        assert signed.get("signature"), "unsigned transaction broadcast"
        self.broadcasts.append(tx_id)
        if tx_id in self.infos:
            return {"result": False, "code": "DUP_TRANSACTION_ERROR", "txid": tx_id}
        if self.drop_next_broadcast:
            self.drop_next_broadcast = False
            return {"result": True, "txid": tx_id}
        self._execute(tx_id, self.pending[tx_id])
        return {"result": True, "txid": tx_id}

    def _execute(self, tx_id: str, call: dict) -> None:
        self._block += 1
        if self.revert_next:
            self.revert_next = False
            self.infos[tx_id] = {
                "id": tx_id,
                "blockNumber": self._block,
                "result": "FAILED",
                "resMessage": _hex("REVERT opcode executed"),
                "receipt": {"result": "REVERT"},
            }
            return
        selector = call["function_selector"]
        data = bytes.fromhex(call["parameter"])
        if selector.startswith("serveNoticeBatch"):
            (rows,) = decode([f"{NOTICE_STRUCT_TUPLE}[]"], data)
        else:
            rows = [decode(list(NOTICE_STRUCT_TYPES), data)]
        logs = []
        for row in rows:
            recipient = to_base58(row[0])
            for _ in range(2):
                self.total_supply += 1
                token_id = self.total_supply
                self.owners[token_id] = recipient
                logs.append(self._transfer_log(recipient, token_id))
                self.events.append(
                    {
                        "transaction_id": tx_id,
                        "block_number": self._block,
                        "event_name": "Transfer",
                        "result": {
                            "from": "0x" + "0" * 40,
                            "to": "0x" + to_hex_address(recipient)[2:],
                            "tokenId": str(token_id),
                        },
                    }
                )
        self.executed.append(tx_id)
        self.infos[tx_id] = {
            "id": tx_id,
            "blockNumber": self._block,
            "callValue": call["call_value"],
            "receipt": {"result": "SUCCESS", "energy_usage_total": 500_000},
            "log": logs,
        }

    def _transfer_log(self, recipient: str, token_id: int) -> dict:
        return {
            "address": self.contract_hex,
            "topics": [
                TRANSFER_TOPIC,
                "0" * 64,
                "0" * 24 + to_hex_address(recipient)[2:],
                f"{token_id:064x}",
            ],
            "data": "",
        }

    def _events(self, params):
        limit = int(params.get("limit", 200))
        offset = int(params.get("fingerprint") or 0)
        page = self.events[offset : offset + limit]
        meta = {}
        if offset + limit < len(self.events):
            meta["fingerprint"] = str(offset + limit)
        return {"data": page, "success": True, "meta": meta}

    # ------------------------------------------------------------------
    def call_values(self) -> list[int]:
        return [self.infos[tx]["callValue"] for tx in self.executed]


def make_client(node: FakeTronNode, private_key: str | None = SERVER_KEY) -> TronGridClient:
    return TronGridClient(
        "https://api.trongrid.test",
        private_key=private_key,
        attempts=1,
        retry_delay=0,
        session=node,
    )


def make_context(
    node: FakeTronNode,
    storage: StorageService | None = None,
    energy_market=None,
    **settings,
) -> NoticeContext:
    client = make_client(node)
    defaults = {"confirmation_timeout": 0, "poll_interval": 0, "fee_retry_delay": 0}
    defaults.update(settings)
    return NoticeContext(
        client=client,
        contract=NoticeContract(client, node.contract),
        storage=storage or StorageService(production=False),
        energy_market=energy_market,
        settings=NoticeSettings(**defaults),
    )
