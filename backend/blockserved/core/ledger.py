"""TronGrid HTTP client.

Thin wrapper over the full-node HTTP API (``/wallet/*``) and the TronGrid
event API (``/v1/contracts/{address}/events``). Every call carries an explicit
timeout and goes through the shared bounded-retry helper.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Any

import base58
import requests
from eth_keys import keys

from blockserved.core.retry import with_retries

logger = logging.getLogger(__name__)

TRON_ADDRESS_PREFIX = "41"


class LedgerError(RuntimeError):
    """Raised when a ledger RPC fails; ``detail`` keeps the raw node error."""

    def __init__(self, message: str, detail: Any = None) -> None:
        super().__init__(message)
        self.detail = detail


# ---------------------------------------------------------------------------
# Address codec: base58check "T..." <-> 41-prefixed hex <-> 20 raw bytes
# ---------------------------------------------------------------------------
def to_hex_address(address: str) -> str:
    if address.startswith(TRON_ADDRESS_PREFIX) and len(address) == 42:
        return address.lower()
    if address.startswith("0x") and len(address) == 42:
        return TRON_ADDRESS_PREFIX + address[2:].lower()
    try:
        raw = base58.b58decode_check(address)
    except ValueError as exc:
        raise ValueError(f"Invalid TRON address: {address}") from exc
    if len(raw) != 21 or raw[0] != 0x41:
        raise ValueError(f"Invalid TRON address: {address}")
    return raw.hex()


def to_base58(address: str | bytes) -> str:
    if isinstance(address, bytes):
        raw = address if len(address) == 21 else bytes([0x41]) + address
    else:
        value = address[2:] if address.startswith("0x") else address
        if len(value) == 40:
            value = TRON_ADDRESS_PREFIX + value
        raw = bytes.fromhex(value)
    if len(raw) != 21:
        raise ValueError(f"Invalid TRON address: {address!r}")
    return base58.b58encode_check(raw).decode()


def abi_address(address: str) -> bytes:
    """20-byte form used inside ABI-encoded parameters."""
    return bytes.fromhex(to_hex_address(address)[2:])


def is_valid_address(address: Any) -> bool:
    if not isinstance(address, str) or not address.startswith("T") or len(address) != 34:
        return False
    try:
        to_hex_address(address)
    except ValueError:
        return False
    return True


ZERO_ADDRESS = to_base58("00" * 20)


def _decode_node_message(message: Any) -> str:
    if not isinstance(message, str):
        return str(message)
    try:
        return bytes.fromhex(message).decode("utf-8", errors="replace")
    except ValueError:
        return message


class TronGridClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        private_key: str | None = None,
        timeout: float = 10.0,
        attempts: int = 3,
        retry_delay: float = 1.5,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._session = session or requests.Session()
        if api_key:
            self._session.headers["TRON-PRO-API-KEY"] = api_key
        self._private_key = keys.PrivateKey(bytes.fromhex(private_key)) if private_key else None

    @property
    def address(self) -> str | None:
        if self._private_key is None:
            return None
        return to_base58(self._private_key.public_key.to_canonical_address())

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{path}"

        def _send() -> Any:
            started = time.perf_counter()
            res = self._session.request(method, url, json=payload, params=params, timeout=self.timeout)
            res.raise_for_status()
            data = res.json()
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.debug("ledger_call path=%s latency_ms=%s", path, elapsed_ms)
            return data

        try:
            data = with_retries(
                _send,
                attempts=self.attempts,
                delay=self.retry_delay,
                retry_on=(requests.RequestException, ValueError),
                label=f"ledger {path}",
            )
        except (requests.RequestException, ValueError) as exc:
            raise LedgerError(f"Ledger request failed: {path}", detail=str(exc)) from exc
        if isinstance(data, dict) and data.get("Error"):
            raise LedgerError(f"Ledger error on {path}", detail=data["Error"])
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def trigger_constant(
        self,
        contract: str,
        function_signature: str,
        parameter_hex: str = "",
        owner: str | None = None,
    ) -> bytes:
        data = self._request(
            "POST",
            "/wallet/triggerconstantcontract",
            payload={
                "owner_address": owner or self.address or ZERO_ADDRESS,
                "contract_address": contract,
                "function_selector": function_signature,
                "parameter": parameter_hex,
                "visible": True,
            },
        )
        result = data.get("result") or {}
        outputs = data.get("constant_result") or []
        if not result.get("result") or not outputs or not outputs[0]:
            raise LedgerError(
                f"Constant call reverted: {function_signature}",
                detail=_decode_node_message(result.get("message")) if result.get("message") else result,
            )
        return bytes.fromhex(outputs[0])

    def get_transaction_info(self, tx_id: str) -> dict[str, Any] | None:
        data = self._request("POST", "/wallet/gettransactioninfobyid", payload={"value": tx_id})
        return data or None

    def get_account_resource(self, address: str) -> dict[str, Any]:
        return self._request(
            "POST",
            "/wallet/getaccountresource",
            payload={"address": address, "visible": True},
        )

    def available_energy(self, address: str) -> int:
        resource = self.get_account_resource(address)
        return max(0, int(resource.get("EnergyLimit", 0)) - int(resource.get("EnergyUsed", 0)))

    def get_contract_events(
        self,
        contract: str,
        event_name: str,
        *,
        fingerprint: str | None = None,
        limit: int = 200,
        min_block_timestamp: int | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        params: dict[str, Any] = {
            "event_name": event_name,
            "only_confirmed": "true",
            "order_by": "block_timestamp,asc",
            "limit": limit,
        }
        if fingerprint:
            params["fingerprint"] = fingerprint
        if min_block_timestamp is not None:
            params["min_block_timestamp"] = min_block_timestamp
        data = self._request("GET", f"/v1/contracts/{contract}/events", params=params)
        meta = data.get("meta") or {}
        return list(data.get("data") or []), meta.get("fingerprint")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def trigger_contract(
        self,
        owner: str,
        contract: str,
        function_signature: str,
        parameter_hex: str,
        *,
        call_value: int,
        fee_limit: int,
    ) -> dict[str, Any]:
        data = self._request(
            "POST",
            "/wallet/triggersmartcontract",
            payload={
                "owner_address": owner,
                "contract_address": contract,
                "function_selector": function_signature,
                "parameter": parameter_hex,
                "call_value": call_value,
                "fee_limit": fee_limit,
                "visible": True,
            },
        )
        result = data.get("result") or {}
        transaction = data.get("transaction")
        if not result.get("result") or not transaction:
            raise LedgerError(
                f"Contract call rejected: {function_signature}",
                detail=_decode_node_message(result.get("message")) if result.get("message") else result,
            )
        return transaction

    def sign(self, transaction: dict[str, Any]) -> dict[str, Any]:
        if self._private_key is None:
            raise LedgerError("No signing key configured (TRON_PRIVATE_KEY)")
        tx_id = transaction["txID"]
        raw_hex = transaction.get("raw_data_hex")
        if raw_hex and hashlib.sha256(bytes.fromhex(raw_hex)).hexdigest() != tx_id:
            raise LedgerError("Transaction id does not match raw data", detail=tx_id)
        signature = self._private_key.sign_msg_hash(bytes.fromhex(tx_id))
        signed = dict(transaction)
        signed["signature"] = [signature.to_bytes().hex()]
        return signed

    def broadcast(self, signed_transaction: dict[str, Any]) -> str:
        data = self._request("POST", "/wallet/broadcasttransaction", payload=signed_transaction)
        tx_id = data.get("txid") or signed_transaction.get("txID")
        if data.get("result") or data.get("code") == "DUP_TRANSACTION_ERROR":
            return tx_id
        raise LedgerError(
            "Broadcast rejected",
            detail={"code": data.get("code"), "message": _decode_node_message(data.get("message"))},
        )

    def wait_for_confirmation(
        self,
        tx_id: str,
        *,
        timeout: float = 60.0,
        poll_interval: float = 3.0,
    ) -> dict[str, Any] | None:
        deadline = time.monotonic() + timeout
        while True:
            info = self.get_transaction_info(tx_id)
            if info and info.get("blockNumber"):
                return info
            if time.monotonic() >= deadline:
                return None
            time.sleep(poll_interval)
