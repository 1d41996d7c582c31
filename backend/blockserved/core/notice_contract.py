"""Typed access to the pinned LegalNoticeNFT v5 contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterator, NamedTuple

from eth_abi import decode, encode
from eth_utils import keccak

from blockserved.core.chain_constants import (
    NOTICE_STRUCT_TUPLE,
    NOTICE_STRUCT_TYPES,
    CREATION_FEE_SIGNATURE,
    OWNER_OF_SIGNATURE,
    SERVE_NOTICE_BATCH_SIGNATURE,
    SERVE_NOTICE_SIGNATURE,
    SERVICE_FEE_EXEMPTION_SIGNATURE,
    SERVICE_FEE_SIGNATURE,
    SPONSORSHIP_FEE_SIGNATURE,
    TOTAL_SUPPLY_SIGNATURE,
    TRANSFER_EVENT_NAME,
    TRANSFER_EVENT_SIGNATURE,
    ZERO_ADDRESS_HEX,
)
from blockserved.core.ledger import TronGridClient, abi_address, is_valid_address, to_base58, to_hex_address

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = keccak(text=TRANSFER_EVENT_SIGNATURE).hex()


class BatchNotice(NamedTuple):
    """One notice in contract struct order. Field order is the wire order."""

    recipient: str
    encrypted_ipfs: str
    encryption_key: str
    issuing_agency: str
    notice_type: str
    case_number: str
    case_details: str
    legal_rights: str
    sponsor_fees: bool
    metadata_uri: str

    def abi_values(self) -> tuple[Any, ...]:
        if not is_valid_address(self.recipient):
            raise ValueError(f"Invalid recipient address: {self.recipient!r}")
        for name in self._fields:
            value = getattr(self, name)
            if name == "sponsor_fees":
                if not isinstance(value, bool):
                    raise TypeError("sponsor_fees must be a bool")
            elif not isinstance(value, str):
                raise TypeError(f"{name} must be a str, got {type(value).__name__}")
        return (abi_address(self.recipient),) + tuple(self[1:])


@dataclass
class MintedNotice:
    alert_token_id: int
    document_token_id: int | None
    recipient: str
    tx_id: str


@dataclass
class MintEvent:
    tx_id: str
    token_id: int
    recipient: str
    block_number: int


def pair_mints(mints: list[MintEvent]) -> list[MintedNotice]:
    """Pair mints of one transaction in emission order: Alert then Document."""
    notices: list[MintedNotice] = []
    for i in range(0, len(mints), 2):
        alert = mints[i]
        document = mints[i + 1] if i + 1 < len(mints) else None
        notices.append(
            MintedNotice(
                alert_token_id=alert.token_id,
                document_token_id=document.token_id if document else None,
                recipient=alert.recipient,
                tx_id=alert.tx_id,
            )
        )
    return notices


def _strip0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def _event_address_hex(value: Any) -> str:
    text = str(value or "")
    if text.startswith("T"):
        return to_hex_address(text)[2:]
    return _strip0x(text).lower()[-40:]


class NoticeContract:
    def __init__(self, client: TronGridClient, address: str) -> None:
        self.client = client
        self.address = address
        self._address_hex = to_hex_address(address)[2:]

    def _call(
        self,
        signature: str,
        arg_types: tuple[str, ...] = (),
        args: tuple[Any, ...] = (),
        output_types: tuple[str, ...] = ("uint256",),
    ) -> tuple[Any, ...]:
        parameter = encode(list(arg_types), list(args)).hex() if arg_types else ""
        raw = self.client.trigger_constant(self.address, signature, parameter)
        return decode(list(output_types), raw)

    # ------------------------------------------------------------------
    # Fee schedule and exemptions
    # ------------------------------------------------------------------
    def service_fee(self) -> int:
        return int(self._call(SERVICE_FEE_SIGNATURE)[0])

    def creation_fee(self) -> int:
        return int(self._call(CREATION_FEE_SIGNATURE)[0])

    def sponsorship_fee(self) -> int:
        return int(self._call(SPONSORSHIP_FEE_SIGNATURE)[0])

    def is_service_fee_exempt(self, address: str) -> bool:
        return bool(
            self._call(SERVICE_FEE_EXEMPTION_SIGNATURE, ("address",), (abi_address(address),), ("bool",))[0]
        )

    # ------------------------------------------------------------------
    # Token state
    # ------------------------------------------------------------------
    def total_supply(self) -> int:
        return int(self._call(TOTAL_SUPPLY_SIGNATURE)[0])

    def owner_of(self, token_id: int) -> str:
        owner = self._call(OWNER_OF_SIGNATURE, ("uint256",), (token_id,), ("address",))[0]
        return to_base58(owner)

    def is_contract_address(self, address: str) -> bool:
        return to_hex_address(address)[2:] == self._address_hex

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------
    @staticmethod
    def encode_serve_notice(notice: BatchNotice) -> tuple[str, str]:
        if not isinstance(notice, BatchNotice):
            raise TypeError("serveNotice expects a BatchNotice")
        parameter = encode(list(NOTICE_STRUCT_TYPES), list(notice.abi_values()))
        return SERVE_NOTICE_SIGNATURE, parameter.hex()

    @staticmethod
    def encode_serve_notice_batch(notices: list[BatchNotice]) -> tuple[str, str]:
        if not notices:
            raise ValueError("serveNoticeBatch needs at least one notice")
        rows = []
        for notice in notices:
            if not isinstance(notice, BatchNotice):
                raise TypeError("serveNoticeBatch expects a list of BatchNotice tuples")
            rows.append(notice.abi_values())
        parameter = encode([f"{NOTICE_STRUCT_TUPLE}[]"], [rows])
        return SERVE_NOTICE_BATCH_SIGNATURE, parameter.hex()

    def build_call(
        self,
        owner: str,
        function_signature: str,
        parameter_hex: str,
        *,
        call_value: int,
        fee_limit: int,
    ) -> dict[str, Any]:
        return self.client.trigger_contract(
            owner,
            self.address,
            function_signature,
            parameter_hex,
            call_value=call_value,
            fee_limit=fee_limit,
        )

    # ------------------------------------------------------------------
    # Log decoding
    # ------------------------------------------------------------------
    def minted_notices(self, tx_info: dict[str, Any]) -> list[MintedNotice]:
        tx_id = tx_info.get("id", "")
        mints: list[MintEvent] = []
        for log in tx_info.get("log") or []:
            if _strip0x(log.get("address", "")).lower()[-40:] != self._address_hex:
                continue
            topics = [_strip0x(t).lower() for t in log.get("topics") or []]
            if len(topics) != 4 or topics[0] != TRANSFER_TOPIC:
                continue
            if int(topics[1], 16) != 0:
                continue
            mints.append(
                MintEvent(
                    tx_id=tx_id,
                    token_id=int(topics[3], 16),
                    recipient=to_base58(topics[2][-40:]),
                    block_number=int(tx_info.get("blockNumber") or 0),
                )
            )
        return pair_mints(mints)

    def mint_events(self, *, page_size: int = 200, min_block_timestamp: int | None = None) -> Iterator[MintEvent]:
        """Yield confirmed mint ``Transfer`` events in chain order."""
        fingerprint: str | None = None
        while True:
            events, fingerprint = self.client.get_contract_events(
                self.address,
                TRANSFER_EVENT_NAME,
                fingerprint=fingerprint,
                limit=page_size,
                min_block_timestamp=min_block_timestamp,
            )
            for event in events:
                result = event.get("result") or {}
                if _event_address_hex(result.get("from")).rjust(40, "0") != ZERO_ADDRESS_HEX:
                    continue
                yield MintEvent(
                    tx_id=event.get("transaction_id", ""),
                    token_id=int(result.get("tokenId", 0)),
                    recipient=to_base58(_event_address_hex(result.get("to"))),
                    block_number=int(event.get("block_number") or 0),
                )
            if not fingerprint or not events:
                break
