"""Energy budgeting for serve calls.

A serve call that runs short of staked energy burns TRX at the network price,
which on a batch can exceed the fee ceiling and revert. Before signing, the
issuance workflow compares the estimate below with the sender's available
energy and either rents the deficit from an energy market or refuses to go on.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass

import requests

from blockserved.core.chain_constants import (
    BASE_ENERGY,
    ENERGY_BUFFER,
    ENERGY_PER_DOCUMENT_BYTE,
    ENERGY_PER_RECIPIENT,
    ENERGY_RENTAL_DURATION_SECONDS,
    SUN_PER_ENERGY,
    SUN_PER_TRX,
)
from blockserved.core.ledger import LedgerError, TronGridClient
from blockserved.core.retry import with_retries

logger = logging.getLogger(__name__)


class EnergyRentalError(RuntimeError):
    pass


@dataclass
class EnergyCheck:
    required: int
    available: int
    rented: int = 0
    order_id: str | None = None

    @property
    def deficit(self) -> int:
        return max(0, self.required - self.available - self.rented)

    @property
    def sufficient(self) -> bool:
        return self.deficit == 0

    @property
    def burn_sun(self) -> int:
        return self.deficit * SUN_PER_ENERGY


def estimate_energy(recipient_count: int, document_bytes: int) -> int:
    raw = BASE_ENERGY + ENERGY_PER_RECIPIENT * max(1, recipient_count) + ENERGY_PER_DOCUMENT_BYTE * document_bytes
    return int(math.ceil(round(raw * ENERGY_BUFFER, 6)))


def burn_cost_trx(energy: int) -> float:
    return energy * SUN_PER_ENERGY / SUN_PER_TRX


class EnergyMarket:
    """Client for a TronSave-style rental API (``/estimate-trx`` then ``/internal-buy-energy``)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 10.0,
        attempts: int = 3,
        retry_delay: float = 1.5,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.attempts = attempts
        self.retry_delay = retry_delay
        self._session = session or requests.Session()

    def _post(self, path: str, payload: dict) -> dict:
        def _send() -> dict:
            res = self._session.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"apikey": self.api_key},
                timeout=self.timeout,
            )
            res.raise_for_status()
            return res.json()

        try:
            return with_retries(
                _send,
                attempts=self.attempts,
                delay=self.retry_delay,
                retry_on=(requests.RequestException, ValueError),
                label=f"energy market {path}",
            )
        except (requests.RequestException, ValueError) as exc:
            raise EnergyRentalError(f"Energy market request failed: {path}: {exc}") from exc

    def estimate_price(self, amount: int, duration_seconds: int = ENERGY_RENTAL_DURATION_SECONDS) -> float:
        data = self._post(
            "/estimate-trx",
            {"resource_value": amount, "resource_type": "ENERGY", "period": duration_seconds * 1000},
        )
        if data.get("estimated_trx") is None:
            raise EnergyRentalError(f"Energy market returned no price: {data}")
        return float(data["estimated_trx"])

    def rent(self, amount: int, receiver: str, duration_seconds: int = ENERGY_RENTAL_DURATION_SECONDS) -> str:
        price = self.estimate_price(amount, duration_seconds)
        started = time.perf_counter()
        data = self._post(
            "/internal-buy-energy",
            {
                "resource_value": amount,
                "resource_type": "ENERGY",
                "period": duration_seconds * 1000,
                "receive_address": receiver,
                "max_price": round(price * 1.1, 6),
                "allow_partial_fill": False,
            },
        )
        order_id = data.get("id") or data.get("order_id")
        if not order_id:
            raise EnergyRentalError(f"Energy order not accepted: {data}")
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "energy_rented amount=%s receiver=%s price_trx=%s order_id=%s latency_ms=%s",
            amount,
            receiver,
            price,
            order_id,
            elapsed_ms,
        )
        return str(order_id)


def ensure_energy(
    client: TronGridClient,
    address: str,
    required: int,
    market: EnergyMarket | None = None,
) -> EnergyCheck:
    """Compare ``required`` with the account budget, renting the gap when a market is set."""
    try:
        available = client.available_energy(address)
    except LedgerError as exc:
        logger.warning("energy_check_unavailable address=%s detail=%s", address, exc.detail)
        available = 0
    check = EnergyCheck(required=required, available=available)
    if check.sufficient or market is None:
        return check

    check.order_id = market.rent(check.deficit, address)
    check.rented = check.deficit
    return check
