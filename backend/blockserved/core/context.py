"""Process-wide wiring for the issuance and reconciliation workflows."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache

from blockserved.core.chain_constants import BATCH_NOTICE_FEE_LIMIT_SUN, SINGLE_NOTICE_FEE_LIMIT_SUN
from blockserved.core.ledger import TronGridClient
from blockserved.core.notice_contract import NoticeContract
from blockserved.services.energy import EnergyMarket
from blockserved.services.storage import StorageService

logger = logging.getLogger(__name__)

DEFAULT_TRON_API_URL = "https://api.trongrid.io"


@dataclass
class NoticeSettings:
    single_fee_limit: int = SINGLE_NOTICE_FEE_LIMIT_SUN
    batch_fee_limit: int = BATCH_NOTICE_FEE_LIMIT_SUN
    metadata_mode: str = "inline"
    confirmation_timeout: float = 60.0
    poll_interval: float = 3.0
    fee_retry_delay: float = 1.5
    reconcile_rate_limit: float = 0.0
    reconcile_batch_size: int = 50


@dataclass
class NoticeContext:
    client: TronGridClient
    contract: NoticeContract
    storage: StorageService
    energy_market: EnergyMarket | None = None
    settings: NoticeSettings = field(default_factory=NoticeSettings)

    @property
    def sender(self) -> str | None:
        return self.client.address


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def build_context() -> NoticeContext:
    """Build the context once per process from environment variables."""
    contract_address = os.getenv("NOTICE_CONTRACT_ADDRESS")
    if not contract_address:
        raise RuntimeError("NOTICE_CONTRACT_ADDRESS is not configured")

    client = TronGridClient(
        os.getenv("TRON_API_URL", DEFAULT_TRON_API_URL),
        api_key=os.getenv("TRON_API_KEY") or None,
        private_key=os.getenv("TRON_PRIVATE_KEY") or None,
        timeout=_float_env("TRON_TIMEOUT_SECONDS", 10.0),
    )

    market = None
    rental_url = os.getenv("ENERGY_RENTAL_API_URL")
    rental_key = os.getenv("ENERGY_RENTAL_API_KEY")
    if rental_url and rental_key:
        market = EnergyMarket(rental_url, rental_key)

    fee_limit = os.getenv("FEE_LIMIT_SUN")
    settings = NoticeSettings(
        single_fee_limit=int(fee_limit) if fee_limit else SINGLE_NOTICE_FEE_LIMIT_SUN,
        metadata_mode=os.getenv("NOTICE_METADATA_MODE", "inline"),
        confirmation_timeout=_float_env("TRON_CONFIRMATION_TIMEOUT_SECONDS", 60.0),
        reconcile_rate_limit=_float_env("RECONCILE_RATE_LIMIT_SECONDS", 0.0),
    )
    context = NoticeContext(
        client=client,
        contract=NoticeContract(client, contract_address),
        storage=StorageService.from_env(),
        energy_market=market,
        settings=settings,
    )
    logger.info(
        "context_ready contract=%s sender=%s energy_market=%s metadata_mode=%s",
        contract_address,
        client.address,
        market is not None,
        settings.metadata_mode,
    )
    return context


@lru_cache(maxsize=1)
def get_context() -> NoticeContext:
    return build_context()
