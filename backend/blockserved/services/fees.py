from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from blockserved.core.chain_constants import (
    DEFAULT_CREATION_FEE_SUN,
    DEFAULT_SERVICE_FEE_SUN,
    DEFAULT_SPONSORSHIP_FEE_SUN,
    FEE_READ_ATTEMPTS,
)
from blockserved.core.ledger import LedgerError
from blockserved.core.notice_contract import NoticeContract

logger = logging.getLogger(__name__)


class FeeReadError(RuntimeError):
    pass


@dataclass
class FeeQuote:
    """Per-recipient fee breakdown in sun."""

    service_fee: int
    creation_fee: int
    sponsorship_fee: int
    exempt: bool
    sponsored: bool
    is_default: bool = False

    @property
    def total(self) -> int:
        return self.creation_fee + self.sponsorship_fee + (0 if self.exempt else self.service_fee)

    def as_dict(self) -> dict:
        return {
            "service_fee": self.service_fee,
            "creation_fee": self.creation_fee,
            "sponsorship_fee": self.sponsorship_fee,
            "exempt": self.exempt,
            "sponsored": self.sponsored,
            "is_default": self.is_default,
            "total": self.total,
        }


def _default_quote(sponsor: bool) -> FeeQuote:
    return FeeQuote(
        service_fee=DEFAULT_SERVICE_FEE_SUN,
        creation_fee=DEFAULT_CREATION_FEE_SUN,
        sponsorship_fee=DEFAULT_SPONSORSHIP_FEE_SUN if sponsor else 0,
        exempt=False,
        sponsored=sponsor,
        is_default=True,
    )


def _read_quote(contract: NoticeContract, sender: str, sponsor: bool) -> FeeQuote:
    try:
        exempt = contract.is_service_fee_exempt(sender)
        service_fee = contract.service_fee()
        creation_fee = contract.creation_fee()
        sponsorship_fee = contract.sponsorship_fee() if sponsor else 0
    except (LedgerError, ValueError) as exc:
        raise FeeReadError(str(exc)) from exc
    return FeeQuote(
        service_fee=service_fee,
        creation_fee=creation_fee,
        sponsorship_fee=sponsorship_fee,
        exempt=exempt,
        sponsored=sponsor,
    )


def quote(
    contract: NoticeContract,
    sender: str,
    sponsor: bool,
    *,
    attempts: int = FEE_READ_ATTEMPTS,
    retry_delay: float = 1.5,
    sleep: Callable[[float], None] = time.sleep,
) -> FeeQuote:
    """Read the live fee schedule for ``sender``.

    Exempt senders pay creation plus sponsorship; everyone else also pays the
    service fee. Sponsorship is only charged when ``sponsor`` is set. After
    ``attempts`` failed reads the documented defaults are returned with
    ``is_default=True``.
    """
    for attempt in range(1, attempts + 1):
        try:
            fee = _read_quote(contract, sender, sponsor)
            logger.info(
                "fee_quote sender=%s exempt=%s sponsor=%s total=%s",
                sender,
                fee.exempt,
                sponsor,
                fee.total,
            )
            return fee
        except FeeReadError as exc:
            logger.warning("fee read attempt failed (%s/%s): %s", attempt, attempts, exc)
            if attempt < attempts and retry_delay > 0:
                sleep(retry_delay * attempt)

    fee = _default_quote(sponsor)
    logger.warning("fee_quote_default sender=%s sponsor=%s total=%s", sender, sponsor, fee.total)
    return fee


def quote_batch(contract: NoticeContract, sender: str, sponsor: bool, count: int, **kwargs) -> tuple[FeeQuote, int]:
    if count < 1:
        raise ValueError("count must be at least 1")
    fee = quote(contract, sender, sponsor, **kwargs)
    return fee, fee.total * count
