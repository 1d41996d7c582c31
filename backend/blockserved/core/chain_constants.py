"""Pinned contract ABI and chain-level constants.

The V5 LegalNoticeNFT contract is the single source of truth for every struct
layout and function signature used by the backend. Older revisions (Lite, v1
to v4) are only reachable through migration tooling and are not encoded here.
All amounts are in sun (1 TRX = 1,000,000 sun).
"""

from typing import Final

SUN_PER_TRX: Final[int] = 1_000_000

# ---------------------------------------------------------------------------
# Pinned ABI: LegalNoticeNFT v5 (enumerable)
# serveNotice / serveNoticeBatch take the notice fields in struct order:
# recipient, encryptedIPFS, encryptionKey, issuingAgency, noticeType,
# caseNumber, caseDetails, legalRights, sponsorFees, metadataURI.
# ---------------------------------------------------------------------------
NOTICE_STRUCT_TYPES: Final[tuple[str, ...]] = (
    "address",
    "string",
    "string",
    "string",
    "string",
    "string",
    "string",
    "string",
    "bool",
    "string",
)
NOTICE_STRUCT_TUPLE: Final[str] = "(" + ",".join(NOTICE_STRUCT_TYPES) + ")"

SERVE_NOTICE_SIGNATURE: Final[str] = "serveNotice" + NOTICE_STRUCT_TUPLE
SERVE_NOTICE_BATCH_SIGNATURE: Final[str] = f"serveNoticeBatch({NOTICE_STRUCT_TUPLE}[])"

SERVICE_FEE_SIGNATURE: Final[str] = "serviceFee()"
CREATION_FEE_SIGNATURE: Final[str] = "creationFee()"
SPONSORSHIP_FEE_SIGNATURE: Final[str] = "sponsorshipFee()"
SERVICE_FEE_EXEMPTION_SIGNATURE: Final[str] = "serviceFeeExemptions(address)"
TOTAL_SUPPLY_SIGNATURE: Final[str] = "totalSupply()"
OWNER_OF_SIGNATURE: Final[str] = "ownerOf(uint256)"

TRANSFER_EVENT_SIGNATURE: Final[str] = "Transfer(address,address,uint256)"
TRANSFER_EVENT_NAME: Final[str] = "Transfer"
ZERO_ADDRESS_HEX: Final[str] = "0" * 40

# ---------------------------------------------------------------------------
# Token pairing on v5: Alert tokens take odd ids and the paired Document token
# is minted right after it (alert_id + 1). Only reconciliation relies on this
# rule; issuance reads minted ids from the receipt logs.
# ---------------------------------------------------------------------------
ALERT_TOKEN_PARITY: Final[int] = 1
DOCUMENT_TOKEN_OFFSET: Final[int] = 1

# ---------------------------------------------------------------------------
# Fees. Defaults only apply when every on-chain read attempt failed.
# ---------------------------------------------------------------------------
DEFAULT_SERVICE_FEE_SUN: Final[int] = 10 * SUN_PER_TRX
DEFAULT_CREATION_FEE_SUN: Final[int] = 25 * SUN_PER_TRX
DEFAULT_SPONSORSHIP_FEE_SUN: Final[int] = 10 * SUN_PER_TRX
FEE_READ_ATTEMPTS: Final[int] = 3

# Fee ceilings attached to contract calls (energy burn cap).
SINGLE_NOTICE_FEE_LIMIT_SUN: Final[int] = 150 * SUN_PER_TRX
BATCH_NOTICE_FEE_LIMIT_SUN: Final[int] = 2_000 * SUN_PER_TRX

# ---------------------------------------------------------------------------
# Energy estimation for a serve call (base + per recipient + payload bytes),
# padded by 10%. SUN_PER_ENERGY is the burn price when no energy is staked.
# ---------------------------------------------------------------------------
BASE_ENERGY: Final[int] = 400_000
ENERGY_PER_RECIPIENT: Final[int] = 50_000
ENERGY_PER_DOCUMENT_BYTE: Final[float] = 2.5
ENERGY_BUFFER: Final[float] = 1.1
SUN_PER_ENERGY: Final[int] = 420
ENERGY_RENTAL_DURATION_SECONDS: Final[int] = 3600

# ---------------------------------------------------------------------------
# Case numbering for rows recovered from chain state without an authoritative
# case number.
# ---------------------------------------------------------------------------
RECOVERED_CASE_PREFIX: Final[str] = "RECOVERED-"
