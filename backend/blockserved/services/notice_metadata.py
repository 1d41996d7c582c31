from __future__ import annotations

import base64
import json
from typing import Any

from blockserved.services.storage import StorageService

EXTERNAL_URL = "https://www.blockserved.com"
ALERT_DESCRIPTION = (
    "You have received this token as notice of a pending legal matter. "
    "The full document is encrypted and stored on IPFS."
)
METADATA_MODES = ("inline", "ipfs")


def build_alert_metadata(
    case_number: str,
    recipient: str,
    ipfs_hash: str,
    *,
    notice_type: str,
    issuing_agency: str,
    image: str | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": f"Legal Alert - Case {case_number}",
        "description": ALERT_DESCRIPTION,
        "external_url": EXTERNAL_URL,
        "attributes": [
            {"trait_type": "Type", "value": "Legal Alert"},
            {"trait_type": "Notice Type", "value": notice_type},
            {"trait_type": "Issuing Agency", "value": issuing_agency},
            {"trait_type": "Case Number", "value": case_number},
            {"trait_type": "Document IPFS", "value": ipfs_hash},
            {"trait_type": "Status", "value": "Sealed"},
            {"trait_type": "Recipient", "value": recipient},
        ],
    }
    if image:
        metadata["image"] = image
    return metadata


def inline_uri(metadata: dict[str, Any]) -> str:
    body = json.dumps(metadata, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return "data:application/json;base64," + base64.b64encode(body).decode("ascii")


def parse_inline_uri(uri: str) -> dict[str, Any]:
    prefix = "data:application/json;base64,"
    if not uri.startswith(prefix):
        raise ValueError("Not an inline JSON metadata URI")
    return json.loads(base64.b64decode(uri[len(prefix) :]))


def metadata_uri(
    metadata: dict[str, Any],
    *,
    mode: str = "inline",
    storage: StorageService | None = None,
    tags: dict[str, str] | None = None,
) -> str:
    """Return the token URI: a data URI, or ``ipfs://CID`` when pinned."""
    if mode not in METADATA_MODES:
        raise ValueError(f"Unknown metadata mode: {mode}")
    if mode == "inline":
        return inline_uri(metadata)
    if storage is None:
        raise ValueError("ipfs metadata mode needs a storage client")
    cid = storage.upload_json("metadata.json", metadata, tags=tags)
    return f"ipfs://{cid}"
