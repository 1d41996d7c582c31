from __future__ import annotations

import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass

import requests

from blockserved.core.retry import with_retries

logger = logging.getLogger(__name__)

PINATA_API_URL = "https://api.pinata.cloud"
DEFAULT_GATEWAY_URL = "https://gateway.pinata.cloud/ipfs"


class StorageError(RuntimeError):
    pass


@dataclass
class StorageService:
    """Pins encrypted payloads on IPFS through the Pinata pinning API."""

    api_url: str = PINATA_API_URL
    gateway_url: str = DEFAULT_GATEWAY_URL
    jwt: str | None = None
    api_key: str | None = None
    secret_key: str | None = None
    production: bool = False
    timeout: float = 30.0
    attempts: int = 3
    retry_delay: float = 1.5
    session: requests.Session | None = None

    @classmethod
    def from_env(cls) -> "StorageService":
        return cls(
            api_url=os.getenv("PINATA_API_URL", PINATA_API_URL),
            gateway_url=os.getenv("IPFS_GATEWAY_URL", DEFAULT_GATEWAY_URL),
            jwt=os.getenv("PINATA_JWT") or None,
            api_key=os.getenv("PINATA_API_KEY") or None,
            secret_key=os.getenv("PINATA_SECRET_API_KEY") or None,
            production=os.getenv("APP_ENV", "development").lower() == "production",
            timeout=float(os.getenv("IPFS_TIMEOUT_SECONDS", "30")),
        )

    def _http(self) -> requests.Session:
        if self.session is None:
            self.session = requests.Session()
        return self.session

    def _auth_headers(self) -> dict[str, str]:
        if self.jwt:
            return {"Authorization": f"Bearer {self.jwt}"}
        if self.api_key and self.secret_key:
            return {"pinata_api_key": self.api_key, "pinata_secret_api_key": self.secret_key}
        raise StorageError("Pinning service credentials missing (PINATA_JWT or PINATA_API_KEY/PINATA_SECRET_API_KEY)")

    @staticmethod
    def placeholder_cid(data: bytes) -> str:
        return "QmDev" + hashlib.sha256(data).hexdigest()[:41]

    def upload_bytes(
        self,
        filename: str,
        data: bytes,
        *,
        content_type: str = "application/octet-stream",
        tags: dict[str, str] | None = None,
    ) -> str:
        """Pin ``data`` and return its CID.

        Outside production any failure degrades to a deterministic placeholder
        CID so the rest of the workflow can still run end to end.
        """
        try:
            return self._pin(filename, data, content_type, tags or {})
        except StorageError as exc:
            if self.production:
                raise
            cid = self.placeholder_cid(data)
            logger.warning("ipfs_upload_degraded filename=%s placeholder=%s reason=%s", filename, cid, exc)
            return cid

    def _pin(self, filename: str, data: bytes, content_type: str, tags: dict[str, str]) -> str:
        headers = self._auth_headers()
        metadata = {
            "name": filename,
            "keyvalues": {k: str(v) for k, v in tags.items() if v is not None},
        }
        url = f"{self.api_url.rstrip('/')}/pinning/pinFileToIPFS"

        def _send() -> str:
            started = time.perf_counter()
            res = self._http().post(
                url,
                headers=headers,
                files={"file": (filename, data, content_type)},
                data={"pinataMetadata": json.dumps(metadata)},
                timeout=self.timeout,
            )
            res.raise_for_status()
            cid = res.json().get("IpfsHash")
            if not cid:
                raise ValueError("Pinning response without IpfsHash")
            elapsed_ms = int((time.perf_counter() - started) * 1000)
            logger.info("ipfs_upload filename=%s bytes=%s cid=%s latency_ms=%s", filename, len(data), cid, elapsed_ms)
            return cid

        try:
            return with_retries(
                _send,
                attempts=self.attempts,
                delay=self.retry_delay,
                retry_on=(requests.RequestException, ValueError),
                label="ipfs upload",
            )
        except requests.HTTPError as exc:
            body = exc.response.text[:300] if exc.response is not None else ""
            raise StorageError(f"Pinning service error: {exc} {body}".strip()) from exc
        except (requests.RequestException, ValueError) as exc:
            raise StorageError(f"Pinning service unreachable: {exc}") from exc

    def upload_json(self, filename: str, payload: dict, *, tags: dict[str, str] | None = None) -> str:
        body = json.dumps(payload, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        return self.upload_bytes(filename, body, content_type="application/json", tags=tags)

    def fetch(self, cid: str, *, timeout: float = 10.0) -> bytes:
        cid = cid[len("ipfs://") :] if cid.startswith("ipfs://") else cid
        res = self._http().get(f"{self.gateway_url.rstrip('/')}/{cid}", timeout=timeout)
        try:
            res.raise_for_status()
        except requests.HTTPError as exc:
            raise StorageError(f"Gateway fetch failed for {cid}: {exc}") from exc
        return res.content
