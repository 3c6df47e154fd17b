from __future__ import annotations

import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger(__name__)

WINSTON_PER_AR = 10**12


class ArweaveError(RuntimeError):
    pass


class ArweaveRateLimited(ArweaveError):
    pass


def simulated_transaction_id(data: bytes, tags: list[dict[str, str]]) -> str:
    """43-char base64url id, the same shape as a real Arweave transaction id."""
    h = hashlib.sha256()
    h.update(data)
    for t in tags:
        h.update(f"{t['name']}={t['value']}".encode("utf-8"))
    h.update(str(time.time_ns()).encode("ascii"))
    return base64.urlsafe_b64encode(h.digest()).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class ArweaveClient:
    """
    Thin HTTP client for an Arweave gateway (reads, pricing, status) plus an upload relay
    (bundler) for writes. With no upload_url configured, uploads are simulated by the caller.
    """

    host: str = "arweave.net"
    protocol: str = "https"
    upload_url: str = ""
    timeout_seconds: int = 30

    @property
    def gateway_url(self) -> str:
        return f"{self.protocol}://{self.host}".rstrip("/")

    @property
    def can_upload(self) -> bool:
        return bool(self.upload_url)

    def _request(self, method: str, url: str, *, retries: int = 3, **kwargs: Any) -> requests.Response:
        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                resp = requests.request(method, url, timeout=self.timeout_seconds, **kwargs)
            except requests.RequestException as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
            if resp.status_code == 429:
                time.sleep(min(2 * (attempt + 1), 10))
                last_err = ArweaveRateLimited("Rate limited (429)")
                continue
            return resp
        raise ArweaveError(f"Arweave request failed after retries: {last_err}")

    def estimate_cost_ar(self, size_bytes: int) -> float:
        resp = self._request("GET", f"{self.gateway_url}/price/{int(size_bytes)}")
        if resp.status_code != 200:
            raise ArweaveError(f"HTTP {resp.status_code} from Arweave price endpoint")
        try:
            winston = int(resp.text.strip())
        except ValueError as e:
            raise ArweaveError("Invalid price response from Arweave") from e
        return winston / WINSTON_PER_AR

    def transaction_status(self, tx_id: str) -> dict[str, Any]:
        resp = self._request("GET", f"{self.gateway_url}/tx/{tx_id}/status")
        if resp.status_code == 404:
            return {"status": "not_found", "confirmed": False}
        if resp.status_code == 202:
            return {"status": "pending", "confirmed": False}
        if resp.status_code != 200:
            raise ArweaveError(f"HTTP {resp.status_code} from Arweave status endpoint")
        try:
            body = resp.json()
        except ValueError:
            body = {}
        return {
            "status": "confirmed",
            "confirmed": True,
            "blockHeight": body.get("block_height"),
            "confirmations": body.get("number_of_confirmations"),
        }

    def fetch(self, tx_id: str) -> tuple[bytes, str]:
        resp = self._request("GET", f"{self.gateway_url}/{tx_id}")
        if resp.status_code == 404:
            raise ArweaveError(f"Arweave transaction not found: {tx_id}")
        if resp.status_code != 200:
            raise ArweaveError(f"HTTP {resp.status_code} fetching {tx_id}")
        return resp.content, resp.headers.get("Content-Type", "application/octet-stream")

    def upload(self, data: bytes, tags: list[dict[str, str]]) -> str:
        if not self.upload_url:
            raise ArweaveError("ARWEAVE_UPLOAD_URL is not configured.")
        body = {"data": base64.b64encode(data).decode("ascii"), "tags": tags}
        resp = self._request("POST", self.upload_url, json=body, retries=1)
        if resp.status_code not in (200, 201):
            raise ArweaveError(f"HTTP {resp.status_code} from upload relay: {resp.text[:300]}")
        try:
            tx_id = resp.json().get("id")
        except ValueError as e:
            raise ArweaveError("Invalid JSON from upload relay") from e
        if not tx_id:
            raise ArweaveError("Upload relay response has no transaction id")
        logger.info("Arweave upload accepted (tx=%s bytes=%s)", tx_id, len(data))
        return tx_id
