from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.core import RPCException
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

logger = logging.getLogger(__name__)

MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")
MAX_MEMO_BYTES = 1200
LAMPORTS_PER_SOL = 1_000_000_000


class SolanaError(RuntimeError):
    pass


def _memo_bytes(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=False).encode("utf-8")


def fit_memo(verbose: dict[str, Any], compact: dict[str, Any]) -> dict[str, Any]:
    """Prefer the verbose payload; fall back to the compact form when it would not fit in a memo."""
    size = len(_memo_bytes(verbose))
    if size > MAX_MEMO_BYTES:
        logger.warning("Memo too large (%s bytes); falling back to compact payload", size)
        return compact
    return verbose


def mileage_memo(
    *,
    network: str,
    vehicle_id: str,
    vin: str,
    previous_mileage: int,
    new_mileage: int,
    source: str,
    recorded_by: str | None,
    timestamp: str,
) -> dict[str, Any]:
    passed = new_mileage >= previous_mileage
    verbose = {
        "type": "UPDATE_MILEAGE",
        "network": network,
        "vehicleId": vehicle_id[-12:],
        "vin": vin[-12:],
        "prevMileage": previous_mileage,
        "newMileage": new_mileage,
        "delta": max(0, new_mileage - previous_mileage),
        "source": (source or "?")[:1].upper(),
        "recordedBy": (recorded_by or "unknown")[:8],
        "timestamp": timestamp,
        "fraudCheck": "PASS" if passed else "FAIL",
    }
    compact = {
        "t": "UM",
        "n": "dev" if network == "devnet" else "main",
        "v": vehicle_id[-8:],
        "vin": vin[-8:],
        "pm": previous_mileage,
        "m": new_mileage,
        "d": max(0, new_mileage - previous_mileage),
        "s": (source or "?")[:1],
        "r": (recorded_by or "?")[:1],
        "ts": int(time.time()),
        "f": "P" if passed else "F",
    }
    return fit_memo(verbose, compact)


def registration_memo(*, network: str, vehicle_id: str, vin: str, vehicle_number: str | None, mileage: int, timestamp: str) -> dict[str, Any]:
    verbose = {
        "type": "REGISTER_VEHICLE",
        "network": network,
        "vehicleId": vehicle_id,
        "vin": vin,
        "vehicleNumber": vehicle_number or "",
        "mileage": mileage,
        "timestamp": timestamp,
    }
    compact = {"t": "RV", "v": vehicle_id[-8:], "vin": vin[-8:], "m": mileage, "ts": int(time.time())}
    return fit_memo(verbose, compact)


def transfer_memo(*, network: str, vehicle_id: str, vin: str, from_owner: str, to_owner: str, price: float, timestamp: str) -> dict[str, Any]:
    verbose = {
        "type": "TRANSFER_OWNERSHIP",
        "network": network,
        "vehicleId": vehicle_id,
        "vin": vin,
        "from": from_owner,
        "to": to_owner,
        "price": price,
        "timestamp": timestamp,
    }
    compact = {"t": "TO", "v": vehicle_id[-8:], "vin": vin[-8:], "f": from_owner[:8], "to": to_owner[:8], "ts": int(time.time())}
    return fit_memo(verbose, compact)


def telemetry_batch_memo(
    *, network: str, vehicle_id: str, vin: str, batch_date: str, merkle_root: str, segments: int, distance: int, timestamp: str
) -> dict[str, Any]:
    verbose = {
        "type": "TELEMETRY_BATCH",
        "network": network,
        "vehicleId": vehicle_id,
        "vin": vin,
        "date": batch_date,
        "merkleRoot": merkle_root,
        "segments": segments,
        "distance": distance,
        "timestamp": timestamp,
    }
    compact = {"t": "TB", "v": vehicle_id[-8:], "d": batch_date, "r": merkle_root, "ts": int(time.time())}
    return fit_memo(verbose, compact)


@dataclass(frozen=True)
class SolanaClient:
    rpc_url: str
    timeout_seconds: int = 30

    @property
    def network(self) -> str:
        url = self.rpc_url.lower()
        if "devnet" in url:
            return "devnet"
        if "testnet" in url:
            return "testnet"
        if "localhost" in url or "127.0.0.1" in url:
            return "localnet"
        return "mainnet-beta"

    def _client(self) -> Client:
        return Client(self.rpc_url, timeout=self.timeout_seconds)

    def send_memo(self, payer: Keypair, memo: dict[str, Any], *, retries: int = 2) -> str:
        """Submit a memo transaction signed by payer. Returns the base58 signature."""
        data = _memo_bytes(memo)
        if len(data) > MAX_MEMO_BYTES:
            raise SolanaError(f"Memo payload too large ({len(data)} bytes)")
        ix = Instruction(MEMO_PROGRAM_ID, data, [AccountMeta(payer.pubkey(), is_signer=True, is_writable=False)])

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                client = self._client()
                blockhash = client.get_latest_blockhash().value.blockhash
                msg = Message.new_with_blockhash([ix], payer.pubkey(), blockhash)
                tx = Transaction([payer], msg, blockhash)
                resp = client.send_transaction(tx)
                signature = str(resp.value)
                logger.info("Memo transaction submitted (type=%s signature=%s)", memo.get("type") or memo.get("t"), signature)
                return signature
            except (RPCException, SolanaRpcException) as e:
                last_err = e
                logger.warning("Solana send failed (attempt %s/%s): %s", attempt + 1, retries + 1, e)
                if attempt < retries:
                    time.sleep(min(1 * (attempt + 1), 5))
        raise SolanaError(f"Solana transaction failed after retries: {last_err}")

    def get_balance(self, public_key: str) -> float:
        try:
            lamports = self._client().get_balance(Pubkey.from_string(public_key)).value
        except (RPCException, SolanaRpcException) as e:
            raise SolanaError(f"Balance lookup failed: {e}") from e
        return lamports / LAMPORTS_PER_SOL

    def get_transaction(self, signature: str) -> dict[str, Any] | None:
        try:
            resp = self._client().get_transaction(Signature.from_string(signature), max_supported_transaction_version=0)
        except (RPCException, SolanaRpcException) as e:
            raise SolanaError(f"Transaction lookup failed: {e}") from e
        except ValueError as e:
            raise SolanaError(f"Invalid signature: {signature}") from e
        tx = resp.value
        if tx is None:
            return None
        return {
            "signature": signature,
            "slot": tx.slot,
            "blockTime": tx.block_time,
            "confirmed": True,
        }

    def recent_signatures(self, public_key: str, *, limit: int = 10) -> list[dict[str, Any]]:
        try:
            resp = self._client().get_signatures_for_address(Pubkey.from_string(public_key), limit=limit)
        except (RPCException, SolanaRpcException) as e:
            raise SolanaError(f"Signature listing failed: {e}") from e
        return [
            {
                "signature": str(info.signature),
                "slot": info.slot,
                "blockTime": info.block_time,
                "memo": info.memo,
                "error": str(info.err) if info.err else None,
            }
            for info in resp.value
        ]
