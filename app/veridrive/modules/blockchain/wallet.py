"""
Custodial Solana wallets. Secret keys are sealed with AES-GCM under a key derived
(scrypt) from WALLET_ENCRYPTION_KEY; the per-wallet salt and nonce travel with the ciphertext.
"""
from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from solders.keypair import Keypair

_SALT_LEN = 16
_NONCE_LEN = 12
_AAD = b"veridrive-wallet"


class WalletError(RuntimeError):
    pass


def _derive_key(secret: str, salt: bytes) -> bytes:
    if not secret:
        raise WalletError("WALLET_ENCRYPTION_KEY is not configured.")
    kdf = Scrypt(salt=salt, length=32, n=2**14, r=8, p=1)
    return kdf.derive(secret.encode("utf-8"))


def seal_secret_key(keypair: Keypair, secret: str) -> str:
    salt = os.urandom(_SALT_LEN)
    nonce = os.urandom(_NONCE_LEN)
    ct = AESGCM(_derive_key(secret, salt)).encrypt(nonce, bytes(keypair), _AAD)
    return base64.b64encode(salt + nonce + ct).decode("ascii")


def open_secret_key(sealed: str, secret: str) -> Keypair:
    try:
        raw = base64.b64decode(sealed.encode("ascii"))
    except ValueError as e:
        raise WalletError("Stored wallet secret is corrupt.") from e
    salt, nonce, ct = raw[:_SALT_LEN], raw[_SALT_LEN:_SALT_LEN + _NONCE_LEN], raw[_SALT_LEN + _NONCE_LEN:]
    try:
        pt = AESGCM(_derive_key(secret, salt)).decrypt(nonce, ct, _AAD)
    except InvalidTag as e:
        raise WalletError("Wallet secret cannot be decrypted with the configured key. Reset the wallet.") from e
    return Keypair.from_bytes(pt)


def new_keypair() -> Keypair:
    return Keypair()
