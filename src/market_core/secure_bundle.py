"""
Secure payload escrow: seal a voucher so only the holder of both ids can read it.

The passphrase is "{public_id}-{private_id}" (two fresh UUID4s). A Fernet
key is derived from it with PBKDF2-HMAC-SHA256 and a random salt; the blob
"<salt b64>:<fernet token>" is stored as even-length hex of its UTF-8 bytes.
That hex is also what gets anchored on the ledger as transaction input.

Every decryption failure (bad hex, wrong id, tampered token, empty output)
returns the same DECRYPTION error so callers cannot tell the causes apart.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
import uuid
from typing import TYPE_CHECKING

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from market_core.contracts import SecureBundle
from market_core.outcome import ErrorKind, Outcome

if TYPE_CHECKING:
    from ledger.client import LedgerClient

logger = logging.getLogger("escrow.secure_bundle")

KDF_ITERATIONS = 100_000
SALT_BYTES = 16
DECRYPTION_MESSAGE = "Unable to decrypt voucher payload"

_TX_HASH_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")


def _derive_key(public_id: str, private_id: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=32, salt=salt, iterations=iterations)
    passphrase = f"{public_id}-{private_id}".encode("utf-8")
    return base64.urlsafe_b64encode(kdf.derive(passphrase))


def _decryption_failure() -> Outcome[str]:
    return Outcome.failure(ErrorKind.DECRYPTION, DECRYPTION_MESSAGE)


def seal(plaintext: str, *, iterations: int = KDF_ITERATIONS) -> SecureBundle:
    """Encrypt *plaintext* under two freshly generated ids."""
    public_id = str(uuid.uuid4())
    private_id = str(uuid.uuid4())
    salt = os.urandom(SALT_BYTES)
    token = Fernet(_derive_key(public_id, private_id, salt, iterations)).encrypt(plaintext.encode("utf-8"))
    blob = base64.b64encode(salt).decode("ascii") + ":" + token.decode("ascii")
    return SecureBundle(public_id=public_id, private_id=private_id, ciphertext=blob.encode("utf-8").hex())


def unseal(
    ciphertext: str,
    public_id: str,
    private_id: str,
    *,
    iterations: int = KDF_ITERATIONS,
) -> Outcome[str]:
    """Decrypt a sealed payload. An optional 0x prefix on *ciphertext* is ignored."""
    text = (ciphertext or "").strip()
    if text[:2].lower() == "0x":
        text = text[2:]
    try:
        blob = bytes.fromhex(text).decode("utf-8")
        salt_b64, token = blob.split(":", 1)
        salt = base64.b64decode(salt_b64, validate=True)
        key = _derive_key(public_id, private_id, salt, iterations)
        plaintext = Fernet(key).decrypt(token.encode("ascii")).decode("utf-8")
    except (ValueError, binascii.Error, InvalidToken, UnicodeError):
        return _decryption_failure()
    if not plaintext:
        return _decryption_failure()
    return Outcome.success(plaintext)


def _fetch_ledger_payload(client: LedgerClient, tx_hash: str) -> str | None:
    try:
        tx = client.get_transaction_by_hash(tx_hash)
    except Exception as exc:
        logger.warning("Transaction lookup failed for %s: %s", tx_hash, exc)
        tx = None
    if tx is not None and tx.payload and tx.payload.lower() != "0x":
        return tx.payload

    try:
        receipt = client.get_receipt_by_hash(tx_hash)
    except Exception as exc:
        logger.warning("Receipt lookup failed for %s: %s", tx_hash, exc)
        return None
    if receipt is None or not receipt.logs:
        return None
    data = receipt.logs[0].data
    return data if data and data.lower() != "0x" else None


def unseal_from_ledger(
    client: LedgerClient,
    tx_hash: str,
    public_id: str,
    private_id: str,
    *,
    iterations: int = KDF_ITERATIONS,
) -> Outcome[str]:
    """Read the sealed payload back from the ledger and decrypt it.

    The transaction input is tried first; if the ledger does not return it,
    the first receipt log's data is used instead.
    """
    if not _TX_HASH_RE.match(tx_hash or ""):
        return Outcome.failure(ErrorKind.VALIDATION, "Invalid transaction hash format")
    normalized = tx_hash if tx_hash.lower().startswith("0x") else "0x" + tx_hash
    payload = _fetch_ledger_payload(client, normalized)
    if payload is None:
        return Outcome.failure(
            ErrorKind.LEDGER,
            "Transaction payload is not available on the ledger",
            tx_hash=normalized,
        )
    return unseal(payload, public_id, private_id, iterations=iterations)
