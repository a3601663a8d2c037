"""Client-side key derivation and payload encryption.

The board id and the encryption key both come from the same passphrase but on
different PBKDF2 salts, so the id the server stores gives it nothing toward
the key. Salts and iteration count match the browser client byte for byte so
both clients open the same boards.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import CryptoFailure

# ---------- Key derivation ----------
_BOARD_ID_SALT = b"mynotes-board-id-salt-v1"
_ENCRYPTION_KEY_SALT = b"mynotes-encryption-key-salt-v1"
ITERATIONS = 150_000
KEY_BYTES = 32
NONCE_BYTES = 12


@dataclass(frozen=True)
class EncryptionKey:
    raw: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if len(self.raw) != KEY_BYTES:
            raise ValueError("Encryption key must be 32 bytes")

    @property
    def aead(self) -> AESGCM:
        return AESGCM(self.raw)

    def __repr__(self) -> str:
        return "EncryptionKey(<redacted>)"


def _stretch(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def derive_board_id(passphrase: str) -> str:
    derived = _stretch(passphrase, _BOARD_ID_SALT)
    return hashlib.sha256(derived).hexdigest()


def derive_encryption_key(passphrase: str) -> EncryptionKey:
    return EncryptionKey(_stretch(passphrase, _ENCRYPTION_KEY_SALT))


async def derive_board_keys(passphrase: str) -> Tuple[str, EncryptionKey]:
    """Derive ``(board_id, key)`` off the event loop; each PBKDF2 pass is slow."""
    board_id, key = await asyncio.gather(
        asyncio.to_thread(derive_board_id, passphrase),
        asyncio.to_thread(derive_encryption_key, passphrase),
    )
    return board_id, key


# ---------- AEAD ----------
def encrypt(key: EncryptionKey, plaintext: str) -> Dict[str, str]:
    iv = os.urandom(NONCE_BYTES)
    ct = key.aead.encrypt(iv, plaintext.encode("utf-8"), None)
    return {
        "iv": base64.b64encode(iv).decode("ascii"),
        "ct": base64.b64encode(ct).decode("ascii"),
    }


def decrypt(key: EncryptionKey, iv_b64: str, ct_b64: str) -> str:
    try:
        iv = base64.b64decode(iv_b64, validate=True)
        ct = base64.b64decode(ct_b64, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise CryptoFailure("Malformed envelope encoding") from e
    if len(iv) != NONCE_BYTES:
        raise CryptoFailure("Invalid nonce length")
    try:
        plaintext = key.aead.decrypt(iv, ct, None)
    except InvalidTag as e:
        raise CryptoFailure("Authentication failed (wrong key or tampered data)") from e
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoFailure("Decrypted payload is not UTF-8") from e


def encrypt_payload(key: EncryptionKey, payload: Any) -> str:
    plaintext = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(encrypt(key, plaintext))


def decrypt_payload(key: EncryptionKey, envelope: str) -> Any:
    try:
        parsed = json.loads(envelope)
        iv, ct = parsed["iv"], parsed["ct"]
    except (TypeError, ValueError, KeyError) as e:
        raise CryptoFailure("Malformed envelope") from e
    if not isinstance(iv, str) or not isinstance(ct, str):
        raise CryptoFailure("Malformed envelope")
    plaintext = decrypt(key, iv, ct)
    try:
        return json.loads(plaintext)
    except ValueError as e:
        raise CryptoFailure("Decrypted payload is not JSON") from e
