import os
import logging
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from parking_sync.config import settings

logger = logging.getLogger("parking_sync.security.crypto")

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32

_DEV_PASSPHRASE = b"default-key-change-in-production"
_DEV_SALT = b"salt"

class DecryptionError(Exception):
    """Raised when a stored secret cannot be decrypted."""
    pass

@lru_cache(maxsize=4)
def _key_for(hex_key: Optional[str]) -> bytes:
    if hex_key:
        key = bytes.fromhex(hex_key)
        if len(key) != KEY_LENGTH:
            raise ValueError(f"ENCRYPTION_KEY must be {KEY_LENGTH} bytes (hex encoded), got {len(key)}")
        return key

    logger.warning("ENCRYPTION_KEY is not set; deriving the development key. Set it in production!")
    kdf = Scrypt(salt=_DEV_SALT, length=KEY_LENGTH, n=2**14, r=8, p=1)
    return kdf.derive(_DEV_PASSPHRASE)

def get_key(hex_key: Optional[str] = None) -> bytes:
    return _key_for(hex_key if hex_key is not None else settings.ENCRYPTION_KEY)

def encrypt_secret(plaintext: str, hex_key: Optional[str] = None) -> str:
    """AES-256-GCM, serialized as ivhex:taghex:cipherhex."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(get_key(hex_key)).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

def decrypt_secret(token: str, hex_key: Optional[str] = None) -> str:
    parts = (token or "").split(":")
    if len(parts) != 3:
        raise DecryptionError("Invalid encrypted text format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
    except ValueError as e:
        raise DecryptionError(f"Invalid hex in encrypted text: {e}") from e

    try:
        key = get_key(hex_key)
    except ValueError as e:
        raise DecryptionError(f"Invalid encryption key: {e}") from e

    try:
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e
    return plain.decode("utf-8")
