"""
API Key Encryption
AES-256-GCM encryption for provider API keys stored in the database.

Stored format (base64): iv(16) + salt(64) + tag(16) + ciphertext.
A fresh IV and salt are drawn per call and the cipher key is derived from
the master key with PBKDF2-HMAC-SHA256.
"""

import base64
import functools
import logging
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from hiro.config import ENCRYPTION_KEY, APP_ENV

logger = logging.getLogger("hiro.crypto")

IV_LENGTH = 16
SALT_LENGTH = 64
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100000


class EncryptionError(Exception):
    """Raised when a key cannot be encrypted or decrypted."""


def _pbkdf2(secret: bytes, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LENGTH, salt=salt,
                     iterations=ITERATIONS)
    return kdf.derive(secret)


@functools.lru_cache(maxsize=1)
def _dev_key() -> bytes:
    logger.warning("ENCRYPTION_KEY not set, using temporary development key. "
                   "Set ENCRYPTION_KEY in production!")
    return _pbkdf2(b"temporary-dev-key", b"salt")


def get_master_key() -> bytes:
    """Master key from ENCRYPTION_KEY (64 hex chars); dev key only when APP_ENV=development."""
    if not ENCRYPTION_KEY:
        if APP_ENV == "development":
            return _dev_key()
        raise EncryptionError("ENCRYPTION_KEY environment variable is required")

    if len(ENCRYPTION_KEY) != 64:
        raise EncryptionError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(ENCRYPTION_KEY)
    except ValueError:
        raise EncryptionError("ENCRYPTION_KEY must be a valid hex string")


def encrypt_key(plaintext: str) -> str:
    """Encrypt an API key. Returns the base64 envelope."""
    if not plaintext:
        raise EncryptionError("Cannot encrypt empty string")

    master = get_master_key()
    iv = secrets.token_bytes(IV_LENGTH)
    salt = secrets.token_bytes(SALT_LENGTH)
    derived = _pbkdf2(master, salt)

    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(derived).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return base64.b64encode(iv + salt + tag + ciphertext).decode("ascii")


def decrypt_key(encrypted_data: str) -> str:
    """Decrypt a base64 envelope produced by encrypt_key()."""
    if not encrypted_data:
        raise EncryptionError("Cannot decrypt empty string")

    try:
        master = get_master_key()
        combined = base64.b64decode(encrypted_data, validate=True)
        header = IV_LENGTH + SALT_LENGTH + TAG_LENGTH
        if len(combined) < header:
            raise ValueError("payload too short")

        iv = combined[:IV_LENGTH]
        salt = combined[IV_LENGTH:IV_LENGTH + SALT_LENGTH]
        tag = combined[IV_LENGTH + SALT_LENGTH:header]
        ciphertext = combined[header:]

        derived = _pbkdf2(master, salt)
        plaintext = AESGCM(derived).decrypt(iv, ciphertext + tag, None)
        return plaintext.decode("utf-8")
    except InvalidTag:
        raise EncryptionError("Decryption failed: authentication tag mismatch")
    except (ValueError, EncryptionError) as e:
        raise EncryptionError(f"Decryption failed: {e}")


def generate_encryption_key() -> str:
    """Generate a value suitable for ENCRYPTION_KEY (64 hex chars)."""
    return secrets.token_hex(KEY_LENGTH)


def mask_key(plaintext: str) -> str:
    """Short form for listings: first 8 chars + ... + last 4."""
    if not plaintext or len(plaintext) <= 12:
        return "***"
    return f"{plaintext[:8]}...{plaintext[-4:]}"
