"""
Protection of original values held by the correspondence store.

Reversible entries are encrypted with AES-256-GCM (nonce prepended to the
ciphertext). Lookups use an HMAC-SHA256 digest under a separate index key,
so the encryption key can be rotated without re-indexing.
"""

import hashlib
import hmac
import json
import logging
import os
from base64 import b64decode, b64encode
from datetime import date, datetime
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

# Encryption method identifier
ENCRYPTION_METHOD = "aes-256-gcm"

NONCE_SIZE = 12
KEY_SIZE = 32


def canonical_value(value: Any) -> str:
    """
    Serialize a field value with its type so it can be digested and restored.

    ``1`` and ``"1"`` map to different canonical forms.
    """
    if isinstance(value, bool):
        tagged = ["bool", value]
    elif isinstance(value, int):
        tagged = ["int", value]
    elif isinstance(value, float):
        tagged = ["float", repr(value)]
    elif isinstance(value, datetime):
        tagged = ["datetime", value.isoformat()]
    elif isinstance(value, date):
        tagged = ["date", value.isoformat()]
    else:
        tagged = ["str", str(value)]
    return json.dumps(tagged, ensure_ascii=False, separators=(",", ":"))


def restore_value(canonical: str) -> Any:
    """Inverse of :func:`canonical_value`."""
    type_tag, raw = json.loads(canonical)
    if type_tag == "float":
        return float(raw)
    if type_tag == "datetime":
        return datetime.fromisoformat(raw)
    if type_tag == "date":
        return date.fromisoformat(raw)
    return raw


def _decode_key(key_b64: str, name: str) -> bytes:
    try:
        key = b64decode(key_b64)
    except Exception as e:
        raise ValueError(f"Invalid {name} format: {e}")
    if len(key) != KEY_SIZE:
        raise ValueError(f"{name} must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def generate_key() -> str:
    """Generate a new random base64-encoded 32-byte key."""
    return b64encode(os.urandom(KEY_SIZE)).decode('ascii')


class ValueProtector:
    """Encrypts, decrypts and digests original values."""

    def __init__(self, encryption_key: bytes, index_key: Optional[bytes] = None):
        if len(encryption_key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes, got {len(encryption_key)}")
        self._aesgcm = AESGCM(encryption_key)
        # Index key defaults to one derived from the encryption key
        self._index_key = index_key or hmac.new(
            encryption_key, b"correspondence-index", hashlib.sha256
        ).digest()

    @classmethod
    def generate(cls) -> "ValueProtector":
        """Create a protector with fresh random keys."""
        return cls(os.urandom(KEY_SIZE), os.urandom(KEY_SIZE))

    @classmethod
    def from_env(cls, key_env: str) -> "ValueProtector":
        """
        Build a protector from base64 keys held in environment variables.

        ``<key_env>`` holds the encryption key; ``<key_env>_INDEX`` may hold a
        separate index key.

        Raises:
            ValueError: If the key is missing or malformed
        """
        key_b64 = os.getenv(key_env)
        if not key_b64:
            raise ValueError(
                f"{key_env} not found in environment. "
                "Generate one with: deid-engine generate-key"
            )
        encryption_key = _decode_key(key_b64, key_env)

        index_b64 = os.getenv(f"{key_env}_INDEX")
        index_key = _decode_key(index_b64, f"{key_env}_INDEX") if index_b64 else None

        return cls(encryption_key, index_key)

    def with_encryption_key(self, encryption_key: bytes) -> "ValueProtector":
        """Return a protector using a new encryption key and the same index key."""
        return ValueProtector(encryption_key, self._index_key)

    def digest(self, technique_id: str, value: Any) -> str:
        """Keyed one-way digest used to look entries up."""
        message = f"{technique_id}\x1f{canonical_value(value)}".encode('utf-8')
        return hmac.new(self._index_key, message, hashlib.sha256).hexdigest()

    def derive_pseudonym(self, technique_id: str, value: Any, length: int) -> str:
        """Deterministic one-way pseudonym for non-reversible entries."""
        message = f"pseudonym\x1f{technique_id}\x1f{canonical_value(value)}".encode('utf-8')
        return hmac.new(self._index_key, message, hashlib.sha256).hexdigest()[:length]

    def encrypt(self, technique_id: str, value: Any) -> bytes:
        """Encrypt a value; the technique id is bound as associated data."""
        plaintext = canonical_value(value).encode('utf-8')
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, technique_id.encode('utf-8'))

    def decrypt(self, technique_id: str, encrypted_data: bytes) -> Any:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises:
            ValueError: If the data is truncated or fails authentication
        """
        if len(encrypted_data) < NONCE_SIZE:
            raise ValueError("Encrypted data too short (missing nonce)")

        nonce = encrypted_data[:NONCE_SIZE]
        ciphertext = encrypted_data[NONCE_SIZE:]

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, technique_id.encode('utf-8'))
        except InvalidTag:
            logger.error("Correspondence decryption failed: authentication tag verification failed")
            raise ValueError("Decryption failed: data integrity check failed")

        return restore_value(plaintext.decode('utf-8'))
