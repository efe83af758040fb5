# app/x402/crypto.py
"""
Symmetric encryption for gated content.

Payloads (usually content pointers such as IPFS CIDs) are encrypted with
AES-256-GCM. Every encryption uses a fresh 12-byte nonce; the 16-byte
authentication tag is kept separately so records stay readable.

Decryption fails closed: any tag mismatch, truncated ciphertext or wrong
key raises DecryptionError and no plaintext is returned.
"""
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings
from app.core.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
PREVIEW_LENGTH = 500


@dataclass(frozen=True)
class EncryptedPayload:
    """Nonce, ciphertext and authentication tag of one encryption."""
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "nonce": self.nonce.hex(),
            "ciphertext": self.ciphertext.hex(),
            "tag": self.tag.hex(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedPayload":
        try:
            return cls(
                nonce=bytes.fromhex(data["nonce"]),
                ciphertext=bytes.fromhex(data["ciphertext"]),
                tag=bytes.fromhex(data["tag"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecryptionError(f"Malformed encrypted payload: {e}") from e


def load_encryption_key(key_hex: Optional[str] = None) -> bytes:
    """
    Decode the AES-256 key.

    Args:
        key_hex: Hex encoded key. Uses ENCRYPTION_SECRET_KEY if not provided.

    Raises:
        ConfigurationError: If the key is missing or not 32 bytes
    """
    value = key_hex if key_hex is not None else settings.ENCRYPTION_SECRET_KEY
    if not value:
        raise ConfigurationError("ENCRYPTION_SECRET_KEY is not configured")
    try:
        key = bytes.fromhex(value)
    except ValueError as e:
        raise ConfigurationError("ENCRYPTION_SECRET_KEY must be hex encoded") from e
    if len(key) != KEY_SIZE:
        raise ConfigurationError(f"ENCRYPTION_SECRET_KEY must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def encrypt_buffer(data: bytes, key: Optional[bytes] = None) -> EncryptedPayload:
    """
    Encrypt a buffer with AES-256-GCM.

    Args:
        data: Plaintext bytes (may be empty)
        key: 32-byte key. Uses the configured key if not provided.

    Returns:
        EncryptedPayload with a fresh nonce
    """
    aes_key = key if key is not None else load_encryption_key()
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(aes_key).encrypt(nonce, bytes(data), None)
    return EncryptedPayload(
        nonce=nonce,
        ciphertext=sealed[:-TAG_SIZE],
        tag=sealed[-TAG_SIZE:],
    )


def decrypt_buffer(payload: EncryptedPayload, key: Optional[bytes] = None) -> bytes:
    """
    Decrypt and authenticate a payload produced by encrypt_buffer.

    Raises:
        DecryptionError: On tag mismatch, wrong key or malformed input
    """
    aes_key = key if key is not None else load_encryption_key()

    if len(payload.nonce) != NONCE_SIZE or len(payload.tag) != TAG_SIZE:
        logger.warning("Rejected encrypted payload with invalid nonce/tag length")
        raise DecryptionError("Invalid nonce or tag length")

    try:
        return AESGCM(aes_key).decrypt(payload.nonce, payload.ciphertext + payload.tag, None)
    except InvalidTag as e:
        logger.warning("Decryption failed: authentication tag mismatch")
        raise DecryptionError("Authentication failed") from e


def encrypt_text(text: str, key: Optional[bytes] = None) -> Dict[str, str]:
    """Encrypt a UTF-8 string and return the storable (hex) form."""
    return encrypt_buffer(text.encode("utf-8"), key).to_dict()


def decrypt_text(data: Dict[str, str], key: Optional[bytes] = None) -> str:
    """Decrypt the storable form produced by encrypt_text."""
    plaintext = decrypt_buffer(EncryptedPayload.from_dict(data), key)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("Decrypted payload is not valid UTF-8") from e


def build_text_preview(data: bytes, length: int = PREVIEW_LENGTH) -> Optional[str]:
    """
    Build a public teaser from the first characters of text content.

    Returns None (not an error) when the buffer is not UTF-8 text.
    """
    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError:
        return None
    return text[:length]
