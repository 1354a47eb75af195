"""
Secure storage utilities

Encrypts per-profile configuration values at rest with AES-256-GCM. The key is
a random 32-byte file under the data directory, readable only by its owner.
"""
import base64
import binascii
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "encv1:"
KEY_BYTES = 32
IV_BYTES = 12


def load_or_create_key(key_path: Path) -> bytes:
    """
    Read the key file, creating it with mode 0600 on first use.

    Raises:
        OSError: If the key file cannot be read or created
    """
    try:
        key = key_path.read_bytes()
        if len(key) == KEY_BYTES:
            return key
        logger.error("Secret key %s has unexpected length %s; regenerating", key_path, len(key))
    except FileNotFoundError:
        logger.info("Creating secret key at %s", key_path)

    key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(key)
    os.chmod(key_path, 0o600)
    return key


class ConfigCipher:
    """Encrypts strings to ``encv1:<b64 iv>:<b64 ciphertext>``."""

    def __init__(self, key: bytes):
        self._aead = AESGCM(key)

    @classmethod
    def from_key_file(cls, key_path: Path | str) -> "ConfigCipher":
        return cls(load_or_create_key(Path(key_path)))

    def encrypt(self, plaintext: str) -> str:
        if not plaintext:
            return ""
        iv = os.urandom(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return (
            f"{ENCRYPTED_PREFIX}{base64.b64encode(iv).decode('ascii')}"
            f":{base64.b64encode(ciphertext).decode('ascii')}"
        )

    def decrypt(self, stored: str | None) -> str:
        """
        Decrypt a stored value.

        Values without the prefix are legacy plaintext and come back as-is;
        values that fail authentication or decoding come back as "".
        """
        if not stored:
            return ""
        if not stored.startswith(ENCRYPTED_PREFIX):
            return stored

        body = stored[len(ENCRYPTED_PREFIX):]
        iv_b64, sep, ciphertext_b64 = body.partition(":")
        if not sep:
            logger.warning("Malformed encrypted value; ignoring")
            return ""
        try:
            iv = base64.b64decode(iv_b64, validate=True)
            ciphertext = base64.b64decode(ciphertext_b64, validate=True)
            return self._aead.decrypt(iv, ciphertext, None).decode("utf-8")
        except (binascii.Error, InvalidTag, UnicodeDecodeError, ValueError) as exc:
            logger.warning("Failed to decrypt stored value: %s", type(exc).__name__)
            return ""
