"""Authenticated encryption of token material at rest.

Every credential class (access and refresh tokens for all providers) uses a
single sealed format, base64 of::

    salt (64 bytes) || iv (16 bytes) || auth tag (16 bytes) || ciphertext

The AES-256-GCM key is derived per message from the ENCRYPTION_KEY
passphrase with PBKDF2-HMAC-SHA512 over the embedded salt. There is no
pre-derived-key variant, so ``open`` never has to guess the layout.
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from credit_pot.src.config import PBKDF2_ITERATIONS
from credit_pot.src.errors import ConfigError, DecryptionError

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


class SecretBox:
    """Seal and open strings with a passphrase-derived AES-256-GCM key."""

    def __init__(self, passphrase: str, iterations: int = PBKDF2_ITERATIONS) -> None:
        """Bind the box to a passphrase.

        Raises:
            ConfigError: If the passphrase is empty.
        """
        if not passphrase:
            msg = "Encryption passphrase must not be empty"
            raise ConfigError(msg)
        self._passphrase = passphrase.encode()
        self.iterations = iterations

    def _derive(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._passphrase)

    def seal(self, plaintext: str) -> str:
        """Encrypt plaintext with a fresh salt and IV."""
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive(salt)).encrypt(iv, plaintext.encode(), None)
        # cryptography appends the tag; move it in front of the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")

    def open(self, sealed: str) -> str:
        """Decrypt a sealed value, verifying its tag first.

        Raises:
            DecryptionError: If the value is malformed or fails authentication.
        """
        try:
            raw = base64.b64decode(sealed, validate=True)
        except (binascii.Error, ValueError) as e:
            msg = "Sealed value is not valid base64"
            raise DecryptionError(msg) from e

        # Reject non-canonical encodings so every text edit is detected
        if base64.b64encode(raw).decode("ascii") != sealed or len(raw) < HEADER_LENGTH:
            msg = "Sealed value is malformed"
            raise DecryptionError(msg)

        salt = raw[:SALT_LENGTH]
        iv = raw[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = raw[SALT_LENGTH + IV_LENGTH : HEADER_LENGTH]
        ciphertext = raw[HEADER_LENGTH:]

        try:
            plaintext = AESGCM(self._derive(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            msg = "Authentication tag mismatch (corrupted value or wrong ENCRYPTION_KEY)"
            raise DecryptionError(msg) from e

        try:
            return plaintext.decode()
        except UnicodeDecodeError as e:
            msg = "Decrypted value is not valid UTF-8"
            raise DecryptionError(msg) from e
