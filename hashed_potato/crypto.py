"""
Cryptographic operations for the document engine.

The body of an encrypted document is protected with AES-256-GCM. The key is
derived from the user's passphrase with PBKDF2-HMAC-SHA256 and a random salt;
the document's file id is bound in as associated data so a ciphertext cannot
be moved into another document.
"""

import os
import logging
from typing import NamedTuple, Optional, Union
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.backends import default_backend
from cryptography.exceptions import InvalidTag

from . import config
from .errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

Secret = Union[str, bytes]


class EncryptedPayload(NamedTuple):
    """Output of CryptoManager.encrypt(). Only the passphrase is secret."""
    ciphertext: bytes  # ciphertext followed by the 16-byte GCM tag
    iv: bytes
    salt: bytes


def _to_bytes(value: Secret) -> bytes:
    if isinstance(value, str):
        return value.encode('utf-8')
    return bytes(value)


def _check_iterations(iterations: int) -> None:
    if not config.PBKDF2_MIN_ITERATIONS <= iterations <= config.PBKDF2_MAX_ITERATIONS:
        raise ConfigurationError(
            f"PBKDF2 iteration count {iterations} is outside the allowed range "
            f"{config.PBKDF2_MIN_ITERATIONS}..{config.PBKDF2_MAX_ITERATIONS}"
        )


class CryptoManager:
    """Handles all cryptographic operations for the document engine."""

    # Constants
    SALT_SIZE = config.SALT_SIZE
    KEY_SIZE = config.KEY_SIZE
    NONCE_SIZE = config.NONCE_SIZE
    TAG_SIZE = config.TAG_SIZE

    def __init__(self, iterations: int = config.PBKDF2_ITERATIONS):
        """
        Initialize the crypto manager.

        Args:
            iterations: PBKDF2 iteration count for new ciphertext.

        Raises:
            ConfigurationError: If iterations is outside PBKDF2_MIN_ITERATIONS..PBKDF2_MAX_ITERATIONS.
        """
        _check_iterations(iterations)
        self.iterations = iterations
        self.backend = default_backend()

    def generate_salt(self) -> bytes:
        """Generate a cryptographically secure random salt."""
        return os.urandom(self.SALT_SIZE)

    def generate_nonce(self) -> bytes:
        """Generate a fresh GCM nonce. Never reuse one with the same key."""
        return os.urandom(self.NONCE_SIZE)

    def derive_key(self, passphrase: Secret, salt: bytes, iterations: Optional[int] = None) -> bytes:
        """
        Derive an encryption key from a passphrase using PBKDF2-HMAC-SHA256.

        Args:
            passphrase: The passphrase, as text or UTF-8 bytes
            salt: 16-byte random salt
            iterations: Iteration count; defaults to the manager's count.
                Values outside PBKDF2_MIN_ITERATIONS..PBKDF2_MAX_ITERATIONS are refused.

        Returns:
            32-byte encryption key
        """
        iterations = self.iterations if iterations is None else iterations
        _check_iterations(iterations)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.KEY_SIZE,
            salt=salt,
            iterations=iterations,
            backend=self.backend
        )
        return kdf.derive(_to_bytes(passphrase))

    def encrypt(self, plaintext: bytes, passphrase: Secret, associated_data: Secret,
                iterations: Optional[int] = None) -> EncryptedPayload:
        """
        Encrypt data using AES-256-GCM with a passphrase-derived key.

        A new salt and nonce are generated on every call, so a (key, nonce)
        pair is never used twice.

        Args:
            plaintext: Data to encrypt
            passphrase: The passphrase
            associated_data: Authenticated but unencrypted context (the file id)
            iterations: PBKDF2 iteration count; defaults to the manager's count.

        Returns:
            EncryptedPayload of (ciphertext with tag appended, iv, salt)
        """
        salt = self.generate_salt()
        nonce = self.generate_nonce()
        key = self.derive_key(passphrase, salt, iterations)

        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(nonce),
            backend=self.backend
        )
        encryptor = cipher.encryptor()
        encryptor.authenticate_additional_data(_to_bytes(associated_data))
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return EncryptedPayload(ciphertext + encryptor.tag, nonce, salt)

    def decrypt(self, ciphertext: bytes, iv: bytes, salt: bytes, passphrase: Secret,
                associated_data: Secret, iterations: Optional[int] = None) -> bytes:
        """
        Decrypt data produced by encrypt().

        Args:
            ciphertext: Encrypted data followed by the 16-byte tag
            iv: Nonce used for encryption
            salt: Salt used for key derivation
            passphrase: The passphrase
            associated_data: Associated data given to encrypt()
            iterations: PBKDF2 iteration count used for encryption.

        Returns:
            Decrypted plaintext

        Raises:
            AuthenticationError: If any input is malformed or the tag does
                not verify. No partial plaintext is returned.
        """
        if len(iv) != self.NONCE_SIZE or len(salt) != self.SALT_SIZE:
            logger.debug("Decrypt rejected: unexpected iv or salt length")
            raise AuthenticationError()
        if len(ciphertext) < self.TAG_SIZE:
            logger.debug("Decrypt rejected: ciphertext shorter than the tag")
            raise AuthenticationError()

        try:
            key = self.derive_key(passphrase, salt, iterations)
        except ConfigurationError:
            logger.debug("Decrypt rejected: iteration count outside the allowed range")
            raise AuthenticationError() from None
        body, tag = ciphertext[:-self.TAG_SIZE], ciphertext[-self.TAG_SIZE:]
        cipher = Cipher(
            algorithms.AES(key),
            modes.GCM(iv, tag),
            backend=self.backend
        )
        decryptor = cipher.decryptor()
        decryptor.authenticate_additional_data(_to_bytes(associated_data))
        try:
            plaintext = decryptor.update(body) + decryptor.finalize()
        except InvalidTag:
            logger.debug("Decrypt rejected: authentication tag did not verify")
            # Plain raise without chaining: the cause must not leak details
            raise AuthenticationError() from None
        return plaintext
