"""
Exception types raised by the document engine.
"""

from typing import Optional


class HashedPotatoError(Exception):
    """Base exception for all engine errors.

    Args:
        message: Human readable description. Never contains passphrases,
            keys or decrypted content.
        stage: Name of the pipeline stage that failed, if known.
    """

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        super().__init__(f"{stage}: {message}" if stage else message)


class ParseError(HashedPotatoError):
    """Malformed markup or a document tree missing required structure."""
    pass


class ValidationError(HashedPotatoError):
    """A mutation was rejected; the document is left unchanged."""
    pass


class MissingCredentialsError(HashedPotatoError):
    """An encrypted document was imported without passphrase, iv and salt."""
    pass


class AuthenticationError(HashedPotatoError):
    """Decryption or integrity verification failed.

    Deliberately generic: a wrong passphrase and corrupted ciphertext raise
    the same message.
    """

    DEFAULT_MESSAGE = "Failed to decrypt or verify data: wrong password or corrupted file"

    def __init__(self, message: str = DEFAULT_MESSAGE, stage: Optional[str] = None):
        super().__init__(message, stage)


class NotFoundError(HashedPotatoError):
    """A table or account view was constructed for an entity that does not exist."""
    pass


class ConfigurationError(HashedPotatoError):
    """Invalid engine configuration, such as a PBKDF2 iteration downgrade."""
    pass


class StorageError(HashedPotatoError):
    """Reading or writing a document file failed."""
    pass
