"""
Whole-document import and export.

Import: markup -> tree -> [decrypt body] -> Document
Export: Document -> [encrypt body] -> tree -> markup

An encrypted export keeps the head in clear text and replaces the body with
base64(AES-GCM(<sequence>...</sequence><tables>...</tables>)), the body's
children without the <body> element itself. The iv and salt are returned to the caller,
who must store them next to the file (see storage.DocumentFile).
"""

import base64
import binascii
import logging
import re
from collections.abc import Mapping
from typing import Any, NamedTuple, Optional, Union

from . import config
from .codec import MarkupCodec
from .config import EngineConfig
from .crypto import CryptoManager
from .document import Document, parse_bool, parse_int
from .errors import (
    AuthenticationError,
    HashedPotatoError,
    MissingCredentialsError,
    ParseError,
    ValidationError,
)

logger = logging.getLogger(__name__)

Markup = Union[str, bytes]

_BODY_ELEMENT_RE = re.compile(rb"^\s*<body[\s/>]")


class ExportResult(NamedTuple):
    """Markup produced by an export, plus the base64 iv and salt of an encrypted body."""
    markup: str
    iv: Optional[str] = None
    salt: Optional[str] = None

    @property
    def is_encrypted(self) -> bool:
        return self.iv is not None


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: Union[str, bytes]) -> bytes:
    if isinstance(text, str):
        text = text.strip().encode("ascii")
    return base64.b64decode(text, validate=True)


def _read_head(markup: Markup, codec: Optional[MarkupCodec] = None) -> Mapping:
    tree = (codec or MarkupCodec()).parse(markup)
    root = tree.get(config.ROOT_TAG)
    head = root.get("head") if isinstance(root, Mapping) else None
    if not isinstance(head, Mapping):
        raise ParseError("Document is missing root.head")
    return head


def is_encrypted_xml(markup: Markup, codec: Optional[MarkupCodec] = None) -> bool:
    """Whether the document's body is encrypted, read from the head only."""
    return parse_bool(_read_head(markup, codec).get("is_encrypted", False), "is_encrypted")


def is_plain_xml(markup: Markup, codec: Optional[MarkupCodec] = None) -> bool:
    """Whether the document's body is stored in clear text."""
    return not is_encrypted_xml(markup, codec)


def get_file_id_from_xml(markup: Markup, codec: Optional[MarkupCodec] = None) -> str:
    """The document's file id, read from the head only."""
    file_id = _read_head(markup, codec).get("file_id")
    if not isinstance(file_id, str) or not file_id.strip():
        raise ParseError("Document head has no file_id")
    return file_id.strip()


class DocumentPipeline:
    """Imports and exports documents with one codec and crypto configuration."""

    def __init__(self, engine_config: Optional[EngineConfig] = None):
        """
        Initialize the pipeline.

        Args:
            engine_config: Codec and key derivation settings; defaults to EngineConfig().
        """
        self.config = engine_config or EngineConfig()
        self.codec = MarkupCodec.from_config(self.config)
        self.crypto = CryptoManager(self.config.pbkdf2_iterations)

    def is_encrypted_xml(self, markup: Markup) -> bool:
        return is_encrypted_xml(markup, self.codec)

    def is_plain_xml(self, markup: Markup) -> bool:
        return is_plain_xml(markup, self.codec)

    def get_file_id_from_xml(self, markup: Markup) -> str:
        return get_file_id_from_xml(markup, self.codec)

    def import_document(self, markup: Markup, passphrase: Optional[str] = None,
                        iv: Optional[str] = None, salt: Optional[str] = None) -> Document:
        """
        Import a document from markup.

        Args:
            markup: Document markup as text or UTF-8 bytes
            passphrase: Passphrase (encrypted documents only)
            iv: Base64 iv returned by the export (encrypted documents only)
            salt: Base64 salt returned by the export (encrypted documents only)

        Returns:
            A new Document. Nothing the caller already holds is modified.

        Raises:
            ParseError: If the markup or its structure is invalid.
            MissingCredentialsError: If the body is encrypted and passphrase,
                iv or salt is missing.
            AuthenticationError: If the body cannot be decrypted and verified.
        """
        try:
            tree = self.codec.parse(markup)
            root = tree.get(config.ROOT_TAG)
            head = root.get("head") if isinstance(root, Mapping) else None
            if not isinstance(head, Mapping):
                raise ParseError("Document is missing root.head")
            encrypted = parse_bool(head.get("is_encrypted", False), "is_encrypted")
        except ParseError as e:
            raise ParseError(e.message, stage="import") from e

        if not encrypted:
            if passphrase or iv or salt:
                logger.debug("Ignoring credentials supplied for a plain document")
            try:
                document = Document.from_tree(tree)
            except ParseError as e:
                raise ParseError(e.message, stage="import") from e
            logger.info(f"Imported plain document {document.file_id}")
            return document

        if not passphrase or not iv or not salt:
            raise MissingCredentialsError(
                "passphrase, iv and salt are required to import an encrypted document",
                stage="import",
            )

        try:
            document = self._decrypt_document(tree, head, passphrase, iv, salt)
        except (HashedPotatoError, binascii.Error, ValueError, UnicodeError):
            logger.warning("Failed to decrypt document body")
            raise AuthenticationError(stage="decrypt") from None
        logger.info(f"Imported encrypted document {document.file_id}")
        return document

    def _decrypt_document(self, tree: Any, head: Mapping, passphrase: str, iv: str, salt: str) -> Document:
        body_text = tree[config.ROOT_TAG].get("body")
        if not isinstance(body_text, str):
            raise ParseError("Encrypted body is not text")
        file_id = head.get("file_id")
        if not isinstance(file_id, str) or not file_id.strip():
            raise ParseError("Document head has no file_id")

        iterations = config.LEGACY_PBKDF2_ITERATIONS
        if "kdf_iterations" in head:
            iterations = parse_int(head["kdf_iterations"], "kdf_iterations")

        plaintext = self.crypto.decrypt(
            _b64decode(body_text),
            _b64decode(iv),
            _b64decode(salt),
            passphrase,
            file_id.strip(),
            iterations,
        )
        if not _BODY_ELEMENT_RE.match(plaintext):
            # The ciphertext holds sibling elements; parse them as one body
            plaintext = b"<body>" + plaintext + b"</body>"
        body_tree = self.codec.parse(plaintext, root_path=config.ROOT_TAG)
        tree[config.ROOT_TAG]["body"] = body_tree.get("body")
        return Document.from_tree(tree)

    def export_document(self, document: Document, passphrase: Optional[str] = None) -> ExportResult:
        """
        Export a document to markup.

        Refreshes updated_at and increments the local part of file_version.
        Without a passphrase the whole tree is written in clear text. With a
        passphrase the body is encrypted with the file id as associated data.

        The export is built on a copy; the document is only updated once the
        markup is complete.

        Args:
            document: Document to export
            passphrase: Passphrase for an encrypted export, or None

        Returns:
            ExportResult with markup, and base64 iv and salt when encrypted
        """
        working = Document(document.to_tree())
        working.touch()
        working.head.increment_local_version()
        head = working.data[config.ROOT_TAG]["head"]

        try:
            if not passphrase:
                head["is_encrypted"] = False
                head.pop("kdf_iterations", None)
                result = ExportResult(self.codec.build(working.data, pretty=self.config.pretty))
            else:
                # Never re-encrypt with fewer iterations than the file already had
                iterations = max(self.crypto.iterations, head.get("kdf_iterations") or 0)
                body_markup = self.codec.build(working.data[config.ROOT_TAG]["body"], pretty=False)
                payload = self.crypto.encrypt(body_markup.encode("utf-8"), passphrase, working.file_id, iterations)
                head["is_encrypted"] = True
                head["kdf_iterations"] = iterations
                export_tree = {
                    config.ROOT_TAG: {
                        "head": head,
                        "body": _b64encode(payload.ciphertext),
                    },
                }
                result = ExportResult(
                    self.codec.build(export_tree, pretty=self.config.pretty),
                    _b64encode(payload.iv),
                    _b64encode(payload.salt),
                )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Document contains a value that cannot be written: {e}", stage="export") from e

        document.data[config.ROOT_TAG]["head"] = head
        logger.info(
            f"Exported document {document.file_id} version {head['file_version']} "
            f"({'encrypted' if result.is_encrypted else 'plain'})"
        )
        return result
