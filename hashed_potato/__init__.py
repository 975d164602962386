"""
Hashed Potato Lite credential document engine
Copyright (c) 2025

A credential file is a single XML document: a cleartext head (id, version,
title, display options) and a body of tables of accounts. The body can be
encrypted with a passphrase-derived AES-256-GCM key bound to the file id.
"""

from .config import EngineConfig
from .document import (
    AccountView,
    BodyView,
    Document,
    HeadView,
    OptionsView,
    TableView,
)
from .errors import (
    AuthenticationError,
    ConfigurationError,
    HashedPotatoError,
    MissingCredentialsError,
    NotFoundError,
    ParseError,
    StorageError,
    ValidationError,
)
from .pipeline import (
    DocumentPipeline,
    ExportResult,
    get_file_id_from_xml,
    is_encrypted_xml,
    is_plain_xml,
)

__all__ = [
    "EngineConfig",
    "Document",
    "HeadView",
    "OptionsView",
    "BodyView",
    "TableView",
    "AccountView",
    "DocumentPipeline",
    "ExportResult",
    "is_encrypted_xml",
    "is_plain_xml",
    "get_file_id_from_xml",
    "HashedPotatoError",
    "ParseError",
    "ValidationError",
    "MissingCredentialsError",
    "AuthenticationError",
    "NotFoundError",
    "ConfigurationError",
    "StorageError",
]
