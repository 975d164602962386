"""
Command line entry point for Hashed Potato Lite.

    hashed-potato create vault.xml --title "Personal" --encrypt
    hashed-potato add-table vault.xml Banking
    hashed-potato add-account vault.xml TBL-1234 nm=Bank it=B ct=finance sm=Main st=active
    hashed-potato show vault.xml
    hashed-potato save vault.xml --plain
"""

import sys
import getpass
import logging
import argparse
from typing import List, Optional

from . import config
from .config import EngineConfig
from .document import Document
from .errors import HashedPotatoError, ValidationError
from .pipeline import DocumentPipeline
from .session import SessionStore
from .storage import DocumentFile

logger = logging.getLogger(__name__)


class PasswordPromptCancelled(Exception):
    pass


def prompt_passphrase(prompt: str = "Passphrase: ", confirm: bool = False) -> str:
    """Ask for a passphrase on the terminal. An empty answer cancels."""
    try:
        passphrase = getpass.getpass(prompt)
        if not passphrase:
            raise PasswordPromptCancelled()
        if confirm and getpass.getpass("Repeat passphrase: ") != passphrase:
            raise ValidationError("Passphrases do not match")
    except (EOFError, KeyboardInterrupt):
        raise PasswordPromptCancelled() from None
    return passphrase


class DocumentSession:
    """Loads a document from disk, and saves it back with the same protection."""

    def __init__(self, path: str, pipeline: DocumentPipeline, session: SessionStore):
        self.file = DocumentFile(path)
        self.pipeline = pipeline
        self.session = session
        self.passphrase: Optional[str] = None
        self.document: Optional[Document] = None

    def open(self) -> Document:
        stored = self.file.read()
        if self.pipeline.is_encrypted_xml(stored.markup):
            self.passphrase = prompt_passphrase()
        self.document = self.pipeline.import_document(stored.markup, self.passphrase, stored.iv, stored.salt)
        self.session.remember_file(self.file.filepath)
        return self.document

    def save(self, encrypt: Optional[bool] = None) -> None:
        if encrypt is True and self.passphrase is None:
            self.passphrase = prompt_passphrase("New passphrase: ", confirm=True)
        elif encrypt is False:
            self.passphrase = None
        result = self.pipeline.export_document(self.document, self.passphrase)
        self.file.write(result, self.document.file_id)
        self.session.remember_file(self.file.filepath)
        self.session.set_passphrase_flag(self.document.file_id, result.is_encrypted)


def _parse_fields(pairs: List[str]) -> dict:
    fields = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep:
            raise ValidationError(f"Expected key=value, got {pair!r}")
        fields[key] = value
    return fields


def cmd_create(args, pipeline: DocumentPipeline, session: SessionStore) -> int:
    doc_session = DocumentSession(args.path, pipeline, session)
    if doc_session.file.exists() and not args.force:
        print(f"{args.path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    doc_session.document = Document.create(args.title, args.description)
    doc_session.save(encrypt=args.encrypt)
    print(doc_session.document.file_id)
    return 0


def cmd_show(args, pipeline: DocumentPipeline, session: SessionStore) -> int:
    document = DocumentSession(args.path, pipeline, session).open()
    head = document.head
    print(f"{head.file_title or '(untitled)'}  [{head.file_id}]  v{head.file_version}")
    print(f"  created {head.created_at}, updated {head.updated_at}, "
          f"{'encrypted' if head.is_encrypted else 'plain'}")
    for table in document.body.tables():
        print(f"{table.id}  {table.name}  ({len(table)} accounts)")
        for account in table.accounts():
            print(f"  #{account.serial_number}  {account.service_name}  [{account.category}]  {account.status}")
    return 0


def cmd_add_table(args, pipeline: DocumentPipeline, session: SessionStore) -> int:
    doc_session = DocumentSession(args.path, pipeline, session)
    table = doc_session.open().body.add_table(args.name, args.summary)
    doc_session.save()
    print(table.id)
    return 0


def cmd_add_account(args, pipeline: DocumentPipeline, session: SessionStore) -> int:
    doc_session = DocumentSession(args.path, pipeline, session)
    account = doc_session.open().body.add_account(args.table_id, _parse_fields(args.fields))
    doc_session.save()
    print(account.serial_number)
    return 0


def cmd_save(args, pipeline: DocumentPipeline, session: SessionStore) -> int:
    doc_session = DocumentSession(args.path, pipeline, session)
    doc_session.open()
    doc_session.save(encrypt=args.encrypt)
    print(doc_session.document.head.file_version)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hashed-potato", description=config.APP_NAME)
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    parser.add_argument("--iterations", type=int, default=config.PBKDF2_ITERATIONS,
                        help="PBKDF2 iterations for new ciphertext")
    parser.add_argument("--session-dir", default=None, help="directory for session state")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="create a new document")
    create.add_argument("path", nargs="?", default=config.DEFAULT_DOCUMENT_FILE)
    create.add_argument("--title", default="")
    create.add_argument("--description", default="")
    create.add_argument("--encrypt", action="store_true", default=None)
    create.add_argument("--force", action="store_true")
    create.set_defaults(func=cmd_create)

    show = sub.add_parser("show", help="print tables and accounts")
    show.add_argument("path", nargs="?", default=config.DEFAULT_DOCUMENT_FILE)
    show.set_defaults(func=cmd_show)

    add_table = sub.add_parser("add-table", help="add a table")
    add_table.add_argument("path")
    add_table.add_argument("name")
    add_table.add_argument("--summary", default="")
    add_table.set_defaults(func=cmd_add_table)

    add_account = sub.add_parser("add-account", help="add an account to a table")
    add_account.add_argument("path")
    add_account.add_argument("table_id")
    add_account.add_argument("fields", nargs="+", metavar="key=value")
    add_account.set_defaults(func=cmd_add_account)

    save = sub.add_parser("save", help="re-export, optionally changing encryption")
    save.add_argument("path")
    protection = save.add_mutually_exclusive_group()
    protection.add_argument("--encrypt", dest="encrypt", action="store_true", default=None)
    protection.add_argument("--plain", dest="encrypt", action="store_false")
    save.set_defaults(func=cmd_save)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=config.LOG_FORMAT)

    try:
        pipeline = DocumentPipeline(EngineConfig(pbkdf2_iterations=args.iterations))
        return args.func(args, pipeline, SessionStore(args.session_dir))
    except PasswordPromptCancelled:
        print("Cancelled.", file=sys.stderr)
        return 1
    except HashedPotatoError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
