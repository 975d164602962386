import pytest

from hashed_potato.codec import MarkupCodec
from hashed_potato.config import EngineConfig
from hashed_potato.crypto import CryptoManager
from hashed_potato.document import Document
from hashed_potato.pipeline import DocumentPipeline

from .helpers import FAST_ITERATIONS, account_fields


@pytest.fixture
def codec():
    return MarkupCodec()


@pytest.fixture
def crypto():
    return CryptoManager(iterations=FAST_ITERATIONS)


@pytest.fixture
def pipeline():
    return DocumentPipeline(EngineConfig(pbkdf2_iterations=FAST_ITERATIONS))


@pytest.fixture
def document():
    return Document.create("Personal", "My accounts")


@pytest.fixture
def populated_document(document):
    banking = document.body.add_table("Banking", "Bank accounts")
    banking.add_account(account_fields(pw="s3cret", url="https://bank.example"))
    banking.add_account(account_fields(nm="Card", it="C"))
    mail = document.body.add_table("Mail", "")
    mail.add_account(account_fields(nm="Mailbox", it="M", ct="mail"))
    return document
