"""
Tests for DocumentPipeline - whole-document import and export.

Tests cover:
- Plain and encrypted round trips
- Version and timestamp bookkeeping
- Credential and authentication failures
- Static head helpers
- Atomicity of failed exports
"""
import base64
import re

import pytest

from hashed_potato import config
from hashed_potato import crypto as crypto_module
from hashed_potato.codec import MarkupCodec
from hashed_potato.config import EngineConfig
from hashed_potato.document import Document
from hashed_potato.errors import (
    AuthenticationError,
    ConfigurationError,
    MissingCredentialsError,
    ParseError,
    ValidationError,
)
from hashed_potato.pipeline import (
    DocumentPipeline,
    get_file_id_from_xml,
    is_encrypted_xml,
    is_plain_xml,
)

from .helpers import FAST_ITERATIONS, PASSPHRASE, account_fields

OLD_TIMESTAMP = "2000-01-01T00:00:00.000Z"

BODY_RE = re.compile(r"<body>(.*?)</body>", re.S)


def _body_text(markup):
    return BODY_RE.search(markup).group(1)


# ============================================================================
# Plain Export/Import Tests
# ============================================================================

def test_concrete_scenario(pipeline):
    """Test create -> add table -> add two accounts -> export -> import."""
    document = Document.create()
    table = document.body.add_table("Banking", "")
    assert re.match(r"^TBL-\d{4}$", table.id)

    fields = {"nm": "Bank", "it": "B", "ct": "finance", "sm": "desc", "st": "active"}
    assert document.body.add_account(table.id, fields).serial_number == 1
    assert document.body.add_account(table.id, fields).serial_number == 2

    result = pipeline.export_document(document)
    imported = pipeline.import_document(result.markup)

    tables = imported.body.tables()
    assert len(tables) == 1
    assert [a.serial_number for a in tables[0].accounts()] == [1, 2]


def test_plain_round_trip(pipeline, populated_document):
    """Test import(export(d)) equals d after the export's bookkeeping."""
    before = populated_document.to_tree()

    result = pipeline.export_document(populated_document)
    imported = pipeline.import_document(result.markup)

    assert result.iv is None and result.salt is None
    assert not result.is_encrypted
    assert imported == populated_document
    assert imported.data["root"]["body"] == before["root"]["body"]


def test_plain_markup_is_pretty_and_readable(pipeline, populated_document):
    """Test the plain export contains the body in clear text."""
    markup = pipeline.export_document(populated_document).markup

    assert markup.startswith("<root>\n  <head>")
    assert "<nm>Bank</nm>" in markup
    assert "<is_encrypted>false</is_encrypted>" in markup


def test_export_accepts_bytes_on_import(pipeline, populated_document):
    """Test import accepts UTF-8 bytes."""
    markup = pipeline.export_document(populated_document).markup

    assert pipeline.import_document(markup.encode("utf-8")) == populated_document


def test_single_entries_stay_lists(pipeline, document):
    """Test a document with one alias, one table and one account survives a round trip."""
    table = document.body.add_table("Only")
    table.add_account(account_fields())
    document.options.set_column_alias("nm", "Service")
    document.options.set_column_order(["nm"])
    document.options.set_invisible_column("sm")

    imported = pipeline.import_document(pipeline.export_document(document).markup)

    assert imported.options.column_alias == {"nm": "Service"}
    assert imported.options.column_order == ["nm"]
    assert imported.options.invisible_columns == ["sm"]
    assert len(imported.body.tables()[0].accounts()) == 1


def test_empty_document_round_trip(pipeline, document):
    """Test a document without tables or options survives a round trip."""
    imported = pipeline.import_document(pipeline.export_document(document).markup)

    assert imported == document
    assert imported.body.tables() == []


def test_import_does_not_alias_caller_documents(pipeline, populated_document):
    """Test an imported document is independent of the exported one."""
    imported = pipeline.import_document(pipeline.export_document(populated_document).markup)

    imported.body.tables()[0].get_account(1).update({"st": "closed"})

    assert populated_document.body.tables()[0].get_account(1).status == "active"


# ============================================================================
# Version and Timestamp Tests
# ============================================================================

@pytest.mark.parametrize("version,expected", [("2", "2.1"), ("2.1", "2.2"), ("1.0", "1.1")])
def test_export_increments_local_version(pipeline, document, version, expected):
    """Test every export bumps the local version."""
    document.data["root"]["head"]["file_version"] = version

    markup = pipeline.export_document(document).markup

    assert document.head.file_version == expected
    assert pipeline.import_document(markup).head.file_version == expected


def test_export_refreshes_updated_at(pipeline, document):
    """Test export writes a new updated_at."""
    document.data["root"]["head"]["updated_at"] = OLD_TIMESTAMP

    pipeline.export_document(document)

    assert document.head.updated_at != OLD_TIMESTAMP
    assert document.head.updated_at.endswith("Z")


def test_repeated_exports(pipeline, document):
    """Test consecutive exports keep counting."""
    for _ in range(3):
        document = pipeline.import_document(pipeline.export_document(document).markup)

    assert document.head.file_version == "1.3"


# ============================================================================
# Encrypted Export/Import Tests
# ============================================================================

def test_encrypted_round_trip(pipeline, populated_document):
    """Test the body is recovered with the passphrase, iv and salt."""
    original_body = populated_document.to_tree()["root"]["body"]

    result = pipeline.export_document(populated_document, PASSPHRASE)
    imported = pipeline.import_document(result.markup, PASSPHRASE, result.iv, result.salt)

    assert result.is_encrypted
    assert imported.data["root"]["body"] == original_body
    assert imported == populated_document
    assert imported.head.is_encrypted is True
    assert imported.head.kdf_iterations == FAST_ITERATIONS


def test_encrypted_markup_hides_body(pipeline, populated_document):
    """Test the head stays readable and the body is base64 ciphertext."""
    result = pipeline.export_document(populated_document, PASSPHRASE)

    assert "<file_title>Personal</file_title>" in result.markup
    assert "<is_encrypted>true</is_encrypted>" in result.markup
    assert "Banking" not in result.markup
    assert "s3cret" not in result.markup
    assert len(base64.b64decode(result.iv)) == 12
    assert len(base64.b64decode(result.salt)) == 16
    base64.b64decode(_body_text(result.markup), validate=True)


def test_encrypted_export_updates_live_head(pipeline, populated_document):
    """Test the live document records the encrypted state after export."""
    pipeline.export_document(populated_document, PASSPHRASE)

    assert populated_document.head.is_encrypted is True
    assert populated_document.head.kdf_iterations == FAST_ITERATIONS
    assert populated_document.head.file_version == "1.1"
    # The in-memory body stays usable
    assert populated_document.body.tables()[0].name == "Banking"


def test_plain_export_after_encrypted(pipeline, populated_document):
    """Test exporting without a passphrase switches back to plain."""
    pipeline.export_document(populated_document, PASSPHRASE)

    result = pipeline.export_document(populated_document)

    assert not result.is_encrypted
    assert populated_document.head.is_encrypted is False
    assert populated_document.head.kdf_iterations is None
    assert pipeline.is_plain_xml(result.markup)


def test_each_export_uses_fresh_iv_and_salt(pipeline, populated_document):
    """Test two encrypted exports never share iv or salt."""
    first = pipeline.export_document(populated_document, PASSPHRASE)
    second = pipeline.export_document(populated_document, PASSPHRASE)

    assert first.iv != second.iv
    assert first.salt != second.salt


def test_iterations_never_decrease(populated_document):
    """Test re-encrypting with a cheaper configuration keeps the recorded cost."""
    strong = DocumentPipeline(EngineConfig(pbkdf2_iterations=FAST_ITERATIONS + 5000))
    weak = DocumentPipeline(EngineConfig(pbkdf2_iterations=FAST_ITERATIONS))

    first = strong.export_document(populated_document, PASSPHRASE)
    loaded = weak.import_document(first.markup, PASSPHRASE, first.iv, first.salt)
    second = weak.export_document(loaded, PASSPHRASE)

    assert loaded.head.kdf_iterations == FAST_ITERATIONS + 5000
    assert weak.import_document(second.markup, PASSPHRASE, second.iv, second.salt).head.kdf_iterations == FAST_ITERATIONS + 5000


def test_config_below_floor_rejected():
    """Test the engine cannot be configured with too few iterations."""
    with pytest.raises(ConfigurationError):
        DocumentPipeline(EngineConfig(pbkdf2_iterations=1000))


def test_config_above_ceiling_rejected():
    """Test the engine cannot be configured with an unbounded iteration count."""
    with pytest.raises(ConfigurationError):
        DocumentPipeline(EngineConfig(pbkdf2_iterations=config.PBKDF2_MAX_ITERATIONS + 1))


def test_ciphertext_holds_body_children_without_wrapper(pipeline, populated_document, codec, monkeypatch):
    """Test the encrypted plaintext is the body's children, <sequence> first."""
    plaintexts = []
    encrypt = pipeline.crypto.encrypt

    def recording_encrypt(plaintext, *args, **kwargs):
        plaintexts.append(plaintext)
        return encrypt(plaintext, *args, **kwargs)

    monkeypatch.setattr(pipeline.crypto, "encrypt", recording_encrypt)
    body = populated_document.to_tree()["root"]["body"]

    pipeline.export_document(populated_document, PASSPHRASE)

    [plaintext] = plaintexts
    assert plaintext.startswith(b"<sequence>")
    assert b"<body" not in plaintext
    expected = codec.parse(codec.build({"body": body}), root_path="root")
    assert codec.parse(b"<body>" + plaintext + b"</body>", root_path="root") == expected


def test_file_without_recorded_iterations(pipeline, populated_document, codec):
    """Test a head without kdf_iterations is decrypted with the legacy count."""
    tree = populated_document.to_tree()
    body = tree["root"]["body"]
    plaintext = codec.build(body).encode("utf-8")
    payload = pipeline.crypto.encrypt(plaintext, PASSPHRASE, populated_document.file_id,
                                      config.LEGACY_PBKDF2_ITERATIONS)
    head = dict(tree["root"]["head"], is_encrypted=True)
    markup = codec.build({"root": {"head": head, "body": base64.b64encode(payload.ciphertext).decode()}})

    imported = pipeline.import_document(markup, PASSPHRASE,
                                        base64.b64encode(payload.iv).decode(),
                                        base64.b64encode(payload.salt).decode())

    assert imported.data["root"]["body"] == body


def test_body_wrapped_in_element_still_opens(pipeline, populated_document, codec):
    """Test ciphertext holding a complete <body> element is accepted too."""
    tree = populated_document.to_tree()
    body = tree["root"]["body"]
    plaintext = codec.build({"body": body}).encode("utf-8")
    payload = pipeline.crypto.encrypt(plaintext, PASSPHRASE, populated_document.file_id)
    head = dict(tree["root"]["head"], is_encrypted=True, kdf_iterations=FAST_ITERATIONS)
    markup = codec.build({"root": {"head": head, "body": base64.b64encode(payload.ciphertext).decode()}})

    imported = pipeline.import_document(markup, PASSPHRASE,
                                        base64.b64encode(payload.iv).decode(),
                                        base64.b64encode(payload.salt).decode())

    assert imported.data["root"]["body"] == body


@pytest.mark.parametrize("passphrase", [None, PASSPHRASE])
def test_line_endings_survive_export(pipeline, populated_document, passphrase):
    """Test CR and CRLF in account fields and head text come back unchanged."""
    table = populated_document.body.tables()[0]
    table.get_account(1).update({"notes": "line1\r\nline2\rline3"})
    populated_document.head.file_description = "first\r\nsecond"

    result = pipeline.export_document(populated_document, passphrase)
    imported = pipeline.import_document(result.markup, passphrase, result.iv, result.salt)

    assert imported.body.get_table(table.id).get_account(1).get("notes") == "line1\r\nline2\rline3"
    assert imported.head.file_description == "first\r\nsecond"
    assert imported == populated_document


@pytest.mark.parametrize("passphrase", [None, PASSPHRASE])
def test_export_refuses_text_markup_cannot_carry(pipeline, populated_document, passphrase):
    """Test a control character placed straight into the tree fails the export, not a later import."""
    account = populated_document.data["root"]["body"]["tables"]["table"][0]["tbody"]["ac"][0]
    account["notes"] = "line1\x0bline2"
    before = populated_document.to_tree()

    with pytest.raises(ValidationError) as exc_info:
        pipeline.export_document(populated_document, passphrase)

    assert exc_info.value.stage == "export"
    assert populated_document.to_tree() == before


# ============================================================================
# Error Handling Tests
# ============================================================================

@pytest.mark.parametrize("credentials", [
    (None, None, None),
    (PASSPHRASE, None, None),
    (None, "aXY=", "c2FsdA=="),
    (PASSPHRASE, "aXY=", None),
    ("", "aXY=", "c2FsdA=="),
])
def test_encrypted_import_requires_all_credentials(pipeline, populated_document, credentials):
    """Test passphrase, iv and salt are required together."""
    markup = pipeline.export_document(populated_document, PASSPHRASE).markup

    with pytest.raises(MissingCredentialsError):
        pipeline.import_document(markup, *credentials)


def test_wrong_passphrase(pipeline, populated_document):
    """Test a wrong passphrase raises the generic authentication error."""
    result = pipeline.export_document(populated_document, PASSPHRASE)

    with pytest.raises(AuthenticationError) as exc_info:
        pipeline.import_document(result.markup, "not the passphrase", result.iv, result.salt)

    assert exc_info.value.__cause__ is None
    assert "not the passphrase" not in str(exc_info.value)


def test_tampered_ciphertext(pipeline, populated_document):
    """Test a modified ciphertext is rejected with the same error as a wrong passphrase."""
    result = pipeline.export_document(populated_document, PASSPHRASE)
    ciphertext = bytearray(base64.b64decode(_body_text(result.markup)))
    ciphertext[len(ciphertext) // 2] ^= 0x80
    tampered = result.markup.replace(_body_text(result.markup), base64.b64encode(bytes(ciphertext)).decode())

    with pytest.raises(AuthenticationError) as tampered_error:
        pipeline.import_document(tampered, PASSPHRASE, result.iv, result.salt)
    with pytest.raises(AuthenticationError) as password_error:
        pipeline.import_document(result.markup, "wrong", result.iv, result.salt)

    assert str(tampered_error.value) == str(password_error.value)


def test_body_swapped_between_documents(pipeline, populated_document):
    """Test ciphertext from one document cannot be opened inside another's head."""
    other = Document.create("Other")
    source = pipeline.export_document(populated_document, PASSPHRASE)
    target = pipeline.export_document(other, PASSPHRASE)
    swapped = target.markup.replace(_body_text(target.markup), _body_text(source.markup))

    with pytest.raises(AuthenticationError):
        pipeline.import_document(swapped, PASSPHRASE, source.iv, source.salt)


@pytest.mark.parametrize("iv,salt", [("not base64!", None), (None, "***"), ("AAAA", None)])
def test_malformed_iv_or_salt(pipeline, populated_document, iv, salt):
    """Test malformed iv or salt fails closed as an authentication error."""
    result = pipeline.export_document(populated_document, PASSPHRASE)

    with pytest.raises(AuthenticationError):
        pipeline.import_document(result.markup, PASSPHRASE, iv or result.iv, salt or result.salt)


def test_downgraded_iterations_in_file_rejected(pipeline, populated_document):
    """Test a file claiming fewer iterations than the floor does not open."""
    result = pipeline.export_document(populated_document, PASSPHRASE)
    downgraded = result.markup.replace(
        f"<kdf_iterations>{FAST_ITERATIONS}</kdf_iterations>",
        "<kdf_iterations>1000</kdf_iterations>",
    )

    with pytest.raises(AuthenticationError):
        pipeline.import_document(downgraded, PASSPHRASE, result.iv, result.salt)


@pytest.mark.parametrize("iterations", [config.PBKDF2_MAX_ITERATIONS + 1, 10 ** 12])
def test_excessive_iterations_in_file_rejected(pipeline, populated_document, iterations, monkeypatch):
    """Test a file claiming an enormous iteration count fails without deriving a key."""
    result = pipeline.export_document(populated_document, PASSPHRASE)
    inflated = result.markup.replace(
        f"<kdf_iterations>{FAST_ITERATIONS}</kdf_iterations>",
        f"<kdf_iterations>{iterations}</kdf_iterations>",
    )
    monkeypatch.setattr(crypto_module, "PBKDF2HMAC", lambda **kwargs: pytest.fail("key derived"))

    with pytest.raises(AuthenticationError):
        pipeline.import_document(inflated, PASSPHRASE, result.iv, result.salt)


def test_malformed_markup(pipeline):
    """Test malformed markup raises ParseError tagged with the import stage."""
    with pytest.raises(ParseError) as exc_info:
        pipeline.import_document("<root><head>")

    assert exc_info.value.stage == "import"


def test_missing_head(pipeline):
    """Test a document without a head is rejected."""
    with pytest.raises(ParseError):
        pipeline.import_document("<root><body/></root>")


def test_failed_export_leaves_document_untouched(pipeline, populated_document, monkeypatch):
    """Test the live document only changes after a successful export."""
    before = populated_document.to_tree()

    def failing_encrypt(*args, **kwargs):
        raise RuntimeError("encryption backend unavailable")

    monkeypatch.setattr(pipeline.crypto, "encrypt", failing_encrypt)

    with pytest.raises(RuntimeError):
        pipeline.export_document(populated_document, PASSPHRASE)

    assert populated_document.to_tree() == before


# ============================================================================
# Static Helper Tests
# ============================================================================

def test_static_helpers_on_plain_markup(pipeline, populated_document):
    """Test head helpers on a plain document."""
    markup = pipeline.export_document(populated_document).markup

    assert is_encrypted_xml(markup) is False
    assert is_plain_xml(markup) is True
    assert get_file_id_from_xml(markup) == populated_document.file_id


def test_static_helpers_on_encrypted_markup(pipeline, populated_document):
    """Test head helpers work without credentials."""
    markup = pipeline.export_document(populated_document, PASSPHRASE).markup

    assert pipeline.is_encrypted_xml(markup) is True
    assert pipeline.is_plain_xml(markup) is False
    assert pipeline.get_file_id_from_xml(markup) == populated_document.file_id


def test_static_helpers_with_custom_codec(pipeline, populated_document):
    """Test helpers accept an explicit codec."""
    markup = pipeline.export_document(populated_document).markup

    assert get_file_id_from_xml(markup, MarkupCodec()) == populated_document.file_id


@pytest.mark.parametrize("markup", ["<root>", "<root><body/></root>", "<root><head><file_id/></head></root>"])
def test_static_helpers_reject_invalid_markup(markup):
    """Test the helpers raise ParseError for unusable markup."""
    with pytest.raises(ParseError):
        get_file_id_from_xml(markup)
