"""
In-memory model of a credential document.

A Document owns one tree shaped like the parsed markup:

    {"root": {"head": {...}, "body": {"sequence": {...}, "tables": {...}}}}

HeadView, OptionsView, BodyView, TableView and AccountView are lightweight
views over that tree. They hold the Document plus the key of the entity they
show (table id, serial number) and look the entity up again on every access,
so every view sees the changes made through any other view.
"""

import copy
import datetime
import logging
import re
import secrets
import uuid
from collections.abc import Mapping
from typing import Any, Dict, Iterable, List, Optional, Set

from . import config
from .codec import format_scalar
from .errors import NotFoundError, ParseError, ValidationError

logger = logging.getLogger(__name__)

_FIELD_NAME_RE = re.compile(config.FIELD_NAME_PATTERN)
_SYSTEM_VERSION_RE = re.compile(r"^\d+$")

TEXT = config.TEXT_KEY
ID = config.ATTRIBUTE_PREFIX + "id"


def now_iso() -> str:
    """Current UTC time as ISO-8601 with milliseconds, e.g. 2025-01-31T09:15:00.123Z."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def split_version(version: str):
    """Split "N.M" into (N, M). A missing local part counts as 0."""
    system, _, local = str(version).partition(config.VERSION_SEPARATOR)
    if not system:
        raise ValidationError(f"Invalid file version: {version!r}")
    try:
        local_number = int(local) if local else 0
    except ValueError:
        raise ValidationError(f"Invalid local version in file version: {version!r}") from None
    return system, local_number


def increment_local_version(version: str) -> str:
    """Return the version with its local part incremented: "3" -> "3.1", "3.1" -> "3.2"."""
    system, local = split_version(version)
    return f"{system}{config.VERSION_SEPARATOR}{local + 1}"


def parse_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1"):
        return True
    if text in ("false", "0", ""):
        return False
    raise ParseError(f"Invalid boolean in {name}: {value!r}")


def parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ParseError(f"Invalid integer in {name}: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return 0
    if not text.isdigit():
        raise ParseError(f"Invalid integer in {name}: {value!r}")
    return int(text, 10)


def _require_mapping(value: Any, name: str) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        raise ParseError(f"Document is missing {name}")
    return value


def _list_of(value: Any, key: str) -> List[Any]:
    """The always-array list under `key`; an empty list when the container has none."""
    if isinstance(value, Mapping) and isinstance(value.get(key), list):
        return value[key]
    return []


def _text(value: Any, name: str) -> str:
    """Value of a text field as written into markup."""
    try:
        text = format_scalar(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid value for {name}: {e}") from e
    return text if text is not None else ""


def _validate_field_name(name: Any) -> None:
    if not isinstance(name, str) or not _FIELD_NAME_RE.match(name):
        raise ValidationError(f"Invalid account field name: {name!r}")


def _field_values(fields: Mapping) -> Dict[str, Any]:
    values = {}
    for key, value in fields.items():
        _validate_field_name(key)
        if key in config.ACCOUNT_RESERVED_FIELDS:
            raise ValidationError(f"Account field '{key}' is managed by the document and cannot be set")
        if value is None:
            values[key] = None
            continue
        try:
            values[key] = format_scalar(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid value for account field '{key}': {e}") from e
    return values


class Document:
    """The root of a credential file: head metadata plus body."""

    def __init__(self, data: Dict[str, Any]):
        """Wrap an already normalized tree. Use create() or from_tree() instead."""
        self.data = data

    @classmethod
    def create(cls, title: str = "", description: str = "") -> "Document":
        """Create an empty document with a new file id."""
        now = now_iso()
        data = {
            "root": {
                "head": {
                    "file_id": f"{config.FILE_ID_PREFIX}{uuid.uuid4()}",
                    "file_version": config.INITIAL_FILE_VERSION,
                    "file_title": _text(title, "file_title"),
                    "file_description": _text(description, "file_description"),
                    "created_at": now,
                    "updated_at": now,
                    "is_encrypted": False,
                    "options": {
                        "column_alias": {"col": []},
                        "column_order": {"col": []},
                        "invisible_columns": {"col": []},
                    },
                },
                "body": {
                    "sequence": {"table": []},
                    "tables": {"table": []},
                },
            },
        }
        document = cls(data)
        logger.info(f"Created document {document.file_id}")
        return document

    @classmethod
    def from_tree(cls, tree: Mapping) -> "Document":
        """
        Build a document from a parsed tree whose body is in clear text.

        The tree is copied, scalar fields are converted to their model types
        and sequence counters are repaired so no serial number can be reused.

        Raises:
            ParseError: If required structure is missing or ids are duplicated.
        """
        data = copy.deepcopy(dict(tree))
        root = _require_mapping(data.get("root"), "root")
        head = _require_mapping(root.get("head"), "root.head")
        body = root.get("body")
        if not isinstance(body, Mapping):
            if isinstance(body, str) and body.strip():
                raise ParseError("Document body is encrypted and must be decrypted first")
            body = {}
        root["body"] = body

        _normalize_head(head)
        _normalize_body(body)
        return cls(data)

    def to_tree(self) -> Dict[str, Any]:
        """A deep copy of the underlying tree."""
        return copy.deepcopy(self.data)

    @property
    def file_id(self) -> str:
        return self.data["root"]["head"]["file_id"]

    @property
    def head(self) -> "HeadView":
        return HeadView(self)

    @property
    def options(self) -> "OptionsView":
        return OptionsView(self)

    @property
    def body(self) -> "BodyView":
        return BodyView(self)

    def touch(self, timestamp: Optional[str] = None) -> str:
        """Refresh updated_at and return the timestamp written."""
        timestamp = timestamp or now_iso()
        self.data["root"]["head"]["updated_at"] = timestamp
        return timestamp

    def __eq__(self, other):
        if not isinstance(other, Document):
            return NotImplemented
        return self.data == other.data

    def __repr__(self):
        return f"Document(file_id={self.file_id!r}, tables={len(self.body.table_ids())})"


def _normalize_head(head: Dict[str, Any]) -> None:
    file_id = head.get("file_id")
    if not isinstance(file_id, str) or not file_id.strip():
        raise ParseError("Document head has no file_id")
    head["file_id"] = file_id.strip()

    version = head.get("file_version")
    if not isinstance(version, str) or not version:
        logger.warning(f"Document {file_id} has no file_version, using {config.INITIAL_FILE_VERSION}")
        head["file_version"] = config.INITIAL_FILE_VERSION
    for name in ("file_title", "file_description", "created_at", "updated_at"):
        if not isinstance(head.get(name), str):
            head[name] = ""

    head["is_encrypted"] = parse_bool(head.get("is_encrypted", False), "is_encrypted")
    if "kdf_iterations" in head:
        head["kdf_iterations"] = parse_int(head["kdf_iterations"], "kdf_iterations")

    options = head.get("options")
    if not isinstance(options, Mapping):
        options = head["options"] = {}
    for name in ("column_alias", "column_order", "invisible_columns"):
        options[name] = {"col": list(_list_of(options.get(name), "col"))}

    for entry in options["column_alias"]["col"]:
        if not isinstance(entry, Mapping) or not entry.get(ID):
            raise ParseError("Column alias entry has no id")
        entry.setdefault(TEXT, "")
    for name in ("column_order", "invisible_columns"):
        if not all(isinstance(key, str) for key in options[name]["col"]):
            raise ParseError(f"Entries of {name} must be column keys")


def _normalize_body(body: Dict[str, Any]) -> None:
    body["sequence"] = {"table": list(_list_of(body.get("sequence"), "table"))}
    body["tables"] = {"table": list(_list_of(body.get("tables"), "table"))}

    counters: Dict[str, int] = {}
    for entry in body["sequence"]["table"]:
        if not isinstance(entry, Mapping) or not entry.get(ID):
            raise ParseError("Sequence entry has no table id")
        entry[TEXT] = parse_int(entry.get(TEXT, 0), f"sequence of {entry[ID]}")
        if entry[ID] in counters:
            raise ParseError(f"Duplicate sequence entry for table {entry[ID]}")
        counters[entry[ID]] = entry[TEXT]

    table_ids: Set[str] = set()
    for table in body["tables"]["table"]:
        if not isinstance(table, Mapping):
            raise ParseError("Table entry is not an element")
        thead = _require_mapping(table.get("thead"), "table thead")
        table_id = thead.get("id")
        if not isinstance(table_id, str) or not table_id:
            raise ParseError("Table has no id")
        if table_id in table_ids:
            raise ParseError(f"Duplicate table id {table_id}")
        table_ids.add(table_id)
        for name in ("nm", "sm", "ca", "ua"):
            if not isinstance(thead.get(name), str):
                thead[name] = ""

        accounts = list(_list_of(table.get("tbody"), "ac"))
        table["tbody"] = {"ac": accounts}
        serial_numbers: Set[int] = set()
        for account in accounts:
            if not isinstance(account, Mapping):
                raise ParseError(f"Account entry in table {table_id} is not an element")
            account["sn"] = parse_int(account.get("sn"), f"account serial number in {table_id}")
            if account["sn"] in serial_numbers:
                raise ParseError(f"Duplicate serial number {account['sn']} in table {table_id}")
            serial_numbers.add(account["sn"])

        highest = max(serial_numbers, default=0)
        if table_id not in counters:
            logger.warning(f"Table {table_id} has no sequence entry, starting at {highest}")
            body["sequence"]["table"].append({ID: table_id, TEXT: highest})
            counters[table_id] = highest
        elif counters[table_id] < highest:
            logger.warning(f"Sequence of table {table_id} is behind its accounts, raising it to {highest}")
            for entry in body["sequence"]["table"]:
                if entry[ID] == table_id:
                    entry[TEXT] = highest
            counters[table_id] = highest

    orphans = set(counters) - table_ids
    if orphans:
        logger.warning(f"Dropping sequence entries without a table: {sorted(orphans)}")
        body["sequence"]["table"] = [e for e in body["sequence"]["table"] if e[ID] not in orphans]


class HeadView:
    """Cleartext metadata of a document."""

    def __init__(self, document: Document):
        self.document = document

    @property
    def _head(self) -> Dict[str, Any]:
        return self.document.data["root"]["head"]

    @property
    def file_id(self) -> str:
        return self._head["file_id"]

    @property
    def file_version(self) -> str:
        return self._head["file_version"]

    @file_version.setter
    def file_version(self, value: str):
        split_version(value)
        self._head["file_version"] = str(value)
        self.document.touch()

    @property
    def system_version(self) -> str:
        return split_version(self.file_version)[0]

    @property
    def local_version(self) -> int:
        return split_version(self.file_version)[1]

    def set_system_version(self, system_version) -> None:
        """Set the operator-controlled part of file_version, keeping the local count."""
        system_version = str(system_version)
        if not _SYSTEM_VERSION_RE.match(system_version):
            raise ValidationError(f"Invalid system version: {system_version!r}")
        self.file_version = f"{system_version}{config.VERSION_SEPARATOR}{self.local_version}"

    def increment_local_version(self) -> str:
        self._head["file_version"] = increment_local_version(self.file_version)
        return self._head["file_version"]

    @property
    def file_title(self) -> str:
        return self._head["file_title"]

    @file_title.setter
    def file_title(self, value: str):
        self._head["file_title"] = _text(value, "file_title")
        self.document.touch()

    @property
    def file_description(self) -> str:
        return self._head["file_description"]

    @file_description.setter
    def file_description(self, value: str):
        self._head["file_description"] = _text(value, "file_description")
        self.document.touch()

    @property
    def created_at(self) -> str:
        return self._head["created_at"]

    @property
    def updated_at(self) -> str:
        return self._head["updated_at"]

    @property
    def is_encrypted(self) -> bool:
        return self._head["is_encrypted"]

    @property
    def kdf_iterations(self) -> Optional[int]:
        """PBKDF2 iterations of the last encrypted export, if any."""
        return self._head.get("kdf_iterations")

    @property
    def options(self) -> "OptionsView":
        return OptionsView(self.document)


class OptionsView:
    """Display preferences: column aliases, column order and hidden columns."""

    def __init__(self, document: Document):
        self.document = document

    @property
    def _options(self) -> Dict[str, Any]:
        return self.document.data["root"]["head"]["options"]

    @property
    def column_alias(self) -> Dict[str, str]:
        return {entry[ID]: entry[TEXT] for entry in self._options["column_alias"]["col"]}

    @property
    def column_order(self) -> List[str]:
        return list(self._options["column_order"]["col"])

    @property
    def invisible_columns(self) -> List[str]:
        return list(self._options["invisible_columns"]["col"])

    def known_columns(self) -> Set[str]:
        """Standard account columns plus every field key used by an account."""
        columns = set(config.STANDARD_COLUMNS)
        for table in self.document.body.tables():
            for account in table.accounts():
                columns.update(account.data().keys())
        return columns

    def _check_column(self, key: str) -> None:
        if key not in self.known_columns():
            raise ValidationError(f"Unknown column key: {key!r}")

    def set_column_alias(self, key: str, label: str) -> None:
        self._check_column(key)
        label = _text(label, "column alias")
        entries = self._options["column_alias"]["col"]
        for entry in entries:
            if entry[ID] == key:
                entry[TEXT] = label
                break
        else:
            entries.append({ID: key, TEXT: label})
        self.document.touch()

    def remove_column_alias(self, key: str) -> bool:
        entries = self._options["column_alias"]["col"]
        remaining = [entry for entry in entries if entry[ID] != key]
        if len(remaining) == len(entries):
            return False
        self._options["column_alias"]["col"] = remaining
        self.document.touch()
        return True

    def clear_column_alias(self) -> None:
        self._options["column_alias"]["col"] = []
        self.document.touch()

    def set_column_order(self, keys: Iterable[str]) -> None:
        """Replace the column order. Keys must be known and unique."""
        keys = list(keys)
        for key in keys:
            self._check_column(key)
        if len(set(keys)) != len(keys):
            raise ValidationError("Column order contains duplicate keys")
        self._options["column_order"]["col"] = keys
        self.document.touch()

    def clear_column_order(self) -> None:
        self._options["column_order"]["col"] = []
        self.document.touch()

    def set_invisible_column(self, key: str) -> None:
        self._check_column(key)
        columns = self._options["invisible_columns"]["col"]
        if key not in columns:
            columns.append(key)
            self.document.touch()

    def remove_invisible_column(self, key: str) -> bool:
        columns = self._options["invisible_columns"]["col"]
        if key not in columns:
            return False
        columns.remove(key)
        self.document.touch()
        return True

    def clear_invisible_columns(self) -> None:
        self._options["invisible_columns"]["col"] = []
        self.document.touch()


class BodyView:
    """The tables of a document and their serial number counters."""

    def __init__(self, document: Document):
        self.document = document

    @property
    def _body(self) -> Dict[str, Any]:
        return self.document.data["root"]["body"]

    @property
    def _sequence(self) -> List[Dict[str, Any]]:
        return self._body["sequence"]["table"]

    @property
    def _tables(self) -> List[Dict[str, Any]]:
        return self._body["tables"]["table"]

    def table_ids(self) -> List[str]:
        return [table["thead"]["id"] for table in self._tables]

    def tables(self) -> List["TableView"]:
        return [TableView(self.document, table_id) for table_id in self.table_ids()]

    def get_table(self, table_id: str) -> Optional["TableView"]:
        if table_id not in self.table_ids():
            return None
        return TableView(self.document, table_id)

    def sequence_value(self, table_id: str) -> Optional[int]:
        """Last serial number handed out in the table, or None for an unknown table."""
        for entry in self._sequence:
            if entry[ID] == table_id:
                return entry[TEXT]
        return None

    def _generate_table_id(self) -> str:
        existing = set(self.table_ids()) | {entry[ID] for entry in self._sequence}
        if len(existing) >= config.TABLE_ID_MAX - config.TABLE_ID_MIN + 1:
            raise ValidationError("No table ids left in this document")
        while True:
            number = config.TABLE_ID_MIN + secrets.randbelow(config.TABLE_ID_MAX - config.TABLE_ID_MIN + 1)
            table_id = f"{config.TABLE_ID_PREFIX}{number}"
            if table_id not in existing:
                return table_id

    def add_table(self, name: str = "", summary: str = "") -> "TableView":
        """
        Add an empty table with a new, collision-free id.

        Args:
            name: Table name
            summary: Table description

        Returns:
            View of the new table
        """
        name = _text(name, "table name")
        summary = _text(summary, "table summary")
        now = now_iso()
        table_id = self._generate_table_id()
        self._tables.append({
            "thead": {
                "id": table_id,
                "nm": name,
                "sm": summary,
                "ca": now,
                "ua": now,
            },
            "tbody": {"ac": []},
        })
        self._sequence.append({ID: table_id, TEXT: 0})
        self.document.touch(now)
        logger.debug(f"Added table {table_id} to {self.document.file_id}")
        return TableView(self.document, table_id)

    def remove_table(self, table_id: str) -> bool:
        """Remove a table with its accounts. Returns False if there is no such table."""
        tables = self._tables
        remaining = [table for table in tables if table["thead"]["id"] != table_id]
        if len(remaining) == len(tables):
            return False
        self._body["tables"]["table"] = remaining
        self._body["sequence"]["table"] = [entry for entry in self._sequence if entry[ID] != table_id]
        self.document.touch()
        logger.debug(f"Removed table {table_id} from {self.document.file_id}")
        return True

    def add_account(self, table_id: str, fields: Mapping) -> "AccountView":
        """Add an account to a table. Raises NotFoundError for an unknown table."""
        return TableView(self.document, table_id).add_account(fields)

    def _next_serial_number(self, table_id: str) -> int:
        for entry in self._sequence:
            if entry[ID] == table_id:
                entry[TEXT] += 1
                return entry[TEXT]
        raise NotFoundError(f"Sequence for table ID '{table_id}' not found.")


class TableView:
    """A named group of accounts."""

    def __init__(self, document: Document, table_id: str):
        self.document = document
        self.table_id = table_id
        self._table  # raises NotFoundError

    @property
    def _table(self) -> Dict[str, Any]:
        for table in self.document.data["root"]["body"]["tables"]["table"]:
            if table["thead"]["id"] == self.table_id:
                return table
        raise NotFoundError(f"Table with ID '{self.table_id}' not found.")

    @property
    def _accounts(self) -> List[Dict[str, Any]]:
        return self._table["tbody"]["ac"]

    @property
    def id(self) -> str:
        return self._table["thead"]["id"]

    @property
    def name(self) -> str:
        return self._table["thead"]["nm"]

    @property
    def summary(self) -> str:
        return self._table["thead"]["sm"]

    @property
    def created_at(self) -> str:
        return self._table["thead"]["ca"]

    @property
    def updated_at(self) -> str:
        return self._table["thead"]["ua"]

    @property
    def sequence_value(self) -> int:
        return self.document.body.sequence_value(self.table_id)

    def _touch(self, timestamp: Optional[str] = None) -> str:
        timestamp = self.document.touch(timestamp)
        self._table["thead"]["ua"] = timestamp
        return timestamp

    def update(self, name: Optional[str] = None, summary: Optional[str] = None) -> None:
        thead = self._table["thead"]
        name = _text(name, "table name") if name is not None else None
        summary = _text(summary, "table summary") if summary is not None else None
        if name is not None:
            thead["nm"] = name
        if summary is not None:
            thead["sm"] = summary
        self._touch()

    def add_account(self, fields: Mapping) -> "AccountView":
        """
        Add an account and assign it the next serial number of this table.

        Args:
            fields: Account fields. nm, it, ct, sm and st are required; any
                other key matching FIELD_NAME_PATTERN is stored as well.

        Returns:
            View of the new account

        Raises:
            ValidationError: If a required field is missing or a key is invalid.
        """
        if not isinstance(fields, Mapping):
            raise ValidationError("Account data must be a mapping")
        for field in config.ACCOUNT_REQUIRED_FIELDS:
            if fields.get(field) is None:
                raise ValidationError(f"Missing required field in account data: {field}")
        values = {key: value for key, value in _field_values(fields).items() if value is not None}

        now = now_iso()
        serial_number = self.document.body._next_serial_number(self.table_id)
        account = {"sn": serial_number, "ca": now, "ua": now}
        account.update(values)
        self._accounts.append(account)
        self._touch(now)
        return AccountView(self.document, self.table_id, serial_number)

    def get_account(self, serial_number: int) -> Optional["AccountView"]:
        if not any(account["sn"] == serial_number for account in self._accounts):
            return None
        return AccountView(self.document, self.table_id, serial_number)

    def accounts(self) -> List["AccountView"]:
        return [AccountView(self.document, self.table_id, account["sn"]) for account in self._accounts]

    def remove_account(self, serial_number: int) -> bool:
        """Remove an account. Its serial number is never handed out again."""
        accounts = self._accounts
        remaining = [account for account in accounts if account["sn"] != serial_number]
        if len(remaining) == len(accounts):
            return False
        self._table["tbody"]["ac"] = remaining
        self._touch()
        return True

    def __len__(self):
        return len(self._accounts)

    def __repr__(self):
        return f"TableView(table_id={self.table_id!r})"


class AccountView:
    """One credential record, keyed by (table id, serial number)."""

    def __init__(self, document: Document, table_id: str, serial_number: int):
        self.document = document
        self.table_id = table_id
        self.sn = serial_number
        self._account  # raises NotFoundError

    @property
    def _table(self) -> Dict[str, Any]:
        return TableView(self.document, self.table_id)._table

    @property
    def _account(self) -> Dict[str, Any]:
        for account in self._table["tbody"]["ac"]:
            if account["sn"] == self.sn:
                return account
        raise NotFoundError(f"Account with SN '{self.sn}' not found in table '{self.table_id}'.")

    @property
    def serial_number(self) -> int:
        return self._account["sn"]

    @property
    def service_name(self) -> str:
        return self._account.get("nm", "")

    @property
    def initial(self) -> str:
        return self._account.get("it", "")

    @property
    def category(self) -> str:
        return self._account.get("ct", "")

    @property
    def summary(self) -> str:
        return self._account.get("sm", "")

    @property
    def status(self) -> str:
        return self._account.get("st", "")

    @property
    def created_at(self) -> str:
        return self._account.get("ca", "")

    @property
    def updated_at(self) -> str:
        return self._account.get("ua", "")

    def get(self, key: str, default: Any = None) -> Any:
        return self._account.get(key, default)

    def data(self) -> Dict[str, Any]:
        """A copy of all account fields."""
        return copy.deepcopy(self._account)

    def update(self, fields: Mapping) -> None:
        """
        Merge fields into the account, last write wins per field.

        A value of None removes an optional field. sn, ca and ua cannot be
        written and required fields cannot be removed.
        """
        if not isinstance(fields, Mapping):
            raise ValidationError("Account data must be a mapping")
        values = _field_values(fields)
        for key, value in values.items():
            if value is None and key in config.ACCOUNT_REQUIRED_FIELDS:
                raise ValidationError(f"Required field '{key}' cannot be removed")

        account = self._account
        for key, value in values.items():
            if value is None:
                account.pop(key, None)
            else:
                account[key] = value
        now = now_iso()
        account["ua"] = now
        self._table["thead"]["ua"] = now
        self.document.touch(now)

    def __repr__(self):
        return f"AccountView(table_id={self.table_id!r}, sn={self.sn})"
