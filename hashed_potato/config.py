"""
Configuration constants for the Hashed Potato Lite document engine.
"""

from dataclasses import dataclass
from typing import Tuple

from .errors import ConfigurationError

# Application Metadata
APP_VERSION = "1.0"  # Use: Current version of the package. Type: str. Range: Semantic versioning string (e.g., "1.0.0")
APP_NAME = "Hashed Potato Lite"  # Use: Full name of the application. Type: str. Range: Any valid string.

# Security Settings
SALT_SIZE = 16  # Use: Size of the PBKDF2 salt in bytes, generated fresh for every encryption. Type: int. Range: 16 bytes (128 bits).
KEY_SIZE = 32  # Use: Size of the derived encryption key in bytes. Corresponds to AES-256. Type: int. Range: 32 bytes.
NONCE_SIZE = 12  # Use: Size of the AES-GCM nonce (iv) in bytes, generated fresh for every encryption. Type: int. Range: 12 bytes (96 bits) is the recommended size for GCM.
TAG_SIZE = 16  # Use: Size of the AES-GCM authentication tag in bytes, appended to the ciphertext. Type: int. Range: 16 bytes (128 bits).
PBKDF2_ITERATIONS = 200000  # Use: Default number of PBKDF2-HMAC-SHA256 iterations for new ciphertext. Only ever raised between releases. Type: int. Range: >= PBKDF2_MIN_ITERATIONS.
PBKDF2_MIN_ITERATIONS = 100000  # Use: Floor for the PBKDF2 iteration count; lower values are rejected. Type: int. Range: 100000.
PBKDF2_MAX_ITERATIONS = 2000000  # Use: Ceiling for the PBKDF2 iteration count. The count is read from the unauthenticated head, so larger values are refused instead of stalling import. Type: int. Range: 10 * PBKDF2_ITERATIONS.
LEGACY_PBKDF2_ITERATIONS = 200000  # Use: Iteration count assumed for encrypted files written before kdf_iterations was recorded in the head. Type: int. Range: 200000.

# Document Format
FILE_ID_PREFIX = "HPL-"  # Use: Prefix of every file id, followed by a random UUID4. Type: str. Range: "HPL-".
TABLE_ID_PREFIX = "TBL-"  # Use: Prefix of every table id, followed by four random digits. Type: str. Range: "TBL-".
TABLE_ID_MIN = 1000  # Use: Lowest numeric part of a table id. Type: int. Range: 1000.
TABLE_ID_MAX = 9999  # Use: Highest numeric part of a table id. Type: int. Range: 9999.
INITIAL_FILE_VERSION = "1.0"  # Use: file_version of a freshly created document. Type: str. Range: "<system>.<local>".
VERSION_SEPARATOR = "."  # Use: Separator between the system and local parts of file_version. Type: str. Range: ".".
ATTRIBUTE_PREFIX = "_"  # Use: Key prefix marking a markup attribute in the parsed tree. Type: str. Range: Single character.
TEXT_KEY = "#text"  # Use: Key holding element text when the element also has attributes or children. Type: str. Range: "#text".
ROOT_TAG = "root"  # Use: Tag of the document root element. Type: str. Range: "root".

ALWAYS_ARRAY_PATHS = (  # Use: Dotted element paths that always parse to a list, even with zero or one element. Type: tuple[str]. Range: Paths rooted at ROOT_TAG.
    "root.head.options.column_alias.col",
    "root.head.options.column_order.col",
    "root.head.options.invisible_columns.col",
    "root.body.sequence.table",
    "root.body.tables.table",
    "root.body.tables.table.tbody.ac",
)

# Account Settings
ACCOUNT_REQUIRED_FIELDS = ("nm", "it", "ct", "sm", "st")  # Use: Account fields that must be supplied when an account is added (service name, initial, category, summary, status). Type: tuple[str]. Range: Valid element names.
ACCOUNT_RESERVED_FIELDS = ("sn", "ca", "ua")  # Use: Account fields managed by the engine (serial number, created at, updated at); callers cannot write them. Type: tuple[str]. Range: Valid element names.
STANDARD_COLUMNS = ("sn", "nm", "it", "ct", "sm", "st", "ca", "ua")  # Use: Column keys every account has; always accepted by the display options. Type: tuple[str]. Range: Reserved plus required fields.
FIELD_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_.-]*$"  # Use: Pattern an account field key must match to be stored as an element name. Type: str (regex). Range: Valid XML element names without a namespace.

# Session and Storage Settings
CONFIG_DIR_NAME = ".hashed-potato"  # Use: Name of the hidden directory within the user's home directory where session state is kept. Type: str. Range: Any valid directory name.
SESSION_STATE_FILE = "state.json"  # Use: Filename of the session key-value store. Type: str. Range: Any valid filename.
MAX_RECENT_FILES = 10  # Use: Maximum number of recently opened document paths to remember. Type: int. Range: Positive integer.
KEYS_FILE_SUFFIX = ".keys"  # Use: Suffix of the sidecar file holding the base64 iv and salt of an encrypted document. Type: str. Range: Any valid filename suffix.
DEFAULT_DOCUMENT_FILE = "credentials.xml"  # Use: Default filename used by the command line when no path is given. Type: str. Range: Any valid filename.

# Logging
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'  # Use: Format passed to logging.basicConfig by the command line. Type: str. Range: Any logging format string.


@dataclass(frozen=True)
class EngineConfig:
    """Settings for one DocumentPipeline instance.

    Built once at startup and handed to the pipeline, which derives its codec
    and crypto manager from it.
    """
    pbkdf2_iterations: int = PBKDF2_ITERATIONS
    always_array_paths: Tuple[str, ...] = ALWAYS_ARRAY_PATHS
    attribute_prefix: str = ATTRIBUTE_PREFIX
    text_key: str = TEXT_KEY
    pretty: bool = True

    def __post_init__(self):
        if not PBKDF2_MIN_ITERATIONS <= self.pbkdf2_iterations <= PBKDF2_MAX_ITERATIONS:
            raise ConfigurationError(
                f"PBKDF2 iteration count must be between {PBKDF2_MIN_ITERATIONS} and {PBKDF2_MAX_ITERATIONS}, "
                f"got {self.pbkdf2_iterations}"
            )
        if len(self.attribute_prefix) != 1:
            raise ConfigurationError("attribute_prefix must be a single character")
        if self.text_key.startswith(self.attribute_prefix):
            raise ConfigurationError("text_key must not start with the attribute prefix")
        # Accept lists from callers but keep the frozen value hashable
        object.__setattr__(self, "always_array_paths", tuple(self.always_array_paths))
