"""
File storage for exported documents.

The engine itself only turns documents into markup and back. DocumentFile
writes that markup to disk atomically with owner-only permissions and keeps
the iv and salt of an encrypted export in a small JSON sidecar, so they are
never separated from the file they belong to. The passphrase is never stored.
"""

import os
import json
import stat
import platform
import logging
import shutil
from typing import Iterable, List, NamedTuple, Optional, Tuple

from . import config
from .errors import StorageError
from .pipeline import ExportResult

logger = logging.getLogger(__name__)

ERROR_ACCESS_DENIED = 5
TMP_SUFFIX = '.tmp'


class StoredDocument(NamedTuple):
    """Markup read from disk, with the iv and salt needed to decrypt it."""
    markup: str
    iv: Optional[str] = None
    salt: Optional[str] = None


class DocumentFile:
    """A document on disk plus its key-parameter sidecar."""

    def __init__(self, filepath: str):
        """
        Args:
            filepath: Path to the document file
        """
        self.filepath = filepath
        self.keys_path = filepath + config.KEYS_FILE_SUFFIX

    def exists(self) -> bool:
        return os.path.exists(self.filepath)

    def read(self) -> StoredDocument:
        """
        Read the document and, if present, its iv and salt.

        Raises:
            StorageError: If the file or sidecar cannot be read.
        """
        try:
            with open(self.filepath, 'r', encoding='utf-8') as f:
                markup = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Cannot read document file {self.filepath}: {e}", stage="read") from e

        if not os.path.exists(self.keys_path):
            return StoredDocument(markup)

        try:
            with open(self.keys_path, 'r', encoding='utf-8') as f:
                keys = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read key parameters {self.keys_path}: {e}", stage="read") from e
        return StoredDocument(markup, keys.get('iv'), keys.get('salt'))

    def write(self, result: ExportResult, file_id: Optional[str] = None) -> None:
        """
        Save an export. The sidecar is written for encrypted exports and
        removed for plain ones.

        Both files are staged next to their targets first. The previous
        sidecar is kept until the new markup is in place, so a failed write
        never pairs ciphertext with key parameters from another export.

        Args:
            result: Output of DocumentPipeline.export_document()
            file_id: File id recorded in the sidecar for reference

        Raises:
            StorageError: If the export cannot be written. The files on disk
                are then left as they were.
        """
        staged = []
        try:
            staged.append((self._stage(self.filepath, result.markup), self.filepath))
            if result.is_encrypted:
                keys = {'file_id': file_id, 'iv': result.iv, 'salt': result.salt}
                staged.append((self._stage(self.keys_path, json.dumps(keys, indent=2)), self.keys_path))
            if not self._set_file_permissions(*(tmp_path for tmp_path, _ in staged)):
                logger.warning(f"Failed to set secure file permissions for {self.filepath}. This might indicate a permission issue.")
        except OSError as e:
            self._discard([self.filepath + TMP_SUFFIX, self.keys_path + TMP_SUFFIX])
            logger.error(f"Error saving file {self.filepath}: {e}", exc_info=True)
            raise StorageError(f"Cannot write {self.filepath}: {e}", stage="write") from e

        self._commit(staged)
        if not result.is_encrypted and os.path.exists(self.keys_path):
            os.remove(self.keys_path)
            logger.info(f"Removed stale key parameters {self.keys_path}")

    def _stage(self, path: str, content: str) -> str:
        tmp_path = path + TMP_SUFFIX
        with open(tmp_path, 'w', encoding='utf-8') as f:
            f.write(content)
        return tmp_path

    def _commit(self, staged: List[Tuple[str, str]]) -> None:
        """Move staged files into place, sidecar first, markup last."""
        backup = None
        replaces_keys = len(staged) > 1 and os.path.exists(self.keys_path)
        try:
            if replaces_keys:
                shutil.copy2(self.keys_path, self.keys_path + '.bak')
                backup = self.keys_path + '.bak'
            for tmp_path, path in reversed(staged):
                os.replace(tmp_path, path)
        except OSError as e:
            if backup:
                shutil.copy2(backup, self.keys_path)
            elif len(staged) > 1 and not replaces_keys:
                self._discard([self.keys_path])
            self._discard(tmp_path for tmp_path, _ in staged)
            logger.error(f"Error saving file {self.filepath}: {e}", exc_info=True)
            raise StorageError(f"Cannot write {self.filepath}: {e}", stage="write") from e
        finally:
            if backup:
                os.remove(backup)

    @staticmethod
    def _discard(paths: Iterable[str]) -> None:
        for path in paths:
            if os.path.exists(path):
                os.remove(path)

    def _set_file_permissions(self, *paths: str) -> bool:
        """Make each file readable/writable by owner only."""
        if platform.system() == 'Windows':
            return self._set_windows_file_permissions(paths)
        for path in paths:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 600
        return True

    def _set_windows_file_permissions(self, paths: Iterable[str]) -> bool:
        """
        Give the current user sole access to each file through a protected
        DACL with a single read/write entry.

        Returns:
            False if pywin32 is missing or a DACL could not be applied.
            A file whose DACL may not be changed (access denied) is skipped.
        """
        try:
            import win32api
            import win32con
            import win32security
        except ImportError:
            logger.warning("pywin32 not installed, document files keep their default Windows permissions.")
            return False

        try:
            user_sid, _, _ = win32security.LookupAccountName(None, win32api.GetUserName())
        except win32api.error as e:
            logger.error(f"Cannot resolve the current Windows user: {e}")
            return False
        dacl = win32security.ACL()
        dacl.AddAccessAllowedAce(win32security.ACL_REVISION, win32con.GENERIC_READ | win32con.GENERIC_WRITE, user_sid)

        for path in paths:
            try:
                win32security.SetNamedSecurityInfo(
                    path,
                    win32security.SE_FILE_OBJECT,
                    win32security.DACL_SECURITY_INFORMATION | win32security.PROTECTED_DACL_SECURITY_INFORMATION,
                    None,
                    None,
                    dacl,
                    None,
                )
            except win32api.error as e:
                if e.winerror == ERROR_ACCESS_DENIED:
                    logger.warning(f"Access denied while restricting permissions of {path}; left unchanged.")
                    continue
                logger.error(f"Failed to set Windows file permissions for {path}: {e}")
                return False
        return True
