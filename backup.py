"""
backup.py – Encrypted backups of the data directory.

A backup is a ZIP archive of everything in the data directory, encrypted
as a whole with a key derived from the backup password (see crypto.py for
the container layout).  The live database is not copied byte-for-byte;
instead a consistent snapshot is taken through sqlite's backup API so that
writes happening during the backup cannot tear it.

The archive also carries a manifest.json listing what was included.
"""

import contextlib
import datetime
import io
import json
import logging
import os
import tempfile
import zipfile
from typing import Dict

from config import APP_NAME, APP_VERSION, DB_FILENAME
from crypto import CryptoManager, is_encodable
from errors import BackupDecryptionError, BackupError, RecordValidationError
from storage import Database, atomic_output

logger = logging.getLogger(APP_NAME)

MANIFEST_NAME = "manifest.json"

# Files next to the live database that must never be archived directly.
_SKIP_SUFFIXES = ("-journal", "-wal", "-shm", ".tmp")


def check_backup_password(password) -> None:
    if not isinstance(password, str) or not password:
        raise RecordValidationError("Backup password cannot be empty.", field="password")
    if not is_encodable(password):
        raise RecordValidationError("Backup password is not valid text.", field="password")


def _build_archive(database: Database, data_dir: str) -> bytes:
    """Return the plaintext ZIP archive of *data_dir* as bytes."""
    db_name = os.path.basename(database.db_path) or DB_FILENAME
    manifest = {
        "app": APP_NAME,
        "version": APP_VERSION,
        "created": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "includes": [],
    }

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        fd, snapshot = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        try:
            database.snapshot_to(snapshot)
            zf.write(snapshot, db_name)
        finally:
            with contextlib.suppress(OSError):
                os.remove(snapshot)
        manifest["includes"].append(db_name)

        for root, dirs, files in os.walk(data_dir):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(root, name)
                arcname = os.path.relpath(path, data_dir).replace(os.sep, "/")
                if arcname == db_name or arcname == MANIFEST_NAME:
                    continue
                if name.startswith(db_name) or name.endswith(_SKIP_SUFFIXES):
                    continue
                zf.write(path, arcname)
                manifest["includes"].append(arcname)

        zf.writestr(MANIFEST_NAME, json.dumps(manifest, indent=2))

    return buffer.getvalue()


def create_encrypted_backup(
    database: Database,
    crypto: CryptoManager,
    data_dir: str,
    dest: str,
    password: str,
) -> str:
    """
    Write an encrypted backup of *data_dir* to *dest* and return *dest*.

    Raises RecordValidationError for an empty password and BackupError when
    the archive cannot be built, encrypted or written.  On failure *dest*
    is left untouched.
    """
    check_backup_password(password)

    try:
        archive = _build_archive(database, data_dir)
    except OSError as exc:
        logger.exception("Failed to build backup archive")
        raise BackupError(f"Could not read the data directory: {exc}") from exc

    try:
        blob = crypto.encrypt_backup(archive, password)
    except Exception as exc:
        logger.exception("Failed to encrypt backup archive")
        raise BackupError("Could not encrypt the backup") from exc

    try:
        with atomic_output(dest) as tmp_path:
            with open(tmp_path, "wb") as fh:
                fh.write(blob)
    except OSError as exc:
        logger.exception("Failed to write backup %s", dest)
        raise BackupError(f"Could not write {dest}: {exc}") from exc

    logger.info("Encrypted backup written to %s (%d bytes)", dest, len(blob))
    return dest


def read_backup(crypto: CryptoManager, path: str, password: str) -> Dict[str, bytes]:
    """
    Decrypt the backup at *path* and return its members as {name: bytes}.

    Raises BackupDecryptionError for a wrong password or a damaged file.
    """
    with open(path, "rb") as fh:
        blob = fh.read()
    archive = crypto.decrypt_backup(blob, password)
    try:
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            return {name: zf.read(name) for name in zf.namelist()}
    except zipfile.BadZipFile as exc:
        raise BackupDecryptionError("Backup contents are not a valid archive") from exc
