"""
crypto.py – Cryptographic operations for Gestor d'Obres.

This module contains CryptoManager, which is the single place responsible
for every cryptographic concern in the application:

  - Key derivation from a password using PBKDF2-HMAC-SHA256.
  - Salted credential hashing for user accounts, with constant-time
    verification (only the hash and its salt are ever stored).
  - Encrypting and decrypting backup archives with Fernet
    (AES-128-CBC + HMAC-SHA256, provided by the 'cryptography' package).

Encrypted backup layout
-----------------------
  offset  size  content
  0       4     magic b"GOBK"
  4       1     format version (1)
  5       4     PBKDF2 iteration count, big-endian
  9       16    random salt
  25      …     Fernet token of the plaintext archive
"""

import base64
import logging
import os
import struct
from typing import Tuple

from cryptography.exceptions import InvalidKey
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import APP_NAME
from errors import BackupDecryptionError

logger = logging.getLogger(APP_NAME)

# PBKDF2 work factor for new credentials and backups.
KDF_ITERATIONS = 390_000

SALT_LENGTH = 16

BACKUP_MAGIC = b"GOBK"
BACKUP_VERSION = 1
_HEADER = struct.Struct(">4sBI")


def is_encodable(text) -> bool:
    """True if *text* is a str that survives UTF-8 encoding (no lone surrogates)."""
    if not isinstance(text, str):
        return False
    try:
        text.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class CryptoManager:
    """
    Handles all cryptographic operations.

    Parameters
    ----------
    iterations : int
        PBKDF2 iteration count used for *new* hashes and backups.  Stored
        hashes and backups carry their own count, so changing this value
        never invalidates existing data.
    """

    def __init__(self, iterations: int = KDF_ITERATIONS) -> None:
        self.iterations: int = iterations
        # Verified against when a username does not exist, so that the
        # rejection costs as much as a wrong password.
        self._dummy_salt, self._dummy_hash = self.hash_password(
            base64.b64encode(os.urandom(12)).decode("ascii")
        )

    # ------------------------------------------------------------------
    # Key derivation
    # ------------------------------------------------------------------

    @staticmethod
    def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
        return PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=iterations,
        )

    def derive_key(self, password: str, salt: bytes, iterations: int = 0) -> bytes:
        """
        Derive a Fernet-compatible key from *password* and *salt*.

        The raw 32 bytes are URL-safe base64-encoded so they can be passed
        directly to Fernet().
        """
        raw_key = self._kdf(salt, iterations or self.iterations).derive(
            password.encode("utf-8")
        )
        return base64.urlsafe_b64encode(raw_key)

    # ------------------------------------------------------------------
    # Credential hashing
    # ------------------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[bytes, bytes]:
        """Return a fresh (salt, hash) pair for *password*."""
        salt = os.urandom(SALT_LENGTH)
        digest = self._kdf(salt, self.iterations).derive(password.encode("utf-8"))
        return salt, digest

    def verify_password(
        self, password: str, salt: bytes, expected: bytes, iterations: int
    ) -> bool:
        """
        Return True if *password* hashes to *expected* under *salt*.

        The comparison inside PBKDF2HMAC.verify() is constant-time.
        """
        try:
            self._kdf(salt, iterations).verify(password.encode("utf-8"), expected)
            return True
        except InvalidKey:
            return False

    def burn_verification(self, password: str) -> None:
        """Run a full verification against a dummy hash and discard the result."""
        self.verify_password(password, self._dummy_salt, self._dummy_hash, self.iterations)

    # ------------------------------------------------------------------
    # Backup encryption
    # ------------------------------------------------------------------

    def encrypt_backup(self, plaintext: bytes, password: str) -> bytes:
        """Encrypt *plaintext* with a key derived from *password*."""
        salt = os.urandom(SALT_LENGTH)
        key = self.derive_key(password, salt)
        header = _HEADER.pack(BACKUP_MAGIC, BACKUP_VERSION, self.iterations)
        return header + salt + Fernet(key).encrypt(plaintext)

    def decrypt_backup(self, blob: bytes, password: str) -> bytes:
        """
        Reverse encrypt_backup().

        Raises BackupDecryptionError if the blob is not a backup, was
        tampered with, or *password* is wrong.
        """
        header_end = _HEADER.size + SALT_LENGTH
        if len(blob) <= header_end:
            raise BackupDecryptionError("File is too short to be a backup archive")
        magic, version, iterations = _HEADER.unpack_from(blob)
        if magic != BACKUP_MAGIC:
            raise BackupDecryptionError("File is not an encrypted backup archive")
        if version != BACKUP_VERSION:
            raise BackupDecryptionError(f"Unsupported backup format version {version}")

        salt = blob[_HEADER.size:header_end]
        key = self.derive_key(password, salt, iterations)
        try:
            return Fernet(key).decrypt(blob[header_end:])
        except InvalidToken as exc:
            logger.warning("Backup decryption failed: wrong password or corrupt file")
            raise BackupDecryptionError("Wrong password or corrupted backup") from exc
