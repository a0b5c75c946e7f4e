"""
auth.py – Credential checks and sessions.

AuthGate answers one question: do this username and password match a
stored account?  It keeps no state of its own.  A wrong password or an
unknown user is a normal Rejected result, never an exception; only an
unavailable database raises (StorageError).

Unknown usernames are verified against a dummy hash of the same cost, so
"no such user" and "wrong password" take the same time.

Session is the token the Gateway holds after a successful login; the
Gateway, not AuthGate, decides whether one is required.
"""

import datetime
import logging
import secrets
from dataclasses import dataclass
from typing import ClassVar, NamedTuple, Optional, Union

from config import APP_NAME
from crypto import CryptoManager, is_encodable
from errors import RecordValidationError
from storage import Database

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Accepted:
    identity: str
    accepted: ClassVar[bool] = True


@dataclass(frozen=True)
class Rejected:
    accepted: ClassVar[bool] = False


AuthResult = Union[Accepted, Rejected]


class Session(NamedTuple):
    username: str
    token: str
    issued_at: datetime.datetime
    expires_at: Optional[datetime.datetime]

    @classmethod
    def issue(cls, username: str, timeout_minutes: int = 0) -> "Session":
        now = datetime.datetime.now(datetime.timezone.utc)
        expires = now + datetime.timedelta(minutes=timeout_minutes) if timeout_minutes else None
        return cls(username, secrets.token_urlsafe(32), now, expires)

    def is_valid(self, now: Optional[datetime.datetime] = None) -> bool:
        if self.expires_at is None:
            return True
        now = now or datetime.datetime.now(datetime.timezone.utc)
        return now < self.expires_at


class AuthGate:
    """
    Verifies credentials against the users table.

    Parameters
    ----------
    database : Database
        Source of stored credential records.
    crypto : CryptoManager
        Hashing and constant-time verification.
    """

    def __init__(self, database: Database, crypto: CryptoManager) -> None:
        self.database = database
        self.crypto = crypto

    def authenticate(self, username: str, password: str) -> AuthResult:
        """Return Accepted(username) or Rejected()."""
        if not isinstance(username, str) or not isinstance(password, str):
            return Rejected()
        if not (is_encodable(username) and is_encodable(password)):
            self.crypto.burn_verification(password if is_encodable(password) else "")
            logger.info("Login rejected for credentials that are not valid text")
            return Rejected()

        user = self.database.get_user(username)
        if user is None:
            self.crypto.burn_verification(password)
            logger.info("Login rejected for unknown user")
            return Rejected()

        if self.crypto.verify_password(
            password, user["password_salt"], user["password_hash"], user["iterations"]
        ):
            logger.info("Login accepted for %s", username)
            return Accepted(username)

        logger.info("Login rejected for %s", username)
        return Rejected()

    def has_users(self) -> bool:
        return self.database.count_users() > 0

    def create_user(self, username: str, password: str, min_length: int = 8) -> str:
        """
        Store a new account and return its username.

        Raises RecordValidationError for an empty username, a short
        password or a username that already exists.
        """
        if not isinstance(username, str) or not username.strip():
            raise RecordValidationError("Username cannot be empty.", field="username")
        if not is_encodable(username):
            raise RecordValidationError("Username is not valid text.", field="username")
        if not isinstance(password, str) or len(password) < min_length:
            raise RecordValidationError(
                f"Password must be at least {min_length} characters.", field="password"
            )
        if not is_encodable(password):
            raise RecordValidationError("Password is not valid text.", field="password")
        username = username.strip()
        salt, digest = self.crypto.hash_password(password)
        self.database.add_user(username, salt, digest, self.crypto.iterations)
        return username
