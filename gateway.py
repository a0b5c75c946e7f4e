"""
gateway.py – The request boundary.

Gateway receives named requests ("db:getProjects", "export:csv", …) with a
JSON-like payload, dispatches them to the storage engine and always answers
with a Result: either success with a value, or failure with a specific
error kind.  No exception escapes handle().

All collaborators arrive through an AppContext built once at startup (see
main.py); nothing here reaches for module-level state.

When the "require_login" setting is on, every db:*, export:* and backup:*
request needs the session created by a successful auth:login.  At most one
session exists at a time; a new login replaces it and a failed login
clears it.
"""

import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from auth import Accepted, AuthGate, Session
from backup import check_backup_password, create_encrypted_backup
from config import APP_NAME, AppConfig
from crypto import CryptoManager
from dialogs import BACKUP_FILETYPES, CSV_FILETYPES, XLSX_FILETYPES, SaveDialog
from errors import (
    AuthenticationRequired, BackupError, ExportError, RecordValidationError, StorageError,
)
from storage import Database, check_export_kind

logger = logging.getLogger(APP_NAME)


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    CANCELLED = "cancelled"
    STORAGE = "storage"
    FILESYSTEM = "filesystem"
    ENCRYPTION = "encryption"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    UNKNOWN_OPERATION = "unknown_operation"
    INTERNAL = "internal"


@dataclass
class Result:
    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    message: str = ""
    field: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, field: Optional[str] = None) -> "Result":
        return cls(ok=False, error=kind, message=message, field=field)

    @classmethod
    def cancelled(cls) -> "Result":
        return cls.failure(ErrorKind.CANCELLED, "Cancelled by the user")

    @property
    def is_cancelled(self) -> bool:
        return self.error is ErrorKind.CANCELLED

    def to_dict(self) -> dict:
        if self.ok:
            return {"ok": True, "value": self.value}
        out = {"ok": False, "error": self.error.value, "message": self.message}
        if self.field is not None:
            out["field"] = self.field
        return out


@dataclass
class AppContext:
    """Everything a Gateway needs, constructed once per process."""

    config: AppConfig
    crypto: CryptoManager
    database: Database
    auth: AuthGate
    dialog: SaveDialog


def _today() -> str:
    return datetime.datetime.now(datetime.timezone.utc).date().isoformat()


def _payload_dict(payload, *required: str) -> dict:
    if not isinstance(payload, dict):
        raise RecordValidationError("Request payload must be an object.")
    for name in required:
        if name not in payload:
            raise RecordValidationError(f"Missing '{name}' in request.", field=name)
    return payload


class Gateway:
    """
    Dispatches requests to their handlers and shapes the results.

    Parameters
    ----------
    context : AppContext
        Shared collaborators.
    """

    def __init__(self, context: AppContext) -> None:
        self.ctx = context
        self.session: Optional[Session] = None

        # channel -> (handler, privileged)
        self._handlers: Dict[str, Tuple[Callable[[Any], Result], bool]] = {
            "db:getProjects":  (self._get_projects, True),
            "db:addProject":   (self._add_project, True),
            "db:getWorkers":   (self._get_workers, True),
            "db:addWorker":    (self._add_worker, True),
            "export:csv":      (self._export_csv, True),
            "export:xlsx":     (self._export_xlsx, True),
            "backup:create":   (self._create_backup, True),
            "auth:login":      (self._login, False),
            "auth:logout":     (self._logout, False),
            "auth:createUser": (self._create_user, False),
        }

    def channels(self) -> List[str]:
        return sorted(self._handlers)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def handle(self, channel: str, payload: Any = None) -> Result:
        """Run the handler for *channel* and return its Result."""
        entry = self._handlers.get(channel) if isinstance(channel, str) else None
        if entry is None:
            return Result.failure(ErrorKind.UNKNOWN_OPERATION, f"Unknown operation: {channel}")
        handler, privileged = entry

        try:
            if privileged:
                self._require_session()
            return handler(payload)
        except AuthenticationRequired as exc:
            return Result.failure(ErrorKind.UNAUTHENTICATED, str(exc))
        except RecordValidationError as exc:
            return Result.failure(ErrorKind.VALIDATION, str(exc), exc.field)
        except ExportError as exc:
            return Result.failure(ErrorKind.FILESYSTEM, str(exc))
        except BackupError as exc:
            kind = ErrorKind.FILESYSTEM if isinstance(exc.__cause__, OSError) else ErrorKind.ENCRYPTION
            return Result.failure(kind, str(exc))
        except StorageError as exc:
            return Result.failure(ErrorKind.STORAGE, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error handling %s", channel)
            return Result.failure(ErrorKind.INTERNAL, f"Unexpected error: {exc}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _require_session(self) -> None:
        if not self.ctx.config.get("require_login", True):
            return
        if self.session is None:
            raise AuthenticationRequired("Login required")
        if not self.session.is_valid():
            logger.info("Session for %s expired", self.session.username)
            self.session = None
            raise AuthenticationRequired("Session expired; please log in again")

    def _has_valid_session(self) -> bool:
        return self.session is not None and self.session.is_valid()

    def _login(self, payload) -> Result:
        payload = _payload_dict(payload, "username", "password")
        result = self.ctx.auth.authenticate(payload["username"], payload["password"])
        if isinstance(result, Accepted):
            self.session = Session.issue(
                result.identity, int(self.ctx.config.get("session_timeout_minutes", 0) or 0)
            )
            return Result.success({"accepted": True, "username": result.identity})
        self.session = None
        return Result.success({"accepted": False, "username": None})

    def _logout(self, payload) -> Result:
        self.session = None
        return Result.success(True)

    def _create_user(self, payload) -> Result:
        payload = _payload_dict(payload, "username", "password")
        if self.ctx.auth.has_users() and not self._has_valid_session():
            return Result.failure(
                ErrorKind.FORBIDDEN, "Only a logged-in user can create further accounts"
            )
        username = self.ctx.auth.create_user(
            payload["username"],
            payload["password"],
            int(self.ctx.config.get("min_password_length", 8)),
        )
        return Result.success(username)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def _get_projects(self, payload) -> Result:
        return Result.success(self.ctx.database.get_projects(payload))

    def _add_project(self, payload) -> Result:
        return Result.success(self.ctx.database.add_project(payload))

    def _get_workers(self, payload) -> Result:
        return Result.success(self.ctx.database.get_workers())

    def _add_worker(self, payload) -> Result:
        return Result.success(self.ctx.database.add_worker(payload))

    # ------------------------------------------------------------------
    # Export and backup
    # ------------------------------------------------------------------

    def _export(self, payload, extension: str, filetypes, write: Callable) -> Result:
        payload = _payload_dict(payload, "type")
        kind = payload["type"]
        check_export_kind(kind)

        dest = self.ctx.dialog.ask_save_path(
            f"Export {kind}", f"{kind}-{_today()}.{extension}", filetypes
        )
        if not dest:
            logger.info("Export of %s cancelled", kind)
            return Result.cancelled()
        return Result.success(write(kind, payload.get("params"), dest))

    def _export_csv(self, payload) -> Result:
        delimiter = self.ctx.config.get("csv_delimiter", ",")
        return self._export(
            payload, "csv", CSV_FILETYPES,
            lambda kind, params, dest: self.ctx.database.export_csv(kind, params, dest, delimiter),
        )

    def _export_xlsx(self, payload) -> Result:
        width = self.ctx.config.get("excel_column_width", 20)
        return self._export(
            payload, "xlsx", XLSX_FILETYPES,
            lambda kind, params, dest: self.ctx.database.export_xlsx(kind, params, dest, width),
        )

    def _create_backup(self, payload) -> Result:
        payload = _payload_dict(payload, "password")
        password = payload["password"]
        check_backup_password(password)

        dest = self.ctx.dialog.ask_save_path(
            "Create encrypted backup", f"backup-{_today()}.zip", BACKUP_FILETYPES
        )
        if not dest:
            logger.info("Backup cancelled")
            return Result.cancelled()

        path = create_encrypted_backup(
            self.ctx.database, self.ctx.crypto, self.ctx.config.data_dir, dest, password
        )
        return Result.success(path)
