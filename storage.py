"""
storage.py – Record storage and retrieval.

This module contains Database, the single class responsible for all
persistent records:

  - Applying schema migrations when the database is opened.
  - Validating and inserting projects and workers.
  - Filtered retrieval of projects and workers.
  - Serialising records to CSV or Excel files.
  - Storing user credential records (salt + hash only).
  - Taking a consistent snapshot of the live database for backups.

Validation problems are reported with RecordValidationError, whose 'field'
attribute names the offending field so the caller can point the user at it.
Every sqlite3 failure is re-raised as StorageError.

The sqlite3 connection is shared between threads and guarded by a single
lock, so concurrent gateway calls are serialised here.
"""

import contextlib
import csv
import datetime
import logging
import math
import os
import re
import sqlite3
import tempfile
import threading
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from openpyxl import Workbook
from openpyxl.utils import get_column_letter

from config import APP_NAME
from errors import ExportError, RecordValidationError, StorageError

logger = logging.getLogger(APP_NAME)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

# Each entry upgrades the schema by one version (tracked in PRAGMA
# user_version).  Never edit a released entry; append a new one instead.
MIGRATIONS: List[str] = [
    """
    CREATE TABLE projects (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        name        TEXT NOT NULL,
        client      TEXT,
        address     TEXT,
        status      TEXT NOT NULL DEFAULT 'active',
        start_date  TEXT,
        end_date    TEXT,
        budget      REAL,
        notes       TEXT,
        created_at  TEXT NOT NULL
    );
    CREATE TABLE workers (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        name         TEXT NOT NULL,
        role         TEXT NOT NULL,
        phone        TEXT,
        email        TEXT,
        hourly_rate  REAL,
        active       INTEGER NOT NULL DEFAULT 1,
        created_at   TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE users (
        username       TEXT PRIMARY KEY,
        password_salt  BLOB NOT NULL,
        password_hash  BLOB NOT NULL,
        iterations     INTEGER NOT NULL,
        created_at     TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX idx_projects_status ON projects(status);
    CREATE INDEX idx_workers_active ON workers(active);
    """,
]

PROJECT_COLUMNS = (
    "id", "name", "client", "address", "status",
    "start_date", "end_date", "budget", "notes", "created_at",
)
WORKER_COLUMNS = (
    "id", "name", "role", "phone", "email", "hourly_rate", "active", "created_at",
)

PROJECT_STATUSES = ("planned", "active", "paused", "finished")

EXPORT_KINDS = ("projects", "workers")

# Filter keys that are not columns.
SEARCH_KEY = "search"
_SEARCH_COLUMNS = {
    "projects": ("name", "client", "address"),
    "workers": ("name", "role"),
}


def _escape_like(text: str) -> str:
    """Make *text* match literally inside a LIKE pattern with ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

def _validate_email(email: str) -> bool:
    """Simple syntactic check: local part, @ sign, domain with a dot."""
    if not email or "@" not in email:
        return False
    return bool(re.match(r"[^@]+@[^@]+\.[^@]+", email))


def _text(record: dict, field: str, required: bool = False) -> Optional[str]:
    value = record.get(field)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise RecordValidationError(f"Field '{field}' is required.", field=field)
        return None
    if not isinstance(value, str):
        raise RecordValidationError(f"Field '{field}' must be text.", field=field)
    return value.strip()


def _amount(record: dict, field: str) -> Optional[float]:
    value = record.get(field)
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise RecordValidationError(f"Field '{field}' must be a number.", field=field)
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise RecordValidationError(f"Field '{field}' must be a number.", field=field)
    if not math.isfinite(amount):
        raise RecordValidationError(f"Field '{field}' must be a number.", field=field)
    if amount < 0:
        raise RecordValidationError(f"Field '{field}' cannot be negative.", field=field)
    return amount


def _date(record: dict, field: str) -> Optional[str]:
    value = _text(record, field)
    if value is None:
        return None
    try:
        return datetime.date.fromisoformat(value).isoformat()
    except ValueError:
        raise RecordValidationError(
            f"Field '{field}' must be a date in YYYY-MM-DD format.", field=field
        )


def _reject_unknown(record: dict, allowed: Tuple[str, ...]) -> None:
    for key in record:
        if key not in allowed:
            raise RecordValidationError(f"Unknown field '{key}'.", field=key)


def clean_project(project) -> dict:
    """
    Validate a project payload and return the column values to insert.

    Raises RecordValidationError naming the first offending field.
    """
    if not isinstance(project, dict):
        raise RecordValidationError("Project must be an object.")
    _reject_unknown(project, PROJECT_COLUMNS[1:-1])

    status = _text(project, "status") or "active"
    if status not in PROJECT_STATUSES:
        raise RecordValidationError(
            f"Status must be one of: {', '.join(PROJECT_STATUSES)}.", field="status"
        )

    start = _date(project, "start_date")
    end = _date(project, "end_date")
    if start and end and end < start:
        raise RecordValidationError(
            "End date cannot be earlier than the start date.", field="end_date"
        )

    return {
        "name":       _text(project, "name", required=True),
        "client":     _text(project, "client"),
        "address":    _text(project, "address"),
        "status":     status,
        "start_date": start,
        "end_date":   end,
        "budget":     _amount(project, "budget"),
        "notes":      _text(project, "notes"),
    }


def clean_worker(worker) -> dict:
    """Validate a worker payload and return the column values to insert."""
    if not isinstance(worker, dict):
        raise RecordValidationError("Worker must be an object.")
    _reject_unknown(worker, WORKER_COLUMNS[1:-1])

    email = _text(worker, "email")
    if email is not None and not _validate_email(email):
        raise RecordValidationError("Email address is not valid.", field="email")

    active = worker.get("active", True)
    if not isinstance(active, bool):
        raise RecordValidationError("Field 'active' must be true or false.", field="active")

    return {
        "name":        _text(worker, "name", required=True),
        "role":        _text(worker, "role", required=True),
        "phone":       _text(worker, "phone"),
        "email":       email,
        "hourly_rate": _amount(worker, "hourly_rate"),
        "active":      int(active),
    }


def check_export_kind(kind) -> None:
    if kind not in EXPORT_KINDS:
        raise RecordValidationError(
            f"Unknown export type '{kind}'; expected one of: {', '.join(EXPORT_KINDS)}.",
            field="type",
        )


# ---------------------------------------------------------------------------
# Atomic file output
# ---------------------------------------------------------------------------

@contextlib.contextmanager
def atomic_output(dest: str) -> Iterator[str]:
    """
    Yield a temporary path beside *dest*; move it over *dest* on success.

    If the body raises, the temporary file is removed and *dest* is left
    untouched, so callers never observe a half-written file.
    """
    directory = os.path.dirname(os.path.abspath(dest))
    fd, tmp_path = tempfile.mkstemp(
        prefix="." + os.path.basename(dest) + ".", suffix=".tmp", dir=directory
    )
    os.close(fd)
    try:
        yield tmp_path
        os.replace(tmp_path, dest)
    except BaseException:
        with contextlib.suppress(OSError):
            os.remove(tmp_path)
        raise


class Database:
    """
    SQLite-backed record store.

    Parameters
    ----------
    db_path : str
        Path of the database file; its directory must already exist.

    Call init() once before any other method.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def init(self) -> int:
        """
        Open the database and apply any pending migrations.

        Returns the schema version after migrating.
        """
        with self._lock, self._storage_errors("opening the database"):
            if self._conn is None:
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                self._conn = conn
            return self._migrate()

    def _migrate(self) -> int:
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]
        for target, script in enumerate(MIGRATIONS[version:], start=version + 1):
            logger.info("Applying database migration %d", target)
            # executescript() commits first; the version bump rides in the
            # same script so a crash cannot leave them out of step.
            self._conn.executescript(
                f"BEGIN;\n{script}\nPRAGMA user_version = {target};\nCOMMIT;"
            )
        return len(MIGRATIONS) if version < len(MIGRATIONS) else version

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextlib.contextmanager
    def _storage_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            logger.exception("Database error while %s", action)
            raise StorageError(f"Database error while {action}: {exc}") from exc

    @contextlib.contextmanager
    def _connection(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock, self._storage_errors(action):
            if self._conn is None:
                raise StorageError("Database is not open")
            yield self._conn

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _select(self, table: str, columns: Tuple[str, ...], criteria) -> List[dict]:
        if criteria is None:
            criteria = {}
        if not isinstance(criteria, dict):
            raise RecordValidationError("Filter must be an object.")

        clauses: List[str] = []
        params: list = []
        for key, value in criteria.items():
            if value is None:
                continue
            if key == SEARCH_KEY:
                like = f"%{_escape_like(str(value))}%"
                search_cols = _SEARCH_COLUMNS[table]
                clauses.append(
                    "(" + " OR ".join(f"{col} LIKE ? ESCAPE '\\'" for col in search_cols) + ")"
                )
                params.extend([like] * len(search_cols))
            elif key in columns:
                if not isinstance(value, (str, int, float)):
                    raise RecordValidationError(
                        f"Filter value for '{key}' must be a single value.", field=key
                    )
                clauses.append(f"{key} = ?")
                params.append(int(value) if isinstance(value, bool) else value)
            else:
                raise RecordValidationError(f"Cannot filter on '{key}'.", field=key)

        sql = f"SELECT {', '.join(columns)} FROM {table}"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"

        with self._connection(f"reading {table}") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(row) for row in rows]

    def get_projects(self, filter: Optional[dict] = None) -> List[dict]:
        """
        Return projects matching *filter*, ordered by id.

        *filter* maps column names to exact values; the special key
        'search' does a case-insensitive substring match on name, client
        and address.  None values are ignored.
        """
        return self._select("projects", PROJECT_COLUMNS, filter)

    def get_workers(self, filter: Optional[dict] = None) -> List[dict]:
        rows = self._select("workers", WORKER_COLUMNS, filter)
        for row in rows:
            row["active"] = bool(row["active"])
        return rows

    def count(self, table: str) -> int:
        if table not in _SEARCH_COLUMNS:
            raise ValueError(f"Unknown table {table!r}")
        with self._connection(f"counting {table}") as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # ------------------------------------------------------------------
    # Inserts
    # ------------------------------------------------------------------

    def _insert(self, table: str, values: dict) -> int:
        values = dict(values, created_at=_now())
        cols = ", ".join(values)
        marks = ", ".join("?" for _ in values)
        with self._connection(f"writing {table}") as conn:
            with conn:
                cursor = conn.execute(
                    f"INSERT INTO {table} ({cols}) VALUES ({marks})",
                    list(values.values()),
                )
        logger.info("Added %s record %d", table[:-1], cursor.lastrowid)
        return cursor.lastrowid

    def add_project(self, project: dict) -> int:
        """Validate and insert *project*; return its new id."""
        return self._insert("projects", clean_project(project))

    def add_worker(self, worker: dict) -> int:
        """Validate and insert *worker*; return its new id."""
        return self._insert("workers", clean_worker(worker))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_user(self, username: str) -> Optional[dict]:
        with self._connection("reading users") as conn:
            row = conn.execute(
                "SELECT username, password_salt, password_hash, iterations "
                "FROM users WHERE username = ?",
                (username,),
            ).fetchone()
        return dict(row) if row else None

    def add_user(self, username: str, salt: bytes, digest: bytes, iterations: int) -> None:
        with self._connection("writing users") as conn:
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO users (username, password_salt, password_hash, "
                        "iterations, created_at) VALUES (?, ?, ?, ?, ?)",
                        (username, salt, digest, iterations, _now()),
                    )
            except sqlite3.IntegrityError as exc:
                raise RecordValidationError(
                    f"User '{username}' already exists.", field="username"
                ) from exc
        logger.info("Created user %s", username)

    def count_users(self) -> int:
        with self._connection("counting users") as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _export_rows(self, kind: str, params) -> Tuple[Tuple[str, ...], List[dict]]:
        check_export_kind(kind)
        readers: Dict[str, Tuple[Tuple[str, ...], Callable]] = {
            "projects": (PROJECT_COLUMNS, self.get_projects),
            "workers":  (WORKER_COLUMNS, self.get_workers),
        }
        columns, reader = readers[kind]
        return columns, reader(params)

    def export_csv(self, kind: str, params, dest: str, delimiter: str = ",") -> int:
        """
        Write the records of *kind* matching *params* to *dest* as CSV.

        Returns the number of records written (the header row excluded).
        Raises ExportError if the file cannot be written; *dest* is then
        left untouched.
        """
        columns, rows = self._export_rows(kind, params)
        try:
            with atomic_output(dest) as tmp_path:
                with open(tmp_path, "w", newline="", encoding="utf-8") as fh:
                    writer = csv.DictWriter(fh, fieldnames=columns, delimiter=delimiter)
                    writer.writeheader()
                    writer.writerows(rows)
        except OSError as exc:
            logger.exception("Failed to write CSV export %s", dest)
            raise ExportError(f"Could not write {dest}: {exc}") from exc
        logger.info("Exported %d %s to %s", len(rows), kind, dest)
        return len(rows)

    def export_xlsx(self, kind: str, params, dest: str, column_width: int = 20) -> int:
        """Same as export_csv() but writes an Excel workbook."""
        columns, rows = self._export_rows(kind, params)

        wb = Workbook()
        ws = wb.active
        ws.title = kind.capitalize()
        ws.append(list(columns))
        for row in rows:
            ws.append([row[col] for col in columns])
        for index in range(1, len(columns) + 1):
            ws.column_dimensions[get_column_letter(index)].width = int(column_width)

        try:
            with atomic_output(dest) as tmp_path:
                wb.save(tmp_path)
        except OSError as exc:
            logger.exception("Failed to write Excel export %s", dest)
            raise ExportError(f"Could not write {dest}: {exc}") from exc
        logger.info("Exported %d %s to %s", len(rows), kind, dest)
        return len(rows)

    # ------------------------------------------------------------------
    # Backup support
    # ------------------------------------------------------------------

    def snapshot_to(self, path: str) -> None:
        """Copy a transactionally consistent image of the database to *path*."""
        with self._connection("taking a snapshot") as conn:
            target = sqlite3.connect(path)
            try:
                conn.backup(target)
            finally:
                target.close()
