"""
main.py – Application entry point.

Startup happens in a fixed order and exactly once:

  paths.py    – resolve (and create) the data directory
  config.py   – AppConfig: file paths, config.json, rotating log
  storage.py  – Database: open gestor-obres.db and apply migrations
  auth.py     – AuthGate on top of the database
  gateway.py  – Gateway: starts accepting requests

Requests arrive as one JSON object per line on stdin,
    {"id": 1, "channel": "db:getProjects", "payload": {"status": "active"}}
and each gets one JSON line on stdout,
    {"id": 1, "ok": true, "value": [...]}

To run:
    python main.py

To build a standalone executable (requires PyInstaller):
    pyinstaller --onefile main.py
"""

import argparse
import json
import logging
import sys
from typing import Optional, TextIO

from auth import AuthGate
from config import APP_NAME, APP_VERSION, AppConfig
from crypto import CryptoManager
from dialogs import SaveDialog, TkSaveDialog
from errors import DataDirectoryError, StorageError
from gateway import AppContext, ErrorKind, Gateway, Result
from paths import DataDirectoryResolver
from storage import Database

logger = logging.getLogger(APP_NAME)


def build_context(
    resolver: Optional[DataDirectoryResolver] = None,
    dialog: Optional[SaveDialog] = None,
    crypto: Optional[CryptoManager] = None,
) -> AppContext:
    """
    Run the one-time startup sequence and return the shared context.

    Raises DataDirectoryError when no data directory can be created and
    StorageError when the database cannot be opened or migrated.
    """
    data_dir = (resolver or DataDirectoryResolver()).resolve()
    config = AppConfig(data_dir)

    database = Database(config.db_path)
    version = database.init()
    logger.info("Database ready at %s (schema v%d)", config.db_path, version)

    crypto = crypto or CryptoManager()
    return AppContext(
        config=config,
        crypto=crypto,
        database=database,
        auth=AuthGate(database, crypto),
        dialog=dialog or TkSaveDialog(),
    )


def serve(gateway: Gateway, instream: TextIO, outstream: TextIO) -> None:
    """Answer JSON-line requests from *instream* until it is exhausted."""
    for line in instream:
        line = line.strip()
        if not line:
            continue

        request_id = None
        try:
            request = json.loads(line)
            if not isinstance(request, dict):
                raise ValueError("request is not an object")
            request_id = request.get("id")
            result = gateway.handle(request.get("channel"), request.get("payload"))
        except ValueError as exc:
            logger.warning("Malformed request: %s", exc)
            result = Result.failure(ErrorKind.VALIDATION, f"Malformed request: {exc}")

        reply = {"id": request_id}
        reply.update(result.to_dict())
        outstream.write(json.dumps(reply, default=str) + "\n")
        outstream.flush()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Gestor d'Obres back end")
    parser.add_argument("--version", action="version", version=APP_VERSION)
    parser.add_argument(
        "--print-data-dir", action="store_true",
        help="resolve the data directory, print it and exit",
    )
    args = parser.parse_args(argv)

    try:
        context = build_context()
    except DataDirectoryError as exc:
        logger.critical("Cannot start: %s", exc)
        print(f"Fatal: {exc}", file=sys.stderr)
        return 1
    except StorageError as exc:
        logger.critical("Cannot open the database: %s", exc)
        print(f"Fatal: {exc}", file=sys.stderr)
        return 1

    try:
        if args.print_data_dir:
            print(context.config.data_dir)
            return 0

        gateway = Gateway(context)
        if not context.auth.has_users():
            logger.info("No accounts yet; waiting for auth:createUser")
        # Bad bytes become U+FFFD and fail JSON parsing for that line only.
        sys.stdin.reconfigure(encoding="utf-8", errors="replace")
        serve(gateway, sys.stdin, sys.stdout)
        return 0
    finally:
        context.database.close()


if __name__ == "__main__":
    sys.exit(main())
