"""
Shared pytest fixtures.

Every fixture works inside pytest's tmp_path, so no test touches the real
user data directory.  CryptoManager runs with a tiny PBKDF2 work factor to
keep the suite fast; the stored iteration count travels with each hash, so
behaviour is otherwise identical.
"""
import logging
import os
import sys

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from auth import AuthGate  # noqa: E402
from config import APP_NAME, AppConfig  # noqa: E402
from crypto import CryptoManager  # noqa: E402
from gateway import AppContext, Gateway  # noqa: E402
from storage import Database  # noqa: E402

TEST_ITERATIONS = 1_000


class ScriptedSaveDialog:
    """Save dialog that answers from a queue; None means the user cancelled."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.requests = []

    def ask_save_path(self, title, default_name, filetypes):
        self.requests.append((title, default_name))
        if not self.answers:
            return None
        return self.answers.pop(0)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return str(path)


@pytest.fixture
def crypto():
    return CryptoManager(iterations=TEST_ITERATIONS)


@pytest.fixture
def config(data_dir):
    return AppConfig(data_dir)


@pytest.fixture
def database(config):
    db = Database(config.db_path)
    db.init()
    yield db
    db.close()


@pytest.fixture
def dialog():
    return ScriptedSaveDialog()


@pytest.fixture
def context(config, crypto, database, dialog):
    return AppContext(
        config=config,
        crypto=crypto,
        database=database,
        auth=AuthGate(database, crypto),
        dialog=dialog,
    )


@pytest.fixture
def gateway(context):
    return Gateway(context)


@pytest.fixture
def logged_in(gateway, context):
    """A gateway with an account 'admin' that is already logged in."""
    context.auth.create_user("admin", "correct horse")
    result = gateway.handle("auth:login", {"username": "admin", "password": "correct horse"})
    assert result.ok and result.value["accepted"]
    return gateway


@pytest.fixture(autouse=True)
def _close_log_handlers():
    """Detach file handlers that AppConfig attached during the test."""
    logger = logging.getLogger(APP_NAME)
    before = list(logger.handlers)
    yield
    for handler in list(logger.handlers):
        if handler not in before:
            logger.removeHandler(handler)
            handler.close()
