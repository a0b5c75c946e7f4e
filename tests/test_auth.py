import datetime

import pytest

from auth import Accepted, AuthGate, Rejected, Session
from errors import RecordValidationError, StorageError
from storage import Database


@pytest.fixture
def gate(database, crypto):
    gate = AuthGate(database, crypto)
    gate.create_user("admin", "correct horse")
    return gate


def test_correct_credentials_accepted(gate):
    result = gate.authenticate("admin", "correct horse")
    assert result == Accepted("admin")
    assert result.accepted


def test_wrong_password_rejected(gate):
    result = gate.authenticate("admin", "battery staple")
    assert isinstance(result, Rejected)
    assert not result.accepted


def test_unknown_user_rejected_after_full_verification(gate, crypto, monkeypatch):
    calls = []
    real_verify = crypto.verify_password

    def spy(*args):
        calls.append(args)
        return real_verify(*args)

    monkeypatch.setattr(crypto, "verify_password", spy)

    assert isinstance(gate.authenticate("nobody", "whatever"), Rejected)
    assert isinstance(gate.authenticate("admin", "whatever"), Rejected)
    # Both paths ran exactly one key derivation with the same work factor.
    assert len(calls) == 2
    assert calls[0][3] == calls[1][3]


def test_non_string_credentials_rejected(gate):
    assert isinstance(gate.authenticate(None, "x"), Rejected)
    assert isinstance(gate.authenticate("admin", 12345), Rejected)
    assert isinstance(gate.authenticate("admin", "\ud800"), Rejected)
    assert isinstance(gate.authenticate("adm\ud800in", "correct horse"), Rejected)


def test_unencodable_credentials_still_cost_a_verification(gate, crypto, monkeypatch):
    burned = []
    monkeypatch.setattr(crypto, "burn_verification", burned.append)

    assert isinstance(gate.authenticate("admin", "\udfff"), Rejected)
    assert burned == [""]


def test_create_user_rejects_unencodable_text(gate):
    with pytest.raises(RecordValidationError) as info:
        gate.create_user("bob", "long enough \ud800")
    assert info.value.field == "password"
    with pytest.raises(RecordValidationError) as info:
        gate.create_user("b\ud800b", "long enough")
    assert info.value.field == "username"


def test_plaintext_never_stored(gate, database):
    user = database.get_user("admin")
    assert b"correct horse" not in user["password_hash"]
    assert b"correct horse" not in user["password_salt"]


@pytest.mark.parametrize("username, password", [
    ("", "long enough"),
    ("bob", "short"),
    ("admin", "another long one"),
])
def test_create_user_validation(gate, username, password):
    with pytest.raises(RecordValidationError):
        gate.create_user(username, password)


def test_storage_unavailable_raises(config, crypto):
    gate = AuthGate(Database(config.db_path), crypto)
    with pytest.raises(StorageError):
        gate.authenticate("admin", "x")


def test_session_expiry():
    session = Session.issue("admin", timeout_minutes=30)
    assert session.is_valid()
    later = session.issued_at + datetime.timedelta(minutes=31)
    assert not session.is_valid(later)


def test_session_without_timeout_never_expires():
    session = Session.issue("admin")
    assert session.expires_at is None
    assert session.is_valid(session.issued_at + datetime.timedelta(days=365))


def test_sessions_get_distinct_tokens():
    assert Session.issue("a").token != Session.issue("a").token
