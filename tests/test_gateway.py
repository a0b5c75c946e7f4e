import csv
import datetime
import re

import pytest

from backup import read_backup
from gateway import ErrorKind, Result

PRIVILEGED = [
    ("db:getProjects", None),
    ("db:addProject", {"name": "X"}),
    ("db:getWorkers", None),
    ("db:addWorker", {"name": "J", "role": "r"}),
    ("export:csv", {"type": "projects"}),
    ("export:xlsx", {"type": "projects"}),
    ("backup:create", {"password": "pw"}),
]


@pytest.mark.parametrize("channel, payload", PRIVILEGED)
def test_privileged_channels_need_login(gateway, channel, payload):
    result = gateway.handle(channel, payload)
    assert not result.ok
    assert result.error is ErrorKind.UNAUTHENTICATED


def test_login_flow(gateway, context):
    context.auth.create_user("admin", "correct horse")

    bad = gateway.handle("auth:login", {"username": "admin", "password": "nope"})
    assert bad.ok and bad.value == {"accepted": False, "username": None}
    assert gateway.session is None

    good = gateway.handle("auth:login", {"username": "admin", "password": "correct horse"})
    assert good.ok and good.value == {"accepted": True, "username": "admin"}
    assert gateway.handle("db:getProjects").ok

    assert gateway.handle("auth:logout").ok
    assert gateway.handle("db:getProjects").error is ErrorKind.UNAUTHENTICATED


def test_unknown_user_login_is_not_an_error(gateway):
    result = gateway.handle("auth:login", {"username": "ghost", "password": "boo"})
    assert result.ok
    assert result.value["accepted"] is False


@pytest.mark.parametrize("username, password", [
    ("admin", "\ud800"),
    ("adm\ud800in", "correct horse"),
])
def test_unencodable_login_is_a_rejection(logged_in, username, password):
    result = logged_in.handle("auth:login", {"username": username, "password": password})
    assert result.ok
    assert result.value == {"accepted": False, "username": None}
    assert logged_in.session is None


def test_failed_login_clears_existing_session(logged_in):
    logged_in.handle("auth:login", {"username": "admin", "password": "wrong"})
    assert logged_in.handle("db:getWorkers").error is ErrorKind.UNAUTHENTICATED


def test_expired_session_rejected(logged_in):
    session = logged_in.session
    logged_in.session = session._replace(
        expires_at=session.issued_at - datetime.timedelta(seconds=1)
    )
    result = logged_in.handle("db:getProjects")
    assert result.error is ErrorKind.UNAUTHENTICATED
    assert logged_in.session is None


def test_login_can_be_disabled(gateway, config):
    config.set("require_login", False)
    assert gateway.handle("db:getProjects").ok


def test_first_user_can_be_created_without_login(gateway):
    result = gateway.handle("auth:createUser", {"username": "admin", "password": "correct horse"})
    assert result.ok and result.value == "admin"

    second = gateway.handle("auth:createUser", {"username": "eve", "password": "long password"})
    assert second.error is ErrorKind.FORBIDDEN


def test_logged_in_user_can_create_more_users(logged_in):
    result = logged_in.handle("auth:createUser", {"username": "marta", "password": "long password"})
    assert result.ok


def test_add_and_get_projects(logged_in):
    added = logged_in.handle("db:addProject", {"name": "Casa Roca", "status": "planned"})
    assert added.ok and added.value == 1

    listed = logged_in.handle("db:getProjects", {"status": "planned"})
    assert [p["name"] for p in listed.value] == ["Casa Roca"]


def test_add_project_missing_required_field(logged_in, database):
    result = logged_in.handle("db:addProject", {"client": "Roca"})

    assert not result.ok
    assert result.error is ErrorKind.VALIDATION
    assert result.field == "name"
    assert database.count("projects") == 0


def test_add_and_get_workers(logged_in):
    assert logged_in.handle("db:addWorker", {"name": "Jordi", "role": "paleta"}).ok
    invalid = logged_in.handle("db:addWorker", {"name": "Marta"})
    assert invalid.error is ErrorKind.VALIDATION and invalid.field == "role"

    workers = logged_in.handle("db:getWorkers").value
    assert [w["name"] for w in workers] == ["Jordi"]


def test_export_csv(logged_in, dialog, tmp_path):
    logged_in.handle("db:addProject", {"name": "A"})
    logged_in.handle("db:addProject", {"name": "B", "status": "paused"})
    dest = tmp_path / "out.csv"
    dialog.answers.append(str(dest))

    result = logged_in.handle("export:csv", {"type": "projects", "params": {"status": "paused"}})

    assert result.ok and result.value == 1
    with open(dest, newline="", encoding="utf-8") as fh:
        assert [r["name"] for r in csv.DictReader(fh)] == ["B"]
    _, default_name = dialog.requests[0]
    assert re.fullmatch(r"projects-\d{4}-\d{2}-\d{2}\.csv", default_name)


def test_export_cancelled_creates_nothing(logged_in, dialog, tmp_path):
    before = set(tmp_path.rglob("*"))

    result = logged_in.handle("export:csv", {"type": "workers"})

    assert not result.ok
    assert result.is_cancelled
    assert result.error is ErrorKind.CANCELLED
    assert set(tmp_path.rglob("*")) == before


def test_export_unknown_type_does_not_open_dialog(logged_in, dialog):
    result = logged_in.handle("export:csv", {"type": "invoices"})
    assert result.error is ErrorKind.VALIDATION
    assert dialog.requests == []


def test_export_filesystem_failure(logged_in, dialog, tmp_path):
    dialog.answers.append(str(tmp_path / "no-such-dir" / "out.csv"))
    result = logged_in.handle("export:csv", {"type": "workers"})
    assert result.error is ErrorKind.FILESYSTEM


def test_export_xlsx(logged_in, dialog, tmp_path):
    logged_in.handle("db:addWorker", {"name": "Jordi", "role": "paleta"})
    dialog.answers.append(str(tmp_path / "w.xlsx"))
    result = logged_in.handle("export:xlsx", {"type": "workers"})
    assert result.ok and result.value == 1
    assert dialog.requests[0][1].endswith(".xlsx")


def test_backup_create(logged_in, dialog, crypto, tmp_path):
    logged_in.handle("db:addProject", {"name": "Casa Roca"})
    dest = str(tmp_path / "backup.zip")
    dialog.answers.append(dest)

    result = logged_in.handle("backup:create", {"password": "backup pw"})

    assert result.ok and result.value == dest
    assert "gestor-obres.db" in read_backup(crypto, dest, "backup pw")
    assert re.fullmatch(r"backup-\d{4}-\d{2}-\d{2}\.zip", dialog.requests[0][1])


def test_backup_cancelled(logged_in, dialog):
    result = logged_in.handle("backup:create", {"password": "pw"})
    assert result.error is ErrorKind.CANCELLED


@pytest.mark.parametrize("payload", [
    {"password": ""}, {}, None, {"password": None}, {"password": "\ud800"},
])
def test_backup_requires_password(logged_in, dialog, payload):
    result = logged_in.handle("backup:create", payload)
    assert result.error is ErrorKind.VALIDATION
    assert dialog.requests == []


def test_backup_encryption_failure(logged_in, dialog, crypto, tmp_path, monkeypatch):
    def broken(plaintext, password):
        raise ValueError("key derivation failed")

    monkeypatch.setattr(crypto, "encrypt_backup", broken)
    dest = tmp_path / "backup.zip"
    dialog.answers.append(str(dest))

    result = logged_in.handle("backup:create", {"password": "pw"})

    assert result.error is ErrorKind.ENCRYPTION
    assert not dest.exists()


def test_backup_filesystem_failure(logged_in, dialog, tmp_path):
    dialog.answers.append(str(tmp_path / "no-such-dir" / "b.zip"))
    result = logged_in.handle("backup:create", {"password": "pw"})
    assert result.error is ErrorKind.FILESYSTEM


def test_unknown_channel(gateway):
    result = gateway.handle("db:dropEverything")
    assert result.error is ErrorKind.UNKNOWN_OPERATION


@pytest.mark.parametrize("channel", [None, 7, ["db:getProjects"], {"db:getProjects": 1}])
def test_non_string_channel_is_unknown(gateway, channel):
    result = gateway.handle(channel)
    assert result.error is ErrorKind.UNKNOWN_OPERATION


def test_storage_failure_is_reported(logged_in, database):
    database.close()
    result = logged_in.handle("db:getProjects")
    assert result.error is ErrorKind.STORAGE


def test_unexpected_exception_is_contained(logged_in, database, monkeypatch):
    def explode(filter=None):
        raise KeyError("surprise")

    monkeypatch.setattr(database, "get_projects", explode)
    result = logged_in.handle("db:getProjects")
    assert result.error is ErrorKind.INTERNAL


def test_result_wire_format():
    assert Result.success([1]).to_dict() == {"ok": True, "value": [1]}
    assert Result.failure(ErrorKind.VALIDATION, "bad", "name").to_dict() == {
        "ok": False, "error": "validation", "message": "bad", "field": "name",
    }
    assert Result.cancelled().to_dict()["error"] == "cancelled"


def test_channels_cover_the_boundary(gateway):
    assert {
        "db:getProjects", "db:addProject", "db:getWorkers", "db:addWorker",
        "export:csv", "backup:create", "auth:login",
    } <= set(gateway.channels())
