"""Tests for main.py -- the operator CLI.

Every command runs against a named shared-memory database that a store held
open by the test keeps alive between commands.
"""

import uuid

import pytest

import main
from auth.passwords import PasswordHasher
from tests.support import make_settings, make_stores


@pytest.fixture
def cli_db(monkeypatch):
    name = uuid.uuid4().hex
    accounts, secrets = make_stores(name)
    settings = make_settings(database_url=f"sqlite:///file:test_{name}?mode=memory&cache=shared&uri=true")
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    yield accounts
    accounts.close()
    secrets.close()


def test_create_user(cli_db, capsys):
    assert main.main(["create-user", "Ops@Example.com", "--admin", "--verified", "--first-name", "Op"]) == 0
    user = cli_db.get_by_email("ops@example.com")
    assert user.roles == ["admin", "user"]
    assert user.email_verified is True
    assert user.first_name == "Op"
    assert "Created user" in capsys.readouterr().out


def test_create_user_twice(cli_db):
    assert main.main(["create-user", "dup@example.com"]) == 0
    assert main.main(["create-user", "dup@example.com"]) == 1


def test_create_user_invalid_email(cli_db):
    assert main.main(["create-user", "nope"]) == 2


def test_generate_api_key(cli_db, capsys):
    main.main(["create-user", "svc@example.com"])
    assert main.main(["generate-api-key", "--email", "svc@example.com", "--name", "ci"]) == 0
    out = capsys.readouterr().out
    raw = next(word for word in out.split() if word.startswith("pk_"))
    (key,) = cli_db.list_api_keys()
    assert key.name == "ci"
    assert key.key_prefix == raw[:12]


def test_generate_api_key_unknown_owner(cli_db):
    assert main.main(["generate-api-key", "--email", "ghost@example.com"]) == 1


def test_no_command_prints_help(capsys):
    assert main.main([]) == 0
    assert "usage: portcullis" in capsys.readouterr().out


def test_create_user_with_password(cli_db, monkeypatch, capsys):
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt: "op-secret")
    assert main.main(["create-user", "pw@example.com", "--password"]) == 0
    hashed = cli_db.get_by_email("pw@example.com").hashed_password
    assert PasswordHasher().verify("op-secret", hashed)


def test_create_user_rejects_short_password(cli_db, monkeypatch, capsys):
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt: "abc")
    assert main.main(["create-user", "pw@example.com", "--password"]) == 2
    assert "at least 6 characters" in capsys.readouterr().out
    assert cli_db.get_by_email("pw@example.com") is None


def test_purge_reports_counts(cli_db, capsys):
    assert main.main(["purge"]) == 0
    assert capsys.readouterr().out.strip() == (
        "Removed 0 magic link token(s), 0 expired code(s) and 0 password reset token(s)."
    )
