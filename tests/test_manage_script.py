"""Tests for the operator management script."""

import asyncio
import importlib.util
from pathlib import Path

import pytest

from payauth.service.errors import ConflictError, NotFoundError
from payauth.service.runtime import get_runtime
from payauth.storage.models import AccountState, SessionStatus

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage.py"
PASSWORD = "S3cure pass!"


@pytest.fixture(scope="module")
def manage():
    spec = importlib.util.spec_from_file_location("manage", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def user(manage, runtime):
    result = asyncio.run(manage.create_user(runtime, "ana@example.com", "12.345.678-5", PASSWORD))
    return runtime.store.get_user(result["user_id"])


class TestCommands:
    """Tests for the command functions."""

    def test_create_user(self, manage, runtime, user):
        assert user.email == "ana@example.com"
        assert user.email_verified is True
        assert runtime.store.get_password_record(user.id) is not None

    def test_create_duplicate_user(self, manage, runtime, user):
        with pytest.raises(ConflictError):
            asyncio.run(manage.create_user(runtime, "ana@example.com", "11111111-1", PASSWORD))

    def test_unblock(self, manage, runtime, user):
        runtime.store.set_account_state(user.id, AccountState.BLOCKED)

        result = manage.unblock(runtime, "12345678-5")

        assert result["status"] == "unblocked"
        assert runtime.store.get_user(user.id).state == AccountState.ACTIVE

    def test_verify_email(self, manage, runtime):
        asyncio.run(runtime.auth.register_user("bob@example.com", 11111111, "1", PASSWORD))

        result = manage.verify_email(runtime, "bob@example.com")

        assert result["status"] == "email_verified"
        assert runtime.store.get_user(result["user_id"]).email_verified is True

    def test_unknown_identifier(self, manage, runtime):
        with pytest.raises(NotFoundError):
            manage.unblock(runtime, "nobody@example.com")

    def test_require_reset_revokes_sessions(self, manage, runtime, user):
        login = asyncio.run(runtime.auth.login("ana@example.com", PASSWORD, "fp-1"))

        result = manage.require_reset(runtime, "ana@example.com")

        assert result["state"] == AccountState.PASSWORD_RESET.value
        assert runtime.store.get_session(login.jti).status == SessionStatus.REVOKED

    def test_detach_device(self, manage, runtime, user):
        asyncio.run(runtime.auth.login("ana@example.com", PASSWORD, "fp-1"))

        result = manage.detach_device(runtime, "fp-1")

        assert result["detached"] == 1
        assert runtime.store.get_device("fp-1").user_id is None


class TestMain:
    """Tests for the argparse entry point."""

    def test_create_user_requires_password(self, manage, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        code = manage.main(["create-user", "--email", "a@example.com", "--national-id", "6-K"])
        assert code == 1
        assert "password" in capsys.readouterr().out

    def test_service_error_returns_one(self, manage, capsys):
        assert manage.main(["unblock", "nobody@example.com"]) == 1
        assert "no account matches" in capsys.readouterr().out

    def test_create_user_command(self, manage, capsys):
        args = ["create-user", "--email", "k@example.com", "--national-id", "6-K"]
        assert manage.main(args + ["--password", PASSWORD]) == 0
        assert "created" in capsys.readouterr().out
