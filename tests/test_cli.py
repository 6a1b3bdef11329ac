"""Tests for main.py -- operator CLI commands against a throwaway database."""

import pytest

from auth.policy import SecurityConfig, validate_password
from auth.service import AuthService
from core.config import get_settings
from main import main

STRONG_PASSWORD = "StrongP@ss1"


@pytest.fixture
def cli_db(tmp_path, monkeypatch):
    """Point DATABASE_URL at a temp file and rebuild Settings around it."""
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def test_create_admin(cli_db, capsys) -> None:
    args = ["create-admin", "--username", "Root", "--email", "root@lab.test", "--name", "Root", "--password", STRONG_PASSWORD]
    assert main(args) == 0
    assert "Admin 'root' created" in capsys.readouterr().out

    service = AuthService.from_url(cli_db, get_settings().secret_key)
    try:
        admin = service.users.find_by_login_identity("root")
        assert admin is not None
        assert admin.role.value == "admin"
    finally:
        service.close()

    # Second run hits the uniqueness check.
    assert main(args) == 1


def test_create_admin_weak_password(cli_db, capsys) -> None:
    args = ["create-admin", "--username", "root", "--email", "root@lab.test", "--name", "Root", "--password", "weak"]
    assert main(args) == 1
    assert "security policy" in capsys.readouterr().out


def test_generate_password(cli_db, capsys) -> None:
    assert main(["generate-password", "--length", "16"]) == 0
    candidate = capsys.readouterr().out.strip()
    assert len(candidate) == 16
    assert validate_password(candidate, SecurityConfig()).ok


def test_reap(cli_db, capsys) -> None:
    assert main(["reap"]) == 0
    assert "Removed 0 expired session(s)" in capsys.readouterr().out


def test_no_command_prints_help(cli_db, capsys) -> None:
    assert main([]) == 0
    assert "create-admin" in capsys.readouterr().out
