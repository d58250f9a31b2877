"""Tests for local .env loading."""

import os

from accountsync.utils.env import load_env_file


def test_loads_missing_variables(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("ACCOUNTSYNC_TEST_ONLY=from-file\n")
    monkeypatch.delenv("ACCOUNTSYNC_TEST_ONLY", raising=False)

    assert load_env_file(env_file) is True
    assert os.environ["ACCOUNTSYNC_TEST_ONLY"] == "from-file"
    monkeypatch.delenv("ACCOUNTSYNC_TEST_ONLY")


def test_exported_variables_win(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("ACCOUNTSYNC_TEST_ONLY=from-file\n")
    monkeypatch.setenv("ACCOUNTSYNC_TEST_ONLY", "exported")

    load_env_file(env_file)

    assert os.environ["ACCOUNTSYNC_TEST_ONLY"] == "exported"


def test_missing_file(tmp_path):
    assert load_env_file(tmp_path / "absent.env") is False
