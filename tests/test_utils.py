"""
Unit tests for sudo ownership and log naming helpers.
"""
from datetime import datetime
from unittest.mock import patch

from hellfire import utils
from hellfire.utils import drop_privileges, run_timestamp, sudo_owner


def test_sudo_owner(monkeypatch):
    monkeypatch.setenv("SUDO_UID", "1000")
    monkeypatch.setenv("SUDO_GID", "1001")
    assert sudo_owner() == (1000, 1001)


def test_not_under_sudo(monkeypatch):
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)
    assert sudo_owner() is None


def test_drop_privileges_switches_and_restores(monkeypatch):
    monkeypatch.setenv("SUDO_UID", "1000")
    monkeypatch.setenv("SUDO_GID", "1001")
    calls = []
    with patch.object(utils.os, "geteuid", return_value=0), patch.object(
        utils.os, "getegid", return_value=0
    ), patch.object(utils.os, "seteuid", side_effect=lambda u: calls.append(("uid", u))), patch.object(
        utils.os, "setegid", side_effect=lambda g: calls.append(("gid", g))
    ):
        with drop_privileges():
            assert calls == [("gid", 1001), ("uid", 1000)]

    assert calls[2:] == [("uid", 0), ("gid", 0)]


def test_drop_privileges_noop_without_sudo(monkeypatch):
    monkeypatch.delenv("SUDO_UID", raising=False)
    with patch.object(utils.os, "seteuid") as seteuid:
        with drop_privileges():
            pass
    seteuid.assert_not_called()


def test_run_timestamp():
    assert run_timestamp(datetime(2025, 1, 31, 23, 59, 59)) == "2025-01-31-23-59-59"
