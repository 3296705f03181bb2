"""Credential store and audit log persistence."""

import os
import re
import stat

import pytest

import usermatic
from usermatic import CredentialStore, CredentialStoreError, fncLogSkip, fncSecurePath

LINE = re.compile(r"^\d{4}-\d\d-\d\d \d\d:\d\d:\d\d \[(INFO|ERROR|SKIP)\] (.*)$")


def _mode(path):
    return stat.S_IMODE(os.stat(path).st_mode)


def test_store_appends_with_locked_down_perms(store, config):
    store.append("alice", "Abc123def456")
    store.append("bob", "Zyx987wvu654")

    with open(config.password_file, encoding="utf-8") as f:
        assert f.read() == "alice:Abc123def456\nbob:Zyx987wvu654\n"
    assert _mode(config.password_file) == 0o600
    assert _mode(os.path.dirname(config.password_file)) == 0o700


def test_store_puts_loosened_perms_back(store, config):
    store.append("alice", "Abc123def456")
    os.chmod(config.password_file, 0o644)
    os.chmod(os.path.dirname(config.password_file), 0o755)

    store.append("bob", "Zyx987wvu654")

    assert _mode(config.password_file) == 0o600
    assert _mode(os.path.dirname(config.password_file)) == 0o700


def test_store_refuses_symlink(tmp_path):
    target = tmp_path / "elsewhere.txt"
    target.write_text("")
    secure = tmp_path / "secure"
    secure.mkdir()
    (secure / "user_passwords.txt").symlink_to(target)

    with pytest.raises(CredentialStoreError, match="not a regular file"):
        CredentialStore(str(secure / "user_passwords.txt")).append("alice", "Abc123def456")
    assert target.read_text() == ""


def test_secure_path_creates_missing_file(tmp_path):
    path = tmp_path / "a" / "b" / "file.log"
    fncSecurePath(str(path))
    assert path.is_file()
    assert _mode(path) == 0o600
    assert _mode(path.parent) == 0o700


def test_audit_log_format_and_levels(audit_log):
    usermatic.log.info("Created group: %s", "dev")
    usermatic.log.error("Failed to create user %s", "carol")
    fncLogSkip("Line skipped (comment): %s", "# x")

    with open(audit_log, encoding="utf-8") as f:
        lines = f.read().splitlines()
    parsed = [LINE.match(l).groups() for l in lines]
    assert parsed == [
        ("INFO", "Created group: dev"),
        ("ERROR", "Failed to create user carol"),
        ("SKIP", "Line skipped (comment): # x"),
    ]


def test_audit_log_reasserts_perms_on_every_write(audit_log):
    usermatic.log.info("first")
    os.chmod(audit_log, 0o666)
    os.chmod(os.path.dirname(audit_log), 0o777)

    usermatic.log.info("second")

    assert _mode(audit_log) == 0o600
    assert _mode(os.path.dirname(audit_log)) == 0o700


def test_audit_log_is_append_only_across_setups(config):
    usermatic.fncSetupLogging(config)
    usermatic.log.info("run one")
    usermatic.fncSetupLogging(config)
    usermatic.log.info("run two")
    usermatic.fncShutdownLogging()

    with open(config.log_file, encoding="utf-8") as f:
        assert [LINE.match(l).group(2) for l in f.read().splitlines()] == ["run one", "run two"]


def test_console_split_errors_to_stderr(config, capsys, monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    usermatic.fncSetupLogging(config)
    try:
        usermatic.log.info("all good")
        usermatic.log.error("went wrong")
    finally:
        usermatic.fncShutdownLogging()

    out, err = capsys.readouterr()
    assert "[INFO] all good" in out and "went wrong" not in out
    assert "[ERROR] went wrong" in err and "all good" not in err


def test_audit_log_recreated_after_removal(audit_log):
    usermatic.log.info("before")
    os.remove(audit_log)

    usermatic.log.info("after")

    assert _mode(audit_log) == 0o600
    with open(audit_log, encoding="utf-8") as f:
        assert [LINE.match(l).group(2) for l in f.read().splitlines()] == ["after"]


def test_audit_log_follows_rotation(audit_log):
    usermatic.log.info("old")
    os.rename(audit_log, audit_log + ".1")

    usermatic.log.info("new")

    with open(audit_log + ".1", encoding="utf-8") as f:
        assert [LINE.match(l).group(2) for l in f.read().splitlines()] == ["old"]
    with open(audit_log, encoding="utf-8") as f:
        assert [LINE.match(l).group(2) for l in f.read().splitlines()] == ["new"]
    assert _mode(audit_log) == 0o600
