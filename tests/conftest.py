"""Shared fixtures: an in-memory account database and a tmp_path Config."""

from __future__ import annotations

import os

import pytest

import usermatic
from usermatic import (
    AccountManager,
    Config,
    CredentialStore,
    GroupCreationError,
    HomeDirError,
    MembershipError,
    PasswordSetError,
    Reconciler,
    UserCreationError,
)


class MemoryAccountManager(AccountManager):
    """Deterministic stand-in for the host account database.

    ``fail_on`` holds ``(method, name)`` pairs that should raise the
    matching ActionError, e.g. ``("create_user", "carol")``.
    """

    def __init__(self, home_base: str = "/home") -> None:
        self.home_base = home_base
        self.groups: dict[str, set[str]] = {}
        self.users: dict[str, str] = {}
        self.homes: dict[str, tuple[str, int]] = {}
        self.passwords: dict[str, str] = {}
        self.expired: set[str] = set()
        self.fail_on: set[tuple[str, str]] = set()
        self.calls: list[tuple] = []
        self.groups_created: list[str] = []

    # seeding helpers
    def add_group(self, name: str) -> None:
        self.groups.setdefault(name, set())

    def add_user(self, username: str, groups: tuple[str, ...] = (), home: bool = True) -> None:
        self.users[username] = "/bin/sh"
        for g in groups:
            self.groups.setdefault(g, set()).add(username)
        if home:
            self.homes[self.home_dir(username)] = (username, 0o755)

    def _maybe_fail(self, method: str, name: str, exc: type) -> None:
        self.calls.append((method, name))
        if (method, name) in self.fail_on:
            raise exc(f"{method} {name}: simulated failure")

    # queries
    def group_exists(self, name):
        return name in self.groups

    def user_exists(self, username):
        return username in self.users

    def home_dir(self, username):
        return f"{self.home_base}/{username}"

    def home_dir_exists(self, path):
        return path in self.homes

    def user_groups(self, username):
        return {g for g, members in self.groups.items() if username in members}

    # mutations
    def create_group(self, name):
        self._maybe_fail("create_group", name, GroupCreationError)
        if name in self.groups:
            raise GroupCreationError(f"groupadd {name}: group '{name}' already exists")
        self.groups[name] = set()
        self.groups_created.append(name)

    def create_user(self, username, groups, shell):
        self._maybe_fail("create_user", username, UserCreationError)
        if username in self.users:
            raise UserCreationError(f"useradd {username}: user '{username}' already exists")
        unknown = [g for g in groups if g not in self.groups]
        if unknown:
            raise UserCreationError(f"useradd {username}: group '{unknown[0]}' does not exist")
        self.users[username] = shell
        for g in groups:
            self.groups[g].add(username)
        self.homes[self.home_dir(username)] = (username, 0o755)

    def add_user_to_groups(self, username, groups):
        self._maybe_fail("add_user_to_groups", username, MembershipError)
        for g in groups:
            self.groups[g].add(username)

    def ensure_home_dir(self, path, owner):
        self._maybe_fail("ensure_home_dir", owner, HomeDirError)
        self.homes[path] = (owner, 0o700)

    def set_password(self, username, password):
        self._maybe_fail("set_password", username, PasswordSetError)
        self.passwords[username] = password

    def expire_password(self, username):
        self._maybe_fail("expire_password", username, PasswordSetError)
        self.expired.add(username)


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        log_file=str(tmp_path / "log" / "user_management.log"),
        password_file=str(tmp_path / "secure" / "user_passwords.txt"),
        state_dir=str(tmp_path / "state"),
        home_base=str(tmp_path / "home"),
        retry_delay=0.0,
    )


@pytest.fixture
def manager(config) -> MemoryAccountManager:
    return MemoryAccountManager(home_base=config.home_base)


@pytest.fixture
def store(config) -> CredentialStore:
    return CredentialStore(config.password_file)


@pytest.fixture
def reconciler(config, manager, store) -> Reconciler:
    return Reconciler(config, manager, store)


@pytest.fixture
def audit_log(config):
    """Configure the real file/console handlers for the duration of a test."""
    usermatic.fncSetupLogging(config)
    yield config.log_file
    usermatic.fncShutdownLogging()


@pytest.fixture
def usermatic_env(monkeypatch, config):
    """Point fncLoadConfig() at the tmp_path locations and pretend to be root."""
    monkeypatch.setenv("USERMATIC_LOG_FILE", config.log_file)
    monkeypatch.setenv("USERMATIC_PASSWORD_FILE", config.password_file)
    monkeypatch.setenv("USERMATIC_STATE_DIR", config.state_dir)
    monkeypatch.setenv("HOME_BASE", config.home_base)
    monkeypatch.setenv("RETRY_DELAY", "0")
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setattr(usermatic.os, "geteuid", lambda: 0)
    return config


def read_lines(path: str) -> list[str]:
    if not os.path.exists(path):
        return []
    with open(path, encoding="utf-8") as f:
        return f.read().splitlines()
