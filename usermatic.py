#!/usr/bin/env python3
# Script: usermatic.py
#
# What this does (for my future self):
# - Read a file of "username;group1,group2" lines
# - Create any missing groups, then create the user (or top up an existing
#   user's supplementary groups without touching the ones they already have)
# - Make sure the home dir exists, is owned by the user and is chmod 700
# - Set a random 12-char password and append user:password to a locked-down
#   credentials file, but only once chpasswd has said yes
# - Log every action, skip and error to the audit log (and the console)

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import logging.handlers
import os
import secrets
import stat
import string
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Union

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

VERSION = "1.0.0"
MIN_PYTHON_VERSION = (3, 10)

EXIT_OK = 0
EXIT_INTERNAL = 1
EXIT_NO_PRIVILEGE = 2
EXIT_BAD_INPUT = 3
EXIT_LOCKED = 4
EXIT_INTERRUPTED = 130

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
LOG_FILE = "/var/log/usermatic/user_management.log"
PASSWORD_FILE = "/var/lib/usermatic/user_passwords.txt"
STATE_DIR = "/var/lib/usermatic"
DEFAULT_SHELL = "/bin/bash"
HOME_BASE = "/home"

PASSWORD_LENGTH = 12
ROTATE_EXISTING_PASSWORDS = True    # New password for existing users on every run
FORCE_PASSWORD_CHANGE = False       # chage -d 0 after setting
RETRY_ATTEMPTS = 1                  # 1 = no retries
RETRY_DELAY = 1.0                   # Seconds between attempts

FILE_MODE = 0o600
DIR_MODE = 0o700
HOME_MODE = 0o700

# Alphanumeric only: no ':' to break user:password lines, nothing odd for
# chpasswd or a terminal reading the log
PASSWORD_ALPHABET = frozenset((string.ascii_letters + string.digits).encode())

#------------------------------#
# Logging                      #
#------------------------------#
SKIP = 25
logging.addLevelName(SKIP, "SKIP")
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

log = logging.getLogger("usermatic")

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "getent":   "/usr/bin/getent",
  "id":       "/usr/bin/id",
  "groupadd": "/usr/sbin/groupadd",
  "useradd":  "/usr/sbin/useradd",
  "usermod":  "/usr/sbin/usermod",
  "chown":    "/usr/bin/chown",
  "chpasswd": "/usr/sbin/chpasswd",
  "chage":    "/usr/bin/chage",
}

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Empty -> default.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v.strip() if v is not None and v.strip() else default

# Function: _env_int / _env_float
# Purpose : Parse a number from env; bad values fall back to the default.
# Notes   : The complaint is appended to `problems` so it can be logged once
#           the audit log is open.
def _env_int(name: str, default: int, problems: list[str]) -> int:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        problems.append(f"Bad integer in {name}: {v!r} (using {default})")
        return default

def _env_float(name: str, default: float, problems: list[str]) -> float:
    v = os.getenv(name, "").strip()
    if not v:
        return default
    try:
        return float(v)
    except ValueError:
        problems.append(f"Bad number in {name}: {v!r} (using {default})")
        return default

#===============#
# Configuration #
#===============#

@dataclass(frozen=True)
class Config:
    """Everything a run needs to know; handed to each component explicitly."""

    log_file: str = LOG_FILE
    password_file: str = PASSWORD_FILE
    state_dir: str = STATE_DIR
    default_shell: str = DEFAULT_SHELL
    home_base: str = HOME_BASE
    password_length: int = PASSWORD_LENGTH
    rotate_existing_passwords: bool = ROTATE_EXISTING_PASSWORDS
    force_password_change: bool = FORCE_PASSWORD_CHANGE
    retry_attempts: int = RETRY_ATTEMPTS
    retry_delay: float = RETRY_DELAY

    @property
    def lock_path(self) -> str:
        return os.path.join(self.state_dir, ".lock")

# Function: fncLoadConfig
# Purpose : Build a Config from the defaults above overlaid with env vars.
# Notes   : Password length never drops below PASSWORD_LENGTH; attempts >= 1;
#           delay >= 0. Returns (config, problems) where problems are the
#           messages for bad env values, still to be logged.
def fncLoadConfig() -> tuple[Config, list[str]]:
    problems: list[str] = []
    password_length = _env_int("PASSWORD_LENGTH", PASSWORD_LENGTH, problems)
    if password_length < PASSWORD_LENGTH:
        problems.append(f"PASSWORD_LENGTH={password_length} is below the minimum; using {PASSWORD_LENGTH}")
        password_length = PASSWORD_LENGTH
    config = Config(
        log_file=_env_str("USERMATIC_LOG_FILE", LOG_FILE),
        password_file=_env_str("USERMATIC_PASSWORD_FILE", PASSWORD_FILE),
        state_dir=_env_str("USERMATIC_STATE_DIR", STATE_DIR),
        default_shell=_env_str("DEFAULT_SHELL", DEFAULT_SHELL),
        home_base=_env_str("HOME_BASE", HOME_BASE),
        password_length=password_length,
        rotate_existing_passwords=_env_bool("ROTATE_EXISTING_PASSWORDS", ROTATE_EXISTING_PASSWORDS),
        force_password_change=_env_bool("FORCE_PASSWORD_CHANGE", FORCE_PASSWORD_CHANGE),
        retry_attempts=max(1, _env_int("RETRY_ATTEMPTS", RETRY_ATTEMPTS, problems)),
        retry_delay=max(0.0, _env_float("RETRY_DELAY", RETRY_DELAY, problems)),
    )
    return config, problems

#========#
# Errors #
#========#

class UsermaticError(Exception):
    """Base for everything usermatic raises on purpose."""


class FatalError(UsermaticError):
    """Stops the run before any record is touched."""

    exit_code = EXIT_INTERNAL


class FatalPrivilegeError(FatalError):
    exit_code = EXIT_NO_PRIVILEGE


class FatalInputError(FatalError):
    exit_code = EXIT_BAD_INPUT


class FatalLockError(FatalError):
    exit_code = EXIT_LOCKED


class ValidationError(UsermaticError):
    """Input line that can't become a record (empty username)."""


class ActionError(UsermaticError):
    """A single host mutation failed. Never escapes the reconciler."""


class GroupCreationError(ActionError):
    pass


class UserCreationError(ActionError):
    pass


class HomeDirError(ActionError):
    pass


class MembershipError(ActionError):
    pass


class PasswordSetError(ActionError):
    pass


class CredentialStoreError(ActionError):
    pass

#===================#
# Utility / Logging #
#===================#

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=sys.stdout) -> bool:
    """Decide if we should output ANSI colours."""
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for fatal/user-facing prints before logging is up.
def fncPrintMessage(message, msg_type="info", stream=None):
    stream = stream or (sys.stderr if msg_type in ("error", "warning") else sys.stdout)
    styles = {
        "info":    Fore.CYAN  + "{~} ",
        "warning": Fore.RED   + "{!} ",
        "success": Fore.GREEN + "{=]} ",
        "error":   Fore.RED   + "{!} ",
    }
    if fncWantColor(stream):
        print(f"{styles.get(msg_type, Fore.WHITE)}{message}{Style.RESET_ALL}", file=stream)
    else:
        print(message, file=stream)

def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        fncPrintMessage("usermatic requires Python %d.%d or higher. Please upgrade." % MIN_PYTHON_VERSION, "error")
        sys.exit(EXIT_INTERNAL)

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
        if not stat.S_ISREG(st.st_mode):
            raise RuntimeError(f"{p} is not a regular file")
    except FileNotFoundError:
        return

# Function: fncSecurePath
# Purpose : Make sure a file exists at mode 0600 inside a 0700 directory.
# Notes   : Called before and after every write so loosened perms get put back.
#           Refuses symlinks and other non-regular files.
def fncSecurePath(path: str, file_mode: int = FILE_MODE, dir_mode: int = DIR_MODE):
    d = os.path.dirname(os.path.abspath(path))
    os.makedirs(d, mode=dir_mode, exist_ok=True)
    os.chmod(d, dir_mode)
    _assert_regular_or_missing(path)
    if not os.path.exists(path):
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND | os.O_NOFOLLOW, file_mode)
        os.close(fd)
    os.chmod(path, file_mode)


class SecureFileHandler(logging.handlers.WatchedFileHandler):
    """Append-only log file that keeps itself 0600 inside a 0700 directory.

    If the file is removed or replaced mid-run it is recreated and reopened.
    """

    def __init__(self, path: str):
        fncSecurePath(path)
        super().__init__(path, mode="a", encoding="utf-8")

    def emit(self, record):
        try:
            fncSecurePath(self.baseFilename)
            super().emit(record)
            fncSecurePath(self.baseFilename)
        except (OSError, RuntimeError):
            self.handleError(record)


class ConsoleFormatter(logging.Formatter):
    """Same line as the audit log, coloured by level when the stream is a TTY."""

    STYLES = {
        "INFO":  Fore.CYAN,
        "SKIP":  Fore.LIGHTBLACK_EX,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.RED + Style.BRIGHT,
    }

    def __init__(self, stream):
        super().__init__(LOG_FORMAT, LOG_DATEFMT)
        self.stream = stream

    def format(self, record):
        line = super().format(record)
        if not fncWantColor(self.stream):
            return line
        return f"{self.STYLES.get(record.levelname, Fore.WHITE)}{line}{Style.RESET_ALL}"

# Function: fncSetupLogging
# Purpose : Audit log to file; INFO/SKIP mirrored to stdout, ERROR to stderr.
# Notes   : Safe to call again (e.g. from tests); old handlers are closed first.
def fncSetupLogging(config: Config) -> logging.Logger:
    fncShutdownLogging()
    log.setLevel(logging.INFO)

    fh = SecureFileHandler(config.log_file)
    fh.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
    log.addHandler(fh)

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(lambda record: record.levelno < logging.ERROR)
    out.setFormatter(ConsoleFormatter(sys.stdout))
    log.addHandler(out)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.ERROR)
    err.setFormatter(ConsoleFormatter(sys.stderr))
    log.addHandler(err)
    return log

def fncShutdownLogging():
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()

def fncLogSkip(msg: str, *args):
    log.log(SKIP, msg, *args)

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). Never raises for a missing binary.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except OSError as e:
        return 127, "", str(e)

#=============#
# Data model  #
#=============#

@dataclass(frozen=True)
class ProvisioningRecord:
    username: str
    groups: tuple[str, ...] = ()
    line_no: int = 0


@dataclass(frozen=True)
class Skipped:
    """Line that never reached the reconciler. level None means don't log it."""

    reason: str
    level: str | None = None


@dataclass(frozen=True)
class Done:
    username: str


@dataclass(frozen=True)
class Failed:
    username: str
    stage: str
    reason: str


Outcome = Union[Done, Skipped, Failed]


@dataclass
class BatchSummary:
    """Running totals only; outcomes are counted and dropped."""

    done: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, outcome: Outcome):
        if isinstance(outcome, Done):
            self.done += 1
        elif isinstance(outcome, Skipped):
            self.skipped += 1
        else:
            self.failed += 1

#==============#
# Input parser #
#==============#

# Function: fncParseLine
# Purpose : Turn one raw input line into a ProvisioningRecord (or a Skipped).
# Notes   : "user;g1, g2" -> all whitespace dropped from the group part, stray
#           commas stripped, empty tokens ignored. Raises ValidationError
#           when the username is empty. Name legality is left to useradd.
def fncParseLine(raw: str, line_no: int = 0) -> Union[ProvisioningRecord, Skipped]:
    line = raw.strip()
    if not line:
        return Skipped("blank line")
    if line.startswith("#"):
        return Skipped(f"Line skipped (comment): {line}", level="SKIP")

    user, _, part_groups = line.partition(";")
    user = user.strip()
    if not user:
        raise ValidationError(f"Empty username in line: {raw.rstrip(chr(13) + chr(10))}")

    part_groups = "".join(part_groups.split()).strip(",")
    groups = tuple(dict.fromkeys(g for g in part_groups.split(",") if g))
    return ProvisioningRecord(user, groups, line_no)

def fncReadLines(path: str) -> Iterator[tuple[int, str]]:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for n, raw in enumerate(f, 1):
            yield n, raw.rstrip("\r\n")

#======================#
# Credential generator #
#======================#

# Function: fncGeneratePassword
# Purpose : Random alphanumeric password (12 chars ~= 71 bits).
# Notes   : Raw bytes from secrets, anything outside [A-Za-z0-9] thrown away,
#           topped up until we have exactly `length` characters.
def fncGeneratePassword(length: int = PASSWORD_LENGTH) -> str:
    chars: list[str] = []
    while len(chars) < length:
        for b in secrets.token_bytes(length * 4):
            if b in PASSWORD_ALPHABET:
                chars.append(chr(b))
                if len(chars) == length:
                    break
    return "".join(chars)

#===================#
# Account manager   #
#===================#

class AccountManager(ABC):
    """What the reconciler needs from the host.

    Queries are read-only and uncached. Mutations raise an ActionError
    subclass on failure and return None on success.
    """

    @abstractmethod
    def group_exists(self, name: str) -> bool: ...

    @abstractmethod
    def user_exists(self, username: str) -> bool: ...

    @abstractmethod
    def home_dir(self, username: str) -> str: ...

    @abstractmethod
    def home_dir_exists(self, path: str) -> bool: ...

    @abstractmethod
    def user_groups(self, username: str) -> set[str]: ...

    @abstractmethod
    def create_group(self, name: str) -> None: ...

    @abstractmethod
    def create_user(self, username: str, groups: tuple[str, ...], shell: str) -> None: ...

    @abstractmethod
    def add_user_to_groups(self, username: str, groups: tuple[str, ...]) -> None: ...

    @abstractmethod
    def ensure_home_dir(self, path: str, owner: str) -> None: ...

    @abstractmethod
    def set_password(self, username: str, password: str) -> None: ...

    @abstractmethod
    def expire_password(self, username: str) -> None: ...


def _detail(rc: int, err: str) -> str:
    return err or f"exit {rc}"


class SystemAccountManager(AccountManager):
    """The real thing: getent/id for lookups, shadow-utils for changes."""

    def __init__(self, config: Config):
        self.config = config

    def group_exists(self, name):
        rc, _, _ = fncRun("getent", ["group", "--", name])
        return rc == 0

    def user_exists(self, username):
        rc, _, _ = fncRun("id", ["-u", "--", username])
        return rc == 0

    def home_dir(self, username):
        # passwd entry wins; fall back to HOME_BASE/<user> like useradd -m would
        rc, out, _ = fncRun("getent", ["passwd", "--", username])
        if rc == 0 and out:
            fields = out.splitlines()[0].split(":")
            if len(fields) >= 6 and fields[5]:
                return fields[5]
        return os.path.join(self.config.home_base, username)

    def home_dir_exists(self, path):
        return os.path.isdir(path)

    def user_groups(self, username):
        rc, out, _ = fncRun("id", ["-nG", "--", username])
        if rc != 0 or not out:
            return set()
        return set(out.split())

    def create_group(self, name):
        rc, _, err = fncRun("groupadd", ["--", name])
        if rc != 0:
            raise GroupCreationError(f"groupadd {name}: {_detail(rc, err)}")

    def create_user(self, username, groups, shell):
        args = ["-m", "-s", shell]
        if groups:
            args += ["-G", ",".join(groups)]
        rc, _, err = fncRun("useradd", args + ["--", username])
        if rc != 0:
            raise UserCreationError(f"useradd {username}: {_detail(rc, err)}")

    def add_user_to_groups(self, username, groups):
        if not groups:
            return
        rc, _, err = fncRun("usermod", ["-a", "-G", ",".join(groups), "--", username])
        if rc != 0:
            raise MembershipError(f"usermod {username}: {_detail(rc, err)}")

    # Function: ensure_home_dir
    # Purpose : mkdir -p, chown user:<login group>, chmod 700.
    # Notes   : Works for both fresh and pre-existing dirs.
    def ensure_home_dir(self, path, owner):
        try:
            os.makedirs(path, mode=HOME_MODE, exist_ok=True)
        except OSError as e:
            raise HomeDirError(f"mkdir {path}: {e}") from e
        rc, _, err = fncRun("chown", ["--", f"{owner}:", path])
        if rc != 0:
            raise HomeDirError(f"chown {path}: {_detail(rc, err)}")
        try:
            os.chmod(path, HOME_MODE)
        except OSError as e:
            raise HomeDirError(f"chmod {path}: {e}") from e

    def set_password(self, username, password):
        rc, _, err = fncRun("chpasswd", [], input=f"{username}:{password}\n")
        if rc != 0:
            # err comes from chpasswd, which doesn't echo the password back
            raise PasswordSetError(f"chpasswd {username}: {_detail(rc, err)}")

    def expire_password(self, username):
        rc, _, err = fncRun("chage", ["-d", "0", "--", username])
        if rc != 0:
            raise PasswordSetError(f"chage {username}: {_detail(rc, err)}")

#====================#
# Credential store   #
#====================#

class CredentialStore:
    """Append-only user:password file, 0600 in a 0700 directory."""

    def __init__(self, path: str):
        self.path = path

    def append(self, username: str, password: str):
        line = f"{username}:{password}\n".encode()
        try:
            fncSecurePath(self.path)
            fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_NOFOLLOW)
            try:
                os.write(fd, line)
                os.fsync(fd)
            finally:
                os.close(fd)
            fncSecurePath(self.path)
        except (OSError, RuntimeError) as e:
            raise CredentialStoreError(f"credential store {self.path}: {e}") from e

#=============#
# Reconciler  #
#=============#

# Function: _fncRetry
# Purpose : Run one executor call with a bounded number of attempts.
# Notes   : Only ActionError is retried; the last one is re-raised.
def _fncRetry(fn: Callable, *args, attempts: int = 1, delay: float = 0.0):
    for attempt in range(1, attempts + 1):
        try:
            return fn(*args)
        except ActionError as e:
            if attempt >= attempts:
                raise
            log.info("Retrying after failure (attempt %d/%d): %s", attempt, attempts, e)
            if delay:
                time.sleep(delay)


class Reconciler:
    """Per-record state machine: groups -> user -> password -> done.

    Every stage contains its own failures. Group and home dir problems are
    logged and the record carries on; a user that couldn't be created or a
    password that wasn't confirmed ends the record. Nothing here stops the
    batch.
    """

    def __init__(self, config: Config, manager: AccountManager, store: CredentialStore,
                 generator: Callable[[int], str] = fncGeneratePassword):
        self.config = config
        self.manager = manager
        self.store = store
        self.generator = generator

    def _call(self, fn: Callable, *args):
        return _fncRetry(fn, *args, attempts=self.config.retry_attempts, delay=self.config.retry_delay)

    def reconcile(self, record: ProvisioningRecord) -> Outcome:
        user = record.username
        stage = "groups"
        try:
            groups = self._ensure_groups(record.groups)

            stage = "user"
            existed = self.manager.user_exists(user)
            if existed:
                self._update_existing_user(user, groups)
            else:
                failed = self._create_user(user, groups)
                if failed is not None:
                    return failed

            stage = "password"
            if existed and not self.config.rotate_existing_passwords:
                log.info("Password left unchanged for existing user: %s", user)
            else:
                failed = self._set_password(user)
                if failed is not None:
                    return failed
        except Exception as e:
            log.error("Unexpected failure at %s stage for user %s: %s", stage, user, e, exc_info=True)
            return Failed(user, stage, str(e))

        log.info("Provisioning complete for user: %s", user)
        return Done(user)

    # Function: _ensure_groups
    # Purpose : Create missing groups; return the ones that exist afterwards.
    # Notes   : A group that can't be created is dropped from membership later.
    def _ensure_groups(self, groups: tuple[str, ...]) -> tuple[str, ...]:
        usable = []
        for grp in groups:
            if self.manager.group_exists(grp):
                log.info("Group exists: %s", grp)
            else:
                try:
                    self._call(self.manager.create_group, grp)
                except GroupCreationError as e:
                    log.error("Failed to create group: %s (continuing): %s", grp, e)
                    continue
                log.info("Created group: %s", grp)
            usable.append(grp)
        return tuple(usable)

    def _ensure_home(self, user: str, home: str, success_msg: str):
        try:
            self._call(self.manager.ensure_home_dir, home, user)
        except HomeDirError as e:
            log.error("Failed to prepare home dir %s for user %s: %s", home, user, e)
            return
        log.info(success_msg, home)

    def _update_existing_user(self, user: str, groups: tuple[str, ...]):
        log.info("User already exists: %s", user)
        home = self.manager.home_dir(user)
        if not self.manager.home_dir_exists(home):
            self._ensure_home(user, home, "Created missing home dir for existing user: %s")

        if not groups:
            return
        # Additive only: memberships not in the record are left alone
        current = self.manager.user_groups(user)
        missing = tuple(g for g in groups if g not in current)
        if not missing:
            log.info("User %s already in groups: %s", user, ",".join(groups))
            return
        try:
            self._call(self.manager.add_user_to_groups, user, missing)
        except MembershipError as e:
            log.error("Failed to add user %s to groups %s: %s", user, ",".join(missing), e)
            return
        log.info("Added user %s to groups: %s", user, ",".join(missing))

    def _create_user(self, user: str, groups: tuple[str, ...]) -> Failed | None:
        try:
            self._call(self.manager.create_user, user, groups, self.config.default_shell)
        except UserCreationError as e:
            if groups:
                log.error("Failed to create user %s with groups %s: %s", user, ",".join(groups), e)
            else:
                log.error("Failed to create user %s: %s", user, e)
            return Failed(user, "user", str(e))

        if groups:
            log.info("Created user: %s (groups: %s)", user, ",".join(groups))
        else:
            log.info("Created user: %s", user)
        self._ensure_home(user, self.manager.home_dir(user), "Home dir secured: %s")
        return None

    # Function: _set_password
    # Purpose : Generate, apply, and only then store the password.
    # Notes   : Nothing is written to the store unless chpasswd succeeded.
    def _set_password(self, user: str) -> Failed | None:
        password = self.generator(self.config.password_length)
        try:
            self._call(self.manager.set_password, user, password)
        except PasswordSetError as e:
            log.error("Failed to set password for user %s: %s", user, e)
            return Failed(user, "password", str(e))

        try:
            self.store.append(user, password)
        except CredentialStoreError as e:
            log.error("Password set for user %s but could not be stored: %s", user, e)
            return Failed(user, "store", str(e))
        finally:
            del password
        log.info("Password set and stored for user: %s", user)

        if self.config.force_password_change:
            try:
                self._call(self.manager.expire_password, user)
            except PasswordSetError as e:
                log.error("Failed to expire password for user %s: %s", user, e)
            else:
                log.info("Password expired (change at next login) for user: %s", user)
        return None

#==============#
# Batch runner #
#==============#

# Function: fncProcessLines
# Purpose : Parse and reconcile each line in order; absorb every per-record failure.
# Notes   : Blank lines aren't logged or counted.
def fncProcessLines(lines: Iterable[tuple[int, str]], reconciler: Reconciler) -> BatchSummary:
    summary = BatchSummary()
    for line_no, raw in lines:
        try:
            parsed = fncParseLine(raw, line_no)
        except ValidationError as e:
            log.error("%s", e)
            summary.add(Skipped(str(e), level="ERROR"))
            continue

        if isinstance(parsed, Skipped):
            if parsed.level == "SKIP":
                fncLogSkip("%s", parsed.reason)
                summary.add(parsed)
            continue

        summary.add(reconciler.reconcile(parsed))
    return summary

def fncProcessFile(path: str, reconciler: Reconciler) -> BatchSummary:
    try:
        summary = fncProcessLines(fncReadLines(path), reconciler)
    except OSError as e:
        raise FatalInputError(f"Could not read input file {path}: {e}") from e
    log.info("Processing complete for file: %s (done=%d skipped=%d failed=%d)",
             path, summary.done, summary.skipped, summary.failed)
    return summary

#=================#
# Script harness  #
#=================#

def fncParseArgs(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="usermatic",
        description="Create users/groups from a 'username;group1,group2' file, "
                    "set random passwords and log everything.",
    )
    # Optional here so a missing file gets our exit code, not argparse's 2
    p.add_argument("input_file", nargs="?", help="path to the users file")
    p.add_argument("--no-color", action="store_true", help="disable coloured console output")
    p.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return p.parse_args(argv)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root.
def fncAdminCheck():
    if os.geteuid() != 0:
        raise FatalPrivilegeError("This must be run as root. Use sudo.")

def fncCheckInput(path: str | None):
    if not path or not os.path.isfile(path) or not os.access(path, os.R_OK):
        raise FatalInputError(f"Usage: usermatic /path/to/users_file (not a readable file: {path or '-'})")

# Function: fncAcquireLock
# Purpose : Exclusive lock so two runs don't interleave writes to the log/store.
# Notes   : flock, so it is held per open file and not just per process.
def fncAcquireLock(config: Config):
    os.makedirs(config.state_dir, mode=DIR_MODE, exist_ok=True)
    try:
        fh = open(config.lock_path, "w")
    except OSError as e:
        raise FatalLockError(f"Failed to open lock ({config.lock_path}): {e}") from e
    try:
        os.chmod(config.lock_path, FILE_MODE)
        fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as e:
        fh.close()
        raise FatalLockError("Another instance of usermatic is already running.") from e
    except OSError as e:
        fh.close()
        raise FatalLockError(f"Failed to acquire lock ({config.lock_path}): {e}") from e
    return fh

# Function: fncMain
# Purpose : Entrypoint; privilege + input checks, logging, lock, run.
# Notes   : Returns the exit code. Per-record failures never change it.
def fncMain(argv: list[str] | None = None, manager: AccountManager | None = None) -> int:
    args = fncParseArgs(argv)
    fncSetColorMode(args.no_color)
    old_umask = os.umask(0o077)
    lock = None
    try:
        fncAdminCheck()
        fncCheckInput(args.input_file)
        config, problems = fncLoadConfig()
        fncSetupLogging(config)
        for msg in problems:
            log.error("%s", msg)
        lock = fncAcquireLock(config)
        reconciler = Reconciler(config, manager or SystemAccountManager(config),
                                CredentialStore(config.password_file))
        fncProcessFile(args.input_file, reconciler)
        return EXIT_OK
    except FatalError as e:
        fncPrintMessage(str(e), "error")
        return e.exit_code
    except KeyboardInterrupt:
        fncPrintMessage("Interrupted. Bye then...", "error")
        return EXIT_INTERRUPTED
    except Exception as e:
        log.exception("Unhandled exception: %s", e)
        return EXIT_INTERNAL
    finally:
        if lock is not None:
            lock.close()
        fncShutdownLogging()
        os.umask(old_umask)

def main():
    fncCheckPyVersion()
    sys.exit(fncMain())

if __name__ == "__main__":
    main()
