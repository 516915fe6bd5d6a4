"""The authorized_keys ACL engine.

Each managed key is stored as one ``authorized_keys`` line whose forced
command exports the key's fingerprint and name before running the account's
registered command::

    command="FINGERPRINT=<fp> NAME=\\"<name>\\" `cat <home>/.sshcommand` $SSH_ORIGINAL_COMMAND",<flags> <type> <base64> [comment]

The registered command is read through ``cat`` when the connection is made
rather than inlined, so rewriting ``.sshcommand`` changes what every existing
key runs.  sshd and the login shell both interpret this text, so it has to be
produced exactly as shown.

Lines that do not look like managed entries are never modified.
"""

from __future__ import annotations

import contextlib
import fcntl
import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from sshcommand_accounts import Account, AccountResolver
from sshcommand_config import DEFAULT_ALLOWED_KEYS, split_flags
from sshcommand_errors import (
    DuplicateKey,
    DuplicateName,
    EmptyKeysFile,
    InvalidArguments,
    ManagerError,
    NoKeysFile,
)
from sshcommand_keys import KeyValidator


logger = logging.getLogger(__name__)

COMMAND_OPTION = 'command="'
SSH_DIR_MODE = stat.S_IRWXU
KEYS_FILE_MODE = stat.S_IRUSR | stat.S_IWUSR

_SHELL_SPECIAL = '\\"$`'
_COMMAND_RE = re.compile(
    r'^FINGERPRINT=(?P<fingerprint>\S+) '
    r'NAME=(?:"(?P<quoted>(?:[^"\\]|\\.)*)"|(?P<bare>[^\s"]+)) '
)
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class ACLEntry:
    """One managed key in an account's authorized_keys file."""

    name: str
    fingerprint: str
    restriction_flags: Tuple[str, ...] = ()
    key_material: str = ""

    @property
    def allowed_keys(self) -> str:
        return ",".join(self.restriction_flags)


def shell_escape(value: str) -> str:
    """Escape ``value`` for use inside a double quoted shell string."""

    return "".join("\\" + char if char in _SHELL_SPECIAL else char for char in value)


def shell_unescape(value: str) -> str:
    chars = []
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\" and index + 1 < len(value) and value[index + 1] in _SHELL_SPECIAL:
            chars.append(value[index + 1])
            index += 2
            continue
        chars.append(char)
        index += 1
    return "".join(chars)


def read_quoted_option(line: str, start: int) -> Optional[Tuple[str, int]]:
    """Read an option value starting just after its opening quote.

    Follows sshd: a backslash followed by a double quote yields the quote and
    every other backslash is literal.  Returns the value and the index after
    the closing quote, or ``None`` if the value is unterminated.
    """

    chars = []
    index = start
    while index < len(line):
        char = line[index]
        if char == '"':
            return "".join(chars), index + 1
        if char == "\\" and line[index + 1 : index + 2] == '"':
            chars.append('"')
            index += 2
            continue
        chars.append(char)
        index += 1
    return None


def _split_options(text: str) -> Tuple[str, str]:
    """Split ``text`` at the first whitespace outside of double quotes."""

    in_quote = False
    index = 0
    while index < len(text):
        char = text[index]
        if in_quote and char == "\\" and text[index + 1 : index + 2] == '"':
            index += 2
            continue
        if char == '"':
            in_quote = not in_quote
        elif char in " \t" and not in_quote:
            break
        index += 1
    return text[:index], text[index:]


class ForcedCommandBuilder:
    """Encodes and decodes managed authorized_keys lines."""

    def build(
        self, fingerprint: str, name: str, home_dir: Path, flags: Sequence[str]
    ) -> str:
        """Return the options prefix binding a key to the registered command."""

        command = (
            f'FINGERPRINT={fingerprint} NAME="{shell_escape(name)}" '
            f"`cat {home_dir}/.sshcommand` $SSH_ORIGINAL_COMMAND"
        )
        prefix = COMMAND_OPTION + command.replace('"', '\\"') + '"'
        if flags:
            prefix += "," + ",".join(flags)
        return prefix

    def encode(self, entry: ACLEntry, home_dir: Path) -> str:
        prefix = self.build(
            entry.fingerprint, entry.name, home_dir, entry.restriction_flags
        )
        return f"{prefix} {entry.key_material}"

    def decode(self, line: str) -> Optional[ACLEntry]:
        """Recover an :class:`ACLEntry` from ``line``; ``None`` if unmanaged."""

        line = line.rstrip("\r\n")
        if not line.startswith(COMMAND_OPTION):
            return None

        parsed = read_quoted_option(line, len(COMMAND_OPTION))
        if parsed is None:
            return None
        command, end = parsed

        match = _COMMAND_RE.match(command)
        if match is None:
            return None
        if match.group("quoted") is not None:
            name = shell_unescape(match.group("quoted"))
        else:
            name = match.group("bare")

        remainder = line[end:]
        flags: Tuple[str, ...] = ()
        if remainder.startswith(","):
            options, remainder = _split_options(remainder[1:])
            flags = split_flags(options)
        elif remainder[:1] not in (" ", "\t"):
            return None

        key_material = remainder.strip()
        if not key_material:
            return None

        return ACLEntry(
            name=name,
            fingerprint=match.group("fingerprint"),
            restriction_flags=flags,
            key_material=key_material,
        )


def _split_lines(content: str) -> List[str]:
    pieces = content.split("\n")
    lines = [piece + "\n" for piece in pieces[:-1]]
    if pieces[-1]:
        lines.append(pieces[-1])
    return lines


def chown_path(path: Path, uid: int, gid: int) -> None:
    info = os.stat(path)
    if (info.st_uid, info.st_gid) != (uid, gid):
        os.chown(path, uid, gid)


class AuthorizedKeysFile:
    """Handle on one account's ``~/.ssh/authorized_keys``."""

    def __init__(self, path: Path, uid: int, gid: int) -> None:
        self.path = Path(path)
        self.uid = uid
        self.gid = gid

    @classmethod
    def for_account(cls, account: Account) -> "AuthorizedKeysFile":
        return cls(account.home_dir / ".ssh" / "authorized_keys", account.uid, account.gid)

    @property
    def directory(self) -> Path:
        return self.path.parent

    def exists(self) -> bool:
        return self.path.is_file()

    def size(self) -> int:
        return self.path.stat().st_size

    def ensure_directory(self) -> None:
        """Create ``.ssh`` with owner-only permissions if it is missing."""

        if self.directory.is_dir():
            return
        try:
            self.directory.mkdir(mode=SSH_DIR_MODE, parents=True)
            self.directory.chmod(SSH_DIR_MODE)
            chown_path(self.directory, self.uid, self.gid)
        except OSError as exc:
            raise ManagerError(
                f"Unable to create directory {self.directory}: {exc}"
            ) from exc

    def ensure_exists(self) -> None:
        """Create an empty keys file, keeping any existing content."""

        self.ensure_directory()
        try:
            fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, KEYS_FILE_MODE)
            os.close(fd)
            chown_path(self.path, self.uid, self.gid)
        except OSError as exc:
            raise ManagerError(f"Unable to create {self.path}: {exc}") from exc

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive advisory lock for a read-modify-write cycle.

        The lock is taken on the ``.ssh`` directory itself: its inode survives
        the rename in :meth:`write_lines` and no extra file is left behind.
        """

        try:
            fd = os.open(self.directory, os.O_RDONLY)
        except OSError as exc:
            raise ManagerError(f"Unable to open {self.directory}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            logger.debug("Acquired lock: %s", self.directory)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

    def read_lines(self) -> List[str]:
        """Return the file's lines with their line endings; ``[]`` if absent."""

        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise ManagerError(f"Unable to read {self.path}: {exc}") from exc
        return _split_lines(content.decode("utf-8", errors="surrogateescape"))

    def write_lines(self, lines: Sequence[str]) -> None:
        """Atomically replace the file with ``lines``.

        Mode and ownership of an existing file carry over to the new one.
        """

        fd, tmp_name = tempfile.mkstemp(prefix=".authorized_keys.", dir=self.directory)
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write("".join(lines).encode("utf-8", errors="surrogateescape"))
                handle.flush()
                os.fsync(handle.fileno())
            try:
                info = self.path.stat()
            except FileNotFoundError:
                mode, uid, gid = KEYS_FILE_MODE, self.uid, self.gid
            else:
                mode, uid, gid = stat.S_IMODE(info.st_mode), info.st_uid, info.st_gid
            tmp_path.chmod(mode)
            chown_path(tmp_path, uid, gid)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise ManagerError(f"Unable to write {self.path}: {exc}") from exc


class ACLStore:
    """Add, remove and list the named keys allowed into an account."""

    def __init__(
        self,
        resolver: AccountResolver,
        validator: KeyValidator | None = None,
        builder: ForcedCommandBuilder | None = None,
        allowed_keys: Sequence[str] | None = None,
        check_duplicate_fingerprint: bool = False,
    ) -> None:
        self.resolver = resolver
        self.validator = validator or KeyValidator()
        self.builder = builder or ForcedCommandBuilder()
        if allowed_keys is None:
            allowed_keys = split_flags(DEFAULT_ALLOWED_KEYS)
        self.allowed_keys = tuple(allowed_keys)
        self.check_duplicate_fingerprint = check_duplicate_fingerprint

    def _entries(self, lines: Sequence[str]) -> List[ACLEntry]:
        entries = []
        for line in lines:
            entry = self.builder.decode(line)
            if entry is not None:
                entries.append(entry)
        return entries

    def add(self, account_name: str, name: str, key_bytes: bytes) -> str:
        """Grant ``key_bytes`` access to the account under ``name``.

        Returns the key's fingerprint.  Nothing is written unless every check
        passes.
        """

        account = self.resolver.get(account_name)
        if not name:
            raise InvalidArguments("A key name is required.")
        if _CONTROL_RE.search(name):
            raise InvalidArguments(f"Key name {name!r} contains control characters.")

        keys_file = AuthorizedKeysFile.for_account(account)
        key = None
        if not keys_file.directory.is_dir():
            # No entries can exist yet; only create .ssh for a usable key.
            key = self.validator.parse(key_bytes)
            keys_file.ensure_directory()
        with keys_file.lock():
            lines = keys_file.read_lines()
            entries = self._entries(lines)
            if any(entry.name == name for entry in entries):
                raise DuplicateName(name)

            if key is None:
                key = self.validator.parse(key_bytes)
            if self.check_duplicate_fingerprint:
                for entry in entries:
                    if entry.fingerprint == key.fingerprint:
                        raise DuplicateKey(key.fingerprint, entry.name)

            entry = ACLEntry(
                name=name,
                fingerprint=key.fingerprint,
                restriction_flags=self.allowed_keys,
                key_material=key.material,
            )
            new_lines = list(lines)
            if new_lines and not new_lines[-1].endswith("\n"):
                new_lines[-1] += "\n"
            new_lines.append(self.builder.encode(entry, account.home_dir) + "\n")
            keys_file.write_lines(new_lines)

        logger.info(
            "Added ssh key '%s' (%s) for user '%s'", name, key.fingerprint, account.name
        )
        return key.fingerprint

    def remove(self, account_name: str, name: str) -> None:
        """Drop every entry called ``name``; a missing name is not an error."""

        account = self.resolver.get(account_name)
        keys_file = AuthorizedKeysFile.for_account(account)
        if not keys_file.exists():
            logger.debug("No keys file for '%s'; nothing to remove", account.name)
            return

        with keys_file.lock():
            lines = keys_file.read_lines()
            kept = []
            for line in lines:
                entry = self.builder.decode(line)
                if entry is not None and entry.name == name:
                    continue
                kept.append(line)
            if len(kept) == len(lines):
                logger.debug("No ssh key named '%s' for user '%s'", name, account.name)
                return
            keys_file.write_lines(kept)

        logger.info(
            "Removed %d ssh key(s) named '%s' for user '%s'",
            len(lines) - len(kept),
            name,
            account.name,
        )

    def list(self, account_name: str, name: str | None = None) -> List[ACLEntry]:
        account = self.resolver.get(account_name)
        keys_file = AuthorizedKeysFile.for_account(account)
        if not keys_file.exists():
            raise NoKeysFile(f"{keys_file.path} does not exist.")
        if keys_file.size() == 0:
            raise EmptyKeysFile(f"{keys_file.path} is empty.")

        entries = self._entries(keys_file.read_lines())
        if name is not None:
            entries = [entry for entry in entries if entry.name == name]
        return entries
