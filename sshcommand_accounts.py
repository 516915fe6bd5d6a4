"""OS account lookup and creation.

The ACL engine only needs to know whether an account exists and where its
home directory lives.  Creating accounts is platform specific, so each
platform family gets its own :class:`AccountCreator` and the matching one is
picked from the os-release file.
"""

from __future__ import annotations

import abc
import logging
import pwd
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, Dict, FrozenSet, List, Sequence, Type

from sshcommand_config import DEFAULT_OS_RELEASE_PATH
from sshcommand_errors import AccountNotFound, ManagerError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Account:
    """A resolved OS account."""

    name: str
    home_dir: Path
    uid: int
    gid: int
    exists: bool = True


class AccountResolver(abc.ABC):
    """Maps account names to OS accounts."""

    @abc.abstractmethod
    def get(self, name: str) -> Account:
        """Return the account or raise :class:`AccountNotFound`."""

    @abc.abstractmethod
    def create_account(self, name: str) -> None:
        """Create ``name``; afterwards :meth:`exists` is true."""

    def exists(self, name: str) -> bool:
        try:
            self.get(name)
        except AccountNotFound:
            return False
        return True

    def home_dir(self, name: str) -> Path:
        return self.get(name).home_dir


def read_os_release(path: Path = DEFAULT_OS_RELEASE_PATH) -> Dict[str, str]:
    """Parse an os-release file into a dictionary.

    A missing file yields an empty mapping so that the generic creator is
    used.
    """

    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("No os-release file at %s", path)
        return {}
    except OSError as exc:
        raise ManagerError(f"Unable to read {path}: {exc}") from exc

    fields: Dict[str, str] = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        try:
            tokens = shlex.split(value)
        except ValueError:
            tokens = [value]
        fields[key.strip()] = tokens[0] if tokens else ""
    return fields


class AccountCreator(abc.ABC):
    """Creates accounts with the tool native to one platform family."""

    distro_ids: ClassVar[FrozenSet[str]] = frozenset()

    @classmethod
    def matches(cls, os_release: Dict[str, str]) -> bool:
        ids = {os_release.get("ID", "").lower()}
        ids.update(os_release.get("ID_LIKE", "").lower().split())
        return bool(cls.distro_ids & ids)

    @abc.abstractmethod
    def command(self, name: str) -> List[str]:
        """Return the argv that creates ``name`` with a home directory."""

    def create(self, name: str) -> None:
        cmd = self.command(name)
        logger.info("Creating user '%s' with %s", name, cmd[0])
        try:
            subprocess.run(cmd, check=True)
        except FileNotFoundError as exc:
            raise ManagerError(
                f"The '{cmd[0]}' command is not available on this system."
            ) from exc
        except subprocess.CalledProcessError as exc:
            raise ManagerError(
                f"{cmd[0]} failed with exit code {exc.returncode}."
            ) from exc


class DebianAccountCreator(AccountCreator):
    distro_ids = frozenset({"debian", "ubuntu"})

    def command(self, name: str) -> List[str]:
        return ["adduser", "--disabled-password", "--gecos", "", name]


class AlpineAccountCreator(AccountCreator):
    distro_ids = frozenset({"alpine"})

    def command(self, name: str) -> List[str]:
        return ["adduser", "-D", "-g", "", "-s", "/bin/sh", name]


class GenericAccountCreator(AccountCreator):
    """Fallback for Arch, the Red Hat family and anything unrecognised."""

    def command(self, name: str) -> List[str]:
        return ["useradd", "--create-home", "--shell", "/bin/bash", name]


CREATORS: Sequence[Type[AccountCreator]] = (
    DebianAccountCreator,
    AlpineAccountCreator,
)


def select_creator(os_release: Dict[str, str]) -> AccountCreator:
    for creator_cls in CREATORS:
        if creator_cls.matches(os_release):
            return creator_cls()
    return GenericAccountCreator()


class PosixAccountResolver(AccountResolver):
    """Resolver backed by the system password database."""

    def __init__(self, os_release_path: Path = DEFAULT_OS_RELEASE_PATH) -> None:
        self.os_release_path = Path(os_release_path)

    def get(self, name: str) -> Account:
        try:
            entry = pwd.getpwnam(name)
        except KeyError as exc:
            raise AccountNotFound(name) from exc
        return Account(
            name=entry.pw_name,
            home_dir=Path(entry.pw_dir),
            uid=entry.pw_uid,
            gid=entry.pw_gid,
        )

    def create_account(self, name: str) -> None:
        creator = select_creator(read_os_release(self.os_release_path))
        creator.create(name)
        if not self.exists(name):
            raise ManagerError(f"User '{name}' was not created.")
