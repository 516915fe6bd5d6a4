#!/usr/bin/env python3
"""Manage SSH accounts that can only run a single registered command.

The tool provisions an account bound to one command and maintains the named
set of public keys allowed to log into it:

* ``create`` makes the account and records its command in ``~/.sshcommand``.
* ``acl-add`` / ``acl-remove`` grant and revoke a named public key.
* ``list`` shows the fingerprint, name and restriction flags of every key.

Every key line forces ``cat ~/.sshcommand`` to run, so the registered command
can be changed later without touching the keys.  Account creation shells out
to the platform's ``adduser``/``useradd`` and therefore needs root.
"""

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import sys
from pathlib import Path
from typing import Callable, Dict, Sequence

from sshcommand_accounts import AccountResolver, PosixAccountResolver
from sshcommand_acl import ACLStore, AuthorizedKeysFile, chown_path
from sshcommand_config import Settings, split_flags
from sshcommand_errors import InvalidArguments, ManagerError


__version__ = "0.1.0"

COMMAND_FILE_NAME = ".sshcommand"

logger = logging.getLogger("sshcommand")


def check_root() -> None:
    """Ensure the script runs with sufficient privileges."""

    if os.geteuid() != 0:
        raise ManagerError("This command must be run as root.")


class ProvisionService:
    """Creates restricted accounts and their skeleton files."""

    def __init__(self, resolver: AccountResolver) -> None:
        self.resolver = resolver

    def create(self, account_name: str, command: str) -> None:
        """Create ``account_name`` bound to ``command``.

        An existing account is reused; its registered command is rewritten and
        its authorized_keys file is left as it is.
        """

        if not account_name or not command or not command.strip():
            raise InvalidArguments("Both a user name and a command are required.")
        command = command.strip()
        if "\n" in command or "\r" in command:
            raise InvalidArguments("The command must be a single line.")

        if self.resolver.exists(account_name):
            logger.info("User '%s' already exists; skipping creation", account_name)
        else:
            self.resolver.create_account(account_name)

        account = self.resolver.get(account_name)
        command_path = account.home_dir / COMMAND_FILE_NAME
        try:
            command_path.write_text(command + "\n", encoding="utf-8")
            chown_path(command_path, account.uid, account.gid)
        except OSError as exc:
            raise ManagerError(f"Unable to write {command_path}: {exc}") from exc

        keys_file = AuthorizedKeysFile.for_account(account)
        keys_file.ensure_exists()
        try:
            chown_path(keys_file.directory, account.uid, account.gid)
        except OSError as exc:
            raise ManagerError(
                f"Unable to set ownership of {keys_file.directory}: {exc}"
            ) from exc
        logger.info("Registered command for '%s' in %s", account.name, command_path)


class Operation(enum.Enum):
    CREATE = "create"
    ACL_ADD = "acl-add"
    ACL_REMOVE = "acl-remove"
    LIST = "list"
    HELP = "help"
    VERSION = "version"


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if getattr(args, "os_release", None):
        settings = settings.replace(os_release_path=Path(args.os_release))
    if getattr(args, "allowed_keys", None) is not None:
        settings = settings.replace(allowed_keys=split_flags(args.allowed_keys))
    return settings


def get_resolver(settings: Settings) -> AccountResolver:
    return PosixAccountResolver(os_release_path=settings.os_release_path)


def build_store(settings: Settings) -> ACLStore:
    return ACLStore(
        get_resolver(settings),
        allowed_keys=settings.allowed_keys,
        check_duplicate_fingerprint=settings.check_duplicate_fingerprint,
    )


def read_key(key_file: str | None) -> bytes:
    """Read the public key from ``key_file`` or standard input."""

    if key_file is None or key_file == "-":
        return sys.stdin.buffer.read()
    path = Path(key_file)
    try:
        return path.read_bytes()
    except OSError as exc:
        raise InvalidArguments(f"Unable to read key file {path}: {exc}") from exc


def cmd_create(args: argparse.Namespace) -> None:
    check_root()
    service = ProvisionService(get_resolver(load_settings(args)))
    service.create(args.username, args.command)


def cmd_acl_add(args: argparse.Namespace) -> None:
    store = build_store(load_settings(args))
    fingerprint = store.add(args.username, args.name, read_key(args.key_file))
    print(fingerprint)


def cmd_acl_remove(args: argparse.Namespace) -> None:
    store = build_store(load_settings(args))
    store.remove(args.username, args.name)


def cmd_list(args: argparse.Namespace) -> None:
    store = build_store(load_settings(args))
    entries = store.list(args.username, args.name)
    if args.format == "json":
        payload = [
            {
                "fingerprint": entry.fingerprint,
                "name": entry.name,
                "allowed_keys": entry.allowed_keys,
            }
            for entry in entries
        ]
        print(json.dumps(payload, indent=2, sort_keys=True))
        return
    for entry in entries:
        print(
            f'{entry.fingerprint} NAME="{entry.name}" '
            f'SSHCOMMAND_ALLOWED_KEYS="{entry.allowed_keys}"'
        )


def cmd_help(args: argparse.Namespace) -> None:
    build_parser().print_help()


def cmd_version(args: argparse.Namespace) -> None:
    print(f"sshcommand {__version__}")


HANDLERS: Dict[Operation, Callable[[argparse.Namespace], None]] = {
    Operation.CREATE: cmd_create,
    Operation.ACL_ADD: cmd_acl_add,
    Operation.ACL_REMOVE: cmd_acl_remove,
    Operation.LIST: cmd_list,
    Operation.HELP: cmd_help,
    Operation.VERSION: cmd_version,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sshcommand", description=__doc__)
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log debug output to stderr.",
    )
    parser.add_argument(
        "--os-release",
        metavar="PATH",
        help="os-release file used to pick the account creation tool.",
    )
    subparsers = parser.add_subparsers(dest="command_name", required=True)

    create = subparsers.add_parser(
        Operation.CREATE.value,
        help="Create a user bound to a single command.",
    )
    create.add_argument("username", help="System username to create.")
    create.add_argument("command", help="Command run for every SSH login.")
    create.set_defaults(operation=Operation.CREATE)

    acl_add = subparsers.add_parser(
        Operation.ACL_ADD.value,
        help="Grant a named public key access to a user.",
    )
    acl_add.add_argument("username", help="Restricted user to modify.")
    acl_add.add_argument("name", help="Unique name for the key.")
    acl_add.add_argument(
        "key_file",
        nargs="?",
        help="Public key file; read from standard input when omitted or '-'.",
    )
    acl_add.add_argument(
        "--allowed-keys",
        metavar="FLAGS",
        help="Comma separated authorized_keys restriction options for this key.",
    )
    acl_add.set_defaults(operation=Operation.ACL_ADD)

    acl_remove = subparsers.add_parser(
        Operation.ACL_REMOVE.value,
        help="Revoke every key with the given name.",
    )
    acl_remove.add_argument("username", help="Restricted user to modify.")
    acl_remove.add_argument("name", help="Name of the key to remove.")
    acl_remove.set_defaults(operation=Operation.ACL_REMOVE)

    list_cmd = subparsers.add_parser(
        Operation.LIST.value,
        help="List the keys allowed into a user.",
    )
    list_cmd.add_argument("username")
    list_cmd.add_argument("name", nargs="?", help="Only show keys with this name.")
    list_cmd.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format (default text).",
    )
    list_cmd.set_defaults(operation=Operation.LIST)

    help_cmd = subparsers.add_parser(Operation.HELP.value, help="Show this help.")
    help_cmd.set_defaults(operation=Operation.HELP)

    version_cmd = subparsers.add_parser(
        Operation.VERSION.value, help="Show the sshcommand version."
    )
    version_cmd.set_defaults(operation=Operation.VERSION)

    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    try:
        HANDLERS[args.operation](args)
    except ManagerError as exc:
        parser.exit(1, f"error: {exc}\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
