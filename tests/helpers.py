"""Shared fixtures data for the sshcommand tests."""

from __future__ import annotations

import base64
import hashlib
import os
import struct
from pathlib import Path
from typing import Dict, List

from sshcommand_accounts import Account, AccountResolver
from sshcommand_errors import AccountNotFound


# Public keys from the OpenSSH regression test data; never use them for real.
ED25519_ALICE = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIA1J77+CrJ8p6/vWCEzuylqJNMHUP/XmeYyGVWb8lnDd"
    " alice@laptop"
)
ED25519_BOB = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFOG6kY7Rf4UtCFvPwKgo/BztXck2xC4a2WyA34XtIwZ"
    " bob@desk"
)
RSA_CAROL = (
    "ssh-rsa AAAAB3NzaC1yc2EAAAABIwAAAQEA3I7VUf2l5gSn5uavROsc5HRDpZdQueUq5oz"
    "emNSj8T7enqKHOEaFoU2VoPgGEWC9RyzSQVeyD6s7APMcE82EtmW4skVEgEGSbD"
    "c1pvxzxtchBj78hJP6Cf5TCMFSXw+Fz5rF1dR23QDbN1mkHs7adr8GW4kSWqU7Q"
    "7NDwfIrJJtO7Hi42GyXtvEONHbiRPOe8stqUly7MvUoN+5kfjBM8Qqpfl2+FNhT"
    "YWpMfYdPUnE7u536WqzFmsaqJctz3gBxH9Ex7dFtrxR4qiqEr9Qtlu3xGn7Bw07"
    "/+i1D+ey3ONkZLN+LQ714cgj8fRS4Hj29SCmXp5Kt5/82cD/VN3NtHw=="
    " carol"
)


def md5_fingerprint(key_line: str) -> str:
    """Compute the legacy fingerprint of ``key_line`` without sshpubkeys."""

    blob = base64.b64decode(key_line.split()[1])
    digest = hashlib.md5(blob).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))



def ssh_string(data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + data


def ssh_mpint(value: int) -> bytes:
    return ssh_string(value.to_bytes((value.bit_length() + 8) // 8, "big"))

class FakeResolver(AccountResolver):
    """Accounts living under a temporary directory, owned by the test user."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.accounts: Dict[str, Account] = {}
        self.created: List[str] = []

    def add(self, name: str) -> Account:
        home = self.root / name
        home.mkdir(parents=True, exist_ok=True)
        account = Account(name=name, home_dir=home, uid=os.getuid(), gid=os.getgid())
        self.accounts[name] = account
        return account

    def get(self, name: str) -> Account:
        try:
            return self.accounts[name]
        except KeyError as exc:
            raise AccountNotFound(name) from exc

    def create_account(self, name: str) -> None:
        self.created.append(name)
        self.add(name)
