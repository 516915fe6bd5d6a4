"""Error taxonomy shared by the sshcommand modules.

Every error is terminal for the operation that raised it: they describe bad
caller input or unexpected environment state, never a transient fault.
"""

from __future__ import annotations


class ManagerError(RuntimeError):
    """Base class for management related errors."""


class InvalidArguments(ManagerError):
    """A required input is missing or unusable."""


class AccountNotFound(ManagerError):
    """The named OS account does not exist."""

    def __init__(self, account: str) -> None:
        super().__init__(f"User '{account}' does not exist.")
        self.account = account


class DuplicateName(ManagerError):
    """An ACL entry with the same name is already present."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate ssh key name '{name}'.")
        self.name = name


class DuplicateKey(ManagerError):
    """An ACL entry with the same fingerprint is already present."""

    def __init__(self, fingerprint: str, existing_name: str) -> None:
        super().__init__(
            f"Duplicate ssh public key {fingerprint} (already added as '{existing_name}')."
        )
        self.fingerprint = fingerprint
        self.existing_name = existing_name


class InvalidKeyFormat(ManagerError):
    """The supplied public key cannot be parsed or fingerprinted."""


class NoKeysFile(ManagerError):
    """The account has no authorized_keys file."""


class EmptyKeysFile(ManagerError):
    """The account's authorized_keys file exists but is empty."""
