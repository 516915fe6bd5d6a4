"""Runtime settings for sshcommand.

Defaults live in module constants and can be overridden through environment
variables.  The CLI layers its own options on top via :meth:`Settings.replace`.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Tuple


DEFAULT_ALLOWED_KEYS = (
    "no-agent-forwarding,no-user-rc,no-X11-forwarding,no-port-forwarding"
)
DEFAULT_OS_RELEASE_PATH = Path("/etc/os-release")

ALLOWED_KEYS_ENV_VAR = "SSHCOMMAND_ALLOWED_KEYS"
OS_RELEASE_ENV_VAR = "SSHCOMMAND_OSRELEASE"
CHECK_DUPLICATE_ENV_VAR = "SSHCOMMAND_CHECK_DUPLICATE_FINGERPRINT"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def split_flags(raw: str) -> Tuple[str, ...]:
    """Split a comma separated restriction flag string, honouring quotes.

    ``permitopen="host:22"`` style values may themselves contain commas inside
    the quotes, so a plain ``str.split`` is not enough.
    """

    flags = []
    current = []
    in_quote = False
    index = 0
    while index < len(raw):
        char = raw[index]
        if in_quote and char == "\\" and raw[index + 1 : index + 2] == '"':
            current.append('\\"')
            index += 2
            continue
        if char == '"':
            in_quote = not in_quote
        if char == "," and not in_quote:
            flags.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        index += 1
    flags.append("".join(current).strip())
    return tuple(flag for flag in flags if flag)


@dataclass(frozen=True)
class Settings:
    """Resolved configuration for a single invocation."""

    allowed_keys: Tuple[str, ...] = split_flags(DEFAULT_ALLOWED_KEYS)
    os_release_path: Path = DEFAULT_OS_RELEASE_PATH
    check_duplicate_fingerprint: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        if environ is None:
            environ = os.environ

        allowed_raw = environ.get(ALLOWED_KEYS_ENV_VAR)
        if allowed_raw is None:
            allowed_raw = DEFAULT_ALLOWED_KEYS

        return cls(
            allowed_keys=split_flags(allowed_raw),
            os_release_path=Path(
                environ.get(OS_RELEASE_ENV_VAR) or DEFAULT_OS_RELEASE_PATH
            ),
            check_duplicate_fingerprint=(
                environ.get(CHECK_DUPLICATE_ENV_VAR, "").strip().lower()
                in _TRUE_VALUES
            ),
        )

    def replace(self, **changes) -> "Settings":
        return dataclasses.replace(self, **changes)
