"""Public key validation and fingerprinting.

Parsing is delegated to :mod:`sshpubkeys`, which understands every key type
OpenSSH accepts in ``authorized_keys``.  Fingerprints use the legacy MD5
scheme (16 colon separated hex pairs) because that is what the forced command
exports as ``FINGERPRINT`` and what existing ACL files already contain.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from sshpubkeys import SSHKey
from sshpubkeys.exceptions import InvalidKeyError

from sshcommand_errors import InvalidKeyFormat


logger = logging.getLogger(__name__)

FINGERPRINT_RE = re.compile(r"^[0-9a-f]{2}(?::[0-9a-f]{2}){15}$")


@dataclass(frozen=True)
class PublicKey:
    """A single validated OpenSSH public key."""

    key_type: str
    blob: str
    comment: str
    fingerprint: str

    @property
    def material(self) -> str:
        """The ``<type> <base64> [comment]`` tail of an authorized_keys line."""

        parts = [self.key_type, self.blob]
        if self.comment:
            parts.append(self.comment)
        return " ".join(parts)


class KeyValidator:
    """Parse raw public key bytes and compute their fingerprint."""

    def __init__(self, strict: bool = True) -> None:
        self.strict = strict

    def parse(self, raw: bytes) -> PublicKey:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidKeyFormat("Public key is not valid UTF-8 text.") from exc

        lines = [line.strip() for line in text.splitlines() if line.strip()]
        if not lines:
            raise InvalidKeyFormat("No public key supplied.")
        if len(lines) > 1:
            raise InvalidKeyFormat(
                f"Expected a single public key, got {len(lines)} lines."
            )
        keydata = lines[0]

        key = SSHKey(strict=self.strict)
        try:
            key.parse(keydata)
        except (InvalidKeyError, NotImplementedError, ValueError, TypeError) as exc:
            # cryptography rejects bad RSA exponents with a bare ValueError.
            raise InvalidKeyFormat(f"Invalid public key: {exc}") from exc
        if key.options_raw:
            raise InvalidKeyFormat(
                "Public key must not carry its own authorized_keys options."
            )

        fingerprint = key.hash_md5()
        if fingerprint.startswith("MD5:"):
            fingerprint = fingerprint[len("MD5:") :]
        fingerprint = fingerprint.lower()
        if not FINGERPRINT_RE.match(fingerprint):
            raise InvalidKeyFormat(
                f"Unexpected fingerprint format '{fingerprint}'."
            )

        parts = keydata.split(None, 2)
        comment = parts[2].strip() if len(parts) > 2 else ""
        logger.debug("Parsed %s key %s", parts[0], fingerprint)
        return PublicKey(
            key_type=parts[0], blob=parts[1], comment=comment, fingerprint=fingerprint
        )

    def validate(self, raw: bytes) -> str:
        """Return the fingerprint of ``raw`` or raise :class:`InvalidKeyFormat`."""

        return self.parse(raw).fingerprint
