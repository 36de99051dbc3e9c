"""Agent API key format — generation and recognition.

Learn: A key is a format prefix plus 32 random bytes as hex:

    cbk_3f9a…(64 hex chars)

New keys always use the current format. Older formats stay in
RECOGNIZED_FORMATS so keys issued before a prefix change keep
verifying until they are migrated. Adding a format means adding an
entry to the tuple; the verifier's control flow does not change.
"""

import re
import secrets
from dataclasses import dataclass
from typing import Optional

KEY_BYTES = 32
REDACTED_LENGTH = 20


@dataclass(frozen=True)
class KeyFormat:
    """One recognized API key format: a prefix and the body that follows it."""

    name: str
    prefix: str
    body: re.Pattern

    def matches(self, token: str) -> bool:
        return token.startswith(self.prefix) and bool(
            self.body.fullmatch(token[len(self.prefix):])
        )


_HEX_BODY = re.compile(rf"[0-9a-f]{{{KEY_BYTES * 2}}}")

CURRENT_FORMAT = KeyFormat(name="cbk", prefix="cbk_", body=_HEX_BODY)
LEGACY_FORMAT = KeyFormat(name="cmk", prefix="cmk_", body=_HEX_BODY)

# Checked in order; the current format comes first.
RECOGNIZED_FORMATS: tuple[KeyFormat, ...] = (CURRENT_FORMAT, LEGACY_FORMAT)


def generate_api_key() -> str:
    """Return a new key in the current format (CSPRNG, 256 bits)."""
    return CURRENT_FORMAT.prefix + secrets.token_hex(KEY_BYTES)


def recognize(token: Optional[str]) -> Optional[KeyFormat]:
    """Return the format a token belongs to, or None if it is not an agent key."""
    if not token:
        return None
    for key_format in RECOGNIZED_FORMATS:
        if key_format.matches(token):
            return key_format
    return None


def is_legacy(token: str) -> bool:
    key_format = recognize(token)
    return key_format is not None and key_format is not CURRENT_FORMAT


def upgrade_key(token: str) -> str:
    """Rewrite a recognized key into the current format, keeping its body."""
    key_format = recognize(token)
    if key_format is None:
        raise ValueError("Not a recognized API key")
    return CURRENT_FORMAT.prefix + token[len(key_format.prefix):]


def redact_key(token: str) -> str:
    """Short, non-reversible form of a key for logs and admin output."""
    return f"{token[:REDACTED_LENGTH]}..."
