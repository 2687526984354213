"""SHA-256 digest parsing and rendering in SRI, hex and Nix base32 forms."""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
from pathlib import Path

DIGEST_SIZE = 32
NIX_BASE32_ALPHABET = "0123456789abcdfghijklmnpqrsvwxyz"
_NIX_BASE32_LENGTH = (DIGEST_SIZE * 8 - 1) // 5 + 1
_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_CHUNK_SIZE = 1024 * 1024


def to_nix_base32(digest: bytes) -> str:
    """Render ``digest`` in the Nix base32 alphabet."""
    length = (len(digest) * 8 - 1) // 5 + 1
    chars: list[str] = []
    for n in range(length - 1, -1, -1):
        bit = n * 5
        index, offset = divmod(bit, 8)
        value = digest[index] >> offset
        if index + 1 < len(digest):
            value |= digest[index + 1] << (8 - offset)
        chars.append(NIX_BASE32_ALPHABET[value & 0x1F])
    return "".join(chars)


def from_nix_base32(text: str) -> bytes:
    """Decode a Nix base32 SHA-256 string."""
    if len(text) != _NIX_BASE32_LENGTH:
        raise ValueError(f"nix base32 sha256 must be {_NIX_BASE32_LENGTH} characters")
    digest = bytearray(DIGEST_SIZE)
    for position, char in enumerate(text):
        value = NIX_BASE32_ALPHABET.find(char)
        if value < 0:
            raise ValueError(f"invalid nix base32 character {char!r}")
        bit = (_NIX_BASE32_LENGTH - 1 - position) * 5
        index, offset = divmod(bit, 8)
        digest[index] |= (value << offset) & 0xFF
        carry = value >> (8 - offset)
        if index + 1 < DIGEST_SIZE:
            digest[index + 1] |= carry
        elif carry:
            raise ValueError("nix base32 sha256 has trailing bits set")
    return bytes(digest)


def to_sri(digest: bytes) -> str:
    """Render ``digest`` as an SRI ``sha256-<base64>`` string."""
    return "sha256-" + base64.b64encode(digest).decode("ascii")


def parse_hash(text: str) -> bytes:
    """Decode a SHA-256 given in SRI, hex or Nix base32 form."""
    value = text.strip()
    if value.startswith("sha256-"):
        try:
            digest = base64.b64decode(value.removeprefix("sha256-"), validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid SRI hash {text!r}") from exc
        if len(digest) != DIGEST_SIZE:
            raise ValueError(f"SRI hash {text!r} is not a sha256 digest")
        return digest
    if value.startswith("sha256:"):
        value = value.removeprefix("sha256:")
    if _HEX_PATTERN.match(value):
        return bytes.fromhex(value)
    return from_nix_base32(value)


def file_digest(path: Path) -> bytes:
    """Return the SHA-256 digest of a file's content."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.digest()
