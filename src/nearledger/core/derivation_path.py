"""Derivation path encoding for the NEAR Ledger app."""

from __future__ import annotations

from nearledger.core.exceptions import InvalidDerivationPathError

HARDENED_OFFSET = 0x80000000


def parse_derivation_path(path: str) -> list[int]:
    """
    Parse ``44'/397'/0'/0'/1'`` into the list of 32-bit indices.

    A trailing ``'`` hardens the index (high bit set). Negative values are
    taken by absolute value. Indices must fit in 31 bits before hardening so
    that no two distinct paths share an encoding.
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidDerivationPathError("Derivation path must be a non-empty string")

    segments = path.strip().split("/")
    if segments[0] == "m":
        segments = segments[1:]
    if not segments:
        raise InvalidDerivationPathError(f"Derivation path {path!r} has no indices")

    indices = []
    for segment in segments:
        hardened = segment.endswith("'")
        digits = segment[:-1] if hardened else segment
        unsigned = digits[1:] if digits.startswith("-") else digits
        # int() would also take "1_0", " 5" and "+5"
        if not (unsigned.isascii() and unsigned.isdigit()):
            raise InvalidDerivationPathError(
                f"Invalid segment {segment!r} in derivation path {path!r}"
            )
        value = int(unsigned)
        if value >= HARDENED_OFFSET:
            raise InvalidDerivationPathError(
                f"Index {value} in derivation path {path!r} is out of range"
            )
        indices.append(value | HARDENED_OFFSET if hardened else value)
    return indices


def encode_derivation_path(path: str) -> bytes:
    """Encode a derivation path as concatenated big-endian 4-byte indices."""
    result = b""
    for index in parse_derivation_path(path):
        result += index.to_bytes(4, "big")
    return result
