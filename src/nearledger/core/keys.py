"""Curve-tagged NEAR public keys and signatures."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import base58

from nearledger.core.binary import BinaryReader, BinaryWriter


class KeyType(IntEnum):
    ED25519 = 0
    SECP256K1 = 1


_KEY_LENGTHS = {KeyType.ED25519: 32, KeyType.SECP256K1: 64}
_SIGNATURE_LENGTHS = {KeyType.ED25519: 64, KeyType.SECP256K1: 65}


def base58_encode(data: bytes) -> str:
    return base58.b58encode(bytes(data)).decode("ascii")


def base58_decode(value: str) -> bytes:
    return base58.b58decode(value)


@dataclass(frozen=True)
class PublicKey:
    """A public key with its curve tag, text form ``ed25519:<base58>``."""

    key_type: KeyType
    data: bytes

    def __post_init__(self):
        object.__setattr__(self, "key_type", KeyType(self.key_type))
        object.__setattr__(self, "data", bytes(self.data))
        expected = _KEY_LENGTHS[self.key_type]
        if len(self.data) != expected:
            raise ValueError(
                f"{self.key_type.name.lower()} public key must be {expected} bytes, "
                f"got {len(self.data)}"
            )

    @classmethod
    def from_string(cls, value: "str | PublicKey") -> "PublicKey":
        if isinstance(value, PublicKey):
            return value
        curve, sep, encoded = value.partition(":")
        if not sep:
            # Bare base58 keys are ed25519
            curve, encoded = "ed25519", value
        try:
            key_type = KeyType[curve.upper()]
        except KeyError as exc:
            raise ValueError(f"Unknown key type {curve!r}") from exc
        return cls(key_type, base58_decode(encoded))

    @classmethod
    def from_ed25519_bytes(cls, raw: bytes) -> "PublicKey":
        return cls(KeyType.ED25519, bytes(raw))

    def __str__(self) -> str:
        return f"{self.key_type.name.lower()}:{base58_encode(self.data)}"

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.key_type)
        writer.fixed_bytes(self.data, _KEY_LENGTHS[self.key_type])

    @classmethod
    def deserialize(cls, reader: BinaryReader) -> "PublicKey":
        key_type = KeyType(reader.u8())
        return cls(key_type, reader.fixed_bytes(_KEY_LENGTHS[key_type]))


@dataclass(frozen=True)
class Signature:
    key_type: KeyType
    data: bytes

    def __post_init__(self):
        object.__setattr__(self, "key_type", KeyType(self.key_type))
        object.__setattr__(self, "data", bytes(self.data))
        expected = _SIGNATURE_LENGTHS[self.key_type]
        if len(self.data) != expected:
            raise ValueError(f"Signature must be {expected} bytes, got {len(self.data)}")

    def __str__(self) -> str:
        return f"{self.key_type.name.lower()}:{base58_encode(self.data)}"

    def serialize(self, writer: BinaryWriter) -> None:
        writer.u8(self.key_type)
        writer.fixed_bytes(self.data, _SIGNATURE_LENGTHS[self.key_type])

    @classmethod
    def deserialize(cls, reader: BinaryReader) -> "Signature":
        key_type = KeyType(reader.u8())
        return cls(key_type, reader.fixed_bytes(_SIGNATURE_LENGTHS[key_type]))
