"""
NEP-413 off-chain message payload.

Layout (little-endian, Borsh):
    u32 len + UTF-8 message | 32-byte nonce | u32 len + UTF-8 recipient | u8 callbackUrl tag

The NEAR app prefixes the NEP-413 tag and hashes on-device, so only the
payload itself is sent. This client never emits ``Some(callbackUrl)``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from nearledger.core.binary import BinaryWriter

NONCE_LENGTH = 32


@dataclass(frozen=True)
class OffChainMessagePayload:
    message: str
    nonce: bytes
    recipient: str
    callback_url: Optional[str] = None

    def __post_init__(self):
        if len(self.nonce) != NONCE_LENGTH:
            raise ValueError(f"NEP-413 nonce must be exactly {NONCE_LENGTH} bytes, got {len(self.nonce)}")


def payload_size(payload: OffChainMessagePayload) -> int:
    return (
        4 + len(payload.message.encode("utf-8"))
        + NONCE_LENGTH
        + 4 + len(payload.recipient.encode("utf-8"))
        + 1
    )


def serialize_payload(payload: OffChainMessagePayload) -> bytes:
    """Serialize into a buffer sized up front; the callback option is always None."""
    writer = BinaryWriter(size=payload_size(payload))
    writer.string(payload.message)
    writer.fixed_bytes(payload.nonce, NONCE_LENGTH)
    writer.string(payload.recipient)
    writer.option(None, BinaryWriter.string)
    return writer.getvalue()
