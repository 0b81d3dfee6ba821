"""
Unit tests for the NEP-413 payload codec.
"""

import struct

import pytest

from nearledger.core.offchain_message import (
    NONCE_LENGTH,
    OffChainMessagePayload,
    payload_size,
    serialize_payload,
)


@pytest.mark.parametrize(
    "message, recipient",
    [("hello", "app.near"), ("", ""), ("héllo wörld ✓", "näme.near"), ("x" * 1000, "r")],
)
def test_payload_length_and_trailing_option_tag(message, recipient):
    payload = OffChainMessagePayload(message=message, nonce=bytes(NONCE_LENGTH), recipient=recipient)
    encoded = serialize_payload(payload)

    expected = 4 + len(message.encode()) + 32 + 4 + len(recipient.encode()) + 1
    assert len(encoded) == expected == payload_size(payload)
    assert encoded[-1] == 0


def test_payload_layout():
    nonce = bytes(range(32))
    encoded = serialize_payload(OffChainMessagePayload("hi", nonce, "app.near"))

    assert encoded[:4] == struct.pack("<I", 2)
    assert encoded[4:6] == b"hi"
    assert encoded[6:38] == nonce
    assert encoded[38:42] == struct.pack("<I", 8)
    assert encoded[42:50] == b"app.near"
    assert encoded[50:] == b"\x00"


def test_callback_url_is_never_encoded():
    with_callback = OffChainMessagePayload("hi", bytes(32), "app.near", callback_url="https://cb")
    without = OffChainMessagePayload("hi", bytes(32), "app.near")
    assert serialize_payload(with_callback) == serialize_payload(without)


@pytest.mark.parametrize("length", [0, 31, 33])
def test_nonce_must_be_32_bytes(length):
    with pytest.raises(ValueError):
        OffChainMessagePayload("hi", bytes(length), "app.near")
