"""
Unit tests for derivation path encoding.
"""

import pytest

from nearledger.core.derivation_path import (
    HARDENED_OFFSET,
    encode_derivation_path,
    parse_derivation_path,
)
from nearledger.core.exceptions import InvalidDerivationPathError


def test_default_near_path_encodes_to_five_hardened_indices():
    encoded = encode_derivation_path("44'/397'/0'/0'/1'")

    assert len(encoded) == 20
    assert encoded == b"".join(
        index.to_bytes(4, "big")
        for index in (
            HARDENED_OFFSET | 44,
            HARDENED_OFFSET | 397,
            HARDENED_OFFSET,
            HARDENED_OFFSET,
            HARDENED_OFFSET | 1,
        )
    )
    assert encoded.hex() == "8000002c8000018d800000008000000080000001"


def test_encoding_is_deterministic():
    assert encode_derivation_path("44'/397'/0'/0'/7'") == encode_derivation_path("44'/397'/0'/0'/7'")


def test_plain_and_hardened_indices_encode_differently():
    assert encode_derivation_path("44'/397'/0'/0/1") != encode_derivation_path("44'/397'/0'/0'/1'")
    assert parse_derivation_path("44/0") == [44, 0]


def test_leading_m_is_accepted():
    assert encode_derivation_path("m/44'/397'/0'") == encode_derivation_path("44'/397'/0'")


def test_negative_values_use_absolute_value():
    assert parse_derivation_path("-5'/3") == [HARDENED_OFFSET | 5, 3]


@pytest.mark.parametrize(
    "path",
    ["", "   ", "m", "44'//0'", "44'/abc'/0'", "44''/397'", "2147483648'/0'", "4294967296/0"],
)
def test_invalid_paths_raise(path):
    with pytest.raises(InvalidDerivationPathError):
        encode_derivation_path(path)


def test_invalid_path_error_is_a_value_error():
    with pytest.raises(ValueError):
        parse_derivation_path("44'/x")


@pytest.mark.parametrize("segment", ["1_0'", " 5'", "+5'", "٣'", "5 '", "--5"])
def test_segments_must_be_plain_ascii_digits(segment):
    with pytest.raises(InvalidDerivationPathError):
        parse_derivation_path(f"44'/{segment}")
