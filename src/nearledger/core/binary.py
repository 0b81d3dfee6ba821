"""
Borsh-style binary writer and reader.

NEAR transactions and NEP-413 payloads are little-endian, length-prefixed
structures. Each field is appended with a dedicated method so encoders read as
a list of fields instead of offset arithmetic.
"""

from __future__ import annotations

import struct
from typing import Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

U128_MAX = (1 << 128) - 1
U64_MAX = (1 << 64) - 1


class BinaryWriter:
    """
    Append-only little-endian writer.

    When ``size`` is given the buffer is allocated up front and every write
    lands at the current offset; overflowing it, or finishing short of it,
    raises ``ValueError``.
    """

    def __init__(self, size: Optional[int] = None):
        self._size = size
        self._buffer = bytearray(size) if size is not None else bytearray()
        self._offset = 0

    def __len__(self) -> int:
        return self._offset

    def _write(self, data: bytes) -> "BinaryWriter":
        end = self._offset + len(data)
        if self._size is None:
            self._buffer.extend(data)
        else:
            if end > self._size:
                raise ValueError(f"Write of {len(data)} bytes overflows {self._size}-byte buffer")
            self._buffer[self._offset:end] = data
        self._offset = end
        return self

    def u8(self, value: int) -> "BinaryWriter":
        return self._write(struct.pack("<B", value))

    def u32(self, value: int) -> "BinaryWriter":
        return self._write(struct.pack("<I", value))

    def u64(self, value: int) -> "BinaryWriter":
        if not 0 <= value <= U64_MAX:
            raise ValueError(f"u64 out of range: {value}")
        return self._write(struct.pack("<Q", value))

    def u128(self, value: int) -> "BinaryWriter":
        if not 0 <= value <= U128_MAX:
            raise ValueError(f"u128 out of range: {value}")
        return self._write(value.to_bytes(16, "little"))

    def fixed_bytes(self, data: bytes, length: int) -> "BinaryWriter":
        if len(data) != length:
            raise ValueError(f"Expected exactly {length} bytes, got {len(data)}")
        return self._write(bytes(data))

    def byte_vec(self, data: bytes) -> "BinaryWriter":
        self.u32(len(data))
        return self._write(bytes(data))

    def string(self, value: str) -> "BinaryWriter":
        return self.byte_vec(value.encode("utf-8"))

    def option(self, value: Optional[T], write_some: Callable[["BinaryWriter", T], object]) -> "BinaryWriter":
        if value is None:
            return self.u8(0)
        self.u8(1)
        write_some(self, value)
        return self

    def vec(self, items: Iterable[T], write_item: Callable[["BinaryWriter", T], object]) -> "BinaryWriter":
        items = list(items)
        self.u32(len(items))
        for item in items:
            write_item(self, item)
        return self

    def getvalue(self) -> bytes:
        if self._size is not None and self._offset != self._size:
            raise ValueError(f"Buffer filled to {self._offset} of {self._size} bytes")
        return bytes(self._buffer)


class BinaryReader:
    """Little-endian reader mirroring BinaryWriter."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _read(self, length: int) -> bytes:
        if length > self.remaining:
            raise ValueError(
                f"Unexpected end of data: wanted {length} bytes at offset {self._offset}, "
                f"{self.remaining} left"
            )
        chunk = self._data[self._offset:self._offset + length]
        self._offset += length
        return chunk

    def u8(self) -> int:
        return self._read(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self._read(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._read(8))[0]

    def u128(self) -> int:
        return int.from_bytes(self._read(16), "little")

    def fixed_bytes(self, length: int) -> bytes:
        return self._read(length)

    def byte_vec(self) -> bytes:
        return self._read(self.u32())

    def string(self) -> str:
        return self.byte_vec().decode("utf-8")

    def option(self, read_some: Callable[["BinaryReader"], T]) -> Optional[T]:
        tag = self.u8()
        if tag == 0:
            return None
        if tag != 1:
            raise ValueError(f"Invalid option tag {tag}")
        return read_some(self)

    def vec(self, read_item: Callable[["BinaryReader"], T]) -> list[T]:
        return [read_item(self) for _ in range(self.u32())]

    def expect_end(self) -> None:
        if self.remaining:
            raise ValueError(f"{self.remaining} trailing bytes after decoding")
