"""
Kafka protocol primitive types.

Big-endian fixed-width integers, int16-length strings and int32-length
byte arrays, as used by the non-flexible API versions this client speaks.
"""

import struct
from typing import Callable, List, Optional, TypeVar

T = TypeVar("T")

_INT8 = struct.Struct(">b")
_INT16 = struct.Struct(">h")
_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")


class Writer:
    """Append-only buffer for encoding a request body."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def int8(self, value: int) -> "Writer":
        self._buf += _INT8.pack(value)
        return self

    def int16(self, value: int) -> "Writer":
        self._buf += _INT16.pack(value)
        return self

    def int32(self, value: int) -> "Writer":
        self._buf += _INT32.pack(value)
        return self

    def int64(self, value: int) -> "Writer":
        self._buf += _INT64.pack(value)
        return self

    def string(self, value: str) -> "Writer":
        data = value.encode("utf-8")
        self._buf += _INT16.pack(len(data))
        self._buf += data
        return self

    def nullable_string(self, value: Optional[str]) -> "Writer":
        if value is None:
            self._buf += _INT16.pack(-1)
            return self
        return self.string(value)

    def bytes(self, value: Optional[bytes]) -> "Writer":
        if value is None:
            self._buf += _INT32.pack(-1)
            return self
        self._buf += _INT32.pack(len(value))
        self._buf += value
        return self

    def array(self, items: Optional[List[T]], write_item: Callable[["Writer", T], None]) -> "Writer":
        if items is None:
            self._buf += _INT32.pack(-1)
            return self
        self._buf += _INT32.pack(len(items))
        for item in items:
            write_item(self, item)
        return self

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class Reader:
    """Cursor over a response body."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = memoryview(data)
        self._pos = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def _unpack(self, fmt: struct.Struct) -> int:
        if self._pos + fmt.size > len(self._data):
            raise ValueError(
                f"Truncated response: need {fmt.size} bytes at offset {self._pos}"
            )
        (value,) = fmt.unpack_from(self._data, self._pos)
        self._pos += fmt.size
        return value

    def int8(self) -> int:
        return self._unpack(_INT8)

    def int16(self) -> int:
        return self._unpack(_INT16)

    def int32(self) -> int:
        return self._unpack(_INT32)

    def int64(self) -> int:
        return self._unpack(_INT64)

    def _raw(self, length: int) -> bytes:
        if self._pos + length > len(self._data):
            raise ValueError(
                f"Truncated response: need {length} bytes at offset {self._pos}"
            )
        data = bytes(self._data[self._pos : self._pos + length])
        self._pos += length
        return data

    def string(self) -> str:
        value = self.nullable_string()
        return value if value is not None else ""

    def nullable_string(self) -> Optional[str]:
        length = self.int16()
        if length < 0:
            return None
        return self._raw(length).decode("utf-8", errors="replace")

    def bytes(self) -> Optional[bytes]:
        length = self.int32()
        if length < 0:
            return None
        return self._raw(length)

    def array(self, read_item: Callable[["Reader"], T]) -> List[T]:
        items = self.nullable_array(read_item)
        return items if items is not None else []

    def nullable_array(self, read_item: Callable[["Reader"], T]) -> Optional[List[T]]:
        count = self.int32()
        if count < 0:
            return None
        return [read_item(self) for _ in range(count)]
