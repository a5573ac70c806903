"""In-memory model for NBT (Named Binary Tag) data.

A tag is a single ``NbtTag`` record carrying its ``TagKind``. Consumers
dispatch on ``kind`` rather than on Python types, so every tag kind is
handled in one table per operation (decode, encode, canonical text).

Values by kind:
    BYTE, SHORT, INT, LONG  - int
    FLOAT, DOUBLE           - float (FLOAT values are held at f32 precision)
    BYTE_ARRAY              - bytes
    STRING                  - str
    LIST                    - list[NbtTag], all of ``element_kind``
    COMPOUND                - dict[str, NbtTag], insertion ordered
    INT_ARRAY, LONG_ARRAY   - list[int]
"""

import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional

from .errors import MalformedNbt


class TagKind(IntEnum):
    """NBT type ids as they appear on disk"""
    END = 0
    BYTE = 1
    SHORT = 2
    INT = 3
    LONG = 4
    FLOAT = 5
    DOUBLE = 6
    BYTE_ARRAY = 7
    STRING = 8
    LIST = 9
    COMPOUND = 10
    INT_ARRAY = 11
    LONG_ARRAY = 12


class Compression(Enum):
    """Outer compression wrapping an NBT payload"""
    NONE = "none"
    GZIP = "gzip"
    ZLIB = "zlib"


class ByteOrder(Enum):
    """Java Edition is big-endian, Bedrock Edition little-endian"""
    BIG = "big"
    LITTLE = "little"


_F32 = struct.Struct(">f")
_F64 = struct.Struct(">d")


def to_f32(value: float) -> float:
    """Round a Python float to the nearest 32-bit float.

    Raises:
        MalformedNbt: If the value is finite but outside the f32 range
    """
    try:
        return _F32.unpack(_F32.pack(value))[0]
    except (OverflowError, struct.error) as e:
        raise MalformedNbt(f"float out of range: {value!r}") from e


@dataclass(eq=False)
class NbtTag:
    """A single typed NBT value.

    Equality is structural: compounds compare member order as well as
    content, and floats compare by bit pattern so that NaN and -0.0
    survive round trips.
    """
    kind: TagKind
    value: Any
    element_kind: TagKind = TagKind.END  # LIST only

    __hash__ = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NbtTag):
            return NotImplemented
        # Walks an explicit stack so arbitrarily deep trees compare safely
        pending = [(self, other)]
        while pending:
            left, right = pending.pop()
            if not isinstance(right, NbtTag) or left.kind != right.kind:
                return False
            kind = left.kind
            if kind == TagKind.FLOAT:
                same = _F32.pack(left.value) == _F32.pack(right.value)
            elif kind == TagKind.DOUBLE:
                same = _F64.pack(left.value) == _F64.pack(right.value)
            elif kind == TagKind.COMPOUND:
                same = list(left.value) == list(right.value)
                pending.extend(zip(left.value.values(), right.value.values()))
            elif kind == TagKind.LIST:
                same = left.element_kind == right.element_kind and len(left.value) == len(right.value)
                pending.extend(zip(left.value, right.value))
            else:
                same = left.value == right.value
            if not same:
                return False
        return True

    def __getitem__(self, key):
        return self.value[key]

    def __contains__(self, key) -> bool:
        return self.kind == TagKind.COMPOUND and key in self.value

    def get(self, key: str, default: Optional["NbtTag"] = None) -> Optional["NbtTag"]:
        """Look up a compound member, returning default when absent or not a compound."""
        if self.kind != TagKind.COMPOUND:
            return default
        return self.value.get(key, default)


def Byte(value: int) -> NbtTag:
    return NbtTag(TagKind.BYTE, int(value))


def Short(value: int) -> NbtTag:
    return NbtTag(TagKind.SHORT, int(value))


def Int(value: int) -> NbtTag:
    return NbtTag(TagKind.INT, int(value))


def Long(value: int) -> NbtTag:
    return NbtTag(TagKind.LONG, int(value))


def Float(value: float) -> NbtTag:
    return NbtTag(TagKind.FLOAT, to_f32(float(value)))


def Double(value: float) -> NbtTag:
    return NbtTag(TagKind.DOUBLE, float(value))


def ByteArray(value: bytes) -> NbtTag:
    return NbtTag(TagKind.BYTE_ARRAY, bytes(value))


def String(value: str) -> NbtTag:
    return NbtTag(TagKind.STRING, value)


def List(element_kind: TagKind, items: Optional[list] = None) -> NbtTag:
    return NbtTag(TagKind.LIST, list(items or []), TagKind(element_kind))


def Compound(members: Optional[dict] = None) -> NbtTag:
    return NbtTag(TagKind.COMPOUND, dict(members or {}))


def IntArray(values) -> NbtTag:
    return NbtTag(TagKind.INT_ARRAY, [int(v) for v in values])


def LongArray(values) -> NbtTag:
    return NbtTag(TagKind.LONG_ARRAY, [int(v) for v in values])


@dataclass
class NbtDocument:
    """A root compound together with how it was stored on disk.

    Attributes:
        root: The root compound tag
        name: Name of the root tag (usually empty)
        compression: Outer compression of the file
        byte_order: Endianness of the payload
        header_version: Storage version from the 8-byte Bedrock level.dat
            header, or None when the file has no such header
    """
    root: NbtTag = field(default_factory=Compound)
    name: str = ""
    compression: Compression = Compression.GZIP
    byte_order: ByteOrder = ByteOrder.BIG
    header_version: Optional[int] = None
