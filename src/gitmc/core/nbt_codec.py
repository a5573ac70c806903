"""Binary NBT decoding and encoding.

Java Edition files (level.dat, playerdata/*.dat, data/*.dat) are big-endian
NBT wrapped in gzip. Region chunks use zlib, gzip or no compression.
Bedrock level.dat is little-endian with an 8-byte header::

    int32 LE  storage version
    int32 LE  payload length
    payload   root compound

Decoding treats all input as untrusted: every length is checked against the
remaining bytes before it is used, nesting depth and decompressed size are
bounded, and inflation stops as soon as the size limit is crossed.

Encoding is the structural inverse. Recompression uses fixed parameters
(level 6, gzip mtime 0), so output is deterministic for a given tree but
not necessarily byte-identical to what the game wrote.
"""

import gzip
import struct
import zlib
from dataclasses import dataclass
from typing import Optional

from ..config.schema import DEFAULT_MAX_DEPTH, DEFAULT_MAX_SIZE, MAX_NESTING_DEPTH
from ..logging_config import get_logger
from .errors import MalformedNbt, ResourceLimitExceeded
from .nbt import ByteOrder, Compression, NbtDocument, NbtTag, TagKind, to_f32

logger = get_logger("nbt_codec")

GZIP_MAGIC = b"\x1f\x8b"
COMPRESSION_LEVEL = 6
MAX_STRING_BYTES = 0xFFFF

# Smallest encoded size of one payload of each kind, used to reject
# element counts that cannot fit in the remaining input.
_MIN_PAYLOAD = {
    TagKind.END: 0,
    TagKind.BYTE: 1,
    TagKind.SHORT: 2,
    TagKind.INT: 4,
    TagKind.LONG: 8,
    TagKind.FLOAT: 4,
    TagKind.DOUBLE: 8,
    TagKind.BYTE_ARRAY: 4,
    TagKind.STRING: 2,
    TagKind.LIST: 5,
    TagKind.COMPOUND: 1,
    TagKind.INT_ARRAY: 4,
    TagKind.LONG_ARRAY: 4,
}

_SCALAR_CODES = {
    TagKind.BYTE: "b",
    TagKind.SHORT: "h",
    TagKind.INT: "i",
    TagKind.LONG: "q",
    TagKind.FLOAT: "f",
    TagKind.DOUBLE: "d",
}


@dataclass(frozen=True)
class DecodeLimits:
    """Resource bounds for decoding untrusted input"""
    max_depth: int = DEFAULT_MAX_DEPTH
    max_size: int = DEFAULT_MAX_SIZE

    @property
    def depth_limit(self) -> int:
        """Effective nesting bound: max_depth, never above MAX_NESTING_DEPTH."""
        return max(1, min(self.max_depth, MAX_NESTING_DEPTH))

    @classmethod
    def from_settings(cls, codec_settings) -> "DecodeLimits":
        return cls(max_depth=codec_settings.max_depth, max_size=codec_settings.max_size)


def detect_compression(data: bytes) -> Compression:
    """Identify the outer compression from magic bytes.

    Args:
        data: Raw file contents

    Returns:
        GZIP for ``1F 8B``, ZLIB for a valid zlib header (CM=8, FCHECK ok),
        NONE otherwise
    """
    if data[:2] == GZIP_MAGIC:
        return Compression.GZIP
    if len(data) >= 2 and data[0] & 0x0F == 8 and data[0] >> 4 <= 7:
        if (data[0] * 256 + data[1]) % 31 == 0:
            return Compression.ZLIB
    return Compression.NONE


def has_bedrock_header(payload: bytes) -> bool:
    """Check for the little-endian, length-prefixed Bedrock level.dat header."""
    if len(payload) < 9:
        return False
    (length,) = struct.unpack_from("<i", payload, 4)
    return length == len(payload) - 8 and payload[8] == TagKind.COMPOUND


def _inflate(data: bytes, compression: Compression, limit: int) -> bytes:
    """Decompress with a hard cap on output size."""
    wbits = 31 if compression == Compression.GZIP else 15
    inflater = zlib.decompressobj(wbits)
    try:
        out = inflater.decompress(data, limit + 1)
    except zlib.error as e:
        raise MalformedNbt(f"corrupt {compression.value} stream: {e}") from e
    if len(out) > limit:
        raise ResourceLimitExceeded(f"decompressed payload exceeds {limit} bytes")
    if not inflater.eof:
        raise MalformedNbt(f"truncated {compression.value} stream")
    return out


def _decode_text(raw: bytes, byte_order: ByteOrder) -> str:
    if raw.isascii() and b"\x00" not in raw:
        return raw.decode("ascii")
    try:
        if byte_order == ByteOrder.LITTLE:
            return raw.decode("utf-8", "surrogatepass")
        # Java modified UTF-8: NUL is C0 80, supplementary characters are
        # encoded as two 3-byte surrogates.
        text = raw.replace(b"\xc0\x80", b"\x00").decode("utf-8", "surrogatepass")
    except UnicodeDecodeError as e:
        raise MalformedNbt(f"invalid string encoding: {e}") from e
    try:
        return text.encode("utf-16-be", "surrogatepass").decode("utf-16-be")
    except UnicodeDecodeError:
        # Unpaired surrogates are kept as-is
        return text


def _split_supplementary(text: str) -> str:
    """Replace characters outside the BMP with their UTF-16 surrogate pair."""
    units = []
    for char in text:
        point = ord(char)
        if point > 0xFFFF:
            point -= 0x10000
            units.append(chr(0xD800 + (point >> 10)))
            units.append(chr(0xDC00 + (point & 0x3FF)))
        else:
            units.append(char)
    return "".join(units)


def _encode_text(text: str, byte_order: ByteOrder) -> bytes:
    if text.isascii() and "\x00" not in text:
        return text.encode("ascii")
    if byte_order == ByteOrder.LITTLE:
        return text.encode("utf-8", "surrogatepass")
    raw = _split_supplementary(text).encode("utf-8", "surrogatepass")
    return raw.replace(b"\x00", b"\xc0\x80")


class _Reader:
    """Cursor over an uncompressed NBT payload."""

    def __init__(self, data: bytes, byte_order: ByteOrder, limits: DecodeLimits):
        self.data = data
        self.pos = 0
        self.byte_order = byte_order
        self.limits = limits
        self.prefix = ">" if byte_order == ByteOrder.BIG else "<"
        self.scalars = {kind: struct.Struct(self.prefix + code) for kind, code in _SCALAR_CODES.items()}
        self.u16 = struct.Struct(self.prefix + "H")
        self.i32 = struct.Struct(self.prefix + "i")

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def take(self, size: int) -> bytes:
        if size > self.remaining:
            raise MalformedNbt(f"unexpected end of data at offset {self.pos} (need {size} bytes)")
        chunk = self.data[self.pos:self.pos + size]
        self.pos += size
        return chunk

    def read_kind(self) -> TagKind:
        raw = self.take(1)[0]
        try:
            return TagKind(raw)
        except ValueError:
            raise MalformedNbt(f"unknown tag type {raw} at offset {self.pos - 1}") from None

    def read_string(self) -> str:
        (length,) = self.u16.unpack(self.take(2))
        return _decode_text(self.take(length), self.byte_order)

    def read_count(self, element: TagKind) -> int:
        (count,) = self.i32.unpack(self.take(4))
        if count < 0:
            raise MalformedNbt(f"negative length {count} at offset {self.pos - 4}")
        if count * _MIN_PAYLOAD[element] > self.remaining:
            raise MalformedNbt(f"length {count} exceeds remaining {self.remaining} bytes")
        return count

    def read_payload(self, kind: TagKind, depth: int) -> NbtTag:
        scalar = self.scalars.get(kind)
        if scalar is not None:
            return NbtTag(kind, scalar.unpack(self.take(scalar.size))[0])

        if kind == TagKind.STRING:
            return NbtTag(kind, self.read_string())

        if kind == TagKind.BYTE_ARRAY:
            count = self.read_count(TagKind.BYTE)
            return NbtTag(kind, bytes(self.take(count)))

        if kind in (TagKind.INT_ARRAY, TagKind.LONG_ARRAY):
            width, code = (4, "i") if kind == TagKind.INT_ARRAY else (8, "q")
            count = self.read_count(TagKind.INT if width == 4 else TagKind.LONG)
            raw = self.take(count * width)
            return NbtTag(kind, list(struct.unpack(f"{self.prefix}{count}{code}", raw)))

        if depth > self.limits.depth_limit:
            raise ResourceLimitExceeded(f"nesting deeper than {self.limits.depth_limit}")

        if kind == TagKind.LIST:
            element = self.read_kind()
            count = self.read_count(element)
            if element == TagKind.END and count:
                raise MalformedNbt(f"list of END tags with {count} elements")
            # One stack frame per nesting level
            items = []
            for _ in range(count):
                items.append(self.read_payload(element, depth + 1))
            return NbtTag(kind, items, element)

        if kind == TagKind.COMPOUND:
            members = {}
            while True:
                child = self.read_kind()
                if child == TagKind.END:
                    break
                name = self.read_string()
                if name in members:
                    raise MalformedNbt(f"duplicate compound key {name!r}")
                members[name] = self.read_payload(child, depth + 1)
            return NbtTag(kind, members)

        raise MalformedNbt(f"unexpected {kind.name} tag")


def decode(
    data: bytes,
    compression: Optional[Compression] = None,
    byte_order: Optional[ByteOrder] = None,
    limits: DecodeLimits = DecodeLimits(),
    strict: bool = False,
) -> NbtDocument:
    """Decode a binary NBT file.

    Args:
        data: File contents
        compression: Outer compression, or None to detect from magic bytes
        byte_order: Payload endianness, or None to detect (a valid Bedrock
            header means little-endian, anything else big-endian)
        limits: Depth and size bounds
        strict: Reject bytes left over after the root compound

    Returns:
        The decoded NbtDocument

    Raises:
        MalformedNbt: If the input is truncated or structurally invalid
        ResourceLimitExceeded: If the depth or size bound is crossed
    """
    if compression is None:
        compression = detect_compression(data)

    if compression == Compression.NONE:
        if len(data) > limits.max_size:
            raise ResourceLimitExceeded(f"payload exceeds {limits.max_size} bytes")
        payload = data
    else:
        payload = _inflate(data, compression, limits.max_size)

    header_version = None
    if byte_order is None:
        byte_order = ByteOrder.LITTLE if has_bedrock_header(payload) else ByteOrder.BIG
    if byte_order == ByteOrder.LITTLE and has_bedrock_header(payload):
        (header_version,) = struct.unpack_from("<i", payload, 0)
        payload = payload[8:]

    reader = _Reader(payload, byte_order, limits)
    if reader.remaining == 0:
        raise MalformedNbt("empty NBT payload")
    root_kind = reader.read_kind()
    if root_kind != TagKind.COMPOUND:
        raise MalformedNbt(f"root tag is {root_kind.name}, expected COMPOUND")
    name = reader.read_string()
    root = reader.read_payload(TagKind.COMPOUND, 1)

    if reader.remaining:
        if strict:
            raise MalformedNbt(f"{reader.remaining} trailing bytes after root compound")
        logger.debug("Ignoring %d trailing bytes after root compound", reader.remaining)

    return NbtDocument(
        root=root,
        name=name,
        compression=compression,
        byte_order=byte_order,
        header_version=header_version,
    )


class _Writer:
    """Serializes a tag tree, validating it on the way."""

    def __init__(self, byte_order: ByteOrder):
        self.byte_order = byte_order
        self.prefix = ">" if byte_order == ByteOrder.BIG else "<"
        self.scalars = {kind: struct.Struct(self.prefix + code) for kind, code in _SCALAR_CODES.items()}
        self.u16 = struct.Struct(self.prefix + "H")
        self.i32 = struct.Struct(self.prefix + "i")
        self.out = bytearray()

    def write_kind(self, kind: TagKind) -> None:
        self.out.append(int(kind))

    def write_string(self, text: str) -> None:
        if not isinstance(text, str):
            raise MalformedNbt(f"expected str, got {type(text).__name__}")
        raw = _encode_text(text, self.byte_order)
        if len(raw) > MAX_STRING_BYTES:
            raise MalformedNbt(f"string of {len(raw)} bytes exceeds {MAX_STRING_BYTES}")
        self.out += self.u16.pack(len(raw))
        self.out += raw

    def write_payload(self, tag: NbtTag, depth: int = 1) -> None:
        kind = tag.kind
        if depth > MAX_NESTING_DEPTH and kind in (TagKind.LIST, TagKind.COMPOUND):
            raise ResourceLimitExceeded(f"nesting deeper than {MAX_NESTING_DEPTH}")
        scalar = self.scalars.get(kind)
        try:
            if scalar is not None:
                value = tag.value
                if kind == TagKind.FLOAT:
                    value = to_f32(value)
                self.out += scalar.pack(value)
            elif kind == TagKind.STRING:
                self.write_string(tag.value)
            elif kind == TagKind.BYTE_ARRAY:
                self.out += self.i32.pack(len(tag.value))
                self.out += bytes(tag.value)
            elif kind in (TagKind.INT_ARRAY, TagKind.LONG_ARRAY):
                code = "i" if kind == TagKind.INT_ARRAY else "q"
                self.out += self.i32.pack(len(tag.value))
                self.out += struct.pack(f"{self.prefix}{len(tag.value)}{code}", *tag.value)
            elif kind == TagKind.LIST:
                element = TagKind(tag.element_kind)
                if element == TagKind.END and tag.value:
                    raise MalformedNbt("non-empty list declared with END elements")
                self.write_kind(element)
                self.out += self.i32.pack(len(tag.value))
                for item in tag.value:
                    if item.kind != element:
                        raise MalformedNbt(f"{item.kind.name} element in list of {element.name}")
                    self.write_payload(item, depth + 1)
            elif kind == TagKind.COMPOUND:
                for name, child in tag.value.items():
                    if child.kind == TagKind.END:
                        raise MalformedNbt(f"compound member {name!r} is an END tag")
                    self.write_kind(child.kind)
                    self.write_string(name)
                    self.write_payload(child, depth + 1)
                self.write_kind(TagKind.END)
            else:
                raise MalformedNbt(f"cannot encode {kind!r} tag")
        except (struct.error, OverflowError, TypeError) as e:
            raise MalformedNbt(f"invalid {TagKind(kind).name} value: {e}") from e


def encode(document: NbtDocument) -> bytes:
    """Encode a document back to its binary file form.

    Args:
        document: The document to serialize

    Returns:
        File contents, compressed according to ``document.compression``

    Raises:
        MalformedNbt: If the tree is invalid (heterogeneous list, value out
            of range for its kind, over-long string, non-compound root)
        ResourceLimitExceeded: If the tree nests deeper than MAX_NESTING_DEPTH
    """
    if document.root.kind != TagKind.COMPOUND:
        raise MalformedNbt(f"root tag is {document.root.kind.name}, expected COMPOUND")

    writer = _Writer(document.byte_order)
    writer.write_kind(TagKind.COMPOUND)
    writer.write_string(document.name)
    writer.write_payload(document.root)
    payload = bytes(writer.out)

    if document.header_version is not None:
        if document.byte_order != ByteOrder.LITTLE:
            raise MalformedNbt("storage header is only valid for little-endian documents")
        payload = struct.pack("<ii", document.header_version, len(payload)) + payload

    if document.compression == Compression.GZIP:
        return gzip.compress(payload, compresslevel=COMPRESSION_LEVEL, mtime=0)
    if document.compression == Compression.ZLIB:
        return zlib.compress(payload, COMPRESSION_LEVEL)
    return payload
