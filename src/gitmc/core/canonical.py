"""Canonical, line-oriented text form of an NBT document.

The canonical form is what gets committed. It is built for stable,
readable diffs: one value per line, an explicit type on every line,
compound members in their stored order, byte arrays as fixed-width hex
rows, and int/long arrays with one element per line.

Example::

    nbt-canonical 1
    compression gzip
    byte-order big
    root "" {
      compound "Data" {
        string "LevelName" "My World"
        int "GameType" 0
        list "ServerBrands" string 1 [
          string "vanilla"
        ]
        byte-array "Seed" 4 [
          0102fffe
        ]
      }
    }

Names and string values are JSON string literals (ASCII only, so every
code point, including lone surrogates, survives). Floats are written with
the fewest digits that read back to the same 32-bit value; doubles use
Python's shortest round-trip repr.
"""

import json
import math
import struct
from typing import Optional

from ..config.schema import MAX_NESTING_DEPTH
from .errors import MalformedNbt, ResourceLimitExceeded
from .nbt import ByteOrder, Compression, NbtDocument, NbtTag, TagKind, to_f32
from .nbt_codec import DecodeLimits

FORMAT_LINE = "nbt-canonical 1"
HEX_ROW_BYTES = 32
INDENT = "  "

KIND_NAMES = {
    TagKind.END: "end",
    TagKind.BYTE: "byte",
    TagKind.SHORT: "short",
    TagKind.INT: "int",
    TagKind.LONG: "long",
    TagKind.FLOAT: "float",
    TagKind.DOUBLE: "double",
    TagKind.BYTE_ARRAY: "byte-array",
    TagKind.STRING: "string",
    TagKind.LIST: "list",
    TagKind.COMPOUND: "compound",
    TagKind.INT_ARRAY: "int-array",
    TagKind.LONG_ARRAY: "long-array",
}
KINDS_BY_NAME = {name: kind for kind, name in KIND_NAMES.items()}

_INT_RANGES = {
    TagKind.BYTE: (-(1 << 7), (1 << 7) - 1),
    TagKind.SHORT: (-(1 << 15), (1 << 15) - 1),
    TagKind.INT: (-(1 << 31), (1 << 31) - 1),
    TagKind.LONG: (-(1 << 63), (1 << 63) - 1),
    TagKind.INT_ARRAY: (-(1 << 31), (1 << 31) - 1),
    TagKind.LONG_ARRAY: (-(1 << 63), (1 << 63) - 1),
}

_F32_BITS = struct.Struct(">f")
_JSON = json.JSONDecoder()


def format_float(value: float) -> str:
    """Shortest decimal text that parses back to the same 32-bit float."""
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    target = _F32_BITS.pack(value)
    for precision in range(1, 10):
        text = f"{value:.{precision}g}"
        try:
            if _F32_BITS.pack(float(text)) == target:
                return text
        except OverflowError:
            # Rounded past the f32 range near FLT_MAX
            continue
    return repr(value)


def format_double(value: float) -> str:
    return repr(value)


def _format_scalar(tag: NbtTag) -> str:
    if tag.kind == TagKind.FLOAT:
        return format_float(tag.value)
    if tag.kind == TagKind.DOUBLE:
        return format_double(tag.value)
    if tag.kind == TagKind.STRING:
        return json.dumps(tag.value, ensure_ascii=True)
    return str(tag.value)


def _emit(tag: NbtTag, head: str, indent: str, out: list, depth: int = 1) -> None:
    kind = tag.kind
    if depth > MAX_NESTING_DEPTH and kind in (TagKind.COMPOUND, TagKind.LIST):
        raise ResourceLimitExceeded(f"nesting deeper than {MAX_NESTING_DEPTH}")
    inner = indent + INDENT

    if kind == TagKind.COMPOUND:
        out.append(f"{indent}{head} {{")
        for name, child in tag.value.items():
            _emit(child, f"{KIND_NAMES[child.kind]} {json.dumps(name, ensure_ascii=True)}", inner, out, depth + 1)
        out.append(f"{indent}}}")
    elif kind == TagKind.LIST:
        out.append(f"{indent}{head} {KIND_NAMES[tag.element_kind]} {len(tag.value)} [")
        for item in tag.value:
            _emit(item, KIND_NAMES[item.kind], inner, out, depth + 1)
        out.append(f"{indent}]")
    elif kind == TagKind.BYTE_ARRAY:
        data = tag.value
        out.append(f"{indent}{head} {len(data)} [")
        for start in range(0, len(data), HEX_ROW_BYTES):
            out.append(f"{inner}{data[start:start + HEX_ROW_BYTES].hex()}")
        out.append(f"{indent}]")
    elif kind in (TagKind.INT_ARRAY, TagKind.LONG_ARRAY):
        out.append(f"{indent}{head} {len(tag.value)} [")
        out.extend(f"{inner}{value}" for value in tag.value)
        out.append(f"{indent}]")
    else:
        out.append(f"{indent}{head} {_format_scalar(tag)}")


def canonicalize(document: NbtDocument) -> bytes:
    """Render a document in canonical text form.

    Args:
        document: Decoded NBT document

    Returns:
        UTF-8 (in practice ASCII) canonical text, newline terminated

    Raises:
        MalformedNbt: If the root is not a compound
        ResourceLimitExceeded: If the tree nests deeper than MAX_NESTING_DEPTH
    """
    if document.root.kind != TagKind.COMPOUND:
        raise MalformedNbt(f"root tag is {document.root.kind.name}, expected COMPOUND")

    out = [
        FORMAT_LINE,
        f"compression {document.compression.value}",
        f"byte-order {document.byte_order.value}",
    ]
    if document.header_version is not None:
        out.append(f"header-version {document.header_version}")
    _emit(document.root, f"root {json.dumps(document.name, ensure_ascii=True)}", "", out)
    return ("\n".join(out) + "\n").encode("utf-8")


class _Frame:
    """An open container while parsing."""

    __slots__ = ("tag", "count", "buffer")

    def __init__(self, tag: NbtTag, count: Optional[int] = None):
        self.tag = tag
        self.count = count
        self.buffer = bytearray() if tag.kind == TagKind.BYTE_ARRAY else None


class _CanonicalParser:
    """Line-driven parser with an explicit container stack."""

    def __init__(self, text: str, limits: DecodeLimits):
        self.lines = text.split("\n")
        self.limits = limits
        self.lineno = 0
        self.stack: list[_Frame] = []

    def fail(self, message: str) -> MalformedNbt:
        return MalformedNbt(f"line {self.lineno}: {message}")

    def next_line(self) -> Optional[str]:
        while self.lineno < len(self.lines):
            line = self.lines[self.lineno].strip()
            self.lineno += 1
            if line:
                return line
        return None

    def read_json_string(self, text: str) -> tuple[str, str]:
        """Split a leading JSON string literal off text."""
        if not text.startswith('"'):
            raise self.fail(f"expected quoted string, got {text[:20]!r}")
        try:
            value, end = _JSON.raw_decode(text)
        except json.JSONDecodeError as e:
            raise self.fail(f"bad string literal: {e.msg}") from e
        if not isinstance(value, str):
            raise self.fail("expected quoted string")
        return value, text[end:].lstrip(" ")

    def parse_kind(self, token: str) -> TagKind:
        kind = KINDS_BY_NAME.get(token)
        if kind is None:
            raise self.fail(f"unknown tag type {token!r}")
        return kind

    def parse_int(self, text: str, kind: TagKind) -> int:
        try:
            value = int(text)
        except ValueError:
            raise self.fail(f"bad {KIND_NAMES[kind]} value {text!r}") from None
        low, high = _INT_RANGES[kind]
        if not low <= value <= high:
            raise self.fail(f"{KIND_NAMES[kind]} value {value} out of range")
        return value

    def parse_count(self, text: str) -> int:
        try:
            count = int(text)
        except ValueError:
            raise self.fail(f"bad element count {text!r}") from None
        if count < 0:
            raise self.fail(f"negative element count {count}")
        return count

    def open_container(self, kind: TagKind, rest: str) -> NbtTag:
        """Start a compound, list or array and push it on the stack."""
        if len(self.stack) + 1 > self.limits.depth_limit and kind in (TagKind.COMPOUND, TagKind.LIST):
            raise ResourceLimitExceeded(f"line {self.lineno}: nesting deeper than {self.limits.depth_limit}")

        if kind == TagKind.COMPOUND:
            if rest != "{":
                raise self.fail("expected '{'")
            tag = NbtTag(kind, {})
            self.stack.append(_Frame(tag))
            return tag

        parts = rest.split(" ")
        if kind == TagKind.LIST:
            if len(parts) != 3 or parts[2] != "[":
                raise self.fail("expected '<element type> <count> ['")
            tag = NbtTag(kind, [], self.parse_kind(parts[0]))
            count = self.parse_count(parts[1])
            if tag.element_kind == TagKind.END and count:
                raise self.fail("list of end tags must be empty")
            self.stack.append(_Frame(tag, count))
            return tag

        if len(parts) != 2 or parts[1] != "[":
            raise self.fail("expected '<count> ['")
        tag = NbtTag(kind, b"" if kind == TagKind.BYTE_ARRAY else [])
        self.stack.append(_Frame(tag, self.parse_count(parts[0])))
        return tag

    def parse_value(self, kind: TagKind, rest: str) -> NbtTag:
        """Parse the remainder of a line for a tag of the given kind."""
        if kind in (TagKind.COMPOUND, TagKind.LIST, TagKind.BYTE_ARRAY,
                    TagKind.INT_ARRAY, TagKind.LONG_ARRAY):
            return self.open_container(kind, rest)
        if kind in (TagKind.BYTE, TagKind.SHORT, TagKind.INT, TagKind.LONG):
            return NbtTag(kind, self.parse_int(rest, kind))
        if kind in (TagKind.FLOAT, TagKind.DOUBLE):
            try:
                value = float(rest)
            except ValueError:
                raise self.fail(f"bad {KIND_NAMES[kind]} value {rest!r}") from None
            if kind == TagKind.FLOAT:
                try:
                    value = to_f32(value)
                except MalformedNbt as e:
                    raise self.fail(str(e)) from None
            return NbtTag(kind, value)
        if kind == TagKind.STRING:
            value, tail = self.read_json_string(rest)
            if tail:
                raise self.fail(f"unexpected text after string: {tail[:20]!r}")
            return NbtTag(kind, value)
        raise self.fail(f"{KIND_NAMES[kind]} is not a value type")

    def close(self, closer: str) -> None:
        frame = self.stack[-1]
        tag = frame.tag
        expected = "}" if tag.kind == TagKind.COMPOUND else "]"
        if closer != expected:
            raise self.fail(f"expected {expected!r}")
        if frame.buffer is not None:
            tag.value = bytes(frame.buffer)
        if frame.count is not None and len(tag.value) != frame.count:
            raise self.fail(f"{KIND_NAMES[tag.kind]} declares {frame.count} elements, found {len(tag.value)}")
        self.stack.pop()

    def feed(self, line: str) -> None:
        frame = self.stack[-1]
        tag = frame.tag

        if line in ("}", "]"):
            self.close(line)
            return

        if tag.kind == TagKind.COMPOUND:
            kind_token, _, rest = line.partition(" ")
            kind = self.parse_kind(kind_token)
            name, rest = self.read_json_string(rest)
            if name in tag.value:
                raise self.fail(f"duplicate compound key {name!r}")
            tag.value[name] = self.parse_value(kind, rest)
        elif tag.kind == TagKind.LIST:
            kind_token, _, rest = line.partition(" ")
            kind = self.parse_kind(kind_token)
            if kind != tag.element_kind:
                raise self.fail(f"{kind_token} element in list of {KIND_NAMES[tag.element_kind]}")
            tag.value.append(self.parse_value(kind, rest))
        elif tag.kind == TagKind.BYTE_ARRAY:
            try:
                frame.buffer += bytes.fromhex(line)
            except ValueError:
                raise self.fail(f"bad hex row {line[:20]!r}") from None
        else:
            tag.value.append(self.parse_int(line, tag.kind))

    def parse(self) -> NbtDocument:
        if self.next_line() != FORMAT_LINE:
            raise self.fail(f"missing '{FORMAT_LINE}' header")

        document = NbtDocument()
        while True:
            line = self.next_line()
            if line is None:
                raise self.fail("missing root compound")
            key, _, value = line.partition(" ")
            if key == "compression":
                try:
                    document.compression = Compression(value)
                except ValueError:
                    raise self.fail(f"unknown compression {value!r}") from None
            elif key == "byte-order":
                try:
                    document.byte_order = ByteOrder(value)
                except ValueError:
                    raise self.fail(f"unknown byte order {value!r}") from None
            elif key == "header-version":
                document.header_version = self.parse_int(value, TagKind.INT)
            elif key == "root":
                document.name, rest = self.read_json_string(value)
                document.root = self.open_container(TagKind.COMPOUND, rest)
                break
            else:
                raise self.fail(f"unknown header {key!r}")

        while self.stack:
            line = self.next_line()
            if line is None:
                raise self.fail("unexpected end of input inside container")
            self.feed(line)

        if self.next_line() is not None:
            raise self.fail("unexpected text after root compound")
        return document


def decanonicalize(data: bytes, limits: DecodeLimits = DecodeLimits()) -> NbtDocument:
    """Parse canonical text back into a document.

    Args:
        data: Canonical text as produced by ``canonicalize``
        limits: Depth bound applied while parsing

    Returns:
        The reconstructed NbtDocument

    Raises:
        MalformedNbt: On any syntax error, mixed list element types,
            element count mismatch or out-of-range value
        ResourceLimitExceeded: If nesting exceeds ``limits.depth_limit``
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedNbt(f"canonical text is not UTF-8: {e}") from e
    return _CanonicalParser(text, limits).parse()
