"""Tests for the canonical text form."""

import difflib
import math

import pytest

from gitmc.config.schema import MAX_NESTING_DEPTH
from gitmc.core.canonical import canonicalize, decanonicalize, format_float
from gitmc.core.errors import MalformedNbt, ResourceLimitExceeded
from gitmc.core.nbt import (
    Byte,
    ByteArray,
    ByteOrder,
    Compound,
    Compression,
    Double,
    Float,
    Int,
    IntArray,
    List,
    LongArray,
    NbtDocument,
    String,
    TagKind,
)
from gitmc.core.nbt_codec import DecodeLimits, decode, encode


def level() -> NbtDocument:
    return NbtDocument(root=Compound({
        "Data": Compound({
            "LevelName": String("My World"),
            "GameType": Int(0),
        })
    }))


def text(lines: list[str]) -> bytes:
    return ("\n".join(lines) + "\n").encode("utf-8")


class TestCanonicalize:
    def test_layout(self):
        assert canonicalize(level()) == text([
            "nbt-canonical 1",
            "compression gzip",
            "byte-order big",
            'root "" {',
            '  compound "Data" {',
            '    string "LevelName" "My World"',
            '    int "GameType" 0',
            "  }",
            "}",
        ])

    def test_arrays_and_lists(self):
        document = NbtDocument(root=Compound({
            "bytes": ByteArray(bytes(range(40))),
            "ints": IntArray([1, -2]),
            "tags": List(TagKind.STRING, [String("a")]),
        }))
        lines = canonicalize(document).decode().splitlines()
        assert lines[4:] == [
            '  byte-array "bytes" 40 [',
            "    " + bytes(range(32)).hex(),
            "    " + bytes(range(32, 40)).hex(),
            "  ]",
            '  int-array "ints" 2 [',
            "    1",
            "    -2",
            "  ]",
            '  list "tags" string 1 [',
            '    string "a"',
            "  ]",
            "}",
        ]

    def test_bedrock_header_line(self):
        document = NbtDocument(
            root=Compound({"a": Byte(1)}),
            compression=Compression.NONE,
            byte_order=ByteOrder.LITTLE,
            header_version=10,
        )
        lines = canonicalize(document).decode().splitlines()
        assert lines[1:4] == ["compression none", "byte-order little", "header-version 10"]

    def test_is_ascii_for_any_string(self):
        document = NbtDocument(root=Compound({"名前": String("\U0001F600\x00")}))
        assert canonicalize(document).isascii()

    def test_same_tree_same_text(self):
        first = decode(encode(level()))
        second = decode(encode(level()))
        assert canonicalize(first) == canonicalize(second)

    @pytest.mark.parametrize("field,mutate", [
        ("longs", lambda tag: tag.value.__setitem__(17, 0x7FFF)),
        ("blob", lambda tag: setattr(tag, "value", tag.value[:40] + b"\xee" + tag.value[41:])),
    ])
    def test_single_element_change_touches_one_line(self, field, mutate):
        def document():
            return NbtDocument(root=Compound({
                "longs": LongArray(range(37)),
                "blob": ByteArray(bytes(range(64))),
            }))

        before = canonicalize(document()).decode().splitlines()
        changed = document()
        mutate(changed.root[field])
        after = canonicalize(changed).decode().splitlines()

        diff = [line for line in difflib.ndiff(before, after) if line[:1] in "+-"]
        assert len(diff) == 2
        assert diff[0].startswith("-") and diff[1].startswith("+")

    def test_refuses_trees_deeper_than_ceiling(self):
        tag = Compound()
        for _ in range(MAX_NESTING_DEPTH + 10):
            tag = Compound({"c": tag})
        with pytest.raises(ResourceLimitExceeded):
            canonicalize(NbtDocument(root=tag))

class TestFloats:
    @pytest.mark.parametrize("value,expected", [
        (0.1, "0.1"),
        (1.0, "1"),
        (-0.0, "-0"),
        (3.4028234663852886e38, "3.4028235e+38"),
        (float("inf"), "inf"),
        (float("-inf"), "-inf"),
        (float("nan"), "nan"),
    ])
    def test_format_float(self, value, expected):
        assert format_float(Float(value).value) == expected

    def test_float_and_double_round_trip(self):
        document = NbtDocument(root=Compound({
            "f": Float(1 / 3),
            "d": Double(1 / 3),
            "neg_zero": Double(-0.0),
            "tiny": Double(5e-324),
        }))
        assert decanonicalize(canonicalize(document)) == document

    def test_nan_survives_as_nan(self):
        document = NbtDocument(root=Compound({"n": Double(float("nan"))}))
        assert math.isnan(decanonicalize(canonicalize(document)).root["n"].value)


class TestRoundTrip:
    def test_rich_document(self):
        document = NbtDocument(
            root=Compound({
                "z": Byte(-1),
                "a": List(TagKind.LIST, [List(TagKind.INT, [Int(1)]), List(TagKind.END)]),
                "c": List(TagKind.COMPOUND, [Compound(), Compound({"x": String('quote " and \\')})]),
                "longs": LongArray([-(1 << 63)]),
                "bytes": ByteArray(b""),
            }),
            name="named root",
            compression=Compression.ZLIB,
        )
        assert decanonicalize(canonicalize(document)) == document


class TestDecanonicalizeErrors:
    BASE = ["nbt-canonical 1", "compression gzip", "byte-order big"]

    def parse(self, body: list[str], **kwargs):
        return decanonicalize(text(self.BASE + body), **kwargs)

    def test_mixed_list_elements(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', '  list "l" int 2 [', "    int 1", "    short 2", "  ]", "}"])

    def test_count_mismatch(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', '  int-array "a" 3 [', "    1", "  ]", "}"])

    def test_out_of_range(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', '  byte "b" 128', "}"])

    def test_duplicate_key(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', '  byte "b" 1', '  byte "b" 2', "}"])

    def test_unterminated(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', '  byte "b" 1'])

    def test_trailing_text(self):
        with pytest.raises(MalformedNbt):
            self.parse(['root "" {', "}", "extra"])

    def test_missing_header(self):
        with pytest.raises(MalformedNbt):
            decanonicalize(b'root "" {\n}\n')

    def test_error_names_the_line(self):
        with pytest.raises(MalformedNbt, match="line 5"):
            self.parse(['root "" {', '  bogus "b" 1', "}"])

    def test_depth_limit(self):
        body = ['root "" {'] + ['  compound "c" {'] * 4 + ["}"] * 5
        assert self.parse(body, limits=DecodeLimits(max_depth=5)).root["c"]
        with pytest.raises(ResourceLimitExceeded):
            self.parse(body, limits=DecodeLimits(max_depth=4))

    def test_depth_limit_is_capped(self):
        body = ['root "" {'] + ['  compound "c" {'] * 3000 + ["}"] * 3001
        with pytest.raises(ResourceLimitExceeded):
            self.parse(body, limits=DecodeLimits(max_depth=10_000))
