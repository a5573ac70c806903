"""Tests for region file split/join."""

import random
import struct

import pytest

from conftest import chunk_document
from gitmc.core.errors import MalformedNbt, ResourceLimitExceeded
from gitmc.core.nbt import ByteArray, Compound, Compression, NbtDocument
from gitmc.core.region import (
    HEADER_BYTES,
    SECTOR_BYTES,
    join_region,
    read_header,
    slot_index,
    split_region,
)


def region_with_record(record: bytes, slot: int = 0) -> bytes:
    """Region with one raw chunk record at sector 2."""
    sectors = -(-len(record) // SECTOR_BYTES)
    header = bytearray(HEADER_BYTES)
    struct.pack_into(">I", header, slot * 4, (2 << 8) | sectors)
    return bytes(header) + record + bytes(sectors * SECTOR_BYTES - len(record))


class TestSplitJoin:
    def test_all_absent_region(self):
        data = join_region({})
        assert data == bytes(HEADER_BYTES)
        chunks = split_region(data)
        assert len(chunks) == 1024
        assert all(document is None for document in chunks.values())

    def test_round_trip(self):
        chunks = {(0, 0): chunk_document(0, 0), (31, 31): chunk_document(31, 31), (5, 2): chunk_document(5, 2)}
        split = split_region(join_region(chunks))
        assert len(split) == 1024
        assert {key for key, doc in split.items() if doc is not None} == set(chunks)
        for key, document in chunks.items():
            assert split[key] == document

    def test_join_is_deterministic(self):
        chunks = {(3, 4): chunk_document(3, 4)}
        assert join_region(chunks, timestamp=5) == join_region(chunks, timestamp=5)

    def test_header_layout(self):
        chunks = {(1, 0): chunk_document(1, 0), (0, 1): chunk_document(0, 1)}
        entries = read_header(join_region(chunks, timestamp=1234))
        assert entries[slot_index(1, 0)][:2] == (2, 1)
        assert entries[slot_index(0, 1)][:2] == (3, 1)
        assert entries[slot_index(1, 0)][2] == 1234
        assert entries[slot_index(0, 0)] == (0, 0, 0)

    def test_each_compression_is_kept(self):
        chunks = {}
        for lx, compression in enumerate(Compression):
            document = chunk_document(lx, 0)
            document.compression = compression
            chunks[(lx, 0)] = document
        split = split_region(join_region(chunks))
        for key, document in chunks.items():
            assert split[key].compression == document.compression

    def test_unpadded_final_sector(self):
        data = join_region({(0, 0): chunk_document(0, 0)})
        (length,) = struct.unpack_from(">I", data, HEADER_BYTES)
        trimmed = data[:HEADER_BYTES + 4 + length]
        assert split_region(trimmed)[(0, 0)] == chunk_document(0, 0)


class TestOversizedChunks:
    @pytest.fixture
    def big_chunk(self):
        noise = random.Random(7).randbytes(1_100_000)
        return NbtDocument(root=Compound({"noise": ByteArray(noise)}), compression=Compression.ZLIB)

    def test_written_to_external_sink(self, big_chunk):
        external = {}
        data = join_region({(2, 3): big_chunk}, external=external)
        assert set(external) == {(2, 3)}
        assert len(data) == HEADER_BYTES + SECTOR_BYTES

        split = split_region(data, load_external=lambda lx, lz: external.get((lx, lz)))
        assert split[(2, 3)] == big_chunk

    def test_without_sink(self, big_chunk):
        with pytest.raises(ResourceLimitExceeded):
            join_region({(0, 0): big_chunk})

    def test_missing_external_file(self, big_chunk):
        data = join_region({(0, 0): big_chunk}, external={})
        with pytest.raises(MalformedNbt):
            split_region(data, load_external=lambda lx, lz: None)


class TestMalformedRegions:
    def test_shorter_than_header(self):
        with pytest.raises(MalformedNbt):
            split_region(bytes(100))

    def test_location_past_end_of_file(self):
        header = bytearray(HEADER_BYTES)
        struct.pack_into(">I", header, 0, (5 << 8) | 1)
        with pytest.raises(MalformedNbt):
            split_region(bytes(header))

    def test_location_inside_header(self):
        header = bytearray(HEADER_BYTES + SECTOR_BYTES)
        struct.pack_into(">I", header, 0, (1 << 8) | 1)
        with pytest.raises(MalformedNbt):
            split_region(bytes(header))

    @pytest.mark.parametrize("compression_id", [4, 127, 9])
    def test_unsupported_compression(self, compression_id):
        record = struct.pack(">IB", 3, compression_id) + b"xx"
        with pytest.raises(MalformedNbt):
            split_region(region_with_record(record))

    def test_length_exceeds_sectors(self):
        record = struct.pack(">IB", 10_000, 2) + b"xx"
        with pytest.raises(MalformedNbt):
            split_region(region_with_record(record))

    def test_corrupt_chunk_data(self):
        record = struct.pack(">IB", 6, 2) + b"\x78\x9cxyz"
        with pytest.raises(MalformedNbt):
            split_region(region_with_record(record))

    def test_join_rejects_coordinates_outside_region(self):
        with pytest.raises(MalformedNbt):
            join_region({(32, 0): chunk_document(0, 0)})
