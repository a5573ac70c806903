"""Anvil region files (r.<x>.<z>.mca / .mcr).

A region holds up to 32x32 chunks. Layout::

    0x0000  1024 x u32 BE  location: sector offset << 8 | sector count
    0x1000  1024 x u32 BE  last-modified timestamp (epoch seconds)
    0x2000  chunk records, each starting on a 4096-byte sector:
              u32 BE  length of what follows (compression byte + data)
              u8      compression (1 gzip, 2 zlib, 3 none, 4 lz4, 127 custom)
              bytes   compressed chunk NBT

Slot index is ``lx + lz * 32``. When bit 0x80 of the compression byte is
set, the chunk data lives in a sibling ``c.<cx>.<cz>.mcc`` file instead.

``join_region`` re-derives the header: chunks are packed in slot order
starting at sector 2, so sector layout and padding are not preserved.
"""

import math
import struct
from typing import Callable, Mapping, MutableMapping, Optional

from .errors import MalformedNbt, ResourceLimitExceeded
from .nbt import ByteOrder, Compression, NbtDocument
from .nbt_codec import DecodeLimits, decode, encode

SECTOR_BYTES = 4096
HEADER_BYTES = 2 * SECTOR_BYTES
REGION_WIDTH = 32
SLOT_COUNT = REGION_WIDTH * REGION_WIDTH
MAX_SECTORS = 255
EXTERNAL_FLAG = 0x80

COMPRESSION_IDS = {
    1: Compression.GZIP,
    2: Compression.ZLIB,
    3: Compression.NONE,
}
IDS_BY_COMPRESSION = {compression: ident for ident, compression in COMPRESSION_IDS.items()}
UNSUPPORTED_COMPRESSION = {4: "lz4", 127: "custom"}

ChunkKey = tuple[int, int]
ExternalLoader = Callable[[int, int], Optional[bytes]]


def slot_index(lx: int, lz: int) -> int:
    return lx + lz * REGION_WIDTH


def _check_key(key: ChunkKey) -> None:
    lx, lz = key
    if not (0 <= lx < REGION_WIDTH and 0 <= lz < REGION_WIDTH):
        raise MalformedNbt(f"chunk coordinates {key} outside region")


def read_header(data: bytes) -> list[tuple[int, int, int]]:
    """Parse and validate the region header.

    Args:
        data: Full region file contents

    Returns:
        1024 ``(sector_offset, sector_count, timestamp)`` triples in slot
        order; absent chunks have ``sector_count == 0``

    Raises:
        MalformedNbt: If the file is shorter than the header or a location
            points into the header or past the end of the file
    """
    if len(data) < HEADER_BYTES:
        raise MalformedNbt(f"region of {len(data)} bytes is shorter than its {HEADER_BYTES}-byte header")

    locations = struct.unpack_from(f">{SLOT_COUNT}I", data, 0)
    timestamps = struct.unpack_from(f">{SLOT_COUNT}I", data, SECTOR_BYTES)
    total_sectors = math.ceil(len(data) / SECTOR_BYTES)

    entries = []
    for index, (location, timestamp) in enumerate(zip(locations, timestamps)):
        offset, count = location >> 8, location & 0xFF
        if count and (offset < 2 or offset + count > total_sectors):
            raise MalformedNbt(
                f"chunk slot {index}: sectors {offset}+{count} outside file of {total_sectors} sectors"
            )
        entries.append((offset, count, timestamp))
    return entries


def split_region(
    data: bytes,
    limits: DecodeLimits = DecodeLimits(),
    load_external: Optional[ExternalLoader] = None,
) -> dict[ChunkKey, Optional[NbtDocument]]:
    """Split a region file into its chunk documents.

    Args:
        data: Region file contents
        limits: Bounds applied to every chunk decode
        load_external: Called with local ``(lx, lz)`` for chunks stored in
            a ``.mcc`` file; returns the file contents or None if missing

    Returns:
        A mapping with all 1024 local coordinates; absent chunks map to None

    Raises:
        MalformedNbt: If the header or any chunk record is invalid, or a
            chunk uses an unsupported compression
        ResourceLimitExceeded: If a chunk exceeds the decode limits
    """
    entries = read_header(data)
    chunks: dict[ChunkKey, Optional[NbtDocument]] = {}

    for lz in range(REGION_WIDTH):
        for lx in range(REGION_WIDTH):
            offset, count, _ = entries[slot_index(lx, lz)]
            if not count:
                chunks[(lx, lz)] = None
                continue

            start = offset * SECTOR_BYTES
            record_end = min(start + count * SECTOR_BYTES, len(data))
            if record_end - start < 5:
                raise MalformedNbt(f"chunk ({lx}, {lz}): record shorter than its header")
            length, compression_id = struct.unpack_from(">IB", data, start)
            if length < 1 or start + 4 + length > record_end:
                raise MalformedNbt(f"chunk ({lx}, {lz}): length {length} exceeds its {count} sectors")

            external = bool(compression_id & EXTERNAL_FLAG)
            compression_id &= ~EXTERNAL_FLAG
            if compression_id in UNSUPPORTED_COMPRESSION:
                raise MalformedNbt(
                    f"chunk ({lx}, {lz}): {UNSUPPORTED_COMPRESSION[compression_id]} compression is not supported"
                )
            compression = COMPRESSION_IDS.get(compression_id)
            if compression is None:
                raise MalformedNbt(f"chunk ({lx}, {lz}): unknown compression type {compression_id}")

            if external:
                payload = load_external(lx, lz) if load_external else None
                if payload is None:
                    raise MalformedNbt(f"chunk ({lx}, {lz}): external chunk file is missing")
            else:
                payload = data[start + 5:start + 4 + length]

            chunks[(lx, lz)] = decode(
                payload,
                compression=compression,
                byte_order=ByteOrder.BIG,
                limits=limits,
                strict=True,
            )
    return chunks


def join_region(
    chunks: Mapping[ChunkKey, Optional[NbtDocument]],
    timestamp: int = 0,
    external: Optional[MutableMapping[ChunkKey, bytes]] = None,
) -> bytes:
    """Assemble a region file from chunk documents.

    Args:
        chunks: Local ``(lx, lz)`` to document; missing keys and None values
            are absent chunks
        timestamp: Value written to every present chunk's timestamp slot
        external: Receives the compressed payload of chunks too large for
            255 sectors, keyed by local coordinates

    Returns:
        Region file contents; a region with no chunks is just the header

    Raises:
        MalformedNbt: If a key is outside the region or a document cannot
            be stored in a region
        ResourceLimitExceeded: If a chunk needs more than 255 sectors and
            no external sink was given
    """
    for key in chunks:
        _check_key(key)

    locations = bytearray(SECTOR_BYTES)
    timestamps = bytearray(SECTOR_BYTES)
    body = bytearray()
    next_sector = 2

    for lz in range(REGION_WIDTH):
        for lx in range(REGION_WIDTH):
            document = chunks.get((lx, lz))
            if document is None:
                continue
            if document.byte_order != ByteOrder.BIG or document.header_version is not None:
                raise MalformedNbt(f"chunk ({lx}, {lz}): region chunks must be big-endian without header")

            payload = encode(document)
            compression_id = IDS_BY_COMPRESSION[document.compression]
            sectors = math.ceil((len(payload) + 5) / SECTOR_BYTES)

            if sectors > MAX_SECTORS:
                if external is None:
                    raise ResourceLimitExceeded(
                        f"chunk ({lx}, {lz}) needs {sectors} sectors; limit is {MAX_SECTORS}"
                    )
                external[(lx, lz)] = payload
                record = struct.pack(">IB", 1, compression_id | EXTERNAL_FLAG)
                sectors = 1
            else:
                record = struct.pack(">IB", len(payload) + 1, compression_id) + payload

            record += bytes(sectors * SECTOR_BYTES - len(record))
            index = slot_index(lx, lz)
            struct.pack_into(">I", locations, index * 4, (next_sector << 8) | sectors)
            struct.pack_into(">I", timestamps, index * 4, timestamp & 0xFFFFFFFF)
            body += record
            next_sector += sectors

    return bytes(locations) + bytes(timestamps) + bytes(body)
