"""Canonical snapshots of a save folder.

A snapshot maps relative ``/``-separated entry paths to bytes. It is what
gets written into the version-controlled working tree:

    level.dat                 -> level.dat.snbt           (canonical NBT)
    region/r.0.-1.mca         -> region/r.0.-1.mca/.region
                                 region/r.0.-1.mca/chunk.<cx>.<cz>.snbt
    icon.png                  -> icon.png                 (opaque bytes)

Chunk entries use global chunk coordinates, so one changed chunk touches
exactly one entry. Opaque files whose names would be mistaken for the
entries above (``*.snbt``, ``*.raw``, ``.region``) get a ``.raw`` suffix.
``session.lock`` is never captured or restored.
"""

import re
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

from ..config.path_validator import validate_entry_path
from ..logging_config import get_logger
from .canonical import canonicalize, decanonicalize
from .errors import MalformedNbt, ResourceLimitExceeded, UnreadableSave
from .fileio import SESSION_LOCK, atomic_write, is_temp_file, prune_empty_dirs, walk_files
from .nbt_codec import DecodeLimits, decode, detect_compression, encode
from .nbt import Compression
from .region import REGION_WIDTH, join_region, split_region

logger = get_logger("snapshotter")

LEVEL_FILES = ("level.dat", "level.dat_old")
EXCLUDED_NAMES = {SESSION_LOCK}
NBT_SUFFIX = ".snbt"
OPAQUE_SUFFIX = ".raw"
REGION_MARKER = ".region"
# Uncompressed files are only tried as NBT when their name says so
NBT_FILE_SUFFIXES = {".dat", ".dat_old", ".nbt", ".schematic", ".litematic", ".mcstructure"}

REGION_RE = re.compile(r"^r\.(-?\d+)\.(-?\d+)\.mc[ar]$")
EXTERNAL_RE = re.compile(r"^c\.(-?\d+)\.(-?\d+)\.mcc$")
CHUNK_RE = re.compile(r"^chunk\.(-?\d+)\.(-?\d+)\.snbt$")


@dataclass(frozen=True)
class SnapshotDiff:
    """Entry paths that differ between two snapshots"""
    added: frozenset
    removed: frozenset
    changed: frozenset

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)

    @property
    def paths(self) -> frozenset:
        return self.added | self.removed | self.changed


class CanonicalSnapshot(Mapping):
    """Immutable, path-ordered mapping of entry path to contents."""

    def __init__(self, entries: Optional[Mapping[str, bytes]] = None):
        ordered = dict(sorted((entries or {}).items()))
        self._entries = MappingProxyType(ordered)

    def __getitem__(self, path: str) -> bytes:
        return self._entries[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CanonicalSnapshot({len(self)} entries)"

    def diff(self, other: "CanonicalSnapshot") -> SnapshotDiff:
        """Compare this snapshot (old) against other (new)."""
        mine, theirs = set(self._entries), set(other)
        return SnapshotDiff(
            added=frozenset(theirs - mine),
            removed=frozenset(mine - theirs),
            changed=frozenset(p for p in mine & theirs if self._entries[p] != other[p]),
        )


def _is_excluded(name: str) -> bool:
    return name in EXCLUDED_NAMES or is_temp_file(name)


def _escape_opaque(rel: str) -> str:
    name = PurePosixPath(rel).name
    if name.endswith((NBT_SUFFIX, OPAQUE_SUFFIX)) or name == REGION_MARKER:
        return rel + OPAQUE_SUFFIX
    return rel


def _looks_like_nbt(rel: str, data: bytes) -> bool:
    if detect_compression(data) != Compression.NONE:
        return True
    suffix = PurePosixPath(rel).suffix.lower()
    return suffix in NBT_FILE_SUFFIXES and len(data) >= 3


def _plan_outputs(snapshot: Mapping[str, bytes]) -> dict[str, dict]:
    """Group snapshot entries by the live file they produce.

    Returns:
        Live relative path -> {"type": "nbt"|"region"|"opaque", "entries": {entry: bytes}}
    """
    region_dirs = {
        str(PurePosixPath(entry).parent)
        for entry in snapshot
        if PurePosixPath(entry).name == REGION_MARKER
    }
    outputs: dict[str, dict] = {}
    for entry, data in snapshot.items():
        pure = PurePosixPath(entry)
        parent = str(pure.parent)
        if entry.endswith(OPAQUE_SUFFIX):
            target, kind = entry[:-len(OPAQUE_SUFFIX)], "opaque"
        elif pure.name == REGION_MARKER or (parent in region_dirs and pure.name.endswith(NBT_SUFFIX)):
            target, kind = parent, "region"
        elif entry.endswith(NBT_SUFFIX):
            target, kind = entry[:-len(NBT_SUFFIX)], "nbt"
        else:
            target, kind = entry, "opaque"
        plan = outputs.setdefault(target, {"type": kind, "entries": {}})
        if plan["type"] != kind:
            raise MalformedNbt(f"snapshot entries disagree about {target}")
        plan["entries"][entry] = data
    return outputs


class SaveSnapshotter:
    """Converts between a live save folder and its canonical snapshot."""

    def __init__(self, limits: DecodeLimits = DecodeLimits()):
        self.limits = limits

    # ------------------------------------------------------------------
    # live folder -> snapshot
    # ------------------------------------------------------------------

    def snapshot(self, live: Path) -> CanonicalSnapshot:
        """Capture the canonical snapshot of a save folder.

        Args:
            live: The save folder

        Returns:
            The folder's CanonicalSnapshot

        Raises:
            UnreadableSave: If the folder has no level.dat / level.dat_old
                or cannot be read
        """
        live = Path(live)
        if not live.is_dir() or not any((live / name).is_file() for name in LEVEL_FILES):
            raise UnreadableSave(f"{live} is not a Minecraft save (no level.dat)")

        try:
            files = [rel for rel in walk_files(live) if not _is_excluded(PurePosixPath(rel).name)]
            entries: dict[str, bytes] = {}
            consumed: set[str] = set()

            for rel in files:
                match = REGION_RE.match(PurePosixPath(rel).name)
                if match:
                    region_entries = self._capture_region(live, rel, int(match.group(1)), int(match.group(2)), consumed)
                    if region_entries is not None:
                        entries.update(region_entries)
                        continue
                    # Unsplittable region: keep it as-is alongside its .mcc files
                    entries[_escape_opaque(rel)] = (live / rel).read_bytes()

            for rel in files:
                if rel in consumed or REGION_RE.match(PurePosixPath(rel).name):
                    continue
                data = (live / rel).read_bytes()
                if _looks_like_nbt(rel, data):
                    try:
                        document = decode(data, limits=self.limits, strict=True)
                        entries[rel + NBT_SUFFIX] = canonicalize(document)
                        continue
                    except (MalformedNbt, ResourceLimitExceeded) as e:
                        logger.warning("Keeping %s as opaque bytes: %s", rel, e)
                entries[_escape_opaque(rel)] = data
        except OSError as e:
            raise UnreadableSave(f"Failed to read {live}: {e}") from e

        logger.debug("Snapshot of %s: %d entries", live, len(entries))
        return CanonicalSnapshot(entries)

    def _capture_region(self, live: Path, rel: str, rx: int, rz: int, consumed: set) -> Optional[dict]:
        data = (live / rel).read_bytes()
        folder = PurePosixPath(rel).parent
        used: set[str] = set()

        def load_external(lx: int, lz: int) -> Optional[bytes]:
            external = folder / f"c.{rx * REGION_WIDTH + lx}.{rz * REGION_WIDTH + lz}.mcc"
            path = live / external.as_posix()
            if not path.is_file():
                return None
            used.add(external.as_posix())
            return path.read_bytes()

        try:
            chunks = split_region(data, self.limits, load_external)
        except (MalformedNbt, ResourceLimitExceeded) as e:
            if data:
                logger.warning("Keeping region %s as opaque bytes: %s", rel, e)
            return None

        entries = {f"{rel}/{REGION_MARKER}": b""}
        for (lx, lz), document in chunks.items():
            if document is not None:
                cx, cz = rx * REGION_WIDTH + lx, rz * REGION_WIDTH + lz
                entries[f"{rel}/chunk.{cx}.{cz}{NBT_SUFFIX}"] = canonicalize(document)
        consumed.update(used)
        return entries

    # ------------------------------------------------------------------
    # snapshot -> live folder
    # ------------------------------------------------------------------

    def restore(
        self,
        snapshot: Mapping[str, bytes],
        target: Path,
        previous: Optional[Mapping[str, bytes]] = None,
    ) -> list[str]:
        """Write a snapshot back into a save folder.

        Args:
            snapshot: Snapshot to materialize
            target: Save folder to write into
            previous: Snapshot the folder currently reflects; when given,
                only files whose entries changed are rewritten and files
                no longer in the snapshot are deleted

        Returns:
            Relative paths of the live files written or deleted

        Raises:
            MalformedNbt: If an entry is invalid or its path escapes target
        """
        target = Path(target)
        outputs = _plan_outputs(snapshot)
        before = _plan_outputs(previous) if previous is not None else {}
        for rel in outputs:
            ok, message = validate_entry_path(rel, target)
            if not ok:
                raise MalformedNbt(message)

        # Encode everything before touching the folder
        pending: dict[str, bytes] = {}
        externals: dict[str, dict[str, bytes]] = {}
        for rel, plan in outputs.items():
            if previous is not None and before.get(rel) == plan:
                continue
            if plan["type"] == "opaque":
                pending[rel] = next(iter(plan["entries"].values()))
            elif plan["type"] == "nbt":
                pending[rel] = encode(decanonicalize(next(iter(plan["entries"].values())), self.limits))
            else:
                pending[rel], externals[rel] = self._build_region(rel, plan["entries"])

        touched = []
        for rel in sorted(set(before) - set(outputs)):
            ok, _ = validate_entry_path(rel, target)
            path = target / rel
            if ok and path.is_file():
                path.unlink()
                touched.append(rel)
            if before[rel]["type"] == "region":
                self._remove_stale_external(target, rel, outputs)

        for rel, data in pending.items():
            atomic_write(target / rel, data)
            touched.append(rel)
            if rel in externals:
                for external_rel, payload in externals[rel].items():
                    atomic_write(target / external_rel, payload)
                self._remove_stale_external(target, rel, {**outputs, **externals[rel]})

        logger.info("Restored %d files into %s", len(touched), target)
        return touched

    def _build_region(self, rel: str, entries: Mapping[str, bytes]) -> tuple[bytes, dict[str, bytes]]:
        match = REGION_RE.match(PurePosixPath(rel).name)
        if not match:
            raise MalformedNbt(f"{rel} is not a region file name")
        rx, rz = int(match.group(1)), int(match.group(2))
        folder = PurePosixPath(rel).parent

        chunks = {}
        for entry, data in entries.items():
            name = PurePosixPath(entry).name
            if name == REGION_MARKER:
                continue
            chunk_match = CHUNK_RE.match(name)
            if not chunk_match:
                raise MalformedNbt(f"unexpected entry {entry} in region {rel}")
            lx = int(chunk_match.group(1)) - rx * REGION_WIDTH
            lz = int(chunk_match.group(2)) - rz * REGION_WIDTH
            chunks[(lx, lz)] = decanonicalize(data, self.limits)

        oversized: dict[tuple[int, int], bytes] = {}
        region = join_region(chunks, timestamp=int(time.time()), external=oversized)
        externals = {
            (folder / f"c.{rx * REGION_WIDTH + lx}.{rz * REGION_WIDTH + lz}.mcc").as_posix(): payload
            for (lx, lz), payload in oversized.items()
        }
        return region, externals

    @staticmethod
    def _remove_stale_external(target: Path, rel: str, keep: Mapping[str, bytes]) -> None:
        """Delete .mcc files of a region that the new region no longer references."""
        match = REGION_RE.match(PurePosixPath(rel).name)
        folder = target / PurePosixPath(rel).parent.as_posix()
        if not match or not folder.is_dir():
            return
        rx, rz = int(match.group(1)), int(match.group(2))
        for path in folder.glob("c.*.mcc"):
            external = EXTERNAL_RE.match(path.name)
            if not external:
                continue
            cx, cz = int(external.group(1)), int(external.group(2))
            if cx // REGION_WIDTH == rx and cz // REGION_WIDTH == rz:
                rel_path = path.relative_to(target).as_posix()
                if rel_path not in keep:
                    path.unlink()

    # ------------------------------------------------------------------
    # snapshot <-> working tree
    # ------------------------------------------------------------------

    def write_tree(self, snapshot: Mapping[str, bytes], tree: Path) -> CanonicalSnapshot:
        """Make the working tree hold exactly the snapshot's entries.

        Files whose contents already match are left untouched; entries
        missing from the snapshot are removed. ``.git`` is never touched.

        Returns:
            The snapshot now held by the working tree
        """
        tree = Path(tree)
        tree.mkdir(parents=True, exist_ok=True)
        for entry in snapshot:
            ok, message = validate_entry_path(entry, tree)
            if not ok or entry.split("/")[0] == ".git":
                raise MalformedNbt(message or f"entry {entry} is reserved")

        existing = set(walk_files(tree, skip_dirs=frozenset({".git"})))
        for rel in sorted(existing - set(snapshot)):
            (tree / rel).unlink()
        prune_empty_dirs(tree)

        written = 0
        for entry, data in snapshot.items():
            path = tree / entry
            if entry in existing and path.is_file() and path.read_bytes() == data:
                continue
            atomic_write(path, data)
            written += 1
        logger.debug("Working tree %s: %d written, %d removed", tree, written, len(existing - set(snapshot)))
        return CanonicalSnapshot(snapshot)

    def read_tree(self, tree: Path) -> CanonicalSnapshot:
        """Read the working tree back into a snapshot (``.git`` excluded)."""
        tree = Path(tree)
        return CanonicalSnapshot({
            rel: (tree / rel).read_bytes()
            for rel in walk_files(tree, skip_dirs=frozenset({".git"}))
        })
