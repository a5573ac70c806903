import sys
from pathlib import Path

import pytest

# Ensure 'src' is on sys.path for test imports without installing the package
ROOT = Path(__file__).resolve().parents[1]
src = ROOT / "src"
if str(src) not in sys.path:
    sys.path.insert(0, str(src))

from dulwich.repo import Repo  # noqa: E402

from gitmc.config.schema import AppConfiguration, GitSettings, Settings  # noqa: E402
from gitmc.core.nbt import (  # noqa: E402
    Byte,
    ByteOrder,
    Compound,
    Compression,
    Int,
    List,
    Long,
    NbtDocument,
    String,
    TagKind,
)
from gitmc.core.nbt_codec import encode  # noqa: E402
from gitmc.core.region import join_region  # noqa: E402


def level_document(name: str = "My World", game_type: int = 0, version: str = "1.20.4") -> NbtDocument:
    """Java Edition level.dat with the fields the analyzer reads."""
    return NbtDocument(
        root=Compound({
            "Data": Compound({
                "LevelName": String(name),
                "GameType": Int(game_type),
                "hardcore": Byte(0),
                "Version": Compound({"Name": String(version), "Id": Int(3700)}),
            })
        }),
        compression=Compression.GZIP,
    )


def chunk_document(x: int, z: int, status: str = "full") -> NbtDocument:
    """Minimal chunk NBT as stored in a region file."""
    return NbtDocument(
        root=Compound({
            "DataVersion": Int(3700),
            "xPos": Int(x),
            "zPos": Int(z),
            "Status": String(status),
            "LastUpdate": Long(1000),
            "sections": List(TagKind.COMPOUND, [Compound({"Y": Byte(0)})]),
        }),
        compression=Compression.ZLIB,
        byte_order=ByteOrder.BIG,
    )


def region_bytes(chunks: dict) -> bytes:
    """Region file holding the given local (lx, lz) -> document chunks."""
    return join_region(chunks, timestamp=1_700_000_000)


@pytest.fixture
def make_save(tmp_path):
    """Factory creating a save folder with level.dat and optional extras.

    Example::

        save = make_save("World", region={(0, 0): chunk_document(0, 0)})
    """

    def _make(name: str = "My World", region: dict | None = None, files: dict | None = None, **level) -> Path:
        save = tmp_path / "saves" / name
        save.mkdir(parents=True)
        (save / "level.dat").write_bytes(encode(level_document(name, **level)))
        if region:
            (save / "region").mkdir()
            (save / "region" / "r.0.0.mca").write_bytes(region_bytes(region))
        for rel, data in (files or {}).items():
            path = save / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return save

    return _make


@pytest.fixture
def bare_remote(tmp_path) -> Path:
    """An empty bare repository standing in for a hosted remote."""
    path = tmp_path / "remote.git"
    path.mkdir()
    Repo.init_bare(str(path)).close()
    return path


@pytest.fixture
def git_settings() -> GitSettings:
    """Git settings with retries that never sleep."""
    return GitSettings(retry_attempts=3, retry_backoff=0, retry_max_wait=0)


@pytest.fixture
def app_config(tmp_path, git_settings) -> AppConfiguration:
    return AppConfiguration(settings=Settings(data_dir=tmp_path / "data", git=git_settings))
