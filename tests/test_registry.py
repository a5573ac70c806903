"""Tests for ManagedSaveRegistry and SaveAnalyzer."""

from dataclasses import replace
from pathlib import Path

import pytest

from conftest import level_document
from gitmc.core.analyzer import SaveAnalyzer
from gitmc.core.errors import UnknownSave, UnreadableSave
from gitmc.core.models import RepositoryLink, SaveStatus, WorldType
from gitmc.core.nbt import Byte, ByteOrder, Compound, Compression, Int, List, NbtDocument, String, TagKind
from gitmc.core.nbt_codec import encode
from gitmc.core.registry import ManagedSaveRegistry


@pytest.fixture
def registry(tmp_path):
    return ManagedSaveRegistry(tmp_path / "data" / "registry.xml", tmp_path / "data" / "trees")


class TestAnalyzer:
    def test_java_level(self, make_save):
        description = SaveAnalyzer().analyze(make_save("Survival Island", game_type=1, version="1.21"))
        assert description.level_name == "Survival Island"
        assert description.display_name == "Survival Island"
        assert description.world_type == WorldType.CREATIVE
        assert description.game_version == "1.21"
        assert description.size > 0
        assert description.last_modified is not None

    def test_hardcore(self, make_save):
        save = make_save("Hard")
        level = NbtDocument(root=Compound({"Data": Compound({
            "LevelName": String("Hard"),
            "GameType": Int(0),
            "hardcore": Byte(1),
        })}))
        (save / "level.dat").write_bytes(encode(level))
        assert SaveAnalyzer().analyze(save).world_type == WorldType.HARDCORE

    def test_bedrock_level(self, tmp_path):
        save = tmp_path / "bedrock"
        save.mkdir()
        level = NbtDocument(
            root=Compound({
                "LevelName": String("Pocket"),
                "GameType": Int(2),
                "lastOpenedWithVersion": List(TagKind.INT, [Int(1), Int(20), Int(50), Int(0), Int(0)]),
            }),
            compression=Compression.NONE,
            byte_order=ByteOrder.LITTLE,
            header_version=10,
        )
        (save / "level.dat").write_bytes(encode(level))
        description = SaveAnalyzer().analyze(save)
        assert description.level_name == "Pocket"
        assert description.game_version == "1.20.50"
        assert description.world_type == WorldType.ADVENTURE

    def test_level_dat_old_is_enough(self, make_save):
        save = make_save("Old")
        (save / "level.dat").rename(save / "level.dat_old")
        assert SaveAnalyzer().analyze(save).level_name == "Old"

    def test_unreadable_level_leaves_metadata_empty(self, tmp_path):
        save = tmp_path / "garbled"
        save.mkdir()
        (save / "level.dat").write_bytes(b"\x1f\x8bnot gzip")
        description = SaveAnalyzer().analyze(save)
        assert description.level_name is None
        assert description.display_name == "garbled"
        assert description.world_type == WorldType.UNKNOWN

    def test_not_a_save(self, tmp_path):
        with pytest.raises(UnreadableSave):
            SaveAnalyzer().analyze(tmp_path)

    def test_protected_directory(self):
        with pytest.raises(UnreadableSave):
            SaveAnalyzer().analyze(Path("/"))


class TestRegistry:
    def test_register(self, registry, make_save, tmp_path):
        save = make_save("My World")
        info = registry.register(save)
        assert info.id.startswith("My_World_")
        assert info.name == "My World"
        assert info.original_path == save.resolve()
        assert info.tree_path == tmp_path / "data" / "trees" / info.id
        assert info.status == SaveStatus.MODIFIED
        assert not info.is_git_initialized

    def test_register_is_idempotent(self, registry, make_save):
        save = make_save("My World")
        first = registry.register(save)
        second = registry.register(save / ".." / save.name)
        assert first.id == second.id
        assert len(registry.list()) == 1

    def test_same_name_gets_distinct_ids(self, registry, tmp_path, make_save):
        first = registry.register(make_save("World"))
        other = tmp_path / "elsewhere" / "World"
        other.mkdir(parents=True)
        (other / "level.dat").write_bytes(encode(level_document("World")))
        second = registry.register(other)
        assert first.id != second.id
        assert first.id.startswith("World_") and second.id.startswith("World_")

    def test_non_save_is_rejected(self, registry, tmp_path):
        with pytest.raises(UnreadableSave):
            registry.register(tmp_path)
        assert registry.list() == []

    def test_unknown_id(self, registry):
        assert registry.get_by_id("nope") is None
        assert registry.find_by_path(Path("/nowhere")) is None
        with pytest.raises(UnknownSave):
            registry.unregister("nope")

    def test_reads_return_copies(self, registry, make_save):
        info = registry.register(make_save("World"))
        info.status = SaveStatus.CONFLICT
        assert registry.get_by_id(info.id).status == SaveStatus.MODIFIED

    def test_update_and_reload(self, registry, make_save, tmp_path):
        info = registry.register(make_save("World"))
        link = RepositoryLink("world", "private", "main", "https://example.com/world.git")
        registry.update(replace(info, status=SaveStatus.CLEAR, commit_count=3, pending_pull=2, link=link,
                                is_git_initialized=True))

        reloaded = ManagedSaveRegistry(tmp_path / "data" / "registry.xml", tmp_path / "data" / "trees")
        stored = reloaded.get_by_id(info.id)
        assert stored.status == SaveStatus.CLEAR
        assert stored.commit_count == 3
        assert stored.pending_pull == 2
        assert stored.link == link
        assert stored.is_git_initialized
        assert stored.added_date == info.added_date
        assert stored.original_path == info.original_path

    def test_find_by_path(self, registry, make_save):
        save = make_save("World")
        info = registry.register(save)
        assert registry.find_by_path(save).id == info.id
        assert registry.find_by_path(save.parent) is None

    def test_unregister_leaves_folders(self, registry, make_save):
        save = make_save("World")
        info = registry.register(save)
        info.tree_path.mkdir(parents=True)
        registry.unregister(info.id)
        assert registry.list() == []
        assert save.exists()
        assert info.tree_path.exists()

    def test_corrupt_index_is_preserved(self, tmp_path, make_save):
        index = tmp_path / "data" / "registry.xml"
        index.parent.mkdir(parents=True)
        index.write_text("<managed_saves><save", encoding="utf-8")

        registry = ManagedSaveRegistry(index, tmp_path / "data" / "trees")
        assert registry.list() == []
        preserved = list(index.parent.glob("registry.xml.corrupt-*"))
        assert len(preserved) == 1
        assert preserved[0].read_text(encoding="utf-8") == "<managed_saves><save"

        registry.register(make_save("World"))
        assert index.exists()
