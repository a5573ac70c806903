"""Persistent catalog of managed saves."""

import os
import threading
import xml.etree.ElementTree as ET
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config.path_validator import sanitize_filename
from ..logging_config import get_logger
from .analyzer import SaveAnalyzer
from .errors import UnknownSave
from .fileio import atomic_write
from .models import ManagedSaveInfo, RepositoryLink, SaveStatus, WorldType

logger = get_logger("registry")


class ManagedSaveRegistry:
    """Stores ManagedSaveInfo records in an XML index.

    The index is loaded once at construction and rewritten atomically on
    every mutation. All access goes through one lock, and callers only
    ever receive copies of the stored records.

    Layout::

        registry.xml
            <managed_saves version="1">
              <save id="My_World_20260116_143052">
                <Name>My World</Name>
                <OriginalPath>/home/me/.minecraft/saves/My World</OriginalPath>
                <TreePath>/home/me/.gitmc/trees/My_World_20260116_143052</TreePath>
                <Status>clear</Status>
                ...
                <Link repository="my-world" visibility="private" ... />
              </save>
            </managed_saves>
    """

    def __init__(self, index_file: Path, trees_dir: Path, analyzer: Optional[SaveAnalyzer] = None):
        """Initialize the registry.

        Args:
            index_file: Path of registry.xml
            trees_dir: Directory holding one working tree per save id
            analyzer: Analyzer used to validate and describe new saves
        """
        self.index_file = Path(index_file)
        self.trees_dir = Path(trees_dir)
        self.analyzer = analyzer or SaveAnalyzer()
        self._lock = threading.RLock()
        self._entries: dict[str, ManagedSaveInfo] = {}
        self._load_index()

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def _load_index(self) -> None:
        if not self.index_file.exists():
            return

        try:
            root = ET.parse(self.index_file).getroot()
        except ET.ParseError as e:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            preserved = self.index_file.with_name(f"{self.index_file.name}.corrupt-{stamp}")
            os.replace(self.index_file, preserved)
            logger.error("Registry %s is corrupt (%s); preserved as %s", self.index_file, e, preserved.name)
            return

        for save_elem in root.findall("save"):
            try:
                info = self._from_element(save_elem)
            except (ValueError, TypeError) as e:
                logger.warning("Skipping malformed registry entry %s: %s", save_elem.get("id"), e)
                continue
            self._entries[info.id] = info
        logger.debug("Loaded %d managed saves from %s", len(self._entries), self.index_file)

    def _save_index(self) -> None:
        root = ET.Element("managed_saves", version="1")
        for info in sorted(self._entries.values(), key=lambda i: i.added_date):
            root.append(self._to_element(info))

        tree = ET.ElementTree(root)
        ET.indent(tree, space="  ")
        xml_bytes = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        atomic_write(self.index_file, xml_bytes + b"\n")

    @staticmethod
    def _to_element(info: ManagedSaveInfo) -> ET.Element:
        elem = ET.Element("save", id=info.id)
        ET.SubElement(elem, "Name").text = info.name
        ET.SubElement(elem, "OriginalPath").text = str(info.original_path)
        ET.SubElement(elem, "TreePath").text = str(info.tree_path)
        ET.SubElement(elem, "AddedDate").text = info.added_date.isoformat()
        ET.SubElement(elem, "Status").text = info.status.value
        ET.SubElement(elem, "Branch").text = info.branch
        ET.SubElement(elem, "CommitCount").text = str(info.commit_count)
        ET.SubElement(elem, "PendingPush").text = str(info.pending_push)
        ET.SubElement(elem, "PendingPull").text = str(info.pending_pull)
        ET.SubElement(elem, "ConflictCount").text = str(info.conflict_count)
        ET.SubElement(elem, "Size").text = str(info.size)
        ET.SubElement(elem, "GameVersion").text = info.game_version or ""
        ET.SubElement(elem, "WorldType").text = info.world_type.value
        ET.SubElement(elem, "LastModified").text = info.last_modified.isoformat() if info.last_modified else ""
        ET.SubElement(elem, "GitInitialized").text = str(info.is_git_initialized).lower()
        if info.link is not None:
            ET.SubElement(
                elem,
                "Link",
                repository=info.link.repository_name,
                visibility=info.link.visibility,
                default_branch=info.link.default_branch,
                url=info.link.remote_url,
            )
        return elem

    @staticmethod
    def _from_element(elem: ET.Element) -> ManagedSaveInfo:
        def text(tag: str, default: str = "") -> str:
            child = elem.find(tag)
            return child.text if child is not None and child.text else default

        save_id = elem.get("id")
        if not save_id:
            raise ValueError("save entry without id")

        link = None
        link_elem = elem.find("Link")
        if link_elem is not None:
            link = RepositoryLink(
                repository_name=link_elem.get("repository", ""),
                visibility=link_elem.get("visibility", "private"),
                default_branch=link_elem.get("default_branch", "main"),
                remote_url=link_elem.get("url", ""),
            )

        last_modified = text("LastModified")
        return ManagedSaveInfo(
            id=save_id,
            name=text("Name", save_id),
            original_path=Path(text("OriginalPath")),
            tree_path=Path(text("TreePath")),
            added_date=datetime.fromisoformat(text("AddedDate")),
            status=SaveStatus(text("Status", SaveStatus.MODIFIED.value)),
            branch=text("Branch", "main"),
            link=link,
            commit_count=int(text("CommitCount", "0")),
            pending_push=int(text("PendingPush", "0")),
            pending_pull=int(text("PendingPull", "0")),
            conflict_count=int(text("ConflictCount", "0")),
            size=int(text("Size", "0")),
            game_version=text("GameVersion") or None,
            world_type=WorldType(text("WorldType", WorldType.UNKNOWN.value)),
            last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
            is_git_initialized=text("GitInitialized", "false").lower() == "true",
        )

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    def _new_id(self, folder_name: str) -> str:
        base = f"{sanitize_filename(folder_name)}_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}"
        candidate = base
        counter = 1
        while candidate in self._entries or (self.trees_dir / candidate).exists():
            candidate = f"{base}_{counter}"
            counter += 1
        return candidate

    def register(self, candidate_path: Path, branch: str = "main") -> ManagedSaveInfo:
        """Add a save folder to the registry.

        Registering a folder that is already managed returns its record.

        Args:
            candidate_path: The save folder
            branch: Initial branch name recorded for the save

        Returns:
            A copy of the stored record

        Raises:
            UnreadableSave: If the folder is not a save
        """
        description = self.analyzer.analyze(Path(candidate_path))
        with self._lock:
            existing = self._find_by_path(description.path)
            if existing is not None:
                logger.info("%s is already managed as %s", description.path, existing.id)
                return replace(existing)

            save_id = self._new_id(description.folder_name)
            info = ManagedSaveInfo(
                id=save_id,
                name=description.display_name,
                original_path=description.path,
                tree_path=self.trees_dir / save_id,
                added_date=datetime.now(timezone.utc),
                branch=branch,
                size=description.size,
                game_version=description.game_version,
                world_type=description.world_type,
                last_modified=description.last_modified,
            )
            self._entries[save_id] = info
            self._save_index()
        logger.info("Registered %s as %s", description.path, save_id)
        return replace(info)

    def _find_by_path(self, path: Path) -> Optional[ManagedSaveInfo]:
        for info in self._entries.values():
            if info.original_path == path:
                return info
        return None

    def find_by_path(self, path: Path) -> Optional[ManagedSaveInfo]:
        with self._lock:
            info = self._find_by_path(Path(path).resolve())
            return replace(info) if info else None

    def get_by_id(self, save_id: str) -> Optional[ManagedSaveInfo]:
        """Look up a save, returning None when no save has this id."""
        with self._lock:
            info = self._entries.get(save_id)
            return replace(info) if info else None

    def update(self, info: ManagedSaveInfo) -> None:
        """Replace the stored record for ``info.id``.

        Raises:
            UnknownSave: If the save was unregistered meanwhile
        """
        with self._lock:
            if info.id not in self._entries:
                raise UnknownSave(f"no managed save with id {info.id!r}")
            self._entries[info.id] = replace(info)
            self._save_index()

    def unregister(self, save_id: str) -> ManagedSaveInfo:
        """Remove a save from the registry. Its folders are left on disk.

        Raises:
            UnknownSave: If no save has this id
        """
        with self._lock:
            info = self._entries.pop(save_id, None)
            if info is None:
                raise UnknownSave(f"no managed save with id {save_id!r}")
            self._save_index()
        logger.info("Unregistered %s", save_id)
        return info

    def list(self) -> list[ManagedSaveInfo]:
        """All managed saves, oldest first."""
        with self._lock:
            return [replace(info) for info in sorted(self._entries.values(), key=lambda i: i.added_date)]
