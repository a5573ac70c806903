"""Reads advisory metadata from a candidate save folder.

A folder qualifies as a save when it holds level.dat or level.dat_old.
Everything else (level name, game version, world type, size) is best
effort: an unreadable level.dat is logged and leaves the fields empty.

Java Edition level.dat::

    "" {
      Data {
        LevelName: string
        GameType: int         0 survival, 1 creative, 2 adventure, 3 spectator
        hardcore: byte
        Version { Name: string, Id: int }
      }
    }

Bedrock level.dat keeps the same fields at the root and records the game
version as ``lastOpenedWithVersion``, a list of ints.
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

from ..config.path_validator import validate_save_path
from ..logging_config import get_logger
from .errors import MalformedNbt, ResourceLimitExceeded, UnreadableSave
from .models import SaveDescription, WorldType
from .nbt import NbtTag, TagKind
from .nbt_codec import DecodeLimits, decode

logger = get_logger("analyzer")

LEVEL_FILES = ("level.dat", "level.dat_old")

GAME_TYPES = {
    0: WorldType.SURVIVAL,
    1: WorldType.CREATIVE,
    2: WorldType.ADVENTURE,
    3: WorldType.SPECTATOR,
}


def _string(tag: Optional[NbtTag]) -> Optional[str]:
    return tag.value if tag is not None and tag.kind == TagKind.STRING else None


def _number(tag: Optional[NbtTag]) -> Optional[int]:
    if tag is not None and tag.kind in (TagKind.BYTE, TagKind.SHORT, TagKind.INT, TagKind.LONG):
        return tag.value
    return None


class SaveAnalyzer:
    """Validates candidate save folders and describes them."""

    def __init__(self, limits: DecodeLimits = DecodeLimits()):
        self.limits = limits

    def is_save(self, path: Path) -> bool:
        return Path(path).is_dir() and any((Path(path) / name).is_file() for name in LEVEL_FILES)

    def analyze(self, path: Path) -> SaveDescription:
        """Describe a save folder.

        Args:
            path: Candidate save folder

        Returns:
            SaveDescription with whatever metadata could be read

        Raises:
            UnreadableSave: If the folder is not a save or is a protected
                system directory
        """
        path = Path(path)
        is_valid, message = validate_save_path(path)
        if not is_valid:
            raise UnreadableSave(f"{path}: {message}")
        if not self.is_save(path):
            raise UnreadableSave(f"{path} is not a Minecraft save (no level.dat or level.dat_old)")

        description = SaveDescription(path=path.resolve(), folder_name=path.resolve().name)
        self._read_level(path, description)
        description.size, description.last_modified = self._measure(path)
        return description

    def _read_level(self, path: Path, description: SaveDescription) -> None:
        for name in LEVEL_FILES:
            level_file = path / name
            if not level_file.is_file():
                continue
            try:
                document = decode(level_file.read_bytes(), limits=self.limits)
            except (MalformedNbt, ResourceLimitExceeded, OSError) as e:
                logger.warning("Could not read %s: %s", level_file, e)
                continue

            data = document.root.get("Data", document.root)
            description.level_name = _string(data.get("LevelName"))
            description.game_version = self._game_version(data)
            if _number(data.get("hardcore")):
                description.world_type = WorldType.HARDCORE
            else:
                description.world_type = GAME_TYPES.get(_number(data.get("GameType")), WorldType.UNKNOWN)
            return

    @staticmethod
    def _game_version(data: NbtTag) -> Optional[str]:
        version = data.get("Version")
        if version is not None and version.kind == TagKind.COMPOUND:
            name = _string(version.get("Name"))
            if name:
                return name
        opened = data.get("lastOpenedWithVersion")
        if opened is not None and opened.kind == TagKind.LIST and opened.element_kind == TagKind.INT:
            parts = [str(item.value) for item in opened.value]
            while len(parts) > 2 and parts[-1] == "0":
                parts.pop()
            return ".".join(parts) or None
        return None

    @staticmethod
    def _measure(path: Path) -> tuple[int, Optional[datetime]]:
        size = 0
        latest = None
        for file_path in path.rglob("*"):
            try:
                if not file_path.is_file() or file_path.is_symlink():
                    continue
                stat = file_path.stat()
            except OSError:
                continue
            size += stat.st_size
            if latest is None or stat.st_mtime > latest:
                latest = stat.st_mtime
        return size, datetime.fromtimestamp(latest) if latest is not None else None
