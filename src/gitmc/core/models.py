"""Data models shared by the registry, state tracker and command surface."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol


class SaveStatus(Enum):
    """Synchronization state of a managed save"""
    CLEAR = "clear"        # live folder matches HEAD
    MODIFIED = "modified"  # live folder has uncommitted changes
    CONFLICT = "conflict"  # a merge is waiting for manual resolution


class WorldType(Enum):
    """Game mode recorded in level.dat"""
    SURVIVAL = "Survival"
    CREATIVE = "Creative"
    ADVENTURE = "Adventure"
    SPECTATOR = "Spectator"
    HARDCORE = "Hardcore"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class RepositoryLink:
    """Hosted repository a save is linked to"""
    repository_name: str
    visibility: str  # "private" or "public"
    default_branch: str
    remote_url: str


@dataclass(frozen=True)
class CommitInfo:
    """One entry of a save's commit history"""
    sha: str
    message: str
    author: str
    timestamp: datetime

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def summary(self) -> str:
        """First line of the commit message."""
        return self.message.split("\n", 1)[0]


@dataclass
class SaveDescription:
    """Metadata read from a save folder by the analyzer"""
    path: Path
    folder_name: str
    level_name: Optional[str] = None
    game_version: Optional[str] = None
    world_type: WorldType = WorldType.UNKNOWN
    size: int = 0
    last_modified: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.level_name or self.folder_name


@dataclass
class ManagedSaveInfo:
    """A save under version control, as recorded in the registry"""
    id: str
    name: str
    original_path: Path
    tree_path: Path
    added_date: datetime
    status: SaveStatus = SaveStatus.MODIFIED
    branch: str = "main"
    link: Optional[RepositoryLink] = None
    commit_count: int = 0
    pending_push: int = 0
    pending_pull: int = 0
    conflict_count: int = 0
    size: int = 0
    game_version: Optional[str] = None
    world_type: WorldType = WorldType.UNKNOWN
    last_modified: Optional[datetime] = None
    is_git_initialized: bool = False

    @property
    def is_linked(self) -> bool:
        return self.link is not None

    def get_size_mb(self) -> float:
        """Get the save folder size in megabytes."""
        return self.size / (1024 * 1024)


class RepositoryHost(Protocol):
    """Hosting provider able to create a repository for a save.

    Account management and authentication live outside this package; an
    implementation only has to create (or look up) the repository and
    report where to push.
    """

    def create_repository(self, name: str, private: bool = True) -> RepositoryLink:
        ...
