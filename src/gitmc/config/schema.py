"""Configuration data models"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .paths import AppPaths

# Ceiling for any configured depth; Minecraft itself rejects deeper NBT
MAX_NESTING_DEPTH = 512
DEFAULT_MAX_DEPTH = MAX_NESTING_DEPTH
DEFAULT_MAX_SIZE = 64 * 1024 * 1024


@dataclass
class CodecSettings:
    """Resource limits applied when decoding untrusted NBT input"""
    max_depth: int = DEFAULT_MAX_DEPTH
    max_size: int = DEFAULT_MAX_SIZE  # bytes, after decompression


@dataclass
class GitSettings:
    """Commit identity, defaults and network retry policy"""
    author_name: str = "GitMC"
    author_email: str = "gitmc@localhost"
    default_branch: str = "main"
    default_remote: str = "origin"
    retry_attempts: int = 3
    retry_backoff: float = 0.5  # seconds, doubled on every attempt
    retry_max_wait: float = 4.0
    remote_username: str = ""
    remote_token: str = ""  # stored encrypted on disk

    @property
    def identity(self) -> bytes:
        """Author/committer identity in git's ``Name <email>`` form."""
        return f"{self.author_name} <{self.author_email}>".encode("utf-8")


@dataclass
class Settings:
    """Application settings"""
    data_dir: Optional[Path] = None
    debug_logging: bool = False
    codec: CodecSettings = field(default_factory=CodecSettings)
    git: GitSettings = field(default_factory=GitSettings)


@dataclass
class AppConfiguration:
    """Complete application configuration"""
    settings: Settings = field(default_factory=Settings)

    @property
    def data_dir(self) -> Path:
        return self.settings.data_dir or AppPaths.CONFIG_DIR

    @property
    def registry_file(self) -> Path:
        return self.data_dir / "registry.xml"

    @property
    def trees_dir(self) -> Path:
        return self.data_dir / "trees"
