"""Path validation for the two places GitMC touches user folders.

- Snapshot entries must stay inside the folder they are restored into;
  a pulled commit is untrusted input.
- A folder registered as a save must not be a system directory.
"""

import os
import re
from pathlib import Path, PurePosixPath

from ..logging_config import get_logger

logger = get_logger("path_validator")

# Never registered as saves, nor anything below them ("/" only as itself)
PROTECTED_DIRECTORIES = (
    "/",
    "/bin",
    "/boot",
    "/etc",
    "/sbin",
    "/usr",
    "/System",
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
)

PROTECTED_ENV_PATHS = ("WINDIR", "SYSTEMROOT", "PROGRAMFILES", "PROGRAMDATA")

_UNSAFE_NAME_CHARS = re.compile(r'[<>:"/\\|?*\0 ]')
MAX_NAME_LENGTH = 100


def _protected_paths() -> set[Path]:
    candidates = list(PROTECTED_DIRECTORIES)
    candidates.extend(os.environ[name] for name in PROTECTED_ENV_PATHS if os.environ.get(name))

    protected = set()
    for candidate in candidates:
        try:
            protected.add(Path(candidate).resolve())
        except (OSError, ValueError):
            continue
    return protected


def is_protected(path: Path) -> bool:
    """Whether path is, or lies inside, a protected system directory."""
    for protected in _protected_paths():
        if path == protected:
            return True
        if protected.parent != protected and protected in path.parents:
            return True
    return False


def is_path_under_root(path: Path, root: Path) -> bool:
    """Check if path is root itself or lies below it (after resolving links)."""
    try:
        resolved, root_resolved = path.resolve(), root.resolve()
    except (OSError, ValueError) as e:
        logger.warning("Failed to resolve %s against %s: %s", path, root, e)
        return False
    return resolved == root_resolved or root_resolved in resolved.parents


def validate_entry_path(entry: str, root: Path) -> tuple[bool, str]:
    """Validate a snapshot entry path before it is written under root.

    Entry paths are relative, '/'-separated and may not climb out of root.

    Args:
        entry: Relative entry path from a snapshot
        root: The folder the entry will be written into

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not entry:
        return False, "Entry path is empty"

    pure = PurePosixPath(entry)
    if pure.is_absolute() or "\\" in entry or ":" in pure.parts[0]:
        return False, f"Entry path is absolute: {entry}"

    if any(part in ("..", ".", "") for part in entry.split("/")):
        return False, f"Entry path contains directory traversal: {entry}"

    if not is_path_under_root(root.joinpath(*pure.parts), root):
        return False, f"Entry path escapes {root}: {entry}"

    return True, ""


def validate_save_path(save_path: Path) -> tuple[bool, str]:
    """Validate a candidate save folder before it is analyzed or registered.

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        resolved = save_path.resolve()
    except (OSError, ValueError) as e:
        return False, f"Invalid path: {e}"

    if not resolved.is_dir():
        return False, f"{save_path} is not a directory"

    if is_protected(resolved):
        logger.warning("Refusing protected directory %s", resolved)
        return False, f"{resolved} is a protected system directory"

    return True, ""


def sanitize_filename(filename: str) -> str:
    """Turn a world name into a string usable in save ids and folder names.

    Args:
        filename: The world or folder name

    Returns:
        The name with unsafe characters replaced by '_', trimmed to
        MAX_NAME_LENGTH, or "World" if nothing usable is left
    """
    result = _UNSAFE_NAME_CHARS.sub("_", filename).strip("._")
    return result[:MAX_NAME_LENGTH] or "World"
