"""Small filesystem helpers shared by the snapshotter, orchestrator and sync service."""

import os
import tempfile
from pathlib import Path

if os.name == "nt":
    import msvcrt
else:
    import fcntl

TEMP_PREFIX = ".gitmc-"
SESSION_LOCK = "session.lock"


def atomic_write(path: Path, data: bytes) -> None:
    """Write a file via a temp file in the same directory and os.replace.

    Readers see either the old or the new contents, never a partial file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def is_temp_file(name: str) -> bool:
    return name.startswith(TEMP_PREFIX) and name.endswith(".tmp")


def prune_empty_dirs(root: Path, skip: str = ".git") -> None:
    """Remove empty directories below root, leaving root and skip alone."""
    for dirpath, dirnames, _ in os.walk(root, topdown=False):
        path = Path(dirpath)
        if path == root or skip in path.relative_to(root).parts:
            continue
        if not any(path.iterdir()):
            path.rmdir()


def walk_files(root: Path, skip_dirs: frozenset = frozenset()):
    """Yield relative posix paths of regular files under root, sorted."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in skip_dirs)
        base = Path(dirpath)
        for name in sorted(filenames):
            full = base / name
            if full.is_symlink() or not full.is_file():
                continue
            yield full.relative_to(root).as_posix()


def is_in_use(save_dir: Path) -> bool:
    """Whether the game has the world open.

    The game holds an exclusive lock on ``session.lock`` for as long as a
    world is loaded. A missing lock file counts as not in use.
    """
    try:
        handle = open(save_dir / SESSION_LOCK, "r+b")
    except FileNotFoundError:
        return False
    except PermissionError:
        # Windows refuses to open a file another process has locked
        return os.name == "nt"
    with handle:
        try:
            _try_lock(handle.fileno())
        except OSError:
            return True
    return False


if os.name == "nt":
    def _try_lock(fd: int) -> None:
        msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
else:
    def _try_lock(fd: int) -> None:
        # Java takes fcntl record locks, other tools take flock; try both
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.lockf(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
