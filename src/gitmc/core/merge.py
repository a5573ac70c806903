"""File-level three-way merge of tree snapshots.

Canonical snapshots split a save into small files (one per chunk), so
merging is done per path: a path changed on one side only takes that
side, identical changes merge cleanly, and anything else is a conflict.
"""

from typing import Mapping, Optional

LOCAL = "local"
REMOTE = "remote"

Entries = Mapping[str, bytes]  # path -> blob id


def merge_entries(
    base: Entries,
    local: Entries,
    remote: Entries,
    prefer: Optional[str] = None,
) -> tuple[dict[str, bytes], list[str]]:
    """Merge two descendants of base path by path.

    Args:
        base: Entries of the merge base (empty when histories are unrelated)
        local: Entries of the local branch
        remote: Entries of the remote branch
        prefer: "local" or "remote" to settle every conflict in favour of
            that side, or None to report conflicts

    Returns:
        Tuple of (merged entries, sorted conflicting paths). With prefer
        set the conflict list still names the paths that were settled.
    """
    if prefer not in (None, LOCAL, REMOTE):
        raise ValueError(f"prefer must be 'local' or 'remote', got {prefer!r}")

    merged: dict[str, bytes] = {}
    conflicts: list[str] = []

    for path in sorted(set(base) | set(local) | set(remote)):
        ancestor, ours, theirs = base.get(path), local.get(path), remote.get(path)

        if ours == theirs:
            result = ours
        elif ours == ancestor:
            result = theirs
        elif theirs == ancestor:
            result = ours
        else:
            conflicts.append(path)
            if prefer is None:
                continue
            result = ours if prefer == LOCAL else theirs

        if result is not None:
            merged[path] = result

    return merged, conflicts


def conflict_text(local: Optional[bytes], remote: Optional[bytes]) -> bytes:
    """Render both sides of a conflicting file with git-style markers."""

    def block(data: Optional[bytes]) -> bytes:
        if not data:
            return b""
        return data if data.endswith(b"\n") else data + b"\n"

    return (
        b"<<<<<<< " + LOCAL.encode() + b"\n"
        + block(local)
        + b"=======\n"
        + block(remote)
        + b">>>>>>> " + REMOTE.encode() + b"\n"
    )
