"""Core business logic module.

This module contains the save translation and synchronization engine.

Submodules:
    nbt: NbtTag / NbtDocument data model and tag factories
    nbt_codec: Binary NBT decode/encode (gzip, zlib, raw; Java and Bedrock)
    canonical: Deterministic line-oriented text form of NBT documents
    region: Anvil region file split/join (.mca/.mcr, external .mcc chunks)
    snapshotter: SaveSnapshotter turning a save folder into a CanonicalSnapshot
    git_orchestrator: GitOrchestrator wrapping dulwich for one working tree
    merge: File-level three-way merge used by pull
    state_tracker: SaveStateTracker classifying saves as Clear/Modified/Conflict
    analyzer: SaveAnalyzer reading level.dat metadata
    registry: ManagedSaveRegistry persisting managed saves as XML
    sync_service: SaveSyncService, the command surface used by front ends
    tasks: Cancellation tokens, per-save locks and background task handles
    errors: SyncError taxonomy

Region files hold 32x32 chunks, each an independently compressed NBT
document. Canonicalizing them chunk by chunk keeps a block change in one
chunk down to a one-file diff.
"""

from .errors import (
    AuthRequired,
    MalformedNbt,
    MergeConflict,
    NetworkUnavailable,
    NotARepository,
    NothingToCommit,
    OperationCancelled,
    ResourceLimitExceeded,
    SyncError,
    UnknownSave,
    UnreadableSave,
)
from .models import CommitInfo, ManagedSaveInfo, RepositoryLink, SaveStatus
from .snapshotter import CanonicalSnapshot, SaveSnapshotter
from .sync_service import SaveSyncService
from .tasks import CancellationToken, SyncTask

__all__ = [
    "SaveSyncService",
    "SaveSnapshotter",
    "CanonicalSnapshot",
    "CancellationToken",
    "SyncTask",
    "CommitInfo",
    "ManagedSaveInfo",
    "RepositoryLink",
    "SaveStatus",
    "SyncError",
    "MalformedNbt",
    "ResourceLimitExceeded",
    "UnreadableSave",
    "NotARepository",
    "NetworkUnavailable",
    "AuthRequired",
    "MergeConflict",
    "NothingToCommit",
    "OperationCancelled",
    "UnknownSave",
]
