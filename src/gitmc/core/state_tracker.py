"""Classifies a managed save as Clear, Modified or Conflict."""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from ..logging_config import get_logger
from .git_orchestrator import GitOrchestrator, blob_id
from .models import ManagedSaveInfo, SaveStatus
from .snapshotter import CanonicalSnapshot, SaveSnapshotter

logger = get_logger("state_tracker")


@dataclass(frozen=True)
class SaveState:
    """Result of comparing a live save with its repository"""
    status: SaveStatus
    ahead: int = 0
    behind: int = 0
    commit_count: int = 0
    conflict_count: int = 0
    branch: Optional[str] = None
    changed_paths: frozenset = frozenset()
    is_git_initialized: bool = False


class SaveStateTracker:
    """Derives a save's status from its live folder and repository.

    Status rules:
        - Conflict while a merge is pending (never cleared automatically)
        - Modified when the live folder's snapshot differs from HEAD
        - Clear otherwise

    Ahead/behind counts come from the current branch versus its
    remote-tracking ref and are zero when there is no remote.
    """

    def __init__(self, snapshotter: SaveSnapshotter, remote: str = "origin"):
        self.snapshotter = snapshotter
        self.remote = remote

    def compute(
        self,
        live: Path,
        orchestrator: GitOrchestrator,
        snapshot: Optional[CanonicalSnapshot] = None,
    ) -> SaveState:
        """Compute the state of one save.

        Args:
            live: The save folder
            orchestrator: Orchestrator for the save's working tree
            snapshot: A snapshot of live taken moments ago, to avoid
                reading the folder twice

        Returns:
            The SaveState

        Raises:
            UnreadableSave: If the live folder is no longer a save
        """
        if not orchestrator.is_repository():
            return SaveState(status=SaveStatus.MODIFIED)

        branch = orchestrator.current_branch()
        ahead, behind = orchestrator.ahead_behind(self.remote)
        commit_count = orchestrator.commit_count()

        if orchestrator.in_conflict():
            conflicts = orchestrator.conflicted_paths()
            return SaveState(
                status=SaveStatus.CONFLICT,
                ahead=ahead,
                behind=behind,
                commit_count=commit_count,
                conflict_count=len(conflicts),
                branch=branch,
                changed_paths=frozenset(conflicts),
                is_git_initialized=True,
            )

        if snapshot is None:
            snapshot = self.snapshotter.snapshot(live)
        head = orchestrator.head_entries()
        changed = {path for path in set(snapshot) | set(head)
                   if path not in snapshot or head.get(path) != blob_id(snapshot[path])}

        status = SaveStatus.MODIFIED if changed else SaveStatus.CLEAR
        logger.debug("%s: %s (%d changed, ahead %d, behind %d)", live, status.value, len(changed), ahead, behind)
        return SaveState(
            status=status,
            ahead=ahead,
            behind=behind,
            commit_count=commit_count,
            branch=branch,
            changed_paths=frozenset(changed),
            is_git_initialized=True,
        )

    @staticmethod
    def apply(info: ManagedSaveInfo, state: SaveState) -> ManagedSaveInfo:
        """Return a copy of info carrying the computed state."""
        return replace(
            info,
            status=state.status,
            pending_push=state.ahead,
            pending_pull=state.behind,
            commit_count=state.commit_count,
            conflict_count=state.conflict_count,
            branch=state.branch or info.branch,
            is_git_initialized=state.is_git_initialized,
        )
