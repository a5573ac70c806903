"""Command surface for managed saves.

Every command follows the same pipeline under the save's lock:

    registry lookup -> snapshot live folder -> git operation
        -> (write back into live folder) -> recompute state -> registry update

Commands that rewrite the live folder refuse while the game holds the
world's session.lock, check the folder again right before the branch
moves, and reset the branch if the write back fails.

Cancellation is checked between stages. Once the git operation has run,
a cancellation skips the state recompute and registry update and raises
OperationCancelled; the next ``get_status`` picks the state up again.

Commands can be called directly (blocking) or handed to ``submit`` to run
on the service's thread pool and return a cancellable SyncTask.
"""

import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from ..config.manager import ConfigurationManager
from ..config.schema import AppConfiguration
from ..logging_config import get_logger
from .analyzer import SaveAnalyzer
from .errors import MergeConflict, NotARepository, NothingToCommit, UnknownSave
from .fileio import is_in_use
from .git_orchestrator import GitOrchestrator, PullResult, blob_id
from .models import CommitInfo, ManagedSaveInfo, RepositoryHost
from .nbt_codec import DecodeLimits
from .registry import ManagedSaveRegistry
from .snapshotter import CanonicalSnapshot, SaveSnapshotter
from .state_tracker import SaveStateTracker
from .tasks import CancellationToken, SaveLocks, SyncTask

logger = get_logger("sync_service")


def _check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.raise_if_cancelled()


class SaveSyncService:
    """Registers saves and runs version control commands on them."""

    def __init__(
        self,
        config: Optional[AppConfiguration] = None,
        registry: Optional[ManagedSaveRegistry] = None,
        max_workers: int = 4,
    ):
        self.config = config or AppConfiguration()
        settings = self.config.settings
        limits = DecodeLimits.from_settings(settings.codec)

        self.git_settings = settings.git
        self.snapshotter = SaveSnapshotter(limits)
        self.analyzer = SaveAnalyzer(limits)
        self.registry = registry or ManagedSaveRegistry(
            self.config.registry_file, self.config.trees_dir, self.analyzer
        )
        self.tracker = SaveStateTracker(self.snapshotter, settings.git.default_remote)
        self.locks = SaveLocks()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gitmc")

    @classmethod
    def from_configuration(cls, manager: Optional[ConfigurationManager] = None, **kwargs) -> "SaveSyncService":
        """Build a service from configuration.xml, creating it on first run."""
        manager = manager or ConfigurationManager()
        return cls(manager.load_or_create(), **kwargs)

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def submit(self, command: Callable, *args, description: str = "", **kwargs) -> SyncTask:
        """Run a command on the thread pool.

        Example::

            task = service.submit(service.push, save_id)
            task.cancel()

        Args:
            command: One of this service's command methods
            *args, **kwargs: Arguments for the command (without token)
            description: Label used in logs and task repr

        Returns:
            A SyncTask whose token is passed to the command
        """
        token = CancellationToken()
        future = self._executor.submit(command, *args, token=token, **kwargs)
        return SyncTask(future, token, description or getattr(command, "__name__", "task"))

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "SaveSyncService":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _orchestrator(self, info: ManagedSaveInfo) -> GitOrchestrator:
        return GitOrchestrator(info.tree_path, self.git_settings)

    def _refresh(
        self,
        info: ManagedSaveInfo,
        orchestrator: GitOrchestrator,
        snapshot: Optional[CanonicalSnapshot] = None,
        token: Optional[CancellationToken] = None,
    ) -> ManagedSaveInfo:
        """Recompute the save's state and store it."""
        _check(token)
        state = self.tracker.compute(info.original_path, orchestrator, snapshot)
        updated = self.tracker.apply(info, state)
        description = self.analyzer.analyze(info.original_path)
        updated = replace(
            updated,
            size=description.size,
            last_modified=description.last_modified,
            game_version=description.game_version or updated.game_version,
            world_type=description.world_type,
        )
        _check(token)
        self.registry.update(updated)
        return updated

    def _lookup(self, save_id: str) -> ManagedSaveInfo:
        info = self.registry.get_by_id(save_id)
        if info is None:
            raise UnknownSave(f"no managed save with id {save_id!r}")
        return info

    def _require_repository(self, orchestrator: GitOrchestrator) -> None:
        if not orchestrator.is_repository():
            raise NotARepository("commit the save at least once first")

    @staticmethod
    def _require_closed(info: ManagedSaveInfo) -> None:
        if is_in_use(info.original_path):
            raise MergeConflict("the world is open in the game; close it first")

    def _prepare_overwrite(self, info: ManagedSaveInfo, orchestrator: GitOrchestrator) -> CanonicalSnapshot:
        """Snapshot a live save that is about to be rewritten.

        Raises:
            MergeConflict: If a merge is pending, the world is open in the
                game, or the save has uncommitted changes
        """
        self._require_repository(orchestrator)
        if orchestrator.in_conflict():
            raise MergeConflict("resolve or abort the pending merge first", orchestrator.conflicted_paths())
        self._require_closed(info)
        before = self.snapshotter.snapshot(info.original_path)
        self.snapshotter.write_tree(before, info.tree_path)
        if orchestrator.has_uncommitted_changes():
            raise MergeConflict("the save has uncommitted changes; commit them first")
        return before

    def _unchanged_since(self, info: ManagedSaveInfo, before: CanonicalSnapshot) -> Callable[[], None]:
        """A check that the live folder still holds ``before`` and is closed."""
        def verify() -> None:
            self._require_closed(info)
            now = self.snapshotter.snapshot(info.original_path)
            if now != before:
                raise MergeConflict(
                    "the save changed while syncing; close the world and try again",
                    sorted(before.diff(now).paths),
                )
        return verify

    def _write_back(self, info: ManagedSaveInfo, before: CanonicalSnapshot, undo: Callable[[], None]) -> list[str]:
        """Copy the working tree into the live folder.

        ``undo`` puts the branch back where it was when the live folder
        cannot be written; the error is then re-raised.

        Raises:
            MergeConflict: If the live folder changed since ``before`` was
                taken or the world was opened meanwhile
        """
        try:
            self._unchanged_since(info, before)()
            updated = self.snapshotter.read_tree(info.tree_path)
            return self.snapshotter.restore(updated, info.original_path, previous=before)
        except Exception:
            logger.warning("Could not write %s back into %s; rolling back", info.id, info.original_path)
            undo()
            raise

    @staticmethod
    def _matches_head(orchestrator: GitOrchestrator, snapshot: CanonicalSnapshot) -> bool:
        head = orchestrator.head_entries()
        return set(head) == set(snapshot) and all(head[p] == blob_id(d) for p, d in snapshot.items())

    # ------------------------------------------------------------------
    # registry commands
    # ------------------------------------------------------------------

    def register(self, path: Path, token: Optional[CancellationToken] = None) -> ManagedSaveInfo:
        """Start managing a save folder (idempotent per folder)."""
        _check(token)
        return self.registry.register(Path(path), branch=self.git_settings.default_branch)

    def unregister(
        self,
        save_id: str,
        delete_tree: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> ManagedSaveInfo:
        """Stop managing a save. The live folder is never touched."""
        with self.locks.hold(save_id):
            _check(token)
            info = self.registry.unregister(save_id)
            if delete_tree and info.tree_path.exists():
                shutil.rmtree(info.tree_path)
                logger.info("Deleted working tree %s", info.tree_path)
            return info

    def list_saves(self) -> list[ManagedSaveInfo]:
        return self.registry.list()

    def get_status(self, save_id: str, token: Optional[CancellationToken] = None) -> ManagedSaveInfo:
        """Recompute and return a save's state."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            return self._refresh(info, self._orchestrator(info), token=token)

    def get_history(
        self,
        save_id: str,
        limit: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> list[CommitInfo]:
        """Commits on the save's current branch, newest first."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            _check(token)
            orchestrator = self._orchestrator(info)
            if not orchestrator.is_repository():
                return []
            return orchestrator.log(limit)

    # ------------------------------------------------------------------
    # version control commands
    # ------------------------------------------------------------------

    def commit(self, save_id: str, message: str, token: Optional[CancellationToken] = None) -> str:
        """Snapshot the live save and commit it.

        The repository is created on the first commit.

        Returns:
            Hex id of the new commit

        Raises:
            NothingToCommit: If the save is unchanged since the last commit
            MergeConflict: If a merge is waiting for resolution
        """
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            _check(token)
            snapshot = self.snapshotter.snapshot(info.original_path)
            _check(token)

            orchestrator.init()
            if orchestrator.in_conflict():
                raise MergeConflict("resolve or abort the pending merge first", orchestrator.conflicted_paths())
            self.snapshotter.write_tree(snapshot, info.tree_path)
            sha = orchestrator.commit_all(message)
            logger.info("Committed %s: %s", save_id, sha[:7])

            self._refresh(info, orchestrator, snapshot, token)
            return sha

    def push(self, save_id: str, remote: Optional[str] = None, token: Optional[CancellationToken] = None) -> str:
        """Publish the save's current branch."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            self._require_repository(orchestrator)
            _check(token)
            sha = orchestrator.push(remote, token)
            self._refresh(info, orchestrator, token=token)
            return sha

    def fetch(
        self,
        save_id: str,
        remote: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> ManagedSaveInfo:
        """Update remote-tracking refs and return the refreshed record."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            self._require_repository(orchestrator)
            _check(token)
            orchestrator.fetch(remote, token)
            return self._refresh(info, orchestrator, token=token)

    def pull(
        self,
        save_id: str,
        remote: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> PullResult:
        """Integrate remote changes and write them into the live save.

        The live folder is checked again after the fetch, before the branch
        moves. If it cannot be updated afterwards the branch is reset to
        where it was.

        Raises:
            MergeConflict: If the save has uncommitted changes, a merge is
                pending, the world is open in the game, or the live folder
                changed during the pull
        """
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            before = self._prepare_overwrite(info, orchestrator)
            _check(token)

            old_head = orchestrator.head()
            result = orchestrator.pull(remote, token, verify=self._unchanged_since(info, before))
            if result.changed_tree:
                written = self._write_back(
                    info, before, lambda: orchestrator.reset_branch(result.commit, old_head)
                )
                logger.info("Pulled %s (%s): %d files updated", save_id, result.kind, len(written))
            elif result.kind == "conflict":
                logger.warning("Pull into %s conflicted on %d files", save_id, len(result.conflicts))

            self._refresh(info, orchestrator, token=token)
            return result

    def resolve_conflict(self, save_id: str, take: str, token: Optional[CancellationToken] = None) -> str:
        """Finish a conflicted pull using the local or remote version of every conflict.

        Raises:
            MergeConflict: If the live save changed since the pull or the
                world is open in the game
            NothingToCommit: If no merge is pending
        """
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            self._require_repository(orchestrator)
            before = self.snapshotter.snapshot(info.original_path)
            if orchestrator.in_conflict() and not self._matches_head(orchestrator, before):
                raise MergeConflict("the save changed since the pull; abort the merge and commit first")
            self._require_closed(info)
            _check(token)

            pending = orchestrator.pending_merge()
            old_head = orchestrator.head()
            sha = orchestrator.resolve(take, verify=self._unchanged_since(info, before))
            self._write_back(info, before, lambda: orchestrator.reset_branch(sha, old_head, pending))
            self._refresh(info, orchestrator, token=token)
            return sha

    def abort_merge(self, save_id: str, token: Optional[CancellationToken] = None) -> ManagedSaveInfo:
        """Drop a pending merge; the live save is left as it is."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            self._require_repository(orchestrator)
            _check(token)
            orchestrator.abort_merge()
            return self._refresh(info, orchestrator, token=token)

    def restore_commit(self, save_id: str, revision: str, token: Optional[CancellationToken] = None) -> str:
        """Rebuild the live save as it was at a past commit.

        The restored contents are committed on the current branch, so the
        history leading up to the restore is kept.

        Args:
            save_id: The managed save
            revision: Commit id (abbreviated ids work) or branch name

        Returns:
            Hex id of the restoring commit

        Raises:
            ValueError: If the revision does not exist
            NothingToCommit: If the save already matches that commit
            MergeConflict: If the save has uncommitted changes, a merge is
                pending, or the world is open in the game
        """
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            before = self._prepare_overwrite(info, orchestrator)
            try:
                target = CanonicalSnapshot(orchestrator.read_tree(revision))
            except KeyError:
                raise ValueError(f"unknown commit {revision!r}") from None
            if target == before:
                raise NothingToCommit(f"the save already matches {revision}")
            _check(token)

            old_head = orchestrator.head()
            self.snapshotter.write_tree(target, info.tree_path)
            sha = orchestrator.commit_all(f"Restore {revision}")
            self._write_back(info, before, lambda: orchestrator.reset_branch(sha, old_head))
            logger.info("Restored %s to %s as %s", save_id, revision, sha[:7])
            self._refresh(info, orchestrator, target, token)
            return sha

    # ------------------------------------------------------------------
    # branches and remotes
    # ------------------------------------------------------------------

    def branches(self, save_id: str, token: Optional[CancellationToken] = None) -> list[str]:
        """Local branch names; empty before the first commit."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            _check(token)
            orchestrator = self._orchestrator(info)
            if not orchestrator.is_repository():
                return []
            return orchestrator.branches()

    def create_branch(self, save_id: str, name: str, token: Optional[CancellationToken] = None) -> ManagedSaveInfo:
        """Create a branch at the current commit and switch to it."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            self._require_repository(orchestrator)
            _check(token)
            orchestrator.create_branch(name, checkout=True)
            return self._refresh(info, orchestrator, token=token)

    def checkout_branch(self, save_id: str, name: str, token: Optional[CancellationToken] = None) -> ManagedSaveInfo:
        """Switch to another branch and write its contents into the live save.

        Raises:
            ValueError: If no branch has this name
            MergeConflict: If the save has uncommitted changes, a merge is
                pending, or the world is open in the game
        """
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            before = self._prepare_overwrite(info, orchestrator)
            _check(token)

            previous = orchestrator.current_branch()
            orchestrator.checkout_branch(name)
            written = self._write_back(info, before, lambda: orchestrator.checkout_branch(previous))
            logger.info("Switched %s from %s to %s: %d files updated", save_id, previous, name, len(written))
            return self._refresh(info, orchestrator, token=token)

    def add_remote(
        self,
        save_id: str,
        name: str,
        url: str,
        token: Optional[CancellationToken] = None,
    ) -> ManagedSaveInfo:
        """Add (or repoint) a remote for the save."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            _check(token)
            orchestrator.init()
            orchestrator.add_remote(name, url)
            return self._refresh(info, orchestrator, token=token)

    def link_repository(
        self,
        save_id: str,
        host: RepositoryHost,
        name: Optional[str] = None,
        private: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> ManagedSaveInfo:
        """Create a hosted repository for the save and make it the default remote."""
        with self.locks.hold(save_id):
            info = self._lookup(save_id)
            orchestrator = self._orchestrator(info)
            _check(token)
            link = host.create_repository(name or info.id, private)
            orchestrator.init()
            orchestrator.add_remote(self.git_settings.default_remote, link.remote_url)
            logger.info("Linked %s to %s", save_id, link.remote_url)
            return self._refresh(replace(info, link=link), orchestrator, token=token)
