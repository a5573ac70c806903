"""Git operations on a save's canonical working tree.

Uses dulwich (pure Python git) so no git binary is required. Commits are
built directly from the working tree contents: every file is hashed into
a blob, the tree is assembled with ``commit_tree`` and the branch ref is
advanced with a compare-and-swap, so a concurrent writer can never be
silently overwritten.

Network operations (fetch, push, and the fetch inside pull) are retried
with exponential backoff via tenacity, but only for ``NetworkUnavailable``.
Backend exceptions are translated at this boundary into the SyncError
taxonomy; nothing from dulwich escapes.

Merge state follows git's layout: ``.git/MERGE_HEAD`` and ``.git/MERGE_MSG``
while a conflicted pull is waiting, plus ``.git/GITMC_CONFLICTS`` listing the
conflicting paths.
"""

import logging
import stat
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional

import urllib3
from dulwich import porcelain
from dulwich.client import HTTPProxyUnauthorized, HTTPUnauthorized, get_transport_and_path
from dulwich.errors import GitProtocolError, NotGitRepository
from dulwich.index import commit_tree
from dulwich.objects import Blob, Commit
from dulwich.refs import check_ref_format
from dulwich.repo import Repo
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.schema import GitSettings
from ..logging_config import get_logger
from .errors import (
    AuthRequired,
    MergeConflict,
    NetworkUnavailable,
    NotARepository,
    NothingToCommit,
    SyncError,
)
from .fileio import atomic_write, prune_empty_dirs, walk_files
from .merge import LOCAL, REMOTE, conflict_text, merge_entries
from .models import CommitInfo

logger = get_logger("git_orchestrator")

FILE_MODE = 0o100644
HEADS_PREFIX = b"refs/heads/"
MERGE_HEAD = "MERGE_HEAD"
MERGE_MSG = "MERGE_MSG"
CONFLICTS_FILE = "GITMC_CONFLICTS"
ABBREV_MIN = 4


def blob_id(data: bytes) -> bytes:
    """Hex object id git assigns to a file with these contents."""
    return Blob.from_string(data).id


@dataclass(frozen=True)
class PullResult:
    """Outcome of a pull.

    Attributes:
        kind: "up_to_date", "fast_forward", "merged" or "conflict"
        commit: HEAD after the pull (hex), None for an empty repository
        conflicts: Conflicting paths when kind is "conflict"
    """
    kind: str
    commit: Optional[str] = None
    conflicts: tuple = ()

    @property
    def changed_tree(self) -> bool:
        return self.kind in ("fast_forward", "merged")


class GitOrchestrator:
    """Version control for one working tree.

    Not thread-safe; callers serialize access per save.
    """

    def __init__(self, tree_path: Path, settings: Optional[GitSettings] = None):
        self.tree_path = Path(tree_path)
        self.settings = settings or GitSettings()

    # ------------------------------------------------------------------
    # repository and refs
    # ------------------------------------------------------------------

    def is_repository(self) -> bool:
        return (self.tree_path / ".git").is_dir()

    def init(self) -> None:
        """Create the repository with HEAD on the default branch. No-op if it exists."""
        if self.is_repository():
            return
        self.tree_path.mkdir(parents=True, exist_ok=True)
        with Repo.init(str(self.tree_path)) as repo:
            repo.refs.set_symbolic_ref(b"HEAD", HEADS_PREFIX + self.settings.default_branch.encode("utf-8"))
        logger.info("Initialized repository in %s", self.tree_path)

    def _open(self) -> Repo:
        try:
            return Repo(str(self.tree_path))
        except NotGitRepository as e:
            raise NotARepository(f"{self.tree_path} has no repository") from e

    @staticmethod
    def _branch_ref(repo: Repo) -> bytes:
        head = repo.refs.read_ref(b"HEAD")
        if not head or not head.startswith(b"ref: "):
            raise NotARepository("HEAD is detached; check out a branch first")
        return head[5:].strip()

    @staticmethod
    def _resolve(repo: Repo, ref: bytes) -> Optional[bytes]:
        try:
            return repo.refs[ref]
        except KeyError:
            return None

    @staticmethod
    def _tracking_ref(remote: str, branch_ref: bytes) -> bytes:
        return b"refs/remotes/" + remote.encode("utf-8") + b"/" + branch_ref[len(HEADS_PREFIX):]

    def current_branch(self) -> str:
        with self._open() as repo:
            return self._branch_ref(repo)[len(HEADS_PREFIX):].decode("utf-8")

    def head(self) -> Optional[str]:
        """Hex id of the current branch's commit, None before the first commit."""
        with self._open() as repo:
            sha = self._resolve(repo, self._branch_ref(repo))
            return sha.decode("ascii") if sha else None

    def _advance(self, repo: Repo, ref: bytes, old: Optional[bytes], new: bytes) -> None:
        if old is None:
            moved = repo.refs.add_if_new(ref, new)
        else:
            moved = repo.refs.set_if_equals(ref, old, new)
        if not moved:
            raise MergeConflict(f"{ref.decode()} moved while the operation was running")

    # ------------------------------------------------------------------
    # trees and commits
    # ------------------------------------------------------------------

    def _tree_entries(self, repo: Repo, commit_sha: Optional[bytes]) -> dict[str, bytes]:
        """Flatten a commit's tree to path -> blob id."""
        entries: dict[str, bytes] = {}
        if commit_sha is None:
            return entries
        pending = deque([(repo[commit_sha].tree, "")])
        while pending:
            tree_id, prefix = pending.popleft()
            for item in repo[tree_id].iteritems():
                path = prefix + item.path.decode("utf-8")
                if stat.S_ISDIR(item.mode):
                    pending.append((item.sha, path + "/"))
                else:
                    entries[path] = item.sha
        return entries

    def _scan_worktree(self, repo: Optional[Repo] = None) -> dict[str, bytes]:
        """Hash every working tree file; store the blobs when repo is given."""
        entries: dict[str, bytes] = {}
        for rel in walk_files(self.tree_path, skip_dirs=frozenset({".git"})):
            blob = Blob.from_string((self.tree_path / rel).read_bytes())
            if repo is not None and blob.id not in repo.object_store:
                repo.object_store.add_object(blob)
            entries[rel] = blob.id
        return entries

    @staticmethod
    def _write_tree(repo: Repo, entries: dict[str, bytes]) -> bytes:
        return commit_tree(
            repo.object_store,
            [(path.encode("utf-8"), sha, FILE_MODE) for path, sha in sorted(entries.items())],
        )

    def _make_commit(self, repo: Repo, tree_id: bytes, parents: list, message: str) -> bytes:
        commit = Commit()
        commit.tree = tree_id
        commit.parents = parents
        commit.author = commit.committer = self.settings.identity
        commit.author_time = commit.commit_time = int(time.time())
        commit.author_timezone = commit.commit_timezone = 0
        commit.encoding = b"UTF-8"
        commit.message = message.encode("utf-8")
        repo.object_store.add_object(commit)
        return commit.id

    def _resolve_name(self, repo: Repo, ref: Optional[str]) -> Optional[bytes]:
        """Commit id for a branch, remote branch, full ref or hex id (None = HEAD).

        Hex ids may be abbreviated to ABBREV_MIN characters when the prefix
        matches exactly one commit reachable from a ref.
        """
        if ref is None:
            return self._resolve(repo, self._branch_ref(repo))
        name = ref.encode("utf-8")
        for candidate in (HEADS_PREFIX + name, b"refs/remotes/" + name, name):
            sha = self._resolve(repo, candidate)
            if sha is not None:
                return sha
        if len(name) == 40 and name in repo.object_store:
            return name
        if ABBREV_MIN <= len(name) < 40:
            tips = [sha for key, sha in repo.get_refs().items() if key.startswith(b"refs/")]
            matches = {entry.commit.id for entry in repo.get_walker(include=tips) if entry.commit.id.startswith(name)}
            if len(matches) == 1:
                return matches.pop()
        raise KeyError(f"unknown revision {ref!r}")

    def entry_ids(self, ref: Optional[str] = None) -> dict[str, bytes]:
        """Path -> blob id of a revision's tree (HEAD by default).

        Empty before the first commit.

        Raises:
            KeyError: If the revision does not exist
        """
        with self._open() as repo:
            return self._tree_entries(repo, self._resolve_name(repo, ref))

    def head_entries(self) -> dict[str, bytes]:
        """Path -> blob id of HEAD's tree; empty before the first commit."""
        return self.entry_ids()

    def read_tree(self, ref: Optional[str] = None) -> dict[str, bytes]:
        """Path -> file contents of a revision's tree (HEAD by default)."""
        with self._open() as repo:
            entries = self._tree_entries(repo, self._resolve_name(repo, ref))
            return {path: repo[sha].data for path, sha in sorted(entries.items())}

    def has_uncommitted_changes(self) -> bool:
        """Whether the working tree differs from HEAD."""
        with self._open() as repo:
            head = self._resolve(repo, self._branch_ref(repo))
            return self._scan_worktree() != self._tree_entries(repo, head)

    def commit_all(self, message: str) -> str:
        """Record the whole working tree as a new commit on the current branch.

        Args:
            message: Commit message

        Returns:
            Hex id of the new commit

        Raises:
            NotARepository: If the tree has no repository
            NothingToCommit: If the working tree matches HEAD
            MergeConflict: If a merge is waiting for resolution or the
                branch moved concurrently
        """
        with self._open() as repo:
            if self._merge_state_path(repo, MERGE_HEAD).exists():
                raise MergeConflict("resolve or abort the pending merge before committing",
                                    self._read_conflicts(repo))
            branch_ref = self._branch_ref(repo)
            parent = self._resolve(repo, branch_ref)
            entries = self._scan_worktree(repo)
            if entries == self._tree_entries(repo, parent):
                raise NothingToCommit("working tree matches HEAD")

            tree_id = self._write_tree(repo, entries)
            sha = self._make_commit(repo, tree_id, [parent] if parent else [], message)
            self._advance(repo, branch_ref, parent, sha)
            logger.info("Committed %s on %s (%d files)", sha[:7].decode(), branch_ref.decode(), len(entries))
            return sha.decode("ascii")

    def log(self, limit: Optional[int] = None) -> list[CommitInfo]:
        """Commit history of the current branch, newest first."""
        with self._open() as repo:
            head = self._resolve(repo, self._branch_ref(repo))
            if head is None:
                return []
            history = []
            for entry in repo.get_walker(include=[head], max_entries=limit):
                commit = entry.commit
                history.append(CommitInfo(
                    sha=commit.id.decode("ascii"),
                    message=commit.message.decode("utf-8", "replace").strip(),
                    author=commit.author.decode("utf-8", "replace"),
                    timestamp=datetime.fromtimestamp(commit.commit_time, tz=timezone.utc),
                ))
            return history

    def commit_count(self) -> int:
        with self._open() as repo:
            head = self._resolve(repo, self._branch_ref(repo))
            if head is None:
                return 0
            return sum(1 for _ in repo.get_walker(include=[head]))

    @staticmethod
    def _ancestors(repo: Repo, start: bytes) -> set:
        seen = set()
        pending = deque([start])
        while pending:
            sha = pending.popleft()
            if sha in seen:
                continue
            seen.add(sha)
            pending.extend(repo[sha].parents)
        return seen

    def _is_ancestor(self, repo: Repo, ancestor: bytes, descendant: bytes) -> bool:
        return ancestor in self._ancestors(repo, descendant)

    def _merge_base(self, repo: Repo, local: bytes, remote: bytes) -> Optional[bytes]:
        """Nearest commit reachable from both sides (breadth-first from remote)."""
        local_history = self._ancestors(repo, local)
        seen = set()
        pending = deque([remote])
        while pending:
            sha = pending.popleft()
            if sha in local_history:
                return sha
            if sha in seen:
                continue
            seen.add(sha)
            pending.extend(repo[sha].parents)
        return None

    # ------------------------------------------------------------------
    # branches and remotes
    # ------------------------------------------------------------------

    def create_branch(self, name: str, checkout: bool = True) -> None:
        """Create a branch at HEAD and optionally switch to it.

        Raises:
            ValueError: If the name is not a valid branch name or exists
            NothingToCommit: If there is no commit to branch from yet
        """
        ref = HEADS_PREFIX + name.encode("utf-8")
        if not check_ref_format(ref):
            raise ValueError(f"invalid branch name: {name!r}")
        with self._open() as repo:
            head = self._resolve(repo, self._branch_ref(repo))
            if head is None:
                raise NothingToCommit("commit at least once before creating a branch")
            if not repo.refs.add_if_new(ref, head):
                raise ValueError(f"branch {name!r} already exists")
            if checkout:
                repo.refs.set_symbolic_ref(b"HEAD", ref)
        logger.info("Created branch %s in %s", name, self.tree_path)

    def branches(self) -> list[str]:
        """Local branch names, sorted."""
        with self._open() as repo:
            return sorted(name.decode("utf-8") for name in repo.refs.as_dict(HEADS_PREFIX.rstrip(b"/")))

    def checkout_branch(self, name: str) -> str:
        """Switch HEAD to an existing branch and check out its tree.

        Returns:
            Hex id of the branch's commit

        Raises:
            ValueError: If no branch has this name
            MergeConflict: If a merge is pending or the working tree has
                uncommitted changes
        """
        ref = HEADS_PREFIX + name.encode("utf-8")
        with self._open() as repo:
            if self._merge_state_path(repo, MERGE_HEAD).exists():
                raise MergeConflict("resolve or abort the pending merge first", self._read_conflicts(repo))
            target = self._resolve(repo, ref)
            if target is None:
                raise ValueError(f"no branch named {name!r}")
            head = self._resolve(repo, self._branch_ref(repo))
            current = self._scan_worktree()
            if current != self._tree_entries(repo, head):
                raise MergeConflict("the working tree has uncommitted changes; commit first")
            self._checkout(repo, self._tree_entries(repo, target), current)
            repo.refs.set_symbolic_ref(b"HEAD", ref)
        logger.info("Switched %s to branch %s", self.tree_path, name)
        return target.decode("ascii")

    def remotes(self) -> dict[str, str]:
        """Configured remotes as name -> URL."""
        with self._open() as repo:
            config = repo.get_config()
            found = {}
            for section in config.sections():
                if len(section) == 2 and section[0] == b"remote":
                    try:
                        found[section[1].decode("utf-8")] = config.get(section, b"url").decode("utf-8")
                    except KeyError:
                        continue
            return found

    def add_remote(self, name: str, url: str) -> None:
        """Add or repoint a remote."""
        with self._open() as repo:
            config = repo.get_config()
            section = (b"remote", name.encode("utf-8"))
            config.set(section, b"url", url.encode("utf-8"))
            config.set(section, b"fetch", f"+refs/heads/*:refs/remotes/{name}/*".encode("utf-8"))
            config.write_to_path()
        logger.info("Remote %s -> %s", name, url)

    def _remote_url(self, repo: Repo, name: str) -> str:
        try:
            return repo.get_config().get((b"remote", name.encode("utf-8")), b"url").decode("utf-8")
        except KeyError:
            raise NotARepository(f"no remote named {name!r}") from None

    def _transport_kwargs(self, url: str) -> dict:
        if not url.startswith(("http://", "https://")) or not self.settings.remote_token:
            return {}
        return {
            "username": self.settings.remote_username or "git",
            "password": self.settings.remote_token,
        }

    # ------------------------------------------------------------------
    # network
    # ------------------------------------------------------------------

    @contextmanager
    def _network_errors(self, action: str):
        """Translate transport failures into the SyncError taxonomy."""
        try:
            yield
        except SyncError:
            raise
        except (HTTPUnauthorized, HTTPProxyUnauthorized) as e:
            raise AuthRequired(f"{action}: credentials required or rejected") from e
        except (GitProtocolError, NotGitRepository, OSError, urllib3.exceptions.HTTPError) as e:
            raise NetworkUnavailable(f"{action}: {e}") from e

    def _retry(self, operation: Callable, token=None):
        retryer = Retrying(
            stop=stop_after_attempt(max(1, self.settings.retry_attempts)),
            wait=wait_exponential(
                multiplier=self.settings.retry_backoff,
                min=self.settings.retry_backoff,
                max=self.settings.retry_max_wait,
            ),
            retry=retry_if_exception_type(NetworkUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        def attempt():
            if token is not None:
                token.raise_if_cancelled()
            return operation()

        return retryer(attempt)

    def fetch(self, remote: Optional[str] = None, token=None) -> int:
        """Download a remote's branches into ``refs/remotes/<remote>/*``.

        Returns:
            Number of remote-tracking refs written

        Raises:
            NotARepository: If the repository or the remote is missing
            NetworkUnavailable: If the remote stays unreachable after retries
            AuthRequired: If the remote rejects the credentials
        """
        remote = remote or self.settings.default_remote
        with self._open() as repo:
            url = self._remote_url(repo, remote)

            def attempt():
                with self._network_errors(f"fetch from {remote}"):
                    client, path = get_transport_and_path(url, **self._transport_kwargs(url))
                    return client.fetch(path, repo)

            result = self._retry(attempt, token)
            updated = 0
            for name, sha in result.refs.items():
                if name.startswith(HEADS_PREFIX) and sha:
                    repo.refs[self._tracking_ref(remote, name)] = sha
                    updated += 1
        logger.info("Fetched %d branches from %s", updated, remote)
        return updated

    def ahead_behind(self, remote: Optional[str] = None) -> tuple[int, int]:
        """Commits only on the local branch, and only on its remote counterpart.

        Returns (0, 0) when the branch has no remote-tracking ref.
        """
        remote = remote or self.settings.default_remote
        with self._open() as repo:
            branch_ref = self._branch_ref(repo)
            head = self._resolve(repo, branch_ref)
            tracking = self._resolve(repo, self._tracking_ref(remote, branch_ref))
            if tracking is None:
                return 0, 0
            ahead = 0
            if head is not None:
                ahead = sum(1 for _ in repo.get_walker(include=[head], exclude=[tracking]))
            behind = sum(1 for _ in repo.get_walker(include=[tracking], exclude=[head] if head else None))
            return ahead, behind

    def push(self, remote: Optional[str] = None, token=None) -> str:
        """Publish the current branch.

        Returns:
            Hex id of the pushed commit

        Raises:
            NothingToCommit: If the branch has no commits
            MergeConflict: If the remote branch has diverged or rejects the update
            NetworkUnavailable, AuthRequired, NotARepository: As for fetch
        """
        remote = remote or self.settings.default_remote
        self.fetch(remote, token)
        with self._open() as repo:
            branch_ref = self._branch_ref(repo)
            head = self._resolve(repo, branch_ref)
            if head is None:
                raise NothingToCommit("nothing to push before the first commit")
            tracking_ref = self._tracking_ref(remote, branch_ref)
            tracking = self._resolve(repo, tracking_ref)
            if tracking == head:
                return head.decode("ascii")
            if tracking is not None and not self._is_ancestor(repo, tracking, head):
                raise MergeConflict(f"{remote} has commits that are not here; pull first")

            url = self._remote_url(repo, remote)

            def attempt():
                with self._network_errors(f"push to {remote}"):
                    try:
                        porcelain.push(
                            repo,
                            url,
                            [branch_ref + b":" + branch_ref],
                            outstream=BytesIO(),
                            errstream=BytesIO(),
                            **self._transport_kwargs(url),
                        )
                    except porcelain.Error as e:
                        raise MergeConflict(f"{remote} rejected the push: {e}") from e

            self._retry(attempt, token)

        self.fetch(remote, token)
        with self._open() as repo:
            if self._resolve(repo, tracking_ref) != head:
                raise MergeConflict(f"{remote} did not accept {branch_ref.decode()}")
        logger.info("Pushed %s to %s", head[:7].decode(), remote)
        return head.decode("ascii")

    # ------------------------------------------------------------------
    # pull and merge state
    # ------------------------------------------------------------------

    def _checkout(
        self,
        repo: Repo,
        entries: dict[str, bytes],
        current: dict[str, bytes],
        overrides: Optional[dict[str, bytes]] = None,
    ) -> None:
        """Make the working tree match entries (plus literal override files)."""
        overrides = overrides or {}
        wanted = set(entries) | set(overrides)
        for path in sorted(set(current) - wanted):
            (self.tree_path / path).unlink()
        prune_empty_dirs(self.tree_path)
        for path, sha in entries.items():
            if path not in overrides and current.get(path) != sha:
                atomic_write(self.tree_path / path, repo[sha].data)
        for path, data in overrides.items():
            atomic_write(self.tree_path / path, data)

    @staticmethod
    def _merge_state_path(repo: Repo, name: str) -> Path:
        return Path(repo.controldir()) / name

    def _read_conflicts(self, repo: Repo) -> list[str]:
        path = self._merge_state_path(repo, CONFLICTS_FILE)
        if not path.exists():
            return []
        return [line for line in path.read_text(encoding="utf-8").splitlines() if line]

    def _clear_merge_state(self, repo: Repo) -> None:
        for name in (MERGE_HEAD, MERGE_MSG, CONFLICTS_FILE):
            self._merge_state_path(repo, name).unlink(missing_ok=True)

    def in_conflict(self) -> bool:
        """Whether a conflicted merge is waiting for resolve or abort."""
        if not self.is_repository():
            return False
        with self._open() as repo:
            return self._merge_state_path(repo, MERGE_HEAD).exists()

    def conflicted_paths(self) -> list[str]:
        if not self.is_repository():
            return []
        with self._open() as repo:
            return self._read_conflicts(repo)

    def _three_way(self, repo: Repo, head: bytes, theirs: bytes, prefer: Optional[str] = None):
        """Merge theirs into head; returns (merged, conflicts, local entries, remote entries)."""
        base = self._merge_base(repo, head, theirs)
        local_entries = self._tree_entries(repo, head)
        remote_entries = self._tree_entries(repo, theirs)
        merged, conflicts = merge_entries(
            self._tree_entries(repo, base), local_entries, remote_entries, prefer=prefer
        )
        return merged, conflicts, local_entries, remote_entries

    def _enter_conflict(
        self,
        repo: Repo,
        head: bytes,
        theirs: bytes,
        message: str,
        current: dict[str, bytes],
    ) -> list[str]:
        """Leave marker files in the working tree and record the pending merge."""
        merged, conflicts, local_entries, remote_entries = self._three_way(repo, head, theirs)
        markers = {}
        for path in conflicts:
            ours, other = local_entries.get(path), remote_entries.get(path)
            markers[path] = conflict_text(
                repo[ours].data if ours else None,
                repo[other].data if other else None,
            )
        self._checkout(repo, merged, current, markers)
        self._merge_state_path(repo, MERGE_HEAD).write_text(theirs.decode("ascii") + "\n")
        self._merge_state_path(repo, MERGE_MSG).write_text(message + "\n", encoding="utf-8")
        self._merge_state_path(repo, CONFLICTS_FILE).write_text("\n".join(conflicts) + "\n", encoding="utf-8")
        return conflicts

    def pending_merge(self) -> Optional[tuple[str, str]]:
        """(MERGE_HEAD, MERGE_MSG) of the waiting merge, None when there is none."""
        if not self.is_repository():
            return None
        with self._open() as repo:
            merge_head_path = self._merge_state_path(repo, MERGE_HEAD)
            if not merge_head_path.exists():
                return None
            message_path = self._merge_state_path(repo, MERGE_MSG)
            message = message_path.read_text(encoding="utf-8").strip() if message_path.exists() else "Merge"
            return merge_head_path.read_text().strip(), message

    def pull(
        self,
        remote: Optional[str] = None,
        token=None,
        verify: Optional[Callable[[], None]] = None,
    ) -> PullResult:
        """Fetch and integrate the remote counterpart of the current branch.

        Fast-forwards when possible, otherwise merges file by file. A clean
        merge is committed; a conflicted one leaves marker files in the
        working tree and MERGE_HEAD set, and is reported rather than raised.

        Args:
            remote: Remote name (default from settings)
            token: Cancellation token checked between network attempts
            verify: Called after the fetch and right before the branch
                moves; raising from it leaves branch and working tree as
                they were

        Raises:
            MergeConflict: If the working tree has uncommitted changes or a
                merge is already pending
            NetworkUnavailable, AuthRequired, NotARepository: As for fetch
        """
        remote = remote or self.settings.default_remote
        self.fetch(remote, token)
        with self._open() as repo:
            if self._merge_state_path(repo, MERGE_HEAD).exists():
                raise MergeConflict("a merge is already pending", self._read_conflicts(repo))

            branch_ref = self._branch_ref(repo)
            head = self._resolve(repo, branch_ref)
            tracking = self._resolve(repo, self._tracking_ref(remote, branch_ref))
            current = self._scan_worktree()
            if current != self._tree_entries(repo, head):
                raise MergeConflict("the working tree has uncommitted changes; commit first")

            if tracking is None or tracking == head or (head and self._is_ancestor(repo, tracking, head)):
                return PullResult("up_to_date", head.decode("ascii") if head else None)

            if head is None or self._is_ancestor(repo, head, tracking):
                if verify is not None:
                    verify()
                self._advance(repo, branch_ref, head, tracking)
                self._checkout(repo, self._tree_entries(repo, tracking), current)
                logger.info("Fast-forwarded %s to %s", branch_ref.decode(), tracking[:7].decode())
                return PullResult("fast_forward", tracking.decode("ascii"))

            merged, conflicts, _, _ = self._three_way(repo, head, tracking)
            message = f"Merge {remote}/{branch_ref[len(HEADS_PREFIX):].decode()}"

            if not conflicts:
                sha = self._make_commit(repo, self._write_tree(repo, merged), [head, tracking], message)
                if verify is not None:
                    verify()
                self._advance(repo, branch_ref, head, sha)
                self._checkout(repo, merged, current)
                logger.info("Merged %s into %s", remote, branch_ref.decode())
                return PullResult("merged", sha.decode("ascii"))

            conflicts = self._enter_conflict(repo, head, tracking, message, current)
            logger.warning("Pull from %s left %d conflicting files", remote, len(conflicts))
            return PullResult("conflict", head.decode("ascii"), tuple(conflicts))

    def resolve(self, take: str, verify: Optional[Callable[[], None]] = None) -> str:
        """Finish a conflicted merge by taking one side for every conflict.

        Args:
            take: "local" or "remote"
            verify: Called right before the branch moves, as for ``pull``

        Returns:
            Hex id of the merge commit

        Raises:
            NothingToCommit: If no merge is pending
        """
        if take not in (LOCAL, REMOTE):
            raise ValueError(f"take must be 'local' or 'remote', got {take!r}")
        pending = self.pending_merge()
        if pending is None:
            raise NothingToCommit("no merge is pending")
        with self._open() as repo:
            branch_ref = self._branch_ref(repo)
            head = self._resolve(repo, branch_ref)
            theirs = pending[0].encode("ascii")

            merged, conflicts, _, _ = self._three_way(repo, head, theirs, prefer=take)
            message = pending[1] + f"\n\nResolved {len(conflicts)} conflicts using the {take} version"
            sha = self._make_commit(repo, self._write_tree(repo, merged), [head, theirs], message)
            current = self._scan_worktree()
            if verify is not None:
                verify()
            self._advance(repo, branch_ref, head, sha)
            self._checkout(repo, merged, current)
            self._clear_merge_state(repo)
        logger.info("Resolved merge in %s with %s version", self.tree_path, take)
        return sha.decode("ascii")

    def reset_branch(
        self,
        expected: str,
        target: Optional[str],
        pending: Optional[tuple[str, str]] = None,
    ) -> None:
        """Move the current branch from expected back to target.

        Undoes a pull or resolve whose result never reached the live save.
        The working tree is checked out at target; with ``pending`` (as
        returned by ``pending_merge``) the conflicted merge is recorded
        again as well.

        Raises:
            MergeConflict: If the branch no longer points at expected
        """
        with self._open() as repo:
            branch_ref = self._branch_ref(repo)
            new = expected.encode("ascii")
            old = target.encode("ascii") if target else None
            if old is None:
                moved = repo.refs.remove_if_equals(branch_ref, new)
            else:
                moved = repo.refs.set_if_equals(branch_ref, new, old)
            if not moved:
                raise MergeConflict(f"{branch_ref.decode()} moved while being reset")

            current = self._scan_worktree()
            if pending is None or old is None:
                self._checkout(repo, self._tree_entries(repo, old), current)
            else:
                self._enter_conflict(repo, old, pending[0].encode("ascii"), pending[1], current)
        logger.warning("Reset %s from %s back to %s", branch_ref.decode(), expected[:7], (target or "nothing")[:7])

    def abort_merge(self) -> None:
        """Drop a pending merge and restore the working tree to HEAD.

        Raises:
            NothingToCommit: If no merge is pending
        """
        with self._open() as repo:
            if not self._merge_state_path(repo, MERGE_HEAD).exists():
                raise NothingToCommit("no merge is pending")
            head = self._resolve(repo, self._branch_ref(repo))
            self._checkout(repo, self._tree_entries(repo, head), self._scan_worktree())
            self._clear_merge_state(repo)
        logger.info("Aborted merge in %s", self.tree_path)
