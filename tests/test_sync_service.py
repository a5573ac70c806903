"""End-to-end tests for SaveSyncService against a local bare remote."""

import sys
from contextlib import contextmanager
from pathlib import Path

import pytest

from gitmc.core.errors import MergeConflict, NotARepository, NothingToCommit, OperationCancelled, UnknownSave
from gitmc.core.fileio import SESSION_LOCK, is_in_use
from gitmc.core.git_orchestrator import GitOrchestrator
from gitmc.core.models import RepositoryLink, SaveStatus
from gitmc.core.sync_service import SaveSyncService
from gitmc.core.tasks import CancellationToken


@pytest.fixture
def service(app_config):
    with SaveSyncService(app_config) as service:
        yield service


@pytest.fixture
def save(make_save):
    return make_save("World", files={"notes.txt": b"base\n"})


@pytest.fixture
def published(service, save, bare_remote):
    """A committed save pushed to the bare remote."""
    info = service.register(save)
    service.add_remote(info.id, "origin", str(bare_remote))
    service.commit(info.id, "init")
    service.push(info.id)
    return info


@pytest.fixture
def other(tmp_path, git_settings, bare_remote, published):
    """Another machine's working tree, up to date with the remote."""
    orchestrator = GitOrchestrator(tmp_path / "other", git_settings)
    orchestrator.init()
    orchestrator.add_remote("origin", str(bare_remote))
    assert orchestrator.pull().kind == "fast_forward"
    return orchestrator


def commit_notes(orchestrator: GitOrchestrator, text: bytes, message: str) -> None:
    (orchestrator.tree_path / "notes.txt").write_bytes(text)
    orchestrator.commit_all(message)


class TestLocalCommands:
    def test_level_dat_only_save(self, service, make_save):
        save = make_save("Fresh")
        info = service.register(save)
        assert list(service.snapshotter.snapshot(save)) == ["level.dat.snbt"]

        service.commit(info.id, "init")

        history = service.get_history(info.id, 1)
        assert len(history) == 1
        assert history[0].message == "init"

    def test_commit_and_history(self, service, save):
        info = service.register(save)
        assert service.get_history(info.id) == []

        sha = service.commit(info.id, "init")

        history = service.get_history(info.id, 1)
        assert [c.sha for c in history] == [sha]
        assert history[0].message == "init"
        status = service.get_status(info.id)
        assert status.status == SaveStatus.CLEAR
        assert status.commit_count == 1
        assert status.is_git_initialized
        assert status.game_version == "1.20.4"

    def test_live_change_is_modified(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        (save / "icon.png").write_bytes(b"\x89PNG")
        assert service.get_status(info.id).status == SaveStatus.MODIFIED
        service.commit(info.id, "icon")
        assert service.get_status(info.id).commit_count == 2

    def test_nothing_to_commit(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        with pytest.raises(NothingToCommit):
            service.commit(info.id, "again")

    def test_concurrent_commits_are_serialized(self, service, save):
        info = service.register(save)
        tasks = [service.submit(service.commit, info.id, "snapshot") for _ in range(2)]

        outcomes = []
        for task in tasks:
            try:
                outcomes.append(task.result(timeout=60))
            except NothingToCommit:
                outcomes.append(None)

        assert sum(1 for outcome in outcomes if outcome is None) == 1
        assert len(service.get_history(info.id)) == 1

    def test_unknown_save(self, service):
        with pytest.raises(UnknownSave):
            service.commit("missing", "x")
        with pytest.raises(UnknownSave):
            service.get_status("missing")

    def test_cancelled_before_start(self, service, save):
        info = service.register(save)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            service.commit(info.id, "init", token=token)
        assert service.get_history(info.id) == []

    def test_push_needs_a_repository(self, service, save):
        info = service.register(save)
        with pytest.raises(NotARepository):
            service.push(info.id)

    def test_branch(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        assert service.create_branch(info.id, "creative-test").branch == "creative-test"
        with pytest.raises(ValueError):
            service.create_branch(info.id, "bad name")

    def test_branches_and_checkout(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        service.create_branch(info.id, "creative")
        (save / "notes.txt").write_bytes(b"creative\n")
        service.commit(info.id, "creative build")

        assert service.branches(info.id) == ["creative", "main"]

        switched = service.checkout_branch(info.id, "main")
        assert switched.branch == "main"
        assert switched.status == SaveStatus.CLEAR
        assert (save / "notes.txt").read_bytes() == b"base\n"

        service.checkout_branch(info.id, "creative")
        assert (save / "notes.txt").read_bytes() == b"creative\n"

    def test_checkout_refuses_modified_save(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        service.create_branch(info.id, "creative")
        (save / "notes.txt").write_bytes(b"unsaved\n")

        with pytest.raises(MergeConflict):
            service.checkout_branch(info.id, "main")
        assert (save / "notes.txt").read_bytes() == b"unsaved\n"
        assert service.get_status(info.id).branch == "creative"

    def test_checkout_unknown_branch(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        with pytest.raises(ValueError):
            service.checkout_branch(info.id, "missing")
        assert service.branches(info.id) == ["main"]

    def test_restore_commit(self, service, save):
        info = service.register(save)
        first = service.commit(info.id, "init")
        (save / "notes.txt").write_bytes(b"later\n")
        (save / "extra.txt").write_bytes(b"extra\n")
        service.commit(info.id, "later")

        sha = service.restore_commit(info.id, first[:7])

        assert (save / "notes.txt").read_bytes() == b"base\n"
        assert not (save / "extra.txt").exists()
        history = service.get_history(info.id)
        assert history[0].sha == sha
        assert history[0].message == f"Restore {first[:7]}"
        assert len(history) == 3
        assert service.get_status(info.id).status == SaveStatus.CLEAR

    def test_restore_refusals(self, service, save):
        info = service.register(save)
        first = service.commit(info.id, "init")
        with pytest.raises(NothingToCommit):
            service.restore_commit(info.id, first)
        with pytest.raises(ValueError):
            service.restore_commit(info.id, "no-such-revision")

        (save / "notes.txt").write_bytes(b"unsaved\n")
        with pytest.raises(MergeConflict):
            service.restore_commit(info.id, first)
        assert (save / "notes.txt").read_bytes() == b"unsaved\n"

    def test_unregister_keeps_the_save(self, service, save):
        info = service.register(save)
        service.commit(info.id, "init")
        service.unregister(info.id, delete_tree=True)
        assert service.list_saves() == []
        assert (save / "level.dat").exists()
        assert not info.tree_path.exists()


class TestRemoteCommands:
    def test_fetch_counts_pending_pulls(self, service, published, other):
        commit_notes(other, b"one\n", "one")
        commit_notes(other, b"two\n", "two")
        other.push()

        info = service.fetch(published.id)
        assert info.status == SaveStatus.CLEAR
        assert info.pending_pull == 2
        assert info.pending_push == 0

    def test_pull_writes_into_the_save(self, service, save, published, other):
        commit_notes(other, b"one\n", "one")
        commit_notes(other, b"two\n", "two")
        other.push()

        result = service.pull(published.id)

        assert result.kind == "fast_forward"
        assert (save / "notes.txt").read_bytes() == b"two\n"
        info = service.get_status(published.id)
        assert info.status == SaveStatus.CLEAR
        assert (info.pending_push, info.pending_pull) == (0, 0)
        assert info.commit_count == 3

    def test_pull_refuses_uncommitted_changes(self, service, save, published, other):
        commit_notes(other, b"theirs\n", "theirs")
        other.push()
        (save / "notes.txt").write_bytes(b"unsaved\n")

        with pytest.raises(MergeConflict):
            service.pull(published.id)
        assert (save / "notes.txt").read_bytes() == b"unsaved\n"

    def test_conflict_then_resolve(self, service, save, published, other):
        commit_notes(other, b"theirs\n", "theirs")
        other.push()
        (save / "notes.txt").write_bytes(b"mine\n")
        service.commit(published.id, "mine")

        result = service.pull(published.id)

        assert result.kind == "conflict"
        assert result.conflicts == ("notes.txt",)
        assert (save / "notes.txt").read_bytes() == b"mine\n"
        info = service.get_status(published.id)
        assert info.status == SaveStatus.CONFLICT
        assert info.conflict_count == 1
        with pytest.raises(MergeConflict):
            service.commit(published.id, "while conflicted")

        service.resolve_conflict(published.id, "remote")

        assert (save / "notes.txt").read_bytes() == b"theirs\n"
        assert service.get_status(published.id).status == SaveStatus.CLEAR
        service.push(published.id)

    def test_abort_keeps_local_version(self, service, save, published, other):
        commit_notes(other, b"theirs\n", "theirs")
        other.push()
        (save / "notes.txt").write_bytes(b"mine\n")
        service.commit(published.id, "mine")
        service.pull(published.id)

        info = service.abort_merge(published.id)

        assert info.status == SaveStatus.CLEAR
        assert (save / "notes.txt").read_bytes() == b"mine\n"

    def test_game_writing_during_pull_keeps_history(self, service, save, published, other, monkeypatch):
        commit_notes(other, b"remote edit\n", "remote edit")
        other.push()
        head = GitOrchestrator(published.tree_path).head()
        real_fetch = GitOrchestrator.fetch

        def fetch_while_playing(orchestrator, remote=None, token=None):
            count = real_fetch(orchestrator, remote, token)
            (save / "stats.json").write_bytes(b"{}")
            return count

        monkeypatch.setattr(GitOrchestrator, "fetch", fetch_while_playing)
        with pytest.raises(MergeConflict):
            service.pull(published.id)
        monkeypatch.undo()

        assert GitOrchestrator(published.tree_path).head() == head
        assert (save / "notes.txt").read_bytes() == b"base\n"
        info = service.get_status(published.id)
        assert info.status == SaveStatus.MODIFIED
        assert info.pending_pull == 1

        service.commit(published.id, "stats")
        assert service.pull(published.id).kind == "merged"
        assert (save / "notes.txt").read_bytes() == b"remote edit\n"
        assert (save / "stats.json").read_bytes() == b"{}"

    def test_failed_write_back_rolls_the_branch_back(self, service, save, published, other, monkeypatch):
        commit_notes(other, b"remote edit\n", "remote edit")
        other.push()
        head = GitOrchestrator(published.tree_path).head()

        def disk_full(*args, **kwargs):
            raise OSError("no space left on device")

        monkeypatch.setattr(service.snapshotter, "restore", disk_full)
        with pytest.raises(OSError):
            service.pull(published.id)
        monkeypatch.undo()

        assert GitOrchestrator(published.tree_path).head() == head
        info = service.get_status(published.id)
        assert info.status == SaveStatus.CLEAR
        assert info.pending_pull == 1

        assert service.pull(published.id).kind == "fast_forward"
        assert (save / "notes.txt").read_bytes() == b"remote edit\n"

    def test_failed_resolve_stays_in_conflict(self, service, save, published, other, monkeypatch):
        commit_notes(other, b"theirs\n", "theirs")
        other.push()
        (save / "notes.txt").write_bytes(b"mine\n")
        service.commit(published.id, "mine")
        assert service.pull(published.id).kind == "conflict"

        def disk_full(*args, **kwargs):
            raise OSError("no space left on device")

        monkeypatch.setattr(service.snapshotter, "restore", disk_full)
        with pytest.raises(OSError):
            service.resolve_conflict(published.id, "remote")
        monkeypatch.undo()

        assert service.get_status(published.id).status == SaveStatus.CONFLICT
        assert (save / "notes.txt").read_bytes() == b"mine\n"
        service.resolve_conflict(published.id, "remote")
        assert (save / "notes.txt").read_bytes() == b"theirs\n"

    def test_push_of_diverged_save(self, service, save, published, other):
        commit_notes(other, b"theirs\n", "theirs")
        other.push()
        (save / "notes.txt").write_bytes(b"mine\n")
        service.commit(published.id, "mine")

        with pytest.raises(MergeConflict):
            service.push(published.id)


class FakeHost:
    def __init__(self, url: str):
        self.url = url
        self.created = []

    def create_repository(self, name: str, private: bool = True) -> RepositoryLink:
        self.created.append((name, private))
        return RepositoryLink(name, "private" if private else "public", "main", self.url)


class TestLinkRepository:
    def test_link_sets_default_remote(self, service, save, bare_remote):
        info = service.register(save)
        host = FakeHost(str(bare_remote))

        linked = service.link_repository(info.id, host)

        assert host.created == [(info.id, True)]
        assert linked.is_linked
        assert linked.link.remote_url == str(bare_remote)
        assert service.registry.get_by_id(info.id).link == linked.link
        assert GitOrchestrator(info.tree_path).remotes() == {"origin": str(bare_remote)}

        service.commit(info.id, "init")
        service.push(info.id)


@contextmanager
def world_open(save: Path):
    """Hold session.lock the way the game does while a world is loaded."""
    import fcntl

    with open(save / SESSION_LOCK, "wb") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


@pytest.mark.skipif(sys.platform == "win32", reason="locks session.lock with fcntl")
class TestWorldInUse:
    def test_lock_file_states(self, save):
        assert not is_in_use(save)
        (save / SESSION_LOCK).write_bytes(b"\xe2\x98\x83")
        assert not is_in_use(save)
        with world_open(save):
            assert is_in_use(save)
        assert not is_in_use(save)

    def test_pull_waits_for_the_game_to_close(self, service, save, published, other):
        commit_notes(other, b"remote edit\n", "remote edit")
        other.push()

        with world_open(save):
            with pytest.raises(MergeConflict, match="open in the game"):
                service.pull(published.id)
            assert (save / "notes.txt").read_bytes() == b"base\n"

        assert service.pull(published.id).kind == "fast_forward"
        assert (save / "notes.txt").read_bytes() == b"remote edit\n"

    def test_checkout_and_restore_refused_while_open(self, service, save):
        info = service.register(save)
        first = service.commit(info.id, "init")
        service.create_branch(info.id, "creative")
        (save / "notes.txt").write_bytes(b"creative\n")
        service.commit(info.id, "creative build")

        with world_open(save):
            with pytest.raises(MergeConflict):
                service.checkout_branch(info.id, "main")
            with pytest.raises(MergeConflict):
                service.restore_commit(info.id, first)
        assert (save / "notes.txt").read_bytes() == b"creative\n"
        assert service.get_status(info.id).branch == "creative"
