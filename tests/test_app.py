"""Tests for the command line surface."""

from concurrent.futures import Future

import pytest

from gitmc.app import EXIT_CANCELLED, EXIT_FAILURE, EXIT_OK, GitMCApp, build_parser
from gitmc.config import ConfigurationManager
from gitmc.core.errors import OperationCancelled
from gitmc.core.tasks import CancellationToken, SaveLocks, SyncTask


@pytest.fixture
def run(tmp_path):
    """Run one CLI command against a configuration under tmp_path."""
    app = GitMCApp(ConfigurationManager(tmp_path / "home" / "configuration.xml"))

    def _run(*argv) -> int:
        return app.run(build_parser().parse_args([str(arg) for arg in argv]))

    return _run


def only_id(output: str) -> str:
    return output.strip().splitlines()[0]


class TestCommands:
    def test_add_commit_history(self, run, make_save, capsys):
        save = make_save("World")
        assert run("add", save) == EXIT_OK
        save_id = only_id(capsys.readouterr().out)
        assert save_id.startswith("World_")

        assert run("commit", save_id, "-m", "first snapshot") == EXIT_OK
        assert capsys.readouterr().out.startswith("Committed ")

        assert run("history", save_id) == EXIT_OK
        assert capsys.readouterr().out.rstrip().endswith("first snapshot")

        assert run("status", save_id) == EXIT_OK
        assert "status:    clear" in capsys.readouterr().out

        assert run("list") == EXIT_OK
        assert save_id in capsys.readouterr().out

    def test_nothing_to_commit_fails(self, run, make_save, capsys):
        run("add", make_save("World"))
        save_id = only_id(capsys.readouterr().out)
        run("commit", save_id, "-m", "one")
        assert run("commit", save_id, "-m", "two") == EXIT_FAILURE
        assert capsys.readouterr().err.startswith("manual:")

    def test_unknown_save(self, run, capsys):
        assert run("status", "missing") == EXIT_FAILURE
        assert "missing" in capsys.readouterr().err

    def test_not_a_save(self, run, tmp_path, capsys):
        folder = tmp_path / "empty"
        folder.mkdir()
        assert run("add", folder) == EXIT_FAILURE
        assert capsys.readouterr().err.startswith("not_a_save:")

    def test_invalid_branch_name(self, run, make_save, capsys):
        run("add", make_save("World"))
        save_id = only_id(capsys.readouterr().out)
        run("commit", save_id, "-m", "one")
        assert run("branch", save_id, "no spaces") == EXIT_FAILURE
        assert capsys.readouterr().err.startswith("invalid:")

    def test_branches_checkout_restore(self, run, make_save, capsys):
        save = make_save("World", files={"notes.txt": b"base\n"})
        run("add", save)
        save_id = only_id(capsys.readouterr().out)
        run("commit", save_id, "-m", "one")
        first = capsys.readouterr().out.split()[-1]
        run("branch", save_id, "creative")
        (save / "notes.txt").write_bytes(b"creative\n")
        run("commit", save_id, "-m", "two")
        capsys.readouterr()

        assert run("branches", save_id) == EXIT_OK
        assert capsys.readouterr().out.splitlines() == ["* creative", "  main"]

        assert run("checkout", save_id, "main") == EXIT_OK
        assert capsys.readouterr().out.strip() == "On branch main"
        assert (save / "notes.txt").read_bytes() == b"base\n"

        assert run("checkout", save_id, "creative") == EXIT_OK
        assert run("restore", save_id, first) == EXIT_OK
        assert capsys.readouterr().out.splitlines()[-1].startswith(f"Restored {first} as ")
        assert (save / "notes.txt").read_bytes() == b"base\n"

        assert run("checkout", save_id, "missing") == EXIT_FAILURE
        assert capsys.readouterr().err.startswith("invalid:")

    def test_empty_list(self, run, capsys):
        assert run("list") == EXIT_OK
        assert "No managed saves" in capsys.readouterr().out

    def test_resolve_choices(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["resolve", "id", "both"])


class TestCancellation:
    def test_cancelled_command_exit_code(self, run, make_save, monkeypatch):
        save = make_save("World")

        def cancelled_wait(self, service, command, *args, **kwargs):
            token = CancellationToken()
            token.cancel()
            return command(*args, token=token, **kwargs)

        monkeypatch.setattr(GitMCApp, "_wait", cancelled_wait)
        assert run("add", save) == EXIT_CANCELLED

    def test_task_dropped_before_start(self):
        future = Future()
        task = SyncTask(future, CancellationToken(), "pull")
        task.cancel()
        assert task.cancelled
        assert task.done()
        with pytest.raises(OperationCancelled):
            task.result()

    def test_locks_are_per_save(self):
        locks = SaveLocks()
        with locks.hold("a"):
            assert locks.is_locked("a")
            assert not locks.is_locked("b")
        assert not locks.is_locked("a")

    def test_task_repr(self):
        future = Future()
        future.set_result(1)
        task = SyncTask(future, CancellationToken(), "push")
        assert task.result() == 1
        assert repr(task) == "SyncTask('push', done)"
