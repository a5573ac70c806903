"""Command line entry point and application orchestrator"""

import argparse
import sys
import time
from pathlib import Path
from typing import Optional

from . import __version__
from .config.manager import ConfigurationManager
from .core.errors import OperationCancelled, SyncError, describe_failure
from .core.models import CommitInfo, ManagedSaveInfo
from .core.sync_service import SaveSyncService
from .logging_config import get_logger, setup_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

POLL_INTERVAL = 0.1


def _format_info(info: ManagedSaveInfo) -> str:
    lines = [
        f"{info.id}",
        f"  name:      {info.name}",
        f"  path:      {info.original_path}",
        f"  status:    {info.status.value}",
        f"  branch:    {info.branch}",
        f"  commits:   {info.commit_count} (push {info.pending_push}, pull {info.pending_pull})",
    ]
    if info.conflict_count:
        lines.append(f"  conflicts: {info.conflict_count}")
    if info.game_version:
        lines.append(f"  version:   {info.game_version} ({info.world_type.value})")
    if info.link is not None:
        lines.append(f"  remote:    {info.link.remote_url}")
    lines.append(f"  size:      {info.get_size_mb():.1f} MB")
    return "\n".join(lines)


def _format_commit(commit: CommitInfo) -> str:
    return f"{commit.short_sha}  {commit.timestamp:%Y-%m-%d %H:%M}  {commit.summary}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitmc",
        description="Version control for Minecraft world saves",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start managing a save
  gitmc add ~/.minecraft/saves/MyWorld

  # Snapshot it
  gitmc commit MyWorld_20260101_120000 -m "Before the nether trip"

  # Publish it
  gitmc remote MyWorld_20260101_120000 origin https://github.com/me/my-world.git
  gitmc push MyWorld_20260101_120000
        """,
    )
    parser.add_argument("--debug", action="store_true", help="Log to the console as well as gitmc.log")
    parser.add_argument("--config", type=Path, help="Path to configuration.xml")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Start managing a save folder")
    add.add_argument("path", type=Path, help="The save folder (contains level.dat)")

    commands.add_parser("list", help="List managed saves")

    remove = commands.add_parser("remove", help="Stop managing a save (the save itself is untouched)")
    remove.add_argument("save_id")
    remove.add_argument("--delete-tree", action="store_true", help="Also delete the working tree and history")

    status = commands.add_parser("status", help="Show a save's sync state")
    status.add_argument("save_id")

    commit = commands.add_parser("commit", help="Snapshot a save")
    commit.add_argument("save_id")
    commit.add_argument("-m", "--message", required=True)

    for name, help_text in (
        ("push", "Publish the current branch"),
        ("pull", "Integrate remote changes into the save"),
        ("fetch", "Download remote changes without applying them"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("save_id")
        sub.add_argument("--remote", help="Remote name (default from configuration)")

    branch = commands.add_parser("branch", help="Create a branch and switch to it")
    branch.add_argument("save_id")
    branch.add_argument("name")

    branches = commands.add_parser("branches", help="List branches")
    branches.add_argument("save_id")

    checkout = commands.add_parser("checkout", help="Switch to a branch and write it into the save")
    checkout.add_argument("save_id")
    checkout.add_argument("name")

    restore = commands.add_parser("restore", help="Rebuild the save as it was at a past commit")
    restore.add_argument("save_id")
    restore.add_argument("revision", help="Commit id (as shown by history) or branch")

    remote = commands.add_parser("remote", help="Add or repoint a remote")
    remote.add_argument("save_id")
    remote.add_argument("name")
    remote.add_argument("url")

    history = commands.add_parser("history", help="Show commits, newest first")
    history.add_argument("save_id")
    history.add_argument("-n", "--limit", type=int, default=20)

    resolve = commands.add_parser("resolve", help="Finish a conflicted pull")
    resolve.add_argument("save_id")
    resolve.add_argument("take", choices=["local", "remote"], help="Which version wins every conflict")

    abort = commands.add_parser("abort", help="Abandon a conflicted pull")
    abort.add_argument("save_id")

    return parser


class GitMCApp:
    """Command line orchestrator.

    Loads configuration, runs one command on the sync service's worker
    pool and prints the outcome. Ctrl-C cancels the running command.
    """

    def __init__(self, config_manager: Optional[ConfigurationManager] = None):
        self.config_manager = config_manager or ConfigurationManager()
        self.logger = get_logger("app")

    def run(self, args: argparse.Namespace) -> int:
        """Run the parsed command and return the process exit code."""
        with SaveSyncService.from_configuration(self.config_manager) as service:
            handler = getattr(self, f"_cmd_{args.command}")
            try:
                handler(service, args)
            except OperationCancelled as e:
                print(describe_failure(e), file=sys.stderr)
                return EXIT_CANCELLED
            except SyncError as e:
                self.logger.error("%s failed: %s", args.command, e)
                print(describe_failure(e), file=sys.stderr)
                for path in getattr(e, "paths", []):
                    print(f"  {path}", file=sys.stderr)
                return EXIT_FAILURE
            except ValueError as e:
                print(f"invalid: {e}", file=sys.stderr)
                return EXIT_FAILURE
        return EXIT_OK

    def _wait(self, service: SaveSyncService, command, *args, **kwargs):
        """Run a command in the background, cancelling it on Ctrl-C."""
        task = service.submit(command, *args, **kwargs)
        try:
            while not task.done():
                time.sleep(POLL_INTERVAL)
        except KeyboardInterrupt:
            print("Cancelling...", file=sys.stderr)
            task.cancel()
        return task.result()

    # ------------------------------------------------------------------
    # commands
    # ------------------------------------------------------------------

    def _cmd_add(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.register, args.path)
        print(_format_info(info))

    def _cmd_list(self, service: SaveSyncService, args) -> None:
        saves = service.list_saves()
        if not saves:
            print("No managed saves. Add one with: gitmc add <save folder>")
        for info in saves:
            print(f"{info.id:40} {info.status.value:9} {info.name}")

    def _cmd_remove(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.unregister, args.save_id, delete_tree=args.delete_tree)
        print(f"Removed {info.id}")

    def _cmd_status(self, service: SaveSyncService, args) -> None:
        print(_format_info(self._wait(service, service.get_status, args.save_id)))

    def _cmd_commit(self, service: SaveSyncService, args) -> None:
        sha = self._wait(service, service.commit, args.save_id, args.message)
        print(f"Committed {sha[:7]}")

    def _cmd_push(self, service: SaveSyncService, args) -> None:
        sha = self._wait(service, service.push, args.save_id, args.remote)
        print(f"Pushed {sha[:7]}")

    def _cmd_pull(self, service: SaveSyncService, args) -> None:
        result = self._wait(service, service.pull, args.save_id, args.remote)
        if result.kind == "conflict":
            print(f"Conflicts in {len(result.conflicts)} files:")
            for path in result.conflicts:
                print(f"  {path}")
            print("Finish with: gitmc resolve <save id> local|remote, or gitmc abort <save id>")
        else:
            print(result.kind.replace("_", " ").capitalize())

    def _cmd_fetch(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.fetch, args.save_id, args.remote)
        print(f"{info.pending_pull} to pull, {info.pending_push} to push")

    def _cmd_branch(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.create_branch, args.save_id, args.name)
        print(f"On branch {info.branch}")

    def _cmd_branches(self, service: SaveSyncService, args) -> None:
        current = self._wait(service, service.get_status, args.save_id).branch
        for name in self._wait(service, service.branches, args.save_id):
            print(f"{'*' if name == current else ' '} {name}")

    def _cmd_checkout(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.checkout_branch, args.save_id, args.name)
        print(f"On branch {info.branch}")

    def _cmd_restore(self, service: SaveSyncService, args) -> None:
        sha = self._wait(service, service.restore_commit, args.save_id, args.revision)
        print(f"Restored {args.revision} as {sha[:7]}")

    def _cmd_remote(self, service: SaveSyncService, args) -> None:
        self._wait(service, service.add_remote, args.save_id, args.name, args.url)
        print(f"Remote {args.name} -> {args.url}")

    def _cmd_history(self, service: SaveSyncService, args) -> None:
        for commit in self._wait(service, service.get_history, args.save_id, args.limit):
            print(_format_commit(commit))

    def _cmd_resolve(self, service: SaveSyncService, args) -> None:
        sha = self._wait(service, service.resolve_conflict, args.save_id, args.take)
        print(f"Resolved with {args.take} version: {sha[:7]}")

    def _cmd_abort(self, service: SaveSyncService, args) -> None:
        info = self._wait(service, service.abort_merge, args.save_id)
        print(f"Merge aborted; {info.id} is {info.status.value}")


def main(argv: Optional[list] = None) -> int:
    """Application entry point."""
    args = build_parser().parse_args(argv)

    # Initialize logging first
    logger = setup_logging(debug=args.debug)
    logger.info("Starting GitMC v%s: %s", __version__, args.command)

    try:
        return GitMCApp(ConfigurationManager(args.config)).run(args)
    except Exception:
        logger.exception("Fatal error in %s", args.command)
        raise
    finally:
        logger.info("GitMC shutting down")


if __name__ == "__main__":
    sys.exit(main())
