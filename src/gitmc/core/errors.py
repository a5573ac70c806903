"""Error taxonomy shared by the codec, snapshotter, orchestrator and registry.

Every failure surfaced to callers is a ``SyncError`` subclass. The ``category``
attribute tells a front end which outcome applies:

    not_a_save  - the folder is not a Minecraft save
    invalid     - input data is malformed or exceeds a resource limit
    transient   - retry later (network)
    auth        - credentials are missing or rejected
    manual      - the user must act (conflict, nothing to commit, unknown id)
    cancelled   - the caller cancelled the operation
"""


class SyncError(Exception):
    """Base class for all save sync failures."""
    category = "manual"


class MalformedNbt(SyncError):
    """NBT or canonical input is structurally invalid."""
    category = "invalid"


class ResourceLimitExceeded(SyncError):
    """Decoding would exceed the configured nesting depth or payload size."""
    category = "invalid"


class UnreadableSave(SyncError):
    """The folder is not a save (no level.dat / level.dat_old) or cannot be read."""
    category = "not_a_save"


class NotARepository(SyncError):
    """The working tree has no repository yet."""
    category = "manual"


class NetworkUnavailable(SyncError):
    """The remote could not be reached. Safe to retry."""
    category = "transient"


class AuthRequired(SyncError):
    """The remote rejected or requires credentials."""
    category = "auth"


class MergeConflict(SyncError):
    """Histories diverged, the merge left conflicts, or a write-back was refused."""
    category = "manual"

    def __init__(self, message: str, paths: list[str] | None = None):
        super().__init__(message)
        self.paths = list(paths or [])


class NothingToCommit(SyncError):
    """The working tree matches HEAD."""
    category = "manual"


class OperationCancelled(SyncError):
    """The caller cancelled the task before it completed."""
    category = "cancelled"


class UnknownSave(SyncError):
    """No managed save is registered under the given id."""
    category = "manual"


def describe_failure(error: BaseException) -> str:
    """Return a one-line, user facing description of a failure.

    Args:
        error: The exception raised by a command

    Returns:
        ``"<category>: <message>"`` for sync errors, the exception type name
        otherwise
    """
    if isinstance(error, SyncError):
        return f"{error.category}: {error}"
    return f"{type(error).__name__}: {error}"
