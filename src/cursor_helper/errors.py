"""Exception taxonomy for workspace operations.

Validation errors are raised before anything on disk is touched. I/O errors
abort an operation after its partial artifacts are cleaned up. A missing or
unreadable storage root is fatal and stops the process before any
component runs.
"""

EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_IO = 3
EXIT_FATAL = 4


class CursorHelperError(Exception):
    """Base class for every error this package raises on purpose."""

    exit_code = 1


class ValidationError(CursorHelperError):
    """The request cannot be carried out as given. Nothing was written."""

    exit_code = EXIT_VALIDATION


class TargetNotFoundError(ValidationError):
    """No workspace record matches the requested path or identity."""

    def __init__(self, target: str):
        super().__init__(f"No Cursor workspace data found for: {target}")
        self.target = target


class AmbiguousTargetError(ValidationError):
    """More than one workspace record claims the requested path."""

    def __init__(self, target: str, records: list):
        ids = ", ".join(r.identity.value for r in records)
        super().__init__(
            f"{len(records)} workspace records match {target} ({ids}); "
            "pass a workspace id to choose one"
        )
        self.target = target
        self.records = records


class DestinationCollisionError(ValidationError):
    """The destination already belongs to a different workspace record."""

    def __init__(self, destination: str, identity: str):
        super().__init__(
            f"Destination {destination} already has workspace data ({identity}); "
            "refusing to merge two projects' histories"
        )
        self.destination = destination
        self.identity = identity


class ConfirmationRequiredError(ValidationError):
    """A destructive operation was requested without confirmation."""


class MigrationIOError(CursorHelperError):
    """Filesystem or database failure while an operation was in progress."""

    exit_code = EXIT_IO

    def __init__(self, message: str, cause: BaseException | None = None):
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.cause = cause


class StorageRootError(CursorHelperError):
    """The workspace storage root is missing or unreadable."""

    exit_code = EXIT_FATAL
