"""Finding and deleting workspace records whose project folder is gone."""

import logging
import shutil
import sys
from dataclasses import dataclass
from typing import Callable

from .core import ProjectPath, WorkspaceRecord
from .errors import ConfirmationRequiredError
from .locator import WorkspaceLocator
from .storage import directory_size

logger = logging.getLogger(__name__)

LIVE = "live"
ORPHANED = "orphaned"


@dataclass
class Classification:
    record: WorkspaceRecord
    status: str  # "live" | "orphaned"
    size: int = 0  # bytes, filled in for orphans

    @property
    def is_orphaned(self) -> bool:
        return self.status == ORPHANED


class OrphanReaper:
    """Classifies records and deletes the orphaned ones.

    Local records are orphaned when their claimed folder no longer exists.
    Remote records cannot be checked from here and count as live unless a
    ``remote_probe`` callable says the path is gone (it receives the
    claimed :class:`ProjectPath` and returns True if the folder exists).
    Records that claim nothing are left alone.
    """

    def __init__(
        self,
        locator: WorkspaceLocator,
        remote_probe: Callable[[ProjectPath], bool] | None = None,
    ):
        self.locator = locator
        self.remote_probe = remote_probe
        self.skipped: list[WorkspaceRecord] = []
        self.failed: list[WorkspaceRecord] = []

    def classify(self, record: WorkspaceRecord) -> Classification:
        status = ORPHANED if self._is_orphaned(record) else LIVE
        size = directory_size(record.directory) if status == ORPHANED else 0
        return Classification(record=record, status=status, size=size)

    def classify_all(self) -> list[Classification]:
        return [self.classify(r) for r in self.locator.records()]

    def orphans(self) -> list[Classification]:
        """Orphaned records, largest first."""
        found = [c for c in self.classify_all() if c.is_orphaned]
        found.sort(key=lambda c: c.size, reverse=True)
        return found

    def reap(self, items: list[Classification], confirmed: bool = False) -> int:
        """Delete the orphaned records in ``items``; return how many went.

        Each record is re-checked first, so one whose folder has come back
        since it was classified is kept and listed in :attr:`skipped`. A
        failure to delete one record is logged, listed in :attr:`failed`
        and does not stop the rest.
        """
        if not confirmed:
            raise ConfirmationRequiredError("Deleting orphaned workspaces requires confirmation")

        self.skipped = []
        self.failed = []
        deleted = 0
        for item in items:
            record = item.record
            current = self.locator.get(record.identity)
            if current is None:
                self.skipped.append(record)
                continue
            if not self._is_orphaned(current):
                logger.info("Keeping %s: %s exists again", record.identity.value, current.claimed_path)
                self.skipped.append(current)
                continue
            try:
                shutil.rmtree(current.directory)
            except OSError as e:
                logger.error("Failed to delete %s: %s", current.directory, e)
                self.failed.append(current)
                continue
            logger.info("Deleted orphaned workspace %s (%s)", record.identity.value, record.claimed_uri)
            deleted += 1
        return deleted

    # ── Private helpers ──────────────────────────────────────────────

    def _is_orphaned(self, record: WorkspaceRecord) -> bool:
        path = record.claimed_path
        if path is None:
            return False
        if path.is_remote:
            if self.remote_probe is None:
                return False
            try:
                return not self.remote_probe(path)
            except OSError as e:
                logger.warning("Remote probe failed for %s: %s", path, e)
                return False
        if path.flavor == "windows" and sys.platform != "win32":
            return False
        return not path.exists()
