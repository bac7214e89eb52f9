"""Finding workspace records under a workspaceStorage root.

Record directory names are identity hashes, and hashes are a moving target:
the host has changed its formula before and salts it with filesystem state
that a copy or restore does not preserve. A hash hit is therefore only a
shortcut. The claimed path in ``workspace.json`` decides what a record
belongs to, and a full scan is the fallback whenever hashing misses.
"""

import logging
import os
from pathlib import Path

from .core import ProjectPath, WorkspaceIdentity, WorkspaceRecord
from .errors import AmbiguousTargetError, StorageRootError, TargetNotFoundError
from .identity import IdentityScheme, get_schemes
from .paths import canonicalize
from .storage import read_claimed_uri

logger = logging.getLogger(__name__)


class WorkspaceLocator:
    """Read-only view of the records in one storage root."""

    def __init__(self, storage_root: Path, schemes: list[IdentityScheme] | None = None):
        self.storage_root = Path(storage_root)
        self.schemes = schemes if schemes is not None else get_schemes()

        if not self.storage_root.is_dir():
            raise StorageRootError(f"Workspace storage not found: {self.storage_root}")
        if not os.access(self.storage_root, os.R_OK | os.X_OK):
            raise StorageRootError(f"Workspace storage is not readable: {self.storage_root}")

    def records(self) -> list[WorkspaceRecord]:
        """Return every record in the root, sorted by identity.

        Dot-prefixed entries are staging or temporary directories and are
        never records.
        """
        try:
            entries = list(self.storage_root.iterdir())
        except OSError as e:
            raise StorageRootError(f"Cannot read workspace storage {self.storage_root}: {e}") from e

        records = [
            self._load(entry)
            for entry in entries
            if not entry.name.startswith(".") and entry.is_dir()
        ]
        records.sort(key=lambda r: r.identity.value)
        return records

    def get(self, identity: WorkspaceIdentity | str) -> WorkspaceRecord | None:
        """Look a record up by its directory name."""
        value = identity.value if isinstance(identity, WorkspaceIdentity) else str(identity)
        if not value or value.startswith(".") or "/" in value or "\\" in value:
            return None
        ws_dir = self.storage_root / value
        if not ws_dir.is_dir():
            return None
        return self._load(ws_dir)

    def find(self, target, *, remote_fallback: bool = True) -> list[WorkspaceRecord]:
        """Return every record belonging to ``target``.

        ``target`` is a :class:`ProjectPath`, a :class:`WorkspaceIdentity`,
        or a string. A string naming an existing record directory is taken
        as an identity; any other string is canonicalized as a path.

        Multiple matches are all returned. With ``remote_fallback``, a local
        path that matches nothing and does not exist here also matches
        remote records with the same path, for users who type a remote
        project's path without its host.
        """
        if isinstance(target, WorkspaceIdentity):
            record = self.get(target)
            return [record] if record else []

        if not isinstance(target, ProjectPath):
            record = self.get(str(target))
            if record is not None:
                return [record]
            target = canonicalize(target)

        matches = self._direct_hits(target)
        seen = {r.identity.value for r in matches}
        for record in self._scan(target):
            if record.identity.value not in seen:
                matches.append(record)
                seen.add(record.identity.value)

        if not matches and remote_fallback and not target.is_remote and not target.exists():
            matches = [
                r for r in self.records()
                if r.claimed_path is not None
                and r.claimed_path.is_remote
                and r.claimed_path.path == target.path
            ]
            if matches:
                logger.debug("Matched %s against %d remote record(s) by path", target, len(matches))

        return matches

    def resolve(self, target) -> WorkspaceRecord:
        """Return the single record for ``target``.

        Raises:
            TargetNotFoundError: nothing matches.
            AmbiguousTargetError: several records match.
        """
        matches = self.find(target)
        if not matches:
            raise TargetNotFoundError(str(target))
        if len(matches) > 1:
            raise AmbiguousTargetError(str(target), matches)
        return matches[0]

    # ── Private helpers ──────────────────────────────────────────────

    def _load(self, ws_dir: Path) -> WorkspaceRecord:
        uri = read_claimed_uri(ws_dir)
        return WorkspaceRecord(
            identity=WorkspaceIdentity(ws_dir.name),
            directory=ws_dir,
            claimed_uri=uri,
            claimed_path=canonicalize(uri) if uri else None,
        )

    def _direct_hits(self, path: ProjectPath) -> list[WorkspaceRecord]:
        """Records named by one of the schemes' hashes of ``path``.

        A hit only counts when the record claims ``path`` or claims nothing.
        """
        hits = []
        for scheme in self.schemes:
            identity = scheme.compute(path)
            record = self.get(identity)
            if record is None or any(h.identity == record.identity for h in hits):
                continue
            if record.claimed_path is None or record.claimed_path == path:
                hits.append(record)
            else:
                logger.debug(
                    "Identity %s (%s) belongs to %s, not %s",
                    identity.value, scheme.name, record.claimed_path, path,
                )
        return hits

    def _scan(self, path: ProjectPath) -> list[WorkspaceRecord]:
        return [r for r in self.records() if r.claimed_path == path]
