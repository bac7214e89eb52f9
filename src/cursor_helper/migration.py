"""Moving, copying, backing up and restoring workspace records.

The host application may write into the storage root while this runs and
honours no lock file. Operations never modify the source record before
their final commit: the new record is built in a dot-prefixed staging
directory inside the storage root, its ``workspace.json`` is pointed at the
destination, and a single ``os.rename`` publishes it under the destination
identity. Only after that rename returns does a move delete the source.

Any failure or interrupt before the commit returns removes staging
directories, undoes any projects-data directory already committed, and puts
a carried project folder back where it was.
"""

import io
import json
import logging
import os
import shutil
import tarfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .core import (
    INVALID,
    IO_ERROR,
    MigrationPlan,
    OperationResult,
    ProjectPath,
    WorkspaceIdentity,
    WorkspaceRecord,
)
from .errors import (
    DestinationCollisionError,
    MigrationIOError,
    ValidationError,
)
from .identity import FolderStatScheme, IdentityScheme, path_to_folder_id
from .locator import WorkspaceLocator
from .paths import canonicalize, sibling
from .storage import (
    directory_size,
    read_claimed_uri,
    update_storage_json,
    write_claimed_uri,
)

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = 1
MANIFEST_NAME = "manifest.json"


class MigrationEngine:
    """Relocates workspace records within one storage root.

    Args:
        locator: Locator for the storage root being modified.
        projects_root: ``~/.cursor/projects``; when given, a project's agent
            data directory travels with its record.
        global_storage: ``globalStorage`` directory whose ``storage.json``
            is updated after a move.
        scheme: Identity scheme used to name new records (default: the
            host's current one).
    """

    def __init__(
        self,
        locator: WorkspaceLocator,
        projects_root: Path | None = None,
        global_storage: Path | None = None,
        scheme: IdentityScheme | None = None,
    ):
        self.locator = locator
        self.projects_root = Path(projects_root) if projects_root else None
        self.global_storage = Path(global_storage) if global_storage else None
        self.scheme = scheme or FolderStatScheme()

    @property
    def storage_root(self) -> Path:
        return self.locator.storage_root

    def plan(
        self,
        operation: str,
        source,
        destination,
        *,
        mode: str = "move",
        dry_run: bool = False,
        storage_only: bool = False,
    ) -> MigrationPlan:
        """Validate a relocation and describe it.

        Raises:
            TargetNotFoundError, AmbiguousTargetError: the source does not
                resolve to exactly one record.
            DestinationCollisionError: another record already belongs to
                the destination.
            ValidationError: the project folder cannot be carried.
        """
        record = source if isinstance(source, WorkspaceRecord) else self.locator.resolve(source)
        dest = destination if isinstance(destination, ProjectPath) else canonicalize(destination)

        self._check_destination(dest, exclude=record)

        src_path = record.claimed_path
        carry = (
            not storage_only
            and src_path is not None
            and src_path != dest
            and not src_path.is_remote
            and not dest.is_remote
            and src_path.exists()
            and not dest.exists()
        )
        if carry and not os.path.isdir(canonicalize(dest.parent).fs_path):
            raise ValidationError(f"Parent directory of {dest} does not exist")

        return MigrationPlan(
            operation=operation,
            source=record,
            destination=dest,
            mode=mode,
            dry_run=dry_run,
            carry_folder=carry,
        )

    def relocate(self, plan: MigrationPlan) -> OperationResult:
        """Carry out a plan. Errors are reported on the result, not raised."""
        result = OperationResult(
            operation=plan.operation,
            source_identity=plan.source.identity.value,
            dry_run=plan.dry_run,
        )
        result.details.update({
            "source": str(plan.source.claimed_path or plan.source.directory),
            "destination": str(plan.destination),
            "mode": plan.mode,
            "carry_folder": plan.carry_folder,
        })
        try:
            self._relocate(plan, result)
        except ValidationError as e:
            result.outcome = INVALID
            result.reason = str(e)
        except MigrationIOError as e:
            result.outcome = IO_ERROR
            result.reason = str(e)
        return result

    def rename(self, source, destination, *, dry_run=False, copy=False, storage_only=False) -> OperationResult:
        """Move (or with ``copy``, duplicate) a project's workspace data to a new path."""
        return self._run(
            "rename", source, destination,
            mode="copy" if copy else "move", dry_run=dry_run, storage_only=storage_only,
        )

    def copy(self, source, destination, *, dry_run=False, storage_only=False) -> OperationResult:
        """Duplicate a project's workspace data under a new path."""
        return self._run(
            "copy", source, destination,
            mode="copy", dry_run=dry_run, storage_only=storage_only,
        )

    def clone(self, source, destination=None, *, dry_run=False) -> OperationResult:
        """Copy a project and its workspace data.

        Without ``destination`` the copy goes next to the source as
        ``<name>-copy``, ``<name>-copy-2``, and so on.
        """
        if destination is None:
            try:
                record = self.locator.resolve(source)
            except ValidationError as e:
                return OperationResult(operation="clone", outcome=INVALID, reason=str(e), dry_run=dry_run)
            if record.claimed_path is None:
                return OperationResult(
                    operation="clone",
                    outcome=INVALID,
                    source_identity=record.identity.value,
                    reason=f"Workspace {record.identity.value} has no project path to clone",
                    dry_run=dry_run,
                )
            source, destination = record, self.clone_destination(record.claimed_path)
        return self._run("clone", source, destination, mode="copy", dry_run=dry_run)

    def backup(self, source, archive: Path, *, dry_run: bool = False) -> OperationResult:
        """Write a project's workspace data to a ``.tar.gz`` archive.

        The archive holds ``manifest.json``, ``workspaceStorage/<identity>/``
        and, when present, ``projects/<folder-id>/``. Record contents are
        stored byte-for-byte.
        """
        archive = Path(archive)
        result = OperationResult(operation="backup", dry_run=dry_run)
        try:
            record = self.locator.resolve(source)
            result.source_identity = record.identity.value
            if archive.exists():
                raise ValidationError(f"Archive already exists: {archive}")
            if not archive.parent.is_dir():
                raise ValidationError(f"Directory does not exist: {archive.parent}")
        except ValidationError as e:
            result.outcome = INVALID
            result.reason = str(e)
            return result

        projects_dir = self._projects_dir(record.claimed_path)
        result.details["archive"] = str(archive)
        result.details["projects_data"] = projects_dir is not None
        if dry_run:
            size = directory_size(record.directory)
            if projects_dir is not None:
                size += directory_size(projects_dir)
            result.details["bytes"] = size
            return result

        manifest = {
            "version": BACKUP_FORMAT_VERSION,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "identity": record.identity.value,
            "folder_uri": record.claimed_uri,
            "folder_id": projects_dir.name if projects_dir is not None else None,
        }
        partial = archive.with_name(f".{archive.name}.partial-{_token()}")
        try:
            with tarfile.open(partial, "w:gz") as tar:
                payload = json.dumps(manifest, indent=2).encode("utf-8")
                info = tarfile.TarInfo(MANIFEST_NAME)
                info.size = len(payload)
                info.mtime = int(datetime.now(timezone.utc).timestamp())
                tar.addfile(info, io.BytesIO(payload))
                tar.add(record.directory, arcname=f"workspaceStorage/{record.identity.value}")
                if projects_dir is not None:
                    tar.add(projects_dir, arcname=f"projects/{projects_dir.name}")
            os.replace(partial, archive)
        except BaseException as e:
            _remove(partial)
            if not isinstance(e, (OSError, tarfile.TarError)):
                raise
            result.outcome = IO_ERROR
            result.reason = f"Backup failed: {e}"
            return result

        result.details["bytes"] = archive.stat().st_size
        logger.info("Backed up %s to %s", record.identity.value, archive)
        return result

    def restore(self, archive: Path, target, *, dry_run: bool = False) -> OperationResult:
        """Recreate a backed-up project's workspace data for ``target``.

        The archive is extracted into a staging directory beside the storage
        root and published the same way a copy is. The target folder is
        created when missing and its parent exists.
        """
        archive = Path(archive)
        dest = target if isinstance(target, ProjectPath) else canonicalize(target)
        result = OperationResult(operation="restore", dry_run=dry_run)
        result.details.update({"archive": str(archive), "destination": str(dest)})

        extract_dir = self.storage_root.parent / f".cursor-helper-restore-{_token()}"
        rollback = _Rollback()
        try:
            try:
                manifest = _read_manifest(archive)
                result.source_identity = manifest.get("identity")
                self._check_destination(dest, exclude=None)
                create_folder = not dest.is_remote and not dest.exists()
                if create_folder and not os.path.isdir(canonicalize(dest.parent).fs_path):
                    raise ValidationError(f"Parent directory of {dest} does not exist")
                if dry_run:
                    result.destination_identity = self.scheme.compute(dest).value
                    result.details["create_folder"] = create_folder
                    return result

                with tarfile.open(archive, "r:gz") as tar:
                    tar.extractall(extract_dir, filter="data")
                record_dir = _single_child(extract_dir / "workspaceStorage")
                projects_dir = _single_child(extract_dir / "projects")
                if record_dir is None:
                    raise ValidationError(f"{archive} contains no workspace record")

                if create_folder:
                    os.mkdir(dest.fs_path)
                    rollback.push("remove created project folder", _remove, Path(dest.fs_path))

                identity = self._publish(rollback, record_dir, projects_dir, dest, result)
                rollback.clear()
            except BaseException:
                rollback.run()
                raise
            finally:
                _remove(extract_dir)
        except ValidationError as e:
            result.outcome = INVALID
            result.reason = str(e)
            return result
        except (OSError, tarfile.TarError, json.JSONDecodeError) as e:
            result.outcome = IO_ERROR
            result.reason = f"Restore failed: {e}"
            return result

        result.destination_identity = identity.value
        logger.info("Restored %s as %s", archive, identity.value)
        return result

    def clone_destination(self, path: ProjectPath) -> ProjectPath:
        """First free ``<name>-copy``, ``<name>-copy-2``, ... sibling of ``path``."""
        n = 1
        while True:
            name = f"{path.name}-copy" if n == 1 else f"{path.name}-copy-{n}"
            candidate = sibling(path, name)
            if not candidate.exists() and not self.locator.find(candidate, remote_fallback=False):
                return candidate
            n += 1

    # ── Private helpers ──────────────────────────────────────────────

    def _run(self, operation, source, destination, **kwargs) -> OperationResult:
        try:
            plan = self.plan(operation, source, destination, **kwargs)
        except ValidationError as e:
            return OperationResult(
                operation=operation,
                outcome=INVALID,
                reason=str(e),
                dry_run=kwargs.get("dry_run", False),
            )
        return self.relocate(plan)

    def _check_destination(self, dest: ProjectPath, exclude: WorkspaceRecord | None) -> None:
        for record in self.locator.find(dest, remote_fallback=False):
            if exclude is None or record.identity != exclude.identity:
                raise DestinationCollisionError(str(dest), record.identity.value)

    def _relocate(self, plan: MigrationPlan, result: OperationResult) -> None:
        source = plan.source
        dest = plan.destination

        if source.claimed_path is not None and source.claimed_path == dest:
            result.destination_identity = source.identity.value
            result.reason = "Source and destination are the same project; nothing to do"
            return

        # The plan may be stale; re-check before touching anything
        if not source.directory.is_dir():
            raise ValidationError(f"Workspace {source.identity.value} no longer exists")
        self._check_destination(dest, exclude=source)

        if plan.dry_run:
            identity = self.scheme.compute(dest)
            result.destination_identity = identity.value
            result.details["approximate"] = identity.approximate
            result.reason = "Dry run; nothing was written"
            return

        src_projects = self._projects_dir(source.claimed_path)
        if src_projects is not None and path_to_folder_id(dest) == src_projects.name:
            src_projects = None

        rollback = _Rollback()
        try:
            if plan.carry_folder:
                self._carry_folder(rollback, source.claimed_path, dest, plan.mode)
            identity = self._publish(rollback, source.directory, src_projects, dest, result, rewrite=plan.rewrite)
            rollback.clear()
        except BaseException as e:
            rollback.run()
            if isinstance(e, OSError):
                raise MigrationIOError(f"{plan.operation} of {source.identity.value} failed", e) from e
            raise

        result.destination_identity = identity.value
        logger.info("%s %s -> %s", plan.operation, source.identity.value, identity.value)

        if plan.mode == "move":
            self._remove_source(source, src_projects, result)
            if source.claimed_uri:
                self._update_references(source.claimed_uri, dest.to_uri(), result)

    def _publish(
        self,
        rollback: "_Rollback",
        record_dir: Path,
        projects_dir: Path | None,
        dest: ProjectPath,
        result: OperationResult,
        rewrite: bool = True,
    ) -> WorkspaceIdentity:
        """Stage a copy of ``record_dir`` for ``dest`` and commit it."""
        identity = self.scheme.compute(dest)
        if identity.approximate:
            msg = f"Identity {identity.value} for {dest} is approximate; the host may not pick it up"
            logger.warning(msg)
            result.warnings.append(msg)

        final = self.storage_root / identity.value
        if final.exists():
            raise DestinationCollisionError(str(dest), identity.value)

        token = _token()
        staging = self.storage_root / f".{identity.value}.staging-{token}"
        rollback.push("remove staged record", _remove, staging)
        shutil.copytree(record_dir, staging, symlinks=True)
        if rewrite or read_claimed_uri(staging) is None:
            write_claimed_uri(staging, dest.to_uri())

        if projects_dir is not None and self.projects_root is not None:
            proj_final = self.projects_root / path_to_folder_id(dest)
            if proj_final.exists():
                msg = f"Projects data {proj_final} already exists; left as is"
                logger.warning(msg)
                result.warnings.append(msg)
            else:
                self.projects_root.mkdir(parents=True, exist_ok=True)
                proj_staging = self.projects_root / f".{proj_final.name}.staging-{token}"
                rollback.push("remove staged projects data", _remove, proj_staging)
                shutil.copytree(projects_dir, proj_staging, symlinks=True)
                self._commit(proj_staging, proj_final)
                rollback.push("remove committed projects data", _remove, proj_final)

        self._commit(staging, final)
        return identity

    def _commit(self, staging: Path, final: Path) -> None:
        os.rename(staging, final)

    def _carry_folder(self, rollback: "_Rollback", src: ProjectPath, dest: ProjectPath, mode: str) -> None:
        if mode == "move":
            logger.info("Moving project folder %s -> %s", src.fs_path, dest.fs_path)
            shutil.move(src.fs_path, dest.fs_path)
            rollback.push("move project folder back", shutil.move, dest.fs_path, src.fs_path)
        else:
            logger.info("Copying project folder %s -> %s", src.fs_path, dest.fs_path)
            rollback.push("remove copied project folder", _remove, Path(dest.fs_path))
            shutil.copytree(src.fs_path, dest.fs_path, symlinks=True)

    def _remove_source(self, source: WorkspaceRecord, projects_dir: Path | None, result: OperationResult) -> None:
        for path in (source.directory, projects_dir):
            if path is None:
                continue
            try:
                shutil.rmtree(path)
            except OSError as e:
                msg = f"Could not remove old data at {path}: {e}"
                logger.warning(msg)
                result.warnings.append(msg)

    def _update_references(self, old_uri: str, new_uri: str, result: OperationResult) -> None:
        if self.global_storage is None:
            return
        storage_json = self.global_storage / "storage.json"
        try:
            if update_storage_json(storage_json, old_uri, new_uri):
                result.details["storage_json_updated"] = True
        except (OSError, ValueError) as e:
            msg = f"Could not update {storage_json}: {e}"
            logger.warning(msg)
            result.warnings.append(msg)

    def _projects_dir(self, path: ProjectPath | None) -> Path | None:
        if path is None or self.projects_root is None:
            return None
        folder_id = path_to_folder_id(path)
        if not folder_id:
            return None
        candidate = self.projects_root / folder_id
        return candidate if candidate.is_dir() else None


class _Rollback:
    """Undo steps for a partly applied operation, run newest first."""

    def __init__(self):
        self._steps = []

    def push(self, description: str, func, *args) -> None:
        self._steps.append((description, func, args))

    def clear(self) -> None:
        self._steps.clear()

    def run(self) -> None:
        while self._steps:
            description, func, args = self._steps.pop()
            try:
                func(*args)
            except OSError as e:
                logger.error("Rollback step failed (%s): %s", description, e)


def _read_manifest(archive: Path) -> dict:
    if not archive.is_file():
        raise ValidationError(f"Archive not found: {archive}")
    try:
        with tarfile.open(archive, "r:gz") as tar:
            member = tar.extractfile(MANIFEST_NAME)
            data = json.loads(member.read().decode("utf-8"))
    except KeyError:
        raise ValidationError(f"{archive} is not a cursor-helper backup (no {MANIFEST_NAME})")
    except tarfile.ReadError as e:
        raise ValidationError(f"{archive} is not a readable .tar.gz archive: {e}")

    if not isinstance(data, dict) or data.get("version") != BACKUP_FORMAT_VERSION:
        raise ValidationError(f"Unsupported backup format in {archive}")
    return data


def _single_child(directory: Path) -> Path | None:
    if not directory.is_dir():
        return None
    children = [p for p in directory.iterdir() if p.is_dir()]
    return children[0] if len(children) == 1 else None


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


def _token() -> str:
    return uuid.uuid4().hex[:8]
