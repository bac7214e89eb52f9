"""Access to the files inside a workspace record and Cursor's global storage.

A record directory holds:

- ``workspace.json``: ``{"folder": "<folder URI>"}``, the claimed path
  (multi-root workspaces use ``"workspace"`` instead)
- ``state.vscdb``: SQLite key/value store (``ItemTable``)
- other blobs the host writes, copied opaquely

Database reads are always read-only.
"""

import contextlib
import json
import logging
import os
import sqlite3
import tempfile
from pathlib import Path
from typing import Iterator

from .paths import canonicalize

logger = logging.getLogger(__name__)

WORKSPACE_JSON = "workspace.json"
STATE_DB = "state.vscdb"
CLAIM_KEYS = ("folder", "workspace")


def read_workspace_json(ws_dir: Path) -> dict | None:
    """Parse ``workspace.json``; ``None`` when it is missing or unreadable."""
    path = ws_dir / WORKSPACE_JSON
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        logger.warning("Failed to read workspace.json in %s: %s", ws_dir, e)
        return None
    return data if isinstance(data, dict) else None


def read_claimed_uri(ws_dir: Path) -> str | None:
    """Return the folder (or workspace file) URI a record claims."""
    data = read_workspace_json(ws_dir)
    if not data:
        return None
    for key in CLAIM_KEYS:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def write_claimed_uri(ws_dir: Path, uri: str) -> None:
    """Point a record's ``workspace.json`` at ``uri``, keeping other keys."""
    data = read_workspace_json(ws_dir) or {}
    key = "workspace" if "workspace" in data and "folder" not in data else "folder"
    data[key] = uri
    atomic_write_text(ws_dir / WORKSPACE_JSON, json.dumps(data, indent=2))


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temp file beside ``path`` and rename it over."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


def open_readonly(db_path: Path) -> sqlite3.Connection:
    """Open a SQLite database read-only."""
    return sqlite3.connect(f"{Path(db_path).resolve().as_uri()}?mode=ro", uri=True)


@contextlib.contextmanager
def connect_readonly(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Open a SQLite database read-only for the duration of a ``with`` block."""
    conn = open_readonly(db_path)
    try:
        yield conn
    finally:
        conn.close()


def query_item(conn: sqlite3.Connection, key: str, table: str = "ItemTable") -> str | None:
    """Read a single key from a key/value table as text."""
    cur = conn.execute(f"SELECT value FROM {table} WHERE key = ?", (key,))
    row = cur.fetchone()
    if not row or row[0] is None:
        return None
    val = row[0]
    return val if isinstance(val, str) else bytes(val).decode("utf-8", errors="replace")


def query_keys(conn: sqlite3.Connection, prefix: str, table: str = "ItemTable") -> list[str]:
    """Return every key in ``table`` starting with ``prefix``."""
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    cur = conn.execute(
        f"SELECT key FROM {table} WHERE key LIKE ? ESCAPE '\\'", (escaped + "%",)
    )
    return [row[0] for row in cur.fetchall()]


def count_chat_sessions(ws_dir: Path) -> int:
    """Count composer sessions plus legacy aichat panel sessions in a record."""
    db_path = ws_dir / STATE_DB
    if not db_path.exists():
        return 0

    try:
        with connect_readonly(db_path) as conn:
            raw = query_item(conn, "composer.composerData")
            legacy_keys = query_keys(conn, "workbench.panel.aichat.")
    except sqlite3.Error as e:
        logger.debug("Cannot count chats in %s: %s", db_path, e)
        return 0

    count = 0
    if raw:
        try:
            composers = json.loads(raw).get("allComposers", [])
            count += sum(1 for c in composers if isinstance(c, dict) and c.get("composerId"))
        except (json.JSONDecodeError, AttributeError) as e:
            logger.warning("Corrupt composerData in %s: %s", db_path, e)

    # workbench.panel.aichat.<uuid>.<suffix>
    legacy_ids = set()
    for key in legacy_keys:
        session_id = key[len("workbench.panel.aichat."):].split(".", 1)[0]
        if session_id and session_id != "view":
            legacy_ids.add(session_id)

    return count + len(legacy_ids)


def update_storage_json(
    storage_path: Path,
    old_uri: str,
    new_uri: str,
    dry_run: bool = False,
) -> bool:
    """Repoint references to a folder in ``globalStorage/storage.json``.

    Updates ``backupWorkspaces.folders[].folderUri`` and renames matching
    keys of ``profileAssociations.workspaces``. Returns True if anything
    matched. Raises ValueError when the file does not hold a JSON object.
    """
    if not storage_path.exists():
        return False

    data = json.loads(storage_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"{storage_path} does not hold a JSON object")
    old = canonicalize(old_uri)

    def matches(uri) -> bool:
        return isinstance(uri, str) and canonicalize(uri) == old

    modified = False

    backups = data.get("backupWorkspaces")
    folders = backups.get("folders") if isinstance(backups, dict) else None
    for folder in folders if isinstance(folders, list) else []:
        if isinstance(folder, dict) and matches(folder.get("folderUri")):
            folder["folderUri"] = new_uri
            modified = True

    profiles = data.get("profileAssociations")
    associations = profiles.get("workspaces") if isinstance(profiles, dict) else None
    if isinstance(associations, dict):
        for key in [k for k in associations if matches(k)]:
            associations[new_uri] = associations.pop(key)
            modified = True

    if modified and not dry_run:
        atomic_write_text(storage_path, json.dumps(data, indent=2))

    return modified


def directory_size(path: Path) -> int:
    """Total size in bytes of the files under ``path``."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def format_size(num_bytes: int) -> str:
    """Format a byte count as a human-readable size."""
    for unit, factor in (("GB", 1024 ** 3), ("MB", 1024 ** 2), ("KB", 1024)):
        if num_bytes >= factor:
            return f"{num_bytes / factor:.1f} {unit}"
    return f"{num_bytes} B"
