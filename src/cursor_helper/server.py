"""Read-only FastAPI viewer over workspace records and their chats."""

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import Response

from .chats import read_sessions
from .config import get_global_db_path, get_workspace_storage_path
from .core import WorkspaceRecord
from .errors import StorageRootError
from .export import ExportOptions, sanitize_filename, session_to_dict, sessions_to_json, sessions_to_markdown
from .locator import WorkspaceLocator
from .storage import count_chat_sessions

logger = logging.getLogger(__name__)

app = FastAPI(title="cursor-helper", version="0.1.0")

# Locator cache (populated on first request)
_locator: WorkspaceLocator | None = None


def _get_locator() -> WorkspaceLocator:
    """Lazily initialize and cache the locator."""
    global _locator
    if _locator is None:
        try:
            _locator = WorkspaceLocator(get_workspace_storage_path())
        except StorageRootError as e:
            raise HTTPException(status_code=503, detail=str(e))
        logger.info("Serving workspaces from %s", _locator.storage_root)
    return _locator


def _get_record(identity: str) -> WorkspaceRecord:
    record = _get_locator().get(identity)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {identity}")
    return record


def _record_to_dict(record: WorkspaceRecord) -> dict:
    """Convert a WorkspaceRecord to a JSON-serializable dict."""
    path = record.claimed_path
    modified = record.last_modified
    return {
        "identity": record.identity.value,
        "path": str(path) if path else None,
        "uri": record.claimed_uri,
        "remote": path.scheme if path and path.is_remote else None,
        "last_modified": modified.isoformat() if modified else None,
        "chat_count": count_chat_sessions(record.directory),
    }


def _reader(record: WorkspaceRecord, include_archived: bool):
    return read_sessions(record, include_archived=include_archived, global_db=get_global_db_path())


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/workspaces")
async def get_workspaces(
    search: str | None = Query(None, description="Filter by path substring"),
    sort: str = Query("modified", description="Sort: modified, name, chats"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return every workspace record."""
    items = [_record_to_dict(r) for r in _get_locator().records()]

    if search:
        search_lower = search.lower()
        items = [i for i in items if i["path"] and search_lower in i["path"].lower()]

    if sort == "name":
        items.sort(key=lambda i: i["path"] or "")
    elif sort == "chats":
        items.sort(key=lambda i: i["chat_count"], reverse=True)
    else:
        items.sort(key=lambda i: i["last_modified"] or "", reverse=True)

    return {"total": len(items), "workspaces": items[offset: offset + limit]}


@app.get("/api/workspaces/{identity}/sessions")
async def get_sessions(identity: str, include_archived: bool = Query(False)):
    """Return session summaries for one workspace."""
    record = _get_record(identity)
    reader = _reader(record, include_archived)
    sessions = [
        {
            "id": s.id,
            "title": s.title,
            "created_at": s.created_at.isoformat() if s.created_at else None,
            "updated_at": s.updated_at.isoformat() if s.updated_at else None,
            "archived": s.archived,
            "turn_count": len(s.turns),
        }
        for s in reader
    ]
    return {"identity": identity, "sessions": sessions, "warnings": reader.warnings}


@app.get("/api/workspaces/{identity}/sessions/{session_id}")
async def get_session(identity: str, session_id: str):
    """Return one session with all of its turns."""
    record = _get_record(identity)
    session = _reader(record, include_archived=True).get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session_to_dict(session, ExportOptions.verbose())


@app.get("/api/export/{identity}")
async def export_workspace(
    identity: str,
    format: str = Query("md", description="Export format: md or json"),
    include_archived: bool = Query(False),
):
    """Export a workspace's sessions as Markdown or JSON."""
    record = _get_record(identity)
    sessions = list(_reader(record, include_archived))
    project = str(record.claimed_path) if record.claimed_path else identity
    safe_name = sanitize_filename(record.claimed_path.name if record.claimed_path else identity) or "chats"
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")

    if format == "json":
        return Response(
            content=sessions_to_json(sessions, project, ExportOptions.verbose()),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{safe_name}-{stamp}.json"'},
        )
    return Response(
        content=sessions_to_markdown(sessions, project, ExportOptions.verbose()),
        media_type="text/markdown",
        headers={"Content-Disposition": f'attachment; filename="{safe_name}-{stamp}.md"'},
    )
