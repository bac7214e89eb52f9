"""Shared test fixtures for cursor-helper."""

import json
import sqlite3
from datetime import datetime, timezone

import pytest

from cursor_helper.identity import compute_identity
from cursor_helper.paths import canonicalize

T0 = datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def create_db(db_path, items=None, disk_kv=None):
    """Create a state.vscdb with the host's two key/value tables."""
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE IF NOT EXISTS ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    conn.execute("CREATE TABLE IF NOT EXISTS cursorDiskKV (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
    for key, value in (items or {}).items():
        conn.execute("INSERT INTO ItemTable VALUES (?, ?)", (key, value if isinstance(value, str) else json.dumps(value)))
    for key, value in (disk_kv or {}).items():
        conn.execute("INSERT INTO cursorDiskKV VALUES (?, ?)", (key, value if isinstance(value, str) else json.dumps(value)))
    conn.commit()
    conn.close()


@pytest.fixture
def user_dir(tmp_path):
    """A Cursor ``User`` directory with empty workspace and global storage."""
    user = tmp_path / "User"
    (user / "workspaceStorage").mkdir(parents=True)
    (user / "globalStorage").mkdir()
    return user


@pytest.fixture
def storage_root(user_dir):
    return user_dir / "workspaceStorage"


@pytest.fixture
def projects_root(tmp_path):
    root = tmp_path / "cursor-projects"
    root.mkdir()
    return root


@pytest.fixture
def dev_dir(tmp_path):
    dev = tmp_path / "dev"
    dev.mkdir()
    return dev


@pytest.fixture
def make_record(storage_root):
    """Factory: create a workspace record directory.

    ``folder`` may be a path (written as its folder URI) or a URI string;
    ``None`` leaves workspace.json out.
    """
    def _make(identity, folder=None, items=None):
        ws_dir = storage_root / identity
        ws_dir.mkdir()
        if folder is not None:
            uri = folder if isinstance(folder, str) and "://" in folder else canonicalize(folder).to_uri()
            (ws_dir / "workspace.json").write_text(json.dumps({"folder": uri}), encoding="utf-8")
        create_db(ws_dir / "state.vscdb", items=items or {"workbench.editor.state": {"open": ["main.py"]}})
        return ws_dir

    return _make


@pytest.fixture
def make_project(dev_dir, make_record):
    """Factory: create a project folder and the record the host would have made for it."""
    def _make(name, items=None):
        folder = dev_dir / name
        folder.mkdir()
        (folder / "main.py").write_text("print('hello')\n", encoding="utf-8")
        identity = compute_identity(canonicalize(folder)).value
        return folder, make_record(identity, folder, items=items)

    return _make


@pytest.fixture
def composer_items():
    """Workspace ItemTable entries for three composers (one archived)."""
    return {
        "composer.composerData": {
            "allComposers": [
                # Stored newest first, as the host does
                {
                    "composerId": "comp-003",
                    "name": "Old archived chat",
                    "createdAt": _ms(T0.replace(hour=8)),
                    "lastUpdatedAt": _ms(T0.replace(hour=8, minute=30)),
                    "isArchived": True,
                },
                {
                    "composerId": "comp-002",
                    "name": "Add dark mode",
                    "createdAt": _ms(T0.replace(hour=11)),
                    "lastUpdatedAt": _ms(T0.replace(hour=14)),
                    "isArchived": False,
                },
                {
                    "composerId": "comp-001",
                    "name": "Fix auth bug",
                    "createdAt": _ms(T0),
                    "lastUpdatedAt": _ms(T0.replace(hour=10, minute=45)),
                    "isArchived": False,
                },
            ],
            "selectedComposerIds": ["comp-001"],
        },
    }


@pytest.fixture
def global_db(user_dir):
    """Global state.vscdb holding the conversation bubbles for the composers."""
    db_path = user_dir / "globalStorage" / "state.vscdb"
    create_db(db_path, disk_kv={
        "composerData:comp-001": {
            "fullConversationHeadersOnly": [
                {"bubbleId": "b1", "type": 1},
                {"bubbleId": "b2", "type": 2},
                {"bubbleId": "b3", "type": 2},
                {"bubbleId": "b4", "type": 2},
            ],
        },
        "bubbleId:comp-001:b1": {
            "text": "Fix the login bug in auth.ts",
            "createdAt": "2025-01-15T10:00:00.000Z",
        },
        "bubbleId:comp-001:b2": {
            "text": "",
            "createdAt": "2025-01-15T10:00:05.000Z",
            "thinking": {"text": "The token check compares the wrong field."},
            "thinkingDurationMs": 2400,
        },
        "bubbleId:comp-001:b3": {
            "text": "",
            "createdAt": "2025-01-15T10:00:10.000Z",
            "toolFormerData": {
                "name": "read_file",
                "params": json.dumps({"path": "src/auth.ts", "padding": "x" * 600}),
                "result": "export function authenticate() {}",
                "status": "completed",
            },
        },
        "bubbleId:comp-001:b4": {
            "text": "Fixed: the token is now validated against `sub`.",
            "createdAt": "2025-01-15T10:00:20.000Z",
            "modelInfo": {"modelName": "claude-sonnet"},
            "tokenCount": {"inputTokens": 1200, "outputTokens": 85},
        },
        "composerData:comp-002": {
            "conversation": [
                {"bubbleId": "c1", "type": 1, "text": "Add dark mode support"},
                {
                    "bubbleId": "c2",
                    "type": 2,
                    "text": "Added a theme toggle.",
                    "tokenCount": {"inputTokens": 0, "outputTokens": 0},
                },
            ],
        },
        "composerData:comp-003": {"fullConversationHeadersOnly": []},
    })
    return db_path


@pytest.fixture
def chat_project(make_project, composer_items, global_db):
    """A project whose record has composer sessions backed by the global database."""
    return make_project("chatty", items=composer_items)
