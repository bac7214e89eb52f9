"""Tests for workspace.json, state.vscdb and storage.json helpers."""

import json

import pytest

from cursor_helper.storage import (
    connect_readonly,
    count_chat_sessions,
    format_size,
    query_keys,
    read_claimed_uri,
    update_storage_json,
    write_claimed_uri,
)


class TestWorkspaceJson:
    def test_write_keeps_other_keys(self, tmp_path):
        (tmp_path / "workspace.json").write_text(json.dumps({"folder": "file:///old", "extra": 1}))
        write_claimed_uri(tmp_path, "file:///new")
        data = json.loads((tmp_path / "workspace.json").read_text())
        assert data == {"folder": "file:///new", "extra": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["workspace.json"]

    def test_multi_root_workspace_key(self, tmp_path):
        (tmp_path / "workspace.json").write_text(json.dumps({"workspace": "file:///old/app.code-workspace"}))
        write_claimed_uri(tmp_path, "file:///new/app.code-workspace")
        data = json.loads((tmp_path / "workspace.json").read_text())
        assert data == {"workspace": "file:///new/app.code-workspace"}

    def test_unreadable_claim_is_none(self, tmp_path):
        (tmp_path / "workspace.json").write_text("{broken")
        assert read_claimed_uri(tmp_path) is None

    def test_missing_claim_is_none(self, tmp_path):
        assert read_claimed_uri(tmp_path) is None


class TestDatabase:
    def test_query_keys_escapes_wildcards(self, make_record):
        record_dir = make_record("aaa", items={
            "workbench.panel.aichat.abc.state": "{}",
            "workbench_panel_aichat_x": "{}",
        })
        with connect_readonly(record_dir / "state.vscdb") as conn:
            assert query_keys(conn, "workbench.panel.aichat.") == ["workbench.panel.aichat.abc.state"]

    def test_count_chat_sessions(self, make_record, composer_items):
        items = dict(composer_items)
        items["workbench.panel.aichat.1111.hidden"] = "{}"
        items["workbench.panel.aichat.1111.state"] = "{}"
        items["workbench.panel.aichat.view.aichat.chatdata"] = "{}"
        record_dir = make_record("aaa", items=items)
        assert count_chat_sessions(record_dir) == 4

    def test_count_without_database(self, tmp_path):
        assert count_chat_sessions(tmp_path) == 0


class TestStorageJson:
    def test_rewrites_matching_references(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text(json.dumps({
            "backupWorkspaces": {"folders": [
                {"folderUri": "file:///home/me/app/"},
                {"folderUri": "file:///home/me/other"},
            ]},
            "profileAssociations": {"workspaces": {"file:///home/me/app": "__default__profile__"}},
        }))

        assert update_storage_json(path, "file:///home/me/app", "file:///home/me/renamed") is True

        data = json.loads(path.read_text())
        assert [f["folderUri"] for f in data["backupWorkspaces"]["folders"]] == [
            "file:///home/me/renamed",
            "file:///home/me/other",
        ]
        assert data["profileAssociations"]["workspaces"] == {"file:///home/me/renamed": "__default__profile__"}

    def test_no_match_leaves_file_alone(self, tmp_path):
        path = tmp_path / "storage.json"
        original = json.dumps({"backupWorkspaces": {"folders": []}})
        path.write_text(original)
        assert update_storage_json(path, "file:///home/me/app", "file:///x") is False
        assert path.read_text() == original

    def test_dry_run(self, tmp_path):
        path = tmp_path / "storage.json"
        original = json.dumps({"backupWorkspaces": {"folders": [{"folderUri": "file:///home/me/app"}]}})
        path.write_text(original)
        assert update_storage_json(path, "file:///home/me/app", "file:///x", dry_run=True) is True
        assert path.read_text() == original

    def test_missing_file(self, tmp_path):
        assert update_storage_json(tmp_path / "storage.json", "file:///a", "file:///b") is False

    def test_top_level_not_an_object(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("[1]")
        with pytest.raises(ValueError):
            update_storage_json(path, "file:///home/me/app", "file:///x")
        assert path.read_text() == "[1]"

    def test_unexpected_nested_shapes_are_ignored(self, tmp_path):
        path = tmp_path / "storage.json"
        original = json.dumps({
            "backupWorkspaces": {"folders": {"folderUri": "file:///home/me/app"}},
            "profileAssociations": ["file:///home/me/app"],
        })
        path.write_text(original)
        assert update_storage_json(path, "file:///home/me/app", "file:///x") is False
        assert path.read_text() == original


@pytest.mark.parametrize("num_bytes, expected", [
    (512, "512 B"),
    (2048, "2.0 KB"),
    (5 * 1024 ** 2, "5.0 MB"),
    (3 * 1024 ** 3, "3.0 GB"),
])
def test_format_size(num_bytes, expected):
    assert format_size(num_bytes) == expected
