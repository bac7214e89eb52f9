"""Tests for export functionality."""

import json
from datetime import datetime, timezone

import pytest

from cursor_helper.core import ChatSession, ThinkingBlock, TokenUsage, ToolInvocation, Turn
from cursor_helper.export import (
    ExportOptions,
    sanitize_filename,
    session_to_dict,
    session_to_markdown,
    sessions_to_json,
    sessions_to_markdown,
    write_split,
)


@pytest.fixture
def sample_session():
    return ChatSession(
        id="comp-001",
        title="Fix authentication bug",
        created_at=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
        updated_at=datetime(2025, 1, 15, 11, 0, 0, tzinfo=timezone.utc),
        turns=[
            Turn(
                role="user",
                text="Fix the login bug in auth.ts",
                timestamp=datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc),
            ),
            Turn(
                role="assistant",
                thinking=ThinkingBlock(text="Check the token comparison.", duration_ms=2400),
            ),
            Turn(
                role="assistant",
                tools=[ToolInvocation(
                    name="read_file",
                    input_summary='{"path": "src/auth.ts"}',
                    output_summary="export function authenticate() {}",
                    status="completed",
                )],
            ),
            Turn(
                role="assistant",
                text="Here's the change:\n\n```typescript\nconst token = await validateToken(input);\n```",
                timestamp=datetime(2025, 1, 15, 10, 0, 30, tzinfo=timezone.utc),
                model="claude-sonnet",
                tokens=TokenUsage(input=1200, output=85),
            ),
        ],
    )


@pytest.fixture
def blank_session():
    return ChatSession(id="comp-002", title="Empty chat")


class TestMarkdownExport:
    def test_includes_session_title(self, sample_session):
        result = session_to_markdown(sample_session)
        assert result.startswith("# Fix authentication bug\n")

    def test_includes_metadata(self, sample_session):
        result = session_to_markdown(sample_session)
        assert "**Created:** 2025-01-15 10:00:00 UTC" in result
        assert "**Updated:** 2025-01-15 11:00:00 UTC" in result

    def test_includes_turns_with_roles(self, sample_session):
        result = session_to_markdown(sample_session)
        assert "## User (2025-01-15 10:00)" in result
        assert "## Assistant (2025-01-15 10:00)" in result
        assert "Fix the login bug" in result
        assert "```typescript" in result

    def test_plain_export_hides_extras(self, sample_session):
        result = session_to_markdown(sample_session)
        assert "Thinking" not in result
        assert "read_file" not in result
        assert "claude-sonnet" not in result
        assert "1200 in" not in result

    def test_with_thinking(self, sample_session):
        result = session_to_markdown(sample_session, ExportOptions(with_thinking=True))
        assert "## Thinking _2.4s_" in result
        assert "<details>" in result
        assert "Check the token comparison." in result

    def test_with_tools(self, sample_session):
        result = session_to_markdown(sample_session, ExportOptions(with_tools=True))
        assert "## Tool: read_file [completed]" in result
        assert '{"path": "src/auth.ts"}' in result
        assert "export function authenticate() {}" in result

    def test_with_stats(self, sample_session):
        result = session_to_markdown(sample_session, ExportOptions(with_stats=True))
        assert "## Assistant _claude-sonnet_ (1200 in / 85 out)" in result

    def test_empty_session(self, blank_session):
        result = session_to_markdown(blank_session)
        assert "# Empty chat" in result
        assert "**Created:**" not in result

    def test_project_document(self, sample_session, blank_session):
        result = sessions_to_markdown([sample_session, blank_session], "/Users/test/dev/myapp")
        assert result.startswith("# Chat Export: /Users/test/dev/myapp\n")
        assert "## Session 1: Fix authentication bug" in result
        assert "## Session 2: Empty chat" in result
        assert "### User" in result


class TestJsonExport:
    def test_document_shape(self, sample_session):
        data = json.loads(sessions_to_json([sample_session], "/Users/test/dev/myapp"))
        assert data["project"] == "/Users/test/dev/myapp"
        assert "exported_at" in data
        assert [s["id"] for s in data["sessions"]] == ["comp-001"]

    def test_timestamps_are_iso(self, sample_session):
        data = session_to_dict(sample_session)
        assert data["created_at"] == "2025-01-15T10:00:00+00:00"
        assert data["turns"][0]["timestamp"] == "2025-01-15T10:00:00+00:00"

    def test_plain_turns_skip_contentless_ones(self, sample_session):
        data = session_to_dict(sample_session)
        assert [t["role"] for t in data["turns"]] == ["user", "assistant"]
        assert "model" not in data["turns"][1]
        assert "tokens" not in data["turns"][1]

    def test_verbose_turns(self, sample_session):
        turns = session_to_dict(sample_session, ExportOptions.verbose())["turns"]
        assert len(turns) == 4
        assert turns[1]["thinking"] == {"text": "Check the token comparison.", "duration_ms": 2400}
        assert turns[2]["tools"] == [{
            "name": "read_file",
            "input": '{"path": "src/auth.ts"}',
            "output": "export function authenticate() {}",
            "status": "completed",
        }]
        assert turns[3]["model"] == "claude-sonnet"
        assert turns[3]["tokens"] == {"input": 1200, "output": 85}

    def test_absent_fields_are_left_out(self, blank_session):
        turn = Turn(role="assistant", text="ok", thinking=ThinkingBlock(text="hmm"))
        blank_session.turns = [turn]
        data = session_to_dict(blank_session, ExportOptions.verbose())
        assert "created_at" not in data
        assert "archived" not in data
        assert data["turns"] == [{"role": "assistant", "text": "ok", "thinking": {"text": "hmm"}}]


class TestSplitExport:
    def test_one_file_per_session(self, sample_session, blank_session, tmp_path):
        paths = write_split([sample_session, blank_session], tmp_path / "out", "myapp")
        assert [p.name for p in paths] == ["001-Fix authentication bug.md", "002-Empty chat.md"]
        assert "# Session 1: Fix authentication bug" in paths[0].read_text(encoding="utf-8")

    def test_json_files(self, sample_session, tmp_path):
        paths = write_split([sample_session], tmp_path, "myapp", fmt="json")
        data = json.loads(paths[0].read_text(encoding="utf-8"))
        assert data["project"] == "myapp"
        assert len(data["sessions"]) == 1

    def test_untitled_session(self, tmp_path):
        paths = write_split([ChatSession(id="x", title="???")], tmp_path, "myapp")
        assert paths[0].name == "001-___.md"

    @pytest.mark.parametrize("raw, expected", [
        ("fix: auth/login", "fix_ auth_login"),
        ('a<b>c"d|e*f?g\\h', "a_b_c_d_e_f_g_h"),
        ("x" * 80, "x" * 50),
        ("  spaced  ", "spaced"),
    ])
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected
