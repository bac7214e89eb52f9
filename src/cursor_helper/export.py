"""Export chat sessions to Markdown and JSON formats."""

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .core import ChatSession, Turn


@dataclass
class ExportOptions:
    with_thinking: bool = False
    with_tools: bool = False
    with_stats: bool = False  # model names and token counts

    @classmethod
    def verbose(cls) -> "ExportOptions":
        return cls(with_thinking=True, with_tools=True, with_stats=True)


def session_to_markdown(
    session: ChatSession,
    options: ExportOptions | None = None,
    heading: str = "#",
    index: int | None = None,
) -> str:
    """Export one session as clean Markdown."""
    options = options or ExportOptions()
    sub = heading + "#"

    title = f"Session {index}: {session.title}" if index is not None else session.title
    lines = [f"{heading} {title}", ""]
    if session.created_at:
        lines.append(f"**Created:** {_format_time(session.created_at)}")
    if session.updated_at:
        lines.append(f"**Updated:** {_format_time(session.updated_at)}")
    if session.archived:
        lines.append("**Archived:** yes")
    lines.extend(["", "---", ""])

    for turn in session.turns:
        lines.extend(_turn_to_markdown(turn, options, sub))

    return "\n".join(lines)


def sessions_to_markdown(
    sessions: list[ChatSession],
    project: str,
    options: ExportOptions | None = None,
) -> str:
    """Export every session of a project as one Markdown document."""
    lines = [
        f"# Chat Export: {project}",
        "",
        f"_Exported: {_format_time(datetime.now(timezone.utc))}_",
        "",
        "---",
        "",
    ]
    for i, session in enumerate(sessions, 1):
        lines.append(session_to_markdown(session, options, heading="##", index=i))
    return "\n".join(lines)


def session_to_dict(session: ChatSession, options: ExportOptions | None = None) -> dict:
    """Structured form of a session. Absent fields are left out, never zeroed."""
    options = options or ExportOptions()
    data = {"id": session.id, "title": session.title}
    if session.created_at:
        data["created_at"] = session.created_at.isoformat()
    if session.updated_at:
        data["updated_at"] = session.updated_at.isoformat()
    if session.archived:
        data["archived"] = True
    data["turns"] = [_turn_to_dict(t, options) for t in session.turns if _has_content(t, options)]
    return data


def sessions_to_json(
    sessions: list[ChatSession],
    project: str,
    options: ExportOptions | None = None,
) -> str:
    """Export sessions as structured JSON."""
    data = {
        "project": project,
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "sessions": [session_to_dict(s, options) for s in sessions],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def write_split(
    sessions: list[ChatSession],
    output_dir: Path,
    project: str,
    fmt: str = "md",
    options: ExportOptions | None = None,
) -> list[Path]:
    """Write each session to its own ``NNN-<title>.<ext>`` file in ``output_dir``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for i, session in enumerate(sessions, 1):
        path = output_dir / f"{i:03d}-{sanitize_filename(session.title) or 'Untitled'}.{fmt}"
        if fmt == "json":
            content = sessions_to_json([session], project, options)
        else:
            content = session_to_markdown(session, options, index=i)
        path.write_text(content, encoding="utf-8")
        written.append(path)
    return written


def sanitize_filename(name: str) -> str:
    """Replace characters that are unsafe in file names and cap the length."""
    cleaned = re.sub(r'[/\\:*?"<>|\x00-\x1f\x7f]', "_", name)
    return cleaned[:50].strip()


# ── Private helpers ──────────────────────────────────────────────


def _has_content(turn: Turn, options: ExportOptions) -> bool:
    return bool(
        turn.text
        or (options.with_thinking and turn.thinking)
        or (options.with_tools and turn.tools)
    )


def _turn_to_markdown(turn: Turn, options: ExportOptions, heading: str) -> list[str]:
    lines = []

    if options.with_thinking and turn.thinking:
        label = f"{heading} Thinking"
        if turn.thinking.duration_ms is not None:
            label += f" _{turn.thinking.duration_ms / 1000:.1f}s_"
        lines.extend([
            label, "",
            "<details>", "<summary>Click to expand thinking...</summary>", "",
            turn.thinking.text, "",
            "</details>", "",
        ])

    if options.with_tools:
        for tool in turn.tools:
            label = f"{heading} Tool: {tool.name}"
            if tool.status:
                label += f" [{tool.status}]"
            lines.extend([label, ""])
            if tool.input_summary:
                lines.extend([
                    "<details>", "<summary>Parameters</summary>", "",
                    "```json", tool.input_summary, "```", "",
                    "</details>", "",
                ])
            if tool.output_summary:
                lines.extend([
                    "<details>", "<summary>Result</summary>", "",
                    "```", tool.output_summary, "```", "",
                    "</details>", "",
                ])

    if turn.text:
        label = f"{heading} {turn.role.capitalize()}"
        if options.with_stats and turn.model:
            label += f" _{turn.model}_"
        if options.with_stats and turn.tokens:
            label += f" ({turn.tokens.input} in / {turn.tokens.output} out)"
        if turn.timestamp:
            label += f" ({turn.timestamp.strftime('%Y-%m-%d %H:%M')})"
        lines.extend([label, "", turn.text, ""])

    return lines


def _turn_to_dict(turn: Turn, options: ExportOptions) -> dict:
    data = {"role": turn.role}
    if turn.text:
        data["text"] = turn.text
    if turn.timestamp:
        data["timestamp"] = turn.timestamp.isoformat()
    if options.with_thinking and turn.thinking:
        thinking = {"text": turn.thinking.text}
        if turn.thinking.duration_ms is not None:
            thinking["duration_ms"] = turn.thinking.duration_ms
        data["thinking"] = thinking
    if options.with_tools and turn.tools:
        data["tools"] = [
            {k: v for k, v in (
                ("name", t.name),
                ("input", t.input_summary),
                ("output", t.output_summary),
                ("status", t.status),
            ) if v is not None}
            for t in turn.tools
        ]
    if options.with_stats and turn.model:
        data["model"] = turn.model
    if options.with_stats and turn.tokens:
        data["tokens"] = {"input": turn.tokens.input, "output": turn.tokens.output}
    return data


def _format_time(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
