"""Reading chat sessions out of a workspace record.

Session metadata lives in the workspace database under
``composer.composerData``. Conversation content lives in the global
database's ``cursorDiskKV`` table::

    composerData:<composerId>         {"fullConversationHeadersOnly": [{"bubbleId", "type"}, ...]}
    bubbleId:<composerId>:<bubbleId>  {"text", "createdAt", "thinking", "toolFormerData", ...}

Older releases kept the conversation inline (``"conversation": [...]``) or in
the legacy ``workbench.panel.aichat.view.aichat.chatdata`` tabs, and both
are read too. All database access is read-only.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from .core import ChatSession, ThinkingBlock, TokenUsage, ToolInvocation, Turn, WorkspaceRecord
from .storage import connect_readonly, open_readonly, query_item

logger = logging.getLogger(__name__)

COMPOSER_KEY = "composer.composerData"
LEGACY_CHAT_KEY = "workbench.panel.aichat.view.aichat.chatdata"

MAX_TOOL_INPUT = 500
MAX_TOOL_OUTPUT = 1000

# fullConversationHeadersOnly "type"
BUBBLE_ROLES = {1: "user", 2: "assistant"}


class CorruptSessionError(ValueError):
    """A session's stored data cannot be parsed."""


class SessionReader:
    """Restartable iterable over a record's chat sessions.

    Every iteration opens the databases afresh, so sessions written by the
    host since the last pass show up. Sessions come oldest first. A session
    whose data is corrupt or truncated is skipped; the reason is logged and
    appended to :attr:`warnings`.
    """

    def __init__(
        self,
        record: WorkspaceRecord,
        include_archived: bool = False,
        global_db: Path | None = None,
    ):
        self.record = record
        self.include_archived = include_archived
        if global_db is None:
            # <User>/workspaceStorage/<id> -> <User>/globalStorage/state.vscdb
            global_db = record.directory.parent.parent / "globalStorage" / "state.vscdb"
        self.global_db = Path(global_db)
        self.warnings: list[str] = []

    def __iter__(self) -> Iterator[ChatSession]:
        self.warnings = []
        db_path = self.record.db_path
        if not db_path.exists():
            return

        try:
            with connect_readonly(db_path) as conn:
                composer_raw = query_item(conn, COMPOSER_KEY)
                legacy_raw = query_item(conn, LEGACY_CHAT_KEY)
        except sqlite3.Error as e:
            self._warn(f"Cannot read chats from {db_path}: {e}")
            return

        yield from self._legacy_sessions(legacy_raw)

        composers = self._composers(composer_raw)
        if not composers:
            return

        gconn = self._open_global()
        try:
            for comp in composers:
                try:
                    session = self._load_composer(gconn, comp)
                except (CorruptSessionError, sqlite3.Error) as e:
                    self._warn(f"Skipping chat {comp['composerId']} in {self.record.identity.value}: {e}")
                    continue
                yield session
        finally:
            if gconn is not None:
                gconn.close()

    def get(self, session_id: str) -> ChatSession | None:
        for session in self:
            if session.id == session_id:
                return session
        return None

    # ── Private helpers ──────────────────────────────────────────────

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def _open_global(self) -> sqlite3.Connection | None:
        if not self.global_db.exists():
            return None
        try:
            return open_readonly(self.global_db)
        except sqlite3.Error as e:
            self._warn(f"Cannot open global database {self.global_db}: {e}")
            return None

    def _composers(self, raw: str | None) -> list[dict]:
        """Composer metadata entries, oldest first."""
        if not raw:
            return []
        try:
            data = json.loads(raw)
            entries = data.get("allComposers", [])
        except (json.JSONDecodeError, AttributeError) as e:
            self._warn(f"Corrupt composerData in {self.record.db_path}: {e}")
            return []
        if not isinstance(entries, list):
            self._warn(f"Corrupt composerData in {self.record.db_path}: allComposers is not a list")
            return []

        composers = []
        for comp in entries:
            if not isinstance(comp, dict) or not isinstance(comp.get("composerId"), str):
                continue
            if not comp["composerId"]:
                continue
            if comp.get("isArchived") and not self.include_archived:
                continue
            composers.append(comp)

        # entries without a usable createdAt go last
        composers.sort(key=_created_order)
        return composers

    def _load_composer(self, gconn: sqlite3.Connection | None, comp: dict) -> ChatSession:
        composer_id = comp["composerId"]
        created_ms = _epoch_ms(comp.get("createdAt"))
        updated_ms = _epoch_ms(comp.get("lastUpdatedAt"))
        name = comp.get("name")
        session = ChatSession(
            id=composer_id,
            title=name.strip() if isinstance(name, str) else "",
            created_at=_ms_to_datetime(created_ms),
            updated_at=_ms_to_datetime(created_ms if updated_ms is None else updated_ms),
            archived=bool(comp.get("isArchived")),
        )

        if gconn is not None:
            raw = query_item(gconn, f"composerData:{composer_id}", table="cursorDiskKV")
            if raw:
                session.turns = self._read_turns(gconn, composer_id, _loads(raw, "composerData"))

        if not session.title:
            first = next((t.text for t in session.turns if t.role == "user" and t.text), "Untitled")
            session.title = _truncate(first.strip().splitlines()[0] if first.strip() else "Untitled", 80)
        return session

    def _read_turns(self, gconn: sqlite3.Connection, composer_id: str, data) -> list[Turn]:
        if not isinstance(data, dict):
            raise CorruptSessionError("composerData is not an object")

        headers = data.get("fullConversationHeadersOnly")
        if headers is None:
            inline = data.get("conversation") or []
            if not isinstance(inline, list):
                raise CorruptSessionError("conversation is not a list")
            return [t for t in (_bubble_to_turn(b, b.get("type")) for b in inline if isinstance(b, dict)) if t]

        if not isinstance(headers, list):
            raise CorruptSessionError("fullConversationHeadersOnly is not a list")

        turns = []
        for header in headers:
            bubble_id = header.get("bubbleId") if isinstance(header, dict) else None
            if not bubble_id:
                continue
            raw = query_item(gconn, f"bubbleId:{composer_id}:{bubble_id}", table="cursorDiskKV")
            if raw is None:
                logger.debug("Bubble %s of %s is missing", bubble_id, composer_id)
                continue
            bubble = _loads(raw, f"bubble {bubble_id}")
            if not isinstance(bubble, dict):
                raise CorruptSessionError(f"bubble {bubble_id} is not an object")
            turn = _bubble_to_turn(bubble, header.get("type"))
            if turn is not None:
                turns.append(turn)
        return turns

    def _legacy_sessions(self, raw: str | None) -> Iterator[ChatSession]:
        if not raw:
            return
        try:
            tabs = json.loads(raw).get("tabs", [])
        except (json.JSONDecodeError, AttributeError) as e:
            self._warn(f"Corrupt legacy chat data in {self.record.db_path}: {e}")
            return
        if not isinstance(tabs, list):
            self._warn(f"Corrupt legacy chat data in {self.record.db_path}: tabs is not a list")
            return

        for tab in tabs:
            if not isinstance(tab, dict) or not isinstance(tab.get("tabId"), str) or not tab["tabId"]:
                continue
            try:
                session = _legacy_tab_to_session(tab)
            except CorruptSessionError as e:
                self._warn(f"Skipping chat {tab['tabId']} in {self.record.identity.value}: {e}")
                continue
            yield session


def _legacy_tab_to_session(tab: dict) -> ChatSession:
    bubbles = tab.get("bubbles") or []
    if not isinstance(bubbles, list):
        raise CorruptSessionError("bubbles is not a list")

    turns = []
    for bubble in bubbles:
        if not isinstance(bubble, dict):
            continue
        role = "user" if bubble.get("type") == "user" else "assistant"
        text = bubble.get("text") or bubble.get("rawText") or ""
        if not isinstance(text, str):
            raise CorruptSessionError("bubble text is not a string")
        if text:
            turns.append(Turn(role=role, text=text))

    title = tab.get("chatTitle")
    if not isinstance(title, str) or not title.strip():
        title = next((t.text for t in turns if t.role == "user"), "Chat")
    return ChatSession(
        id=tab["tabId"],
        title=_truncate(title.strip(), 80),
        updated_at=_ms_to_datetime(_epoch_ms(tab.get("lastSendTime"))),
        turns=turns,
    )


def read_sessions(
    record: WorkspaceRecord,
    include_archived: bool = False,
    global_db: Path | None = None,
) -> SessionReader:
    """Return a restartable reader over ``record``'s chat sessions."""
    return SessionReader(record, include_archived=include_archived, global_db=global_db)


def _bubble_to_turn(bubble: dict, bubble_type) -> Turn | None:
    """Build a turn from one bubble; ``None`` when it carries nothing."""
    text = bubble.get("text") or ""
    if not isinstance(text, str):
        raise CorruptSessionError("bubble text is not a string")
    turn = Turn(
        role=BUBBLE_ROLES.get(bubble_type, "unknown"),
        text=text,
        timestamp=_parse_timestamp(bubble.get("createdAt")),
    )

    thinking = bubble.get("thinking")
    if isinstance(thinking, dict) and isinstance(thinking.get("text"), str) and thinking["text"]:
        duration = bubble.get("thinkingDurationMs")
        turn.thinking = ThinkingBlock(
            text=thinking["text"],
            duration_ms=duration if _is_int(duration) else None,
        )

    tool = bubble.get("toolFormerData")
    if isinstance(tool, dict) and tool:
        name = tool.get("name")
        status = tool.get("status")
        turn.tools.append(ToolInvocation(
            name=name if isinstance(name, str) and name else "unknown",
            input_summary=_summarize(tool.get("params"), MAX_TOOL_INPUT),
            output_summary=_summarize(tool.get("result"), MAX_TOOL_OUTPUT),
            status=status if isinstance(status, str) else None,
        ))

    model_info = bubble.get("modelInfo")
    if isinstance(model_info, dict) and isinstance(model_info.get("modelName"), str):
        turn.model = model_info["modelName"] or None

    tokens = bubble.get("tokenCount")
    if isinstance(tokens, dict):
        inp = tokens.get("inputTokens")
        out = tokens.get("outputTokens")
        # both counters or neither
        if _is_int(inp) and _is_int(out) and (inp > 0 or out > 0):
            turn.tokens = TokenUsage(input=inp, output=out)

    if not turn.text and turn.thinking is None and not turn.tools:
        return None
    return turn


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _epoch_ms(value) -> int | float | None:
    """``value`` if it is a usable millisecond timestamp, else None."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return None


def _loads(raw: str, what: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise CorruptSessionError(f"{what} is not valid JSON ({e})") from e


def _summarize(value, max_len: int) -> str | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        value = json.dumps(value, ensure_ascii=False)
    if len(value) <= max_len:
        return value
    return value[:max_len] + "...[truncated]"


def _parse_timestamp(value) -> datetime | None:
    if isinstance(value, (int, float)):
        return _ms_to_datetime(value)
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _ms_to_datetime(ms) -> datetime | None:
    """Convert millisecond timestamp to datetime, or None."""
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OSError, OverflowError):
        return None


def _truncate(text: str, max_len: int) -> str:
    """Truncate text to max_len, adding ellipsis if needed."""
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _created_order(comp: dict):
    created = _epoch_ms(comp.get("createdAt"))
    return (created is None, created or 0)
