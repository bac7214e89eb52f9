"""Core data models for cursor-helper."""

import os
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import EXIT_IO, EXIT_OK, EXIT_VALIDATION

LOCAL = "local"
REMOTE = "remote"

SUCCESS = "success"
INVALID = "invalid"
IO_ERROR = "io-error"


@dataclass(frozen=True)
class ProjectPath:
    """A canonical project location.

    Two paths are equal when ``kind`` and ``normalized`` match; everything
    else is carried for display, hashing and writing the path back.
    """

    kind: str  # "local" | "remote"
    normalized: str  # comparison key, e.g. "c:/users/me/app" or "ssh+myhost/home/me/app"
    raw: str = field(default="", compare=False)
    path: str = field(default="", compare=False)  # cleaned, case preserved, "/" separated
    flavor: str = field(default="posix", compare=False)  # "posix" | "windows"
    scheme: Optional[str] = field(default=None, compare=False)  # "ssh" | "wsl" | "devcontainer" | "tunnel"
    host: Optional[str] = field(default=None, compare=False)
    port: Optional[int] = field(default=None, compare=False)
    container: Optional[str] = field(default=None, compare=False)
    authority: Optional[str] = field(default=None, compare=False)  # canonical vscode-remote authority, "+" written as "%2B"

    @property
    def is_remote(self) -> bool:
        return self.kind == REMOTE

    @property
    def name(self) -> str:
        return self.path.rstrip("/").rsplit("/", 1)[-1]

    @property
    def parent(self) -> str:
        """The containing directory, in the same ``/``-separated form as ``path``."""
        head = self.path.rstrip("/").rsplit("/", 1)[0]
        if not head or head.endswith(":"):
            head += "/"
        return head

    @property
    def fs_path(self) -> str:
        """The native path string the host feeds into its identity hash."""
        if self.flavor != "windows":
            return self.path
        native = self.path.replace("/", "\\")
        if len(native) >= 2 and native[1] == ":":
            native = native[0].lower() + native[1:]
        return native

    def to_uri(self) -> str:
        """Render the folder URI the host stores in workspace.json."""
        if self.is_remote:
            return f"vscode-remote://{self.authority}{urllib.parse.quote(self.path)}"
        if self.flavor == "windows":
            if self.path.startswith("//"):
                server, _, rest = self.path[2:].partition("/")
                return f"file://{server}/{urllib.parse.quote(rest)}"
            drive_path = self.path[0].lower() + self.path[1:]
            return f"file:///{urllib.parse.quote(drive_path)}"
        return f"file://{urllib.parse.quote(self.path)}"

    def exists(self) -> bool:
        """Return True if this is a local path present on this machine."""
        if self.is_remote:
            return False
        return os.path.exists(self.fs_path)

    def __str__(self) -> str:
        if self.is_remote:
            return f"{self.scheme}:{self.host}{self.path}"
        return self.fs_path


@dataclass(frozen=True)
class WorkspaceIdentity:
    """The directory-name token the host derives from a project path."""

    value: str
    approximate: bool = field(default=False, compare=False)
    scheme: str = field(default="", compare=False)

    def __str__(self) -> str:
        return self.value


@dataclass
class WorkspaceRecord:
    """One workspaceStorage/<identity>/ directory."""

    identity: WorkspaceIdentity
    directory: Path
    claimed_uri: Optional[str] = None  # "folder" (or "workspace") value from workspace.json
    claimed_path: Optional[ProjectPath] = None

    @property
    def db_path(self) -> Path:
        return self.directory / "state.vscdb"

    @property
    def workspace_json(self) -> Path:
        return self.directory / "workspace.json"

    @property
    def last_modified(self) -> Optional[datetime]:
        try:
            mtime = self.directory.stat().st_mtime
        except OSError:
            return None
        return datetime.fromtimestamp(mtime, tz=timezone.utc)


@dataclass
class ThinkingBlock:
    text: str
    duration_ms: Optional[int] = None


@dataclass
class ToolInvocation:
    name: str
    input_summary: Optional[str] = None
    output_summary: Optional[str] = None
    status: Optional[str] = None  # "completed", "error", ...


@dataclass
class TokenUsage:
    input: int
    output: int


@dataclass
class Turn:
    """One bubble of a conversation."""

    role: str  # "user" | "assistant" | "unknown"
    text: str = ""
    timestamp: Optional[datetime] = None
    thinking: Optional[ThinkingBlock] = None
    tools: list[ToolInvocation] = field(default_factory=list)
    tokens: Optional[TokenUsage] = None
    model: Optional[str] = None


@dataclass
class ChatSession:
    """A single chat conversation inside a workspace."""

    id: str
    title: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived: bool = False
    turns: list[Turn] = field(default_factory=list)


@dataclass
class MigrationPlan:
    """A validated, single-use description of one relocation."""

    operation: str  # "rename" | "copy" | "clone"
    source: WorkspaceRecord
    destination: ProjectPath
    mode: str = "move"  # "move" | "copy"
    dry_run: bool = False
    carry_folder: bool = False  # also move/copy the project folder itself
    rewrite: bool = True  # point the new record's workspace.json at destination


@dataclass
class OperationResult:
    """Outcome of a migration or reaper operation, consumed by the CLI."""

    operation: str
    outcome: str = SUCCESS  # "success" | "invalid" | "io-error"
    source_identity: Optional[str] = None
    destination_identity: Optional[str] = None
    reason: str = ""
    dry_run: bool = False
    warnings: list[str] = field(default_factory=list)
    details: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == SUCCESS

    @property
    def exit_code(self) -> int:
        if self.outcome == SUCCESS:
            return EXIT_OK
        if self.outcome == INVALID:
            return EXIT_VALIDATION
        return EXIT_IO

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "outcome": self.outcome,
            "source_identity": self.source_identity,
            "destination_identity": self.destination_identity,
            "reason": self.reason,
            "dry_run": self.dry_run,
            "warnings": list(self.warnings),
            "details": dict(self.details),
        }
