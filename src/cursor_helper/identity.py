"""Workspace identity schemes.

Cursor (like VS Code) names each workspaceStorage directory after a hash of
the folder it was opened on. The hash is an external, versioned black box, so
each known variant is an :class:`IdentityScheme` and callers iterate
:func:`get_schemes` instead of hard-coding one formula.

Current scheme for local folders::

    md5(fsPath + salt)

- Linux: salt is the inode (birth time is not reliable there)
- macOS: salt is the birth time in whole milliseconds
- Windows: salt is ``floor(birthtimeMs)``; fsPath has a lower-case drive letter

Remote folders hash the folder URI string with the host's 32-bit string hash,
rendered as signed hex.
"""

import hashlib
import logging
import math
import os
import re
import sys
from abc import ABC, abstractmethod

from .core import ProjectPath, WorkspaceIdentity

logger = logging.getLogger(__name__)


class IdentityScheme(ABC):
    """One way of deriving a workspace identity from a project path."""

    name: str

    @abstractmethod
    def compute(self, path: ProjectPath) -> WorkspaceIdentity:
        """Return the identity for ``path``. Must not raise."""
        ...


class FolderStatScheme(IdentityScheme):
    """The host's current folder identity: path plus a filesystem salt."""

    name = "folder-stat"

    def __init__(self, platform: str | None = None):
        self.platform = platform or sys.platform

    def compute(self, path: ProjectPath) -> WorkspaceIdentity:
        if path.is_remote:
            return WorkspaceIdentity(
                value=format(string_hash(path.to_uri()), "x"),
                scheme=self.name,
            )

        fs_path = path.fs_path
        salt = None
        exact = False
        try:
            st = os.stat(fs_path)
        except (OSError, ValueError) as e:
            logger.debug("Cannot stat %s, hashing path only: %s", fs_path, e)
        else:
            salt, exact = self._salt(st)

        digest = hashlib.md5(fs_path.encode("utf-8"))
        if salt:
            digest.update(str(salt).encode("utf-8"))

        return WorkspaceIdentity(
            value=digest.hexdigest(),
            approximate=not exact,
            scheme=self.name,
        )

    def _salt(self, st: os.stat_result) -> tuple[int | None, bool]:
        """Return ``(salt, exact)`` for a stat result on this platform."""
        if self.platform.startswith("linux"):
            return st.st_ino, True
        if self.platform in ("darwin", "win32"):
            birth_ms = _birthtime_ms(st)
            if birth_ms is not None:
                return math.floor(birth_ms), True
        return None, False


class BirthtimeScheme(FolderStatScheme):
    """Legacy formula ``md5(fsPath + round(birthtimeMs))``.

    Earlier releases of this tool used it on every platform. Where no birth
    time exists the inode-change time stands in and the result is marked
    approximate.
    """

    name = "birthtime"

    def _salt(self, st: os.stat_result) -> tuple[int | None, bool]:
        birth_ms = _birthtime_ms(st)
        if birth_ms is not None:
            return _js_round(birth_ms), True
        return _js_round(st.st_ctime_ns / 1_000_000), False


def get_schemes() -> list[IdentityScheme]:
    """Return every known scheme, preferred first."""
    return [FolderStatScheme(), BirthtimeScheme()]


def compute_identity(path: ProjectPath, scheme: IdentityScheme | None = None) -> WorkspaceIdentity:
    """Compute ``path``'s identity with ``scheme`` (default: the host's current one)."""
    return (scheme or FolderStatScheme()).compute(path)


def path_to_folder_id(path: ProjectPath) -> str:
    """Return the ``~/.cursor/projects/`` directory name for a project.

    ``/`` and ``.`` become ``-``, runs of ``-`` collapse to one, and
    leading/trailing ``-`` are trimmed: ``/Users/me/.claude`` ->
    ``Users-me-claude``.
    """
    slug = re.sub(r"-+", "-", path.path.replace("/", "-").replace(".", "-"))
    return slug.strip("-")


def string_hash(text: str, seed: int = 0) -> int:
    """The host's 32-bit string hash over UTF-16 code units."""
    value = _number_hash(149417, seed)
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        value = _number_hash(data[i] | (data[i + 1] << 8), value)
    return value


def _number_hash(val: int, initial: int) -> int:
    return _to_int32(((initial << 5) - initial) + val)


def _to_int32(n: int) -> int:
    n &= 0xFFFFFFFF
    return n - (1 << 32) if n & 0x80000000 else n


def _birthtime_ms(st: os.stat_result) -> float | None:
    ns = getattr(st, "st_birthtime_ns", None)
    if ns is not None:
        return ns / 1_000_000
    birth = getattr(st, "st_birthtime", None)
    if birth is not None:
        return birth * 1000
    if sys.platform == "win32":
        # Before 3.12, st_ctime is the creation time on Windows
        return st.st_ctime_ns / 1_000_000
    return None


def _js_round(value: float) -> int:
    """``Math.round``: halves round toward +infinity."""
    return math.floor(value + 0.5)
