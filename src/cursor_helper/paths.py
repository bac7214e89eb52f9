"""Canonical project paths.

Turns whatever a user typed, or whatever the host wrote into a
``workspace.json``, into a :class:`ProjectPath` that compares equal for
every spelling of the same project:

- local paths (POSIX or Windows, relative or absolute, ``~``, extended-length
  ``\\\\?\\`` prefixes, ``file://`` URIs, trailing separators)
- remote folders (``vscode-remote://`` URIs for SSH, WSL, dev containers and
  tunnels, plain ``ssh://`` URIs, and ``\\\\wsl$`` / ``\\\\wsl.localhost``
  shares)

``canonicalize`` never raises. Anything it cannot make sense of is treated
as a local path relative to the working directory.
"""

import binascii
import json
import logging
import ntpath
import os
import posixpath
import re
import sys
import urllib.parse

from .core import LOCAL, REMOTE, ProjectPath

logger = logging.getLogger(__name__)

# authority type -> scheme reported on ProjectPath
REMOTE_TYPES = {
    "ssh-remote": "ssh",
    "wsl": "wsl",
    "dev-container": "devcontainer",
    "attached-container": "devcontainer",
    "tunnel": "tunnel",
}

# scheme -> authority type written back into URIs
_AUTHORITY_TYPES = {
    "ssh": "ssh-remote",
    "wsl": "wsl",
    "devcontainer": "dev-container",
    "tunnel": "tunnel",
}

# DNS names; WSL distros and other remote names keep their case
_CASE_FOLDED_HOSTS = {"ssh", "tunnel", "devcontainer"}

_DRIVE_RE = re.compile(r"^[A-Za-z]:(?:[\\/]|$)")
_URI_DRIVE_RE = re.compile(r"^/[A-Za-z]:")
_WSL_SHARE_RE = re.compile(r"^[\\/]{2}(wsl\$|wsl\.localhost)[\\/]([^\\/]+)(.*)$", re.IGNORECASE)
_HEX_RE = re.compile(r"^(?:[0-9a-fA-F]{2})+$")


def canonicalize(
    value,
    *,
    cwd: str | None = None,
    case_insensitive: bool | None = None,
) -> ProjectPath:
    """Return the canonical :class:`ProjectPath` for a path or folder URI.

    Args:
        value: A path string, ``pathlib.Path`` or folder URI.
        cwd: Directory relative paths are resolved against (default: the
            process working directory).
        case_insensitive: Force case folding on or off. By default Windows
            paths are always folded and POSIX paths are folded on macOS.
    """
    raw = str(value)
    text = raw.strip()
    lowered = text.lower()

    if lowered.startswith("vscode-remote://"):
        remote = _parse_vscode_remote(text, raw)
        if remote is not None:
            return remote
        text = text[len("vscode-remote://"):]
    elif lowered.startswith("ssh://"):
        remote = _parse_ssh_uri(text, raw)
        if remote is not None:
            return remote
        text = text[len("ssh://"):]
    elif lowered.startswith("file://"):
        text = _file_uri_to_path(text)

    text = _strip_extended_prefix(text)

    share = _WSL_SHARE_RE.match(text)
    if share:
        distro = share.group(2)
        tail = share.group(3).replace("\\", "/")
        return _remote(raw, "wsl", distro, tail)

    return _local(text, raw, cwd, case_insensitive)


def sibling(path: ProjectPath, name: str) -> ProjectPath:
    """Return the path named ``name`` next to ``path`` (same host, same flavor)."""
    new_path = path.parent.rstrip("/") + "/" + name
    if path.is_remote:
        return _remote(new_path, path.scheme, path.host, new_path,
                       port=path.port, container=path.container)
    folded = path.normalized != path.path
    return canonicalize(new_path, case_insensitive=folded or None)


# ── Local paths ──────────────────────────────────────────────────


def _strip_extended_prefix(text: str) -> str:
    """Remove Windows extended-length and device prefixes."""
    for prefix in ("\\\\?\\UNC\\", "//?/UNC/"):
        if text[: len(prefix)].upper() == prefix.upper():
            return "\\\\" + text[len(prefix):]
    for prefix in ("\\\\?\\", "\\\\.\\", "//?/", "//./"):
        if text.startswith(prefix):
            return text[len(prefix):]
    return text


def _file_uri_to_path(uri: str) -> str:
    try:
        parts = urllib.parse.urlsplit(uri)
    except ValueError as e:
        logger.debug("Unparseable file URI %r: %s", uri, e)
        return urllib.parse.unquote(uri[len("file://"):]) or "/"
    path = urllib.parse.unquote(parts.path)
    if parts.netloc and parts.netloc.lower() != "localhost":
        # file://server/share/dir is a UNC path
        return "\\\\" + parts.netloc + path.replace("/", "\\")
    if _URI_DRIVE_RE.match(path):
        return path[1:]
    return path or "/"


def _is_windows_path(text: str) -> bool:
    if sys.platform == "win32":
        return True
    return bool(_DRIVE_RE.match(text)) or text.startswith("\\\\")


def _local(text: str, raw: str, cwd: str | None, case_insensitive: bool | None) -> ProjectPath:
    if not text:
        text = "."
    if text.startswith("~"):
        text = os.path.expanduser(text)

    if _is_windows_path(text):
        cleaned = text.replace("/", "\\")
        if not (_DRIVE_RE.match(cleaned) or cleaned.startswith("\\\\")):
            cleaned = ntpath.join(cwd or os.getcwd(), cleaned)
        cleaned = ntpath.normpath(cleaned).replace("\\", "/")
        if re.fullmatch(r"[A-Za-z]:", cleaned):
            cleaned += "/"
        if _DRIVE_RE.match(cleaned):
            cleaned = cleaned[0].upper() + cleaned[1:]
        fold = True if case_insensitive is None else case_insensitive
        flavor = "windows"
    else:
        cleaned = text
        if not cleaned.startswith("/"):
            cleaned = posixpath.join(cwd or os.getcwd(), cleaned)
        cleaned = posixpath.normpath(cleaned)
        if cleaned.startswith("//"):
            cleaned = "/" + cleaned.lstrip("/")
        fold = sys.platform == "darwin" if case_insensitive is None else case_insensitive
        flavor = "posix"

    return ProjectPath(
        kind=LOCAL,
        normalized=cleaned.lower() if fold else cleaned,
        raw=raw,
        path=cleaned,
        flavor=flavor,
    )


# ── Remote folders ───────────────────────────────────────────────


def _parse_vscode_remote(uri: str, raw: str) -> ProjectPath | None:
    """Parse ``vscode-remote://<type>+<name>[:port]/path`` authorities.

    Dev containers on another remote nest as
    ``dev-container+<config>@ssh-remote+<host>``.
    """
    try:
        parts = urllib.parse.urlsplit(uri)
    except ValueError as e:
        logger.debug("Unparseable remote URI %r: %s", uri, e)
        return None

    authority = parts.netloc
    if not authority:
        return None

    userinfo, _, hostinfo = authority.rpartition("@")
    userinfo = urllib.parse.unquote(userinfo)
    hostinfo = urllib.parse.unquote(hostinfo)

    remote_type, _, name = hostinfo.partition("+")
    name, port = _split_port(name)
    container = None

    if userinfo.startswith(("dev-container+", "attached-container+")):
        container = userinfo.partition("+")[2]
        scheme = "devcontainer"
    elif remote_type in ("dev-container", "attached-container"):
        container, name = name, "localhost"
        scheme = "devcontainer"
    else:
        scheme = REMOTE_TYPES.get(remote_type, remote_type)

    if remote_type == "ssh-remote":
        name = _decode_ssh_host(name)

    path = urllib.parse.unquote(parts.path)
    return _remote(raw, scheme, name, path, port=port, container=container)


def _parse_ssh_uri(uri: str, raw: str) -> ProjectPath | None:
    try:
        parts = urllib.parse.urlsplit(uri)
        host = parts.hostname
        port = parts.port
    except ValueError as e:
        logger.debug("Unparseable ssh URI %r: %s", uri, e)
        return None
    if not host:
        return None
    path = urllib.parse.unquote(parts.path)
    return _remote(raw, "ssh", host, path, port=port)


def _split_port(name: str) -> tuple[str, int | None]:
    head, sep, tail = name.rpartition(":")
    if sep and tail.isdigit():
        return head, int(tail)
    return name, None


def _decode_ssh_host(token: str) -> str:
    """Decode hex-encoded JSON host descriptors (``{"hostName": ...}``)."""
    if not _HEX_RE.match(token) or not token.lower().startswith("7b"):
        return token
    try:
        data = json.loads(binascii.unhexlify(token).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Host token %s is not hex JSON: %s", token, e)
        return token
    if isinstance(data, dict) and data.get("hostName"):
        return str(data["hostName"])
    return token


def _authority(scheme: str, host: str, port: int | None, container: str | None) -> str:
    """Build the authority the host writes for a remote folder.

    ``+`` is always written as ``%2B``, as ``URI.toString()`` does.
    """
    if scheme == "devcontainer":
        authority = f"dev-container%2B{_quote_part(container or '')}"
        if host and host != "localhost":
            authority += f"@ssh-remote%2B{_quote_part(host)}"
    else:
        authority = f"{_AUTHORITY_TYPES.get(scheme, scheme)}%2B{_quote_part(host)}"
    if port is not None:
        authority += f":{port}"
    return authority


def _quote_part(text: str) -> str:
    return urllib.parse.quote(text, safe="")


def _remote(
    raw: str,
    scheme: str,
    host: str | None,
    path: str,
    *,
    port: int | None = None,
    container: str | None = None,
) -> ProjectPath:
    cleaned = posixpath.normpath("/" + path.lstrip("/")) if path else "/"
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    host = host or ""
    if scheme in _CASE_FOLDED_HOSTS:
        host = host.lower()
    if container:
        container = container.lower()

    key = f"{scheme}+{host}"
    if port is not None:
        key += f":{port}"
    if container:
        key += f"+{container}"

    return ProjectPath(
        kind=REMOTE,
        normalized=key + cleaned,
        raw=raw,
        path=cleaned,
        flavor="posix",
        scheme=scheme,
        host=host,
        port=port,
        container=container,
        authority=_authority(scheme, host, port, container),
    )
