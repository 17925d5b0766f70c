from __future__ import annotations

import re
import uuid
from pathlib import Path, PurePosixPath


_SESSION_ID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$")
_SIMPLE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def new_session_id() -> str:
    return str(uuid.uuid4())


def normalize_session_id(session_id: str) -> str:
    """Validate and normalize a session id.

    Session ids become directory names under the workspaces root, so only a
    canonical UUID4 string is accepted.
    """
    if not isinstance(session_id, str):
        raise ValueError("Invalid session id")
    session_id = session_id.strip()
    if not _SESSION_ID_RE.match(session_id):
        raise ValueError("Invalid session id")
    return str(uuid.UUID(session_id))


def is_simple_name(name: str) -> bool:
    """Allow only short identifiers (template and project names)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", ".."):
        return False
    return bool(_SIMPLE_NAME_RE.match(name))


def normalize_relative_path(raw: str) -> str:
    """Normalize a user-supplied project path to a clean POSIX relative path.

    Rejects absolute paths, drive letters, '..' segments and NUL bytes.
    Backslashes are treated as separators and '.' segments are dropped.
    """
    if not isinstance(raw, str):
        raise ValueError("Invalid path")
    name = raw.strip().replace("\\", "/")
    if not name or "\x00" in name:
        raise ValueError("Invalid path")
    if name.startswith("/"):
        raise ValueError("Absolute paths are not allowed")
    if ":" in name:
        # block drive letters / weird schemes
        raise ValueError("Invalid path")
    parts = [p for p in PurePosixPath(name).parts if p not in ("", ".")]
    if not parts:
        raise ValueError("Invalid path")
    if any(p == ".." for p in parts):
        raise ValueError("Path traversal attempt")
    return "/".join(parts)


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    Second line of defence after normalize_relative_path; also catches
    symlinks that point outside the workspace.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
