from __future__ import annotations

import logging
import os
import shutil
import stat
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping

from .config import (
    MANIFEST_FILENAME,
    MAX_FILES,
    MAX_FILESET_BYTES,
    RETENTION_SECONDS,
    SOURCE_SUBDIR,
    WORKSPACES_ROOT,
)
from .errors import FileSetError
from .security import new_session_id, normalize_relative_path, normalize_session_id, safe_join


logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CREATED = "created"
    POPULATED = "populated"
    EXECUTING = "executing"
    COMPLETED = "completed"
    CLEANED = "cleaned"


@dataclass
class BuildSession:
    session_id: str
    root: Path
    state: SessionState = SessionState.CREATED
    owns_root: bool = False
    created_at: float = field(default_factory=time.time)


def _now_epoch() -> float:
    return time.time()


def new_session(workspaces_root: Path = WORKSPACES_ROOT) -> BuildSession:
    sid = normalize_session_id(new_session_id())
    return BuildSession(session_id=sid, root=(workspaces_root.resolve() / sid))


def validate_file_set(
    files: object,
    manifest: str = MANIFEST_FILENAME,
    max_files: int = MAX_FILES,
    max_bytes: int = MAX_FILESET_BYTES,
    source_subdir: str | None = SOURCE_SUBDIR,
) -> dict[str, str]:
    """Check a submitted project without touching the filesystem.

    Returns the file set keyed by normalized relative path. Raises
    FileSetError for anything that must be rejected with a 4xx.
    """
    missing = f"Missing required files. {manifest} is required."
    if not isinstance(files, Mapping):
        raise FileSetError(missing)
    if len(files) > max_files:
        raise FileSetError(f"Too many files (limit {max_files}).")

    normalized: dict[str, str] = {}
    total = 0
    for raw_path, content in files.items():
        if not isinstance(content, str):
            raise FileSetError(f"File content must be text: {raw_path!r}")
        try:
            rel = normalize_relative_path(raw_path)
        except ValueError as exc:
            raise FileSetError(f"Invalid file path {raw_path!r}: {exc}") from exc
        if rel in normalized:
            raise FileSetError(f"Duplicate file path: {rel}")
        total += len(content.encode("utf-8"))
        if total > max_bytes:
            raise FileSetError("Project is too large.")
        normalized[rel] = content

    if not normalized.get(manifest):
        raise FileSetError(missing)

    # A file cannot also be a directory on disk.
    directories = {source_subdir} if source_subdir else set()
    for rel in normalized:
        parts = rel.split("/")
        directories.update("/".join(parts[:i]) for i in range(1, len(parts)))
    for rel in normalized:
        if rel in directories:
            raise FileSetError(f"Path conflicts with a directory: {rel}")
    return normalized


def create_workspace(session: BuildSession, source_subdir: str | None = SOURCE_SUBDIR) -> Path:
    """Create the session directory and the source folder the toolchain expects.

    The session directory must not exist yet; a collision surfaces as an
    OSError instead of two requests sharing one tree.
    """
    session.root.parent.mkdir(parents=True, exist_ok=True)
    session.root.mkdir(exist_ok=False)
    session.owns_root = True
    if source_subdir:
        safe_join(session.root, source_subdir).mkdir(parents=True, exist_ok=True)
    return session.root


def write_files(root: Path, files: Mapping[str, str]) -> int:
    """Write an already validated file set under root. Returns files written."""
    written = 0
    for rel, content in files.items():
        dest = safe_join(root, rel)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(content, encoding="utf-8")
        written += 1
    return written


def _clear_readonly(path: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(path):
        for name in dirnames + filenames:
            try:
                os.chmod(os.path.join(dirpath, name), stat.S_IRWXU)
            except OSError:
                continue
    try:
        os.chmod(path, stat.S_IRWXU)
    except OSError:
        pass


def destroy_workspace(path: Path) -> bool:
    """Recursively remove a workspace. Idempotent and never raises.

    Returns True when the path is gone afterwards.
    """
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        if not path.exists():
            return True
        try:
            shutil.rmtree(path)
        except PermissionError:
            # Toolchains occasionally leave read-only artifacts behind.
            _clear_readonly(path)
            shutil.rmtree(path)
    except FileNotFoundError:
        # Removed concurrently (janitor vs. request teardown).
        return True
    except OSError:
        logger.exception("Cleanup error for workspace %s", path.name)
        return False
    return True


def read_file_tree(root: Path, max_files: int = MAX_FILES, max_bytes: int = MAX_FILESET_BYTES) -> dict[str, str]:
    """Read a generated project back into a file set.

    Hidden files/folders (build caches) and non-UTF-8 files are skipped.
    """
    files: dict[str, str] = {}
    if not root.is_dir():
        return files
    total = 0
    for path in sorted(root.rglob("*")):
        rel_parts = path.relative_to(root).parts
        if any(p.startswith(".") for p in rel_parts):
            continue
        if path.is_symlink() or not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        total += len(text.encode("utf-8"))
        if len(files) >= max_files or total > max_bytes:
            raise FileSetError("Generated project is too large.")
        files["/".join(rel_parts)] = text
    return files


def sweep_stale_workspaces(
    root: Path = WORKSPACES_ROOT,
    retention_seconds: float = RETENTION_SECONDS,
    now: float | None = None,
) -> int:
    """Delete entries under root whose mtime is older than the retention.

    Returns the number of removed entries. Entries that disappear while we
    look at them are skipped.
    """
    if not root.exists():
        return 0

    now = _now_epoch() if now is None else now
    retention_seconds = max(0.0, retention_seconds)
    deleted = 0
    for child in root.iterdir():
        try:
            mtime = child.lstat().st_mtime
        except FileNotFoundError:
            continue
        if (now - mtime) <= retention_seconds:
            continue
        if destroy_workspace(child):
            deleted += 1
            logger.info("Cleaned up old directory: %s", child.name)
    return deleted
