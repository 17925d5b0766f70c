from __future__ import annotations

import os
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Root directory for all build sessions.
# Default: project-local ./temp so orphans are easy to spot.
# Override with env var CANTON_IDE_WORKSPACES_ROOT.
_root_raw = os.environ.get("CANTON_IDE_WORKSPACES_ROOT")
if _root_raw and _root_raw.strip():
    WORKSPACES_ROOT = Path(_root_raw)
else:
    # canton_ide_backend/ -> project root
    WORKSPACES_ROOT = Path(__file__).resolve().parent.parent / "temp"
WORKSPACES_ROOT = WORKSPACES_ROOT.resolve()
WORKSPACES_ROOT.mkdir(parents=True, exist_ok=True)

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3001)

# Comma-separated list; "*" allows any origin.
CORS_ORIGINS = [o.strip() for o in os.environ.get("CANTON_IDE_CORS_ORIGINS", "*").split(",") if o.strip()]

LOG_LEVEL = os.environ.get("CANTON_IDE_LOG_LEVEL", "INFO").upper()

# External toolchain. Must be resolvable on PATH (or an absolute path).
TOOLCHAIN_BIN = os.environ.get("CANTON_IDE_TOOLCHAIN_BIN", "dpm")
BUILD_ARGS = ("build",)
TEST_ARGS = ("test",)
NEW_PROJECT_ARGS = ("new",)
LIST_TEMPLATES_ARGS = ("new", "--list")

# Fixed per operation kind; never taken from the request.
BUILD_TIMEOUT_SECONDS = _env_float("CANTON_IDE_BUILD_TIMEOUT_SECONDS", 60)
TEST_TIMEOUT_SECONDS = _env_float("CANTON_IDE_TEST_TIMEOUT_SECONDS", 90)
GENERATE_TIMEOUT_SECONDS = _env_float("CANTON_IDE_GENERATE_TIMEOUT_SECONDS", 60)
LIST_TEMPLATES_TIMEOUT_SECONDS = _env_float("CANTON_IDE_LIST_TEMPLATES_TIMEOUT_SECONDS", 30)

# Project layout expected by the toolchain.
MANIFEST_FILENAME = os.environ.get("CANTON_IDE_MANIFEST", "daml.yaml")
SOURCE_SUBDIR = os.environ.get("CANTON_IDE_SOURCE_DIR", "daml")

# Submission limits (the browser sends whole projects as JSON).
MAX_FILES = _env_int("CANTON_IDE_MAX_FILES", 200)
MAX_FILESET_BYTES = _env_int("CANTON_IDE_MAX_FILESET_BYTES", 10 * 1024 * 1024)  # 10MB
MAX_OUTPUT_BYTES = _env_int("CANTON_IDE_MAX_OUTPUT_BYTES", 1024 * 1024)  # per stream

# Admission control: builds + tests per client per window.
RATE_LIMIT_MAX = _env_int("CANTON_IDE_RATE_LIMIT_MAX", 10)
RATE_LIMIT_WINDOW_SECONDS = _env_float("CANTON_IDE_RATE_LIMIT_WINDOW_SECONDS", 10 * 60)
# Only honour X-Forwarded-For behind a trusted reverse proxy.
TRUST_PROXY = _env_flag("CANTON_IDE_TRUST_PROXY")

# Orphan reclamation.
JANITOR_INTERVAL_SECONDS = _env_float("CANTON_IDE_JANITOR_INTERVAL_SECONDS", 60 * 60)
RETENTION_SECONDS = _env_float("CANTON_IDE_RETENTION_SECONDS", 60 * 60)
