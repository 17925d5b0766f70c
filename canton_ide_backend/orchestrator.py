from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional

from .config import (
    BUILD_ARGS,
    BUILD_TIMEOUT_SECONDS,
    GENERATE_TIMEOUT_SECONDS,
    LIST_TEMPLATES_ARGS,
    LIST_TEMPLATES_TIMEOUT_SECONDS,
    MANIFEST_FILENAME,
    MAX_FILES,
    MAX_FILESET_BYTES,
    MAX_OUTPUT_BYTES,
    NEW_PROJECT_ARGS,
    SOURCE_SUBDIR,
    TEST_ARGS,
    TEST_TIMEOUT_SECONDS,
    WORKSPACES_ROOT,
)
from .errors import CommandError, CommandFailedError, CommandTimeoutError, FileSetError
from .runner import ProcessOutput, run_command
from .security import is_simple_name
from .toolchain import Toolchain
from .workspace import (
    BuildSession,
    SessionState,
    create_workspace,
    destroy_workspace,
    new_session,
    read_file_tree,
    validate_file_set,
    write_files,
)


logger = logging.getLogger(__name__)

WORKSPACE_ERROR_MESSAGE = "Failed to prepare workspace"


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    ERROR = "error"


@dataclass(frozen=True)
class Operation:
    """A toolchain invocation with its own wall-clock ceiling."""

    name: str
    args: tuple[str, ...]
    timeout: float
    label: str = ""


DEFAULT_OPERATIONS: dict[str, Operation] = {
    "build": Operation("build", BUILD_ARGS, BUILD_TIMEOUT_SECONDS, label="Build"),
    "test": Operation("test", TEST_ARGS, TEST_TIMEOUT_SECONDS, label="Test"),
    "generate": Operation("generate", NEW_PROJECT_ARGS, GENERATE_TIMEOUT_SECONDS, label="Project generation"),
    "list-templates": Operation("list-templates", LIST_TEMPLATES_ARGS, LIST_TEMPLATES_TIMEOUT_SECONDS, label="Template listing"),
}


@dataclass(frozen=True)
class ExecutionResult:
    session_id: str
    outcome: Outcome
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    @property
    def timed_out(self) -> bool:
        return self.outcome is Outcome.TIMED_OUT

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if not self.success:
            payload["error"] = self.error
        payload["output"] = self.stdout
        payload["errors"] = self.stderr
        payload["sessionId"] = self.session_id
        if not self.success:
            payload["timedOut"] = self.timed_out
        return payload


@dataclass(frozen=True)
class GeneratedProject:
    result: ExecutionResult
    files: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = self.result.to_payload()
        if self.result.success:
            payload["files"] = self.files
        return payload


class SessionOrchestrator:
    """Runs one toolchain invocation per request inside a throwaway workspace.

    Every path that creates a workspace also removes it; cleanup failures are
    logged and never replace the original result.
    """

    def __init__(
        self,
        workspaces_root: Path = WORKSPACES_ROOT,
        toolchain: Optional[Toolchain] = None,
        operations: Optional[Mapping[str, Operation]] = None,
        *,
        manifest: str = MANIFEST_FILENAME,
        source_subdir: Optional[str] = SOURCE_SUBDIR,
        max_files: int = MAX_FILES,
        max_fileset_bytes: int = MAX_FILESET_BYTES,
        max_output_bytes: int = MAX_OUTPUT_BYTES,
    ) -> None:
        self.workspaces_root = Path(workspaces_root).resolve()
        self.toolchain = toolchain or Toolchain()
        self.operations = dict(DEFAULT_OPERATIONS)
        if operations:
            self.operations.update(operations)
        self.manifest = manifest
        self.source_subdir = source_subdir
        self.max_files = max_files
        self.max_fileset_bytes = max_fileset_bytes
        self.max_output_bytes = max_output_bytes

    def operation(self, kind: str) -> Operation:
        try:
            return self.operations[kind]
        except KeyError:
            raise ValueError(f"Unknown operation: {kind}") from None

    def validate(self, files: object) -> dict[str, str]:
        return validate_file_set(
            files,
            manifest=self.manifest,
            max_files=self.max_files,
            max_bytes=self.max_fileset_bytes,
            source_subdir=self.source_subdir,
        )

    async def _run(self, session: BuildSession, op: Operation, *extra: str) -> ProcessOutput:
        session.state = SessionState.EXECUTING
        return await run_command(
            self.toolchain.command(*op.args, *extra),
            session.root,
            op.timeout,
            max_output_bytes=self.max_output_bytes,
        )

    def _failure(self, session: BuildSession, op: Operation, exc: BaseException) -> ExecutionResult:
        if isinstance(exc, CommandTimeoutError):
            logger.warning("[%s] %s timed out after %gs", session.session_id, op.name, exc.timeout)
            return ExecutionResult(session.session_id, Outcome.TIMED_OUT, exc.stdout, exc.stderr, str(exc))
        if isinstance(exc, CommandFailedError):
            logger.info("[%s] %s failed with status %s", session.session_id, op.name, exc.returncode)
            return ExecutionResult(
                session.session_id,
                Outcome.FAILED,
                exc.stdout,
                exc.stderr or "Unknown error occurred",
                f"{op.label or op.name} failed (exit status {exc.returncode})",
            )
        if isinstance(exc, CommandError):
            return ExecutionResult(session.session_id, Outcome.FAILED, exc.stdout, exc.stderr, str(exc))
        if isinstance(exc, FileSetError):
            return ExecutionResult(session.session_id, Outcome.FAILED, "", "", str(exc))
        # Resource errors: keep filesystem details in the log only.
        logger.error("[%s] %s: workspace error: %s", session.session_id, op.name, exc)
        return ExecutionResult(session.session_id, Outcome.ERROR, "", "", WORKSPACE_ERROR_MESSAGE)

    async def _teardown(self, session: BuildSession) -> None:
        if not session.owns_root:
            # Never created (or the id collided): nothing of ours on disk.
            session.state = SessionState.CLEANED
            return
        removed = await asyncio.to_thread(destroy_workspace, session.root)
        if not removed:
            logger.warning("[%s] workspace left for the janitor", session.session_id)
        session.state = SessionState.CLEANED

    async def execute(self, kind: str, files: object) -> ExecutionResult:
        """Build or test a submitted project.

        Raises FileSetError before any workspace exists; every other failure
        comes back as a non-success ExecutionResult.
        """
        op = self.operation(kind)
        validated = self.validate(files)

        session = new_session(self.workspaces_root)
        logger.info("[%s] %s: %d files", session.session_id, op.name, len(validated))
        try:
            try:
                await asyncio.to_thread(create_workspace, session, self.source_subdir)
                await asyncio.to_thread(write_files, session.root, validated)
                session.state = SessionState.POPULATED
                output = await self._run(session, op)
            except (CommandError, OSError) as exc:
                return self._failure(session, op, exc)
            session.state = SessionState.COMPLETED
            logger.info("[%s] %s completed", session.session_id, op.name)
            return ExecutionResult(session.session_id, Outcome.SUCCEEDED, output.stdout, output.stderr)
        finally:
            await self._teardown(session)

    async def generate_project(self, template: str, name: str) -> GeneratedProject:
        """Run the toolchain's project generator and read the tree back."""
        if not is_simple_name(template):
            raise FileSetError("Invalid template name")
        if not is_simple_name(name):
            raise FileSetError("Invalid project name")

        op = self.operation("generate")
        session = new_session(self.workspaces_root)
        logger.info("[%s] generating %s from template %s", session.session_id, name, template)
        try:
            try:
                await asyncio.to_thread(create_workspace, session, None)
                session.state = SessionState.POPULATED
                output = await self._run(session, op, name, "--template", template)
                files = await asyncio.to_thread(
                    read_file_tree, session.root / name, self.max_files, self.max_fileset_bytes
                )
            except (CommandError, FileSetError, OSError) as exc:
                return GeneratedProject(self._failure(session, op, exc))
            session.state = SessionState.COMPLETED
            if self.manifest not in files:
                result = ExecutionResult(
                    session.session_id,
                    Outcome.FAILED,
                    output.stdout,
                    output.stderr,
                    f"Generated project has no {self.manifest}",
                )
                return GeneratedProject(result)
            result = ExecutionResult(session.session_id, Outcome.SUCCEEDED, output.stdout, output.stderr)
            return GeneratedProject(result, files)
        finally:
            await self._teardown(session)

    async def list_toolchain_templates(self) -> list[str]:
        """Ask the toolchain for its built-in project templates.

        Raises CommandError if the listing command fails.
        """
        op = self.operation("list-templates")
        session = new_session(self.workspaces_root)
        try:
            await asyncio.to_thread(create_workspace, session, None)
            output = await self._run(session, op)
        finally:
            await self._teardown(session)

        names: list[str] = []
        for line in output.stdout.splitlines():
            token = line.strip().lstrip("-*").strip()
            if not token or token.endswith(":"):
                # headings such as "Available templates:"
                continue
            token = token.split()[0]
            if is_simple_name(token) and token not in names:
                names.append(token)
        return names
