"""Tests for the session orchestrator: lifecycle, classification, cleanup."""

import asyncio

import pytest

from canton_ide_backend import orchestrator as orch_module
from canton_ide_backend.errors import FileSetError
from canton_ide_backend.orchestrator import (
    WORKSPACE_ERROR_MESSAGE,
    Outcome,
    SessionOrchestrator,
)


def _entries(root):
    return sorted(p.name for p in root.iterdir())


@pytest.mark.asyncio
async def test_round_trip_reports_file_count(workspaces_root, fake_toolchain):
    orchestrator = SessionOrchestrator(
        workspaces_root, fake_toolchain, manifest="a.manifest", source_subdir="src"
    )
    result = await orchestrator.execute("build", {"a.manifest": "m", "src/Main.lang": "code"})

    assert result.success is True
    assert result.outcome is Outcome.SUCCEEDED
    assert "Compiled 2 files" in result.stdout
    assert "warning" in result.stderr
    assert result.session_id
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_test_operation_uses_test_command(orchestrator, daml_project, workspaces_root):
    result = await orchestrator.execute("test", daml_project)
    assert result.success
    assert "All tests passed" in result.stdout
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_missing_manifest_creates_nothing(orchestrator, workspaces_root, monkeypatch):
    spawned = []

    async def fake_run(*args, **kwargs):
        spawned.append(args)

    monkeypatch.setattr(orch_module, "run_command", fake_run)
    with pytest.raises(FileSetError):
        await orchestrator.execute("build", {"daml/Main.daml": "module Main where"})
    assert _entries(workspaces_root) == []
    assert spawned == []


@pytest.mark.asyncio
async def test_traversal_rejected_before_workspace(orchestrator, daml_project, workspaces_root):
    files = dict(daml_project, **{"../outside.daml": "x"})
    with pytest.raises(FileSetError):
        await orchestrator.execute("build", files)
    assert _entries(workspaces_root) == []
    assert not (workspaces_root.parent / "outside.daml").exists()


@pytest.mark.asyncio
async def test_toolchain_failure_is_returned_and_cleaned(orchestrator, daml_project, workspaces_root):
    files = dict(daml_project, **{"daml/Main.daml": "FAIL"})
    result = await orchestrator.execute("build", files)

    assert result.success is False
    assert result.outcome is Outcome.FAILED
    assert "type mismatch" in result.stderr
    assert "Compiled 2 files" in result.stdout
    assert result.error == "Build failed (exit status 1)"
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_timeout_is_distinct_and_cleaned(orchestrator, daml_project, workspaces_root):
    files = dict(daml_project, **{"daml/Main.daml": "HANG"})
    result = await orchestrator.execute("test", files)

    assert result.outcome is Outcome.TIMED_OUT
    assert result.timed_out
    assert result.error == "Command timeout"
    payload = result.to_payload()
    assert payload["success"] is False
    assert payload["timedOut"] is True
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_workspace_creation_failure(orchestrator, daml_project, workspaces_root, monkeypatch):
    def no_space(session, source_subdir=None):
        raise OSError(28, "No space left on device", str(session.root))

    monkeypatch.setattr(orch_module, "create_workspace", no_space)
    result = await orchestrator.execute("build", daml_project)

    assert result.outcome is Outcome.ERROR
    assert result.error == WORKSPACE_ERROR_MESSAGE
    assert str(workspaces_root) not in str(result.to_payload())
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_partial_write_is_cleaned(orchestrator, daml_project, workspaces_root, monkeypatch):
    real_write = orch_module.write_files

    def half_write(root, files):
        first = dict(list(files.items())[:1])
        real_write(root, first)
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(orch_module, "write_files", half_write)
    result = await orchestrator.execute("build", daml_project)

    assert result.outcome is Outcome.ERROR
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_unexpected_error_still_cleans(orchestrator, daml_project, workspaces_root, monkeypatch):
    seen = []

    async def explode(command, cwd, timeout, **kwargs):
        seen.append(cwd)
        assert cwd.exists()
        raise RuntimeError("boom")

    monkeypatch.setattr(orch_module, "run_command", explode)
    with pytest.raises(RuntimeError):
        await orchestrator.execute("build", daml_project)
    assert seen
    assert not seen[0].exists()
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_cleanup_failure_does_not_mask_result(orchestrator, daml_project, monkeypatch):
    monkeypatch.setattr(orch_module, "destroy_workspace", lambda path: False)
    result = await orchestrator.execute("build", daml_project)
    assert result.success


@pytest.mark.asyncio
async def test_concurrent_sessions_get_unique_ids(orchestrator, daml_project, workspaces_root):
    results = await asyncio.gather(*(orchestrator.execute("build", daml_project) for _ in range(8)))
    ids = [r.session_id for r in results]
    assert all(r.success for r in results)
    assert len(set(ids)) == len(ids)
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_unknown_operation(orchestrator, daml_project):
    with pytest.raises(ValueError):
        await orchestrator.execute("deploy", daml_project)


@pytest.mark.asyncio
async def test_generate_project_reads_back_tree(orchestrator, workspaces_root):
    project = await orchestrator.generate_project("token-basic", "demo")

    assert project.result.success
    assert set(project.files) == {"daml.yaml", "daml/Main.daml"}
    assert "name: demo" in project.files["daml.yaml"]
    assert project.to_payload()["files"] == project.files
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_generate_project_failure(orchestrator, workspaces_root):
    project = await orchestrator.generate_project("broken", "demo")
    assert not project.result.success
    assert "unknown template" in project.result.stderr
    assert "files" not in project.to_payload()
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("template,name", [("../x", "demo"), ("token-basic", "../../etc"), ("", "demo")])
async def test_generate_project_rejects_bad_names(orchestrator, workspaces_root, template, name):
    with pytest.raises(FileSetError):
        await orchestrator.generate_project(template, name)
    assert _entries(workspaces_root) == []


@pytest.mark.asyncio
async def test_list_toolchain_templates(orchestrator, workspaces_root):
    names = await orchestrator.list_toolchain_templates()
    assert names == ["skeleton", "token-basic", "empty-skeleton"]
    assert _entries(workspaces_root) == []
