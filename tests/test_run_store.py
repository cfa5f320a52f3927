"""
Run Store Tests
===============
State-machine enforcement, terminal immutability, deep-copy reads and
JSON persistence of PipelineRun records.
"""
import asyncio

import pytest

from app.core.errors import ConsistencyError, RunNotFoundError
from app.models.pipeline_run import (
    ErrorKind,
    PipelineRun,
    RollbackRecord,
    RunState,
    StageOutcome,
    StageResult,
)
from app.models.stage import StageKind
from app.services.run_record_writer import RunRecordWriter
from app.state.run_store import RunStore


def _run(run_id="run-1", commit="abc123"):
    return PipelineRun(id=run_id, commit_ref=commit, target="staging")


def _ok(kind=StageKind.CHECKOUT):
    return StageResult(name=kind, outcome=StageOutcome.SUCCESS)


def test_create_and_get_returns_copy():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        copy = await store.get("run-1")
        copy.state = RunState.SUCCEEDED
        copy.stages.append(_ok())
        return await store.get("run-1")

    stored = asyncio.run(scenario())
    assert stored.state is RunState.PENDING
    assert stored.stages == []


def test_create_rejects_duplicates_and_non_pending():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        with pytest.raises(ConsistencyError):
            await store.create(_run())
        with pytest.raises(ConsistencyError):
            await store.create(PipelineRun(id="run-2", commit_ref="x", state=RunState.RUNNING))

    asyncio.run(scenario())


def test_get_unknown_run_raises():
    with pytest.raises(RunNotFoundError):
        asyncio.run(RunStore().get("missing"))


def test_stages_only_appended_while_running():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        with pytest.raises(ConsistencyError):
            await store.append_stage("run-1", _ok())
        await store.set_state("run-1", RunState.RUNNING)
        run = await store.append_stage("run-1", _ok())
        assert run.started_at is not None
        await store.set_state("run-1", RunState.SUCCEEDED)
        with pytest.raises(ConsistencyError):
            await store.append_stage("run-1", _ok(StageKind.BUILD_BACKEND))
        return await store.get("run-1")

    run = asyncio.run(scenario())
    assert [s.name for s in run.stages] == [StageKind.CHECKOUT]


def test_terminal_state_is_not_overwritten():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        await store.set_state("run-1", RunState.RUNNING)
        first = await store.set_state(
            "run-1", RunState.FAILED, failed_stage=StageKind.TEST, error_kind=ErrorKind.POLICY, reason="tests failed"
        )
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.SUCCEEDED)
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.FAILED)
        return first, await store.get("run-1")

    first, run = asyncio.run(scenario())
    assert run.state is RunState.FAILED
    assert run.finished_at == first.finished_at
    assert run.failed_stage is StageKind.TEST
    assert run.failure_reason == "tests failed"


def test_pending_cannot_jump_to_succeeded():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.SUCCEEDED)

    asyncio.run(scenario())


def test_expected_state_guards_transition():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        await store.set_state("run-1", RunState.RUNNING)
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.FAILED, expected=RunState.PENDING)
        return await store.get("run-1")

    assert asyncio.run(scenario()).state is RunState.RUNNING


def test_rolled_back_requires_successful_rollback_record():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        await store.set_state("run-1", RunState.RUNNING)
        await store.set_state("run-1", RunState.FAILED)
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.ROLLED_BACK)
        await store.record_rollback("run-1", RollbackRecord(outcome=StageOutcome.SUCCESS))
        with pytest.raises(ConsistencyError):
            await store.record_rollback("run-1", RollbackRecord(outcome=StageOutcome.SUCCESS))
        return await store.set_state("run-1", RunState.ROLLED_BACK)

    run = asyncio.run(scenario())
    assert run.state is RunState.ROLLED_BACK
    assert run.rollback.outcome is StageOutcome.SUCCESS


def test_failed_rollback_record_blocks_rolled_back():
    async def scenario():
        store = RunStore()
        await store.create(_run())
        await store.set_state("run-1", RunState.RUNNING)
        await store.set_state("run-1", RunState.FAILED)
        await store.record_rollback("run-1", RollbackRecord(outcome=StageOutcome.FAILURE, alarm=True))
        with pytest.raises(ConsistencyError):
            await store.set_state("run-1", RunState.ROLLED_BACK)

    asyncio.run(scenario())


def test_find_by_commit_and_list_runs():
    async def scenario():
        store = RunStore()
        await store.create(_run("run-1", "aaa"))
        await store.create(_run("run-2", "bbb"))
        await store.create(_run("run-3", "aaa"))
        await store.set_state("run-2", RunState.FAILED)
        return (
            await store.find_by_commit("aaa"),
            await store.list_runs(limit=2),
            await store.list_runs(state=RunState.FAILED),
        )

    by_commit, recent, failed = asyncio.run(scenario())
    assert [r.id for r in by_commit] == ["run-1", "run-3"]
    assert len(recent) == 2
    assert [r.id for r in failed] == ["run-2"]


def test_runs_persist_and_reload(tmp_path):
    async def scenario():
        store = RunStore(RunRecordWriter(str(tmp_path)))
        await store.create(_run())
        await store.set_state("run-1", RunState.RUNNING)
        await store.append_stage("run-1", _ok())
        await store.record_images("run-1", {"backend": "staging-app:run-1-backend"})

    asyncio.run(scenario())
    assert (tmp_path / "run-1.json").exists()

    reloaded = RunStore(RunRecordWriter(str(tmp_path)))
    assert reloaded.load() == 1
    run = asyncio.run(reloaded.get("run-1"))
    assert run.state is RunState.RUNNING
    assert run.stages[0].name is StageKind.CHECKOUT
    assert run.images == {"backend": "staging-app:run-1-backend"}


def test_corrupt_record_is_skipped(tmp_path):
    (tmp_path / "broken.json").write_text("{not json")
    writer = RunRecordWriter(str(tmp_path))
    assert writer.load_all() == []
