"""Unit tests for engine/workflow_engine.py."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

import pytest

from specforge.collaborators.registry import CollaboratorRegistry
from specforge.config.settings import EngineSettings
from specforge.engine.cancellation import CancellationToken
from specforge.engine.classification import exception_classifier
from specforge.engine.retry_policy import RetryPolicy
from specforge.engine.state_store import StateStore
from specforge.engine.workflow_engine import WorkflowEngine
from specforge.enums import AttemptOutcome, PhaseStatus, RunStatus, TaskStatus
from specforge.exceptions import (
    FatalCollaboratorError,
    RunNotFoundError,
    RunSpecificationError,
    StateStoreError,
    WorkflowError,
)


def engine_for(store, collaborator, **kwargs) -> WorkflowEngine:
    return WorkflowEngine(
        store,
        CollaboratorRegistry({"simple": collaborator}),
        exception_classifier(),
        **kwargs,
    )


class TestRun:
    """Tests for driving runs to a terminal status."""

    @pytest.mark.asyncio
    async def test_completes_all_phases_in_order(self, engine, collaborator, make_spec, store):
        result = await engine.run(make_spec(codegen=["models", "handlers"], test=["unit"]))

        assert result.status is RunStatus.COMPLETED
        assert result.succeeded
        assert [task_id for task_id, _ in collaborator.calls][-1] == "unit"

        loaded = await store.load("run-test")
        assert loaded.run.status is RunStatus.COMPLETED
        assert loaded.run.current_phase_index == 2
        assert [phase.status for phase in loaded.run.phases] == [PhaseStatus.COMPLETED] * 2

    @pytest.mark.asyncio
    async def test_accepts_plain_dict(self, engine):
        result = await engine.run({"run_id": "dict-run", "phases": [{"name": "p", "tasks": [{"id": "t"}]}]})

        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_blocked_phase_escalates_run(self, scripted, store, make_spec):
        collaborator = scripted({"models": [RuntimeError("flaky")] * 3})
        engine = engine_for(store, collaborator)

        result = await engine.run(make_spec(codegen=["models"], test=["unit"]))

        assert result.status is RunStatus.ESCALATED
        assert result.blocked_phase == "codegen"
        assert [escalated.task.id for escalated in result.escalated_tasks] == ["models"]
        assert len(result.escalated_tasks[0].attempts) == 3
        assert ("unit", 1) not in collaborator.calls

    @pytest.mark.asyncio
    async def test_completed_run_returns_immediately(self, engine, collaborator, make_spec):
        spec = make_spec(codegen=["a"])
        await engine.run(spec)
        calls = len(collaborator.calls)

        result = await engine.run(spec)

        assert result.status is RunStatus.COMPLETED
        assert len(collaborator.calls) == calls

    @pytest.mark.asyncio
    async def test_unknown_complexity_class_is_rejected_before_writing(self, engine, make_spec, store):
        spec = make_spec(codegen=[{"id": "a", "complexity_class": "exotic"}])

        with pytest.raises(RunSpecificationError, match="exotic"):
            await engine.run(spec)

        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_changed_phases_are_rejected(self, engine, make_spec):
        await engine.run(make_spec(codegen=["a"]))

        with pytest.raises(RunSpecificationError, match="Phases differ"):
            await engine.run(make_spec(build=["a"]))

    @pytest.mark.asyncio
    async def test_load_failure_returns_failed(self, engine, make_spec):
        with patch.object(engine.store, "load", AsyncMock(side_effect=StateStoreError("unreadable"))):
            result = await engine.run(make_spec(codegen=["a"]))

        assert result.status is RunStatus.FAILED
        assert "unreadable" in result.error

    @pytest.mark.asyncio
    async def test_save_failure_fails_run(self, engine, make_spec):
        with patch.object(engine.store, "save", AsyncMock(side_effect=StateStoreError("disk full"))):
            result = await engine.run(make_spec(codegen=["a"]))

        assert result.status is RunStatus.FAILED
        assert "disk full" in result.error

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, engine, collaborator, make_spec, store):
        token = CancellationToken()
        token.cancel("shutdown")

        result = await engine.run(make_spec(codegen=["a"]), cancellation=token)

        assert result.status is RunStatus.FAILED
        assert result.cancelled is True
        assert result.error == "cancelled: shutdown"
        assert collaborator.calls == []
        loaded = await store.load("run-test")
        assert loaded.run.cancelled is True

    @pytest.mark.asyncio
    async def test_cancellation_during_retry_backoff(self, scripted, store, make_spec):
        collaborator = scripted({"a": [RuntimeError("flaky")]})
        engine = engine_for(store, collaborator, retry_policy=RetryPolicy(backoff_factor=0.3))
        token = CancellationToken()

        run = asyncio.create_task(engine.run(make_spec(codegen=["a"]), cancellation=token))
        while not collaborator.calls:
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.1)
        token.cancel("shutdown")
        result = await run

        assert collaborator.calls == [("a", 1)]
        assert result.status is RunStatus.FAILED
        assert result.cancelled is True
        loaded = await store.load("run-test")
        assert loaded.tasks[0].status is TaskStatus.READY
        assert len(loaded.attempts) == 1

    @pytest.mark.asyncio
    async def test_cancellation_while_last_phase_finishes(self, scripted, store, make_spec):
        collaborator = scripted(delay=0.05)
        engine = engine_for(store, collaborator)
        token = CancellationToken()

        run = asyncio.create_task(engine.run(make_spec(codegen=["a"]), cancellation=token))
        while not collaborator.calls:
            await asyncio.sleep(0.001)
        token.cancel("shutdown")
        result = await run

        assert result.status is RunStatus.FAILED
        assert result.cancelled is True
        loaded = await store.load("run-test")
        assert loaded.run.status is RunStatus.FAILED
        assert loaded.run.phases[0].status is PhaseStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_lane_error_fails_run(self, engine, make_spec, store):
        with patch.object(engine.dispatcher, "dispatch", AsyncMock(side_effect=RuntimeError("lane crashed"))):
            result = await engine.run(make_spec(codegen=["a"]))

        assert result.status is RunStatus.FAILED
        assert "lane crashed" in result.error
        loaded = await store.load("run-test")
        assert loaded.run.status is RunStatus.FAILED


class TestResume:
    """Tests for resuming stored runs."""

    @pytest.mark.asyncio
    async def test_resume_unknown_run(self, engine):
        with pytest.raises(RunNotFoundError):
            await engine.resume("ghost")

    @pytest.mark.asyncio
    async def test_resume_after_raising_limit(self, scripted, store, make_spec):
        collaborator = scripted({"a": [RuntimeError("flaky")] * 3})
        engine = engine_for(store, collaborator)
        assert (await engine.run(make_spec(codegen=["a"]))).status is RunStatus.ESCALATED

        await engine.raise_attempt_limit("run-test", "a", 4)
        result = await engine.resume("run-test")

        assert result.status is RunStatus.COMPLETED
        assert collaborator.calls[-1] == ("a", 4)

    @pytest.mark.asyncio
    async def test_resume_without_new_budget_escalates_again(self, scripted, store, make_spec):
        collaborator = scripted({"a": [RuntimeError("flaky")] * 3})
        engine = engine_for(store, collaborator)
        await engine.run(make_spec(codegen=["a"]))

        result = await engine.resume("run-test")

        assert result.status is RunStatus.ESCALATED
        assert len(collaborator.calls) == 3

    @pytest.mark.asyncio
    async def test_rerun_with_fixed_payload(self, scripted, store, make_spec):
        class PayloadCollaborator(scripted):
            async def invoke(self, task, context):
                if not task.payload.get("fixed"):
                    raise FatalCollaboratorError("missing input")
                return await super().invoke(task, context)

        engine = engine_for(store, PayloadCollaborator())
        first = await engine.run(make_spec(codegen=[{"id": "a", "max_attempts": 2}]))
        assert first.status is RunStatus.ESCALATED

        second = await engine.run(make_spec(codegen=[{"id": "a", "max_attempts": 2, "payload": {"fixed": True}}]))

        assert second.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_running_task_is_recovered(self, engine, collaborator, make_spec, store):
        spec = make_spec(codegen=["a"])
        await engine.run(spec)
        path = store.state_dir / "run-test.json"
        record = json.loads(path.read_text())
        record["run"]["status"] = "running"
        record["run"]["current_phase_index"] = 0
        record["run"]["phases"][0]["status"] = "active"
        record["tasks"][0]["status"] = "running"
        record["attempts"][0]["finished_at"] = None
        record["attempts"][0]["outcome"] = None
        path.write_text(json.dumps(record))

        result = await engine.resume("run-test")

        assert result.status is RunStatus.COMPLETED
        loaded = await store.load("run-test")
        attempts = loaded.attempts
        assert attempts[0].outcome is AttemptOutcome.TRANSIENT_FAILURE
        assert attempts[0].error_detail == {"reason": "interrupted"}
        assert attempts[1].attempt_number == 2
        assert attempts[1].outcome is AttemptOutcome.SUCCESS

    @pytest.mark.asyncio
    async def test_each_recovered_task_is_saved(self, engine, make_spec, store):
        await engine.run(make_spec(codegen=["a", "b"]))
        path = store.state_dir / "run-test.json"
        record = json.loads(path.read_text())
        record["run"]["status"] = "running"
        record["run"]["current_phase_index"] = 0
        record["run"]["phases"][0]["status"] = "active"
        for task in record["tasks"]:
            task["status"] = "running"
        for attempt in record["attempts"]:
            attempt["finished_at"] = None
            attempt["outcome"] = None
        path.write_text(json.dumps(record))
        snapshots: list[dict[str, TaskStatus]] = []
        original_save = store.save

        async def recording_save(run, tasks, attempts, specification=None):
            snapshots.append({task.id: task.status for task in tasks})
            await original_save(run, tasks, attempts, specification)

        store.save = recording_save  # type: ignore[method-assign]
        result = await engine.resume("run-test")

        assert result.status is RunStatus.COMPLETED
        assert snapshots[0] == {"a": TaskStatus.READY, "b": TaskStatus.RUNNING}
        assert snapshots[1] == {"a": TaskStatus.READY, "b": TaskStatus.READY}

    @pytest.mark.asyncio
    async def test_rerun_rejects_limit_below_used_attempts(self, scripted, store, make_spec):
        collaborator = scripted({"a": [RuntimeError("flaky")] * 2})
        engine = engine_for(store, collaborator)
        first = await engine.run(make_spec(codegen=[{"id": "a", "max_attempts": 2}]))
        assert first.status is RunStatus.ESCALATED

        with pytest.raises(RunSpecificationError, match="too low"):
            await engine.run(make_spec(codegen=[{"id": "a", "max_attempts": 1}]))

        loaded = await store.load("run-test")
        assert loaded.run.status is RunStatus.ESCALATED
        assert loaded.tasks[0].max_attempts == 2
        assert len(collaborator.calls) == 2

    @pytest.mark.asyncio
    async def test_rerun_with_spent_limit_escalates_waiting_task(self, scripted, store, make_spec):
        class SlowY(scripted):
            async def invoke(self, task, context):
                if task.id == "y":
                    await asyncio.sleep(0.05)
                return await super().invoke(task, context)

        collaborator = SlowY({"x": [FatalCollaboratorError("bad input")], "y": [RuntimeError("flaky")]})
        engine = engine_for(store, collaborator, pool_capacity=2)
        first = await engine.run(make_spec(codegen=["x", "y"]))
        assert first.status is RunStatus.ESCALATED
        loaded = await store.load("run-test")
        assert {task.id: task.status for task in loaded.tasks} == {
            "x": TaskStatus.ESCALATED,
            "y": TaskStatus.READY,
        }

        second = await engine.run(make_spec(codegen=["x", {"id": "y", "max_attempts": 1}]))

        assert second.status is RunStatus.ESCALATED
        assert [escalated.task.id for escalated in second.escalated_tasks] == ["y"]
        assert len(collaborator.calls) == 2
        loaded = await store.load("run-test")
        assert loaded.run.status is RunStatus.ESCALATED


class TestCallerOperations:
    """Tests for report, raise_attempt_limit, abandon and acknowledge."""

    @pytest.mark.asyncio
    async def test_report_is_read_only(self, scripted, store, make_spec):
        engine = engine_for(store, scripted({"a": [FatalCollaboratorError("bad")]}))
        await engine.run(make_spec(codegen=["a"]))

        report = await engine.report("run-test")

        assert report.status is RunStatus.ESCALATED
        assert report.escalated_tasks[0].attempts[0].outcome is AttemptOutcome.FATAL_FAILURE

    @pytest.mark.asyncio
    async def test_raise_limit_rejects_unknown_task(self, engine, make_spec):
        await engine.run(make_spec(codegen=["a"]))

        with pytest.raises(WorkflowError, match="Unknown task"):
            await engine.raise_attempt_limit("run-test", "zzz", 5)

    @pytest.mark.asyncio
    async def test_raise_limit_rejects_limit_below_usage(self, scripted, store, make_spec):
        engine = engine_for(store, scripted({"a": [RuntimeError("flaky")] * 3}))
        await engine.run(make_spec(codegen=["a"]))

        with pytest.raises(WorkflowError, match="too low"):
            await engine.raise_attempt_limit("run-test", "a", 2)

    @pytest.mark.asyncio
    async def test_raise_limit_for_future_phase_updates_specification(self, scripted, store, make_spec):
        engine = engine_for(store, scripted({"a": [FatalCollaboratorError("bad")]}))
        await engine.run(make_spec(codegen=["a"], test=["unit"]))

        await engine.raise_attempt_limit("run-test", "unit", 9)

        loaded = await store.load("run-test")
        assert loaded.specification["phases"][1]["tasks"][0]["max_attempts"] == 9

    @pytest.mark.asyncio
    async def test_abandon_fails_open_tasks(self, scripted, store, make_spec):
        engine = engine_for(store, scripted({"a": [FatalCollaboratorError("bad")]}), pool_capacity=1)
        await engine.run(make_spec(codegen=["a", "b"]))

        result = await engine.abandon("run-test")

        assert result.status is RunStatus.FAILED
        assert result.error == "abandoned"
        loaded = await store.load("run-test")
        statuses = {task.id: task.status for task in loaded.tasks}
        assert statuses == {"a": TaskStatus.ESCALATED, "b": TaskStatus.FAILED}

    @pytest.mark.asyncio
    async def test_abandoned_run_cannot_resume(self, scripted, store, make_spec):
        engine = engine_for(store, scripted({"a": [FatalCollaboratorError("bad")]}))
        spec = make_spec(codegen=["a"])
        await engine.run(spec)
        await engine.abandon("run-test")

        with pytest.raises(WorkflowError, match="abandoned"):
            await engine.run(spec)

    @pytest.mark.asyncio
    async def test_completed_run_cannot_be_abandoned(self, engine, make_spec):
        await engine.run(make_spec(codegen=["a"]))

        with pytest.raises(WorkflowError):
            await engine.abandon("run-test")

    @pytest.mark.asyncio
    async def test_acknowledge_archives_terminal_run(self, engine, make_spec, store):
        await engine.run(make_spec(codegen=["a"]))

        path = await engine.acknowledge("run-test")

        assert path.parent == store.archive_dir
        archived = json.loads(path.read_text())
        assert archived["run"]["archived_at"] is not None
        assert await store.list_runs() == []

    @pytest.mark.asyncio
    async def test_acknowledge_refuses_running_run(self, engine, make_spec, store):
        await engine.run(make_spec(codegen=["a"]))
        path = store.state_dir / "run-test.json"
        record = json.loads(path.read_text())
        record["run"]["status"] = "running"
        path.write_text(json.dumps(record))

        with pytest.raises(WorkflowError, match="terminal"):
            await engine.acknowledge("run-test")


class TestFromSettings:
    """Tests for building an engine from settings."""

    def test_from_settings(self, tmp_path):
        settings = EngineSettings(
            state_directory=str(tmp_path / "state"),
            max_concurrent_tasks=3,
            default_max_attempts=4,
            collaborators={"simple": {"command": "true", "fatal_exit_codes": [64]}},
        )

        engine = WorkflowEngine.from_settings(settings)

        assert isinstance(engine.store, StateStore)
        assert engine.store.state_dir == tmp_path / "state"
        assert engine.pool_capacity == 3
        assert engine.default_max_attempts == 4
        assert engine.task_timeout == 1800
        assert "simple" in engine.registry
        assert "simple" in engine.dispatcher.classifiers
