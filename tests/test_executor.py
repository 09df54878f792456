"""Tests for plan execution."""

from __future__ import annotations

import asyncio
import copy
import threading
from collections.abc import Mapping
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from backend_mock import MockResourceBackend
from conftest import build_specs
from infragraph.executor import Executor, OutcomeStatus, ResourceFailedError, RunResult
from infragraph.graph import ResourceGraph
from infragraph.models import ApplyRecord, ApplyStatus, Plan, PlanAction, ResourceKind
from infragraph.planner import Planner
from infragraph.state import InMemoryStateRecorder, StateRecorder, StateStoreError


def make_plan(declarations: dict[str, Any], state: StateRecorder) -> Plan:
    graph = ResourceGraph.from_declarations(build_specs(declarations))
    return Planner().plan(graph, state.all())


def make_executor(
    backend: MockResourceBackend, state: StateRecorder, **kwargs: Any
) -> Executor:
    kwargs.setdefault("retry_backoff_base_seconds", 0)
    kwargs.setdefault("operation_timeout_seconds", 5)
    return Executor(backend, state, **kwargs)


def with_branch(declarations: dict[str, Any]) -> dict[str, Any]:
    """Add an independent db -> worker branch."""
    declarations = copy.deepcopy(declarations)
    declarations["resources"]["db"] = {"kind": "database-account", "parameters": {"name": "db"}}
    declarations["resources"]["worker"] = {
        "kind": "compute-service",
        "parameters": {"name": "worker", "dbUrl": {"ref": "db.endpoint"}},
    }
    return declarations


def independent(count: int) -> dict[str, Any]:
    return {
        "defaultDeployNew": True,
        "resources": {
            f"r{i}": {"kind": "environment", "parameters": {"name": f"r{i}"}}
            for i in range(count)
        },
    }


class TestApply:
    """Tests for applying a plan end to end."""

    @pytest.mark.asyncio
    async def test_applies_example_graph(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state).run(make_plan(example_declarations, state))

        assert result.success
        assert result.counts()["succeeded"] == 4
        assert result.end_time is not None
        assert set(state.all()) == {"env", "storage", "backend", "frontend"}
        assert all(r.status == ApplyStatus.SUCCEEDED for r in state.all().values())

    @pytest.mark.asyncio
    async def test_references_resolve_to_actual_outputs(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()

        await make_executor(backend, state).run(make_plan(example_declarations, state))

        (backend_call,) = backend.calls_for("backend")
        assert backend_call.parameters["blobUrl"] == "https://storage.blob.core.windows.net/"
        (frontend_call,) = backend.calls_for("frontend")
        assert (
            frontend_call.parameters["apiBase"]
            == "https://backend.westeurope.azurecontainerapps.io/api"
        )

    @pytest.mark.asyncio
    async def test_dependencies_applied_first(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()

        await make_executor(backend, state).run(make_plan(example_declarations, state))

        order = [call.name for call in backend.calls]
        assert order.index("env") < order.index("backend")
        assert order.index("storage") < order.index("backend")
        assert order.index("backend") < order.index("frontend")

    @pytest.mark.asyncio
    async def test_reapply_makes_no_backend_calls(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()
        await make_executor(backend, state).run(make_plan(example_declarations, state))
        calls_after_first_run = backend.call_count()

        plan = make_plan(example_declarations, state)
        result = await make_executor(backend, state).run(plan)

        assert [step.action for step in plan.steps] == [PlanAction.NOOP] * 4
        assert result.success
        assert backend.call_count() == calls_after_first_run

    @pytest.mark.asyncio
    async def test_update_uses_external_id(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()
        await make_executor(backend, state).run(make_plan(example_declarations, state))

        declarations = copy.deepcopy(example_declarations)
        declarations["resources"]["env"]["parameters"]["tags"] = {"team": "core"}
        result = await make_executor(backend, state).run(make_plan(declarations, state))

        assert result.success
        assert backend.call_count("update") == 1
        env_id = backend.external_id_for(ResourceKind.ENVIRONMENT, "env")
        assert backend.resources[env_id].version == 2
        assert state.get("env").parameter_hash == make_plan(declarations, state).step(
            "env"
        ).parameter_hash

    @pytest.mark.asyncio
    async def test_deferred_update_downgraded_when_inputs_unchanged(
        self, example_declarations: dict
    ) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()
        await make_executor(backend, state).run(make_plan(example_declarations, state))

        # Storage changes, but its endpoint stays the same
        declarations = copy.deepcopy(example_declarations)
        declarations["resources"]["storage"]["parameters"]["sku"] = {"name": "Standard_GRS"}
        plan = make_plan(declarations, state)
        assert plan.step("backend").action == PlanAction.UPDATE

        result = await make_executor(backend, state).run(plan)

        assert result.success
        assert backend.call_count("update") == 1
        assert result.outcomes["backend"].action == PlanAction.NOOP
        assert result.outcomes["frontend"].action == PlanAction.NOOP

    @pytest.mark.asyncio
    async def test_output_missing_at_apply_fails_resource(self) -> None:
        declarations = {
            "defaultDeployNew": True,
            "resources": {
                "storage": {"kind": "storage-account", "parameters": {"name": "storage"}},
                "api": {
                    "kind": "compute-service",
                    "parameters": {"name": "api", "conn": {"ref": "storage.connectionString"}},
                },
            },
        }
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state).run(make_plan(declarations, state))

        assert result.outcomes["storage"].status == OutcomeStatus.SUCCEEDED
        assert result.outcomes["api"].status == OutcomeStatus.FAILED
        assert "storage.connectionString" in result.outcomes["api"].error
        assert backend.calls_for("api") == []

    @pytest.mark.asyncio
    async def test_output_missing_at_apply_uses_fallback(self) -> None:
        declarations = {
            "defaultDeployNew": True,
            "resources": {
                "storage": {"kind": "storage-account", "parameters": {"name": "storage"}},
                "api": {
                    "kind": "compute-service",
                    "parameters": {
                        "name": "api",
                        "conn": {"ref": "storage.connectionString", "fallback": ""},
                    },
                },
            },
        }
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state).run(make_plan(declarations, state))

        assert result.success
        assert backend.calls_for("api")[0].parameters["conn"] == ""


class TestFailureIsolation:
    """Tests for partial failure handling."""

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(permanent_failures={"storage"})
        state = InMemoryStateRecorder()
        declarations = with_branch(example_declarations)

        result = await make_executor(backend, state).run(make_plan(declarations, state))

        statuses = {rid: o.status for rid, o in result.outcomes.items()}
        assert statuses == {
            "env": OutcomeStatus.SUCCEEDED,
            "storage": OutcomeStatus.FAILED,
            "backend": OutcomeStatus.SKIPPED_DEPENDENCY_FAILED,
            "frontend": OutcomeStatus.SKIPPED_DEPENDENCY_FAILED,
            "db": OutcomeStatus.SUCCEEDED,
            "worker": OutcomeStatus.SUCCEEDED,
        }
        assert not result.success
        assert result.failed == ["storage"]
        assert result.skipped == ["backend", "frontend"]
        assert result.outcomes["backend"].blocked_by == ["storage"]
        assert backend.calls_for("backend") == []
        assert backend.calls_for("frontend") == []

    @pytest.mark.asyncio
    async def test_failed_resource_recorded(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(permanent_failures={"storage"})
        state = InMemoryStateRecorder()

        await make_executor(backend, state).run(make_plan(example_declarations, state))

        record = state.get("storage")
        assert record.status == ApplyStatus.FAILED
        assert "injected permanent failure" in record.error
        assert not record.is_committed
        assert state.get("backend") is None

    @pytest.mark.asyncio
    async def test_failed_update_keeps_committed_state(self, example_declarations: dict) -> None:
        backend = MockResourceBackend()
        state = InMemoryStateRecorder()
        await make_executor(backend, state).run(make_plan(example_declarations, state))
        before = state.get("storage")

        declarations = copy.deepcopy(example_declarations)
        declarations["resources"]["storage"]["parameters"]["sku"] = {"name": "Standard_GRS"}
        backend.permanent_failures.add("storage")
        await make_executor(backend, state).run(make_plan(declarations, state))

        after = state.get("storage")
        assert after.status == ApplyStatus.FAILED
        assert after.parameter_hash == before.parameter_hash
        assert after.outputs == before.outputs
        assert after.committed_at == before.committed_at

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(permanent_failures={"storage"})
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state, max_attempts=3).run(
            make_plan(example_declarations, state)
        )

        assert len(backend.calls_for("storage")) == 1
        assert result.outcomes["storage"].attempts == 1

    @pytest.mark.asyncio
    async def test_recorder_error_fails_only_that_resource(self) -> None:
        """Test that a state write error does not abort independent resources."""

        class FailingRecorder(InMemoryStateRecorder):
            def put(self, resource_id: str, record: ApplyRecord) -> None:
                if resource_id == "r0":
                    raise StateStoreError("disk full")
                super().put(resource_id, record)

        state = FailingRecorder()
        result = await make_executor(MockResourceBackend(), state).run(
            make_plan(independent(2), state)
        )

        assert result.outcomes["r0"].status == OutcomeStatus.FAILED
        assert "state could not be recorded: disk full" in result.outcomes["r0"].error
        assert result.outcomes["r0"].attempts == 1
        assert result.outcomes["r1"].status == OutcomeStatus.SUCCEEDED
        assert state.get("r0").status == ApplyStatus.FAILED
        assert state.get("r1").succeeded

    @pytest.mark.asyncio
    async def test_unrecordable_failure_still_reported(self) -> None:
        class ReadOnlyRecorder(InMemoryStateRecorder):
            def _store(self, resource_id: str, record: ApplyRecord) -> None:
                raise StateStoreError("read-only file system")

        backend = MockResourceBackend()
        state = ReadOnlyRecorder()
        result = await make_executor(backend, state).run(make_plan(independent(1), state))

        outcome = result.outcomes["r0"]
        assert outcome.status == OutcomeStatus.FAILED
        assert "state could not be recorded: read-only file system" in outcome.error
        assert "failure not recorded: read-only file system" in outcome.error
        assert backend.call_count() == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_permanent(self) -> None:
        class BrokenBackend(MockResourceBackend):
            def create(self, kind: ResourceKind, parameters: Mapping[str, Any]) -> dict[str, Any]:
                raise RuntimeError("boom")

        state = InMemoryStateRecorder()
        result = await make_executor(BrokenBackend(), state).run(make_plan(independent(1), state))

        outcome = result.outcomes["r0"]
        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.attempts == 1
        assert "RuntimeError: boom" in outcome.error


class TestRetries:
    """Tests for transient failure retries."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(transient_failures={"env": 2})
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state, max_attempts=3).run(
            make_plan(example_declarations, state)
        )

        assert result.success
        assert result.outcomes["env"].attempts == 3
        assert len(backend.calls_for("env")) == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(transient_failures={"env": 5})
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state, max_attempts=3).run(
            make_plan(example_declarations, state)
        )

        env = result.outcomes["env"]
        assert env.status == OutcomeStatus.FAILED
        assert env.attempts == 3
        assert "retries exhausted" in env.error
        assert result.outcomes["storage"].status == OutcomeStatus.SUCCEEDED
        assert result.skipped == ["backend", "frontend"]

    @pytest.mark.asyncio
    async def test_backoff_schedule(self) -> None:
        """Test exponential waits with jitter of up to 20% between attempts."""
        backend = MockResourceBackend(transient_failures={"r0": 3})
        state = InMemoryStateRecorder()
        executor = make_executor(backend, state, max_attempts=4, retry_backoff_base_seconds=2)

        with (
            patch("infragraph.executor.random.uniform", side_effect=lambda low, high: high),
            patch.object(Executor, "_backoff", AsyncMock(return_value=True)) as backoff,
        ):
            result = await executor.run(make_plan(independent(1), state))

        assert result.success
        assert result.outcomes["r0"].attempts == 4
        waits = [call.args[0] for call in backoff.await_args_list]
        assert waits == pytest.approx([2.4, 4.8, 9.6])

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retry(self) -> None:
        backend = MockResourceBackend(transient_failures={"r0": 1})
        state = InMemoryStateRecorder()
        executor = make_executor(backend, state, max_attempts=3, retry_backoff_base_seconds=0.5)

        task = asyncio.create_task(executor.run(make_plan(independent(1), state)))
        await asyncio.sleep(0.1)
        executor.cancel()
        result = await task

        outcome = result.outcomes["r0"]
        assert outcome.status == OutcomeStatus.FAILED
        assert "cancelled before retry" in outcome.error
        assert len(backend.calls_for("r0")) == 1


class TestTimeouts:
    """Tests for backend calls that exceed the operation timeout."""

    @pytest.mark.asyncio
    async def test_still_running_call_is_not_retried(self) -> None:
        """Test that a timed out call never overlaps a retry on the same resource."""
        backend = MockResourceBackend(delay_seconds=0.4)
        state = InMemoryStateRecorder()

        result = await make_executor(
            backend, state, max_attempts=3, operation_timeout_seconds=0.1
        ).run(make_plan(independent(1), state))

        outcome = result.outcomes["r0"]
        assert outcome.status == OutcomeStatus.FAILED
        assert "timed out" in outcome.error
        assert outcome.attempts == 1
        assert len(backend.calls_for("r0")) == 1
        assert backend.max_concurrency == 1

    @pytest.mark.asyncio
    async def test_call_settling_after_timeout_is_used(self) -> None:
        backend = MockResourceBackend(delay_seconds=0.2)
        state = InMemoryStateRecorder()

        result = await make_executor(
            backend, state, max_attempts=3, operation_timeout_seconds=0.15
        ).run(make_plan(independent(1), state))

        assert result.success
        assert len(backend.calls_for("r0")) == 1
        assert state.get("r0").succeeded

    @pytest.mark.asyncio
    async def test_transient_error_after_timeout_is_retried(self) -> None:
        backend = MockResourceBackend(delay_seconds=0.2, transient_failures={"r0": 1})
        state = InMemoryStateRecorder()

        result = await make_executor(
            backend, state, max_attempts=2, operation_timeout_seconds=0.15
        ).run(make_plan(independent(1), state))

        assert result.success
        assert result.outcomes["r0"].attempts == 2
        assert len(backend.calls_for("r0")) == 2
        assert backend.max_concurrency == 1


class TestConcurrency:
    """Tests for parallelism bound and cancellation."""

    @pytest.mark.asyncio
    async def test_parallelism_bound(self) -> None:
        backend = MockResourceBackend(delay_seconds=0.05)
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state, max_parallelism=2).run(
            make_plan(independent(6), state)
        )

        assert result.success
        assert backend.max_concurrency <= 2

    @pytest.mark.asyncio
    async def test_independent_resources_run_in_parallel(self) -> None:
        backend = MockResourceBackend(delay_seconds=0.1)
        state = InMemoryStateRecorder()

        await make_executor(backend, state, max_parallelism=4).run(
            make_plan(independent(4), state)
        )

        assert backend.max_concurrency > 1

    @pytest.mark.asyncio
    async def test_cancel_stops_scheduling(self) -> None:
        backend = MockResourceBackend(delay_seconds=0.2)
        state = InMemoryStateRecorder()
        executor = make_executor(backend, state, max_parallelism=1)

        task = asyncio.create_task(executor.run(make_plan(independent(4), state)))
        await asyncio.sleep(0.05)
        executor.cancel()
        result = await task

        assert result.cancelled
        assert result.outcomes["r0"].status == OutcomeStatus.SUCCEEDED
        for rid in ("r1", "r2", "r3"):
            assert result.outcomes[rid].status == OutcomeStatus.NOT_STARTED
        assert backend.call_count() == 1
        assert set(state.all()) == {"r0"}

    @pytest.mark.asyncio
    async def test_cancel_reports_dependents_not_started(self) -> None:
        """Test that dependents of unstarted steps are not reported as skipped."""
        declarations = {
            "defaultDeployNew": True,
            "resources": {
                "a": {"kind": "environment", "parameters": {"name": "a"}},
                "b": {"kind": "environment", "parameters": {"name": "b"}},
                "c": {"kind": "environment", "parameters": {"name": "c"}, "dependsOn": ["b"]},
            },
        }
        backend = MockResourceBackend(delay_seconds=0.2)
        state = InMemoryStateRecorder()
        executor = make_executor(backend, state, max_parallelism=1)

        task = asyncio.create_task(executor.run(make_plan(declarations, state)))
        await asyncio.sleep(0.05)
        executor.cancel()
        result = await task

        assert result.outcomes["a"].status == OutcomeStatus.SUCCEEDED
        assert result.outcomes["b"].status == OutcomeStatus.NOT_STARTED
        assert result.outcomes["c"].status == OutcomeStatus.NOT_STARTED
        assert result.skipped == []

    @pytest.mark.asyncio
    async def test_recorder_runs_off_the_event_loop(self) -> None:
        class ThreadTrackingRecorder(InMemoryStateRecorder):
            def __init__(self) -> None:
                super().__init__()
                self.threads: set[str] = set()

            def _store(self, resource_id: str, record: ApplyRecord) -> None:
                self.threads.add(threading.current_thread().name)
                super()._store(resource_id, record)

        state = ThreadTrackingRecorder()
        await make_executor(MockResourceBackend(), state).run(make_plan(independent(3), state))

        assert state.threads
        assert all(name.startswith("infragraph-state") for name in state.threads)

    def test_rejects_invalid_bounds(self) -> None:
        with pytest.raises(ValueError):
            Executor(MockResourceBackend(), InMemoryStateRecorder(), max_parallelism=0)
        with pytest.raises(ValueError):
            Executor(MockResourceBackend(), InMemoryStateRecorder(), max_attempts=0)


class TestRunResult:
    """Tests for RunResult reporting."""

    def test_empty_result_is_success(self) -> None:
        assert RunResult().success

    def test_resource_failed_error_message(self) -> None:
        error = ResourceFailedError("storage", "quota exceeded", attempts=2)
        assert str(error) == "Resource 'storage' failed: quota exceeded"
        assert error.resource_id == "storage"
        assert error.attempts == 2

    @pytest.mark.asyncio
    async def test_to_dict(self, example_declarations: dict) -> None:
        backend = MockResourceBackend(permanent_failures={"storage"})
        state = InMemoryStateRecorder()

        result = await make_executor(backend, state).run(make_plan(example_declarations, state))
        data = result.to_dict()

        assert data["success"] is False
        assert data["summary"]["failed"] == 1
        assert data["summary"]["skipped_due_to_dependency_failure"] == 2
        assert [o["resourceId"] for o in data["outcomes"]] == [
            "backend",
            "env",
            "frontend",
            "storage",
        ]
