"""Plan execution against the resource backend.

This module implements the apply phase:
1. Start every step whose dependencies all succeeded, up to the parallelism bound
2. Complete NOOP/REUSE steps in place (no backend call)
3. Resolve deferred parameters from the outputs of applied dependencies
4. Call the backend with bounded, exponential-backoff retries for transient errors
5. Commit successful applies to the state recorder
6. Cascade-skip dependents of failed steps while independent branches continue

A run never raises for a single resource failure; it returns a RunResult with
one outcome per resource.

SECURITY: Timeouts are enforced on every backend call to prevent indefinite hangs.
A call that times out is never retried while its worker thread is still running,
so no resource is targeted by two backend operations at once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backend import BackendError, PermanentBackendError, ResourceBackend, TransientBackendError
from .config import (
    DEFAULT_MAX_APPLY_ATTEMPTS,
    DEFAULT_MAX_PARALLELISM,
    DEFAULT_OPERATION_TIMEOUT_SECONDS,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    Config,
)
from .models import (
    ApplyRecord,
    ApplyStatus,
    ParameterRef,
    Plan,
    PlanAction,
    PlanStep,
    compute_parameter_hash,
    resolve_value,
)
from .state import StateRecorder, StateStoreError

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    """Final status of a resource within one run."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_DEPENDENCY_FAILED = "skipped_due_to_dependency_failure"
    NOT_STARTED = "not_started"


# Dependency outcomes that cascade-skip their dependents
_BLOCKING_STATUSES = frozenset({OutcomeStatus.FAILED, OutcomeStatus.SKIPPED_DEPENDENCY_FAILED})


class ResourceFailedError(Exception):
    """Raised when one resource cannot be applied.

    Local to that resource: its dependents are skipped, siblings continue.
    """

    def __init__(self, resource_id: str, message: str, attempts: int = 0) -> None:
        self.resource_id = resource_id
        self.attempts = attempts
        super().__init__(f"Resource '{resource_id}' failed: {message}")


@dataclass
class ResourceOutcome:
    """Outcome of a single resource in a run."""

    resource_id: str
    action: PlanAction
    status: OutcomeStatus
    attempts: int = 0
    error: str | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "resourceId": self.resource_id,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.blocked_by:
            data["blockedBy"] = self.blocked_by
        return data


@dataclass
class RunResult:
    """Result of applying a plan."""

    outcomes: dict[str, ResourceOutcome] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if every resource succeeded."""
        return all(o.status == OutcomeStatus.SUCCEEDED for o in self.outcomes.values())

    def ids_with_status(self, status: OutcomeStatus) -> list[str]:
        return sorted(rid for rid, o in self.outcomes.items() if o.status == status)

    @property
    def failed(self) -> list[str]:
        return self.ids_with_status(OutcomeStatus.FAILED)

    @property
    def skipped(self) -> list[str]:
        return self.ids_with_status(OutcomeStatus.SKIPPED_DEPENDENCY_FAILED)

    def counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes.values():
            counts[outcome.status.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "cancelled": self.cancelled,
            "durationSeconds": self.duration_seconds,
            "summary": self.counts(),
            "outcomes": [self.outcomes[rid].to_dict() for rid in sorted(self.outcomes)],
        }


class Executor:
    """Applies a validated plan with bounded parallelism.

    Scheduling happens on the event loop in ``run``. Backend calls run on the
    default thread pool; recorder reads and writes run on one dedicated
    worker thread, so they are serialized and never block the loop.
    """

    def __init__(
        self,
        backend: ResourceBackend,
        state: StateRecorder,
        *,
        max_parallelism: int = DEFAULT_MAX_PARALLELISM,
        max_attempts: int = DEFAULT_MAX_APPLY_ATTEMPTS,
        retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
        operation_timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the executor.

        Args:
            backend: Resource backend to apply against.
            state: Recorder that receives committed applies.
            max_parallelism: Maximum backend calls in flight.
            max_attempts: Attempts per backend call (first try included).
            retry_backoff_base_seconds: Base of the exponential backoff.
            operation_timeout_seconds: Timeout per backend call.
        """
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self._backend = backend
        self._state = state
        self._max_parallelism = max_parallelism
        self._max_attempts = max_attempts
        self._retry_backoff_base_seconds = retry_backoff_base_seconds
        self._operation_timeout_seconds = operation_timeout_seconds
        self._cancel_event = asyncio.Event()
        self._state_pool: ThreadPoolExecutor | None = None

    @classmethod
    def from_config(
        cls, config: Config, backend: ResourceBackend, state: StateRecorder
    ) -> Executor:
        return cls(
            backend,
            state,
            max_parallelism=config.max_parallelism,
            max_attempts=config.max_attempts,
            retry_backoff_base_seconds=config.retry_backoff_base_seconds,
            operation_timeout_seconds=config.operation_timeout_seconds,
        )

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Stop scheduling new steps; in-flight backend calls finish normally."""
        if not self._cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self._cancel_event.set()

    async def run(self, plan: Plan) -> RunResult:
        """Apply the plan.

        Args:
            plan: Plan produced by the Planner.

        Returns:
            RunResult with one outcome per plan step.
        """
        result = RunResult()
        outputs: dict[str, dict[str, Any]] = {}
        pending: list[PlanStep] = list(plan.steps)
        running: dict[asyncio.Task[ResourceOutcome], PlanStep] = {}

        logger.info(
            "Starting apply",
            extra={
                "step_count": len(plan.steps),
                "max_parallelism": self._max_parallelism,
                **plan.counts(),
            },
        )

        state_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="infragraph-state")
        self._state_pool = state_pool
        try:
            while pending or running:
                self._schedule(pending, running, outputs, result)

                if not running:
                    # Everything left is blocked on a dependency that never resolved
                    for step in pending:
                        self._finish(result, self._not_started(step))
                    pending.clear()
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    step = running.pop(task)
                    outcome = task.result()
                    if outcome.status == OutcomeStatus.SUCCEEDED:
                        outputs[step.resource_id] = outcome.outputs
                    self._finish(result, outcome)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.wait(running)
            state_pool.shutdown(wait=True)
            self._state_pool = None

        result.cancelled = self.cancelled
        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _schedule(
        self,
        pending: list[PlanStep],
        running: dict[asyncio.Task[ResourceOutcome], PlanStep],
        outputs: dict[str, dict[str, Any]],
        result: RunResult,
    ) -> None:
        """Settle and start every step that can move, until nothing changes."""
        progressed = True
        while progressed:
            progressed = False
            for step in list(pending):
                statuses = {dep: result.outcomes.get(dep) for dep in step.depends_on}
                blocked_by = sorted(
                    dep
                    for dep, outcome in statuses.items()
                    if outcome is not None and outcome.status in _BLOCKING_STATUSES
                )
                if blocked_by:
                    pending.remove(step)
                    self._finish(result, self._skipped(step, blocked_by))
                    progressed = True
                    continue

                if self.cancelled or any(
                    outcome is not None and outcome.status == OutcomeStatus.NOT_STARTED
                    for outcome in statuses.values()
                ):
                    pending.remove(step)
                    self._finish(result, self._not_started(step))
                    progressed = True
                    continue

                if any(outcome is None for outcome in statuses.values()):
                    continue

                if not step.action.calls_backend:
                    pending.remove(step)
                    outcome = self._complete_in_place(step)
                    outputs[step.resource_id] = outcome.outputs
                    self._finish(result, outcome)
                    progressed = True
                    continue

                if len(running) >= self._max_parallelism:
                    continue

                pending.remove(step)
                task = asyncio.create_task(self._apply_step(step, dict(outputs)))
                running[task] = step

    def _complete_in_place(self, step: PlanStep) -> ResourceOutcome:
        logger.info(
            "Resource unchanged",
            extra={"resource_id": step.resource_id, "action": step.action.value},
        )
        return ResourceOutcome(
            resource_id=step.resource_id,
            action=step.action,
            status=OutcomeStatus.SUCCEEDED,
            outputs=dict(step.prior_outputs),
        )

    async def _apply_step(
        self, step: PlanStep, outputs: dict[str, dict[str, Any]]
    ) -> ResourceOutcome:
        """Resolve, apply and record one create/update step. Never raises."""
        attempts = 0
        try:
            parameters = resolve_value(step.parameters, self._output_lookup(step, outputs))
            parameter_hash = compute_parameter_hash(step.kind, parameters)

            if (
                step.action == PlanAction.UPDATE
                and step.prior_hash == parameter_hash
                and await self._last_apply_succeeded(step.resource_id)
            ):
                logger.info(
                    "Resolved inputs unchanged, skipping update",
                    extra={"resource_id": step.resource_id},
                )
                return ResourceOutcome(
                    resource_id=step.resource_id,
                    action=PlanAction.NOOP,
                    status=OutcomeStatus.SUCCEEDED,
                    outputs=dict(step.prior_outputs),
                )

            await self._record(self._state.mark_pending, step.resource_id, step.kind)
            new_outputs, attempts = await self._call_with_retry(step, parameters)

            now = datetime.now(UTC)
            record = ApplyRecord(
                resource_id=step.resource_id,
                kind=step.kind,
                external_id=new_outputs.get("id") or step.external_id,
                parameter_hash=parameter_hash,
                outputs=new_outputs,
                status=ApplyStatus.SUCCEEDED,
                committed_at=now,
                updated_at=now,
            )
            await self._record(self._state.put, step.resource_id, record)

            return ResourceOutcome(
                resource_id=step.resource_id,
                action=step.action,
                status=OutcomeStatus.SUCCEEDED,
                attempts=attempts,
                outputs=new_outputs,
            )

        except ResourceFailedError as e:
            return await self._fail(step, str(e), e.attempts)
        except StateStoreError as e:
            logger.error(
                "State could not be recorded",
                extra={"resource_id": step.resource_id, "error": str(e)},
            )
            return await self._fail(step, f"state could not be recorded: {e}", attempts)

    async def _fail(self, step: PlanStep, error: str, attempts: int) -> ResourceOutcome:
        try:
            await self._record(self._state.mark_failed, step.resource_id, step.kind, error)
        except StateStoreError as e:
            logger.error(
                "Failure could not be recorded",
                extra={"resource_id": step.resource_id, "error": str(e)},
            )
            error = f"{error}; failure not recorded: {e}"
        return ResourceOutcome(
            resource_id=step.resource_id,
            action=step.action,
            status=OutcomeStatus.FAILED,
            attempts=attempts,
            error=error,
        )

    async def _record(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Run a recorder call on the state worker thread."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._state_pool, operation, *args)

    async def _last_apply_succeeded(self, resource_id: str) -> bool:
        record = await self._record(self._state.get, resource_id)
        return record is not None and record.succeeded

    def _output_lookup(
        self, step: PlanStep, outputs: dict[str, dict[str, Any]]
    ) -> Callable[[ParameterRef], Any]:
        def lookup(ref: ParameterRef) -> Any:
            found, value = ref.lookup(outputs.get(ref.resource_id, {}))
            if found:
                return value
            if ref.has_fallback:
                return ref.fallback
            raise ResourceFailedError(
                step.resource_id,
                f"output '{ref.expression}' was not returned by '{ref.resource_id}'",
            )

        return lookup

    async def _call_with_retry(
        self, step: PlanStep, parameters: dict[str, Any]
    ) -> tuple[dict[str, Any], int]:
        """Call the backend with exponential backoff for transient failures.

        Returns:
            Tuple of (outputs, attempts used).

        Raises:
            ResourceFailedError: On a permanent failure or exhausted retries.
        """
        last_error: TransientBackendError | None = None

        for attempt in range(1, self._max_attempts + 1):
            try:
                new_outputs = await self._invoke(step, parameters)
                logger.info(
                    "Resource applied",
                    extra={
                        "resource_id": step.resource_id,
                        "action": step.action.value,
                        "attempt": attempt,
                    },
                )
                return new_outputs, attempt
            except PermanentBackendError as e:
                logger.error(
                    "Permanent backend failure",
                    extra={"resource_id": step.resource_id, "error": str(e)},
                )
                raise ResourceFailedError(step.resource_id, str(e), attempts=attempt) from e
            except TransientBackendError as e:
                last_error = e

                if attempt < self._max_attempts and not self.cancelled:
                    # Exponential backoff with jitter
                    backoff = self._retry_backoff_base_seconds * (2 ** (attempt - 1))
                    jitter = random.uniform(0, backoff * 0.2)
                    wait_time = backoff + jitter

                    logger.warning(
                        "Transient backend failure, retrying",
                        extra={
                            "resource_id": step.resource_id,
                            "attempt": attempt,
                            "max_attempts": self._max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )

                    if await self._backoff(wait_time):
                        continue

                reason = "cancelled before retry" if self.cancelled else "retries exhausted"
                raise ResourceFailedError(
                    step.resource_id, f"{reason}: {e}", attempts=attempt
                ) from e

        # SAFETY: the loop always returns or raises; max_attempts >= 1
        raise ResourceFailedError(
            step.resource_id, f"retries exhausted: {last_error}", attempts=self._max_attempts
        )

    async def _invoke(self, step: PlanStep, parameters: dict[str, Any]) -> dict[str, Any]:
        """Run one backend call on a worker thread with a timeout."""
        loop = asyncio.get_running_loop()

        if step.action == PlanAction.CREATE or step.external_id is None:
            call: Callable[[], dict[str, Any]] = lambda: self._backend.create(  # noqa: E731
                step.kind, parameters
            )
        else:
            external_id = step.external_id
            call = lambda: self._backend.update(step.kind, external_id, parameters)  # noqa: E731

        # The worker thread cannot be interrupted; shield the future so a
        # timeout stops waiting without losing track of the call.
        future = loop.run_in_executor(None, call)
        timeout = self._operation_timeout_seconds
        try:
            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
            except TimeoutError:
                logger.error(
                    "Backend call timed out, waiting for it to settle",
                    extra={"resource_id": step.resource_id, "timeout_seconds": timeout},
                )

            try:
                new_outputs = await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
            except TimeoutError as e:
                future.add_done_callback(lambda f: self._log_abandoned_call(step, f))
                raise PermanentBackendError(
                    f"{step.action.value} timed out after {timeout}s and is still running"
                ) from e

            logger.warning(
                "Backend call completed after timeout",
                extra={"resource_id": step.resource_id, "timeout_seconds": timeout},
            )
            return new_outputs
        except BackendError:
            raise
        except Exception as e:
            logger.exception(
                "Unexpected backend error",
                extra={"resource_id": step.resource_id},
            )
            raise PermanentBackendError(f"{type(e).__name__}: {e}") from e

    async def _backoff(self, seconds: float) -> bool:
        """Wait before the next attempt.

        Returns:
            False if the run was cancelled before or during the wait.
        """
        if not self.cancelled:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        return not self.cancelled

    def _log_abandoned_call(self, step: PlanStep, future: asyncio.Future[Any]) -> None:
        error = None if future.cancelled() else future.exception()
        logger.warning(
            "Timed out backend call finished",
            extra={
                "resource_id": step.resource_id,
                "action": step.action.value,
                "error": str(error) if error is not None else None,
            },
        )

    def _skipped(self, step: PlanStep, blocked_by: list[str]) -> ResourceOutcome:
        logger.warning(
            "Skipping resource, dependency did not succeed",
            extra={"resource_id": step.resource_id, "blocked_by": blocked_by},
        )
        return ResourceOutcome(
            resource_id=step.resource_id,
            action=step.action,
            status=OutcomeStatus.SKIPPED_DEPENDENCY_FAILED,
            error=f"dependency did not succeed: {', '.join(blocked_by)}",
            blocked_by=blocked_by,
        )

    def _not_started(self, step: PlanStep) -> ResourceOutcome:
        return ResourceOutcome(
            resource_id=step.resource_id,
            action=step.action,
            status=OutcomeStatus.NOT_STARTED,
            error="run cancelled before this step started",
        )

    def _finish(self, result: RunResult, outcome: ResourceOutcome) -> None:
        result.outcomes[outcome.resource_id] = outcome

    def _log_result(self, result: RunResult) -> None:
        """Log run result with structured data."""
        extra: dict[str, Any] = {
            "duration_seconds": result.duration_seconds,
            "cancelled": result.cancelled,
            **result.counts(),
        }
        if result.failed:
            extra["failed"] = result.failed
            logger.error("Apply finished with failures", extra=extra)
        elif not result.success:
            logger.warning("Apply finished incomplete", extra=extra)
        else:
            logger.info("Apply finished", extra=extra)
