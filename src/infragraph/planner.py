"""Plan computation: ordering, classification and lazy parameter resolution.

The planner walks the graph in its deterministic topological order and
classifies every resource:

1. deployNew is false           -> REUSE (outputs come from recorded state)
2. no committed prior record     -> CREATE
3. prior apply failed/pending    -> UPDATE
4. inputs known only after apply -> UPDATE (executor may downgrade to noop)
5. parameter hash changed        -> UPDATE
6. otherwise                     -> NOOP

References are resolved in plan order: outputs of REUSE/NOOP dependencies
come from their apply records, outputs of CREATE/UPDATE dependencies stay
deferred until the executor has applied them. All validation happens here,
before any backend call.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .graph import PlanningError, ResourceGraph, UnresolvedReferenceError
from .models import (
    ApplyRecord,
    DeferredValue,
    ParameterRef,
    Plan,
    PlanAction,
    PlanStep,
    ResourceSpec,
    compute_parameter_hash,
    contains_deferred,
    resolve_value,
)

logger = logging.getLogger(__name__)


class MissingReuseTargetError(PlanningError):
    """Raised when a reused resource has no recorded state to reuse."""

    def __init__(self, resource_ids: list[str], detail: str | None = None) -> None:
        self.resource_ids = sorted(resource_ids)
        message = detail or (
            f"Resources marked deployNew=false have no recorded state to reuse: "
            f"{self.resource_ids}. Adopt them first or set deployNew=true."
        )
        super().__init__(message)


class Planner:
    """Derives a Plan from a validated graph and prior apply records.

    Planning reads records and never mutates them, so calling ``plan`` twice
    with the same inputs yields equal plans.
    """

    def plan(self, graph: ResourceGraph, records: Mapping[str, ApplyRecord]) -> Plan:
        """Compute the plan.

        Args:
            graph: Validated resource graph.
            records: Prior apply records keyed by resource id.

        Returns:
            Plan with one step per resource in topological order.

        Raises:
            CycleError: If the graph has a cycle.
            MissingReuseTargetError: If a reused resource or a reused output
                has nothing recorded.
            UnresolvedReferenceError: If a referenced output of an unchanged
                resource is not recorded.
        """
        order = graph.topological_sort()
        self._validate_reuse_targets(graph, records)

        steps: dict[str, PlanStep] = {}
        for resource_id in order:
            node = graph.nodes[resource_id]
            step = self._plan_step(node.spec, node.depends_on, records.get(resource_id), steps)
            steps[resource_id] = step
            logger.debug(
                "Planned resource",
                extra={
                    "resource_id": resource_id,
                    "action": step.action.value,
                    "reason": step.reason,
                },
            )

        plan = Plan(steps=tuple(steps[resource_id] for resource_id in order))
        logger.info("Plan computed", extra={"order": plan.order, **plan.counts()})
        return plan

    def _validate_reuse_targets(
        self, graph: ResourceGraph, records: Mapping[str, ApplyRecord]
    ) -> None:
        """Fail up front for every reused resource without matching committed state."""
        missing: list[str] = []
        mismatched: dict[str, str] = {}
        for resource_id, node in graph.nodes.items():
            if node.spec.conditional:
                continue
            record = records.get(resource_id)
            if record is None or not record.is_committed:
                missing.append(resource_id)
            elif record.kind != node.spec.kind:
                mismatched[resource_id] = (
                    f"'{resource_id}' is declared as {node.spec.kind.value} "
                    f"but recorded as {record.kind.value}"
                )

        if missing:
            logger.error(
                "Reuse targets missing from recorded state",
                extra={"resource_ids": sorted(missing)},
            )
            raise MissingReuseTargetError(missing)

        if mismatched:
            logger.error(
                "Reuse targets recorded with a different kind",
                extra={"resource_ids": sorted(mismatched)},
            )
            raise MissingReuseTargetError(
                list(mismatched),
                "Reused resources do not match their recorded kind: "
                + "; ".join(mismatched[rid] for rid in sorted(mismatched)),
            )

    def _plan_step(
        self,
        spec: ResourceSpec,
        depends_on: list[str],
        record: ApplyRecord | None,
        planned: Mapping[str, PlanStep],
    ) -> PlanStep:
        def lookup(ref: ParameterRef) -> Any:
            return self._lookup_output(spec.id, ref, planned[ref.resource_id])

        parameters = resolve_value(spec.parameters, lookup)
        action, reason = self._classify(spec, record, parameters)
        parameter_hash = (
            None if contains_deferred(parameters) else compute_parameter_hash(spec.kind, parameters)
        )

        return PlanStep(
            resource_id=spec.id,
            kind=spec.kind,
            action=action,
            parameters=parameters,
            parameter_hash=parameter_hash,
            depends_on=tuple(depends_on),
            external_id=record.external_id if record is not None else None,
            prior_hash=record.parameter_hash if record is not None else None,
            prior_outputs=dict(record.outputs) if record is not None else {},
            reason=reason,
        )

    def _classify(
        self,
        spec: ResourceSpec,
        record: ApplyRecord | None,
        parameters: dict[str, Any],
    ) -> tuple[PlanAction, str]:
        if not spec.conditional:
            return PlanAction.REUSE, "deployNew is false; reusing recorded resource"

        if record is None or record.external_id is None:
            return PlanAction.CREATE, "no prior apply recorded"

        if record.kind != spec.kind:
            return PlanAction.CREATE, f"kind changed from {record.kind.value}"

        if not record.succeeded:
            return PlanAction.UPDATE, f"previous apply is {record.status.value}"

        if contains_deferred(parameters):
            return PlanAction.UPDATE, "inputs known only after dependencies apply"

        if compute_parameter_hash(spec.kind, parameters) != record.parameter_hash:
            return PlanAction.UPDATE, "parameters changed"

        return PlanAction.NOOP, "parameters unchanged"

    def _lookup_output(self, resource_id: str, ref: ParameterRef, target: PlanStep) -> Any:
        """Resolve one reference against the already planned target step."""
        if target.action.calls_backend:
            return DeferredValue(ref)

        found, value = ref.lookup(target.prior_outputs)
        if found:
            return value
        if ref.has_fallback:
            logger.info(
                "Reference resolved to fallback",
                extra={"resource_id": resource_id, "reference": ref.expression},
            )
            return ref.fallback

        if target.action == PlanAction.REUSE:
            raise MissingReuseTargetError(
                [target.resource_id],
                f"Resource '{target.resource_id}' is reused but has no recorded output "
                f"'{ref.output}' required by '{resource_id}'",
            )
        raise UnresolvedReferenceError(
            resource_id,
            target.resource_id,
            f"references output '{ref.expression}' which is not recorded for "
            f"'{target.resource_id}'",
        )
