"""Run orchestration behind the infragraph CLI.

Each command function loads configuration-driven collaborators, runs, prints
its report and returns the process exit code:

    0  success
    1  configuration/state errors, or resources that did not succeed
    2  declaration, graph or plan errors (nothing was applied), or a
       secretless violation

SECRETLESS ARCHITECTURE:
The Azure backend authenticates with a managed identity only; see security.py.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
import time
from datetime import UTC, datetime
from typing import IO, Any

import click

from .backend import AzureResourceBackend, BackendError, ResourceBackend
from .config import Config, ConfigurationError
from .executor import Executor, RunResult
from .graph import PlanningError, ResourceGraph
from .models import ApplyRecord, ApplyStatus, Plan, PlanAction, to_display
from .planner import Planner
from .provenance import RunProvenance, get_provenance_logger
from .security import SecretlessViolationError, get_managed_identity_credential
from .spec_loader import SpecLoadError, load_declarations
from .state import FileStateRecorder, StateRecorder, StateStoreError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID = 2

ACTION_SYMBOLS = {
    PlanAction.CREATE: "+",
    PlanAction.UPDATE: "~",
    PlanAction.NOOP: "=",
    PlanAction.REUSE: "<",
}

# LogRecord attributes that are not user supplied extra fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable format with extra fields appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = [
            f"{key}={value}"
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_ATTRS and key != "asctime" and not key.startswith("_")
        ]
        return f"{line} {' '.join(extras)}" if extras else line


def setup_logging(
    level: str = "INFO", json_logs: bool = True, stream: IO[str] | None = None
) -> None:
    """Configure logging.

    Logs go to stderr by default so that command output on stdout stays
    machine readable.

    Args:
        level: Root log level name.
        json_logs: Emit JSON lines instead of text.
        stream: Target stream (defaults to stderr).
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JsonFormatter() if json_logs else TextFormatter())
    handler.set_name("infragraph")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "infragraph":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def create_backend(config: Config) -> ResourceBackend:
    """Build the Azure backend for the configured resource group.

    Raises:
        ConfigurationError: If backend settings are missing.
        SecretlessViolationError: If credential secrets are in the environment.
    """
    config.validate_for_apply()
    credential = get_managed_identity_credential(config.managed_identity_client_id)
    return AzureResourceBackend(
        credential=credential,
        subscription_id=config.subscription_id,
        resource_group_name=config.resource_group_name,
        location=config.location,
    )


def create_state_recorder(config: Config) -> StateRecorder:
    return FileStateRecorder(config.state_path)


def build_plan(config: Config, state: StateRecorder) -> Plan:
    """Load declarations and compute the plan against recorded state.

    Raises:
        SpecLoadError: If the declarations cannot be loaded.
        PlanningError: On cycles, unresolved references or missing reuse targets.
        StateStoreError: If recorded state cannot be read.
    """
    specs = load_declarations(config.declarations_path)
    graph = ResourceGraph.from_declarations(specs)
    return Planner().plan(graph, state.all())


def render_plan(plan: Plan) -> str:
    counts = plan.counts()
    lines = [
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['noop']} unchanged, {counts['reuse']} to reuse"
    ]
    for step in plan.steps:
        lines.append(
            f"  {ACTION_SYMBOLS[step.action]} {step.resource_id} ({step.kind.value}): {step.reason}"
        )
        if step.action.calls_backend:
            for name, value in sorted(to_display(step.parameters).items()):
                lines.append(f"      {name} = {json.dumps(value, default=str)}")
    return "\n".join(lines)


def render_result(result: RunResult) -> str:
    counts = result.counts()
    lines = []
    for resource_id in sorted(result.outcomes):
        outcome = result.outcomes[resource_id]
        line = f"  {resource_id}: {outcome.status.value} ({outcome.action.value})"
        if outcome.error:
            line += f" - {outcome.error}"
        lines.append(line)
    lines.append(
        f"Apply: {counts['succeeded']} succeeded, {counts['failed']} failed, "
        f"{counts['skipped_due_to_dependency_failure']} skipped, "
        f"{counts['not_started']} not started"
    )
    if result.cancelled:
        lines.append("Run was cancelled.")
    return "\n".join(lines)


def _report_invalid(error: Exception, provenance: RunProvenance | None = None) -> int:
    logger.error(
        "Declarations rejected",
        extra={
            "error": str(error),
            "error_type": type(error).__name__,
            "resource_ids": getattr(error, "resource_ids", []),
        },
    )
    click.echo(f"Error: {error}", err=True)
    if provenance is not None:
        provenance.record_error(error)
    return EXIT_INVALID


def _log_provenance(config: Config, provenance: RunProvenance, started: float) -> None:
    if not config.enable_audit_logging:
        return
    provenance.duration_seconds = time.monotonic() - started
    get_provenance_logger().log_provenance(provenance)


def run_plan(config: Config, *, json_output: bool = False) -> int:
    """Compute and print the plan. Never touches the backend."""
    started = time.monotonic()
    provenance = get_provenance_logger().create_provenance(
        "plan", config.declarations_path, config.subscription_id, config.resource_group_name
    )
    try:
        state = create_state_recorder(config)
        plan = build_plan(config, state)
    except (SpecLoadError, PlanningError) as e:
        exit_code = _report_invalid(e, provenance)
        _log_provenance(config, provenance, started)
        return exit_code
    except StateStoreError as e:
        logger.error("Failed to read state", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        provenance.record_error(e)
        _log_provenance(config, provenance, started)
        return EXIT_FAILURE

    provenance.plan_summary = plan.counts()
    _log_provenance(config, provenance, started)

    if json_output:
        click.echo(json.dumps(plan.to_dict(), indent=2, default=str))
    else:
        click.echo(render_plan(plan))
    return EXIT_OK


async def run_apply(config: Config, *, json_output: bool = False) -> int:
    """Plan, then apply the plan against the Azure backend."""
    started = time.monotonic()
    provenance = get_provenance_logger().create_provenance(
        "apply", config.declarations_path, config.subscription_id, config.resource_group_name
    )

    try:
        config.validate_for_apply()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILURE

    try:
        state = create_state_recorder(config)
        plan = build_plan(config, state)
    except (SpecLoadError, PlanningError) as e:
        exit_code = _report_invalid(e, provenance)
        _log_provenance(config, provenance, started)
        return exit_code
    except StateStoreError as e:
        logger.error("Failed to read state", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILURE
    provenance.plan_summary = plan.counts()

    try:
        backend = create_backend(config)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        click.echo(f"Error: {e}", err=True)
        return EXIT_INVALID

    executor = Executor.from_config(config, backend, state)

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        executor.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        result = await executor.run(plan)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)

    provenance.outcome_summary = result.counts()
    provenance.failed_resources = result.failed
    provenance.cancelled = result.cancelled
    _log_provenance(config, provenance, started)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    else:
        click.echo(render_result(result))
    return EXIT_OK if result.success else EXIT_FAILURE


def run_adopt(config: Config, resource_id: str, external_id: str) -> int:
    """Record an existing resource so it can be reused or managed.

    The resource must be declared; its outputs are read through the backend.
    """
    started = time.monotonic()
    provenance = get_provenance_logger().create_provenance(
        "adopt", config.declarations_path, config.subscription_id, config.resource_group_name
    )

    try:
        config.validate_for_apply()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILURE

    try:
        specs = load_declarations(config.declarations_path)
    except SpecLoadError as e:
        return _report_invalid(e, provenance)

    spec = specs.get(resource_id)
    if spec is None:
        click.echo(f"Error: resource '{resource_id}' is not declared", err=True)
        return EXIT_INVALID

    try:
        backend = create_backend(config)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        click.echo(f"Error: {e}", err=True)
        return EXIT_INVALID

    try:
        outputs = backend.read(spec.kind, external_id)
        now = datetime.now(UTC)
        record = ApplyRecord(
            resource_id=resource_id,
            kind=spec.kind,
            external_id=outputs.get("id") or external_id,
            outputs=outputs,
            status=ApplyStatus.SUCCEEDED,
            committed_at=now,
            updated_at=now,
        )
        create_state_recorder(config).put(resource_id, record)
    except (BackendError, StateStoreError) as e:
        logger.error(
            "Adopt failed",
            extra={"resource_id": resource_id, "external_id": external_id, "error": str(e)},
        )
        click.echo(f"Error: {e}", err=True)
        provenance.record_error(e)
        _log_provenance(config, provenance, started)
        return EXIT_FAILURE

    provenance.outcome_summary = {"adopted": 1}
    _log_provenance(config, provenance, started)
    click.echo(f"Adopted {resource_id} -> {record.external_id}")
    return EXIT_OK


def run_state_list(config: Config, *, json_output: bool = False) -> int:
    try:
        records = create_state_recorder(config).all()
    except StateStoreError as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILURE

    if json_output:
        payload = {rid: records[rid].to_json_dict() for rid in sorted(records)}
        click.echo(json.dumps(payload, indent=2))
        return EXIT_OK

    if not records:
        click.echo("No recorded resources.")
        return EXIT_OK
    for resource_id in sorted(records):
        record = records[resource_id]
        click.echo(
            f"{resource_id}\t{record.kind.value}\t{record.status.value}\t"
            f"{record.external_id or '-'}"
        )
    return EXIT_OK


def run_state_show(config: Config, resource_id: str) -> int:
    try:
        record = create_state_recorder(config).get(resource_id)
    except StateStoreError as e:
        click.echo(f"Error: {e}", err=True)
        return EXIT_FAILURE

    if record is None:
        click.echo(f"Error: no recorded state for '{resource_id}'", err=True)
        return EXIT_FAILURE
    click.echo(json.dumps(record.to_json_dict(), indent=2))
    return EXIT_OK
