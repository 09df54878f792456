"""Tests for logging setup and report rendering."""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator

import pytest

from infragraph.executor import OutcomeStatus, ResourceOutcome, RunResult
from infragraph.main import JsonFormatter, TextFormatter, render_result, setup_logging
from infragraph.models import PlanAction


@pytest.fixture(autouse=True)
def restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        "infragraph.executor", logging.INFO, __file__, 1, "Resource applied", (), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    """Tests for log formatters."""

    def test_json_includes_extra_fields(self) -> None:
        line = JsonFormatter().format(make_record(resource_id="storage", attempt=2))
        data = json.loads(line)

        assert data["message"] == "Resource applied"
        assert data["level"] == "INFO"
        assert data["logger"] == "infragraph.executor"
        assert data["resource_id"] == "storage"
        assert data["attempt"] == 2
        assert data["timestamp"].endswith("Z")

    def test_text_appends_extra_fields(self) -> None:
        line = TextFormatter().format(make_record(resource_id="storage"))
        assert "Resource applied" in line
        assert line.endswith("resource_id=storage")


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_installs_single_handler(self) -> None:
        stream = io.StringIO()
        setup_logging("WARNING", stream=stream)
        setup_logging("WARNING", stream=stream)

        root = logging.getLogger()
        assert [h.get_name() for h in root.handlers].count("infragraph") == 1
        assert root.level == logging.WARNING

        logging.getLogger("infragraph.test").warning("careful", extra={"resource_id": "db"})
        assert json.loads(stream.getvalue().splitlines()[-1])["resource_id"] == "db"


class TestRenderResult:
    """Tests for apply result rendering."""

    def test_summary(self) -> None:
        result = RunResult(
            outcomes={
                "db": ResourceOutcome(
                    "db", PlanAction.CREATE, OutcomeStatus.FAILED, error="denied"
                ),
                "api": ResourceOutcome(
                    "api", PlanAction.CREATE, OutcomeStatus.SKIPPED_DEPENDENCY_FAILED
                ),
            }
        )

        text = render_result(result)

        assert "  db: failed (create) - denied" in text
        assert "Apply: 0 succeeded, 1 failed, 1 skipped, 0 not started" in text
