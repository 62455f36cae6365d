import json
import logging
import sys

from health_truth.logging import JSONFormatter, TextFormatter, setup_logging
from health_truth.metrics import (
    get_metrics,
    record_handler_invocation,
    record_ingest_outcome,
    record_resync,
)


def _record(exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "health_truth.ingestion", logging.INFO, __file__, 1, "Ingested %s", ("manual_k1",), exc_info
    )
    record.__dict__.update(extra)
    return record


class TestFormatters:
    def test_json_nests_truth_extras_without_prefix(self):
        entry = json.loads(
            JSONFormatter().format(_record(truth_user_id="user-1", truth_outcome="created", other=1))
        )

        assert entry["message"] == "Ingested manual_k1"
        assert entry["level"] == "INFO"
        assert entry["service"] == "health-truth"
        assert entry["logger"] == "health_truth.ingestion"
        assert entry["context"] == {"user_id": "user-1", "outcome": "created"}

    def test_json_without_extras_has_no_context(self):
        assert "context" not in json.loads(JSONFormatter().format(_record()))

    def test_json_includes_error(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = _record(exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))

        assert entry["error"]["type"] == "ValueError"
        assert "ValueError: boom" in entry["error"]["traceback"]

    def test_text_appends_sorted_context(self):
        line = TextFormatter().format(_record(truth_user_id="user-1", truth_job_type="x"))
        assert line.endswith("Ingested manual_k1 [job_type=x user_id=user-1]")


def test_setup_logging_quiets_http_client():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        setup_logging("text", logging.DEBUG)
        assert isinstance(root.handlers[-1].formatter, TextFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        logging.getLogger("httpx").setLevel(logging.NOTSET)
        logging.getLogger("httpcore").setLevel(logging.NOTSET)


class TestMetrics:
    def test_ingestion_outcomes_are_counted(self):
        before = get_metrics()["ingestion"].get("metrics-test", {})
        record_ingest_outcome("metrics-test", "created")
        record_ingest_outcome("metrics-test", "created")
        record_ingest_outcome("metrics-test", "duplicate")

        counts = get_metrics()["ingestion"]["metrics-test"]
        assert counts["created"] == before.get("created", 0) + 2
        assert counts["duplicate"] == before.get("duplicate", 0) + 1

    def test_resync_runs_and_failures(self):
        record_resync("metrics-provider", success=True, fetched=5, written=3)
        record_resync("metrics-provider", success=False)

        stats = get_metrics()["resyncs"]["metrics-provider"]
        assert stats["runs"] >= 2
        assert stats["failures"] >= 1
        assert stats["written"] >= 3

    def test_handler_average_duration(self):
        record_handler_invocation("metrics_avg_handler", 10.0, True)
        record_handler_invocation("metrics_avg_handler", 20.0, False)

        stats = get_metrics()["handlers"]["metrics_avg_handler"]
        assert stats["invocations"] == 2
        assert stats["failures"] == 1
        assert stats["avg_duration_ms"] == 15.0

    def test_snapshot_is_a_copy(self):
        record_handler_invocation("metrics_copy_handler", 1.5, True)
        snapshot = get_metrics()
        snapshot["handlers"]["metrics_copy_handler"]["invocations"] = 999
        assert get_metrics()["handlers"]["metrics_copy_handler"]["invocations"] == 1
