from __future__ import annotations
import json
import os
import pytest
from pstress.core.logger import EVENTS_FILE, PASSES_FILE, StructuredLogger

class TestStructuredLogger:
    def test_log_event(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        logger = StructuredLogger(log_dir=log_dir)
        logger.log_event(run_id="run1", event_type="analysis.state",
                         data={"from": "initializing", "to": "numbering"})
        events_file = os.path.join(log_dir, "events.jsonl")
        assert os.path.exists(events_file)
        with open(events_file) as f:
            record = json.loads(f.readline())
        assert record["event_type"] == "analysis.state"
        assert record["run_id"] == "run1"
        assert record["data"]["to"] == "numbering"
        assert "timestamp" in record

    def test_log_pass(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        logger = StructuredLogger(log_dir=log_dir)
        logger.log_pass(run_id="run2",
                        pass_record={"pass_number": 1, "max_p": 2, "n_equations": 120,
                                     "error": 0.12, "max_stress": 3.5e7},
                        metadata={"global_error_element": 4})
        passes_file = os.path.join(log_dir, "passes.jsonl")
        with open(passes_file) as f:
            record = json.loads(f.readline())
        assert record["pass"]["n_equations"] == 120
        assert record["metadata"]["global_error_element"] == 4

    def test_multiple_entries(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        logger = StructuredLogger(log_dir=log_dir)
        for i in range(5):
            logger.log_event(run_id="r%d" % i, event_type="test", data={"i": i})
        with open(os.path.join(log_dir, "events.jsonl")) as f:
            lines = f.readlines()
        assert len(lines) == 5

    def test_app_log_written(self, tmp_path):
        log_dir = str(tmp_path / "logs")
        logger = StructuredLogger(log_dir=log_dir)
        logger.app.info("hello")
        for handler in logger.app.handlers:
            handler.flush()
        with open(os.path.join(log_dir, "app.log")) as f:
            assert "hello" in f.read()

    def test_read_records_filters_by_run(self, tmp_path):
        logger = StructuredLogger(log_dir=str(tmp_path))
        logger.log_event(run_id="a", event_type="analysis.state", data={"to": "numbering"})
        logger.log_event(run_id="b", event_type="analysis.state", data={"to": "numbering"})
        logger.log_event(run_id="a", event_type="analysis.state", data={"to": "assembling"})
        records = logger.read_records(EVENTS_FILE, run_id="a")
        assert [r["data"]["to"] for r in records] == ["numbering", "assembling"]
        assert len(logger.read_records(EVENTS_FILE)) == 3
        assert logger.read_records(PASSES_FILE) == []

    def test_instances_do_not_share_handlers(self, tmp_path):
        first = StructuredLogger(log_dir=str(tmp_path / "one"))
        second = StructuredLogger(log_dir=str(tmp_path / "two"))
        assert first.app is not second.app
        second.app.warning("only in two")
        for handler in second.app.handlers:
            handler.flush()
        assert "only in two" not in (tmp_path / "one" / "app.log").read_text()
        assert "only in two" in (tmp_path / "two" / "app.log").read_text()

    def test_close_detaches_handlers(self, tmp_path):
        logger = StructuredLogger(log_dir=str(tmp_path))
        logger.close()
        assert logger.app.handlers == []
