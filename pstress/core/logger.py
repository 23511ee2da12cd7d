"""Run logs for adaptive analyses.

Each :class:`StructuredLogger` owns a directory holding

* ``app.log``: rotating human-readable log of the run,
* ``events.jsonl``: one JSON object per controller event,
* ``passes.jsonl``: one JSON object per completed adaptive pass.

The JSON-lines files are appended to, so several runs may share a
directory and are told apart by ``run_id``.
"""
from __future__ import annotations

import itertools
import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

APP_LOG = "app.log"
EVENTS_FILE = "events.jsonl"
PASSES_FILE = "passes.jsonl"

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_MAX_BYTES = 10 * 1024 * 1024
_BACKUPS = 5

_instance_ids = itertools.count(1)


class StructuredLogger:
    def __init__(self, log_dir: str = "data/logs", level: str = "INFO"):
        os.makedirs(log_dir, exist_ok=True)
        self._log_dir = log_dir
        self._app_logger = logging.getLogger(f"pstress.run.{next(_instance_ids)}")
        self._app_logger.propagate = False
        self._app_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
        handler = RotatingFileHandler(
            os.path.join(log_dir, APP_LOG), maxBytes=_MAX_BYTES, backupCount=_BACKUPS
        )
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        self._app_logger.addHandler(handler)

    @property
    def app(self) -> logging.Logger:
        return self._app_logger

    @property
    def log_dir(self) -> str:
        return self._log_dir

    def close(self) -> None:
        for handler in list(self._app_logger.handlers):
            handler.close()
            self._app_logger.removeHandler(handler)

    # -- JSON lines -----------------------------------------------------

    def _append(self, filename: str, run_id: str, event_type: str, **fields) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "run_id": run_id,
            "event_type": event_type,
            **fields,
        }
        with open(os.path.join(self._log_dir, filename), "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def log_event(self, run_id: str, event_type: str, data: Optional[dict] = None) -> None:
        self._append(EVENTS_FILE, run_id, event_type, data=data or {})

    def log_pass(
        self,
        run_id: str,
        pass_record: dict,
        metadata: Optional[dict] = None,
    ) -> None:
        """Append one pass record and echo a one-line summary to ``app.log``."""
        self._append(
            PASSES_FILE, run_id, "analysis.pass",
            **{"pass": pass_record, "metadata": metadata or {}},
        )
        self._app_logger.info(
            "Pass %s: max_p=%s n_equations=%s error=%s max_stress=%s",
            pass_record.get("pass_number"),
            pass_record.get("max_p"),
            pass_record.get("n_equations"),
            pass_record.get("error"),
            pass_record.get("max_stress"),
        )

    def read_records(self, filename: str, run_id: Optional[str] = None) -> list[dict]:
        """Parse a JSON-lines file of this directory, optionally for one run."""
        path = os.path.join(self._log_dir, filename)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as f:
            records = [json.loads(line) for line in f if line.strip()]
        if run_id is not None:
            records = [r for r in records if r.get("run_id") == run_id]
        return records
