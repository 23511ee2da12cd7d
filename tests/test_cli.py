"""CLI interface tests."""
from __future__ import annotations

import json
import os
import subprocess
import sys

_CLI_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "cli.py")


def _run_cli(*args, timeout=120):
    return subprocess.run(
        [sys.executable, _CLI_PATH, *args],
        capture_output=True, text=True, timeout=timeout,
    )


class TestCLI:
    def test_version(self):
        result = _run_cli("--version")
        assert result.returncode == 0
        assert "pstress v0.1.0" in result.stdout

    def test_help(self):
        result = _run_cli("--help")
        assert result.returncode == 0
        assert "run" in result.stdout

    def test_no_command_prints_help(self):
        result = _run_cli()
        assert result.returncode == 0
        assert "usage" in result.stdout.lower()

    def test_run_small_cantilever(self, tmp_path):
        log_dir = tmp_path / "logs"
        summary = tmp_path / "out" / "summary.json"
        result = _run_cli(
            "run", "--divisions", "2", "1", "1", "--max-passes", "2",
            "--log-dir", str(log_dir), "--json", str(summary),
        )
        assert result.returncode == 0, result.stderr
        assert "P-ADAPTIVE STRESS ANALYSIS" in result.stdout
        assert "Outcome" in result.stdout
        assert "  pass 1: p<=" in result.stdout

        data = json.loads(summary.read_text())
        assert data["state"] in ("converged", "max_iterations_reached")
        assert 1 <= len(data["passes"]) <= 2
        assert data["passes"][0]["pass_number"] == 1
        assert data["max_displacement"] > 0.0

        assert (log_dir / "passes.jsonl").exists()
        assert (log_dir / "events.jsonl").exists()

    def test_run_with_config_file(self, tmp_path):
        cfg = tmp_path / "settings.yaml"
        cfg.write_text(
            "analysis:\n  uniform: true\n  adapt_loop_max: 1\n"
            "units:\n  stress_conversion: 1.0e-6\n  stress_label: MPa\n"
        )
        result = _run_cli(
            "run", "--config", str(cfg), "--divisions", "1", "1", "1",
            "--log-dir", str(tmp_path / "logs"),
        )
        assert result.returncode == 0, result.stderr
        assert "MPa" in result.stdout

    def test_unknown_material(self, tmp_path):
        result = _run_cli(
            "run", "--material", "Unobtainium", "--log-dir", str(tmp_path),
        )
        assert result.returncode == 2
        assert "Configuration error" in result.stderr

    def test_config_prints_effective_settings(self, tmp_path):
        cfg = tmp_path / "settings.yaml"
        cfg.write_text("analysis:\n  max_p: 5\n")
        result = _run_cli("config", "--config", str(cfg))
        assert result.returncode == 0, result.stderr
        assert "max_p: 5" in result.stdout
        assert "adapt_loop_max: 3" in result.stdout
