"""Analysis result container and plain-text pass report."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from pstress.fea.config import UnitSettings
from pstress.fea.passes import PassRecord
from pstress.fea.solution import StressMax


@dataclass
class AnalysisResult:
    """Outcome of an adaptive analysis run.

    ``state`` is the terminal controller state value: ``"converged"``,
    ``"max_iterations_reached"`` or ``"failed"``.  Stresses and lengths are
    stored in model units; :func:`format_report` applies ``units``.
    """
    state: str
    termination_reason: str
    passes: list[PassRecord]
    units: UnitSettings = field(default_factory=UnitSettings)
    coefficients: Optional[np.ndarray] = None      # (n_functions, 3)
    n_equations: int = 0
    stress_max: Optional[StressMax] = None
    max_error_element: Optional[int] = None
    singular_elements: list[int] = field(default_factory=list)
    max_displacement: float = 0.0
    max_displacement_node: Optional[int] = None
    error_message: Optional[str] = None
    failure_pass: Optional[int] = None
    failure_n_equations: Optional[int] = None
    failed_element: Optional[int] = None
    solve_time_s: float = 0.0
    metadata: dict = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.state == "converged"

    @property
    def failed(self) -> bool:
        return self.state == "failed"

    @property
    def best_pass(self) -> Optional[PassRecord]:
        if not self.passes:
            return None
        return min(self.passes, key=lambda r: (r.error, r.pass_number))

    @property
    def final_error(self) -> Optional[float]:
        return self.passes[-1].error if self.passes else None


def format_report(result: AnalysisResult) -> str:
    """Human-readable pass table, maxima and outcome."""
    u = result.units
    lines: list[str] = []
    lines.append("=" * 72)
    lines.append("P-ADAPTIVE STRESS ANALYSIS")
    lines.append("=" * 72)

    header = (
        f"{'Pass':>4s}  {'max p':>5s}  {'n_eq':>8s}  "
        f"{'error %':>9s}  {'max vM [' + u.stress_label + ']':>18s}"
    )
    lines.append(header)
    lines.append("-" * len(header))
    for r in result.passes:
        lines.append(
            f"{r.pass_number:>4d}  {r.max_p:>5d}  {r.n_equations:>8d}  "
            f"{100.0 * r.error:>9.3f}  {u.stress(r.max_stress):>18.6g}"
        )
    lines.append("")

    sm = result.stress_max
    if sm is not None and sm.element_id is not None:
        pos = ", ".join(f"{u.length(x):.6g}" for x in sm.position)
        lines.append(
            f"Max von Mises   : {u.stress(sm.value):.6g} {u.stress_label} "
            f"in element {sm.element_id} at ({pos}) {u.length_label}"
        )
        comps = ", ".join(f"{u.stress(c):.6g}" for c in sm.components)
        lines.append(f"Components      : [{comps}]")
        lines.append(
            f"Max eq. strain  : {sm.strain:.6g} in element {sm.strain_element_id}"
        )
    if result.max_displacement_node is not None:
        lines.append(
            f"Max displacement: {u.length(result.max_displacement):.6g} "
            f"{u.length_label} at node {result.max_displacement_node}"
        )
    if result.singular_elements:
        ids = ", ".join(str(eid) for eid in result.singular_elements)
        lines.append(f"Singular        : elements {ids} (excluded from error)")

    lines.append("-" * 72)
    lines.append(f"Outcome         : {result.state.upper()} ({result.termination_reason})")
    if result.failed:
        lines.append(f"Error           : {result.error_message}")
        lines.append(
            f"Failed in pass  : {result.failure_pass} "
            f"({result.failure_n_equations} equations)"
        )
    lines.append("=" * 72)
    return "\n".join(lines)
