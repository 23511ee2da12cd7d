"""Solution vector, per-function flags and the stress-max tracker.

:class:`SolutionStore` owns the solution of the current pass.  Positions
come from the equation numbering of the same pass, so an out-of-range
access is a programming error and raises ``IndexError``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from pstress.fea.functions import VERTEX, FunctionSpace
from pstress.fea.numbering import EquationNumbering


def _check_index(index: int, size: int, what: str) -> int:
    i = int(index)
    if i < 0 or i >= size:
        raise IndexError(f"{what} index {i} out of range 0..{size - 1}")
    return i


class SolutionStore:
    """Solution vector plus skip and unconstrained flags per function."""

    def __init__(self) -> None:
        self._u = np.zeros(0, dtype=np.float64)
        self._skip = np.zeros(0, dtype=bool)
        self._uncon = np.zeros(0, dtype=bool)

    def reset(
        self,
        n_equations: int,
        skip: NDArray[np.bool_],
        unconstrained: NDArray[np.bool_],
    ) -> None:
        """Size the store for a new pass and zero the solution."""
        self._u = np.zeros(n_equations, dtype=np.float64)
        self._skip = np.array(skip, dtype=bool)
        self._uncon = np.array(unconstrained, dtype=bool)

    # ------------------------------------------------------------------
    # Solution vector
    # ------------------------------------------------------------------

    @property
    def n_equations(self) -> int:
        return int(self._u.shape[0])

    @property
    def solution(self) -> NDArray[np.float64]:
        return self._u.copy()

    def get(self, equation: int) -> float:
        return float(self._u[_check_index(equation, self._u.size, "Equation")])

    def set(self, equation: int, value: float) -> None:
        self._u[_check_index(equation, self._u.size, "Equation")] = value

    def add(self, equation: int, value: float) -> None:
        self._u[_check_index(equation, self._u.size, "Equation")] += value

    def set_vector(self, values: NDArray[np.float64]) -> None:
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self._u.shape:
            raise ValueError(
                f"Solution shape {values.shape} does not match {self._u.shape}"
            )
        self._u[:] = values

    def add_vector(self, values: NDArray[np.float64]) -> None:
        values = np.asarray(values, dtype=np.float64)
        if values.shape != self._u.shape:
            raise ValueError(
                f"Increment shape {values.shape} does not match {self._u.shape}"
            )
        self._u += values

    # ------------------------------------------------------------------
    # Function flags
    # ------------------------------------------------------------------

    @property
    def n_functions(self) -> int:
        return int(self._skip.shape[0])

    def is_skipped(self, function_id: int) -> bool:
        return bool(self._skip[_check_index(function_id, self._skip.size, "Function")])

    def set_skipped(self, function_id: int, flag: bool = True) -> None:
        self._skip[_check_index(function_id, self._skip.size, "Function")] = flag

    def is_unconstrained(self, function_id: int) -> bool:
        return bool(self._uncon[_check_index(function_id, self._uncon.size, "Function")])

    def set_unconstrained(self, function_id: int, flag: bool = True) -> None:
        self._uncon[_check_index(function_id, self._uncon.size, "Function")] = flag

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def coefficients(
        self,
        numbering: EquationNumbering,
        prescribed: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Full (n_functions, 3) coefficient table.

        Free components come from the solution vector, eliminated ones from
        ``prescribed``.
        """
        if numbering.n_equations != self._u.size:
            raise ValueError(
                f"Numbering has {numbering.n_equations} equations, "
                f"store holds {self._u.size}"
            )
        table = np.array(prescribed, dtype=np.float64, copy=True)
        free = numbering.free
        table[free] = self._u[numbering.equations[free]]
        return table

    def coefficient(
        self,
        numbering: EquationNumbering,
        prescribed: NDArray[np.float64],
        function_id: int,
        component: int,
    ) -> float:
        """Displacement coefficient of one function component."""
        f = _check_index(function_id, numbering.n_functions, "Function")
        c = _check_index(component, 3, "Component")
        eq = numbering.equations[f, c]
        if eq < 0:
            return float(prescribed[f, c])
        return self.get(eq)

    @staticmethod
    def nodal_max_displacement(
        space: FunctionSpace, coefficients: NDArray[np.float64]
    ) -> tuple[float, Optional[int]]:
        """Largest vertex displacement magnitude and its node."""
        skip = space.skip
        best, node = 0.0, None
        for fn in space.functions:
            if fn.entity[0] != VERTEX or skip[fn.id]:
                continue
            mag = float(np.linalg.norm(coefficients[fn.id]))
            if node is None or mag > best:
                best, node = mag, int(fn.entity[1])
        return best, node

    def __repr__(self) -> str:
        return (
            f"SolutionStore(n_equations={self.n_equations}, "
            f"n_functions={self.n_functions})"
        )


# ---------------------------------------------------------------------------
# Stress-max tracking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StressMax:
    """Snapshot of the maximum stress and strain of a pass."""
    value: float
    components: tuple[float, ...]
    position: tuple[float, float, float]
    element_id: Optional[int]
    node_id: Optional[int]
    strain: float
    strain_element_id: Optional[int]


@dataclass
class StressMaxTracker:
    """Running maximum of von Mises stress and equivalent strain.

    Candidates only replace the current maximum when strictly greater, so
    visiting elements in ascending id breaks ties toward the lowest id.
    """
    value: float = 0.0
    components: NDArray[np.float64] = field(default_factory=lambda: np.zeros(6))
    position: NDArray[np.float64] = field(default_factory=lambda: np.zeros(3))
    element_id: Optional[int] = None
    node_id: Optional[int] = None
    strain: float = 0.0
    strain_element_id: Optional[int] = None

    def reset(self) -> None:
        self.value = 0.0
        self.components = np.zeros(6)
        self.position = np.zeros(3)
        self.element_id = None
        self.node_id = None
        self.strain = 0.0
        self.strain_element_id = None

    def update(
        self,
        value: float,
        components: NDArray[np.float64],
        position: NDArray[np.float64],
        element_id: int,
        node_id: Optional[int] = None,
    ) -> bool:
        if self.element_id is not None and not value > self.value:
            return False
        self.value = float(value)
        self.components = np.array(components, dtype=np.float64)
        self.position = np.array(position, dtype=np.float64)
        self.element_id = element_id
        self.node_id = node_id
        return True

    def update_strain(self, value: float, element_id: int) -> bool:
        if self.strain_element_id is not None and not value > self.strain:
            return False
        self.strain = float(value)
        self.strain_element_id = element_id
        return True

    def snapshot(self) -> StressMax:
        return StressMax(
            value=self.value,
            components=tuple(float(c) for c in self.components),
            position=tuple(float(x) for x in self.position),
            element_id=self.element_id,
            node_id=self.node_id,
            strain=self.strain,
            strain_element_id=self.strain_element_id,
        )
