"""Displacement constraint processing.

Constraints are applied in priority order:

1. Fixed (zero) supports eliminate function components.
2. Enforced non-zero displacements eliminate components and prescribe their
   values; the element loop folds ``-K_fc g`` into the right-hand side.
3. Penalty constraints keep their equations and add ``k n n^T`` to the
   stiffness and ``k n g`` to the right-hand side, with
   ``k = penalty_factor * max|diag K|``.

A constraint covers the vertex functions of its nodes and every edge and
face function whose entity lies entirely in its node set.  Higher modes of
covered entities are held at zero.

Local coordinate systems: with all three local components constrained, the
prescribed local values are rotated into global components and eliminated
(``u_g = R^T u_l``); with a partial mask each constrained local axis becomes
a penalty direction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from pstress.fea.errors import ConfigurationError
from pstress.fea.functions import VERTEX, FunctionSpace
from pstress.fea.model import DisplacementConstraint, Model
from pstress.fea.numbering import EquationNumbering

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConstraintSet:
    """Constraint state of one pass.

    Attributes
    ----------
    eliminated : (n_functions, 3)
        Components removed from the equation set.
    values : (n_functions, 3)
        Prescribed values of eliminated components, zero elsewhere.
    baseline : (n_functions, 3)
        ``values`` plus, in previous-solution mode, the carried-over free
        coefficients the solve will correct.
    penalty_functions, penalty_directions, penalty_targets
        One row per penalty term: function id, unit direction (3,) and the
        target value of ``n . u``.
    n_constraint_components : int
        Constrained vertex components, used by the soft-spring policy.
    """
    eliminated: NDArray[np.bool_]
    values: NDArray[np.float64]
    baseline: NDArray[np.float64]
    penalty_functions: NDArray[np.int64]
    penalty_directions: NDArray[np.float64]
    penalty_targets: NDArray[np.float64]
    n_constraint_components: int

    @property
    def n_functions(self) -> int:
        return int(self.eliminated.shape[0])

    @property
    def n_penalties(self) -> int:
        return int(self.penalty_functions.shape[0])

    @property
    def unconstrained(self) -> NDArray[np.bool_]:
        """(n_functions,) functions with at least one free component."""
        return ~self.eliminated.all(axis=1)

    @property
    def uses_previous_solution(self) -> bool:
        return not np.array_equal(self.baseline, self.values)


def element_constraint_load(
    Ke: NDArray[np.float64],
    dofs: NDArray[np.int64],
    baseline: NDArray[np.float64],
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    """Right-hand-side contribution ``-K_e g_e`` on the free rows of an element.

    ``baseline`` is the element slice of :attr:`ConstraintSet.baseline` in
    local DOF order.  Returns equation indices and values to add.
    """
    free = dofs >= 0
    if not baseline.any() or not free.any():
        return dofs[:0], baseline[:0]
    return dofs[free], -(Ke[free] @ baseline)


class ConstraintProcessor:
    """Turns the model's displacement constraints into a :class:`ConstraintSet`.

    Parameters
    ----------
    model : Model
        Source of constraints and nodes.
    penalty_factor : float
        Penalty spring stiffness relative to ``max|diag K|``.
    all_as_penalty : bool
        Apply every constraint as a penalty constraint.
    """

    def __init__(
        self,
        model: Model,
        penalty_factor: float = 1.0e8,
        all_as_penalty: bool = False,
    ) -> None:
        self._model = model
        self._penalty_factor = penalty_factor
        self._all_as_penalty = all_as_penalty

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _covered_functions(
        self, space: FunctionSpace, constraint: DisplacementConstraint
    ) -> list[tuple[int, bool]]:
        """(function id, is_vertex) pairs covered by a constraint."""
        nodes = [int(n) for n in constraint.nodes]
        for n in nodes:
            if n < 0 or n >= self._model.n_nodes:
                raise ConfigurationError(
                    f"Constraint {constraint.name!r} references node {n}, "
                    f"outside 0..{self._model.n_nodes - 1}"
                )
            if space.vertex_function(n) is None:
                raise ConfigurationError(
                    f"Constraint {constraint.name!r} references node {n}, "
                    "which carries no function in the current numbering"
                )
        return [
            (fid, space.functions[fid].entity[0] == VERTEX)
            for fid in space.functions_on_nodes(nodes)
        ]

    @staticmethod
    def _axes(constraint: DisplacementConstraint) -> Optional[NDArray[np.float64]]:
        if constraint.coordinate_system is None:
            return None
        R = np.asarray(constraint.coordinate_system, dtype=np.float64)
        if R.shape != (3, 3) or not np.allclose(R @ R.T, np.eye(3), atol=1e-9):
            raise ConfigurationError(
                f"Constraint {constraint.name!r}: coordinate_system must be "
                "an orthonormal 3x3 matrix"
            )
        return R

    def _is_penalty(
        self, constraint: DisplacementConstraint, R: Optional[NDArray[np.float64]]
    ) -> bool:
        if self._all_as_penalty or constraint.penalty:
            return True
        return R is not None and not all(constraint.components)

    def process(self, space: FunctionSpace) -> ConstraintSet:
        """Classify all model constraints for the functions of ``space``."""
        nf = space.n_functions
        eliminated = np.zeros((nf, 3), dtype=bool)
        values = np.zeros((nf, 3), dtype=np.float64)
        from_fixed = np.zeros((nf, 3), dtype=bool)
        vertex_components: set[tuple[int, int]] = set()

        fixed, enforced, penalty = [], [], []
        for c in self._model.constraints:
            R = self._axes(c)
            if self._is_penalty(c, R):
                penalty.append((c, R))
            elif c.is_enforced:
                enforced.append((c, R))
            else:
                fixed.append((c, R))

        for group, is_fixed in ((fixed, True), (enforced, False)):
            for c, R in group:
                if R is None:
                    mask = np.asarray(c.components, dtype=bool)
                    target = np.where(mask, np.asarray(c.values, dtype=np.float64), 0.0)
                else:
                    mask = np.ones(3, dtype=bool)
                    target = R.T @ np.asarray(c.values, dtype=np.float64)

                for fid, is_vertex in self._covered_functions(space, c):
                    value = target if is_vertex else np.zeros(3)
                    for k in np.flatnonzero(mask):
                        if is_vertex:
                            vertex_components.add((fid, int(k)))
                        if from_fixed[fid, k]:
                            if not is_fixed and value[k] != 0.0:
                                logger.warning(
                                    "Enforced displacement %r on function %d "
                                    "component %d overridden by a fixed support",
                                    c.name, fid, k,
                                )
                            continue
                        if eliminated[fid, k] and values[fid, k] != value[k]:
                            logger.warning(
                                "Enforced displacement %r on function %d "
                                "component %d conflicts with an earlier one; "
                                "keeping %.6g",
                                c.name, fid, k, values[fid, k],
                            )
                            continue
                        eliminated[fid, k] = True
                        values[fid, k] = value[k]
                        from_fixed[fid, k] = is_fixed

        p_funcs: list[int] = []
        p_dirs: list[NDArray[np.float64]] = []
        p_targets: list[float] = []
        for c, R in penalty:
            axes = np.eye(3) if R is None else R
            for fid, is_vertex in self._covered_functions(space, c):
                for k in range(3):
                    if not c.components[k]:
                        continue
                    if R is None and eliminated[fid, k]:
                        continue
                    p_funcs.append(fid)
                    p_dirs.append(axes[k])
                    p_targets.append(float(c.values[k]) if is_vertex else 0.0)
                    if is_vertex:
                        vertex_components.add((fid, k))

        cset = ConstraintSet(
            eliminated=eliminated,
            values=values,
            baseline=values.copy(),
            penalty_functions=np.array(p_funcs, dtype=np.int64),
            penalty_directions=np.array(p_dirs, dtype=np.float64).reshape(-1, 3),
            penalty_targets=np.array(p_targets, dtype=np.float64),
            n_constraint_components=len(vertex_components),
        )
        logger.info(
            "Constraints: %d fixed, %d enforced, %d penalty; "
            "%d components eliminated, %d penalty terms",
            len(fixed), len(enforced), len(penalty),
            int(eliminated.sum()), cset.n_penalties,
        )
        return cset

    # ------------------------------------------------------------------
    # Previous-solution mode
    # ------------------------------------------------------------------

    @staticmethod
    def superpose(
        cset: ConstraintSet, previous: NDArray[np.float64]
    ) -> ConstraintSet:
        """Start the pass from ``previous`` (n_functions, 3) coefficients.

        Free components take their carried-over values; eliminated ones
        keep their prescribed values.  The following solve then yields the
        increment to add to the carried-over solution.
        """
        if previous.shape != cset.values.shape:
            raise ValueError(
                f"Previous solution shape {previous.shape} does not match "
                f"{cset.values.shape}"
            )
        baseline = np.where(cset.eliminated, cset.values, previous)
        return replace(cset, baseline=baseline)

    # ------------------------------------------------------------------
    # Penalty springs
    # ------------------------------------------------------------------

    def apply_penalties(
        self,
        K: sp.csr_matrix,
        rhs: NDArray[np.float64],
        numbering: EquationNumbering,
        cset: ConstraintSet,
    ) -> tuple[sp.csr_matrix, float]:
        """Add penalty springs to ``K`` and ``rhs`` (modified in place).

        The spring on direction ``n`` of function ``f`` penalises
        ``n . u_f - g``; components of ``u_f`` that are eliminated enter
        with their baseline value.

        Returns
        -------
        K : scipy.sparse.csr_matrix
            Stiffness with the penalty block added.
        k : float
            The penalty stiffness used (0 when there are no penalty terms).
        """
        if cset.n_penalties == 0:
            return K, 0.0

        diag = np.abs(K.diagonal())
        k = self._penalty_factor * (float(diag.max()) if diag.size else 1.0)

        rows: list[NDArray[np.int64]] = []
        cols: list[NDArray[np.int64]] = []
        vals: list[NDArray[np.float64]] = []
        for fid, n, g in zip(
            cset.penalty_functions, cset.penalty_directions, cset.penalty_targets
        ):
            eqs = numbering.equations[fid]
            free = eqs >= 0
            if not free.any():
                continue
            base = cset.baseline[fid]
            residual = g - float(n @ base)
            ef = eqs[free]
            nf = n[free]
            rows.append(np.repeat(ef, ef.size))
            cols.append(np.tile(ef, ef.size))
            vals.append(k * np.outer(nf, nf).ravel())
            np.add.at(rhs, ef, k * nf * residual)

        if rows:
            penalty = sp.coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=K.shape,
            ).tocsr()
            K = (K + penalty).tocsr()

        logger.info(
            "Applied %d penalty terms with stiffness %.3e", cset.n_penalties, k
        )
        return K, k
