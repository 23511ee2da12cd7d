"""A-posteriori error estimation and stress-max search.

The :class:`ErrorEstimator` adapter calls an external :class:`ErrorChecker`
for per-element error indicators, combines them into one global scalar and
decides which elements need a higher polynomial order.

Combination rule
----------------
For element E with smoothed-stress raw error ``r_E`` and face-jump error
``j_E`` (both fractions of the model's maximum von Mises stress)::

    e_E    = max(r_E, j_E)
    global = max of e_E over the non-singular elements

The rule is the same in every pass, so pass errors are comparable.

Order increase
--------------
An element with ``e_E > tol`` below its order cap is raised by
``ceil(log2(e_E / tol))`` orders, clamped to ``[1, max_p_jump]`` and to the
cap.  The cap is ``max_p``, lowered to ``max_p_low_stress`` for elements
whose peak stress is below ``low_stress_fraction`` of the model maximum and
to ``max_p_final_pass`` when the next pass is the last one.

Singular elements
-----------------
Near a stress singularity (re-entrant corner, point support) the error of
an element hardly drops when its order is raised.  With
``detect_singularities`` such elements are flagged once and stay flagged:
they are skipped by order raising and by the global error.

Reference checker
-----------------
:class:`SmoothedStressErrorChecker` projects element stresses onto the
continuous scalar space of the smoothing numbering (global L2 projection,
one scalar field per Voigt component) and measures:

- raw error: RMS over the element of ``vm(sigma_h - sigma*)``
- face jump: RMS over each face shared with another active element of
  ``vm(sigma_a - sigma_b)``, maximum over the element's faces
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from pstress.fea.config import AdaptivitySettings
from pstress.fea.elements import HierarchicTetEvaluator
from pstress.fea.functions import FunctionSpace
from pstress.fea.model import Element, Model
from pstress.fea.numbering import EquationNumbering
from pstress.fea.quadrature import triangle_rule
from pstress.fea.solution import StressMax, StressMaxTracker
from pstress.fea.stress_recovery import SAMPLE_POINTS, equivalent_strain, von_mises

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ElementError:
    """Error indicators and peak von Mises stress of one element."""
    element_id: int
    raw: float
    face_jump: float
    max_stress: float = 0.0

    @property
    def combined(self) -> float:
        return max(self.raw, self.face_jump)


@dataclass(frozen=True)
class ErrorEstimate:
    """Per-element errors, the global error and the maxima of one pass."""
    elements: dict[int, ElementError]
    global_error: float
    max_error_element: Optional[int]
    stress_max: StressMax
    singular: frozenset[int] = frozenset()

    def error_of(self, element_id: int) -> float:
        err = self.elements.get(element_id)
        return err.combined if err is not None else 0.0

    def stress_of(self, element_id: int) -> float:
        err = self.elements.get(element_id)
        return err.max_stress if err is not None else 0.0

    @property
    def max_raw_error(self) -> float:
        if self.max_error_element is None:
            return 0.0
        return self.elements[self.max_error_element].raw

    @property
    def max_face_jump(self) -> float:
        if self.max_error_element is None:
            return 0.0
        return self.elements[self.max_error_element].face_jump


class ErrorChecker(Protocol):
    """External a-posteriori error checker."""

    def element_errors(
        self,
        model: Model,
        space: FunctionSpace,
        numbering: EquationNumbering,
        coefficients: NDArray[np.float64],
        max_stress: float,
    ) -> dict[int, tuple[float, float]]:
        """(raw, face_jump) per active element id, as fractions of ``max_stress``."""
        ...


# ---------------------------------------------------------------------------
# Reference checker
# ---------------------------------------------------------------------------


class SmoothedStressErrorChecker:
    """Smoothed-stress and face-jump error indicators."""

    def __init__(self, evaluator: HierarchicTetEvaluator) -> None:
        self._evaluator = evaluator

    def element_errors(self, model, space, numbering, coefficients, max_stress):
        t0 = time.perf_counter()
        elements = model.active_elements()
        if max_stress <= 0.0:
            return {e.id: (0.0, 0.0) for e in elements}

        samples = self._sample(elements, space, coefficients)
        smoothed = self._smooth(samples, numbering)

        errors: dict[int, tuple[float, float]] = {}
        jumps = self._face_jumps(elements, space, coefficients)
        for e in elements:
            ef, N, sigma, wdet = samples[e.id]
            sigma_star = N @ smoothed[numbering.element_smooth_dofs(ef)]
            vm = von_mises(sigma - sigma_star)
            raw = math.sqrt(float(wdet @ vm ** 2) / float(wdet.sum()))
            errors[e.id] = (raw / max_stress, jumps.get(e.id, 0.0) / max_stress)

        logger.debug(
            "Error check of %d elements in %.3fs",
            len(elements),
            time.perf_counter() - t0,
        )
        return errors

    def _sample(self, elements, space, coefficients):
        ev = self._evaluator
        samples = {}
        for e in elements:
            ef = space.element_functions(e.id)
            lam, w = ev.quadrature(ef)
            N, _, det = ev.shape_gradients(e, ef, lam)
            sigma = ev.stresses(e, ef, coefficients[ef.function_ids], lam)
            samples[e.id] = (ef, N, sigma, w * det)
        return samples

    @staticmethod
    def _smooth(samples, numbering: EquationNumbering) -> NDArray[np.float64]:
        """L2 projection of element stresses: (n_smooth_equations, 6)."""
        n_s = numbering.n_smooth_equations
        rows, cols, vals = [], [], []
        load = np.zeros((n_s, 6), dtype=np.float64)
        for ef, N, sigma, wdet in samples.values():
            idx = numbering.element_smooth_dofs(ef)
            Me = np.einsum("qi,qj,q->ij", N, N, wdet)
            rows.append(np.repeat(idx, idx.size))
            cols.append(np.tile(idx, idx.size))
            vals.append(Me.ravel())
            np.add.at(load, idx, N.T @ (sigma * wdet[:, None]))

        M = sp.coo_matrix(
            (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
            shape=(n_s, n_s),
        ).tocsc()
        return spla.splu(M).solve(load)

    def _face_jumps(
        self,
        elements: list[Element],
        space: FunctionSpace,
        coefficients: NDArray[np.float64],
    ) -> dict[int, float]:
        faces: dict[tuple[int, ...], list[Element]] = {}
        for e in elements:
            for local in e.shape.faces:
                key = tuple(sorted(e.nodes[i] for i in local))
                faces.setdefault(key, []).append(e)

        jumps: dict[int, float] = {}
        for key, owners in faces.items():
            if len(owners) != 2:
                continue
            a, b = owners
            efa = space.element_functions(a.id)
            efb = space.element_functions(b.id)
            tri, w = triangle_rule(2 * max(efa.max_order, efb.max_order))
            sa = self._evaluator.stresses(
                a, efa, coefficients[efa.function_ids], self._face_points(a, key, tri)
            )
            sb = self._evaluator.stresses(
                b, efb, coefficients[efb.function_ids], self._face_points(b, key, tri)
            )
            vm = von_mises(sa - sb)
            jump = math.sqrt(float(w @ vm ** 2) / float(w.sum()))
            for e in owners:
                jumps[e.id] = max(jumps.get(e.id, 0.0), jump)
        return jumps

    @staticmethod
    def _face_points(
        element: Element, key: tuple[int, ...], tri: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        """Element barycentric coordinates of face points given on ``key`` nodes."""
        lam = np.zeros((tri.shape[0], 4), dtype=np.float64)
        for k, node in enumerate(key):
            lam[:, element.nodes.index(node)] = tri[:, k]
        return lam


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ErrorEstimator:
    """Combines checker output and locates maximum stress and strain.

    Parameters
    ----------
    checker : ErrorChecker
        Source of per-element error indicators.
    evaluator : HierarchicTetEvaluator
        Stress and strain evaluation for the stress-max search.
    settings : AdaptivitySettings
        Tolerance, order caps, maximum order jump and singularity detection.
    """

    def __init__(
        self,
        checker: ErrorChecker,
        evaluator: HierarchicTetEvaluator,
        settings: Optional[AdaptivitySettings] = None,
    ) -> None:
        self._checker = checker
        self._evaluator = evaluator
        self._settings = settings or AdaptivitySettings()

    @staticmethod
    def combine(raw: float, face_jump: float) -> float:
        return max(raw, face_jump)

    def locate_max(
        self,
        model: Model,
        space: FunctionSpace,
        coefficients: NDArray[np.float64],
        tracker: StressMaxTracker,
        peaks: Optional[dict[int, float]] = None,
    ) -> StressMax:
        """Search element vertices and centroids for max stress and strain.

        When ``peaks`` is given it receives the peak von Mises stress of
        every active element.
        """
        ev = self._evaluator
        tracker.reset()
        for e in model.active_elements():
            ef = space.element_functions(e.id)
            c = coefficients[ef.function_ids]
            sigma = ev.stresses(e, ef, c, SAMPLE_POINTS)
            vm = von_mises(sigma)
            i = int(np.argmax(vm))
            if peaks is not None:
                peaks[e.id] = float(vm[i])
            position = ev.physical_points(e, SAMPLE_POINTS[i:i + 1])[0]
            node = e.nodes[i] if i < len(e.nodes) else None
            tracker.update(float(vm[i]), sigma[i], position, e.id, node)

            eps = equivalent_strain(ev.strains(e, ef, c, SAMPLE_POINTS))
            tracker.update_strain(float(eps.max()), e.id)
        return tracker.snapshot()

    def estimate(
        self,
        model: Model,
        space: FunctionSpace,
        numbering: EquationNumbering,
        coefficients: NDArray[np.float64],
        tracker: StressMaxTracker,
        previous: Optional[ErrorEstimate] = None,
        raised: Iterable[int] = (),
    ) -> ErrorEstimate:
        """Error estimate of the current solution.

        ``previous`` is the estimate of the pass before and ``raised`` the
        elements whose order changed since; both feed singularity
        detection.  Singular elements are left out of the global error.
        """
        peaks: dict[int, float] = {}
        stress_max = self.locate_max(model, space, coefficients, tracker, peaks)
        raw = self._checker.element_errors(
            model, space, numbering, coefficients, stress_max.value
        )

        elements: dict[int, ElementError] = {}
        for e in model.active_elements():
            r, j = raw.get(e.id, (0.0, 0.0))
            elements[e.id] = ElementError(e.id, float(r), float(j), peaks[e.id])

        singular = set(previous.singular) if previous is not None else set()
        if self._settings.detect_singularities and previous is not None:
            singular |= self.find_singular(previous, elements, raised)

        global_error, worst = 0.0, None
        for eid, err in elements.items():
            if eid in singular:
                continue
            if worst is None or err.combined > global_error:
                global_error, worst = err.combined, eid

        logger.info(
            "Error estimate: global %.4g (element %s), max von Mises %.6g "
            "(element %s), %d singular elements",
            global_error,
            worst,
            stress_max.value,
            stress_max.element_id,
            len(singular),
        )
        return ErrorEstimate(
            elements=elements,
            global_error=global_error,
            max_error_element=worst,
            stress_max=stress_max,
            singular=frozenset(singular),
        )

    def find_singular(
        self,
        previous: ErrorEstimate,
        elements: dict[int, ElementError],
        raised: Iterable[int],
    ) -> set[int]:
        """Raised elements whose error did not drop enough to be smooth.

        An element is singular when, after its order was raised, its error
        is still above tolerance and at least ``singular_error_ratio`` of
        its error in the previous pass.
        """
        s = self._settings
        found = set()
        for eid in sorted(raised):
            err = elements.get(eid)
            before = previous.error_of(eid)
            if err is None or before <= 0.0 or eid in previous.singular:
                continue
            stagnant = err.combined >= s.singular_error_ratio * before
            if stagnant and err.combined > s.error_tolerance:
                logger.warning(
                    "Element %d looks singular: error %.4g after raising order "
                    "(was %.4g); excluded from adaptivity",
                    eid,
                    err.combined,
                    before,
                )
                found.add(eid)
        return found

    def order_cap(
        self, element: Element, estimate: ErrorEstimate, final_pass: bool = False
    ) -> int:
        """Highest order ``element`` may reach in the next pass."""
        s = self._settings
        cap = s.max_p
        if final_pass and s.max_p_final_pass is not None:
            cap = min(cap, s.max_p_final_pass)
        if (
            s.max_p_low_stress is not None
            and estimate.stress_max.value > 0.0
            and estimate.stress_of(element.id)
            < s.low_stress_fraction * estimate.stress_max.value
        ):
            cap = min(cap, s.max_p_low_stress)
        return cap

    def should_raise_p(
        self, element: Element, estimate: ErrorEstimate, final_pass: bool = False
    ) -> bool:
        """Local error above tolerance, not singular, and order below its cap."""
        return (
            element.id not in estimate.singular
            and estimate.error_of(element.id) > self._settings.error_tolerance
            and element.p < self.order_cap(element, estimate, final_pass)
        )

    def target_order(
        self, element: Element, estimate: ErrorEstimate, final_pass: bool = False
    ) -> int:
        """Order for the next pass, bounded by the maximum jump and the cap."""
        if not self.should_raise_p(element, estimate, final_pass):
            return element.p
        ratio = estimate.error_of(element.id) / self._settings.error_tolerance
        jump = min(max(math.ceil(math.log2(ratio)), 1), self._settings.max_p_jump)
        return min(element.p + jump, self.order_cap(element, estimate, final_pass))
