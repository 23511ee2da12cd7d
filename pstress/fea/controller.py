"""Adaptive p-refinement controller.

Runs the pass loop as a state machine::

    INITIALIZING -> NUMBERING -> ASSEMBLING -> SOLVING -> ESTIMATING -> DECIDING
                        ^                                                  |
                        +---------------- error > tol, pass < max ---------+
    DECIDING -> CONVERGED | MAX_ITERATIONS_REACHED
    any phase -> FAILED

All phase state lives in an :class:`AnalysisContext` passed through the
phases.  Configuration errors move the controller to ``FAILED`` and are
re-raised; resource and numerical errors move it to ``FAILED`` and are
reported in the returned :class:`~pstress.fea.results.AnalysisResult`.
"""
from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from pstress.core.event_bus import (
    PASS_RECORDED,
    RUN_FINISHED,
    STATE_CHANGED,
    EventBus,
)
from pstress.core.logger import StructuredLogger
from pstress.fea.assembler import GlobalAssembler, GlobalSystem
from pstress.fea.config import AnalysisSettings
from pstress.fea.constraints import ConstraintProcessor, ConstraintSet
from pstress.fea.elements import create_evaluator
from pstress.fea.error_estimator import (
    ErrorChecker,
    ErrorEstimate,
    ErrorEstimator,
    SmoothedStressErrorChecker,
)
from pstress.fea.errors import (
    AnalysisError,
    ConfigurationError,
    NumericalError,
    ResourceError,
)
from pstress.fea.functions import FunctionSpace
from pstress.fea.model import Model
from pstress.fea.numbering import EquationNumberer, EquationNumbering, NumberingInput
from pstress.fea.passes import PassRecord, PassRecorder
from pstress.fea.results import AnalysisResult
from pstress.fea.solution import SolutionStore, StressMaxTracker
from pstress.fea.solver import SparseDirectSolver

logger = logging.getLogger(__name__)


class AnalysisState(enum.Enum):
    INITIALIZING = "initializing"
    NUMBERING = "numbering"
    ASSEMBLING = "assembling"
    SOLVING = "solving"
    ESTIMATING = "estimating"
    DECIDING = "deciding"
    CONVERGED = "converged"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = {
    AnalysisState.CONVERGED,
    AnalysisState.MAX_ITERATIONS_REACHED,
    AnalysisState.FAILED,
}

_TRANSITIONS: dict[AnalysisState, set[AnalysisState]] = {
    AnalysisState.INITIALIZING: {AnalysisState.NUMBERING, AnalysisState.FAILED},
    AnalysisState.NUMBERING: {AnalysisState.ASSEMBLING, AnalysisState.FAILED},
    AnalysisState.ASSEMBLING: {AnalysisState.SOLVING, AnalysisState.FAILED},
    AnalysisState.SOLVING: {AnalysisState.ESTIMATING, AnalysisState.FAILED},
    AnalysisState.ESTIMATING: {AnalysisState.DECIDING, AnalysisState.FAILED},
    AnalysisState.DECIDING: {
        AnalysisState.NUMBERING,
        AnalysisState.CONVERGED,
        AnalysisState.MAX_ITERATIONS_REACHED,
        AnalysisState.FAILED,
    },
    AnalysisState.CONVERGED: set(),
    AnalysisState.MAX_ITERATIONS_REACHED: set(),
    AnalysisState.FAILED: set(),
}


@dataclass
class AnalysisContext:
    """Mutable state of one analysis run, handed from phase to phase."""
    model: Model
    settings: AnalysisSettings
    run_id: str
    state: AnalysisState = AnalysisState.INITIALIZING
    pass_number: int = 0
    space: Optional[FunctionSpace] = None
    constraints: Optional[ConstraintSet] = None
    numbering: Optional[EquationNumbering] = None
    system: Optional[GlobalSystem] = None
    coefficients: Optional[NDArray[np.float64]] = None
    estimate: Optional[ErrorEstimate] = None
    previous_space: Optional[FunctionSpace] = None
    previous_coefficients: Optional[NDArray[np.float64]] = None
    solution: SolutionStore = field(default_factory=SolutionStore)
    tracker: StressMaxTracker = field(default_factory=StressMaxTracker)
    recorder: PassRecorder = field(default_factory=PassRecorder)
    order_changes: dict[int, tuple[int, int]] = field(default_factory=dict)
    termination_reason: str = ""
    failure: Optional[AnalysisError] = None

    @property
    def n_equations(self) -> int:
        return self.numbering.n_equations if self.numbering is not None else 0


class AdaptiveController:
    """Drives numbering, assembly, solve and error estimation until done.

    Parameters
    ----------
    model : Model
        The analysis model; element orders are raised in place.
    settings : AnalysisSettings, optional
        Defaults when omitted.
    solver, error_checker : optional
        Replace the direct solver or the reference error checker.
    event_bus : EventBus, optional
        Receives ``analysis.state`` and ``analysis.pass`` events.
    structured_logger : StructuredLogger, optional
        Writes pass records and state changes as JSON lines.
    """

    def __init__(
        self,
        model: Model,
        settings: Optional[AnalysisSettings] = None,
        *,
        solver: Optional[SparseDirectSolver] = None,
        error_checker: Optional[ErrorChecker] = None,
        event_bus: Optional[EventBus] = None,
        structured_logger: Optional[StructuredLogger] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self._settings = (settings or AnalysisSettings()).validate()
        self._context = AnalysisContext(
            model=model,
            settings=self._settings,
            run_id=run_id or uuid.uuid4().hex[:12],
        )
        self._solver_override = solver
        self._checker_override = error_checker
        self._event_bus = event_bus
        self._slog = structured_logger

        self._numberer = EquationNumberer()
        self._processor: Optional[ConstraintProcessor] = None
        self._assembler: Optional[GlobalAssembler] = None
        self._solver: Optional[SparseDirectSolver] = None
        self._estimator: Optional[ErrorEstimator] = None

    @property
    def state(self) -> AnalysisState:
        return self._context.state

    @property
    def context(self) -> AnalysisContext:
        return self._context

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> AnalysisResult:
        """Run passes until converged, out of passes, or failed."""
        ctx = self._context
        if ctx.state is not AnalysisState.INITIALIZING:
            raise RuntimeError(f"Controller already ran (state {ctx.state.value})")

        t0 = time.perf_counter()
        try:
            self._initialize(ctx)
            while not ctx.state.is_terminal:
                self._number(ctx)
                self._assemble(ctx)
                self._solve(ctx)
                self._estimate(ctx)
                self._decide(ctx)
        except ConfigurationError as exc:
            self._fail(ctx, exc)
            raise
        except (ResourceError, NumericalError) as exc:
            self._fail(ctx, exc)
        finally:
            if self._assembler is not None:
                self._assembler.close()

        elapsed = time.perf_counter() - t0
        logger.info(
            "Analysis %s finished in %.2fs: %s after %d passes (%s)",
            ctx.run_id,
            elapsed,
            ctx.state.value,
            len(ctx.recorder),
            ctx.termination_reason,
        )
        result = self._result(ctx, elapsed)
        if self._event_bus is not None:
            self._event_bus.emit(RUN_FINISHED, {
                "run_id": ctx.run_id,
                "state": result.state,
                "termination_reason": result.termination_reason,
                "n_passes": len(result.passes),
            })
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _initialize(self, ctx: AnalysisContext) -> None:
        s = self._settings
        ctx.model.validate()
        evaluator = create_evaluator(ctx.model)
        if s.adaptivity.uniform:
            ctx.model.set_uniform_p(min(ctx.model.max_p, s.adaptivity.max_p))

        self._processor = ConstraintProcessor(
            ctx.model,
            penalty_factor=s.assembly.penalty_factor,
            all_as_penalty=s.assembly.all_constraints_as_penalty,
        )
        self._assembler = GlobalAssembler(ctx.model, evaluator, s.assembly)
        self._solver = self._solver_override or SparseDirectSolver(
            s.solver.residual_tolerance
        )
        self._estimator = ErrorEstimator(
            self._checker_override or SmoothedStressErrorChecker(evaluator),
            evaluator,
            s.adaptivity,
        )
        logger.info(
            "Analysis %s: %d nodes, %d elements, tolerance %.3g, "
            "adapt_loop_max %d, max_p %d",
            ctx.run_id,
            ctx.model.n_nodes,
            len(ctx.model.elements),
            s.adaptivity.error_tolerance,
            s.adaptivity.adapt_loop_max,
            s.adaptivity.max_p,
        )
        self._transition(ctx, AnalysisState.NUMBERING)

    def _number(self, ctx: AnalysisContext) -> None:
        ctx.pass_number += 1
        ctx.numbering = None
        ctx.space = FunctionSpace(ctx.model)
        ctx.constraints = self._processor.process(ctx.space)
        ctx.numbering = self._numberer.number(
            NumberingInput(skip=ctx.space.skip, constrained=ctx.constraints.eliminated)
        )
        ctx.solution.reset(
            ctx.numbering.n_equations, ctx.space.skip, ctx.constraints.unconstrained
        )

        if (
            self._settings.adaptivity.reuse_previous_solution
            and ctx.previous_space is not None
        ):
            carried = ctx.space.carry_over(ctx.previous_space, ctx.previous_coefficients)
            ctx.constraints = self._processor.superpose(ctx.constraints, carried)
            free = ctx.numbering.free
            start = np.zeros(ctx.numbering.n_equations, dtype=np.float64)
            start[ctx.numbering.equations[free]] = carried[free]
            ctx.solution.set_vector(start)

    def _assemble(self, ctx: AnalysisContext) -> None:
        self._transition(ctx, AnalysisState.ASSEMBLING)
        system = self._assembler.assemble(ctx.space, ctx.numbering, ctx.constraints)
        system.K, system.penalty_stiffness = self._processor.apply_penalties(
            system.K, system.rhs, ctx.numbering, ctx.constraints
        )
        ctx.system = system

    def _solve(self, ctx: AnalysisContext) -> None:
        self._transition(ctx, AnalysisState.SOLVING)
        u = self._solver.solve(ctx.system.K, ctx.system.rhs, pass_number=ctx.pass_number)
        if ctx.constraints.uses_previous_solution:
            ctx.solution.add_vector(u)
        else:
            ctx.solution.set_vector(u)
        ctx.system = None
        ctx.coefficients = ctx.solution.coefficients(ctx.numbering, ctx.constraints.values)

    def _estimate(self, ctx: AnalysisContext) -> None:
        self._transition(ctx, AnalysisState.ESTIMATING)
        ctx.estimate = self._estimator.estimate(
            ctx.model,
            ctx.space,
            ctx.numbering,
            ctx.coefficients,
            ctx.tracker,
            previous=ctx.estimate,
            raised=ctx.order_changes,
        )
        record = PassRecord(
            pass_number=ctx.pass_number,
            max_p=ctx.model.max_p,
            n_equations=ctx.numbering.n_equations,
            error=ctx.estimate.global_error,
            max_stress=ctx.estimate.stress_max.value,
        )
        ctx.recorder.append(record)
        self._publish_pass(ctx, record)

    def _decide(self, ctx: AnalysisContext) -> None:
        self._transition(ctx, AnalysisState.DECIDING)
        a = self._settings.adaptivity
        error = ctx.estimate.global_error

        if error <= a.error_tolerance:
            ctx.termination_reason = "tolerance"
            self._transition(ctx, AnalysisState.CONVERGED)
            return
        if ctx.pass_number >= a.adapt_loop_max:
            ctx.termination_reason = "adapt_loop_max"
            self._transition(ctx, AnalysisState.MAX_ITERATIONS_REACHED)
            return

        changes = self._plan_orders(ctx)
        if not changes:
            ctx.termination_reason = "p_cap"
            self._transition(ctx, AnalysisState.MAX_ITERATIONS_REACHED)
            return

        for e in ctx.model.elements:
            if e.id in changes:
                e.p = changes[e.id][1]
        ctx.order_changes = changes
        ctx.previous_space = ctx.space
        ctx.previous_coefficients = ctx.coefficients
        logger.info(
            "Pass %d: error %.4g above tolerance %.4g, raising order on %d elements",
            ctx.pass_number,
            error,
            a.error_tolerance,
            len(changes),
        )
        self._transition(ctx, AnalysisState.NUMBERING)

    def _plan_orders(self, ctx: AnalysisContext) -> dict[int, tuple[int, int]]:
        """Element id -> (old p, new p) for the next pass."""
        a = self._settings.adaptivity
        changes: dict[int, tuple[int, int]] = {}
        final_pass = ctx.pass_number + 1 == a.adapt_loop_max
        for e in ctx.model.active_elements():
            if a.uniform:
                new_p = min(e.p + 1, a.max_p)
            else:
                new_p = self._estimator.target_order(e, ctx.estimate, final_pass)
            if new_p > e.p:
                changes[e.id] = (e.p, new_p)
        return changes

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(self, ctx: AnalysisContext, new: AnalysisState) -> None:
        old = ctx.state
        if new not in _TRANSITIONS[old]:
            raise RuntimeError(
                f"Illegal analysis state transition {old.value} -> {new.value}"
            )
        ctx.state = new
        logger.debug("State %s -> %s (pass %d)", old.value, new.value, ctx.pass_number)

        data = {
            "run_id": ctx.run_id,
            "from": old.value,
            "to": new.value,
            "pass_number": ctx.pass_number,
        }
        if self._event_bus is not None:
            self._event_bus.emit(STATE_CHANGED, data)
        if self._slog is not None:
            self._slog.log_event(ctx.run_id, STATE_CHANGED, data)

    def _fail(self, ctx: AnalysisContext, exc: AnalysisError) -> None:
        ctx.failure = exc
        ctx.termination_reason = type(exc).__name__
        if isinstance(exc, NumericalError):
            if exc.pass_number is None:
                exc.pass_number = ctx.pass_number
            if exc.n_equations is None:
                exc.n_equations = ctx.n_equations
        logger.error(
            "Analysis %s failed in pass %d (%d equations): %s",
            ctx.run_id,
            ctx.pass_number,
            ctx.n_equations,
            exc,
        )
        if not ctx.state.is_terminal:
            self._transition(ctx, AnalysisState.FAILED)

    def _publish_pass(self, ctx: AnalysisContext, record: PassRecord) -> None:
        data = record.as_dict()
        if self._event_bus is not None:
            self._event_bus.emit(PASS_RECORDED, {"run_id": ctx.run_id, **data})
        if self._slog is not None:
            self._slog.log_pass(
                ctx.run_id,
                data,
                metadata={
                    "global_error_element": ctx.estimate.max_error_element,
                    "singular_elements": sorted(ctx.estimate.singular),
                },
            )

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _result(self, ctx: AnalysisContext, elapsed: float) -> AnalysisResult:
        result = AnalysisResult(
            state=ctx.state.value,
            termination_reason=ctx.termination_reason,
            passes=list(ctx.recorder.records),
            units=self._settings.units,
            solve_time_s=elapsed,
            metadata={"run_id": ctx.run_id},
        )
        if ctx.failure is not None:
            result.error_message = str(ctx.failure)
            result.failure_pass = ctx.pass_number
            result.failure_n_equations = ctx.n_equations
            if isinstance(ctx.failure, ResourceError):
                result.failed_element = ctx.failure.element_id
            return result

        result.coefficients = ctx.coefficients
        result.n_equations = ctx.n_equations
        if ctx.estimate is not None:
            result.stress_max = ctx.estimate.stress_max
            result.max_error_element = ctx.estimate.max_error_element
            result.singular_elements = sorted(ctx.estimate.singular)
        if ctx.coefficients is not None:
            disp, node = SolutionStore.nodal_max_displacement(ctx.space, ctx.coefficients)
            result.max_displacement = disp
            result.max_displacement_node = node
        return result
