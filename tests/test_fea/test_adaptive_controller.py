"""End-to-end tests of the adaptive p-refinement controller."""
from __future__ import annotations

from unittest.mock import MagicMock

import numpy as np
import pytest

from pstress.core.event_bus import PASS_RECORDED, RUN_FINISHED, STATE_CHANGED, EventBus
from pstress.core.logger import EVENTS_FILE, PASSES_FILE, StructuredLogger
from pstress.fea.config import (
    AdaptivitySettings,
    AnalysisSettings,
    AssemblySettings,
    UnitSettings,
)
from pstress.fea.controller import AdaptiveController, AnalysisState
from pstress.fea.elements import HierarchicTetEvaluator
from pstress.fea.errors import ConfigurationError, SingularSystemError
from pstress.fea.model import (
    DisplacementConstraint,
    Element,
    ElementShape,
    Material,
    Model,
    NodalForce,
    VolumeForce,
    build_block_model,
)
from pstress.fea.results import format_report

MB = 1024 * 1024


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

def _single_tet() -> Model:
    """One tet, node 0 fixed, node 1 pulled along x by one unit."""
    model = Model(
        nodes=np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=float),
        elements=[Element(id=0, nodes=(0, 1, 2, 3), material="m")],
        materials={"m": Material("m", 1000.0, 0.25)},
    )
    model.constraints = [
        DisplacementConstraint(nodes=(0,), name="fix"),
        DisplacementConstraint(nodes=(1,), components=(True, False, False),
                               values=(1.0, 0.0, 0.0), name="pull"),
    ]
    return model


def _symmetric_supports(model: Model) -> None:
    for name, axis in (("xmin", 0), ("ymin", 1), ("zmin", 2)):
        mask = [False, False, False]
        mask[axis] = True
        model.constraints.append(
            DisplacementConstraint(nodes=tuple(model.node_set(name)),
                                   components=tuple(mask), name=name)
        )


def _tension_bar() -> Model:
    """Uniaxial tension by enforced end displacement: constant stress."""
    model = build_block_model((2.0, 1.0, 1.0), (2, 1, 1), Material("m", 1000.0, 0.3))
    _symmetric_supports(model)
    model.constraints.append(
        DisplacementConstraint(nodes=tuple(model.node_set("xmax")),
                               components=(True, False, False),
                               values=(0.02, 0.0, 0.0), name="stretch")
    )
    return model


def _hanging_bar() -> Model:
    """Bar on a roller at x=0 loaded by its own weight along +x.

    With nu = 0 the exact displacement is quadratic in x, so p=1 is
    inexact and p=2 reproduces it.
    """
    model = build_block_model(
        (2.0, 1.0, 1.0), (2, 1, 1), Material("m", 1000.0, 0.0, rho=1.0)
    )
    _symmetric_supports(model)
    model.volume_forces.append(VolumeForce(kind="gravity", acceleration=(10.0, 0.0, 0.0)))
    return model


def _cantilever() -> Model:
    model = build_block_model((2.0, 1.0, 1.0), (2, 1, 1), Material("m", 1000.0, 0.3))
    model.constraints.append(
        DisplacementConstraint(nodes=tuple(model.node_set("xmin")), name="clamp")
    )
    tip = model.node_set("xmax")
    for n in tip:
        model.nodal_forces.append(NodalForce(node=int(n), force=(0.0, 0.0, -1.0)))
    return model


def _settings(**adaptivity) -> AnalysisSettings:
    return AnalysisSettings(adaptivity=AdaptivitySettings(**adaptivity))


def _scripted_checker(tables):
    """Error checker returning one {element: raw error} table per pass."""
    calls = iter(tables)

    def element_errors(model, space, numbering, coefficients, max_stress):
        table = next(calls)
        return {e.id: (table.get(e.id, 0.01), 0.0) for e in model.active_elements()}

    checker = MagicMock()
    checker.element_errors.side_effect = element_errors
    return checker


# ---------------------------------------------------------------------------
# Converging runs
# ---------------------------------------------------------------------------


class TestSingleElement:
    def test_converges_in_one_pass(self):
        result = AdaptiveController(_single_tet()).run()
        assert result.converged
        assert result.termination_reason == "tolerance"
        assert len(result.passes) == 1
        # 12 components, 3 fixed and 1 enforced
        assert result.n_equations == 8

    def test_reactions_balance(self):
        model = _single_tet()
        controller = AdaptiveController(model)
        result = controller.run()
        space = controller.context.space
        ef = space.element_functions(0)
        Ke = HierarchicTetEvaluator(model).stiffness(model.elements[0], ef)
        forces = Ke @ result.coefficients[ef.function_ids].ravel()

        pull = forces[3]
        assert pull > 0.0
        assert forces[0] + pull == pytest.approx(0.0, abs=1e-6 * pull)
        free = [4, 5] + list(range(6, 12))
        assert np.all(np.abs(forces[free]) < 1e-6 * pull)

    def test_enforced_value_is_applied(self):
        model = _single_tet()
        controller = AdaptiveController(model)
        result = controller.run()
        space = controller.context.space
        assert result.coefficients[space.vertex_function(1), 0] == 1.0
        assert np.all(result.coefficients[space.vertex_function(0)] == 0.0)


class TestPatchProblems:
    def test_uniaxial_tension_is_exact(self):
        model = _tension_bar()
        controller = AdaptiveController(model)
        result = controller.run()
        assert result.converged
        assert len(result.passes) == 1
        assert result.final_error < 1e-8

        sigma = result.stress_max.components
        assert sigma[0] == pytest.approx(1000.0 * 0.01, rel=1e-9)
        assert np.allclose(sigma[1:], 0.0, atol=1e-9)
        assert result.stress_max.value == pytest.approx(10.0, rel=1e-9)
        assert result.max_displacement == pytest.approx(
            np.linalg.norm([0.02, 0.3 * 0.01, 0.3 * 0.01]), rel=1e-9
        )

    def test_zero_load_gives_zero_solution(self):
        model = build_block_model((1.0, 1.0, 1.0), (2, 2, 2), Material("m", 1000.0, 0.3))
        for name in ("xmin", "xmax", "ymin", "ymax", "zmin", "zmax"):
            model.constraints.append(
                DisplacementConstraint(nodes=tuple(model.node_set(name)))
            )
        result = AdaptiveController(model).run()
        assert result.converged
        assert result.n_equations == 3
        assert np.all(result.coefficients == 0.0)
        assert result.final_error == 0.0


class TestUniformRefinement:
    def test_error_non_increasing_and_exact_at_p2(self):
        settings = _settings(uniform=True, error_tolerance=1e-9, adapt_loop_max=3)
        model = _hanging_bar()
        result = AdaptiveController(model, settings).run()

        errors = [r.error for r in result.passes]
        assert len(errors) >= 2
        assert errors[0] > 1e-3
        assert errors[1] < 1e-8
        for before, after in zip(errors, errors[1:]):
            assert after <= before + 1e-8
        assert [r.max_p for r in result.passes][:2] == [1, 2]

    def test_default_tolerance_converges_in_two_passes(self):
        result = AdaptiveController(_hanging_bar(), _settings(uniform=True)).run()
        assert result.converged
        assert len(result.passes) == 2
        # sigma_xx = rho g (L - x), largest at the support
        assert result.stress_max.value == pytest.approx(20.0, rel=1e-6)

    def test_equation_count_grows(self):
        settings = _settings(uniform=True, error_tolerance=1e-12, adapt_loop_max=3)
        result = AdaptiveController(_cantilever(), settings).run()
        n_eq = [r.n_equations for r in result.passes]
        assert n_eq == sorted(n_eq)
        assert len(set(n_eq)) == len(n_eq)


class TestAdaptiveRefinement:
    def test_orders_raised_only_where_error_is_high(self):
        model = _cantilever()
        checker = _scripted_checker([{0: 0.4, 5: 0.08}, {}])
        controller = AdaptiveController(model, error_checker=checker)
        result = controller.run()

        assert result.converged
        assert len(result.passes) == 2
        assert model.element(0).p == 3        # ratio 8, clamped to max_p_jump
        assert model.element(5).p == 2        # ratio 1.6, one order
        assert all(e.p == 1 for e in model.elements if e.id not in (0, 5))
        assert controller.context.order_changes == {0: (1, 3), 5: (1, 2)}
        assert result.passes[1].n_equations > result.passes[0].n_equations
        assert result.passes[1].max_p == 3

    def test_adapt_loop_max_terminates(self):
        checker = _scripted_checker([{e: 0.5 for e in range(12)}] * 3)
        result = AdaptiveController(
            _cantilever(), _settings(adapt_loop_max=3), error_checker=checker
        ).run()
        assert result.state == "max_iterations_reached"
        assert result.termination_reason == "adapt_loop_max"
        assert len(result.passes) == 3

    def test_order_cap_terminates(self):
        checker = _scripted_checker([{e: 0.5 for e in range(12)}] * 2)
        model = _cantilever()
        result = AdaptiveController(
            model, _settings(adapt_loop_max=5, max_p=2), error_checker=checker
        ).run()
        assert result.state == "max_iterations_reached"
        assert result.termination_reason == "p_cap"
        assert len(result.passes) == 2
        assert all(e.p == 2 for e in model.elements)

    def test_previous_solution_matches_fresh_solve(self):
        def run(reuse):
            settings = _settings(
                uniform=True, error_tolerance=1e-12, adapt_loop_max=2,
                reuse_previous_solution=reuse,
            )
            return AdaptiveController(_cantilever(), settings).run()

        fresh, reused = run(False), run(True)
        assert len(fresh.passes) == len(reused.passes) == 2
        scale = np.abs(fresh.coefficients).max()
        assert np.allclose(reused.coefficients, fresh.coefficients,
                           rtol=1e-8, atol=1e-10 * scale)

    def test_previous_solution_with_soft_springs(self):
        def run(reuse):
            # a single pinned node leaves rotations to the soft springs; the
            # two collinear forces stretch the top edge without a moment
            model = _cantilever()
            model.constraints = [DisplacementConstraint(nodes=(0,), name="pin")]
            model.nodal_forces = [
                NodalForce(node=10, force=(-1.0, 0.0, 0.0)),
                NodalForce(node=11, force=(1.0, 0.0, 0.0)),
            ]
            settings = _settings(
                uniform=True, error_tolerance=1e-12, adapt_loop_max=2,
                reuse_previous_solution=reuse,
            )
            return AdaptiveController(model, settings).run()

        fresh, reused = run(False), run(True)
        assert len(fresh.passes) == len(reused.passes) == 2
        scale = np.abs(fresh.coefficients).max()
        assert np.allclose(reused.coefficients, fresh.coefficients, atol=1e-6 * scale)

    def test_parallel_and_spilled_runs_agree(self):
        base = AdaptiveController(_cantilever(), _settings(uniform=True, adapt_loop_max=2,
                                                            error_tolerance=1e-12)).run()
        settings = _settings(uniform=True, adapt_loop_max=2, error_tolerance=1e-12)
        settings.assembly = AssemblySettings(workers=3, max_element_memory_mb=0.02)
        other = AdaptiveController(_cantilever(), settings).run()
        assert np.array_equal(base.coefficients, other.coefficients)
        assert [r.error for r in base.passes] == [r.error for r in other.passes]


class TestOrderLimits:
    def test_singular_element_is_frozen(self):
        model = _cantilever()
        checker = _scripted_checker([{0: 0.4, 5: 0.4}, {0: 0.38, 5: 0.1}, {0: 0.37}])
        result = AdaptiveController(
            model,
            _settings(adapt_loop_max=5, detect_singularities=True),
            error_checker=checker,
        ).run()

        assert result.converged
        assert len(result.passes) == 3
        assert result.singular_elements == [0]
        assert model.element(0).p == 3
        assert model.element(5).p == 4
        assert [r.error for r in result.passes] == [0.4, 0.1, 0.01]
        assert "Singular        : elements 0 (excluded from error)" in format_report(result)

    def test_stagnant_element_keeps_run_going_without_detection(self):
        checker = _scripted_checker([{0: 0.4, 5: 0.4}, {0: 0.38, 5: 0.1}, {0: 0.37}])
        result = AdaptiveController(
            _cantilever(), _settings(adapt_loop_max=3), error_checker=checker
        ).run()
        assert result.state == "max_iterations_reached"
        assert result.singular_elements == []

    def test_low_stress_elements_stay_at_cap(self):
        model = _hanging_bar()
        checker = _scripted_checker([{e: 0.5 for e in range(12)}, {}])
        result = AdaptiveController(
            model,
            _settings(max_p_low_stress=1, low_stress_fraction=0.5),
            error_checker=checker,
        ).run()

        assert result.converged
        # sigma_xx = rho g (2 - x): about 15 near the support, 5 at the free end
        for e in model.elements:
            centroid_x = model.nodes[list(e.nodes)].mean(axis=0)[0]
            assert e.p == (3 if centroid_x < 1.0 else 1)

    def test_final_pass_order_cap(self):
        model = _cantilever()
        checker = _scripted_checker([{e: 0.5 for e in range(12)}] * 3)
        result = AdaptiveController(
            model, _settings(adapt_loop_max=3, max_p_final_pass=4), error_checker=checker
        ).run()
        assert len(result.passes) == 3
        assert [r.max_p for r in result.passes] == [1, 3, 4]
        assert all(e.p == 4 for e in model.elements)


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_singular_system_is_reported(self):
        solver = MagicMock()
        solver.solve.side_effect = SingularSystemError("Stiffness matrix is singular")
        controller = AdaptiveController(_cantilever(), solver=solver)
        result = controller.run()

        assert controller.state is AnalysisState.FAILED
        assert result.failed
        assert result.failure_pass == 1
        assert result.failure_n_equations > 0
        assert "singular" in result.error_message
        assert result.termination_reason == "SingularSystemError"
        assert result.coefficients is None

    def test_resource_error_names_element(self):
        settings = AnalysisSettings(
            assembly=AssemblySettings(max_element_memory_mb=1024 / MB)
        )
        result = AdaptiveController(_cantilever(), settings).run()
        assert result.failed
        assert result.failed_element == 0
        assert result.failure_pass == 1

    def test_unknown_constraint_node_raises(self):
        model = _cantilever()
        model.constraints.append(DisplacementConstraint(nodes=(999,), name="stray"))
        controller = AdaptiveController(model)
        with pytest.raises(ConfigurationError):
            controller.run()
        assert controller.state is AnalysisState.FAILED

    def test_fully_constrained_model_raises(self):
        model = _single_tet()
        model.constraints = [DisplacementConstraint(nodes=(0, 1, 2, 3))]
        with pytest.raises(ConfigurationError, match="no free degrees"):
            AdaptiveController(model).run()

    def test_unsupported_shape_raises(self):
        model = _single_tet()
        model.nodes = np.vstack([model.nodes, [[0, 1, 1], [1, 1, 1]]])
        model.elements.append(
            Element(id=1, nodes=(0, 1, 2, 3, 4, 5), material="m",
                    shape=ElementShape.WEDGE)
        )
        with pytest.raises(ConfigurationError):
            AdaptiveController(model).run()

    def test_invalid_settings_raise_early(self):
        with pytest.raises(ConfigurationError):
            AdaptiveController(_single_tet(), _settings(adapt_loop_max=0))

    def test_controller_runs_once(self):
        controller = AdaptiveController(_single_tet())
        controller.run()
        with pytest.raises(RuntimeError):
            controller.run()


# ---------------------------------------------------------------------------
# State machine and observers
# ---------------------------------------------------------------------------


class TestStateMachine:
    def test_state_sequence_and_events(self):
        bus = EventBus(keep_history=True)
        controller = AdaptiveController(_single_tet(), event_bus=bus, run_id="r1")
        controller.run()

        states = [h["data"]["to"] for h in bus.get_history(STATE_CHANGED)]
        assert states == [
            "numbering", "assembling", "solving", "estimating", "deciding", "converged",
        ]
        passes = bus.get_history(PASS_RECORDED)
        assert len(passes) == 1
        assert passes[0]["data"]["run_id"] == "r1"
        assert passes[0]["data"]["pass_number"] == 1

        finished = bus.get_history(RUN_FINISHED)
        assert len(finished) == 1
        assert finished[0]["data"]["state"] == "converged"
        assert finished[0]["data"]["n_passes"] == 1

    def test_illegal_transition(self):
        controller = AdaptiveController(_single_tet())
        with pytest.raises(RuntimeError, match="Illegal"):
            controller._transition(controller.context, AnalysisState.SOLVING)

    def test_terminal_states(self):
        assert AnalysisState.CONVERGED.is_terminal
        assert AnalysisState.FAILED.is_terminal
        assert not AnalysisState.DECIDING.is_terminal

    def test_structured_log_records_passes(self, tmp_path):
        slog = StructuredLogger(str(tmp_path))
        settings = _settings(uniform=True, error_tolerance=1e-12, adapt_loop_max=2)
        AdaptiveController(_cantilever(), settings, structured_logger=slog,
                           run_id="abc").run()

        records = slog.read_records(PASSES_FILE, run_id="abc")
        assert [r["run_id"] for r in records] == ["abc", "abc"]
        assert [r["pass"]["pass_number"] for r in records] == [1, 2]
        events = slog.read_records(EVENTS_FILE)
        assert events[-1]["data"]["to"] == "max_iterations_reached"
        slog.close()

    def test_report(self):
        result = AdaptiveController(_tension_bar()).run()
        text = format_report(result)
        assert "P-ADAPTIVE STRESS ANALYSIS" in text
        assert "CONVERGED (tolerance)" in text

    def test_pass_stress_stays_in_model_units(self):
        settings = AnalysisSettings(
            units=UnitSettings(stress_conversion=1.0e-3, stress_label="kPa")
        )
        result = AdaptiveController(_tension_bar(), settings).run()
        # E = 1000 and a 1% stretch
        assert result.passes[0].max_stress == pytest.approx(10.0, rel=1e-9)
        text = format_report(result)
        assert "max vM [kPa]" in text
        assert "Max von Mises   : 0.01 kPa" in text
