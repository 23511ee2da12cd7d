"""Tests for the global hierarchic function space."""
from __future__ import annotations

import numpy as np
import pytest

from pstress.fea.errors import ConfigurationError
from pstress.fea.functions import EDGE, FACE, INTERIOR, VERTEX, FunctionSpace
from pstress.fea.model import Element, ElementShape, Material, Model, build_block_model


def _two_tets(p_a: int = 1, p_b: int = 1) -> Model:
    """Two tets sharing face (1, 2, 3)."""
    nodes = np.array(
        [[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1], [1, 1, 1]], dtype=float
    )
    mat = Material(name="m", E=1.0, nu=0.3)
    return Model(
        nodes=nodes,
        elements=[
            Element(id=0, nodes=(0, 1, 2, 3), material="m", p=p_a),
            Element(id=1, nodes=(1, 2, 3, 4), material="m", p=p_b),
        ],
        materials={"m": mat},
    )


class TestFunctionCounts:
    @pytest.mark.parametrize("p", [1, 2, 3, 4, 5])
    def test_single_tet_spans_complete_polynomials(self, p):
        model = _two_tets()
        model.elements = model.elements[:1]
        model.elements[0].p = p
        space = FunctionSpace(model)
        assert space.n_functions == (p + 1) * (p + 2) * (p + 3) // 6
        ef = space.element_functions(0)
        assert ef.n_functions == space.n_functions
        assert ef.max_order == p

    def test_shared_entities_take_highest_adjacent_order(self):
        space = FunctionSpace(_two_tets(p_a=1, p_b=3))
        low = space.element_functions(0)
        high = space.element_functions(1)
        # element 0 sees the cubic modes of the shared face and its edges
        assert low.max_order == 3
        assert high.max_order == 3
        shared_face = [
            fn for fn in space.functions if fn.entity == (FACE, 1, 2, 3)
        ]
        assert len(shared_face) == 1
        assert shared_face[0].id in set(low.function_ids)
        assert shared_face[0].id in set(high.function_ids)
        # the unshared edges of element 0 stay linear
        assert not [fn for fn in space.functions if fn.entity == (EDGE, 0, 1)]

    def test_interior_modes_only_from_fourth_order(self):
        model = _two_tets(p_a=4, p_b=3)
        space = FunctionSpace(model)
        interiors = [fn for fn in space.functions if fn.entity[0] == INTERIOR]
        assert [fn.entity for fn in interiors] == [(INTERIOR, 0)]


class TestDeterminism:
    def test_same_model_gives_same_ids(self):
        model = build_block_model((1.0, 1.0, 1.0), (2, 1, 1), Material("m", 1.0, 0.3), p=2)
        a = FunctionSpace(model)
        b = FunctionSpace(model)
        assert [fn.key for fn in a.functions] == [fn.key for fn in b.functions]
        for e in model.elements:
            assert np.array_equal(
                a.element_functions(e.id).function_ids,
                b.element_functions(e.id).function_ids,
            )

    def test_vertices_come_first_in_node_order(self):
        space = FunctionSpace(_two_tets(p_b=2))
        heads = space.functions[:5]
        assert [fn.entity for fn in heads] == [(VERTEX, n) for n in range(5)]
        assert space.vertex_function(3) == 3
        assert space.vertex_function(17) is None

    def test_signature_tracks_orders(self):
        model = _two_tets()
        before = FunctionSpace(model).element_functions(1).signature
        model.elements[0].p = 2
        after = FunctionSpace(model).element_functions(1).signature
        assert before != after


class TestSkipAndCarryOver:
    def test_inactive_element_functions_are_skipped(self):
        model = _two_tets(p_a=2, p_b=2)
        model.elements[1].active = False
        space = FunctionSpace(model)
        skip = space.skip
        only_b = [
            fn.id for fn in space.functions
            if fn.entity in ((VERTEX, 4), (EDGE, 1, 4), (FACE, 1, 2, 4))
        ]
        assert only_b and skip[only_b].all()
        assert not skip[space.element_functions(0).function_ids].any()

    def test_functions_on_nodes(self):
        space = FunctionSpace(_two_tets(p_a=3, p_b=3))
        ids = space.functions_on_nodes([1, 2, 3])
        entities = {space.functions[i].entity for i in ids}
        assert entities == {
            (VERTEX, 1), (VERTEX, 2), (VERTEX, 3),
            (EDGE, 1, 2), (EDGE, 1, 3), (EDGE, 2, 3),
            (FACE, 1, 2, 3),
        }

    def test_carry_over_maps_by_key(self):
        model = _two_tets()
        old = FunctionSpace(model)
        coeffs = np.arange(old.n_functions * 3, dtype=float).reshape(-1, 3)
        model.elements[0].p = 2
        new = FunctionSpace(model)
        carried = new.carry_over(old, coeffs)
        assert carried.shape == (new.n_functions, 3)
        for fn in old.functions:
            assert np.array_equal(carried[new.index_of(fn.key)], coeffs[fn.id])
        fresh = [fn.id for fn in new.functions if fn.entity[0] == EDGE]
        assert np.all(carried[fresh] == 0.0)

    def test_unsupported_shape_rejected(self):
        model = _two_tets()
        model.elements[1].shape = ElementShape.BRICK
        with pytest.raises(ConfigurationError, match="brick"):
            FunctionSpace(model)
