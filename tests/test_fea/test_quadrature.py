"""Tests for tetrahedron and triangle quadrature rules."""
from __future__ import annotations

from math import factorial

import numpy as np
import pytest

from pstress.fea.quadrature import tet_rule, triangle_rule


def _tet_monomial(a: int, b: int, c: int) -> float:
    """Exact integral of xi^a eta^b zeta^c over the reference tetrahedron."""
    return factorial(a) * factorial(b) * factorial(c) / factorial(a + b + c + 3)


class TestTetRule:
    def test_weights_sum_to_reference_volume(self):
        for degree in range(0, 9):
            _, w = tet_rule(degree)
            assert w.sum() == pytest.approx(1.0 / 6.0, rel=1e-13)

    def test_points_are_barycentric_inside(self):
        pts, _ = tet_rule(6)
        assert pts.shape[1] == 4
        assert np.allclose(pts.sum(axis=1), 1.0)
        assert np.all(pts > 0.0)

    @pytest.mark.parametrize("degree", [1, 2, 4, 7])
    def test_exact_for_monomials_up_to_degree(self, degree):
        pts, w = tet_rule(degree)
        xi, eta, zeta = pts[:, 1], pts[:, 2], pts[:, 3]
        for a in range(degree + 1):
            for b in range(degree + 1 - a):
                c = degree - a - b
                approx = float(w @ (xi ** a * eta ** b * zeta ** c))
                assert approx == pytest.approx(_tet_monomial(a, b, c), rel=1e-12)

    def test_rule_is_read_only_and_cached(self):
        pts, w = tet_rule(3)
        assert tet_rule(3)[0] is pts
        with pytest.raises(ValueError):
            w[0] = 1.0


class TestTriangleRule:
    def test_weights_sum_to_reference_area(self):
        _, w = triangle_rule(4)
        assert w.sum() == pytest.approx(0.5, rel=1e-13)

    @pytest.mark.parametrize("degree", [2, 5])
    def test_exact_for_monomials(self, degree):
        pts, w = triangle_rule(degree)
        s, t = pts[:, 1], pts[:, 2]
        for a in range(degree + 1):
            b = degree - a
            exact = factorial(a) * factorial(b) / factorial(a + b + 2)
            assert float(w @ (s ** a * t ** b)) == pytest.approx(exact, rel=1e-12)
