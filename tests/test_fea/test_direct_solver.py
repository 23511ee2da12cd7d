"""Tests for the sparse direct solver adapter."""
from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp

from pstress.fea.errors import NumericalError, SingularSystemError
from pstress.fea.solver import SparseDirectSolver


def _laplacian(n: int) -> sp.csr_matrix:
    main = 2.0 * np.ones(n)
    off = -np.ones(n - 1)
    return sp.diags([off, main, off], [-1, 0, 1], format="csr")


class TestSparseDirectSolver:
    def test_solves_spd_system(self):
        K = _laplacian(50)
        u_true = np.linspace(0.0, 1.0, 50)
        u = SparseDirectSolver().solve(K, K @ u_true)
        assert np.allclose(u, u_true, atol=1e-10)

    def test_zero_row_is_singular(self):
        K = _laplacian(5).tolil()
        K[2, :] = 0.0
        K[:, 2] = 0.0
        with pytest.raises(SingularSystemError) as excinfo:
            SparseDirectSolver().solve(K.tocsr(), np.ones(5), pass_number=3)
        assert excinfo.value.pass_number == 3
        assert excinfo.value.n_equations == 5
        assert isinstance(excinfo.value, NumericalError)

    def test_backward_error_of_direct_solve_is_small(self):
        K = _laplacian(10)
        u = SparseDirectSolver(residual_tolerance=1e-2).solve(K, np.ones(10))
        assert SparseDirectSolver.backward_error(K, u, np.ones(10)) < 1e-12

    def test_shape_mismatch(self):
        with pytest.raises(ValueError):
            SparseDirectSolver().solve(_laplacian(4), np.ones(5))

    def test_backward_error_of_zero_system(self):
        K = sp.csr_matrix((3, 3))
        assert SparseDirectSolver.backward_error(K, np.zeros(3), np.zeros(3)) == 0.0
        assert SparseDirectSolver.backward_error(K, np.zeros(3), np.ones(3)) == 1.0
