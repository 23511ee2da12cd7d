"""Sparse direct solve of the assembled system.

A thin adapter over ``scipy.sparse.linalg.splu``.  The factorisation is
not retried: an exactly singular factor, a non-finite solution or a
normwise backward error above the tolerance raises
:class:`~pstress.fea.errors.SingularSystemError`.

Backward error
--------------
eta = ||K u - f||_inf / (||K||_inf ||u||_inf + ||f||_inf)
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from numpy.typing import NDArray

from pstress.fea.errors import SingularSystemError

logger = logging.getLogger(__name__)


class SparseDirectSolver:
    """Direct LU solve with a backward-error acceptance check."""

    def __init__(self, residual_tolerance: float = 1.0e-8) -> None:
        self._residual_tolerance = residual_tolerance

    @staticmethod
    def backward_error(
        K: sp.spmatrix, u: NDArray[np.float64], rhs: NDArray[np.float64]
    ) -> float:
        r = K @ u - rhs
        k_norm = float(abs(K).sum(axis=1).max()) if K.shape[0] else 0.0
        denom = k_norm * float(np.max(np.abs(u), initial=0.0)) + float(
            np.max(np.abs(rhs), initial=0.0)
        )
        r_norm = float(np.max(np.abs(r), initial=0.0))
        if denom == 0.0:
            return 0.0 if r_norm == 0.0 else float("inf")
        return r_norm / denom

    def solve(
        self,
        K: sp.spmatrix,
        rhs: NDArray[np.float64],
        pass_number: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """Solve ``K u = rhs``.

        Returns
        -------
        NDArray[np.float64]
            (n_equations,) solution.

        Raises
        ------
        SingularSystemError
            Carries ``pass_number`` and the equation count.
        """
        n_eq = int(rhs.shape[0])
        if K.shape != (n_eq, n_eq):
            raise ValueError(f"Matrix shape {K.shape} does not match rhs length {n_eq}")

        t0 = time.perf_counter()
        logger.info("Solving static system: %d equations, nnz=%d", n_eq, K.nnz)
        try:
            lu = spla.splu(sp.csc_matrix(K))
        except RuntimeError as exc:
            raise SingularSystemError(
                f"Stiffness matrix is singular: {exc}",
                pass_number=pass_number,
                n_equations=n_eq,
            ) from exc

        u = lu.solve(rhs)
        if not np.all(np.isfinite(u)):
            raise SingularSystemError(
                "Solution contains non-finite values",
                pass_number=pass_number,
                n_equations=n_eq,
            )

        eta = self.backward_error(K, u, rhs)
        if eta > self._residual_tolerance:
            raise SingularSystemError(
                f"Backward error {eta:.3e} exceeds tolerance "
                f"{self._residual_tolerance:.3e}; system is near-singular",
                pass_number=pass_number,
                n_equations=n_eq,
            )

        logger.info(
            "Solve complete in %.3fs: backward error %.3e",
            time.perf_counter() - t0,
            eta,
        )
        return u
