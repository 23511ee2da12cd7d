"""Gauss quadrature rules for tetrahedra and triangles of arbitrary degree.

Both rules are conical (collapsed) products of Gauss-Legendre rules on
[0, 1].  For the tetrahedron::

    xi   = u
    eta  = (1 - u) v
    zeta = (1 - u)(1 - v) w,        |J| = (1 - u)^2 (1 - v)

so a polynomial of degree d in (xi, eta, zeta) becomes degree d + 2 in u
and an ``n``-point rule with ``2n - 1 >= d + 2`` integrates it exactly.
Points are returned as barycentric coordinates
``(L0, L1, L2, L3) = (1 - xi - eta - zeta, xi, eta, zeta)``; weights sum to
the reference volume 1/6 (tetrahedron) or area 1/2 (triangle).

References:
    - Stroud, A.H. "Approximate Calculation of Multiple Integrals",
      Prentice-Hall, 1971, ch. 2.
"""
from __future__ import annotations

from functools import lru_cache

import numpy as np
from numpy.typing import NDArray


@lru_cache(maxsize=None)
def _gauss_01(n: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    x, w = np.polynomial.legendre.leggauss(n)
    return 0.5 * (x + 1.0), 0.5 * w


def _points_for_degree(degree: int) -> int:
    return max(1, (degree + 4) // 2)


@lru_cache(maxsize=None)
def tet_rule(degree: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Quadrature on the reference tetrahedron, exact to ``degree``.

    Returns
    -------
    points : (nq, 4) barycentric coordinates.
    weights : (nq,) weights summing to 1/6.
    """
    n = _points_for_degree(degree)
    x, w = _gauss_01(n)
    u, v, s = np.meshgrid(x, x, x, indexing="ij")
    wu, wv, ws = np.meshgrid(w, w, w, indexing="ij")

    xi = u
    eta = (1.0 - u) * v
    zeta = (1.0 - u) * (1.0 - v) * s
    weights = wu * wv * ws * (1.0 - u) ** 2 * (1.0 - v)

    points = np.stack(
        [1.0 - xi - eta - zeta, xi, eta, zeta], axis=-1
    ).reshape(-1, 4)
    weights = weights.ravel()
    points.setflags(write=False)
    weights.setflags(write=False)
    return points, weights


@lru_cache(maxsize=None)
def triangle_rule(degree: int) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Quadrature on the reference triangle, exact to ``degree``.

    Returns
    -------
    points : (nq, 3) barycentric coordinates.
    weights : (nq,) weights summing to 1/2.
    """
    n = _points_for_degree(degree)
    x, w = _gauss_01(n)
    u, v = np.meshgrid(x, x, indexing="ij")
    wu, wv = np.meshgrid(w, w, indexing="ij")

    s = u
    t = (1.0 - u) * v
    weights = (wu * wv * (1.0 - u)).ravel()
    points = np.stack([1.0 - s - t, s, t], axis=-1).reshape(-1, 3)
    points.setflags(write=False)
    weights.setflags(write=False)
    return points, weights
