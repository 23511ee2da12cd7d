"""Hierarchic p-version tetrahedral element.

Implements the element evaluator consumed by the assembler and the error
checker:

- Hierarchic shape functions of arbitrary order in barycentric coordinates
  (vertex, edge, face and bubble modes; see :mod:`pstress.fea.functions`)
- Strain-displacement (B) matrix
- Element stiffness matrix ``(3 n_f, 3 n_f)``
- Consistent volume-force vector
- Strain and stress evaluation at arbitrary barycentric points
- Scalar mass matrix and load vectors used by stress smoothing

Geometry is the straight-sided 4-node tetrahedron, so the barycentric
gradients and the Jacobian are constant over the element.

Element DOFs are function-major: local DOF ``3 * f + c`` is component ``c``
(x, y, z) of local function ``f``.

Stress convention (Voigt notation)
----------------------------------
[sigma_xx, sigma_yy, sigma_zz, tau_xy, tau_yz, tau_xz]
"""
from __future__ import annotations

from typing import Protocol, Sequence

import numpy as np
from numpy.typing import NDArray

from pstress.fea.errors import ConfigurationError
from pstress.fea.model import Element, ElementShape, Model, VolumeForce
from pstress.fea.quadrature import tet_rule

_EYE4 = np.eye(4)


# ---------------------------------------------------------------------------
# Hierarchic basis
# ---------------------------------------------------------------------------

def _product(
    factors: Sequence[tuple[NDArray[np.float64], NDArray[np.float64]]],
    nq: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Value and barycentric gradient of a product of factors."""
    val = np.ones(nq)
    grad = np.zeros((nq, 4))
    for v, g in factors:
        grad = grad * v[:, None] + val[:, None] * g
        val = val * v
    return val, grad


def _power(
    factor: tuple[NDArray[np.float64], NDArray[np.float64]], m: int, nq: int
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    v, g = factor
    if m == 0:
        return np.ones(nq), np.zeros((nq, 4))
    return v ** m, (m * v ** (m - 1))[:, None] * g


def evaluate_basis(
    descriptors: Sequence[tuple], lam: NDArray[np.float64]
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Evaluate hierarchic shape functions at barycentric points.

    Parameters
    ----------
    descriptors : sequence of tuple
        Element-local function descriptors.
    lam : (nq, 4)
        Barycentric coordinates.

    Returns
    -------
    N : (nq, n_f)
        Function values.
    dN : (nq, n_f, 4)
        Derivatives with respect to the four barycentric coordinates.
    """
    nq = lam.shape[0]

    def lin(i: int):
        return lam[:, i], np.broadcast_to(_EYE4[i], (nq, 4))

    N = np.empty((nq, len(descriptors)))
    dN = np.empty((nq, len(descriptors), 4))

    for col, desc in enumerate(descriptors):
        kind = desc[0]
        if kind == "v":
            val, grad = lin(desc[1])
        elif kind == "e":
            _, a, b, m = desc
            blend = (lam[:, b] - lam[:, a],
                     np.broadcast_to(_EYE4[b] - _EYE4[a], (nq, 4)))
            val, grad = _product([lin(a), lin(b), _power(blend, m, nq)], nq)
        elif kind == "f":
            _, i, j, k, a, b = desc
            s = (lam[:, j] - lam[:, i],
                 np.broadcast_to(_EYE4[j] - _EYE4[i], (nq, 4)))
            t = (2.0 * lam[:, k] - 1.0,
                 np.broadcast_to(2.0 * _EYE4[k], (nq, 4)))
            val, grad = _product(
                [lin(i), lin(j), lin(k), _power(s, a, nq), _power(t, b, nq)], nq
            )
        elif kind == "b":
            _, a, b, c = desc
            val, grad = _product(
                [lin(0), lin(1), lin(2), lin(3),
                 _power(lin(1), a, nq), _power(lin(2), b, nq),
                 _power(lin(3), c, nq)],
                nq,
            )
        else:
            raise ValueError(f"Unknown shape function descriptor {desc!r}")
        N[:, col] = val
        dN[:, col, :] = grad

    return N, dN


# ---------------------------------------------------------------------------
# Evaluator capability
# ---------------------------------------------------------------------------

class ElementEvaluator(Protocol):
    """Capability interface the core needs from an element formulation."""

    def stiffness(self, element: Element, functions) -> NDArray[np.float64]:
        ...

    def volume_load(
        self, element: Element, functions, force: VolumeForce
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        ...


class HierarchicTetEvaluator:
    """Straight-sided tetrahedron with hierarchic shape functions.

    Parameters
    ----------
    model : Model
        Supplies node coordinates and materials.  Only read.
    """

    shape = ElementShape.TET

    def __init__(self, model: Model) -> None:
        self._model = model
        self._D = {
            name: mat.elasticity_matrix() for name, mat in model.materials.items()
        }

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------
    def geometry(
        self, element: Element
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], float]:
        """Vertex coordinates (4, 3), barycentric gradients (4, 3) and
        the Jacobian determinant magnitude (6 x volume)."""
        X = self._model.nodes[list(element.nodes)]
        A = (X[1:] - X[0]).T
        det = float(np.linalg.det(A))
        scale = float(np.max(np.linalg.norm(X[1:] - X[0], axis=1))) ** 3
        if abs(det) <= 1e-12 * scale:
            raise ConfigurationError(
                f"Element {element.id} is degenerate (Jacobian determinant "
                f"{det:.6e})."
            )
        A_inv = np.linalg.inv(A)
        grad_lam = np.vstack([-A_inv.sum(axis=0), A_inv])
        return X, grad_lam, abs(det)

    def volume(self, element: Element) -> float:
        return self.geometry(element)[2] / 6.0

    def physical_points(
        self, element: Element, lam: NDArray[np.float64]
    ) -> NDArray[np.float64]:
        X = self._model.nodes[list(element.nodes)]
        return lam @ X

    @staticmethod
    def quadrature(functions) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        return tet_rule(2 * functions.max_order)

    def shape_gradients(
        self, element: Element, functions, lam: NDArray[np.float64]
    ) -> tuple[NDArray[np.float64], NDArray[np.float64], float]:
        """Values (nq, n_f), physical gradients (nq, n_f, 3) and |det J|."""
        _, grad_lam, det = self.geometry(element)
        N, dN = evaluate_basis(functions.descriptors, lam)
        return N, dN @ grad_lam, det

    # ------------------------------------------------------------------
    # Strain-displacement matrix
    # ------------------------------------------------------------------
    @staticmethod
    def strain_displacement(dNdx: NDArray[np.float64]) -> NDArray[np.float64]:
        """B matrices (nq, 6, 3 n_f) from physical gradients (nq, n_f, 3)."""
        nq, nf, _ = dNdx.shape
        B = np.zeros((nq, 6, 3 * nf))
        dx, dy, dz = dNdx[..., 0], dNdx[..., 1], dNdx[..., 2]
        B[:, 0, 0::3] = dx
        B[:, 1, 1::3] = dy
        B[:, 2, 2::3] = dz
        B[:, 3, 0::3] = dy
        B[:, 3, 1::3] = dx
        B[:, 4, 1::3] = dz
        B[:, 4, 2::3] = dy
        B[:, 5, 0::3] = dz
        B[:, 5, 2::3] = dx
        return B

    # ------------------------------------------------------------------
    # Element matrices
    # ------------------------------------------------------------------
    def stiffness(self, element: Element, functions) -> NDArray[np.float64]:
        """Element stiffness K_e = sum_q w_q |J| B_q^T D B_q."""
        lam, w = self.quadrature(functions)
        _, dNdx, det = self.shape_gradients(element, functions, lam)
        B = self.strain_displacement(dNdx)
        D = self._D[element.material]

        DB = np.einsum("ij,qjk->qik", D, B)
        Ke = np.einsum("qji,qjk,q->ik", B, DB, w * det)
        return 0.5 * (Ke + Ke.T)

    def volume_load(
        self, element: Element, functions, force: VolumeForce
    ) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Consistent load (n_f, 3) and resultant (3,) of a body force."""
        lam, w = self.quadrature(functions)
        N, _ = evaluate_basis(functions.descriptors, lam)
        _, _, det = self.geometry(element)
        rho = self._model.material_of(element).rho
        b = force.body_force(self.physical_points(element, lam), rho)
        wq = w * det
        fe = np.einsum("qf,qc,q->fc", N, b, wq)
        return fe, b.T @ wq

    def scalar_mass(self, element: Element, functions) -> NDArray[np.float64]:
        """Scalar consistent mass (n_f, n_f) with unit density."""
        lam, w = self.quadrature(functions)
        N, _ = evaluate_basis(functions.descriptors, lam)
        _, _, det = self.geometry(element)
        return np.einsum("qi,qj,q->ij", N, N, w * det)

    # ------------------------------------------------------------------
    # Field recovery
    # ------------------------------------------------------------------
    def strains(
        self,
        element: Element,
        functions,
        coefficients: NDArray[np.float64],
        lam: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Voigt strains (nq, 6) with engineering shears."""
        _, dNdx, _ = self.shape_gradients(element, functions, lam)
        G = np.einsum("qfi,fj->qij", dNdx, coefficients)
        return np.stack([
            G[:, 0, 0],
            G[:, 1, 1],
            G[:, 2, 2],
            G[:, 1, 0] + G[:, 0, 1],
            G[:, 2, 1] + G[:, 1, 2],
            G[:, 2, 0] + G[:, 0, 2],
        ], axis=-1)

    def stresses(
        self,
        element: Element,
        functions,
        coefficients: NDArray[np.float64],
        lam: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Voigt stresses (nq, 6) at barycentric points."""
        eps = self.strains(element, functions, coefficients, lam)
        return eps @ self._D[element.material].T

    def __repr__(self) -> str:
        return f"HierarchicTetEvaluator(n_elements={len(self._model.elements)})"


# ---------------------------------------------------------------------------
# Shape registry
# ---------------------------------------------------------------------------

_EVALUATORS: dict[ElementShape, type] = {
    ElementShape.TET: HierarchicTetEvaluator,
}


def supports_shape(shape: ElementShape) -> bool:
    return shape in _EVALUATORS


def create_evaluator(model: Model) -> HierarchicTetEvaluator:
    """Evaluator for the element shapes present in ``model``."""
    missing = [s.value for s in model.shapes if not supports_shape(s)]
    if missing:
        raise ConfigurationError(
            f"No element evaluator for shapes {sorted(missing)}; "
            f"supported: {[s.value for s in _EVALUATORS]}"
        )
    return HierarchicTetEvaluator(model)
