"""Scalar stress and strain measures for error estimation and reporting.

Stress convention (Voigt notation)
-----------------------------------
[sigma_xx, sigma_yy, sigma_zz, tau_xy, tau_yz, tau_xz]

Strains use the same order with engineering shear strains
(gamma_xy = 2 eps_xy).

Von Mises formula
-----------------
sigma_vm = sqrt(0.5 * ((sxx-syy)^2 + (syy-szz)^2 + (szz-sxx)^2
                        + 6*(txy^2 + tyz^2 + txz^2)))

Equivalent (von Mises) strain
-----------------------------
eps_eq = sqrt(2)/3 * sqrt((exx-eyy)^2 + (eyy-ezz)^2 + (ezz-exx)^2
                          + 1.5*(gxy^2 + gyz^2 + gxz^2))
"""
from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

# Barycentric sampling points for stress-max searches: the four vertices,
# then the centroid.
SAMPLE_POINTS: NDArray[np.float64] = np.vstack([np.eye(4), np.full((1, 4), 0.25)])
SAMPLE_POINTS.setflags(write=False)


def von_mises(stress_voigt: NDArray[np.float64]) -> NDArray[np.float64]:
    """Von Mises stress of (..., 6) Voigt stresses.

    Used for the stress-max search, for the element error indicators (on
    stress differences) and for the low-stress order cap.  Round-off that
    would make the square negative is clipped to zero.
    """
    s = np.asarray(stress_voigt, dtype=np.float64)
    normal = s[..., :3]
    shear = s[..., 3:]

    sq = 0.5 * (
        ((normal - np.roll(normal, -1, axis=-1)) ** 2).sum(axis=-1)
        + 6.0 * (shear ** 2).sum(axis=-1)
    )
    return np.sqrt(np.maximum(sq, 0.0))


def equivalent_strain(strain_voigt: NDArray[np.float64]) -> NDArray[np.float64]:
    """Von Mises equivalent strain of (..., 6) Voigt strains."""
    e = np.asarray(strain_voigt, dtype=np.float64)
    exx, eyy, ezz = e[..., 0], e[..., 1], e[..., 2]
    gxy, gyz, gxz = e[..., 3], e[..., 4], e[..., 5]

    sq = (
        (exx - eyy) ** 2
        + (eyy - ezz) ** 2
        + (ezz - exx) ** 2
        + 1.5 * (gxy ** 2 + gyz ** 2 + gxz ** 2)
    )
    return np.sqrt(2.0) / 3.0 * np.sqrt(np.maximum(sq, 0.0))
