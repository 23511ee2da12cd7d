"""Global equation numbering.

Every component of every global function that is neither skipped nor
eliminated by a constraint receives one equation index.  Indices are dense,
zero-based and assigned function-major (function 0 x, y, z, function 1 x,
...), so numbering the same input twice gives the same result.

A second, independent numbering gives every non-skipped function one index
in the scalar space used for stress smoothing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from numpy.typing import NDArray

from pstress.fea.errors import ConfigurationError
from pstress.fea.functions import ElementFunctions

logger = logging.getLogger(__name__)

UNNUMBERED = -1


class NumberingBuilder(Protocol):
    """What the numberer needs to know about the functions of a pass."""

    @property
    def n_functions(self) -> int:
        ...

    @property
    def skip(self) -> NDArray[np.bool_]:
        """(n_functions,) functions excluded from this pass."""
        ...

    @property
    def constrained(self) -> NDArray[np.bool_]:
        """(n_functions, 3) components eliminated by constraints."""
        ...


@dataclass(frozen=True)
class NumberingInput:
    """Plain :class:`NumberingBuilder` assembled from flag arrays."""
    skip: NDArray[np.bool_]
    constrained: NDArray[np.bool_]

    @property
    def n_functions(self) -> int:
        return int(self.skip.shape[0])


@dataclass(frozen=True)
class EquationNumbering:
    """Equation indices of one adaptive pass.

    Attributes
    ----------
    equations : (n_functions, 3)
        Equation of each function component, ``-1`` if it has none.
    smooth_equations : (n_functions,)
        Smoothing-space index of each function, ``-1`` for skipped ones.
    """
    equations: NDArray[np.int64]
    smooth_equations: NDArray[np.int64]
    n_equations: int
    n_smooth_equations: int

    @property
    def n_functions(self) -> int:
        return int(self.equations.shape[0])

    @property
    def free(self) -> NDArray[np.bool_]:
        return self.equations >= 0

    def element_dofs(self, functions: ElementFunctions) -> NDArray[np.int64]:
        """Equation vector of an element in local DOF order ``3 f + c``."""
        return self.equations[functions.function_ids].ravel()

    def element_smooth_dofs(self, functions: ElementFunctions) -> NDArray[np.int64]:
        return self.smooth_equations[functions.function_ids]


class EquationNumberer:
    """Assigns equation indices from a :class:`NumberingBuilder`."""

    def number(self, builder: NumberingBuilder) -> EquationNumbering:
        """Number the free components of ``builder``.

        Raises
        ------
        ConfigurationError
            If no function component is left free.
        """
        skip = np.asarray(builder.skip, dtype=bool)
        constrained = np.asarray(builder.constrained, dtype=bool)
        n_functions = builder.n_functions
        if skip.shape != (n_functions,) or constrained.shape != (n_functions, 3):
            raise ValueError(
                f"Flag shapes {skip.shape} and {constrained.shape} do not match "
                f"{n_functions} functions"
            )

        free = ~skip[:, None] & ~constrained
        n_equations = int(free.sum())
        if n_equations == 0:
            raise ConfigurationError(
                "The model has no free degrees of freedom: every function "
                "component is constrained or skipped."
            )

        equations = np.full((n_functions, 3), UNNUMBERED, dtype=np.int64)
        equations[free] = np.arange(n_equations, dtype=np.int64)

        smooth = np.full(n_functions, UNNUMBERED, dtype=np.int64)
        n_smooth = int((~skip).sum())
        smooth[~skip] = np.arange(n_smooth, dtype=np.int64)

        logger.info(
            "Numbered %d equations (%d smoothing) from %d functions",
            n_equations,
            n_smooth,
            n_functions,
        )
        return EquationNumbering(
            equations=equations,
            smooth_equations=smooth,
            n_equations=n_equations,
            n_smooth_equations=n_smooth,
        )
