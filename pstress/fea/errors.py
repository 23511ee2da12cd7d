"""Exception hierarchy for the p-adaptive analysis core.

Configuration errors describe an unsound model or settings and abort the
run.  Resource and numerical errors end the current pass; the adaptive
controller records them and moves to its ``FAILED`` state.
"""
from __future__ import annotations

from typing import Optional


class AnalysisError(Exception):
    """Base class for all analysis-core failures."""


class ConfigurationError(AnalysisError):
    """The model or the analysis settings cannot produce a sound system."""


class ResourceError(AnalysisError):
    """Element data does not fit the memory budget, even with spilling."""

    def __init__(self, message: str, element_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.element_id = element_id


class NumericalError(AnalysisError):
    """The linear solve failed for the current pass."""

    def __init__(
        self,
        message: str,
        pass_number: Optional[int] = None,
        n_equations: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.pass_number = pass_number
        self.n_equations = n_equations


class SingularSystemError(NumericalError):
    """The assembled stiffness matrix is singular or numerically unusable."""
