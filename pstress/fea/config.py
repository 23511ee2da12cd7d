"""Analysis settings dataclasses."""
from __future__ import annotations

import math
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from pstress.core.config import AppConfig
from pstress.fea.errors import ConfigurationError

_SOFT_SPRING_POLICIES = ("auto", "always", "never")


@dataclass
class AdaptivitySettings:
    """Adaptive loop control.

    ``max_p_low_stress`` caps the order of elements whose peak von Mises
    stress is below ``low_stress_fraction`` of the model maximum, and
    ``max_p_final_pass`` caps every order raised for the last allowed pass.
    Both are off when ``None``.  With ``detect_singularities`` an element
    whose error fell by less than ``singular_error_ratio`` after its order
    was raised is treated as singular: it is no longer raised and no longer
    counts towards the global error.
    """
    error_tolerance: float = 0.05      # fraction of max von Mises stress
    adapt_loop_max: int = 3
    max_p: int = 8
    max_p_jump: int = 2
    uniform: bool = False
    reuse_previous_solution: bool = False
    max_p_low_stress: Optional[int] = None
    low_stress_fraction: float = 0.1
    max_p_final_pass: Optional[int] = None
    detect_singularities: bool = False
    singular_error_ratio: float = 0.8

    def validate(self) -> None:
        if self.error_tolerance <= 0.0:
            raise ConfigurationError(
                f"error_tolerance must be positive, got {self.error_tolerance!r}"
            )
        if self.adapt_loop_max < 1:
            raise ConfigurationError(
                f"adapt_loop_max must be >= 1, got {self.adapt_loop_max!r}"
            )
        if self.max_p < 1:
            raise ConfigurationError(f"max_p must be >= 1, got {self.max_p!r}")
        if self.max_p_jump < 1:
            raise ConfigurationError(
                f"max_p_jump must be >= 1, got {self.max_p_jump!r}"
            )
        for name in ("max_p_low_stress", "max_p_final_pass"):
            cap = getattr(self, name)
            if cap is not None and cap < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {cap!r}")
        if not 0.0 <= self.low_stress_fraction <= 1.0:
            raise ConfigurationError(
                "low_stress_fraction must be within [0, 1], "
                f"got {self.low_stress_fraction!r}"
            )
        if not 0.0 < self.singular_error_ratio <= 1.0:
            raise ConfigurationError(
                "singular_error_ratio must be within (0, 1], "
                f"got {self.singular_error_ratio!r}"
            )


@dataclass
class AssemblySettings:
    """Stiffness assembly, memory policy and constraint stiffness."""
    workers: int = 1                   # 1 = sequential, 0 = one per CPU
    max_element_memory_mb: float = 512.0
    scratch_dir: Optional[str] = None
    soft_springs: str = "auto"
    soft_spring_factor: float = 1.0e-8
    penalty_factor: float = 1.0e8
    all_constraints_as_penalty: bool = False

    @property
    def memory_budget_bytes(self) -> int:
        return int(self.max_element_memory_mb * 1024 * 1024)

    def validate(self) -> None:
        if self.workers < 0:
            raise ConfigurationError(f"workers must be >= 0, got {self.workers!r}")
        if self.max_element_memory_mb <= 0.0:
            raise ConfigurationError(
                "max_element_memory_mb must be positive, "
                f"got {self.max_element_memory_mb!r}"
            )
        if self.soft_springs not in _SOFT_SPRING_POLICIES:
            raise ConfigurationError(
                f"soft_springs must be one of {_SOFT_SPRING_POLICIES}, "
                f"got {self.soft_springs!r}"
            )
        if self.soft_spring_factor < 0.0 or self.penalty_factor <= 0.0:
            raise ConfigurationError(
                "soft_spring_factor must be >= 0 and penalty_factor > 0"
            )


@dataclass
class SolverSettings:
    """Direct solver acceptance checks."""
    residual_tolerance: float = 1.0e-8

    def validate(self) -> None:
        if not self.residual_tolerance > 0.0:
            raise ConfigurationError(
                f"residual_tolerance must be positive, got {self.residual_tolerance!r}"
            )


@dataclass(frozen=True)
class UnitSettings:
    """Output unit conversion, fixed for the duration of a run."""
    stress_conversion: float = 1.0
    stress_label: str = "Pa"
    length_conversion: float = 1.0
    length_label: str = "m"

    def stress(self, value: float) -> float:
        return value * self.stress_conversion

    def length(self, value: float) -> float:
        return value * self.length_conversion


@dataclass
class AnalysisSettings:
    """All settings consumed by the adaptive controller."""
    adaptivity: AdaptivitySettings = field(default_factory=AdaptivitySettings)
    assembly: AssemblySettings = field(default_factory=AssemblySettings)
    solver: SolverSettings = field(default_factory=SolverSettings)
    units: UnitSettings = field(default_factory=UnitSettings)

    def validate(self) -> "AnalysisSettings":
        self.adaptivity.validate()
        self.assembly.validate()
        self.solver.validate()
        return self

    @classmethod
    def from_app_config(cls, config: AppConfig) -> "AnalysisSettings":
        """Build typed settings from the ``analysis``, ``assembly``,
        ``solver`` and ``units`` sections of an :class:`AppConfig`.

        YAML values are converted to the declared field types, so ``1e-3``
        (a string to YAML) is accepted as a float.  Unknown keys and values
        that do not convert raise :class:`ConfigurationError`.
        """
        settings = cls(
            adaptivity=_build(AdaptivitySettings, "analysis", config.section("analysis")),
            assembly=_build(AssemblySettings, "assembly", config.section("assembly")),
            solver=_build(SolverSettings, "solver", config.section("solver")),
            units=_build(UnitSettings, "units", config.section("units")),
        )
        return settings.validate()


# ---------------------------------------------------------------------------
# YAML value conversion
# ---------------------------------------------------------------------------

_SCALAR_TYPES = {"bool": bool, "int": int, "float": float, "str": str}


def _coerce(section: str, key: str, value: Any, annotation: str) -> Any:
    """Convert ``value`` to the scalar type named by a field annotation."""
    optional = annotation.startswith("Optional[")
    kind = annotation[len("Optional["):-1] if optional else annotation
    if value is None:
        if optional:
            return None
        raise ConfigurationError(f"{section}.{key} must not be empty")

    target = _SCALAR_TYPES[kind]
    if target is bool or target is str:
        if isinstance(value, target):
            return value
    elif not isinstance(value, bool):
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = math.nan
        if math.isfinite(number):
            if target is float:
                return number
            if number.is_integer():
                return int(number)
    raise ConfigurationError(f"{section}.{key} must be {kind}, got {value!r}")


def _build(cls, section: str, values: dict):
    annotations = {f.name: f.type for f in fields(cls)}
    unknown = sorted(set(values) - set(annotations))
    if unknown:
        raise ConfigurationError(
            f"Unknown {section} setting(s): {', '.join(map(str, unknown))}"
        )
    return cls(**{
        key: _coerce(section, key, value, annotations[key])
        for key, value in values.items()
    })
