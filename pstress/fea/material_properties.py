"""Isotropic linear-elastic material table for stress analysis.

Each entry contains the elastic constants and density needed for stiffness
and volume-force evaluation, plus the yield strength consumed by downstream
allowable checks.
"""
from __future__ import annotations

from typing import Optional

# ---------------------------------------------------------------------------
# Material property database
# ---------------------------------------------------------------------------
# Keys:
#   E_pa            -- Young's modulus [Pa]
#   nu              -- Poisson's ratio  [-]
#   rho_kg_m3       -- Density [kg/m^3]
#   yield_mpa       -- Yield strength [MPa]
# ---------------------------------------------------------------------------

STRUCTURAL_MATERIALS: dict[str, dict] = {
    "Titanium Ti-6Al-4V": {
        "E_pa": 113.8e9,
        "nu": 0.342,
        "rho_kg_m3": 4430.0,
        "yield_mpa": 880.0,
    },
    "Steel D2": {
        "E_pa": 210.0e9,
        "nu": 0.30,
        "rho_kg_m3": 7700.0,
        "yield_mpa": 1620.0,
    },
    "Steel 4140": {
        "E_pa": 200.0e9,
        "nu": 0.29,
        "rho_kg_m3": 7850.0,
        "yield_mpa": 1170.0,
    },
    "Aluminum 7075-T6": {
        "E_pa": 71.7e9,
        "nu": 0.33,
        "rho_kg_m3": 2810.0,
        "yield_mpa": 503.0,
    },
    "Copper C11000": {
        "E_pa": 117.0e9,
        "nu": 0.34,
        "rho_kg_m3": 8940.0,
        "yield_mpa": 69.0,
    },
}

# ---------------------------------------------------------------------------
# Alias mapping for case-insensitive and shorthand lookups
# ---------------------------------------------------------------------------
_ALIASES: dict[str, str] = {
    "titanium": "Titanium Ti-6Al-4V",
    "ti-6al-4v": "Titanium Ti-6Al-4V",
    "ti64": "Titanium Ti-6Al-4V",
    "steel d2": "Steel D2",
    "d2": "Steel D2",
    "steel": "Steel 4140",
    "steel 4140": "Steel 4140",
    "4140": "Steel 4140",
    "aluminum": "Aluminum 7075-T6",
    "aluminum 7075-t6": "Aluminum 7075-T6",
    "al7075": "Aluminum 7075-T6",
    "copper": "Copper C11000",
    "cu": "Copper C11000",
}


def get_material(name: str) -> Optional[dict]:
    """Look up material properties by name (case-insensitive, alias-aware).

    Returns a copy of the property dictionary, or ``None`` if not found.
    """
    if name in STRUCTURAL_MATERIALS:
        return dict(STRUCTURAL_MATERIALS[name])

    key = name.strip().lower()
    canonical = _ALIASES.get(key)
    if canonical is None:
        for mat_name in STRUCTURAL_MATERIALS:
            if mat_name.lower() == key:
                canonical = mat_name
                break
    if canonical is None:
        return None
    return dict(STRUCTURAL_MATERIALS[canonical])


def list_materials() -> list[str]:
    """Return the canonical material names."""
    return list(STRUCTURAL_MATERIALS.keys())
