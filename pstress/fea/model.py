"""Analysis model container: nodes, elements, materials, constraints, loads.

The model is owned by the caller and only referenced by the analysis core.
Mesh file parsing is outside this package; models are built in code, either
directly or with :func:`build_block_model` for structured brick regions
split into tetrahedra.
"""
from __future__ import annotations

import enum
import itertools
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from numpy.typing import NDArray

from pstress.fea.errors import ConfigurationError
from pstress.fea.material_properties import get_material


class ElementShape(enum.Enum):
    """Element topology variant.

    Each shape carries its local vertex, edge and face tables.  Evaluation
    capabilities are registered per shape in :mod:`pstress.fea.elements`.
    """
    TET = "tet"
    WEDGE = "wedge"
    BRICK = "brick"

    @property
    def n_vertices(self) -> int:
        return _SHAPE_TABLES[self]["n_vertices"]

    @property
    def edges(self) -> tuple[tuple[int, ...], ...]:
        return _SHAPE_TABLES[self]["edges"]

    @property
    def faces(self) -> tuple[tuple[int, ...], ...]:
        return _SHAPE_TABLES[self]["faces"]


_SHAPE_TABLES: dict[ElementShape, dict] = {
    ElementShape.TET: {
        "n_vertices": 4,
        "edges": ((0, 1), (1, 2), (0, 2), (0, 3), (1, 3), (2, 3)),
        "faces": ((0, 1, 2), (0, 1, 3), (1, 2, 3), (0, 2, 3)),
    },
    ElementShape.WEDGE: {
        "n_vertices": 6,
        "edges": ((0, 1), (1, 2), (0, 2), (3, 4), (4, 5), (3, 5),
                  (0, 3), (1, 4), (2, 5)),
        "faces": ((0, 1, 2), (3, 4, 5), (0, 1, 4, 3), (1, 2, 5, 4),
                  (0, 2, 5, 3)),
    },
    ElementShape.BRICK: {
        "n_vertices": 8,
        "edges": ((0, 1), (1, 2), (2, 3), (0, 3), (4, 5), (5, 6), (6, 7),
                  (4, 7), (0, 4), (1, 5), (2, 6), (3, 7)),
        "faces": ((0, 1, 2, 3), (4, 5, 6, 7), (0, 1, 5, 4), (1, 2, 6, 5),
                  (2, 3, 7, 6), (0, 3, 7, 4)),
    },
}


@dataclass(frozen=True)
class Material:
    """Isotropic linear-elastic material."""
    name: str
    E: float
    nu: float
    rho: float = 0.0
    yield_stress: Optional[float] = None

    @classmethod
    def from_table(cls, name: str) -> "Material":
        props = get_material(name)
        if props is None:
            raise ConfigurationError(
                f"Unknown material {name!r}. "
                "Use material_properties.list_materials() for available names."
            )
        return cls(
            name=name,
            E=props["E_pa"],
            nu=props["nu"],
            rho=props["rho_kg_m3"],
            yield_stress=props["yield_mpa"] * 1.0e6,
        )

    def elasticity_matrix(self) -> NDArray[np.float64]:
        """6x6 isotropic constitutive matrix in Voigt order
        [xx, yy, zz, xy, yz, xz] with engineering shear strains."""
        lam = self.E * self.nu / ((1.0 + self.nu) * (1.0 - 2.0 * self.nu))
        mu = self.E / (2.0 * (1.0 + self.nu))

        D = np.zeros((6, 6), dtype=np.float64)
        D[:3, :3] = lam
        D[0, 0] = D[1, 1] = D[2, 2] = lam + 2.0 * mu
        D[3, 3] = D[4, 4] = D[5, 5] = mu
        return D


@dataclass
class Element:
    """One finite element and its current polynomial order."""
    id: int
    nodes: tuple[int, ...]
    material: str
    p: int = 1
    shape: ElementShape = ElementShape.TET
    active: bool = True


@dataclass
class DisplacementConstraint:
    """Displacement boundary condition on a set of nodes.

    ``components`` masks the constrained components, in the global system or
    in ``coordinate_system`` (3x3, rows are the local axes expressed in
    global coordinates).  Zero ``values`` make it a fixed support; non-zero
    values an enforced displacement.  ``penalty`` applies the constraint as
    stiff springs instead of eliminating equations.
    """
    nodes: tuple[int, ...]
    components: tuple[bool, bool, bool] = (True, True, True)
    values: tuple[float, float, float] = (0.0, 0.0, 0.0)
    coordinate_system: Optional[NDArray[np.float64]] = None
    penalty: bool = False
    name: str = ""

    @property
    def is_enforced(self) -> bool:
        return any(
            c and v != 0.0 for c, v in zip(self.components, self.values)
        )


@dataclass
class VolumeForce:
    """Body load per unit volume: gravity or centrifugal."""
    kind: str
    acceleration: tuple[float, float, float] = (0.0, 0.0, 0.0)
    omega: float = 0.0
    axis_origin: tuple[float, float, float] = (0.0, 0.0, 0.0)
    axis_direction: tuple[float, float, float] = (0.0, 0.0, 1.0)
    element_ids: Optional[tuple[int, ...]] = None

    def applies_to(self, element_id: int) -> bool:
        return self.element_ids is None or element_id in self.element_ids

    def body_force(
        self, points: NDArray[np.float64], rho: float
    ) -> NDArray[np.float64]:
        """Force per unit volume at physical ``points`` (n, 3)."""
        if self.kind == "gravity":
            g = np.asarray(self.acceleration, dtype=np.float64)
            return np.tile(rho * g, (points.shape[0], 1))
        if self.kind == "centrifugal":
            axis = np.asarray(self.axis_direction, dtype=np.float64)
            axis = axis / np.linalg.norm(axis)
            rel = points - np.asarray(self.axis_origin, dtype=np.float64)
            radial = rel - np.outer(rel @ axis, axis)
            return rho * self.omega ** 2 * radial
        raise ConfigurationError(
            f"Unsupported volume force kind: {self.kind!r}. "
            "Must be 'gravity' or 'centrifugal'."
        )


@dataclass
class NodalForce:
    """Point force applied at a mesh vertex."""
    node: int
    force: tuple[float, float, float]


@dataclass
class Model:
    """Mesh, materials, constraints and loads for one analysis."""
    nodes: NDArray[np.float64]
    elements: list[Element]
    materials: dict[str, Material]
    constraints: list[DisplacementConstraint] = field(default_factory=list)
    volume_forces: list[VolumeForce] = field(default_factory=list)
    nodal_forces: list[NodalForce] = field(default_factory=list)
    node_sets: dict[str, NDArray[np.int64]] = field(default_factory=dict)

    @property
    def n_nodes(self) -> int:
        return int(self.nodes.shape[0])

    @property
    def shapes(self) -> set[ElementShape]:
        return {e.shape for e in self.elements}

    @property
    def max_p(self) -> int:
        return max((e.p for e in self.elements), default=0)

    @property
    def max_element_id(self) -> int:
        return max((e.id for e in self.elements), default=-1)

    def element(self, element_id: int) -> Element:
        for e in self.elements:
            if e.id == element_id:
                return e
        raise KeyError(element_id)

    def active_elements(self) -> list[Element]:
        return sorted((e for e in self.elements if e.active), key=lambda e: e.id)

    def material_of(self, element: Element) -> Material:
        return self.materials[element.material]

    def node_set(self, name: str) -> NDArray[np.int64]:
        if name not in self.node_sets:
            raise ConfigurationError(
                f"Node set {name!r} not found. "
                f"Available sets: {sorted(self.node_sets)}"
            )
        return self.node_sets[name]

    def set_uniform_p(self, p: int) -> None:
        for e in self.elements:
            e.p = p

    def validate(self) -> None:
        """Check references between nodes, elements and materials."""
        if self.nodes.ndim != 2 or self.nodes.shape[1] != 3:
            raise ConfigurationError(
                f"nodes must have shape (n, 3), got {self.nodes.shape}"
            )
        if not self.elements:
            raise ConfigurationError("Model has no elements.")
        seen: set[int] = set()
        for e in self.elements:
            if e.id in seen:
                raise ConfigurationError(f"Duplicate element id {e.id}")
            seen.add(e.id)
            if len(e.nodes) != e.shape.n_vertices:
                raise ConfigurationError(
                    f"Element {e.id}: {e.shape.value} needs "
                    f"{e.shape.n_vertices} nodes, got {len(e.nodes)}"
                )
            if min(e.nodes) < 0 or max(e.nodes) >= self.n_nodes:
                raise ConfigurationError(
                    f"Element {e.id} references a node outside 0..{self.n_nodes - 1}"
                )
            if e.material not in self.materials:
                raise ConfigurationError(
                    f"Element {e.id} uses unknown material {e.material!r}"
                )
            if e.p < 1:
                raise ConfigurationError(
                    f"Element {e.id} has polynomial order {e.p}; must be >= 1"
                )


# ---------------------------------------------------------------------------
# Structured block mesher
# ---------------------------------------------------------------------------

def _kuhn_tets(corner: list[int]) -> list[tuple[int, int, int, int]]:
    """Split a brick into 6 tets along its main diagonal.

    ``corner[i + 2*j + 4*k]`` is the node at local offset (i, j, k).  All
    bricks of a grid are split the same way, so shared faces match.
    """
    tets = []
    for perm in itertools.permutations(range(3)):
        path = [0]
        offset = [0, 0, 0]
        for axis in perm:
            offset[axis] = 1
            path.append(offset[0] + 2 * offset[1] + 4 * offset[2])
        tets.append(tuple(corner[v] for v in path))
    return tets


def build_block_model(
    size: tuple[float, float, float],
    divisions: tuple[int, int, int],
    material: Material,
    p: int = 1,
) -> Model:
    """Tetrahedral mesh of an axis-aligned block at the origin.

    Node sets ``xmin``, ``xmax``, ``ymin``, ``ymax``, ``zmin`` and ``zmax``
    hold the nodes on each face.  Constraints and loads are left empty.
    """
    nx, ny, nz = divisions
    if min(divisions) < 1:
        raise ConfigurationError(f"divisions must be >= 1, got {divisions}")

    xs = np.linspace(0.0, size[0], nx + 1)
    ys = np.linspace(0.0, size[1], ny + 1)
    zs = np.linspace(0.0, size[2], nz + 1)

    def node_index(i: int, j: int, k: int) -> int:
        return i + (nx + 1) * (j + (ny + 1) * k)

    nodes = np.array(
        [[xs[i], ys[j], zs[k]]
         for k in range(nz + 1) for j in range(ny + 1) for i in range(nx + 1)],
        dtype=np.float64,
    )

    elements: list[Element] = []
    for k in range(nz):
        for j in range(ny):
            for i in range(nx):
                corner = [
                    node_index(i + di, j + dj, k + dk)
                    for dk in (0, 1) for dj in (0, 1) for di in (0, 1)
                ]
                for tet in _kuhn_tets(corner):
                    elements.append(
                        Element(id=len(elements), nodes=tet,
                                material=material.name, p=p)
                    )

    tol = 1e-12 * max(size)
    node_sets = {
        "xmin": np.flatnonzero(nodes[:, 0] <= tol),
        "xmax": np.flatnonzero(nodes[:, 0] >= size[0] - tol),
        "ymin": np.flatnonzero(nodes[:, 1] <= tol),
        "ymax": np.flatnonzero(nodes[:, 1] >= size[1] - tol),
        "zmin": np.flatnonzero(nodes[:, 2] <= tol),
        "zmax": np.flatnonzero(nodes[:, 2] >= size[2] - tol),
    }

    return Model(
        nodes=nodes,
        elements=elements,
        materials={material.name: material},
        node_sets=node_sets,
    )
