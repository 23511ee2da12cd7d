"""Global shape functions of the hierarchic p-version discretisation.

Every vertex, edge, face and element interior of the mesh carries a set of
scalar shape functions; each scalar function owns three displacement
components.  The polynomial order of an entity is the highest order of the
elements sharing it, so neighbouring elements of different order stay
conforming.

Functions are rebuilt whenever element orders change.  Ids are assigned
deterministically (vertices, then edges, faces and interiors, each in sorted
order) and every function has a stable ``key`` so coefficients can be carried
from one adaptive pass to the next.

Element-local descriptors
-------------------------
``("v", i)``                vertex function ``L_i``
``("e", a, b, m)``          edge mode ``L_a L_b (L_b - L_a)^m``, order ``m + 2``
``("f", i, j, k, a, b)``    face mode ``L_i L_j L_k (L_j - L_i)^a (2 L_k - 1)^b``
``("b", a, b, c)``          bubble ``L_0 L_1 L_2 L_3 L_1^a L_2^b L_3^c``

Local vertex indices on edges and faces are ordered by global node id.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np
from numpy.typing import NDArray

from pstress.fea.elements import supports_shape
from pstress.fea.errors import ConfigurationError
from pstress.fea.model import Element, Model

logger = logging.getLogger(__name__)

VERTEX = "v"
EDGE = "e"
FACE = "f"
INTERIOR = "i"


@dataclass(frozen=True)
class GlobalFunction:
    """One scalar shape function attached to a mesh entity."""
    id: int
    entity: tuple[str, ...]
    mode: tuple[int, ...]
    order: int

    @property
    def key(self) -> tuple:
        return (self.entity, self.mode)


@dataclass(frozen=True)
class ElementFunctions:
    """Local-to-global function map of one element."""
    element_id: int
    function_ids: NDArray[np.int64]
    descriptors: tuple[tuple, ...]
    max_order: int

    @property
    def n_functions(self) -> int:
        return len(self.descriptors)

    @property
    def signature(self) -> tuple:
        """Identifies the element basis; equal signatures give equal matrices."""
        return (self.max_order, self.descriptors)


def _edge_modes(order: int) -> list[tuple[int, ...]]:
    return [(m,) for m in range(order - 1)]


def _face_modes(order: int) -> list[tuple[int, ...]]:
    modes = []
    for n in range(3, order + 1):
        for a in range(n - 2):
            modes.append((a, n - 3 - a))
    return modes


def _interior_modes(order: int) -> list[tuple[int, ...]]:
    modes = []
    for n in range(4, order + 1):
        for a in range(n - 3):
            for b in range(n - 3 - a):
                modes.append((a, b, n - 4 - a - b))
    return modes


def _mode_order(kind: str, mode: tuple[int, ...]) -> int:
    if kind == VERTEX:
        return 1
    if kind == EDGE:
        return mode[0] + 2
    if kind == FACE:
        return 3 + sum(mode)
    return 4 + sum(mode)


class FunctionSpace:
    """Global functions for the current element orders of a model."""

    def __init__(self, model: Model) -> None:
        for e in model.elements:
            if not supports_shape(e.shape):
                raise ConfigurationError(
                    f"Element {e.id}: no evaluator registered for shape "
                    f"{e.shape.value!r}"
                )
        self._model = model
        self._functions: list[GlobalFunction] = []
        self._key_index: dict[tuple, int] = {}
        self._entity_functions: dict[tuple, list[int]] = {}
        self._element_functions: dict[int, ElementFunctions] = {}
        self._skip = np.zeros(0, dtype=bool)
        self._build()

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @staticmethod
    def _element_entities(element: Element) -> tuple[list, list]:
        edges = [
            tuple(sorted(element.nodes[i] for i in edge))
            for edge in element.shape.edges
        ]
        faces = [
            tuple(sorted(element.nodes[i] for i in face))
            for face in element.shape.faces
        ]
        return edges, faces

    def _build(self) -> None:
        edge_order: dict[tuple, int] = {}
        face_order: dict[tuple, int] = {}
        active_entities: set[tuple] = set()
        vertices: set[int] = set()

        for e in self._model.elements:
            edges, faces = self._element_entities(e)
            vertices.update(e.nodes)
            for key in edges:
                edge_order[key] = max(edge_order.get(key, 0), e.p)
            for key in faces:
                face_order[key] = max(face_order.get(key, 0), e.p)
            if e.active:
                active_entities.update((VERTEX, n) for n in e.nodes)
                active_entities.update((EDGE,) + k for k in edges)
                active_entities.update((FACE,) + k for k in faces)
                active_entities.add((INTERIOR, e.id))

        entity_modes: list[tuple[tuple, list]] = []
        for n in sorted(vertices):
            entity_modes.append(((VERTEX, n), [()]))
        for key in sorted(edge_order):
            entity_modes.append(((EDGE,) + key, _edge_modes(edge_order[key])))
        for key in sorted(face_order):
            entity_modes.append(((FACE,) + key, _face_modes(face_order[key])))
        for e in sorted(self._model.elements, key=lambda el: el.id):
            entity_modes.append(((INTERIOR, e.id), _interior_modes(e.p)))

        skip: list[bool] = []
        for entity, modes in entity_modes:
            ids = self._entity_functions.setdefault(entity, [])
            for mode in modes:
                fn = GlobalFunction(
                    id=len(self._functions),
                    entity=entity,
                    mode=mode,
                    order=_mode_order(entity[0], mode),
                )
                self._functions.append(fn)
                self._key_index[fn.key] = fn.id
                ids.append(fn.id)
                skip.append(entity not in active_entities)
        self._skip = np.array(skip, dtype=bool)

        for e in self._model.elements:
            self._element_functions[e.id] = self._map_element(e)

        logger.info(
            "Created %d global functions (%d skipped) for %d elements, max p=%d",
            len(self._functions),
            int(self._skip.sum()),
            len(self._model.elements),
            self._model.max_p,
        )

    def _map_element(self, element: Element) -> ElementFunctions:
        gn = element.nodes
        ids: list[int] = []
        descriptors: list[tuple] = []
        max_order = 1

        for i, node in enumerate(gn):
            ids.extend(self._entity_functions[(VERTEX, node)])
            descriptors.append(("v", i))

        for local in element.shape.edges:
            a, b = sorted(local, key=lambda i: gn[i])
            for fid in self._entity_functions[(EDGE, gn[a], gn[b])]:
                fn = self._functions[fid]
                ids.append(fid)
                descriptors.append(("e", a, b) + fn.mode)
                max_order = max(max_order, fn.order)

        for local in element.shape.faces:
            i, j, k = sorted(local, key=lambda v: gn[v])
            for fid in self._entity_functions[(FACE, gn[i], gn[j], gn[k])]:
                fn = self._functions[fid]
                ids.append(fid)
                descriptors.append(("f", i, j, k) + fn.mode)
                max_order = max(max_order, fn.order)

        for fid in self._entity_functions[(INTERIOR, element.id)]:
            fn = self._functions[fid]
            ids.append(fid)
            descriptors.append(("b",) + fn.mode)
            max_order = max(max_order, fn.order)

        return ElementFunctions(
            element_id=element.id,
            function_ids=np.array(ids, dtype=np.int64),
            descriptors=tuple(descriptors),
            max_order=max(max_order, element.p),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def n_functions(self) -> int:
        return len(self._functions)

    @property
    def functions(self) -> list[GlobalFunction]:
        return self._functions

    @property
    def skip(self) -> NDArray[np.bool_]:
        """Functions touched only by inactive elements."""
        return self._skip.copy()

    @property
    def max_order(self) -> int:
        return max(
            (ef.max_order for ef in self._element_functions.values()), default=0
        )

    def element_functions(self, element_id: int) -> ElementFunctions:
        return self._element_functions[element_id]

    def vertex_function(self, node: int) -> Optional[int]:
        ids = self._entity_functions.get((VERTEX, int(node)))
        return ids[0] if ids else None

    def functions_on_nodes(self, nodes: Iterable[int]) -> list[int]:
        """Vertex, edge and face functions whose entity lies in ``nodes``."""
        node_set = {int(n) for n in nodes}
        ids: list[int] = []
        for entity, fids in self._entity_functions.items():
            if entity[0] == INTERIOR:
                continue
            if all(n in node_set for n in entity[1:]):
                ids.extend(fids)
        return sorted(ids)

    def index_of(self, key: tuple) -> Optional[int]:
        return self._key_index.get(key)

    def carry_over(
        self,
        previous: "FunctionSpace",
        coefficients: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """Map an ``(n_previous_functions, 3)`` coefficient table onto this
        space by function key; functions new to this space start at zero."""
        out = np.zeros((self.n_functions, 3), dtype=np.float64)
        for fn in previous.functions:
            idx = self._key_index.get(fn.key)
            if idx is not None:
                out[idx] = coefficients[fn.id]
        return out

    def __repr__(self) -> str:
        return (
            f"FunctionSpace(n_functions={self.n_functions}, "
            f"n_elements={len(self._element_functions)}, "
            f"max_order={self.max_order})"
        )
