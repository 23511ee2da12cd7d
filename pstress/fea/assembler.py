"""Global sparse system assembly for the p-adaptive analysis.

Assembles element stiffness matrices into the global stiffness ``K`` in
CSR format and builds the right-hand side from volume forces, nodal forces
and prescribed displacements.

Algorithm
---------
1. Estimate the size of every active element matrix and select a
   :class:`~pstress.fea.stiffness_store.StiffnessStore` (memory or spill).
2. Compute the matrices missing from the store, sequentially or in a
   thread pool.  Computation is independent per element; a batch of
   pending results never exceeds the memory budget.
3. Build the CSR structure of ``K`` from the function adjacency: two
   equations couple when their functions share an active element.
4. Visit the elements in ascending id order on the calling thread.  Each
   free-free block is symmetrised as ``(K_e + K_e^T) / 2`` and added into
   the CSR values at its precomputed positions, and ``-K_e g_e`` of
   prescribed values goes into the right-hand side.  Only one element
   matrix is held at a time.
5. Add soft springs ``soft_spring_factor * max|diag K|`` on the diagonal
   when needed, then volume and nodal forces, and drop explicit zeros.

Because every entry of ``K`` is summed in element order, the sequential and
parallel paths and both store backends produce identical systems.
"""
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Iterator, Optional

import numpy as np
import scipy.sparse as sp
from numpy.typing import NDArray

from pstress.fea.config import AssemblySettings
from pstress.fea.constraints import ConstraintSet, element_constraint_load
from pstress.fea.elements import ElementEvaluator
from pstress.fea.errors import ConfigurationError
from pstress.fea.functions import ElementFunctions, FunctionSpace
from pstress.fea.model import Element, Model
from pstress.fea.numbering import EquationNumbering
from pstress.fea.stiffness_store import (
    FileStiffnessStore,
    StiffnessStore,
    matrix_nbytes,
    select_store,
)

logger = logging.getLogger(__name__)

# Minimum number of constraint components that removes all rigid body modes
_RIGID_BODY_COMPONENTS = 6


@dataclass
class GlobalSystem:
    """Assembled system ``K u = rhs`` of one pass."""
    K: sp.csr_matrix
    rhs: NDArray[np.float64]
    load_resultant: NDArray[np.float64]
    soft_spring_stiffness: float = 0.0
    penalty_stiffness: float = 0.0
    spilled: bool = False
    n_computed: int = 0
    n_reused: int = 0

    @property
    def n_equations(self) -> int:
        return int(self.rhs.shape[0])


class GlobalAssembler:
    """Assemble the global system of a p-adaptive pass.

    Parameters
    ----------
    model : Model
        Elements, loads and materials.  Only read.
    evaluator : ElementEvaluator
        Element stiffness and volume-force capability.
    settings : AssemblySettings
        Worker count, memory budget, scratch directory and soft springs.

    The assembler owns its stiffness store across passes; call
    :meth:`close` to release scratch files.
    """

    def __init__(
        self,
        model: Model,
        evaluator: ElementEvaluator,
        settings: Optional[AssemblySettings] = None,
    ) -> None:
        self._model = model
        self._evaluator = evaluator
        self._settings = settings or AssemblySettings()
        self._store: Optional[StiffnessStore] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def store(self) -> Optional[StiffnessStore]:
        return self._store

    @property
    def n_workers(self) -> int:
        workers = self._settings.workers
        if workers == 0:
            return os.cpu_count() or 1
        return workers

    def assemble(
        self,
        space: FunctionSpace,
        numbering: EquationNumbering,
        constraints: ConstraintSet,
    ) -> GlobalSystem:
        """Assemble stiffness and right-hand side for the current numbering."""
        t0 = time.perf_counter()
        n_eq = numbering.n_equations
        elements = self._model.active_elements()
        funcs = {e.id: space.element_functions(e.id) for e in elements}

        self._store = select_store(
            {e.id: matrix_nbytes(funcs[e.id].n_functions) for e in elements},
            self._settings.memory_budget_bytes,
            self._settings.scratch_dir,
            current=self._store,
        )
        n_computed = self._fill_store(elements, funcs)

        indptr, indices = self._sparsity(elements, funcs, numbering)
        # Row-major position keys of the stored entries, ascending.
        keys = np.repeat(np.arange(n_eq, dtype=np.int64), np.diff(indptr))
        keys *= n_eq
        keys += indices
        data = np.zeros(indices.size, dtype=np.float64)
        rhs = np.zeros(n_eq, dtype=np.float64)

        for e in elements:
            ef = funcs[e.id]
            Ke = self._store.get(e.id, ef.signature)
            dofs = numbering.element_dofs(ef)
            free = np.flatnonzero(dofs >= 0)
            g = dofs[free]
            block = Ke[np.ix_(free, free)]
            block = 0.5 * (block + block.T)
            pos = np.searchsorted(keys, (g[:, None] * n_eq + g[None, :]).ravel())
            data[pos] += block.ravel()

            eqs, load = element_constraint_load(
                Ke, dofs, constraints.baseline[ef.function_ids].ravel()
            )
            np.add.at(rhs, eqs, load)

        k_soft = 0.0
        if self._needs_soft_springs(constraints):
            diagonal = np.arange(n_eq, dtype=np.int64) * (n_eq + 1)
            diag_pos = np.searchsorted(keys, diagonal)
            max_diag = float(np.abs(data[diag_pos]).max())
            k_soft = self._settings.soft_spring_factor * max_diag
            if k_soft > 0.0:
                data[diag_pos] += k_soft
                # Springs act on the total displacement, not the increment.
                free = numbering.free
                start = np.zeros(n_eq, dtype=np.float64)
                start[numbering.equations[free]] = constraints.baseline[free]
                rhs -= k_soft * start
        del keys

        K = sp.csr_matrix((data, indices, indptr), shape=(n_eq, n_eq))
        K.has_sorted_indices = True
        K.eliminate_zeros()

        resultant = self._apply_volume_forces(elements, funcs, numbering, rhs)
        resultant += self._apply_nodal_forces(space, numbering, rhs)

        elapsed = time.perf_counter() - t0
        logger.info(
            "Assembled global system: %d equations, %d elements "
            "(%d computed, %d reused), K nnz=%d, soft springs=%.3e, time=%.3fs",
            n_eq,
            len(elements),
            n_computed,
            len(elements) - n_computed,
            K.nnz,
            k_soft,
            elapsed,
        )

        return GlobalSystem(
            K=K,
            rhs=rhs,
            load_resultant=resultant,
            soft_spring_stiffness=k_soft,
            spilled=isinstance(self._store, FileStiffnessStore),
            n_computed=n_computed,
            n_reused=len(elements) - n_computed,
        )

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None

    # ------------------------------------------------------------------
    # Sparsity
    # ------------------------------------------------------------------

    @staticmethod
    def _sparsity(
        elements: list[Element],
        funcs: dict[int, ElementFunctions],
        numbering: EquationNumbering,
    ) -> tuple[NDArray[np.int64], NDArray[np.int64]]:
        """CSR ``indptr`` and sorted ``indices`` of the global stiffness.

        Every free component of a function couples to every free component
        of the functions it shares an active element with.
        """
        n_functions = numbering.n_functions
        sizes = [funcs[e.id].function_ids.size for e in elements]
        incidence = sp.csr_matrix(
            (
                np.ones(sum(sizes), dtype=np.int32),
                (
                    np.repeat(np.arange(len(elements)), sizes),
                    np.concatenate([funcs[e.id].function_ids for e in elements])
                    if elements else np.zeros(0, dtype=np.int64),
                ),
            ),
            shape=(len(elements), n_functions),
        )
        adjacency = (incidence.T @ incidence).tocsr()
        adjacency.sort_indices()
        del incidence

        # Free column equations of each function's neighbours, in order.
        col_eq = numbering.equations[adjacency.indices]
        col_free = col_eq >= 0
        columns = col_eq[col_free]
        offsets = np.zeros(adjacency.indices.size + 1, dtype=np.int64)
        np.cumsum(col_free.sum(axis=1), out=offsets[1:])
        del col_eq, col_free
        seg_start = offsets[adjacency.indptr[:-1]]
        seg_len = offsets[adjacency.indptr[1:]] - seg_start

        # Equation rows in ascending order and the function each belongs to.
        row_func = np.flatnonzero(numbering.equations.ravel() >= 0) // 3
        row_len = seg_len[row_func]
        indptr = np.zeros(row_func.size + 1, dtype=np.int64)
        np.cumsum(row_len, out=indptr[1:])

        gather = np.repeat(seg_start[row_func] - indptr[:-1], row_len)
        gather += np.arange(gather.size, dtype=np.int64)
        return indptr, columns[gather]

    # ------------------------------------------------------------------
    # Element matrices
    # ------------------------------------------------------------------

    def _compute(self, element: Element, ef: ElementFunctions) -> NDArray[np.float64]:
        return self._evaluator.stiffness(element, ef)

    def _fill_store(
        self, elements: list[Element], funcs: dict[int, ElementFunctions]
    ) -> int:
        """Compute and store the matrices the store does not hold yet."""
        store = self._store
        missing = [
            e for e in elements if not store.has(e.id, funcs[e.id].signature)
        ]
        if not missing:
            return 0

        workers = min(self.n_workers, len(missing))
        if workers <= 1:
            for e in missing:
                store.put(e.id, funcs[e.id].signature, self._compute(e, funcs[e.id]))
            return len(missing)

        # Each batch is stored in ascending id order once all of its futures
        # are done; its pending matrices fit the memory budget.
        for batch in self._batches(missing, funcs, 4 * workers):
            results: dict[int, NDArray[np.float64]] = {}
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._compute, e, funcs[e.id]): e.id
                    for e in batch
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
            for e in batch:
                store.put(e.id, funcs[e.id].signature, results.pop(e.id))

        logger.debug(
            "Computed %d element matrices with %d workers", len(missing), workers
        )
        return len(missing)

    def _batches(
        self,
        missing: list[Element],
        funcs: dict[int, ElementFunctions],
        max_count: int,
    ) -> Iterator[list[Element]]:
        """Split ``missing`` into runs of at most ``max_count`` elements whose
        matrices together stay within the memory budget (at least one each)."""
        budget = self._settings.memory_budget_bytes
        batch: list[Element] = []
        held = 0
        for e in missing:
            nbytes = matrix_nbytes(funcs[e.id].n_functions)
            if batch and (len(batch) >= max_count or held + nbytes > budget):
                yield batch
                batch, held = [], 0
            batch.append(e)
            held += nbytes
        if batch:
            yield batch

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    def _apply_volume_forces(
        self,
        elements: list[Element],
        funcs: dict[int, ElementFunctions],
        numbering: EquationNumbering,
        rhs: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        resultant = np.zeros(3, dtype=np.float64)
        for force in self._model.volume_forces:
            for e in elements:
                if not force.applies_to(e.id):
                    continue
                ef = funcs[e.id]
                fe, total = self._evaluator.volume_load(e, ef, force)
                dofs = numbering.element_dofs(ef)
                free = dofs >= 0
                np.add.at(rhs, dofs[free], fe.ravel()[free])
                resultant += total
        return resultant

    def _apply_nodal_forces(
        self,
        space: FunctionSpace,
        numbering: EquationNumbering,
        rhs: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        resultant = np.zeros(3, dtype=np.float64)
        for load in self._model.nodal_forces:
            fid = space.vertex_function(load.node)
            if fid is None:
                raise ConfigurationError(
                    f"Nodal force on node {load.node}, which carries no "
                    "function in the current numbering"
                )
            force = np.asarray(load.force, dtype=np.float64)
            eqs = numbering.equations[fid]
            free = eqs >= 0
            np.add.at(rhs, eqs[free], force[free])
            resultant += force
        return resultant

    def _needs_soft_springs(self, constraints: ConstraintSet) -> bool:
        policy = self._settings.soft_springs
        if policy == "always":
            return True
        if policy == "never":
            return False
        return constraints.n_constraint_components < _RIGID_BODY_COMPONENTS

    def __repr__(self) -> str:
        return (
            f"GlobalAssembler(n_elements={len(self._model.elements)}, "
            f"workers={self._settings.workers}, store={self._store!r})"
        )
