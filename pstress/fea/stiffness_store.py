"""Element stiffness storage for the assembler.

Element matrices are keyed by element id and tagged with the element's
basis signature, so a matrix computed in one adaptive pass is reused in
the next as long as the element's orders have not changed.

Two backends share the :class:`StiffnessStore` interface:

- :class:`MemoryStiffnessStore` keeps matrices in a dict.
- :class:`FileStiffnessStore` spills matrices to two rotating scratch files,
  one for even and one for odd element ids, and keeps only an offset index
  in memory.  Matrices are written with ``np.save`` and read back exactly,
  so the assembled system does not depend on the backend.

:func:`select_store` picks the backend from the estimated matrix sizes and
the memory budget.
"""
from __future__ import annotations

import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Hashable, Mapping, Optional

import numpy as np
from numpy.typing import NDArray

from pstress.fea.errors import ResourceError

logger = logging.getLogger(__name__)


def matrix_nbytes(n_functions: int) -> int:
    """Bytes of a float64 element stiffness matrix for ``n_functions``."""
    n = 3 * n_functions
    return n * n * np.dtype(np.float64).itemsize


class StiffnessStore(ABC):
    """Element id -> stiffness matrix, tagged with a basis signature."""

    @abstractmethod
    def get(self, element_id: int, signature: Hashable) -> Optional[NDArray[np.float64]]:
        """Stored matrix, or ``None`` if absent or stored for another signature."""

    @abstractmethod
    def has(self, element_id: int, signature: Hashable) -> bool:
        ...

    @abstractmethod
    def put(self, element_id: int, signature: Hashable, matrix: NDArray[np.float64]) -> None:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...

    def close(self) -> None:
        self.clear()

    def __enter__(self) -> "StiffnessStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class MemoryStiffnessStore(StiffnessStore):
    """Keeps every element matrix in memory."""

    def __init__(self) -> None:
        self._data: dict[int, tuple[Hashable, NDArray[np.float64]]] = {}

    def get(self, element_id, signature):
        entry = self._data.get(element_id)
        if entry is None or entry[0] != signature:
            return None
        return entry[1]

    def has(self, element_id, signature):
        entry = self._data.get(element_id)
        return entry is not None and entry[0] == signature

    def put(self, element_id, signature, matrix):
        self._data[element_id] = (signature, matrix)

    def __len__(self) -> int:
        return len(self._data)

    @property
    def nbytes(self) -> int:
        return sum(m.nbytes for _, m in self._data.values())

    def clear(self) -> None:
        self._data.clear()

    def __repr__(self) -> str:
        return f"MemoryStiffnessStore(n_elements={len(self)}, nbytes={self.nbytes})"


class FileStiffnessStore(StiffnessStore):
    """Spills element matrices to two scratch files bucketed by element id parity.

    A replaced matrix of the same shape is overwritten in place.  Otherwise
    the new record is appended and the old one becomes dead space; a file is
    rewritten with only its live records once its dead bytes exceed them.

    Parameters
    ----------
    directory : str, optional
        Where the scratch files are created; the system temp dir if omitted.
        The files are anonymous and removed when the store is closed.
    """

    _PREFIXES = ("pstress_even_", "pstress_odd_")

    def __init__(self, directory: Optional[str] = None) -> None:
        self._directory = directory
        self._files = [self._scratch(b) for b in (0, 1)]
        # element id -> (signature, bucket, offset, record bytes, shape)
        self._index: dict[int, tuple[Hashable, int, int, int, tuple]] = {}
        self._live = [0, 0]
        self._dead = [0, 0]
        self._bytes_written = 0

    def _scratch(self, bucket: int):
        return tempfile.TemporaryFile(prefix=self._PREFIXES[bucket], dir=self._directory)

    def get(self, element_id, signature):
        entry = self._index.get(element_id)
        if entry is None or entry[0] != signature:
            return None
        _, bucket, offset, _, _ = entry
        f = self._files[bucket]
        f.seek(offset)
        return np.load(f, allow_pickle=False)

    def has(self, element_id, signature):
        entry = self._index.get(element_id)
        return entry is not None and entry[0] == signature

    def put(self, element_id, signature, matrix):
        matrix = np.ascontiguousarray(matrix, dtype=np.float64)
        bucket = element_id % 2
        f = self._files[bucket]
        old = self._index.get(element_id)
        in_place = old is not None and old[4] == matrix.shape

        if in_place:
            offset = old[2]
            f.seek(offset)
        else:
            f.seek(0, 2)
            offset = f.tell()
        np.save(f, matrix, allow_pickle=False)
        size = f.tell() - offset
        self._bytes_written += size
        self._index[element_id] = (signature, bucket, offset, size, matrix.shape)

        if not in_place:
            self._live[bucket] += size
            if old is not None:
                self._live[bucket] -= old[3]
                self._dead[bucket] += old[3]
            if self._dead[bucket] > self._live[bucket]:
                self._compact(bucket)

    def _compact(self, bucket: int) -> None:
        old, new = self._files[bucket], self._scratch(bucket)
        for element_id in sorted(self._index):
            signature, b, offset, size, shape = self._index[element_id]
            if b != bucket:
                continue
            old.seek(offset)
            self._index[element_id] = (signature, bucket, new.tell(), size, shape)
            new.write(old.read(size))
        old.close()
        self._files[bucket] = new
        logger.debug(
            "Compacted scratch file %d: dropped %d dead bytes", bucket, self._dead[bucket]
        )
        self._dead[bucket] = 0

    def __len__(self) -> int:
        return len(self._index)

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def file_sizes(self) -> tuple[int, int]:
        """Current size of the even and odd scratch files in bytes."""
        sizes = []
        for f in self._files:
            f.seek(0, 2)
            sizes.append(f.tell())
        return tuple(sizes)

    def clear(self) -> None:
        self._index.clear()
        for f in self._files:
            f.seek(0)
            f.truncate()
        self._live = [0, 0]
        self._dead = [0, 0]
        self._bytes_written = 0

    def close(self) -> None:
        self._index.clear()
        for f in self._files:
            f.close()

    def __repr__(self) -> str:
        return (
            f"FileStiffnessStore(n_elements={len(self)}, "
            f"bytes_written={self._bytes_written}, directory={self._directory!r})"
        )


def select_store(
    sizes: Mapping[int, int],
    budget_bytes: int,
    scratch_dir: Optional[str] = None,
    current: Optional[StiffnessStore] = None,
) -> StiffnessStore:
    """Choose a store for element matrices of the given byte ``sizes``.

    All matrices in memory if their total fits ``budget_bytes``, otherwise
    spilled to scratch files.  ``current`` is returned unchanged when it is
    already of the chosen kind, keeping its matrices for reuse; otherwise it
    is closed.

    Raises
    ------
    ResourceError
        If a single element matrix is larger than the budget.
    """
    for element_id in sorted(sizes):
        if sizes[element_id] > budget_bytes:
            raise ResourceError(
                f"Stiffness matrix of element {element_id} needs "
                f"{sizes[element_id]} bytes, more than the "
                f"{budget_bytes}-byte element memory budget",
                element_id=element_id,
            )

    total = sum(sizes.values())
    kind = MemoryStiffnessStore if total <= budget_bytes else FileStiffnessStore
    if isinstance(current, kind):
        return current
    if current is not None:
        current.close()

    if kind is MemoryStiffnessStore:
        logger.debug("Element matrices fit in memory: %d bytes", total)
        return MemoryStiffnessStore()

    logger.info(
        "Element matrices need %d bytes, budget %d: spilling to scratch files",
        total,
        budget_bytes,
    )
    return FileStiffnessStore(scratch_dir)
