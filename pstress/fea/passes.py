"""Per-pass convergence history."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class PassRecord:
    """Summary of one completed adaptive pass."""
    pass_number: int
    max_p: int
    n_equations: int
    error: float          # global error, fraction of max von Mises stress
    max_stress: float     # max von Mises stress, model units

    def as_dict(self) -> dict:
        return asdict(self)


class PassRecorder:
    """Append-only list of :class:`PassRecord`, in pass order."""

    def __init__(self) -> None:
        self._records: list[PassRecord] = []

    def append(self, record: PassRecord) -> None:
        expected = len(self._records) + 1
        if record.pass_number != expected:
            raise ValueError(
                f"Pass record {record.pass_number} out of order; expected {expected}"
            )
        self._records.append(record)

    @property
    def records(self) -> tuple[PassRecord, ...]:
        return tuple(self._records)

    @property
    def last(self) -> Optional[PassRecord]:
        return self._records[-1] if self._records else None

    @property
    def best(self) -> Optional[PassRecord]:
        """Record with the lowest error; the earliest one on ties."""
        if not self._records:
            return None
        return min(self._records, key=lambda r: (r.error, r.pass_number))

    def as_dicts(self) -> list[dict]:
        return [r.as_dict() for r in self._records]

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PassRecord]:
        return iter(self._records)
