"""
Task partitioning for the multiprocessing engine.

Note that numeric libraries may have internal parallelization. Nested parallelization may cause performance issues:
Avoid Nested Parallelism: if a task function calls into multithreaded BLAS (numpy, scipy) consider limiting the
threads of the child processes to prevent oversubscription, e.g. by setting OMP_NUM_THREADS=1 before creating the
engine.
"""
from dataclasses import dataclass, field
from typing import Any, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray


@dataclass(frozen=True)
class Chunk:
    """A contiguous slice of the input assigned to one worker for one run."""
    index: int
    offset: int
    items: Any = field(default=(), repr=False)

    def __len__(self) -> int:
        return len(self.items)


def lin_parts(num_atoms: int, num_threads: int) -> NDArray[np.int64]:
    r"""Compute boundaries splitting ``num_atoms`` items into contiguous, balanced parts.

    Returns ``min(num_threads, num_atoms) + 1`` increasing boundaries starting at 0 and ending at ``num_atoms``.
    Part sizes differ by at most one and the leading parts absorb the remainder, e.g. 10 atoms over 4 threads
    gives sizes ``[3, 3, 2, 2]``.

    :param num_atoms: Number of items to split.
    :param num_threads: Requested number of parts (at least 1).
    :returns: Array of part boundaries.
    :raises ValueError: If ``num_atoms`` is negative or ``num_threads`` is smaller than 1.
    """
    if num_atoms < 0:
        raise ValueError(f"num_atoms must be non-negative. Got {num_atoms}")
    if num_threads < 1:
        raise ValueError(f"num_threads must be at least 1. Got {num_threads}")

    n_parts = min(num_threads, num_atoms)
    if n_parts == 0:
        return np.zeros(1, dtype=np.int64)

    base, remainder = divmod(num_atoms, n_parts)
    sizes = np.full(n_parts, base, dtype=np.int64)
    sizes[:remainder] += 1
    return np.concatenate(([0], np.cumsum(sizes))).astype(np.int64)


def _slice(data: Sequence, start: int, stop: int):
    # a Series with an integer index would otherwise slice by label
    if isinstance(data, pd.Series):
        return data.iloc[start:stop]
    return data[start:stop]


def partition(data: Sequence, num_threads: int) -> list[Chunk]:
    r"""Split an ordered sequence into contiguous, order-preserving chunks.

    Concatenating the chunk items in index order reconstructs ``data`` exactly. See :func:`lin_parts` for the
    sizing rule.

    :param data: Ordered, sliceable sequence (list, tuple, range, numpy array, pandas Series).
    :param num_threads: Number of workers to split across.
    :returns: ``min(num_threads, len(data))`` chunks.
    """
    parts = lin_parts(len(data), num_threads)
    return [
        Chunk(index=i, offset=int(parts[i]), items=_slice(data, int(parts[i]), int(parts[i + 1])))
        for i in range(len(parts) - 1)
    ]


def simple_chunks(num_threads: int) -> list[Chunk]:
    """One empty chunk per worker slot, used when the function runs without input data."""
    if num_threads < 1:
        raise ValueError(f"num_threads must be at least 1. Got {num_threads}")
    return [Chunk(index=i, offset=i) for i in range(num_threads)]
