from dataclasses import dataclass, field
from itertools import chain
from typing import Any, Optional

import pandas as pd


def format_memory(num_bytes: int) -> str:
    """Render a byte count the way run statistics report it, e.g. ``"41.20 MB"``."""
    return f"{num_bytes / (1024 ** 2):.2f} MB"


@dataclass
class WorkerStats:
    """Per-worker accounting for one run."""
    worker_id: int
    chunks: int = 0
    items: int = 0
    elapsed: float = 0.0
    peak_memory: int = 0


@dataclass(frozen=True)
class RunStats:
    r"""Statistics of a completed run.

    :param time_taken_seconds: Wall-clock time of the run, from dispatch to the last chunk.
    :param num_processes_used: Number of worker processes the run was sized for.
    :param data_processed: Items processed (``len(data)`` in extended mode, the worker count in simple mode).
    :param memory_used_bytes: Sum over workers of each worker's peak resident memory during the run.
    :param workers: Per-worker breakdown, ordered by worker id.
    """
    time_taken_seconds: float
    num_processes_used: int
    data_processed: int
    memory_used_bytes: int = 0
    workers: tuple = field(default=(), repr=False)

    @property
    def memory_used(self) -> str:
        return format_memory(self.memory_used_bytes)

    def to_dict(self) -> dict:
        return {
            "timeTakenSeconds": self.time_taken_seconds,
            "numProcessesUsed": self.num_processes_used,
            "dataProcessed": self.data_processed,
            "memoryUsed": self.memory_used,
        }


@dataclass(frozen=True)
class RunResult:
    """Ordered results of a run and its statistics."""
    data: list
    stats: RunStats
    index: Optional[pd.Index] = field(default=None, repr=False)

    def to_series(self, name: Optional[str] = None) -> pd.Series:
        """
        Results as a Series, keeping the index of the input when the run was fed a Series.
        """
        return pd.Series(self.data, index=self.index, name=name)


class Aggregator:
    r"""Reassemble per-chunk results into input order and merge per-worker statistics.

    Chunks may report in any order; :meth:`collect` always concatenates them by chunk index, so the output order is
    the input order regardless of which worker finished first.

    :param num_chunks: Number of chunks the run was split into.
    """

    def __init__(self, num_chunks: int):
        self.num_chunks = num_chunks
        self._results: dict[int, list] = {}
        self._workers: dict[int, WorkerStats] = {}

    @property
    def complete(self) -> bool:
        return len(self._results) == self.num_chunks

    @property
    def pending(self) -> list[int]:
        return [i for i in range(self.num_chunks) if i not in self._results]

    def add(self, chunk_index: int, results: list, worker_id: int, elapsed: float = 0.0, memory: int = 0) -> None:
        """
        Record the results of one chunk.

        :raises ValueError: If the chunk index is out of range or was already reported.
        """
        if not 0 <= chunk_index < self.num_chunks:
            raise ValueError(f"Chunk index {chunk_index} out of range for {self.num_chunks} chunks")
        if chunk_index in self._results:
            raise ValueError(f"Chunk {chunk_index} reported twice")
        self._results[chunk_index] = results

        stats = self._workers.setdefault(worker_id, WorkerStats(worker_id))
        stats.chunks += 1
        stats.items += len(results)
        stats.elapsed += elapsed
        stats.peak_memory = max(stats.peak_memory, memory)

    def collect(self) -> list[Any]:
        if not self.complete:
            raise RuntimeError(f"Chunks {self.pending} have not reported yet")
        return list(chain.from_iterable(self._results[i] for i in range(self.num_chunks)))

    def stats(self, time_taken: float, num_processes: int, data_processed: int) -> RunStats:
        workers = tuple(self._workers[k] for k in sorted(self._workers))
        return RunStats(
            time_taken_seconds=time_taken,
            num_processes_used=num_processes,
            data_processed=data_processed,
            memory_used_bytes=sum(w.peak_memory for w in workers),
            workers=workers,
        )
