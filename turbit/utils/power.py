"""
Translate a processing power percentage into a concrete number of worker processes.
"""
import math
import multiprocessing as mp
from typing import Optional

DEFAULT_POWER = 70.0


def cpu_count() -> int:
    """Number of logical cores reported by the platform (at least 1)."""
    try:
        return max(1, mp.cpu_count())
    except NotImplementedError:
        return 1


def resolve_workers(power: Optional[float] = None, total_cores: Optional[int] = None) -> int:
    r"""Resolve the worker count for a run from the share of cores the caller allows.

    The count is ``total_cores * power / 100`` rounded half up and clamped to ``[1, total_cores]``.
    Out-of-range percentages are clamped rather than rejected, so ``power <= 0`` always yields a single
    worker and ``power >= 100`` yields one worker per core.

    :param power: Percentage of cores to use. ``None`` falls back to :data:`DEFAULT_POWER`.
    :param total_cores: Core count to size against. Detected with :func:`cpu_count` when omitted.
    :returns: Number of worker processes, between 1 and ``total_cores``.
    """
    if power is None:
        power = DEFAULT_POWER
    if total_cores is None:
        total_cores = cpu_count()
    total_cores = max(1, int(total_cores))

    power = float(power)
    if math.isinf(power):
        return total_cores if power > 0 else 1

    raw = math.floor(total_cores * power / 100.0 + 0.5)
    return int(min(max(raw, 1), total_cores))
