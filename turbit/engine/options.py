import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from numbers import Real
from typing import Any, Optional, Union

import numpy as np
import pandas as pd

from turbit.engine.errors import ValidationError
from turbit.utils.power import DEFAULT_POWER


class RunMode(str, Enum):
    SIMPLE = "simple"
    EXTENDED = "extended"


_OPTION_KEYS = {"mode", "type", "power", "data", "args", "progress"}


def _coerce_mode(value: Any) -> RunMode:
    if isinstance(value, RunMode):
        return value
    if isinstance(value, str):
        try:
            return RunMode(value.lower())
        except ValueError:
            pass
    raise ValidationError(f"type must be 'simple' or 'extended'. Got {value!r}")


def _coerce_power(value: Any, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(f"power must be a number between 0 and 100. Got {value!r}")
    if math.isnan(value):
        raise ValidationError("power must not be NaN")
    return float(value)


def _check_data(data: Any) -> Any:
    if data is None:
        raise ValidationError("data is required for extended execution")
    if isinstance(data, np.ndarray):
        if data.ndim == 0:
            raise ValidationError("data must be a sequence, not a 0-d array")
        return data
    if isinstance(data, pd.Series):
        return data
    if isinstance(data, (str, bytes, bytearray)) or not isinstance(data, Sequence):
        raise ValidationError(f"data must be an ordered sequence (list, tuple, array, Series). Got {type(data).__name__}")
    return data


def _check_args(args: Any) -> tuple:
    if args is None:
        return ()
    if isinstance(args, (str, bytes, bytearray)) or not isinstance(args, Sequence):
        raise ValidationError(f"args must be a list or tuple of extra arguments. Got {type(args).__name__}")
    return tuple(args)


@dataclass(frozen=True)
class RunOptions:
    r"""Validated configuration of a single run.

    ``RunOptions`` replaces the loosely typed options bag with one record that is validated on construction, before
    any worker is touched. Build it directly or with :meth:`build`, which also accepts a mapping using the historic
    keys (``type``, ``power``, ``data``, ``args``).

    - **simple** mode calls the function once per worker with no arguments; ``data`` and ``args`` are dropped.
    - **extended** mode requires ``data`` and calls ``func(item, *args)`` once per item.

    :param mode: Execution mode, a :class:`RunMode` or its name.
    :param power: Percentage of the available cores to use. Out-of-range values are clamped when the pool is sized.
    :param data: Ordered input sequence (extended mode only).
    :param args: Extra positional arguments passed after each item (extended mode only).
    :param progress: Show a progress bar of completed chunks.
    :raises ValidationError: On malformed values.
    """
    mode: RunMode = RunMode.SIMPLE
    power: float = DEFAULT_POWER
    data: Any = field(default=None, repr=False)
    args: tuple = ()
    progress: bool = False

    def __post_init__(self):
        mode = _coerce_mode(self.mode)
        object.__setattr__(self, "mode", mode)
        object.__setattr__(self, "power", _coerce_power(self.power, DEFAULT_POWER))
        object.__setattr__(self, "progress", bool(self.progress))
        if mode is RunMode.SIMPLE:
            object.__setattr__(self, "data", None)
            object.__setattr__(self, "args", ())
        else:
            object.__setattr__(self, "data", _check_data(self.data))
            object.__setattr__(self, "args", _check_args(self.args))

    @property
    def is_extended(self) -> bool:
        return self.mode is RunMode.EXTENDED

    @property
    def num_items(self) -> int:
        return len(self.data) if self.is_extended else 0

    @classmethod
    def build(cls, options: Optional[Union["RunOptions", Mapping]] = None, *,
              default_power: float = DEFAULT_POWER, **kwargs) -> "RunOptions":
        """
        Validate and normalise run options.

        :param options: Existing ``RunOptions`` or a mapping of option names to values.
        :param default_power: Power used when none is given.
        :param kwargs: Option values overriding those in ``options``. A ``mode`` or ``type`` keyword replaces both
            keys of ``options``.
        :returns: A validated, immutable ``RunOptions``.
        :raises ValidationError: On unknown keys or malformed values.
        """
        if isinstance(options, RunOptions):
            if not kwargs:
                return options
            raw = {"mode": options.mode, "power": options.power, "data": options.data,
                   "args": options.args, "progress": options.progress}
        elif options is None:
            raw = {}
        elif isinstance(options, Mapping):
            raw = dict(options)
        else:
            raise ValidationError(f"options must be a mapping or RunOptions. Got {type(options).__name__}")

        for source in (raw, kwargs):
            if "mode" in source and "type" in source and source["mode"] != source["type"]:
                raise ValidationError("Conflicting 'mode' and 'type' options")
        if "mode" in kwargs or "type" in kwargs:
            raw.pop("mode", None)
            raw.pop("type", None)
        raw.update(kwargs)

        unknown = set(raw) - _OPTION_KEYS
        if unknown:
            raise ValidationError(f"Unknown run options: {sorted(unknown)}")

        return cls(
            mode=raw.get("mode", raw.get("type", RunMode.SIMPLE)),
            power=_coerce_power(raw.get("power"), default_power),
            data=raw.get("data"),
            args=raw.get("args"),
            progress=raw.get("progress", False),
        )
