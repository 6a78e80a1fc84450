"""
Task envelopes and the messages exchanged between the controller and its workers.

Functions never cross the process boundary as objects. The controller ships a :class:`FunctionRef`, the
``module:qualname`` identifier of a named top-level callable, and every worker resolves it through its own
:class:`FunctionTable`. Data, arguments and results travel pickled over a ``multiprocessing.Pipe``.
"""
import importlib
import pickle
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from turbit.engine.errors import SerializationError, ValidationError
from turbit.engine.options import RunMode
from turbit.utils.log import get_logger

logger = get_logger(__name__)


def _lookup(module_name: str, qualname: str) -> Any:
    obj = importlib.import_module(module_name)
    for part in qualname.split("."):
        obj = getattr(obj, part)
    return obj


@dataclass(frozen=True)
class FunctionRef:
    r"""Identifier of a named, top-level callable that a worker can import.

    Inline closures cannot be sent to another process, so a task function must be reachable as
    ``module.attribute`` from a fresh interpreter: a ``def`` at module level, a builtin or a class. Lambdas,
    functions nested in other functions, ``functools.partial`` objects and bound methods of instances are
    rejected with :class:`SerializationError`.

    :param module: Importable module name, e.g. ``"mypkg.tasks"``.
    :param qualname: Attribute path inside the module, e.g. ``"double"`` or ``"Parser.parse"``.
    """
    module: str
    qualname: str

    def __str__(self) -> str:
        return f"{self.module}:{self.qualname}"

    @classmethod
    def parse(cls, identifier: str) -> "FunctionRef":
        """
        Parse a ``"module:qualname"`` identifier.

        :raises ValidationError: If the identifier is not of that form.
        """
        module, sep, qualname = identifier.partition(":")
        if not sep or not module or not qualname:
            raise ValidationError(f"Function identifier must look like 'module:name'. Got {identifier!r}")
        return cls(module.strip(), qualname.strip())

    @classmethod
    def from_callable(cls, func: Callable) -> "FunctionRef":
        """
        Build the identifier of ``func`` and check that it resolves back to the very same object.

        :raises SerializationError: If ``func`` is not addressable by module and qualified name.
        """
        module = getattr(func, "__module__", None)
        qualname = getattr(func, "__qualname__", None)
        if not module or not qualname:
            raise SerializationError(
                f"{func!r} has no module-level name. Pass a function defined with 'def' at module level.")
        if "<lambda>" in qualname or "<locals>" in qualname:
            raise SerializationError(
                f"{qualname} is a lambda or nested function and cannot be shipped to worker processes. "
                f"Define it at module level.")
        ref = cls(module, qualname)
        try:
            resolved = _lookup(module, qualname)
        except (ImportError, AttributeError) as e:
            raise SerializationError(f"Cannot resolve {ref}: {e}") from e
        if resolved is not func and getattr(resolved, "__func__", None) is not getattr(func, "__func__", func):
            raise SerializationError(
                f"{ref} resolves to a different object than the one given (decorated or rebound?).")
        return ref

    @classmethod
    def of(cls, func: Union[str, Callable]) -> "FunctionRef":
        """Identifier for a callable or a ``"module:qualname"`` string, validated in the calling process."""
        if isinstance(func, str):
            ref = cls.parse(func)
            try:
                resolved = _lookup(ref.module, ref.qualname)
            except (ImportError, AttributeError) as e:
                raise SerializationError(f"Cannot resolve {ref}: {e}") from e
            if not callable(resolved):
                raise ValidationError(f"{ref} is not callable")
            return ref
        if not callable(func):
            raise ValidationError(f"func must be callable. Got {type(func).__name__}")
        return cls.from_callable(func)


class FunctionTable:
    """
    Per-process registration table resolving :class:`FunctionRef` identifiers to callables.

    Modules are imported on first use and the resolved callable is cached for later envelopes.
    """

    def __init__(self):
        self._table: dict[FunctionRef, Callable] = {}

    def __contains__(self, ref: FunctionRef) -> bool:
        return ref in self._table

    def __len__(self) -> int:
        return len(self._table)

    def resolve(self, ref: FunctionRef) -> Callable:
        func = self._table.get(ref)
        if func is None:
            func = _lookup(ref.module, ref.qualname)
            self._table[ref] = func
            logger.debug(f"Registered task function {ref}")
        return func


@dataclass(frozen=True)
class Envelope:
    """One chunk of work: which function to call, on which items, with which extra arguments."""
    run_id: int
    chunk_index: int
    offset: int
    mode: RunMode
    func: FunctionRef
    items: Any = field(default=(), repr=False)
    args: tuple = ()


@dataclass(frozen=True)
class Ready:
    """First message of every worker: startup finished, waiting for envelopes."""
    worker_id: int
    pid: int


@dataclass(frozen=True)
class ChunkDone:
    run_id: int
    chunk_index: int
    results: list = field(repr=False)
    elapsed: float
    memory: int


@dataclass(frozen=True)
class ChunkFailed:
    r"""Structured failure of a chunk.

    ``kind`` is ``"execution"`` when the task function raised, ``"resolve"`` when the function identifier could
    not be imported in the worker and ``"serialization"`` when the results could not be sent back.
    """
    run_id: int
    chunk_index: int
    item_index: Optional[int]
    error_type: str
    message: str
    traceback: str = ""
    kind: str = "execution"


def check_transportable(data: Any, args: tuple) -> None:
    """
    Pickle ``data`` and ``args`` once in the calling process so that transport failures surface before dispatch.

    :raises SerializationError: If either cannot be pickled.
    """
    for name, value in (("data", data), ("args", args)):
        try:
            pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except Exception as e:
            raise SerializationError(f"Run {name} cannot be sent to worker processes: {e}") from e
