# expose subpackages and the public API lazily: turbit.Turbit, turbit.engine, ...
import importlib
import types

from ._version import __version__

__all__ = ["engine", "utils", "Turbit"]


def __getattr__(name: str) -> types.ModuleType:
    if name in ("engine", "utils"):
        mod = importlib.import_module(f".{name}", __name__)
        globals()[name] = mod
        return mod
    if not name.startswith("_"):
        engine = importlib.import_module(".engine", __name__)
        if hasattr(engine, name):
            obj = getattr(engine, name)
            globals()[name] = obj
            return obj
    raise AttributeError(name)
