import importlib

# Map public names to where they actually live
_lazy = {
    "Turbit": (".kit", "Turbit"),
    "EngineState": (".kit", "EngineState"),
    "EngineConfig": (".config", "EngineConfig"),
    "RunOptions": (".options", "RunOptions"),
    "RunMode": (".options", "RunMode"),
    "RunResult": (".aggregate", "RunResult"),
    "RunStats": (".aggregate", "RunStats"),
    "FunctionRef": (".envelope", "FunctionRef"),
    "TurbitError": (".errors", "TurbitError"),
    "ValidationError": (".errors", "ValidationError"),
    "SerializationError": (".errors", "SerializationError"),
    "ExecutionError": (".errors", "ExecutionError"),
    "WorkerCrashError": (".errors", "WorkerCrashError"),
    "TerminatedError": (".errors", "TerminatedError"),
}


def __getattr__(name: str):
    try:
        mod_name, attr = _lazy[name]
    except KeyError as e:
        raise AttributeError(name) from e
    mod = importlib.import_module(mod_name, __name__)
    obj = getattr(mod, attr)
    globals()[name] = obj  # cache for next time
    return obj
