from typing import Optional


class TurbitError(Exception):
    """Base class of every error raised by the engine."""


class ValidationError(TurbitError, ValueError):
    """Malformed run options or a non-callable task. Raised synchronously by ``run``."""


class SerializationError(TurbitError, TypeError):
    """The task function, its data or its arguments cannot be shipped across the process boundary."""


class ExecutionError(TurbitError):
    r"""The task function raised inside a worker.

    :param chunk_index: Index of the chunk being processed.
    :param item_index: Position of the failing item in the original ``data`` (``None`` in simple mode).
    :param error_type: Class name of the exception raised in the worker.
    :param message: String form of that exception.
    :param remote_traceback: Formatted traceback captured in the worker.
    """

    def __init__(self, chunk_index: int, item_index: Optional[int], error_type: str, message: str,
                 remote_traceback: str = ""):
        self.chunk_index = chunk_index
        self.item_index = item_index
        self.error_type = error_type
        self.message = message
        self.remote_traceback = remote_traceback
        where = f"chunk {chunk_index}" if item_index is None else f"chunk {chunk_index}, item {item_index}"
        super().__init__(f"{error_type} in {where}: {message}")

    def __reduce__(self):
        return (self.__class__,
                (self.chunk_index, self.item_index, self.error_type, self.message, self.remote_traceback))


class WorkerCrashError(TurbitError):
    """A worker process died while it owned a chunk, or never became ready."""

    def __init__(self, worker_id: int, pid: Optional[int], exitcode: Optional[int],
                 chunk_index: Optional[int] = None):
        self.worker_id = worker_id
        self.pid = pid
        self.exitcode = exitcode
        self.chunk_index = chunk_index
        task = "" if chunk_index is None else f" while processing chunk {chunk_index}"
        super().__init__(f"Worker {worker_id} (pid {pid}) exited with code {exitcode}{task}")

    def __reduce__(self):
        return self.__class__, (self.worker_id, self.pid, self.exitcode, self.chunk_index)


class TerminatedError(TurbitError):
    """The run was rejected because the engine was killed before it completed."""
