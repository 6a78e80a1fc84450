import multiprocessing as mp
import threading
import time
from enum import Enum
from typing import Optional

from turbit.engine.config import EngineConfig
from turbit.engine.envelope import Envelope, Ready
from turbit.engine.errors import TerminatedError, WorkerCrashError
from turbit.engine.worker import worker_main
from turbit.utils.log import get_logger

logger = get_logger(__name__)


class WorkerState(Enum):
    SPAWNING = "spawning"
    IDLE = "idle"
    BUSY = "busy"
    TERMINATED = "terminated"


_TRANSITIONS = {
    WorkerState.SPAWNING: {WorkerState.IDLE, WorkerState.TERMINATED},
    WorkerState.IDLE: {WorkerState.BUSY, WorkerState.TERMINATED},
    WorkerState.BUSY: {WorkerState.IDLE, WorkerState.TERMINATED},
    WorkerState.TERMINATED: {WorkerState.TERMINATED},
}


class WorkerHandle:
    r"""Owned handle of one worker process and the controller end of its duplex pipe.

    The handle enforces the worker lifecycle ``SPAWNING -> IDLE -> BUSY -> IDLE ... -> TERMINATED``; any state may
    jump to ``TERMINATED``. Illegal transitions raise ``RuntimeError``.

    :param worker_id: Identifier unique within the owning pool.
    :param context: Multiprocessing context used to create the process and pipe.
    """

    def __init__(self, worker_id: int, context):
        self.worker_id = worker_id
        self.state = WorkerState.SPAWNING
        self.chunk_index: Optional[int] = None
        self.conn, self._child_conn = context.Pipe(duplex=True)
        self.process = context.Process(
            target=worker_main,
            args=(self._child_conn, worker_id),
            name=f"turbit-worker-{worker_id}",
            daemon=True,
        )

    def __repr__(self):
        return f"WorkerHandle(id={self.worker_id}, pid={self.pid}, state={self.state.value})"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def sentinel(self) -> int:
        return self.process.sentinel

    @property
    def exitcode(self) -> Optional[int]:
        return self.process.exitcode

    def is_alive(self) -> bool:
        return self.state is not WorkerState.TERMINATED and self.process.is_alive()

    def _transition(self, new: WorkerState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Worker {self.worker_id}: illegal transition {self.state.value} -> {new.value}")
        self.state = new

    def start(self) -> None:
        self.process.start()
        # the child owns its end; closing ours lets recv() see EOF if the child dies
        self._child_conn.close()

    def wait_ready(self, timeout: float) -> None:
        """
        Block until the worker reports :class:`Ready`.

        :raises WorkerCrashError: If the worker dies or stays silent for ``timeout`` seconds.
        """
        try:
            if not self.conn.poll(timeout):
                raise EOFError("no ready signal")
            message = self.conn.recv()
        except (EOFError, OSError) as e:
            logger.error(f"Worker {self.worker_id} failed to start: {e}")
            self.terminate(timeout=1.0)
            raise WorkerCrashError(self.worker_id, self.pid, self.exitcode) from e
        if not isinstance(message, Ready):
            self.terminate(timeout=1.0)
            raise WorkerCrashError(self.worker_id, self.pid, self.exitcode)
        self._transition(WorkerState.IDLE)

    def send(self, envelope: Envelope) -> None:
        self._transition(WorkerState.BUSY)
        self.chunk_index = envelope.chunk_index
        self.conn.send(envelope)

    def recv(self):
        """Receive the reply to the current envelope and return to ``IDLE``."""
        message = self.conn.recv()
        self._transition(WorkerState.IDLE)
        self.chunk_index = None
        return message

    def shutdown(self, timeout: float) -> None:
        """
        Ask the worker to exit after its current envelope, force-terminating it after ``timeout`` seconds.
        """
        if self.state is WorkerState.TERMINATED:
            return
        try:
            self.conn.send(None)
        except (OSError, ValueError):
            pass
        self.process.join(timeout)
        self.terminate(timeout)

    def terminate(self, timeout: float = 5.0) -> None:
        """
        Stop the process immediately: SIGTERM, then SIGKILL if it is still alive after ``timeout`` seconds.
        Safe to call more than once.
        """
        if self.state is WorkerState.TERMINATED:
            return
        if self.process.pid is not None and self.process.is_alive():
            self.process.terminate()
            self.process.join(timeout)
            if self.process.is_alive():
                logger.warning(f"Worker {self.worker_id} did not terminate, killing")
                self.process.kill()
                self.process.join()
        self._child_conn.close()
        self.conn.close()
        self._transition(WorkerState.TERMINATED)


class WorkerPool:
    r"""The set of worker processes owned by one engine instance.

    Workers are reused across runs. :meth:`resize` grows the pool by spawning processes in parallel and shrinks it
    by retiring idle workers, so consecutive runs with the same power pay the spawn cost only once.

    Once :meth:`terminate` has been called the pool is closed for good and refuses to spawn again; the engine
    creates a fresh pool for the next run.

    :param config: Engine configuration (start method and timeouts).
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self._context = mp.get_context(config.start_method)
        self._workers: list[WorkerHandle] = []
        self._next_id = 0
        self._lock = threading.RLock()
        self._closed = False

    def __len__(self) -> int:
        return len(self._workers)

    @property
    def workers(self) -> list[WorkerHandle]:
        return list(self._workers)

    @property
    def closed(self) -> bool:
        return self._closed

    def idle(self) -> list[WorkerHandle]:
        return [w for w in self._workers if w.state is WorkerState.IDLE]

    def busy(self) -> list[WorkerHandle]:
        return [w for w in self._workers if w.state is WorkerState.BUSY]

    def _reap(self) -> None:
        for worker in list(self._workers):
            if not worker.is_alive():
                logger.warning(f"Removing dead worker {worker.worker_id} (exit code {worker.exitcode})")
                self.discard(worker)

    def _spawn(self, count: int) -> None:
        with self._lock:
            if self._closed:
                raise TerminatedError("Worker pool has been terminated")
            handles = []
            for _ in range(count):
                handle = WorkerHandle(self._next_id, self._context)
                self._next_id += 1
                handle.start()
                self._workers.append(handle)
                handles.append(handle)

        deadline = time.monotonic() + self.config.spawn_timeout
        for handle in handles:
            try:
                handle.wait_ready(max(0.0, deadline - time.monotonic()))
            except WorkerCrashError:
                self.discard(handle)
                raise
        logger.info(f"Spawned {count} worker(s): pids {[h.pid for h in handles]}")

    def resize(self, num_workers: int) -> None:
        """
        Make the pool hold exactly ``num_workers`` live workers.

        :raises WorkerCrashError: If a new worker fails to start.
        :raises TerminatedError: If the pool has been terminated.
        """
        if num_workers < 1:
            raise ValueError(f"num_workers must be at least 1. Got {num_workers}")
        self._reap()

        missing = num_workers - len(self._workers)
        if missing > 0:
            self._spawn(missing)
        elif missing < 0:
            surplus = self.idle()[missing:]
            for worker in surplus:
                self.retire(worker)
            logger.info(f"Retired {len(surplus)} idle worker(s), {len(self._workers)} remain")

    def retire(self, worker: WorkerHandle) -> None:
        """Gracefully stop an idle worker and remove it from the pool."""
        worker.shutdown(self.config.shutdown_timeout)
        with self._lock:
            if worker in self._workers:
                self._workers.remove(worker)

    def discard(self, worker: WorkerHandle) -> None:
        """Terminate a worker immediately and remove it from the pool."""
        worker.terminate(self.config.shutdown_timeout)
        with self._lock:
            if worker in self._workers:
                self._workers.remove(worker)

    def discard_busy(self) -> None:
        """Terminate every worker still processing a chunk, e.g. after a run failed fast."""
        for worker in self.busy():
            logger.debug(f"Discarding busy worker {worker.worker_id} (chunk {worker.chunk_index})")
            self.discard(worker)

    def terminate(self) -> None:
        """
        Terminate all workers immediately and close the pool. Idempotent.
        """
        with self._lock:
            self._closed = True
            workers, self._workers = self._workers, []
        for worker in workers:
            try:
                worker.terminate(self.config.shutdown_timeout)
            except Exception as e:
                logger.error(f"Error terminating worker {worker.worker_id}: {e}")
        if workers:
            logger.info(f"Terminated {len(workers)} worker(s)")
