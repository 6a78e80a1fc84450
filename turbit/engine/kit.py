import atexit
import itertools
import queue
import threading
import time
import weakref
from collections import deque
from concurrent.futures import Future, InvalidStateError
from dataclasses import dataclass
from enum import Enum
from multiprocessing.connection import wait
from typing import Any, Callable, Mapping, Optional, Sequence, Union

import pandas as pd
from tqdm import tqdm

from turbit.engine.aggregate import Aggregator, RunResult, RunStats
from turbit.engine.config import EngineConfig
from turbit.engine.envelope import ChunkDone, ChunkFailed, Envelope, FunctionRef, check_transportable
from turbit.engine.errors import ExecutionError, SerializationError, TerminatedError, WorkerCrashError
from turbit.engine.options import RunMode, RunOptions
from turbit.engine.pool import WorkerHandle, WorkerPool
from turbit.utils.log import get_logger
from turbit.utils.mp import partition, simple_chunks
from turbit.utils.power import resolve_workers

logger = get_logger(__name__)

_engines = weakref.WeakSet()


@atexit.register
def _kill_engines_at_exit():
    for engine in list(_engines):
        engine.kill()


class EngineState(Enum):
    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class _Job:
    run_id: int
    func: FunctionRef
    options: RunOptions
    future: Future


def _settle(future: Future, result: Any = None, exception: Optional[BaseException] = None) -> None:
    try:
        if exception is not None:
            future.set_exception(exception)
        else:
            future.set_result(result)
    except InvalidStateError:
        # already rejected by kill()
        pass


class Turbit:
    r"""Run one function across a pool of worker processes and gather the results in input order.

    An instance owns its worker pool, a FIFO queue of submitted runs and a dispatcher thread that feeds chunks to
    idle workers and collects their replies. Workers are spawned lazily by the first :meth:`run` and reused by the
    following ones; the pool is resized whenever a run asks for a different ``power``.

    Two execution modes are supported:

    - **simple**: the function is called once per worker, without arguments. The result holds one value per worker.
    - **extended**: ``data`` is split into contiguous chunks, one per worker, and the function is called as
      ``func(item, *args)`` for each item. The result is aligned with ``data``.

    The function travels to the workers by name (``module:qualname``), so it must be defined at module level.
    Lambdas and nested functions are rejected with :class:`SerializationError` before anything is dispatched.

    Runs are serialized: a second :meth:`run` waits in the queue until the first one has finished. Failures are
    fail-fast: the first exception raised by the function, or the first worker crash, rejects the whole run and no
    partial results are returned.

    .. note::
        :meth:`kill` terminates all workers of this instance and rejects every pending run with
        :class:`TerminatedError`. It is called automatically at interpreter exit and when the instance is used as a
        context manager.

    Args:
        config (EngineConfig, optional): Engine settings. Read from ``TURBIT_*`` environment variables when omitted.

    Examples:
        >>> from turbit import Turbit
        >>> from mypkg.tasks import double
        >>> with Turbit() as turbit:
        ...     result = turbit.run(double, type="extended", data=[1, 2, 3, 4], power=100).result()
        >>> result.data
        [2, 4, 6, 8]
    """

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.from_env()
        self._lock = threading.RLock()
        self._state = EngineState.ACTIVE
        self._pool: Optional[WorkerPool] = None
        self._jobs: Optional[queue.Queue] = None
        self._stop: Optional[threading.Event] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._current: Optional[_Job] = None
        self._run_ids = itertools.count()
        _engines.add(self)

    def __repr__(self):
        return f"Turbit(state={self.state.value}, workers={self.num_workers})"

    def __enter__(self) -> "Turbit":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.kill()

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def num_workers(self) -> int:
        pool = self._pool
        return len(pool) if pool is not None else 0

    # --- public API ---------------------------------------------------------
    def run(self, func: Union[Callable, str], options: Optional[Union[RunOptions, Mapping]] = None,
            **kwargs) -> "Future[RunResult]":
        r"""Submit a run and return a future resolving to its :class:`RunResult`.

        :param func: Module-level callable, or its ``"module:qualname"`` identifier.
        :param options: :class:`RunOptions` or a mapping with the keys ``type``, ``power``, ``data``, ``args``.
        :param kwargs: Option values, overriding ``options``: ``mode``/``type``, ``power``, ``data``, ``args``,
            ``progress``.
        :returns: Future of the run. It fails with :class:`ExecutionError`, :class:`WorkerCrashError` or
            :class:`TerminatedError`; results that cannot be sent back fail it with :class:`SerializationError`.
        :raises ValidationError: If ``func`` is not callable or the options are malformed.
        :raises SerializationError: If ``func`` is not addressable by name or ``data``/``args`` cannot be pickled.
        """
        ref = FunctionRef.of(func)
        opts = RunOptions.build(options, default_power=self.config.default_power, **kwargs)
        if opts.is_extended:
            check_transportable(opts.data, opts.args)

        future: Future = Future()
        if opts.is_extended and opts.num_items == 0:
            future.set_result(RunResult(data=[], stats=RunStats(0.0, 0, 0), index=_index_of(opts.data)))
            return future

        job = _Job(run_id=next(self._run_ids), func=ref, options=opts, future=future)
        with self._lock:
            self._ensure_dispatcher()
            self._jobs.put(job)
        logger.debug(f"Run {job.run_id} queued: {ref} ({opts.mode.value}, power={opts.power})")
        return future

    def map(self, func: Union[Callable, str], data: Sequence, *args, power: Optional[float] = None) -> list:
        """
        Blocking shortcut for an extended run: ``[func(item, *args) for item in data]`` computed in parallel.
        """
        return self.run(func, mode=RunMode.EXTENDED, data=data, args=args, power=power).result().data

    def kill(self) -> None:
        """
        Terminate every worker of this instance and reject the running and queued runs with
        :class:`TerminatedError`. Idempotent; safe to call before any run.
        """
        with self._lock:
            stop, jobs, pool = self._stop, self._jobs, self._pool
            current = self._current
            self._stop = self._jobs = self._pool = self._dispatcher = self._current = None
            self._state = EngineState.TERMINATED
            if stop is None:
                return
            stop.set()

        rejected = [current] if current is not None else []
        while True:
            try:
                job = jobs.get_nowait()
            except queue.Empty:
                break
            if job is not None:
                rejected.append(job)
        # wake the dispatcher so it can exit
        jobs.put(None)

        pool.terminate()
        for job in rejected:
            _settle(job.future, exception=TerminatedError(f"Run {job.run_id} terminated by kill()"))
        logger.info(f"Engine killed, {len(rejected)} run(s) rejected")

    # --- dispatcher -----------------------------------------------------------
    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is not None:
            return
        self._stop = threading.Event()
        self._jobs = queue.Queue()
        self._pool = WorkerPool(self.config)
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            args=(self._jobs, self._stop, self._pool),
            name="turbit-dispatcher",
            daemon=True,
        )
        self._state = EngineState.ACTIVE
        self._dispatcher.start()

    def _dispatch_loop(self, jobs: queue.Queue, stop: threading.Event, pool: WorkerPool) -> None:
        while True:
            job = jobs.get()
            if job is None:
                break
            with self._lock:
                if stop.is_set():
                    _settle(job.future, exception=TerminatedError(f"Run {job.run_id} terminated by kill()"))
                    continue
                if not job.future.set_running_or_notify_cancel():
                    continue
                self._current = job

            try:
                result = self._execute(job, pool, stop)
            except Exception as e:
                if stop.is_set() and not isinstance(e, TerminatedError):
                    e = TerminatedError(f"Run {job.run_id} terminated by kill()")
                logger.error(f"Run {job.run_id} failed: {e}")
                _settle(job.future, exception=e)
            else:
                _settle(job.future, result=result)
            finally:
                with self._lock:
                    if self._current is job:
                        self._current = None
        logger.debug("Dispatcher stopped")

    def _execute(self, job: _Job, pool: WorkerPool, stop: threading.Event) -> RunResult:
        opts = job.options
        start = time.perf_counter()

        num_workers = resolve_workers(opts.power, self.config.total_cores)
        if opts.is_extended:
            num_workers = min(num_workers, opts.num_items)
        pool.resize(num_workers)
        chunks = partition(opts.data, num_workers) if opts.is_extended else simple_chunks(num_workers)
        aggregator = Aggregator(len(chunks))
        pending = deque(chunks)
        logger.info(f"Run {job.run_id}: {len(chunks)} chunk(s) on {num_workers} worker(s)")

        try:
            with tqdm(total=len(chunks), desc=f"run {job.run_id}", unit="chunk", disable=not opts.progress) as bar:
                while not aggregator.complete:
                    if stop.is_set():
                        raise TerminatedError(f"Run {job.run_id} terminated by kill()")

                    for worker in pool.idle():
                        if not pending:
                            break
                        chunk = pending.popleft()
                        self._send(worker, pool, Envelope(
                            run_id=job.run_id,
                            chunk_index=chunk.index,
                            offset=chunk.offset,
                            mode=opts.mode,
                            func=job.func,
                            items=chunk.items,
                            args=opts.args,
                        ))

                    busy = pool.busy()
                    if not busy:
                        raise RuntimeError(f"Run {job.run_id}: no worker available for chunks "
                                           f"{[c.index for c in pending]}")
                    ready = wait([w.conn for w in busy] + [w.sentinel for w in busy],
                                 timeout=self.config.poll_interval)
                    for worker in busy:
                        if worker.conn in ready or worker.sentinel in ready:
                            self._collect(job, worker, pool, aggregator)
                            bar.update(1)
        except Exception:
            # late replies of a failed run must not reach the next one
            pool.discard_busy()
            raise

        data_processed = opts.num_items if opts.is_extended else num_workers
        stats = aggregator.stats(time.perf_counter() - start, num_workers, data_processed)
        logger.info(f"Run {job.run_id} done in {stats.time_taken_seconds:.3f}s, "
                    f"{stats.data_processed} item(s), {stats.memory_used}")
        return RunResult(data=aggregator.collect(), stats=stats, index=_index_of(opts.data))

    @staticmethod
    def _send(worker: WorkerHandle, pool: WorkerPool, envelope: Envelope) -> None:
        try:
            worker.send(envelope)
        except OSError as e:
            exitcode = worker.exitcode
            pool.discard(worker)
            raise WorkerCrashError(worker.worker_id, worker.pid, exitcode, envelope.chunk_index) from e

    @staticmethod
    def _collect(job: _Job, worker: WorkerHandle, pool: WorkerPool, aggregator: Aggregator) -> None:
        chunk_index = worker.chunk_index
        try:
            reply = worker.recv() if worker.conn.poll() else None
        except (EOFError, OSError):
            reply = None
        if reply is None:
            worker.process.join(1.0)
            exitcode = worker.exitcode
            logger.error(f"Worker {worker.worker_id} (pid {worker.pid}) died on chunk {chunk_index}, "
                         f"exit code {exitcode}")
            pool.discard(worker)
            raise WorkerCrashError(worker.worker_id, worker.pid, exitcode, chunk_index)

        if not isinstance(reply, (ChunkDone, ChunkFailed)):
            raise RuntimeError(f"Unexpected message from worker {worker.worker_id}: {reply!r}")
        if reply.run_id != job.run_id or reply.chunk_index != chunk_index:
            raise RuntimeError(f"Worker {worker.worker_id} answered chunk {reply.chunk_index} of run {reply.run_id}, "
                               f"expected chunk {chunk_index} of run {job.run_id}")

        if isinstance(reply, ChunkDone):
            aggregator.add(reply.chunk_index, reply.results, worker.worker_id, reply.elapsed, reply.memory)
            logger.debug(f"Run {job.run_id}: chunk {reply.chunk_index} done by worker {worker.worker_id} "
                         f"in {reply.elapsed:.3f}s")
            return

        if isinstance(reply, ChunkFailed):
            if reply.kind == "execution":
                raise ExecutionError(reply.chunk_index, reply.item_index, reply.error_type, reply.message,
                                     reply.traceback)
            raise SerializationError(
                f"Chunk {reply.chunk_index} of {job.func} failed in transport ({reply.kind}): "
                f"{reply.error_type}: {reply.message}")


def _index_of(data: Any) -> Optional[pd.Index]:
    return data.index if isinstance(data, pd.Series) else None
