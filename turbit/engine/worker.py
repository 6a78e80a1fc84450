"""
Runtime loop of a worker process.

A worker announces itself with :class:`Ready`, then serves envelopes one at a time until it receives ``None`` or its
channel is closed. Exceptions raised by the task function never escape the loop: they are reported back as
:class:`ChunkFailed` and the worker goes back to waiting.
"""
import os
import signal
import time
import traceback
from multiprocessing.connection import Connection
from typing import Optional, Union

import psutil

from turbit.engine.envelope import ChunkDone, ChunkFailed, Envelope, FunctionTable, Ready
from turbit.engine.options import RunMode
from turbit.utils.log import get_logger

logger = get_logger(__name__)


def _failure(envelope: Envelope, item_index: Optional[int], exc: BaseException, kind: str) -> ChunkFailed:
    return ChunkFailed(
        run_id=envelope.run_id,
        chunk_index=envelope.chunk_index,
        item_index=item_index,
        error_type=type(exc).__name__,
        message=str(exc),
        traceback="".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        kind=kind,
    )


def execute_envelope(envelope: Envelope, table: FunctionTable,
                     process: Optional[psutil.Process] = None) -> Union[ChunkDone, ChunkFailed]:
    r"""Run one envelope and build the reply for the controller.

    In extended mode the function is called as ``func(item, *args)`` for each item of the chunk, in order; the
    first exception stops the chunk and is reported with the item's position in the original data. In simple mode
    the function is called once without arguments.

    :param envelope: The work to perform.
    :param table: Function table of this process.
    :param process: ``psutil`` handle used to sample resident memory after the chunk. Defaults to the current process.
    :returns: :class:`ChunkDone` with one result per item, or :class:`ChunkFailed`.
    """
    start = time.perf_counter()
    try:
        func = table.resolve(envelope.func)
    except Exception as e:
        logger.error(f"Cannot resolve task function {envelope.func}: {e}")
        return _failure(envelope, None, e, kind="resolve")

    results = []
    if envelope.mode is RunMode.EXTENDED:
        for position, item in enumerate(envelope.items):
            try:
                results.append(func(item, *envelope.args))
            except Exception as e:
                return _failure(envelope, envelope.offset + position, e, kind="execution")
    else:
        try:
            results.append(func())
        except Exception as e:
            return _failure(envelope, None, e, kind="execution")

    elapsed = time.perf_counter() - start
    process = process or psutil.Process(os.getpid())
    return ChunkDone(
        run_id=envelope.run_id,
        chunk_index=envelope.chunk_index,
        results=results,
        elapsed=elapsed,
        memory=process.memory_info().rss,
    )


def worker_main(conn: Connection, worker_id: int) -> None:
    """
    Entry point of a worker process.

    :param conn: Worker end of the duplex pipe to the controller.
    :param worker_id: Identifier assigned by the pool.
    """
    # interruption is handled by the controller, which terminates the pool
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    process = psutil.Process(os.getpid())
    table = FunctionTable()
    conn.send(Ready(worker_id=worker_id, pid=process.pid))

    while True:
        try:
            envelope = conn.recv()
        except EOFError:
            break
        if envelope is None:
            break

        reply = execute_envelope(envelope, table, process)
        try:
            conn.send(reply)
        except OSError:
            raise
        except Exception as e:
            logger.warning(f"Results of chunk {envelope.chunk_index} cannot be sent back: {e}")
            conn.send(_failure(envelope, None, e, kind="serialization"))

    conn.close()
