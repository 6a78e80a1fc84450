import dataclasses
import multiprocessing as mp

import pytest

from turbit.engine.config import EngineConfig
from turbit.engine.envelope import ChunkDone, Envelope, FunctionRef
from turbit.engine.errors import TerminatedError
from turbit.engine.options import RunMode
from turbit.engine.pool import WorkerHandle, WorkerPool, WorkerState


def inc(x):
    return x + 1


@pytest.fixture
def pool():
    pool = WorkerPool(dataclasses.replace(EngineConfig.from_env(), shutdown_timeout=2.0))
    yield pool
    pool.terminate()


def test_resize_spawns_and_retires_idle_workers(pool):
    pool.resize(3)
    assert len(pool) == 3
    assert all(w.state is WorkerState.IDLE for w in pool.workers)
    assert len({w.pid for w in pool.workers}) == 3

    survivors = {w.pid for w in pool.workers[:1]}
    pool.resize(1)
    assert len(pool) == 1
    assert {w.pid for w in pool.workers} == survivors

    pool.resize(2)
    assert len(pool) == 2
    assert survivors < {w.pid for w in pool.workers}


def test_workers_are_reused_across_resizes_of_same_size(pool):
    pool.resize(2)
    pids = {w.pid for w in pool.workers}
    pool.resize(2)
    assert {w.pid for w in pool.workers} == pids


def test_busy_idle_cycle(pool):
    pool.resize(1)
    worker = pool.workers[0]
    worker.send(Envelope(run_id=0, chunk_index=0, offset=0, mode=RunMode.EXTENDED,
                         func=FunctionRef.of(inc), items=[1, 2]))
    assert worker.state is WorkerState.BUSY
    assert pool.busy() == [worker]
    assert worker.chunk_index == 0

    reply = worker.recv()
    assert isinstance(reply, ChunkDone)
    assert reply.results == [2, 3]
    assert worker.state is WorkerState.IDLE
    assert worker.chunk_index is None


def test_dead_workers_are_replaced_on_resize(pool):
    pool.resize(2)
    victim = pool.workers[0]
    victim.process.kill()
    victim.process.join(5)

    pool.resize(2)
    assert len(pool) == 2
    assert victim not in pool.workers
    assert victim.state is WorkerState.TERMINATED


def test_discard_busy_terminates_only_busy_workers(pool):
    pool.resize(2)
    busy, idle = pool.workers
    busy.send(Envelope(run_id=0, chunk_index=0, offset=0, mode=RunMode.EXTENDED,
                       func=FunctionRef.of(inc), items=[1]))
    pool.discard_busy()
    assert pool.workers == [idle]
    assert busy.state is WorkerState.TERMINATED
    assert not busy.process.is_alive()


def test_terminate_is_idempotent_and_closes_pool(pool):
    pool.resize(2)
    processes = [w.process for w in pool.workers]
    pool.terminate()
    pool.terminate()
    assert len(pool) == 0
    assert pool.closed
    assert not any(p.is_alive() for p in processes)
    with pytest.raises(TerminatedError):
        pool.resize(1)


def test_terminate_without_workers(pool):
    pool.terminate()
    assert pool.closed


def test_resize_rejects_zero(pool):
    with pytest.raises(ValueError):
        pool.resize(0)


def test_handle_enforces_lifecycle():
    handle = WorkerHandle(0, mp.get_context())
    assert handle.state is WorkerState.SPAWNING
    with pytest.raises(RuntimeError):
        handle.send(Envelope(run_id=0, chunk_index=0, offset=0, mode=RunMode.SIMPLE, func=FunctionRef.of(inc)))
    handle.terminate()
    handle.terminate()
    assert handle.state is WorkerState.TERMINATED
    assert not handle.is_alive()
