import dataclasses
import os
import random
import threading
import time

import numpy as np
import pandas as pd
import pytest

from turbit import Turbit
from turbit.engine.config import EngineConfig
from turbit.engine.errors import (ExecutionError, SerializationError, TerminatedError, ValidationError,
                                  WorkerCrashError)
from turbit.engine.kit import EngineState
from turbit.engine.options import RunOptions


def double(x):
    return x * 2


def scale(x, factor, offset):
    return x * factor + offset


def jitter(x):
    time.sleep(random.uniform(0, 0.02))
    return x


def slow_first(x):
    # early items finish last
    time.sleep(0.2 if x < 2 else 0.0)
    return x


def fail_on_two(x):
    if x == 2:
        raise ValueError("bad item")
    return x


def pid(*_):
    return os.getpid()


def crash(x):
    if x == 1:
        os._exit(3)
    return x


def sleepy(x):
    time.sleep(30)
    return x


def make_lock(x):
    return threading.Lock()


@pytest.fixture
def engine():
    turbit = Turbit(dataclasses.replace(EngineConfig.from_env(), total_cores=4, shutdown_timeout=2.0))
    yield turbit
    turbit.kill()


def test_double_on_four_cores(engine):
    result = engine.run(double, {"type": "extended", "data": [1, 2, 3, 4], "power": 100}).result(timeout=60)
    assert result.data == [2, 4, 6, 8]
    assert result.stats.num_processes_used == 4
    assert result.stats.data_processed == 4
    assert result.stats.time_taken_seconds > 0
    assert result.stats.memory_used.endswith(" MB")
    assert result.stats.memory_used_bytes > 0
    assert engine.num_workers == 4


def test_order_is_input_order_under_random_delays(engine):
    data = list(range(60))
    result = engine.run(jitter, type="extended", data=data, power=100).result(timeout=60)
    assert result.data == data

    result = engine.run(slow_first, type="extended", data=list(range(8)), power=100).result(timeout=60)
    assert result.data == list(range(8))


def test_extra_args_follow_each_item(engine):
    result = engine.run(scale, type="extended", data=[1, 2, 3], args=[10, 1], power=50).result(timeout=60)
    assert result.data == [11, 21, 31]
    assert result.stats.num_processes_used == 2


def test_simple_mode_runs_once_per_worker_and_ignores_data(engine):
    result = engine.run(pid, type="simple", data=[1, 2, 3], args=[9], power=75).result(timeout=60)
    assert len(result.data) == 3
    assert len(set(result.data)) == 3
    assert os.getpid() not in result.data
    assert result.stats.num_processes_used == 3
    assert result.stats.data_processed == 3


def test_default_power_is_seventy_percent(engine):
    result = engine.run(pid).result(timeout=60)
    assert result.stats.num_processes_used == 3


def test_empty_data_resolves_immediately_without_workers(engine):
    future = engine.run(double, type="extended", data=[], power=70)
    assert future.done()
    result = future.result()
    assert result.data == []
    assert result.stats.num_processes_used == 0
    assert engine.num_workers == 0


def test_numpy_and_series_input(engine):
    result = engine.run(double, type="extended", data=np.arange(5), power=100).result(timeout=60)
    assert [int(v) for v in result.data] == [0, 2, 4, 6, 8]

    s = pd.Series([1.5, 2.5, 3.5], index=["a", "b", "c"])
    result = engine.run(double, type="extended", data=s, power=100).result(timeout=60)
    out = result.to_series()
    assert list(out.index) == ["a", "b", "c"]
    assert out.tolist() == [3.0, 5.0, 7.0]


def test_identifier_string_and_map(engine):
    result = engine.run("math:sqrt", type="extended", data=[4, 9, 16], power=100).result(timeout=60)
    assert result.data == [2.0, 3.0, 4.0]
    assert engine.map(scale, [1, 2], 3, 0, power=100) == [3, 6]


def test_workers_are_reused_and_resized_between_runs(engine):
    first = set(engine.run(pid, power=100).result(timeout=60).data)
    second = set(engine.run(pid, power=100).result(timeout=60).data)
    assert first == second

    third = engine.run(pid, power=50).result(timeout=60).data
    assert len(third) == 2
    assert engine.num_workers == 2
    assert set(third) <= first


def test_concurrent_runs_are_serialized(engine):
    futures = [engine.run(double, type="extended", data=list(range(i, i + 10)), power=100) for i in range(5)]
    for i, future in enumerate(futures):
        assert future.result(timeout=60).data == [2 * x for x in range(i, i + 10)]


def test_execution_error_fails_the_whole_run(engine):
    future = engine.run(fail_on_two, type="extended", data=[0, 1, 2, 3], power=100)
    with pytest.raises(ExecutionError) as excinfo:
        future.result(timeout=60)
    err = excinfo.value
    assert err.chunk_index == 2
    assert err.item_index == 2
    assert err.error_type == "ValueError"
    assert "bad item" in err.message
    assert "fail_on_two" in err.remote_traceback

    # the engine is still usable afterwards
    assert engine.run(double, type="extended", data=[1, 2], power=100).result(timeout=60).data == [2, 4]


def test_worker_crash_fails_the_run_and_pool_recovers(engine):
    future = engine.run(crash, type="extended", data=[0, 1, 2, 3], power=100)
    with pytest.raises(WorkerCrashError) as excinfo:
        future.result(timeout=60)
    assert excinfo.value.chunk_index == 1
    assert excinfo.value.exitcode == 3

    result = engine.run(double, type="extended", data=[0, 1, 2, 3], power=100).result(timeout=60)
    assert result.data == [0, 2, 4, 6]
    assert engine.num_workers == 4


def test_unpicklable_results_fail_through_the_future(engine):
    future = engine.run(make_lock, type="extended", data=[1], power=100)
    with pytest.raises(SerializationError):
        future.result(timeout=60)


def test_validation_errors_are_synchronous(engine):
    with pytest.raises(ValidationError):
        engine.run(42, type="simple")
    with pytest.raises(ValidationError):
        engine.run(double, type="extended")
    with pytest.raises(ValidationError):
        engine.run(double, type="extended", data=5)
    assert engine.num_workers == 0


def test_serialization_errors_are_synchronous(engine):
    with pytest.raises(SerializationError):
        engine.run(lambda x: x, type="extended", data=[1])
    with pytest.raises(SerializationError):
        engine.run(double, type="extended", data=[threading.Lock()])
    with pytest.raises(SerializationError):
        engine.run(scale, type="extended", data=[1], args=[threading.Lock(), 0])
    assert engine.num_workers == 0


def test_run_accepts_run_options(engine):
    opts = RunOptions.build(type="extended", data=[5], power=1)
    result = engine.run(double, opts).result(timeout=60)
    assert result.data == [10]
    assert result.stats.num_processes_used == 1


def test_malformed_run_options_fail_before_queueing(engine):
    with pytest.raises(ValidationError):
        engine.run(double, RunOptions(mode="extended"))
    with pytest.raises(ValidationError):
        engine.run(double, RunOptions(mode="extended", data=5))
    assert engine.num_workers == 0

    result = engine.run(double, RunOptions(mode="extended", data=[1, 2], power=100)).result(timeout=60)
    assert result.data == [2, 4]


def test_fewer_items_than_workers_uses_one_worker_per_item(engine):
    result = engine.run(double, type="extended", data=[1, 2], power=100).result(timeout=60)
    assert result.data == [2, 4]
    assert result.stats.num_processes_used == 2
    assert result.stats.to_dict()["numProcessesUsed"] == 2
    assert len(result.stats.workers) == 2
    assert engine.num_workers == 2


def test_kill_is_safe_without_workers_and_twice():
    turbit = Turbit(EngineConfig(total_cores=2))
    turbit.kill()
    turbit.kill()
    assert turbit.state is EngineState.TERMINATED
    assert turbit.num_workers == 0


def test_kill_rejects_running_and_queued_runs(engine):
    running = engine.run(sleepy, type="extended", data=[1, 2], power=50)
    queued = engine.run(double, type="extended", data=[1], power=50)
    time.sleep(0.5)

    started = time.monotonic()
    engine.kill()
    assert time.monotonic() - started < 20
    assert engine.state is EngineState.TERMINATED
    assert engine.num_workers == 0

    with pytest.raises(TerminatedError):
        running.result(timeout=30)
    with pytest.raises(TerminatedError):
        queued.result(timeout=30)
    engine.kill()


def test_run_after_kill_spawns_a_new_pool(engine):
    before = set(engine.run(pid, power=50).result(timeout=60).data)
    engine.kill()
    after = engine.run(pid, power=50).result(timeout=60).data
    assert engine.state is EngineState.ACTIVE
    assert len(after) == 2
    assert not before & set(after)


def test_context_manager_kills_on_exit():
    with Turbit(EngineConfig(start_method=os.getenv("TURBIT_START_METHOD") or None, total_cores=2)) as turbit:
        assert turbit.run(double, type="extended", data=[1, 2], power=100).result(timeout=60).data == [2, 4]
        assert turbit.num_workers == 2
    assert turbit.state is EngineState.TERMINATED
    assert turbit.num_workers == 0
