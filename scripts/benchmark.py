"""
Serial vs. parallel benchmark of a CPU-bound task.

Usage example:
python scripts/benchmark.py \
  --items 64 \
  --work 200000 \
  --power 25 50 100 \
  --repeat 3

For every power level the script runs the same extended job through one engine instance and prints the wall time,
the speedup over a plain serial loop and the run statistics reported by the engine.

Notes:
- The task function lives at module level so worker processes can import it by name.
- The first run of each power level includes the worker spawn cost; --repeat > 1 shows the warm-pool timing.
"""
from __future__ import annotations

import argparse
import math
import time

from turbit import Turbit
from turbit.engine.config import EngineConfig


def burn(n: int, work: int) -> float:
    """Deliberately slow, pure-Python numeric loop."""
    acc = 0.0
    for i in range(1, work):
        acc += math.sqrt(i * n) / i
    return acc


def serial(items: int, work: int) -> tuple[list[float], float]:
    start = time.perf_counter()
    out = [burn(n, work) for n in range(items)]
    return out, time.perf_counter() - start


def main():
    parser = argparse.ArgumentParser(description="Compare serial execution with Turbit runs at several power levels")
    parser.add_argument('--items', '-n', type=int, default=64, help='Number of items in the input data')
    parser.add_argument('--work', '-w', type=int, default=200_000, help='Loop iterations per item')
    parser.add_argument('--power', '-p', type=float, nargs='+', default=[25, 50, 100], help='Power levels (percent of cores)')
    parser.add_argument('--repeat', '-r', type=int, default=2, help='Runs per power level')
    parser.add_argument('--start-method', choices=('fork', 'spawn', 'forkserver'), default=None,
                        help='Multiprocessing start method (platform default if omitted)')
    args = parser.parse_args()

    expected, serial_time = serial(args.items, args.work)
    print(f"Serial: {serial_time:.3f}s for {args.items} items")

    config = EngineConfig(start_method=args.start_method)
    with Turbit(config) as turbit:
        for power in args.power:
            for attempt in range(1, args.repeat + 1):
                result = turbit.run(burn, type="extended", data=list(range(args.items)), args=[args.work],
                                    power=power).result()
                if result.data != expected:
                    raise SystemExit(f"[error] Parallel results differ from serial results at power={power}")
                stats = result.stats
                print(f"power={power:>5.1f}% run {attempt}: {stats.time_taken_seconds:.3f}s "
                      f"x{serial_time / stats.time_taken_seconds:.2f} | "
                      f"{stats.num_processes_used} processes, {stats.data_processed} items, {stats.memory_used}")


if __name__ == '__main__':
    main()
