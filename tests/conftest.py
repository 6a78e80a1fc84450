import os
import pytest

def pytest_addoption(parser):
    parser.addoption(
        "--start-method", action="store", default=None, choices=("fork", "spawn", "forkserver"),
        help="Multiprocessing start method used by engine tests (platform default if omitted)"
    )

@pytest.fixture(scope="session", autouse=True)
def start_method(request):
    """
    Fixture to control the multiprocessing start method of the worker pools.
    If --start-method is passed it is exported as TURBIT_START_METHOD; otherwise the platform default is used.
    """
    method = request.config.getoption("--start-method")
    if method:
        os.environ["TURBIT_START_METHOD"] = method
        print(f"Worker processes use the '{method}' start method.")
    else:
        os.environ.pop("TURBIT_START_METHOD", None)
        print("Worker processes use the platform default start method.")
    return method
