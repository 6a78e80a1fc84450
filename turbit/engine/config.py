import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from turbit.utils.power import DEFAULT_POWER

# Load environment variables from .env file
load_dotenv()

_START_METHODS = ("fork", "spawn", "forkserver")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number. Got {raw!r}") from None


@dataclass(frozen=True)
class EngineConfig:
    r"""Settings shared by every run of one engine instance.

    :param start_method: Multiprocessing start method (``"fork"``, ``"spawn"`` or ``"forkserver"``).
        ``None`` uses the platform default.
    :param default_power: Power percentage used when a run does not specify one.
    :param spawn_timeout: Seconds to wait for a freshly spawned worker to report ready.
    :param shutdown_timeout: Seconds to wait for a worker to exit before it is force-terminated.
    :param poll_interval: Seconds the dispatcher waits on worker channels before re-checking for a kill.
    :param total_cores: Core count used to size the pool. ``None`` detects it from the platform.
    """
    start_method: Optional[str] = None
    default_power: float = DEFAULT_POWER
    spawn_timeout: float = 30.0
    shutdown_timeout: float = 5.0
    poll_interval: float = 0.05
    total_cores: Optional[int] = None

    def __post_init__(self):
        if self.start_method is not None and self.start_method not in _START_METHODS:
            raise ValueError(f"start_method must be one of {_START_METHODS}. Got {self.start_method!r}")
        if self.spawn_timeout <= 0 or self.shutdown_timeout <= 0 or self.poll_interval <= 0:
            raise ValueError("Timeouts and poll interval must be positive.")
        if self.total_cores is not None and self.total_cores < 1:
            raise ValueError(f"total_cores must be at least 1. Got {self.total_cores}")

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Build a config from ``TURBIT_*`` environment variables, falling back to the defaults.
        """
        start_method = os.getenv("TURBIT_START_METHOD") or None
        total_cores = _env_float("TURBIT_TOTAL_CORES", None)
        return cls(
            start_method=start_method.lower() if start_method else None,
            default_power=_env_float("TURBIT_DEFAULT_POWER", DEFAULT_POWER),
            spawn_timeout=_env_float("TURBIT_SPAWN_TIMEOUT", 30.0),
            shutdown_timeout=_env_float("TURBIT_SHUTDOWN_TIMEOUT", 5.0),
            poll_interval=_env_float("TURBIT_POLL_INTERVAL", 0.05),
            total_cores=None if total_cores is None else int(total_cores),
        )
