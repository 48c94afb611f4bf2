"""Host metrics via psutil: CPU/memory per sample and the environment block of a result."""

from __future__ import annotations

import platform
import sys
import uuid

import psutil

from . import __version__
from .logging_config import get_logger
from .models import EnvironmentInfo, SystemMetrics

logger = get_logger("system_monitor")

BYTES_PER_MB = 1024 * 1024


class SystemMonitor:
    """Non-blocking CPU/memory sampler.

    psutil.cpu_percent(interval=None) reports usage since the previous call, so the
    constructor primes it once and each sample() covers one metrics interval.
    """

    def __init__(self) -> None:
        psutil.cpu_percent(interval=None)

    def sample(self) -> SystemMetrics | None:
        try:
            vm = psutil.virtual_memory()
            return SystemMetrics(
                cpu_percent=float(psutil.cpu_percent(interval=None)),
                memory_percent=float(vm.percent),
                memory_used_mb=round(vm.used / BYTES_PER_MB, 1),
            )
        except (OSError, psutil.Error) as e:
            logger.debug("System metrics unavailable: %s", e)
            return None


def environment_info() -> EnvironmentInfo:
    vm = psutil.virtual_memory()
    return EnvironmentInfo(
        test_run_id=str(uuid.uuid4()),
        hostname=platform.node(),
        os=platform.platform(),
        platform=sys.platform,
        arch=platform.machine(),
        python_version=platform.python_version(),
        cpus=psutil.cpu_count(logical=True) or 1,
        total_memory_mb=int(vm.total / BYTES_PER_MB),
        volley_version=__version__,
    )
