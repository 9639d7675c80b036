"""
Liveness and readiness checks.
"""
import time
from typing import Any, Awaitable, Callable, Dict
import psutil
import structlog
from .event_models import utcnow

logger = structlog.get_logger()


class HealthChecker:
    """
    Health checker for the EventGate service.

    Readiness covers the event store, the key/value counter backend and host
    resources; liveness only reports that the process is serving.
    """

    def __init__(
        self,
        store_check: Callable[[], Awaitable[bool]],
        kv_check: Callable[[], Awaitable[bool]],
        service_name: str = "eventgate",
        version: str = "0.1.0",
    ):
        self.service_name = service_name
        self.version = version
        self._store_check = store_check
        self._kv_check = kv_check

    def _envelope(self, status: str) -> Dict[str, Any]:
        return {
            "status": status,
            "service": self.service_name,
            "version": self.version,
            "timestamp": utcnow().isoformat(),
        }

    def liveness(self) -> Dict[str, Any]:
        return self._envelope("ok")

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness check.

        The service is not ready when the store or the counter backend is
        unreachable, or when disk or memory drop below their error thresholds.
        Warnings are reported but do not flip readiness.

        Returns:
            dict: Readiness status with detailed check results
        """
        checks = {
            "event_store": await self._check_dependency("event_store", self._store_check),
            "counters": await self._check_dependency("counters", self._kv_check),
            "disk_space": self._check_disk_space(),
            "memory": self._check_memory(),
        }
        ready = all(check["status"] != "error" for check in checks.values())
        result = self._envelope("ready" if ready else "not_ready")
        result["checks"] = checks
        return result

    async def _check_dependency(self, name: str, check: Callable[[], Awaitable[bool]]) -> Dict[str, Any]:
        start = time.perf_counter()
        healthy = await check()
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if not healthy:
            logger.warning("dependency_health_check_failed", dependency=name)
            return {"status": "error", "latency_ms": latency_ms}
        return {"status": "ok", "latency_ms": latency_ms}

    def _check_disk_space(self, threshold_gb: float = 1.0) -> Dict[str, Any]:
        """
        Check available disk space.

        Args:
            threshold_gb: Minimum available disk space in GB (default: 1.0)
        """
        try:
            disk = psutil.disk_usage("/")
        except OSError as e:
            logger.warning("disk_health_check_failed", error=str(e))
            return {"status": "error", "error": str(e)}

        available_gb = disk.free / (1024**3)
        return {
            "status": _grade(available_gb, threshold_gb),
            "available_gb": round(available_gb, 2),
            "total_gb": round(disk.total / (1024**3), 2),
            "used_percent": disk.percent,
        }

    def _check_memory(self, threshold_mb: float = 50.0) -> Dict[str, Any]:
        """
        Check available memory.

        Args:
            threshold_mb: Minimum available memory in MB (default: 50.0)
        """
        memory = psutil.virtual_memory()
        available_mb = memory.available / (1024**2)
        return {
            "status": _grade(available_mb, threshold_mb),
            "available_mb": round(available_mb, 2),
            "total_mb": round(memory.total / (1024**2), 2),
            "used_percent": memory.percent,
        }


def _grade(available: float, threshold: float) -> str:
    if available < threshold:
        return "error"
    if available < threshold * 2:
        return "warning"
    return "ok"
