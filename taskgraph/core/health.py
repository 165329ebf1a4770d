"""Health check utilities for engine monitoring.

Provides uptime tracking and a health report covering the cache backend,
in-process executions and registered step kinds.
"""
import time
from typing import Dict, Any, TYPE_CHECKING

if TYPE_CHECKING:
    from taskgraph.core.config import Settings
    from taskgraph.core.cache import CacheService
    from taskgraph.services.execution.executor import WorkflowExecutor

# Module-level startup time tracking
_startup_time: float = 0.0


def set_startup_time() -> None:
    """Record the engine startup time. Call once when the engine boots."""
    global _startup_time
    _startup_time = time.time()


def get_uptime() -> float:
    """Get uptime in seconds since startup."""
    return time.time() - _startup_time if _startup_time else 0.0


async def check_cache(cache: "CacheService") -> bool:
    """Check cache connectivity with a set/get/delete round trip."""
    try:
        test_key = "_health_check"
        await cache.set(test_key, "ok", ttl=10)
        result = await cache.get(test_key)
        await cache.delete(test_key)
        return result == "ok"
    except Exception:
        return False


async def get_health_status(
    cache: "CacheService",
    executor: "WorkflowExecutor",
    settings: "Settings"
) -> Dict[str, Any]:
    """Get a health report for the engine.

    Returns:
        Dict containing status, uptime, cache check, execution counts and
        feature flags. Status is "degraded" when the cache check fails or
        any in-process execution is stalled.
    """
    cache_healthy = await check_cache(cache)

    active = executor.active_execution_ids()
    stalled = []
    for execution_id in active:
        health = await executor.health(execution_id)
        if health.stalled:
            stalled.append(execution_id)

    overall_status = "healthy" if (cache_healthy and not stalled) else "degraded"

    return {
        "status": overall_status,
        "uptime_seconds": round(get_uptime(), 1),
        "checks": {
            "cache": cache_healthy,
        },
        "engine": {
            "active_executions": len(active),
            "stalled_executions": stalled,
            "step_kinds": [k.value for k in executor.registry.kinds()],
        },
        "features": {
            "redis": cache.is_redis_available(),
            "default_parallelism": settings.default_parallelism,
        },
    }
