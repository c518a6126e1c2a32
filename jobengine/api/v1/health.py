"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from jobengine.config import settings

router = APIRouter()

# Set by main.py during lifespan
_watchdog = None
_registry = None


def set_watchdog(watchdog):
    global _watchdog
    _watchdog = watchdog


def set_registry(registry):
    global _registry
    _registry = registry


@router.get("/health")
async def health_check():
    """Service health, engine wiring and system info."""
    last_check = getattr(_watchdog, "last_check_time", None)
    return {
        "status": "healthy" if _registry is not None else "starting",
        "storage_backend": settings.storage_backend,
        "job_types": [t.value for t in _registry.supported_types] if _registry else [],
        "watchdog_enabled": _watchdog is not None,
        "watchdog_last_check": last_check.isoformat() if last_check else None,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
