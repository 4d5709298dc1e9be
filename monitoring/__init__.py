"""
Monitoring Module

Configuration hot-reload for the metric configuration.

Quick Start:
    from monitoring import ConfigWatcher, ReloadController, ReloadTrigger

    controller = ReloadController(
        Path("opcua.yaml"),
        registration,
        watcher=ConfigWatcher(Path("opcua.yaml"), check_interval_seconds=10)
    )
    await controller.start()

    result = await controller.submit_reload(trigger=ReloadTrigger.HTTP_RELOAD)
"""

from .config_reload import (
    ConfigWatcher,
    ReloadController,
    ReloadResult,
    ReloadStatus,
    ReloadTrigger,
)

__all__ = [
    "ConfigWatcher",
    "ReloadController",
    "ReloadResult",
    "ReloadStatus",
    "ReloadTrigger",
]
