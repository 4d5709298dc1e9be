"""
Metric Configuration Hot-Reload

Every reload trigger (SIGHUP, a change of the file on disk, the HTTP
reload and update routes) is queued to a single worker, so reloads are
applied strictly one at a time. A reload swaps the metric cache only; the
OPC UA session is never touched.
"""
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime
from pathlib import Path
import asyncio
import hashlib

from collector.cache import build_cache
from collector.exporter import ExporterRegistration
from collector.metrics_config import load_metrics_config, write_metrics_config
from logger import get_logger
from metrics import config_reloads

logger = get_logger(__name__)


class ReloadStatus(Enum):
    """Status of configuration reload"""
    SUCCESS = "success"
    FAILED = "failed"


class ReloadTrigger(Enum):
    """What asked for the reload"""
    SIGNAL = "signal"
    FILE_CHANGE = "file_change"
    HTTP_RELOAD = "http_reload"
    HTTP_UPDATE = "http_update"
    MANUAL = "manual"


@dataclass
class ReloadResult:
    """Result of configuration reload"""
    config_path: Path
    trigger: ReloadTrigger
    status: ReloadStatus
    timestamp: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None
    generation: Optional[int] = None
    metric_count: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == ReloadStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_path": str(self.config_path),
            "trigger": self.trigger.value,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "error": self.error,
            "generation": self.generation,
            "metric_count": self.metric_count,
        }


@dataclass
class _ReloadRequest:
    trigger: ReloadTrigger
    config_bytes: Optional[bytes]
    future: asyncio.Future


class ConfigWatcher:
    """
    Watches a configuration file for changes

    Polls the modification time and confirms a change with a checksum
    before notifying.
    """

    def __init__(
        self,
        config_path: Path,
        check_interval_seconds: float = 10
    ):
        """
        Initialize config watcher

        Args:
            config_path: Path to configuration file
            check_interval_seconds: How often to check for changes
        """
        self.config_path = Path(config_path)
        self.check_interval = check_interval_seconds

        self._last_checksum: Optional[str] = None
        self._last_modified: Optional[float] = None
        self._running = False
        self._watch_task = None

    async def start(
        self,
        on_change: Callable[[Path], Awaitable[Any]]
    ):
        """
        Start watching for changes

        Args:
            on_change: Async callback function called when file changes
        """
        if self._running:
            return

        self._running = True
        self.refresh()

        self._watch_task = asyncio.create_task(
            self._watch_loop(on_change)
        )

        logger.info(f"Started watching config file: {self.config_path}")

    async def stop(self):
        """Stop watching"""
        if not self._running:
            return

        self._running = False

        if self._watch_task:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass

        logger.info(f"Stopped watching config file: {self.config_path}")

    def refresh(self):
        """Take the file as it is now as the unchanged state"""
        self._last_checksum = self._calculate_checksum()
        self._last_modified = self._modified_time()

    async def _watch_loop(
        self,
        on_change: Callable[[Path], Awaitable[Any]]
    ):
        """Watch loop"""
        while self._running:
            await asyncio.sleep(self.check_interval)
            try:
                if self.has_changed():
                    logger.info(f"Config file changed: {self.config_path}")
                    self.refresh()
                    await on_change(self.config_path)

            except Exception as e:
                logger.error(f"Error in config watch loop: {e}")

    def has_changed(self) -> bool:
        """Check if file has changed"""
        if not self.config_path.exists():
            # File was deleted
            if self._last_checksum is not None:
                logger.warning(f"Config file deleted: {self.config_path}")
                return True
            return False

        # Check modification time first (fast)
        current_mtime = self._modified_time()
        if self._last_modified and current_mtime <= self._last_modified:
            return False

        return self._calculate_checksum() != self._last_checksum

    def _modified_time(self) -> Optional[float]:
        try:
            return self.config_path.stat().st_mtime
        except OSError:
            return None

    def _calculate_checksum(self) -> Optional[str]:
        """Calculate file checksum"""
        try:
            content = self.config_path.read_bytes()
        except OSError:
            return None
        return hashlib.sha256(content).hexdigest()


class ReloadController:
    """
    Applies metric configuration reloads one at a time

    Example:
        controller = ReloadController(Path("opcua.yaml"), registration)
        await controller.start()

        result = await controller.submit_reload(trigger=ReloadTrigger.HTTP_RELOAD)
        if not result.succeeded:
            print(result.error)
    """

    def __init__(
        self,
        config_path: Path,
        registration: ExporterRegistration,
        watcher: Optional[ConfigWatcher] = None,
        history_size: int = 50
    ):
        self.config_path = Path(config_path)
        self.registration = registration
        self.watcher = watcher
        self._reload_history: Deque[ReloadResult] = deque(maxlen=history_size)
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._in_flight: Optional[Tuple[_ReloadRequest, asyncio.Future]] = None
        self._background: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self):
        """Start the reload worker and, if configured, the file watcher"""
        if self.running:
            logger.warning("Reload controller already running")
            return

        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._work())

        if self.watcher is not None:
            await self.watcher.start(self._on_file_change)

        logger.info(f"Started reload controller for {self.config_path}")

    async def stop(self):
        """
        Stop the watcher and the worker.

        A reload already running in the executor is allowed to finish and
        its caller gets the result; queued reloads are cancelled.
        """
        if self.watcher is not None:
            await self.watcher.stop()

        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        if self._in_flight is not None:
            request, job = self._in_flight
            self._in_flight = None
            result = await job
            if not request.future.done():
                request.future.set_result(result)

        while self._queue is not None and not self._queue.empty():
            request = self._queue.get_nowait()
            request.future.cancel()

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        logger.info("Stopped reload controller")

    async def submit_reload(
        self,
        config_bytes: Optional[bytes] = None,
        trigger: ReloadTrigger = ReloadTrigger.MANUAL
    ) -> ReloadResult:
        """
        Queue a reload and wait for its outcome.

        Args:
            config_bytes: New configuration to persist first; None or empty
                reloads the file as it is
            trigger: What asked for the reload
        """
        if not self.running:
            raise RuntimeError("reload controller is not running")

        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_ReloadRequest(trigger, config_bytes, future))
        return await future

    def request_reload(self, trigger: ReloadTrigger = ReloadTrigger.SIGNAL):
        """Queue a reload without waiting, from a signal handler or callback"""
        task = asyncio.get_running_loop().create_task(self.submit_reload(trigger=trigger))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_file_change(self, path: Path):
        await self.submit_reload(trigger=ReloadTrigger.FILE_CHANGE)

    async def _work(self):
        loop = asyncio.get_running_loop()
        while True:
            request = await self._queue.get()
            job = loop.run_in_executor(None, self.apply_reload, request.config_bytes, request.trigger)
            self._in_flight = (request, job)
            # Cancelling the worker must not abandon a reload mid-swap
            result = await asyncio.shield(job)
            self._in_flight = None
            if not request.future.done():
                request.future.set_result(result)

    def apply_reload(
        self,
        config_bytes: Optional[bytes] = None,
        trigger: ReloadTrigger = ReloadTrigger.MANUAL
    ) -> ReloadResult:
        """
        Persist, re-parse, rebuild and swap. Only ever called by the worker.

        A failure at any step leaves the installed cache and the registry
        as they were.
        """
        result = ReloadResult(
            config_path=self.config_path,
            trigger=trigger,
            status=ReloadStatus.SUCCESS
        )

        try:
            if config_bytes:
                write_metrics_config(self.config_path, config_bytes)
                if self.watcher is not None:
                    self.watcher.refresh()

            config = load_metrics_config(self.config_path)
            cache = build_cache(config.metrics)
            self.registration.install(cache)

            installed = self.registration.cache_holder.snapshot()
            result.generation = installed.generation
            result.metric_count = len(installed)
            logger.info(
                f"Reloaded {self.config_path} ({trigger.value}): "
                f"generation {result.generation}, {result.metric_count} metrics"
            )

        except Exception as e:
            result.status = ReloadStatus.FAILED
            result.error = str(e)
            result.generation = self.registration.cache_holder.generation
            logger.error(f"Failed to reload {self.config_path} ({trigger.value}): {e}")

        config_reloads.labels(result.status.value).inc()
        self._reload_history.append(result)
        return result

    def get_reload_history(self, limit: int = 10) -> List[ReloadResult]:
        """Get reload history, most recent first"""
        return list(reversed(self._reload_history))[:limit]

    def get_last_reload(self) -> Optional[ReloadResult]:
        if not self._reload_history:
            return None
        return self._reload_history[-1]

    def get_stats(self) -> Dict[str, Any]:
        """Get reload statistics"""
        total_reloads = len(self._reload_history)
        successful = sum(1 for r in self._reload_history if r.status == ReloadStatus.SUCCESS)
        failed = total_reloads - successful

        return {
            "total_reloads": total_reloads,
            "successful": successful,
            "failed": failed,
            "success_rate": successful / total_reloads if total_reloads > 0 else 0.0,
            "generation": self.registration.cache_holder.generation,
            "watching": self.watcher is not None,
        }
