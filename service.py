"""
service.py - Exporter wiring

Startup order: discover the server's endpoints, negotiate one, open the
session, load the metric configuration, build the first cache generation
and register the collector. Any failure up to that point is an
ExporterError and is fatal to the process.
"""
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from opcua import Client
from prometheus_client import CollectorRegistry

from circuit_breaker import CircuitBreaker
from collector import (
    CacheHolder,
    ExporterRegistration,
    OpcuaCollector,
    Poller,
    build_cache,
    load_startup_metrics_config,
)
from config import Settings
from logger import get_logger
from metrics import build_info, get_metrics, registry as default_registry
from monitoring import ConfigWatcher, ReloadController
from opcua_client import (
    InvalidConfigError,
    NegotiatedEndpoint,
    ServerConfig,
    ServerConnectionError,
    Session,
    build_session,
    discover_endpoints,
    negotiate_endpoint,
)

logger = get_logger(__name__)


class ExporterService:
    """Owns the session, the cache holder, the collector and the reload controller"""

    def __init__(
        self,
        settings: Settings,
        registry: CollectorRegistry = default_registry,
        client_factory: Callable[..., Any] = Client
    ):
        self.settings = settings
        self.server_config = ServerConfig.from_settings(settings)
        self.config_path = Path(settings.metrics_config_path)
        self.registry = registry
        self.client_factory = client_factory

        self.cache_holder = CacheHolder()
        self.negotiated: Optional[NegotiatedEndpoint] = None
        self.session: Optional[Session] = None
        self.registration: Optional[ExporterRegistration] = None
        self.reload_controller: Optional[ReloadController] = None
        self.started_at: Optional[datetime] = None

    @property
    def started(self) -> bool:
        return self.started_at is not None

    def start(self):
        """
        Connect and register. Blocking.

        Raises:
            ExporterError: any startup failure
        """
        if self.started:
            return

        if not self.server_config.endpoint:
            raise InvalidConfigError("no OPC UA endpoint configured")

        endpoints = discover_endpoints(self.server_config.endpoint, client_factory=self.client_factory)
        self.negotiated = negotiate_endpoint(self.server_config, endpoints)

        breaker = CircuitBreaker(
            "opcua_reconnect",
            failure_threshold=self.settings.reconnect_failure_threshold,
            recovery_timeout=self.settings.reconnect_recovery_timeout,
            expected_exception=ServerConnectionError
        )
        self.session = build_session(
            self.server_config,
            self.negotiated,
            client_factory=self.client_factory,
            breaker=breaker
        )

        try:
            metrics_config = load_startup_metrics_config(self.config_path)
            cache = build_cache(metrics_config.metrics)

            collector = OpcuaCollector(Poller(self.session, self.cache_holder))
            self.registration = ExporterRegistration(self.registry, collector, self.cache_holder)
            self.registration.register()
            try:
                self.registration.install(cache)
            except InvalidConfigError:
                self.registration.unregister()
                raise
        except Exception:
            self.session.close()
            raise

        watcher = None
        if self.settings.watch_config:
            watcher = ConfigWatcher(self.config_path, self.settings.watch_interval_seconds)
        self.reload_controller = ReloadController(self.config_path, self.registration, watcher=watcher)

        build_info.info({
            "version": self.settings.version,
            "endpoint": self.server_config.endpoint,
            "security_mode": self.negotiated.security_mode.name,
            "security_policy": self.negotiated.endpoint.security_policy_uri,
            "auth_mode": self.negotiated.auth_mode.name,
        })
        self.started_at = datetime.utcnow()
        logger.info(
            f"{self.settings.app_name} v{self.settings.version} exporting "
            f"{len(self.cache_holder.snapshot())} metrics from {self.server_config.endpoint}"
        )

    def stop(self):
        if self.registration is not None:
            self.registration.unregister()
        if self.session is not None:
            self.session.close()
        self.started_at = None
        logger.info("Exporter stopped")

    def scrape(self) -> bytes:
        """Prometheus exposition of the exporter registry; runs one poll round"""
        return get_metrics(self.registry)

    def current_config(self) -> bytes:
        """The installed metric configuration as YAML"""
        return self.cache_holder.snapshot().to_config().serialize()

    def health(self) -> Dict[str, Any]:
        cache = self.cache_holder.snapshot()
        last_reload = self.reload_controller.get_last_reload() if self.reload_controller else None
        connected = self.session is not None and self.session.connected

        return {
            "status": "healthy" if connected else "degraded",
            "version": self.settings.version,
            "timestamp": datetime.utcnow().isoformat(),
            "endpoint": self.server_config.endpoint,
            "session_connected": connected,
            "cache_generation": cache.generation,
            "metric_count": len(cache),
            "last_reload": last_reload.to_dict() if last_reload else None,
        }
