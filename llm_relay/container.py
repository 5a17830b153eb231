"""Dependency injection container for LLM Relay.

Lightweight wiring of services at application startup.
Uses lazy initialization: services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

from llm_relay.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class RelayContainer:
    """Central service container."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._registry = None
        self._adapter = None
        self._throttle = None
        self._classifier = None
        self._usage_tracker = None
        self._event_log = None
        self._router = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def registry(self):
        if self._registry is None:
            from llm_relay.providers.registry import ProviderRegistry
            self._registry = ProviderRegistry.from_file(
                self.settings.providers_config_path,
                default_currency=self.settings.default_currency,
            )
        return self._registry

    @property
    def adapter(self):
        if self._adapter is None:
            from llm_relay.providers.adapter import ProviderAdapter
            self._adapter = ProviderAdapter(default_timeout=self.settings.default_provider_timeout)
        return self._adapter

    @property
    def throttle(self):
        if self._throttle is None:
            from llm_relay.providers.throttle import ProviderThrottle
            self._throttle = ProviderThrottle(enabled=self.settings.provider_rate_limits_enabled)
        return self._throttle

    @property
    def classifier(self):
        if self._classifier is None:
            from llm_relay.routing.classifier import PromptClassifier
            self._classifier = PromptClassifier.from_file(self.settings.classification_rules_path)
        return self._classifier

    @property
    def usage_tracker(self):
        if self._usage_tracker is None:
            from llm_relay.usage.storage import PersistentUsageStore
            from llm_relay.usage.tracker import UsageTracker
            store = None
            if self.settings.usage_store_path:
                store = PersistentUsageStore(self.settings.usage_store_path)
            self._usage_tracker = UsageTracker(
                store=store,
                async_persist=not self.settings.sync_usage_accounting,
                retention_hours=self.settings.usage_retention_hours,
            )
        return self._usage_tracker

    @property
    def event_log(self):
        if self._event_log is None:
            from llm_relay.observability.event_log import RoutingEventLog
            self._event_log = RoutingEventLog(
                path=self.settings.event_log_path,
                buffer_size=self.settings.event_buffer_size,
            )
        return self._event_log

    @property
    def router(self):
        if self._router is None:
            from llm_relay.exceptions import CircuitBreakerConfig
            from llm_relay.routing.router import LLMRouter
            s = self.settings
            self._router = LLMRouter(
                registry=self.registry,
                adapter=self.adapter,
                classifier=self.classifier,
                throttle=self.throttle,
                usage_tracker=self.usage_tracker,
                event_log=self.event_log,
                max_retries=s.router_max_retries,
                backoff_initial=s.router_backoff_initial,
                backoff_max=s.router_backoff_max,
                backoff_jitter=s.router_backoff_jitter,
                default_chain=s.default_fallback_chain,
                history_size=s.routing_history_size,
                circuit_breakers_enabled=s.circuit_breaker_enabled,
                circuit_breaker_config=CircuitBreakerConfig(
                    failure_threshold=s.circuit_breaker_failure_threshold,
                    recovery_timeout_sec=s.circuit_breaker_timeout,
                ),
            )
            logger.info("Router initialized with %d providers", len(self.registry))
        return self._router

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "registry": self._registry is not None,
            "adapter": self._adapter is not None,
            "throttle": self._throttle is not None,
            "classifier": self._classifier is not None,
            "usage_tracker": self._usage_tracker is not None,
            "event_log": self._event_log is not None,
            "router": self._router is not None,
        }

    async def aclose(self) -> None:
        """Flush pending usage writes."""
        if self._usage_tracker is not None:
            await self._usage_tracker.drain()
            self._usage_tracker.flush()


# Global container
_container: Optional[RelayContainer] = None


def get_container() -> RelayContainer:
    global _container
    if _container is None:
        _container = RelayContainer()
    return _container


def set_container(container: RelayContainer) -> RelayContainer:
    global _container
    _container = container
    return container


async def shutdown_container() -> None:
    global _container
    if _container is not None:
        await _container.aclose()
    _container = None
