"""Wiring of registry, repository, event bus and orchestrator from settings."""

from typing import Dict, Optional, Type

import httpx
import structlog

from ....infrastructure.config.settings import PaymentSettings
from ....infrastructure.messaging.in_memory_bus import InMemoryEventBus
from ....shared.events.event_bus import EventBus
from ....shared.exceptions.base import ConfigurationError
from ..domain.repositories import PaymentIntentRepository
from ..infrastructure.providers.base_provider import BaseGatewayAdapter
from ..infrastructure.providers.paypal_provider import PayPalAdapter
from ..infrastructure.providers.stripe_provider import StripeAdapter
from ..infrastructure.repositories import InMemoryPaymentIntentRepository
from .event_handlers import AUDITED_EVENTS, PaymentAuditHandler
from .orchestrator import PaymentOrchestrator
from .registry import GatewayRegistry

logger = structlog.get_logger(__name__)

ADAPTER_CLASSES: Dict[str, Type[BaseGatewayAdapter]] = {
    "stripe": StripeAdapter,
    "paypal": PayPalAdapter,
}


def build_registry(
    settings: PaymentSettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> GatewayRegistry:
    """Register one adapter per configured gateway, then freeze the table.

    Gateways with credentials for their active mode are registered even when
    disabled, so in-flight payments can still be reconciled.
    """
    registry = GatewayRegistry(settings.gateways)

    for name, config in settings.gateways.items():
        adapter_class = ADAPTER_CLASSES.get(name)
        if adapter_class is None:
            raise ConfigurationError(f"No adapter available for gateway '{name}'", config_key=name)
        if config.mode not in config.credentials:
            logger.warning("Gateway skipped, no credentials for active mode", gateway=name, mode=config.mode)
            continue

        registry.register(name, adapter_class.from_config(
            config,
            timeout_seconds=settings.request_timeout_seconds,
            max_retries=settings.max_retries,
            http_client=http_client,
        ))

    registry.freeze()
    logger.info("Gateway registry ready", enabled=registry.list_enabled())
    return registry


def build_event_bus() -> InMemoryEventBus:
    event_bus = InMemoryEventBus()
    audit = PaymentAuditHandler()
    for event_type in AUDITED_EVENTS:
        event_bus.subscribe(event_type, audit)
    return event_bus


def build_orchestrator(
    settings: PaymentSettings,
    repository: Optional[PaymentIntentRepository] = None,
    event_bus: Optional[EventBus] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        registry=build_registry(settings, http_client=http_client),
        repository=repository or InMemoryPaymentIntentRepository(),
        event_bus=event_bus or build_event_bus(),
        default_gateway=settings.default_gateway,
    )
