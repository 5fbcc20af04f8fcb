"""Gateway registry: logical gateway name to adapter."""

from typing import Dict, List, Mapping, Optional

import structlog

from ....infrastructure.config.settings import GatewayConfig
from ....shared.exceptions.base import ConfigurationError
from ..domain.exceptions import DuplicateGatewayError, GatewayDisabledError, UnknownGatewayError
from ..domain.services import GatewayAdapter

logger = structlog.get_logger(__name__)


class GatewayRegistry:
    """Binding table filled once at startup.

    Whether a gateway is enabled is read from its configuration, not from the
    binding itself, so a disabled gateway still resolves for webhooks and
    return callbacks of payments already in flight.
    """

    def __init__(self, configs: Optional[Mapping[str, GatewayConfig]] = None) -> None:
        self._adapters: Dict[str, GatewayAdapter] = {}
        self._configs: Mapping[str, GatewayConfig] = configs or {}
        self._frozen = False

    def register(self, name: str, adapter: GatewayAdapter) -> None:
        """Bind ``name`` to ``adapter``."""
        if self._frozen:
            raise ConfigurationError(
                f"Cannot register gateway '{name}' after startup", config_key=name
            )
        if name in self._adapters:
            raise DuplicateGatewayError(name)

        self._adapters[name] = adapter
        logger.info("Gateway registered", gateway=name, adapter=type(adapter).__name__)

    def freeze(self) -> None:
        """Make the table read-only."""
        self._frozen = True

    def resolve(self, name: str) -> GatewayAdapter:
        try:
            return self._adapters[name]
        except KeyError:
            raise UnknownGatewayError(name)

    def resolve_enabled(self, name: str) -> GatewayAdapter:
        """Resolve an adapter that may take new payments."""
        adapter = self.resolve(name)
        if not self.is_enabled(name):
            raise GatewayDisabledError(name)
        return adapter

    def is_enabled(self, name: str) -> bool:
        config = self._configs.get(name)
        return bool(config and config.enabled)

    def list_enabled(self) -> List[str]:
        """Registered names whose configuration is enabled, in registration order."""
        return [name for name in self._adapters if self.is_enabled(name)]

    def names(self) -> List[str]:
        return list(self._adapters)

    async def aclose(self) -> None:
        """Close every adapter's HTTP resources."""
        for adapter in self._adapters.values():
            await adapter.aclose()
