"""Payment domain repositories."""

from abc import ABC, abstractmethod
from typing import Optional

from .entities import PaymentIntent


class PaymentIntentRepository(ABC):
    """Repository interface for the PaymentIntent aggregate.

    Intents are never deleted; they remain as the audit record.
    """

    @abstractmethod
    async def add(self, intent: PaymentIntent) -> None:
        """Persist a new intent. Raises DuplicateReferenceError if the reference exists."""
        pass

    @abstractmethod
    async def save(self, intent: PaymentIntent) -> None:
        """Persist changes to an existing intent.

        The write only lands if the stored version still equals
        ``intent.version``; it then advances both. Raises
        ConcurrentUpdateError when another writer got there first.
        """
        pass

    @abstractmethod
    async def find_by_reference(self, reference: str) -> Optional[PaymentIntent]:
        """Find intent by caller reference."""
        pass

    @abstractmethod
    async def find_by_external_ref(self, gateway_name: str, external_ref: str) -> Optional[PaymentIntent]:
        """Find intent by the vendor's session or payment reference."""
        pass
