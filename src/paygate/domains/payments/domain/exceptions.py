"""Payment error taxonomy."""

from typing import Optional

from ....shared.exceptions.base import (
    ApplicationError,
    BusinessRuleViolationError,
    ConfigurationError,
    DomainError,
    EntityNotFoundError,
    InfrastructureError,
)
from .value_objects import GatewayError


class DuplicateGatewayError(ConfigurationError):
    """A gateway name was registered twice."""

    error_code = "DUPLICATE_GATEWAY"

    def __init__(self, name: str) -> None:
        super().__init__(f"Gateway '{name}' is already registered", config_key=name)
        self.gateway_name = name


class UnknownGatewayError(ConfigurationError):
    """No adapter is registered under the requested name."""

    error_code = "UNKNOWN_GATEWAY"

    def __init__(self, name: str) -> None:
        super().__init__(f"Gateway '{name}' is not registered", config_key=name)
        self.gateway_name = name


class GatewayDisabledError(ConfigurationError):
    """The gateway is registered but its configuration disables it."""

    error_code = "GATEWAY_DISABLED"

    def __init__(self, name: str) -> None:
        super().__init__(f"Gateway '{name}' is disabled", config_key=name)
        self.gateway_name = name


class GatewayCallError(InfrastructureError):
    """Base for failures reported by a vendor."""

    retryable = False

    def __init__(self, gateway_error: GatewayError, reference: Optional[str] = None) -> None:
        super().__init__(
            gateway_error.message,
            context={
                "gateway": gateway_error.gateway_name,
                "status_code": gateway_error.status_code,
                "vendor_code": gateway_error.vendor_code,
                "reference": reference,
            },
        )
        self.gateway_error = gateway_error
        self.reference = reference


class GatewayUnavailableError(GatewayCallError):
    """Network failure, timeout or vendor outage. Safe to retry later."""

    error_code = "GATEWAY_UNAVAILABLE"
    retryable = True


class GatewayRejectedError(GatewayCallError):
    """The vendor declined the request. Terminal for this attempt."""

    error_code = "GATEWAY_REJECTED"


class SignatureError(DomainError):
    """Webhook failed cryptographic verification. Never mutates state."""

    error_code = "SIGNATURE_INVALID"

    def __init__(self, gateway_name: str, reason: str) -> None:
        super().__init__(
            f"Webhook signature rejected for '{gateway_name}': {reason}",
            context={"gateway": gateway_name, "reason": reason},
        )
        self.gateway_name = gateway_name
        self.reason = reason


class DuplicateReferenceError(ApplicationError):
    """A reference already bound to a different intent was reused."""

    error_code = "DUPLICATE_REFERENCE"

    def __init__(self, reference: str) -> None:
        super().__init__(
            f"Reference '{reference}' is already bound to a different payment",
            context={"reference": reference},
        )
        self.reference = reference


class ConcurrentUpdateError(ApplicationError):
    """Another writer saved the intent after this copy was loaded."""

    error_code = "CONCURRENT_UPDATE"

    def __init__(self, reference: str, expected_version: int) -> None:
        super().__init__(
            f"Payment '{reference}' was modified concurrently",
            context={"reference": reference, "expected_version": expected_version},
        )
        self.reference = reference
        self.expected_version = expected_version


class InvalidStatusTransitionError(BusinessRuleViolationError):
    """The intent's state machine does not allow the transition."""

    error_code = "INVALID_TRANSITION"

    def __init__(self, reference: str, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot transition payment '{reference}' from {current} to {requested}",
            context={"reference": reference, "current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class RefundNotAllowedError(BusinessRuleViolationError):
    """Refund requested on a non-completed intent or above the captured amount."""

    error_code = "REFUND_NOT_ALLOWED"


class PaymentIntentNotFoundError(EntityNotFoundError):
    def __init__(self, reference: str) -> None:
        super().__init__("PaymentIntent", reference)
        self.reference = reference
