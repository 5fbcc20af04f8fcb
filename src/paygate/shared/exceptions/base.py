"""Base exception hierarchy for the application."""

from typing import Any, Dict, Optional


class PaygateError(Exception):
    """Base exception for all paygate errors."""

    error_code = "PAYGATE_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class DomainError(PaygateError):
    """Base exception for domain-related errors."""
    pass


class ApplicationError(PaygateError):
    """Base exception for application layer errors."""
    pass


class InfrastructureError(PaygateError):
    """Base exception for infrastructure-related errors."""
    pass


class ValidationError(DomainError):
    """Raised when domain validation fails."""

    error_code = "VALIDATION_ERROR"


class BusinessRuleViolationError(DomainError):
    """Raised when a business rule is violated."""

    error_code = "BUSINESS_RULE_VIOLATION"


class EntityNotFoundError(ApplicationError):
    """Raised when an entity is not found."""

    error_code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        super().__init__(
            f"{entity_type} with ID {entity_id} not found",
            context={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class ConfigurationError(InfrastructureError):
    """Configuration-related errors."""

    error_code = "CONFIG_ERROR"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        context = dict(context or {})
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context=context)
        self.config_key = config_key
