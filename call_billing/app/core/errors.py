class ValidationError(ValueError):
    """Raised when input has the wrong shape or is out of range."""


class InvalidDurationError(ValidationError):
    """Raised when a call duration is negative."""


class PhoneParseError(ValidationError):
    """Raised when a phone number cannot be parsed or has no region."""


class NotFoundError(Exception):
    """Raised when a requested record does not exist."""


class AccountNotFoundError(NotFoundError):
    """Raised when an account id is missing from the store."""


class PricingNotFoundError(NotFoundError):
    """Raised when no price is stored for a destination."""


class AuthError(Exception):
    """Raised when a credential is missing or invalid."""


class PermissionDeniedError(AuthError):
    """Raised when a valid credential lacks the required privilege."""


class TransactionConflictError(Exception):
    """Raised when a concurrent write invalidated the data a transaction read."""


class ExternalProviderError(Exception):
    """Raised when a telephony or payment provider interaction fails."""


class WebhookSignatureError(ExternalProviderError):
    """Raised when an inbound webhook is unsigned or its signature is invalid."""


class PaymentsUnavailableError(ExternalProviderError):
    """Raised when the payment provider is not configured."""


class ConfigurationError(RuntimeError):
    """Raised at startup when required server configuration is missing."""
