"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class UserNotFoundError(BillingError):
    """Raised when a user doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class InsufficientCreditsError(BillingError):
    """Raised when a spend is attempted with a non-positive balance."""

    def __init__(self, user_id: UUID, balance: int) -> None:
        self.user_id = user_id
        self.balance = balance
        super().__init__(f"Insufficient credits for user {user_id}. Balance: {balance}")


# ============================================================================
# Payment Errors
# ============================================================================


class PaymentNotConfiguredError(BillingError):
    """Raised when gateway credentials are missing from payment_config."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"Payment gateway not configured, missing: {', '.join(missing)}")


class InvalidPackageError(BillingError):
    """Raised when a package id is not in the catalog."""

    def __init__(self, package_id: str) -> None:
        self.package_id = package_id
        super().__init__(f"Invalid package: {package_id}")


class OrderNotFoundError(BillingError):
    """Raised when an order id is unknown."""

    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class SigningError(BillingError):
    """Raised when a gateway request cannot be signed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Signing failed: {message}")


class SignatureVerificationError(BillingError):
    """Raised when a gateway notification signature does not verify."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Signature verification failed: {message}")


# ============================================================================
# Redemption Errors
# ============================================================================


class InvalidRedemptionCodeError(BillingError):
    """Raised when a code is malformed or outside today's window."""

    def __init__(self, code: str, reason: str) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Invalid redemption code: {reason}")


class RedemptionCodeUsedError(BillingError):
    """Raised when a code has already produced a grant."""

    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Redemption code already used: {code}")


class RedemptionQuotaExceededError(BillingError):
    """Raised when a device already redeemed in the current month."""

    def __init__(self, device_id: str, month: str) -> None:
        self.device_id = device_id
        self.month = month
        super().__init__(f"Device already redeemed a code in {month}")


# ============================================================================
# AI Provider Errors
# ============================================================================


class AIProviderError(BillingError):
    """Base class for AI provider failures."""

    def __init__(self, message: str, attempts: int) -> None:
        self.message = message
        self.attempts = attempts
        super().__init__(f"AI provider error after {attempts} attempt(s): {message}")


class RetryableProviderError(AIProviderError):
    """Transient provider failure that outlasted the retry budget."""

    pass


class TerminalProviderError(AIProviderError):
    """Provider failure that is not worth retrying."""

    pass


class InvalidImageError(BillingError):
    """Raised when an inline image is not decodable base64."""

    def __init__(self, index: int) -> None:
        self.index = index
        super().__init__(f"Image {index} is not valid base64 data")
