"""Custom exceptions for the shop backend."""
from typing import Any, Dict, List, Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    def extra(self) -> Dict[str, Any]:
        """Additional fields merged into the JSON error body."""
        return {}


class ValidationError(ShopError):
    """Raised when a required field is missing or a value is not acceptable."""

    pass


class ConflictError(ShopError):
    """Raised when a record that must be unique already exists."""

    pass


class NotFoundError(ShopError):
    """Raised when a user, product, order or session doesn't exist."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} not found")


class AuthenticationError(ShopError):
    """Raised on missing or invalid credentials."""

    pass


class PermissionDeniedError(ShopError):
    """Raised when an authenticated principal lacks admin rights."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class InsufficientStockError(ShopError):
    """Raised when an order asks for more than is on hand."""

    def __init__(self, errors: List[dict], stock_info: Optional[List[dict]] = None):
        self.errors = errors
        self.stock_info = stock_info or []
        super().__init__("Insufficient stock")

    def extra(self) -> Dict[str, Any]:
        return {"success": False, "details": self.errors, "stock_info": self.stock_info}


class PaymentProviderError(ShopError):
    """Raised when the payment provider rejects a request."""

    def __init__(self, message: str, error_type: Optional[str] = None, code: Optional[str] = None):
        self.error_type = error_type
        self.code = code
        self.message = message
        super().__init__("Failed to create checkout session")

    def extra(self) -> Dict[str, Any]:
        return {"details": self.message, "type": self.error_type, "code": self.code}


class NotificationError(ShopError):
    """Raised when an email could not be delivered."""

    def __init__(self, to: str, reason: str):
        self.to = to
        self.reason = reason
        super().__init__(f"Failed to send email to {to}: {reason}")


class DatabaseUnavailableError(ShopError):
    """Raised when DATABASE_URL / DATABASE_NAME are not configured."""

    def __init__(self):
        super().__init__("Database not configured")
