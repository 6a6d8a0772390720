"""Exceptions raised by the shop services.

Every error carries a stable ``code`` and an HTTP ``status_code``; the API
layer turns them into ``{"success": false, "message", "code"}`` bodies.
"""

from typing import Optional


class ShopError(Exception):
    """Base exception for all shop errors."""

    code = "ShopError"
    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ------------ 400 ------------

class ValidationError(ShopError):
    code = "ValidationError"
    status_code = 400


class EmptyCart(ValidationError):
    code = "EmptyCart"

    def __init__(self):
        super().__init__("Order must contain at least one item")


class InvalidQuantity(ValidationError):
    code = "InvalidQuantity"

    def __init__(self, reference: str, quantity):
        self.reference = reference
        self.quantity = quantity
        super().__init__(f"Invalid quantity {quantity!r} for item {reference!r}")


class InvalidShippingAddress(ValidationError):
    code = "InvalidShippingAddress"

    def __init__(self, missing: str):
        self.missing = missing
        super().__init__(f"Shipping address is missing {missing}")


class InvalidPaymentMethod(ValidationError):
    code = "InvalidPaymentMethod"

    def __init__(self, method):
        self.method = method
        super().__init__(f"Unsupported payment method: {method!r}")


class MissingBuyerIdentity(ValidationError):
    code = "MissingBuyerIdentity"

    def __init__(self, message: str = "Sign in or provide guest contact information"):
        super().__init__(message)


class TotalMismatch(ValidationError):
    code = "TotalMismatch"

    def __init__(self, field: str, supplied: float, computed: float):
        self.field = field
        self.supplied = supplied
        self.computed = computed
        super().__init__(f"Supplied {field} {supplied} does not match computed {computed}")


# ------------ 401 / 403 ------------

class AuthError(ShopError):
    code = "AuthError"
    status_code = 401


class Unauthenticated(AuthError):
    code = "Unauthenticated"

    def __init__(self, message: str = "Missing or invalid authorization token"):
        super().__init__(message)


class InvalidCredentials(AuthError):
    code = "InvalidCredentials"

    def __init__(self):
        super().__init__("Invalid credentials")


class AccountLocked(AuthError):
    code = "AccountLocked"

    def __init__(self, until):
        self.until = until
        super().__init__("Account is temporarily locked after repeated failed logins")


class InvalidOtp(AuthError):
    code = "InvalidOtp"


class ForbiddenError(ShopError):
    code = "Forbidden"
    status_code = 403


# ------------ 404 ------------

class NotFoundError(ShopError):
    code = "NotFound"
    status_code = 404


class ProductNotFound(NotFoundError):
    code = "ProductNotFound"

    def __init__(self, reference):
        self.reference = reference
        super().__init__(f"Product not found: {reference}")


class OrderNotFound(NotFoundError):
    code = "OrderNotFound"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class UploadNotFound(NotFoundError):
    code = "UploadNotFound"

    def __init__(self, url: str):
        self.url = url
        super().__init__(f"No stored file for {url}")


# ------------ 409 family ------------

class ConflictError(ShopError):
    code = "Conflict"
    status_code = 409


class InsufficientStock(ConflictError):
    code = "InsufficientStock"
    status_code = 400

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f'Product "{product_name}" has only {available} in stock, {requested} requested'
        )


class InvalidStatusTransition(ConflictError):
    code = "InvalidStatusTransition"
    status_code = 400

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move order from {current} to {requested}")


class OrderNotCancellable(ConflictError):
    code = "OrderNotCancellable"
    status_code = 400

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Order in status {status} cannot be cancelled")


class DuplicateAccount(ConflictError):
    code = "DuplicateAccount"

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"{field} is already registered")


class DuplicateProductNumber(ConflictError):
    code = "DuplicateProductNumber"

    def __init__(self, number: int):
        self.number = number
        super().__init__(f"Product number {number} already exists")


class TooManyRequests(ShopError):
    code = "TooManyRequests"
    status_code = 429


# ------------ 5xx ------------

class StorageError(ShopError):
    code = "StorageError"
    status_code = 500


class StorageUnavailable(StorageError):
    code = "StorageUnavailable"
    status_code = 503

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        super().__init__("Storage is unavailable, please retry")


class DeliveryFailed(StorageError):
    code = "DeliveryFailed"
    status_code = 502

    def __init__(self, destination: str):
        self.destination = destination
        super().__init__("Could not deliver the verification code, please retry")


class BlobStoreError(StorageError):
    code = "BlobStoreError"
