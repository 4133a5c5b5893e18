# storefront/errors.py
"""Error taxonomy shared by the services and mapped to HTTP by the app."""


class StorefrontError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(StorefrontError):
    status_code = 400
    default_message = "Invalid request"


class InvalidSizeError(StorefrontError):
    status_code = 400
    default_message = "Size not available for this product"


class StockError(StorefrontError):
    status_code = 400
    default_message = "Insufficient stock"

    def __init__(self, message=None, product_id=None, available=None):
        super().__init__(message)
        self.product_id = product_id
        self.available = available


class EmptyCartError(StorefrontError):
    status_code = 400
    default_message = "Cart is empty"


class AuthError(StorefrontError):
    status_code = 401
    default_message = "Access token required"


class ForbiddenError(StorefrontError):
    status_code = 403
    default_message = "Access denied. Only administrators can perform this action."


class NotFoundError(StorefrontError):
    status_code = 404
    default_message = "Resource not found"


class DuplicateError(StorefrontError):
    status_code = 409
    default_message = "Resource already exists"


class InternalError(StorefrontError):
    status_code = 500
