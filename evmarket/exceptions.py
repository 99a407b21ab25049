"""
Custom exceptions for the checkout pipeline.
"""
from typing import Any


class CheckoutException(Exception):
    """Base exception for cart, order and payment operations"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

class NotFoundError(CheckoutException):
    """Raised when a cart, order, payment or catalog item does not exist"""
    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"The {entity.lower()} with id '{entity_id}' does not exist")

class InvalidRequestError(CheckoutException):
    """Raised when the request itself is malformed"""
    pass

class LimitExceededError(InvalidRequestError):
    """Raised when cart limits are exceeded"""
    pass

class InvalidStateError(CheckoutException):
    """Raised when an operation is not valid for the current state"""
    pass

class ConcurrentModificationError(CheckoutException):
    """Raised when the cart changed between payment session and commit"""
    pass

class TransactionConflictError(CheckoutException):
    """Raised when watched keys keep changing under concurrent writers"""
    pass

class RedisConnectionError(CheckoutException):
    """Raised when Redis connection fails"""
    pass
