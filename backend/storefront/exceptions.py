"""
Storefront Errors
=================

Every failure the API reports is a StorefrontError subclass. Each one knows
its HTTP status and how to render itself, so main.py needs a single
exception handler.

Checkout failures:
- ValidationError: malformed input, nothing was touched
- EmptyCartError: the owner's cart has no lines
- InsufficientStockError: a line asks for more than is on hand, either at
  the pre-check or when the conditional decrement lost a race
- StorageFault: the database failed mid-transaction; everything was rolled back

StockConflict never leaves the checkout engine; it is turned into
InsufficientStockError there.
"""

from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    status_code = 400
    error = "Request failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.error
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message}


class ValidationError(StorefrontError):
    error = "Validation failed"

    def __init__(self, details: List[str], message: Optional[str] = None):
        super().__init__(message)
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["details"] = self.details
        return data


class EmptyCartError(StorefrontError):
    error = "Cart is empty"


class NotFoundError(StorefrontError):
    status_code = 404
    error = "Resource not found"


class InsufficientStockError(StorefrontError):
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None,
                 product_name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.product_name = product_name
        super().__init__(self._describe())

    def _describe(self) -> str:
        label = self.product_name or f"product {self.product_id}"
        if self.available is None:
            return f"Insufficient stock for {label}"
        return f"Insufficient stock for {label}: only {self.available} left"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({
            "product_id": self.product_id,
            "requested": self.requested,
            "available": self.available,
        })
        return data


class StockConflict(StorefrontError):
    """The conditional decrement matched no row: stock ran out under us."""
    status_code = 409

    def __init__(self, product_id: int, amount: int):
        self.product_id = product_id
        self.amount = amount
        super().__init__(f"Stock conflict on product {product_id} (wanted {amount})")


class StorageFault(StorefrontError):
    status_code = 500
    error = "Checkout processing failed"
