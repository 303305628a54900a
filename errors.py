"""
Failures raised by the listing, promotion and order operations.

Every error is detected before anything is written, so prior state is left
unchanged. The API renders them as {"kind", "reason", "field"}.
"""
from typing import Optional


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, reason: str, field: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.field = field

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"kind": self.kind, "reason": self.reason, "field": self.field}


class InvalidPrice(MarketplaceError):
    status_code = 422


class InvalidListingUpdate(MarketplaceError):
    status_code = 422


class InsufficientStock(MarketplaceError):
    status_code = 409


class InvalidPromotionState(MarketplaceError):
    status_code = 409


class InvalidTransition(MarketplaceError):
    status_code = 409


class NotFound(MarketplaceError):
    status_code = 404
