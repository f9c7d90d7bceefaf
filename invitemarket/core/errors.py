from __future__ import annotations

from typing import Any


class MarketError(Exception):
    """
    Base for every error the market surfaces to a caller.

    `code` is the stable machine-readable reason; `status_code` the HTTP equivalent.
    """

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(MarketError):
    code = "validation_error"
    status_code = 400


class InvalidSignature(MarketError):
    code = "invalid_signature"
    status_code = 401


class SignatureExpired(MarketError):
    code = "signature_expired"
    status_code = 401


class InvalidTimestamp(MarketError):
    code = "invalid_timestamp"
    status_code = 400


class NotFoundOrNotOwned(MarketError):
    # one class for both cases so sellers cannot probe for listings they don't own
    code = "not_found_or_not_owned"
    status_code = 404


class InvalidInventoryChange(MarketError):
    code = "invalid_inventory_change"
    status_code = 400


class ListingUnavailable(MarketError):
    code = "listing_unavailable"
    status_code = 404


class ConcurrentModification(MarketError):
    code = "concurrent_modification"
    status_code = 409


class SettlementFailed(MarketError):
    """
    Facilitator rejected or could not complete the payment.
    `response_body` and `status_code` are passed to the client unchanged.
    """

    code = "settlement_failed"

    def __init__(self, status_code: int, response_body: dict[str, Any]):
        super().__init__(f"settlement failed with status {status_code}")
        self.status_code = status_code
        self.response_body = response_body

    def to_dict(self) -> dict[str, Any]:
        return self.response_body


class PersistenceFailure(MarketError):
    code = "persistence_failure"
    status_code = 500


class ReconciliationAborted(MarketError):
    code = "reconciliation_aborted"
    status_code = 409
