"""
Fulfillment Service — Error taxonomy

Every failure the workflow can surface to a caller is one of these.
`retryable` tells the caller whether re-reading and resubmitting can succeed
(VersionConflict, TransientStorageFailure) or whether the call is final for
the current state.
"""


class FulfillmentError(Exception):
    code = "fulfillment_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "detail": self.message,
            "retryable": self.retryable,
            **self.details,
        }


class NotFound(FulfillmentError):
    code = "not_found"
    http_status = 404


class Forbidden(FulfillmentError):
    code = "forbidden"
    http_status = 403


class InvalidTransition(FulfillmentError):
    code = "invalid_transition"
    http_status = 409


class IncompleteFulfillment(InvalidTransition):
    """The edge exists but its precondition (picking / packing) is unmet."""

    code = "incomplete_fulfillment"


class VersionConflict(FulfillmentError):
    code = "version_conflict"
    http_status = 409
    retryable = True


class InsufficientInventory(FulfillmentError):
    """
    Raised with `items`: one entry per short line item, e.g.
    {"product_id": ..., "name": ..., "requested": 3, "available": 1}
    """

    code = "insufficient_inventory"
    http_status = 409

    def __init__(self, message: str, items: list[dict] | None = None, **details) -> None:
        super().__init__(message, items=items or [], **details)
        self.items = items or []


class TransientStorageFailure(FulfillmentError):
    code = "transient_storage_failure"
    http_status = 503
    retryable = True


class ValidationFailed(FulfillmentError):
    code = "validation_failed"
    http_status = 422


class IdempotencyConflict(FulfillmentError):
    code = "idempotency_conflict"
    http_status = 422


class StockContention(Exception):
    """
    Internal signal from the in-memory store: an entry corrected by
    compare-and-swap (adjustment, reconciliation repair) changed between
    read and commit. Those callers retry or skip; it never reaches the API.
    """
