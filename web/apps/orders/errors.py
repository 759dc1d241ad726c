"""Error taxonomy for the order core.

Every error is a ``ValueError`` whose string form is a short machine code
(``str(err) == "INSUFFICIENT_STOCK"``). Corrective detail for the caller
(which product, which from/to pair) lives in ``err.details`` so views can
return it without parsing messages.
"""


class OrderError(ValueError):
    """Base class for business, validation and integrity failures."""

    code = "ORDER_ERROR"

    def __init__(self, **details):
        super().__init__(self.code)
        self.details = details


class Unauthorized(OrderError):
    code = "UNAUTHORIZED"


class Forbidden(OrderError):
    code = "FORBIDDEN"


class InvalidInput(OrderError):
    code = "INVALID_INPUT"


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(product_id=product_id)
        self.product_id = product_id


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(product_id=product_id, requested=requested, available=available)
        self.product_id = product_id


class ShippingAddressRequired(OrderError):
    code = "SHIPPING_ADDRESS_REQUIRED"


class IllegalTransition(OrderError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, from_status: str, to_status: str):
        super().__init__(**{"from": from_status, "to": to_status})
        self.from_status = from_status
        self.to_status = to_status


class OrderNotModifiable(OrderError):
    code = "ORDER_NOT_MODIFIABLE"


class AlreadyPaid(OrderError):
    code = "ALREADY_PAID"


class NotFound(OrderError):
    code = "NOT_FOUND"


class RetryLimitReached(OrderError):
    code = "RETRY_LIMIT_REACHED"


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"


class InvalidSignature(OrderError):
    code = "INVALID_SIGNATURE"


class OrderPersistenceError(OrderError):
    """Order row was rolled back because its items could not be stored."""

    code = "ORDER_PERSISTENCE_FAILED"


class ProviderError(OrderError):
    """Payment provider transport failure or rejected request.

    ``retryable`` tells the caller whether starting a new attempt makes sense
    (gateway hiccup) or not (bad API key, invalid phone). ``outcome_unknown``
    is set when the request may have reached the provider but no answer came
    back, so a prompt can already be live on the payer's phone.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str = "",
        retryable: bool = True,
        result_code: str | None = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(message=message, retryable=retryable, result_code=result_code)
        self.retryable = retryable
        self.result_code = result_code
        self.outcome_unknown = outcome_unknown


# HTTP status per error code, used by the views.
HTTP_STATUS = {
    Unauthorized.code: 401,
    Forbidden.code: 403,
    InvalidInput.code: 400,
    ProductNotFound.code: 409,
    InsufficientStock.code: 409,
    ShippingAddressRequired.code: 400,
    IllegalTransition.code: 409,
    OrderNotModifiable.code: 409,
    AlreadyPaid.code: 409,
    NotFound.code: 404,
    RetryLimitReached.code: 429,
    IdempotencyConflict.code: 409,
    InvalidSignature.code: 401,
    OrderPersistenceError.code: 500,
    ProviderError.code: 502,
}


def http_status_for(err: OrderError) -> int:
    return HTTP_STATUS.get(err.code, 400)
