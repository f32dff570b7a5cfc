"""Exception taxonomy for payment reconciliation.

Route handlers translate these into HTTP status codes; services raise them and
never swallow them.
"""


class ConsultPayError(Exception):
    """Base class for all payment-domain errors."""


class GatewayUnavailable(ConsultPayError):
    """Network error, timeout or 5xx from the gateway. Retryable."""


class GatewayRejected(ConsultPayError):
    """The gateway refused the request as invalid. Not retryable."""


class UnknownOrder(ConsultPayError):
    """No payment attempt matches the referenced order (or legacy pair)."""

    def __init__(self, order_id: str | None = None, payer_id: str | None = None, payee_id: str | None = None):
        self.order_id = order_id
        self.payer_id = payer_id
        self.payee_id = payee_id
        if order_id is not None:
            message = f"unknown order {order_id}"
        else:
            message = f"no legacy payment for payer={payer_id} payee={payee_id}"
        super().__init__(message)


class NoCreditAvailable(ConsultPayError):
    """No paid, unconsumed attempt exists for the pair."""

    def __init__(self, payer_id: str, payee_id: str):
        self.payer_id = payer_id
        self.payee_id = payee_id
        super().__init__(f"no unused payment for payer={payer_id} payee={payee_id}")


class Unauthorized(ConsultPayError):
    """Webhook delivery failed shared-secret authentication."""


class ConcurrentUpdateError(ConsultPayError):
    """Compare-and-swap retries were exhausted for one attempt."""
