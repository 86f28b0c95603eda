"""Charge failures surfaced to trainers.

None of these are retried by the dispatcher. The next scheduled
`chargePaymentPlans` run re-evaluates the preconditions instead.
"""


class PaymentGatewayNotConfigured(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Stripe is not configured")


class ChargeFailedBecauseNotVerified(Exception):
    def __init__(self) -> None:
        super().__init__("Stripe payouts not allowed")


class NoPaymentMethodOnFile(Exception):
    def __init__(self) -> None:
        super().__init__("No payment method on file")


class StripePaymentsBlocked(Exception):
    def __init__(self) -> None:
        super().__init__("Stripe payments blocked")


class StripePaymentsNotEnabled(Exception):
    def __init__(self) -> None:
        super().__init__("Stripe payments not enabled")


class StripeCardError(Exception):
    """The card was declined; carries the processor's user-facing message."""

    def __init__(self, message: str, decline_code: str | None = None) -> None:
        super().__init__(message)
        self.decline_code = decline_code
