"""Payment gateway capability and its Stripe implementation.

Handlers only see `PaymentGateway` and the gateway error classes below; Stripe
exceptions never leave this module.
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Protocol

import stripe

from fitflow.common.logging import logger


class GatewayError(Exception):
    """Generic processor failure; `transient` marks outages worth retrying."""

    def __init__(self, message: str, code: str | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.transient = transient


class CardDeclinedError(GatewayError):
    def __init__(self, message: str, code: str | None = None, decline_code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.decline_code = decline_code


class ResourceMissingError(GatewayError):
    pass


class PayoutsNotAllowedError(GatewayError):
    pass


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    card_country: str | None = None


@dataclass(frozen=True)
class ChargeRequest:
    amount: int
    currency: str
    customer: str
    payment_method: str
    application_fee_amount: int
    connected_account: str
    account_type: str
    description: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    receipt_email: str | None = None
    statement_descriptor_suffix: str | None = None


@dataclass(frozen=True)
class PaymentIntentResult:
    id: str
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConnectedAccount:
    id: str
    type: str
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    api_version: str

    def list_payment_methods(self, customer: str, account: str | None = None) -> list[PaymentMethod]: ...

    def detach_payment_method(self, payment_method_id: str, account: str | None = None) -> None: ...

    def create_payment_intent(self, request: ChargeRequest) -> PaymentIntentResult: ...

    def retrieve_external_account(self, account: str, external_account_id: str) -> dict[str, Any]: ...

    def create_account(self, country: str, account_type: str = "standard") -> ConnectedAccount: ...


def _to_dict(obj: Any) -> dict[str, Any]:
    # StripeObject renders itself as JSON.
    return json.loads(str(obj))


@contextmanager
def translate_stripe_errors() -> Iterator[None]:
    """Map Stripe SDK exceptions onto the gateway error classes."""

    try:
        yield
    except stripe.CardError as exc:
        raise CardDeclinedError(
            exc.user_message or str(exc),
            code=exc.code,
            decline_code=getattr(getattr(exc, "error", None), "decline_code", None),
        ) from exc
    except stripe.StripeError as exc:
        if exc.code == "resource_missing":
            raise ResourceMissingError(str(exc), code=exc.code) from exc
        if exc.code == "payouts_not_allowed":
            raise PayoutsNotAllowedError(str(exc), code=exc.code) from exc
        transient = isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)) or (
            (exc.http_status or 0) >= 500
        )
        raise GatewayError(str(exc), code=exc.code, transient=transient) from exc


class StripeGateway:
    """`PaymentGateway` backed by the Stripe API."""

    def __init__(self, api_key: str, api_version: str) -> None:
        self.api_key = api_key
        self.api_version = api_version

    def _options(self, account: str | None = None, idempotency_key: str | None = None) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self.api_key, "stripe_version": self.api_version}
        if account:
            options["stripe_account"] = account
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def list_payment_methods(self, customer: str, account: str | None = None) -> list[PaymentMethod]:
        with translate_stripe_errors():
            page = stripe.PaymentMethod.list(customer=customer, type="card", limit=100, **self._options(account))
            methods = []
            for method in page.auto_paging_iter():
                card = getattr(method, "card", None)
                if card is None:
                    continue
                methods.append(PaymentMethod(id=method.id, card_country=getattr(card, "country", None)))
            return methods

    def detach_payment_method(self, payment_method_id: str, account: str | None = None) -> None:
        with translate_stripe_errors():
            stripe.PaymentMethod.detach(payment_method_id, **self._options(account))

    def create_payment_intent(self, request: ChargeRequest) -> PaymentIntentResult:
        params: dict[str, Any] = {
            "amount": request.amount,
            "currency": request.currency.lower(),
            "confirm": True,
            "off_session": True,
            "error_on_requires_action": True,
            "customer": request.customer,
            "payment_method": request.payment_method,
            "description": request.description,
            "metadata": request.metadata,
            "application_fee_amount": request.application_fee_amount,
        }
        if request.receipt_email:
            params["receipt_email"] = request.receipt_email
        if request.statement_descriptor_suffix:
            params["statement_descriptor_suffix"] = request.statement_descriptor_suffix

        if request.account_type == "standard":
            # Direct charge on the connected account.
            options = self._options(request.connected_account, request.idempotency_key)
        else:
            params["on_behalf_of"] = request.connected_account
            params["transfer_data"] = {"destination": request.connected_account}
            options = self._options(idempotency_key=request.idempotency_key)

        with translate_stripe_errors():
            intent = stripe.PaymentIntent.create(**params, **options)
        logger.info("payment intent created id=%s status=%s amount=%s", intent.id, intent.status, request.amount)
        return PaymentIntentResult(id=intent.id, status=intent.status, raw=_to_dict(intent))

    def retrieve_external_account(self, account: str, external_account_id: str) -> dict[str, Any]:
        """Bank account or debit card a connected account is paid out to."""

        with translate_stripe_errors():
            return _to_dict(stripe.Account.retrieve_external_account(account, external_account_id, **self._options()))

    def create_account(self, country: str, account_type: str = "standard") -> ConnectedAccount:
        with translate_stripe_errors():
            account = stripe.Account.create(country=country, type=account_type, **self._options())
        return ConnectedAccount(id=account.id, type=account_type, raw=_to_dict(account))
