"""Stripe-backed gateway: request shaping and error translation."""

import json

import pytest
import stripe

from fitflow.services.billing.gateway import (
    CardDeclinedError,
    ChargeRequest,
    GatewayError,
    PayoutsNotAllowedError,
    ResourceMissingError,
    StripeGateway,
    translate_stripe_errors,
)


class FakeStripeObject(dict):
    """Attribute access plus JSON rendering, like a Stripe resource."""

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError as exc:
            raise AttributeError(name) from exc

    def __str__(self):
        return json.dumps(self)


def _request(account_type="standard"):
    return ChargeRequest(
        amount=8000,
        currency="USD",
        customer="cus_1",
        payment_method="pm_1",
        application_fee_amount=98,
        connected_account="acct_1",
        account_type=account_type,
        description="Monthly PT Outstanding Payments for Mar 1, 2026",
        idempotency_key="charge-outstanding:plan-1:abc",
        metadata={"paymentPlanPaymentIds_0": '["ppp-1"]'},
        receipt_email="alex@example.com",
        statement_descriptor_suffix="VIA FitFlow",
    )


@pytest.fixture
def created(monkeypatch):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return FakeStripeObject(id="pi_1", status="succeeded", object="payment_intent")

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    return calls


def test_standard_account_is_charged_directly(created):
    result = StripeGateway("sk_test", "2024-06-20").create_payment_intent(_request("standard"))

    [params] = created
    assert params["stripe_account"] == "acct_1"
    assert params["idempotency_key"] == "charge-outstanding:plan-1:abc"
    assert params["currency"] == "usd"
    assert params["off_session"] is True
    assert "transfer_data" not in params
    assert result.id == "pi_1"
    assert result.raw["object"] == "payment_intent"


def test_custom_account_is_charged_on_platform(created):
    StripeGateway("sk_test", "2024-06-20").create_payment_intent(_request("custom"))

    [params] = created
    assert "stripe_account" not in params
    assert params["on_behalf_of"] == "acct_1"
    assert params["transfer_data"] == {"destination": "acct_1"}


def _raise(exc):
    with translate_stripe_errors():
        raise exc


def test_card_errors_become_declines():
    with pytest.raises(CardDeclinedError) as excinfo:
        _raise(stripe.CardError("Your card was declined.", "card", "card_declined"))
    assert excinfo.value.code == "card_declined"


def test_missing_resources_are_recognised():
    with pytest.raises(ResourceMissingError):
        _raise(stripe.InvalidRequestError("No such customer: 'cus_1'", "customer", code="resource_missing"))


def test_unverified_accounts_are_recognised():
    with pytest.raises(PayoutsNotAllowedError):
        _raise(stripe.InvalidRequestError("Payouts are not allowed", None, code="payouts_not_allowed"))


def test_connection_errors_are_transient():
    with pytest.raises(GatewayError) as excinfo:
        _raise(stripe.APIConnectionError("Network error"))
    assert excinfo.value.transient is True


def test_bad_requests_are_not_transient():
    with pytest.raises(GatewayError) as excinfo:
        _raise(stripe.InvalidRequestError("Invalid currency", "currency", http_status=400))
    assert excinfo.value.transient is False


def test_external_account_is_fetched_for_the_connected_account(monkeypatch):
    calls = []

    def fake_retrieve(account, external_account_id, **options):
        calls.append((account, external_account_id, options))
        return FakeStripeObject(id=external_account_id, object="bank_account", bank_name="CHASE", last4="6789")

    monkeypatch.setattr(stripe.Account, "retrieve_external_account", fake_retrieve)

    bank = StripeGateway("sk_test", "2024-06-20").retrieve_external_account("acct_1", "ba_1")

    [(account, external_account_id, options)] = calls
    assert (account, external_account_id) == ("acct_1", "ba_1")
    assert options == {"api_key": "sk_test", "stripe_version": "2024-06-20"}
    assert bank["last4"] == "6789"
