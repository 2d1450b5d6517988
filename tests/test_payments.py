import json
from types import SimpleNamespace

import httpx
import pytest
import stripe
from fastapi import HTTPException

from payments import (
    PaymentError,
    PaystackGateway,
    StripeGateway,
    gateway_for,
    get_gateways,
    to_minor_units,
    validate_amount,
)
from main import app


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:

    def test_minor_units(self):
        assert to_minor_units(19.99) == 1999
        assert to_minor_units(0.1 + 0.2) == 30

    @pytest.mark.parametrize("amount", [None, 0, -5])
    def test_invalid_amount(self, amount):
        with pytest.raises(HTTPException) as exc:
            validate_amount(amount)
        assert exc.value.status_code == 400

    def test_gateway_lookup_is_case_insensitive(self, gateways):
        assert gateway_for(gateways, "Stripe").name == "stripe"

    def test_unknown_gateway(self, gateways):
        with pytest.raises(HTTPException) as exc:
            gateway_for(gateways, "paypal")
        assert exc.value.status_code == 400


# ============================================================================
# Routes
# ============================================================================


class TestPaymentRoutes:

    def test_stripe_intent(self, client, gateways):
        resp = client.post("/api/payment/stripe/create-payment-intent", json={"amount": 25.5})
        assert resp.status_code == 200
        body = resp.json()
        assert body["clientSecret"] == f"{body['paymentIntentId']}_secret"
        assert gateways["stripe"].intents == [{"amount": 25.5, "currency": "gbp", "email": None, "metadata": {}}]

    def test_stripe_intent_carries_user(self, client, gateways, user_headers):
        client.post("/api/payment/stripe/create-payment-intent", json={"amount": 10, "currency": "USD"},
                    headers=user_headers)
        intent = gateways["stripe"].intents[0]
        assert intent["currency"] == "usd"
        assert intent["email"] == "buyer@example.com"
        assert intent["metadata"]["user_email"] == "buyer@example.com"

    @pytest.mark.parametrize("body", [{}, {"amount": 0}, {"amount": -1}])
    def test_stripe_intent_invalid_amount(self, client, body):
        resp = client.post("/api/payment/stripe/create-payment-intent", json=body)
        assert resp.status_code == 400

    def test_paystack_initialize(self, client, gateways):
        resp = client.post("/api/payment/paystack/initialize", json={"amount": 40, "email": "g@example.com"})
        assert resp.status_code == 200
        assert resp.json()["authorization_url"].startswith("https://pay.example/")
        assert gateways["paystack"].intents[0]["email"] == "g@example.com"

    def test_paystack_initialize_defaults_to_shop_currency(self, client, gateways):
        client.post("/api/payment/paystack/initialize", json={"amount": 40, "email": "g@example.com"})
        assert gateways["paystack"].intents[0]["currency"] == "gbp"

    def test_paystack_initialize_invalid_amount(self, client):
        resp = client.post("/api/payment/paystack/initialize", json={"amount": 0, "email": "g@example.com"})
        assert resp.status_code == 400

    def test_paystack_verify(self, client, gateways):
        gateways["paystack"].pay("ps_ref", 40.0, email="g@example.com")
        resp = client.get("/api/payment/paystack/verify/ps_ref")
        assert resp.status_code == 200
        assert resp.json() == {
            "reference": "ps_ref",
            "status": "success",
            "amount": 40.0,
            "currency": "gbp",
            "customer": {"email": "g@example.com"},
        }

    def test_paystack_verify_provider_failure(self, client):
        assert client.get("/api/payment/paystack/verify/missing").status_code == 502


# ============================================================================
# Paystack over HTTP
# ============================================================================


def paystack_with(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return PaystackGateway("sk_test", callback_url="https://shop.example/checkout/verify", client=client)


class TestPaystackGateway:

    def test_initialize_sends_minor_units(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["Authorization"]
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "data": {
                "authorization_url": "https://checkout.paystack.com/abc",
                "access_code": "abc",
                "reference": "ref_1",
            }})

        handle = paystack_with(handler).create_intent(12.5, "gbp", email="g@example.com")
        assert handle.reference == "ref_1"
        assert handle.data["authorization_url"] == "https://checkout.paystack.com/abc"
        assert seen["auth"] == "Bearer sk_test"
        assert seen["url"] == "https://api.paystack.co/transaction/initialize"
        assert seen["body"]["amount"] == 1250
        assert seen["body"]["currency"] == "GBP"
        assert seen["body"]["callback_url"] == "https://shop.example/checkout/verify"

    def test_initialize_needs_email(self):
        gateway = paystack_with(lambda request: httpx.Response(500))
        with pytest.raises(HTTPException) as exc:
            gateway.create_intent(10, "gbp")
        assert exc.value.status_code == 400

    def test_verify_success(self):
        def handler(request):
            assert request.url.path == "/transaction/verify/ref_2"
            return httpx.Response(200, json={"status": True, "data": {
                "reference": "ref_2", "status": "success", "amount": 4000,
                "currency": "GBP", "customer": {"email": "g@example.com"},
            }})

        confirmation = paystack_with(handler).confirm("ref_2")
        assert confirmation.succeeded
        assert confirmation.amount == 40.0
        assert confirmation.email == "g@example.com"

    def test_verify_abandoned(self):
        def handler(request):
            return httpx.Response(200, json={"status": True, "data": {"reference": "ref_3", "status": "abandoned"}})

        confirmation = paystack_with(handler).confirm("ref_3")
        assert not confirmation.succeeded
        assert confirmation.amount is None

    def test_api_error(self):
        def handler(request):
            return httpx.Response(400, json={"status": False, "message": "Transaction reference not found"})

        with pytest.raises(PaymentError, match="not found"):
            paystack_with(handler).confirm("nope")

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("boom")

        with pytest.raises(PaymentError):
            paystack_with(handler).refund("ref_4")

    def test_refund(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "data": {}})

        paystack_with(handler).refund("ref_5")
        assert seen == {"path": "/refund", "body": {"transaction": "ref_5"}}

    def test_unconfigured(self):
        with pytest.raises(PaymentError):
            PaystackGateway(None).confirm("ref")


# ============================================================================
# Stripe SDK
# ============================================================================


class TestStripeGateway:

    def test_create_intent(self, monkeypatch):
        calls = {}

        def create(**kwargs):
            calls.update(kwargs)
            return SimpleNamespace(id="pi_1", client_secret="pi_1_secret")

        monkeypatch.setattr(stripe.PaymentIntent, "create", create)
        handle = StripeGateway("sk_test").create_intent(19.99, "gbp", metadata={"user_id": "u1"})
        assert handle.reference == "pi_1"
        assert handle.data["client_secret"] == "pi_1_secret"
        assert calls["amount"] == 1999
        assert calls["api_key"] == "sk_test"
        assert calls["metadata"] == {"user_id": "u1"}

    def test_confirm_maps_succeeded(self, monkeypatch):
        intent = SimpleNamespace(id="pi_2", status="succeeded", amount_received=2500, currency="gbp",
                                 receipt_email="g@example.com")
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref, **kwargs: intent)
        confirmation = StripeGateway("sk_test").confirm("pi_2")
        assert confirmation.succeeded
        assert confirmation.amount == 25.0

    def test_confirm_pending(self, monkeypatch):
        intent = SimpleNamespace(id="pi_3", status="requires_payment_method", amount_received=0)
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref, **kwargs: intent)
        confirmation = StripeGateway("sk_test").confirm("pi_3")
        assert confirmation.status == "requires_payment_method"
        assert not confirmation.succeeded

    def test_confirm_expands_latest_charge(self, monkeypatch):
        seen = {}

        def retrieve(ref, **kwargs):
            seen.update(kwargs)
            return SimpleNamespace(id=ref, status="succeeded", amount_received=1000, currency="gbp",
                                   latest_charge=SimpleNamespace(amount_refunded=0))

        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", retrieve)
        assert StripeGateway("sk_test").confirm("pi_6").succeeded
        assert seen["expand"] == ["latest_charge"]

    @pytest.mark.parametrize("refunded", [1000, 250])
    def test_confirm_refunded_charge_is_not_success(self, monkeypatch, refunded):
        intent = SimpleNamespace(id="pi_7", status="succeeded", amount_received=1000, currency="gbp",
                                 latest_charge=SimpleNamespace(amount_refunded=refunded))
        monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref, **kwargs: intent)
        confirmation = StripeGateway("sk_test").confirm("pi_7")
        assert confirmation.status == "refunded"
        assert not confirmation.succeeded

    def test_sdk_error_becomes_payment_error(self, monkeypatch):
        def fail(**kwargs):
            raise stripe.StripeError("card declined")

        monkeypatch.setattr(stripe.Refund, "create", fail)
        with pytest.raises(PaymentError, match="card declined"):
            StripeGateway("sk_test").refund("pi_4")

    def test_unconfigured(self):
        with pytest.raises(PaymentError):
            StripeGateway(None).confirm("pi_5")


class TestStripeWebhook:

    @pytest.fixture
    def webhook_client(self, client):
        app.dependency_overrides[get_gateways] = lambda: {"stripe": StripeGateway("sk_test", "whsec_test")}
        return client

    def test_valid_event(self, webhook_client, monkeypatch):
        seen = {}

        def construct_event(payload, signature, secret):
            seen.update(payload=payload, signature=signature, secret=secret)
            return SimpleNamespace(type="payment_intent.succeeded",
                                   data=SimpleNamespace(object=SimpleNamespace(id="pi_9")))

        monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
        resp = webhook_client.post("/api/payment/stripe/webhook", content=b'{"id": "evt_1"}',
                                   headers={"Stripe-Signature": "t=1,v1=abc"})
        assert resp.status_code == 200
        assert resp.json() == {"received": True}
        assert seen == {"payload": b'{"id": "evt_1"}', "signature": "t=1,v1=abc", "secret": "whsec_test"}

    def test_bad_signature(self, webhook_client, monkeypatch):
        def construct_event(payload, signature, secret):
            raise stripe.SignatureVerificationError("No signatures found", signature)

        monkeypatch.setattr(stripe.Webhook, "construct_event", construct_event)
        resp = webhook_client.post("/api/payment/stripe/webhook", content=b"{}",
                                   headers={"Stripe-Signature": "bad"})
        assert resp.status_code == 400
        assert resp.json()["detail"].startswith("Webhook Error")

    def test_missing_secret(self, client):
        app.dependency_overrides[get_gateways] = lambda: {"stripe": StripeGateway("sk_test")}
        resp = client.post("/api/payment/stripe/webhook", content=b"{}")
        assert resp.status_code == 400
