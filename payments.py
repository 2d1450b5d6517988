"""
Payment gateway adapters and routes.

Two interchangeable providers sit behind ``PaymentGateway``:

* ``StripeGateway``: hosted payment-element flow. ``create_intent`` returns a
  PaymentIntent client secret; the intent id is the reference.
* ``PaystackGateway``: redirect flow. ``create_intent`` returns an
  authorization URL; the transaction reference is the reference.

``confirm(reference)`` exchanges a reference for a provider-confirmed status
and ``refund(reference)`` is the compensating action used by order creation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, EmailStr

import settings
from security import get_optional_user

logger = logging.getLogger(__name__)

SUCCESS = "success"


class PaymentError(Exception):
    """Raised when a provider call fails or is not configured."""


@dataclass
class PaymentHandle:
    provider: str
    reference: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PaymentConfirmation:
    provider: str
    reference: str
    status: str
    amount: Optional[float] = None
    currency: Optional[str] = None
    email: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCESS


def validate_amount(amount: Optional[float]) -> float:
    if amount is None or amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")
    return float(amount)


def to_minor_units(amount: float) -> int:
    return int(round(amount * 100))


class PaymentGateway:
    name = ""

    def create_intent(self, amount: float, currency: str, email: Optional[str] = None,
                      metadata: Optional[Dict[str, str]] = None) -> PaymentHandle:
        raise NotImplementedError

    def confirm(self, reference: str) -> PaymentConfirmation:
        raise NotImplementedError

    def refund(self, reference: str) -> None:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    name = "stripe"

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def _require_key(self) -> str:
        if not self.api_key:
            raise PaymentError("Stripe is not configured")
        return self.api_key

    def create_intent(self, amount, currency, email=None, metadata=None):
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self._require_key(),
                amount=to_minor_units(amount),
                currency=currency,
                automatic_payment_methods={"enabled": True},
                receipt_email=email,
                metadata=metadata or {},
            )
        except stripe.StripeError as e:
            raise PaymentError(str(e)) from e
        return PaymentHandle(
            provider=self.name,
            reference=intent.id,
            data={"client_secret": intent.client_secret, "payment_intent_id": intent.id},
        )

    def confirm(self, reference):
        try:
            intent = stripe.PaymentIntent.retrieve(
                reference, api_key=self._require_key(), expand=["latest_charge"],
            )
        except stripe.StripeError as e:
            raise PaymentError(str(e)) from e
        received = getattr(intent, "amount_received", None)
        status = intent.status
        if status == "succeeded":
            # A refunded intent stays "succeeded"; the charge carries the refund.
            charge = getattr(intent, "latest_charge", None)
            refunded = getattr(charge, "amount_refunded", 0) if charge is not None else 0
            status = "refunded" if refunded else SUCCESS
        return PaymentConfirmation(
            provider=self.name,
            reference=intent.id,
            status=status,
            amount=received / 100 if received is not None else None,
            currency=getattr(intent, "currency", None),
            email=getattr(intent, "receipt_email", None),
        )

    def refund(self, reference):
        try:
            stripe.Refund.create(payment_intent=reference, api_key=self._require_key())
        except stripe.StripeError as e:
            raise PaymentError(str(e)) from e

    def parse_event(self, payload: bytes, signature: Optional[str]):
        if not self.webhook_secret:
            raise PaymentError("Stripe webhook secret is not configured")
        return stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)


class PaystackGateway(PaymentGateway):
    name = "paystack"

    def __init__(self, secret_key: Optional[str], base_url: str = "https://api.paystack.co",
                 callback_url: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.callback_url = callback_url
        self._client = client

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentError("Paystack is not configured")
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        try:
            if self._client is not None:
                resp = self._client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
            else:
                with httpx.Client(timeout=15) as client:
                    resp = client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PaymentError(f"Paystack request failed: {e}") from e
        if resp.status_code >= 400 or not body.get("status"):
            raise PaymentError(body.get("message") or f"Paystack error {resp.status_code}")
        return body.get("data") or {}

    def create_intent(self, amount, currency, email=None, metadata=None):
        if not email:
            raise HTTPException(status_code=400, detail="Email is required for Paystack payments")
        payload: Dict[str, Any] = {"email": email, "amount": to_minor_units(amount)}
        if currency:
            payload["currency"] = currency.upper()
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        if metadata:
            payload["metadata"] = metadata
        data = self._request("POST", "/transaction/initialize", json=payload)
        return PaymentHandle(
            provider=self.name,
            reference=data["reference"],
            data={
                "authorization_url": data.get("authorization_url"),
                "access_code": data.get("access_code"),
                "reference": data["reference"],
            },
        )

    def confirm(self, reference):
        data = self._request("GET", f"/transaction/verify/{reference}")
        customer = data.get("customer") or {}
        amount = data.get("amount")
        return PaymentConfirmation(
            provider=self.name,
            reference=data.get("reference") or reference,
            status=data.get("status", "unknown"),
            amount=amount / 100 if amount is not None else None,
            currency=data.get("currency"),
            email=customer.get("email"),
        )

    def refund(self, reference):
        self._request("POST", "/refund", json={"transaction": reference})


_gateways: Dict[str, PaymentGateway] = {
    "stripe": StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET),
    "paystack": PaystackGateway(
        settings.PAYSTACK_SECRET_KEY,
        base_url=settings.PAYSTACK_BASE_URL,
        callback_url=settings.PAYSTACK_CALLBACK_URL,
    ),
}


def get_gateways() -> Dict[str, PaymentGateway]:
    return _gateways


def gateway_for(gateways: Dict[str, PaymentGateway], name: str) -> PaymentGateway:
    gateway = gateways.get(name.lower())
    if gateway is None:
        raise HTTPException(status_code=400, detail="Invalid payment method")
    return gateway


def provider_failure(e: PaymentError) -> HTTPException:
    logger.error("Payment provider error: %s", e)
    return HTTPException(status_code=502, detail="Payment provider error")


# Routes

router = APIRouter(prefix="/payment", tags=["payment"])


class StripeIntentRequest(BaseModel):
    amount: Optional[float] = None
    currency: str = settings.DEFAULT_CURRENCY


class PaystackInitRequest(BaseModel):
    amount: Optional[float] = None
    email: Optional[EmailStr] = None
    currency: str = settings.DEFAULT_CURRENCY


def _user_metadata(user: Optional[dict]) -> Dict[str, str]:
    if not user:
        return {}
    return {"user_id": user["id"], "user_email": user.get("email", "")}


@router.post("/stripe/create-payment-intent")
def create_stripe_payment(
    payload: StripeIntentRequest,
    current_user: Optional[dict] = Depends(get_optional_user),
    gateways: Dict[str, PaymentGateway] = Depends(get_gateways),
):
    amount = validate_amount(payload.amount)
    gateway = gateway_for(gateways, "stripe")
    try:
        handle = gateway.create_intent(
            amount,
            payload.currency.lower(),
            email=(current_user or {}).get("email"),
            metadata=_user_metadata(current_user),
        )
    except PaymentError as e:
        raise provider_failure(e)
    logger.info("Stripe payment intent created reference=%s amount=%.2f", handle.reference, amount)
    return {"clientSecret": handle.data["client_secret"], "paymentIntentId": handle.reference}


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    gateways: Dict[str, PaymentGateway] = Depends(get_gateways),
):
    gateway = gateway_for(gateways, "stripe")
    payload = await request.body()
    try:
        event = gateway.parse_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError, PaymentError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    event_type = event.type
    obj = event.data.object
    if event_type == "payment_intent.succeeded":
        logger.info("Payment succeeded: %s", obj.id)
    elif event_type == "payment_intent.payment_failed":
        logger.warning("Payment failed: %s", obj.id)
    else:
        logger.info("Unhandled event type: %s", event_type)
    return {"received": True}


@router.post("/paystack/initialize")
def initialize_paystack_payment(
    payload: PaystackInitRequest,
    current_user: Optional[dict] = Depends(get_optional_user),
    gateways: Dict[str, PaymentGateway] = Depends(get_gateways),
):
    amount = validate_amount(payload.amount)
    email = payload.email or (current_user or {}).get("email")
    gateway = gateway_for(gateways, "paystack")
    try:
        handle = gateway.create_intent(amount, payload.currency, email=email, metadata=_user_metadata(current_user))
    except PaymentError as e:
        raise provider_failure(e)
    logger.info("Paystack transaction initialized reference=%s amount=%.2f", handle.reference, amount)
    return handle.data


@router.get("/paystack/verify/{reference}")
def verify_paystack_payment(reference: str, gateways: Dict[str, PaymentGateway] = Depends(get_gateways)):
    gateway = gateway_for(gateways, "paystack")
    try:
        confirmation = gateway.confirm(reference)
    except PaymentError as e:
        raise provider_failure(e)
    return {
        "reference": confirmation.reference,
        "status": confirmation.status,
        "amount": confirmation.amount,
        "currency": confirmation.currency,
        "customer": {"email": confirmation.email},
    }
