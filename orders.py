"""
Orders: checkout and fulfilment.

Order creation runs as a short saga. Each step that changes state registers a
compensation; if a later step fails the compensations run in reverse and the
confirmed payment is refunded, so a buyer is never left charged without an
order.

Every confirmed payment is claimed in the ``payment`` collection before any
other step, keyed by provider and reference. The claim is never removed, so a
refunded or already used payment cannot buy a second order.

Status changes go through ``TRANSITIONS``. Repeating the current status is a
no-op, which keeps notification emails from being sent twice.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import settings
from database import create_document, get_db, get_document, now, oid, serialize_doc
from notifications import Mailer, get_mailer, queue_email
from payments import (
    PaymentConfirmation,
    PaymentError,
    PaymentGateway,
    gateway_for,
    get_gateways,
    provider_failure,
)
from schemas import Order as OrderSchema
from schemas import OrderItem, PaymentMethod, PaymentResult, ShippingAddress, StatusChange
from security import get_current_user, get_optional_user, require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

# Forward moves may skip steps; nothing moves backwards out of a later state.
TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "shipped", "delivered", "cancelled"),
    "processing": ("shipped", "delivered", "cancelled"),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}

STATUS_EMAILS = {
    "shipped": ("order_shipped.html", "Order Shipped - #{id}"),
    "delivered": ("order_delivered.html", "Order Delivered - #{id}"),
}


class TransitionError(Exception):
    pass


def check_transition(current: str, target: str) -> bool:
    """Return True when the order must move, False when it is already there."""
    if target not in TRANSITIONS:
        raise ValueError(f"Unknown status: {target}")
    if target == current:
        return False
    if target not in TRANSITIONS.get(current, ()):
        raise TransitionError(f"Cannot change order status from {current} to {target}")
    return True


# Checkout

class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CreateOrderRequest(BaseModel):
    order_items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_reference: str = Field(..., min_length=1)
    tax_price: float = Field(0, ge=0)
    shipping_price: float = Field(0, ge=0)
    guest_name: Optional[str] = None
    guest_email: Optional[EmailStr] = None

    @field_validator("payment_method", mode="before")
    @classmethod
    def lower_method(cls, v):
        return v.lower() if isinstance(v, str) else v


class CheckoutSaga:
    def __init__(self, database: Database, gateway: PaymentGateway, payment: PaymentConfirmation):
        self.database = database
        self.gateway = gateway
        self.payment = payment
        self._compensations: List[Tuple[str, Callable[[], Any]]] = []

    def claim(self) -> None:
        """Put the payment on the ledger. A reference is only ever claimed once."""
        stamp = now()
        try:
            self.database["payment"].insert_one({
                "_id": f"{self.payment.provider}:{self.payment.reference}",
                "provider": self.payment.provider,
                "reference": self.payment.reference,
                "amount": self.payment.amount,
                "currency": self.payment.currency,
                "state": "claimed",
                "order_id": None,
                "created_at": stamp,
                "updated_at": stamp,
            })
        except DuplicateKeyError:
            raise HTTPException(status_code=409, detail="This payment has already been used")

    def settle(self, state: str, **fields: Any) -> None:
        self.database["payment"].update_one(
            {"_id": f"{self.payment.provider}:{self.payment.reference}"},
            {"$set": {"state": state, "updated_at": now(), **fields}},
        )

    def snapshot_items(self, requested: List[OrderItemIn]) -> List[OrderItem]:
        items = []
        for req in requested:
            product = self.database["product"].find_one({"_id": oid(req.product_id)})
            if not product:
                raise HTTPException(status_code=400, detail=f"Product {req.product_id} no longer exists")
            items.append(OrderItem(
                product_id=req.product_id,
                name=product["name"],
                quantity=req.quantity,
                price=float(product["price"]),
            ))
        return items

    def reserve_stock(self, items: List[OrderItem]) -> None:
        for item in items:
            res = self.database["product"].update_one(
                {"_id": ObjectId(item.product_id), "stock": {"$gte": item.quantity}},
                {"$inc": {"stock": -item.quantity}},
            )
            if res.modified_count == 0:
                raise HTTPException(status_code=409, detail=f"Insufficient stock for {item.name}")
            self._compensations.append((
                f"release stock {item.product_id} x{item.quantity}",
                lambda pid=item.product_id, qty=item.quantity: restock(self.database, pid, qty),
            ))

    def persist(self, order: OrderSchema) -> str:
        order_id = create_document(self.database, "order", order)
        self._compensations.append((
            f"delete order {order_id}",
            lambda: self.database["order"].delete_one({"_id": ObjectId(order_id)}),
        ))
        return order_id

    def commit(self, order_id: str) -> None:
        self._compensations.clear()
        self.settle("consumed", order_id=order_id)

    def rollback(self) -> bool:
        """Undo recorded steps and refund. Returns False when the refund failed."""
        for label, undo in reversed(self._compensations):
            try:
                undo()
            except PyMongoError:
                logger.exception("Compensation failed: %s", label)
        self._compensations.clear()
        try:
            self.gateway.refund(self.payment.reference)
        except PaymentError:
            logger.error(
                "Refund failed for %s payment %s, manual reconciliation needed",
                self.gateway.name, self.payment.reference,
            )
            self.settle("refund_failed")
            return False
        self.settle("refunded")
        logger.warning("Refunded %s payment %s after failed checkout", self.gateway.name, self.payment.reference)
        return True


def restock(database: Database, product_id: str, quantity: int) -> None:
    database["product"].update_one({"_id": ObjectId(product_id)}, {"$inc": {"stock": quantity}})


def buyer_of(database: Database, order: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    if order.get("user_id"):
        user = database["user"].find_one({"_id": oid(order["user_id"])})
        if user:
            return user.get("name", "Customer"), user.get("email")
    return order.get("guest_name") or "Customer", order.get("guest_email")


@router.post("", status_code=201)
def create_order(
    payload: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    current_user: Optional[dict] = Depends(get_optional_user),
    database: Database = Depends(get_db),
    gateways: Dict[str, PaymentGateway] = Depends(get_gateways),
    mailer: Mailer = Depends(get_mailer),
):
    if not current_user and not payload.guest_email:
        raise HTTPException(status_code=400, detail="Guest email is required")
    gateway = gateway_for(gateways, payload.payment_method)

    try:
        payment = gateway.confirm(payload.payment_reference)
    except PaymentError as e:
        raise provider_failure(e)
    if not payment.succeeded:
        raise HTTPException(status_code=402, detail="Payment has not been completed")

    saga = CheckoutSaga(database, gateway, payment)
    saga.claim()
    try:
        if (payment.currency or "").lower() != settings.DEFAULT_CURRENCY.lower():
            raise HTTPException(status_code=400, detail="Payment currency does not match the shop currency")
        items = saga.snapshot_items(payload.order_items)
        items_price = round(sum(i.price * i.quantity for i in items), 2)
        total_price = round(items_price + payload.tax_price + payload.shipping_price, 2)
        if payment.amount is not None and payment.amount + 0.005 < total_price:
            raise HTTPException(status_code=400, detail="Payment amount does not cover the order total")
        saga.reserve_stock(items)

        paid_at = now()
        order = OrderSchema(
            user_id=current_user["id"] if current_user else None,
            guest_name=None if current_user else payload.guest_name,
            guest_email=None if current_user else payload.guest_email,
            order_items=items,
            shipping_address=payload.shipping_address,
            payment_method=gateway.name,
            payment_result=PaymentResult(
                id=payment.reference,
                status=payment.status,
                update_time=paid_at,
                email_address=payment.email,
                amount=payment.amount,
            ),
            items_price=items_price,
            tax_price=payload.tax_price,
            shipping_price=payload.shipping_price,
            total_price=total_price,
            paid_at=paid_at,
            status_history=[StatusChange(status="pending", at=paid_at)],
        )
        order_id = saga.persist(order)
    except HTTPException as e:
        refunded = saga.rollback()
        suffix = "Your payment has been refunded." if refunded else "Please contact support."
        raise HTTPException(status_code=e.status_code, detail=f"{e.detail}. {suffix}")
    except PyMongoError:
        logger.exception("Order creation failed for payment %s", payment.reference)
        refunded = saga.rollback()
        suffix = "Your payment has been refunded." if refunded else "Please contact support."
        raise HTTPException(status_code=500, detail=f"Order could not be created. {suffix}")
    saga.commit(order_id)
    logger.info("Order created id=%s payment=%s total=%.2f", order_id, payment.reference, total_price)

    if current_user:
        try:
            database["cart"].delete_one({"user_id": current_user["id"]})
        except PyMongoError:
            logger.exception("Cart clear failed for user %s", current_user["id"])

    created = serialize_doc(database["order"].find_one({"_id": ObjectId(order_id)}))
    buyer_name = current_user["name"] if current_user else (payload.guest_name or "Guest")
    buyer_email = current_user["email"] if current_user else payload.guest_email
    queue_email(
        background_tasks, mailer, buyer_email,
        f"Order Confirmation - #{order_id}", "order_confirmation.html",
        name=buyer_name, order=created,
    )
    guest_tag = "" if current_user else " [GUEST ORDER]"
    queue_email(
        background_tasks, mailer, settings.ADMIN_EMAIL,
        f"New Order{guest_tag} #{order_id} - £{total_price:.2f}", "admin_new_order.html",
        name=buyer_name, email=buyer_email, guest=not current_user, order=created,
    )
    return created


# Reads

@router.get("/myorders")
def get_my_orders(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    orders = [serialize_doc(o) for o in database["order"].find({"user_id": current_user["id"]}).sort("created_at", -1)]
    return {"count": len(orders), "items": orders}


@router.get("")
def get_all_orders(current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    orders = [serialize_doc(o) for o in database["order"].find().sort("created_at", -1)]
    return {"count": len(orders), "items": orders}


@router.get("/{order_id}")
def get_order(
    order_id: str,
    current_user: Optional[dict] = Depends(get_optional_user),
    database: Database = Depends(get_db),
):
    order = get_document(database, "order", order_id, "Order not found")
    is_owner = bool(order.get("user_id")) and current_user is not None and order["user_id"] == current_user["id"]
    is_admin = current_user is not None and current_user.get("role") == "admin"
    is_guest_order = not order.get("user_id")
    if not (is_owner or is_admin or is_guest_order):
        raise HTTPException(status_code=401, detail="Not authorized to view this order")
    return serialize_doc(order)


# Fulfilment

class StatusUpdate(BaseModel):
    status: str


def transition_order(
    database: Database,
    order_id: str,
    target: str,
    background_tasks: BackgroundTasks,
    mailer: Mailer,
) -> Dict[str, Any]:
    order = get_document(database, "order", order_id, "Order not found")
    current = order.get("status", "pending")
    try:
        changed = check_transition(current, target)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not changed:
        return serialize_doc(order)

    stamp = now()
    fields: Dict[str, Any] = {"status": target, "updated_at": stamp}
    if target == "delivered":
        fields.update(is_delivered=True, delivered_at=stamp)
    res = database["order"].update_one(
        {"_id": order["_id"], "status": current},
        {"$set": fields, "$push": {"status_history": {"status": target, "at": stamp}}},
    )
    if res.modified_count == 0:
        raise HTTPException(status_code=409, detail="Order status was changed by another request")
    logger.info("Order %s status %s -> %s", order_id, current, target)

    if target == "cancelled":
        for item in order.get("order_items", []):
            restock(database, item["product_id"], item["quantity"])

    updated = serialize_doc(database["order"].find_one({"_id": order["_id"]}))
    if target in STATUS_EMAILS:
        template, subject = STATUS_EMAILS[target]
        name, email = buyer_of(database, order)
        queue_email(background_tasks, mailer, email, subject.format(id=order_id), template, name=name, order=updated)
    return updated


@router.put("/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return transition_order(database, order_id, payload.status, background_tasks, mailer)


@router.put("/{order_id}/deliver")
def mark_delivered(
    order_id: str,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    return transition_order(database, order_id, "delivered", background_tasks, mailer)
