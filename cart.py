from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db, now, oid, serialize_doc
from security import get_current_user

router = APIRouter(prefix="/cart", tags=["cart"])


# Line item arithmetic. Items are dicts {product_id, quantity, price}.

def cart_total(items: List[Dict[str, Any]]) -> float:
    return round(sum(int(it["quantity"]) * float(it["price"]) for it in items), 2)


def add_item(items: List[Dict[str, Any]], product_id: str, quantity: int, price: float) -> List[Dict[str, Any]]:
    """Merge into an existing line (keeping its price) or append a new one."""
    items = [dict(it) for it in items]
    for it in items:
        if it["product_id"] == product_id:
            it["quantity"] = int(it["quantity"]) + quantity
            return items
    items.append({"product_id": product_id, "quantity": quantity, "price": price})
    return items


def update_item(items: List[Dict[str, Any]], product_id: str, quantity: int) -> List[Dict[str, Any]]:
    if quantity < 0:
        raise ValueError("quantity must be >= 0")
    if not any(it["product_id"] == product_id for it in items):
        raise KeyError(product_id)
    if quantity == 0:
        return remove_item(items, product_id)
    return [dict(it, quantity=quantity) if it["product_id"] == product_id else dict(it) for it in items]


def remove_item(items: List[Dict[str, Any]], product_id: str) -> List[Dict[str, Any]]:
    return [dict(it) for it in items if it["product_id"] != product_id]


# Persistence helpers

def _save(database: Database, user_id: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    database["cart"].update_one(
        {"user_id": user_id},
        {
            "$set": {"items": items, "total_price": cart_total(items), "updated_at": now()},
            "$setOnInsert": {"user_id": user_id, "created_at": now()},
        },
        upsert=True,
    )
    return database["cart"].find_one({"user_id": user_id})


def _populate(database: Database, cart: Dict[str, Any]) -> Dict[str, Any]:
    ids = [oid(it["product_id"]) for it in cart.get("items", [])]
    products = {str(p["_id"]): serialize_doc(p) for p in database["product"].find({"_id": {"$in": ids}})}
    out = serialize_doc(cart)
    out["items"] = [{**it, "product": products.get(it["product_id"])} for it in cart.get("items", [])]
    return out


def empty_cart(user_id: str) -> Dict[str, Any]:
    return {"user_id": user_id, "items": [], "total_price": 0}


class AddToCartRequest(BaseModel):
    product_id: str
    quantity: int = 1


class UpdateCartRequest(BaseModel):
    product_id: str
    quantity: int


@router.get("")
def get_cart(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    cart = database["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        return empty_cart(current_user["id"])
    return _populate(database, cart)


@router.post("")
def add_to_cart(
    payload: AddToCartRequest,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    if payload.quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    product = database["product"].find_one({"_id": oid(payload.product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    cart = database["cart"].find_one({"user_id": current_user["id"]}) or empty_cart(current_user["id"])
    items = add_item(cart["items"], payload.product_id, payload.quantity, float(product["price"]))
    return _populate(database, _save(database, current_user["id"], items))


@router.put("")
def update_cart_item(
    payload: UpdateCartRequest,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    if payload.quantity < 0:
        raise HTTPException(status_code=400, detail="Invalid quantity")
    cart = database["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    try:
        items = update_item(cart["items"], payload.product_id, payload.quantity)
    except KeyError:
        raise HTTPException(status_code=404, detail="Product not in cart")
    return _populate(database, _save(database, current_user["id"], items))


@router.delete("/{product_id}")
def remove_from_cart(
    product_id: str,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    cart = database["cart"].find_one({"user_id": current_user["id"]})
    if not cart:
        raise HTTPException(status_code=404, detail="Cart not found")
    items = remove_item(cart["items"], product_id)
    return _populate(database, _save(database, current_user["id"], items))


@router.delete("")
def clear_cart(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    database["cart"].delete_one({"user_id": current_user["id"]})
    return {"ok": True, "message": "Cart cleared"}
