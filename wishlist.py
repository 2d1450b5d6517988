from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from pymongo.database import Database

from database import get_db, now, oid, serialize_doc
from security import get_current_user

router = APIRouter(prefix="/wishlist", tags=["wishlist"])


class WishlistItem(BaseModel):
    product_id: str


def _populate(database: Database, wishlist: dict) -> dict:
    ids = [oid(pid) for pid in wishlist.get("product_ids", [])]
    products = [serialize_doc(p) for p in database["product"].find({"_id": {"$in": ids}})]
    out = serialize_doc(wishlist)
    out["products"] = products
    return out


@router.get("")
def get_wishlist(current_user: dict = Depends(get_current_user), database: Database = Depends(get_db)):
    wishlist = database["wishlist"].find_one({"user_id": current_user["id"]})
    if not wishlist:
        return {"user_id": current_user["id"], "product_ids": [], "products": []}
    return _populate(database, wishlist)


@router.post("")
def add_to_wishlist(
    item: WishlistItem,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    if not database["product"].find_one({"_id": oid(item.product_id)}):
        raise HTTPException(status_code=404, detail="Product not found")
    database["wishlist"].update_one(
        {"user_id": current_user["id"]},
        {
            "$addToSet": {"product_ids": item.product_id},
            "$set": {"updated_at": now()},
            "$setOnInsert": {"user_id": current_user["id"], "created_at": now()},
        },
        upsert=True,
    )
    return _populate(database, database["wishlist"].find_one({"user_id": current_user["id"]}))


@router.delete("/{product_id}")
def remove_from_wishlist(
    product_id: str,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    res = database["wishlist"].update_one(
        {"user_id": current_user["id"]},
        {"$pull": {"product_ids": product_id}, "$set": {"updated_at": now()}},
    )
    if res.matched_count == 0:
        raise HTTPException(status_code=404, detail="Wishlist not found")
    return _populate(database, database["wishlist"].find_one({"user_id": current_user["id"]}))
