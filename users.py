from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

from database import get_db, get_document, now, oid
from schemas import Address, Role
from security import get_current_user, public_user, require_admin

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = None
    address: Optional[Address] = None


class RoleUpdate(BaseModel):
    role: Role


@router.get("/profile")
def get_profile(current_user: dict = Depends(get_current_user)):
    return current_user


@router.put("/profile")
def update_profile(
    data: ProfileUpdate,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise HTTPException(status_code=400, detail="No fields to update")
    update_dict["updated_at"] = now()
    database["user"].update_one({"_id": oid(current_user["id"])}, {"$set": update_dict})
    return public_user(database["user"].find_one({"_id": oid(current_user["id"])}))


@router.get("")
def list_users(current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    users = [public_user(u) for u in database["user"].find().sort("created_at", -1)]
    return {"count": len(users), "items": users}


@router.get("/{user_id}")
def get_user(user_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    return public_user(get_document(database, "user", user_id, "User not found"))


@router.delete("/{user_id}")
def delete_user(user_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    user = get_document(database, "user", user_id, "User not found")
    database["user"].delete_one({"_id": user["_id"]})
    database["cart"].delete_one({"user_id": user_id})
    database["wishlist"].delete_one({"user_id": user_id})
    return {"ok": True, "message": "User deleted"}


@router.put("/{user_id}/role")
def update_user_role(
    user_id: str,
    data: RoleUpdate,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    user = get_document(database, "user", user_id, "User not found")
    database["user"].update_one({"_id": user["_id"]}, {"$set": {"role": data.role, "updated_at": now()}})
    return public_user(database["user"].find_one({"_id": user["_id"]}))
