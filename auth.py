import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import settings
from database import as_utc, create_document, get_db, now, oid
from notifications import Mailer, get_mailer, queue_email
from schemas import User as UserSchema
from security import (
    create_access_token,
    get_current_user,
    hash_one_time_token,
    hash_password,
    make_one_time_token,
    public_user,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_EXPIRY_FIELDS = {
    "verification_token": "verification_token_expire",
    "reset_password_token": "reset_password_expire",
}


# Auth models
class RegisterInput(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    password: str = Field(..., min_length=6)


class ChangePasswordInput(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=6)


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


def _user_by_token(database: Database, field: str, raw_token: str) -> Optional[Dict[str, Any]]:
    user = database["user"].find_one({field: hash_one_time_token(raw_token)})
    if not user:
        return None
    expires = user.get(TOKEN_EXPIRY_FIELDS[field])
    if not expires or as_utc(expires) <= now():
        return None
    return user


@router.post("/register", response_model=TokenResponse, status_code=201)
def register(
    payload: RegisterInput,
    background_tasks: BackgroundTasks,
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    email = payload.email.lower()
    if database["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    raw_token, token_digest = make_one_time_token()
    user_model = UserSchema(
        name=payload.name.strip(),
        email=email,
        password_hash=hash_password(payload.password),
        phone=payload.phone,
        verification_token=token_digest,
        verification_token_expire=now() + timedelta(hours=settings.VERIFICATION_TOKEN_HOURS),
    )
    user_id = create_document(database, "user", user_model)
    logger.info("User registered id=%s", user_id)
    queue_email(
        background_tasks, mailer, email,
        "Email Verification - EloraVista", "verify_email.html",
        name=user_model.name, url=f"{settings.FRONTEND_URL}/verify-email/{raw_token}",
    )
    user = database["user"].find_one({"_id": oid(user_id)})
    return TokenResponse(access_token=create_access_token({"sub": user_id}), user=public_user(user))


@router.get("/verify-email/{token}")
def verify_email(token: str, database: Database = Depends(get_db)):
    user = _user_by_token(database, "verification_token", token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")
    database["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"is_verified": True, "updated_at": now()},
            "$unset": {"verification_token": "", "verification_token_expire": ""},
        },
    )
    return {"ok": True, "message": "Email verified successfully"}


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginInput, database: Database = Depends(get_db)):
    user = database["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(user["_id"])})
    return TokenResponse(access_token=token, user=public_user(user))


@router.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


@router.post("/forgot-password")
def forgot_password(
    payload: ForgotPasswordInput,
    background_tasks: BackgroundTasks,
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    user = database["user"].find_one({"email": payload.email.lower()})
    if user:
        raw_token, token_digest = make_one_time_token()
        database["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {
                "reset_password_token": token_digest,
                "reset_password_expire": now() + timedelta(minutes=settings.RESET_TOKEN_MINUTES),
            }},
        )
        queue_email(
            background_tasks, mailer, user["email"],
            "Password Reset - EloraVista", "reset_password.html",
            name=user.get("name", ""), url=f"{settings.FRONTEND_URL}/reset-password/{raw_token}",
        )
    # Same answer whether or not the account exists
    return {"ok": True, "message": "If that email is registered, a reset link has been sent"}


@router.put("/reset-password/{token}")
def reset_password(token: str, payload: ResetPasswordInput, database: Database = Depends(get_db)):
    user = _user_by_token(database, "reset_password_token", token)
    if not user:
        raise HTTPException(status_code=400, detail="Invalid or expired reset token")
    database["user"].update_one(
        {"_id": user["_id"]},
        {
            "$set": {"password_hash": hash_password(payload.password), "updated_at": now()},
            "$unset": {"reset_password_token": "", "reset_password_expire": ""},
        },
    )
    return {"ok": True, "message": "Password reset successfully"}


@router.put("/change-password")
def change_password(
    payload: ChangePasswordInput,
    current_user: dict = Depends(get_current_user),
    database: Database = Depends(get_db),
):
    user = database["user"].find_one({"_id": oid(current_user["id"])})
    if not verify_password(payload.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Current password is incorrect")
    database["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": now()}},
    )
    return {"ok": True, "message": "Password changed successfully"}
