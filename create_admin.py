"""
Create the admin account, or promote an existing user to admin.

Run with: python create_admin.py  (reads ADMIN_EMAIL and ADMIN_PASSWORD)
"""

import logging
import sys

from pymongo.database import Database

import settings
from database import create_document, db, now
from schemas import User as UserSchema
from security import hash_password

logger = logging.getLogger("create_admin")


def ensure_admin(database: Database, email: str, password: str, name: str = "Admin") -> str:
    email = email.lower()
    existing = database["user"].find_one({"email": email})
    if existing:
        if existing.get("role") != "admin":
            database["user"].update_one(
                {"_id": existing["_id"]},
                {"$set": {"role": "admin", "is_verified": True, "updated_at": now()}},
            )
            logger.info("Promoted existing user %s to admin", email)
        else:
            logger.info("Admin user %s already exists", email)
        return str(existing["_id"])

    admin = UserSchema(
        name=name,
        email=email,
        password_hash=hash_password(password),
        role="admin",
        is_verified=True,
    )
    user_id = create_document(database, "user", admin)
    logger.info("Admin user %s created, change the password after first login", email)
    return user_id


if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(message)s")
    if db is None:
        logger.error("DATABASE_URL is not set")
        sys.exit(1)
    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        logger.error("ADMIN_EMAIL and ADMIN_PASSWORD must be set")
        sys.exit(1)
    ensure_admin(db, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
