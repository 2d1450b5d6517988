import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

import settings
from database import create_document, get_db, get_document, now, oid, serialize_doc
from notifications import Mailer, get_mailer, queue_email
from schemas import Contact as ContactSchema
from schemas import ContactStatus
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contact", tags=["contact"])


class ContactIn(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=10)


class StatusUpdate(BaseModel):
    status: ContactStatus


class ReplyIn(BaseModel):
    reply_message: str = Field(..., min_length=1)


@router.post("", status_code=201)
def submit_contact(
    payload: ContactIn,
    background_tasks: BackgroundTasks,
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    contact = ContactSchema(
        name=payload.name.strip(),
        email=payload.email.lower(),
        subject=payload.subject.strip(),
        message=payload.message.strip(),
    )
    contact_id = create_document(database, "contact", contact)
    logger.info("Contact message saved id=%s", contact_id)

    data = contact.model_dump()
    if not queue_email(
        background_tasks, mailer, settings.ADMIN_EMAIL,
        f"New Contact: {contact.subject}", "contact_admin.html", contact=data,
    ):
        logger.warning("ADMIN_EMAIL not configured, admin not notified of contact %s", contact_id)
    queue_email(
        background_tasks, mailer, contact.email,
        "We received your message - EloraVista", "contact_confirmation.html", contact=data,
    )
    saved = database["contact"].find_one({"_id": oid(contact_id)})
    return {
        "message": "Thank you for contacting us! We will get back to you soon.",
        "id": contact_id,
        "name": saved["name"],
        "email": saved["email"],
        "subject": saved["subject"],
        "created_at": saved["created_at"],
    }


@router.get("")
def list_contacts(
    status: Optional[ContactStatus] = None,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    query = {"status": status} if status else {}
    contacts = [serialize_doc(c) for c in database["contact"].find(query).sort("created_at", -1)]
    return {"count": len(contacts), "items": contacts}


@router.get("/{contact_id}")
def get_contact(contact_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    contact = get_document(database, "contact", contact_id, "Contact message not found")
    if contact.get("status") == "new":
        database["contact"].update_one({"_id": contact["_id"]}, {"$set": {"status": "read", "updated_at": now()}})
        contact["status"] = "read"
    return serialize_doc(contact)


@router.put("/{contact_id}/status")
def update_contact_status(
    contact_id: str,
    payload: StatusUpdate,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    contact = get_document(database, "contact", contact_id, "Contact message not found")
    database["contact"].update_one({"_id": contact["_id"]}, {"$set": {"status": payload.status, "updated_at": now()}})
    return serialize_doc(database["contact"].find_one({"_id": contact["_id"]}))


@router.post("/{contact_id}/reply")
def reply_to_contact(
    contact_id: str,
    payload: ReplyIn,
    background_tasks: BackgroundTasks,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
    mailer: Mailer = Depends(get_mailer),
):
    contact = get_document(database, "contact", contact_id, "Contact message not found")
    queue_email(
        background_tasks, mailer, contact["email"],
        f"Re: {contact['subject']}", "contact_reply.html",
        contact=contact, reply=payload.reply_message,
    )
    stamp = now()
    database["contact"].update_one(
        {"_id": contact["_id"]},
        {"$set": {
            "replied": True,
            "reply_message": payload.reply_message,
            "replied_at": stamp,
            "status": "replied",
            "updated_at": stamp,
        }},
    )
    return serialize_doc(database["contact"].find_one({"_id": contact["_id"]}))


@router.delete("/{contact_id}")
def delete_contact(contact_id: str, current_user: dict = Depends(require_admin), database: Database = Depends(get_db)):
    contact = get_document(database, "contact", contact_id, "Contact message not found")
    database["contact"].delete_one({"_id": contact["_id"]})
    return {"ok": True, "message": "Contact message deleted successfully"}
