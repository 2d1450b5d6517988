import logging
import math
import re
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from pymongo.database import Database

import settings
from database import create_document, get_db, get_document, now, oid, serialize_doc
from schemas import Product as ProductSchema
from security import require_admin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["products"])

SORT_FIELDS = {"created_at", "price", "name", "stock"}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


# Image storage

def upload_dir() -> Path:
    path = Path(settings.UPLOAD_DIR)
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_images(files: List[UploadFile]) -> List[Dict[str, str]]:
    if len(files) > settings.MAX_UPLOAD_FILES:
        raise HTTPException(status_code=400, detail=f"At most {settings.MAX_UPLOAD_FILES} images are allowed")
    for f in files:
        suffix = Path(f.filename or "").suffix.lower()
        if not (f.content_type or "").startswith("image/") or suffix not in IMAGE_EXTENSIONS:
            raise HTTPException(status_code=400, detail="Only image files are allowed")
    saved = []
    for f in files:
        data = f.file.read(settings.MAX_UPLOAD_BYTES + 1)
        if len(data) > settings.MAX_UPLOAD_BYTES:
            delete_images(saved)
            raise HTTPException(status_code=400, detail="Image is too large")
        public_id = uuid.uuid4().hex + Path(f.filename or "").suffix.lower()
        (upload_dir() / public_id).write_bytes(data)
        saved.append({"url": f"/uploads/{public_id}", "public_id": public_id})
    return saved


def delete_images(images: List[Dict[str, Any]]) -> None:
    for image in images:
        path = Path(settings.UPLOAD_DIR) / Path(image["public_id"]).name
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Image already gone: %s", image["public_id"])


def parse_colors(colors: Optional[str]) -> List[str]:
    if not colors:
        return []
    return [c.strip() for c in colors.split(",") if c.strip()]


def parse_sort(sort: str):
    direction = -1 if sort.startswith("-") else 1
    field = sort.lstrip("-")
    if field == "createdAt":
        field = "created_at"
    if field not in SORT_FIELDS:
        raise HTTPException(status_code=400, detail="Invalid sort field")
    return field, direction


def validate_product(data: Dict[str, Any]) -> ProductSchema:
    try:
        return ProductSchema(**data)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


@router.get("")
def list_products(
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    featured: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 12,
    sort: str = "-created_at",
    database: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if category and category != "All Categories":
        query["category"] = category
    if subcategory:
        query["subcategory"] = subcategory
    if featured is not None:
        query["featured"] = featured
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    field, direction = parse_sort(sort)

    collection = database["product"]
    total = collection.count_documents(query)
    cursor = collection.find(query).sort(field, direction).skip((page - 1) * limit).limit(limit)
    items = [serialize_doc(d) for d in cursor]
    return {
        "items": items,
        "count": len(items),
        "total": total,
        "pages": math.ceil(total / limit),
        "page": page,
        "limit": limit,
    }


@router.get("/{product_id}")
def get_product(product_id: str, database: Database = Depends(get_db)):
    return serialize_doc(get_document(database, "product", product_id, "Product not found"))


@router.post("", status_code=201)
def create_product(
    name: str = Form(...),
    description: str = Form(...),
    price: float = Form(...),
    category: str = Form("General"),
    subcategory: str = Form(""),
    stock: int = Form(...),
    featured: bool = Form(False),
    colors: Optional[str] = Form(None),
    images: List[UploadFile] = File(default=[]),
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    fields = {
        "name": name,
        "description": description,
        "price": price,
        "category": category,
        "subcategory": subcategory,
        "stock": stock,
        "featured": featured,
        "colors": parse_colors(colors),
    }
    validate_product(fields)
    product = validate_product({**fields, "images": save_images(images)})
    pid = create_document(database, "product", product)
    logger.info("Product created id=%s by=%s", pid, current_user["id"])
    return serialize_doc(database["product"].find_one({"_id": oid(pid)}))


@router.put("/{product_id}")
def update_product(
    product_id: str,
    name: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    price: Optional[float] = Form(None),
    category: Optional[str] = Form(None),
    subcategory: Optional[str] = Form(None),
    stock: Optional[int] = Form(None),
    featured: Optional[bool] = Form(None),
    colors: Optional[str] = Form(None),
    images: List[UploadFile] = File(default=[]),
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    existing = get_document(database, "product", product_id, "Product not found")
    changes: Dict[str, Any] = {
        k: v
        for k, v in {
            "name": name,
            "description": description,
            "price": price,
            "category": category,
            "subcategory": subcategory,
            "stock": stock,
            "featured": featured,
        }.items()
        if v is not None
    }
    if colors is not None:
        changes["colors"] = parse_colors(colors)

    merged = {k: existing.get(k) for k in ProductSchema.model_fields if k in existing}
    merged.update(changes)
    validate_product(merged)

    if images:
        new_images = save_images(images)
        delete_images(existing.get("images", []))
        changes["images"] = new_images
    if not changes:
        raise HTTPException(status_code=400, detail="No fields to update")

    changes["updated_at"] = now()
    database["product"].update_one({"_id": existing["_id"]}, {"$set": changes})
    logger.info("Product updated id=%s by=%s", product_id, current_user["id"])
    return serialize_doc(database["product"].find_one({"_id": existing["_id"]}))


@router.delete("/{product_id}")
def delete_product(
    product_id: str,
    current_user: dict = Depends(require_admin),
    database: Database = Depends(get_db),
):
    product = get_document(database, "product", product_id, "Product not found")
    delete_images(product.get("images", []))
    database["product"].delete_one({"_id": product["_id"]})
    logger.info("Product deleted id=%s by=%s", product_id, current_user["id"])
    return {"ok": True, "message": "Product deleted successfully"}
