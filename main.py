import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from pymongo.errors import PyMongoError

import auth
import cart
import contact
import orders
import payments
import products
import settings
import users
import wishlist
from database import get_db

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="EloraVista Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With", "Stripe-Signature"],
)

for module in (auth, users, products, cart, wishlist, orders, contact, payments):
    app.include_router(module.router, prefix="/api")

app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False), name="uploads")


# Error handling

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server Error"})


# Routes
@app.get("/")
def read_root():
    return {"message": "EloraVista Storefront API"}


@app.get("/api/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "database_name": None,
        "collections": [],
    }
    try:
        database: Database = get_db()
    except HTTPException:
        return response
    try:
        response["collections"] = database.list_collection_names()
        response["database"] = "connected"
        response["database_name"] = database.name
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
