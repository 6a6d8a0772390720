import logging
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.database import Database
from pymongo.errors import PyMongoError

import database
from accounts import ADMIN_SCOPE, USER_SCOPE, AccountService, Caller, public_account
from blobstore import URL_PREFIX, LocalBlobStore
from catalog import Catalog
from database import doc_to_json, ensure_indexes, utcnow
from errors import ForbiddenError, ShopError, StorageUnavailable, ValidationError
from inventory import InventoryReconciler
from ledger import OrderLedger
from notify import LogNotifier, Notifier
from schemas import (
    LoginRequest,
    OrderCancelRequest,
    OrderCreate,
    OrderStatusUpdate,
    OtpResendRequest,
    OtpVerifyRequest,
    ProductCreate,
    ProductUpdate,
    RegisterRequest,
)
from settings import Settings, get_settings

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("shop")

app = FastAPI(title="Shop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(URL_PREFIX.rstrip("/"), StaticFiles(directory=settings.upload_dir, check_dir=False), name="uploads")

# -------------------- Error handling --------------------

def error_body(message: str, code: str) -> dict:
    return {"success": False, "message": message, "code": code}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=error_body(exc.message, exc.code))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(p) for p in first.get("loc", ())[1:])
    message = f"{location}: {first.get('msg', 'invalid input')}" if location else first.get("msg", "Invalid input")
    return JSONResponse(status_code=400, content=error_body(message, ValidationError.code))


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc)
    err = StorageUnavailable(str(exc))
    return JSONResponse(status_code=err.status_code, content=error_body(err.message, err.code))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    message = f"Internal error: {exc}" if settings.debug else "Internal server error"
    return JSONResponse(status_code=500, content=error_body(message, "InternalError"))

# -------------------- Dependencies --------------------

def get_db() -> Database:
    if database.db is None:
        raise StorageUnavailable("Database not configured")
    return database.db


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_notifier(settings: Settings = Depends(get_settings)) -> Notifier:
    return LogNotifier(reveal_codes=settings.debug)


def get_blob_store(settings: Settings = Depends(get_settings)) -> LocalBlobStore:
    return LocalBlobStore(settings.upload_dir, settings.public_base_url)


def get_catalog(db: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> Catalog:
    return Catalog(db, fuzzy_name_match=settings.fuzzy_name_match)


def get_reconciler(
    catalog: Catalog = Depends(get_catalog),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> InventoryReconciler:
    return InventoryReconciler(catalog, OrderLedger(db), settings)


def get_accounts(
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
    notifier: Notifier = Depends(get_notifier),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AccountService:
    return AccountService(db, settings, notifier, clock)


def bearer_token(authorization: Optional[str] = Header(None)) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return ""
    return token.strip()


def require_user(token: Optional[str] = Depends(bearer_token), accounts: AccountService = Depends(get_accounts)) -> Caller:
    return accounts.authenticate(token, [USER_SCOPE])


def require_admin(token: Optional[str] = Depends(bearer_token), accounts: AccountService = Depends(get_accounts)) -> Caller:
    caller = accounts.authenticate(token, [USER_SCOPE, ADMIN_SCOPE])
    if not caller.is_admin:
        raise ForbiddenError("Admin access required")
    return caller


def require_any(token: Optional[str] = Depends(bearer_token), accounts: AccountService = Depends(get_accounts)) -> Caller:
    return accounts.authenticate(token, [USER_SCOPE, ADMIN_SCOPE])


def optional_user(
    token: Optional[str] = Depends(bearer_token), accounts: AccountService = Depends(get_accounts)
) -> Optional[Caller]:
    if token is None:
        return None
    return accounts.authenticate(token, [USER_SCOPE])


@app.on_event("startup")
def prepare_database():
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return
    try:
        ensure_indexes(database.db)
    except PyMongoError as exc:
        logger.error("could not create indexes: %s", exc)
        return
    if settings.admin_email and settings.admin_password:
        AccountService(database.db, settings, LogNotifier(reveal_codes=settings.debug)).seed_admin(
            settings.admin_email, settings.admin_password
        )
    try:
        reconciler = InventoryReconciler(Catalog(database.db), OrderLedger(database.db), settings)
        reconciler.restock_pending()
    except ShopError as exc:
        logger.error("could not finish pending stock reversals: %s", exc.message)

# -------------------- Health --------------------

@app.get("/")
def read_root():
    return {"message": "Shop API is running"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:50]}"
    return response

# -------------------- Auth --------------------

@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, accounts: AccountService = Depends(get_accounts)):
    account, token = accounts.register(payload)
    return {"success": True, "token": token, "user": public_account(account)}


@app.post("/auth/login")
def login(payload: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    account, token = accounts.login(payload.identifier, payload.password)
    return {"success": True, "token": token, "user": public_account(account)}


@app.post("/auth/logout")
def logout(
    caller: Caller = Depends(require_any),
    token: Optional[str] = Depends(bearer_token),
    accounts: AccountService = Depends(get_accounts),
):
    accounts.logout(token)
    return {"success": True}


@app.get("/auth/me")
def me(caller: Caller = Depends(require_any), accounts: AccountService = Depends(get_accounts)):
    return {"success": True, "user": public_account(accounts.get_account(caller.account_id)), "scope": caller.scope}


@app.post("/auth/admin/login")
def admin_login(payload: LoginRequest, accounts: AccountService = Depends(get_accounts)):
    result = accounts.admin_login(payload.identifier, payload.password)
    return {"success": True, "message": "Verification code sent", **result}


@app.post("/auth/admin/verify-otp")
def admin_verify_otp(payload: OtpVerifyRequest, accounts: AccountService = Depends(get_accounts)):
    account, token = accounts.verify_otp(payload.email, payload.otp)
    return {"success": True, "token": token, "user": public_account(account)}


@app.post("/auth/admin/resend-otp")
def admin_resend_otp(payload: OtpResendRequest, accounts: AccountService = Depends(get_accounts)):
    accounts.resend_otp(payload.email)
    return {"success": True, "message": "A new verification code was sent"}

# -------------------- Products --------------------

@app.get("/products")
def list_products(
    category: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    sort: str = Query("created_at"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=200),
    catalog: Catalog = Depends(get_catalog),
):
    result = catalog.list_products(category, search, sort, order, page, limit)
    return {
        "success": True,
        "products": [doc_to_json(p) for p in result["products"]],
        "pagination": result["pagination"],
    }


@app.get("/products/{reference}/related")
def related_products(reference: str, catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "products": [doc_to_json(p) for p in catalog.related_products(reference)]}


@app.get("/products/{reference}")
def get_product(reference: str, catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "product": doc_to_json(catalog.find_by_reference(reference))}


@app.post("/products", status_code=201)
def create_product(payload: ProductCreate, admin: Caller = Depends(require_admin), catalog: Catalog = Depends(get_catalog)):
    return {"success": True, "product": doc_to_json(catalog.create_product(payload))}


@app.put("/products/{reference}")
def update_product(
    reference: str,
    payload: ProductUpdate,
    admin: Caller = Depends(require_admin),
    catalog: Catalog = Depends(get_catalog),
):
    return {"success": True, "product": doc_to_json(catalog.update_product(reference, payload))}


@app.delete("/products/{reference}")
def delete_product(reference: str, admin: Caller = Depends(require_admin), catalog: Catalog = Depends(get_catalog)):
    product = catalog.delete_product(reference)
    return {
        "success": True,
        "deleted_product": {
            "id": str(product["_id"]),
            "product_number": product.get("product_number"),
            "name": product.get("name"),
        },
    }

# -------------------- Orders --------------------

def order_summary(order: dict) -> dict:
    data = doc_to_json(order)
    return {
        "id": data["id"],
        "order_number": data["order_number"],
        "total_amount": data["total_amount"],
        "status": data["status"],
        "created_at": data.get("created_at"),
    }


@app.post("/orders", status_code=201)
def place_order(
    payload: OrderCreate,
    caller: Optional[Caller] = Depends(optional_user),
    reconciler: InventoryReconciler = Depends(get_reconciler),
):
    order = reconciler.place_order(caller, payload)
    return {"success": True, "message": "Order placed", "order": order_summary(order)}


@app.get("/orders/mine")
def list_my_orders(caller: Caller = Depends(require_user), reconciler: InventoryReconciler = Depends(get_reconciler)):
    return {"success": True, "orders": [doc_to_json(o) for o in reconciler.list_mine(caller)]}


@app.get("/orders/guest/{order_id}")
def get_guest_order(
    order_id: str,
    phone: str = Query(..., min_length=1),
    reconciler: InventoryReconciler = Depends(get_reconciler),
):
    return {"success": True, "order": doc_to_json(reconciler.get_guest_order(order_id, phone))}


@app.get("/orders")
def list_orders(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin: Caller = Depends(require_admin),
    reconciler: InventoryReconciler = Depends(get_reconciler),
):
    result = reconciler.list_all(admin, status, page, limit)
    return {
        "success": True,
        "orders": [doc_to_json(o) for o in result["orders"]],
        "pagination": result["pagination"],
    }


@app.get("/orders/{order_id}")
def get_order(order_id: str, caller: Caller = Depends(require_any), reconciler: InventoryReconciler = Depends(get_reconciler)):
    return {"success": True, "order": doc_to_json(reconciler.get_order(order_id, caller))}


@app.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: Caller = Depends(require_admin),
    reconciler: InventoryReconciler = Depends(get_reconciler),
):
    order = reconciler.update_status(order_id, payload.status, admin, payload.reason)
    return {"success": True, "message": "Order status updated", "order": doc_to_json(order)}


@app.post("/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: Optional[OrderCancelRequest] = None,
    caller: Caller = Depends(require_any),
    reconciler: InventoryReconciler = Depends(get_reconciler),
):
    reason = payload.reason if payload else None
    order = reconciler.cancel_order(order_id, caller, reason)
    return {"success": True, "message": "Order cancelled", "order": doc_to_json(order)}

# -------------------- Uploads --------------------

@app.post("/uploads", status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    admin: Caller = Depends(require_admin),
    settings: Settings = Depends(get_settings),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    data = await file.read(settings.max_upload_bytes + 1)
    if len(data) > settings.max_upload_bytes:
        raise ValidationError(f"File exceeds {settings.max_upload_bytes} bytes")
    if not data:
        raise ValidationError("Uploaded file is empty")
    url = blobs.store(data, file.content_type or "")
    return {"success": True, "url": url}


@app.delete("/uploads")
def delete_image(
    url: str = Query(..., min_length=1),
    admin: Caller = Depends(require_admin),
    blobs: LocalBlobStore = Depends(get_blob_store),
):
    blobs.delete(url)
    return {"success": True}


if __name__ == "__main__":
    import os

    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
