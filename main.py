import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Header, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import catalog
import config
import database
import notifications
import orders
import payments
from database import get_db
from errors import StoreError
from notifications import NotificationDispatcher
from schemas import (
    CreateOrderRequest,
    LoginRequest,
    Product,
    ProductUpdate,
    RegisterRequest,
    Role,
    StaffCreateRequest,
    StaffUpdateRequest,
    StockCheckRequest,
    UpdateOrderStatusRequest,
    VerifyPaymentRequest,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - [%(levelname)s] - %(message)s",
)
logger = logging.getLogger("fola_store")

app = FastAPI(title="Fola Store API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api = APIRouter(prefix="/api/v1")

require_staff = auth.require_roles(Role.ADMIN.value, Role.STAFF.value)
require_admin = auth.require_roles(Role.ADMIN.value)


# Response helpers

def ok(message: str, data=None, pagination: Optional[dict] = None) -> dict:
    body = {"success": True, "message": message, "data": data}
    if pagination is not None:
        body["pagination"] = pagination
    return body


def error_response(status_code: int, message: str, errors=None) -> JSONResponse:
    body = {"success": False, "message": message, "statusCode": status_code}
    if errors:
        body["errors"] = errors
    return JSONResponse(status_code=status_code, content=body)


def get_dispatcher(background_tasks: BackgroundTasks, db=Depends(get_db)) -> NotificationDispatcher:
    return NotificationDispatcher(db, background_tasks.add_task)


# Error handlers

@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message, exc.errors)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
        for err in exc.errors()
    ]
    return error_response(400, "Validation error", errors)


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    fields = list((exc.details or {}).get("keyValue", {}).keys())
    field = fields[0] if fields else "value"
    return error_response(409, f"{field} already exists")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = f"Route {request.url.path} not found"
    return error_response(exc.status_code, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    message = "Internal server error"
    if not config.IS_PRODUCTION:
        message = f"{message}: {exc}"
    return error_response(500, message)


@app.on_event("startup")
def startup():
    if database.db is None:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
        return
    database.ensure_indexes(database.db)
    auth.ensure_bootstrap_admin(database.db)


@app.get("/")
async def root():
    return {"message": "Fola Store API running"}


@app.get("/test")
def check_database():
    """Connectivity check with document counts for the store's collections."""
    response = {"backend": "running", "database": "not configured"}
    if database.db is None:
        return response
    try:
        response["collections"] = {
            name: database.db[name].estimated_document_count() for name in database.COLLECTIONS
        }
        response["database"] = "connected"
    except PyMongoError as exc:
        logger.warning("Database check failed: %s", exc)
        response["database"] = f"unavailable: {str(exc)[:80]}"
    return response


# Auth

@api.post("/auth/register", status_code=201)
def register(req: RegisterRequest, db=Depends(get_db)):
    user = auth.register(db, req)
    return ok("Registration successful", {"user": user})


@api.post("/auth/login")
def login(req: LoginRequest, db=Depends(get_db)):
    token, user = auth.login(db, req.email, req.password)
    return ok("Login successful", {"token": token, "user": user})


@api.get("/auth/me")
def me(user=Depends(auth.get_current_user)):
    return ok("User retrieved successfully", {"user": user})


# Products

@api.get("/products")
def list_products(page: int = Query(1, ge=1), limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
                  search: Optional[str] = None, category: Optional[str] = None, db=Depends(get_db)):
    products, pagination = catalog.list_products(db, page, limit, search, category)
    return ok("Products retrieved successfully", products, pagination)


@api.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    product = catalog.serialize(catalog.get_product(db, product_id))
    return ok("Product retrieved successfully", {"product": product})


@api.post("/products", status_code=201)
def create_product(p: Product, db=Depends(get_db), _=Depends(require_staff)):
    product = catalog.create_product(db, p)
    return ok("Product created successfully", {"product": product})


@api.patch("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db), _=Depends(require_staff)):
    product = catalog.update_product(db, product_id, payload)
    return ok("Product updated successfully", {"product": product})


@api.delete("/products/{product_id}")
def delete_product(product_id: str, db=Depends(get_db), _=Depends(require_staff)):
    catalog.delete_product(db, product_id)
    return ok("Product deleted successfully")


@api.post("/products/{product_id}/check-stock")
def check_stock(product_id: str, req: StockCheckRequest, db=Depends(get_db)):
    result = catalog.check_stock(db, product_id, req.color, req.quantity)
    return ok("Stock checked successfully", result)


# Orders

@api.post("/orders", status_code=201)
def create_order(req: CreateOrderRequest, db=Depends(get_db), user=Depends(auth.get_current_user),
                 dispatcher=Depends(get_dispatcher)):
    order = orders.place_order(db, user, req, dispatcher)
    return ok("Order created successfully", {"order": order})


@api.get("/orders")
def list_orders(page: int = Query(1, ge=1), limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
                status: Optional[str] = None, payment_status: Optional[str] = None,
                search: Optional[str] = None, start_date: Optional[datetime] = None,
                end_date: Optional[datetime] = None, db=Depends(get_db), _=Depends(require_staff)):
    items, pagination = orders.list_orders(db, page, limit, status, payment_status, search,
                                           start_date, end_date)
    return ok("Orders retrieved successfully", items, pagination)


@api.get("/orders/my-orders")
def my_orders(page: int = Query(1, ge=1), limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
              db=Depends(get_db), user=Depends(auth.get_current_user)):
    items, pagination = orders.list_my_orders(db, user, page, limit)
    return ok("Orders retrieved successfully", items, pagination)


@api.post("/orders/verify-payment")
def verify_payment(req: VerifyPaymentRequest, db=Depends(get_db), user=Depends(auth.get_current_user),
                   provider=Depends(payments.get_payment_provider), dispatcher=Depends(get_dispatcher)):
    order = payments.verify_payment(db, provider, req.reference, user, dispatcher)
    return ok("Payment processed successfully", {"order": order})


@api.get("/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db), user=Depends(auth.get_current_user)):
    return ok("Order retrieved successfully", {"order": orders.get_order(db, order_id, user)})


@api.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, db=Depends(get_db), user=Depends(auth.get_current_user),
                 dispatcher=Depends(get_dispatcher)):
    order = orders.cancel_order(db, order_id, user, dispatcher)
    return ok("Order cancelled successfully", {"order": order})


@api.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, req: UpdateOrderStatusRequest, db=Depends(get_db),
                        _=Depends(require_staff), dispatcher=Depends(get_dispatcher)):
    order = orders.update_order_status(db, order_id, req, dispatcher)
    return ok("Order updated successfully", {"order": order})


@api.post("/orders/{order_id}/initialize-payment")
def initialize_payment(order_id: str, db=Depends(get_db), user=Depends(auth.get_current_user),
                       provider=Depends(payments.get_payment_provider)):
    result = payments.initialize_payment(db, provider, order_id, user)
    return ok("Payment initialized", result)


# Payment provider callbacks

@api.post("/payments/webhook")
async def payment_webhook(request: Request, x_paystack_signature: Optional[str] = Header(None),
                          db=Depends(get_db), dispatcher=Depends(get_dispatcher)):
    body = await request.body()
    payments.verify_signature(body, x_paystack_signature)
    try:
        event = await request.json()
    except ValueError:
        return error_response(400, "Invalid webhook payload")
    handled = await run_in_threadpool(payments.handle_webhook, db, event, dispatcher)
    return ok("Webhook received", {"handled": handled})


# Notifications

@api.get("/notifications")
def list_notifications(page: int = Query(1, ge=1), limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
                       unread_only: bool = False, db=Depends(get_db), user=Depends(auth.get_current_user)):
    items, pagination = notifications.list_notifications(db, user["id"], page, limit, unread_only)
    return ok("Notifications retrieved successfully", items, pagination)


@api.patch("/notifications/read-all")
def mark_all_notifications_read(db=Depends(get_db), user=Depends(auth.get_current_user)):
    count = notifications.mark_all_read(db, user["id"])
    return ok("All notifications marked as read", {"updated": count})


@api.patch("/notifications/{notification_id}/read")
def mark_notification_read(notification_id: str, db=Depends(get_db), user=Depends(auth.get_current_user)):
    notifications.mark_read(db, notification_id, user["id"])
    return ok("Notification marked as read")


@api.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, db=Depends(get_db), user=Depends(auth.get_current_user)):
    notifications.delete_notification(db, notification_id, user["id"])
    return ok("Notification deleted")


# Staff (admin)

@api.get("/admin/staff")
def list_staff(page: int = Query(1, ge=1), limit: int = Query(config.DEFAULT_PAGE_SIZE, ge=1),
               db=Depends(get_db), _=Depends(require_admin)):
    staff, pagination = auth.list_staff(db, page, limit)
    return ok("Staff members retrieved successfully", staff, pagination)


@api.post("/admin/staff", status_code=201)
def create_staff(req: StaffCreateRequest, db=Depends(get_db), _=Depends(require_admin)):
    return ok("Staff member created successfully", {"user": auth.create_staff(db, req)})


@api.patch("/admin/staff/{staff_id}")
def update_staff(staff_id: str, req: StaffUpdateRequest, db=Depends(get_db), _=Depends(require_admin)):
    return ok("Staff member updated successfully", {"user": auth.update_staff(db, staff_id, req)})


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
