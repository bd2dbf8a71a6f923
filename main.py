import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from pymongo.database import Database
from starlette.concurrency import run_in_threadpool
import jwt
import structlog

import cart as carts
import orders
import settings
from database import get_db, doc_to_public, ensure_indexes, to_object_id
from errors import ConfigurationError, NotFoundError, PaymentPendingError, StoreError
from gateway import PaymentGateway, get_gateway
from logging_config import add_context, clear_context, configure_logging

logger = structlog.get_logger(__name__)

# ----------------------------------------------------------------------------
# App and Security Setup
# ----------------------------------------------------------------------------

# Tokens are issued by the account service; this API only verifies them.
bearer_scheme = HTTPBearer(auto_error=False)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Bind a request id and route to every log line emitted while handling the request."""
    clear_context()
    add_context(request_id=uuid.uuid4().hex, method=request.method, path=request.url.path)
    try:
        return await call_next(request)
    finally:
        clear_context()


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, PaymentPendingError):
        body["retryable"] = True
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.message, error_type=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_errors(exc)})


def jsonable_errors(exc: RequestValidationError):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]


# ----------------------------------------------------------------------------
# Utilities
# ----------------------------------------------------------------------------

def create_access_token(subject: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = subject.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def origin(request: Request, configured: Optional[str]) -> str:
    return configured or str(request.base_url).rstrip("/")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> Dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    try:
        payload = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid authentication")
    uid = payload.get("sub")
    if not uid:
        raise HTTPException(status_code=401, detail="Invalid token")
    try:
        user = db["user"].find_one({"_id": to_object_id(uid, "User")})
    except NotFoundError:
        user = None
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    add_context(user_id=str(user["_id"]))
    return user


def get_current_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user.get("is_admin"):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# ----------------------------------------------------------------------------
# Models (request bodies)
# ----------------------------------------------------------------------------

class AddCartRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    shipping_address: Dict[str, Any] = Field(default_factory=dict)


# ----------------------------------------------------------------------------
# Cart
# ----------------------------------------------------------------------------

@app.get("/api/cart")
def get_cart(current=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.get_or_create_cart(db, str(current["_id"]))
    return carts.cart_to_public(db, cart)


@app.post("/api/cart/items")
def add_to_cart(body: AddCartRequest, current=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.add_item(db, str(current["_id"]), body.product_id, body.quantity)
    return carts.cart_to_public(db, cart)


@app.put("/api/cart/items/{item_id}")
def update_cart_item(item_id: str, body: UpdateCartItemRequest, current=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.update_item(db, str(current["_id"]), item_id, body.quantity)
    return carts.cart_to_public(db, cart)


@app.delete("/api/cart/items/{item_id}")
def remove_from_cart(item_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    cart = carts.remove_item(db, str(current["_id"]), item_id)
    return carts.cart_to_public(db, cart)


@app.delete("/api/cart")
def clear_cart(current=Depends(get_current_user), db: Database = Depends(get_db)):
    carts.clear_cart(db, str(current["_id"]))
    return {"message": "Cart cleared"}


# ----------------------------------------------------------------------------
# Orders (Checkout, Payment & Tracking)
# ----------------------------------------------------------------------------

@app.post("/api/orders", status_code=201)
def create_order(
    body: CreateOrderRequest,
    request: Request,
    current=Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order, session = orders.create_order(
        db,
        gateway,
        current,
        body.shipping_address,
        frontend_origin=origin(request, settings.FRONTEND_ORIGIN),
        backend_origin=origin(request, settings.BACKEND_ORIGIN),
    )
    return {
        "order": doc_to_public(order),
        "cashfree_order_id": session.order_id,
        "cashfree_order_token": session.order_token,
        "cashfree_payment_session_id": session.payment_session_id,
        "amount": order["total_price"],
        "currency": settings.ORDER_CURRENCY,
    }


@app.post("/api/orders/{order_id}/verify-payment")
def verify_payment(
    order_id: str,
    current=Depends(get_current_user),
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    order = orders.verify_payment(db, gateway, current, order_id)
    return {"message": "Payment verified", "order": doc_to_public(order)}


@app.post("/api/orders/{order_id}/webhook")
async def payment_webhook(
    order_id: str,
    request: Request,
    x_webhook_signature: str = Header(default=""),
    x_webhook_timestamp: str = Header(default=""),
    db: Database = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payload = await request.body()
    if not gateway.verify_webhook_signature(payload, x_webhook_timestamp, x_webhook_signature):
        logger.warning("webhook_signature_rejected", order_id=order_id)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")
    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    order = await run_in_threadpool(orders.handle_payment_webhook, db, order_id, event)
    return {"received": True, "applied": order is not None}


@app.get("/api/orders/mine")
def my_orders(current=Depends(get_current_user), db: Database = Depends(get_db)):
    return [doc_to_public(o) for o in orders.list_user_orders(db, str(current["_id"]))]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current=Depends(get_current_user), db: Database = Depends(get_db)):
    return doc_to_public(orders.get_order(db, current, order_id))


@app.get("/api/orders")
def admin_orders(user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return [doc_to_public(o) for o in orders.list_orders(db)]


@app.put("/api/orders/{order_id}/deliver")
def deliver_order(order_id: str, user=Depends(get_current_admin), db: Database = Depends(get_db)):
    return doc_to_public(orders.mark_delivered(db, order_id))


# ----------------------------------------------------------------------------
# Health and Test
# ----------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database(gateway: PaymentGateway = Depends(get_gateway)):
    response: Dict[str, Any] = {
        "backend": "ok",
        "gateway": "configured" if gateway.is_configured() else "missing credentials",
    }
    try:
        collections = get_db().list_collection_names()
        response.update({"db": "ok", "collections": collections[:10]})
    except Exception as e:
        response["db"] = f"error: {e}"
    return response


@app.on_event("startup")
def on_startup():
    configure_logging()
    try:
        ensure_indexes(get_db())
    except ConfigurationError:
        logger.warning("database_not_configured")
    logger.info("startup", environment=settings.ENVIRONMENT)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
