"""
FastAPI application for the EV marketplace cart, order and payment pipeline.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import List
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from evmarket.config import Config
from evmarket.models import (
    CartItemRequest,
    CartResponse,
    CreateOrderRequest,
    Order,
    PaymentRequest,
    PaymentResponse,
    PaymentSessionResponse,
    UpdateQuantityRequest
)
from evmarket.cart_service import CartService
from evmarket.catalog import CatalogClient
from evmarket.order_service import OrderService
from evmarket.payment_service import PaymentService
from evmarket.exceptions import (
    CheckoutException,
    ConcurrentModificationError,
    InvalidRequestError,
    InvalidStateError,
    NotFoundError,
    RedisConnectionError,
    TransactionConflictError
)
from evmarket.middleware import MetricsMiddleware
from evmarket.redis_client import get_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if Config.CATALOG_SEED_FILE:
        CatalogClient().load_seed_file(Config.CATALOG_SEED_FILE)
    yield


# Initialize FastAPI app
app = FastAPI(
    title="EV Marketplace Checkout API",
    description="Cart, order and payment pipeline backed by Redis",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware
app.add_middleware(MetricsMiddleware)


def get_cart_service() -> CartService:
    return CartService()


def get_order_service() -> OrderService:
    return OrderService()


def get_payment_service() -> PaymentService:
    return PaymentService()


def require_user_id(user_id: str = Header(..., alias="X-User-ID", description="Authenticated user identifier")) -> str:
    if not user_id or not user_id.strip():
        raise HTTPException(status_code=400, detail="User ID is required")
    return user_id.strip()


# Health check endpoint for ALB
@app.get("/health")
async def health_check():
    """
    Health check endpoint.
    Always returns HTTP 200 if the application is running; reports Redis separately.
    """
    redis_status = "healthy"
    redis_latency_ms = None

    try:
        redis_client = get_redis_client()
        ping_start = time.time()
        ping_result = redis_client.ping()
        redis_latency_ms = round((time.time() - ping_start) * 1000, 2)

        if not ping_result:
            redis_status = "unhealthy"
    except RedisConnectionError:
        redis_status = "unhealthy"

    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": "checkout-api",
            "redis": {
                "status": redis_status,
                "latency_ms": redis_latency_ms
            },
            "timestamp": time.time()
        }
    )


# Cart endpoints
@app.get("/carts/{user_id}", response_model=CartResponse)
def get_cart(user_id: str, carts: CartService = Depends(get_cart_service)):
    """Get the user's cart, creating an empty one on first access"""
    return CartResponse.from_cart(carts.get_cart(user_id))


@app.post("/carts/{user_id}/items", response_model=CartResponse)
def add_cart_item(
    user_id: str,
    request: CartItemRequest,
    carts: CartService = Depends(get_cart_service)
):
    """
    Add a vehicle or accessory to the cart.
    Any client-supplied price is ignored in favour of the catalog price.
    """
    cart = carts.add_item(user_id, request.kind, request.referenced_id, request.quantity)
    return CartResponse.from_cart(cart)


@app.patch("/carts/{user_id}/items/{item_id}", response_model=CartResponse)
def update_cart_item(
    user_id: str,
    item_id: str,
    request: UpdateQuantityRequest,
    carts: CartService = Depends(get_cart_service)
):
    """Change a line's quantity; 0 removes it"""
    return CartResponse.from_cart(carts.update_quantity(user_id, item_id, request.quantity))


@app.delete("/carts/{user_id}/items/{item_id}", response_model=CartResponse)
def remove_cart_item(user_id: str, item_id: str, carts: CartService = Depends(get_cart_service)):
    """Remove a line from the cart"""
    return CartResponse.from_cart(carts.remove_item(user_id, item_id))


@app.delete("/carts/{user_id}", response_model=CartResponse)
def clear_cart(user_id: str, carts: CartService = Depends(get_cart_service)):
    """Remove every line from the cart"""
    return CartResponse.from_cart(carts.clear_cart(user_id))


# Order endpoints
@app.post("/orders/from-cart/{user_id}", response_model=Order, status_code=201)
def create_order_from_cart(user_id: str, orders: OrderService = Depends(get_order_service)):
    """Snapshot the user's cart into a PLACED order without clearing the cart"""
    return orders.create_order_from_cart(user_id)


@app.post("/orders/{user_id}", response_model=Order, status_code=201)
def create_order(
    user_id: str,
    request: CreateOrderRequest,
    orders: OrderService = Depends(get_order_service)
):
    """Create a PLACED order from an explicit item list"""
    return orders.create_order(user_id, request.items)


@app.get("/orders/user/{user_id}", response_model=List[Order])
def list_orders(user_id: str, orders: OrderService = Depends(get_order_service)):
    return orders.list_orders(user_id)


@app.get("/orders/{order_id}", response_model=Order)
def get_order(order_id: str, orders: OrderService = Depends(get_order_service)):
    return orders.get_order(order_id)


@app.post("/orders/{order_id}/cancel", response_model=Order)
def cancel_order(order_id: str, orders: OrderService = Depends(get_order_service)):
    """Cancel an order that has not been paid"""
    return orders.cancel_order(order_id)


# Payment endpoints
@app.post("/payment/session", response_model=PaymentSessionResponse)
def create_payment_session(
    user_id: str = Depends(require_user_id),
    payments: PaymentService = Depends(get_payment_service)
):
    """
    Open a payment session.
    Pins the current cart fingerprint; any earlier session for the user is replaced.
    """
    session = payments.begin_session(user_id)
    return PaymentSessionResponse(
        cart_id=session.cart_id,
        cart_checksum=session.cart_checksum,
        expires_in_seconds=payments.sessions.ttl_seconds
    )


@app.post("/payment/process", response_model=PaymentResponse)
def process_payment(
    request: PaymentRequest,
    user_id: str = Depends(require_user_id),
    payments: PaymentService = Depends(get_payment_service)
):
    """
    Commit the open payment session.
    Returns 200 for both approved and denied payments; check ``status``.
    """
    return PaymentResponse.from_payment(payments.commit_payment(user_id, request))


@app.get("/payment/user/{user_id}", response_model=List[PaymentResponse])
def list_payments(user_id: str, payments: PaymentService = Depends(get_payment_service)):
    return [PaymentResponse.from_payment(payment) for payment in payments.list_by_user(user_id)]


@app.get("/payment/{order_id}/status", response_model=PaymentResponse)
def get_payment_status(order_id: str, payments: PaymentService = Depends(get_payment_service)):
    return PaymentResponse.from_payment(payments.get_status(order_id))


@app.post("/payment/{order_id}/cancel", response_model=PaymentResponse)
def cancel_payment(order_id: str, payments: PaymentService = Depends(get_payment_service)):
    """Refund an approved payment; other payments are returned unchanged"""
    return PaymentResponse.from_payment(payments.cancel_payment(order_id))


# Error handlers
def _error_response(status_code: int, error: str, exc: CheckoutException) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "message": exc.message}
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, "not_found", exc)


@app.exception_handler(InvalidRequestError)
async def invalid_request_handler(request: Request, exc: InvalidRequestError):
    return _error_response(400, "invalid_request", exc)


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return _error_response(409, "invalid_state", exc)


@app.exception_handler(ConcurrentModificationError)
async def concurrent_modification_handler(request: Request, exc: ConcurrentModificationError):
    return _error_response(409, "cart_modified", exc)


@app.exception_handler(TransactionConflictError)
async def transaction_conflict_handler(request: Request, exc: TransactionConflictError):
    return _error_response(409, "conflict", exc)


@app.exception_handler(RedisConnectionError)
async def redis_error_handler(request: Request, exc: RedisConnectionError):
    logger.error(f"Redis unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content={"error": "service_unavailable", "message": "Redis connection failed"}
    )


# Generic exception handler for unhandled errors
@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": str(exc),
            "type": type(exc).__name__
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.APP_PORT)
