import time

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import messaging
from .database import init_db
from .errors import StoreError
from .payment_consumer import start_payment_consumer
from .routers import admin_router, cart_router, category_router, order_router, product_router
from .utils.logging import add_context, clear_context, configure_logging, get_logger

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="Store Service",
    description="Cart, checkout, order and category management for the e-commerce application",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Create database tables
init_db()

# Include routers
app.include_router(cart_router.router)
app.include_router(order_router.router)
app.include_router(admin_router.router)
app.include_router(category_router.router)
app.include_router(category_router.admin_router)
app.include_router(product_router.router)
app.include_router(product_router.admin_router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    clear_context()
    add_context(method=request.method, path=request.url.path)
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request_completed",
        status_code=response.status_code,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
    return response


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("store_error", code=exc.code, message=exc.message, **exc.extra)
    else:
        logger.info("request_rejected", code=exc.code, message=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": jsonable_encoder(exc.to_detail())},
    )


@app.on_event("startup")
def _startup() -> None:
    # Start background consumer for payment.succeeded / payment.failed
    if messaging.EVENTS_ENABLED:
        start_payment_consumer()
    else:
        logger.info("payment_consumer_disabled")


@app.get("/")
def root():
    return {
        "service": "Store Service",
        "status": "running",
        "version": "1.0.0"
    }


@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "store-service"
    }
