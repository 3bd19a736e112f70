from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from crm_core.core.config import settings
from crm_core.core.errors import CRMError
from crm_core.core.observability import (
    crm_error_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from crm_core.db.session import SessionLocal, engine
from crm_core.routers import campaigns, customers, orders, vendor
from crm_core.services.messaging_provider import default_receipt_inbox
from crm_core.services.reconciliation_service import DeliveryReconciler, ReceiptConsumer


@asynccontextmanager
async def lifespan(app: FastAPI):
    consumer: ReceiptConsumer | None = None
    if settings.receipt_consumer_enabled:
        consumer = ReceiptConsumer(
            default_receipt_inbox,
            DeliveryReconciler(SessionLocal),
            poll_seconds=settings.receipt_consumer_poll_seconds,
        )
        consumer.start()
    app.state.receipt_consumer = consumer
    try:
        yield
    finally:
        if consumer is not None:
            consumer.stop()


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Customer segmentation and campaign delivery backend.\n\n"
        "Typical flow:\n"
        "1. Create customers (`POST /customers`) and orders (`POST /orders`).\n"
        "2. Define a segment (`POST /campaigns/segments`) or preview one first.\n"
        "3. Create a campaign from the segment and start it (`POST /campaigns/{id}/send`).\n"
        "4. Follow delivery through `GET /campaigns/{id}/logs`."
    ),
    lifespan=lifespan,
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "customers", "description": "Customer profiles, purchase aggregates and history."},
        {"name": "orders", "description": "Order lifecycle, totals and payment status."},
        {"name": "campaigns", "description": "Rule-based segments, campaigns, dispatch and delivery logs."},
        {"name": "vendor", "description": "Inbound delivery receipts from the messaging vendor."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(CRMError, crm_error_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
allow_origin_regex = settings.cors_origin_regex

if not allow_origin_regex and settings.env.lower().strip() in {"dev", "development"}:
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(customers.router)
app.include_router(orders.router)
app.include_router(campaigns.router)
app.include_router(vendor.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health", tags=["health"])
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
