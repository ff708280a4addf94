"""
main.py — FastAPI Entry Point for the Print Order Service

This module provides the REST API between customers, print shops and the core
order lifecycle. The identity provider in front of the service authenticates
callers and forwards the principal as headers; every core operation receives
that principal explicitly.

Responsibilities:
    • Quote and create priced orders
    • Issue upload/download capability tokens and redeem them for the storage worker
    • Initiate gateway payments and verify signed payment callbacks
    • Advance order status through the role-gated state machine
    • Provide system health information
"""

import hmac
from typing import List, Optional

from fastapi import Depends, FastAPI, Header
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from . import config
from .auth import Principal, principal_from_headers
from .clients import PaymentGatewayClient, make_event_publisher
from .db import init_db, make_engine, make_session_factory
from .errors import Forbidden, PrintServiceError
from .file_transfer import FileTransferBroker
from .logging_config import get_logger, setup_logging
from .models import (
    CreateOrderRequest, CreateOrderResponse, DownloadGrantRequest, InitiatePaymentRequest,
    OrderStatus, PaymentCallback, QuoteRequest, QuoteResponse, RateView, RedeemRequest,
    RedeemResponse, StatusUpdateRequest, StatusUpdateResponse,
)
from .orders import create_order, get_order, list_customer_orders, list_shop_orders, to_view
from .payments import PaymentReconciler
from .pricing import load_rate_card, quote
from .state_machine import transition

# Initialization
setup_logging()
log = get_logger(__name__)
app = FastAPI(title="Print Order Service")

engine = make_engine()
SessionLocal = make_session_factory(engine)
gateway = PaymentGatewayClient()
events = make_event_publisher()
broker = FileTransferBroker()


# Dependencies
def get_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def get_events():
    return events


def get_broker():
    return broker


def get_reconciler(publisher=Depends(get_events)):
    return PaymentReconciler(gateway, events=publisher)


def require_storage_worker(x_worker_key: str = Header(..., alias="X-Storage-Worker-Key")):
    if not hmac.compare_digest(x_worker_key.encode(), config.STORAGE_WORKER_API_KEY.encode()):
        raise Forbidden("Unknown storage worker")


@app.on_event("startup")
def on_startup():
    """Creates missing tables. Schema changes beyond that are out of band."""
    log.info("Print order service starting...")
    init_db(engine)


@app.on_event("shutdown")
def on_shutdown():
    gateway.close()
    events.close()
    log.info("Print order service stopped.")


@app.exception_handler(PrintServiceError)
async def handle_domain_error(request, exc: PrintServiceError):
    """
    Renders any domain error as `{"error": code, "message": ..., **details}`.

    Only upstream failures are marked retryable (Retry-After header).
    """
    if exc.status_code >= 500:
        log.error(f"{request.method} {request.url.path} failed: {exc.code} - {exc.message}")
    else:
        log.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    headers = {"Retry-After": "5"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()), headers=headers)


# --- Pricing ---
@app.get("/api/pricing/shop/{shop_id}", response_model=List[RateView])
def read_rate_card(shop_id: str, session=Depends(get_session)):
    """Read-only view of a shop's rate card."""
    card = load_rate_card(session, shop_id)
    return [
        RateView(print_type=print_type, paper_size=paper_size, price_per_page=price)
        for (print_type, paper_size), price in sorted(card.items())
    ]


@app.post("/api/orders/quote", response_model=QuoteResponse)
def quote_order(
        payload: QuoteRequest,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
):
    """Prices a manifest without creating anything."""
    total, totals = quote(session, payload.shop_id, payload.files)
    return QuoteResponse(shop_id=payload.shop_id, total_amount=total, line_totals=totals)


# --- Orders ---
@app.post("/api/orders", status_code=201, response_model=CreateOrderResponse)
def submit_order(
        payload: CreateOrderRequest,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
):
    """
    Creates a pending order from uploaded files.

    The total is computed here from the shop's rate card. Any client-side
    estimate is ignored.

    Returns:
        dict: order_id and total_amount.
    """
    order = create_order(session, principal, payload.shop_id, payload.files)
    return CreateOrderResponse(order_id=order.id, total_amount=order.total_amount)


@app.get("/api/orders/my")
def my_orders(principal: Principal = Depends(principal_from_headers), session=Depends(get_session)):
    return [to_view(order) for order in list_customer_orders(session, principal)]


@app.get("/api/orders/shop")
def shop_orders(
        status: Optional[OrderStatus] = None,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
):
    return [to_view(order) for order in list_shop_orders(session, principal, status=status)]


@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, principal: Principal = Depends(principal_from_headers), session=Depends(get_session)):
    return to_view(get_order(session, principal, order_id))


@app.put("/api/orders/{order_id}/status", response_model=StatusUpdateResponse)
def update_status(
        order_id: str,
        payload: StatusUpdateRequest,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
        publisher=Depends(get_events),
):
    """
    Requests a status transition for the order.

    Raises:
        InvalidTransition (409), Forbidden (403), Conflict (409 with current status).
    """
    status = transition(
        session, order_id, payload.status, principal,
        expected=payload.expected_status, events=publisher,
    )
    return StatusUpdateResponse(order_id=order_id, status=status)


# --- Payments ---
@app.post("/api/payments")
def initiate_payment(
        payload: InitiatePaymentRequest,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
        reconciler: PaymentReconciler = Depends(get_reconciler),
):
    return reconciler.initiate(session, principal, payload.order_id)


@app.post("/api/payments/verify")
def verify_payment(
        payload: PaymentCallback,
        session=Depends(get_session),
        reconciler: PaymentReconciler = Depends(get_reconciler),
):
    """
    Verifies the gateway's signed payment callback.

    No principal is required: the signature is the proof. A client claiming
    success without a valid signature gets 400 and the order stays pending.
    """
    return reconciler.verify(session, payload)


# --- File transfer ---
@app.post("/api/files/token/upload")
def upload_token(principal: Principal = Depends(principal_from_headers), transfer=Depends(get_broker)):
    return transfer.request_upload_grant(principal)


@app.post("/api/files/token/download")
def download_token(
        payload: DownloadGrantRequest,
        principal: Principal = Depends(principal_from_headers),
        session=Depends(get_session),
        transfer=Depends(get_broker),
):
    return transfer.request_download_grant(session, principal, payload.storage_key)


@app.post("/api/files/redeem", response_model=RedeemResponse, dependencies=[Depends(require_storage_worker)])
def redeem_token(payload: RedeemRequest, session=Depends(get_session), transfer=Depends(get_broker)):
    """Called by the storage worker before it accepts or serves bytes."""
    claims = transfer.redeem(session, payload.token, payload.operation, storage_key=payload.storage_key)
    return RedeemResponse(subject=claims.sub, scope=claims.scope, operation=claims.op)


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for container orchestrators.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}
