"""
mock_payment_gateway.py — Mock Implementation of the Payment Gateway (REST API)

This module provides a simulated payment gateway for running the print order
service locally. It mimics a Razorpay-style two-phase flow: the server creates
a gateway order, the customer pays in the browser checkout, and the gateway
hands back a payload signed with the merchant's key secret.

Simulation Scenarios:
    • Successful intent creation
    • Gateway error (HTTP 502) for receipts starting with "fail_"
    • Timeout simulation for receipts starting with "slow_"
    • Checkout completion returning a correctly signed callback payload

Endpoints:
    POST /v1/orders                 — Creates a gateway order (payment intent).
    POST /v1/checkout/{intent_id}   — Simulates the customer paying in the browser.

Port:
    Default: 8001 (HTTP)
"""

import hashlib
import hmac
import logging
import os
import time
import uuid

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

app = FastAPI(title="Mock Payment Gateway")
logging.basicConfig(level=logging.INFO)

KEY_SECRET = os.environ.get("GATEWAY_KEY_SECRET", "rzp_test_secret")
intents = {}


class CreateIntentRequest(BaseModel):
    """
    Attributes:
        amount (int): Amount in the smallest currency unit (paise, cents).
        currency (str): ISO 4217 currency code.
        receipt (str): Merchant reference, the print order id.
    """
    amount: int
    currency: str
    receipt: str


@app.post("/v1/orders")
def create_intent(request: CreateIntentRequest):
    """
    Creates a gateway order.

    Raises:
        HTTPException(502): For receipts starting with "fail_".
    """
    logging.info(f"[GW] Intent request for {request.receipt}: {request.amount} {request.currency}")

    if request.receipt.startswith("fail_"):
        logging.warning(f"[GW] Simulated outage for {request.receipt}.")
        raise HTTPException(status_code=502, detail={"error": "gateway_unavailable"})

    if request.receipt.startswith("slow_"):
        logging.info(f"[GW] Simulating timeout for {request.receipt}...")
        time.sleep(10)

    intent_id = f"order_{uuid.uuid4().hex[:14]}"
    intents[intent_id] = {"amount": request.amount, "currency": request.currency, "receipt": request.receipt}
    return {
        "id": intent_id,
        "entity": "order",
        "amount": request.amount,
        "currency": request.currency,
        "receipt": request.receipt,
        "status": "created",
        "created_at": int(time.time()),
    }


@app.post("/v1/checkout/{intent_id}")
def complete_checkout(intent_id: str):
    """
    Simulates the browser checkout finishing a payment.

    Returns:
        dict: The signed callback payload the client relays to the print order service.
    """
    if intent_id not in intents:
        raise HTTPException(status_code=404, detail={"error": "unknown_order"})
    payment_id = f"pay_{uuid.uuid4().hex[:14]}"
    signature = hmac.new(KEY_SECRET.encode(), f"{intent_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()
    logging.info(f"[GW] Payment {payment_id} captured for {intent_id}.")
    return {"gateway_intent_id": intent_id, "payment_id": payment_id, "signature": signature}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8001)
