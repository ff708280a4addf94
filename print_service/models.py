"""
models.py — Data Models for Print Order Processing

This module defines the value types shared by the core components and the
request/response payloads of the HTTP API. Pydantic models give type safety
and automatic validation of incoming data.

Models:
    - PrintType, PaperSize, Sides, OrderStatus: closed value sets
    - OrderFile: one file of an order with its print configuration (immutable)
    - CreateOrderRequest / QuoteRequest: order manifest sent by the customer
    - StatusUpdateRequest, InitiatePaymentRequest, PaymentCallback,
      DownloadGrantRequest, RedeemRequest: remaining API inputs
    - OrderView, PaymentHandle, TransferGrant: API outputs
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PrintType(str, Enum):
    BW = "BW"
    COLOR = "COLOR"


class PaperSize(str, Enum):
    A4 = "A4"
    A3 = "A3"


class Sides(str, Enum):
    SINGLE = "single"
    DOUBLE = "double"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PRINTING = "printing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self):
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class OrderFile(BaseModel):
    """
    A single uploaded file together with its print configuration.

    Frozen: once built it cannot be changed, edits happen on the
    in-progress list of an `OrderBuilder` before the order exists.

    Attributes:
        storage_key (str): Key returned by the storage worker after upload.
        file_name (str): Original file name, for display.
        pages (int): Page count, at least 1.
        print_type (PrintType): BW or COLOR.
        paper_size (PaperSize): A4 or A3.
        copies (int): Number of copies, at least 1.
        sides (Sides): single or double sided. Does not affect the price.
    """
    model_config = ConfigDict(frozen=True)

    storage_key: str = Field(..., min_length=1, max_length=512)
    file_name: str = Field(..., min_length=1, max_length=255)
    pages: int = Field(..., ge=1)
    print_type: PrintType = PrintType.BW
    paper_size: PaperSize = PaperSize.A4
    copies: int = Field(1, ge=1)
    sides: Sides = Sides.SINGLE

    @field_validator("pages", "copies", mode="before")
    @classmethod
    def not_boolean(cls, value):
        if isinstance(value, bool):
            raise ValueError("must be a whole number, not a boolean")
        return value

    @field_validator("storage_key", "file_name")
    @classmethod
    def not_blank(cls, value):
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class QuoteRequest(BaseModel):
    shop_id: str = Field(..., min_length=1)
    files: List[OrderFile]


class CreateOrderRequest(QuoteRequest):
    """Order manifest: shop plus the uploaded files with per-file configuration."""


class QuoteResponse(BaseModel):
    shop_id: str
    total_amount: Decimal
    line_totals: List[Decimal]


class CreateOrderResponse(BaseModel):
    order_id: str
    total_amount: Decimal


class StatusUpdateRequest(BaseModel):
    """
    Requested status change.

    Attributes:
        status (OrderStatus): Target status.
        expected_status (Optional[OrderStatus]): Status the caller last saw.
            When given, the update is rejected with a conflict if the order
            has moved on in the meantime.
    """
    status: OrderStatus
    expected_status: Optional[OrderStatus] = None


class StatusUpdateResponse(BaseModel):
    order_id: str
    status: OrderStatus


class InitiatePaymentRequest(BaseModel):
    order_id: str


class PaymentHandle(BaseModel):
    """What the client needs to open the gateway checkout. Contains no secrets."""
    order_id: str
    gateway_intent_id: str
    amount_minor_units: int
    currency: str
    gateway_public_key: str


class PaymentCallback(BaseModel):
    """Signed payload the gateway hands to the client after a payment."""
    gateway_intent_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class VerificationResult(BaseModel):
    order_id: str
    status: OrderStatus
    already_verified: bool = False


class DownloadGrantRequest(BaseModel):
    storage_key: str = Field(..., min_length=1)


class TransferGrant(BaseModel):
    """Capability token plus the storage worker URI it is valid against."""
    token: str
    target_uri: str
    expires_at: datetime


class RedeemRequest(BaseModel):
    token: str
    operation: str
    storage_key: Optional[str] = None


class RedeemResponse(BaseModel):
    subject: str
    scope: str
    operation: str


class RateView(BaseModel):
    print_type: PrintType
    paper_size: PaperSize
    price_per_page: Decimal


class OrderView(BaseModel):
    order_id: str
    customer_id: str
    shop_id: str
    status: OrderStatus
    total_amount: Decimal
    created_at: datetime
    files: List[OrderFile]
