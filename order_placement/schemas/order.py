from pydantic import BaseModel
from typing import Dict, List, Optional
from datetime import date, datetime
from decimal import Decimal
from order_placement.core.enums import OrderItemStatus, OrderStatus, VerificationStatus


class SubmitOptions(BaseModel):
    accept_price_changes: bool = False
    skip_warnings: bool = False


class SkipVerification(BaseModel):
    reason: Optional[str] = None


class OrderItemOut(BaseModel):
    id: int
    supplier_sku: Optional[str] = None
    name: Optional[str] = None
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    verified_price: Optional[Decimal] = None
    status: OrderItemStatus
    notes: Optional[str] = None


class OrderOut(BaseModel):
    id: int
    supplier_id: int
    supplier_name: str
    batch_id: Optional[str] = None
    status: OrderStatus
    verification_status: Optional[VerificationStatus] = None
    verification_error: Optional[str] = None
    subtotal: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    verified_total: Optional[Decimal] = None
    price_change_amount: Optional[Decimal] = None
    confirmation_number: Optional[str] = None
    delivery_date: Optional[date] = None
    error_message: Optional[str] = None
    items: List[OrderItemOut] = []
    created_at: datetime
    updated_at: Optional[datetime] = None


class OrderActionOut(BaseModel):
    order_id: int
    status: OrderStatus
    queued: bool = False
    message: Optional[str] = None


class PlacementStatusOut(BaseModel):
    processing: bool
    status: OrderStatus
    confirmation_number: Optional[str] = None
    total_amount: Optional[Decimal] = None
    error_message: Optional[str] = None


class VerificationOut(BaseModel):
    order_id: int
    status: OrderStatus
    verification_status: Optional[VerificationStatus] = None
    verified_total: Optional[Decimal] = None
    price_change_amount: Optional[Decimal] = None
    error: Optional[str] = None


class BatchVerificationStatus(BaseModel):
    batch_id: str
    complete: bool
    counts: Dict[str, int]
    orders: List[VerificationOut]


class BatchSubmitOut(BaseModel):
    batch_id: str
    queued: List[int]
    skipped: Dict[int, str]
