from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class ReturnWindowStatus(str, Enum):
    NOT_APPLICABLE = "NOT_APPLICABLE"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    RETURNED = "RETURNED"


class RefundReconciliationStatus(str, Enum):
    OPEN = "OPEN"
    MANUAL_REVIEW = "MANUAL_REVIEW"
    RESOLVED = "RESOLVED"


class ReturnRequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


RETURN_REQUEST_TRANSITIONS = {
    ReturnRequestStatus.PENDING: {ReturnRequestStatus.APPROVED, ReturnRequestStatus.REJECTED},
    ReturnRequestStatus.APPROVED: {ReturnRequestStatus.COMPLETED},
    ReturnRequestStatus.REJECTED: set(),
    ReturnRequestStatus.COMPLETED: set(),
}


# ======================================================
# REQUEST SCHEMAS
# ======================================================

class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class AdminOrderReject(BaseModel):
    notes: str = Field(..., min_length=1)


class ItemReturnStatusUpdate(BaseModel):
    return_window_status: str
    notes: Optional[str] = None
    set_earnings_credited: bool = False
    update_return_window: bool = False
    return_window_days: Optional[int] = Field(None, gt=0)


class ReturnRequestCreate(BaseModel):
    order_id: str
    order_item_id: str
    reason: str = Field(..., min_length=1)


class ReturnDecision(BaseModel):
    status: ReturnRequestStatus
    admin_notes: Optional[str] = None


class ReturnRefundCreate(BaseModel):
    refund_amount: Optional[float] = Field(None, gt=0)
    refund_note: Optional[str] = Field(None, max_length=100)
