from datetime import datetime
from enum import Enum
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, Field


class EarningType(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    POST_RETURN_WINDOW = "POST_RETURN_WINDOW"


class WithdrawalStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.FAILED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.FAILED: set(),
    WithdrawalStatus.CANCELLED: set(),
}


class SellerEarning:
    """Ledger row for one payout event of one order item."""

    def __init__(
        self,
        seller_id: ObjectId,
        order_item_id: ObjectId,
        order_id: ObjectId | None,
        earning_type: EarningType,
        gross_amount: float,
        commission_rate: float,
        credited_at: datetime,
    ):
        self.seller_id = seller_id
        self.order_item_id = order_item_id
        self.order_id = order_id
        self.type = earning_type
        self.gross_amount = round(gross_amount, 2)
        self.commission = round(gross_amount * commission_rate, 2)
        self.amount = round(self.gross_amount - self.commission, 2)
        self.credited_at = credited_at
        self.created_at = credited_at

    def to_document(self) -> dict:
        return {
            "seller_id": self.seller_id,
            "order_item_id": self.order_item_id,
            "order_id": self.order_id,
            "type": self.type.value,
            "gross_amount": self.gross_amount,
            "amount": self.amount,
            "commission": self.commission,
            "status": "COMPLETED",
            "credited_to_balance": True,
            "credited_at": self.credited_at,
            "created_at": self.created_at,
        }


# ======================================================
# REQUEST SCHEMAS
# ======================================================

class BankDetails(BaseModel):
    account_holder_name: str
    account_number: str = Field(..., min_length=6, max_length=20)
    ifsc_code: str = Field(..., min_length=11, max_length=11)
    bank_name: Optional[str] = None


class WithdrawalCreate(BaseModel):
    amount: float = Field(..., gt=0)
    bank_details: BankDetails


class WithdrawalUpdate(BaseModel):
    status: WithdrawalStatus
    transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
