from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ORDER_PAYMENT = "order_payment"
    REFUND = "refund"
    REFERRAL_BONUS = "referral_bonus"


class EntryStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    UPI = "upi"
    CARD = "card"
    NETBANKING = "netbanking"
    PAYTM = "paytm"
    GOOGLE_PAY = "google_pay"
    PHONEPE = "phonepe"
    WALLET = "wallet"


# Metadata variants, one per transaction kind. The ``type`` tag selects the variant.

class DepositMetadata(BaseModel):
    type: Literal["deposit"] = "deposit"
    payment_method: PaymentMethod = PaymentMethod.UPI
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None


class WithdrawalMetadata(BaseModel):
    type: Literal["withdrawal"] = "withdrawal"
    upi_id: str
    requested_at: datetime
    processed_at: Optional[datetime] = None


class OrderPaymentMetadata(BaseModel):
    type: Literal["order_payment"] = "order_payment"
    channel_url: str
    subscribers: int
    base_price: int
    discount_percentage: int = 0
    retry_of: Optional[UUID] = None


class BulkOrderMetadata(BaseModel):
    type: Literal["bulk_order"] = "bulk_order"
    order_count: int
    order_ids: list[UUID] = Field(default_factory=list)


class RefundMetadata(BaseModel):
    type: Literal["refund"] = "refund"
    original_entry_id: UUID
    original_amount: Decimal
    refund_percentage: int
    reason: str = "order_cancellation"
    order_id: Optional[UUID] = None


class ReferralBonusMetadata(BaseModel):
    type: Literal["referral_bonus"] = "referral_bonus"
    referred_user_id: UUID


EntryMetadata = Annotated[
    Union[
        DepositMetadata,
        WithdrawalMetadata,
        OrderPaymentMetadata,
        BulkOrderMetadata,
        RefundMetadata,
        ReferralBonusMetadata,
    ],
    Field(discriminator="type"),
]

METADATA_FOR_KIND: dict[TransactionKind, tuple[type, ...]] = {
    TransactionKind.DEPOSIT: (DepositMetadata,),
    TransactionKind.WITHDRAWAL: (WithdrawalMetadata,),
    TransactionKind.ORDER_PAYMENT: (OrderPaymentMetadata, BulkOrderMetadata),
    TransactionKind.REFUND: (RefundMetadata,),
    TransactionKind.REFERRAL_BONUS: (ReferralBonusMetadata,),
}


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    kind: TransactionKind
    status: EntryStatus
    amount: Decimal
    balance_after: Optional[Decimal] = None
    reference_entry_id: Optional[UUID] = None
    refunded_amount: Decimal = Decimal("0")
    description: str = ""
    metadata: Optional[EntryMetadata] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_debit(self) -> bool:
        return self.amount < 0


class UserAccount(BaseModel):
    id: UUID
    name: str
    email: str
    balance: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    total_subscribers: int = 0
    referral_code: str
    referred_by: Optional[UUID] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: UUID
    balance: Decimal
    total_spent: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerSummary(BaseModel):
    total_deposits: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    total_refunded: Decimal = Decimal("0")


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal
    summary: LedgerSummary


class RegisterUserRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    referral_code: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Asha Creator",
            "email": "asha@example.com",
            "referral_code": "K3X9QZ"
        }
    })


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod = PaymentMethod.UPI
    gateway_order_id: Optional[str] = None


class CompleteDepositRequest(BaseModel):
    gateway_payment_id: Optional[str] = None


class FailDepositRequest(BaseModel):
    reason: str = Field(..., description="Reason reported by the payment gateway")


class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    upi_id: str = Field(..., min_length=3)


class ReferredUser(BaseModel):
    id: UUID
    name: str
    email: str
    total_spent: Decimal
    total_subscribers: int
    created_at: datetime


class ReferralStats(BaseModel):
    referral_code: str
    total_referrals: int = 0
    total_earnings: Decimal = Decimal("0")
    recent_referrals: list[ReferredUser] = Field(default_factory=list)


class PaymentMethodBreakdown(BaseModel):
    payment_method: PaymentMethod
    count: int
    amount: Decimal
