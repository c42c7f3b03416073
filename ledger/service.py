import threading
from datetime import datetime, timezone
from decimal import Decimal, ROUND_FLOOR
from typing import Optional, Union
from uuid import UUID, uuid4

import structlog

from common.config import Settings, get_settings
from .models import (
    TransactionKind,
    EntryStatus,
    PaymentMethod,
    LedgerEntry,
    UserAccount,
    UserBalance,
    LedgerSummary,
    LedgerHistoryResponse,
    ReferredUser,
    ReferralStats,
    PaymentMethodBreakdown,
    DepositMetadata,
    WithdrawalMetadata,
    RefundMetadata,
    ReferralBonusMetadata,
    METADATA_FOR_KIND,
)

logger = structlog.get_logger(__name__)

Amount = Union[Decimal, int, str]


class LedgerServiceError(Exception):
    pass


class InsufficientFundsError(LedgerServiceError):
    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        self.short_by = required - available
        super().__init__(
            f"Insufficient balance: required {required}, available {available}, short by {self.short_by}"
        )


class UserNotFoundError(LedgerServiceError):
    pass


class EntryNotFoundError(LedgerServiceError):
    pass


class InvalidStateTransitionError(LedgerServiceError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_amount(value: Amount) -> Decimal:
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    if amount <= 0:
        raise LedgerServiceError(f"Amount must be positive, got {amount}")
    return amount


class InMemoryStorage:
    def __init__(self):
        self.users: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.email_index: dict[str, UUID] = {}
        self.referral_index: dict[str, UUID] = {}
        self._locks: dict[UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.registration_lock = threading.Lock()

    def user_lock(self, user_id: UUID) -> threading.Lock:
        # Also taken from the event loop: critical sections must never block or await.
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None, settings: Optional[Settings] = None):
        self.storage = storage or InMemoryStorage()
        self.settings = settings or get_settings()

    # Accounts

    def register_user(self, name: str, email: str, referral_code: Optional[str] = None) -> UserAccount:
        normalized_email = email.strip().lower()
        referrer_id = None
        if referral_code:
            referrer_id = self.storage.referral_index.get(referral_code.strip().upper())

        user_id = uuid4()
        with self.storage.registration_lock:
            if normalized_email in self.storage.email_index:
                raise LedgerServiceError(f"User with email {normalized_email} already exists")
            user_data = {
                "id": user_id,
                "name": name.strip(),
                "email": normalized_email,
                "balance": Decimal("0"),
                "total_spent": Decimal("0"),
                "total_subscribers": 0,
                "referral_code": self._new_referral_code(),
                "referred_by": referrer_id,
                "created_at": _now(),
            }
            self.storage.users[user_id] = user_data
            self.storage.email_index[normalized_email] = user_id
            self.storage.referral_index[user_data["referral_code"]] = user_id
        logger.info("user registered", user_id=str(user_id), referred_by=str(referrer_id) if referrer_id else None)

        if referrer_id:
            self.credit(
                referrer_id,
                self.settings.referral_bonus,
                TransactionKind.REFERRAL_BONUS,
                metadata=ReferralBonusMetadata(referred_user_id=user_id),
                description=f"Referral bonus for {normalized_email}",
            )

        return UserAccount(**user_data)

    def get_account(self, user_id: UUID) -> UserAccount:
        return UserAccount(**self._require_user(user_id))

    def has_user(self, user_id: UUID) -> bool:
        return user_id in self.storage.users

    def record_subscribers_delivered(self, user_id: UUID, subscribers: int) -> None:
        with self.storage.user_lock(user_id):
            user = self._require_user(user_id)
            user["total_subscribers"] += subscribers

    # Balance mutations. Every path below goes through _apply under the user's lock.

    def debit(
        self,
        user_id: UUID,
        amount: Amount,
        kind: TransactionKind,
        metadata=None,
        description: str = "",
    ) -> LedgerEntry:
        amount = _to_amount(amount)
        self._check_metadata(kind, metadata)
        with self.storage.user_lock(user_id):
            entry = self._debit_locked(self._require_user(user_id), amount, kind, metadata, description)
        return LedgerEntry(**entry)

    def credit(
        self,
        user_id: UUID,
        amount: Amount,
        kind: TransactionKind,
        metadata=None,
        description: str = "",
    ) -> LedgerEntry:
        amount = _to_amount(amount)
        self._check_metadata(kind, metadata)
        with self.storage.user_lock(user_id):
            user = self._require_user(user_id)
            entry = self._apply(user, amount, kind, metadata, description)
        return LedgerEntry(**entry)

    def refund_entry(
        self,
        original_entry_id: UUID,
        refund_amount: Amount,
        reason: str = "order_cancellation",
        order_id: Optional[UUID] = None,
        restore_spent: bool = False,
    ) -> LedgerEntry:
        original = self.storage.ledger_entries.get(original_entry_id)
        if not original:
            raise EntryNotFoundError(f"Ledger entry {original_entry_id} not found")
        refund_amount = _to_amount(refund_amount)

        with self.storage.user_lock(original["user_id"]):
            if original["amount"] >= 0:
                raise LedgerServiceError(f"Ledger entry {original_entry_id} is not a debit")
            if original["status"] not in (EntryStatus.COMPLETED, EntryStatus.REFUNDED):
                raise InvalidStateTransitionError(
                    f"Cannot refund ledger entry in {original['status'].value} state"
                )
            paid = -original["amount"]
            if original["refunded_amount"] + refund_amount > paid:
                raise InvalidStateTransitionError(
                    f"Refund of {refund_amount} exceeds remaining refundable amount "
                    f"{paid - original['refunded_amount']} on entry {original_entry_id}"
                )

            user = self._require_user(original["user_id"])
            percentage = int((refund_amount * 100 / paid).to_integral_value(rounding=ROUND_FLOOR))
            metadata = RefundMetadata(
                original_entry_id=original_entry_id,
                original_amount=paid,
                refund_percentage=percentage,
                reason=reason,
                order_id=order_id,
            )
            entry = self._apply(
                user,
                refund_amount,
                TransactionKind.REFUND,
                metadata,
                f"Refund for cancelled order #{order_id}" if order_id else f"Refund of entry {original_entry_id}",
                reference_entry_id=original_entry_id,
            )
            original["refunded_amount"] += refund_amount
            original["status"] = EntryStatus.REFUNDED
            original["updated_at"] = entry["created_at"]
            if restore_spent and original["kind"] == TransactionKind.ORDER_PAYMENT:
                user["total_spent"] -= refund_amount

        logger.info(
            "entry refunded",
            original_entry_id=str(original_entry_id),
            refund_entry_id=str(entry["id"]),
            amount=str(refund_amount),
            reason=reason,
        )
        return LedgerEntry(**entry)

    # Payment-gateway collaborator

    def create_deposit(
        self,
        user_id: UUID,
        amount: Amount,
        payment_method: PaymentMethod = PaymentMethod.UPI,
        gateway_order_id: Optional[str] = None,
    ) -> LedgerEntry:
        amount = _to_amount(amount)
        if amount < self.settings.min_deposit:
            raise LedgerServiceError(f"Minimum deposit is {self.settings.min_deposit}")
        self._require_user(user_id)

        now = _now()
        entry_data = {
            "id": uuid4(),
            "user_id": user_id,
            "kind": TransactionKind.DEPOSIT,
            "status": EntryStatus.PENDING,
            "amount": amount,
            "balance_after": None,
            "reference_entry_id": None,
            "refunded_amount": Decimal("0"),
            "description": f"Deposit of {amount}",
            "metadata": DepositMetadata(payment_method=payment_method, gateway_order_id=gateway_order_id),
            "created_at": now,
            "updated_at": now,
        }
        self.storage.ledger_entries[entry_data["id"]] = entry_data
        logger.info("deposit created", entry_id=str(entry_data["id"]), user_id=str(user_id), amount=str(amount))
        return LedgerEntry(**entry_data)

    def complete_deposit(self, entry_id: UUID, gateway_payment_id: Optional[str] = None) -> LedgerEntry:
        entry = self._require_entry(entry_id)
        if entry["kind"] != TransactionKind.DEPOSIT:
            raise LedgerServiceError(f"Ledger entry {entry_id} is not a deposit")

        with self.storage.user_lock(entry["user_id"]):
            if entry["status"] == EntryStatus.COMPLETED:
                return LedgerEntry(**entry)
            if entry["status"] != EntryStatus.PENDING:
                raise InvalidStateTransitionError(f"Cannot complete deposit in {entry['status'].value} state")
            user = self._require_user(entry["user_id"])
            now = _now()
            user["balance"] += entry["amount"]
            entry["status"] = EntryStatus.COMPLETED
            entry["balance_after"] = user["balance"]
            entry["metadata"] = entry["metadata"].model_copy(
                update={"gateway_payment_id": gateway_payment_id, "confirmed_at": now}
            )
            entry["updated_at"] = now

        logger.info("deposit completed", entry_id=str(entry_id), user_id=str(entry["user_id"]))
        return LedgerEntry(**entry)

    def fail_deposit(self, entry_id: UUID, reason: str) -> LedgerEntry:
        entry = self._require_entry(entry_id)
        if entry["kind"] != TransactionKind.DEPOSIT:
            raise LedgerServiceError(f"Ledger entry {entry_id} is not a deposit")

        with self.storage.user_lock(entry["user_id"]):
            if entry["status"] != EntryStatus.PENDING:
                raise InvalidStateTransitionError(f"Cannot fail deposit in {entry['status'].value} state")
            entry["status"] = EntryStatus.FAILED
            entry["metadata"] = entry["metadata"].model_copy(update={"failure_reason": reason})
            entry["updated_at"] = _now()

        logger.warning("deposit failed", entry_id=str(entry_id), reason=reason)
        return LedgerEntry(**entry)

    def withdraw(self, user_id: UUID, amount: Amount, upi_id: str) -> LedgerEntry:
        amount = _to_amount(amount)
        if amount < self.settings.min_withdrawal:
            raise LedgerServiceError(f"Minimum withdrawal amount is {self.settings.min_withdrawal}")

        now = _now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        # The limit check and the debit share one critical section.
        with self.storage.user_lock(user_id):
            user = self._require_user(user_id)
            withdrawn_today = sum(
                (
                    -e["amount"] for e in list(self.storage.ledger_entries.values())
                    if e["user_id"] == user_id
                    and e["kind"] == TransactionKind.WITHDRAWAL
                    and e["status"] == EntryStatus.COMPLETED
                    and e["created_at"] >= start_of_day
                ),
                Decimal("0"),
            )
            if withdrawn_today + amount > self.settings.daily_withdrawal_limit:
                raise LedgerServiceError(
                    f"Daily withdrawal limit of {self.settings.daily_withdrawal_limit} exceeded"
                )
            entry = self._debit_locked(
                user,
                amount,
                TransactionKind.WITHDRAWAL,
                WithdrawalMetadata(upi_id=upi_id, requested_at=now, processed_at=now),
                f"Withdrawal to UPI: {upi_id}",
            )
        return LedgerEntry(**entry)

    # Queries

    def get_entry(self, entry_id: UUID) -> LedgerEntry:
        return LedgerEntry(**self._require_entry(entry_id))

    def get_balance(self, user_id: UUID) -> UserBalance:
        user = self._require_user(user_id)
        entries = [e for e in list(self.storage.ledger_entries.values()) if e["user_id"] == user_id]
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None

        return UserBalance(
            user_id=user_id,
            balance=user["balance"],
            total_spent=user["total_spent"],
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def get_ledger_history(
        self,
        user_id: UUID,
        kind: Optional[TransactionKind] = None,
        status: Optional[EntryStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> LedgerHistoryResponse:
        user = self._require_user(user_id)
        user_entries = [e for e in list(self.storage.ledger_entries.values()) if e["user_id"] == user_id]

        summary = LedgerSummary(
            total_deposits=sum(
                (e["amount"] for e in user_entries
                 if e["kind"] == TransactionKind.DEPOSIT and e["status"] == EntryStatus.COMPLETED),
                Decimal("0"),
            ),
            total_spent=sum(
                (-e["amount"] for e in user_entries if e["kind"] == TransactionKind.ORDER_PAYMENT),
                Decimal("0"),
            ),
            total_refunded=sum(
                (e["amount"] for e in user_entries if e["kind"] == TransactionKind.REFUND),
                Decimal("0"),
            ),
        )

        filtered = [
            LedgerEntry(**e) for e in user_entries
            if (kind is None or e["kind"] == kind) and (status is None or e["status"] == status)
        ]
        filtered.sort(key=lambda e: e.created_at, reverse=True)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=filtered[offset:offset + limit],
            total_count=len(filtered),
            current_balance=user["balance"],
            summary=summary,
        )

    def get_referral_stats(self, user_id: UUID, recent_limit: int = 10) -> ReferralStats:
        user = self._require_user(user_id)
        referred = [u for u in list(self.storage.users.values()) if u["referred_by"] == user_id]
        referred.sort(key=lambda u: u["created_at"], reverse=True)
        earnings = sum(
            (
                e["amount"] for e in list(self.storage.ledger_entries.values())
                if e["user_id"] == user_id and e["kind"] == TransactionKind.REFERRAL_BONUS
            ),
            Decimal("0"),
        )
        return ReferralStats(
            referral_code=user["referral_code"],
            total_referrals=len(referred),
            total_earnings=earnings,
            recent_referrals=[ReferredUser(**u) for u in referred[:recent_limit]],
        )

    def deposit_breakdown(self, user_id: UUID, since: Optional[datetime] = None) -> list[PaymentMethodBreakdown]:
        self._require_user(user_id)
        totals: dict[PaymentMethod, list] = {}
        for e in list(self.storage.ledger_entries.values()):
            if (
                e["user_id"] != user_id
                or e["kind"] != TransactionKind.DEPOSIT
                or e["status"] != EntryStatus.COMPLETED
                or (since is not None and e["created_at"] < since)
            ):
                continue
            method = e["metadata"].payment_method if e["metadata"] else PaymentMethod.UPI
            bucket = totals.setdefault(method, [0, Decimal("0")])
            bucket[0] += 1
            bucket[1] += e["amount"]
        return [
            PaymentMethodBreakdown(payment_method=method, count=count, amount=amount)
            for method, (count, amount) in totals.items()
        ]

    # Internals

    def _debit_locked(
        self,
        user: dict,
        amount: Decimal,
        kind: TransactionKind,
        metadata,
        description: str,
    ) -> dict:
        # Caller holds the user's lock.
        if user["balance"] < amount:
            logger.warning(
                "debit rejected",
                user_id=str(user["id"]),
                kind=kind.value,
                required=str(amount),
                available=str(user["balance"]),
            )
            raise InsufficientFundsError(required=amount, available=user["balance"])
        entry = self._apply(user, -amount, kind, metadata, description)
        if kind == TransactionKind.ORDER_PAYMENT:
            user["total_spent"] += amount
        return entry

    def _apply(
        self,
        user: dict,
        signed_amount: Decimal,
        kind: TransactionKind,
        metadata,
        description: str,
        reference_entry_id: Optional[UUID] = None,
    ) -> dict:
        # Caller holds the user's lock.
        new_balance = user["balance"] + signed_amount
        if new_balance < 0:
            raise InsufficientFundsError(required=-signed_amount, available=user["balance"])

        now = _now()
        entry_data = {
            "id": uuid4(),
            "user_id": user["id"],
            "kind": kind,
            "status": EntryStatus.COMPLETED,
            "amount": signed_amount,
            "balance_after": new_balance,
            "reference_entry_id": reference_entry_id,
            "refunded_amount": Decimal("0"),
            "description": description or f"{kind.value.replace('_', ' ').capitalize()} of {abs(signed_amount)}",
            "metadata": metadata,
            "created_at": now,
            "updated_at": now,
        }
        user["balance"] = new_balance
        self.storage.ledger_entries[entry_data["id"]] = entry_data

        logger.info(
            "ledger entry applied",
            entry_id=str(entry_data["id"]),
            user_id=str(user["id"]),
            kind=kind.value,
            amount=str(signed_amount),
            balance_after=str(new_balance),
        )
        return entry_data

    def _check_metadata(self, kind: TransactionKind, metadata) -> None:
        if metadata is None:
            return
        allowed = METADATA_FOR_KIND[kind]
        if not isinstance(metadata, allowed):
            raise LedgerServiceError(
                f"Metadata {type(metadata).__name__} does not match transaction kind {kind.value}"
            )

    def _require_user(self, user_id: UUID) -> dict:
        user = self.storage.users.get(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _require_entry(self, entry_id: UUID) -> dict:
        entry = self.storage.ledger_entries.get(entry_id)
        if not entry:
            raise EntryNotFoundError(f"Ledger entry {entry_id} not found")
        return entry

    def _new_referral_code(self) -> str:
        while True:
            code = uuid4().hex[:6].upper()
            if code not in self.storage.referral_index:
                return code
