from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import current_user_id, get_ledger_service
from .models import (
    RegisterUserRequest, DepositRequest, CompleteDepositRequest, FailDepositRequest, WithdrawRequest,
    UserAccount, UserBalance, LedgerEntry, LedgerHistoryResponse, ReferralStats, TransactionKind, EntryStatus,
)
from .service import (
    LedgerService, LedgerServiceError, InsufficientFundsError,
    EntryNotFoundError, InvalidStateTransitionError,
)

router = APIRouter()


def insufficient_funds_response(e: InsufficientFundsError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "message": "Insufficient balance. Please deposit funds.",
            "required_amount": str(e.required),
            "current_balance": str(e.available),
            "short_by": str(e.short_by),
        },
    )


@router.post("/users", response_model=UserAccount, status_code=status.HTTP_201_CREATED, tags=["Users"])
def register_user(request: RegisterUserRequest, ledger: LedgerService = Depends(get_ledger_service)) -> UserAccount:
    try:
        return ledger.register_user(request.name, request.email, request.referral_code)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/users/me", response_model=UserAccount, tags=["Users"])
def get_me(
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UserAccount:
    return ledger.get_account(user_id)


@router.get("/users/me/balance", response_model=UserBalance, tags=["Users"])
def get_my_balance(
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UserBalance:
    return ledger.get_balance(user_id)


@router.get("/users/me/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_my_ledger(
    kind: Optional[TransactionKind] = None,
    entry_status: Optional[EntryStatus] = None,
    limit: int = 50,
    offset: int = 0,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerHistoryResponse:
    return ledger.get_ledger_history(user_id, kind, entry_status, limit, offset)


@router.get("/users/me/referrals", response_model=ReferralStats, tags=["Users"])
def get_my_referrals(
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ReferralStats:
    return ledger.get_referral_stats(user_id)


@router.post("/payments/deposits", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def create_deposit(
    request: DepositRequest,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.create_deposit(user_id, request.amount, request.payment_method, request.gateway_order_id)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/payments/deposits/{entry_id}/complete", response_model=LedgerEntry, tags=["Payments"])
def complete_deposit(
    entry_id: UUID,
    request: CompleteDepositRequest,
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.complete_deposit(entry_id, request.gateway_payment_id)
    except EntryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {entry_id} not found")
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/payments/deposits/{entry_id}/fail", response_model=LedgerEntry, tags=["Payments"])
def fail_deposit(
    entry_id: UUID,
    request: FailDepositRequest,
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.fail_deposit(entry_id, request.reason)
    except EntryNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Transaction {entry_id} not found")
    except InvalidStateTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/payments/withdrawals", response_model=LedgerEntry, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def withdraw(
    request: WithdrawRequest,
    user_id: UUID = Depends(current_user_id),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerEntry:
    try:
        return ledger.withdraw(user_id, request.amount, request.upi_id)
    except InsufficientFundsError as e:
        raise insufficient_funds_response(e)
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
