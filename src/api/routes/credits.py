"""Credit endpoints — purchase confirmation, balance and history."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.api.deps import get_credit_ledger, require_user
from src.api.models.schemas import (
    CreditsBalanceResponse,
    CreditsConfirmRequest,
    CreditsConfirmResponse,
    CreditTransactionOut,
    CreditTransactionsResponse,
)
from src.core.types import CreditHolder, CreditHolderKind, CreditTransaction, User
from src.saas.credits import CreditLedger

router = APIRouter(prefix="/credits", tags=["credits"])


def _txn_out(txn: CreditTransaction) -> CreditTransactionOut:
    return CreditTransactionOut(
        id=txn.id,
        delta=txn.delta,
        kind=txn.kind,
        balance_after=txn.balance_after,
        reference=txn.reference,
        created_at=txn.created_at,
    )


@router.post("/confirm", response_model=CreditsConfirmResponse)
async def confirm_purchase(
    body: CreditsConfirmRequest,
    user: User = Depends(require_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditsConfirmResponse:
    """Apply a paid checkout session. Confirming the same session twice credits once."""
    result = await ledger.confirm_checkout(body.session_id, buyer_email=user.email)
    return CreditsConfirmResponse(
        balance=result.balance,
        already_applied=result.already_applied,
        transaction=_txn_out(result.transaction),
    )


@router.get("/balance", response_model=CreditsBalanceResponse)
async def get_balance(
    user: User = Depends(require_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditsBalanceResponse:
    balance = await ledger.balance(CreditHolder(CreditHolderKind.USER, user.id))
    return CreditsBalanceResponse(balance=balance)


@router.get("/transactions", response_model=CreditTransactionsResponse)
async def list_transactions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user: User = Depends(require_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditTransactionsResponse:
    rows, total = await ledger.history(
        CreditHolder(CreditHolderKind.USER, user.id), page=page, per_page=limit
    )
    return CreditTransactionsResponse(
        transactions=[_txn_out(t) for t in rows],
        page=page,
        limit=limit,
        total=total,
    )
