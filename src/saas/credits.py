"""Prepaid credit balances and their transaction ledger."""

from __future__ import annotations

from typing import Any

from src.core.constants import (
    CREDITS_ERROR,
    FORBIDDEN,
    INSUFFICIENT_CREDITS,
    PAYMENT_NOT_COMPLETED,
)
from src.core.exceptions import AuthorizationError, PaymentError, map_store_errors
from src.core.interfaces import BaseStore, CheckoutVerifier
from src.core.logging import get_logger
from src.core.types import (
    CreditHolder,
    CreditHolderKind,
    CreditPurchaseResult,
    CreditTransaction,
)

log = get_logger(__name__)


class CreditLedger:
    """Balance reads, idempotent purchases and floor-checked spends."""

    def __init__(self, store: BaseStore, checkout: CheckoutVerifier | None = None) -> None:
        self._store = store
        self._checkout = checkout

    async def balance(self, holder: CreditHolder) -> int:
        with map_store_errors(CREDITS_ERROR, "Failed to read credit balance"):
            return await self._store.get_credit_balance(holder)

    async def spend(
        self,
        holder: CreditHolder,
        amount: int = 1,
        metadata: dict[str, Any] | None = None,
    ) -> CreditTransaction:
        """Take ``amount`` credits. Never lets a balance go negative."""
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        with map_store_errors(CREDITS_ERROR, "Failed to spend credits"):
            txn = await self._store.spend_credits(holder, amount, metadata)
        if txn is None:
            raise PaymentError(
                "Not enough credits",
                code=INSUFFICIENT_CREDITS,
                context={"holder": holder.id, "amount": amount},
            )
        log.info(
            "credits_spent",
            holder_kind=holder.kind.value,
            holder_id=holder.id,
            amount=amount,
            balance=txn.balance_after,
        )
        return txn

    async def purchase(
        self,
        holder: CreditHolder,
        amount: int,
        reference: str,
    ) -> CreditPurchaseResult:
        """Add ``amount`` credits at most once per ``reference``."""
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        with map_store_errors(CREDITS_ERROR, "Failed to apply credit purchase"):
            txn, applied = await self._store.apply_credit_purchase(holder, amount, reference)
            balance = await self._store.get_credit_balance(holder)

        if applied:
            log.info(
                "credits_purchased",
                holder_kind=holder.kind.value,
                holder_id=holder.id,
                amount=amount,
                reference=reference,
                balance=balance,
            )
        else:
            log.info("credits_purchase_replayed", holder_id=holder.id, reference=reference)
        return CreditPurchaseResult(transaction=txn, balance=balance, already_applied=not applied)

    async def confirm_checkout(
        self,
        session_id: str,
        buyer_email: str | None = None,
    ) -> CreditPurchaseResult:
        """Credit the buyer of a completed checkout session.

        The session id is the idempotency key: confirming twice credits once.
        When ``buyer_email`` is given the session must belong to that address.
        """
        if self._checkout is None:
            raise PaymentError("Payments are not configured", code=CREDITS_ERROR, status_code=500)

        session = await self._checkout.retrieve_checkout(session_id)
        if not session.paid:
            raise PaymentError(
                "Payment has not been completed",
                code=PAYMENT_NOT_COMPLETED,
                status_code=400,
            )
        if not session.email or session.credits <= 0:
            raise PaymentError(
                "Checkout session has no buyer or credit amount",
                code=PAYMENT_NOT_COMPLETED,
                status_code=400,
            )

        if buyer_email and session.email.lower() != buyer_email.lower():
            log.warning("checkout_email_mismatch", session_id=session_id)
            raise AuthorizationError("Checkout session belongs to another account", code=FORBIDDEN)

        return await self.confirm_purchase(session.email, session.credits, reference=session_id)

    async def confirm_purchase(self, email: str, amount: int, reference: str) -> CreditPurchaseResult:
        """Credit the identity behind ``email``, creating it on first purchase."""
        with map_store_errors(CREDITS_ERROR, "Failed to apply credit purchase"):
            user = await self._store.get_or_create_user(email)
        holder = CreditHolder(CreditHolderKind.USER, user.id)
        return await self.purchase(holder, amount, reference=reference)

    async def history(
        self,
        holder: CreditHolder,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[CreditTransaction], int]:
        page = max(page, 1)
        per_page = min(max(per_page, 1), 100)
        with map_store_errors(CREDITS_ERROR, "Failed to fetch transactions"):
            return await self._store.list_credit_transactions(
                holder, offset=(page - 1) * per_page, limit=per_page
            )
