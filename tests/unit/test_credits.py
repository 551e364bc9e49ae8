"""Tests for the credit ledger: idempotent purchases and floor-checked spends."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from src.core.exceptions import AuthorizationError, InfrastructureError, PaymentError
from src.core.exceptions import StoreError
from src.core.types import CheckoutSession, CreditHolder, CreditHolderKind
from src.data.memory_store import InMemoryStore
from src.saas.credits import CreditLedger


def _checkout(paid: bool = True, email: str | None = "buyer@example.com", credits: int = 10):
    verifier = AsyncMock()
    verifier.retrieve_checkout.return_value = CheckoutSession(
        session_id="cs_1", paid=paid, email=email, credits=credits
    )
    return verifier


async def _user_holder(store: InMemoryStore, email: str = "buyer@example.com") -> CreditHolder:
    user = await store.get_or_create_user(email)
    return CreditHolder(CreditHolderKind.USER, user.id)


class TestPurchase:
    @pytest.mark.asyncio
    async def test_purchase_credits_once_per_reference(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store)
        holder = await _user_holder(store)

        first = await ledger.purchase(holder, 10, reference="cs_1")
        second = await ledger.purchase(holder, 10, reference="cs_1")

        assert first.balance == 10
        assert first.already_applied is False
        assert second.balance == 10
        assert second.already_applied is True
        assert second.transaction.id == first.transaction.id

    @pytest.mark.asyncio
    async def test_distinct_references_accumulate(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store)
        holder = await _user_holder(store)
        await ledger.purchase(holder, 10, reference="cs_1")
        result = await ledger.purchase(holder, 5, reference="cs_2")
        assert result.balance == 15
        assert result.transaction.balance_after == 15

    @pytest.mark.asyncio
    async def test_non_positive_amount_rejected(self, store: InMemoryStore) -> None:
        holder = await _user_holder(store)
        with pytest.raises(ValueError):
            await CreditLedger(store).purchase(holder, 0, reference="cs_1")


class TestSpend:
    @pytest.mark.asyncio
    async def test_spend_decrements(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store)
        holder = await _user_holder(store)
        await ledger.purchase(holder, 2, reference="cs_1")

        txn = await ledger.spend(holder, 1, metadata={"site_hash": "h1"})
        assert txn.delta == -1
        assert txn.balance_after == 1
        assert txn.metadata == {"site_hash": "h1"}
        assert await ledger.balance(holder) == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance_leaves_balance_unchanged(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store)
        holder = await _user_holder(store)
        await ledger.purchase(holder, 1, reference="cs_1")

        with pytest.raises(PaymentError) as exc_info:
            await ledger.spend(holder, 2)
        assert exc_info.value.code == "INSUFFICIENT_CREDITS"
        assert exc_info.value.status_code == 402
        assert await ledger.balance(holder) == 1

    @pytest.mark.asyncio
    async def test_unknown_holder_has_zero_balance(self, store: InMemoryStore) -> None:
        holder = CreditHolder(CreditHolderKind.ORGANIZATION, "missing")
        assert await CreditLedger(store).balance(holder) == 0

    @pytest.mark.asyncio
    async def test_store_failure_maps_to_credits_error(self) -> None:
        broken = AsyncMock()
        broken.get_credit_balance.side_effect = StoreError("connection refused")
        with pytest.raises(InfrastructureError) as exc_info:
            await CreditLedger(broken).balance(CreditHolder(CreditHolderKind.USER, "u"))
        assert exc_info.value.code == "CREDITS_ERROR"
        assert exc_info.value.status_code == 500


class TestConfirmCheckout:
    @pytest.mark.asyncio
    async def test_paid_session_credits_buyer(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout())
        result = await ledger.confirm_checkout("cs_1")
        assert result.balance == 10
        user = await store.find_user_by_email("buyer@example.com")
        assert user is not None
        assert user.credits_balance == 10

    @pytest.mark.asyncio
    async def test_confirming_twice_credits_once(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout())
        await ledger.confirm_checkout("cs_1")
        again = await ledger.confirm_checkout("cs_1")
        assert again.already_applied is True
        assert again.balance == 10

    @pytest.mark.asyncio
    async def test_unpaid_session_rejected(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout(paid=False))
        with pytest.raises(PaymentError) as exc_info:
            await ledger.confirm_checkout("cs_1")
        assert exc_info.value.code == "PAYMENT_NOT_COMPLETED"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_session_without_credits_rejected(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout(credits=0))
        with pytest.raises(PaymentError):
            await ledger.confirm_checkout("cs_1")

    @pytest.mark.asyncio
    async def test_session_of_another_buyer_rejected(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout())
        with pytest.raises(AuthorizationError) as exc_info:
            await ledger.confirm_checkout("cs_1", buyer_email="someone@example.com")
        assert exc_info.value.code == "FORBIDDEN"
        assert await store.find_user_by_email("buyer@example.com") is None

    @pytest.mark.asyncio
    async def test_buyer_email_match_is_case_insensitive(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store, checkout=_checkout())
        result = await ledger.confirm_checkout("cs_1", buyer_email="Buyer@Example.com")
        assert result.balance == 10

    @pytest.mark.asyncio
    async def test_no_verifier_configured(self, store: InMemoryStore) -> None:
        with pytest.raises(PaymentError) as exc_info:
            await CreditLedger(store).confirm_checkout("cs_1")
        assert exc_info.value.status_code == 500


class TestHistory:
    @pytest.mark.asyncio
    async def test_newest_first_with_paging(self, store: InMemoryStore) -> None:
        ledger = CreditLedger(store)
        holder = await _user_holder(store)
        for i in range(3):
            await ledger.purchase(holder, 1, reference=f"cs_{i}")

        rows, total = await ledger.history(holder, page=1, per_page=2)
        assert total == 3
        assert [r.reference for r in rows] == ["cs_2", "cs_1"]

        rows, _ = await ledger.history(holder, page=2, per_page=2)
        assert [r.reference for r in rows] == ["cs_0"]

    @pytest.mark.asyncio
    async def test_page_size_is_clamped(self) -> None:
        fake = AsyncMock()
        fake.list_credit_transactions.return_value = ([], 0)
        holder = CreditHolder(CreditHolderKind.USER, "u")
        await CreditLedger(fake).history(holder, page=0, per_page=500)
        fake.list_credit_transactions.assert_awaited_once_with(holder, offset=0, limit=100)
