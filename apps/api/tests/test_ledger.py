import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from models.credit_transaction import CreditTransaction
from services.errors import DataIntegrityError, InsufficientBalanceError, InvalidRequestError
from services.ledger import Ledger, refund_reference


async def _funded_ledger(session_maker, user_id="ledger-user", amount="100"):
    ledger = Ledger(session_maker)
    await ledger.ensure_account(user_id)
    await ledger.grant(user_id, amount, f"seed:{user_id}")
    return ledger


async def _transaction_count(session_maker, user_id, transaction_type=None):
    query = select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)
    if transaction_type:
        query = query.where(CreditTransaction.transaction_type == transaction_type)
    async with session_maker() as db:
        return (await db.execute(query)).scalar_one()


@pytest.mark.asyncio
async def test_debit_and_refund_keep_balance_equal_to_purchased_minus_used(session_maker):
    ledger = await _funded_ledger(session_maker)

    await ledger.debit("ledger-user", "30", "report-1")
    state = await ledger.verify_invariants("ledger-user")
    assert state["balance"] == Decimal("70.00")
    assert state["total_used"] == Decimal("30.00")

    await ledger.debit("ledger-user", "25.50", "report-2")
    await ledger.refund("ledger-user", "30", "report-1")
    state = await ledger.verify_invariants("ledger-user")
    assert state["balance"] == Decimal("74.50")
    assert state["total_purchased"] - state["total_used"] == state["balance"]

    original = await ledger.get_transaction("report-1")
    assert original.status == "REFUNDED"
    assert (await ledger.get_transaction(refund_reference("report-1"))).transaction_type == "REFUND"


@pytest.mark.asyncio
async def test_concurrent_debits_never_overspend(session_maker):
    ledger = await _funded_ledger(session_maker, amount="100")

    async def attempt(index):
        try:
            await ledger.debit("ledger-user", "30", f"concurrent-{index}")
            return True
        except InsufficientBalanceError:
            return False

    outcomes = await asyncio.gather(*(attempt(index) for index in range(10)))

    assert outcomes.count(True) == 3
    assert outcomes.count(False) == 7
    assert await ledger.balance("ledger-user") == Decimal("10.00")
    assert await _transaction_count(session_maker, "ledger-user", "USAGE") == 3
    await ledger.verify_invariants("ledger-user")


@pytest.mark.asyncio
async def test_debit_is_idempotent_per_reference(session_maker):
    ledger = await _funded_ledger(session_maker)

    first = await ledger.debit("ledger-user", "30", "report-dup")
    second = await ledger.debit("ledger-user", "30", "report-dup")

    assert first == second
    assert await ledger.balance("ledger-user") == Decimal("70.00")
    assert await _transaction_count(session_maker, "ledger-user", "USAGE") == 1


@pytest.mark.asyncio
async def test_refund_is_applied_at_most_once(session_maker):
    ledger = await _funded_ledger(session_maker)
    await ledger.debit("ledger-user", "30", "report-refund")

    first = await ledger.refund("ledger-user", "30", "report-refund")
    second = await ledger.refund("ledger-user", "30", "report-refund")

    assert first == second
    assert await ledger.balance("ledger-user") == Decimal("100.00")
    assert await _transaction_count(session_maker, "ledger-user", "REFUND") == 1


@pytest.mark.asyncio
async def test_insufficient_balance_reports_available_credits(session_maker):
    ledger = await _funded_ledger(session_maker, amount="20")

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.debit("ledger-user", "30", "too-expensive")

    assert exc_info.value.available == Decimal("20.00")
    assert await ledger.get_transaction("too-expensive") is None
    assert await ledger.balance("ledger-user") == Decimal("20.00")


@pytest.mark.asyncio
async def test_refund_without_matching_debit_is_rejected(session_maker):
    ledger = await _funded_ledger(session_maker)

    with pytest.raises(DataIntegrityError):
        await ledger.refund("ledger-user", "30", "never-debited")

    await ledger.debit("ledger-user", "30", "someone-elses")
    await ledger.ensure_account("other-user")
    with pytest.raises(DataIntegrityError):
        await ledger.refund("other-user", "30", "someone-elses")

    with pytest.raises(DataIntegrityError):
        await ledger.refund("ledger-user", "45", "someone-elses")

    assert await ledger.balance("ledger-user") == Decimal("70.00")
    assert await ledger.balance("other-user") == Decimal("0.00")


@pytest.mark.asyncio
async def test_amounts_must_be_positive(session_maker):
    ledger = await _funded_ledger(session_maker)

    for amount in ("0", "-5", "abc"):
        with pytest.raises(InvalidRequestError):
            await ledger.debit("ledger-user", amount, f"bad-{amount}")

    with pytest.raises(InvalidRequestError):
        await ledger.grant("ledger-user", "10", "grant-usage", transaction_type="USAGE")


@pytest.mark.asyncio
async def test_summary_lists_recent_transactions(session_maker):
    ledger = await _funded_ledger(session_maker)
    await ledger.debit("ledger-user", "49", "paint-report", description="PAINT_ANALYSIS report")

    summary = await ledger.summary("ledger-user")

    assert summary["balance"] == "51.00"
    assert summary["total_purchased"] == "100.00"
    assert summary["total_used"] == "49.00"
    assert "PAINT_ANALYSIS" in summary["costs"]
    references = {entry["reference_id"] for entry in summary["recent_transactions"]}
    assert references == {"seed:ledger-user", "paint-report"}


@pytest.mark.asyncio
async def test_grant_without_credit_account_is_rejected(session_maker):
    ledger = Ledger(session_maker)

    with patch.object(Ledger, "ensure_account", AsyncMock(return_value=None)):
        with pytest.raises(DataIntegrityError):
            await ledger.grant("no-account", "50", "purchase:no-account")

    assert await _transaction_count(session_maker, "no-account") == 0
    assert await ledger.get_transaction("purchase:no-account") is None
