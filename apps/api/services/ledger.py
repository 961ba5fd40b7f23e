"""Credit ledger: the only writer of credit balances and credit transactions.

Every state-changing call runs in one database transaction and appends exactly one
``CreditTransaction`` row. Balance checks are folded into a conditional UPDATE so two
concurrent debits for the same user can never both pass a stale read.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import report_costs
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from models.enums import TransactionStatus, TransactionType
from models.user import User
from models.user_credits import UserCredits
from services.errors import DataIntegrityError, InsufficientBalanceError, InvalidRequestError

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
SIGNED_TYPES = {
    TransactionType.USAGE.value: Decimal("-1"),
    TransactionType.REFUND.value: Decimal("1"),
    TransactionType.PURCHASE.value: Decimal("1"),
    TransactionType.BONUS.value: Decimal("1"),
}
GRANT_TYPES = (TransactionType.PURCHASE.value, TransactionType.BONUS.value)


def to_credit_amount(value: Any) -> Decimal:
    """Normalize a positive credit amount to two decimal places."""
    try:
        amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequestError(f"Invalid credit amount: {value!r}") from exc
    if amount <= 0:
        raise InvalidRequestError("amount must be greater than 0")
    return amount


def refund_reference(reference_id: str) -> str:
    return f"refund:{reference_id}"


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "type": entry.transaction_type,
        "amount": str(_decimal(entry.amount)),
        "status": entry.status,
        "reference_id": entry.reference_id,
        "description": entry.description,
        "balance_after": str(_decimal(entry.balance_after)) if entry.balance_after is not None else None,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


class Ledger:
    """Debit/refund/grant operations against per-user credit balances."""

    def __init__(self, session_maker: Optional[async_sessionmaker] = None):
        self._session_maker = session_maker or async_session_maker

    async def ensure_account(self, user_id: str, email: Optional[str] = None) -> None:
        """Create the user and an empty balance row if they do not exist yet."""
        try:
            async with self._session_maker() as db:
                async with db.begin():
                    user = await db.get(User, user_id)
                    if user is None:
                        db.add(User(id=user_id, email=email or f"{user_id}@local.invalid"))
                        await db.flush()
                    account = await db.get(UserCredits, user_id)
                    if account is None:
                        db.add(
                            UserCredits(
                                user_id=user_id,
                                balance=Decimal("0"),
                                total_purchased=Decimal("0"),
                                total_used=Decimal("0"),
                            )
                        )
        except IntegrityError:
            # Lost a get-or-create race; the winner created the same rows.
            logger.debug("Account %s created concurrently", user_id)

    async def balance(self, user_id: str) -> Decimal:
        async with self._session_maker() as db:
            return await self._current_balance(db, user_id)

    async def debit(
        self,
        user_id: str,
        amount: Any,
        reference_id: str,
        description: Optional[str] = None,
    ) -> str:
        """Charge ``amount`` once per ``reference_id``; returns the USAGE transaction id."""
        debit_amount = to_credit_amount(amount)
        if not reference_id:
            raise InvalidRequestError("reference_id is required for debits")

        try:
            async with self._session_maker() as db:
                async with db.begin():
                    existing = await self._find_by_reference(db, reference_id)
                    if existing is not None:
                        return self._replayed_debit(existing, user_id)

                    result = await db.execute(
                        update(UserCredits)
                        .where(
                            UserCredits.user_id == user_id,
                            UserCredits.balance >= debit_amount,
                        )
                        .values(
                            balance=UserCredits.balance - debit_amount,
                            total_used=UserCredits.total_used + debit_amount,
                            updated_at=func.now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        available = await self._current_balance(db, user_id)
                        raise InsufficientBalanceError(user_id, debit_amount, available)

                    entry = CreditTransaction(
                        user_id=user_id,
                        transaction_type=TransactionType.USAGE.value,
                        amount=debit_amount,
                        status=TransactionStatus.COMPLETED.value,
                        reference_id=reference_id,
                        description=description,
                        balance_after=await self._current_balance(db, user_id),
                    )
                    db.add(entry)
                    await db.flush()
                    transaction_id = entry.id
        except IntegrityError:
            existing = await self._lookup_reference(reference_id)
            if existing is None:
                raise
            return self._replayed_debit(existing, user_id)

        logger.info("Debited %s credits from user %s (reference=%s)", debit_amount, user_id, reference_id)
        return transaction_id

    async def refund(
        self,
        user_id: str,
        amount: Any,
        reference_id: str,
        description: Optional[str] = None,
    ) -> str:
        """Return credits for the USAGE transaction ``reference_id``, at most once."""
        refund_amount = to_credit_amount(amount)
        refund_ref = refund_reference(reference_id)

        try:
            async with self._session_maker() as db:
                async with db.begin():
                    original = await self._find_by_reference(db, reference_id)
                    if (
                        original is None
                        or original.user_id != user_id
                        or original.transaction_type != TransactionType.USAGE.value
                    ):
                        logger.error(
                            "Refund rejected: no USAGE transaction %s for user %s",
                            reference_id,
                            user_id,
                        )
                        raise DataIntegrityError(f"No debit {reference_id} to refund for user {user_id}")

                    existing = await self._find_by_reference(db, refund_ref)
                    if existing is not None:
                        logger.info("Refund for %s already applied (%s)", reference_id, existing.id)
                        return existing.id

                    if refund_amount > _decimal(original.amount):
                        logger.error(
                            "Refund rejected: %s exceeds original debit %s for %s",
                            refund_amount,
                            original.amount,
                            reference_id,
                        )
                        raise DataIntegrityError(f"Refund amount exceeds debit {reference_id}")

                    result = await db.execute(
                        update(UserCredits)
                        .where(UserCredits.user_id == user_id)
                        .values(
                            balance=UserCredits.balance + refund_amount,
                            total_used=UserCredits.total_used - refund_amount,
                            updated_at=func.now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.error("Refund rejected: user %s has no credit account", user_id)
                        raise DataIntegrityError(f"User {user_id} has no credit account")

                    original.status = TransactionStatus.REFUNDED.value
                    entry = CreditTransaction(
                        user_id=user_id,
                        transaction_type=TransactionType.REFUND.value,
                        amount=refund_amount,
                        status=TransactionStatus.COMPLETED.value,
                        reference_id=refund_ref,
                        description=description,
                        balance_after=await self._current_balance(db, user_id),
                    )
                    db.add(entry)
                    await db.flush()
                    transaction_id = entry.id
        except IntegrityError:
            existing = await self._lookup_reference(refund_ref)
            if existing is None:
                raise
            return existing.id

        logger.info("Refunded %s credits to user %s (reference=%s)", refund_amount, user_id, reference_id)
        return transaction_id

    async def grant(
        self,
        user_id: str,
        amount: Any,
        reference_id: str,
        transaction_type: str = TransactionType.PURCHASE.value,
        description: Optional[str] = None,
    ) -> str:
        """Add purchased or bonus credits once per ``reference_id``."""
        grant_amount = to_credit_amount(amount)
        transaction_type = getattr(transaction_type, "value", transaction_type)
        if transaction_type not in GRANT_TYPES:
            raise InvalidRequestError("Only PURCHASE and BONUS credits can be granted")

        await self.ensure_account(user_id)
        try:
            async with self._session_maker() as db:
                async with db.begin():
                    existing = await self._find_by_reference(db, reference_id)
                    if existing is not None:
                        if existing.user_id != user_id or existing.transaction_type != transaction_type:
                            logger.error("Grant reference %s reused across users or types", reference_id)
                            raise DataIntegrityError(f"Reference {reference_id} already used")
                        return existing.id

                    result = await db.execute(
                        update(UserCredits)
                        .where(UserCredits.user_id == user_id)
                        .values(
                            balance=UserCredits.balance + grant_amount,
                            total_purchased=UserCredits.total_purchased + grant_amount,
                            updated_at=func.now(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        logger.error("Grant rejected: user %s has no credit account", user_id)
                        raise DataIntegrityError(f"User {user_id} has no credit account")
                    entry = CreditTransaction(
                        user_id=user_id,
                        transaction_type=transaction_type,
                        amount=grant_amount,
                        status=TransactionStatus.COMPLETED.value,
                        reference_id=reference_id,
                        description=description,
                        balance_after=await self._current_balance(db, user_id),
                    )
                    db.add(entry)
                    await db.flush()
                    transaction_id = entry.id
        except IntegrityError:
            existing = await self._lookup_reference(reference_id)
            if existing is None:
                raise
            return existing.id

        logger.info("Granted %s %s credits to user %s", grant_amount, transaction_type, user_id)
        return transaction_id

    async def get_transaction(self, reference_id: str) -> Optional[CreditTransaction]:
        return await self._lookup_reference(reference_id)

    async def transactions(self, user_id: str, limit: int = 30) -> List[CreditTransaction]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(max(int(limit), 1))
            )
            return list(result.scalars().all())

    async def summary(self, user_id: str) -> Dict[str, Any]:
        async with self._session_maker() as db:
            account = await db.get(UserCredits, user_id)
        entries = await self.transactions(user_id, limit=30)
        return {
            "balance": str(_decimal(account.balance if account else 0)),
            "total_purchased": str(_decimal(account.total_purchased if account else 0)),
            "total_used": str(_decimal(account.total_used if account else 0)),
            "costs": {report_type: str(cost) for report_type, cost in report_costs().items()},
            "recent_transactions": [serialize_transaction(entry) for entry in entries],
        }

    async def verify_invariants(self, user_id: str) -> Dict[str, Decimal]:
        """Check balance == purchased - used and balance == signed transaction sum."""
        async with self._session_maker() as db:
            account = await db.get(UserCredits, user_id)
            result = await db.execute(
                select(CreditTransaction.transaction_type, CreditTransaction.amount).where(
                    CreditTransaction.user_id == user_id,
                    CreditTransaction.status.in_(
                        (TransactionStatus.COMPLETED.value, TransactionStatus.REFUNDED.value)
                    ),
                )
            )
            rows = result.all()

        balance = _decimal(account.balance if account else 0)
        purchased = _decimal(account.total_purchased if account else 0)
        used = _decimal(account.total_used if account else 0)
        signed_total = sum(
            (SIGNED_TYPES[row.transaction_type] * _decimal(row.amount) for row in rows),
            Decimal("0.00"),
        )

        if balance != purchased - used or balance != signed_total:
            logger.error(
                "Ledger invariant broken for user %s: balance=%s purchased=%s used=%s signed=%s",
                user_id,
                balance,
                purchased,
                used,
                signed_total,
            )
            raise DataIntegrityError(f"Ledger invariant broken for user {user_id}")
        return {
            "balance": balance,
            "total_purchased": purchased,
            "total_used": used,
            "signed_total": signed_total,
        }

    async def _current_balance(self, db: AsyncSession, user_id: str) -> Decimal:
        result = await db.execute(select(UserCredits.balance).where(UserCredits.user_id == user_id))
        return _decimal(result.scalar_one_or_none())

    async def _find_by_reference(self, db: AsyncSession, reference_id: str) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(CreditTransaction.reference_id == reference_id)
        )
        return result.scalar_one_or_none()

    async def _lookup_reference(self, reference_id: str) -> Optional[CreditTransaction]:
        async with self._session_maker() as db:
            return await self._find_by_reference(db, reference_id)

    def _replayed_debit(self, existing: CreditTransaction, user_id: str) -> str:
        if existing.user_id != user_id or existing.transaction_type != TransactionType.USAGE.value:
            logger.error("Debit reference %s already used by another user or type", existing.reference_id)
            raise DataIntegrityError(f"Reference {existing.reference_id} already used")
        if existing.status not in (TransactionStatus.COMPLETED.value, TransactionStatus.REFUNDED.value):
            raise DataIntegrityError(f"Debit {existing.reference_id} is in state {existing.status}")
        logger.info("Debit %s already applied; returning %s", existing.reference_id, existing.id)
        return existing.id
