"""Startup sweeps that settle reports left behind by crashes."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_transaction import CreditTransaction
from models.enums import ReportStatus, TransactionStatus, TransactionType
from models.report import Report
from services.errors import InvalidTransitionError
from services.job_queue import JobQueue
from services.ledger import Ledger
from services.report_store import ReportStore

logger = logging.getLogger(__name__)

DEAD_LETTER_REASON = "Analysis failed after repeated attempts. Your credits were refunded."


async def requeue_orphaned_reports(
    max_age_minutes: Optional[int] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """Re-enqueue PENDING/PROCESSING reports that have no queue entry."""
    minutes = int(settings.STALLED_REPORT_MAX_AGE_MINUTES if max_age_minutes is None else max_age_minutes)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(minutes, 0))
    reports = ReportStore(session_maker)
    queue = JobQueue(session_maker)

    requeued = 0
    stale = await reports.list_by_status(
        (ReportStatus.PENDING.value, ReportStatus.PROCESSING.value),
        updated_before=cutoff,
    )
    for report in stale:
        if await queue.get_for_report(report.id) is not None:
            continue
        # Resume numbering past the last delivery so the new job can take PROCESSING over.
        await queue.enqueue(report.id, report.report_type, start_attempt=report.processing_attempt)
        requeued += 1
        logger.warning("Re-enqueued orphaned report %s (%s)", report.id, report.status)
    return requeued


async def settle_dead_letters(session_maker: Optional[async_sessionmaker] = None) -> int:
    """Fail and refund reports whose jobs were dead-lettered, then drop the jobs."""
    reports = ReportStore(session_maker)
    queue = JobQueue(session_maker)
    ledger = Ledger(session_maker)

    settled = 0
    for job in await queue.dead_letters():
        report = await reports.load(job.report_id)
        if report is not None and report.status not in (ReportStatus.COMPLETED.value, ReportStatus.FAILED.value):
            fence = max(job.attempt, int(report.processing_attempt or 0)) + 1
            try:
                await reports.claim(report.id, fence)
                report = await reports.fail(report.id, fence, DEAD_LETTER_REASON)
            except InvalidTransitionError as exc:
                logger.warning("Dead letter for report %s not settled: %s", report.id, exc)
                continue
        if report is not None and report.status == ReportStatus.FAILED.value:
            await ledger.refund(report.user_id, report.cost, report.id, description="Refund for failed report")
        await queue.discard(job)
        settled += 1
    return settled


async def reconcile_failed_refunds(session_maker: Optional[async_sessionmaker] = None) -> int:
    """Refund FAILED reports whose debit was never refunded (crash between fail and refund)."""
    reports = ReportStore(session_maker)
    ledger = Ledger(session_maker)

    refunded = 0
    for report in await reports.list_by_status((ReportStatus.FAILED.value,)):
        debit = await ledger.get_transaction(report.id)
        if debit is None:
            logger.error("FAILED report %s has no debit transaction", report.id)
            continue
        if debit.transaction_type != TransactionType.USAGE.value:
            logger.error("Report %s reference points at a %s transaction", report.id, debit.transaction_type)
            continue
        if debit.status == TransactionStatus.REFUNDED.value:
            continue
        await ledger.refund(report.user_id, report.cost, report.id, description="Refund for failed report")
        refunded += 1
        logger.warning("Reconciled missing refund for report %s", report.id)
    return refunded


async def refund_unrecorded_debits(
    max_age_minutes: Optional[int] = None,
    session_maker: Optional[async_sessionmaker] = None,
) -> int:
    """Refund report debits whose report row was never written (crash between debit and create)."""
    minutes = int(settings.STALLED_REPORT_MAX_AGE_MINUTES if max_age_minutes is None else max_age_minutes)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(minutes, 0))
    ledger = Ledger(session_maker)

    async with (session_maker or async_session_maker)() as db:
        result = await db.execute(
            select(CreditTransaction)
            .outerjoin(Report, Report.id == CreditTransaction.reference_id)
            .where(
                Report.id.is_(None),
                CreditTransaction.transaction_type == TransactionType.USAGE.value,
                CreditTransaction.status == TransactionStatus.COMPLETED.value,
                CreditTransaction.created_at < cutoff,
            )
            .order_by(CreditTransaction.created_at.asc())
            .limit(500)
        )
        unrecorded = list(result.scalars().all())

    for debit in unrecorded:
        await ledger.refund(
            debit.user_id,
            debit.amount,
            debit.reference_id,
            description="Refund: report not recorded",
        )
        logger.warning("Refunded debit %s with no report for user %s", debit.reference_id, debit.user_id)
    return len(unrecorded)


async def run_startup_recovery(session_maker: Optional[async_sessionmaker] = None) -> Dict[str, int]:
    return {
        "unrecorded_debits": await refund_unrecorded_debits(session_maker=session_maker),
        "dead_letters": await settle_dead_letters(session_maker),
        "refunds": await reconcile_failed_refunds(session_maker),
        "requeued": await requeue_orphaned_reports(session_maker=session_maker),
    }
