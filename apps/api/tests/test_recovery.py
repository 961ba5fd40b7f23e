import asyncio
from decimal import Decimal
from unittest.mock import patch

import pytest

from services.analysis_requests import AnalysisRequests
from services.job_queue import JobQueue, NackOutcome
from services.ledger import Ledger
from services.recovery import (
    reconcile_failed_refunds,
    refund_unrecorded_debits,
    requeue_orphaned_reports,
    run_startup_recovery,
    settle_dead_letters,
)
from services.report_store import ReportStore

USER_ID = "recovery-user"


async def _charged_report(session_maker, report_id, report_type="PAINT_ANALYSIS"):
    ledger = Ledger(session_maker)
    await ledger.grant(USER_ID, "100", f"seed:{report_id}")
    await ledger.debit(USER_ID, "30", report_id)
    store = ReportStore(session_maker)
    await store.create(
        report_id=report_id,
        user_id=USER_ID,
        report_type=report_type,
        cost=Decimal("30"),
        input_refs=[f"https://cdn.example.com/{report_id}.jpg"],
    )
    return ledger, store


@pytest.mark.asyncio
async def test_report_created_but_never_enqueued_is_requeued(session_maker):
    await _charged_report(session_maker, "orphan")
    queue = JobQueue(session_maker)

    assert await requeue_orphaned_reports(max_age_minutes=0, session_maker=session_maker) == 1
    assert (await queue.get_for_report("orphan")) is not None
    assert await requeue_orphaned_reports(max_age_minutes=0, session_maker=session_maker) == 0


@pytest.mark.asyncio
async def test_recent_reports_are_left_alone(session_maker):
    await _charged_report(session_maker, "fresh")

    assert await requeue_orphaned_reports(max_age_minutes=30, session_maker=session_maker) == 0


@pytest.mark.asyncio
async def test_requeued_processing_report_can_be_taken_over(session_maker):
    _, store = await _charged_report(session_maker, "stuck")
    await store.claim("stuck", 2)

    assert await requeue_orphaned_reports(max_age_minutes=0, session_maker=session_maker) == 1

    job = await JobQueue(session_maker).dequeue("worker")
    assert job.attempt == 3
    report = await store.claim("stuck", job.attempt)
    assert report.processing_attempt == 3


@pytest.mark.asyncio
async def test_failed_report_without_refund_is_reconciled(session_maker):
    ledger, store = await _charged_report(session_maker, "unrefunded")
    await store.claim("unrefunded", 1)
    await store.fail("unrefunded", 1, "Analyzer unavailable")
    assert await ledger.balance(USER_ID) == Decimal("70.00")

    assert await reconcile_failed_refunds(session_maker) == 1
    assert await ledger.balance(USER_ID) == Decimal("100.00")
    assert await reconcile_failed_refunds(session_maker) == 0
    assert await ledger.balance(USER_ID) == Decimal("100.00")


@pytest.mark.asyncio
async def test_dead_lettered_job_fails_and_refunds_report(session_maker):
    ledger, store = await _charged_report(session_maker, "dead")
    queue = JobQueue(session_maker, max_attempts=1)
    await queue.enqueue("dead", "PAINT_ANALYSIS")
    job = await queue.dequeue("worker")
    await store.claim("dead", job.attempt)
    assert await queue.nack(job, retry_after_seconds=0, error="timeout") == NackOutcome.DEAD_LETTERED

    assert await settle_dead_letters(session_maker) == 1

    report = await store.load("dead")
    assert report.status == "FAILED"
    assert await ledger.balance(USER_ID) == Decimal("100.00")
    assert await queue.dead_letters() == []


@pytest.mark.asyncio
async def test_startup_recovery_runs_every_sweep(session_maker):
    await _charged_report(session_maker, "orphan")

    result = await run_startup_recovery(session_maker)

    assert result == {"unrecorded_debits": 0, "dead_letters": 0, "refunds": 0, "requeued": 0}


@pytest.mark.asyncio
async def test_interrupted_report_creation_refunds_the_debit(session_maker):
    ledger = Ledger(session_maker)
    reports = ReportStore(session_maker)
    requests = AnalysisRequests(ledger=ledger, reports=reports, queue=JobQueue(session_maker))
    await ledger.grant(USER_ID, "100", "seed:interrupted")

    with patch.object(ReportStore, "create", side_effect=asyncio.CancelledError()):
        with pytest.raises(asyncio.CancelledError):
            await requests.start(USER_ID, "PAINT_ANALYSIS", ["https://cdn.example.com/hood.jpg"], cost="30")

    await run_startup_recovery(session_maker)

    assert await ledger.balance(USER_ID) == Decimal("100.00")
    assert [entry.transaction_type for entry in await ledger.transactions(USER_ID)].count("REFUND") == 1
    assert await reports.list_for_user(USER_ID) == []
    await ledger.verify_invariants(USER_ID)


@pytest.mark.asyncio
async def test_debit_without_report_is_refunded_by_recovery(session_maker):
    ledger = Ledger(session_maker)
    await ledger.grant(USER_ID, "100", "seed:crash")
    # The process died after the debit committed and before the report row was written.
    await ledger.debit(USER_ID, "30", "never-recorded")
    await _charged_report(session_maker, "recorded")
    assert await ledger.balance(USER_ID) == Decimal("140.00")

    assert await refund_unrecorded_debits(max_age_minutes=30, session_maker=session_maker) == 0
    assert await refund_unrecorded_debits(max_age_minutes=0, session_maker=session_maker) == 1

    assert await ledger.balance(USER_ID) == Decimal("170.00")
    assert (await ledger.get_transaction("never-recorded")).status == "REFUNDED"
    assert (await ledger.get_transaction("recorded")).status == "COMPLETED"
    assert await refund_unrecorded_debits(max_age_minutes=0, session_maker=session_maker) == 0
    await ledger.verify_invariants(USER_ID)
