"""Bounded-concurrency analysis workers.

The pool owns ``size`` analyzer slots and a thread pool of the same size. A worker takes a
slot before it leases a job, and the slot is only returned once the analyzer thread has
exited, so a timed-out call keeps counting against the limit until it actually stops.
Every delivery ends in exactly one of: COMPLETED and acked, nacked for a retry with
backoff, or FAILED with the credits refunded and the job acked.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from config import settings
from models.enums import ReportStatus
from models.report import Report
from multimodal.analyzer import Analyzer, AnalysisError, PermanentAnalysisError, run_analysis
from services.errors import InvalidTransitionError
from services.job_queue import JobQueue, NackOutcome, QueuedJob
from services.ledger import Ledger
from services.report_store import ReportStore

logger = logging.getLogger(__name__)

COMPLETED = "completed"
RETRYING = "retrying"
FAILED = "failed"
SKIPPED = "skipped"
STALE = "stale"

ABANDONED_REASON = "Analysis was interrupted repeatedly and has been cancelled. Your credits were refunded."


class AnalyzerSlot:
    """One analyzer permit. Once handed to a thread it is released by that thread's future."""

    def __init__(self, semaphore: asyncio.Semaphore):
        self._semaphore = semaphore
        self._held = False
        self._in_thread = False

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._held = True

    def hand_to(self, future: asyncio.Future) -> None:
        self._in_thread = True
        future.add_done_callback(self._thread_finished)

    def release(self) -> None:
        if not self._in_thread:
            self._give_back()

    def _thread_finished(self, future: asyncio.Future) -> None:
        if not future.cancelled():
            # Mark the outcome as retrieved; a timed-out call has nobody left to read it.
            future.exception()
        self._give_back()

    def _give_back(self) -> None:
        if self._held:
            self._held = False
            self._semaphore.release()


class WorkerPool:
    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        reports: Optional[ReportStore] = None,
        ledger: Optional[Ledger] = None,
        analyzer: Optional[Analyzer] = None,
        size: Optional[int] = None,
        analyzer_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        jitter: Callable[[], float] = random.random,
    ):
        self.queue = queue or JobQueue()
        self.reports = reports or ReportStore()
        self.ledger = ledger or Ledger()
        self.analyzer = analyzer
        self.size = int(size or settings.WORKER_POOL_SIZE)
        self.analyzer_timeout = float(analyzer_timeout or settings.ANALYZER_TIMEOUT_SECONDS)
        self.poll_interval = float(
            settings.WORKER_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self.backoff_base = float(settings.JOB_BACKOFF_BASE_SECONDS if backoff_base is None else backoff_base)
        self.backoff_max = float(settings.JOB_BACKOFF_MAX_SECONDS if backoff_max is None else backoff_max)
        self._jitter = jitter
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._slots = asyncio.Semaphore(self.size)
        self._executor: Optional[ThreadPoolExecutor] = None

    def backoff_seconds(self, attempt: int) -> float:
        """Exponential delay before redelivery, jittered into [delay/2, delay]."""
        delay = min(self.backoff_base * (2 ** max(attempt - 1, 0)), self.backoff_max)
        return delay / 2 + (delay / 2) * self._jitter()

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"worker-{index}"), name=f"analysis-worker-{index}")
            for index in range(self.size)
        ]
        logger.info("Started %s analysis workers", self.size)

    async def stop(self) -> None:
        self._stopping.set()
        if self._tasks:
            # Workers parked on a slot held by a hung analyzer thread are cancelled after a grace period.
            _, pending = await asyncio.wait(self._tasks, timeout=self.analyzer_timeout + self.poll_interval)
            for task in pending:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("Analysis workers stopped")

    async def run_forever(self) -> None:
        await self.start()
        try:
            await self._stopping.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        self._stopping.set()

    async def process_next(self, worker_id: str) -> Optional[str]:
        """Lease and handle one job. Returns the outcome, or None when the queue is idle.

        Waits for a free analyzer slot before leasing, so a job is never leased while every
        slot is still busy with a running (possibly timed-out) analyzer call.
        """
        slot = AnalyzerSlot(self._slots)
        await slot.acquire()
        try:
            job = await self.queue.dequeue(worker_id)
            if job is None:
                return None
            return await self.handle(job, slot)
        finally:
            slot.release()

    async def handle(self, job: QueuedJob, slot: Optional[AnalyzerSlot] = None) -> str:
        report = await self.reports.load(job.report_id)
        if report is None:
            logger.error("Job %s references missing report %s; dropping it", job.job_id, job.report_id)
            await self.queue.ack(job)
            return SKIPPED

        if job.attempt > job.max_attempts:
            return await self._abandon(job, report)

        try:
            report = await self.reports.claim(report.id, job.attempt)
        except InvalidTransitionError as exc:
            return await self._settle_unclaimable(job, exc)

        try:
            result = await self._analyze(report, slot)
        except asyncio.TimeoutError:
            return await self._on_failure(
                job, report, f"Analyzer timed out after {self.analyzer_timeout:g}s", permanent=False
            )
        except PermanentAnalysisError as exc:
            return await self._on_failure(job, report, str(exc), permanent=True)
        except AnalysisError as exc:
            return await self._on_failure(job, report, str(exc), permanent=False)
        except Exception as exc:
            logger.exception("Unexpected analyzer error for report %s", report.id)
            return await self._on_failure(job, report, f"Analyzer error: {exc}", permanent=False)

        try:
            await self.reports.complete(report.id, job.attempt, result)
        except InvalidTransitionError as exc:
            # A newer delivery owns the report now; its worker settles and acks the job.
            logger.warning("Discarding stale result for report %s (attempt %s): %s", report.id, job.attempt, exc)
            return STALE

        await self.queue.ack(job)
        logger.info("Report %s completed on attempt %s", report.id, job.attempt)
        return COMPLETED

    async def _analyze(self, report: Report, slot: Optional[AnalyzerSlot]) -> Dict[str, Any]:
        if slot is None:
            slot = AnalyzerSlot(self._slots)
            await slot.acquire()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix="analyzer")

        loop = asyncio.get_running_loop()
        try:
            call = loop.run_in_executor(
                self._executor,
                functools.partial(
                    run_analysis,
                    list(report.input_refs or []),
                    report.report_type,
                    report.vehicle_info,
                    self.analyzer,
                ),
            )
        except RuntimeError:
            slot.release()
            raise
        slot.hand_to(call)
        # Shielded so a timeout stops the wait without releasing the slot of a running thread.
        return await asyncio.wait_for(asyncio.shield(call), timeout=self.analyzer_timeout)

    async def _on_failure(self, job: QueuedJob, report: Report, reason: str, permanent: bool) -> str:
        logger.warning(
            "Analysis attempt %s/%s for report %s failed: %s",
            job.attempt,
            job.max_attempts,
            report.id,
            reason,
        )
        if not permanent and not job.is_final_attempt:
            outcome = await self.queue.nack(job, self.backoff_seconds(job.attempt), error=reason)
            if outcome == NackOutcome.REQUEUED:
                return RETRYING
            if outcome == NackOutcome.LEASE_LOST:
                return STALE

        if not await self._fail_and_refund(report, job.attempt, reason):
            return STALE
        await self.queue.ack(job)
        return FAILED

    async def _abandon(self, job: QueuedJob, report: Report) -> str:
        """Redelivered past max attempts after worker crashes: fail without analyzing."""
        logger.error(
            "Report %s redelivered on attempt %s of %s; abandoning",
            report.id,
            job.attempt,
            job.max_attempts,
        )
        try:
            report = await self.reports.claim(report.id, job.attempt)
        except InvalidTransitionError as exc:
            return await self._settle_unclaimable(job, exc)
        if not await self._fail_and_refund(report, job.attempt, ABANDONED_REASON):
            return STALE
        await self.queue.ack(job)
        return FAILED

    async def _settle_unclaimable(self, job: QueuedJob, exc: InvalidTransitionError) -> str:
        """Claim was refused: the report is terminal or owned by a newer delivery."""
        logger.info("Skipping job for report %s: %s", job.report_id, exc)
        report = await self.reports.load(job.report_id)
        if report is not None and report.status == ReportStatus.FAILED.value:
            await self._ensure_refund(report)
        await self.queue.ack(job)
        return SKIPPED

    async def _fail_and_refund(self, report: Report, attempt: int, reason: str) -> bool:
        try:
            report = await self.reports.fail(report.id, attempt, reason)
        except InvalidTransitionError as exc:
            current = await self.reports.load(report.id)
            if current is None or current.status != ReportStatus.FAILED.value:
                logger.warning("Could not fail report %s: %s", report.id, exc)
                return False
            report = current
        await self._ensure_refund(report)
        return True

    async def _ensure_refund(self, report: Report) -> None:
        # Idempotent per report id, so redeliveries and recovery sweeps may repeat it.
        await self.ledger.refund(
            report.user_id,
            report.cost,
            report.id,
            description=f"Refund for failed {report.report_type} report",
        )

    async def _worker_loop(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                outcome = await self.process_next(worker_id)
            except Exception:
                logger.exception("Worker %s failed while processing a job", worker_id)
                outcome = None
            if outcome is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
