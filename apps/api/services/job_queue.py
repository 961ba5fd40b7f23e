"""Durable analysis job queue backed by the ``analysis_jobs`` table.

Dequeue leases a row until ``leased_until``; a lease that is not acked in time makes the
job visible again, so a crashed worker delays a report but never strands it. Each
delivery bumps ``attempt`` and issues a fresh ``lease_token``; ack and nack must present
the token of the current lease.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.analysis_job import AnalysisJob
from models.enums import JobStatus

logger = logging.getLogger(__name__)

DEQUEUE_CANDIDATES = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class NackOutcome(str, Enum):
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"
    LEASE_LOST = "lease_lost"


@dataclass(frozen=True)
class QueuedJob:
    job_id: str
    report_id: str
    report_type: str
    attempt: int
    max_attempts: int
    enqueued_at: datetime
    lease_token: Optional[str] = None
    leased_by: Optional[str] = None
    leased_until: Optional[datetime] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempt >= self.max_attempts

    def to_message(self) -> Dict[str, Any]:
        return {
            "reportId": self.report_id,
            "reportType": self.report_type,
            "attempt": self.attempt,
            "enqueuedAt": _as_aware(self.enqueued_at).isoformat(),
        }

    @classmethod
    def from_row(cls, row: AnalysisJob) -> "QueuedJob":
        return cls(
            job_id=row.id,
            report_id=row.report_id,
            report_type=row.report_type,
            attempt=int(row.attempt or 0),
            max_attempts=int(row.max_attempts or 1),
            enqueued_at=_as_aware(row.enqueued_at),
            lease_token=row.lease_token,
            leased_by=row.leased_by,
            leased_until=_as_aware(row.leased_until),
        )


class JobQueue:
    """At-least-once queue with per-report-type lanes and priority ordering."""

    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        clock: Callable[[], datetime] = _utcnow,
        max_attempts: Optional[int] = None,
        visibility_timeout_seconds: Optional[float] = None,
    ):
        self._session_maker = session_maker or async_session_maker
        self._clock = clock
        self.max_attempts = int(max_attempts or settings.JOB_MAX_ATTEMPTS)
        self.visibility_timeout_seconds = float(
            visibility_timeout_seconds or settings.JOB_VISIBILITY_TIMEOUT_SECONDS
        )

    async def enqueue(
        self,
        report_id: str,
        report_type: str,
        priority: int = 0,
        delay_seconds: float = 0,
        start_attempt: int = 0,
        max_attempts: Optional[int] = None,
    ) -> QueuedJob:
        """Append a job for ``report_id``; enqueueing the same report twice is a no-op.

        ``start_attempt`` resumes attempt numbering for a report that already had deliveries.
        """
        now = self._clock()
        row = AnalysisJob(
            id=str(uuid.uuid4()),
            report_id=report_id,
            report_type=report_type,
            lane=report_type,
            priority=int(priority),
            status=JobStatus.QUEUED.value,
            attempt=max(int(start_attempt), 0),
            max_attempts=int(max_attempts or self.max_attempts),
            enqueued_at=now,
            available_at=now + timedelta(seconds=max(float(delay_seconds), 0.0)),
            updated_at=now,
        )
        try:
            async with self._session_maker() as db:
                async with db.begin():
                    db.add(row)
        except IntegrityError:
            existing = await self.get_for_report(report_id)
            if existing is None:
                raise
            logger.info("Job for report %s already queued (%s)", report_id, existing.job_id)
            return existing

        logger.info("Enqueued report %s on lane %s", report_id, report_type)
        return QueuedJob.from_row(row)

    async def dequeue(
        self,
        worker_id: str,
        visibility_timeout_seconds: Optional[float] = None,
        lanes: Optional[Iterable[str]] = None,
    ) -> Optional[QueuedJob]:
        """Lease the next visible job, or return None when nothing is ready."""
        timeout = float(visibility_timeout_seconds or self.visibility_timeout_seconds)
        lane_filter = tuple(lanes) if lanes else None

        for _ in range(DEQUEUE_CANDIDATES):
            now = self._clock()
            query = (
                select(AnalysisJob.id, AnalysisJob.attempt)
                .where(self._visible(now))
                .order_by(AnalysisJob.priority.desc(), AnalysisJob.enqueued_at.asc())
                .limit(DEQUEUE_CANDIDATES)
            )
            if lane_filter:
                query = query.where(AnalysisJob.lane.in_(lane_filter))

            async with self._session_maker() as db:
                async with db.begin():
                    candidates = (await db.execute(query)).all()
                    if not candidates:
                        return None

                    for candidate in candidates:
                        token = uuid.uuid4().hex
                        result = await db.execute(
                            update(AnalysisJob)
                            .where(
                                AnalysisJob.id == candidate.id,
                                AnalysisJob.attempt == candidate.attempt,
                                self._visible(now),
                            )
                            .values(
                                status=JobStatus.LEASED.value,
                                attempt=AnalysisJob.attempt + 1,
                                leased_by=worker_id,
                                lease_token=token,
                                leased_until=now + timedelta(seconds=timeout),
                                updated_at=now,
                            )
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount == 1:
                            row = await db.get(AnalysisJob, candidate.id, populate_existing=True)
                            job = QueuedJob.from_row(row)
                            logger.info(
                                "Worker %s leased report %s (attempt %s/%s)",
                                worker_id,
                                job.report_id,
                                job.attempt,
                                job.max_attempts,
                            )
                            return job
            # Every candidate was taken by another worker; look again.
        return None

    async def ack(self, job: QueuedJob) -> bool:
        """Remove a finished job. Returns False when the lease was already lost."""
        async with self._session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    delete(AnalysisJob)
                    .where(
                        AnalysisJob.id == job.job_id,
                        AnalysisJob.lease_token == job.lease_token,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.warning("Ack for report %s ignored: lease no longer held", job.report_id)
            return False
        return True

    async def nack(self, job: QueuedJob, retry_after_seconds: float, error: Optional[str] = None) -> NackOutcome:
        """Requeue for another attempt, or dead-letter once attempts are exhausted."""
        now = self._clock()
        if job.is_final_attempt:
            values = {"status": JobStatus.DEAD.value, "available_at": now}
            outcome = NackOutcome.DEAD_LETTERED
        else:
            values = {
                "status": JobStatus.QUEUED.value,
                "available_at": now + timedelta(seconds=max(float(retry_after_seconds), 0.0)),
            }
            outcome = NackOutcome.REQUEUED

        async with self._session_maker() as db:
            async with db.begin():
                result = await db.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.id == job.job_id,
                        AnalysisJob.lease_token == job.lease_token,
                    )
                    .values(
                        leased_by=None,
                        lease_token=None,
                        leased_until=None,
                        last_error=(error or "")[:1000] or None,
                        updated_at=now,
                        **values,
                    )
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount != 1:
            logger.warning("Nack for report %s ignored: lease no longer held", job.report_id)
            return NackOutcome.LEASE_LOST
        logger.info("Report %s job %s after attempt %s", job.report_id, outcome.value, job.attempt)
        return outcome

    async def get_for_report(self, report_id: str) -> Optional[QueuedJob]:
        async with self._session_maker() as db:
            result = await db.execute(select(AnalysisJob).where(AnalysisJob.report_id == report_id))
            row = result.scalar_one_or_none()
        return QueuedJob.from_row(row) if row else None

    async def dead_letters(self, limit: int = 100) -> List[QueuedJob]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(AnalysisJob)
                .where(AnalysisJob.status == JobStatus.DEAD.value)
                .order_by(AnalysisJob.updated_at.asc())
                .limit(limit)
            )
            return [QueuedJob.from_row(row) for row in result.scalars().all()]

    async def discard(self, job: QueuedJob) -> None:
        """Drop a dead-lettered job once its report has been settled."""
        async with self._session_maker() as db:
            async with db.begin():
                await db.execute(
                    delete(AnalysisJob)
                    .where(
                        AnalysisJob.id == job.job_id,
                        AnalysisJob.status == JobStatus.DEAD.value,
                    )
                    .execution_options(synchronize_session=False)
                )

    async def depth(self, lane: Optional[str] = None) -> int:
        """Number of jobs that are queued or leased (dead letters excluded)."""
        query = select(func.count(AnalysisJob.id)).where(AnalysisJob.status != JobStatus.DEAD.value)
        if lane:
            query = query.where(AnalysisJob.lane == lane)
        async with self._session_maker() as db:
            return int((await db.execute(query)).scalar_one())

    async def stats(self) -> Dict[str, Any]:
        async with self._session_maker() as db:
            rows = (
                await db.execute(
                    select(AnalysisJob.lane, AnalysisJob.status, func.count(AnalysisJob.id)).group_by(
                        AnalysisJob.lane, AnalysisJob.status
                    )
                )
            ).all()
        totals = {status.value: 0 for status in JobStatus}
        lanes: Dict[str, Dict[str, int]] = {}
        for lane, status, count in rows:
            totals[status] = totals.get(status, 0) + int(count)
            lanes.setdefault(lane, {})[status] = int(count)
        return {"totals": totals, "lanes": lanes}

    @staticmethod
    def _visible(now: datetime):
        return or_(
            and_(
                AnalysisJob.status == JobStatus.QUEUED.value,
                AnalysisJob.available_at <= now,
            ),
            and_(
                AnalysisJob.status == JobStatus.LEASED.value,
                AnalysisJob.leased_until < now,
            ),
        )
