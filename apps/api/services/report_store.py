"""Report lifecycle store.

Every status change is one conditional UPDATE guarded by the current status, so two
workers racing on the same report cannot both win. ``processing_attempt`` fences
PROCESSING ownership: a redelivered job (higher attempt) may take a report over from a
crashed worker, while stale or duplicate deliveries are rejected.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.enums import ReportStatus
from models.report import Report
from services.errors import InvalidTransitionError, NotFoundError

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_input_hash(report_type: str, input_refs: Iterable[str]) -> str:
    """Content hash of the analysis inputs; ref order does not matter."""
    payload = json.dumps([str(report_type), sorted(str(ref) for ref in input_refs)], separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ReportStore:
    def __init__(
        self,
        session_maker: Optional[async_sessionmaker] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_maker = session_maker or async_session_maker
        self._clock = clock

    async def create(
        self,
        *,
        report_id: str,
        user_id: str,
        report_type: str,
        cost: Decimal,
        input_refs: List[str],
        input_hash: Optional[str] = None,
        vehicle_info: Optional[Dict[str, Any]] = None,
    ) -> Report:
        now = self._clock()
        report = Report(
            id=report_id,
            user_id=user_id,
            report_type=report_type,
            status=ReportStatus.PENDING.value,
            cost=cost,
            input_refs=list(input_refs),
            input_hash=input_hash or compute_input_hash(report_type, input_refs),
            vehicle_info=vehicle_info,
            processing_attempt=0,
            created_at=now,
            updated_at=now,
        )
        async with self._session_maker() as db:
            async with db.begin():
                db.add(report)
        logger.info("Report %s created for user %s (%s)", report_id, user_id, report_type)
        return report

    async def get(self, report_id: str, requester_user_id: str) -> Report:
        """Return the report if it exists and belongs to ``requester_user_id``."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(Report).where(
                    Report.id == report_id,
                    Report.user_id == requester_user_id,
                )
            )
            report = result.scalar_one_or_none()
        if report is None:
            raise NotFoundError("Report not found")
        return report

    async def load(self, report_id: str) -> Optional[Report]:
        """Unscoped lookup for workers and recovery sweeps."""
        async with self._session_maker() as db:
            return await db.get(Report, report_id)

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[Report]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(Report)
                .where(Report.user_id == user_id)
                .order_by(Report.created_at.desc())
                .limit(max(int(limit), 1))
            )
            return list(result.scalars().all())

    async def list_by_status(
        self,
        statuses: Iterable[str],
        updated_before: Optional[datetime] = None,
        limit: int = 500,
    ) -> List[Report]:
        conditions = [Report.status.in_(tuple(statuses))]
        if updated_before is not None:
            conditions.append(Report.updated_at < updated_before)
        async with self._session_maker() as db:
            result = await db.execute(
                select(Report).where(*conditions).order_by(Report.created_at.asc()).limit(limit)
            )
            return list(result.scalars().all())

    async def find_cached_result(
        self,
        user_id: str,
        report_type: str,
        input_hash: str,
        max_age_seconds: int,
    ) -> Optional[Report]:
        """Most recent COMPLETED report for the same inputs, if young enough."""
        cutoff = self._clock() - timedelta(seconds=max(int(max_age_seconds), 0))
        async with self._session_maker() as db:
            result = await db.execute(
                select(Report)
                .where(
                    Report.user_id == user_id,
                    Report.report_type == report_type,
                    Report.input_hash == input_hash,
                    Report.status == ReportStatus.COMPLETED.value,
                    Report.completed_at >= cutoff,
                )
                .order_by(Report.completed_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def claim(self, report_id: str, attempt: int) -> Report:
        """PENDING -> PROCESSING, or take over PROCESSING from an older delivery."""
        return await self._transition(
            report_id,
            ReportStatus.PROCESSING,
            or_(
                Report.status == ReportStatus.PENDING.value,
                and_(
                    Report.status == ReportStatus.PROCESSING.value,
                    Report.processing_attempt < attempt,
                ),
            ),
            processing_attempt=attempt,
        )

    async def complete(self, report_id: str, attempt: int, result: Dict[str, Any]) -> Report:
        now = self._clock()
        return await self._transition(
            report_id,
            ReportStatus.COMPLETED,
            and_(
                Report.status == ReportStatus.PROCESSING.value,
                Report.processing_attempt == attempt,
            ),
            result=result,
            failure_reason=None,
            completed_at=now,
        )

    async def fail(self, report_id: str, attempt: int, reason: str) -> Report:
        now = self._clock()
        return await self._transition(
            report_id,
            ReportStatus.FAILED,
            and_(
                Report.status == ReportStatus.PROCESSING.value,
                Report.processing_attempt == attempt,
            ),
            result=None,
            failure_reason=(reason or "Analysis failed")[:1000],
            completed_at=now,
        )

    async def _transition(self, report_id: str, target: ReportStatus, guard, **values: Any) -> Report:
        async with self._session_maker() as db:
            async with db.begin():
                outcome = await db.execute(
                    update(Report)
                    .where(Report.id == report_id, guard)
                    .values(status=target.value, updated_at=self._clock(), **values)
                    .execution_options(synchronize_session=False)
                )
                updated = outcome.rowcount == 1

        report = await self.load(report_id)
        if report is None:
            raise NotFoundError("Report not found")
        if not updated:
            logger.warning(
                "Rejected transition of report %s from %s to %s",
                report_id,
                report.status,
                target.value,
            )
            raise InvalidTransitionError(report_id, report.status, target.value)
        logger.info("Report %s -> %s", report_id, target.value)
        return report
