"""Request path for starting and reading inspection reports.

``start`` charges, records and enqueues a report without ever waiting on the analyzer.
Any failure after the debit is compensated with a refund before the error propagates.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import report_costs, settings
from models.enums import ReportType
from models.report import Report
from services.errors import InvalidRequestError, QueueUnavailableError
from services.job_queue import JobQueue
from services.ledger import Ledger, to_credit_amount
from services.report_store import ReportStore, compute_input_hash

logger = logging.getLogger(__name__)

REPORT_ID_NAMESPACE = uuid.UUID("5b0f3c36-2a8e-4c1e-9d0c-6c1f5f2b7a91")
ENQUEUE_FAILED_REASON = "Analysis could not be scheduled. Your credits were refunded."


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value else None


def report_view(report: Report, include_result: bool = True) -> Dict[str, Any]:
    """Client-facing report payload."""
    payload: Dict[str, Any] = {
        "report_id": report.id,
        "report_type": report.report_type,
        "status": report.status,
        "cost": str(Decimal(str(report.cost)).quantize(Decimal("0.01"))),
        "input_refs": list(report.input_refs or []),
        "vehicle_info": report.vehicle_info,
        "failure_reason": report.failure_reason,
        "created_at": _isoformat(report.created_at),
        "updated_at": _isoformat(report.updated_at),
        "completed_at": _isoformat(report.completed_at),
    }
    if include_result:
        payload["result"] = report.result
    return payload


def validate_start_request(report_type: Any, input_refs: Any) -> List[str]:
    """Reject bad requests before anything is charged or persisted."""
    valid_types = {item.value for item in ReportType}
    if getattr(report_type, "value", report_type) not in valid_types:
        raise InvalidRequestError(f"Unsupported report type: {report_type}")
    if not isinstance(input_refs, (list, tuple)) or not input_refs:
        raise InvalidRequestError("At least one input reference is required")
    refs = [str(ref).strip() for ref in input_refs]
    if any(not ref for ref in refs):
        raise InvalidRequestError("Input references must be non-empty")
    if len(refs) > int(settings.MAX_INPUT_REFS):
        raise InvalidRequestError(f"At most {settings.MAX_INPUT_REFS} input references are allowed")
    return refs


def derive_report_id(user_id: str, idempotency_key: Optional[str]) -> str:
    if idempotency_key:
        return str(uuid.uuid5(REPORT_ID_NAMESPACE, f"{user_id}:{idempotency_key}"))
    return str(uuid.uuid4())


class AnalysisRequests:
    def __init__(
        self,
        ledger: Optional[Ledger] = None,
        reports: Optional[ReportStore] = None,
        queue: Optional[JobQueue] = None,
    ):
        self.ledger = ledger or Ledger()
        self.reports = reports or ReportStore()
        self.queue = queue or JobQueue()

    @classmethod
    def from_session_maker(cls, session_maker: async_sessionmaker) -> "AnalysisRequests":
        return cls(
            ledger=Ledger(session_maker),
            reports=ReportStore(session_maker),
            queue=JobQueue(session_maker),
        )

    async def start(
        self,
        user_id: str,
        report_type: Any,
        input_refs: List[str],
        vehicle_info: Optional[Dict[str, Any]] = None,
        cost: Optional[Any] = None,
        idempotency_key: Optional[str] = None,
        priority: int = 0,
    ) -> Report:
        """Debit, create and enqueue a report. Returns it in PENDING (or COMPLETED on a cache hit)."""
        refs = validate_start_request(report_type, input_refs)
        report_type = getattr(report_type, "value", report_type)
        amount = to_credit_amount(report_costs()[report_type] if cost is None else cost)
        report_id = derive_report_id(user_id, idempotency_key)

        if idempotency_key:
            existing = await self.reports.load(report_id)
            if existing is not None:
                logger.info("Replaying start for report %s", report_id)
                return existing

        await self.ledger.ensure_account(user_id)
        await self.ledger.debit(
            user_id,
            amount,
            report_id,
            description=f"{report_type} report",
        )

        input_hash = compute_input_hash(report_type, refs)
        try:
            report = await self.reports.create(
                report_id=report_id,
                user_id=user_id,
                report_type=report_type,
                cost=amount,
                input_refs=refs,
                input_hash=input_hash,
                vehicle_info=vehicle_info,
            )
        except IntegrityError:
            # Concurrent retry with the same idempotency key; the debit above was a replay.
            existing = await self.reports.load(report_id)
            if existing is None:
                await self._refund_unrecorded(user_id, amount, report_id)
                raise
            return existing
        except (Exception, asyncio.CancelledError):
            # A process crash in this window is refunded by recovery.refund_unrecorded_debits.
            await self._refund_unrecorded(user_id, amount, report_id)
            raise

        cached = await self._cached_report(user_id, report_type, input_hash)
        if cached is not None:
            await self.reports.claim(report_id, 0)
            report = await self.reports.complete(report_id, 0, cached.result)
            logger.info("Report %s served from cached report %s", report_id, cached.id)
            return report

        try:
            await self.queue.enqueue(report_id, report_type, priority=priority)
        except SQLAlchemyError as exc:
            logger.error("Enqueue failed for report %s: %s", report_id, exc)
            await self.reports.claim(report_id, 0)
            await self.reports.fail(report_id, 0, ENQUEUE_FAILED_REASON)
            await self.ledger.refund(user_id, amount, report_id, description="Refund: analysis not scheduled")
            raise QueueUnavailableError("Analysis queue is unavailable. Please try again.") from exc

        return report

    async def get(self, report_id: str, user_id: str) -> Report:
        return await self.reports.get(report_id, user_id)

    async def list_for_user(self, user_id: str, limit: int = 20) -> List[Report]:
        return await self.reports.list_for_user(user_id, limit=limit)

    async def _cached_report(self, user_id: str, report_type: str, input_hash: str) -> Optional[Report]:
        if not settings.ANALYSIS_CACHE_ENABLED:
            return None
        cached = await self.reports.find_cached_result(
            user_id,
            report_type,
            input_hash,
            settings.ANALYSIS_CACHE_TTL_SECONDS,
        )
        if cached is None or not cached.result:
            return None
        return cached

    async def _refund_unrecorded(self, user_id: str, amount: Decimal, report_id: str) -> None:
        logger.error("Report %s could not be recorded; refunding its debit", report_id)
        await self.ledger.refund(user_id, amount, report_id, description="Refund: report not recorded")
