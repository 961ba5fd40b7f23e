"""Inspection report endpoints."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from database import get_session_maker
from models.enums import ReportType
from routers.auth_scope import AuthContext, get_auth_context, to_http_error
from routers.rate_limit import rate_limit
from services.analysis_requests import AnalysisRequests, report_view
from services.errors import InspectionError

router = APIRouter()
logger = logging.getLogger(__name__)


class StartReportRequest(BaseModel):
    report_type: ReportType
    input_refs: List[str] = Field(min_length=1)
    vehicle_info: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    priority: int = Field(default=0, ge=0, le=10)


def get_analysis_requests(
    session_maker: async_sessionmaker = Depends(get_session_maker),
) -> AnalysisRequests:
    return AnalysisRequests.from_session_maker(session_maker)


@router.post("/start", status_code=202)
async def start_report(
    request: StartReportRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key", max_length=128),
    _rate_limit: None = Depends(rate_limit("report_start", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    service: AnalysisRequests = Depends(get_analysis_requests),
):
    """Charge for and queue a report. Poll ``GET /reports/{report_id}`` for the outcome."""
    try:
        report = await service.start(
            auth.user_id,
            request.report_type,
            request.input_refs,
            vehicle_info=request.vehicle_info,
            idempotency_key=request.idempotency_key or idempotency_key,
            priority=request.priority,
        )
    except InspectionError as exc:
        raise to_http_error(exc) from exc

    payload = report_view(report, include_result=False)
    payload["balance_after"] = str(await service.ledger.balance(auth.user_id))
    return payload


@router.get("/")
async def list_reports(
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    service: AnalysisRequests = Depends(get_analysis_requests),
):
    reports = await service.list_for_user(auth.user_id, limit=limit)
    return {"reports": [report_view(report, include_result=False) for report in reports]}


@router.get("/{report_id}")
async def get_report(
    report_id: str,
    auth: AuthContext = Depends(get_auth_context),
    service: AnalysisRequests = Depends(get_analysis_requests),
):
    try:
        report = await service.get(report_id, auth.user_id)
    except InspectionError as exc:
        raise to_http_error(exc) from exc
    return report_view(report)
