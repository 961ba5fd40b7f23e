"""Billing and credits router."""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import report_costs, settings
from database import get_session_maker
from models.enums import TransactionType
from routers.auth_scope import AuthContext, get_auth_context, to_http_error
from routers.rate_limit import rate_limit
from services.errors import InspectionError
from services.ledger import Ledger, serialize_transaction

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    credits: Decimal = Field(gt=0, le=100000, decimal_places=2)
    billing_reference: Optional[str] = Field(default=None, max_length=128)


def get_ledger(session_maker: async_sessionmaker = Depends(get_session_maker)) -> Ledger:
    return Ledger(session_maker)


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    ledger: Ledger = Depends(get_ledger),
):
    await ledger.ensure_account(auth.user_id, auth.email)
    return await ledger.summary(auth.user_id)


@router.get("/transactions")
async def list_transactions(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    ledger: Ledger = Depends(get_ledger),
):
    entries = await ledger.transactions(auth.user_id, limit=limit)
    return {"transactions": [serialize_transaction(entry) for entry in entries]}


@router.get("/pricing")
async def pricing():
    return {"costs": {report_type: str(cost) for report_type, cost in report_costs().items()}}


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    ledger: Ledger = Depends(get_ledger),
):
    if not settings.MANUAL_TOPUP_ENABLED:
        raise HTTPException(status_code=503, detail="Manual top-up is disabled. Enable MANUAL_TOPUP_ENABLED to use it.")

    reference = f"topup:{auth.user_id}:{request.billing_reference or uuid.uuid4()}"
    try:
        await ledger.ensure_account(auth.user_id, auth.email)
        transaction_id = await ledger.grant(
            auth.user_id,
            request.credits,
            reference,
            transaction_type=TransactionType.PURCHASE.value,
            description="Manual top-up",
        )
    except InspectionError as exc:
        raise to_http_error(exc) from exc

    logger.info("Manual top-up of %s credits for user %s", request.credits, auth.user_id)
    return {
        "ok": True,
        "transaction_id": transaction_id,
        "credits_added": str(request.credits),
        "balance_after": str(await ledger.balance(auth.user_id)),
    }
