"""Domain errors raised by the ledger, report store and request path."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class InspectionError(Exception):
    """Base class for domain errors mapped to HTTP responses by the routers."""

    status_code = 400


class InvalidRequestError(InspectionError):
    status_code = 422


class InsufficientBalanceError(InspectionError):
    status_code = 402

    def __init__(self, user_id: str, required: Decimal, available: Optional[Decimal] = None):
        self.user_id = user_id
        self.required = required
        self.available = available
        if available is None:
            message = f"Insufficient credits. Required: {required}."
        else:
            message = f"Insufficient credits. Required: {required}, available: {available}."
        super().__init__(message)


class NotFoundError(InspectionError):
    status_code = 404


class InvalidTransitionError(InspectionError):
    status_code = 409

    def __init__(self, report_id: str, current: Optional[str], target: str):
        self.report_id = report_id
        self.current = current
        self.target = target
        super().__init__(f"Report {report_id} cannot move from {current} to {target}")


class DataIntegrityError(InspectionError):
    status_code = 500


class QueueUnavailableError(InspectionError):
    status_code = 503
