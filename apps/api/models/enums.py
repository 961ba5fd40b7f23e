"""Enumerations shared by ledger, report and queue models."""

from enum import Enum


class ReportType(str, Enum):
    DAMAGE_ANALYSIS = "DAMAGE_ANALYSIS"
    PAINT_ANALYSIS = "PAINT_ANALYSIS"
    ENGINE_SOUND_ANALYSIS = "ENGINE_SOUND_ANALYSIS"
    VALUE_ESTIMATION = "VALUE_ESTIMATION"
    COMPREHENSIVE_EXPERTISE = "COMPREHENSIVE_EXPERTISE"


class ReportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_REPORT_STATUSES = (ReportStatus.COMPLETED.value, ReportStatus.FAILED.value)


class TransactionType(str, Enum):
    PURCHASE = "PURCHASE"
    USAGE = "USAGE"
    REFUND = "REFUND"
    BONUS = "BONUS"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class JobStatus(str, Enum):
    QUEUED = "queued"
    LEASED = "leased"
    DEAD = "dead"
