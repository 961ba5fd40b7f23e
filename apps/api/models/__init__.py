"""Models package."""

from .user import User
from .user_credits import UserCredits
from .credit_transaction import CreditTransaction
from .report import Report
from .analysis_job import AnalysisJob
