"""
Analyzer registry and result validation.

An analyzer is a blocking callable ``(input_refs, report_type, vehicle_info)`` that returns
either raw model text or a dict. ``run_analysis`` turns that into a validated result of
the report type's schema, or raises one of the errors below.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import openai
from pydantic import ValidationError

from config import settings

from .llm import request_analysis
from .models import REQUIRED_FIELDS, analysis_result_adapter
from .parsing import AIResponseParseError, check_missing_fields, parse_ai_response

logger = logging.getLogger(__name__)

Analyzer = Callable[[List[str], str, Optional[Dict[str, Any]]], Union[str, Dict[str, Any]]]


class AnalysisError(Exception):
    """Retryable analyzer failure (provider outage, rate limit, bad reply)."""


class MalformedAnalysisError(AnalysisError):
    """The analyzer replied, but not with a usable result."""


class PermanentAnalysisError(AnalysisError):
    """Retrying cannot help (unsupported type, rejected inputs, bad credentials)."""


def openai_analyzer(
    input_refs: List[str],
    report_type: str,
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> str:
    try:
        return request_analysis(
            report_type,
            input_refs,
            vehicle_info,
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            timeout=settings.ANALYZER_TIMEOUT_SECONDS,
        )
    except (openai.AuthenticationError, openai.PermissionDeniedError, openai.BadRequestError) as exc:
        raise PermanentAnalysisError(f"Analyzer rejected the request: {exc}") from exc
    except openai.OpenAIError as exc:
        raise AnalysisError(f"Analyzer call failed: {exc}") from exc


_ANALYZERS: Dict[str, Analyzer] = {report_type: openai_analyzer for report_type in REQUIRED_FIELDS}


def register_analyzer(report_type: str, analyzer: Analyzer) -> None:
    if report_type not in REQUIRED_FIELDS:
        raise ValueError(f"Unsupported report type: {report_type}")
    _ANALYZERS[report_type] = analyzer


def get_analyzer(report_type: str) -> Analyzer:
    try:
        return _ANALYZERS[report_type]
    except KeyError:
        raise PermanentAnalysisError(f"No analyzer registered for {report_type}") from None


def validate_result(report_type: str, payload: Union[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Coerce an analyzer reply into the report type's schema or raise MalformedAnalysisError."""
    if isinstance(payload, str):
        try:
            payload = parse_ai_response(payload)
        except AIResponseParseError as exc:
            raise MalformedAnalysisError(str(exc)) from exc
    if not isinstance(payload, dict):
        raise MalformedAnalysisError(f"Analyzer returned {type(payload).__name__}, expected an object")

    missing = check_missing_fields(payload, REQUIRED_FIELDS[report_type])
    if missing:
        raise MalformedAnalysisError(f"Analyzer result missing fields: {', '.join(missing)}")

    data = dict(payload)
    claimed_type = data.get("report_type")
    if claimed_type is not None and claimed_type != report_type:
        raise MalformedAnalysisError(f"Analyzer returned a {claimed_type} result for {report_type}")
    data["report_type"] = report_type
    data.setdefault("analyzed_at", datetime.now(timezone.utc).isoformat())

    try:
        result = analysis_result_adapter.validate_python(data)
    except ValidationError as exc:
        raise MalformedAnalysisError(f"Analyzer result failed validation: {exc.error_count()} error(s)") from exc
    return result.model_dump(mode="json")


def run_analysis(
    input_refs: List[str],
    report_type: str,
    vehicle_info: Optional[Dict[str, Any]] = None,
    analyzer: Optional[Analyzer] = None,
) -> Dict[str, Any]:
    """Invoke the analyzer for ``report_type`` and return the validated result dict."""
    if report_type not in REQUIRED_FIELDS:
        raise PermanentAnalysisError(f"Unsupported report type: {report_type}")
    if not input_refs:
        raise PermanentAnalysisError("Analysis requires at least one input")

    call = analyzer or get_analyzer(report_type)
    raw = call(list(input_refs), report_type, vehicle_info)
    result = validate_result(report_type, raw)
    logger.info("Analysis %s produced a valid result", report_type)
    return result
