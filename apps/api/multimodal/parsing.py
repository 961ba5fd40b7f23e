"""Extract JSON payloads from free-form model replies."""

import json
import logging
import re
from typing import Any, Dict, Iterable, List

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


class AIResponseParseError(ValueError):
    """The reply contained no parseable JSON object."""


def parse_ai_response(raw_text: str) -> Dict[str, Any]:
    """
    Parse a model reply into a dict.

    Tries the whole text first, then a fenced ```json block, then the span between the
    first ``{`` and the last ``}``.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise AIResponseParseError("Empty response from analyzer")

    candidates = [raw_text.strip()]
    match = _FENCED_JSON.search(raw_text)
    if match:
        candidates.append(match.group(1))
    start = raw_text.find("{")
    end = raw_text.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw_text[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.warning("Could not extract JSON from analyzer response: %s", raw_text[:500])
    raise AIResponseParseError("No JSON object found in analyzer response")


def check_missing_fields(payload: Any, required_fields: Iterable[str]) -> List[str]:
    """Return the required top-level keys absent from ``payload``."""
    fields = list(required_fields)
    if not isinstance(payload, dict):
        return fields
    return [field for field in fields if field not in payload]
