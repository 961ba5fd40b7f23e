import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from openai import OpenAI

from .models import REQUIRED_FIELDS

logger = logging.getLogger(__name__)

IMAGE_REPORT_TYPES = {"DAMAGE_ANALYSIS", "PAINT_ANALYSIS", "COMPREHENSIVE_EXPERTISE"}
MAX_IMAGES = 8

SCHEMA_HINTS = {
    "DAMAGE_ANALYSIS": """
    {
      "overall_score": 0-100,
      "damage_severity": "low|medium|high|critical",
      "damage_areas": [
        {"area": "string", "damage_type": "string", "severity": "low|medium|high|critical",
         "description": "string", "estimated_repair_cost": number}
      ],
      "estimated_total_cost": number,
      "summary": "string",
      "confidence": 0-100
    }
    """,
    "PAINT_ANALYSIS": """
    {
      "paint_condition": "excellent|good|fair|poor|critical",
      "gloss_level": 0-100,
      "color_match": 0-100,
      "surface_defects": [{"panel": "string", "defect_type": "string", "severity": "low|medium|high|critical"}],
      "repainted_panels": ["string"],
      "recommendations": ["string"],
      "estimated_cost": number,
      "summary": "string",
      "confidence": 0-100
    }
    """,
    "ENGINE_SOUND_ANALYSIS": """
    {
      "overall_score": 0-100,
      "engine_health": "excellent|good|fair|poor|critical",
      "rpm_analysis": {"idle_rpm": int, "max_rpm": int, "rpm_stability": 0-100},
      "sound_quality": {"overall_quality": 0-100, "clarity": 0-100, "smoothness": 0-100, "consistency": 0-100},
      "detected_issues": [{"issue": "string", "severity": "low|medium|high|critical",
                           "description": "string", "recommendation": "string"}],
      "summary": "string",
      "confidence": 0-100
    }
    """,
    "VALUE_ESTIMATION": """
    {
      "estimated_value": number,
      "currency": "TRY",
      "value_range": {"low": number, "high": number},
      "market_analysis": "string",
      "adjustments": [{"factor": "string", "amount": number}],
      "comparable_vehicles": [{"description": "string", "price": number}],
      "summary": "string",
      "confidence": 0-100
    }
    """,
    "COMPREHENSIVE_EXPERTISE": """
    {
      "overall_score": 0-100,
      "expertise_grade": "excellent|good|fair|poor|critical",
      "section_scores": {"damage": 0-100, "paint": 0-100, "engine": 0-100, "value": 0-100},
      "expert_opinion": "string",
      "strengths": ["string"],
      "weaknesses": ["string"],
      "recommendations": ["string"],
      "investment_decision": "buy|negotiate|avoid",
      "estimated_value": number,
      "summary": "string",
      "confidence": 0-100
    }
    """,
}


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def _describe_vehicle(vehicle_info: Optional[Dict[str, Any]]) -> str:
    if not vehicle_info:
        return "No vehicle details provided."
    return "\n".join(f"{key}: {value}" for key, value in sorted(vehicle_info.items()))


def build_messages(
    report_type: str,
    input_refs: List[str],
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Chat messages asking for a strict JSON report of ``report_type``."""
    system_prompt = f"""
    You are an experienced automotive inspector producing a {report_type} report.
    Base every finding on the supplied inputs and vehicle details. Do not invent panels,
    sounds or prices you cannot support.

    Return the analysis as a strict JSON object matching this schema:
    {SCHEMA_HINTS[report_type]}
    """

    text = f"Vehicle details:\n{_describe_vehicle(vehicle_info)}\n\n"
    content: List[Dict[str, Any]] = []
    if report_type in IMAGE_REPORT_TYPES:
        text += "Inspection photos follow."
        content.append({"type": "text", "text": text})
        for ref in input_refs[:MAX_IMAGES]:
            content.append({"type": "image_url", "image_url": {"url": ref}})
    else:
        refs = "\n".join(f"- {ref}" for ref in input_refs)
        content.append({"type": "text", "text": f"{text}Inputs:\n{refs}"})

    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": content},
    ]


def mock_analysis(
    report_type: str,
    input_refs: List[str],
    vehicle_info: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Deterministic local result used when no OpenAI key is configured."""
    digest = hashlib.sha256("|".join([report_type, *input_refs]).encode("utf-8")).digest()
    score = 55 + digest[0] % 40
    grade = "good" if score >= 75 else "fair"
    base = {
        "summary": f"Local fallback {report_type.lower()} based on {len(input_refs)} input(s).",
        "confidence": 50,
        "provider": "mock",
        "model": "mock",
    }

    if report_type == "DAMAGE_ANALYSIS":
        payload = {
            "overall_score": score,
            "damage_severity": "low" if score >= 75 else "medium",
            "damage_areas": [
                {
                    "area": "front_bumper",
                    "damage_type": "scratch",
                    "severity": "low",
                    "description": "Light surface scratches on the lower edge.",
                    "estimated_repair_cost": 1500.0,
                }
            ],
            "estimated_total_cost": 1500.0,
        }
    elif report_type == "PAINT_ANALYSIS":
        payload = {
            "paint_condition": grade,
            "gloss_level": score,
            "color_match": min(score + 5, 100),
            "surface_defects": [{"panel": "hood", "defect_type": "swirl_marks", "severity": "low"}],
            "recommendations": ["Machine polish the hood to remove swirl marks."],
            "estimated_cost": 800.0,
        }
    elif report_type == "ENGINE_SOUND_ANALYSIS":
        payload = {
            "overall_score": score,
            "engine_health": grade,
            "rpm_analysis": {"idle_rpm": 780, "max_rpm": 6200, "rpm_stability": score},
            "sound_quality": {
                "overall_quality": score,
                "clarity": score,
                "smoothness": max(score - 5, 0),
                "consistency": score,
            },
            "detected_issues": [],
        }
    elif report_type == "VALUE_ESTIMATION":
        value = float(400000 + digest[1] * 1000)
        payload = {
            "estimated_value": value,
            "currency": "TRY",
            "value_range": {"low": value * 0.95, "high": value * 1.05},
            "market_analysis": "Fallback estimate without live market data.",
        }
    else:
        payload = {
            "overall_score": score,
            "expertise_grade": grade,
            "section_scores": {"damage": score, "paint": score, "engine": score},
            "expert_opinion": "Fallback assessment; configure an analyzer key for a full expertise report.",
            "recommendations": ["Have a technician confirm the findings in person."],
            "investment_decision": "negotiate",
        }

    base.update(payload)
    base["report_type"] = report_type
    return base


def request_analysis(
    report_type: str,
    input_refs: List[str],
    vehicle_info: Optional[Dict[str, Any]],
    api_key: str,
    model: str = "gpt-4o",
    timeout: Optional[float] = None,
) -> str:
    """
    Ask the multimodal model for a report and return the raw reply text.

    Without a usable API key a deterministic mock payload is returned instead.
    """
    if report_type not in REQUIRED_FIELDS:
        raise ValueError(f"Unsupported report type: {report_type}")

    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using MOCK LLM analysis for %s.", report_type)
        payload = mock_analysis(report_type, input_refs, vehicle_info)
        payload["analyzed_at"] = datetime.now(timezone.utc).isoformat()
        return json.dumps(payload)

    response = client.chat.completions.create(
        model=model,
        messages=build_messages(report_type, input_refs, vehicle_info),
        response_format={"type": "json_object"},
        max_tokens=2000,
        timeout=timeout,
    )
    content = response.choices[0].message.content or ""
    logger.info("Analyzer reply for %s: %s chars", report_type, len(content))
    return content
