from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

Grade = Literal["excellent", "good", "fair", "poor", "critical"]
Severity = Literal["low", "medium", "high", "critical"]
Score = Annotated[int, Field(ge=0, le=100)]
Money = Annotated[float, Field(ge=0)]


class ResultModel(BaseModel):
    # Provider payloads often carry extra keys; only the declared shape is stored.
    model_config = ConfigDict(extra="ignore")


class AnalysisResultBase(ResultModel):
    summary: str = Field(min_length=1)
    confidence: Score
    provider: str = "openai"
    model: str = ""
    analyzed_at: Optional[str] = None


class DamageArea(ResultModel):
    area: str               # "front_bumper", "left_door", ...
    damage_type: str        # "scratch", "dent", "crack", "rust"
    severity: Severity
    description: str = ""
    estimated_repair_cost: Money = 0.0


class DamageAnalysisResult(AnalysisResultBase):
    report_type: Literal["DAMAGE_ANALYSIS"] = "DAMAGE_ANALYSIS"
    overall_score: Score
    damage_severity: Severity
    damage_areas: List[DamageArea]
    estimated_total_cost: Money


class SurfaceDefect(ResultModel):
    panel: str
    defect_type: str        # "orange_peel", "run", "overspray", "fading"
    severity: Severity


class PaintAnalysisResult(AnalysisResultBase):
    report_type: Literal["PAINT_ANALYSIS"] = "PAINT_ANALYSIS"
    paint_condition: Grade
    gloss_level: Score
    color_match: Score
    surface_defects: List[SurfaceDefect] = []
    repainted_panels: List[str] = []
    recommendations: List[str] = []
    estimated_cost: Money = 0.0


class RpmAnalysis(ResultModel):
    idle_rpm: int = Field(ge=0)
    max_rpm: int = Field(ge=0)
    rpm_stability: Score


class SoundQuality(ResultModel):
    overall_quality: Score
    clarity: Score
    smoothness: Score
    consistency: Score


class EngineIssue(ResultModel):
    issue: str
    severity: Severity
    description: str = ""
    recommendation: Optional[str] = None


class EngineSoundAnalysisResult(AnalysisResultBase):
    report_type: Literal["ENGINE_SOUND_ANALYSIS"] = "ENGINE_SOUND_ANALYSIS"
    overall_score: Score
    engine_health: Grade
    rpm_analysis: RpmAnalysis
    sound_quality: SoundQuality
    detected_issues: List[EngineIssue] = []


class ValueRange(ResultModel):
    low: Money
    high: Money


class ComparableVehicle(ResultModel):
    description: str
    price: Money


class PriceAdjustment(ResultModel):
    factor: str             # "mileage", "accident_history", "paint"
    amount: float           # signed


class ValueEstimationResult(AnalysisResultBase):
    report_type: Literal["VALUE_ESTIMATION"] = "VALUE_ESTIMATION"
    estimated_value: float = Field(gt=0)
    currency: str = "TRY"
    value_range: ValueRange
    market_analysis: str = ""
    adjustments: List[PriceAdjustment] = []
    comparable_vehicles: List[ComparableVehicle] = []


class ComprehensiveExpertiseResult(AnalysisResultBase):
    report_type: Literal["COMPREHENSIVE_EXPERTISE"] = "COMPREHENSIVE_EXPERTISE"
    overall_score: Score
    expertise_grade: Grade
    section_scores: Dict[str, Score] = {}   # "damage", "paint", "engine", "value"
    expert_opinion: str
    strengths: List[str] = []
    weaknesses: List[str] = []
    recommendations: List[str] = []
    investment_decision: Literal["buy", "negotiate", "avoid"]
    estimated_value: Optional[Money] = None


AnalysisResult = Annotated[
    Union[
        DamageAnalysisResult,
        PaintAnalysisResult,
        EngineSoundAnalysisResult,
        ValueEstimationResult,
        ComprehensiveExpertiseResult,
    ],
    Field(discriminator="report_type"),
]

analysis_result_adapter = TypeAdapter(AnalysisResult)

RESULT_MODELS = {
    "DAMAGE_ANALYSIS": DamageAnalysisResult,
    "PAINT_ANALYSIS": PaintAnalysisResult,
    "ENGINE_SOUND_ANALYSIS": EngineSoundAnalysisResult,
    "VALUE_ESTIMATION": ValueEstimationResult,
    "COMPREHENSIVE_EXPERTISE": ComprehensiveExpertiseResult,
}

# Top-level keys a provider payload must carry before schema validation is attempted.
REQUIRED_FIELDS = {
    "DAMAGE_ANALYSIS": ["overall_score", "damage_severity", "damage_areas", "summary"],
    "PAINT_ANALYSIS": ["paint_condition", "gloss_level", "color_match", "summary"],
    "ENGINE_SOUND_ANALYSIS": ["overall_score", "engine_health", "rpm_analysis", "sound_quality"],
    "VALUE_ESTIMATION": ["estimated_value", "value_range", "summary"],
    "COMPREHENSIVE_EXPERTISE": ["overall_score", "expertise_grade", "expert_opinion", "summary"],
}
