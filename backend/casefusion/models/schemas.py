from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


EvidenceType = Literal["image", "video", "audio", "text", "document"]
CaseStatus = Literal["pending", "running", "completed", "error"]
Severity = Literal["low", "medium", "high"]
ReconstructionKind = Literal["most_likely", "alternative", "before", "after"]
ProgressStatus = Literal["running", "completed", "error"]
DerivedStatus = Literal["ok", "error"]


def _clamp_unit(v):
    if v is None:
        return v
    return max(0.0, min(1.0, float(v)))


class ApiModel(BaseModel):
    """Base for models that cross the HTTP boundary. Serialized in camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Cases & evidence ──────────────────────────────────────


class Case(ApiModel):
    """A case groups evidence items and owns at most one analysis."""
    id: str
    name: str
    description: Optional[str] = None
    status: CaseStatus = "pending"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CaseCreate(ApiModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=5000)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Case name is required")
        return v


class EvidenceDerived(ApiModel):
    """Per-item processing result written back by the evidence processor."""
    status: DerivedStatus = "ok"
    recoverable: bool = True
    error: Optional[str] = None
    summary: str = ""
    tags: List[str] = Field(default_factory=list)
    transcript: Optional[str] = None
    frame_ids: Optional[List[str]] = None
    frame_count: Optional[int] = None
    analyzed_frame_count: Optional[int] = None
    full_text: Optional[str] = None
    char_count: Optional[int] = None
    truncated: Optional[bool] = None

    @property
    def is_healthy(self) -> bool:
        return self.status == "ok" and bool(self.summary.strip())


class EvidenceItem(ApiModel):
    """One uploaded artifact belonging to a case."""
    id: str
    case_id: str
    type: EvidenceType
    original_filename: str
    storage_url: str
    uploaded_at: datetime = Field(default_factory=datetime.utcnow)
    derived: Optional[EvidenceDerived] = None


class FrameDerived(ApiModel):
    status: DerivedStatus = "ok"
    summary: str = ""
    tags: List[str] = Field(default_factory=list)


class FrameEvidence(ApiModel):
    """A still frame sampled from a video evidence item."""
    id: str
    parent_evidence_id: str
    time_seconds: float = Field(ge=0.0)
    storage_url: str
    derived: Optional[FrameDerived] = None


# ── Analysis entities ─────────────────────────────────────


class TimelineEvent(ApiModel):
    """Represents an inferred event on the case timeline."""
    id: str
    case_id: str
    label: str
    description: str
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    confidence: float = Field(default=0.5, ge=0.0, le=1.0, description="Confidence score 0.0-1.0")
    supporting_evidence_ids: List[str] = Field(default_factory=list)

    @property
    def sort_time(self) -> float:
        return self.start_time or 0.0


class Contradiction(ApiModel):
    id: str
    case_id: str
    description: str
    involved_evidence_ids: List[str] = Field(default_factory=list)
    involved_witnesses: List[str] = Field(default_factory=list)
    severity: Severity = "medium"


class Scenario(ApiModel):
    """One competing explanation of the fused evidence.

    Likelihood is an independent advisory score; scenarios of a case are not
    required to sum to 1.
    """
    id: str
    case_id: str
    name: str
    likelihood: float = Field(ge=0.0, le=1.0)
    narrative: str
    reasoning: Optional[str] = None
    key_findings: List[str] = Field(default_factory=list)
    supporting_evidence_ids: List[str] = Field(default_factory=list)
    supporting_evidence: List[str] = Field(default_factory=list)
    conflicting_evidence_ids: List[str] = Field(default_factory=list)
    conflicting_evidence: List[str] = Field(default_factory=list)
    reconstruction_image_ids: List[str] = Field(default_factory=list)


class ReconstructionImage(ApiModel):
    id: str
    case_id: str
    scenario_id: Optional[str] = None
    viewpoint: str
    type: ReconstructionKind = "most_likely"
    storage_url: str
    description: str


class HeatmapSegment(ApiModel):
    start_time: float
    end_time: float
    confidence: float = Field(ge=0.0, le=1.0)
    contradiction_score: float = Field(ge=0.0, le=1.0)


class Heatmap(ApiModel):
    segments: List[HeatmapSegment] = Field(default_factory=list)


class EvidenceSummary(ApiModel):
    evidence_id: str
    summary: str
    tags: List[str] = Field(default_factory=list)
    processed: bool = True


class AnalysisReasoning(ApiModel):
    fusion: Optional[str] = None
    contradictions: Optional[str] = None
    scenarios: Optional[str] = None


class CaseAnalysis(ApiModel):
    """Aggregate root of a completed run. Replaced wholesale on every run."""
    case_id: str
    status: CaseStatus = "completed"
    timeline: List[TimelineEvent] = Field(default_factory=list)
    contradictions: List[Contradiction] = Field(default_factory=list)
    scenarios: List[Scenario] = Field(default_factory=list)
    missing_evidence_suggestions: List[str] = Field(default_factory=list)
    global_summary: str = ""
    heatmap: Heatmap = Field(default_factory=Heatmap)
    reasoning: AnalysisReasoning = Field(default_factory=AnalysisReasoning)
    evidence_summaries: List[EvidenceSummary] = Field(default_factory=list)
    reconstructions: List[ReconstructionImage] = Field(default_factory=list)


class AnalysisProgress(ApiModel):
    """Ephemeral progress event streamed to clients. Never persisted."""
    step: str
    progress: int = Field(ge=0, le=100)
    reasoning: Optional[str] = None
    current_item: Optional[str] = None
    status: ProgressStatus = "running"
    step_number: Optional[int] = None
    total_steps: Optional[int] = None


class AnalysisStartResponse(ApiModel):
    message: str
    case_id: str


class ChatRequest(ApiModel):
    question: str = Field(min_length=1, max_length=4000)


class ChatResponse(ApiModel):
    answer: str
    reasoning: str


# ── Structured model outputs ──────────────────────────────
# Requested with response_schema and decoded with model_validate_json.


class EvidenceSummaryResponse(BaseModel):
    """Structured summary of a single evidence item or frame."""
    summary: str
    tags: List[str] = []
    time_hint: Optional[str] = None
    reasoning: Optional[str] = None


class FusionTimelineEntry(BaseModel):
    label: str
    description: str
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    confidence: float = 0.5
    supporting_evidence_ids: List[str] = []

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        return _clamp_unit(v)


class FusionResponse(BaseModel):
    """Unified world model and timeline built from all evidence summaries."""
    timeline: List[FusionTimelineEntry] = []
    world_model: str
    reasoning: Optional[str] = None


class ContradictionEntry(BaseModel):
    description: str
    involved_evidence_ids: List[str] = []
    involved_witnesses: List[str] = []
    severity: Severity = "medium"

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v


class ContradictionResponse(BaseModel):
    contradictions: List[ContradictionEntry] = []
    reasoning: Optional[str] = None


class ScenarioEntry(BaseModel):
    name: str
    likelihood: float
    narrative: str
    scenario_reasoning: Optional[str] = None
    key_findings: List[str] = []
    supporting_evidence: List[str] = []
    conflicting_evidence: List[str] = []
    supporting_evidence_ids: List[str] = []
    conflicting_evidence_ids: List[str] = []

    @field_validator("likelihood", mode="before")
    @classmethod
    def clamp_likelihood(cls, v):
        return _clamp_unit(v)


class ScenarioResponse(BaseModel):
    scenarios: List[ScenarioEntry] = []
    reasoning: Optional[str] = None


class ChatAnswerResponse(BaseModel):
    answer: str
    reasoning: Optional[str] = None
