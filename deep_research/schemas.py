from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


StepStatus = Literal["pending", "executing", "completed", "failed"]
PlanStatus = Literal["pending", "executing", "completed", "failed"]
PolicyAction = Literal["continue", "replan", "stop"]
ResultStatus = Literal["success", "partial", "failed"]

STEP_TRANSITIONS = {
    "pending": {"executing"},
    "executing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def clamp_unit(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return max(0.0, min(1.0, number))


class Source(BaseModel):
    title: str = ""
    url: Optional[str] = None
    snippet: str = ""
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)

    model_config = {"frozen": True}


class StructuredFindings(BaseModel):
    kind: Literal["structured"] = "structured"
    data: Dict[str, Any] = Field(default_factory=dict)
    summary: Optional[str] = None


class RawFindings(BaseModel):
    kind: Literal["raw"] = "raw"
    raw_response: str = ""


Findings = Annotated[Union[StructuredFindings, RawFindings], Field(discriminator="kind")]


class StepResult(BaseModel):
    data: Findings
    sources: List[Source] = Field(default_factory=list)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    execution_time_ms: int = 0
    completed_at: str = Field(default_factory=utc_iso)


class PlanStep(BaseModel):
    id: str
    title: str = ""
    description: str = ""
    dependencies: List[str] = Field(default_factory=list)
    tools: List[str] = Field(default_factory=list)
    status: StepStatus = "pending"
    result: Optional[StepResult] = None

    def transition(self, status: StepStatus) -> None:
        if status not in STEP_TRANSITIONS[self.status]:
            raise ValueError(f"step {self.id}: illegal transition {self.status} -> {status}")
        self.status = status


class ResearchPlan(BaseModel):
    id: str
    query: str
    steps: List[PlanStep] = Field(default_factory=list)
    status: PlanStatus = "pending"
    created_at: str = Field(default_factory=utc_iso)


class KnowledgeEntry(BaseModel):
    id: str
    session_id: str = ""
    content: str
    sources: List[Source] = Field(default_factory=list)
    timestamp: str
    relevance: float = Field(default=0.7, ge=0.0, le=1.0)


class VerificationResult(BaseModel):
    is_valid: bool
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class PolicyDecision(BaseModel):
    action: PolicyAction
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class OrchestrationMetadata(BaseModel):
    total_time_ms: int
    tokens_used: int = 0
    steps_completed: int
    steps_total: int
    planning_attempts: int = 1
    best_effort: bool = False
    verification_issues: List[str] = Field(default_factory=list)
    policy_decision: Optional[PolicyDecision] = None
    force_completion: bool = False
    report_truncated: bool = False


class OrchestrationResult(BaseModel):
    session_id: str
    plan_id: str
    query: str
    steps: List[PlanStep]
    final_report: str
    knowledge: List[KnowledgeEntry] = Field(default_factory=list)
    status: ResultStatus
    metadata: OrchestrationMetadata


class OrchestrateRequest(BaseModel):
    query: str

    @field_validator("query")
    @classmethod
    def require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be empty")
        return value.strip()


class ToolSpec(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
