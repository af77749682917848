from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Analysis(_CamelModel):
    """Structured risk assessment of one page."""

    initial_thoughts: str = ""
    indicators: list[str] = Field(default_factory=list)
    follow_up_questions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("followUpQuestions", "questions", "follow_up_questions"),
        serialization_alias="followUpQuestions",
    )
    risk_level: int = Field(default=1, ge=1, le=5)
    justification: str = ""

    @classmethod
    def default(cls, justification: str, *, initial_thoughts: str = "Analysis failed") -> "Analysis":
        return cls(
            initial_thoughts=initial_thoughts,
            indicators=[],
            follow_up_questions=[],
            risk_level=1,
            justification=justification,
        )


class Finding(_CamelModel):
    content: str
    source: str
    relevance_score: float = Field(ge=0.0, le=1.0)
    analysis: Analysis
    timestamp: str = Field(default_factory=utc_now_iso)


class ReasoningStep(_CamelModel):
    timestamp: str = Field(default_factory=utc_now_iso)
    stage: str
    reasoning: str = ""
    evidence: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class ReasoningChain(_CamelModel):
    steps: list[ReasoningStep] = Field(default_factory=list)
    final_conclusions: list[str] = Field(default_factory=list)


class AwardSearchContext(_CamelModel):
    """Research report for one award; the unit stored in the result store."""

    original_award_id: str
    findings: list[Finding] = Field(default_factory=list)
    extracted_info: dict[str, Any] = Field(default_factory=dict)
    reasoning_chain: ReasoningChain = Field(default_factory=ReasoningChain)
    summary: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.summary.strip())

    @property
    def highest_risk_level(self) -> int:
        return max((f.analysis.risk_level for f in self.findings), default=0)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, raw: str) -> "AwardSearchContext":
        return cls.model_validate_json(raw)
