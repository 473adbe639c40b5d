"""Schema the LLM must satisfy for psychographic analysis.

Its model_json_schema() is sent to the provider; model_validate() enforces
required fields, numeric bounds and enum sets on the reply.
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

RiskValue = Literal["conservative", "moderate", "aggressive"]
CognitiveValue = Literal["analytical", "intuitive", "systematic", "creative"]
MoodValue = Literal["positive", "neutral", "negative", "excited", "anxious", "confident", "uncertain"]


class EmotionalState(BaseModel):
    mood: MoodValue
    confidence: float = Field(ge=0.0, le=1.0)


class IndicatorConfidences(BaseModel):
    risk_profile: float = Field(ge=0.0, le=1.0)
    cognitive_style: float = Field(ge=0.0, le=1.0)
    mood: float = Field(ge=0.0, le=1.0)


class LlmPsychographicOutput(BaseModel):
    risk_profile: RiskValue
    cognitive_style: CognitiveValue
    emotional_state: EmotionalState
    motivation_stack: list[str] = Field(min_length=1, max_length=5)
    confidences: IndicatorConfidences
    reasoning: str = Field(min_length=1, max_length=2000)

    @field_validator("motivation_stack")
    @classmethod
    def _labels_not_blank(cls, value: list[str]) -> list[str]:
        cleaned = [label.strip() for label in value]
        if any(not label for label in cleaned):
            raise ValueError("motivation labels must be non-empty")
        return cleaned

    @field_validator("reasoning")
    @classmethod
    def _reasoning_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reasoning must not be blank")
        return value.strip()
