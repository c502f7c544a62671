from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, JsonValue


class ToolCallRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    name: str
    args: dict[str, JsonValue] = Field(default_factory=dict)


class MjStructuredDraft(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    response_type: Literal["narration", "resolution", "clarification", "status"] = "narration"
    direct_answer: str = ""
    scene: str = ""
    action_result: str = ""
    consequences: str = ""
    options: list[str] = Field(default_factory=list, max_length=6)
    commitment: Literal["declaratif", "volitif", "hypothetique", "informatif"] | None = None
    confidence: float | int | None = Field(default=None, ge=0, le=1)
    tool_calls: list[ToolCallRequest] = Field(default_factory=list, max_length=12)

    def to_mj_structured(self) -> dict:
        structured = {
            "responseType": self.response_type,
            "directAnswer": self.direct_answer,
            "scene": self.scene,
            "actionResult": self.action_result,
            "consequences": self.consequences,
            "options": list(self.options),
        }
        if self.commitment is not None:
            structured["commitment"] = self.commitment
        if self.confidence is not None:
            structured["confidence"] = float(self.confidence)
        return structured


class NarrationPrompt(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)

    message: str
    conversation_mode: Literal["rp", "hrp"] = "rp"
    intent: dict[str, JsonValue] | None = None
    canonical_context: dict[str, JsonValue] | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    tool_results: list[dict[str, JsonValue]] = Field(default_factory=list)
