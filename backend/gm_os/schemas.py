from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

CONTRACT_VERSION = "1.0.0"
MAX_OPTIONS = 6
MAX_CONTRACT_TOOL_CALLS = 24
MAX_REPORT_VIOLATIONS = 8

Commitment = Literal["declaratif", "volitif", "hypothetique", "informatif"]
COMMITMENTS: set[str] = {"declaratif", "volitif", "hypothetique", "informatif"}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class MjResponse(CamelModel):
    response_type: str = "narration"
    direct_answer: str = ""
    scene: str = ""
    action_result: str = ""
    consequences: str = ""
    options: list[str] = Field(default_factory=list, max_length=MAX_OPTIONS)


class ContractIntent(CamelModel):
    type: str = "story_action"
    confidence: float = Field(default=0.7, ge=0, le=1)
    commitment: Commitment = "informatif"
    risk_level: str = "medium"
    requires_check: bool = False
    reason: str = ""


class WorldMutations(CamelModel):
    delta: Any = None
    state_updated: bool = False
    pending: Any = None


class LoreGuardReport(CamelModel):
    blocked: bool = False
    violations: list[str] = Field(default_factory=list, max_length=MAX_REPORT_VIOLATIONS)


class MjContract(CamelModel):
    schema_version: Literal["1.0.0"] = CONTRACT_VERSION
    version: Literal["1.0.0"] = CONTRACT_VERSION
    confidence: float = Field(default=0.7, ge=0, le=1)
    intent: ContractIntent = Field(default_factory=ContractIntent)
    mj_response: MjResponse = Field(default_factory=MjResponse)
    tool_calls: list[Any] = Field(default_factory=list, max_length=MAX_CONTRACT_TOOL_CALLS)
    world_mutations: WorldMutations = Field(default_factory=WorldMutations)
    lore_guard_report: LoreGuardReport = Field(default_factory=LoreGuardReport)
    contract_source: str | None = None

    def to_payload(self) -> dict:
        payload = self.model_dump(by_alias=True)
        if self.contract_source is None:
            payload.pop("contractSource", None)
        return payload


class LoreViolation(CamelModel):
    gate: str
    code: str
    message: str
    severity: Literal["major", "minor"] = "major"


class TurnResultBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MjResponseResult(TurnResultBase):
    kind: Literal["mjResponse"] = "mjResponse"
    response: dict = Field(default_factory=dict)


class MjStructuredResult(TurnResultBase):
    kind: Literal["mjStructured"] = "mjStructured"
    structured: dict = Field(default_factory=dict)


class ResolutionResult(TurnResultBase):
    kind: Literal["resolution"] = "resolution"
    scene: str = ""
    action_result: str = ""
    consequences: str = ""
    options: list[Any] = Field(default_factory=list)


class ValidationResult(TurnResultBase):
    kind: Literal["validation"] = "validation"
    allowed: bool = False
    reason: str = ""


class ParsedReplyResult(TurnResultBase):
    kind: Literal["parsedReply"] = "parsedReply"
    reply: str = ""


RawTurnResult = Annotated[
    Union[
        MjResponseResult,
        MjStructuredResult,
        ResolutionResult,
        ValidationResult,
        ParsedReplyResult,
    ],
    Field(discriminator="kind"),
]

TURN_RESULT_ADAPTER: TypeAdapter = TypeAdapter(RawTurnResult)

CONTRACT_SOURCES: dict[str, str] = {
    "mjResponse": "payload-mj-response",
    "mjStructured": "mj-structured",
    "resolution": "rp-action-resolution",
    "validation": "rp-action-validation",
    "parsedReply": "parsed-reply",
}
