from __future__ import annotations

import math
import re
from typing import Any

from pydantic import ValidationError

from gm_os.schemas import (
    COMMITMENTS,
    CONTRACT_SOURCES,
    MAX_CONTRACT_TOOL_CALLS,
    MAX_OPTIONS,
    MAX_REPORT_VIOLATIONS,
    TURN_RESULT_ADAPTER,
    ContractIntent,
    LoreGuardReport,
    MjContract,
    MjResponse,
    MjResponseResult,
    MjStructuredResult,
    ParsedReplyResult,
    RawTurnResult,
    ResolutionResult,
    ValidationResult,
    WorldMutations,
)

DEFAULT_CONFIDENCE = 0.7
OPTION_TEXT_LIMIT = 140
REPLY_OPTION_LIMIT = 4
OPTION_KEYS = ("label", "text", "title", "name", "value", "option", "prompt")
OPTIONS_LINE = re.compile(r"^tu peux maintenant:\s*", re.IGNORECASE)
NARRATION_SIGNALS = (
    "intent",
    "director",
    "worldState",
    "worldDelta",
    "mjStructured",
    "mjResponse",
    "turnResult",
)


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def one_line(value: Any, max_len: int = 220) -> str:
    clean = " ".join(_string(value).split())
    if not clean:
        return ""
    if len(clean) <= max_len:
        return clean
    return f"{clean[: max_len - 3]}..."


def normalize_option_text(option: Any) -> str:
    if isinstance(option, str):
        return option.strip()
    if isinstance(option, (bool, int, float)):
        return str(option).strip()
    if not isinstance(option, dict):
        return ""
    for key in OPTION_KEYS:
        value = option.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    action = option.get("action")
    if isinstance(action, str) and action.strip():
        target = option.get("target")
        target = target.strip() if isinstance(target, str) else ""
        return f"{action.strip()} {target}".strip()
    return ""


def normalize_mj_options(options: Any, limit: int = MAX_OPTIONS) -> list[str]:
    if not isinstance(options, list):
        return []
    texts = (one_line(normalize_option_text(entry), OPTION_TEXT_LIMIT) for entry in options)
    return [text for text in texts if text][:limit]


def normalize_commitment(value: Any, fallback: str = "informatif") -> str:
    raw = _string(value).strip().lower()
    return raw if raw in COMMITMENTS else fallback


def parse_reply_blocks(reply: Any) -> dict:
    text = _string(reply).strip()
    blocks = {
        "directAnswer": "",
        "scene": "",
        "actionResult": "",
        "consequences": "",
        "options": [],
    }
    if not text:
        return blocks
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    option_line = next((line for line in lines if OPTIONS_LINE.match(line)), None)
    if option_line is not None:
        parts = OPTIONS_LINE.sub("", option_line).split("|")
        blocks["options"] = [part.strip() for part in parts if part.strip()][:REPLY_OPTION_LIMIT]
    remaining = [line for line in lines if line != option_line]
    blocks["scene"] = remaining[0] if len(remaining) > 0 else ""
    blocks["actionResult"] = remaining[1] if len(remaining) > 1 else ""
    blocks["consequences"] = remaining[2] if len(remaining) > 2 else ""
    if len(remaining) <= 2:
        blocks["directAnswer"] = remaining[0] if remaining else ""
    return blocks


def make_mj_response(
    *,
    response_type: str = "narration",
    direct_answer: Any = "",
    scene: Any = "",
    action_result: Any = "",
    consequences: Any = "",
    options: Any = None,
) -> MjResponse:
    return MjResponse(
        response_type=_string(response_type) or "narration",
        direct_answer=_string(direct_answer),
        scene=_string(scene),
        action_result=_string(action_result),
        consequences=_string(consequences),
        options=normalize_mj_options(options or []),
    )


def normalize_mj_contract(raw: Any) -> MjContract:
    safe = _dict(raw)
    confidence = _confidence(safe.get("confidence"), DEFAULT_CONFIDENCE)
    intent = _dict(safe.get("intent"))
    response = _dict(safe.get("mjResponse"))
    mutations = _dict(safe.get("worldMutations"))
    report = _dict(safe.get("loreGuardReport"))
    tool_calls = safe.get("toolCalls")
    return MjContract(
        confidence=confidence,
        intent=ContractIntent(
            type=_string(intent.get("type"), "story_action"),
            confidence=_confidence(intent.get("confidence"), confidence),
            commitment=normalize_commitment(intent.get("commitment")),
            risk_level=_string(intent.get("riskLevel"), "medium"),
            requires_check=bool(intent.get("requiresCheck")),
            reason=_string(intent.get("reason")),
        ),
        mj_response=make_mj_response(
            response_type=_string(response.get("responseType"), "narration"),
            direct_answer=response.get("directAnswer"),
            scene=response.get("scene"),
            action_result=response.get("actionResult"),
            consequences=response.get("consequences"),
            options=response.get("options"),
        ),
        tool_calls=list(tool_calls)[:MAX_CONTRACT_TOOL_CALLS] if isinstance(tool_calls, list) else [],
        world_mutations=WorldMutations(
            delta=mutations.get("delta"),
            state_updated=bool(mutations.get("stateUpdated")),
            pending=mutations.get("pending"),
        ),
        lore_guard_report=LoreGuardReport(
            blocked=bool(report.get("blocked")),
            violations=_violation_labels(report.get("violations")),
        ),
    )


def classify_turn_result(payload: dict) -> RawTurnResult:
    if isinstance(payload.get("mjResponse"), dict):
        return MjResponseResult(response=payload["mjResponse"])
    if isinstance(payload.get("mjStructured"), dict):
        return MjStructuredResult(structured=payload["mjStructured"])
    resolution = payload.get("rpActionResolution")
    if isinstance(resolution, dict):
        return ResolutionResult(
            scene=_string(resolution.get("scene")),
            action_result=_string(resolution.get("actionResult")),
            consequences=_string(resolution.get("consequences")),
            options=resolution.get("options") if isinstance(resolution.get("options"), list) else [],
        )
    validation = payload.get("rpActionValidation")
    if isinstance(validation, dict):
        return ValidationResult(
            allowed=bool(validation.get("allowed")),
            reason=_string(validation.get("reason")),
        )
    return ParsedReplyResult(reply=_string(payload.get("reply")))


def resolve_turn_result(payload: dict) -> RawTurnResult:
    tagged = payload.get("turnResult")
    if isinstance(tagged, dict) and tagged.get("kind"):
        try:
            return TURN_RESULT_ADAPTER.validate_python(tagged)
        except ValidationError:
            pass
    return classify_turn_result(payload)


def infer_response_type(payload: dict) -> str:
    structured_type = _string(_dict(payload.get("mjStructured")).get("responseType")).strip()
    if structured_type:
        return structured_type
    mode = _string(_dict(payload.get("director")).get("mode"))
    if mode == "lore":
        return "status"
    if mode == "runtime":
        return "resolution"
    return "narration"


def response_from_turn_result(result: RawTurnResult, payload: dict) -> MjResponse:
    if result.kind == "mjResponse":
        row = result.response
        return make_mj_response(
            response_type=_string(row.get("responseType")) or infer_response_type(payload),
            direct_answer=row.get("directAnswer"),
            scene=row.get("scene"),
            action_result=row.get("actionResult"),
            consequences=row.get("consequences"),
            options=row.get("options"),
        )
    if result.kind == "mjStructured":
        row = result.structured
        return make_mj_response(
            response_type=_string(row.get("responseType")) or "narration",
            direct_answer=row.get("directAnswer"),
            scene=row.get("scene"),
            action_result=row.get("actionResult"),
            consequences=row.get("consequences"),
            options=row.get("options"),
        )
    if result.kind == "resolution":
        return make_mj_response(
            response_type="resolution",
            scene=result.scene,
            action_result=result.action_result,
            consequences=result.consequences,
            options=result.options,
        )
    if result.kind == "validation":
        verdict = "possible" if result.allowed else "bloquee"
        return make_mj_response(
            response_type="clarification",
            scene=f"Validation serveur: {verdict}.",
            action_result=result.reason,
        )
    blocks = parse_reply_blocks(result.reply)
    return make_mj_response(
        response_type=infer_response_type(payload),
        direct_answer=blocks["directAnswer"],
        scene=blocks["scene"],
        action_result=blocks["actionResult"],
        consequences=blocks["consequences"],
        options=blocks["options"],
    )


def attach_mj_contract(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    if payload.get("mjContract"):
        raw = payload["mjContract"]
        contract = normalize_mj_contract(raw)
        source = _string(_dict(raw).get("contractSource")).strip()
        contract.contract_source = source or "payload-contract"
        return {**payload, "mjContract": contract.to_payload()}
    if not isinstance(payload.get("reply"), str):
        return payload
    if not any(payload.get(key) for key in NARRATION_SIGNALS):
        return payload

    result = resolve_turn_result(payload)
    response = response_from_turn_result(result, payload)
    intent = payload.get("intent")
    structured = _dict(payload.get("mjStructured"))
    intent_row = _dict(intent)
    commitment = normalize_commitment(
        intent_row.get("commitment"),
        normalize_commitment(structured.get("commitment")),
    )
    confidence_raw = intent_row.get("confidence")
    if confidence_raw is None:
        confidence_raw = structured.get("confidence")

    contract = normalize_mj_contract(
        {
            "confidence": confidence_raw,
            "intent": {**intent_row, "commitment": commitment},
            "mjResponse": response.model_dump(by_alias=True),
            "toolCalls": _tool_trace(payload),
            "worldMutations": {
                "delta": payload.get("worldDelta"),
                "stateUpdated": bool(payload.get("stateUpdated")),
                "pending": pending_state(payload.get("worldState")),
            },
            "loreGuardReport": _outcome_guard_report(payload.get("outcome")),
        }
    )
    contract.contract_source = CONTRACT_SOURCES[result.kind]
    contract_payload = contract.to_payload()
    return {
        **payload,
        "intent": {**intent, "commitment": commitment} if isinstance(intent, dict) else intent,
        "mjResponse": contract_payload["mjResponse"],
        "mjContract": contract_payload,
    }


def pending_state(world_state: Any) -> dict:
    world = _dict(world_state)
    conversation = _dict(world.get("conversation"))
    travel = _dict(world.get("travel"))
    return {
        "action": conversation.get("pendingAction"),
        "travel": travel.get("pending") or conversation.get("pendingTravel"),
        "access": conversation.get("pendingAccess"),
    }


def _tool_trace(payload: dict) -> list:
    hrp_trace = _dict(payload.get("hrpAnalysis")).get("toolTrace")
    mj_trace = payload.get("mjToolTrace")
    rows = (hrp_trace if isinstance(hrp_trace, list) else []) + (
        mj_trace if isinstance(mj_trace, list) else []
    )
    return rows[:MAX_CONTRACT_TOOL_CALLS]


def _outcome_guard_report(outcome: Any) -> dict:
    row = _dict(outcome)
    applied = _dict(row.get("appliedOutcome"))
    blocked = bool(row.get("guardBlocked") or applied.get("guardBlocked"))
    violations = row.get("guardViolations") or applied.get("guardViolations")
    return {"blocked": blocked, "violations": violations if isinstance(violations, list) else []}


def _violation_labels(entries: Any) -> list[str]:
    if not isinstance(entries, list):
        return []
    labels: list[str] = []
    for entry in entries:
        if isinstance(entry, dict):
            gate = _string(entry.get("gate")).strip()
            code = _string(entry.get("code")).strip()
            label = f"{gate}:{code}" if gate or code else ""
        else:
            label = _string(entry).strip()
        if label:
            labels.append(label)
    return labels[:MAX_REPORT_VIOLATIONS]


def _confidence(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return clamp(number, 0.0, 1.0)


def _string(value: Any, default: str = "") -> str:
    if value is None:
        return default
    return str(value)


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}
