from __future__ import annotations

import logging
import math
from typing import Any

from fastapi.responses import JSONResponse

from gm_os.canonical import build_canonical_context
from gm_os.contract import attach_mj_contract
from gm_os.lore_guard import apply_lore_guard, evaluate_lore_guard
from gm_os.stats import StatsCollector

logger = logging.getLogger(__name__)

JSON_MEDIA_TYPE = "application/json; charset=utf-8"
CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
}

DEBUG_FIELDS = (
    "intent",
    "director",
    "worldDelta",
    "worldState",
    "outcome",
    "canonicalContext",
    "mjContract",
    "mjStructured",
    "mjToolTrace",
    "hrpAnalysis",
    "contractStats",
    "phase1",
    "phase2",
    "phase3",
    "phase4",
    "phase5",
    "phase6",
    "phase7",
    "phase8",
    "phase12",
    "phase3LoreGuard",
    "loreRecordsUsed",
    "rpActionValidation",
    "rpActionResolution",
    "turnResult",
)


def attach_canonical_context(payload: Any) -> Any:
    if not isinstance(payload, dict):
        return payload
    if payload.get("canonicalContext"):
        return payload
    if not isinstance(payload.get("worldState"), dict):
        return payload
    return {
        **payload,
        "canonicalContext": build_canonical_context(
            payload["worldState"],
            payload.get("contextPack"),
            payload.get("characterProfile"),
        ),
    }


def replace_non_finite(value: Any) -> Any:
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, dict):
        return {key: replace_non_finite(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [replace_non_finite(item) for item in value]
    return value


def is_debug_system_command(payload: dict) -> bool:
    intent = payload.get("intent") if isinstance(payload.get("intent"), dict) else {}
    contract = payload.get("mjContract") if isinstance(payload.get("mjContract"), dict) else {}
    contract_intent = contract.get("intent") if isinstance(contract.get("intent"), dict) else {}
    intent_type = str(intent.get("type") or contract_intent.get("type") or "").strip()
    reason = str(intent.get("reason") or contract_intent.get("reason") or "").lower()
    return intent_type == "system_command" and "debug" in reason


def build_debug_channel(payload: dict) -> dict | None:
    debug = {key: payload[key] for key in DEBUG_FIELDS if payload.get(key) is not None}
    return debug or None


def strip_debug_fields(payload: dict) -> dict:
    return {key: value for key, value in payload.items() if key not in DEBUG_FIELDS}


class TurnPayloadPipeline:
    def __init__(self, stats: StatsCollector | None = None) -> None:
        self.stats = stats or StatsCollector()

    def process(self, payload: Any) -> Any:
        payload = replace_non_finite(payload)
        if not isinstance(payload, dict):
            return payload
        with_contract = attach_mj_contract(payload)
        with_canonical = attach_canonical_context(with_contract)
        check = evaluate_lore_guard(with_canonical)
        guarded = apply_lore_guard(with_canonical, check)
        if check.blocked:
            logger.info(
                "Lore guard blocked turn: %s",
                ", ".join(check.violation_labels()) or "explicit",
            )
        self.stats.record_turn(guarded, check)
        return self.separate_debug_channel(guarded)

    def separate_debug_channel(self, payload: dict) -> dict:
        debug = build_debug_channel(payload)
        debug_command = is_debug_system_command(payload)
        wants_debug = debug_command or bool(
            debug and payload.get("reply") and payload.get("speaker")
        )
        clean = strip_debug_fields(payload)
        if not wants_debug or not debug:
            self.stats.record_debug_channel(
                False, "debug-command-no-data" if debug_command else "rp-clean"
            )
            return clean
        self.stats.record_debug_channel(
            True, "debug-command" if debug_command else "narration-with-debug-channel"
        )
        return {**clean, "debug": debug}

    def send_json(self, status_code: int, payload: Any) -> JSONResponse:
        return JSONResponse(
            content=self.process(payload),
            status_code=status_code,
            headers=CORS_HEADERS,
            media_type=JSON_MEDIA_TYPE,
        )
