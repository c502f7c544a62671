from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable

from gm_os.contract import make_mj_response, one_line
from gm_os.schemas import LoreViolation

MAX_VIOLATIONS = 10
REPORT_VIOLATION_LIMIT = 6

GUARD_REPLY = "\n".join(
    [
        "Le MJ bloque cette avancée pour préserver la cohérence du monde.",
        "Précise un lieu/faction/repère canonique déjà établi pour continuer.",
    ]
)
GUARD_OPTIONS = [
    "Nommer un lieu déjà connu",
    "Demander où tu te trouves",
    "Reformuler l'action sans ambiguïté",
]


@dataclass(frozen=True)
class LoreGuardCheck:
    checked: bool
    blocked: bool
    violations: list[LoreViolation] = field(default_factory=list)

    def violation_labels(self, limit: int = REPORT_VIOLATION_LIMIT) -> list[str]:
        return [f"{row.gate}:{row.code}" for row in self.violations][:limit]


def contract_intent_type(payload: dict) -> str:
    contract_intent = _dict(_dict(payload.get("mjContract")).get("intent"))
    value = contract_intent.get("type")
    if value is None:
        value = _dict(payload.get("intent")).get("type")
    return _text(value)


def contract_response_type(payload: dict) -> str:
    contract_response = _dict(_dict(payload.get("mjContract")).get("mjResponse"))
    value = contract_response.get("responseType")
    if value is None:
        value = _dict(payload.get("mjResponse")).get("responseType")
    return _text(value)


def is_narrative_payload(payload: dict) -> bool:
    intent_type = contract_intent_type(payload)
    if not intent_type or intent_type == "system_command":
        return False
    return contract_response_type(payload) not in {"system", "status"}


def normalize_violations(entries: Any) -> list[LoreViolation]:
    if not isinstance(entries, list):
        return []
    rows: list[LoreViolation] = []
    for entry in entries:
        if isinstance(entry, LoreViolation):
            rows.append(entry)
            continue
        if not isinstance(entry, dict):
            continue
        message = one_line(entry.get("message"), 220)
        if not message:
            continue
        severity = "minor" if _text(entry.get("severity")).lower() == "minor" else "major"
        rows.append(
            LoreViolation(
                gate=_text(entry.get("gate")).lower() or "unknown",
                code=_text(entry.get("code")).lower() or "unknown",
                message=message,
                severity=severity,
            )
        )
    return rows[:MAX_VIOLATIONS]


def merge_violation_lists(primary: Iterable[Any], secondary: Any) -> list[LoreViolation]:
    merged: list[LoreViolation] = []
    seen: set[str] = set()
    for row in normalize_violations(list(primary)) + normalize_violations(secondary):
        key = f"{row.gate}:{row.code}:{row.message}"
        if key in seen:
            continue
        seen.add(key)
        merged.append(row)
    return merged[:MAX_VIOLATIONS]


def evaluate_lore_guard(payload: dict) -> LoreGuardCheck:
    if not is_narrative_payload(payload):
        return LoreGuardCheck(checked=False, blocked=False)

    world = _dict(payload.get("worldState"))
    canonical = payload.get("canonicalContext")
    canonical = canonical if isinstance(canonical, dict) else None
    travel_target = _text(_dict(_dict(_dict(world.get("travel")).get("pending")).get("to")).get("id"))
    if canonical is not None and "id" in _dict(canonical.get("location")):
        location_id = _text(canonical["location"]["id"])
    else:
        location_id = _text(_dict(world.get("location")).get("id"))
    time = world.get("time") if isinstance(world.get("time"), dict) else _dict(_dict(canonical).get("time"))
    interlocutor = _text(_dict(_dict(canonical).get("social")).get("activeInterlocutor"))

    violations: list[dict] = []
    if not location_id:
        violations.append(
            {
                "gate": "geographie",
                "code": "missing-canonical-location",
                "message": "Aucune position canonique exploitable n'est disponible.",
                "severity": "major",
            }
        )
    if not _valid_time(time):
        violations.append(
            {
                "gate": "temps",
                "code": "invalid-canonical-time",
                "message": "Le temps canonique est invalide ou incomplet.",
                "severity": "major",
            }
        )
    if travel_target and location_id and travel_target == location_id:
        violations.append(
            {
                "gate": "geographie",
                "code": "travel-loop-same-location",
                "message": "Un déplacement est en attente vers la position déjà active.",
                "severity": "major",
            }
        )
    if contract_intent_type(payload) == "social_action" and not interlocutor:
        violations.append(
            {
                "gate": "politique",
                "code": "social-without-interlocutor",
                "message": "Action sociale sans interlocuteur actif confirmé.",
                "severity": "minor",
            }
        )

    explicit = _dict(payload.get("phase3LoreGuard"))
    merged = merge_violation_lists(violations, explicit.get("violations"))
    blocked = bool(explicit.get("blocked")) or any(row.severity == "major" for row in merged)
    return LoreGuardCheck(checked=True, blocked=blocked, violations=merged)


def apply_lore_guard(payload: dict, check: LoreGuardCheck) -> dict:
    if not check.checked:
        return payload
    report = {"blocked": check.blocked, "violations": check.violation_labels()}
    contract = payload.get("mjContract")
    if isinstance(contract, dict):
        contract = {**contract, "loreGuardReport": report}
    if not check.blocked:
        return {**payload, "mjContract": contract}

    clarification = make_mj_response(
        response_type="clarification",
        scene="Un verrou de cohérence lore stoppe cette formulation.",
        action_result="Ta demande n'est pas rejetée; elle doit être reformulée avec un ancrage canonique.",
        consequences="Aucune mutation du monde n'est appliquée.",
        options=GUARD_OPTIONS,
    ).model_dump(by_alias=True)
    if isinstance(contract, dict):
        contract = {**contract, "mjResponse": clarification}
    return {
        **payload,
        "reply": GUARD_REPLY,
        "mjResponse": clarification,
        "mjContract": contract,
    }


def _valid_time(time: dict) -> bool:
    hour = _number(time.get("hour"))
    minute = _number(time.get("minute"))
    day = _number(time.get("day"))
    if hour is None or minute is None or day is None:
        return False
    return 0 <= hour <= 23 and 0 <= minute <= 59 and day >= 1


def _number(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}
