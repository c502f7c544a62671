from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Iterable

SHORT_TERM_MAX = 20
LONG_TERM_MAX = 80
IMPORTANCE_MIN = 0.0
IMPORTANCE_MAX = 20.0
SHORT_TERM_FLOOR = 0.5
LONG_TERM_IMPORTANCE_FLOOR = 8.0
MAJOR_DECAY_PER_HOUR = 0.02
MINOR_DECAY_PER_HOUR = 0.18
LONG_TERM_DECAY_PER_HOUR = 0.005

IMPACT_WEIGHTS = {"global": 6, "regional": 4, "local": 2, "none": 0}
TIME_UNIT_HOURS = {"hour": 1, "day": 24, "special": 6}
MAJOR_QUEST_STATES = {"Terminée", "Acceptée"}


def clamp(value: float, low: float, high: float) -> float:
    return min(high, max(low, value))


def impact_weight(scope: str | None) -> int:
    return IMPACT_WEIGHTS.get(str(scope or ""), 0)


@dataclass(frozen=True)
class MemoryEntry:
    id: str
    at: str
    transition_id: str
    entity_type: str
    entity_id: str
    from_state: str
    to_state: str
    consequence: str
    impact_scope: str
    rule_ref: str
    importance: float
    age_hours: float = 0.0
    decay_per_hour: float = MINOR_DECAY_PER_HOUR

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryEntry":
        return cls(
            id=str(data.get("id") or ""),
            at=str(data.get("at") or ""),
            transition_id=str(data.get("transitionId") or ""),
            entity_type=str(data.get("entityType") or ""),
            entity_id=str(data.get("entityId") or ""),
            from_state=str(data.get("fromState") or ""),
            to_state=str(data.get("toState") or ""),
            consequence=str(data.get("consequence") or ""),
            impact_scope=str(data.get("impactScope") or "none"),
            rule_ref=str(data.get("ruleRef") or ""),
            importance=clamp(_float(data.get("importance")), IMPORTANCE_MIN, IMPORTANCE_MAX),
            age_hours=max(0.0, _float(data.get("ageHours"))),
            decay_per_hour=max(0.0, _float(data.get("decayPerHour"), MINOR_DECAY_PER_HOUR)),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "at": self.at,
            "transitionId": self.transition_id,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "fromState": self.from_state,
            "toState": self.to_state,
            "consequence": self.consequence,
            "impactScope": self.impact_scope,
            "ruleRef": self.rule_ref,
            "importance": self.importance,
            "ageHours": self.age_hours,
            "decayPerHour": self.decay_per_hour,
        }

    def decayed(self, elapsed_hours: float) -> "MemoryEntry":
        if elapsed_hours <= 0:
            return self
        importance = clamp(
            self.importance - self.decay_per_hour * elapsed_hours,
            IMPORTANCE_MIN,
            IMPORTANCE_MAX,
        )
        return replace(self, importance=importance, age_hours=self.age_hours + elapsed_hours)

    def promoted(self) -> "MemoryEntry":
        return replace(
            self,
            importance=clamp(max(self.importance, LONG_TERM_IMPORTANCE_FLOOR), 1, IMPORTANCE_MAX),
            decay_per_hour=LONG_TERM_DECAY_PER_HOUR,
        )

    def promotion_key(self) -> tuple[str, str, str]:
        return (self.transition_id, self.entity_id, self.to_state)


@dataclass(frozen=True)
class NarrativeOutcome:
    entity_type: str
    to_state: str
    impact_scope: str
    time_unit: str
    time_value: float
    history: dict

    @classmethod
    def from_dict(cls, data: Any) -> "NarrativeOutcome | None":
        if not isinstance(data, dict):
            return None
        result = data.get("result")
        history = data.get("historyEntry")
        if not isinstance(result, dict) or not isinstance(history, dict):
            return None
        if not history.get("transitionId") or not history.get("at"):
            return None
        time_block = result.get("timeBlock") if isinstance(result.get("timeBlock"), dict) else {}
        return cls(
            entity_type=str(result.get("entityType") or history.get("entityType") or ""),
            to_state=str(result.get("toState") or history.get("toState") or ""),
            impact_scope=str(result.get("impactScope") or history.get("impactScope") or "none"),
            time_unit=str(time_block.get("unit") or "hour"),
            time_value=_float(time_block.get("value")),
            history=history,
        )

    @property
    def elapsed_hours(self) -> float:
        return self.time_value * TIME_UNIT_HOURS.get(self.time_unit, 1)

    @property
    def is_major(self) -> bool:
        if self.impact_scope in {"regional", "global"}:
            return True
        if self.entity_type == "quest" and self.to_state in MAJOR_QUEST_STATES:
            return True
        return self.entity_type == "trama"

    def to_entry(self) -> MemoryEntry:
        major = self.is_major
        history = self.history
        transition_id = str(history.get("transitionId") or "")
        entity_id = str(history.get("entityId") or "")
        at = str(history.get("at") or "")
        return MemoryEntry(
            id=f"{transition_id}:{entity_id}:{at}",
            at=at,
            transition_id=transition_id,
            entity_type=str(history.get("entityType") or self.entity_type),
            entity_id=entity_id,
            from_state=str(history.get("fromState") or ""),
            to_state=str(history.get("toState") or self.to_state),
            consequence=str(history.get("consequence") or ""),
            impact_scope=str(history.get("impactScope") or self.impact_scope),
            rule_ref=str(history.get("ruleRef") or ""),
            importance=clamp(2 + impact_weight(self.impact_scope) + (4 if major else 0), 1, 20),
            decay_per_hour=MAJOR_DECAY_PER_HOUR if major else MINOR_DECAY_PER_HOUR,
        )


def empty_memory_state() -> dict:
    return {"memory": {"shortTerm": [], "longTerm": []}}


def read_entries(entries: Any) -> list[MemoryEntry]:
    if not isinstance(entries, list):
        return []
    return [MemoryEntry.from_dict(entry) for entry in entries if isinstance(entry, dict)]


def sort_entries(entries: Iterable[MemoryEntry]) -> list[MemoryEntry]:
    return sorted(entries, key=lambda entry: (entry.importance, entry.at), reverse=True)


class NarrativeMemoryEngine:
    def __init__(self, short_term_max: int = SHORT_TERM_MAX, long_term_max: int = LONG_TERM_MAX):
        self.short_term_max = short_term_max
        self.long_term_max = long_term_max

    def apply(self, state: dict | None, outcome: NarrativeOutcome) -> dict:
        base = state if isinstance(state, dict) else {}
        memory = base.get("memory") if isinstance(base.get("memory"), dict) else {}
        elapsed = outcome.elapsed_hours

        short_term = [
            entry
            for entry in (item.decayed(elapsed) for item in read_entries(memory.get("shortTerm")))
            if entry.importance >= SHORT_TERM_FLOOR
        ]
        long_term = [item.decayed(elapsed) for item in read_entries(memory.get("longTerm"))]

        entry = outcome.to_entry()
        short_term = sort_entries(short_term + [entry])[: self.short_term_max]
        if outcome.is_major:
            if all(item.promotion_key() != entry.promotion_key() for item in long_term):
                long_term.append(entry.promoted())
            long_term = sort_entries(long_term)
        long_term = long_term[: self.long_term_max]

        return {
            **base,
            "memory": {
                "shortTerm": [item.to_dict() for item in short_term],
                "longTerm": [item.to_dict() for item in long_term],
            },
        }


def _float(value: Any, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default
