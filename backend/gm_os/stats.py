from __future__ import annotations

import math
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from gm_os.lore_guard import (
    LoreGuardCheck,
    contract_intent_type,
    contract_response_type,
    is_narrative_payload,
)
from gm_os.tools import tool_call_name

SAMPLE_LIMIT = 20
SNAPSHOT_LIMIT = 10
LATENCY_WINDOW = 200
BLOCKED_LABELS_LIMIT = 8

PERFORMANCE_TARGETS = {
    "avgAiCallsPerTurn": 1.4,
    "p95LatencyMs": 2200,
    "blockedRatePct": 20,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _samples() -> deque:
    return deque(maxlen=SAMPLE_LIMIT)


def _rate(part: float, total: float) -> float:
    if total <= 0:
        return 0
    return round(part / total * 100, 1)


def _recent(buffer: deque) -> list:
    return list(buffer)[-SNAPSHOT_LIMIT:]


def _int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    return int(number) if math.isfinite(number) else 0


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _percentile(values: list[float], pct: float) -> float:
    if not values:
        return 0
    ordered = sorted(values)
    index = max(0, math.ceil(pct / 100 * len(ordered)) - 1)
    return ordered[index]


@dataclass
class GuardStats:
    checked_turns: int = 0
    blocked_turns: int = 0
    by_gate: Counter = field(default_factory=Counter)
    by_code: Counter = field(default_factory=Counter)
    recent: deque = field(default_factory=_samples)

    def record(self, check: LoreGuardCheck, payload: dict) -> None:
        if not check.checked:
            return
        self.checked_turns += 1
        if check.blocked:
            self.blocked_turns += 1
        for row in check.violations:
            self.by_gate[row.gate] += 1
            self.by_code[row.code] += 1
        self.recent.append(
            {
                "at": _now(),
                "intentType": contract_intent_type(payload) or "unknown",
                "blocked": check.blocked,
                "violations": check.violation_labels(),
            }
        )

    def snapshot(self) -> dict:
        return {
            "checkedTurns": self.checked_turns,
            "blockedTurns": self.blocked_turns,
            "passTurns": max(0, self.checked_turns - self.blocked_turns),
            "blockRatePct": _rate(self.blocked_turns, self.checked_turns),
            "byGate": dict(self.by_gate),
            "byCode": dict(self.by_code),
            "recent": _recent(self.recent),
        }


@dataclass
class ContractStats:
    total: int = 0
    by_source: Counter = field(default_factory=Counter)
    recent: deque = field(default_factory=_samples)
    narrative_turns: int = 0
    grounded_turns: int = 0
    ungrounded_turns: int = 0
    by_intent: Counter = field(default_factory=Counter)
    recent_grounding: deque = field(default_factory=_samples)
    canonical_reads: int = 0
    no_canonical_reads: int = 0
    by_intent_canonical_reads: Counter = field(default_factory=Counter)
    recent_canonical: deque = field(default_factory=_samples)

    def record(self, payload: dict) -> None:
        contract = _dict(payload.get("mjContract"))
        source = str(contract.get("contractSource") or "").strip() or "unknown"
        reply = payload.get("reply")
        self.total += 1
        self.by_source[source] += 1
        self.recent.append(
            {
                "at": _now(),
                "source": source,
                "intentType": str(_dict(payload.get("intent")).get("type") or ""),
                "directorMode": str(_dict(payload.get("director")).get("mode") or ""),
                "responseType": str(_dict(payload.get("mjResponse")).get("responseType") or ""),
                "hasReply": isinstance(reply, str) and bool(reply.strip()),
            }
        )
        if not is_narrative_payload(payload):
            return

        intent_type = contract_intent_type(payload)
        response_type = contract_response_type(payload) or "narration"
        tool_calls = contract.get("toolCalls") if isinstance(contract.get("toolCalls"), list) else []
        grounded = len(tool_calls) > 0
        canonical_read = any(tool_call_name(entry) == "get_world_state" for entry in tool_calls)

        self.narrative_turns += 1
        self.by_intent[intent_type] += 1
        if grounded:
            self.grounded_turns += 1
        else:
            self.ungrounded_turns += 1
        if canonical_read:
            self.canonical_reads += 1
            self.by_intent_canonical_reads[intent_type] += 1
        else:
            self.no_canonical_reads += 1

        at = _now()
        self.recent_grounding.append(
            {
                "at": at,
                "intentType": intent_type,
                "responseType": response_type,
                "grounded": grounded,
                "toolCount": len(tool_calls),
            }
        )
        self.recent_canonical.append(
            {
                "at": at,
                "intentType": intent_type,
                "responseType": response_type,
                "hasCanonicalRead": canonical_read,
                "toolCount": len(tool_calls),
            }
        )

    def snapshot(self) -> dict:
        return {
            "total": self.total,
            "bySource": dict(self.by_source),
            "recent": _recent(self.recent),
            "grounding": {
                "narrativeTurns": self.narrative_turns,
                "groundedTurns": self.grounded_turns,
                "ungroundedTurns": self.ungrounded_turns,
                "groundingRatePct": _rate(self.grounded_turns, self.narrative_turns),
                "byIntent": dict(self.by_intent),
                "recent": _recent(self.recent_grounding),
            },
            "phase2": {
                "narrativeTurns": self.narrative_turns,
                "canonicalReads": self.canonical_reads,
                "noCanonicalReads": self.no_canonical_reads,
                "canonicalReadRatePct": _rate(self.canonical_reads, self.narrative_turns),
                "byIntentCanonicalReads": dict(self.by_intent_canonical_reads),
                "recentCanonical": _recent(self.recent_canonical),
            },
        }


BUDGET_FIELDS = (
    "used",
    "max",
    "primaryUsed",
    "primaryMax",
    "fallbackUsed",
    "fallbackMax",
    "blocked",
    "primaryBlocked",
    "fallbackBlocked",
)


def normalize_budget_snapshot(raw: Any) -> dict:
    safe = _dict(raw)
    budget = {key: _int(safe.get(key)) for key in BUDGET_FIELDS}
    labels = safe.get("blockedLabels")
    budget["blockedLabels"] = (
        [str(label).strip() for label in labels if str(label or "").strip()][-BLOCKED_LABELS_LIMIT:]
        if isinstance(labels, list)
        else []
    )
    return budget


@dataclass
class BudgetStats:
    turns_with_budget: int = 0
    over_budget_turns: int = 0
    blocked_turns: int = 0
    totals: Counter = field(default_factory=Counter)
    recent: deque = field(default_factory=_samples)

    def record(self, payload: dict) -> None:
        raw = _dict(payload.get("phase12")).get("aiCallBudget")
        if not isinstance(raw, dict):
            return
        budget = normalize_budget_snapshot(raw)
        self.turns_with_budget += 1
        for key in BUDGET_FIELDS:
            self.totals[key] += budget[key]
        if budget["used"] > budget["max"]:
            self.over_budget_turns += 1
        if budget["blocked"] > 0:
            self.blocked_turns += 1
        self.recent.append({"at": _now(), **budget})

    def snapshot(self) -> dict:
        turns = self.turns_with_budget
        return {
            "turnsWithBudget": turns,
            "blockedTurns": self.blocked_turns,
            "overBudgetTurns": self.over_budget_turns,
            "blockedRatePct": _rate(self.blocked_turns, turns),
            "overBudgetRatePct": _rate(self.over_budget_turns, turns),
            "totalUsed": self.totals["used"],
            "totalMax": self.totals["max"],
            "primaryUsed": self.totals["primaryUsed"],
            "primaryMax": self.totals["primaryMax"],
            "fallbackUsed": self.totals["fallbackUsed"],
            "fallbackMax": self.totals["fallbackMax"],
            "totalBlocked": self.totals["blocked"],
            "primaryBlocked": self.totals["primaryBlocked"],
            "fallbackBlocked": self.totals["fallbackBlocked"],
            "recent": _recent(self.recent),
        }


@dataclass
class RoutingStats:
    turns_with_routing: int = 0
    attempted: int = 0
    executed: int = 0
    skipped: int = 0
    by_label: dict = field(default_factory=dict)
    recent: deque = field(default_factory=_samples)

    def record(self, payload: dict) -> None:
        raw = _dict(payload.get("phase12")).get("aiRouting")
        if not isinstance(raw, dict):
            return
        attempted = _int(raw.get("attempted"))
        executed = _int(raw.get("executed"))
        skipped = _int(raw.get("skipped"))
        self.turns_with_routing += 1
        self.attempted += attempted
        self.executed += executed
        self.skipped += skipped
        for label, counts in _dict(raw.get("byLabel")).items():
            row = self.by_label.setdefault(str(label), {"attempted": 0, "executed": 0, "skipped": 0})
            for key in row:
                row[key] += _int(_dict(counts).get(key))
        self.recent.append(
            {"at": _now(), "attempted": attempted, "executed": executed, "skipped": skipped}
        )

    def snapshot(self) -> dict:
        return {
            "turnsWithRouting": self.turns_with_routing,
            "attempted": self.attempted,
            "executed": self.executed,
            "skipped": self.skipped,
            "executionRatePct": _rate(self.executed, self.attempted),
            "byLabel": {label: dict(row) for label, row in self.by_label.items()},
            "recent": _recent(self.recent),
        }


@dataclass
class DebugChannelStats:
    total_payloads: int = 0
    with_debug_channel: int = 0
    without_debug_channel: int = 0
    by_reason: Counter = field(default_factory=Counter)
    recent: deque = field(default_factory=_samples)

    def record(self, has_debug: bool, reason: str) -> None:
        self.total_payloads += 1
        if has_debug:
            self.with_debug_channel += 1
        else:
            self.without_debug_channel += 1
        key = str(reason or "unknown")
        self.by_reason[key] += 1
        self.recent.append({"at": _now(), "hasDebug": bool(has_debug), "reason": key})

    def snapshot(self) -> dict:
        return {
            "totalPayloads": self.total_payloads,
            "withDebugChannel": self.with_debug_channel,
            "withoutDebugChannel": self.without_debug_channel,
            "debugCoveragePct": _rate(self.with_debug_channel, self.total_payloads),
            "byReason": dict(self.by_reason),
            "recent": _recent(self.recent),
        }


@dataclass
class PerformanceStats:
    turns: int = 0
    turns_with_budget: int = 0
    ai_calls: int = 0
    fallback_calls: int = 0
    blocked_turns: int = 0
    latencies: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))
    recent: deque = field(default_factory=_samples)

    def record(self, payload: dict) -> None:
        phase12 = payload.get("phase12")
        if not isinstance(phase12, dict):
            return
        self.turns += 1
        sample: dict = {"at": _now()}
        if isinstance(phase12.get("aiCallBudget"), dict):
            budget = normalize_budget_snapshot(phase12["aiCallBudget"])
            self.turns_with_budget += 1
            self.ai_calls += budget["used"]
            self.fallback_calls += budget["fallbackUsed"]
            if budget["blocked"] > 0:
                self.blocked_turns += 1
            sample["aiCalls"] = budget["used"]
            sample["blocked"] = budget["blocked"]
        latency = phase12.get("latencyMs")
        if isinstance(latency, (int, float)) and not isinstance(latency, bool) and latency >= 0:
            self.latencies.append(float(latency))
            sample["latencyMs"] = latency
        self.recent.append(sample)

    def snapshot(self) -> dict:
        budget_turns = self.turns_with_budget
        avg_calls = round(self.ai_calls / budget_turns, 2) if budget_turns else 0
        avg_fallback = round(self.fallback_calls / budget_turns, 2) if budget_turns else 0
        blocked_rate = _rate(self.blocked_turns, budget_turns)
        samples = list(self.latencies)
        p95 = _percentile(samples, 95)
        return {
            "turns": self.turns,
            "turnsWithBudget": budget_turns,
            "turnsWithLatency": len(samples),
            "avgAiCallsPerTurn": avg_calls,
            "avgFallbackCallsPerTurn": avg_fallback,
            "blockedTurns": self.blocked_turns,
            "blockedRatePct": blocked_rate,
            "latency": {
                "samples": len(samples),
                "p50LatencyMs": _percentile(samples, 50),
                "p95LatencyMs": p95,
                "maxLatencyMs": max(samples) if samples else 0,
            },
            "targets": dict(PERFORMANCE_TARGETS),
            "alerts": {
                "avgAiCallsExceeded": avg_calls > PERFORMANCE_TARGETS["avgAiCallsPerTurn"],
                "p95LatencyExceeded": p95 > PERFORMANCE_TARGETS["p95LatencyMs"],
                "blockedRateExceeded": blocked_rate > PERFORMANCE_TARGETS["blockedRatePct"],
            },
            "recent": _recent(self.recent),
        }


@dataclass
class StatsCollector:
    guard: GuardStats = field(default_factory=GuardStats)
    contract: ContractStats = field(default_factory=ContractStats)
    budget: BudgetStats = field(default_factory=BudgetStats)
    routing: RoutingStats = field(default_factory=RoutingStats)
    debug_channel: DebugChannelStats = field(default_factory=DebugChannelStats)
    performance: PerformanceStats = field(default_factory=PerformanceStats)
    lock: Any = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_turn(self, payload: dict, check: LoreGuardCheck) -> None:
        with self.lock:
            if isinstance(payload.get("mjContract"), dict):
                self.contract.record(payload)
            self.guard.record(check, payload)
            self.budget.record(payload)
            self.routing.record(payload)
            self.performance.record(payload)

    def record_debug_channel(self, has_debug: bool, reason: str) -> None:
        with self.lock:
            self.debug_channel.record(has_debug, reason)

    def contract_payload(self) -> dict:
        with self.lock:
            return self.contract.snapshot()

    def guard_payload(self) -> dict:
        with self.lock:
            return self.guard.snapshot()

    def ai_budget_payload(self) -> dict:
        with self.lock:
            return self.budget.snapshot()

    def routing_payload(self) -> dict:
        with self.lock:
            return self.routing.snapshot()

    def debug_channel_payload(self) -> dict:
        with self.lock:
            return self.debug_channel.snapshot()

    def performance_payload(self) -> dict:
        with self.lock:
            return self.performance.snapshot()
