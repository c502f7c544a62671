from gm_os.lore_guard import LoreGuardCheck
from gm_os.schemas import LoreViolation
from gm_os.stats import (
    PerformanceStats,
    StatsCollector,
    _percentile,
    normalize_budget_snapshot,
)

UNCHECKED = LoreGuardCheck(checked=False, blocked=False)


def _budget(used: int = 1, blocked: int = 0, fallback_used: int = 0) -> dict:
    return {
        "used": used,
        "max": 3,
        "primaryUsed": used - fallback_used,
        "primaryMax": 1,
        "fallbackUsed": fallback_used,
        "fallbackMax": 2,
        "blocked": blocked,
        "primaryBlocked": 0,
        "fallbackBlocked": blocked,
        "blockedLabels": ["fallback:mj-refine"] if blocked else [],
    }


def _turn(budget: dict | None = None, latency: int | None = None, routing: dict | None = None) -> dict:
    phase12: dict = {}
    if budget is not None:
        phase12["aiCallBudget"] = budget
    if routing is not None:
        phase12["aiRouting"] = routing
    if latency is not None:
        phase12["latencyMs"] = latency
    return {"reply": "x", "phase12": phase12}


def test_guard_stats_count_checked_and_blocked() -> None:
    stats = StatsCollector()
    violation = LoreViolation(gate="temps", code="invalid-canonical-time", message="m")
    payload = {"intent": {"type": "story_action"}}
    stats.record_turn(payload, LoreGuardCheck(checked=True, blocked=True, violations=[violation]))
    stats.record_turn(payload, LoreGuardCheck(checked=True, blocked=False))
    stats.record_turn(payload, UNCHECKED)

    guard = stats.guard_payload()
    assert guard["checkedTurns"] == 2
    assert guard["blockedTurns"] == 1
    assert guard["passTurns"] == 1
    assert guard["blockRatePct"] == 50.0
    assert guard["byGate"] == {"temps": 1}
    assert guard["recent"][0]["violations"] == ["temps:invalid-canonical-time"]
    assert guard["recent"][0]["intentType"] == "story_action"


def test_contract_stats_track_grounding_and_canonical_reads() -> None:
    stats = StatsCollector()
    grounded = {
        "reply": "x",
        "intent": {"type": "story_action"},
        "mjContract": {
            "contractSource": "mj-structured",
            "intent": {"type": "story_action"},
            "mjResponse": {"responseType": "narration"},
            "toolCalls": [{"name": "get_world_state"}],
        },
    }
    ungrounded = {
        "reply": "y",
        "mjContract": {
            "contractSource": "parsed-reply",
            "intent": {"type": "social_action"},
            "mjResponse": {"responseType": "narration"},
            "toolCalls": [],
        },
    }
    system = {"mjContract": {"intent": {"type": "system_command"}}}
    for payload in (grounded, ungrounded, system, {"reply": "no contract"}):
        stats.record_turn(payload, UNCHECKED)

    contract = stats.contract_payload()
    assert contract["total"] == 3
    assert contract["bySource"] == {"mj-structured": 1, "parsed-reply": 1, "unknown": 1}
    assert contract["grounding"]["narrativeTurns"] == 2
    assert contract["grounding"]["groundedTurns"] == 1
    assert contract["grounding"]["groundingRatePct"] == 50.0
    assert contract["phase2"]["canonicalReads"] == 1
    assert contract["phase2"]["byIntentCanonicalReads"] == {"story_action": 1}
    assert contract["recent"][-1]["hasReply"] is False


def test_budget_stats_aggregate_snapshots() -> None:
    stats = StatsCollector()
    stats.record_turn(_turn(_budget(used=1)), UNCHECKED)
    stats.record_turn(_turn(_budget(used=3, blocked=1, fallback_used=2)), UNCHECKED)
    stats.record_turn({"reply": "no budget"}, UNCHECKED)

    budget = stats.ai_budget_payload()
    assert budget["turnsWithBudget"] == 2
    assert budget["blockedTurns"] == 1
    assert budget["blockedRatePct"] == 50.0
    assert budget["totalUsed"] == 4
    assert budget["fallbackUsed"] == 2
    assert budget["overBudgetTurns"] == 0
    assert budget["recent"][-1]["blockedLabels"] == ["fallback:mj-refine"]


def test_normalize_budget_snapshot_tolerates_bad_values() -> None:
    budget = normalize_budget_snapshot({"used": "2", "max": None, "blocked": True, "blockedLabels": "x"})
    assert budget["used"] == 2
    assert budget["max"] == 0
    assert budget["blocked"] == 1
    assert budget["blockedLabels"] == []
    assert normalize_budget_snapshot(None)["fallbackMax"] == 0


def test_routing_stats_merge_labels() -> None:
    stats = StatsCollector()
    routing = {
        "attempted": 2,
        "executed": 1,
        "skipped": 1,
        "byLabel": {
            "mj-structured-main": {"attempted": 1, "executed": 1, "skipped": 0},
            "mj-refine": {"attempted": 1, "executed": 0, "skipped": 1},
        },
    }
    stats.record_turn(_turn(routing=routing), UNCHECKED)
    stats.record_turn(_turn(routing=routing), UNCHECKED)

    payload = stats.routing_payload()
    assert payload["turnsWithRouting"] == 2
    assert payload["attempted"] == 4
    assert payload["executionRatePct"] == 50.0
    assert payload["byLabel"]["mj-refine"] == {"attempted": 2, "executed": 0, "skipped": 2}


def test_performance_stats_latency_and_alerts() -> None:
    performance = PerformanceStats()
    for latency in range(100, 2100, 100):
        performance.record(_turn(_budget(used=2, fallback_used=1), latency=latency))
    performance.record(_turn(_budget(used=2), latency=5000))

    snapshot = performance.snapshot()
    assert snapshot["turns"] == 21
    assert snapshot["avgAiCallsPerTurn"] == 2.0
    assert snapshot["latency"]["samples"] == 21
    assert snapshot["latency"]["maxLatencyMs"] == 5000.0
    assert snapshot["latency"]["p95LatencyMs"] == 2000.0
    assert snapshot["alerts"]["avgAiCallsExceeded"] is True
    assert snapshot["alerts"]["p95LatencyExceeded"] is False
    assert len(snapshot["recent"]) == 10


def test_percentile_nearest_rank() -> None:
    assert _percentile([], 95) == 0
    assert _percentile([3, 1, 2], 50) == 2
    assert _percentile([10], 95) == 10


def test_debug_channel_coverage() -> None:
    stats = StatsCollector()
    stats.record_debug_channel(True, "debug-command")
    stats.record_debug_channel(False, "rp-clean")
    stats.record_debug_channel(False, "")
    payload = stats.debug_channel_payload()
    assert payload["totalPayloads"] == 3
    assert payload["debugCoveragePct"] == 33.3
    assert payload["byReason"] == {"debug-command": 1, "rp-clean": 1, "unknown": 1}
