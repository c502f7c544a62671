from __future__ import annotations

from typing import Callable

from gm_os.contract import make_mj_response
from gm_os.stats import StatsCollector
from gm_os.world import build_speaker


def build_system_payload(
    *,
    reply: str,
    reason: str,
    world_state: dict | None,
    conversation_mode: str,
    intent: dict | None = None,
    director: dict | None = None,
    extra: dict | None = None,
) -> dict:
    return {
        "reply": reply,
        "mjResponse": make_mj_response(response_type="status", direct_answer=reply).model_dump(
            by_alias=True
        ),
        "speaker": build_speaker(conversation_mode=conversation_mode, force_system=True),
        "intent": {**(intent or {}), "type": "system_command", "reason": reason},
        "director": {
            **(director or {}),
            "mode": "hrp",
            "applyRuntime": False,
            "source": "tool",
        },
        "worldState": world_state,
        "stateUpdated": False,
        **(extra or {}),
    }


class DebugCommands:
    def __init__(self, stats: StatsCollector) -> None:
        self.stats = stats
        self._commands: dict[str, Callable[[], tuple[str, dict]]] = {
            "/contract-debug": self._contract,
            "/phase3-debug": self._phase3,
            "/phase4-debug": self._phase4,
            "/phase7-debug": self._phase7,
            "/phase8-debug": self._phase8,
        }

    def names(self) -> list[str]:
        return list(self._commands)

    def try_handle(
        self,
        *,
        message: str,
        world_state: dict | None,
        conversation_mode: str,
        intent: dict | None = None,
        director: dict | None = None,
    ) -> dict | None:
        command = str(message or "").strip().lower()
        handler = self._commands.get(command)
        if handler is None:
            return None
        reply, extra = handler()
        return build_system_payload(
            reply=reply,
            reason=command.lstrip("/"),
            world_state=world_state,
            conversation_mode=conversation_mode,
            intent=intent,
            director=director,
            extra=extra,
        )

    def _contract(self) -> tuple[str, dict]:
        stats = self.stats.contract_payload()
        sources = sorted(stats["bySource"].items(), key=lambda item: item[1], reverse=True)
        parts = " | ".join(f"{source}: {count}" for source, count in sources)
        summary = f"Contrats MJ observes: {stats['total']} | Sources: {parts or 'aucune'}"
        return summary, {"contractStats": stats}

    def _phase3(self) -> tuple[str, dict]:
        stats = self.stats.guard_payload()
        summary = " | ".join(
            [
                "Phase3 DoD (lore guards)",
                f"CheckedTurns: {stats['checkedTurns']}",
                f"BlockedTurns: {stats['blockedTurns']}",
                f"PassTurns: {stats['passTurns']}",
                f"BlockRate: {stats['blockRatePct']}%",
            ]
        )
        phase3 = {
            "dod": {
                "loreGuardsEnabled": True,
                "checkedTurns": stats["checkedTurns"],
                "blockedTurns": stats["blockedTurns"],
                "passTurns": stats["passTurns"],
                "blockRatePct": stats["blockRatePct"],
            },
            "byGate": stats["byGate"],
            "byCode": stats["byCode"],
            "recent": stats["recent"],
        }
        return summary, {"phase3": phase3}

    def _phase4(self) -> tuple[str, dict]:
        budget = self.stats.ai_budget_payload()
        routing = self.stats.routing_payload()
        summary = " | ".join(
            [
                "Phase4 DoD (budget IA)",
                f"TurnsWithBudget: {budget['turnsWithBudget']}",
                f"AI budget blockedRate: {budget['blockedRatePct']}%",
                f"AI routing executionRate: {routing['executionRatePct']}%",
            ]
        )
        return summary, {"phase4": {"aiBudget": budget, "aiRouting": routing}}

    def _phase7(self) -> tuple[str, dict]:
        performance = self.stats.performance_payload()
        summary = " | ".join(
            [
                "Phase7 DoD (performance)",
                f"Turns: {performance['turns']}",
                f"AvgAiCalls: {performance['avgAiCallsPerTurn']}",
                f"P95LatencyMs: {performance['latency']['p95LatencyMs']}",
                f"BlockedRate: {performance['blockedRatePct']}%",
            ]
        )
        return summary, {"phase7": {"performance": performance}}

    def _phase8(self) -> tuple[str, dict]:
        stats = self.stats.debug_channel_payload()
        summary = " | ".join(
            [
                "Phase8 DoD (debug separe)",
                f"Payloads: {stats['totalPayloads']}",
                f"WithDebugChannel: {stats['withDebugChannel']}",
                f"WithoutDebugChannel: {stats['withoutDebugChannel']}",
                f"DebugCoverage: {stats['debugCoveragePct']}%",
            ]
        )
        phase8 = {
            "dod": {
                "debugChannelSeparated": True,
                "totalPayloads": stats["totalPayloads"],
                "withDebugChannel": stats["withDebugChannel"],
                "withoutDebugChannel": stats["withoutDebugChannel"],
                "debugCoveragePct": stats["debugCoveragePct"],
            },
            "byReason": stats["byReason"],
            "recent": stats["recent"],
        }
        return summary, {"phase8": phase8}
