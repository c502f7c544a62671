from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable

from gm_os.router import ToolContext, derive_intent_policy
from gm_os.tools import normalize_tool_call

logger = logging.getLogger(__name__)

MAX_TOOL_CALLS_PER_TURN = 6
LORE_SUMMARY_LIMIT = 220
SESSION_PLACES_LIMIT = 8

LoreQuery = Callable[[str, int], list]


@dataclass(frozen=True)
class ToolBusContext:
    world_state: dict | None = None
    context_pack: dict | None = None
    runtime_state: dict | None = None
    pending: dict | None = None
    message: str = ""
    intent_type: str = "story_action"
    conversation_mode: str = "rp"


@dataclass(frozen=True)
class ToolResult:
    tool: str
    ok: bool
    summary: str
    data: Any = None

    def to_dict(self) -> dict:
        return {
            "tool": self.tool,
            "ok": self.ok,
            "summary": self.summary,
            "data": self.data,
        }


def _no_lore(query: str, limit: int) -> list:
    return []


class ToolBus:
    def __init__(self, *, query_lore: LoreQuery | None = None) -> None:
        self.query_lore = query_lore if callable(query_lore) else _no_lore
        self._handlers: dict[str, Callable[[dict, ToolBusContext], ToolResult]] = {
            "get_world_state": self._get_world_state,
            "query_lore": self._query_lore,
            "query_player_sheet": self._query_player_sheet,
            "query_rules": self._query_rules,
            "session_db_read": self._session_db_read,
            "session_db_write": self._session_db_write,
            "quest_trama_tick": self._quest_trama_tick,
            "semantic_intent_probe": self._semantic_intent_probe,
        }

    def execute(self, tool_calls: Iterable[Any] | None, context: ToolBusContext) -> list[ToolResult]:
        calls = [call for call in map(normalize_tool_call, tool_calls or []) if call]
        results: list[ToolResult] = []
        for call in calls[:MAX_TOOL_CALLS_PER_TURN]:
            results.append(self._execute_one(call.name, call.args, context))
        return results

    def _execute_one(self, name: str, args: dict, context: ToolBusContext) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(name, False, "Outil inconnu.", {"requested": name})
        try:
            return handler(args, context)
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return ToolResult(name, False, "Outil en échec.", {"error": str(exc)})

    def _get_world_state(self, args: dict, context: ToolBusContext) -> ToolResult:
        world = context.world_state or {}
        return ToolResult(
            "get_world_state",
            True,
            "Etat monde lu.",
            {
                "location": world.get("location"),
                "time": world.get("time"),
                "metrics": world.get("metrics"),
                "pending": context.pending,
            },
        )

    def _query_lore(self, args: dict, context: ToolBusContext) -> ToolResult:
        query = _text(
            args.get("query") or args.get("term") or args.get("topic") or context.message
        )
        limit = _bounded_int(args.get("limit"), default=3, low=1, high=5)
        rows = self.query_lore(query, limit) or []
        matches = [
            {
                "id": _text(row.get("id")),
                "title": _text(row.get("title")),
                "type": _text(row.get("type")),
                "summary": _text(row.get("summary"))[:LORE_SUMMARY_LIMIT],
            }
            for row in rows
            if isinstance(row, dict)
        ]
        return ToolResult(
            "query_lore",
            True,
            f"Lore consulté ({len(matches)}).",
            {"query": query, "matches": matches},
        )

    def _query_player_sheet(self, args: dict, context: ToolBusContext) -> ToolResult:
        pack = context.context_pack or {}
        return ToolResult(
            "query_player_sheet",
            True,
            "Fiche PJ consultée.",
            {
                key: pack.get(key)
                for key in ("identity", "progression", "loadout", "rules", "resources")
            },
        )

    def _query_rules(self, args: dict, context: ToolBusContext) -> ToolResult:
        pack = context.context_pack or {}
        return ToolResult(
            "query_rules",
            True,
            "Référentiel de règles consulté.",
            {"rules": pack.get("rules")},
        )

    def _session_db_read(self, args: dict, context: ToolBusContext) -> ToolResult:
        world = context.world_state or {}
        places = world.get("sessionPlaces")
        conversation = world.get("conversation")
        interlocutor = (
            conversation.get("activeInterlocutor") if isinstance(conversation, dict) else None
        )
        return ToolResult(
            "session_db_read",
            True,
            "Session DB lue.",
            {
                "scope": _text(args.get("scope")) or "scene-memory",
                "sessionPlaces": list(places)[:SESSION_PLACES_LIMIT]
                if isinstance(places, list)
                else [],
                "activeInterlocutor": interlocutor,
            },
        )

    def _session_db_write(self, args: dict, context: ToolBusContext) -> ToolResult:
        return ToolResult(
            "session_db_write",
            True,
            "Session DB write simulé.",
            {
                "accepted": True,
                "note": "Ecriture persistante non activée.",
            },
        )

    def _quest_trama_tick(self, args: dict, context: ToolBusContext) -> ToolResult:
        runtime = context.runtime_state or {}
        return ToolResult(
            "quest_trama_tick",
            True,
            "Etat runtime lu (tick non appliqué).",
            {
                bucket: len(runtime.get(bucket) or {})
                for bucket in ("quests", "tramas", "companions", "trades")
            },
        )

    def _semantic_intent_probe(self, args: dict, context: ToolBusContext) -> ToolResult:
        policy = derive_intent_policy(
            ToolContext(
                intent_type=context.intent_type,
                conversation_mode=context.conversation_mode,
                world_state=context.world_state,
                message=context.message,
            )
        )
        return ToolResult(
            "semantic_intent_probe",
            True,
            f"Intention sémantique: {policy.semantic_intent.value}.",
            policy.to_dict(),
        )


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _bounded_int(value: Any, *, default: int, low: int, high: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError, OverflowError):
        parsed = default
    if parsed == 0:
        parsed = default
    return max(low, min(high, parsed))
