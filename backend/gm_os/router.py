from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from gm_os.cues import DEFAULT_CUES, IntentCues
from gm_os.tools import (
    SemanticIntent,
    ToolCall,
    get_tool,
    normalize_tool_call,
    registered_tool_names,
)

MERGE_LIMIT_CEILING = 12
DEFAULT_MERGE_LIMIT = 6

RUNTIME_MUTATION_INTENTS: set[SemanticIntent] = {
    SemanticIntent.MOVE_PLACE,
    SemanticIntent.ENTER_PLACE,
    SemanticIntent.QUEST_PROGRESS,
}

DEFAULT_PREFERRED_TOOLS = ("get_world_state", "session_db_read")

PREFERRED_TOOLS: dict[SemanticIntent, tuple[str, ...]] = {
    SemanticIntent.MOVE_PLACE: (
        "get_world_state",
        "session_db_read",
        "query_lore",
        "semantic_intent_probe",
    ),
    SemanticIntent.ENTER_PLACE: (
        "get_world_state",
        "session_db_read",
        "query_lore",
        "semantic_intent_probe",
    ),
    SemanticIntent.SOCIAL_EXCHANGE: (
        "get_world_state",
        "session_db_read",
        "query_player_sheet",
        "semantic_intent_probe",
    ),
    SemanticIntent.LORE_QUERY: (
        "get_world_state",
        "query_lore",
        "query_rules",
        "semantic_intent_probe",
    ),
    SemanticIntent.RULES_QUERY: (
        "get_world_state",
        "query_lore",
        "query_rules",
        "semantic_intent_probe",
    ),
    SemanticIntent.TRADE_ACTION: (
        "get_world_state",
        "session_db_read",
        "query_rules",
        "semantic_intent_probe",
    ),
    SemanticIntent.QUEST_PROGRESS: (
        "get_world_state",
        "quest_trama_tick",
        "session_db_read",
        "semantic_intent_probe",
    ),
}

DEFAULT_DOMAINS = frozenset({"world", "rules", "session-memory", "core"})

INTENT_DOMAINS: dict[SemanticIntent, frozenset[str]] = {
    SemanticIntent.MOVE_PLACE: frozenset({"world", "lore", "session-memory", "runtime", "core"}),
    SemanticIntent.SOCIAL_EXCHANGE: frozenset(
        {"world", "session-memory", "character", "rules", "core"}
    ),
    SemanticIntent.INSPECT_LOCAL: frozenset({"world", "lore", "session-memory", "core"}),
    SemanticIntent.LORE_QUERY: frozenset({"lore", "world", "rules", "core"}),
    SemanticIntent.QUEST_PROGRESS: frozenset(
        {"runtime", "quest", "world", "session-memory", "core"}
    ),
    SemanticIntent.SYSTEM_COMMAND: frozenset({"world", "state", "session-memory", "core"}),
}


@dataclass(frozen=True)
class IntentPolicy:
    semantic_intent: SemanticIntent
    allow_runtime_mutation: bool
    preferred_tools: tuple[str, ...]
    priority_domains: frozenset[str]

    def to_dict(self) -> dict:
        return {
            "semanticIntent": self.semantic_intent.value,
            "allowRuntimeMutation": self.allow_runtime_mutation,
            "preferredTools": list(self.preferred_tools),
            "priorityDomains": sorted(self.priority_domains),
        }


@dataclass(frozen=True)
class ToolContext:
    intent_type: str = "story_action"
    semantic_intent: SemanticIntent | None = None
    director_mode: str = "scene_only"
    conversation_mode: str = "rp"
    world_state: dict | None = None
    message: str = ""
    allow_write: bool = False
    cues: IntentCues = field(default=DEFAULT_CUES, compare=False, repr=False)


def derive_semantic_intent(
    *,
    intent_type: str | None = None,
    director_mode: str | None = None,
    world_state: dict | None = None,
    message: str | None = None,
    cues: IntentCues | None = None,
) -> SemanticIntent:
    cue_set = cues or DEFAULT_CUES
    kind = str(intent_type or "story_action").strip()
    text = str(message or "")

    if kind == "system_command":
        return SemanticIntent.SYSTEM_COMMAND
    if kind == "social_action":
        return SemanticIntent.SOCIAL_EXCHANGE
    if kind == "lore_question":
        return SemanticIntent.LORE_QUERY
    if cue_set.matches("rules", text):
        return SemanticIntent.RULES_QUERY
    if cue_set.matches("trade", text):
        return SemanticIntent.TRADE_ACTION
    if cue_set.matches("lore", text):
        return SemanticIntent.LORE_QUERY
    if cue_set.matches("move", text) or _has_pending_travel(world_state):
        return SemanticIntent.MOVE_PLACE
    if cue_set.matches("enter", text) or _has_pending_access(world_state):
        return SemanticIntent.ENTER_PLACE
    if kind == "free_exploration":
        return SemanticIntent.INSPECT_LOCAL
    if cue_set.matches("quest", text):
        return SemanticIntent.QUEST_PROGRESS
    return SemanticIntent.RESOURCE_ACTION


def derive_intent_policy(context: ToolContext) -> IntentPolicy:
    semantic_intent = context.semantic_intent or derive_semantic_intent(
        intent_type=context.intent_type,
        director_mode=context.director_mode,
        world_state=context.world_state,
        message=context.message,
        cues=context.cues,
    )
    return IntentPolicy(
        semantic_intent=semantic_intent,
        allow_runtime_mutation=semantic_intent in RUNTIME_MUTATION_INTENTS,
        preferred_tools=PREFERRED_TOOLS.get(semantic_intent, DEFAULT_PREFERRED_TOOLS),
        priority_domains=INTENT_DOMAINS.get(semantic_intent, DEFAULT_DOMAINS),
    )


def filter_tool_calls(calls: Iterable[Any] | None, context: ToolContext) -> list[ToolCall]:
    policy = derive_intent_policy(context)
    allowed: list[ToolCall] = []
    for entry in calls or []:
        call = normalize_tool_call(entry)
        if call is None:
            continue
        if _is_call_allowed(call, context, policy):
            allowed.append(call)
    return allowed


def merge_tool_calls(
    ai_calls: Iterable[Any] | None,
    priority_calls: Iterable[Any] | None,
    *,
    limit: int = DEFAULT_MERGE_LIMIT,
    intent_context: ToolContext | None = None,
) -> list[ToolCall]:
    cap = _clamp_limit(limit)
    merged: list[ToolCall] = []
    seen: set[str] = set()
    for entry in list(priority_calls or []) + list(ai_calls or []):
        call = normalize_tool_call(entry)
        if call is None:
            continue
        key = call.dedupe_key()
        if key in seen:
            continue
        seen.add(key)
        merged.append(call)
    filtered = filter_tool_calls(merged, intent_context or ToolContext())
    return filtered[:cap]


def build_priority_tool_calls(
    *,
    message: str,
    intent: dict | None,
    director_plan: dict | None,
    conversation_mode: str,
    world_state: dict | None,
    has_character_profile: bool,
    cues: IntentCues | None = None,
    limit: int = DEFAULT_MERGE_LIMIT,
) -> list[ToolCall]:
    if str(conversation_mode or "rp") != "rp":
        return []
    intent = intent if isinstance(intent, dict) else {}
    director_plan = director_plan if isinstance(director_plan, dict) else {}
    intent_type = str(intent.get("type") or "story_action")
    mode = str(director_plan.get("mode") or "scene_only")
    requires_check = bool(intent.get("requiresCheck"))
    risk_level = str(intent.get("riskLevel") or "medium")
    apply_runtime = bool(director_plan.get("applyRuntime"))

    context = ToolContext(
        intent_type=intent_type,
        director_mode=mode,
        conversation_mode=conversation_mode,
        world_state=world_state,
        message=message,
        cues=cues or DEFAULT_CUES,
    )
    policy = derive_intent_policy(context)
    context = ToolContext(
        intent_type=intent_type,
        semantic_intent=policy.semantic_intent,
        director_mode=mode,
        conversation_mode=conversation_mode,
        world_state=world_state,
        message=message,
        cues=context.cues,
    )

    calls = [ToolCall("get_world_state"), ToolCall("semantic_intent_probe")]
    if _has_pending_state(world_state):
        calls.append(ToolCall("session_db_read", {"scope": "pending"}))
    calls.append(ToolCall("session_db_read", {"scope": "scene-memory"}))
    if has_character_profile and intent_type in {
        "system_command",
        "story_action",
        "social_action",
    }:
        calls.append(ToolCall("query_player_sheet", {"scope": "identity-loadout-rules"}))
    if mode in {"lore", "exploration"} or intent_type == "lore_question":
        calls.append(ToolCall("query_lore", {"query": message, "limit": 4}))
    if requires_check or risk_level in {"medium", "high"}:
        calls.append(ToolCall("query_rules", {"query": message}))
    if apply_runtime or intent_type in {"story_action", "social_action"}:
        calls.append(ToolCall("quest_trama_tick", {"dryRun": True}))

    calls.extend(ToolCall(name) for name in policy.preferred_tools)
    return merge_tool_calls([], calls, limit=limit, intent_context=context)


def _is_call_allowed(call: ToolCall, context: ToolContext, policy: IntentPolicy) -> bool:
    tool = get_tool(call.name)
    if tool is None:
        return False
    if str(context.conversation_mode or "rp") != "rp" and not tool.allow_in_non_rp:
        return False
    if context.allow_write is not True and "write" in tool.capabilities:
        return False
    return bool(tool.domains & policy.priority_domains)


def _clamp_limit(value: Any) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError, OverflowError):
        parsed = DEFAULT_MERGE_LIMIT
    if parsed == 0:
        parsed = DEFAULT_MERGE_LIMIT
    return max(1, min(MERGE_LIMIT_CEILING, parsed))


def _conversation(world_state: dict | None) -> dict:
    if not isinstance(world_state, dict):
        return {}
    conversation = world_state.get("conversation")
    return conversation if isinstance(conversation, dict) else {}


def _travel(world_state: dict | None) -> dict:
    if not isinstance(world_state, dict):
        return {}
    travel = world_state.get("travel")
    return travel if isinstance(travel, dict) else {}


def _has_pending_travel(world_state: dict | None) -> bool:
    return bool(_travel(world_state).get("pending")) or bool(
        _conversation(world_state).get("pendingTravel")
    )


def _has_pending_access(world_state: dict | None) -> bool:
    return bool(_conversation(world_state).get("pendingAccess"))


def _has_pending_state(world_state: dict | None) -> bool:
    return (
        bool(_conversation(world_state).get("pendingAction"))
        or _has_pending_travel(world_state)
        or _has_pending_access(world_state)
    )


def allowed_tool_names(context: ToolContext) -> list[str]:
    policy = derive_intent_policy(context)
    return [
        name
        for name in registered_tool_names()
        if _is_call_allowed(ToolCall(name), context, policy)
    ]
