from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from gm_os.budget import AiCallBudget, AiRoutingController
from gm_os.canonical import build_canonical_context
from gm_os.config import (
    AiBudgetConfig,
    AiFeatureFlags,
    read_ai_budget_config,
    read_ai_feature_flags,
    read_tool_call_limit,
)
from gm_os.contract import one_line, pending_state
from gm_os.cues import IntentCues, load_intent_cues
from gm_os.debug_commands import DebugCommands
from gm_os.memory import NarrativeMemoryEngine, NarrativeOutcome, empty_memory_state
from gm_os.router import (
    IntentPolicy,
    ToolContext,
    allowed_tool_names,
    build_priority_tool_calls,
    derive_intent_policy,
    merge_tool_calls,
)
from gm_os.stats import StatsCollector
from gm_os.tool_bus import ToolBus, ToolBusContext, ToolResult
from gm_os.tools import SemanticIntent, ToolCall
from gm_os.world import active_interlocutor, build_speaker, create_initial_world_state
from llm.client import LLMClientError
from llm.schemas import MjStructuredDraft, NarrationPrompt

logger = logging.getLogger(__name__)

DEFAULT_INTENT = {
    "type": "story_action",
    "confidence": 0.7,
    "commitment": "informatif",
    "riskLevel": "medium",
    "requiresCheck": False,
    "reason": "",
}
DEFAULT_DIRECTOR = {"mode": "scene_only", "applyRuntime": False, "source": "default"}

FALLBACK_OPTIONS: dict[SemanticIntent, list[str]] = {
    SemanticIntent.MOVE_PLACE: ["Confirmer le déplacement", "Observer le trajet", "Rester sur place"],
    SemanticIntent.ENTER_PLACE: ["Franchir l'entrée", "Observer l'accès", "Demander qui garde l'entrée"],
    SemanticIntent.SOCIAL_EXCHANGE: ["Poursuivre la conversation", "Changer de sujet", "Prendre congé"],
    SemanticIntent.TRADE_ACTION: ["Demander un prix", "Négocier", "Renoncer à l'échange"],
    SemanticIntent.LORE_QUERY: ["Consulter les archives", "Interroger un érudit", "Revenir à la scène"],
    SemanticIntent.RULES_QUERY: ["Lancer le jet", "Demander la difficulté", "Changer d'approche"],
}
DEFAULT_FALLBACK_OPTIONS = ["Observer les alentours", "Parler à quelqu'un", "Poursuivre ton action"]


@dataclass(frozen=True)
class TurnContext:
    message: str
    conversation_mode: str = "rp"
    character_profile: dict | None = None
    world_state: dict | None = None
    context_pack: dict | None = None
    runtime_state: dict | None = None
    intent: dict | None = None
    director: dict | None = None
    outcome: dict | None = None
    memory_state: dict | None = None


@dataclass(frozen=True)
class TurnOutcome:
    payload: dict
    memory_state: dict | None = None


@dataclass
class _TurnState:
    context: TurnContext
    world_state: dict
    intent: dict
    director: dict
    policy: IntentPolicy
    tool_context: ToolContext
    routing: AiRoutingController
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)


class NarrationTurnHandler:
    def __init__(
        self,
        *,
        llm_client: Any = None,
        tool_bus: ToolBus | None = None,
        stats: StatsCollector | None = None,
        cues: IntentCues | None = None,
        budget_config: AiBudgetConfig | None = None,
        flags: AiFeatureFlags | None = None,
        tool_call_limit: int | None = None,
        memory_engine: NarrativeMemoryEngine | None = None,
    ) -> None:
        self.llm_client = llm_client
        self.tool_bus = tool_bus or ToolBus()
        self.stats = stats or StatsCollector()
        self.cues = cues or load_intent_cues()
        self.budget_config = budget_config or read_ai_budget_config()
        self.flags = flags or read_ai_feature_flags()
        self.tool_call_limit = tool_call_limit or read_tool_call_limit()
        self.memory_engine = memory_engine or NarrativeMemoryEngine()
        self.debug_commands = DebugCommands(self.stats)

    def run(self, context: TurnContext) -> TurnOutcome:
        started = time.perf_counter()
        world_state = context.world_state if isinstance(context.world_state, dict) else None
        world_state = world_state or create_initial_world_state()
        intent = {**DEFAULT_INTENT, **(context.intent or {})}
        director = {**DEFAULT_DIRECTOR, **(context.director or {})}

        system_payload = self.debug_commands.try_handle(
            message=context.message,
            world_state=world_state,
            conversation_mode=context.conversation_mode,
            intent=intent,
            director=director,
        )
        if system_payload is not None:
            return TurnOutcome(payload=system_payload)

        tool_context = ToolContext(
            intent_type=str(intent.get("type") or "story_action"),
            director_mode=str(director.get("mode") or "scene_only"),
            conversation_mode=context.conversation_mode,
            world_state=world_state,
            message=context.message,
            cues=self.cues,
        )
        policy = derive_intent_policy(tool_context)
        state = _TurnState(
            context=context,
            world_state=world_state,
            intent=intent,
            director=director,
            policy=policy,
            tool_context=tool_context,
            routing=AiRoutingController(
                conversation_mode=context.conversation_mode,
                budget=AiCallBudget.from_config(self.budget_config),
            ),
        )

        priority_calls = build_priority_tool_calls(
            message=context.message,
            intent=intent,
            director_plan=director,
            conversation_mode=context.conversation_mode,
            world_state=world_state,
            has_character_profile=bool(context.character_profile),
            cues=self.cues,
            limit=self.tool_call_limit,
        )
        draft = self._primary_draft(state)
        state.tool_calls = merge_tool_calls(
            [call.model_dump() for call in draft.tool_calls] if draft else [],
            priority_calls,
            limit=self.tool_call_limit,
            intent_context=tool_context,
        )
        state.tool_results = self.tool_bus.execute(
            state.tool_calls,
            ToolBusContext(
                world_state=world_state,
                context_pack=context.context_pack,
                runtime_state=context.runtime_state,
                pending=pending_state(world_state),
                message=context.message,
                intent_type=tool_context.intent_type,
                conversation_mode=context.conversation_mode,
            ),
        )
        if draft is not None and self.flags.use_ai_refine:
            draft = self._refined_draft(state, draft)

        payload = self._build_payload(state, draft)
        memory_state = self._apply_memory(context)
        payload["phase12"] = {
            "aiCallBudget": state.routing.budget.snapshot().to_dict(),
            "aiRouting": state.routing.routing_payload(),
            "latencyMs": int((time.perf_counter() - started) * 1000),
        }
        return TurnOutcome(payload=payload, memory_state=memory_state)

    def _primary_draft(self, state: _TurnState) -> MjStructuredDraft | None:
        if self.llm_client is None or not self.flags.use_ai_structured_main:
            return None
        prompt = self._prompt(state, [])
        draft = state.routing.call_with_budget(
            "mj-structured-main",
            lambda: self._generate(prompt),
            fallback=None,
            kind="primary",
        )
        if draft is None and state.routing.has_budget_for("fallback"):
            draft = state.routing.call_with_budget(
                "mj-structured-fallback",
                lambda: self._generate(prompt),
                fallback=None,
                kind="fallback",
            )
        return draft

    def _refined_draft(self, state: _TurnState, draft: MjStructuredDraft) -> MjStructuredDraft:
        if not state.routing.has_budget_for("fallback"):
            logger.info("Skipping MJ refine: fallback budget exhausted")
            return draft
        prompt = self._prompt(state, state.tool_results)
        refined = state.routing.call_with_budget(
            "mj-refine",
            lambda: self._refine(draft, prompt),
            fallback=None,
            kind="fallback",
        )
        return refined or draft

    def _generate(self, prompt: NarrationPrompt | None) -> MjStructuredDraft | None:
        if prompt is None:
            return None
        try:
            return self.llm_client.generate_mj_structured(prompt)
        except LLMClientError as exc:
            logger.warning("MJ structured generation failed: %s", exc)
            return None

    def _refine(
        self, draft: MjStructuredDraft, prompt: NarrationPrompt | None
    ) -> MjStructuredDraft | None:
        if prompt is None:
            return None
        try:
            return self.llm_client.refine_mj_structured(draft, prompt)
        except LLMClientError as exc:
            logger.warning("MJ refine failed: %s", exc)
            return None

    def _prompt(self, state: _TurnState, results: list[ToolResult]) -> NarrationPrompt | None:
        context = state.context
        try:
            return NarrationPrompt(
                message=context.message,
                conversation_mode="hrp" if context.conversation_mode == "hrp" else "rp",
                intent=state.intent,
                canonical_context=build_canonical_context(
                    state.world_state, context.context_pack, context.character_profile
                ),
                allowed_tools=allowed_tool_names(state.tool_context),
                tool_results=[result.to_dict() for result in results],
            )
        except ValidationError as exc:
            logger.warning("Could not build narration prompt: %s", exc)
            return None

    def _build_payload(self, state: _TurnState, draft: MjStructuredDraft | None) -> dict:
        context = state.context
        if draft is not None:
            structured = draft.to_mj_structured()
            reply = render_reply(structured)
            turn_result = {"kind": "mjStructured", "structured": structured}
        else:
            structured = None
            reply = render_reply(fallback_structured(context.message, state.world_state, state.policy))
            turn_result = {"kind": "parsedReply", "reply": reply}

        payload = {
            "reply": reply,
            "speaker": build_speaker(
                conversation_mode=context.conversation_mode,
                intent_type=str(state.intent.get("type") or ""),
                interlocutor=active_interlocutor(state.world_state),
            ),
            "intent": state.intent,
            "director": state.director,
            "worldState": state.world_state,
            "stateUpdated": False,
            "turnResult": turn_result,
            "mjToolTrace": [
                {**call.to_dict(), "ok": result.ok, "summary": result.summary}
                for call, result in zip(state.tool_calls, state.tool_results)
            ],
            "phase1": {
                "intentPolicy": state.policy.to_dict(),
                "toolResults": [result.to_dict() for result in state.tool_results],
            },
        }
        if structured is not None:
            payload["mjStructured"] = structured
        if context.outcome is not None:
            payload["outcome"] = context.outcome
        return payload

    def _apply_memory(self, context: TurnContext) -> dict | None:
        outcome = NarrativeOutcome.from_dict(context.outcome)
        if outcome is None:
            return None
        return self.memory_engine.apply(context.memory_state or empty_memory_state(), outcome)


def fallback_structured(message: str, world_state: dict, policy: IntentPolicy) -> dict:
    location = world_state.get("location") if isinstance(world_state.get("location"), dict) else {}
    label = str(location.get("label") or "").strip()
    action = one_line(message, 140)
    return {
        "responseType": "narration",
        "scene": f"Tu te trouves à {label}." if label else "La scène reste en suspens.",
        "actionResult": f"Le MJ prend note: {action}" if action else "",
        "consequences": "",
        "options": FALLBACK_OPTIONS.get(policy.semantic_intent, DEFAULT_FALLBACK_OPTIONS),
    }


def render_reply(structured: dict) -> str:
    lines = [
        str(structured.get(key) or "").strip()
        for key in ("scene", "actionResult", "consequences")
    ]
    lines = [line for line in lines if line]
    if not lines and structured.get("directAnswer"):
        lines.append(str(structured["directAnswer"]).strip())
    options = [str(option).strip() for option in structured.get("options") or [] if str(option).strip()]
    if options:
        lines.append(f"Tu peux maintenant: {' | '.join(options[:4])}")
    return "\n".join(lines)

