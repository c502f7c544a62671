from gm_os.config import AiBudgetConfig, AiFeatureFlags
from gm_os.stats import StatsCollector
from gm_os.turn import NarrationTurnHandler, TurnContext, render_reply
from gm_os.world import build_speaker, create_initial_world_state
from llm.client import LLMClientError
from llm.schemas import MjStructuredDraft


class StubClient:
    def __init__(self, drafts=None, refined=None):
        self.drafts = list(drafts or [])
        self.refined = refined
        self.prompts = []
        self.refine_calls = 0

    def generate_mj_structured(self, prompt):
        self.prompts.append(prompt)
        item = self.drafts.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def refine_mj_structured(self, draft, prompt):
        self.refine_calls += 1
        self.prompts.append(prompt)
        if isinstance(self.refined, Exception):
            raise self.refined
        return self.refined


def _handler(client=None, *, refine: bool = False, limit: int = 8) -> NarrationTurnHandler:
    return NarrationTurnHandler(
        llm_client=client,
        stats=StatsCollector(),
        budget_config=AiBudgetConfig(),
        flags=AiFeatureFlags(use_ai_structured_main=True, use_ai_refine=refine),
        tool_call_limit=limit,
    )


def _draft(scene: str = "Le coffre grince.") -> MjStructuredDraft:
    return MjStructuredDraft(
        scene=scene,
        options=["Ouvrir", "Reculer"],
        commitment="volitif",
        tool_calls=[{"name": "query_lore", "args": {"query": "coffre"}}],
    )


def test_turn_without_model_uses_fallback_reply() -> None:
    outcome = _handler().run(TurnContext(message="Je fouille le coffre"))
    payload = outcome.payload

    assert payload["reply"].splitlines() == [
        "Tu te trouves à Parvis des Archives, Lysenthe.",
        "Le MJ prend note: Je fouille le coffre",
        "Tu peux maintenant: Observer les alentours | Parler à quelqu'un | Poursuivre ton action",
    ]
    assert payload["turnResult"]["kind"] == "parsedReply"
    assert payload["speaker"] == {"id": "mj", "label": "MJ", "kind": "mj"}
    assert payload["stateUpdated"] is False
    assert payload["mjToolTrace"][0]["name"] == "get_world_state"
    assert all(row["ok"] for row in payload["mjToolTrace"])
    assert payload["phase1"]["intentPolicy"]["semanticIntent"] == "resource_action"
    assert payload["phase12"]["aiCallBudget"]["used"] == 0
    assert "mjStructured" not in payload
    assert outcome.memory_state is None


def test_structured_draft_drives_reply_and_tools() -> None:
    client = StubClient([_draft()])
    context = TurnContext(message="Je fouille le coffre", intent={"riskLevel": "low"})
    payload = _handler(client).run(context).payload

    assert payload["reply"] == "Le coffre grince.\nTu peux maintenant: Ouvrir | Reculer"
    assert payload["turnResult"] == {"kind": "mjStructured", "structured": payload["mjStructured"]}
    assert payload["mjStructured"]["commitment"] == "volitif"
    assert {"name": "query_lore", "args": {"query": "coffre"}} in [
        {"name": row["name"], "args": row["args"]} for row in payload["mjToolTrace"]
    ]
    assert payload["phase12"]["aiCallBudget"]["primaryUsed"] == 1
    assert "get_world_state" in client.prompts[0].allowed_tools
    assert client.prompts[0].canonical_context["location"]["id"] == "lysenthe.archives.parvis"


def test_primary_failure_uses_fallback_call() -> None:
    client = StubClient([LLMClientError("timeout"), _draft("Seconde tentative.")])
    payload = _handler(client, refine=True).run(TurnContext(message="Je fouille le coffre")).payload

    assert payload["mjStructured"]["scene"] == "Seconde tentative."
    budget = payload["phase12"]["aiCallBudget"]
    assert budget["used"] == 2
    assert budget["fallbackUsed"] == 1
    assert client.refine_calls == 0
    assert "mj-refine" not in payload["phase12"]["aiRouting"]["byLabel"]


def test_refine_uses_fallback_budget_and_tool_results() -> None:
    client = StubClient([_draft()], refined=_draft("Version relue."))
    payload = _handler(client, refine=True).run(TurnContext(message="Je fouille le coffre")).payload

    assert payload["mjStructured"]["scene"] == "Version relue."
    assert client.refine_calls == 1
    assert client.prompts[-1].tool_results
    assert payload["phase12"]["aiRouting"]["byLabel"]["mj-refine"]["executed"] == 1


def test_refine_failure_keeps_primary_draft() -> None:
    client = StubClient([_draft()], refined=LLMClientError("bad json"))
    payload = _handler(client, refine=True).run(TurnContext(message="Je fouille le coffre")).payload
    assert payload["mjStructured"]["scene"] == "Le coffre grince."


def test_both_calls_failing_falls_back_to_local_reply() -> None:
    client = StubClient([LLMClientError("a"), LLMClientError("b")])
    payload = _handler(client).run(TurnContext(message="Je fouille le coffre")).payload
    assert payload["turnResult"]["kind"] == "parsedReply"
    assert payload["phase12"]["aiCallBudget"]["used"] == 2


def test_hrp_turn_skips_model_and_tools() -> None:
    client = StubClient([_draft()])
    payload = _handler(client).run(TurnContext(message="On fait une pause ?", conversation_mode="hrp")).payload

    assert client.prompts == []
    assert payload["speaker"]["kind"] == "system"
    assert payload["mjToolTrace"] == []
    routing = payload["phase12"]["aiRouting"]
    assert routing["executed"] == 0
    assert routing["skipped"] == 2
    assert payload["phase12"]["aiCallBudget"]["used"] == 0


def test_social_turn_speaks_as_interlocutor() -> None:
    world = create_initial_world_state()
    world["conversation"]["activeInterlocutor"] = {"label": "Archiviste Mora"}
    payload = _handler().run(
        TurnContext(message="Bonjour", intent={"type": "social_action"}, world_state=world)
    ).payload
    assert payload["speaker"] == {
        "id": "interlocutor:archiviste-mora",
        "label": "Archiviste Mora",
        "kind": "interlocutor",
    }
    assert payload["reply"].endswith("Poursuivre la conversation | Changer de sujet | Prendre congé")


def test_debug_command_short_circuits() -> None:
    client = StubClient([_draft()])
    outcome = _handler(client).run(TurnContext(message="/Phase8-Debug"))
    assert client.prompts == []
    assert outcome.payload["intent"]["type"] == "system_command"
    assert outcome.payload["intent"]["reason"] == "phase8-debug"
    assert "phase8" in outcome.payload
    assert "phase12" not in outcome.payload


def test_outcome_updates_narrative_memory() -> None:
    outcome_row = {
        "result": {"entityType": "quest", "toState": "Terminée", "impactScope": "local"},
        "historyEntry": {"transitionId": "t-1", "entityId": "q-1", "at": "2026-01-01T10:00:00Z"},
    }
    outcome = _handler().run(TurnContext(message="Je rends la relique", outcome=outcome_row))
    assert outcome.payload["outcome"] == outcome_row
    assert len(outcome.memory_state["memory"]["longTerm"]) == 1


def test_render_reply_limits_options() -> None:
    reply = render_reply({"directAnswer": "Oui.", "options": ["a", "b", "c", "d", "e"]})
    assert reply == "Oui.\nTu peux maintenant: a | b | c | d"
    assert render_reply({}) == ""


def test_speaker_id_slugifies_interlocutor_label() -> None:
    speaker = build_speaker(
        conversation_mode="rp",
        intent_type="social_action",
        interlocutor="  Dame   Ilse\tVorn ",
    )
    assert speaker == {"id": "interlocutor:dame-ilse-vorn", "label": "Dame   Ilse\tVorn", "kind": "interlocutor"}
    assert build_speaker(conversation_mode="rp", interlocutor="Ilse")["id"] == "mj"
