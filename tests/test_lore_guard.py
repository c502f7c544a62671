from gm_os.lore_guard import (
    GUARD_REPLY,
    apply_lore_guard,
    evaluate_lore_guard,
    is_narrative_payload,
    merge_violation_lists,
    normalize_violations,
)
from gm_os.pipeline import TurnPayloadPipeline
from gm_os.stats import StatsCollector
from gm_os.world import create_initial_world_state


def _turn(intent_type: str = "story_action", world_state: dict | None = None, **extra) -> dict:
    payload = {
        "reply": "La place est calme.",
        "speaker": {"id": "mj", "label": "MJ", "kind": "mj"},
        "intent": {"type": intent_type},
        "director": {"mode": "scene_only"},
        "worldState": world_state if world_state is not None else create_initial_world_state(),
    }
    payload.update(extra)
    return payload


def test_social_action_without_interlocutor_is_minor() -> None:
    stats = StatsCollector()
    result = TurnPayloadPipeline(stats).process(_turn("social_action"))

    report = result["debug"]["mjContract"]["loreGuardReport"]
    assert report == {"blocked": False, "violations": ["politique:social-without-interlocutor"]}
    assert result["reply"] == "La place est calme."
    assert stats.guard_payload()["checkedTurns"] == 1
    assert stats.guard_payload()["blockedTurns"] == 0
    assert stats.guard_payload()["byCode"] == {"social-without-interlocutor": 1}


def test_social_action_with_interlocutor_passes_clean() -> None:
    world = create_initial_world_state()
    world["conversation"]["activeInterlocutor"] = "Archiviste"
    result = TurnPayloadPipeline().process(_turn("social_action", world))
    assert result["debug"]["mjContract"]["loreGuardReport"] == {"blocked": False, "violations": []}

    payload = _turn("social_action", world)
    payload["canonicalContext"] = {"location": {"id": "x"}, "social": {"activeInterlocutor": "Archiviste"}}
    check = evaluate_lore_guard(payload)
    assert check.checked is True
    assert check.violations == []


def test_invalid_time_blocks_the_turn() -> None:
    world = create_initial_world_state()
    world["time"]["hour"] = 25
    result = TurnPayloadPipeline().process(_turn(world_state=world))

    assert result["reply"] == GUARD_REPLY
    assert result["mjResponse"]["responseType"] == "clarification"
    assert result["mjResponse"]["options"][0] == "Nommer un lieu déjà connu"
    contract = result["debug"]["mjContract"]
    assert contract["loreGuardReport"]["blocked"] is True
    assert contract["loreGuardReport"]["violations"] == ["temps:invalid-canonical-time"]
    assert contract["mjResponse"] == result["mjResponse"]


def test_missing_time_field_is_invalid() -> None:
    world = create_initial_world_state()
    world["time"]["minute"] = None
    check = evaluate_lore_guard(_turn(world_state=world))
    assert check.blocked is True


def test_missing_location_and_travel_loop() -> None:
    world = create_initial_world_state()
    world["location"] = None
    check = evaluate_lore_guard(_turn(world_state=world))
    assert check.violation_labels() == ["geographie:missing-canonical-location"]

    world = create_initial_world_state()
    world["travel"]["pending"] = {"to": {"id": world["location"]["id"]}}
    check = evaluate_lore_guard(_turn(world_state=world))
    assert check.blocked is True
    assert check.violation_labels() == ["geographie:travel-loop-same-location"]


def test_non_narrative_turns_are_not_checked() -> None:
    assert evaluate_lore_guard(_turn("system_command")).checked is False
    assert evaluate_lore_guard({"reply": "x"}).checked is False
    status = _turn(mjResponse={"responseType": "status"})
    assert is_narrative_payload(status) is False


def test_explicit_violations_are_merged_and_deduped() -> None:
    explicit = {
        "gate": "Faction",
        "code": "Unknown-Faction",
        "message": "Faction inconnue.",
        "severity": "minor",
    }
    payload = _turn(phase3LoreGuard={"violations": [explicit, explicit, {"gate": "x"}]})
    check = evaluate_lore_guard(payload)
    assert check.blocked is False
    assert check.violation_labels() == ["faction:unknown-faction"]

    payload = _turn(phase3LoreGuard={"blocked": True, "violations": []})
    assert evaluate_lore_guard(payload).blocked is True


def test_normalize_violations_defaults() -> None:
    rows = normalize_violations([{"message": "  Hors   canon "}, "bad", {"message": ""}])
    assert len(rows) == 1
    assert rows[0].gate == "unknown"
    assert rows[0].code == "unknown"
    assert rows[0].message == "Hors canon"
    assert rows[0].severity == "major"


def test_merge_violation_lists_is_bounded() -> None:
    primary = [{"gate": "g", "code": str(index), "message": "m"} for index in range(8)]
    secondary = [{"gate": "h", "code": str(index), "message": "m"} for index in range(8)]
    assert len(merge_violation_lists(primary, secondary)) == 10


def test_apply_guard_leaves_unchecked_payload_untouched() -> None:
    payload = {"reply": "x"}
    check = evaluate_lore_guard(payload)
    assert apply_lore_guard(payload, check) is payload
