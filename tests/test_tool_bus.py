from gm_os.tool_bus import MAX_TOOL_CALLS_PER_TURN, ToolBus, ToolBusContext
from gm_os.world import create_initial_world_state


def _context(**overrides) -> ToolBusContext:
    values = {"world_state": create_initial_world_state(), "message": "Je fouille le coffre"}
    values.update(overrides)
    return ToolBusContext(**values)


def test_unknown_tool_is_reported_not_raised() -> None:
    results = ToolBus().execute([{"name": "teleport"}], _context())
    assert len(results) == 1
    assert results[0].ok is False
    assert results[0].summary == "Outil inconnu."
    assert results[0].data == {"requested": "teleport"}


def test_failing_tool_is_isolated() -> None:
    def broken_lore(query: str, limit: int) -> list:
        raise RuntimeError("index offline")

    bus = ToolBus(query_lore=broken_lore)
    results = bus.execute([{"name": "query_lore"}, {"name": "get_world_state"}], _context())
    assert [result.ok for result in results] == [False, True]
    assert results[0].summary == "Outil en échec."
    assert results[0].data == {"error": "index offline"}


def test_execution_is_capped_per_turn() -> None:
    calls = [{"name": "get_world_state"} for _ in range(10)]
    results = ToolBus().execute(calls, _context())
    assert len(results) == MAX_TOOL_CALLS_PER_TURN


def test_invalid_entries_are_skipped() -> None:
    results = ToolBus().execute([None, {"args": {}}, "nope", {"name": "query_rules"}], _context())
    assert [result.tool for result in results] == ["query_rules"]


def test_get_world_state_exposes_location_time_and_pending() -> None:
    pending = {"action": None, "travel": None, "access": None}
    result = ToolBus().execute([{"name": "get_world_state"}], _context(pending=pending))[0]
    assert result.ok is True
    assert result.data["location"]["id"] == "lysenthe.archives.parvis"
    assert result.data["time"]["hour"] == 15
    assert result.data["pending"] == pending


def test_query_lore_uses_message_and_bounds_limit() -> None:
    seen: list[tuple[str, int]] = []

    def lore(query: str, limit: int) -> list:
        seen.append((query, limit))
        return [{"id": "archives", "title": "Archives", "type": "lieu", "summary": "x" * 400}, "bad"]

    result = ToolBus(query_lore=lore).execute([{"name": "query_lore", "args": {"limit": 50}}], _context())[0]
    assert seen == [("Je fouille le coffre", 5)]
    assert result.summary == "Lore consulté (1)."
    assert len(result.data["matches"][0]["summary"]) == 220


def test_query_lore_without_index_returns_no_matches() -> None:
    result = ToolBus().execute([{"name": "query_lore", "args": {"query": "port"}}], _context())[0]
    assert result.ok is True
    assert result.data == {"query": "port", "matches": []}


def test_player_sheet_and_rules_read_context_pack() -> None:
    pack = {"identity": {"name": "Ilya"}, "rules": {"dc": 12}, "secret": "hidden"}
    results = ToolBus().execute(
        [{"name": "query_player_sheet"}, {"name": "query_rules"}], _context(context_pack=pack)
    )
    assert results[0].data["identity"] == {"name": "Ilya"}
    assert "secret" not in results[0].data
    assert results[1].data == {"rules": {"dc": 12}}


def test_session_db_read_limits_places() -> None:
    world = create_initial_world_state()
    world["sessionPlaces"] = [{"id": str(index)} for index in range(12)]
    world["conversation"]["activeInterlocutor"] = "Archiviste"
    result = ToolBus().execute(
        [{"name": "session_db_read", "args": {"scope": "pending"}}], _context(world_state=world)
    )[0]
    assert result.data["scope"] == "pending"
    assert len(result.data["sessionPlaces"]) == 8
    assert result.data["activeInterlocutor"] == "Archiviste"


def test_session_db_write_is_accepted_without_persisting() -> None:
    result = ToolBus().execute([{"name": "session_db_write", "args": {"fact": "x"}}], _context())[0]
    assert result.ok is True
    assert result.data["accepted"] is True


def test_quest_trama_tick_counts_runtime_buckets() -> None:
    runtime = {"quests": {"q1": {}, "q2": {}}, "tramas": {"t1": {}}}
    result = ToolBus().execute([{"name": "quest_trama_tick"}], _context(runtime_state=runtime))[0]
    assert result.data == {"quests": 2, "tramas": 1, "companions": 0, "trades": 0}


def test_semantic_intent_probe_reports_policy() -> None:
    result = ToolBus().execute(
        [{"name": "semantic_intent_probe"}], _context(message="Je me dirige vers le port")
    )[0]
    assert result.summary == "Intention sémantique: move_place."
    assert result.data["semanticIntent"] == "move_place"
    assert result.data["allowRuntimeMutation"] is True


def test_result_to_dict() -> None:
    result = ToolBus().execute([{"name": "query_rules"}], _context())[0]
    assert result.to_dict() == {
        "tool": "query_rules",
        "ok": True,
        "summary": "Référentiel de règles consulté.",
        "data": {"rules": None},
    }
