from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from db import check_db_connection
from gm_os.memory_store import MemoryStoreError, load_memory_state, save_memory_state
from gm_os.pipeline import CORS_HEADERS, TurnPayloadPipeline
from gm_os.stats import StatsCollector
from gm_os.tool_bus import ToolBus
from gm_os.turn import NarrationTurnHandler, TurnContext
from llm.client import OllamaClient

logger = logging.getLogger(__name__)

app = FastAPI(
    title="narration-core API",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

stats = StatsCollector()
pipeline = TurnPayloadPipeline(stats)
turn_handler = NarrationTurnHandler(llm_client=OllamaClient(), tool_bus=ToolBus(), stats=stats)

STATS_BUILDERS = {
    "contract": stats.contract_payload,
    "guard": stats.guard_payload,
    "ai-budget": stats.ai_budget_payload,
    "debug-channel": stats.debug_channel_payload,
    "routing": stats.routing_payload,
    "performance": stats.performance_payload,
}


class NarrationChatRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    session_id: str | None = None
    message: str
    conversation_mode: Literal["rp", "hrp"] = "rp"
    character_profile: dict[str, Any] | None = None
    world_state: dict[str, Any] | None = None
    context_pack: dict[str, Any] | None = None
    runtime_state: dict[str, Any] | None = None
    intent: dict[str, Any] | None = None
    director: dict[str, Any] | None = None
    outcome: dict[str, Any] | None = None


@app.get("/health")
def health() -> dict:
    try:
        check_db_connection()
    except Exception as exc:
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


@app.options("/api/narration/{path:path}")
def narration_preflight(path: str) -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)


@app.post("/api/narration/chat")
def narration_chat(payload: NarrationChatRequest) -> Response:
    persist = bool(payload.session_id) and payload.outcome is not None
    memory_state = None
    if persist:
        try:
            memory_state = load_memory_state(payload.session_id)
        except MemoryStoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    outcome = turn_handler.run(
        TurnContext(
            message=payload.message,
            conversation_mode=payload.conversation_mode,
            character_profile=payload.character_profile,
            world_state=payload.world_state,
            context_pack=payload.context_pack,
            runtime_state=payload.runtime_state,
            intent=payload.intent,
            director=payload.director,
            outcome=payload.outcome,
            memory_state=memory_state,
        )
    )

    if persist and outcome.memory_state is not None:
        try:
            save_memory_state(payload.session_id, outcome.memory_state)
        except MemoryStoreError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        logger.info("Narrative memory updated for session %s", payload.session_id)
    return pipeline.send_json(200, outcome.payload)


@app.get("/api/narration/stats/{name}")
def narration_stats(name: str) -> Response:
    builder = STATS_BUILDERS.get(name)
    if builder is None:
        raise HTTPException(status_code=404, detail="Unknown stats collector")
    return pipeline.send_json(200, {"collector": name, "stats": builder()})
