from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

START_LOCATION_ID = "lysenthe.archives.parvis"
START_LOCATION_LABEL = "Parvis des Archives, Lysenthe"


def create_initial_world_state() -> dict:
    return {
        "version": "1.0.0",
        "updatedAt": datetime.now(timezone.utc).isoformat(),
        "metrics": {"reputation": 0, "localTension": 0},
        "conversation": {
            "activeInterlocutor": None,
            "pendingAction": None,
            "pendingTravel": None,
            "pendingAccess": None,
        },
        "location": {"id": START_LOCATION_ID, "label": START_LOCATION_LABEL},
        "travel": {"pending": None, "last": None},
        "sessionPlaces": [],
        "time": {"day": 1, "hour": 15, "minute": 0, "label": "milieu d'après-midi"},
    }


def active_interlocutor(world_state: dict | None) -> str:
    conversation = world_state.get("conversation") if isinstance(world_state, dict) else None
    value = conversation.get("activeInterlocutor") if isinstance(conversation, dict) else None
    if isinstance(value, dict):
        value = value.get("label") or value.get("name") or value.get("id")
    return str(value or "").strip()


def build_speaker(
    *,
    conversation_mode: str,
    intent_type: str = "",
    interlocutor: Any = None,
    force_system: bool = False,
) -> dict:
    if force_system:
        return {"id": "system", "label": "Système", "kind": "system"}
    if conversation_mode == "hrp":
        return {"id": "hrp", "label": "Hors RP", "kind": "system"}
    label = str(interlocutor or "").strip()
    if intent_type == "social_action" and label:
        slug = re.sub(r"\s+", "-", label.lower())
        return {
            "id": f"interlocutor:{slug}",
            "label": label,
            "kind": "interlocutor",
        }
    return {"id": "mj", "label": "MJ", "kind": "mj"}
