from __future__ import annotations

from typing import Any


def build_canonical_context(
    world_state: dict | None,
    context_pack: dict | None = None,
    character_profile: dict | None = None,
) -> dict:
    world = _dict(world_state)
    location = _dict(world.get("location"))
    time = _dict(world.get("time"))
    conversation = _dict(world.get("conversation"))
    travel = _dict(world.get("travel"))
    return {
        "location": {
            "id": _text(location.get("id")),
            "label": _text(location.get("label")),
        },
        "time": {
            "day": time.get("day"),
            "hour": time.get("hour"),
            "minute": time.get("minute"),
            "label": _text(time.get("label")),
        },
        "social": {
            "activeInterlocutor": conversation.get("activeInterlocutor"),
            "pendingTravel": travel.get("pending") or conversation.get("pendingTravel"),
            "pendingAccess": conversation.get("pendingAccess"),
        },
        "character": _character(context_pack, character_profile),
    }


def _character(context_pack: dict | None, character_profile: dict | None) -> dict | None:
    profile = _dict(character_profile)
    identity = _dict(_dict(context_pack).get("identity"))
    name = _text(profile.get("name") or identity.get("name"))
    return {"name": name} if name else None


def _text(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}
