from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

Capability = Literal["read", "write", "tick"]


class SemanticIntent(str, Enum):
    MOVE_PLACE = "move_place"
    ENTER_PLACE = "enter_place"
    SOCIAL_EXCHANGE = "social_exchange"
    TRADE_ACTION = "trade_action"
    RULES_QUERY = "rules_query"
    LORE_QUERY = "lore_query"
    INSPECT_LOCAL = "inspect_local"
    QUEST_PROGRESS = "quest_progress"
    RESOURCE_ACTION = "resource_action"
    SYSTEM_COMMAND = "system_command"


@dataclass(frozen=True)
class ToolDescriptor:
    capabilities: frozenset[str]
    domains: frozenset[str]
    allow_in_non_rp: bool = False


@dataclass(frozen=True)
class ToolCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def dedupe_key(self) -> str:
        return f"{self.name}:{json.dumps(self.args, sort_keys=True, default=str)}"

    def to_dict(self) -> dict:
        return {"name": self.name, "args": dict(self.args)}


TOOL_REGISTRY: dict[str, ToolDescriptor] = {
    "get_world_state": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"world", "state", "core"}),
        allow_in_non_rp=True,
    ),
    "query_lore": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"lore", "world"}),
    ),
    "query_player_sheet": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"character", "rules"}),
    ),
    "query_rules": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"rules"}),
    ),
    "session_db_read": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"session-memory", "world", "core"}),
    ),
    "session_db_write": ToolDescriptor(
        capabilities=frozenset({"write"}),
        domains=frozenset({"session-memory", "world"}),
    ),
    "quest_trama_tick": ToolDescriptor(
        capabilities=frozenset({"tick", "read"}),
        domains=frozenset({"runtime", "quest", "world"}),
    ),
    "semantic_intent_probe": ToolDescriptor(
        capabilities=frozenset({"read"}),
        domains=frozenset({"core", "world", "rules"}),
    ),
}

VALID_CAPABILITIES: set[str] = {"read", "write", "tick"}


def get_tool(name: Any) -> ToolDescriptor | None:
    key = str(name if name is not None else "").strip().lower()
    return TOOL_REGISTRY.get(key)


def registered_tool_names() -> list[str]:
    return list(TOOL_REGISTRY)


def normalize_tool_call(entry: Any) -> ToolCall | None:
    if isinstance(entry, ToolCall):
        return entry
    row = entry if isinstance(entry, dict) else {}
    raw_name = row.get("name") or row.get("tool") or row.get("id") or ""
    name = str(raw_name).strip().lower()
    if not name:
        return None
    args = row.get("args")
    return ToolCall(name=name, args=dict(args) if isinstance(args, dict) else {})


def tool_call_name(entry: Any) -> str:
    if isinstance(entry, ToolCall):
        return entry.name
    if not isinstance(entry, dict):
        return ""
    raw = entry.get("name") or entry.get("tool") or entry.get("id") or ""
    return str(raw).strip().lower()


def validate_tool_registry() -> list[str]:
    errors: list[str] = []
    for name, descriptor in TOOL_REGISTRY.items():
        if name != name.lower():
            errors.append(f"{name} must be lowercase")
        if not descriptor.capabilities:
            errors.append(f"{name} has no capabilities")
        unknown = set(descriptor.capabilities) - VALID_CAPABILITIES
        if unknown:
            errors.append(f"{name} has invalid capabilities {sorted(unknown)}")
        if not descriptor.domains:
            errors.append(f"{name} has no domains")
    return errors
