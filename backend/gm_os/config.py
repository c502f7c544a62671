from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_MAX_CALLS = 2
DEFAULT_PRIMARY_CALLS = 1
DEFAULT_FALLBACK_CALLS = 1
DEFAULT_TOOL_CALL_LIMIT = 6
MAX_CALLS_CEILING = 12


@dataclass(frozen=True)
class AiBudgetConfig:
    max_calls: int = DEFAULT_MAX_CALLS
    primary_max: int = DEFAULT_PRIMARY_CALLS
    fallback_max: int = DEFAULT_FALLBACK_CALLS


@dataclass(frozen=True)
class AiFeatureFlags:
    use_ai_structured_main: bool = False
    use_ai_refine: bool = False


def read_ai_budget_config(env: Mapping[str, str] | None = None) -> AiBudgetConfig:
    source = os.environ if env is None else env
    max_calls = _clamp_int(
        source.get("NARRATION_AI_MAX_CALLS_PER_TURN"),
        DEFAULT_MAX_CALLS,
        1,
        MAX_CALLS_CEILING,
    )
    primary_max = _clamp_int(
        source.get("NARRATION_AI_MAX_PRIMARY_CALLS_PER_TURN"),
        DEFAULT_PRIMARY_CALLS,
        1,
        max_calls,
    )
    fallback_max = _clamp_int(
        source.get("NARRATION_AI_MAX_FALLBACK_CALLS_PER_TURN"),
        DEFAULT_FALLBACK_CALLS,
        1,
        max_calls,
    )
    return AiBudgetConfig(
        max_calls=max_calls,
        primary_max=primary_max,
        fallback_max=fallback_max,
    )


def read_ai_feature_flags(env: Mapping[str, str] | None = None) -> AiFeatureFlags:
    source = os.environ if env is None else env
    return AiFeatureFlags(
        use_ai_structured_main=_flag(source, "NARRATION_USE_AI_STRUCTURED_MAIN"),
        use_ai_refine=_flag(source, "NARRATION_USE_AI_REFINE"),
    )


def read_tool_call_limit(env: Mapping[str, str] | None = None) -> int:
    source = os.environ if env is None else env
    return _clamp_int(
        source.get("NARRATION_TOOL_CALL_LIMIT"),
        DEFAULT_TOOL_CALL_LIMIT,
        1,
        MAX_CALLS_CEILING,
    )


def _flag(source: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = source.get(name)
    if value is None:
        return default
    return str(value).strip() == "1"


def _clamp_int(value: str | None, default: int, low: int, high: int) -> int:
    try:
        parsed = int(str(value).strip()) if value is not None else default
    except ValueError:
        parsed = default
    if parsed <= 0:
        parsed = default
    return max(low, min(high, parsed))
