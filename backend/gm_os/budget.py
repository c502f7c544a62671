from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal

from gm_os.config import AiBudgetConfig

logger = logging.getLogger(__name__)

BudgetKind = Literal["primary", "fallback"]

BLOCKED_LABEL_CAPACITY = 32
ROUTING_RECENT_CAPACITY = 32
TOTAL_LABEL_PREFIX = "total:"


@dataclass(frozen=True)
class AiCallBudgetSnapshot:
    used: int
    max: int
    primary_used: int
    primary_max: int
    fallback_used: int
    fallback_max: int
    blocked: int
    primary_blocked: int
    fallback_blocked: int
    blocked_labels: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "used": self.used,
            "max": self.max,
            "primaryUsed": self.primary_used,
            "primaryMax": self.primary_max,
            "fallbackUsed": self.fallback_used,
            "fallbackMax": self.fallback_max,
            "blocked": self.blocked,
            "primaryBlocked": self.primary_blocked,
            "fallbackBlocked": self.fallback_blocked,
            "blockedLabels": list(self.blocked_labels),
        }


@dataclass
class AiCallBudget:
    max: int = 2
    primary_max: int = 1
    fallback_max: int = 1
    used: int = 0
    primary_used: int = 0
    fallback_used: int = 0
    blocked: int = 0
    primary_blocked: int = 0
    fallback_blocked: int = 0
    blocked_labels: deque = field(
        default_factory=lambda: deque(maxlen=BLOCKED_LABEL_CAPACITY)
    )

    def __post_init__(self) -> None:
        for name in ("max", "primary_max", "fallback_max"):
            value = getattr(self, name)
            if not isinstance(value, int) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    @classmethod
    def from_config(cls, config: AiBudgetConfig) -> "AiCallBudget":
        return cls(
            max=config.max_calls,
            primary_max=config.primary_max,
            fallback_max=config.fallback_max,
        )

    def try_consume(
        self,
        label: str,
        kind: str = "fallback",
        *,
        total_label_prefix: str = TOTAL_LABEL_PREFIX,
    ) -> bool:
        bucket = "primary" if kind == "primary" else "fallback"
        safe_label = str(label if label is not None else "unknown")
        if bucket == "primary":
            bucket_used, bucket_max = self.primary_used, self.primary_max
        else:
            bucket_used, bucket_max = self.fallback_used, self.fallback_max

        if bucket_used >= bucket_max:
            self._record_block(bucket, f"{bucket}:{safe_label}")
            return False
        if self.used >= self.max:
            self._record_block(bucket, f"{total_label_prefix}{safe_label}")
            return False

        self.used += 1
        if bucket == "primary":
            self.primary_used += 1
        else:
            self.fallback_used += 1
        return True

    def snapshot(self, max_labels: int = 8) -> AiCallBudgetSnapshot:
        keep = max(1, int(max_labels or 8))
        labels = tuple(self.blocked_labels)[-keep:]
        return AiCallBudgetSnapshot(
            used=self.used,
            max=self.max,
            primary_used=self.primary_used,
            primary_max=self.primary_max,
            fallback_used=self.fallback_used,
            fallback_max=self.fallback_max,
            blocked=self.blocked,
            primary_blocked=self.primary_blocked,
            fallback_blocked=self.fallback_blocked,
            blocked_labels=labels,
        )

    def _record_block(self, bucket: str, entry: str) -> None:
        self.blocked += 1
        if bucket == "primary":
            self.primary_blocked += 1
        else:
            self.fallback_blocked += 1
        self.blocked_labels.append(entry)


class AiRoutingController:
    def __init__(self, *, conversation_mode: str, budget: AiCallBudget) -> None:
        self.conversation_mode = conversation_mode
        self.budget = budget
        self.attempted = 0
        self.executed = 0
        self.skipped = 0
        self.by_label: dict[str, dict[str, int]] = {}
        self.recent: deque = deque(maxlen=ROUTING_RECENT_CAPACITY)

    def record(self, label: str, status: str, reason: str = "") -> None:
        safe_label = str(label or "unknown")
        entry = self.by_label.setdefault(
            safe_label, {"attempted": 0, "executed": 0, "skipped": 0}
        )
        self.attempted += 1
        entry["attempted"] += 1
        if status == "executed":
            self.executed += 1
            entry["executed"] += 1
        else:
            self.skipped += 1
            entry["skipped"] += 1
        self.recent.append(
            {
                "at": datetime.now(timezone.utc).isoformat(),
                "label": safe_label,
                "status": status,
                "reason": str(reason or "").strip(),
            }
        )

    def call_with_budget(
        self,
        label: str,
        fn: Callable[[], Any] | None,
        fallback: Any = None,
        kind: str = "fallback",
    ) -> Any:
        if self.conversation_mode != "rp":
            self.record(label, "skipped", "non-rp")
            return fallback
        if not callable(fn):
            self.record(label, "skipped", "invalid-fn")
            return fallback
        if not self.budget.try_consume(label, kind):
            logger.info("AI call %s rejected by the %s budget", label, kind)
            self.record(label, "skipped", "budget-blocked")
            return fallback
        self.record(label, "executed", kind)
        return fn()

    def has_budget_for(self, kind: str = "fallback") -> bool:
        if self.budget.used >= self.budget.max:
            return False
        if kind == "primary":
            return self.budget.primary_used < self.budget.primary_max
        return self.budget.fallback_used < self.budget.fallback_max

    def routing_payload(self, limit: int = 16) -> dict:
        keep = max(1, int(limit or 1))
        return {
            "attempted": self.attempted,
            "executed": self.executed,
            "skipped": self.skipped,
            "byLabel": {label: dict(counts) for label, counts in self.by_label.items()},
            "recent": list(self.recent)[-keep:],
        }
