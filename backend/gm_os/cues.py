from __future__ import annotations

import json
import os
import re
import unicodedata
from dataclasses import dataclass, field

CUE_NAMES = ("rules", "trade", "lore", "move", "enter", "quest")

DEFAULT_CUE_PATTERNS: dict[str, tuple[str, ...]] = {
    "rules": (r"regle", r"jet", r"dd\b", r"difficulte", r"test de"),
    "trade": (
        r"prix",
        r"vendre",
        r"acheter",
        r"negocier",
        r"marchandage",
        r"boutique",
        r"echoppe",
    ),
    "lore": (r"primaute", r"archives", r"lore", r"histoire", r"origine", r"que sais-tu"),
    "move": (
        r"je\s+(me\s+)?(dirige|vais|marche|avance|file)\s+vers",
        r"deplacement",
        r"deplacer",
        r"j'y vais",
    ),
    "enter": (r"j'entre", r"je rentre", r"entrer", r"rentrer", r"franchir"),
    "quest": (r"quete", r"trame"),
}


@dataclass(frozen=True)
class IntentCues:
    patterns: dict[str, tuple[re.Pattern, ...]] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, mapping: dict) -> "IntentCues":
        compiled: dict[str, tuple[re.Pattern, ...]] = {}
        for name in CUE_NAMES:
            raw = mapping.get(name) if isinstance(mapping, dict) else None
            if not isinstance(raw, (list, tuple)):
                raw = DEFAULT_CUE_PATTERNS[name]
            compiled[name] = tuple(
                re.compile(str(pattern), re.IGNORECASE) for pattern in raw if str(pattern)
            )
        return cls(patterns=compiled)

    def matches(self, name: str, text: str) -> bool:
        normalized = normalize_cue_text(text)
        if not normalized:
            return False
        return any(pattern.search(normalized) for pattern in self.patterns.get(name, ()))


def normalize_cue_text(text: str | None) -> str:
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(text))
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return stripped.replace("’", "'").lower().strip()


DEFAULT_CUES = IntentCues.from_mapping(DEFAULT_CUE_PATTERNS)


def load_intent_cues(path: str | None = None) -> IntentCues:
    cue_path = path or os.getenv("NARRATION_INTENT_CUES_PATH")
    if not cue_path:
        return DEFAULT_CUES
    try:
        with open(cue_path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return DEFAULT_CUES
    if not isinstance(data, dict):
        return DEFAULT_CUES
    return IntentCues.from_mapping(data)
