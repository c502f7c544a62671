from __future__ import annotations

import json
import os
from typing import Any

import requests
from pydantic import ValidationError

from llm.schemas import MjStructuredDraft, NarrationPrompt


class LLMClientError(RuntimeError):
    pass


DRAFT_SCHEMA = (
    "{"
    '"response_type": "narration|resolution|clarification|status", '
    '"direct_answer": "string", '
    '"scene": "string", '
    '"action_result": "string", '
    '"consequences": "string", '
    '"options": ["string"], '
    '"commitment": "declaratif|volitif|hypothetique|informatif|null", '
    '"confidence": 0.0, '
    '"tool_calls": [{"name": "string", "args": {"any": "json"}}]'
    "}"
)


class OllamaClient:
    def __init__(
        self,
        *,
        base_url: str | None = None,
        model: str | None = None,
        timeout: int | None = None,
    ) -> None:
        self.base_url = (base_url or os.getenv("OLLAMA_URL") or "http://localhost:11434").rstrip(
            "/"
        )
        self.model = model or os.getenv("OLLAMA_MODEL") or "gpt-oss:20b"
        if timeout is None:
            timeout = int(os.getenv("OLLAMA_TIMEOUT", "30"))
        self.timeout = timeout

    def generate_mj_structured(self, prompt: NarrationPrompt) -> MjStructuredDraft:
        content = self._chat(
            messages=_structured_messages(prompt),
            temperature=0.4,
            format="json",
        )
        return _parse_draft(content)

    def refine_mj_structured(
        self,
        draft: MjStructuredDraft,
        prompt: NarrationPrompt,
    ) -> MjStructuredDraft:
        content = self._chat(
            messages=_refine_messages(draft, prompt),
            temperature=0.2,
            format="json",
        )
        return _parse_draft(content)

    def _chat(
        self,
        *,
        messages: list[dict[str, str]],
        temperature: float,
        format: str | None = None,
    ) -> str:
        url = f"{self.base_url}/api/chat"
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if format:
            payload["format"] = format
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise LLMClientError(f"Ollama request failed: {exc}") from exc
        message = data.get("message", {}) if isinstance(data, dict) else {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise LLMClientError("Invalid response from Ollama.")
        return content


def _structured_messages(prompt: NarrationPrompt) -> list[dict[str, str]]:
    system = (
        "Tu es le MJ d'une partie de jeu de rôle. Tu réponds en JSON strict uniquement. "
        f"Schéma: {DRAFT_SCHEMA}. "
        "Reste fidèle au contexte canonique fourni (lieu, heure, interlocuteur). "
        "N'invente aucun lieu, aucune faction ni aucun PNJ absent du contexte. "
        "tool_calls ne peut citer que les outils de allowed_tools. "
        "Au plus 6 options courtes. Pas de markdown, pas de commentaire."
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt.model_dump_json()},
    ]


def _refine_messages(draft: MjStructuredDraft, prompt: NarrationPrompt) -> list[dict[str, str]]:
    system = (
        "Tu relis une réponse de MJ au format JSON et tu la corriges. "
        f"Schéma: {DRAFT_SCHEMA}. "
        "Appuie-toi uniquement sur tool_results et sur le contexte canonique. "
        "Supprime toute affirmation non étayée. Retourne le JSON complet, sans autre texte."
    )
    user = {
        "draft": draft.model_dump(),
        "prompt": prompt.model_dump(),
    }
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": json.dumps(user)},
    ]


def _parse_draft(content: str) -> MjStructuredDraft:
    payload = _extract_json(content)
    try:
        return MjStructuredDraft.model_validate(payload)
    except ValidationError as exc:
        raise LLMClientError(f"Invalid MJ structured output: {exc}") from exc


def _extract_json(content: str) -> dict[str, Any]:
    try:
        data = json.loads(content)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = content.find("{")
    end = content.rfind("}")
    if start >= 0 and end > start:
        try:
            data = json.loads(content[start : end + 1])
        except json.JSONDecodeError as exc:
            raise LLMClientError("Failed to parse JSON draft.") from exc
        if isinstance(data, dict):
            return data
    raise LLMClientError("Failed to parse JSON draft.")
