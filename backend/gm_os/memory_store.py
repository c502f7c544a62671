from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from db import SessionLocal
from gm_os.memory import empty_memory_state
from models import NarrativeMemory

logger = logging.getLogger(__name__)

SESSION_KEY_LIMIT = 120


class MemoryStoreError(RuntimeError):
    pass


def load_memory_state(session_key: str) -> dict:
    key = _session_key(session_key)
    try:
        with SessionLocal() as db:
            record = (
                db.query(NarrativeMemory)
                .filter(NarrativeMemory.session_key == key)
                .first()
            )
            if record is None:
                return empty_memory_state()
            return {
                "memory": {
                    "shortTerm": _entries(record.short_term_json),
                    "longTerm": _entries(record.long_term_json),
                }
            }
    except SQLAlchemyError as exc:
        logger.warning("Failed to load narrative memory for %s: %s", key, exc)
        raise MemoryStoreError("Narrative memory unavailable.") from exc


def save_memory_state(session_key: str, state: dict) -> None:
    key = _session_key(session_key)
    memory = state.get("memory") if isinstance(state, dict) else None
    memory = memory if isinstance(memory, dict) else {}
    try:
        with SessionLocal() as db:
            record = (
                db.query(NarrativeMemory)
                .filter(NarrativeMemory.session_key == key)
                .first()
            )
            if record is None:
                record = NarrativeMemory(session_key=key)
                db.add(record)
            record.short_term_json = _entries(memory.get("shortTerm"))
            record.long_term_json = _entries(memory.get("longTerm"))
            db.commit()
    except SQLAlchemyError as exc:
        logger.warning("Failed to save narrative memory for %s: %s", key, exc)
        raise MemoryStoreError("Narrative memory unavailable.") from exc


def _session_key(value: str) -> str:
    key = str(value or "").strip()
    if not key:
        raise ValueError("Session key is required.")
    return key[:SESSION_KEY_LIMIT]


def _entries(value) -> list:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]
