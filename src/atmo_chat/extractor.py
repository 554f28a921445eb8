from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from loguru import logger

from atmo_chat.errors import ExtractionError
from atmo_chat.provider import LLMProvider
from atmo_chat.store.models import ENTITY_TYPES, ChatMessage
from atmo_chat.system_prompt import build_system_prompt


@dataclass
class ExtractionContext:
    owner_id: str
    message: str
    history: list[ChatMessage] = field(default_factory=list)
    projects: list[dict] = field(default_factory=list)
    user_name: str = "User"


@dataclass
class Extraction:
    reply: str
    entities: list[tuple[str, dict]] = field(default_factory=list)
    next_steps: list[dict] = field(default_factory=list)


@runtime_checkable
class EntityExtractor(Protocol):
    async def extract(self, context: ExtractionContext) -> Extraction: ...


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block in ``text``, if any.

    Braces inside JSON strings are skipped so a reply that quotes code does
    not end the object early.
    """
    if not text:
        return None
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_extraction(text: str) -> Extraction:
    """Parse raw model output into an ``Extraction``; raises ``ExtractionError``."""
    payload = extract_json_object(text)
    if payload is None:
        raise ExtractionError("Extractor response is missing a JSON payload")
    try:
        parsed = json.loads(payload)
    except ValueError as ex:
        raise ExtractionError(f"Extractor returned an unexpected response format: {ex}") from ex

    if (
        not isinstance(parsed, dict)
        or not isinstance(parsed.get("conversationalResponse"), str)
        or not isinstance(parsed.get("entities"), list)
    ):
        raise ExtractionError("Extractor response is missing required fields")

    entities: list[tuple[str, dict]] = []
    for raw in parsed["entities"]:
        if not isinstance(raw, dict):
            logger.warning(f"Skipping malformed entity candidate: {raw!r}")
            continue
        entity_type = str(raw.get("type", "")).strip().lower()
        data = raw.get("data")
        if entity_type not in ENTITY_TYPES or not isinstance(data, dict):
            logger.warning(f"Skipping entity candidate with type={entity_type!r}")
            continue
        entities.append((entity_type, data))

    next_steps = parsed.get("nextSteps")
    if not isinstance(next_steps, list):
        next_steps = []

    return Extraction(
        reply=parsed["conversationalResponse"],
        entities=entities,
        next_steps=[step for step in next_steps if isinstance(step, dict)],
    )


def _to_provider_messages(history: list[ChatMessage], message: str) -> list[dict]:
    messages = [
        {"role": m.role, "content": m.content}
        for m in history
        if m.role in ("user", "assistant") and m.content
    ]
    # Providers expect the conversation to open with a user turn.
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    messages.append({"role": "user", "content": message})
    return messages


class LlmEntityExtractor:
    """Entity extractor backed by an ``LLMProvider``."""

    def __init__(
        self,
        provider: LLMProvider,
        *,
        model: str,
        max_tokens: int = 2048,
        temperature: float = 0.7,
    ):
        self._provider = provider
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    async def extract(self, context: ExtractionContext) -> Extraction:
        system_prompt = build_system_prompt(context.user_name, context.projects)
        messages = _to_provider_messages(context.history, context.message)
        try:
            text = await self._provider.create_message(
                self._model,
                self._max_tokens,
                self._temperature,
                system_prompt,
                messages,
            )
        except ExtractionError:
            raise
        except Exception as ex:
            raise ExtractionError(f"Extractor call failed: {type(ex).__name__}: {ex}") from ex

        extraction = parse_extraction(text)
        logger.debug(
            f"Extracted {len(extraction.entities)} entities, {len(extraction.next_steps)} next steps "
            f"for owner={context.owner_id}"
        )
        return extraction
