"""
Tasseo Engine - Interpretation Service

Model-backed implementations of the pipeline collaborators:

    VisionInterpreter.first_stage   image -> IntermediateResult (vision model, JSON)
    VisionInterpreter.second_stage  IntermediateResult -> persona text (text model)
    VisionInterpreter.classify      image -> ValidationResult (vision model, JSON)
    VisionInterpreter.write         personalized rejection text
    VisionInterpreter.reply         free-form chat answer

Malformed model JSON is raised as TransientError so the in-attempt retry asks
again.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Optional

from pydantic import ValidationError

from tasseo.clients.llm import OpenRouterClient
from tasseo.config import Settings, get_settings
from tasseo.core.errors import ERR_VENDOR_MODEL, TransientError
from tasseo.models import Facet, IntermediateResult, Interpretation, Persona, ValidationResult

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"ru": "Russian", "en": "English", "zh": "Simplified Chinese"}

VISION_PROMPT = (
    "You are looking at a photo of a coffee cup after the coffee was drunk. "
    "Describe the shapes formed by the grounds. Answer with a JSON object: "
    '{"description": "<what the grounds look like>", "symbols": ["<symbol>", ...]}'
)

CLASSIFIER_PROMPT = (
    "Decide whether this photo shows coffee grounds in a cup or on a saucer. "
    "Answer with a JSON object: "
    '{"is_valid": true|false, "category": "<what the photo shows>", '
    '"confidence": <0..1>, "description": "<one sentence>"}'
)

PERSONA_PROMPTS = {
    Persona.ARINA.value: (
        "You are Arina, a warm and practical coffee-grounds reader. "
        "Speak kindly, give grounded advice, avoid fatalism."
    ),
    Persona.CASSANDRA.value: (
        "You are Cassandra, a mystical oracle. Speak in vivid images and "
        "prophetic tone, but stay supportive."
    ),
}

FACET_FOCUS = {
    Facet.LOVE.value: "love and relationships",
    Facet.CAREER.value: "career and work",
    Facet.MONEY.value: "money and material wellbeing",
    Facet.HEALTH.value: "health and energy",
    Facet.FAMILY.value: "family and home",
    Facet.SPIRITUAL.value: "spiritual growth",
    Facet.ALL.value: "every area of life: love, career, money, health, family and spirit",
}


def _language(language: str) -> str:
    return LANGUAGE_NAMES.get(language, LANGUAGE_NAMES["ru"])


def _image_message(prompt: str, image_bytes: bytes) -> list[dict[str, Any]]:
    encoded = base64.b64encode(image_bytes).decode("ascii")
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:image/jpeg;base64,{encoded}"}},
            ],
        }
    ]


def _parse_json(text: str, model: str) -> dict[str, Any]:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise TransientError(f"{model} returned invalid JSON: {exc}", error_code=ERR_VENDOR_MODEL) from exc
    if not isinstance(data, dict):
        raise TransientError(f"{model} returned non-object JSON", error_code=ERR_VENDOR_MODEL)
    return data


class VisionInterpreter:
    def __init__(self, client: OpenRouterClient, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._client = client
        self._vision_model = settings.MODEL_VISION
        self._interpretation_model = settings.MODEL_INTERPRETATION
        self._chat_model = settings.MODEL_CHAT

    async def first_stage(self, image_bytes: bytes) -> IntermediateResult:
        completion = await self._client.complete(
            self._vision_model,
            _image_message(VISION_PROMPT, image_bytes),
            max_tokens=800,
            temperature=0.3,
            json_mode=True,
        )
        data = _parse_json(completion.text, completion.model)
        data.setdefault("model", completion.model)
        data.setdefault("tokens_used", completion.tokens_used)
        try:
            return IntermediateResult.model_validate(data)
        except ValidationError as exc:
            raise TransientError(f"vision output rejected: {exc}", error_code=ERR_VENDOR_MODEL) from exc

    async def second_stage(
        self,
        intermediate: IntermediateResult,
        persona: str,
        facet: str,
        language: str,
        user_name: Optional[str] = None,
    ) -> Interpretation:
        system = PERSONA_PROMPTS.get(persona, PERSONA_PROMPTS[Persona.ARINA.value])
        addressee = f" The reader's name is {user_name}." if user_name else ""
        user = (
            f"Grounds description: {intermediate.description}\n"
            f"Symbols: {', '.join(intermediate.symbols) or 'none'}\n\n"
            f"Give a reading focused on {FACET_FOCUS.get(facet, FACET_FOCUS[Facet.ALL.value])}. "
            f"Write in {_language(language)}.{addressee} "
            "Use plain text with optional <b>bold</b> HTML tags only."
        )
        completion = await self._client.complete(
            self._interpretation_model,
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=2000 if facet == Facet.ALL.value else 1200,
        )
        return Interpretation(
            text=completion.text,
            tokens_used=completion.tokens_used + intermediate.tokens_used,
            model=completion.model,
        )

    async def classify(self, image_bytes: bytes) -> ValidationResult:
        completion = await self._client.complete(
            self._vision_model,
            _image_message(CLASSIFIER_PROMPT, image_bytes),
            max_tokens=200,
            temperature=0.0,
            json_mode=True,
        )
        data = _parse_json(completion.text, completion.model)
        try:
            return ValidationResult.model_validate(data)
        except ValidationError as exc:
            raise TransientError(f"classifier output rejected: {exc}", error_code=ERR_VENDOR_MODEL) from exc

    async def write(self, description: str, language: str, user_name: Optional[str] = None) -> str:
        name = user_name or "friend"
        completion = await self._client.complete(
            self._chat_model,
            [
                {"role": "system", "content": PERSONA_PROMPTS[Persona.ARINA.value]},
                {
                    "role": "user",
                    "content": (
                        f"{name} sent a photo that is not coffee grounds ({description}). "
                        f"In two short friendly sentences in {_language(language)}, explain "
                        "that you need a photo of the cup with grounds, taken from above."
                    ),
                },
            ],
            max_tokens=200,
        )
        return completion.text

    async def reply(
        self,
        identity: int,
        text: str,
        language: str,
        history: Optional[list[dict[str, Any]]] = None,
    ) -> Interpretation:
        conversation = [
            {"role": row["role"], "content": row["content"]}
            for row in history or []
            if row.get("role") in ("user", "assistant") and row.get("content")
        ]
        completion = await self._client.complete(
            self._chat_model,
            [
                {
                    "role": "system",
                    "content": PERSONA_PROMPTS[Persona.ARINA.value]
                    + f" Answer in {_language(language)}.",
                },
                *conversation,
                {"role": "user", "content": text},
            ],
            max_tokens=1000,
        )
        logger.debug("chat_reply_generated identity=%s tokens=%s", identity, completion.tokens_used)
        return Interpretation(text=completion.text, tokens_used=completion.tokens_used, model=completion.model)
