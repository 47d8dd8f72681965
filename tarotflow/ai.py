"""External AI capability used by the reading flow.

``OpenAIReadingService`` talks to the OpenAI Responses API using stored
prompts; ``FallbackReadingService`` answers from the card catalog when no
API key is configured.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, Type, TypeVar

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from tarotflow.config import PROMPT_ENV_VARS, Settings
from tarotflow.deck import get_card
from tarotflow.models import (
    CardDraw,
    Category,
    ClarificationCard,
    ClarificationResult,
    Explanation,
    IntentAssessment,
    InterpretedCard,
    ReadingResult,
    SpreadPosition,
    SpreadSelection,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

DEFAULT_MAX_ATTEMPTS = 2


class AIServiceError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ReadingAI(Protocol):
    async def assess_intent(
        self, user_message: str, previous_response_id: Optional[str] = None
    ) -> IntentAssessment: ...

    async def generate_spread(
        self, intent_summary: str, timeframe: Optional[str] = None
    ) -> SpreadSelection: ...

    async def generate_reading(
        self, intent_summary: str, cards: List[CardDraw], hidden_concern: Optional[str] = None
    ) -> ReadingResult: ...

    async def handle_clarification(
        self, question: str, cards: List[CardDraw], previous_response_id: Optional[str] = None
    ) -> ClarificationResult: ...

    async def request_explanation(
        self, highlighted_text: str, previous_response_id: Optional[str] = None
    ) -> Explanation: ...


def _reading_card_payload(card: CardDraw) -> Dict[str, Any]:
    return {
        "cardId": card.card_id,
        "card": card.name,
        "reversed": card.reversed,
        "promptRole": card.prompt_role,
        "label": card.label,
    }


def _clarification_card_payload(card: CardDraw) -> Dict[str, Any]:
    return {
        "cardId": card.card_id,
        "name": card.name,
        "reversed": card.reversed,
        "promptRole": card.prompt_role,
        "label": card.label,
    }


def extract_output_text(response: Any) -> str:
    """Join the assistant ``output_text`` blocks of a Responses API result.

    Raises:
        AIServiceError: The model returned a refusal block.
    """
    parts: List[str] = []
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "message" or getattr(item, "role", None) != "assistant":
            continue
        for block in getattr(item, "content", None) or []:
            block_type = getattr(block, "type", None)
            if block_type == "refusal":
                raise AIServiceError(f"Model refused to respond: {getattr(block, 'refusal', '')}")
            if block_type == "output_text" and getattr(block, "text", None):
                parts.append(block.text)
    return "".join(parts)


class OpenAIReadingService:
    """Stored-prompt client for the OpenAI Responses API.

    Each call sends ``prompt={"id": ...}``, a JSON-encoded input and, where
    there is one, the previous response id so the model keeps context.

    Args:
        prompt_ids: Stored prompt id per call kind (intent, spread, reading,
            clarification, explanation)
        model: Model name
        client: Preconfigured ``AsyncOpenAI`` (tests pass a fake)
        max_attempts: Attempts for calls whose output must be JSON
    """

    def __init__(
        self,
        prompt_ids: Mapping[str, str],
        model: str = "gpt-4o-mini",
        client: Optional[Any] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        missing = [kind for kind in PROMPT_ENV_VARS if not prompt_ids.get(kind)]
        if missing:
            raise AIServiceError(f"Missing stored prompt ids for: {', '.join(missing)}")
        self.prompt_ids = dict(prompt_ids)
        self.model = model
        self.max_attempts = max(1, max_attempts)
        if client is None:
            kwargs: Dict[str, Any] = {}
            if api_key:
                kwargs["api_key"] = api_key
            if base_url:
                kwargs["base_url"] = base_url
            if timeout:
                kwargs["timeout"] = timeout
            client = AsyncOpenAI(**kwargs)
        self._client = client

    async def _call(
        self, kind: str, input_text: str, previous_response_id: Optional[str] = None
    ) -> Tuple[str, str]:
        request: Dict[str, Any] = {
            "model": self.model,
            "input": input_text,
            "prompt": {"id": self.prompt_ids[kind]},
        }
        if previous_response_id:
            request["previous_response_id"] = previous_response_id

        logger.info("Calling Responses API", extra={"kind": kind, "chained": bool(previous_response_id)})
        try:
            response = await self._client.responses.create(**request)
        except openai.APIStatusError as e:
            raise AIServiceError(f"{kind} request failed: {e.message}", status=e.status_code) from e
        except openai.OpenAIError as e:
            raise AIServiceError(f"{kind} request failed: {e}") from e

        content = extract_output_text(response)
        if not content:
            raise AIServiceError(f"No content in {kind} response")
        return content, getattr(response, "id", "") or ""

    async def _call_json(
        self,
        kind: str,
        input_text: str,
        model_cls: Type[ModelT],
        previous_response_id: Optional[str] = None,
    ) -> ModelT:
        for attempt in range(1, self.max_attempts + 1):
            content, response_id = await self._call(kind, input_text, previous_response_id)
            try:
                data = json.loads(content)
            except json.JSONDecodeError as e:
                logger.warning(
                    "Response was not valid JSON",
                    extra={"kind": kind, "attempt": attempt, "max_attempts": self.max_attempts},
                )
                if attempt == self.max_attempts:
                    raise AIServiceError(f"{kind} response was not valid JSON: {e}") from e
                continue
            if not isinstance(data, dict):
                raise AIServiceError(f"{kind} response must be a JSON object")
            try:
                return model_cls.model_validate({**data, "responseId": response_id})
            except ValidationError as e:
                raise AIServiceError(f"{kind} response failed validation: {e}") from e
        raise AIServiceError(f"{kind} request made no attempts")

    async def assess_intent(self, user_message, previous_response_id=None):
        return await self._call_json("intent", user_message, IntentAssessment, previous_response_id)

    async def generate_spread(self, intent_summary, timeframe=None):
        payload: Dict[str, Any] = {"intentSummary": intent_summary}
        if timeframe:
            payload["timeframe"] = timeframe
        return await self._call_json("spread", json.dumps(payload), SpreadSelection)

    async def generate_reading(self, intent_summary, cards, hidden_concern=None):
        payload = {
            "intentSummary": intent_summary,
            "cards": [_reading_card_payload(c) for c in cards],
            "hiddenConcern": hidden_concern,
        }
        return await self._call_json("reading", json.dumps(payload), ReadingResult)

    async def handle_clarification(self, question, cards, previous_response_id=None):
        payload = {
            "clarificationQuestion": question,
            "cards": [_clarification_card_payload(c) for c in cards],
        }
        content, response_id = await self._call("clarification", json.dumps(payload), previous_response_id)
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            logger.warning("Clarification reply was plain text; treating it as a final answer")
            return ClarificationResult(synthesis=content, is_final_answer=True, response_id=response_id)
        if not isinstance(data, dict):
            return ClarificationResult(synthesis=content, is_final_answer=True, response_id=response_id)
        try:
            result = ClarificationResult.model_validate({**data, "responseId": response_id})
        except ValidationError as e:
            raise AIServiceError(f"clarification response failed validation: {e}") from e
        if not result.synthesis.strip():
            result.synthesis = content
        return result

    async def request_explanation(self, highlighted_text, previous_response_id=None):
        payload = {"highlightedText": highlighted_text}
        content, response_id = await self._call("explanation", json.dumps(payload), previous_response_id)
        return Explanation(content=content, response_id=response_id)


_CLARIFY_WORDS = ("draw", "another card", "more cards", "clarify", "clarification")

_CATEGORY_WORDS: Dict[Category, Tuple[str, ...]] = {
    "love": (
        "love", "relationship", "partner", "boyfriend", "girlfriend", "husband", "wife", "dating", "romance", "marriage",
    ),
    "career": ("career", "job", "work", "boss", "promotion", "interview", "business", "colleague", "colleagues"),
    "finance": (
        "money", "finances", "financial", "debt", "salary", "savings", "invest", "investment", "rent", "budget",
    ),
    "health": ("health", "healthy", "illness", "sick", "body", "sleep", "healing", "diet", "exercise"),
    "spiritual": ("spiritual", "spirit", "soul", "purpose", "faith", "meditation", "intuition"),
}


def detect_category(text: Optional[str]) -> Optional[Category]:
    """Life area a question is about, judged from its words; None for open questions."""
    words = set(re.findall(r"[a-z]+", (text or "").lower()))
    for category, markers in _CATEGORY_WORDS.items():
        if words.intersection(markers):
            return category
    return None


class FallbackReadingService:
    """Offline reader built from the card catalog. Deterministic for a given input."""

    min_intent_words = 3

    def __init__(self):
        self._ids = itertools.count(1)

    def _response_id(self) -> str:
        return f"offline-{next(self._ids)}"

    async def assess_intent(self, user_message, previous_response_id=None):
        text = (user_message or "").strip()
        if len(text.split()) < self.min_intent_words:
            return IntentAssessment(
                status="unclear",
                assistant_message="Could you tell me more about what you want to know?",
                response_id=self._response_id(),
            )
        return IntentAssessment(
            status="clear",
            summary=text,
            assistant_message="",
            response_id=self._response_id(),
        )

    async def generate_spread(self, intent_summary, timeframe=None):
        return SpreadSelection(
            spread_type="past-present-future",
            spread_description="Three cards tracing how the situation is moving.",
            reasoning="A simple timeline suits an open question.",
            positions=[
                SpreadPosition(key="past", label="Past", prompt_role="What led to this situation"),
                SpreadPosition(key="present", label="Present", prompt_role="What is happening now"),
                SpreadPosition(key="future", label="Future", prompt_role="Where this is heading"),
            ],
            response_id=self._response_id(),
        )

    @staticmethod
    def _interpret(card: CardDraw, category: Optional[Category] = None) -> str:
        data = get_card(card.card_id)
        orientation = "reversed" if card.reversed else "upright"
        keywords = ", ".join(data.keywords_for(card.reversed))
        where = f" in the {card.label} position" if card.label else ""
        text = f"{data.name} ({orientation}){where}: {data.meaning(card.reversed)} Themes: {keywords}."
        focus = data.category_meaning(category, card.reversed) if category else ""
        if focus:
            text += f" For {category}: {focus}"
        return text

    async def generate_reading(self, intent_summary, cards, hidden_concern=None):
        category = detect_category(intent_summary)
        interpreted = [
            InterpretedCard(
                card_id=c.card_id,
                name=c.name,
                interpretation=self._interpret(c, category),
                label=c.label,
            )
            for c in cards
        ]
        names = ", ".join(c.name for c in cards)
        return ReadingResult(
            cards=interpreted,
            synthesis=f"Taken together, {names} speak to: {intent_summary}",
            response_id=self._response_id(),
        )

    async def handle_clarification(self, question, cards, previous_response_id=None):
        lowered = (question or "").lower()
        if not cards and any(word in lowered for word in _CLARIFY_WORDS):
            return ClarificationResult(
                synthesis="Let's draw one more card to clarify this.",
                is_final_answer=False,
                cards=[ClarificationCard(label="Clarification", prompt_role=f"Sheds light on: {question}")],
                response_id=self._response_id(),
            )
        category = detect_category(question)
        answered = [
            ClarificationCard(
                card_id=c.card_id,
                name=c.name,
                prompt_role=c.prompt_role,
                interpretation=self._interpret(c, category),
                label=c.label,
                reversed=c.reversed,
            )
            for c in cards
        ]
        return ClarificationResult(
            synthesis="Reflect on how the cards answer your question in light of your situation.",
            is_final_answer=True,
            cards=answered,
            response_id=self._response_id(),
        )

    async def request_explanation(self, highlighted_text, previous_response_id=None):
        return Explanation(
            content=f'"{highlighted_text}" points back to the central themes of your reading.',
            response_id=self._response_id(),
        )


def create_reading_service(settings: Settings) -> ReadingAI:
    if not settings.ai_enabled:
        logger.info("No OpenAI API key configured; using offline reading service")
        return FallbackReadingService()
    return OpenAIReadingService(
        prompt_ids=settings.prompt_ids,
        model=settings.openai_model,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout,
    )
