from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Dict, List, Literal, Optional, get_args

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MessageRole = Literal["user", "assistant"]
MessageKind = Literal["text", "reading", "card", "explanation"]
IntentStatus = Literal["clear", "unclear"]
Category = Literal["love", "career", "finance", "health", "spiritual"]

CATEGORIES = get_args(Category)

MAX_SPREAD_POSITIONS = 10


def _now() -> datetime:
    return datetime.now(UTC)


class CamelModel(BaseModel):
    """Snake-case fields that also accept (and dump to) camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Card(BaseModel):
    id: str
    name: str
    keywords: Dict[str, List[str]] = Field(default_factory=dict)
    meanings: Dict[str, str] = Field(default_factory=dict)
    category_meanings: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def meaning(self, reversed_: bool) -> str:
        return self.meanings.get("reversed" if reversed_ else "upright", "")

    def keywords_for(self, reversed_: bool) -> List[str]:
        return list(self.keywords.get("reversed" if reversed_ else "upright", []))

    def category_meaning(self, category: Category, reversed_: bool) -> str:
        """Meaning of the card for one life area, or "" when the data has none."""
        return self.category_meanings.get(category, {}).get("reversed" if reversed_ else "upright", "")


# -- spreads / draws --------------------------------------------------------

class SpreadPosition(CamelModel):
    key: str
    label: str
    prompt_role: str = ""


class SpreadSelection(CamelModel):
    spread_type: str = "custom"
    spread_description: str = ""
    reasoning: str = ""
    positions: List[SpreadPosition] = Field(min_length=1, max_length=MAX_SPREAD_POSITIONS)
    response_id: Optional[str] = None


class CardDraw(CamelModel):
    card_id: str
    name: str
    reversed: bool = False
    position_index: int = 0
    label: str = ""
    prompt_role: str = ""
    interpretation: str = ""
    general_meaning: str = ""


class DrawnCard(CamelModel):
    """A card picked on the voice surface."""

    card_id: str
    card_name: str
    reversed: bool = False
    position_label: str = ""
    prompt_role: str = ""
    position_index: int = 0


class CardRevealState(CamelModel):
    card_id: str
    card_name: str
    reversed: bool
    position_label: str
    position_index: int
    total_positions: int


# -- chat log ---------------------------------------------------------------

class ReadingMainData(CamelModel):
    cards: List[CardDraw] = Field(default_factory=list)
    synthesis: str = ""
    advice: str = ""


class ExplanationMessageData(CamelModel):
    source_text: str
    explanation: str


class ChatMessage(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: MessageRole
    kind: MessageKind = "text"
    content: str = ""
    reading: Optional[ReadingMainData] = None
    card: Optional[CardDraw] = None
    explanation: Optional[ExplanationMessageData] = None
    response_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)


class ChatSession(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    seed: str
    intention: str = ""
    topic: Optional[str] = None
    hidden_concern: Optional[str] = None
    timeframe: Optional[str] = None
    messages: List[ChatMessage] = Field(default_factory=list)
    selected_cards: Dict[int, str] = Field(default_factory=dict)
    spread: Optional[SpreadSelection] = None
    reading: Optional[ReadingMainData] = None
    created_at: datetime = Field(default_factory=_now)

    def add_message(self, role: MessageRole, content: str = "", **data) -> ChatMessage:
        message = ChatMessage(role=role, content=content, **data)
        self.messages.append(message)
        return message

    def assistant_messages(self) -> List[ChatMessage]:
        return [m for m in self.messages if m.role == "assistant"]

    def last_response_id(self) -> Optional[str]:
        """Handle of the most recent assistant message that carries one."""
        for message in reversed(self.messages):
            if message.role == "assistant" and message.response_id:
                return message.response_id
        return None


# -- external AI results ----------------------------------------------------

class IntentAssessment(CamelModel):
    status: IntentStatus = Field(validation_alias=AliasChoices("intentStatus", "status"))
    assistant_message: str = ""
    summary: Optional[str] = Field(default=None, validation_alias=AliasChoices("intentSummary", "summary"))
    hidden_concern: Optional[str] = None
    topic: Optional[str] = None
    timeframe: Optional[str] = None
    response_id: Optional[str] = None

    @property
    def is_clear(self) -> bool:
        return self.status == "clear"


class InterpretedCard(CamelModel):
    card_id: str
    name: str = ""
    interpretation: str = ""
    label: str = ""


class ReadingResult(CamelModel):
    cards: List[InterpretedCard] = Field(default_factory=list)
    synthesis: str = ""
    response_id: Optional[str] = None


class ClarificationCard(CamelModel):
    card_id: str = ""
    name: str = ""
    prompt_role: str = ""
    interpretation: str = ""
    label: str = ""
    reversed: Optional[bool] = None


class ClarificationResult(CamelModel):
    synthesis: str = ""
    is_final_answer: bool = False
    cards: List[ClarificationCard] = Field(default_factory=list)
    response_id: Optional[str] = None


class Explanation(CamelModel):
    content: str
    response_id: Optional[str] = None


# -- voice tools ------------------------------------------------------------

class BatchCardRequest(CamelModel):
    position_label: str
    prompt_role: str = ""


class DrawCardsBatchArgs(CamelModel):
    cards: List[BatchCardRequest] = Field(min_length=1, max_length=MAX_SPREAD_POSITIONS)


class DrawCardSingleArgs(CamelModel):
    position_label: str
    prompt_role: str = ""
    card_number: int = Field(ge=1)
    total_cards: int = Field(ge=1)


class ShowCardArgs(CamelModel):
    card_id: str
    reversed: bool = False


class BeginRitualResult(CamelModel):
    success: bool
    message: str


class DrawCardsBatchResult(CamelModel):
    status: Literal["started"] = "started"
    total_cards: int
    message: str


class DrawCardResult(CamelModel):
    card_id: str
    card_name: str
    reversed: bool


class ShowCardResult(CamelModel):
    success: bool
    card_id: str
    reversed: bool


class WaitForRitualResult(CamelModel):
    success: bool
    message: str
    was_already_complete: bool


class TranscriptMessage(CamelModel):
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=_now)
    agent: Optional[str] = None
