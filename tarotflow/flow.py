"""Text reading flow: a finite-state machine over the reading phases.

idle -> intentCollecting -> ritualPreparing -> shuffling
     -> picking(i) <-> cardRevealing(card, i) -> waitingBeforeReading -> followUps

From followUps the AI may ask for 1-3 extra cards:
followUps -> clarificationPicking(i) <-> clarificationCardRevealing(card, i)
          -> clarificationProcessing -> followUps

Every state is a small frozen dataclass carrying only its own data. An
operation called from a state that does not accept it raises
``InvalidTransition``. Failed AI calls never advance the state; they set
``flow.error`` and call ``notify``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from tarotflow.ai import AIServiceError, ReadingAI
from tarotflow.bridge import InvalidCardError
from tarotflow.deck import ShuffledDeck, create_card_draw, get_card, is_known_card
from tarotflow.models import (
    CardDraw,
    ChatMessage,
    ChatSession,
    ClarificationCard,
    ClarificationResult,
    ExplanationMessageData,
    ReadingMainData,
    SpreadPosition,
    SpreadSelection,
)

logger = logging.getLogger(__name__)

CLARIFICATION_DRAW_OFFSET = 1000
MAX_CLARIFICATION_CARDS = 3

APOLOGY_MESSAGE = "I apologize, but I encountered an error. Please try again."
INTENT_FALLBACK_PROMPT = "Could you tell me more about what you want to know?"


# -- states -----------------------------------------------------------------

@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class IntentCollecting:
    pass


@dataclass(frozen=True)
class RitualPreparing:
    pass


@dataclass(frozen=True)
class Shuffling:
    pass


@dataclass(frozen=True)
class Picking:
    position_index: int


@dataclass(frozen=True)
class CardRevealing:
    card_id: str
    position_index: int


@dataclass(frozen=True)
class WaitingBeforeReading:
    pass


@dataclass(frozen=True)
class FollowUps:
    pass


@dataclass(frozen=True)
class ClarificationPicking:
    position_index: int


@dataclass(frozen=True)
class ClarificationCardRevealing:
    card_id: str
    position_index: int


@dataclass(frozen=True)
class ClarificationProcessing:
    pass


@dataclass(frozen=True)
class Closed:
    pass


FlowState = Union[
    Idle,
    IntentCollecting,
    RitualPreparing,
    Shuffling,
    Picking,
    CardRevealing,
    WaitingBeforeReading,
    FollowUps,
    ClarificationPicking,
    ClarificationCardRevealing,
    ClarificationProcessing,
    Closed,
]

# Spread generation guard
SPREAD_IDLE = "idle"
SPREAD_IN_FLIGHT = "in_flight"
SPREAD_DONE = "done"


class InvalidTransition(RuntimeError):
    pass


def timestamp_seed() -> str:
    """Millisecond timestamp, the default deck seed."""
    return str(int(time.time() * 1000))


class ReadingFlow:
    """Drives one text reading session.

    Args:
        ai: External AI capability
        notify: Called with a short user-facing notice when a step fails
        seed_factory: Produces the deck seed for a new session
    """

    def __init__(
        self,
        ai: ReadingAI,
        notify: Optional[Callable[[str], None]] = None,
        seed_factory: Callable[[], str] = timestamp_seed,
    ):
        self.ai = ai
        self._notify = notify
        self._seed_factory = seed_factory
        self.state: FlowState = Idle()
        self.session: Optional[ChatSession] = None
        self.deck: Optional[ShuffledDeck] = None
        self.error: Optional[str] = None
        self.clarification_requests: List[ClarificationCard] = []
        self.clarification_draws: List[CardDraw] = []
        self._clarification_question: str = ""
        self._spread_status = SPREAD_IDLE
        self._spread_task: Optional[asyncio.Task] = None
        self._reading_in_flight = False

    # -- helpers ------------------------------------------------------------

    @property
    def spread(self) -> Optional[SpreadSelection]:
        return self.session.spread if self.session else None

    @property
    def spread_status(self) -> str:
        return self._spread_status

    def _set_state(self, state: FlowState) -> None:
        self.state = state
        logger.info(
            "Flow state changed",
            extra={"state": type(state).__name__, "seed": self.session.seed if self.session else None},
        )

    def _require(self, operation: str, *states: type):
        if not isinstance(self.state, states):
            raise InvalidTransition(f"{operation} is not allowed in state {type(self.state).__name__}")
        return self.state

    def _still(self, session: ChatSession, *states: type) -> bool:
        """True if nothing replaced the session or left ``states`` during an await."""
        return self.session is session and isinstance(self.state, states)

    def _fail(self, exc: Exception, notice: str) -> None:
        state = type(self.state).__name__
        if isinstance(exc, AIServiceError):
            logger.warning(f"{notice} ({exc})", extra={"state": state, "status": exc.status})
        else:
            logger.error(notice, extra={"state": state}, exc_info=exc)
        self.error = notice
        if self._notify is not None:
            self._notify(notice)

    def clear_error(self) -> None:
        self.error = None

    def _positions(self) -> List[SpreadPosition]:
        if self.session is None or self.session.spread is None:
            raise InvalidTransition("No spread has been generated for this session")
        return self.session.spread.positions

    def current_position(self) -> Optional[SpreadPosition]:
        if isinstance(self.state, (Picking, CardRevealing)):
            positions = self._positions()
            if 0 <= self.state.position_index < len(positions):
                return positions[self.state.position_index]
        return None

    def offered_cards(self) -> List[str]:
        """Cards the user can pick from right now (drawn cards are gone)."""
        if self.deck is None or not isinstance(self.state, (Picking, ClarificationPicking)):
            return []
        return self.deck.remaining()

    def _take_card(self, card_id: str) -> None:
        if not is_known_card(card_id):
            raise InvalidCardError(f"Invalid card ID: {card_id}")
        if self.deck is None or not self.deck.remove(card_id):
            raise InvalidCardError(f"Card {card_id} is not in the deck")

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> ChatSession:
        self._require("start", Idle)
        self.session = ChatSession(seed=self._seed_factory())
        self.deck = None
        self.error = None
        self._spread_status = SPREAD_IDLE
        self._set_state(IntentCollecting())
        return self.session

    def close(self) -> None:
        if self._spread_task is not None and not self._spread_task.done():
            self._spread_task.cancel()
        self._set_state(Closed())

    async def aclose(self) -> None:
        task = self._spread_task
        self.close()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def reset(self) -> None:
        if self._spread_task is not None and not self._spread_task.done():
            self._spread_task.cancel()
        self._spread_task = None
        self._spread_status = SPREAD_IDLE
        self._reading_in_flight = False
        self.session = None
        self.deck = None
        self.error = None
        self.clarification_requests = []
        self.clarification_draws = []
        self._clarification_question = ""
        self._set_state(Idle())

    # -- intent -------------------------------------------------------------

    async def submit_intent(self, message: str) -> FlowState:
        """Assess a user message. A clear intent moves straight to the ritual.

        The spread is requested in the background at the same moment so it
        is usually ready by the time shuffling finishes.
        """
        self._require("submit_intent", IntentCollecting)
        session = self.session
        previous = session.messages[-1].response_id if session.messages else None
        session.add_message("user", message)
        self.error = None

        try:
            assessment = await self.ai.assess_intent(message, previous)
        except Exception as e:
            self._fail(e, "Failed to process your message. Please try again.")
            if self._still(session, IntentCollecting):
                session.add_message("assistant", APOLOGY_MESSAGE)
            return self.state

        if not self._still(session, IntentCollecting):
            return self.state

        if not assessment.is_clear:
            session.add_message(
                "assistant",
                assessment.assistant_message or INTENT_FALLBACK_PROMPT,
                response_id=assessment.response_id,
            )
            return self.state

        session.intention = assessment.summary or message
        session.topic = assessment.topic
        session.hidden_concern = assessment.hidden_concern
        session.timeframe = assessment.timeframe
        self._set_state(RitualPreparing())
        self._launch_spread(session, eager=True)
        return self.state

    # -- spread -------------------------------------------------------------

    def _launch_spread(self, session: ChatSession, eager: bool) -> None:
        if self._spread_status != SPREAD_IDLE:
            return
        self._spread_status = SPREAD_IN_FLIGHT
        self._spread_task = asyncio.create_task(self._run_spread(session, eager))

    async def _run_spread(self, session: ChatSession, eager: bool) -> None:
        try:
            spread = await self.ai.generate_spread(session.intention, session.timeframe or session.topic)
        except Exception as e:
            if self.session is not session:
                return
            self._spread_status = SPREAD_IDLE
            if eager:
                logger.warning(
                    "Early spread generation failed; retrying after shuffling",
                    extra={"seed": session.seed, "error": str(e)},
                )
            else:
                self._fail(e, "Failed to prepare your reading. Please try again.")
            return

        if self.session is not session:
            return
        session.spread = spread
        self.deck = ShuffledDeck.from_seed(session.seed)
        self._spread_status = SPREAD_DONE
        logger.info(
            "Spread ready",
            extra={"seed": session.seed, "positions": len(spread.positions), "eager": eager},
        )

    def complete_ritual(self) -> FlowState:
        self._require("complete_ritual", RitualPreparing)
        self._set_state(Shuffling())
        return self.state

    async def complete_shuffling(self) -> FlowState:
        """Move to picking once a spread exists, generating it if still needed."""
        self._require("complete_shuffling", Shuffling)
        session = self.session
        self.error = None

        if self._spread_status == SPREAD_IN_FLIGHT and self._spread_task is not None:
            await asyncio.shield(self._spread_task)
        if self._spread_status == SPREAD_IDLE and self._still(session, Shuffling):
            self._launch_spread(session, eager=False)
            await asyncio.shield(self._spread_task)

        if self._still(session, Shuffling) and self._spread_status == SPREAD_DONE:
            self._set_state(Picking(0))
        return self.state

    # -- main spread picking ------------------------------------------------

    def select_card(self, card_id: str) -> FlowState:
        state = self._require("select_card", Picking)
        self._take_card(card_id)
        self.session.selected_cards[state.position_index] = card_id
        logger.info("Card selected", extra={"card_id": card_id, "position": state.position_index})
        self._set_state(CardRevealing(card_id=card_id, position_index=state.position_index))
        return self.state

    def revealed_card(self) -> Optional[CardDraw]:
        """The card being revealed, with its fixed orientation."""
        if isinstance(self.state, CardRevealing):
            position = self._positions()[self.state.position_index]
            return create_card_draw(
                self.state.card_id,
                self.session.seed,
                self.state.position_index,
                position.label,
                position.prompt_role,
            )
        if isinstance(self.state, ClarificationCardRevealing):
            return self.clarification_draws[self.state.position_index]
        return None

    async def reveal_next(self) -> FlowState:
        state = self._require("reveal_next", CardRevealing)
        if state.position_index + 1 < len(self._positions()):
            self._set_state(Picking(state.position_index + 1))
            return self.state
        self._set_state(WaitingBeforeReading())
        await self._generate_reading()
        return self.state

    async def retry_reading(self) -> FlowState:
        self._require("retry_reading", WaitingBeforeReading)
        if self._reading_in_flight:
            raise InvalidTransition("A reading is already being generated")
        await self._generate_reading()
        return self.state

    def _spread_draws(self) -> List[CardDraw]:
        session = self.session
        positions = self._positions()
        return [
            create_card_draw(
                card_id,
                session.seed,
                index,
                positions[index].label,
                positions[index].prompt_role,
            )
            for index, card_id in sorted(session.selected_cards.items())
        ]

    async def _generate_reading(self) -> None:
        session = self.session
        draws = self._spread_draws()
        self.error = None
        self._reading_in_flight = True
        try:
            result = await self.ai.generate_reading(session.intention, draws, session.hidden_concern)
        except Exception as e:
            self._fail(e, "Failed to generate your reading. Please try again.")
            return
        finally:
            self._reading_in_flight = False

        if not self._still(session, WaitingBeforeReading):
            return
        interpretations = {card.card_id: card.interpretation for card in result.cards}
        reading = ReadingMainData(
            cards=[d.model_copy(update={"interpretation": interpretations.get(d.card_id, "")}) for d in draws],
            synthesis=result.synthesis,
        )
        session.reading = reading
        session.add_message(
            "assistant",
            result.synthesis,
            kind="reading",
            reading=reading,
            response_id=result.response_id,
        )
        self._set_state(FollowUps())

    # -- follow-ups ---------------------------------------------------------

    async def ask_follow_up(self, message: str) -> FlowState:
        """Send a follow-up question; the AI may answer or ask for more cards."""
        self._require("ask_follow_up", FollowUps)
        session = self.session
        previous = session.last_response_id()
        session.add_message("user", message)
        self.error = None

        try:
            result = await self.ai.handle_clarification(message, [], previous)
        except Exception as e:
            self._fail(e, "Failed to process your question. Please try again.")
            if self._still(session, FollowUps):
                session.add_message("assistant", APOLOGY_MESSAGE)
            return self.state

        if not self._still(session, FollowUps):
            return self.state

        if not result.is_final_answer and result.cards:
            requests = list(result.cards[:MAX_CLARIFICATION_CARDS])
            if len(result.cards) > MAX_CLARIFICATION_CARDS:
                logger.warning(
                    "Clarification asked for too many cards; keeping the first three",
                    extra={"requested": len(result.cards)},
                )
            self.clarification_requests = requests
            self.clarification_draws = []
            self._clarification_question = message
            self._set_state(ClarificationPicking(0))
            return self.state

        session.add_message(
            "assistant",
            result.synthesis or "Here is additional insight.",
            response_id=result.response_id,
        )
        return self.state

    def select_clarification_card(self, card_id: str) -> FlowState:
        state = self._require("select_clarification_card", ClarificationPicking)
        request = self.clarification_requests[state.position_index]
        self._take_card(card_id)
        draw = create_card_draw(
            card_id,
            self.session.seed,
            CLARIFICATION_DRAW_OFFSET + state.position_index,
            request.label or "Clarification",
            request.prompt_role,
        )
        self.clarification_draws.append(draw)
        logger.info("Clarification card selected", extra={"card_id": card_id, "position": state.position_index})
        self._set_state(ClarificationCardRevealing(card_id=card_id, position_index=state.position_index))
        return self.state

    async def reveal_next_clarification(self) -> FlowState:
        state = self._require("reveal_next_clarification", ClarificationCardRevealing)
        if state.position_index + 1 < len(self.clarification_requests):
            self._set_state(ClarificationPicking(state.position_index + 1))
            return self.state
        self._set_state(ClarificationProcessing())
        await self._process_clarification()
        return self.state

    def _answer_card(self, card: ClarificationCard) -> CardDraw:
        drawn = next((d for d in self.clarification_draws if d.card_id == card.card_id), None)
        if drawn is not None:
            update = {"interpretation": card.interpretation}
            if card.reversed is not None:
                update["reversed"] = card.reversed
            return drawn.model_copy(update=update)
        reversed_ = bool(card.reversed)
        general = get_card(card.card_id).meaning(reversed_) if is_known_card(card.card_id) else ""
        return CardDraw(
            card_id=card.card_id,
            name=card.name or card.card_id,
            reversed=reversed_,
            label=card.label,
            prompt_role=card.prompt_role,
            interpretation=card.interpretation,
            general_meaning=general,
        )

    def _append_clarification_answer(self, result: ClarificationResult) -> ChatMessage:
        session = self.session
        if not result.cards:
            return session.add_message(
                "assistant",
                result.synthesis or "Here is the interpretation with the clarification cards.",
                response_id=result.response_id,
            )
        cards = [self._answer_card(c) for c in result.cards]
        if len(cards) == 1:
            return session.add_message(
                "assistant",
                result.synthesis,
                kind="card",
                card=cards[0],
                response_id=result.response_id,
            )
        return session.add_message(
            "assistant",
            result.synthesis,
            kind="reading",
            reading=ReadingMainData(cards=cards, synthesis=result.synthesis),
            response_id=result.response_id,
        )

    async def _process_clarification(self) -> None:
        session = self.session
        question = self._clarification_question or "Please interpret these clarification cards."
        self.error = None
        try:
            result = await self.ai.handle_clarification(
                question, list(self.clarification_draws), session.last_response_id()
            )
        except Exception as e:
            self._fail(e, "Failed to interpret clarification cards. Please try again.")
            if self._still(session, ClarificationProcessing):
                session.add_message("assistant", APOLOGY_MESSAGE)
        else:
            if self._still(session, ClarificationProcessing):
                self._append_clarification_answer(result)

        if self._still(session, ClarificationProcessing):
            self.clarification_requests = []
            self._clarification_question = ""
            self._set_state(FollowUps())

    async def request_explanation(self, text: str) -> Optional[ChatMessage]:
        """Ask the AI to expand on a highlighted piece of the reading."""
        self._require("request_explanation", FollowUps)
        session = self.session
        previous = session.last_response_id()
        if previous is None:
            logger.warning("Explanation requested before any AI reply")
            return None
        self.error = None
        try:
            explanation = await self.ai.request_explanation(text, previous)
        except Exception as e:
            self._fail(e, "Failed to get explanation. Please try again.")
            return None
        if self.session is not session:
            return None
        return session.add_message(
            "assistant",
            explanation.content,
            kind="explanation",
            explanation=ExplanationMessageData(source_text=text, explanation=explanation.content),
            response_id=explanation.response_id,
        )
