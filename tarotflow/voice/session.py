"""Voice reading session orchestration.

One ``VoiceSessionOrchestrator`` per active voice reading. It owns the
realtime channel, the four agents, the live deck and the bridge primitives
that let agent tool calls wait on the UI.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Callable, List, Optional, Protocol, Sequence, Set

from tarotflow.bridge import CardDisplay, CardDrawBridge, InvalidCardError, RitualGate
from tarotflow.config import Settings
from tarotflow.deck import ShuffledDeck, card_name, is_known_card
from tarotflow.draw import DrawCoordinator, DrawPosition, NoActivePositionError
from tarotflow.flow import timestamp_seed
from tarotflow.models import (
    BatchCardRequest,
    CardRevealState,
    DrawnCard,
    MessageRole,
    SpreadPosition,
    SpreadSelection,
    TranscriptMessage,
)
from tarotflow.voice.agents import AgentName, AgentSpec, build_agents
from tarotflow.voice.errors import ConnectionFailure, VoiceSessionError, classify_connection_error
from tarotflow.voice.tools import VoiceTools

logger = logging.getLogger(__name__)

GREETING = "Hi there"


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class RealtimeTransport(Protocol):
    """The realtime agent runtime, seen from the orchestrator."""

    async def connect(self, token: str, agent: AgentSpec) -> None: ...

    def send_message(self, text: str) -> None: ...

    def mute(self, muted: bool) -> None: ...

    async def update_agent(self, agent: AgentSpec) -> None: ...

    def close(self) -> None: ...

    def on(self, event: str, handler: Callable[..., None]) -> None: ...


def reading_handoff_message(cards: Sequence[DrawnCard]) -> str:
    """Summary of every drawn card sent to the reading agent."""
    lines = [
        f"{idx}. cardId: {card.card_id}, label: {card.position_label}, "
        f"cardName: {card.card_name}, {'Reversed' if card.reversed else 'Upright'}"
        for idx, card in enumerate(cards, start=1)
    ]
    summary = "\n".join(lines)
    return f"All cards have been drawn. Here are the cards for this reading:\n\n{summary}\n\nPlease begin interpreting each card."


def next_card_nudge_message(card_number: int) -> str:
    return f"Please SILENTLY call draw_card tool for card number {card_number} if you haven't called it."


class VoiceSessionOrchestrator:
    """Sequences the voice agents and bridges their tool calls to the UI.

    Args:
        transport: Realtime agent runtime connection
        settings: Timeouts and delays (defaults when omitted)
        deck: Live deck; a timestamp-seeded shuffle when omitted
        rng: Coin for card orientation on voice draws
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        settings: Optional[Settings] = None,
        deck: Optional[ShuffledDeck] = None,
        rng: Optional[random.Random] = None,
    ):
        self.transport = transport
        self.settings = settings or Settings()
        self.deck = deck or ShuffledDeck.from_seed(timestamp_seed())
        self._rng = rng or random.Random()

        self.bridge = CardDrawBridge(self.deck, timeout=self.settings.draw_timeout)
        self.display = CardDisplay(settle=self.settings.display_settle)
        self.ritual = RitualGate()
        self.coordinator = DrawCoordinator(rng=self._rng)
        self.tools = VoiceTools(self)
        self.agents = build_agents(self.tools)

        self.current_agent = AgentName.INTENT
        self.connection_status = ConnectionStatus.DISCONNECTED
        self.error: Optional[str] = None
        self.failure: Optional[ConnectionFailure] = None
        self.muted = False
        self.show_shuffling = False
        self.spread: Optional[SpreadSelection] = None
        self.card_reveal: Optional[CardRevealState] = None
        self.transcript: List[TranscriptMessage] = []

        self._started_at: Optional[float] = None
        self._duration_task: Optional[asyncio.Task] = None
        self._connect_attempt = 0
        self._nudges: Set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED

    @property
    def session_duration(self) -> float:
        if self._started_at is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._started_at

    def _set_agent(self, name: AgentName) -> None:
        self.current_agent = name
        logger.info("Active agent changed", extra={"agent": name.value})

    def _unmute(self) -> None:
        if self.muted:
            self.transport.mute(False)
            self.muted = False

    # -- connection ---------------------------------------------------------

    async def connect(self, token: str) -> None:
        """Open the realtime channel on the Intent agent and greet the user.

        Raises:
            VoiceSessionError: Connection failed or timed out; ``failure``
                carries the category and a recovery suggestion.
        """
        if self.connection_status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            logger.warning("Connect called on an active voice session")
            return

        loop = asyncio.get_running_loop()
        self._connect_attempt += 1
        attempt = self._connect_attempt
        self.connection_status = ConnectionStatus.CONNECTING
        self.error = None
        self.failure = None
        self._started_at = loop.time()
        timeout = self.settings.connect_timeout

        try:
            await asyncio.wait_for(self.transport.connect(token, self.agents[AgentName.INTENT]), timeout)
        except Exception as e:
            if attempt != self._connect_attempt:
                logger.info("Voice connection abandoned after disconnect", extra={"error": str(e)})
                return
            cause = e
            if isinstance(e, TimeoutError) and not str(e):
                cause = TimeoutError(f"Connection timeout after {timeout:g} seconds")
            failure = classify_connection_error(cause)
            self.connection_status = ConnectionStatus.ERROR
            self.failure = failure
            self.error = failure.message
            self._started_at = None
            logger.warning(
                "Voice connection failed",
                extra={"category": failure.category.value, "error": str(cause)},
            )
            raise VoiceSessionError(failure) from e

        if attempt != self._connect_attempt:
            # disconnect() ran while the transport was still connecting
            logger.info("Voice session closed before the connection finished")
            return

        self.transport.on("agent_handoff", self._on_agent_handoff)
        self.transport.on("error", self._on_transport_error)
        self.connection_status = ConnectionStatus.CONNECTED
        self._set_agent(AgentName.INTENT)
        self._duration_task = asyncio.create_task(self._watch_duration())
        self.transport.send_message(GREETING)

    async def disconnect(self) -> None:
        """Close the channel. A pending draw request is rejected, not abandoned."""
        if self.connection_status not in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            return

        for task in list(self._nudges):
            task.cancel()
        self._nudges.clear()
        if self._duration_task is not None and self._duration_task is not asyncio.current_task():
            self._duration_task.cancel()
        self._duration_task = None

        self.bridge.cancel("Voice session disconnected")
        self.transport.close()
        self.connection_status = ConnectionStatus.DISCONNECTED
        self._connect_attempt += 1
        self._started_at = None

        # Release anything still waiting on the ritual
        self.ritual.complete()
        self.coordinator.reset()
        self.card_reveal = None
        self.display.clear()
        self.muted = False
        logger.info("Voice session disconnected")

    async def _watch_duration(self) -> None:
        await asyncio.sleep(self.settings.max_session_duration)
        logger.warning(
            "Maximum voice session duration reached",
            extra={"max_session_duration": self.settings.max_session_duration},
        )
        await self.disconnect()

    def _on_agent_handoff(self, from_agent: str, to_agent: str) -> None:
        try:
            name = AgentName(to_agent)
        except ValueError:
            logger.warning("Handoff to unknown agent", extra={"agent": to_agent})
            return
        logger.info("Agent handoff", extra={"agent": name.value, "from_agent": from_agent})
        self.current_agent = name

    def _on_transport_error(self, error: object) -> None:
        message = str(error) if isinstance(error, (Exception, str)) and str(error) else None
        self.error = message or "An error occurred during the voice session"
        logger.warning("Voice session error", extra={"error": self.error})

    # -- ritual -------------------------------------------------------------

    async def trigger_intent_to_spread_transition(self) -> bool:
        """Mute, wait for the ritual, then swap to the Spread agent.

        Returns:
            True if the Spread agent is now active.
        """
        if self.current_agent != AgentName.INTENT:
            logger.warning("Cannot start the ritual outside the intent phase", extra={"agent": self.current_agent.value})
            return False
        if not self.connected:
            logger.error("Cannot start the ritual without an active session")
            return False

        self.transport.mute(True)
        self.muted = True
        self.ritual.start()
        logger.info("Ritual started; waiting for the user")
        await self.ritual.wait()

        if not self.connected:
            return False
        try:
            await self.transport.update_agent(self.agents[AgentName.SPREAD])
        except Exception as e:
            logger.error("Failed to swap to the spread agent", exc_info=e)
            self.error = "Failed to transition to spread generation phase"
            return False
        self._set_agent(AgentName.SPREAD)
        self._unmute()
        return True

    def complete_ritual(self) -> None:
        self.ritual.complete()
        self.show_shuffling = True

    def complete_shuffling(self) -> None:
        self.show_shuffling = False

    # -- batch drawing ------------------------------------------------------

    def start_batch_draw(self, cards: Sequence[BatchCardRequest]) -> int:
        positions = [
            SpreadPosition(key=f"position-{idx}", label=card.position_label, prompt_role=card.prompt_role)
            for idx, card in enumerate(cards, start=1)
        ]
        self.spread = SpreadSelection(
            spread_type="Voice Reading Spread",
            spread_description=f"{len(positions)}-card spread for voice reading",
            positions=positions,
        )
        self.coordinator.start(positions)
        return len(positions)

    def current_position(self) -> Optional[DrawPosition]:
        """Position the card picker should show, or None while a card is being revealed."""
        if self.card_reveal is not None:
            return None
        return self.coordinator.current_position()

    def select_batch_card(self, card_id: str) -> CardRevealState:
        if self.card_reveal is not None:
            raise NoActivePositionError("The current card has not been revealed yet")
        drawn = self.coordinator.draw(card_id, self.deck)
        self.card_reveal = CardRevealState(
            card_id=drawn.card_id,
            card_name=drawn.card_name,
            reversed=drawn.reversed,
            position_label=drawn.position_label,
            position_index=drawn.position_index,
            total_positions=self.coordinator.total_cards,
        )
        return self.card_reveal

    async def reveal_next(self) -> None:
        """User dismissed the reveal: next position, or on to the reading."""
        if self.coordinator.current_position() is None:
            self.card_reveal = None
            return
        if len(self.coordinator.drawn_cards) <= self.coordinator.index:
            raise NoActivePositionError(
                f"No card has been drawn for position {self.coordinator.index + 1} yet"
            )
        self.card_reveal = None
        if self.coordinator.is_last_position():
            cards = list(self.coordinator.drawn_cards)
            self.coordinator.complete()
            await self.transition_to_reading_with_cards(cards)
        else:
            self.coordinator.advance()

    async def transition_to_reading_with_cards(self, cards: Sequence[DrawnCard]) -> bool:
        if not self.connected:
            logger.error("Cannot start the reading without an active session")
            return False

        self._back_to_main_ui()
        try:
            await self.transport.update_agent(self.agents[AgentName.READING])
        except Exception as e:
            logger.error("Failed to swap to the reading agent", exc_info=e)
            self.error = "Failed to transition to reading phase"
            return False
        self._set_agent(AgentName.READING)
        self.transport.send_message(reading_handoff_message(cards))
        return True

    def _back_to_main_ui(self) -> None:
        self.show_shuffling = False
        if self.ritual.active:
            self.ritual.complete()
        self.card_reveal = None
        self._unmute()

    # -- single draws -------------------------------------------------------

    def resolve_draw(self, card_id: str) -> bool:
        """UI answer to a pending ``draw_card`` request.

        Returns:
            False if no request was pending.

        Raises:
            InvalidCardError: Unknown card id or card no longer in the deck;
                the request stays pending.
        """
        request = self.bridge.pending
        if request is None:
            return False
        if not is_known_card(card_id):
            raise InvalidCardError(f"Invalid card ID: {card_id}")
        card = DrawnCard(
            card_id=card_id,
            card_name=card_name(card_id),
            reversed=self._rng.random() < 0.5,
            position_label=request.position_label,
            prompt_role=request.prompt_role,
            position_index=request.card_number - 1,
        )
        return self.bridge.resolve_draw(card)

    def show_card_reveal(self, card: DrawnCard, total_positions: int) -> CardRevealState:
        self.card_reveal = CardRevealState(
            card_id=card.card_id,
            card_name=card.card_name,
            reversed=card.reversed,
            position_label=card.position_label,
            position_index=card.position_index,
            total_positions=total_positions,
        )
        return self.card_reveal

    def hide_card_reveal(self) -> None:
        self.card_reveal = None

    def schedule_next_card_nudge(self, card_number: int) -> None:
        task = asyncio.create_task(self._nudge_later(card_number))
        self._nudges.add(task)
        task.add_done_callback(self._nudges.discard)

    async def _nudge_later(self, card_number: int) -> None:
        await asyncio.sleep(self.settings.next_card_nudge)
        if not self.connected:
            return
        message = next_card_nudge_message(card_number)
        try:
            self.transport.send_message(message)
        except Exception as e:
            logger.warning("Failed to send next-card reminder", extra={"card_number": card_number, "error": str(e)})
            return
        logger.info("Sent next-card reminder", extra={"card_number": card_number})

    # -- transcript ---------------------------------------------------------

    def record_transcript(self, role: MessageRole, content: str) -> TranscriptMessage:
        message = TranscriptMessage(
            role=role,
            content=content,
            agent=self.current_agent.value if role == "assistant" else None,
        )
        self.transcript.append(message)
        return message

    def clear_transcript(self) -> None:
        self.transcript = []
