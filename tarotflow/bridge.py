"""Hand-off points between agent tool calls and UI events.

An agent tool coroutine awaits something only a person can supply (a card
pick, the end of the ritual gesture). The UI side sees the published
request and answers it later through a plain method call.

- ``CardDrawBridge``: one pending draw request at a time, with a watchdog timeout
- ``CardDisplay``: show a card, wait a short settle delay, return
- ``RitualGate``: one-shot wait until the ritual flag clears
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from tarotflow.deck import ShuffledDeck, is_known_card
from tarotflow.models import DrawnCard

logger = logging.getLogger(__name__)

DEFAULT_DRAW_TIMEOUT = 120.0
DEFAULT_DISPLAY_SETTLE = 0.5

DRAW_TIMEOUT_MESSAGE = "Card selection timed out. Please try again."


class BridgeError(RuntimeError):
    pass


class DrawRequestPendingError(BridgeError):
    pass


class DrawTimeoutError(BridgeError, TimeoutError):
    pass


class DrawCancelledError(BridgeError):
    pass


class InvalidCardError(BridgeError, ValueError):
    pass


@dataclass
class DrawRequest:
    position_label: str
    prompt_role: str
    card_number: int
    total_cards: int
    created_at: float = field(default_factory=time.monotonic)
    future: Optional[asyncio.Future] = field(default=None, repr=False, compare=False)


DrawListener = Callable[[Optional[DrawRequest]], None]


class CardDrawBridge:
    """Lets a ``draw_card`` tool call block until the UI supplies a card.

    Args:
        deck: Live deck; a resolved card is removed from it
        timeout: Seconds before an unanswered request is rejected
        is_valid: Card id validator
    """

    def __init__(
        self,
        deck: Optional[ShuffledDeck] = None,
        timeout: float = DEFAULT_DRAW_TIMEOUT,
        is_valid: Callable[[str], bool] = is_known_card,
    ):
        self.deck = deck
        self.timeout = timeout
        self._is_valid = is_valid
        self._pending: Optional[DrawRequest] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._listeners: List[DrawListener] = []

    @property
    def pending(self) -> Optional[DrawRequest]:
        return self._pending

    def subscribe(self, listener: DrawListener) -> Callable[[], None]:
        """Register a callback fired whenever the pending slot changes.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        for listener in list(self._listeners):
            listener(self._pending)

    async def request_draw(
        self,
        position_label: str,
        prompt_role: str,
        card_number: int,
        total_cards: int,
    ) -> DrawnCard:
        """Publish a draw request and wait for the UI to answer it.

        Raises:
            DrawRequestPendingError: Another request is still outstanding.
            DrawTimeoutError: Nobody answered within ``timeout`` seconds.
            DrawCancelledError: The request was cancelled (session teardown).
        """
        if self._pending is not None:
            logger.warning(
                "Refused draw request while another is pending",
                extra={"position": position_label, "pending_position": self._pending.position_label},
            )
            raise DrawRequestPendingError(
                f"A card draw for {self._pending.position_label!r} is already pending"
            )

        loop = asyncio.get_running_loop()
        request = DrawRequest(
            position_label=position_label,
            prompt_role=prompt_role,
            card_number=card_number,
            total_cards=total_cards,
            future=loop.create_future(),
        )
        self._pending = request
        self._timer = loop.call_later(self.timeout, self._expire, request)
        logger.info(
            "Draw requested",
            extra={"position": position_label, "card_number": card_number, "total_cards": total_cards},
        )
        self._publish()

        try:
            return await request.future
        finally:
            # Awaiting task cancelled before an answer arrived
            if self._pending is request:
                self._clear()
                self._publish()

    def resolve_draw(self, card: DrawnCard) -> bool:
        """Answer the pending request with ``card``.

        Returns:
            True if a request was resolved, False if none was pending.

        Raises:
            InvalidCardError: Unknown card id or card no longer in the deck;
                the request stays pending.
        """
        request = self._pending
        if request is None:
            return False
        if not card.card_id or not self._is_valid(card.card_id):
            raise InvalidCardError(f"Invalid card ID: {card.card_id}")
        if self.deck is not None and not self.deck.remove(card.card_id):
            raise InvalidCardError(f"Card {card.card_id} is not in the deck")

        self._clear()
        if not request.future.done():
            request.future.set_result(card)
        logger.info("Draw resolved", extra={"card_id": card.card_id, "position": request.position_label})
        self._publish()
        return True

    def reject_draw(self, error: BaseException) -> bool:
        request = self._pending
        if request is None:
            return False
        self._clear()
        if not request.future.done():
            request.future.set_exception(error)
        self._publish()
        return True

    def cancel(self, reason: str = "Card draw cancelled") -> bool:
        return self.reject_draw(DrawCancelledError(reason))

    def _expire(self, request: DrawRequest) -> None:
        if self._pending is not request:
            return
        logger.warning(
            "Draw request timed out",
            extra={"position": request.position_label, "timeout": self.timeout},
        )
        self.reject_draw(DrawTimeoutError(DRAW_TIMEOUT_MESSAGE))

    def _clear(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None


@dataclass(frozen=True)
class DisplayedCard:
    card_id: str
    reversed: bool


class CardDisplay:
    """The single "currently displayed card" slot used by ``show_card``."""

    def __init__(
        self,
        settle: float = DEFAULT_DISPLAY_SETTLE,
        is_valid: Callable[[str], bool] = is_known_card,
    ):
        self.settle = settle
        self._is_valid = is_valid
        self.current: Optional[DisplayedCard] = None
        self._lock = asyncio.Lock()

    async def show(self, card_id: str, reversed_: bool = False) -> DisplayedCard:
        if not card_id or not isinstance(card_id, str) or not self._is_valid(card_id):
            raise InvalidCardError(f"Invalid card ID: {card_id}")
        async with self._lock:
            shown = DisplayedCard(card_id=card_id, reversed=reversed_)
            self.current = shown
            logger.info("Showing card", extra={"card_id": card_id, "reversed": reversed_})
            await asyncio.sleep(self.settle)
        return shown

    def clear(self) -> None:
        self.current = None


class RitualGate:
    """One-shot wake-up for "wait until the ritual is finished"."""

    def __init__(self):
        self._active = False
        self._waiters: List[asyncio.Future] = []

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        self._active = True

    def complete(self) -> None:
        self._active = False
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    async def wait(self) -> bool:
        """Wait for :meth:`complete`.

        Returns:
            True if the ritual was already complete when called.
        """
        if not self._active:
            return True
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)
        return False
