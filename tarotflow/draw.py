"""Position cursor for drawing a spread one card at a time."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

from tarotflow.bridge import InvalidCardError
from tarotflow.deck import ShuffledDeck, card_name, is_known_card
from tarotflow.models import DrawnCard, SpreadPosition

logger = logging.getLogger(__name__)

NOT_STARTED = -1


class NoActivePositionError(RuntimeError):
    pass


@dataclass(frozen=True)
class DrawPosition:
    position_label: str
    prompt_role: str
    card_number: int  # 1-based
    total_cards: int

    @property
    def position_index(self) -> int:
        return self.card_number - 1


class DrawCoordinator:
    """Tracks which spread position is being drawn.

    Orientation of a drawn card is an independent 50/50 coin flip from
    ``rng``, unlike the seeded orientation used by the text flow.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()
        self.positions: Optional[List[SpreadPosition]] = None
        self.index: int = NOT_STARTED
        self.drawn_cards: List[DrawnCard] = []

    @property
    def total_cards(self) -> int:
        return len(self.positions) if self.positions else 0

    @property
    def active(self) -> bool:
        return self.current_position() is not None

    def start(self, positions: Sequence[SpreadPosition]) -> None:
        if not positions:
            raise ValueError("A spread needs at least one position")
        self.positions = list(positions)
        self.index = 0
        self.drawn_cards = []
        logger.info("Card drawing started", extra={"total_cards": self.total_cards})

    def current_position(self) -> Optional[DrawPosition]:
        if not self.positions or self.index < 0 or self.index >= len(self.positions):
            return None
        position = self.positions[self.index]
        return DrawPosition(
            position_label=position.label,
            prompt_role=position.prompt_role,
            card_number=self.index + 1,
            total_cards=len(self.positions),
        )

    def is_last_position(self) -> bool:
        return self.positions is not None and self.index >= len(self.positions) - 1

    def advance(self) -> Optional[DrawPosition]:
        if self.index != NOT_STARTED:
            self.index += 1
        return self.current_position()

    def complete(self) -> None:
        self.index = NOT_STARTED

    def reset(self) -> None:
        self.positions = None
        self.index = NOT_STARTED
        self.drawn_cards = []

    def draw(self, card_id: str, deck: ShuffledDeck) -> DrawnCard:
        """Record ``card_id`` against the current position and take it out of ``deck``.

        Raises:
            NoActivePositionError: The cursor is not on a position.
            InvalidCardError: Unknown id, or a card no longer in the deck.
        """
        position = self.current_position()
        if position is None:
            raise NoActivePositionError("No spread position is waiting for a card")
        if not is_known_card(card_id):
            raise InvalidCardError(f"Invalid card ID: {card_id}")
        if not deck.remove(card_id):
            raise InvalidCardError(f"Card {card_id} is not in the deck")

        drawn = DrawnCard(
            card_id=card_id,
            card_name=card_name(card_id),
            reversed=self._rng.random() < 0.5,
            position_label=position.position_label,
            prompt_role=position.prompt_role,
            position_index=position.position_index,
        )
        self.drawn_cards.append(drawn)
        logger.info(
            "Card drawn",
            extra={"card_id": card_id, "position": position.position_label, "reversed": drawn.reversed},
        )
        return drawn
