"""Tests for the spread position cursor."""

import random

import pytest

from tarotflow.bridge import InvalidCardError
from tarotflow.deck import ShuffledDeck, card_name
from tarotflow.draw import NOT_STARTED, DrawCoordinator, NoActivePositionError
from tarotflow.models import SpreadPosition

POSITIONS = [
    SpreadPosition(key="past", label="Past", prompt_role="What led here"),
    SpreadPosition(key="present", label="Present", prompt_role="What is happening now"),
    SpreadPosition(key="future", label="Future", prompt_role="Where this is heading"),
]


class TestCursor:
    def test_not_started(self):
        coordinator = DrawCoordinator()
        assert coordinator.current_position() is None
        assert coordinator.index == NOT_STARTED
        assert not coordinator.active
        assert coordinator.advance() is None

    def test_start_requires_positions(self):
        with pytest.raises(ValueError):
            DrawCoordinator().start([])

    def test_walks_positions(self):
        coordinator = DrawCoordinator()
        coordinator.start(POSITIONS)

        first = coordinator.current_position()
        assert first.position_label == "Past"
        assert first.card_number == 1
        assert first.total_cards == 3
        assert first.position_index == 0
        assert not coordinator.is_last_position()

        assert coordinator.advance().position_label == "Present"
        third = coordinator.advance()
        assert third.card_number == 3
        assert coordinator.is_last_position()

        assert coordinator.advance() is None
        assert not coordinator.active

    def test_complete_and_reset(self):
        coordinator = DrawCoordinator()
        coordinator.start(POSITIONS)
        coordinator.complete()
        assert coordinator.current_position() is None
        assert coordinator.total_cards == 3

        coordinator.reset()
        assert coordinator.positions is None
        assert coordinator.total_cards == 0


class TestDraw:
    """Test recording cards against positions."""

    def test_draw_removes_card_and_flips_coin(self):
        coordinator = DrawCoordinator(rng=random.Random(7))
        twin = random.Random(7)
        live = ShuffledDeck.from_seed("42")
        coordinator.start(POSITIONS)
        card_id = live.remaining()[0]

        drawn = coordinator.draw(card_id, live)

        assert drawn.card_id == card_id
        assert drawn.card_name == card_name(card_id)
        assert drawn.reversed == (twin.random() < 0.5)
        assert drawn.position_label == "Past"
        assert drawn.position_index == 0
        assert card_id not in live
        assert coordinator.drawn_cards == [drawn]

    def test_draw_without_position(self):
        coordinator = DrawCoordinator()
        with pytest.raises(NoActivePositionError):
            coordinator.draw("RW-00-FOOL", ShuffledDeck.from_seed("42"))

    def test_unknown_card(self):
        coordinator = DrawCoordinator()
        coordinator.start(POSITIONS)
        with pytest.raises(InvalidCardError):
            coordinator.draw("RW-99-NOPE", ShuffledDeck.from_seed("42"))

    def test_card_already_drawn(self):
        coordinator = DrawCoordinator()
        coordinator.start(POSITIONS)
        live = ShuffledDeck.from_seed("42")
        card_id = live.remaining()[0]
        coordinator.draw(card_id, live)
        coordinator.advance()

        with pytest.raises(InvalidCardError):
            coordinator.draw(card_id, live)
        assert len(coordinator.drawn_cards) == 1
