"""Rider-Waite deck catalog + helpers.

- Canonical 78-card id sequence (majors, then wands/cups/swords/pentacles)
- Loads card reference data from tarotflow/data/rider_waite.json
- Provides: all_card_ids(), shuffle(seed), is_reversed(), get_card(card_id),
  create_card_draw(), ShuffledDeck
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from tarotflow.models import CATEGORIES, Card, CardDraw
from tarotflow.utils.rng import is_card_reversed, shuffle_deck


DATA_PATH = Path(__file__).resolve().parent / "data" / "rider_waite.json"

DECK_SIZE = 78

MAJOR_ARCANA = [
    "RW-00-FOOL",
    "RW-01-MAGICIAN",
    "RW-02-HIGH-PRIESTESS",
    "RW-03-EMPRESS",
    "RW-04-EMPEROR",
    "RW-05-HIEROPHANT",
    "RW-06-LOVERS",
    "RW-07-CHARIOT",
    "RW-08-STRENGTH",
    "RW-09-HERMIT",
    "RW-10-WHEEL-OF-FORTUNE",
    "RW-11-JUSTICE",
    "RW-12-HANGED-MAN",
    "RW-13-DEATH",
    "RW-14-TEMPERANCE",
    "RW-15-DEVIL",
    "RW-16-TOWER",
    "RW-17-STAR",
    "RW-18-MOON",
    "RW-19-SUN",
    "RW-20-JUDGEMENT",
    "RW-21-WORLD",
]

SUITS = ["WANDS", "CUPS", "SWORDS", "PENTACLES"]
RANKS = ["ACE", "02", "03", "04", "05", "06", "07", "08", "09", "10", "PAGE", "KNIGHT", "QUEEN", "KING"]

ALL_CARD_IDS = tuple(MAJOR_ARCANA + [f"RW-{rank}-{suit}" for suit in SUITS for rank in RANKS])


class DeckError(RuntimeError):
    pass


def all_card_ids() -> List[str]:
    """The full card universe in canonical order."""
    return list(ALL_CARD_IDS)


def shuffle(seed: str) -> List[str]:
    """Seeded permutation of :func:`all_card_ids`."""
    return shuffle_deck(list(ALL_CARD_IDS), seed)


def is_reversed(seed: str, card_id: str, draw_index: int) -> bool:
    return is_card_reversed(seed, card_id, draw_index)


def _load_json() -> Dict[str, Any]:
    try:
        raw = DATA_PATH.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise DeckError(f"Card data file not found at: {DATA_PATH}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DeckError(f"Invalid JSON in {DATA_PATH}: {e}") from e

    if "cards" not in data or not isinstance(data["cards"], dict) or len(data["cards"]) != DECK_SIZE:
        raise DeckError(f"Card data must contain exactly {DECK_SIZE} cards.")
    return data


_DECK_CACHE: Optional[Dict[str, Any]] = None


def get_deck() -> Dict[str, Any]:
    global _DECK_CACHE
    if _DECK_CACHE is None:
        _DECK_CACHE = _load_json()
    return _DECK_CACHE


def is_known_card(card_id: str) -> bool:
    return card_id in ALL_CARD_IDS


def get_card(card_id: str) -> Card:
    entry = get_deck()["cards"].get(card_id)
    if entry is None:
        raise DeckError(f"Unknown card id: {card_id}")
    return Card(
        id=card_id,
        name=entry["name"],
        keywords=entry.get("keywords") or {},
        meanings=entry.get("meanings") or {},
        category_meanings=entry.get("category_meanings") or {},
    )


def card_name(card_id: str) -> str:
    """Display name for a card id, falling back to the id itself."""
    entry = get_deck()["cards"].get(card_id)
    if entry is None:
        return card_id
    return entry.get("name") or card_id


def validate_deck() -> None:
    """Check the data file covers exactly the canonical ids, with names and category meanings."""
    cards = get_deck()["cards"]
    missing = [card_id for card_id in ALL_CARD_IDS if card_id not in cards]
    if missing:
        raise DeckError(f"Card data is missing ids: {', '.join(missing)}")
    extra = sorted(set(cards) - set(ALL_CARD_IDS))
    if extra:
        raise DeckError(f"Card data has unknown ids: {', '.join(extra)}")
    for card_id, entry in cards.items():
        if not entry.get("name"):
            raise DeckError(f"Card {card_id} has no name")
        by_category = entry.get("category_meanings") or {}
        for category in CATEGORIES:
            texts = by_category.get(category) or {}
            if not (texts.get("upright") and texts.get("reversed")):
                raise DeckError(f"Card {card_id} has no {category} meanings")


def create_card_draw(
    card_id: str,
    seed: str,
    draw_index: int,
    label: str,
    prompt_role: str,
    interpretation: str = "",
) -> CardDraw:
    """Build a drawn card with its orientation fixed from the seed.

    Args:
        card_id: Chosen card id
        seed: Session deck seed
        draw_index: Position index (clarification draws use an offset index)
        label: Human position label
        prompt_role: Interpretive role of the position
        interpretation: Interpretation text, usually filled in later

    Returns:
        CardDraw with name, orientation and the matching general meaning
    """
    reversed_ = is_reversed(seed, card_id, draw_index)
    card = get_card(card_id)
    return CardDraw(
        card_id=card_id,
        name=card.name,
        reversed=reversed_,
        position_index=draw_index,
        label=label,
        prompt_role=prompt_role,
        interpretation=interpretation,
        general_meaning=card.meaning(reversed_),
    )


class ShuffledDeck:
    """Live shuffled deck for one session, consumed as cards are drawn."""

    def __init__(self, card_ids: List[str], seed: Optional[str] = None):
        self.seed = seed
        self._cards = list(card_ids)

    @classmethod
    def from_seed(cls, seed: str) -> "ShuffledDeck":
        return cls(shuffle(seed), seed=seed)

    def remove(self, card_id: str) -> bool:
        """Remove a card; returns False if it was not in the deck."""
        try:
            self._cards.remove(card_id)
        except ValueError:
            return False
        return True

    def remaining(self) -> List[str]:
        return list(self._cards)

    def __contains__(self, card_id: object) -> bool:
        return card_id in self._cards

    def __len__(self) -> int:
        return len(self._cards)

    def __iter__(self):
        return iter(list(self._cards))

    def __repr__(self) -> str:
        return f"ShuffledDeck(seed={self.seed!r}, remaining={len(self._cards)})"
