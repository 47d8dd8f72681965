"""Deterministic RNG utilities for reproducible card shuffling.

Every function here is pure. The hash and generator are fixed 32-bit
algorithms so a persisted seed replays the same deck and the same
orientations on any implementation.
"""

import struct
from typing import Callable, List

MASK_32 = 0xFFFFFFFF

# Mulberry32 increment
_GOLDEN_GAMMA = 0x6D2B79F5


def _to_int32(value: int) -> int:
    value &= MASK_32
    return value - (1 << 32) if value & 0x80000000 else value


def _utf16_code_units(text: str) -> tuple:
    data = text.encode("utf-16-le")
    return struct.unpack(f"<{len(data) // 2}H", data)


def simple_hash(text: str) -> int:
    """Fixed 32-bit string hash: ``hash = hash * 31 + code_unit``, absolute value.

    Code units are UTF-16, matching how browsers index string characters.

    Args:
        text: String to hash

    Returns:
        Non-negative integer in ``[0, 2**31]``
    """
    value = 0
    for code in _utf16_code_units(text):
        value = _to_int32((value << 5) - value + code)
    return abs(value)


def seeded_random(seed: str) -> Callable[[], float]:
    """Create a deterministic Mulberry32 generator seeded from ``simple_hash(seed)``.

    Args:
        seed: Base seed string

    Returns:
        Zero-argument callable producing floats in ``[0, 1)``
    """
    state = simple_hash(seed)

    def next_random() -> float:
        nonlocal state
        state = (state + _GOLDEN_GAMMA) & MASK_32
        t = ((state ^ (state >> 15)) * (1 | state)) & MASK_32
        t = ((t + (((t ^ (t >> 7)) * (61 | t)) & MASK_32)) & MASK_32) ^ t
        return ((t ^ (t >> 14)) & MASK_32) / 4294967296

    return next_random


def shuffle_deck(deck_ids: List[str], seed: str) -> List[str]:
    """Shuffle a deck of card IDs deterministically.

    Fisher-Yates from the last index down to 1, partner ``floor(rand() * (i + 1))``.

    Args:
        deck_ids: List of card IDs to shuffle
        seed: Base seed for shuffling

    Returns:
        New list with shuffled card IDs
    """
    rand = seeded_random(seed)
    shuffled = list(deck_ids)
    for i in range(len(shuffled) - 1, 0, -1):
        j = int(rand() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def is_card_reversed(seed: str, card_id: str, draw_index: int) -> bool:
    """Orientation oracle: ``simple_hash(seed + card_id + str(draw_index)) % 2 == 0``."""
    return simple_hash(f"{seed}{card_id}{draw_index}") % 2 == 0


def draw_cards(deck_ids: List[str], count: int, seed: str) -> List[dict]:
    """Draw cards from the top of the seeded shuffle.

    Args:
        deck_ids: List of available card IDs
        count: Number of cards to draw
        seed: Base seed for drawing

    Returns:
        List of dicts with 'card_id', 'draw_index' and 'reversed' keys
    """
    shuffled = shuffle_deck(deck_ids, seed)
    return [
        {
            "card_id": card_id,
            "draw_index": index,
            "reversed": is_card_reversed(seed, card_id, index),
        }
        for index, card_id in enumerate(shuffled[:count])
    ]
