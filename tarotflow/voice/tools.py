"""Tool implementations the voice agents call."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from tarotflow.models import (
    BeginRitualResult,
    DrawCardResult,
    DrawCardsBatchArgs,
    DrawCardsBatchResult,
    DrawCardSingleArgs,
    ShowCardArgs,
    ShowCardResult,
    WaitForRitualResult,
)
from tarotflow.voice.errors import ToolExecutionError

if TYPE_CHECKING:
    from tarotflow.voice.session import VoiceSessionOrchestrator

logger = logging.getLogger(__name__)


class VoiceTools:
    """Bound to one orchestrator; every agent tool routes through it."""

    def __init__(self, session: "VoiceSessionOrchestrator"):
        self._session = session

    async def begin_ritual(self) -> BeginRitualResult:
        logger.info("Tool called", extra={"tool": "start_ritual"})
        try:
            moved = await self._session.trigger_intent_to_spread_transition()
        except Exception as e:
            raise ToolExecutionError(f"Failed to start ritual phase. {e}") from e
        if not moved:
            return BeginRitualResult(success=False, message="Ritual phase could not be started right now")
        return BeginRitualResult(success=True, message="Ritual phase started. User is ready for the spread now")

    async def draw_cards_batch(self, args: DrawCardsBatchArgs) -> DrawCardsBatchResult:
        """Set up the spread and return at once; the UI drives the picking."""
        logger.info("Tool called", extra={"tool": "draw_cards", "total_cards": len(args.cards)})
        try:
            total = self._session.start_batch_draw(args.cards)
        except Exception as e:
            raise ToolExecutionError(f"Failed to start card drawing session. {e}") from e
        return DrawCardsBatchResult(
            total_cards=total,
            message=f"Card drawing session started for {total} cards",
        )

    async def draw_card_single(self, args: DrawCardSingleArgs) -> DrawCardResult:
        logger.info(
            "Tool called",
            extra={"tool": "draw_card", "position": args.position_label, "card_number": args.card_number},
        )
        try:
            card = await self._session.bridge.request_draw(
                args.position_label,
                args.prompt_role,
                args.card_number,
                args.total_cards,
            )
        except Exception as e:
            raise ToolExecutionError(f'Failed to draw card for position "{args.position_label}". {e}') from e

        self._session.show_card_reveal(card, args.total_cards)
        if args.card_number < args.total_cards:
            self._session.schedule_next_card_nudge(args.card_number + 1)
        return DrawCardResult(card_id=card.card_id, card_name=card.card_name, reversed=card.reversed)

    async def show_card(self, args: ShowCardArgs) -> ShowCardResult:
        logger.info("Tool called", extra={"tool": "show_card", "card_id": args.card_id})
        try:
            await self._session.display.show(args.card_id, args.reversed)
        except Exception as e:
            raise ToolExecutionError(f'Failed to display card "{args.card_id}". {e}') from e
        return ShowCardResult(success=True, card_id=args.card_id, reversed=args.reversed)

    async def wait_for_ritual(self) -> WaitForRitualResult:
        logger.info("Tool called", extra={"tool": "wait_for_ritual"})
        was_complete = await self._session.ritual.wait()
        if was_complete:
            return WaitForRitualResult(
                success=True,
                message="Ritual phase already complete",
                was_already_complete=True,
            )
        return WaitForRitualResult(
            success=True,
            message="Ritual phase completed. Ready for card selection.",
            was_already_complete=False,
        )
