"""Pytest configuration, Hypothesis profiles and shared fakes."""

import asyncio
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import pytest
from hypothesis import settings

from tarotflow.models import (
    ClarificationResult,
    Explanation,
    IntentAssessment,
    InterpretedCard,
    ReadingResult,
    SpreadPosition,
    SpreadSelection,
)

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


THREE_CARD_SPREAD = SpreadSelection(
    spread_type="past-present-future",
    positions=[
        SpreadPosition(key="past", label="Past", prompt_role="What led here"),
        SpreadPosition(key="present", label="Present", prompt_role="What is happening now"),
        SpreadPosition(key="future", label="Future", prompt_role="Where this is heading"),
    ],
    response_id="r-spread",
)


class FakeReadingAI:
    """Scripted AI capability that counts calls.

    ``failures[name]`` is a queue of exceptions raised by the next calls to
    that method. ``clarifications`` is a queue of results (or exceptions)
    for ``handle_clarification``.
    """

    def __init__(self):
        self.calls: Dict[str, int] = defaultdict(int)
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.intent = IntentAssessment(
            status="clear",
            summary="Will the new job work out?",
            topic="career",
            response_id="r-intent",
        )
        self.spread = THREE_CARD_SPREAD
        self.spread_gate: Optional[asyncio.Event] = None
        self.clarifications: List[object] = []
        self.clarification_hook: Optional[Callable[[], None]] = None
        self.intent_requests: List[tuple] = []
        self.reading_requests: List[tuple] = []
        self.clarification_requests: List[tuple] = []
        self.explanation_requests: List[tuple] = []

    def _maybe_fail(self, name: str) -> None:
        queue = self.failures.get(name)
        if queue:
            raise queue.pop(0)

    async def assess_intent(self, user_message, previous_response_id=None):
        self.calls["assess_intent"] += 1
        self.intent_requests.append((user_message, previous_response_id))
        self._maybe_fail("assess_intent")
        return self.intent

    async def generate_spread(self, intent_summary, timeframe=None):
        self.calls["generate_spread"] += 1
        if self.spread_gate is not None:
            await self.spread_gate.wait()
        self._maybe_fail("generate_spread")
        return self.spread

    async def generate_reading(self, intent_summary, cards, hidden_concern=None):
        self.calls["generate_reading"] += 1
        self.reading_requests.append((intent_summary, list(cards), hidden_concern))
        self._maybe_fail("generate_reading")
        return ReadingResult(
            cards=[
                InterpretedCard(card_id=c.card_id, name=c.name, interpretation=f"About {c.name}", label=c.label)
                for c in cards
            ],
            synthesis="Everything points forward.",
            response_id="r-reading",
        )

    async def handle_clarification(self, question, cards, previous_response_id=None):
        self.calls["handle_clarification"] += 1
        self.clarification_requests.append((question, list(cards), previous_response_id))
        if self.clarification_hook is not None:
            self.clarification_hook()
        self._maybe_fail("handle_clarification")
        if self.clarifications:
            item = self.clarifications.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return ClarificationResult(synthesis="Trust the process.", is_final_answer=True, response_id="r-answer")

    async def request_explanation(self, highlighted_text, previous_response_id=None):
        self.calls["request_explanation"] += 1
        self.explanation_requests.append((highlighted_text, previous_response_id))
        self._maybe_fail("request_explanation")
        return Explanation(content=f"More about {highlighted_text}", response_id="r-explain")


class FakeTransport:
    """Records everything the orchestrator does to the realtime channel."""

    def __init__(self):
        self.connected_with: Optional[tuple] = None
        self.connect_error: Optional[Exception] = None
        self.connect_delay = 0.0
        self.update_error: Optional[Exception] = None
        self.sent: List[str] = []
        self.mutes: List[bool] = []
        self.agents: List[str] = []
        self.handlers: Dict[str, Callable] = {}
        self.closed = False

    async def connect(self, token, agent):
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = (token, agent.name)

    def send_message(self, text):
        self.sent.append(text)

    def mute(self, muted):
        self.mutes.append(muted)

    async def update_agent(self, agent):
        if self.update_error is not None:
            raise self.update_error
        self.agents.append(agent.name)

    def close(self):
        self.closed = True

    def on(self, event, handler):
        self.handlers[event] = handler

    def emit(self, event, *args):
        self.handlers[event](*args)


@pytest.fixture
def fake_ai() -> FakeReadingAI:
    return FakeReadingAI()


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()
