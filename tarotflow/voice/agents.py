"""Voice agent roles, their tools and the handoff graph.

Intent -> Spread and Spread -> Reading are manual swaps made by the
orchestrator (they depend on UI timing). Reading -> Followup is the only
automatic handoff; Followup stays active until the session ends.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from tarotflow.models import DrawCardsBatchArgs, DrawCardSingleArgs, ShowCardArgs
from tarotflow.voice.errors import ToolExecutionError

if TYPE_CHECKING:
    from tarotflow.voice.tools import VoiceTools


class AgentName(str, Enum):
    INTENT = "IntentAssessmentAgent"
    SPREAD = "SpreadGenerationAgent"
    READING = "ReadingAgent"
    FOLLOWUP = "FollowupAgent"


AGENT_LABELS: Dict[AgentName, str] = {
    AgentName.INTENT: "Intent Assessment",
    AgentName.SPREAD: "Spread Generation",
    AgentName.READING: "Reading",
    AgentName.FOLLOWUP: "Follow-up Questions",
}

# Automatic handoffs declared to the runtime at session setup
HANDOFFS: Dict[AgentName, Tuple[AgentName, ...]] = {
    AgentName.INTENT: (),
    AgentName.SPREAD: (),
    AgentName.READING: (AgentName.FOLLOWUP,),
    AgentName.FOLLOWUP: (),
}


def can_draw_cards(name: AgentName) -> bool:
    return name in (AgentName.SPREAD, AgentName.FOLLOWUP)


def can_show_cards(name: AgentName) -> bool:
    return name in (AgentName.READING, AgentName.FOLLOWUP)


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    handler: Callable[..., Awaitable[BaseModel]]
    params_model: Optional[Type[BaseModel]] = None

    def parameters_schema(self) -> Dict[str, Any]:
        if self.params_model is None:
            return {"type": "object", "properties": {}}
        return self.params_model.model_json_schema(by_alias=True)

    async def invoke(self, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Validate runtime arguments, run the handler, return a camelCase dict."""
        if self.params_model is None:
            result = await self.handler()
        else:
            try:
                args = self.params_model.model_validate(arguments or {})
            except ValidationError as e:
                raise ToolExecutionError(f"Invalid arguments for {self.name}: {e}") from e
            result = await self.handler(args)
        return result.model_dump(by_alias=True)


@dataclass(frozen=True)
class AgentSpec:
    name: AgentName
    instructions: str
    tools: Tuple[ToolSpec, ...] = ()
    handoffs: Tuple[AgentName, ...] = field(default=())

    @property
    def label(self) -> str:
        return AGENT_LABELS[self.name]

    def tool(self, name: str) -> ToolSpec:
        for spec in self.tools:
            if spec.name == name:
                return spec
        raise KeyError(f"{self.name.value} has no tool {name!r}")

    @property
    def tool_names(self) -> List[str]:
        return [spec.name for spec in self.tools]


def build_agents(tools: "VoiceTools") -> Dict[AgentName, AgentSpec]:
    """Create the four agents wired to one session's tool implementations."""
    start_ritual = ToolSpec(
        name="start_ritual",
        description="Begin the ritual preparation phase once the user's intention is clear.",
        handler=tools.begin_ritual,
    )
    draw_cards = ToolSpec(
        name="draw_cards",
        description="Start drawing a whole spread; the user picks each card in order.",
        handler=tools.draw_cards_batch,
        params_model=DrawCardsBatchArgs,
    )
    draw_card = ToolSpec(
        name="draw_card",
        description="Ask the user to draw one card for a position and wait for it.",
        handler=tools.draw_card_single,
        params_model=DrawCardSingleArgs,
    )
    show_card = ToolSpec(
        name="show_card",
        description="Display a drawn card before talking about it.",
        handler=tools.show_card,
        params_model=ShowCardArgs,
    )
    wait_for_ritual = ToolSpec(
        name="wait_for_ritual",
        description="Wait until the ritual phase has finished.",
        handler=tools.wait_for_ritual,
    )

    return {
        AgentName.INTENT: AgentSpec(
            name=AgentName.INTENT,
            instructions="Greet the user and help them put their question into words.",
            tools=(start_ritual,),
            handoffs=HANDOFFS[AgentName.INTENT],
        ),
        AgentName.SPREAD: AgentSpec(
            name=AgentName.SPREAD,
            instructions="Choose and announce a spread for the user's question, then draw it.",
            tools=(draw_cards, wait_for_ritual),
            handoffs=HANDOFFS[AgentName.SPREAD],
        ),
        AgentName.READING: AgentSpec(
            name=AgentName.READING,
            instructions="Show each drawn card in spread order and interpret it, then summarise.",
            tools=(show_card,),
            handoffs=HANDOFFS[AgentName.READING],
        ),
        AgentName.FOLLOWUP: AgentSpec(
            name=AgentName.FOLLOWUP,
            instructions="Answer follow-up questions, drawing up to three clarification cards if needed.",
            tools=(draw_card, show_card),
            handoffs=HANDOFFS[AgentName.FOLLOWUP],
        ),
    }
