"""Tests for the OpenAI Responses client and the offline reading service."""

import json
from types import SimpleNamespace

import openai
import pytest

from tarotflow.ai import (
    AIServiceError,
    FallbackReadingService,
    OpenAIReadingService,
    create_reading_service,
    detect_category,
    extract_output_text,
)
from tarotflow.config import Settings
from tarotflow.deck import create_card_draw, get_card

PROMPTS = {
    "intent": "pmpt_intent",
    "spread": "pmpt_spread",
    "reading": "pmpt_reading",
    "clarification": "pmpt_clarification",
    "explanation": "pmpt_explanation",
}


def text_response(text, response_id="resp_1"):
    block = SimpleNamespace(type="output_text", text=text)
    message = SimpleNamespace(type="message", role="assistant", content=[block])
    return SimpleNamespace(id=response_id, output=[message])


class FakeResponses:
    def __init__(self, replies):
        self.replies = list(replies)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


def make_service(*replies, **kwargs):
    responses = FakeResponses(replies)
    client = SimpleNamespace(responses=responses)
    return OpenAIReadingService(PROMPTS, client=client, **kwargs), responses


def sample_draws():
    return [
        create_card_draw("RW-00-FOOL", "42", 0, "Past", "What led here"),
        create_card_draw("RW-19-SUN", "42", 1, "Present", "What is happening now"),
    ]


class TestExtractOutputText:
    def test_joins_assistant_text(self):
        response = SimpleNamespace(
            output=[
                SimpleNamespace(type="reasoning"),
                SimpleNamespace(
                    type="message",
                    role="assistant",
                    content=[
                        SimpleNamespace(type="output_text", text="Hello "),
                        SimpleNamespace(type="output_text", text="there"),
                    ],
                ),
            ]
        )
        assert extract_output_text(response) == "Hello there"

    def test_refusal_raises(self):
        response = SimpleNamespace(
            output=[
                SimpleNamespace(
                    type="message",
                    role="assistant",
                    content=[SimpleNamespace(type="refusal", refusal="no")],
                )
            ]
        )
        with pytest.raises(AIServiceError, match="refused"):
            extract_output_text(response)

    def test_empty_output(self):
        assert extract_output_text(SimpleNamespace(output=[])) == ""


class TestOpenAIReadingService:
    """Test request shapes and response parsing."""

    def test_missing_prompt_ids(self):
        with pytest.raises(AIServiceError, match="explanation"):
            OpenAIReadingService({k: v for k, v in PROMPTS.items() if k != "explanation"}, client=object())

    @pytest.mark.asyncio
    async def test_assess_intent(self):
        reply = json.dumps(
            {
                "intentStatus": "clear",
                "intentSummary": "New job outlook",
                "topic": "career",
                "hiddenConcern": "fear of failure",
            }
        )
        service, responses = make_service(text_response(reply, "resp_intent"))

        result = await service.assess_intent("Will my new job work out?", "resp_prev")

        assert result.is_clear
        assert result.summary == "New job outlook"
        assert result.hidden_concern == "fear of failure"
        assert result.response_id == "resp_intent"
        request = responses.requests[0]
        assert request["prompt"] == {"id": "pmpt_intent"}
        assert request["input"] == "Will my new job work out?"
        assert request["previous_response_id"] == "resp_prev"

    @pytest.mark.asyncio
    async def test_generate_spread(self):
        reply = json.dumps(
            {
                "spreadType": "custom",
                "positions": [
                    {"key": "now", "label": "Now", "promptRole": "Current energy"},
                    {"key": "next", "label": "Next", "promptRole": "What comes"},
                ],
            }
        )
        service, responses = make_service(text_response(reply, "resp_spread"))

        spread = await service.generate_spread("New job outlook", "next month")

        assert [p.label for p in spread.positions] == ["Now", "Next"]
        assert spread.positions[0].prompt_role == "Current energy"
        assert spread.response_id == "resp_spread"
        payload = json.loads(responses.requests[0]["input"])
        assert payload == {"intentSummary": "New job outlook", "timeframe": "next month"}
        assert "previous_response_id" not in responses.requests[0]

    @pytest.mark.asyncio
    async def test_retries_invalid_json_once(self):
        good = json.dumps({"positions": [{"key": "a", "label": "A", "promptRole": "r"}]})
        service, responses = make_service(text_response("not json"), text_response(good, "resp_2"))

        spread = await service.generate_spread("question")

        assert len(responses.requests) == 2
        assert spread.response_id == "resp_2"

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        service, responses = make_service(text_response("nope"), text_response("still nope"))
        with pytest.raises(AIServiceError, match="not valid JSON"):
            await service.generate_spread("question")
        assert len(responses.requests) == 2

    @pytest.mark.asyncio
    async def test_schema_violation(self):
        service, _ = make_service(text_response(json.dumps({"positions": []})))
        with pytest.raises(AIServiceError, match="validation"):
            await service.generate_spread("question")

    @pytest.mark.asyncio
    async def test_generate_reading_payload(self):
        reply = json.dumps(
            {
                "cards": [{"cardId": "RW-00-FOOL", "name": "The Fool", "interpretation": "A fresh start"}],
                "synthesis": "Go for it",
            }
        )
        service, responses = make_service(text_response(reply, "resp_reading"))
        draws = sample_draws()

        result = await service.generate_reading("New job outlook", draws, "fear of failure")

        assert result.synthesis == "Go for it"
        assert result.cards[0].interpretation == "A fresh start"
        payload = json.loads(responses.requests[0]["input"])
        assert payload["hiddenConcern"] == "fear of failure"
        assert payload["cards"][0] == {
            "cardId": "RW-00-FOOL",
            "card": "The Fool",
            "reversed": draws[0].reversed,
            "promptRole": "What led here",
            "label": "Past",
        }

    @pytest.mark.asyncio
    async def test_clarification_plain_text_is_final(self):
        service, responses = make_service(text_response("Just trust yourself.", "resp_c"))

        result = await service.handle_clarification("What now?", [], "resp_reading")

        assert result.is_final_answer
        assert result.synthesis == "Just trust yourself."
        assert result.response_id == "resp_c"
        assert responses.requests[0]["previous_response_id"] == "resp_reading"
        payload = json.loads(responses.requests[0]["input"])
        assert payload == {"clarificationQuestion": "What now?", "cards": []}

    @pytest.mark.asyncio
    async def test_clarification_requests_cards(self):
        reply = json.dumps(
            {"isFinalAnswer": False, "cards": [{"label": "Obstacle", "promptRole": "What blocks you"}]}
        )
        service, _ = make_service(text_response(reply))

        result = await service.handle_clarification("Draw another card", [])

        assert not result.is_final_answer
        assert result.cards[0].label == "Obstacle"
        assert result.synthesis == reply

    @pytest.mark.asyncio
    async def test_explanation(self):
        service, responses = make_service(text_response("The Tower means upheaval.", "resp_e"))

        explanation = await service.request_explanation("the Tower", "resp_reading")

        assert explanation.content == "The Tower means upheaval."
        assert explanation.response_id == "resp_e"
        assert json.loads(responses.requests[0]["input"]) == {"highlightedText": "the Tower"}

    @pytest.mark.asyncio
    async def test_empty_content(self):
        service, _ = make_service(SimpleNamespace(id="resp", output=[]))
        with pytest.raises(AIServiceError, match="No content"):
            await service.request_explanation("x", "resp_prev")

    @pytest.mark.asyncio
    async def test_client_error_wrapped(self):
        service, _ = make_service(openai.OpenAIError("connection reset"))
        with pytest.raises(AIServiceError, match="connection reset"):
            await service.assess_intent("hello there friend")


class TestDetectCategory:
    def test_matches_whole_words(self):
        assert detect_category("Is my partner being honest?") == "love"
        assert detect_category("Should I ask my boss for a raise?") == "career"
        assert detect_category("How do I get out of debt?") == "finance"
        assert detect_category("Will I sleep better soon") == "health"
        assert detect_category("What is my soul asking of me?") == "spiritual"

    def test_open_question_has_no_category(self):
        assert detect_category("What do I need to know right now?") is None
        assert detect_category("") is None
        assert detect_category(None) is None

    def test_substrings_do_not_count(self):
        assert detect_category("Is this homework worth it?") is None

    def test_first_listed_area_wins(self):
        assert detect_category("Will love or money come first?") == "love"


class TestFallbackReadingService:
    """Test the offline reader."""

    @pytest.mark.asyncio
    async def test_short_intent_is_unclear(self):
        service = FallbackReadingService()
        result = await service.assess_intent("job?")
        assert not result.is_clear
        assert result.assistant_message

    @pytest.mark.asyncio
    async def test_clear_intent(self):
        service = FallbackReadingService()
        result = await service.assess_intent("Will my new job work out?")
        assert result.is_clear
        assert result.summary == "Will my new job work out?"
        assert result.response_id == "offline-1"

    @pytest.mark.asyncio
    async def test_spread(self):
        spread = await FallbackReadingService().generate_spread("question")
        assert [p.label for p in spread.positions] == ["Past", "Present", "Future"]

    @pytest.mark.asyncio
    async def test_reading_uses_catalog(self):
        draws = sample_draws()
        result = await FallbackReadingService().generate_reading("question", draws)

        assert [c.card_id for c in result.cards] == ["RW-00-FOOL", "RW-19-SUN"]
        fool = get_card("RW-00-FOOL")
        assert fool.name in result.cards[0].interpretation
        assert fool.meaning(draws[0].reversed) in result.cards[0].interpretation
        assert "For " not in result.cards[0].interpretation

    @pytest.mark.asyncio
    async def test_reading_adds_category_meaning(self):
        draws = sample_draws()
        result = await FallbackReadingService().generate_reading("Will my new job work out this year?", draws)

        sun = get_card("RW-19-SUN")
        career = sun.category_meaning("career", draws[1].reversed)
        assert career
        assert result.cards[1].interpretation.endswith(f"For career: {career}")

    @pytest.mark.asyncio
    async def test_clarification_answer_uses_question_category(self):
        draws = sample_draws()[:1]
        result = await FallbackReadingService().handle_clarification("Clarify my money situation", draws)

        finance = get_card("RW-00-FOOL").category_meaning("finance", draws[0].reversed)
        assert f"For finance: {finance}" in result.cards[0].interpretation

    @pytest.mark.asyncio
    async def test_clarification_asks_for_a_card(self):
        result = await FallbackReadingService().handle_clarification("Can you draw another card?", [])
        assert not result.is_final_answer
        assert len(result.cards) == 1
        assert result.cards[0].label == "Clarification"

    @pytest.mark.asyncio
    async def test_clarification_answers_with_cards(self):
        draws = sample_draws()[:1]
        result = await FallbackReadingService().handle_clarification("Clarify please", draws)
        assert result.is_final_answer
        assert result.cards[0].card_id == "RW-00-FOOL"
        assert result.cards[0].reversed == draws[0].reversed

    @pytest.mark.asyncio
    async def test_plain_question_is_final(self):
        result = await FallbackReadingService().handle_clarification("What should I focus on?", [])
        assert result.is_final_answer
        assert result.cards == []


class TestCreateReadingService:
    def test_offline_without_key(self):
        assert isinstance(create_reading_service(Settings()), FallbackReadingService)

    def test_openai_with_key(self):
        service = create_reading_service(Settings(openai_api_key="sk-test", prompt_ids=PROMPTS))
        assert isinstance(service, OpenAIReadingService)
        assert service.prompt_ids == PROMPTS
