"""
Agent unit tests - moderator and persona agents over a scripted model client
"""
import json
from types import SimpleNamespace

import pytest

from a2mp.agents.moderator.agent import ModeratorAgent, SpeakerOption, find_addressed
from a2mp.agents.moderator.prompts import MODERATOR_MCP, NO_DISCUSSION_SUMMARY
from a2mp.agents.persona.agent import PersonaAgent
from a2mp.llm.errors import ContentPolicyError, MalformedOutputError, ModelNotConfiguredError, TransientModelError
from a2mp.llm.gateway import ModelGateway
from a2mp.llm.retry import RetryConfig
from a2mp.llm.schemas import NO_PLEASANTRIES_RULE
from a2mp.services.claude_service import FinishReason, ModelResponse, TokenUsage
from a2mp.tests.conftest import FakeModelClient, fast_limiters


def turn(speaker, message):
    return SimpleNamespace(speaker=speaker, message=message)


def make_gateway(moderator=None, participant=None, max_attempts=3):
    return ModelGateway(
        {"moderator": moderator or FakeModelClient(), "participant": participant or FakeModelClient()},
        fast_limiters(),
        RetryConfig(max_attempts=max_attempts, initial_delay=0.0),
    )


OPTIONS = [
    SpeakerOption("prt_1", "alice@example.com", "Alice"),
    SpeakerOption("prt_2", "bob@example.com", "Bob"),
]

PERSONA_MCP = {
    "identity": "Office manager who owns the lease timeline",
    "objectives": ["Move in March"],
    "rules": [NO_PLEASANTRIES_RULE, "Cite dates"],
    "output_format": "Concise and direct",
}


# ===================== GATEWAY =====================


class TestGateway:

    @pytest.mark.asyncio
    async def test_missing_key_fails_fast(self):
        client = FakeModelClient(available=False)
        gateway = make_gateway(participant=client)

        with pytest.raises(ModelNotConfiguredError):
            await gateway.invoke("participant", "persona_respond", "hi")
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_safety_stop_is_fatal(self):
        client = FakeModelClient([ModelResponse(text="", finish_reason=FinishReason.SAFETY)])
        gateway = make_gateway(participant=client)

        with pytest.raises(ContentPolicyError):
            await gateway.invoke("participant", "persona_respond", "hi")
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_usage_reconciled_against_estimate(self):
        client = FakeModelClient([
            ModelResponse(text="fine", usage=TokenUsage(input_tokens=1000, output_tokens=1000)),
        ])
        gateway = make_gateway(participant=client)

        await gateway.invoke("participant", "persona_respond", "hi")

        usage = gateway.status()["participant"]["usage"]
        assert usage["total_requests"] == 1
        assert usage["total_actual_tokens"] == 2000

    @pytest.mark.asyncio
    async def test_identities_use_separate_clients(self):
        moderator = FakeModelClient(["from moderator"])
        participant = FakeModelClient(["from participant"])
        gateway = make_gateway(moderator, participant)

        response = await gateway.invoke("moderator", "check", "x")

        assert response.text == "from moderator"
        assert participant.calls == []


# ===================== MODERATOR =====================


class TestModeratorInstruction:

    def test_direct_address_wins(self):
        agent = ModeratorAgent(make_gateway())
        options = [SpeakerOption("prt_1", "alice@example.com", "Alice", True), OPTIONS[1]]
        recent = [turn("AI:Planner", "Alice, what do you think about March?")]

        instruction = agent.build_instruction(recent, options)
        assert "QUESTION ASKED TO alice@example.com" in instruction

    def test_not_yet_spoken_listed(self):
        agent = ModeratorAgent(make_gateway())
        options = [SpeakerOption("prt_1", "alice@example.com", "Alice", True), OPTIONS[1]]

        instruction = agent.build_instruction([turn("AI:Alice (persona)", "March works.")], options)
        assert instruction == "Pick from: bob@example.com"

    def test_alternate_when_everyone_spoke(self):
        agent = ModeratorAgent(make_gateway())
        options = [
            SpeakerOption("prt_1", "alice@example.com", "Alice", True),
            SpeakerOption("prt_2", "bob@example.com", "Bob", True),
        ]

        instruction = agent.build_instruction([turn("AI:Bob the Budgeter", "20k max.")], options)
        assert "ALTERNATE SPEAKERS" in instruction
        assert "alice@example.com" in instruction
        assert "bob@example.com" not in instruction.split("Pick from:")[1]

    def test_find_addressed_without_question(self):
        assert find_addressed("Alice agreed earlier.", OPTIONS) is None

    def test_find_addressed_needs_whole_name(self):
        options = [SpeakerOption("prt_1", "alison.lee@example.com", "Alison Lee", True)]

        assert find_addressed("So, what about the budget?", options) is None
        assert find_addressed("Al, how far is the new site?", options) is None
        assert find_addressed("Lee, how far is the new site?", options) is options[0]
        assert find_addressed("alison, can you confirm the date?", options) is options[0]

    def test_find_addressed_skips_silent_participants(self):
        assert find_addressed("Bob, what is the budget?", OPTIONS) is None

        agent = ModeratorAgent(make_gateway())
        options = [SpeakerOption("prt_1", "alice@example.com", "Alice", True), OPTIONS[1]]
        recent = [turn("AI:Planner", "Bob, what is the budget?")]
        assert agent.build_instruction(recent, options) == "Pick from: bob@example.com"


class TestModeratorCalls:

    @pytest.mark.asyncio
    async def test_decide_next_speaker(self):
        client = FakeModelClient([json.dumps({
            "nextSpeaker": "bob@example.com",
            "moderatorNotes": "Budget next",
            "whiteboardUpdate": {"keyFacts": ["Lease ends in March"]},
        })])
        agent = ModeratorAgent(make_gateway(moderator=client))

        decision = await agent.decide_next_speaker(MODERATOR_MCP, {}, [], OPTIONS)

        assert decision.next_speaker == "bob@example.com"
        assert decision.whiteboard_update.key_facts == ["Lease ends in March"]
        assert client.calls[0].json_mode is True
        assert "Meeting Moderator - Efficient Decision Engine" in client.calls[0].system_prompt

    @pytest.mark.asyncio
    async def test_malformed_decision_is_not_retried(self):
        client = FakeModelClient(["this is not json at all"])
        agent = ModeratorAgent(make_gateway(moderator=client))

        with pytest.raises(MalformedOutputError):
            await agent.decide_next_speaker(MODERATOR_MCP, {}, [], OPTIONS)
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_conclusion_check(self):
        client = FakeModelClient(['{"conclude": true, "reason": "Date and budget agreed"}'])
        agent = ModeratorAgent(make_gateway(moderator=client))

        check = await agent.check_for_conclusion(MODERATOR_MCP, {}, [turn("AI:A", "We agree on March")])

        assert check.conclude is True
        assert check.reason == "Date and budget agreed"

    @pytest.mark.asyncio
    async def test_conclusion_failure_means_not_yet(self):
        client = FakeModelClient(["garbage output here"])
        agent = ModeratorAgent(make_gateway(moderator=client))

        check = await agent.check_for_conclusion(MODERATOR_MCP, {}, [])

        assert check.conclude is False
        assert "failed" in check.reason

    @pytest.mark.asyncio
    async def test_summary_of_empty_meeting_skips_model(self):
        client = FakeModelClient()
        agent = ModeratorAgent(make_gateway(moderator=client))

        summary = await agent.summarize_conversation({}, [])

        assert summary.summary == NO_DISCUSSION_SUMMARY
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_summary_falls_back_to_whiteboard(self):
        client = FakeModelClient(['{"summary": "Moved to March", "highlights": ["March"]}'])
        agent = ModeratorAgent(make_gateway(moderator=client))
        board = {"key_facts": [], "decisions": ["Move in March"], "action_items": ["Book movers"]}

        summary = await agent.summarize_conversation(board, [turn("AI:A", "Let us move in March.")])

        assert summary.summary == "Moved to March"
        assert summary.decisions == ["Move in March"]
        assert summary.action_items == ["Book movers"]

    @pytest.mark.asyncio
    async def test_summary_model_failure_uses_fallback(self):
        client = FakeModelClient([ModelResponse(text="", finish_reason=FinishReason.SAFETY)])
        agent = ModeratorAgent(make_gateway(moderator=client))
        board = {"key_facts": [], "decisions": ["Move in March"], "action_items": []}

        summary = await agent.summarize_conversation(board, [turn("AI:A", "Let us move in March.")])

        assert "1 conversation turns" in summary.summary
        assert summary.decisions == ["Move in March"]
        assert summary.highlights[0].startswith("AI:A: Let us move")


# ===================== PERSONA =====================


class TestPersonaAgent:

    @pytest.mark.asyncio
    async def test_generate_persona(self):
        client = FakeModelClient([json.dumps({
            "name": "The Timekeeper",
            "mcp": {
                "identity": "Office manager who owns the lease timeline",
                "objectives": ["Move before the lease ends"],
                "rules": ["Cite dates"],
                "outputFormat": "Concise and direct",
            },
        })])
        agent = PersonaAgent(make_gateway(participant=client))

        persona = await agent.generate_persona("We should move in March.", "Office move", "Alice")

        assert persona.name == "The Timekeeper"
        assert persona.mcp.rules == [NO_PLEASANTRIES_RULE, "Cite dates"]
        assert "Alice" in client.calls[0].prompt

    @pytest.mark.asyncio
    async def test_respond_returns_stripped_text(self):
        client = FakeModelClient(["  March works because the lease ends then.  "])
        agent = PersonaAgent(make_gateway(participant=client))

        message = await agent.respond("Timekeeper", PERSONA_MCP, {}, [], "We should move in March.")

        assert message == "March works because the lease ends then."
        assert client.calls[0].temperature == 0.9
        assert "Max 70 words" in client.calls[0].prompt

    @pytest.mark.asyncio
    async def test_short_response_retried_then_accepted(self):
        client = FakeModelClient(["ok", "March works because the lease ends then."])
        agent = PersonaAgent(make_gateway(participant=client))

        message = await agent.respond("Timekeeper", PERSONA_MCP, {}, [])

        assert message.startswith("March works")
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_short_response_surfaces_after_attempts(self):
        client = FakeModelClient(default="")
        agent = PersonaAgent(make_gateway(participant=client, max_attempts=3))

        with pytest.raises(TransientModelError):
            await agent.respond("Timekeeper", PERSONA_MCP, {}, [])
        assert len(client.calls) == 3

    @pytest.mark.asyncio
    async def test_own_history_and_humans_in_prompt(self):
        client = FakeModelClient(["Happy to adjust to April given the budget."])
        agent = PersonaAgent(make_gateway(participant=client))
        history = [
            turn("AI:Timekeeper", "March is the only option."),
            turn("Human:Host", "Could April work instead?"),
        ]

        await agent.respond("Timekeeper", PERSONA_MCP, {}, history)

        prompt = client.calls[0].prompt
        assert "YOU ALREADY SAID" in prompt
        assert "Could April work instead?" in prompt
