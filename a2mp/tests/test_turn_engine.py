"""
Turn engine tests - one turn at a time against a scripted model and a real store
"""
import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from a2mp.engine.turn_engine import build_conversation_graph
from a2mp.models.meeting import MeetingStatus
from a2mp.services import meeting_service
from a2mp.services.errors import InvalidTransitionError, ReportNotAllowedError

PERSONA_MCP = {
    "identity": "Stand-in for a participant",
    "objectives": ["Reach a decision"],
    "rules": ["Do not use pleasantries or greetings. Be direct and task-focused."],
    "output_format": "Concise and direct",
    "tools": [],
}


def decision(speaker, notes="", **whiteboard):
    payload = {"nextSpeaker": speaker, "moderatorNotes": notes}
    if whiteboard:
        payload["whiteboardUpdate"] = whiteboard
    return json.dumps(payload)


def persona_json(name):
    return json.dumps({
        "name": name,
        "mcp": {
            "identity": f"{name} speaking for a participant",
            "objectives": ["Get agreement"],
            "rules": ["Cite facts"],
            "outputFormat": "Concise and direct",
        },
    })


def conclusion(conclude, reason="because"):
    return json.dumps({"conclude": conclude, "reason": reason})


async def add_turns(session_factory, meeting_id, *pairs):
    async with session_factory() as db:
        for speaker, message in pairs:
            await meeting_service.append_turn(db, meeting_id, speaker, message)
        await db.commit()


async def add_personas(session_factory, meeting, *names):
    async with session_factory() as db:
        for participant, name in zip(meeting["participants"], names):
            await meeting_service.add_persona(db, meeting["meeting_id"], participant.id, name, PERSONA_MCP)
        await db.commit()


async def load(session_factory, meeting_id):
    async with session_factory() as db:
        meeting = await meeting_service.get_meeting(db, meeting_id)
        history = await meeting_service.get_history(db, meeting_id)
        return meeting, history


# ===================== SUCCESSFUL TURNS =====================


class TestRunOneTurn:

    @pytest.mark.asyncio
    async def test_turn_with_lazy_persona(self, orchestrator, running_meeting, moderator_client,
                                          participant_client, session_factory):
        mid = running_meeting["meeting_id"]
        moderator_client.push(decision("alice@example.com", "Dates first", keyFacts=["Lease ends in March"]))
        participant_client.push(
            persona_json("The Timekeeper"),
            "March works because the lease ends then.",
        )

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.concluded is False
        assert result.turn["speaker"] == "AI:The Timekeeper (Alice)"
        assert result.turn["sequence"] == 1
        assert result.notes == "Dates first"

        meeting, history = await load(session_factory, mid)
        assert meeting.whiteboard["key_facts"] == ["Lease ends in March"]
        assert [t.message for t in history] == ["March works because the lease ends then."]

        events = [name for _, name, _ in orchestrator.broadcaster.events]
        assert events == ["whiteboard", "turn"]

    @pytest.mark.asyncio
    async def test_speaker_resolved_by_display_name(self, orchestrator, running_meeting, moderator_client,
                                                    participant_client, session_factory):
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(decision("Bob"))
        participant_client.push("Twenty thousand is the ceiling for movers.")

        result = await orchestrator.engine.run_one_turn(running_meeting["meeting_id"])

        assert result.turn["speaker"] == "AI:Budgeter"

    @pytest.mark.asyncio
    async def test_fairness_overrides_dominant_speaker(self, orchestrator, running_meeting, moderator_client,
                                                       participant_client, session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        await add_turns(
            session_factory, mid,
            ("AI:Timekeeper", "March is when the lease ends."),
            ("AI:Budgeter", "Budget is twenty thousand."),
            ("AI:Timekeeper", "Movers are free on the 14th."),
            ("Human:Host", "Keep going."),
            ("AI:Timekeeper", "Booking the 14th then."),
        )
        moderator_client.push(decision("alice@example.com"))
        participant_client.push("The 14th fits the budget if we book now.")

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.turn["speaker"] == "AI:Budgeter"

    @pytest.mark.asyncio
    async def test_sequence_and_timestamps_strictly_increase(self, orchestrator, running_meeting,
                                                             moderator_client, participant_client,
                                                             session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(
            decision("alice@example.com"),
            decision("bob@example.com"),
            decision("alice@example.com"),
        )
        participant_client.push(
            "March is when the lease ends.",
            "Twenty thousand is the most we can spend on this move.",
            "Then we book movers for mid March right away.",
        )

        for _ in range(3):
            result = await orchestrator.engine.run_one_turn(mid)
            assert result.turn is not None

        _, history = await load(session_factory, mid)
        assert [t.sequence for t in history] == [1, 2, 3]
        stamps = [t.created_at for t in history]
        assert stamps == sorted(stamps) and len(set(stamps)) == 3


# ===================== GUARDS =====================


class TestGuards:

    @pytest.mark.asyncio
    async def test_already_processing(self, orchestrator, running_meeting, moderator_client):
        mid = running_meeting["meeting_id"]

        async with orchestrator.locks.turn_lock(mid):
            result = await orchestrator.engine.run_one_turn(mid)

        assert result.notes == "Already processing"
        assert moderator_client.calls == []

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_once(self, orchestrator, running_meeting, moderator_client,
                                             participant_client, session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(decision("alice@example.com"))
        participant_client.push("March is when the lease ends.")

        results = await asyncio.gather(
            orchestrator.engine.run_one_turn(mid),
            orchestrator.engine.run_one_turn(mid),
        )

        assert sorted(r.notes == "Already processing" for r in results) == [False, True]
        _, history = await load(session_factory, mid)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_paused_meeting_is_skipped(self, orchestrator, running_meeting, moderator_client):
        mid = running_meeting["meeting_id"]
        await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED)

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.waiting is True
        assert "paused" in result.notes
        assert moderator_client.calls == []

    @pytest.mark.asyncio
    async def test_max_turns_concludes(self, orchestrator, running_meeting, moderator_client, session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(session_factory, mid, *[("Human:Host", f"Message number {i}") for i in range(20)])

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.concluded is True
        assert result.notes == "Max turns reached"
        assert moderator_client.calls == []

    @pytest.mark.asyncio
    async def test_deadlock_pauses_with_explanation(self, orchestrator, running_meeting, moderator_client,
                                                    session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(
            session_factory, mid,
            ("Moderator", "Opening the floor."),
            ("AI:Timekeeper", "However, we should wait until April to move."),
            ("AI:Budgeter", "However, we should move in March, the lease ends."),
            ("AI:Timekeeper", "I still think April."),
        )

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.paused is True
        assert "circular discussion" in result.notes
        assert moderator_client.calls == []

        meeting, history = await load(session_factory, mid)
        assert meeting.status == MeetingStatus.PAUSED
        assert history[-1].speaker == "Moderator"
        assert "Human input is requested" in history[-1].message
        assert orchestrator.broadcaster.of("status") == [{"status": "paused"}]

    @pytest.mark.asyncio
    async def test_status_change_mid_turn_discards_turn(self, orchestrator, running_meeting, moderator_client,
                                                        session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(decision("alice@example.com", keyFacts=["Should not land"]))

        async def pause_then_answer(*args, **kwargs):
            await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED)
            return "March is when the lease ends."

        with patch.object(orchestrator.persona_agent, "respond", new_callable=AsyncMock) as mock:
            mock.side_effect = pause_then_answer
            result = await orchestrator.engine.run_one_turn(mid)

        assert result.turn is None
        assert "discarded" in result.notes
        meeting, history = await load(session_factory, mid)
        assert history == []
        assert meeting.whiteboard["key_facts"] == []


# ===================== MODERATOR CHOICES =====================


class TestModeratorChoices:

    @pytest.mark.asyncio
    async def test_none_early_forces_conclusion(self, orchestrator, running_meeting, moderator_client):
        moderator_client.push(decision("none"), conclusion(False, "Objectives not met"))

        result = await orchestrator.engine.run_one_turn(running_meeting["meeting_id"])

        assert result.concluded is True
        assert result.notes == "Insufficient information to proceed"
        assert result.conclusion_checked is True

    @pytest.mark.asyncio
    async def test_none_mid_meeting_waits(self, orchestrator, running_meeting, moderator_client,
                                          session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(
            session_factory, mid,
            ("AI:Timekeeper", "March is when the lease ends."),
            ("Human:Host", "What about the budget?"),
            ("AI:Budgeter", "Twenty thousand is the cap."),
            ("AI:Timekeeper", "Then March at twenty thousand."),
        )
        moderator_client.push(decision("none", "Waiting for the host"), conclusion(False))

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.concluded is False
        assert result.notes == "Waiting for the host"

    @pytest.mark.asyncio
    async def test_none_late_forces_conclusion(self, orchestrator, running_meeting, moderator_client,
                                               session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(session_factory, mid, *[("Human:Host", f"Point number {i} for the record") for i in range(8)])
        moderator_client.push(decision("none"), conclusion(False))

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.concluded is True
        assert result.notes == "Conversation concluded by moderator"

    @pytest.mark.asyncio
    async def test_none_with_objectives_met(self, orchestrator, running_meeting, moderator_client):
        moderator_client.push(decision("none", "All agreed"), conclusion(True, "Date and budget set"))

        result = await orchestrator.engine.run_one_turn(running_meeting["meeting_id"])

        assert result.concluded is True
        assert result.notes == "All agreed"

    @pytest.mark.asyncio
    async def test_unknown_speaker(self, orchestrator, running_meeting, moderator_client, participant_client,
                                   session_factory):
        mid = running_meeting["meeting_id"]
        moderator_client.push(decision("carol@example.com", decisions=["Move in March"]))

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.notes == "Unknown speaker selected"
        assert result.waiting is True
        assert participant_client.calls == []
        meeting, history = await load(session_factory, mid)
        assert history == []
        assert meeting.whiteboard["decisions"] == ["Move in March"]


# ===================== GENERATION FAILURES =====================


class TestGenerationFailures:

    @pytest.mark.asyncio
    async def test_failed_response_skips_turn(self, orchestrator, running_meeting, moderator_client,
                                              session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(decision("alice@example.com"))

        result = await orchestrator.engine.run_one_turn(mid)

        assert result.notes == "Generation error - skipping turn"
        assert result.turn is None
        _, history = await load(session_factory, mid)
        assert history == []

    @pytest.mark.asyncio
    async def test_repeated_failures_pause_meeting(self, orchestrator, running_meeting, moderator_client,
                                                   session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(*[decision("alice@example.com") for _ in range(3)])

        results = [await orchestrator.engine.run_one_turn(mid) for _ in range(3)]

        assert [r.paused for r in results] == [False, False, True]
        meeting, history = await load(session_factory, mid)
        assert meeting.status == MeetingStatus.PAUSED
        assert history[-1].speaker == "Moderator"
        assert "consecutive generation failures" in history[-1].message

    @pytest.mark.asyncio
    async def test_moderator_failure_skips_turn(self, orchestrator, running_meeting, moderator_client):
        moderator_client.push("definitely not a json object")

        result = await orchestrator.engine.run_one_turn(running_meeting["meeting_id"])

        assert result.notes == "Generation error - skipping turn"


# ===================== HUMAN INPUT AND STATUS =====================


class TestHumanInput:

    @pytest.mark.asyncio
    async def test_known_author_tagged_by_name(self, orchestrator, running_meeting):
        turn, resumed = await orchestrator.engine.inject_human_message(
            running_meeting["meeting_id"], "alice@example.com", "Please settle on a date."
        )

        assert turn["speaker"] == "Human:alice@example.com"
        assert resumed is False

    @pytest.mark.asyncio
    async def test_unknown_author_is_host(self, orchestrator, running_meeting):
        turn, _ = await orchestrator.engine.inject_human_message(
            running_meeting["meeting_id"], "someone@else.com", "Please settle on a date."
        )

        assert turn["speaker"] == "Human:Host"

    @pytest.mark.asyncio
    async def test_inject_resumes_paused_meeting(self, orchestrator, running_meeting, session_factory):
        mid = running_meeting["meeting_id"]
        await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED)

        _, resumed = await orchestrator.engine.inject_human_message(mid, "Bob", "Go with March.")

        assert resumed is True
        meeting, history = await load(session_factory, mid)
        assert meeting.status == MeetingStatus.RUNNING
        assert history[-1].speaker == "Human:Bob"

    @pytest.mark.asyncio
    async def test_inject_rejected_after_completion(self, orchestrator, running_meeting):
        mid = running_meeting["meeting_id"]
        await orchestrator.engine.generate_final_report(mid)

        with pytest.raises(InvalidTransitionError):
            await orchestrator.engine.inject_human_message(mid, "Host", "Too late")

    @pytest.mark.asyncio
    async def test_pause_is_idempotent(self, orchestrator, running_meeting):
        mid = running_meeting["meeting_id"]

        assert await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED) == MeetingStatus.PAUSED
        assert await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED) == MeetingStatus.PAUSED
        assert orchestrator.broadcaster.of("status") == [{"status": "paused"}]


# ===================== CONCLUSION AND REPORT =====================


class TestConclusion:

    @pytest.mark.asyncio
    async def test_not_running_skips_check(self, orchestrator, running_meeting, moderator_client):
        mid = running_meeting["meeting_id"]
        await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED)

        check = await orchestrator.engine.attempt_conclusion(mid)

        assert check.conclude is False
        assert check.reason == "Meeting is paused, not running"
        assert moderator_client.calls == []

    @pytest.mark.asyncio
    async def test_generation_errors_skip_check(self, orchestrator, running_meeting, moderator_client,
                                                session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(
            session_factory, mid,
            ("AI:Timekeeper", "..."), ("AI:Budgeter", ""), ("AI:Timekeeper", "ok"), ("AI:Budgeter", "Fine by me then."),
        )

        check = await orchestrator.engine.attempt_conclusion(mid)

        assert check.conclude is False
        assert check.reason == "Generation errors detected"
        assert moderator_client.calls == []


# ===================== WHITEBOARD =====================


class TestWhiteboard:

    @pytest.mark.asyncio
    async def test_items_accumulate_without_repeats(self, orchestrator, running_meeting, moderator_client,
                                                    participant_client, session_factory, client):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(
            decision("alice@example.com", keyFacts=["Lease ends in March"]),
            decision("bob@example.com", keyFacts=["lease ends in March", "Budget is 20k"], actionItems=["Book movers"]),
        )
        participant_client.push("March is when the lease runs out.", "Twenty thousand covers movers and storage.")

        await orchestrator.engine.run_one_turn(mid)
        await orchestrator.engine.run_one_turn(mid)

        expected = {
            "key_facts": ["Lease ends in March", "Budget is 20k"],
            "decisions": [],
            "action_items": ["Book movers"],
        }
        assert orchestrator.broadcaster.of("whiteboard")[-1] == expected
        meeting, _ = await load(session_factory, mid)
        assert meeting.whiteboard == expected

        r = await client.get(f"/api/meetings/{mid}/status")
        assert r.json()["whiteboard"] == expected

    @pytest.mark.asyncio
    async def test_named_category_is_replaced(self, orchestrator, running_meeting, moderator_client,
                                              participant_client, session_factory):
        mid = running_meeting["meeting_id"]
        await add_personas(session_factory, running_meeting, "Timekeeper", "Budgeter")
        moderator_client.push(
            decision("alice@example.com", decisions=["Move in April"], keyFacts=["Lease ends in March"]),
            decision("bob@example.com", decisions=["Move in March"], replace=["decisions"]),
        )
        participant_client.push("April gives us time to pack.", "The lease ends in March, so March it is.")

        await orchestrator.engine.run_one_turn(mid)
        await orchestrator.engine.run_one_turn(mid)

        meeting, _ = await load(session_factory, mid)
        assert meeting.whiteboard["decisions"] == ["Move in March"]
        assert meeting.whiteboard["key_facts"] == ["Lease ends in March"]


class TestFinalReport:

    @pytest.mark.asyncio
    async def test_report_generated_once(self, orchestrator, running_meeting, moderator_client, session_factory):
        mid = running_meeting["meeting_id"]
        await add_turns(
            session_factory, mid,
            ("AI:Timekeeper", "March is when the lease ends."),
            ("AI:Budgeter", "Twenty thousand is the cap."),
            ("AI:Timekeeper", "Then March at twenty thousand."),
        )
        moderator_client.push(json.dumps({
            "summary": "Move in March within 20k.",
            "highlights": ["Lease ends in March"],
            "decisions": ["Move in March"],
            "actionItems": ["Book movers"],
        }))

        report = await orchestrator.engine.generate_final_report(mid)
        again = await orchestrator.engine.generate_final_report(mid)

        assert report["summary"] == "Move in March within 20k."
        assert report["action_items"] == ["Book movers"]
        assert again["id"] == report["id"]
        assert len(moderator_client.calls) == 1

        meeting, _ = await load(session_factory, mid)
        assert meeting.status == MeetingStatus.COMPLETED
        assert orchestrator.broadcaster.of("status") == [{"status": "completed"}]

        nodes = {n["id"]: n["turns"] for n in report["visual_map"]["nodes"]}
        assert nodes == {"AI:Timekeeper": 2, "AI:Budgeter": 1}

    @pytest.mark.asyncio
    async def test_report_refused_while_paused(self, orchestrator, running_meeting):
        mid = running_meeting["meeting_id"]
        await orchestrator.engine.change_status(mid, MeetingStatus.PAUSED)

        with pytest.raises(ReportNotAllowedError):
            await orchestrator.engine.generate_final_report(mid)

    @pytest.mark.asyncio
    async def test_empty_meeting_report(self, orchestrator, running_meeting, moderator_client):
        report = await orchestrator.engine.generate_final_report(running_meeting["meeting_id"])

        assert report["summary"].startswith("No conversation took place")
        assert report["visual_map"] == {"nodes": [], "edges": []}
        assert moderator_client.calls == []


def test_conversation_graph_edges():
    history = [
        SimpleNamespace(speaker=s) for s in
        ["AI:A", "AI:B", "AI:A", "AI:A", "Human:Host", "AI:B", "AI:A", "AI:B"]
    ]

    graph = build_conversation_graph(history)

    assert graph["nodes"] == [
        {"id": "AI:A", "label": "A", "turns": 4},
        {"id": "AI:B", "label": "B", "turns": 3},
        {"id": "Human:Host", "label": "Host", "turns": 1},
    ]
    edges = {(e["source"], e["target"]): e["weight"] for e in graph["edges"]}
    assert edges == {
        ("AI:A", "AI:B"): 2,
        ("AI:B", "AI:A"): 2,
        ("AI:A", "Human:Host"): 1,
        ("Human:Host", "AI:B"): 1,
    }
