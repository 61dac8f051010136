"""
Persona generation queue tests
"""
import asyncio
import json

import pytest

from a2mp.llm.errors import MalformedOutputError
from a2mp.services import meeting_service
from a2mp.services.persona_queue import unique_persona_name


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


class TestUniquePersonaName:

    def test_participant_name_appended(self):
        assert unique_persona_name("The Planner", "Alice", set()) == "The Planner (Alice)"

    def test_name_already_mentions_participant(self):
        assert unique_persona_name("Alice's Advocate", "Alice", set()) == "Alice's Advocate"

    def test_same_as_participant_name(self):
        assert unique_persona_name("alice", "Alice", set()) == "Alice (persona)"

    def test_empty_generated_name(self):
        assert unique_persona_name("  ", "Bob", set()) == "Bob (persona)"

    def test_collision_gets_suffix(self):
        taken = {"The Planner (Alice)", "The Planner (Alice) 2"}
        assert unique_persona_name("The Planner", "Alice", taken) == "The Planner (Alice) 3"


class TestPersonaQueue:

    @pytest.mark.asyncio
    async def test_enqueue_generates_and_persists(self, orchestrator, running_meeting, participant_client,
                                                  session_factory):
        mid = running_meeting["meeting_id"]
        alice = running_meeting["participants"][0]
        participant_client.push(persona_json("The Timekeeper"))

        persona = await orchestrator.persona_queue.enqueue(mid, alice.id)

        assert persona.name == "The Timekeeper (Alice)"
        assert persona.mcp["rules"][0].startswith("Do not use pleasantries")
        async with session_factory() as db:
            stored = await meeting_service.get_persona_for_participant(db, mid, alice.id)
        assert stored.id == persona.id

        status = orchestrator.persona_queue.status()
        assert status["processed"] == 1
        assert status["queue_length"] == 0
        assert status["pending_keys"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_requests_share_one_job(self, orchestrator, running_meeting, participant_client):
        mid = running_meeting["meeting_id"]
        alice = running_meeting["participants"][0]
        participant_client.push(persona_json("The Timekeeper"))

        first = orchestrator.persona_queue.enqueue(mid, alice.id)
        second = orchestrator.persona_queue.enqueue(mid, alice.id)

        assert first is second
        await first
        assert len(participant_client.calls) == 1

    @pytest.mark.asyncio
    async def test_existing_persona_skips_model(self, orchestrator, running_meeting, participant_client):
        mid = running_meeting["meeting_id"]
        alice = running_meeting["participants"][0]
        participant_client.push(persona_json("The Timekeeper"))
        created = await orchestrator.persona_queue.enqueue(mid, alice.id)

        again = await orchestrator.persona_queue.generate_now(mid, alice.id)

        assert again.id == created.id
        assert len(participant_client.calls) == 1

    @pytest.mark.asyncio
    async def test_inline_generation_joins_queued_job(self, orchestrator, running_meeting, participant_client):
        mid = running_meeting["meeting_id"]
        alice = running_meeting["participants"][0]
        participant_client.push(persona_json("The Timekeeper"))

        queued = orchestrator.persona_queue.enqueue(mid, alice.id)
        inline = await orchestrator.persona_queue.generate_now(mid, alice.id)

        assert inline.id == (await queued).id
        assert len(participant_client.calls) == 1

    @pytest.mark.asyncio
    async def test_jobs_run_one_at_a_time(self, orchestrator, running_meeting, participant_client):
        mid = running_meeting["meeting_id"]
        alice, bob = running_meeting["participants"]
        participant_client.push(persona_json("The Planner"), persona_json("The Planner"))

        futures = [
            orchestrator.persona_queue.enqueue(mid, alice.id),
            orchestrator.persona_queue.enqueue(mid, bob.id),
        ]
        assert orchestrator.persona_queue.status()["queue_length"] == 2

        personas = await asyncio.gather(*futures)

        assert [p.name for p in personas] == ["The Planner (Alice)", "The Planner (Bob)"]
        assert "Alice" in participant_client.calls[0].prompt
        assert "Bob" in participant_client.calls[1].prompt

    @pytest.mark.asyncio
    async def test_failed_job_reports_error(self, orchestrator, running_meeting, participant_client):
        mid = running_meeting["meeting_id"]
        alice = running_meeting["participants"][0]
        participant_client.push("this is not a persona")

        with pytest.raises(MalformedOutputError):
            await orchestrator.persona_queue.enqueue(mid, alice.id)

        status = orchestrator.persona_queue.status()
        assert status["failed"] == 1
        assert status["pending_keys"] == 0

    @pytest.mark.asyncio
    async def test_eager_mode_queues_everyone(self, orchestrator, running_meeting, participant_client,
                                              session_factory):
        mid = running_meeting["meeting_id"]
        participant_ids = [p.id for p in running_meeting["participants"]]
        participant_client.push(persona_json("The Timekeeper"), persona_json("The Budgeter"))
        orchestrator.settings.PERSONA_GENERATION_MODE = "eager"

        orchestrator.on_meeting_started(mid, participant_ids)
        await asyncio.gather(*(orchestrator.persona_queue.enqueue(mid, pid) for pid in participant_ids))

        async with session_factory() as db:
            personas = await meeting_service.get_personas(db, mid)
        names = sorted(p.name for p in personas if p.participant_id)
        assert names == ["The Budgeter (Bob)", "The Timekeeper (Alice)"]
        assert orchestrator.broadcaster.of("status") == [{"status": "running"}]
