"""Tests for the extraction service: storing, in-flight tracking, aborts and re-extraction."""

import asyncio

import pytest

from narrative_tracker.errors import CorruptNarrativeState, ExtractionInProgress, GeneratorError
from narrative_tracker.schemas.state import MilestoneEvent
from narrative_tracker.services.tracker import ExtractionStatus, TrackerService
from narrative_tracker.state.message_state import EXTENSION_KEY, get_message_state
from narrative_tracker.state.narrative_state import (
    NARRATIVE_KEY,
    get_narrative_state,
    get_relationship,
    set_narrative_state,
)
from narrative_tracker.state.relationships import add_milestone

from fakes import BlockingGenerator, FakeGenerator, alternating_chat, dt, make_settings, story_script


def make_service(generator=None, **settings):
    return TrackerService(generator=generator or FakeGenerator(story_script()),
                          settings=make_settings(**settings))


class TestExtractMessage:

    def test_success_stores_state_and_saves(self):
        saves = []

        async def saver(log):
            saves.append(True)

        chat = alternating_chat(2)
        chat.saver = saver
        outcome = asyncio.run(make_service().extract_message("chat-1", chat, 1))

        assert outcome.status == ExtractionStatus.success
        assert outcome.error is None
        assert outcome.reconciliation is None
        stored = get_message_state(chat[1])
        assert stored.state == outcome.state
        assert stored.extracted_at is not None
        assert saves

    def test_failure_is_reported_not_raised(self):
        chat = alternating_chat(2)
        service = make_service(FakeGenerator(story_script(scene=GeneratorError("model offline"))))
        outcome = asyncio.run(service.extract_message("chat-1", chat, 1))

        assert outcome.status == ExtractionStatus.failed
        assert isinstance(outcome.error, GeneratorError)
        assert get_message_state(chat[1]) is None
        assert not service.is_extracting("chat-1", 1)

    def test_missing_model_is_a_failure(self):
        chat = alternating_chat(2)
        outcome = asyncio.run(make_service(extraction_model="").extract_message("chat-1", chat, 1))
        assert outcome.status == ExtractionStatus.failed

    def test_abort_of_idle_message(self):
        assert make_service().abort("chat-1", 1) is False

    def test_corrupt_narrative_state_fails_without_overwriting(self):
        saves = []

        async def saver(log):
            saves.append(True)

        chat = alternating_chat(2)
        chat.saver = saver
        chat[0].extra[EXTENSION_KEY] = {NARRATIVE_KEY: {"relationships": "not a list"}}
        outcome = asyncio.run(make_service().extract_message("chat-1", chat, 1))

        assert outcome.status == ExtractionStatus.failed
        assert isinstance(outcome.error, CorruptNarrativeState)
        assert chat[0].extra[EXTENSION_KEY][NARRATIVE_KEY] == {"relationships": "not a list"}
        assert get_message_state(chat[1]) is None
        assert saves == []


class TestConcurrency:

    def test_same_message_is_rejected_then_aborted(self):
        generator = BlockingGenerator(story_script())
        service = make_service(generator)
        chat = alternating_chat(2)

        async def scenario():
            task = asyncio.create_task(service.extract_message("chat-1", chat, 1))
            await generator.started.wait()
            assert service.is_extracting("chat-1", 1)

            with pytest.raises(ExtractionInProgress):
                await service.extract_message("chat-1", chat, 1)

            assert service.abort("chat-1", 1)
            generator.release.set()
            return await task

        outcome = asyncio.run(scenario())
        assert outcome.status == ExtractionStatus.aborted
        assert not service.is_extracting("chat-1", 1)
        assert get_message_state(chat[1]) is None

    def test_other_chats_are_independent(self):
        generator = BlockingGenerator(story_script())
        service = make_service(generator)

        async def scenario():
            task = asyncio.create_task(service.extract_message("chat-1", alternating_chat(2), 1))
            await generator.started.wait()
            other = await service.extract_message("chat-2", alternating_chat(2), 1)
            generator.release.set()
            return other, await task

        other, first = asyncio.run(scenario())
        assert other.status == ExtractionStatus.success
        assert first.status == ExtractionStatus.success


class TestReExtraction:

    def test_later_ledgers_follow_the_new_event(self):
        generator = FakeGenerator(story_script())
        service = make_service(generator)
        chat = alternating_chat(4)

        asyncio.run(service.extract_message("chat-1", chat, 1))
        asyncio.run(service.extract_message("chat-1", chat, 3))

        generator.script["event"] = dict(story_script()["event"], summary="Elena lied about her past.")
        outcome = asyncio.run(service.extract_message("chat-1", chat, 1))

        assert outcome.reconciliation.updated == [3]
        later = get_message_state(chat[3]).state.current_events
        assert [e.message_id for e in later] == [1, 3]
        assert later[0].summary == "Elena lied about her past."

    def test_repeated_extraction_is_idempotent(self):
        service = make_service()
        chat = alternating_chat(2)

        asyncio.run(service.extract_message("chat-1", chat, 1))
        first = get_relationship(get_narrative_state(chat), "Elena", "Marcus")
        asyncio.run(service.extract_message("chat-1", chat, 1))
        second = get_relationship(get_narrative_state(chat), "Elena", "Marcus")

        assert [m.type for m in second.milestones] == ["first_meeting", "confession"]
        assert second.milestones == first.milestones
        assert [v.message_id for v in second.versions] == [1]
        assert second.b_to_a.feelings == first.b_to_a.feelings

    def test_earlier_message_keeps_milestones_from_later_ones(self):
        service = make_service()
        chat = alternating_chat(6)
        asyncio.run(service.extract_message("chat-1", chat, 1))

        narrative = get_narrative_state(chat)
        add_milestone(get_relationship(narrative, "Elena", "Marcus"), MilestoneEvent(
            type="first_kiss", description="They kissed on the pier.", timestamp=dt(hour=23), message_id=5,
        ))
        set_narrative_state(chat, narrative)

        asyncio.run(service.extract_message("chat-1", chat, 1))

        relationship = get_relationship(get_narrative_state(chat), "Elena", "Marcus")
        assert sorted((m.type, m.message_id) for m in relationship.milestones) == [
            ("confession", 1), ("first_kiss", 5), ("first_meeting", 1),
        ]
        assert [v.message_id for v in relationship.versions] == [1]

    def test_relationship_survives_re_extraction_with_tracking_off(self):
        chat = alternating_chat(2)
        asyncio.run(make_service().extract_message("chat-1", chat, 1))

        asyncio.run(make_service(track_relationships=False).extract_message("chat-1", chat, 1))

        relationship = get_relationship(get_narrative_state(chat), "Elena", "Marcus")
        assert relationship is not None
        # The seeded first meeting is restored; the signal milestone needs tracking
        assert [(m.type, m.message_id) for m in relationship.milestones] == [("first_meeting", 1)]
        assert [v.message_id for v in relationship.versions] == [1]

    def test_re_extracting_a_middle_message_changes_nothing(self):
        service = make_service()
        chat = alternating_chat(6)
        for message_id in (1, 3, 5):
            asyncio.run(service.extract_message("chat-1", chat, message_id))
        states = {i: get_message_state(chat[i]).state for i in (1, 3, 5)}
        relationship = get_relationship(get_narrative_state(chat), "Elena", "Marcus")

        outcome = asyncio.run(service.extract_message("chat-1", chat, 3))

        assert outcome.status == ExtractionStatus.success
        assert {i: get_message_state(chat[i]).state for i in (1, 3, 5)} == states
        assert [e.message_id for e in states[5].current_events] == [1, 3, 5]
        assert get_relationship(get_narrative_state(chat), "Elena", "Marcus") == relationship
